"""Source wire-format detection.

Detection walks an ordered table of ``(predicate, format)`` pairs and returns
the first match, so the more specific fingerprints (wrapper fields, Anthropic
content blocks) win over the generic ``messages`` shape. Anything that
matches nothing is treated as OpenAI chat.
"""

from typing import Any, Callable, List, Tuple

from llmrelay.formats import DEFAULT_FORMAT, WireFormat

_ANTHROPIC_TOP_LEVEL = ("system", "anthropic_version", "stop_sequences", "top_k")
_ANTHROPIC_PART_TYPES = {"tool_use", "tool_result", "thinking", "redacted_thinking"}


def _messages(body: dict) -> list:
    messages = body.get("messages")
    return messages if isinstance(messages, list) else []


def _is_gemini_cli(body: dict) -> bool:
    request = body.get("request")
    return isinstance(request, dict) and "contents" in request


def _is_gemini(body: dict) -> bool:
    return isinstance(body.get("contents"), list)


def _is_responses(body: dict) -> bool:
    return "input" in body and "messages" not in body


def _is_anthropic(body: dict) -> bool:
    if not isinstance(body.get("messages"), list):
        return False
    if any(key in body for key in _ANTHROPIC_TOP_LEVEL):
        return True
    for tool in body.get("tools") or []:
        if isinstance(tool, dict) and "input_schema" in tool:
            return True
    for message in _messages(body):
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            continue
        for part in content:
            if not isinstance(part, dict):
                continue
            kind = part.get("type")
            if kind in _ANTHROPIC_PART_TYPES:
                return True
            if kind == "image" and "source" in part:
                return True
    return False


def _is_ollama(body: dict) -> bool:
    if not isinstance(body.get("messages"), list):
        return False
    if isinstance(body.get("options"), dict) or "keep_alive" in body:
        return True
    if isinstance(body.get("format"), (str, dict)):
        return True
    return any(
        isinstance(m, dict) and isinstance(m.get("images"), list)
        for m in _messages(body)
    )


DETECTION_RULES: List[Tuple[Callable[[dict], bool], WireFormat]] = [
    (_is_gemini_cli, WireFormat.GEMINI_CLI),
    (_is_gemini, WireFormat.GEMINI_GENERATE),
    (_is_responses, WireFormat.OPENAI_RESPONSES),
    (_is_anthropic, WireFormat.ANTHROPIC_MESSAGES),
    (_is_ollama, WireFormat.OLLAMA_CHAT),
]


def detect_format(body: Any) -> WireFormat:
    """Return the wire format of an inbound request body.

    Never raises: bodies that are not objects or that match no rule fall
    back to ``DEFAULT_FORMAT`` so the request degrades into a best-effort
    pass-through.
    """
    if not isinstance(body, dict):
        return DEFAULT_FORMAT
    for predicate, fmt in DETECTION_RULES:
        if predicate(body):
            return fmt
    return DEFAULT_FORMAT
