"""Ollama chat <-> OpenAI chat.

Ollama streams newline-delimited JSON objects instead of SSE frames; the
last object carries ``done: true`` together with token counts.
"""

import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from llmrelay.errors import build_error_body
from llmrelay.formats import WireFormat
from llmrelay.translate_openai import (
    Codec,
    StreamDecoder,
    StreamEncoder,
    TranslationContext,
    content_parts,
    data_url,
    dump_arguments,
    image_url_of,
    make_usage,
    new_id,
    parse_arguments,
    parse_data_url,
    text_of,
)

# Ollama option name -> OpenAI parameter name
_OPTIONS = {
    "temperature": "temperature",
    "top_p": "top_p",
    "num_predict": "max_tokens",
    "stop": "stop",
    "seed": "seed",
}

FINISH_TO_HUB = {"stop": "stop", "length": "length"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def request_to_hub(body: Dict[str, Any], ctx: TranslationContext) -> Dict[str, Any]:
    messages = []
    for message in body.get("messages") or []:
        role = message.get("role", "user")
        content = message.get("content") or ""
        converted: Dict[str, Any] = {"role": role}
        if role == "tool":
            converted["tool_call_id"] = message.get("tool_call_id") or message.get("tool_name", "")
            converted["content"] = content
        elif message.get("images"):
            parts = [{"type": "text", "text": content}] if content else []
            for image in message["images"]:
                parts.append({"type": "image_url", "image_url": {"url": data_url("image/png", image)}})
            converted["content"] = parts
        else:
            converted["content"] = content
        calls = []
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            calls.append(
                {
                    "id": call.get("id") or new_id("call_"),
                    "type": "function",
                    "function": {
                        "name": function.get("name", ""),
                        "arguments": dump_arguments(function.get("arguments")),
                    },
                }
            )
        if calls:
            converted["tool_calls"] = calls
        messages.append(converted)

    result: Dict[str, Any] = {"model": ctx.model, "messages": messages}
    for option, key in _OPTIONS.items():
        value = (body.get("options") or {}).get(option)
        if value is not None:
            result[key] = value
    if body.get("format") == "json":
        result["response_format"] = {"type": "json_object"}
    elif isinstance(body.get("format"), dict):
        result["response_format"] = {
            "type": "json_schema",
            "json_schema": {"name": "response", "schema": body["format"]},
        }
    if body.get("tools"):
        result["tools"] = body["tools"]
    if "stream" in body:
        result["stream"] = body["stream"]
    return result


def request_from_hub(body: Dict[str, Any], ctx: TranslationContext) -> Dict[str, Any]:
    messages = []
    for message in body.get("messages") or []:
        role = message.get("role", "user")
        if role == "developer":
            role = "system"
        texts = []
        images = []
        for part in content_parts(message.get("content")):
            kind = part.get("type")
            if kind == "text":
                texts.append(part.get("text", ""))
            elif kind == "image_url":
                parsed = parse_data_url(image_url_of(part))
                if parsed is None:
                    ctx.drop("image_url")
                else:
                    images.append(parsed[1])
            else:
                ctx.drop(kind or "unknown")
        converted: Dict[str, Any] = {"role": role, "content": "".join(texts)}
        if images:
            converted["images"] = images
        calls = []
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            calls.append(
                {
                    "function": {
                        "name": function.get("name", ""),
                        "arguments": parse_arguments(function.get("arguments")),
                    }
                }
            )
        if calls:
            converted["tool_calls"] = calls
        messages.append(converted)

    result: Dict[str, Any] = {"model": ctx.model, "messages": messages, "stream": ctx.stream}
    options = {}
    for option, key in _OPTIONS.items():
        value = body.get(key)
        if key == "max_tokens" and value is None:
            value = body.get("max_completion_tokens")
        if value is not None:
            options[option] = value
    if options:
        result["options"] = options
    response_format = body.get("response_format") or {}
    if response_format.get("type") == "json_object":
        result["format"] = "json"
    elif response_format.get("type") == "json_schema":
        result["format"] = (response_format.get("json_schema") or {}).get("schema", "json")
    if body.get("tools"):
        result["tools"] = body["tools"]
    return result


def _hub_calls(calls: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "id": call.get("id") or new_id("call_"),
            "type": "function",
            "function": {
                "name": (call.get("function") or {}).get("name", ""),
                "arguments": dump_arguments((call.get("function") or {}).get("arguments")),
            },
        }
        for call in calls
    ]


def response_to_hub(body: Dict[str, Any], model: str) -> Dict[str, Any]:
    native = body.get("message") or {}
    message: Dict[str, Any] = {"role": "assistant", "content": native.get("content") or None}
    if native.get("thinking"):
        message["reasoning_content"] = native["thinking"]
    finish = FINISH_TO_HUB.get(body.get("done_reason") or "stop", "stop")
    if native.get("tool_calls"):
        message["tool_calls"] = _hub_calls(native["tool_calls"])
        finish = "tool_calls"
    return {
        "id": new_id("chatcmpl-"),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": body.get("model") or model,
        "choices": [{"index": 0, "message": message, "finish_reason": finish}],
        "usage": make_usage(body.get("prompt_eval_count", 0), body.get("eval_count", 0)),
    }


def response_from_hub(body: Dict[str, Any], model: str) -> Dict[str, Any]:
    choice = (body.get("choices") or [{}])[0]
    hub = choice.get("message") or {}
    message: Dict[str, Any] = {"role": "assistant", "content": text_of(hub.get("content"))}
    if hub.get("tool_calls"):
        message["tool_calls"] = [
            {
                "function": {
                    "name": (call.get("function") or {}).get("name", ""),
                    "arguments": parse_arguments((call.get("function") or {}).get("arguments")),
                }
            }
            for call in hub["tool_calls"]
        ]
    usage = body.get("usage") or {}
    return {
        "model": body.get("model") or model,
        "created_at": _now(),
        "message": message,
        "done": True,
        "done_reason": "length" if choice.get("finish_reason") == "length" else "stop",
        "prompt_eval_count": usage.get("prompt_tokens", 0),
        "eval_count": usage.get("completion_tokens", 0),
    }


class OllamaDecoder(StreamDecoder):
    """Ollama NDJSON objects -> OpenAI chunks."""

    def __init__(self, model: str = "") -> None:
        super().__init__(model)
        self.started = False
        self.tool_count = 0

    def decode(self, payload: Dict[str, Any], event: Optional[str] = None) -> List[Dict[str, Any]]:
        chunks = []
        message = payload.get("message") or {}
        if not self.started:
            self.started = True
            chunks.append(self.chunk({"role": "assistant", "content": ""}))
        if message.get("thinking"):
            chunks.append(self.chunk({"reasoning_content": message["thinking"]}))
        if message.get("content"):
            chunks.append(self.chunk({"content": message["content"]}))
        calls = []
        for call in _hub_calls(message.get("tool_calls") or []):
            call["index"] = self.tool_count
            self.tool_count += 1
            calls.append(call)
        if calls:
            chunks.append(self.chunk({"tool_calls": calls}))
        if payload.get("done"):
            self.done = True
            if self.tool_count:
                finish = "tool_calls"
            else:
                finish = FINISH_TO_HUB.get(payload.get("done_reason") or "stop", "stop")
            usage = make_usage(payload.get("prompt_eval_count", 0), payload.get("eval_count", 0))
            chunks.append(self.chunk(finish_reason=finish, usage=usage))
        return chunks

    def flush(self) -> List[Dict[str, Any]]:
        if not self.started or self.done:
            return []
        self.done = True
        return [self.chunk(finish_reason="stop")]


class OllamaEncoder(StreamEncoder):
    """OpenAI chunks -> Ollama NDJSON lines."""

    def __init__(self, model: str = "") -> None:
        super().__init__(model)
        self.tool_calls: Dict[int, Dict[str, Any]] = {}
        self.finish_reason: Optional[str] = None
        self.usage: Dict[str, Any] = {}

    @staticmethod
    def line(payload: Dict[str, Any]) -> bytes:
        return (json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")

    def _object(self, message: Dict[str, Any], done: bool) -> Dict[str, Any]:
        return {"model": self.model, "created_at": _now(), "message": message, "done": done}

    def encode(self, chunk: Dict[str, Any]) -> List[bytes]:
        lines = []
        if chunk.get("usage"):
            self.usage = chunk["usage"]
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                message = {"role": "assistant", "content": delta["content"]}
                lines.append(self.line(self._object(message, False)))
            if delta.get("reasoning_content"):
                message = {"role": "assistant", "content": "", "thinking": delta["reasoning_content"]}
                lines.append(self.line(self._object(message, False)))
            for call in delta.get("tool_calls") or []:
                held = self.tool_calls.setdefault(call.get("index", 0), {"name": "", "arguments": ""})
                function = call.get("function") or {}
                if function.get("name"):
                    held["name"] = function["name"]
                if function.get("arguments"):
                    held["arguments"] += function["arguments"]
            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
        return lines

    def close(self) -> List[bytes]:
        message: Dict[str, Any] = {"role": "assistant", "content": ""}
        if self.tool_calls:
            message["tool_calls"] = [
                {"function": {"name": held["name"], "arguments": parse_arguments(held["arguments"])}}
                for _, held in sorted(self.tool_calls.items())
            ]
        final = self._object(message, True)
        final["done_reason"] = "length" if self.finish_reason == "length" else "stop"
        final["prompt_eval_count"] = self.usage.get("prompt_tokens", 0)
        final["eval_count"] = self.usage.get("completion_tokens", 0)
        return [self.line(final)]

    def error(self, status: int, message: str) -> bytes:
        return self.line({"error": build_error_body(status, message)["error"]["message"]})


OLLAMA_CODEC = Codec(
    format=WireFormat.OLLAMA_CHAT,
    request_to_hub=request_to_hub,
    request_from_hub=request_from_hub,
    response_to_hub=response_to_hub,
    response_from_hub=response_from_hub,
    decoder=OllamaDecoder,
    encoder=OllamaEncoder,
    framing="ndjson",
)
