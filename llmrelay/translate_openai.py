"""OpenAI chat as the translation hub.

Every other format converts to and from the OpenAI chat shape; the registry
composes those halves into a direct translator for each ordered pair. This
module holds what all codecs share: the per-call ``TranslationContext``,
the ``StreamDecoder``/``StreamEncoder`` bases, chunk and content helpers, and
the OpenAI codec itself.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from llmrelay.errors import UnsupportedContentPart, build_error_body
from llmrelay.formats import WireFormat
from llmrelay.models import Credentials

logger = logging.getLogger("gateway")


@dataclass
class TranslationContext:
    """Everything a translator may need besides the body itself."""

    model: str
    stream: bool
    target: WireFormat
    credentials: Optional[Credentials] = None
    provider: Optional[str] = None
    strict_formats: FrozenSet[WireFormat] = frozenset()

    def drop(self, kind: str) -> None:
        """Drop a content part the target cannot represent.

        Raises:
            UnsupportedContentPart: If the target format is configured as
                strict.
        """
        if self.target in self.strict_formats:
            raise UnsupportedContentPart(kind, self.target.value)
        logger.warning(
            "Dropping unsupported content part '%s' for %s", kind, self.target.value
        )


def new_id(prefix: str) -> str:
    return "{}{}".format(prefix, uuid.uuid4().hex[:24])


def make_chunk(
    chunk_id: str,
    model: str,
    created: int,
    delta: Optional[Dict[str, Any]] = None,
    finish_reason: Optional[str] = None,
    usage: Optional[Dict[str, int]] = None,
) -> Dict[str, Any]:
    """Build an OpenAI ``chat.completion.chunk``."""
    chunk: Dict[str, Any] = {
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [
            {"index": 0, "delta": delta or {}, "finish_reason": finish_reason}
        ],
    }
    if usage is not None:
        chunk["usage"] = usage
    return chunk


def make_usage(prompt: int, completion: int) -> Dict[str, int]:
    return {
        "prompt_tokens": prompt,
        "completion_tokens": completion,
        "total_tokens": prompt + completion,
    }


def content_parts(content: Any) -> List[Dict[str, Any]]:
    """Normalize OpenAI message content into a list of typed parts."""
    if content is None:
        return []
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append({"type": "text", "text": part})
        elif isinstance(part, dict):
            parts.append(part)
    return parts


def text_of(content: Any, sep: str = "") -> str:
    """Concatenate the text parts of OpenAI message content."""
    if isinstance(content, str):
        return content
    return sep.join(
        p.get("text", "") for p in content_parts(content) if p.get("type") == "text"
    )


def simplify_parts(parts: List[Dict[str, Any]]) -> Any:
    """Collapse a single text part back into a plain string."""
    if len(parts) == 1 and parts[0].get("type") == "text":
        return parts[0]["text"]
    return parts


def parse_data_url(url: str) -> Optional[Tuple[str, str]]:
    """Split ``data:<mime>;base64,<data>`` into ``(mime, data)``."""
    if not url.startswith("data:") or ";base64," not in url:
        return None
    header, data = url[5:].split(";base64,", 1)
    return header or "application/octet-stream", data


def data_url(mime: str, data: str) -> str:
    return "data:{};base64,{}".format(mime, data)


def image_url_of(part: Dict[str, Any]) -> str:
    image = part.get("image_url")
    if isinstance(image, dict):
        return image.get("url", "")
    return image or ""


def parse_arguments(arguments: Any) -> Dict[str, Any]:
    """Decode tool-call arguments, tolerating partial or invalid JSON."""
    if isinstance(arguments, dict):
        return arguments
    if not arguments:
        return {}
    try:
        value = json.loads(arguments)
    except ValueError:
        logger.warning("Tool call arguments are not valid JSON; sending {}")
        return {}
    return value if isinstance(value, dict) else {"value": value}


def dump_arguments(arguments: Any) -> str:
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments or {}, ensure_ascii=False)


class StreamDecoder:
    """Turns native upstream stream payloads into OpenAI chat chunks."""

    def __init__(self, model: str = "") -> None:
        self.model = model
        self.chunk_id = new_id("chatcmpl-")
        self.created = int(time.time())
        self.done = False

    def decode(self, payload: Dict[str, Any], event: Optional[str] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def flush(self) -> List[Dict[str, Any]]:
        return []

    def chunk(
        self,
        delta: Optional[Dict[str, Any]] = None,
        finish_reason: Optional[str] = None,
        usage: Optional[Dict[str, int]] = None,
    ) -> Dict[str, Any]:
        return make_chunk(
            self.chunk_id, self.model, self.created, delta, finish_reason, usage
        )


class StreamEncoder:
    """Turns OpenAI chat chunks into frames of the client's format."""

    def __init__(self, model: str = "") -> None:
        self.model = model
        self.finished = False

    def encode(self, chunk: Dict[str, Any]) -> List[bytes]:
        raise NotImplementedError

    def finish(self) -> List[bytes]:
        """Emit held state and the terminal marker. Idempotent."""
        if self.finished:
            return []
        self.finished = True
        return self.close()

    def close(self) -> List[bytes]:
        return []

    def error(self, status: int, message: str) -> bytes:
        return self.frame(build_error_body(status, message))

    @staticmethod
    def frame(payload: Any, event: Optional[str] = None) -> bytes:
        data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        if event:
            return "event: {}\ndata: {}\n\n".format(event, data).encode("utf-8")
        return "data: {}\n\n".format(data).encode("utf-8")


@dataclass
class Codec:
    """Request, response and stream converters between one format and the hub."""

    format: WireFormat
    request_to_hub: Callable[[Dict[str, Any], TranslationContext], Dict[str, Any]]
    request_from_hub: Callable[[Dict[str, Any], TranslationContext], Dict[str, Any]]
    response_to_hub: Callable[[Dict[str, Any], str], Dict[str, Any]]
    response_from_hub: Callable[[Dict[str, Any], str], Dict[str, Any]]
    decoder: Callable[[str], StreamDecoder]
    encoder: Callable[[str], StreamEncoder]
    framing: str = field(default="sse")


# --- OpenAI chat -----------------------------------------------------------


def _identity(body: Dict[str, Any], ctx: TranslationContext) -> Dict[str, Any]:
    return dict(body)


def _request_from_hub(body: Dict[str, Any], ctx: TranslationContext) -> Dict[str, Any]:
    result = dict(body)
    result["stream"] = ctx.stream
    if ctx.stream:
        options = dict(result.get("stream_options") or {})
        options["include_usage"] = True
        result["stream_options"] = options
    else:
        result.pop("stream_options", None)
    return result


def _response_identity(body: Dict[str, Any], model: str) -> Dict[str, Any]:
    return body


class OpenAIDecoder(StreamDecoder):
    """OpenAI chunks already are hub chunks."""

    def decode(self, payload: Dict[str, Any], event: Optional[str] = None) -> List[Dict[str, Any]]:
        if "choices" in payload or "usage" in payload:
            return [payload]
        return []


class OpenAIEncoder(StreamEncoder):
    def encode(self, chunk: Dict[str, Any]) -> List[bytes]:
        return [self.frame(chunk)]

    def close(self) -> List[bytes]:
        return [b"data: [DONE]\n\n"]


OPENAI_CODEC = Codec(
    format=WireFormat.OPENAI_CHAT,
    request_to_hub=_identity,
    request_from_hub=_request_from_hub,
    response_to_hub=_response_identity,
    response_from_hub=_response_identity,
    decoder=OpenAIDecoder,
    encoder=OpenAIEncoder,
)
