"""Local answers for warm-up and liveness probes.

Requests whose model is a configured sentinel, or whose only user text is a
configured warm-up text, get a canned reply in the client's own format and
never reach an upstream.
"""

import time
from typing import Any, Dict, Iterator, List, Optional

from fastapi.responses import JSONResponse, StreamingResponse

from llmrelay.config import BypassConfig
from llmrelay.errors import ChatResult
from llmrelay.formats import WireFormat, stream_media_type
from llmrelay.translate_openai import make_chunk, make_usage, new_id, text_of
from llmrelay.translator import TranslatorRegistry


def _user_texts(body: Dict[str, Any]) -> List[str]:
    """Collect user text from any supported request shape."""
    texts = []
    for message in body.get("messages") or []:
        if isinstance(message, dict) and message.get("role") == "user":
            texts.append(text_of(message.get("content")))
    if isinstance(body.get("input"), str):
        texts.append(body["input"])
    request = body.get("request") if isinstance(body.get("request"), dict) else body
    for content in request.get("contents") or []:
        if isinstance(content, dict) and content.get("role", "user") == "user":
            texts.append("".join(p.get("text", "") for p in content.get("parts") or []))
    return texts


def is_bypass(body: Dict[str, Any], model: str, config: BypassConfig) -> bool:
    if model in config.models or body.get("model") in config.models:
        return True
    probes = {text.strip().lower() for text in config.texts}
    texts = [t.strip().lower() for t in _user_texts(body) if t.strip()]
    return bool(texts) and all(t in probes for t in texts)


def _frames(registry: TranslatorRegistry, source: WireFormat, model: str, reply: str) -> Iterator[bytes]:
    encoder = registry.codec(source).encoder(model)
    chunk_id = new_id("chatcmpl-")
    created = int(time.time())
    chunks = [
        make_chunk(chunk_id, model, created, {"role": "assistant", "content": ""}),
        make_chunk(chunk_id, model, created, {"content": reply}),
        make_chunk(chunk_id, model, created, finish_reason="stop", usage=make_usage(0, 0)),
    ]
    for chunk in chunks:
        for frame in encoder.encode(chunk):
            yield frame
    for frame in encoder.finish():
        yield frame


def bypass_result(
    body: Dict[str, Any],
    model: str,
    source: WireFormat,
    stream: bool,
    config: BypassConfig,
    registry: TranslatorRegistry,
) -> Optional[ChatResult]:
    """Return a canned success result, or None if the request is not a probe."""
    if not is_bypass(body, model, config):
        return None
    if stream:
        response = StreamingResponse(
            _frames(registry, source, model, config.reply),
            media_type=stream_media_type(source),
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )
        return ChatResult(success=True, response=response)
    hub = {
        "id": new_id("chatcmpl-"),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": config.reply},
                "finish_reason": "stop",
            }
        ],
        "usage": make_usage(0, 0),
    }
    content = registry.translate_response(WireFormat.OPENAI_CHAT, source, hub, model)
    return ChatResult(success=True, response=JSONResponse(content=content))
