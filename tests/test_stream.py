"""Tests for the streaming relay and its transforms."""

import json
from typing import AsyncIterator, List

import httpx
import pytest

from llmrelay.disconnect import StreamController, StreamState
from llmrelay.formats import WireFormat
from llmrelay.sse import FrameParser
from llmrelay.stream import PassthroughTransform, TranslatingTransform, relay_stream
from llmrelay.translate_openai import OpenAIEncoder
from llmrelay.translator import get_registry


def _openai_chunk(content: str = "", finish: str = None) -> str:
    delta = {"content": content} if content else {}
    payload = {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 1,
        "model": "up",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish}],
    }
    return "data: {}\n\n".format(json.dumps(payload))


OPENAI_STREAM = (
    _openai_chunk("Hel") + _openai_chunk("lo ") + _openai_chunk("world") + "data: [DONE]\n\n"
).encode("utf-8")

CLAUDE_STREAM = "".join(
    "event: {}\ndata: {}\n\n".format(payload["type"], json.dumps(payload, ensure_ascii=False))
    for payload in [
        {"type": "message_start", "message": {"id": "msg_1", "model": "claude", "usage": {"input_tokens": 3}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "héllo "}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "世界"}},
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 2}},
        {"type": "message_stop"},
    ]
).encode("utf-8")


def _upstream(pieces: List[bytes]) -> httpx.Response:
    async def body() -> AsyncIterator[bytes]:
        for piece in pieces:
            yield piece

    return httpx.Response(200, content=body(), request=httpx.Request("POST", "https://upstream.test"))


async def _collect(agen) -> List[bytes]:
    return [frame async for frame in agen]


def _sse_payloads(frames: List[bytes]) -> List[dict]:
    parser = FrameParser()
    parsed = []
    for frame in frames:
        parsed.extend(parser.feed(frame))
    parsed.extend(parser.close())
    return [json.loads(f.data) for f in parsed if f.data != "[DONE]"]


@pytest.mark.asyncio
async def test_passthrough_is_byte_identical() -> None:
    """Same-format streams reach the client unmodified."""
    pieces = [OPENAI_STREAM[:17], OPENAI_STREAM[17:80], OPENAI_STREAM[80:]]
    controller = StreamController()
    upstream = _upstream(pieces)
    frames = await _collect(
        relay_stream(upstream, PassthroughTransform(OpenAIEncoder()), controller)
    )
    assert b"".join(frames) == OPENAI_STREAM
    assert controller.state == StreamState.COMPLETED
    assert upstream.is_closed


@pytest.mark.asyncio
async def test_translated_stream_has_one_terminal_marker() -> None:
    """Three deltas and [DONE] translate into one Anthropic message_stop."""
    translator = get_registry().stream_translator(
        WireFormat.OPENAI_CHAT, WireFormat.ANTHROPIC_MESSAGES, "up"
    )
    frames = await _collect(
        relay_stream(_upstream([OPENAI_STREAM]), TranslatingTransform(translator), StreamController())
    )
    payloads = _sse_payloads(frames)
    kinds = [p["type"] for p in payloads]
    assert kinds.count("message_stop") == 1
    assert kinds[-1] == "message_stop"
    text = "".join(
        p["delta"]["text"] for p in payloads if p["type"] == "content_block_delta"
    )
    assert text == "Hello world"


@pytest.mark.asyncio
async def test_stream_without_done_still_terminates() -> None:
    """A stream that just ends gets the client terminal marker once."""
    raw = OPENAI_STREAM.replace(b"data: [DONE]\n\n", b"")
    translator = get_registry().stream_translator(
        WireFormat.OPENAI_CHAT, WireFormat.OPENAI_RESPONSES, "up"
    )
    frames = await _collect(
        relay_stream(_upstream([raw]), TranslatingTransform(translator), StreamController())
    )
    kinds = [p["type"] for p in _sse_payloads(frames)]
    assert kinds.count("response.completed") == 1


def _normalized(frames: List[bytes]) -> List[dict]:
    payloads = _sse_payloads(frames)
    for payload in payloads:
        payload.pop("created", None)
    return payloads


@pytest.mark.asyncio
async def test_chunk_splits_do_not_change_output() -> None:
    """Any split of the upstream bytes yields the same client frames."""
    registry = get_registry()

    async def run(pieces: List[bytes]) -> List[dict]:
        translator = registry.stream_translator(
            WireFormat.ANTHROPIC_MESSAGES, WireFormat.OPENAI_CHAT, "claude"
        )
        frames = await _collect(
            relay_stream(_upstream(pieces), TranslatingTransform(translator), StreamController())
        )
        return _normalized(frames)

    expected = await run([CLAUDE_STREAM])
    assert "".join(
        c["choices"][0]["delta"].get("content", "") for c in expected if c.get("choices")
    ) == "héllo 世界"
    for cut in range(1, len(CLAUDE_STREAM), 7):
        assert await run([CLAUDE_STREAM[:cut], CLAUDE_STREAM[cut:]]) == expected
    assert await run([CLAUDE_STREAM[i:i + 1] for i in range(len(CLAUDE_STREAM))]) == expected


@pytest.mark.asyncio
async def test_malformed_first_frame_closes_stream() -> None:
    """A malformed first frame becomes one error frame and nothing else."""
    raw = b"data: {not json\n\n" + OPENAI_STREAM
    translator = get_registry().stream_translator(
        WireFormat.OPENAI_CHAT, WireFormat.OPENAI_CHAT, "up"
    )
    frames = await _collect(
        relay_stream(_upstream([raw]), TranslatingTransform(translator), StreamController())
    )
    payloads = _sse_payloads(frames)
    assert len(payloads) == 1
    assert payloads[0]["error"]["code"] == "bad_gateway"


@pytest.mark.asyncio
async def test_failed_stream_stops_reading_upstream() -> None:
    """After the client stream fails closed no further upstream chunks are pulled."""
    pulled = []

    async def body() -> AsyncIterator[bytes]:
        yield b"data: {not json\n\n"
        for i in range(50):
            pulled.append(i)
            yield _openai_chunk("x").encode("utf-8")

    upstream = httpx.Response(200, content=body(), request=httpx.Request("POST", "https://u.test"))
    translator = get_registry().stream_translator(
        WireFormat.OPENAI_CHAT, WireFormat.ANTHROPIC_MESSAGES, "up"
    )
    controller = StreamController()
    frames = await _collect(relay_stream(upstream, TranslatingTransform(translator), controller))

    assert len(_sse_payloads(frames)) == 1
    assert pulled == []
    assert controller.state == StreamState.ERRORED
    assert upstream.is_closed


@pytest.mark.asyncio
async def test_malformed_later_frame_is_skipped() -> None:
    """Malformed frames after the first are dropped; the stream continues."""
    raw = OPENAI_STREAM.replace(b"data: [DONE]", b"data: {oops\n\ndata: [DONE]")
    translator = get_registry().stream_translator(
        WireFormat.OPENAI_CHAT, WireFormat.OLLAMA_CHAT, "up"
    )
    frames = await _collect(
        relay_stream(_upstream([raw]), TranslatingTransform(translator), StreamController())
    )
    objects = [json.loads(line) for line in b"".join(frames).splitlines()]
    assert "".join(o["message"]["content"] for o in objects) == "Hello world"
    assert objects[-1]["done"] is True


@pytest.mark.asyncio
async def test_upstream_error_payload_becomes_error_frame() -> None:
    """An error object in the stream is reported in the client's format."""
    raw = b'data: {"error": {"message": "overloaded"}}\n\n'
    translator = get_registry().stream_translator(
        WireFormat.OPENAI_CHAT, WireFormat.ANTHROPIC_MESSAGES, "up"
    )
    frames = await _collect(
        relay_stream(_upstream([raw]), TranslatingTransform(translator), StreamController())
    )
    payloads = _sse_payloads(frames)
    assert payloads == [
        {"type": "error", "error": {"type": "server_error", "message": "[502]: overloaded"}}
    ]


@pytest.mark.asyncio
async def test_transport_failure_mid_stream() -> None:
    """A broken upstream connection ends the stream with an error frame."""

    async def body() -> AsyncIterator[bytes]:
        yield OPENAI_STREAM[:40]
        raise httpx.ReadError("connection reset")

    upstream = httpx.Response(200, content=body(), request=httpx.Request("POST", "https://u.test"))
    controller = StreamController()
    frames = await _collect(
        relay_stream(upstream, PassthroughTransform(OpenAIEncoder()), controller)
    )
    assert frames[0] == OPENAI_STREAM[:40]
    error = json.loads(frames[-1].decode("utf-8")[len("data: "):])
    assert error["error"]["message"] == "[502]: connection reset"
    assert controller.state == StreamState.ERRORED


@pytest.mark.asyncio
async def test_client_disconnect_aborts_upstream() -> None:
    """Closing the client iterator aborts the controller and closes upstream."""
    reasons = []
    controller = StreamController(on_disconnect=reasons.append)
    upstream = _upstream([OPENAI_STREAM[:40], OPENAI_STREAM[40:]])
    agen = relay_stream(upstream, PassthroughTransform(OpenAIEncoder()), controller)

    first = await agen.__anext__()
    assert first == OPENAI_STREAM[:40]
    await agen.aclose()

    assert controller.signal.is_set()
    assert controller.state == StreamState.ABORTED
    assert reasons == ["client disconnected"]
    assert upstream.is_closed
