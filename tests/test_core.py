"""Tests for the chat orchestrator against a mocked upstream."""

import asyncio
import json
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List

import httpx
import pytest

from llmrelay.config import GatewayConfig
from llmrelay.core import ChatCallbacks, ModelInfo, handle_chat_core, resolve_stream
from llmrelay.models import Credentials
from llmrelay.sse import FrameParser

CLAUDE_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"

CLAUDE_REPLY = {
    "id": "msg_1",
    "type": "message",
    "role": "assistant",
    "model": "claude-test",
    "content": [{"type": "text", "text": "Hi!"}],
    "stop_reason": "end_turn",
    "usage": {"input_tokens": 3, "output_tokens": 2},
}


class Upstream:
    """Records upstream requests and answers them with a handler."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def bodies(self, host: str = "") -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if host in str(r.url)]


def _chat(content: str = "Hello", **extra: Any) -> Dict[str, Any]:
    body = {
        "model": "client-model",
        "messages": [{"role": "user", "content": content}],
        "stream": False,
    }
    body.update(extra)
    return body


async def _body(response) -> bytes:
    chunks = []
    async for chunk in response.body_iterator:
        chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8"))
    return b"".join(chunks)


def _sse(raw: bytes) -> List[Dict[str, Any]]:
    parser = FrameParser()
    frames = parser.feed(raw) + parser.close()
    return [json.loads(f.data) for f in frames if f.data != "[DONE]"]


def test_resolve_stream_precedence() -> None:
    """An explicit argument wins; otherwise requests stream unless they opt out."""
    assert resolve_stream({"stream": True}, False) is False
    assert resolve_stream({"stream": False}, True) is True
    assert resolve_stream({"stream": True}) is True
    assert resolve_stream({"stream": False}) is False
    assert resolve_stream({}) is True
    assert resolve_stream({"stream": None}) is True


@pytest.mark.asyncio
async def test_identity_passthrough_rewrites_only_model(test_config: GatewayConfig) -> None:
    """Same-format requests reach the upstream unchanged except for the model."""
    upstream = Upstream(
        lambda r: httpx.Response(200, json={"id": "x", "choices": [{"message": {"content": "ok"}}]})
    )
    body = _chat(temperature=0.3, stream=False, custom_field={"kept": True})
    async with upstream.client() as client:
        result = await handle_chat_core(
            body=body,
            model_info=ModelInfo(provider="test-provider", model="test-model"),
            credentials=Credentials(api_key="sk-test"),
            http_client=client,
            config=test_config,
        )

    assert result.success
    sent = upstream.bodies()[0]
    assert sent == dict(body, model="test-model")
    assert body["model"] == "client-model"
    assert upstream.requests[0].headers["Authorization"] == "Bearer sk-test"
    assert str(upstream.requests[0].url) == "https://api.example.com/v1/chat/completions"
    assert json.loads(result.response.body) == {"id": "x", "choices": [{"message": {"content": "ok"}}]}


@pytest.mark.asyncio
async def test_gemini_model_travels_in_url(test_config: GatewayConfig) -> None:
    """Gemini upstreams get the model in the URL path and not in the body."""
    upstream = Upstream(lambda r: httpx.Response(200, json={"candidates": []}))
    async with upstream.client() as client:
        result = await handle_chat_core(
            body=_chat(),
            model_info=ModelInfo(provider="gemini", model="gemini-test"),
            credentials=Credentials(api_key="g-key"),
            http_client=client,
            config=test_config,
        )

    assert result.success
    assert "models/gemini-test:generateContent" in str(upstream.requests[0].url)
    assert "model" not in upstream.bodies()[0]


@pytest.mark.asyncio
async def test_non_stream_translated_response(make_config: Callable[..., GatewayConfig]) -> None:
    """With JSON translation enabled the client gets its own format back."""
    config = make_config({"translate_json_responses": True})
    upstream = Upstream(lambda r: httpx.Response(200, json=CLAUDE_REPLY))
    async with upstream.client() as client:
        result = await handle_chat_core(
            body=_chat(),
            model_info=ModelInfo(provider="anthropic", model="claude-test"),
            credentials=Credentials(api_key="sk-ant"),
            http_client=client,
            config=config,
        )

    assert result.success
    sent = upstream.bodies()[0]
    assert sent["model"] == "claude-test"
    assert sent["messages"] == [{"role": "user", "content": "Hello"}]
    assert sent["stream"] is False
    content = json.loads(result.response.body)
    assert content["choices"][0]["message"]["content"] == "Hi!"
    assert content["usage"]["total_tokens"] == 5


@pytest.mark.asyncio
async def test_non_stream_verbatim_by_default(test_config: GatewayConfig) -> None:
    """Without JSON translation the provider body is returned as-is."""
    upstream = Upstream(lambda r: httpx.Response(200, json=CLAUDE_REPLY))
    async with upstream.client() as client:
        result = await handle_chat_core(
            body=_chat(),
            model_info=ModelInfo(provider="anthropic", model="claude-test"),
            credentials=Credentials(api_key="sk-ant"),
            http_client=client,
            config=test_config,
        )
    assert json.loads(result.response.body) == CLAUDE_REPLY


@pytest.mark.asyncio
async def test_refresh_on_401_retries_once(test_config: GatewayConfig) -> None:
    """A 401 with a successful refresh notifies the caller and retries once."""

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == CLAUDE_TOKEN_URL:
            return httpx.Response(200, json={"access_token": "new-token", "refresh_token": "rt2"})
        if request.headers["Authorization"] == "Bearer new-token":
            return httpx.Response(200, json=CLAUDE_REPLY)
        return httpx.Response(401, json={"error": {"message": "token expired"}})

    upstream = Upstream(handler)
    refreshed = []
    successes = []
    credentials = Credentials(access_token="old-token", refresh_token="rt")
    callbacks = ChatCallbacks(
        on_credentials_refreshed=refreshed.append,
        on_request_success=lambda: successes.append(True),
    )
    async with upstream.client() as client:
        result = await handle_chat_core(
            body=_chat(),
            model_info=ModelInfo(provider="claude", model="claude-test"),
            credentials=credentials,
            http_client=client,
            config=test_config,
            callbacks=callbacks,
        )

    assert result.success
    upstream_calls = [r for r in upstream.requests if "api.anthropic.com" in str(r.url)]
    assert len(upstream_calls) == 2
    assert len(refreshed) == 1
    assert refreshed[0].access_token == "new-token"
    assert credentials.access_token == "new-token"
    assert credentials.refresh_token == "rt2"
    assert successes == [True]


@pytest.mark.asyncio
async def test_failed_refresh_surfaces_original_error(test_config: GatewayConfig) -> None:
    """A 401 whose refresh fails is reported without retrying the upstream."""

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == CLAUDE_TOKEN_URL:
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(401, json={"error": {"message": "token expired"}})

    upstream = Upstream(handler)
    refreshed = []
    async with upstream.client() as client:
        result = await handle_chat_core(
            body=_chat(),
            model_info=ModelInfo(provider="claude", model="claude-test"),
            credentials=Credentials(access_token="old", refresh_token="rt"),
            http_client=client,
            config=test_config,
            callbacks=ChatCallbacks(on_credentials_refreshed=refreshed.append),
        )

    assert not result.success
    assert result.status == 401
    assert result.error == "[401]: token expired"
    upstream_calls = [r for r in upstream.requests if "api.anthropic.com" in str(r.url)]
    assert len(upstream_calls) == 1
    assert refreshed == []
    assert result.response.status_code == 401


@pytest.mark.asyncio
async def test_garbled_token_reply_is_reported(test_config: GatewayConfig) -> None:
    """A token endpoint answering with HTML yields the original 401 result."""

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == CLAUDE_TOKEN_URL:
            return httpx.Response(200, text="<html>maintenance</html>")
        return httpx.Response(401, json={"error": {"message": "token expired"}})

    async with Upstream(handler).client() as client:
        result = await handle_chat_core(
            body=_chat(),
            model_info=ModelInfo(provider="claude", model="claude-test"),
            credentials=Credentials(access_token="old", refresh_token="rt"),
            http_client=client,
            config=test_config,
        )

    assert not result.success
    assert result.status == 401
    assert result.error == "[401]: token expired"


@pytest.mark.asyncio
async def test_rate_limit_is_not_retried(test_config: GatewayConfig) -> None:
    """A 429 is surfaced with its message and never retried."""
    upstream = Upstream(
        lambda r: httpx.Response(429, json={"error": {"message": "rate limited"}})
    )
    async with upstream.client() as client:
        result = await handle_chat_core(
            body=_chat(),
            model_info=ModelInfo(provider="test-provider", model="test-model"),
            credentials=Credentials(api_key="k"),
            http_client=client,
            config=test_config,
        )

    assert not result.success
    assert result.status == 429
    assert result.error == "[429]: rate limited"
    assert len(upstream.requests) == 1
    body = json.loads(result.response.body)
    assert body["error"]["type"] == "rate_limit_error"


@pytest.mark.asyncio
async def test_transport_failure_is_502(test_config: GatewayConfig) -> None:
    """An unreachable upstream is a 502."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with Upstream(handler).client() as client:
        result = await handle_chat_core(
            body=_chat(),
            model_info=ModelInfo(provider="test-provider", model="test-model"),
            credentials=Credentials(api_key="k"),
            http_client=client,
            config=test_config,
        )

    assert result.status == 502
    assert result.error == "[502]: connection refused"


@pytest.mark.asyncio
async def test_streaming_translation(test_config: GatewayConfig) -> None:
    """An Anthropic client streaming from an OpenAI upstream gets Anthropic events."""
    chunks = "".join(
        "data: {}\n\n".format(
            json.dumps({"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}]})
        )
        for text in ("One ", "two ", "three")
    )
    raw = (chunks + "data: [DONE]\n\n").encode("utf-8")
    upstream = Upstream(lambda r: httpx.Response(200, content=raw))
    body = {
        "model": "claude-chat",
        "system": "be brief",
        "max_tokens": 64,
        "stream": True,
        "messages": [{"role": "user", "content": "count"}],
    }
    async with upstream.client() as client:
        result = await handle_chat_core(
            body=body,
            model_info=ModelInfo(provider="test-provider", model="test-model"),
            credentials=Credentials(api_key="k"),
            http_client=client,
            config=test_config,
        )
        assert result.success
        assert result.response.media_type == "text/event-stream"
        raw_client = await _body(result.response)

    sent = upstream.bodies()[0]
    assert sent["stream"] is True
    assert sent["stream_options"] == {"include_usage": True}
    assert sent["messages"][0] == {"role": "system", "content": "be brief"}
    events = _sse(raw_client)
    kinds = [e["type"] for e in events]
    assert kinds[0] == "message_start"
    assert kinds.count("message_stop") == 1
    text = "".join(e["delta"]["text"] for e in events if e["type"] == "content_block_delta")
    assert text == "One two three"


@pytest.mark.asyncio
async def test_streaming_passthrough(test_config: GatewayConfig) -> None:
    """Same-format streams are relayed byte for byte."""
    raw = b'data: {"choices":[{"index":0,"delta":{"content":"hi"}}]}\n\ndata: [DONE]\n\n'
    upstream = Upstream(lambda r: httpx.Response(200, content=raw))
    async with upstream.client() as client:
        result = await handle_chat_core(
            body=_chat(stream=True),
            model_info=ModelInfo(provider="test-provider", model="test-model"),
            credentials=Credentials(api_key="k"),
            http_client=client,
            config=test_config,
        )
        assert await _body(result.response) == raw


@pytest.mark.asyncio
async def test_unread_stream_is_closed_after_response(test_config: GatewayConfig) -> None:
    """The upstream stream is closed even if the client never starts reading."""
    replies: List[httpx.Response] = []

    def handler(request: httpx.Request) -> httpx.Response:
        async def events() -> AsyncIterator[bytes]:
            yield b"data: [DONE]\n\n"

        reply = httpx.Response(200, content=events())
        replies.append(reply)
        return reply

    async with Upstream(handler).client() as client:
        result = await handle_chat_core(
            body=_chat(stream=True),
            model_info=ModelInfo(provider="test-provider", model="test-model"),
            credentials=Credentials(api_key="k"),
            http_client=client,
            config=test_config,
        )
        assert not replies[0].is_closed
        await result.response.background()

    assert replies[0].is_closed


@pytest.mark.asyncio
async def test_bypass_never_reaches_upstream(test_config: GatewayConfig) -> None:
    """Warm-up probes are answered locally in the client's format."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("bypass request reached the upstream")

    body = {
        "system": "x",
        "max_tokens": 5,
        "stream": False,
        "messages": [{"role": "user", "content": "Warmup"}],
    }
    async with Upstream(handler).client() as client:
        result = await handle_chat_core(
            body=body,
            model_info=ModelInfo(provider="anthropic", model="claude-test"),
            credentials=Credentials(),
            http_client=client,
            config=test_config,
        )
    assert result.success
    content = json.loads(result.response.body)
    assert content["type"] == "message"
    assert content["content"] == [{"type": "text", "text": "OK"}]


@pytest.mark.asyncio
async def test_strict_content_policy(make_config: Callable[..., GatewayConfig]) -> None:
    """Strict targets reject parts they cannot represent before dispatch."""
    config = make_config({"strict_content_formats": ["anthropic-messages"]})

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("rejected request reached the upstream")

    body = {
        "messages": [
            {
                "role": "user",
                "content": [{"type": "input_audio", "input_audio": {"data": "x", "format": "wav"}}],
            }
        ]
    }
    async with Upstream(handler).client() as client:
        result = await handle_chat_core(
            body=body,
            model_info=ModelInfo(provider="anthropic", model="claude-test"),
            credentials=Credentials(api_key="k"),
            http_client=client,
            config=config,
        )
    assert result.status == 400
    assert "input_audio" in result.error


@pytest.mark.asyncio
async def test_unknown_provider_is_error_result(test_config: GatewayConfig) -> None:
    """Providers that cannot be reached are reported, not raised."""
    async with Upstream(lambda r: httpx.Response(200)).client() as client:
        result = await handle_chat_core(
            body=_chat(),
            model_info=ModelInfo(provider="nowhere", model="m"),
            credentials=Credentials(),
            http_client=client,
            config=test_config,
        )
    assert not result.success
    assert result.status == 400


@pytest.mark.asyncio
async def test_cancelled_request_notifies_disconnect(test_config: GatewayConfig) -> None:
    """Cancelling the request task aborts the upstream call and notifies the caller."""
    reached = asyncio.Event()
    reasons = []

    async def handler(request: httpx.Request) -> httpx.Response:
        reached.set()
        await asyncio.sleep(10)
        return httpx.Response(200, json={})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    task = asyncio.ensure_future(
        handle_chat_core(
            body=_chat(),
            model_info=ModelInfo(provider="test-provider", model="test-model"),
            credentials=Credentials(api_key="k"),
            http_client=client,
            config=test_config,
            callbacks=ChatCallbacks(on_disconnect=reasons.append),
        )
    )
    await asyncio.wait_for(reached.wait(), timeout=1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await client.aclose()
    assert reasons == ["request task cancelled"]


@pytest.mark.asyncio
async def test_request_log_written(make_config: Callable[..., GatewayConfig], tmp_path: Path) -> None:
    """A configured request log directory receives the conversion trail."""
    log_dir = tmp_path / "requests"
    config = make_config({"request_log_dir": str(log_dir)})
    upstream = Upstream(lambda r: httpx.Response(200, json={"choices": []}))
    async with upstream.client() as client:
        await handle_chat_core(
            body=_chat(),
            model_info=ModelInfo(provider="test-provider", model="test-model"),
            credentials=Credentials(api_key="sk-secret-value"),
            http_client=client,
            config=config,
            client_raw_request={"endpoint": "/v1/chat/completions", "body": _chat(), "headers": {}},
        )

    files = list(log_dir.glob("*.jsonl"))
    assert len(files) == 1
    records = [json.loads(line) for line in files[0].read_text().splitlines()]
    kinds = [r["kind"] for r in records]
    assert kinds == ["client_request", "format", "converted_request"]
    assert "sk-secret-value" not in files[0].read_text()
