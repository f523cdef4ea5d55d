"""Chat orchestration: one client request through to one client response.

``handle_chat_core`` detects the client's format, answers warm-up probes
locally, translates the request for the provider, dispatches it, refreshes
credentials once on 401/403 and returns the (possibly streaming) response
in the client's format. It never raises for request-level failures; those
come back as a ``ChatResult`` with ``success=False``.
"""

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from llmrelay.bypass import bypass_result
from llmrelay.config import GatewayConfig
from llmrelay.detector import detect_format
from llmrelay.disconnect import StreamController
from llmrelay.errors import (
    AuthExpired,
    ChatResult,
    ClientAbort,
    GatewayError,
    UpstreamRejected,
    UpstreamTransportFailure,
    error_result,
    format_provider_error,
    parse_upstream_error,
)
from llmrelay.formats import WireFormat, stream_media_type
from llmrelay.models import Credentials
from llmrelay.providers import ProviderRegistry
from llmrelay.refresh import refresh_credentials
from llmrelay.stream import PassthroughTransform, TranslatingTransform, relay_stream
from llmrelay.telemetry import RequestLogger, log_request, mask_headers
from llmrelay.translator import TranslatorRegistry, ensure_initialized

logger = logging.getLogger("gateway")

# Formats that carry the model in the URL rather than the body.
_MODEL_IN_URL = frozenset({WireFormat.GEMINI_GENERATE})

STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


@dataclass
class ModelInfo:
    """Resolved upstream provider and model."""

    provider: str
    model: str


@dataclass
class ChatCallbacks:
    """Notifications to the caller. Each may be sync or async."""

    on_credentials_refreshed: Optional[Callable[..., Any]] = None
    on_request_success: Optional[Callable[..., Any]] = None
    on_disconnect: Optional[Callable[..., Any]] = None


async def _notify(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def resolve_stream(body: Dict[str, Any], stream: Optional[bool] = None) -> bool:
    """Decide whether the client gets a stream.

    An explicit ``stream`` wins. Otherwise the request streams unless the
    body sets ``"stream": false``.
    """
    if stream is not None:
        return stream
    return body.get("stream") is not False


async def _send(
    client: httpx.AsyncClient,
    url: str,
    headers: Dict[str, str],
    body: Dict[str, Any],
    controller: StreamController,
) -> httpx.Response:
    request = client.build_request("POST", url, headers=headers, json=body)
    return await controller.guard(client.send(request, stream=True))


async def handle_chat_core(
    *,
    body: Dict[str, Any],
    model_info: ModelInfo,
    credentials: Credentials,
    http_client: httpx.AsyncClient,
    config: Optional[GatewayConfig] = None,
    providers: Optional[ProviderRegistry] = None,
    registry: Optional[TranslatorRegistry] = None,
    callbacks: Optional[ChatCallbacks] = None,
    log: Optional[logging.Logger] = None,
    client_raw_request: Optional[Dict[str, Any]] = None,
    source_format: Optional[WireFormat] = None,
    stream: Optional[bool] = None,
) -> ChatResult:
    """Run one chat request against its upstream provider.

    Args:
        body: Decoded client request body. Never mutated.
        model_info: Resolved provider and upstream model id.
        credentials: Provider credentials; updated in place after a
            successful refresh.
        http_client: Client used for the upstream and refresh calls.
        config: Relay configuration (bypass rules, content policy, ...).
        providers: Provider routing; built from ``config`` when omitted.
        registry: Translator registry; the process-wide one when omitted.
        callbacks: Caller notifications.
        log: Logger to use instead of the gateway logger.
        client_raw_request: ``{"endpoint", "body", "headers"}`` as received,
            for the request log.
        source_format: Client format, when the endpoint already fixes it.
        stream: Explicit streaming choice, overriding the body.

    Returns:
        A ChatResult. On success ``response`` is a JSONResponse or a
        StreamingResponse; on failure it is a JSON error response and
        ``status``/``error`` are set.
    """
    log = log or logger
    config = config or GatewayConfig()
    callbacks = callbacks or ChatCallbacks()
    registry = registry or await ensure_initialized()
    providers = providers or ProviderRegistry(config)
    provider, model = model_info.provider, model_info.model

    source = source_format or detect_format(body)
    stream = resolve_stream(body, stream)

    bypass = bypass_result(body, model, source, stream, config.bypass, registry)
    if bypass is not None:
        log.info("Bypass request answered locally (%s, %s)", source.value, model)
        return bypass

    try:
        target = providers.target_format_for(provider, model)
    except GatewayError as exc:
        return error_result(exc.status, exc.detail)

    request_log = RequestLogger(config.request_log_dir, source.value, target.value, model)

    def finish(outcome: str, status: Optional[int] = None, error: Optional[str] = None) -> None:
        log_request(
            request_id=request_log.request_id,
            provider=provider,
            model=model,
            outcome=outcome,
            source_format=source.value,
            target_format=target.value,
            stream=stream,
            status=status,
            error=error,
        )

    def failed(status: int, message: str) -> ChatResult:
        log.error("%s | %s | %s", provider, model, message)
        request_log.log_error(message, translated)
        controller.fail()
        finish("error", status, message)
        return error_result(status, message)

    if client_raw_request:
        request_log.log_client_request(
            client_raw_request.get("endpoint", ""),
            client_raw_request.get("body"),
            client_raw_request.get("headers"),
        )
    request_log.log_format_info(
        source_format=source.value,
        target_format=target.value,
        provider=provider,
        model=model,
        stream=stream,
    )
    log.debug("Format %s -> %s | stream=%s", source.value, target.value, stream)

    controller = StreamController(on_disconnect=callbacks.on_disconnect)
    translated: Dict[str, Any] = {}
    try:
        translated = registry.translate_request(
            source,
            target,
            model,
            body,
            stream,
            credentials=credentials,
            provider=provider,
            strict_formats=config.strict_content_formats,
        )
        # Gemini takes the model from the URL path, so its body has no model field.
        if target not in _MODEL_IN_URL:
            translated["model"] = model
        url = providers.build_upstream_url(provider, model, stream, credentials)
        headers = providers.build_upstream_headers(provider, credentials, stream, translated)
    except GatewayError as exc:
        return failed(exc.status, exc.detail)

    request_log.log_converted_request(url, headers, translated)
    log.debug("Upstream headers: %s", json.dumps(mask_headers(headers)))

    try:
        response = await _send(http_client, url, headers, translated, controller)
    except ClientAbort as exc:
        return failed(exc.status, exc.detail)
    except httpx.HTTPError as exc:
        error = UpstreamTransportFailure(format_provider_error(str(exc) or type(exc).__name__, 502))
        return failed(error.status, error.detail)

    if response.status_code in (401, 403):
        try:
            update = await refresh_credentials(provider, http_client, credentials, controller)
        except ClientAbort as exc:
            await response.aclose()
            return failed(exc.status, exc.detail)
        if update is None:
            log.warning("%s | credential refresh failed", provider)
        else:
            credentials.apply(update)
            await _notify(callbacks.on_credentials_refreshed, update)
            url = providers.build_upstream_url(provider, model, stream, credentials)
            headers = providers.build_upstream_headers(provider, credentials, stream, translated)
            await response.aclose()
            try:
                response = await _send(http_client, url, headers, translated, controller)
            except ClientAbort as exc:
                return failed(exc.status, exc.detail)
            except httpx.HTTPError as exc:
                error = UpstreamTransportFailure(
                    format_provider_error(str(exc) or type(exc).__name__, 502)
                )
                return failed(error.status, error.detail)

    if not response.is_success:
        status, message = await parse_upstream_error(response)
        await response.aclose()
        message = format_provider_error(message, status)
        if status in (401, 403):
            rejected: UpstreamRejected = AuthExpired(status, message)
        else:
            rejected = UpstreamRejected(status, message)
        return failed(rejected.status, rejected.detail)

    if not stream:
        try:
            raw = await controller.guard(response.aread())
        except ClientAbort as exc:
            return failed(exc.status, exc.detail)
        except httpx.HTTPError as exc:
            return failed(502, format_provider_error(str(exc) or type(exc).__name__, 502))
        finally:
            await response.aclose()
        try:
            content = json.loads(raw)
        except ValueError:
            return failed(502, format_provider_error("Invalid JSON from upstream", 502))
        await _notify(callbacks.on_request_success)
        if config.translate_json_responses:
            content = registry.translate_response(target, source, content, model)
        controller.complete()
        finish("success")
        return ChatResult(success=True, response=JSONResponse(content=content))

    await _notify(callbacks.on_request_success)
    if registry.needs_translation(target, source):
        transform: Any = TranslatingTransform(registry.stream_translator(target, source, model))
    else:
        transform = PassthroughTransform(registry.codec(source).encoder(model))
    finish("success")
    return ChatResult(
        success=True,
        response=StreamingResponse(
            relay_stream(response, transform, controller, request_log),
            media_type=stream_media_type(source),
            headers=STREAM_HEADERS,
            background=BackgroundTask(response.aclose),
        ),
    )
