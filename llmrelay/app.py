"""FastAPI application for the LLM relay.

Exposes the client-facing endpoints of every supported wire format. Each
chat endpoint resolves the requested model to a provider, hands the request
to the chat orchestrator and returns whatever response it produced, in the
client's own format.
"""

import math
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from llmrelay.config import GatewayConfig, load_config
from llmrelay.core import ModelInfo, handle_chat_core
from llmrelay.credentials import CredentialStore
from llmrelay.errors import error_response
from llmrelay.formats import WireFormat
from llmrelay.providers import ProviderRegistry
from llmrelay.router import RouteResult, RoutingError, resolve_route
from llmrelay.telemetry import log_request, setup_logging
from llmrelay.translate_openai import text_of
from llmrelay.translator import ensure_initialized

CONFIG_PATH = os.getenv("GATEWAY_CONFIG", "config/example.config.json")

_config: Optional[GatewayConfig] = None
_providers: Optional[ProviderRegistry] = None
_credential_store: Optional[CredentialStore] = None
_http_client: Optional[httpx.AsyncClient] = None


def get_config() -> GatewayConfig:
    """Return the loaded relay configuration (lazy-init)."""
    global _config
    if _config is None:
        _config = load_config(CONFIG_PATH)
    return _config


def get_providers() -> ProviderRegistry:
    """Return the provider registry (lazy-init from config)."""
    global _providers
    if _providers is None:
        _providers = ProviderRegistry(get_config())
    return _providers


def get_credential_store() -> CredentialStore:
    """Return the credential store (lazy-init from config)."""
    global _credential_store
    if _credential_store is None:
        _credential_store = CredentialStore(get_config())
    return _credential_store


def get_http_client() -> httpx.AsyncClient:
    """Return the shared upstream HTTP client (lazy-init from config)."""
    global _http_client
    if _http_client is None:
        timeout = httpx.Timeout(get_config().request_timeout, connect=30.0)
        _http_client = httpx.AsyncClient(timeout=timeout)
    return _http_client


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Initialize config, logging and translators; close the HTTP client on shutdown."""
    global _http_client
    cfg = get_config()
    setup_logging(cfg.log_file, cfg.log_level)
    await ensure_initialized()
    get_http_client()
    yield
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


app = FastAPI(title="LLM Relay", version="0.3.0", lifespan=lifespan)


async def _read_json(request: Request) -> Optional[Dict[str, Any]]:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


async def _chat(
    request: Request,
    source_format: Optional[WireFormat] = None,
    model: Optional[str] = None,
    stream: Optional[bool] = None,
) -> Response:
    """Route one chat request and run it through the orchestrator."""
    config = get_config()
    body = await _read_json(request)
    if body is None:
        return error_response(400, "Invalid JSON body")

    model_name = model or body.get("model") or ""
    try:
        route = resolve_route(config, model_name)
    except RoutingError as exc:
        if model_name not in config.bypass.models:
            log_request(
                request_id=None,
                provider=None,
                model=model_name,
                outcome="routing_error",
                status=exc.status,
                error=exc.detail,
            )
            return error_response(exc.status, exc.detail)
        route = RouteResult(provider="bypass", model=model_name)

    store = get_credential_store()
    result = await handle_chat_core(
        body=body,
        model_info=ModelInfo(provider=route.provider, model=route.model),
        credentials=store.get(route.provider),
        http_client=get_http_client(),
        config=config,
        providers=get_providers(),
        callbacks=store.callbacks(route.provider, route.model),
        client_raw_request={
            "endpoint": request.url.path,
            "body": body,
            "headers": dict(request.headers),
        },
        source_format=source_format,
        stream=stream,
    )
    if not result.success:
        store.mark_failure(route.provider, result.status, result.error)
    return result.response


@app.post("/v1/chat/completions", response_model=None)
async def chat_completions(request: Request) -> Response:
    """OpenAI chat completions (any detected format is accepted)."""
    return await _chat(request)


@app.post("/v1/messages", response_model=None)
async def messages(request: Request) -> Response:
    """Anthropic Messages."""
    return await _chat(request)


@app.post("/v1/responses", response_model=None)
async def responses(request: Request) -> Response:
    """OpenAI Responses."""
    return await _chat(request)


@app.post("/api/chat", response_model=None)
async def ollama_chat(request: Request) -> Response:
    """Ollama chat. The grammar is fixed, so detection is skipped."""
    return await _chat(request, source_format=WireFormat.OLLAMA_CHAT)


@app.post("/v1beta/models/{model_path:path}", response_model=None)
async def gemini_generate(model_path: str, request: Request) -> Response:
    """Gemini ``models/{model}:generateContent`` and ``:streamGenerateContent``."""
    model, _, method = model_path.rpartition(":")
    if method not in ("generateContent", "streamGenerateContent") or not model:
        return error_response(404, "Unknown Gemini method: {}".format(model_path))
    return await _chat(request, model=model, stream=method == "streamGenerateContent")


@app.post("/v1/messages/count_tokens", response_model=None)
async def count_tokens(request: Request) -> Response:
    """Estimate input tokens as one token per four characters of text."""
    body = await _read_json(request)
    if body is None:
        return error_response(400, "Invalid JSON body")
    chars = 0
    for message in body.get("messages") or []:
        if isinstance(message, dict):
            chars += len(text_of(message.get("content")))
    return JSONResponse(content={"input_tokens": math.ceil(chars / 4)})


def _catalog(config: GatewayConfig) -> List[Tuple[str, str, str]]:
    """List ``(id, provider, model)`` for aliases and provider models."""
    entries: List[Tuple[str, str, str]] = []
    seen = set()
    for alias, mapping in sorted(config.aliases.items()):
        entries.append((alias, mapping.provider, mapping.model))
        seen.add(alias)
    for name, prov in sorted(config.providers.items()):
        for model in [prov.default_model] + prov.models:
            model_id = "{}/{}".format(name, model)
            if model and model_id not in seen:
                entries.append((model_id, name, model))
                seen.add(model_id)
    return entries


@app.get("/v1/models")
async def list_models() -> JSONResponse:
    """OpenAI-style model list."""
    data = [
        {"id": model_id, "object": "model", "created": 0, "owned_by": provider}
        for model_id, provider, _ in _catalog(get_config())
    ]
    return JSONResponse(content={"object": "list", "data": data})


@app.get("/v1beta/models")
async def list_gemini_models() -> JSONResponse:
    """Gemini-style model list; names are ``models/<provider>/<model>``."""
    models = []
    seen = set()
    for _, provider, model in _catalog(get_config()):
        name = "models/{}/{}".format(provider, model)
        if name in seen:
            continue
        seen.add(name)
        models.append(
            {
                "name": name,
                "displayName": model,
                "description": "{} model: {}".format(provider, model),
                "supportedGenerationMethods": ["generateContent"],
                "inputTokenLimit": 128000,
                "outputTokenLimit": 8192,
            }
        )
    return JSONResponse(content={"models": models})


@app.get("/api/tags")
async def list_ollama_models() -> JSONResponse:
    """Ollama-style model list."""
    models = [
        {
            "name": model_id,
            "model": model_id,
            "modified_at": "1970-01-01T00:00:00Z",
            "size": 0,
            "digest": "",
            "details": {"family": provider, "format": "remote"},
        }
        for model_id, provider, _ in _catalog(get_config())
    ]
    return JSONResponse(content={"models": models})
