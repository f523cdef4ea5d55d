"""Error taxonomy and OpenAI-compatible error bodies.

Every failure the orchestrator can report maps onto a ``GatewayError``
subclass carrying the HTTP status the caller should see. Errors that do not
compromise the rest of a stream (a bad frame, an unsupported content part)
are logged and recovered where they happen; the rest become a ``ChatResult``
with ``success=False``.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx
from fastapi.responses import JSONResponse
from starlette.responses import Response

from llmrelay.models import ErrorDetail, ErrorResponse

ERROR_TYPES: Dict[int, Dict[str, str]] = {
    400: {"type": "invalid_request_error", "code": "bad_request"},
    401: {"type": "authentication_error", "code": "invalid_api_key"},
    403: {"type": "permission_error", "code": "insufficient_quota"},
    404: {"type": "invalid_request_error", "code": "model_not_found"},
    429: {"type": "rate_limit_error", "code": "rate_limit_exceeded"},
    500: {"type": "server_error", "code": "internal_server_error"},
    502: {"type": "server_error", "code": "bad_gateway"},
    503: {"type": "server_error", "code": "service_unavailable"},
    504: {"type": "server_error", "code": "gateway_timeout"},
}

DEFAULT_MESSAGES: Dict[int, str] = {
    400: "Bad request",
    401: "Invalid API key provided",
    403: "You exceeded your current quota",
    404: "Model not found",
    429: "Rate limit exceeded",
    499: "Request aborted",
    500: "Internal server error",
    502: "Bad gateway - upstream provider error",
    503: "Service temporarily unavailable",
    504: "Gateway timeout",
}


class GatewayError(Exception):
    """Base class for errors that map onto a caller-visible status."""

    status = 500

    def __init__(self, detail: str, status: Optional[int] = None) -> None:
        self.detail = detail
        if status is not None:
            self.status = status
        super().__init__(detail)


class ClientAbort(GatewayError):
    """The downstream client went away before the request finished."""

    status = 499

    def __init__(self, detail: str = "Request aborted") -> None:
        super().__init__(detail)


class UpstreamTransportFailure(GatewayError):
    """The upstream could not be reached or the connection broke."""

    status = 502


class UpstreamRejected(GatewayError):
    """The upstream answered with a non-2xx status."""

    def __init__(self, status: int, detail: str) -> None:
        super().__init__(detail, status=status)


class AuthExpired(UpstreamRejected):
    """The upstream rejected the credentials (401/403)."""


class MalformedUpstreamFrame(GatewayError):
    """An upstream stream frame could not be parsed."""

    status = 502

    def __init__(self, raw: str, reason: str) -> None:
        self.raw = raw
        super().__init__("Malformed upstream frame: {}".format(reason))


class UnsupportedContentPart(GatewayError):
    """A content part has no representation in the target format."""

    status = 400

    def __init__(self, kind: str, target: str) -> None:
        self.kind = kind
        self.target = target
        super().__init__(
            "Content part '{}' is not supported by {}".format(kind, target)
        )


class TranslatorMissing(GatewayError):
    """No translator is registered for a (source, target) pair."""

    def __init__(self, source: str, target: str) -> None:
        self.source = source
        self.target = target
        super().__init__("No translator registered for {} -> {}".format(source, target))


class RefreshError(GatewayError):
    """A credential refresh attempt failed."""

    status = 401


def build_error_body(status: int, message: Optional[str] = None) -> Dict[str, Any]:
    """Build an OpenAI-compatible error body for a status code.

    Args:
        status: HTTP status code.
        message: Error message; the status' default message when empty.

    Returns:
        A ``{"error": {"message", "type", "code"}}`` dictionary.
    """
    info = ERROR_TYPES.get(status)
    if info is None:
        if status >= 500:
            info = {"type": "server_error", "code": "internal_server_error"}
        else:
            info = {"type": "invalid_request_error", "code": ""}
    body = ErrorResponse(
        error=ErrorDetail(
            message=message or DEFAULT_MESSAGES.get(status, "An error occurred"),
            type=info["type"],
            code=info["code"],
        )
    )
    return body.model_dump()


def error_response(status: int, message: Optional[str] = None) -> JSONResponse:
    """Build a JSON error response for non-streaming callers."""
    return JSONResponse(status_code=status, content=build_error_body(status, message))


def format_provider_error(message: str, status: Any) -> str:
    """Prefix an upstream error message with its status or error code."""
    return "[{}]: {}".format(status or "FETCH_FAILED", message or "Unknown error")


async def parse_upstream_error(response: httpx.Response) -> Tuple[int, str]:
    """Read an upstream error response and extract its message.

    Accepts ``{"error": {"message": ...}}``, ``{"message": ...}``,
    ``{"error": "..."}`` and plain-text bodies.

    Returns:
        A ``(status, message)`` pair.
    """
    try:
        raw = await response.aread()
    except httpx.HTTPError:
        return response.status_code, "Upstream error: {}".format(response.status_code)

    text = raw.decode("utf-8", errors="replace")
    try:
        data = json.loads(text)
    except ValueError:
        return response.status_code, text

    message: Any = text
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            message = error["message"]
        elif data.get("message"):
            message = data["message"]
        elif error:
            message = error
    if not isinstance(message, str):
        message = json.dumps(message)
    return response.status_code, message


@dataclass
class ChatResult:
    """Outcome of one orchestrated chat request."""

    success: bool
    response: Optional[Response] = None
    status: Optional[int] = None
    error: Optional[str] = None


def error_result(status: int, message: str) -> ChatResult:
    """Create a failed ``ChatResult`` carrying a ready JSON error response."""
    return ChatResult(
        success=False,
        status=status,
        error=message,
        response=error_response(status, message),
    )
