"""Streaming relay between an upstream response and the client.

A transform turns upstream bytes into client bytes: ``PassthroughTransform``
when both sides speak the same format, ``TranslatingTransform`` otherwise.
``relay_stream`` drives a transform from the upstream body and is what the
client's ``StreamingResponse`` iterates, so upstream reads follow the
client's pace.
"""

import asyncio
import json
import logging
from typing import AsyncIterator, List, Optional

import httpx

from llmrelay.disconnect import StreamController
from llmrelay.errors import MalformedUpstreamFrame, format_provider_error
from llmrelay.sse import Frame, FrameParser
from llmrelay.telemetry import RequestLogger
from llmrelay.translate_openai import StreamEncoder
from llmrelay.translator import StreamTranslator

logger = logging.getLogger("gateway")


class PassthroughTransform:
    """Forwards upstream bytes untouched."""

    def __init__(self, encoder: StreamEncoder) -> None:
        self.encoder = encoder
        self.closed = False
        self.failed = False

    def feed(self, data: bytes) -> List[bytes]:
        return [data]

    def finish(self) -> List[bytes]:
        return []

    def error(self, status: int, message: str) -> bytes:
        return self.encoder.error(status, message)


class TranslatingTransform:
    """Parses upstream frames and re-encodes them for the client."""

    def __init__(self, translator: StreamTranslator) -> None:
        self.translator = translator
        self.parser = FrameParser(ndjson=translator.upstream_framing == "ndjson")
        self.frames_seen = 0
        self.closed = False
        self.failed = False

    def feed(self, data: bytes) -> List[bytes]:
        return self._handle_all(self.parser.feed(data))

    def finish(self) -> List[bytes]:
        """Handle any trailing frame, then terminate the client stream once."""
        out = self._handle_all(self.parser.close())
        if not self.closed:
            out.extend(self._terminate())
        return out

    def error(self, status: int, message: str) -> bytes:
        self.closed = True
        self.failed = True
        return self.translator.error(status, message)

    def _handle_all(self, frames: List[Frame]) -> List[bytes]:
        out: List[bytes] = []
        for frame in frames:
            if self.closed:
                break
            out.extend(self._handle(frame))
        return out

    def _terminate(self) -> List[bytes]:
        self.closed = True
        return self.translator.finish()

    def _handle(self, frame: Frame) -> List[bytes]:
        data = frame.data.strip()
        if data == "[DONE]":
            return self._terminate()

        first = self.frames_seen == 0
        self.frames_seen += 1
        try:
            payload = json.loads(data)
            if not isinstance(payload, dict):
                raise ValueError("expected a JSON object")
        except ValueError as exc:
            error = MalformedUpstreamFrame(data, str(exc))
            if first:
                logger.error("%s (first frame, closing stream)", error.detail)
                return [self.error(error.status, error.detail)]
            logger.warning("%s; skipping frame: %.200s", error.detail, data)
            return []

        upstream_error = _error_message(payload)
        if upstream_error is not None:
            logger.error("Upstream stream error: %s", upstream_error)
            return [self.error(502, format_provider_error(upstream_error, 502))]

        out = self.translator.feed(payload, frame.event)
        if self.translator.decoder.done:
            out.extend(self._terminate())
        return out


def _error_message(payload: dict) -> Optional[str]:
    error = payload.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or json.dumps(error))
    if error:
        return str(error)
    if payload.get("type") in ("error", "response.failed"):
        response_error = (payload.get("response") or {}).get("error") or {}
        return str(payload.get("message") or response_error.get("message") or "Upstream error")
    return None


async def relay_stream(
    upstream: httpx.Response,
    transform,
    controller: StreamController,
    request_log: Optional[RequestLogger] = None,
) -> AsyncIterator[bytes]:
    """Yield client frames for an upstream streaming response.

    Frames are yielded as soon as they are produced. If the consumer stops
    iterating, the controller is aborted and the upstream response closed.
    Once the transform has closed the client stream, no more upstream
    bytes are read.
    A transport failure mid-stream becomes a final client error frame.
    """
    controller.start()
    try:
        async for chunk in upstream.aiter_bytes():
            if request_log is not None:
                request_log.log_upstream_chunk(chunk)
            for frame in transform.feed(chunk):
                if request_log is not None:
                    request_log.log_client_chunk(frame)
                yield frame
            if transform.closed:
                break
        for frame in transform.finish():
            if request_log is not None:
                request_log.log_client_chunk(frame)
            yield frame
        if transform.failed:
            controller.fail()
        else:
            controller.complete()
    except httpx.HTTPError as exc:
        controller.fail()
        message = format_provider_error(str(exc) or type(exc).__name__, 502)
        logger.error("Upstream stream failed: %s", message)
        if request_log is not None:
            request_log.log_error(message)
        yield transform.error(502, message)
    except (asyncio.CancelledError, GeneratorExit):
        controller.abort("client disconnected")
        raise
    except Exception:
        controller.fail()
        raise
    finally:
        await upstream.aclose()
