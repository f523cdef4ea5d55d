"""Logging and telemetry for the LLM relay.

Emits structured log records to stdout and appends them to an append-only
log file for local review. ``RequestLogger`` additionally records one
request's full conversion trail when a request log directory is configured;
its writes never affect the request itself.
"""

import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger("gateway")

_SECRET_MARKERS = ("auth", "key", "token", "cookie")


def setup_logging(log_file: str, level: str = "INFO") -> None:
    """Configure the gateway logger with stdout and file handlers.

    Args:
        log_file: Path to the append-only log file.
        level: Logging level name.
    """
    logger.setLevel(level)

    if not logger.handlers:
        # Stdout handler
        stdout_handler = logging.StreamHandler()
        stdout_fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        stdout_handler.setFormatter(stdout_fmt)
        logger.addHandler(stdout_handler)

        # File handler (append-only)
        log_path = Path(log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a")
        file_handler.setFormatter(stdout_fmt)
        logger.addHandler(file_handler)


def mask_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Return a copy of ``headers`` with credential values truncated."""
    masked = {}
    for key, value in headers.items():
        if any(marker in key.lower() for marker in _SECRET_MARKERS):
            masked[key] = "{}...".format(value[:10]) if value else ""
        else:
            masked[key] = value
    return masked


def log_request(
    *,
    request_id: Optional[str],
    provider: Optional[str],
    model: Optional[str],
    outcome: str,
    source_format: Optional[str] = None,
    target_format: Optional[str] = None,
    stream: Optional[bool] = None,
    status: Optional[int] = None,
    error: Optional[str] = None
) -> None:
    """Log a single request event.

    This writes a structured JSON line to both stdout and the log file.

    Args:
        request_id: Relay-assigned request ID.
        provider: The resolved provider name (None if routing failed).
        model: The resolved upstream model.
        outcome: Short outcome label (e.g. "success", "bypass", "error").
        source_format: Wire format the client spoke.
        target_format: Wire format sent upstream.
        stream: Whether the response streams.
        status: HTTP status returned to the client, if not 200.
        error: Error message if the request failed.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "provider": provider,
        "model": model,
        "outcome": outcome,
    }

    if source_format:
        record["source_format"] = source_format
        record["target_format"] = target_format
    if stream is not None:
        record["stream"] = stream
    if status:
        record["status"] = status
    if error:
        record["error"] = error

    try:
        logger.info(json.dumps(record))
    except Exception:
        logger.debug("Failed to write request log record", exc_info=True)


class RequestLogger:
    """Per-request conversion trail written as JSON lines.

    Disabled (every method a no-op) when ``log_dir`` is None. Write
    failures are logged at debug level and otherwise ignored.
    """

    def __init__(
        self,
        log_dir: Optional[str],
        source_format: str = "",
        target_format: str = "",
        model: str = "",
    ) -> None:
        self.request_id = "req-{}".format(uuid.uuid4().hex[:12])
        self.path: Optional[Path] = None
        if log_dir:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
            name = "{}_{}_{}_{}_{}.jsonl".format(
                stamp, source_format, target_format, model.replace("/", "-"), self.request_id
            )
            self.path = Path(log_dir) / name

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def _write(self, kind: str, data: Any) -> None:
        if self.path is None:
            return
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "kind": kind,
            "data": data,
        }
        try:
            os.makedirs(self.path.parent, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        except Exception:
            logger.debug("Request log write failed for %s", self.request_id, exc_info=True)

    def log_client_request(
        self, endpoint: str, body: Any, headers: Optional[Mapping[str, str]] = None
    ) -> None:
        self._write(
            "client_request",
            {"endpoint": endpoint, "body": body, "headers": mask_headers(headers or {})},
        )

    def log_format_info(self, **info: Any) -> None:
        self._write("format", info)

    def log_converted_request(
        self, url: str, headers: Mapping[str, str], body: Any
    ) -> None:
        self._write(
            "converted_request",
            {"url": url, "headers": mask_headers(headers), "body": body},
        )

    def log_upstream_chunk(self, chunk: bytes) -> None:
        self._write("upstream_chunk", chunk.decode("utf-8", errors="replace"))

    def log_client_chunk(self, chunk: bytes) -> None:
        self._write("client_chunk", chunk.decode("utf-8", errors="replace"))

    def log_error(self, error: Any, body: Any = None) -> None:
        self._write("error", {"error": str(error), "body": body})
