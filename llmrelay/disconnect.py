"""Client disconnect handling.

A ``StreamController`` binds one request's upstream work to an abort signal.
Anything awaited through ``guard`` is cancelled as soon as the signal fires,
and the disconnect callback runs once when the client goes away.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from llmrelay.errors import ClientAbort

logger = logging.getLogger("gateway")

T = TypeVar("T")


class StreamState(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


_TERMINAL = (StreamState.COMPLETED, StreamState.ABORTED, StreamState.ERRORED)


class StreamController:
    """Abort signal and lifecycle state for one upstream request."""

    def __init__(self, on_disconnect: Optional[Callable[..., Any]] = None) -> None:
        self.state = StreamState.IDLE
        self.signal = asyncio.Event()
        self._on_disconnect = on_disconnect
        self._notified = False

    @property
    def aborted(self) -> bool:
        return self.signal.is_set()

    def start(self) -> None:
        if self.state == StreamState.IDLE:
            self.state = StreamState.IN_FLIGHT

    def complete(self) -> None:
        if self.state not in _TERMINAL:
            self.state = StreamState.COMPLETED

    def fail(self) -> None:
        if self.state not in _TERMINAL:
            self.state = StreamState.ERRORED

    def abort(self, reason: str = "client disconnected") -> None:
        """Fire the abort signal and notify ``on_disconnect`` once."""
        self.signal.set()
        if self.state in _TERMINAL:
            return
        self.state = StreamState.ABORTED
        logger.info("Request aborted: %s", reason)
        if self._on_disconnect is None or self._notified:
            return
        self._notified = True
        try:
            result = self._on_disconnect(reason)
        except Exception:
            logger.exception("on_disconnect callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(_log_callback_failure)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the abort signal fires first.

        Raises:
            ClientAbort: If the signal fires, or the caller is cancelled,
                before ``awaitable`` completes.
        """
        if self.aborted:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise ClientAbort()
        self.start()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.signal.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            self.abort("request task cancelled")
            raise
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        raise ClientAbort()


def _log_callback_failure(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("on_disconnect callback failed: %s", exc)
