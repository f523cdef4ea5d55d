"""Tests for the disconnect controller."""

import asyncio

import pytest

from llmrelay.disconnect import StreamController, StreamState
from llmrelay.errors import ClientAbort


@pytest.mark.asyncio
async def test_guard_returns_result() -> None:
    """Guarded work that finishes first returns its value."""
    controller = StreamController()

    async def work() -> int:
        return 7

    assert await controller.guard(work()) == 7
    assert controller.state == StreamState.IN_FLIGHT


@pytest.mark.asyncio
async def test_abort_cancels_guarded_work() -> None:
    """Aborting while work is pending raises ClientAbort and cancels it."""
    reasons = []
    controller = StreamController(on_disconnect=reasons.append)
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def slow() -> None:
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    async def abort_later() -> None:
        await started.wait()
        controller.abort("client went away")

    abort_task = asyncio.ensure_future(abort_later())
    with pytest.raises(ClientAbort) as exc_info:
        await controller.guard(slow())
    await abort_task
    await asyncio.wait_for(cancelled.wait(), timeout=1)

    assert exc_info.value.status == 499
    assert controller.aborted
    assert controller.state == StreamState.ABORTED
    assert reasons == ["client went away"]


@pytest.mark.asyncio
async def test_guard_after_abort_fails_fast() -> None:
    """Once aborted, further guarded calls raise immediately."""
    controller = StreamController()
    controller.abort()

    async def work() -> int:
        return 1

    with pytest.raises(ClientAbort):
        await controller.guard(work())


@pytest.mark.asyncio
async def test_cancelled_caller_aborts() -> None:
    """Cancelling the task awaiting the guard fires the signal."""
    reasons = []
    controller = StreamController(on_disconnect=reasons.append)

    task = asyncio.ensure_future(controller.guard(asyncio.sleep(10)))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert controller.signal.is_set()
    assert reasons == ["request task cancelled"]


def test_on_disconnect_runs_once() -> None:
    """Repeated aborts notify once; terminal states are not overwritten."""
    reasons = []
    controller = StreamController(on_disconnect=reasons.append)
    controller.abort("first")
    controller.abort("second")
    assert reasons == ["first"]

    completed = StreamController(on_disconnect=reasons.append)
    completed.complete()
    completed.abort("late")
    assert completed.state == StreamState.COMPLETED
    assert completed.signal.is_set()
    assert reasons == ["first"]


def test_failing_callback_is_contained() -> None:
    """A callback that raises does not break abort."""

    def broken(reason: str) -> None:
        raise RuntimeError("boom")

    controller = StreamController(on_disconnect=broken)
    controller.abort("bye")
    assert controller.state == StreamState.ABORTED


@pytest.mark.asyncio
async def test_async_callback_is_scheduled() -> None:
    """Coroutine callbacks are scheduled on the running loop."""
    seen = asyncio.Event()

    async def on_disconnect(reason: str) -> None:
        seen.set()

    controller = StreamController(on_disconnect=on_disconnect)
    controller.abort("bye")
    await asyncio.wait_for(seen.wait(), timeout=1)
