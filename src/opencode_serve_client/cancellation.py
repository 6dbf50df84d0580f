from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from opencode_serve_client.errors import OperationCancelledError, OperationTimeoutError

T = TypeVar("T")


async def run_guarded(
    awaitable: Awaitable[T],
    *,
    operation: str,
    timeout: float | None = None,
    cancel: asyncio.Event | None = None,
) -> T:
    """Await *awaitable*, giving up on the deadline or when *cancel* is set.

    Raises OperationTimeoutError / OperationCancelledError. Server-side work
    started by the call is left to the server's own timeout.
    """
    if cancel is not None and cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelledError(operation)

    task = asyncio.ensure_future(awaitable)
    waiters: set[asyncio.Future] = {task}
    cancel_waiter: asyncio.Task | None = None
    if cancel is not None:
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    if cancel_waiter is not None and cancel_waiter in done:
        raise OperationCancelledError(operation)
    raise OperationTimeoutError(operation, timeout)


async def cancellable_sleep(seconds: float, *, operation: str, cancel: asyncio.Event | None = None) -> None:
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    if cancel.is_set():
        raise OperationCancelledError(operation)
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise OperationCancelledError(operation)
