from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from functools import partial
from typing import TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    wait_random,
)

from opencode_serve_client.cancellation import cancellable_sleep
from opencode_serve_client.errors import OpenCodeError

T = TypeVar("T")


def _is_retryable(ex: BaseException) -> bool:
    return isinstance(ex, OpenCodeError) and ex.retryable


class RetryPolicy:
    """Bounded exponential backoff with jitter for idempotent operations.

    Only errors flagged ``retryable`` (server errors, connection failures and
    timeouts) are retried. When attempts run out the last error is raised
    unchanged.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        initial_delay: float = 0.5,
        max_delay: float = 8.0,
        max_jitter: float = 1.0,
        max_elapsed: float = 60.0,
    ):
        self.max_attempts = max(1, max_attempts)
        self.initial_delay = max(0.0, initial_delay)
        self.max_delay = max(0.0, max_delay)
        self.max_jitter = max(0.0, max_jitter)
        self.max_elapsed = max_elapsed

    @classmethod
    def disabled(cls) -> RetryPolicy:
        return cls(max_attempts=1)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        idempotent: bool,
        name: str = "operation",
        cancel: asyncio.Event | None = None,
    ) -> T:
        if not idempotent or self.max_attempts == 1:
            return await operation()

        # tenacity only awaits coroutine functions; callers usually pass lambdas.
        async def attempt() -> T:
            return await operation()

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts) | stop_after_delay(self.max_elapsed),
            wait=wait_exponential(multiplier=self.initial_delay, max=self.max_delay) + wait_random(0, self.max_jitter),
            before_sleep=partial(self._on_retry, name),
            sleep=partial(cancellable_sleep, operation=name, cancel=cancel),
            reraise=True,
        )
        return await retrying(attempt)

    def _on_retry(self, name: str, retry_state: RetryCallState) -> None:
        attempt = retry_state.attempt_number
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        reason = f"{type(exc).__name__}: {exc}" if exc else "Unknown"
        logger.warning(f"{name}: {reason}. Retrying in {wait:.2f}s (attempt {attempt}/{self.max_attempts})...")
