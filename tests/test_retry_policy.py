import asyncio
import unittest

from opencode_serve_client.errors import (
    ConnectionFailureError,
    NotFoundError,
    OperationCancelledError,
    OperationTimeoutError,
    ServerError,
)
from opencode_serve_client.retry_policy import RetryPolicy


class _FaultInjector:
    def __init__(self, failures: int, error_factory=lambda n: ServerError(503, f"failure {n}")):
        self.failures = failures
        self.error_factory = error_factory
        self.attempts = 0
        self.raised: list[Exception] = []

    async def __call__(self) -> str:
        self.attempts += 1
        if self.attempts <= self.failures:
            error = self.error_factory(self.attempts)
            self.raised.append(error)
            raise error
        return "ok"


def _policy(**overrides) -> RetryPolicy:
    settings = dict(max_attempts=3, initial_delay=0.001, max_delay=0.01, max_jitter=0.0, max_elapsed=10.0)
    settings.update(overrides)
    return RetryPolicy(**settings)


class RetryPolicyTests(unittest.TestCase):
    def test_succeeds_after_fewer_failures_than_attempts(self) -> None:
        for k in range(3):
            with self.subTest(failures=k):
                operation = _FaultInjector(k)
                result = asyncio.run(_policy().execute(operation, idempotent=True))
                self.assertEqual("ok", result)
                self.assertEqual(k + 1, operation.attempts)

    def test_lambda_returning_coroutine_is_awaited_and_retried(self) -> None:
        operation = _FaultInjector(2)

        result = asyncio.run(_policy().execute(lambda: operation(), idempotent=True, name="get session"))

        self.assertEqual("ok", result)
        self.assertEqual(3, operation.attempts)

    def test_lambda_returning_coroutine_without_failures(self) -> None:
        async def fetch(value: str) -> str:
            await asyncio.sleep(0)
            return value

        result = asyncio.run(_policy().execute(lambda: fetch("ses_1"), idempotent=True))

        self.assertEqual("ses_1", result)

    def test_exhaustion_raises_last_error_unchanged(self) -> None:
        for k in (3, 5):
            with self.subTest(failures=k):
                operation = _FaultInjector(k)
                with self.assertRaises(ServerError) as ctx:
                    asyncio.run(_policy().execute(operation, idempotent=True))
                self.assertEqual(3, operation.attempts)
                self.assertIs(operation.raised[-1], ctx.exception)

    def test_connection_failures_and_timeouts_are_retried(self) -> None:
        factories = {
            "connection": lambda n: ConnectionFailureError("http://localhost:9123", "refused"),
            "timeout": lambda n: OperationTimeoutError("list sessions", 1),
        }
        for name, factory in factories.items():
            with self.subTest(kind=name):
                operation = _FaultInjector(2, factory)
                self.assertEqual("ok", asyncio.run(_policy().execute(operation, idempotent=True)))
                self.assertEqual(3, operation.attempts)

    def test_non_idempotent_operations_run_once(self) -> None:
        operation = _FaultInjector(1)

        with self.assertRaises(ServerError):
            asyncio.run(_policy().execute(operation, idempotent=False))

        self.assertEqual(1, operation.attempts)

    def test_non_retryable_errors_are_not_retried(self) -> None:
        operation = _FaultInjector(1, lambda n: NotFoundError("ses_1"))

        with self.assertRaises(NotFoundError):
            asyncio.run(_policy().execute(operation, idempotent=True))

        self.assertEqual(1, operation.attempts)

    def test_disabled_policy_runs_once(self) -> None:
        operation = _FaultInjector(1)

        with self.assertRaises(ServerError):
            asyncio.run(RetryPolicy.disabled().execute(operation, idempotent=True))

        self.assertEqual(1, operation.attempts)

    def test_cancel_during_backoff_stops_immediately(self) -> None:
        operation = _FaultInjector(10)

        async def scenario():
            cancel = asyncio.Event()
            loop = asyncio.get_running_loop()
            loop.call_later(0.05, cancel.set)
            started = loop.time()
            with self.assertRaises(OperationCancelledError):
                await _policy(initial_delay=5.0, max_delay=5.0).execute(
                    operation, idempotent=True, name="list sessions", cancel=cancel
                )
            return loop.time() - started

        elapsed = asyncio.run(scenario())

        self.assertLess(elapsed, 1.0)
        self.assertEqual(1, operation.attempts)

    def test_elapsed_bound_stops_retrying(self) -> None:
        operation = _FaultInjector(10)

        with self.assertRaises(ServerError):
            asyncio.run(
                _policy(max_attempts=10, initial_delay=0.05, max_delay=0.05, max_elapsed=0.01).execute(
                    operation, idempotent=True
                )
            )

        self.assertLess(operation.attempts, 10)


if __name__ == "__main__":
    unittest.main()
