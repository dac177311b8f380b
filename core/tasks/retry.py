# core/tasks/retry.py
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with a fixed backoff between attempts.

    Shared by connection establishment and the database pool wrapper so every
    retried operation in the indexer follows the same schedule.
    """

    max_attempts: int = 3
    backoff_seconds: float = 5.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def _log_retry(self, description: str):
        def before_sleep(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            logger.warning(
                f"{description} failed (attempt {state.attempt_number}/{self.max_attempts}): {error}. "
                f"Retrying in {self.backoff_seconds}s"
            )

        return before_sleep

    def retrying(self, description: str = "operation") -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_fixed(self.backoff_seconds),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=self._log_retry(description),
            reraise=True,
        )

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "operation") -> T:
        """Await ``operation()`` until it succeeds or attempts are exhausted; the last error is re-raised."""
        async for attempt in self.retrying(description):
            with attempt:
                return await operation()
