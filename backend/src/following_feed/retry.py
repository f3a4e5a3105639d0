"""Retry policy shared by every store call."""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import tenacity

from .stores import StoreError


logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_CODES = frozenset({
    "unavailable",
    "deadline-exceeded",
    "network-error",
    "timeout",
})


def is_retryable_store_error(exc: BaseException) -> bool:
    """True for store errors the backend reports as transient."""
    return isinstance(exc, StoreError) and exc.code in RETRYABLE_CODES


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    """Log retry attempts for debugging."""
    logger.warning(
        f"Retry attempt {retry_state.attempt_number} after "
        f"{retry_state.outcome.exception() if retry_state.outcome else 'unknown error'}"
    )


@dataclass
class RetryPolicy:
    """
    Exponential backoff with jitter for awaitable store calls.

    The last error is re-raised once attempts are exhausted or when the
    predicate rejects it; callers decide how to degrade.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.5
    retryable: Callable[[BaseException], bool] = field(default=is_retryable_store_error)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1, base_delay=0, max_delay=0, jitter=0)

    def _wait(self):
        wait = tenacity.wait_exponential(multiplier=self.base_delay, max=self.max_delay)
        if self.jitter:
            wait = wait + tenacity.wait_random(0, self.jitter)
        return wait

    def _retrying(self) -> tenacity.AsyncRetrying:
        return tenacity.AsyncRetrying(
            stop=tenacity.stop_after_attempt(max(1, self.max_attempts)),
            wait=self._wait(),
            retry=tenacity.retry_if_exception(self.retryable),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await fn(*args, **kwargs) under this policy."""
        return await self._retrying()(fn, *args, **kwargs)
