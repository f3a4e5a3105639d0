"""Test the shared retry policy."""
import pytest
from unittest.mock import AsyncMock

from following_feed.config import Settings
from following_feed.retry import RetryPolicy, is_retryable_store_error
from following_feed.stores import StoreError


def fast_policy(attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=attempts, base_delay=0, max_delay=0, jitter=0)


class TestRetryablePredicate:
    """Test which errors are retried."""

    @pytest.mark.parametrize("code", ["unavailable", "deadline-exceeded", "network-error", "timeout"])
    def test_transient_codes(self, code):
        assert is_retryable_store_error(StoreError(code))

    @pytest.mark.parametrize("code", ["failed-precondition", "invalid-argument", "permission-denied"])
    def test_permanent_codes(self, code):
        assert not is_retryable_store_error(StoreError(code))

    def test_other_exceptions(self):
        assert not is_retryable_store_error(ValueError("unavailable"))


@pytest.mark.asyncio
class TestRetryPolicy:
    """Test retry behavior around awaitables."""

    async def test_success_first_try(self):
        fn = AsyncMock(return_value=["u1"])

        assert await fast_policy().call(fn, "viewer") == ["u1"]
        fn.assert_awaited_once_with("viewer")

    async def test_retries_transient_error(self):
        """Test that transient errors trigger retry."""
        call_count = 0

        async def flaky():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise StoreError("unavailable", "backend offline")
            return "ok"

        assert await fast_policy().call(flaky) == "ok"
        assert call_count == 3

    async def test_gives_up_after_max_attempts(self):
        fn = AsyncMock(side_effect=StoreError("timeout"))

        with pytest.raises(StoreError, match="timeout"):
            await fast_policy(attempts=2).call(fn)
        assert fn.await_count == 2

    async def test_permanent_error_not_retried(self):
        fn = AsyncMock(side_effect=StoreError("failed-precondition", "requires an index"))

        with pytest.raises(StoreError):
            await fast_policy().call(fn)
        assert fn.await_count == 1

    async def test_no_retry_policy(self):
        fn = AsyncMock(side_effect=StoreError("unavailable"))

        with pytest.raises(StoreError):
            await RetryPolicy.no_retry().call(fn)
        assert fn.await_count == 1

    async def test_custom_predicate(self):
        fn = AsyncMock(side_effect=[KeyError("x"), "ok"])
        policy = RetryPolicy(
            max_attempts=2, base_delay=0, max_delay=0, jitter=0,
            retryable=lambda e: isinstance(e, KeyError),
        )

        assert await policy.call(fn) == "ok"


class TestFromSettings:
    """Test building the policy from configuration."""

    def test_from_settings(self):
        policy = RetryPolicy.from_settings(Settings(
            retry_max_attempts=5, retry_base_delay=0.2, retry_max_delay=3, retry_jitter=0
        ))

        assert policy.max_attempts == 5
        assert policy.base_delay == 0.2
        assert policy.max_delay == 3
        assert policy.jitter == 0
