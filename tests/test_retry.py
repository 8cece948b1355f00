"""Unit tests for retry.py - Backoff policy."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from converge.config import ExecutorConfig
from converge.errors import FatalError, NotFoundError, RetryableError, RetryExhausted
from converge.retry import BackoffPolicy, call_with_retry


class TestBackoffPolicy:
    """Tests for BackoffPolicy.delay."""

    def test_exponential_growth(self):
        policy = BackoffPolicy(base_delay=1.0, max_delay=1000.0, jitter_factor=0.0)
        assert [policy.delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        policy = BackoffPolicy(base_delay=1.0, max_delay=60.0, jitter_factor=0.0)
        assert policy.delay(8) == 60.0

    def test_exponent_capped(self):
        policy = BackoffPolicy(base_delay=1.0, max_delay=10**9, jitter_factor=0.0)
        assert policy.delay(50) == 1024.0

    def test_jitter_bounds(self):
        policy = BackoffPolicy(base_delay=10.0, max_delay=60.0, jitter_factor=0.1)
        with patch("converge.retry.random.random", return_value=0.0):
            assert policy.delay(0) == pytest.approx(9.0)
        with patch("converge.retry.random.random", return_value=1.0):
            assert policy.delay(0) == pytest.approx(11.0)

    def test_from_config(self):
        policy = BackoffPolicy.from_config(
            ExecutorConfig(
                max_attempts=7,
                backoff_base_delay=2.0,
                backoff_max_delay=30.0,
                backoff_jitter_factor=0.2,
                retry_budget=None,
            )
        )
        assert policy.max_attempts == 7
        assert policy.base_delay == 2.0
        assert policy.max_delay == 30.0
        assert policy.jitter_factor == 0.2
        assert policy.budget is None


@pytest.mark.asyncio
class TestCallWithRetry:
    """Tests for call_with_retry."""

    @pytest.fixture
    def policy(self):
        return BackoffPolicy(base_delay=1.0, max_delay=8.0, jitter_factor=0.0, max_attempts=4, budget=None)

    async def test_success_first_time(self, policy):
        fn = AsyncMock(return_value="ok")
        sleep = AsyncMock()
        assert await call_with_retry(fn, policy, sleep=sleep) == "ok"
        sleep.assert_not_called()

    async def test_retries_retryable_errors(self, policy):
        fn = AsyncMock(side_effect=[RetryableError("rate limited"), RetryableError("again"), "ok"])
        sleep = AsyncMock()

        assert await call_with_retry(fn, policy, sleep=sleep) == "ok"
        assert fn.call_count == 3
        assert [c[0][0] for c in sleep.call_args_list] == [1.0, 2.0]

    async def test_exhausted(self, policy):
        error = RetryableError("still busy")
        fn = AsyncMock(side_effect=error)
        sleep = AsyncMock()

        with pytest.raises(RetryExhausted) as exc_info:
            await call_with_retry(fn, policy, description="create bucket.logs", sleep=sleep)
        assert exc_info.value.attempts == 4
        assert exc_info.value.last_error is error
        assert "create bucket.logs failed after 4 attempt(s)" in str(exc_info.value)
        assert sleep.call_count == 3

    async def test_fatal_error_is_not_retried(self, policy):
        fn = AsyncMock(side_effect=FatalError("forbidden"))
        with pytest.raises(FatalError, match="forbidden"):
            await call_with_retry(fn, policy, sleep=AsyncMock())
        assert fn.call_count == 1

    async def test_unclassified_error_propagates(self, policy):
        fn = AsyncMock(side_effect=KeyError("boom"))
        with pytest.raises(KeyError):
            await call_with_retry(fn, policy, sleep=AsyncMock())
        assert fn.call_count == 1

    async def test_not_found_propagates_by_default(self, policy):
        fn = AsyncMock(side_effect=NotFoundError("gone"))
        with pytest.raises(NotFoundError):
            await call_with_retry(fn, policy, sleep=AsyncMock())
        assert fn.call_count == 1

    async def test_not_found_retried_when_waiting_for_consistency(self, policy):
        fn = AsyncMock(side_effect=[NotFoundError("not yet"), {"a": 1}])
        result = await call_with_retry(fn, policy, retry_on_not_found=True, sleep=AsyncMock())
        assert result == {"a": 1}

    async def test_timeout_is_retried(self, policy):
        calls = 0

        async def slow_then_fast():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return "done"

        result = await call_with_retry(slow_then_fast, policy, timeout=0.01, sleep=AsyncMock())
        assert result == "done"
        assert calls == 2

    async def test_budget_stops_retrying(self):
        policy = BackoffPolicy(base_delay=10.0, max_delay=10.0, jitter_factor=0.0, max_attempts=5, budget=5.0)
        fn = AsyncMock(side_effect=RetryableError("busy"))
        sleep = AsyncMock()

        with pytest.raises(RetryExhausted) as exc_info:
            await call_with_retry(fn, policy, sleep=sleep)
        assert exc_info.value.attempts == 1
        sleep.assert_not_called()

    async def test_zero_attempts_still_calls_once(self):
        policy = BackoffPolicy(max_attempts=0, budget=None)
        fn = AsyncMock(return_value=1)
        assert await call_with_retry(fn, policy, sleep=AsyncMock()) == 1
