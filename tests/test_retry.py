"""
Tests for Retry With Backoff
============================
"""

import asyncio
from unittest.mock import AsyncMock

import aiohttp
import pytest

from core.retry import RetryPolicy, retry_async


class TestRetryPolicy:
    """Tests for delay computation."""

    def test_exponential_delays(self):
        """base * multiplier ** attempt, capped."""
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0, jitter_fraction=0.0)

        assert [policy.delay_for(k) for k in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_bounds(self):
        """Jitter stays within the configured fraction."""
        policy = RetryPolicy(base_delay_seconds=2.0, jitter_fraction=0.1)

        for _ in range(50):
            assert 1.8 <= policy.delay_for(0) <= 2.2

    def test_from_config(self):
        """At least one attempt is always made."""
        policy = RetryPolicy.from_config({"max_attempts": 0, "base_delay_seconds": 0.5})

        assert policy.max_attempts == 1
        assert policy.base_delay_seconds == 0.5


class TestRetryAsync:
    """Tests for retry_async."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_errors(self):
        """Two timeouts then a result; sleeps follow the backoff."""
        func = AsyncMock(side_effect=[asyncio.TimeoutError(), aiohttp.ClientError(), "ok"])
        sleep = AsyncMock()
        policy = RetryPolicy(max_attempts=3, base_delay_seconds=1.0, jitter_fraction=0.0)

        result = await retry_async(func, policy, sleep=sleep)

        assert result == "ok"
        assert func.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_raises_last_error(self):
        """After max_attempts the last retryable error propagates."""
        func = AsyncMock(side_effect=aiohttp.ClientError("down"))
        sleep = AsyncMock()

        with pytest.raises(aiohttp.ClientError):
            await retry_async(func, RetryPolicy(max_attempts=2, jitter_fraction=0.0), sleep=sleep)

        assert func.await_count == 2
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self):
        """Errors outside retry_on are not retried."""
        func = AsyncMock(side_effect=ValueError("bad payload"))
        sleep = AsyncMock()

        with pytest.raises(ValueError):
            await retry_async(func, RetryPolicy(max_attempts=5), sleep=sleep)

        assert func.await_count == 1
        sleep.assert_not_awaited()
