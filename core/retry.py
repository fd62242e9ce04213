"""
Retry With Backoff
==================

Retry wrapper for calls at the data-source boundary.

Delay before attempt k+1 (k starting at 0):
    min(base_delay * multiplier ** k, max_delay) * (1 +/- jitter)

The statistics layer never retries; only collaborators use this.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import aiohttp


logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration."""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_fraction: float = 0.1

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay after the given failed attempt (0-based)."""
        delay = min(
            self.base_delay_seconds * self.backoff_multiplier ** attempt,
            self.max_delay_seconds,
        )
        if self.jitter_fraction > 0:
            rng = rng or random
            delay *= 1 + rng.uniform(-self.jitter_fraction, self.jitter_fraction)
        return max(delay, 0.0)

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> RetryPolicy:
        config = config or {}
        return cls(
            max_attempts=max(1, int(config.get("max_attempts", 3))),
            base_delay_seconds=config.get("base_delay_seconds", 1.0),
            max_delay_seconds=config.get("max_delay_seconds", 30.0),
            backoff_multiplier=config.get("backoff_multiplier", 2.0),
            jitter_fraction=config.get("jitter_fraction", 0.1),
        )


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    retry_on: tuple[type[BaseException], ...] = RETRYABLE_EXCEPTIONS,
    description: str = "call",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Await func() until it succeeds or the policy is exhausted.

    Exceptions not listed in retry_on propagate immediately; the last
    retryable exception propagates after the final attempt.
    """
    policy = policy or RetryPolicy()

    for attempt in range(policy.max_attempts):
        try:
            return await func()
        except retry_on as e:
            if attempt >= policy.max_attempts - 1:
                logger.error(f"{description} failed after {policy.max_attempts} attempts: {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{policy.max_attempts}): {e}; "
                f"retrying in {delay:.1f}s"
            )
            await sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover
