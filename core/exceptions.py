"""
Pair Engine Exceptions
======================

Error taxonomy for the pair fitness engine.

Two families:
- PairRejected: numeric/data conditions that exclude one pair from the
  current cycle (never abort a batch).
- EntryDropped: steady-state conditions on the entry path (cap reached,
  pair already in trade). Expected, logged at INFO, not errors.
"""

from __future__ import annotations


class PairTradingError(Exception):
    """Base class for all engine errors."""


class PairRejected(PairTradingError):
    """A pair was excluded from the current cycle."""

    reason = "rejected"

    def __init__(self, message: str, pair: str | None = None):
        super().__init__(message)
        self.pair = pair

    def with_pair(self, pair: str) -> "PairRejected":
        """Attach the pair name if the raising code did not know it."""
        if self.pair is None:
            self.pair = pair
        return self


class InsufficientData(PairRejected):
    """Fewer aligned observations than the statistic requires, or data absent."""

    reason = "insufficient_data"


class DegenerateSpread(PairRejected):
    """A variance or standard deviation is zero; the statistic is undefined."""

    reason = "degenerate_spread"


class StaleDivergenceProfile(PairRejected):
    """A divergence profile was built on a window that is no longer current."""

    reason = "stale_profile"


class EntryDropped(PairTradingError):
    """An entry signal was dropped (not queued)."""

    reason = "dropped"

    def __init__(self, message: str, pair: str):
        super().__init__(message)
        self.pair = pair


class ConcurrencyCapExceeded(EntryDropped):
    """The global live-trade count is at the configured cap."""

    reason = "cap_reached"


class DuplicateTradeAttempt(EntryDropped):
    """The pair already has a live trade."""

    reason = "duplicate_trade"


class InvalidTransition(PairTradingError):
    """A state machine was driven from a state that does not allow the step."""


class DataSourceError(PairTradingError):
    """The price data collaborator failed after its retries."""
