"""
Divergence Profiler
===================

Empirical table of how reliably a pair's spread reverted after crossing
each candidate entry threshold, and the entry threshold derived from it.

For each threshold T on the ladder:
- an event is a crossing from |z| < T to |z| >= T
- the event reverted if a later point has |z| < 0.5 before the series ends
- reversion_rate = reverted / events

Optimal entry is the highest T with at least one event and a 100%
reversion rate; otherwise the lowest ladder threshold. The result is
never below the configured floor.

Only the z-scores handed in are used. Callers cut the series at the
decision point, so the profile never sees data after it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

import numpy as np

from core.exceptions import InsufficientData, StaleDivergenceProfile


logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = (1.0, 1.5, 2.0, 2.5, 3.0)
DEFAULT_REVERTED_BAND = 0.5
ABSOLUTE_ENTRY_FLOOR = 1.0


@dataclass(frozen=True)
class ThresholdStats:
    """Reversion statistics for one threshold."""
    threshold: float
    event_count: int
    reverted_count: int
    avg_time_to_revert: float | None = None  # bars
    avg_peak_z: float | None = None

    @property
    def reversion_rate(self) -> float:
        if self.event_count == 0:
            return 0.0
        return self.reverted_count / self.event_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "threshold": self.threshold,
            "event_count": self.event_count,
            "reverted_count": self.reverted_count,
            "reversion_rate": self.reversion_rate,
            "avg_time_to_revert": self.avg_time_to_revert,
            "avg_peak_z": self.avg_peak_z,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThresholdStats:
        return cls(
            threshold=float(data["threshold"]),
            event_count=int(data["event_count"]),
            reverted_count=int(data["reverted_count"]),
            avg_time_to_revert=data.get("avg_time_to_revert"),
            avg_peak_z=data.get("avg_peak_z"),
        )


@dataclass(frozen=True)
class DivergenceProfile:
    """
    Threshold ladder statistics for one (pair, window).

    window_end identifies the window the profile was built on; once the
    pair's data advances past it the profile is stale.
    """
    thresholds: tuple[ThresholdStats, ...]
    optimal_entry_threshold: float
    max_historical_abs_z: float
    current_z: float
    n_observations: int
    pair: str | None = None
    window_end: datetime | None = None

    def stats_for(self, threshold: float) -> ThresholdStats:
        for stats in self.thresholds:
            if abs(stats.threshold - threshold) < 1e-9:
                return stats
        raise KeyError(f"threshold {threshold} not on the ladder")

    def is_current(self, window_end: datetime | None) -> bool:
        return self.window_end == window_end

    def ensure_current(self, window_end: datetime | None) -> DivergenceProfile:
        """Raise StaleDivergenceProfile if built on a different window."""
        if not self.is_current(window_end):
            raise StaleDivergenceProfile(
                f"profile built on window ending {self.window_end}, current window ends {window_end}",
                pair=self.pair,
            )
        return self

    def summary(self) -> dict[str, Any]:
        """Compact form for watchlist entries."""
        optimal = None
        try:
            optimal = self.stats_for(self.optimal_entry_threshold)
        except KeyError:
            pass
        return {
            "optimal_entry_threshold": self.optimal_entry_threshold,
            "max_historical_abs_z": self.max_historical_abs_z,
            "reversion_rate_at_entry": optimal.reversion_rate if optimal else None,
            "events_at_entry": optimal.event_count if optimal else 0,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "pair": self.pair,
            "thresholds": [t.to_dict() for t in self.thresholds],
            "optimal_entry_threshold": self.optimal_entry_threshold,
            "max_historical_abs_z": self.max_historical_abs_z,
            "current_z": self.current_z,
            "n_observations": self.n_observations,
            "window_end": self.window_end.isoformat() if self.window_end else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DivergenceProfile:
        window_end = data.get("window_end")
        return cls(
            thresholds=tuple(ThresholdStats.from_dict(t) for t in data["thresholds"]),
            optimal_entry_threshold=float(data["optimal_entry_threshold"]),
            max_historical_abs_z=float(data["max_historical_abs_z"]),
            current_z=float(data["current_z"]),
            n_observations=int(data["n_observations"]),
            pair=data.get("pair"),
            window_end=datetime.fromisoformat(window_end) if window_end else None,
        )


@dataclass
class _Event:
    start: int
    peak: float
    reverted_at: int | None = None


class DivergenceProfiler:
    """
    Builds DivergenceProfiles from z-score sequences.

    Usage:
        profiler = DivergenceProfiler({"thresholds": [1.0, 1.5, 2.0, 2.5, 3.0]})
        profile = profiler.profile(z_scores, pair="ETH/SOL", window_end=ts)
        entry = profile.optimal_entry_threshold
    """

    def __init__(self, config: dict[str, Any] | None = None):
        config = config or {}

        ladder = config.get("thresholds", DEFAULT_THRESHOLDS)
        self._thresholds: tuple[float, ...] = tuple(sorted(float(t) for t in ladder))
        if not self._thresholds:
            raise ValueError("threshold ladder is empty")
        self._reverted_band = config.get("reverted_band", DEFAULT_REVERTED_BAND)
        self._min_entry_threshold = max(
            ABSOLUTE_ENTRY_FLOOR, config.get("min_entry_threshold", 1.5)
        )

    @property
    def thresholds(self) -> tuple[float, ...]:
        return self._thresholds

    @property
    def min_entry_threshold(self) -> float:
        return self._min_entry_threshold

    def profile(
        self,
        z_scores: Sequence[float] | np.ndarray,
        pair: str | None = None,
        window_end: datetime | None = None,
    ) -> DivergenceProfile:
        """
        Build the threshold table for a z-score sequence.

        Args:
            z_scores: Z-scores, oldest first; NaN points are dropped
            pair: Pair name, carried for staleness errors and logs
            window_end: Last timestamp of the window the z-scores come from

        Returns:
            DivergenceProfile
        """
        z = np.asarray(z_scores, dtype=float)
        z = z[np.isfinite(z)]
        if len(z) == 0:
            raise InsufficientData("no defined z-scores to profile", pair=pair)

        abs_z = np.abs(z)
        table = tuple(self._threshold_stats(abs_z, t) for t in self._thresholds)
        optimal = self._optimal_entry(table)

        profile = DivergenceProfile(
            thresholds=table,
            optimal_entry_threshold=optimal,
            max_historical_abs_z=float(abs_z.max()),
            current_z=float(z[-1]),
            n_observations=len(z),
            pair=pair,
            window_end=window_end,
        )

        logger.debug(
            f"Divergence profile {pair}: optimal_entry={optimal}, "
            f"max_abs_z={profile.max_historical_abs_z:.2f}, n={len(z)}"
        )
        return profile

    def _threshold_stats(self, abs_z: np.ndarray, threshold: float) -> ThresholdStats:
        """Every crossing is an event, followed forward on its own to reversion."""
        events: list[_Event] = []
        n = len(abs_z)
        for i in range(1, n):
            if not abs_z[i - 1] < threshold <= abs_z[i]:
                continue
            event = _Event(start=i, peak=float(abs_z[i]))
            for j in range(i + 1, n):
                if abs_z[j] < self._reverted_band:
                    event.reverted_at = j
                    break
                event.peak = max(event.peak, float(abs_z[j]))
            events.append(event)

        reverted = [e for e in events if e.reverted_at is not None]
        avg_time = (
            float(np.mean([e.reverted_at - e.start for e in reverted])) if reverted else None
        )
        avg_peak = float(np.mean([e.peak for e in events])) if events else None

        return ThresholdStats(
            threshold=threshold,
            event_count=len(events),
            reverted_count=len(reverted),
            avg_time_to_revert=avg_time,
            avg_peak_z=avg_peak,
        )

    def _optimal_entry(self, table: tuple[ThresholdStats, ...]) -> float:
        qualifying = [
            t.threshold for t in table
            if t.event_count >= 1 and t.reverted_count == t.event_count
        ]
        chosen = max(qualifying) if qualifying else self._thresholds[0]
        return max(chosen, self._min_entry_threshold)


def create_divergence_profiler(config: dict[str, Any] | None = None) -> DivergenceProfiler:
    """Factory function to create a DivergenceProfiler from the engine section."""
    engine = (config or {}).get("engine", {})
    return DivergenceProfiler({
        "thresholds": engine.get("entry_ladder", DEFAULT_THRESHOLDS),
        "reverted_band": engine.get("reverted_band", DEFAULT_REVERTED_BAND),
        "min_entry_threshold": engine.get("min_entry_threshold", 1.5),
    })
