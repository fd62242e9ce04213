"""
Regime Detection Module
=======================

Trend-strength regime for a pair spread via the Hurst exponent.

Features:
- Rescaled range (R/S) Hurst estimate on spread increments
- Classification (strong mean reversion / mean reverting / random walk / trending)
- Regime-shift check used by the exit rules and the entry guard

H < 0.5: mean reverting
H = 0.5: random walk
H > 0.5: trending
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

import numpy as np
from scipy import stats


logger = logging.getLogger(__name__)


class HurstRegime(str, Enum):
    """Hurst exponent classification."""
    STRONG_MEAN_REVERSION = "strong_mean_reversion"  # H < 0.4
    MEAN_REVERTING = "mean_reverting"  # 0.4 <= H < 0.5
    RANDOM_WALK = "random_walk"  # 0.5 <= H < 0.55
    TRENDING = "trending"  # H >= 0.55


@dataclass(frozen=True)
class HurstResult:
    """Hurst estimate for one series."""
    hurst: float
    classification: HurstRegime
    is_valid: bool
    n_observations: int

    @property
    def is_mean_reverting(self) -> bool:
        return self.is_valid and self.hurst < 0.5

    def to_dict(self) -> dict[str, Any]:
        return {
            "hurst": self.hurst,
            "classification": self.classification.value,
            "is_valid": self.is_valid,
            "n_observations": self.n_observations,
        }


def classify_hurst(hurst: float) -> HurstRegime:
    if hurst < 0.4:
        return HurstRegime.STRONG_MEAN_REVERSION
    if hurst < 0.5:
        return HurstRegime.MEAN_REVERTING
    if hurst < 0.55:
        return HurstRegime.RANDOM_WALK
    return HurstRegime.TRENDING


class RegimeDetector:
    """
    Hurst-based regime detection for spreads.

    Usage:
        detector = RegimeDetector(config)
        result = detector.estimate_hurst(spread)
        if detector.is_regime_shift(result):
            ...
    """

    def __init__(self, config: dict[str, Any] | None = None):
        config = config or {}

        self._window_sizes: tuple[int, ...] = tuple(config.get("window_sizes", (10, 20, 40)))
        self._min_observations = config.get("min_observations", 40)
        self._trending_threshold = config.get("trending_threshold", 0.5)

    @property
    def trending_threshold(self) -> float:
        return self._trending_threshold

    def estimate_hurst(self, levels: Sequence[float] | np.ndarray) -> HurstResult:
        """
        Estimate the Hurst exponent of a level series (e.g. a log spread).

        R/S analysis runs on the first differences. Returns an invalid
        result at H = 0.5 when there is not enough data.
        """
        values = np.asarray(levels, dtype=float)
        n = len(values)
        if n < self._min_observations:
            return HurstResult(0.5, HurstRegime.RANDOM_WALK, False, n)

        increments = np.diff(values)

        rs_values = []
        window_sizes = []
        for window in self._window_sizes:
            if window > len(increments):
                break

            num_windows = len(increments) // window
            rs_for_window = []
            for i in range(num_windows):
                subset = increments[i * window:(i + 1) * window]
                dev = subset - subset.mean()
                cum_dev = np.cumsum(dev)
                r = cum_dev.max() - cum_dev.min()
                s = math.sqrt(float(np.mean(dev ** 2)))
                if s > 0:
                    rs_for_window.append(r / s)

            if rs_for_window:
                rs_values.append(float(np.mean(rs_for_window)))
                window_sizes.append(window)

        # Fit log(R/S) = H * log(n) + c
        points = [(math.log(w), math.log(rs)) for w, rs in zip(window_sizes, rs_values) if rs > 0]
        if len(points) < 2:
            return HurstResult(0.5, HurstRegime.RANDOM_WALK, False, n)

        log_n, log_rs = zip(*points)
        hurst = float(stats.linregress(log_n, log_rs).slope)
        hurst = max(0.0, min(1.0, hurst))
        return HurstResult(hurst, classify_hurst(hurst), True, n)

    def is_regime_shift(self, result: HurstResult | None) -> bool:
        """True when a valid estimate says the spread has turned trending."""
        return result is not None and result.is_valid and result.hurst >= self._trending_threshold


def create_regime_detector(config: dict[str, Any] | None = None) -> RegimeDetector:
    """Factory function to create a RegimeDetector."""
    return RegimeDetector((config or {}).get("regime", {}))
