"""
Cointegration Estimator
=======================

Stationarity verdict and half-life estimates for a log spread.

The verdict is a heuristic proxy for an Augmented Dickey-Fuller test,
NOT a rigorous ADF implementation:

    rho      = lag-1 autocorrelation of spread first differences
    adf_stat = -rho * sqrt(n)
    cointegrated = adf_stat < -2.5 or (mean_reversion_rate > 0.5 and |rho| < 0.3)

Downstream trading thresholds are calibrated against this heuristic.
Callers using the verdict for risk decisions should treat it as a
screening signal only.

Two half-life estimators are exposed side by side:
- autocorrelation method: -ln2 / ln(1 + rho), valid for -1 < rho < 0
- AR(1) regression method: -ln2 / ln(phi), valid for 0 < phi < 1
They routinely disagree; a relative gap above 30% is reported as a
data-quality flag rather than resolved.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

import numpy as np
from scipy import stats

from core.exceptions import InsufficientData
from core.series_stats import ZERO_TOLERANCE


logger = logging.getLogger(__name__)

INFINITE_HALF_LIFE = math.inf


class HalfLifeMethod(str, Enum):
    """Half-life estimators."""
    AUTOCORRELATION = "autocorr"
    AR1 = "ar1"


@dataclass(frozen=True)
class HalfLifeEstimate:
    """One half-life estimate; days is math.inf when no reversion is detected."""
    method: HalfLifeMethod
    days: float
    coefficient: float | None

    @property
    def is_finite(self) -> bool:
        return math.isfinite(self.days)

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method.value,
            "days": self.days if self.is_finite else None,
            "coefficient": self.coefficient,
        }


@dataclass(frozen=True)
class CointegrationResult:
    """Stationarity verdict for one spread."""
    autocorrelation: float
    adf_stat: float
    mean_reversion_rate: float
    is_cointegrated: bool
    half_life_autocorr: HalfLifeEstimate
    half_life_ar1: HalfLifeEstimate
    n_observations: int
    divergence_tolerance: float = 0.30

    @property
    def half_life(self) -> float:
        """Primary half-life (autocorrelation method, used by trading filters)."""
        return self.half_life_autocorr.days

    @property
    def half_life_divergence(self) -> float | None:
        """(ar1 - autocorr) / autocorr, or None unless both are finite."""
        if not (self.half_life_autocorr.is_finite and self.half_life_ar1.is_finite):
            return None
        return (self.half_life_ar1.days - self.half_life_autocorr.days) / self.half_life_autocorr.days

    @property
    def estimators_diverge(self) -> bool:
        divergence = self.half_life_divergence
        return divergence is not None and abs(divergence) > self.divergence_tolerance

    def to_dict(self) -> dict[str, Any]:
        return {
            "autocorrelation": self.autocorrelation,
            "adf_stat": self.adf_stat,
            "mean_reversion_rate": self.mean_reversion_rate,
            "is_cointegrated": self.is_cointegrated,
            "half_life_autocorr": self.half_life_autocorr.to_dict(),
            "half_life_ar1": self.half_life_ar1.to_dict(),
            "half_life_divergence": self.half_life_divergence,
            "estimators_diverge": self.estimators_diverge,
            "n_observations": self.n_observations,
        }


class CointegrationEstimator:
    """
    Heuristic cointegration test and half-life estimation on a spread.

    Usage:
        estimator = CointegrationEstimator(config)
        result = estimator.estimate(spread, mean=window_mean)
        if result.is_cointegrated and result.half_life <= 45:
            ...
    """

    def __init__(self, config: dict[str, Any] | None = None):
        config = config or {}

        self._min_observations = config.get("min_observations", 10)
        self._adf_critical = config.get("adf_critical_value", -2.5)
        self._min_mean_reversion_rate = config.get("min_mean_reversion_rate", 0.5)
        self._max_abs_autocorrelation = config.get("max_abs_autocorrelation", 0.3)
        self._max_half_life = config.get("max_valid_half_life", 1000.0)
        self._min_diffs_for_half_life = config.get("min_diffs_for_half_life", 10)
        self._divergence_tolerance = config.get("half_life_divergence_tolerance", 0.30)

    def estimate(
        self,
        spread: Sequence[float] | np.ndarray,
        mean: float | None = None,
    ) -> CointegrationResult:
        """
        Run the stationarity proxy and both half-life estimators.

        Args:
            spread: Log spread, oldest first
            mean: Reference mean for the mean-reversion rate (the rolling
                z-score window mean); defaults to the full-sample mean

        Returns:
            CointegrationResult
        """
        s = np.asarray(spread, dtype=float)
        if len(s) < self._min_observations:
            raise InsufficientData(
                f"cointegration needs {self._min_observations} spread points, got {len(s)}"
            )

        diffs = np.diff(s)
        rho = self.lag1_autocorrelation(diffs)
        adf_stat = -rho * math.sqrt(len(s))
        reference = float(s.mean()) if mean is None else mean
        mrr = self.mean_reversion_rate(s, reference)

        is_cointegrated = adf_stat < self._adf_critical or (
            mrr > self._min_mean_reversion_rate and abs(rho) < self._max_abs_autocorrelation
        )

        return CointegrationResult(
            autocorrelation=rho,
            adf_stat=adf_stat,
            mean_reversion_rate=mrr,
            is_cointegrated=is_cointegrated,
            half_life_autocorr=self.half_life_autocorrelation(rho, len(diffs)),
            half_life_ar1=self.half_life_ar1(s),
            n_observations=len(s),
            divergence_tolerance=self._divergence_tolerance,
        )

    @staticmethod
    def lag1_autocorrelation(diffs: np.ndarray) -> float:
        """
        Lag-1 autocorrelation of the differences.

        Lagged products are averaged over n-1 terms, the variance over n;
        zero (or float-noise) variance gives 0.
        """
        n = len(diffs)
        if n < 2:
            return 0.0
        dev = diffs - diffs.mean()
        var_diff = float(np.sum(dev ** 2) / n)
        if var_diff <= ZERO_TOLERANCE ** 2:
            return 0.0
        autocov = float(np.sum(dev[1:] * dev[:-1]) / (n - 1))
        return autocov / var_diff

    @staticmethod
    def mean_reversion_rate(spread: np.ndarray, mean: float) -> float:
        """Fraction of adjacent spread moves that point back toward the mean."""
        n = len(spread)
        if n < 3:
            return 0.0
        toward = 0
        # Moves i-1 -> i for i in 1..n-2; the final move is not scored
        for i in range(1, n - 1):
            prev_dev = spread[i - 1] - mean
            curr_dev = spread[i] - mean
            if (prev_dev > 0 and curr_dev < prev_dev) or (prev_dev < 0 and curr_dev > prev_dev):
                toward += 1
        return toward / (n - 1)

    def half_life_autocorrelation(self, rho: float, n_diffs: int) -> HalfLifeEstimate:
        """-ln(2) / ln(1 + rho), valid only for -1 < rho < 0."""
        days = INFINITE_HALF_LIFE
        if n_diffs >= self._min_diffs_for_half_life and -1.0 < rho < 0.0:
            days = self._bounded(-math.log(2) / math.log(1 + rho))
        return HalfLifeEstimate(HalfLifeMethod.AUTOCORRELATION, days, rho)

    def half_life_ar1(self, spread: np.ndarray) -> HalfLifeEstimate:
        """Regress spread[t] on spread[t-1]; -ln(2) / ln(phi), valid only for 0 < phi < 1."""
        if len(spread) < self._min_diffs_for_half_life:
            return HalfLifeEstimate(HalfLifeMethod.AR1, INFINITE_HALF_LIFE, None)

        lagged = spread[:-1]
        current = spread[1:]
        if np.ptp(lagged) == 0:
            return HalfLifeEstimate(HalfLifeMethod.AR1, INFINITE_HALF_LIFE, None)

        phi = float(stats.linregress(lagged, current).slope)
        days = INFINITE_HALF_LIFE
        if 0.0 < phi < 1.0:
            days = self._bounded(-math.log(2) / math.log(phi))
        return HalfLifeEstimate(HalfLifeMethod.AR1, days, phi)

    def _bounded(self, half_life: float) -> float:
        """Half-lives outside (0, max) or non-finite count as infinite."""
        if math.isfinite(half_life) and 0 < half_life < self._max_half_life:
            return half_life
        return INFINITE_HALF_LIFE


def create_cointegration_estimator(config: dict[str, Any] | None = None) -> CointegrationEstimator:
    """Factory function to create a CointegrationEstimator."""
    return CointegrationEstimator((config or {}).get("cointegration", {}))
