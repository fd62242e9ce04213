"""
Pair Fitness Strategy
=====================

Composes the statistics layer into one verdict per pair.

Features:
- FitnessVerdict: correlation, beta, spread moments, z-score,
  half-lives, cointegration flag, mean-reversion rate
- DivergenceProfile alongside every verdict
- Backtest cutoff: data after cutoff_time is removed before anything is computed
- Multi-window entry validation (reactive / structural / short confirmation)
- Time-to-reversion estimate from half-life

Production notes:
- The cointegration flag is the autocorrelation heuristic from
  core.cointegration, not a rigorous ADF test
- No retries here; missing data surfaces as InsufficientData
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import numpy as np

from core.cointegration import CointegrationEstimator, CointegrationResult
from core.divergence_profiler import DivergenceProfile, DivergenceProfiler
from core.exceptions import PairRejected
from core.series_stats import (
    DEFAULT_ZSCORE_WINDOW,
    MIN_ALIGNED_OBSERVATIONS,
    PairSeries,
    beta as ols_beta,
    correlation as pearson_correlation,
    log_spread,
    returns,
    rolling_z_score,
    z_score_series,
)


logger = logging.getLogger(__name__)


def _finite_or_none(value: float) -> float | None:
    return value if math.isfinite(value) else None


def _none_to_inf(value: float | None) -> float:
    return math.inf if value is None else float(value)


@dataclass(frozen=True)
class FitnessVerdict:
    """
    Fitness of one pair over one window.

    half_life_days is math.inf when no mean reversion is detected;
    it serializes as null.
    """
    pair: str
    correlation: float
    beta: float
    mean_spread: float
    std_dev_spread: float
    current_spread: float
    current_z_score: float
    half_life_days: float
    half_life_ar1_days: float
    is_cointegrated: bool
    mean_reversion_rate: float
    autocorrelation: float
    adf_stat: float
    n_observations: int
    window_end: datetime | None = None
    half_life_divergence: float | None = None

    @property
    def direction(self) -> str:
        """Long asset1 when the spread is cheap, short otherwise."""
        return "long" if self.current_z_score < 0 else "short"

    @property
    def half_life_flagged(self) -> bool:
        """The two half-life estimators disagree by more than 30%."""
        return self.half_life_divergence is not None and abs(self.half_life_divergence) > 0.30

    def signal_strength(self, entry_threshold: float) -> float:
        return min(abs(self.current_z_score) / entry_threshold, 1.0)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "pair": self.pair,
            "correlation": self.correlation,
            "beta": self.beta,
            "mean_spread": self.mean_spread,
            "std_dev_spread": self.std_dev_spread,
            "current_spread": self.current_spread,
            "current_z_score": self.current_z_score,
            "half_life_days": _finite_or_none(self.half_life_days),
            "half_life_ar1_days": _finite_or_none(self.half_life_ar1_days),
            "is_cointegrated": self.is_cointegrated,
            "mean_reversion_rate": self.mean_reversion_rate,
            "autocorrelation": self.autocorrelation,
            "adf_stat": self.adf_stat,
            "n_observations": self.n_observations,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "half_life_divergence": self.half_life_divergence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FitnessVerdict:
        """Create from dictionary."""
        window_end = data.get("window_end")
        return cls(
            pair=data["pair"],
            correlation=float(data["correlation"]),
            beta=float(data["beta"]),
            mean_spread=float(data["mean_spread"]),
            std_dev_spread=float(data["std_dev_spread"]),
            current_spread=float(data["current_spread"]),
            current_z_score=float(data["current_z_score"]),
            half_life_days=_none_to_inf(data.get("half_life_days")),
            half_life_ar1_days=_none_to_inf(data.get("half_life_ar1_days")),
            is_cointegrated=bool(data["is_cointegrated"]),
            mean_reversion_rate=float(data["mean_reversion_rate"]),
            autocorrelation=float(data["autocorrelation"]),
            adf_stat=float(data["adf_stat"]),
            n_observations=int(data["n_observations"]),
            window_end=datetime.fromisoformat(window_end) if window_end else None,
            half_life_divergence=data.get("half_life_divergence"),
        )


@dataclass(frozen=True)
class PairEvaluation:
    """Verdict plus divergence profile for one evaluation call."""
    verdict: FitnessVerdict
    profile: DivergenceProfile
    spread: np.ndarray

    @property
    def entry_threshold(self) -> float:
        return self.profile.optimal_entry_threshold


def estimate_time_to_reversion(
    half_life: float,
    z_score: float,
    reverted_band: float = 0.5,
) -> float | None:
    """
    Days for |z| to decay to the reverted band under exponential decay.

    half_life * log2(|z| / band); None when not finite in (0, 1000).
    """
    if not math.isfinite(half_life) or half_life <= 0 or abs(z_score) <= reverted_band:
        return None
    days = half_life * math.log(abs(z_score) / reverted_band) / math.log(2)
    if math.isfinite(days) and 0 < days < 1000:
        return days
    return None


class PairFitnessEvaluator:
    """
    Pair fitness evaluation.

    Usage:
        evaluator = PairFitnessEvaluator(config)
        evaluation = evaluator.evaluate(pair_series, cutoff_time=ts)
        verdict = evaluation.verdict
        entry = evaluation.profile.optimal_entry_threshold

    Raises InsufficientData for fewer than 15 aligned observations and
    DegenerateSpread for zero return variance or zero spread std dev.
    """

    def __init__(self, config: dict[str, Any] | None = None):
        config = config or {}

        self._min_observations = max(
            MIN_ALIGNED_OBSERVATIONS, config.get("min_observations", MIN_ALIGNED_OBSERVATIONS)
        )
        self._zscore_window = config.get("rolling_window", DEFAULT_ZSCORE_WINDOW)
        self._zscore_min_periods = config.get("zscore_min_periods", 10)

        self._estimator = CointegrationEstimator(config.get("cointegration", {}))
        self._profiler = DivergenceProfiler({
            "thresholds": config.get("entry_ladder", (1.0, 1.5, 2.0, 2.5, 3.0)),
            "reverted_band": config.get("reverted_band", 0.5),
            "min_entry_threshold": config.get("min_entry_threshold", 1.5),
        })

        logger.info(
            f"PairFitnessEvaluator initialized: window={self._zscore_window}, "
            f"min_obs={self._min_observations}, ladder={self._profiler.thresholds}"
        )

    @property
    def profiler(self) -> DivergenceProfiler:
        return self._profiler

    @property
    def zscore_window(self) -> int:
        return self._zscore_window

    def evaluate(
        self,
        series: PairSeries,
        cutoff_time: datetime | None = None,
    ) -> PairEvaluation:
        """
        Evaluate a pair: one FitnessVerdict and one DivergenceProfile.

        Args:
            series: Aligned pair prices
            cutoff_time: Drop every observation after this time first

        Returns:
            PairEvaluation
        """
        if cutoff_time is not None:
            series = series.until(cutoff_time)

        try:
            verdict, spread = self._fit(series)
            z_scores = z_score_series(spread, self._zscore_window, self._zscore_min_periods)
            profile = self._profiler.profile(
                z_scores, pair=series.pair, window_end=series.last_timestamp
            )
        except PairRejected as e:
            raise e.with_pair(series.pair)

        return PairEvaluation(verdict=verdict, profile=profile, spread=spread)

    def fitness(
        self,
        series: PairSeries,
        cutoff_time: datetime | None = None,
    ) -> FitnessVerdict:
        """Verdict only, without the divergence profile."""
        if cutoff_time is not None:
            series = series.until(cutoff_time)
        try:
            verdict, _ = self._fit(series)
        except PairRejected as e:
            raise e.with_pair(series.pair)
        return verdict

    def _fit(self, series: PairSeries) -> tuple[FitnessVerdict, np.ndarray]:
        series.require(self._min_observations)

        r1 = returns(series.prices1)
        r2 = returns(series.prices2)
        corr = pearson_correlation(r1, r2)
        hedge = ols_beta(r1, r2)

        spread = log_spread(series.prices1, series.prices2, hedge)
        z = rolling_z_score(spread, self._zscore_window)
        coint: CointegrationResult = self._estimator.estimate(spread, mean=z.mean)

        if coint.estimators_diverge:
            logger.debug(
                f"{series.pair}: half-life estimators disagree "
                f"(autocorr={coint.half_life_autocorr.days:.1f}d, ar1={coint.half_life_ar1.days:.1f}d)"
            )

        verdict = FitnessVerdict(
            pair=series.pair,
            correlation=corr,
            beta=hedge,
            mean_spread=z.mean,
            std_dev_spread=z.std,
            current_spread=z.current,
            current_z_score=z.value,
            half_life_days=coint.half_life,
            half_life_ar1_days=coint.half_life_ar1.days,
            is_cointegrated=coint.is_cointegrated,
            mean_reversion_rate=coint.mean_reversion_rate,
            autocorrelation=coint.autocorrelation,
            adf_stat=coint.adf_stat,
            n_observations=len(series),
            window_end=series.last_timestamp,
            half_life_divergence=coint.half_life_divergence,
        )
        return verdict, spread


class EntryRejection(str, Enum):
    """Why the multi-window entry validation failed."""
    OK = "ok"
    NO_SIGNAL = "no_signal"
    LOW_CORRELATION = "low_corr"
    NOT_COINTEGRATED = "not_coint"
    SLOW_REVERSION = "slow_reversion"
    CONFLICTING_TIMEFRAME = "conflicting_tf"
    WEAK_CONFIRMATION = "weak_confirmation"


@dataclass(frozen=True)
class EntryValidation:
    """Result of multi-window entry validation."""
    valid: bool
    reason: EntryRejection
    reactive: FitnessVerdict
    structural_cointegrated: bool
    short_z_score: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "reason": self.reason.value,
            "reactive": self.reactive.to_dict(),
            "structural_cointegrated": self.structural_cointegrated,
            "short_z_score": self.short_z_score,
        }


class EntryValidator:
    """
    Multi-window entry validation.

    - reactive window (30d): z-score, correlation, beta, half-life
    - structural window (90d, needs 60+ points): cointegration with its own beta;
      falls back to the reactive verdict when shorter
    - short window (7d): trailing z-score of the reactive spread must confirm
      the signal (|z7| >= 0.8 * entry, same sign)
    """

    def __init__(self, evaluator: PairFitnessEvaluator, config: dict[str, Any] | None = None):
        config = config or {}

        self._evaluator = evaluator
        windows = config.get("windows", {})
        self._reactive_window = windows.get("reactive", 30)
        self._structural_window = windows.get("cointegration", 90)
        self._structural_min_points = windows.get("cointegration_min_points", 60)
        self._short_window = windows.get("short", 7)

        self._min_correlation = config.get("min_correlation", 0.6)
        self._max_half_life = config.get("max_entry_half_life", 30)
        self._confirmation_ratio = config.get("short_confirmation_ratio", 0.8)

    def reactive_series(self, series: PairSeries) -> PairSeries:
        return series.tail(self._reactive_window)

    def validate(
        self,
        series: PairSeries,
        entry_threshold: float,
        reactive: FitnessVerdict | None = None,
    ) -> EntryValidation:
        """
        Validate an entry across windows.

        Args:
            series: Full price history for the pair (at least the structural window)
            entry_threshold: Pair entry threshold
            reactive: Precomputed reactive verdict, if the caller has one

        Returns:
            EntryValidation
        """
        reactive_series = self.reactive_series(series)
        if reactive is None:
            reactive = self._evaluator.fitness(reactive_series)

        structural = series.tail(self._structural_window)
        if len(structural) >= self._structural_min_points:
            structural_cointegrated = self._evaluator.fitness(structural).is_cointegrated
        else:
            structural_cointegrated = reactive.is_cointegrated

        short_z = self._short_z_score(reactive_series, reactive.beta)

        z = reactive.current_z_score
        signal = abs(z) >= entry_threshold
        confirmed = short_z is None or (
            abs(short_z) >= entry_threshold * self._confirmation_ratio and z * short_z > 0
        )

        if not signal:
            reason = EntryRejection.NO_SIGNAL
        elif reactive.correlation < self._min_correlation:
            reason = EntryRejection.LOW_CORRELATION
        elif not structural_cointegrated:
            reason = EntryRejection.NOT_COINTEGRATED
        elif reactive.half_life_days > self._max_half_life:
            reason = EntryRejection.SLOW_REVERSION
        elif short_z is not None and z * short_z <= 0:
            reason = EntryRejection.CONFLICTING_TIMEFRAME
        elif not confirmed:
            reason = EntryRejection.WEAK_CONFIRMATION
        else:
            reason = EntryRejection.OK

        return EntryValidation(
            valid=reason is EntryRejection.OK,
            reason=reason,
            reactive=reactive,
            structural_cointegrated=structural_cointegrated,
            short_z_score=short_z,
        )

    def _short_z_score(self, series: PairSeries, hedge_ratio: float) -> float | None:
        """Trailing z over the short window of the reactive spread; None if undefined."""
        if len(series) < self._short_window:
            return None
        spread = log_spread(series.prices1, series.prices2, hedge_ratio)
        try:
            return rolling_z_score(spread, self._short_window).value
        except PairRejected:
            return None


def create_pair_fitness_evaluator(config: dict[str, Any] | None = None) -> PairFitnessEvaluator:
    """Factory function to create a PairFitnessEvaluator from the engine section."""
    return PairFitnessEvaluator((config or {}).get("engine", {}))
