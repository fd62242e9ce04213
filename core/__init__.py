"""
Pair Trading Engine - Core Module
=================================

Statistics, cointegration, divergence profiling and trade lifecycle
components for the pair fitness and mean-reversion signal engine.
"""

from core.exceptions import (
    PairTradingError,
    PairRejected,
    InsufficientData,
    DegenerateSpread,
    StaleDivergenceProfile,
    EntryDropped,
    ConcurrencyCapExceeded,
    DuplicateTradeAttempt,
    InvalidTransition,
    DataSourceError,
)
from core.series_stats import PriceSeries, PairSeries, ZScore
from core.cointegration import CointegrationEstimator, CointegrationResult, HalfLifeMethod
from core.divergence_profiler import DivergenceProfiler, DivergenceProfile, ThresholdStats
from core.regime_detector import RegimeDetector, HurstResult, HurstRegime
from core.exit_rules import ExitRuleManager, ExitDecision, ExitReason, ExitContext

__all__ = [
    # Errors
    "PairTradingError",
    "PairRejected",
    "InsufficientData",
    "DegenerateSpread",
    "StaleDivergenceProfile",
    "EntryDropped",
    "ConcurrencyCapExceeded",
    "DuplicateTradeAttempt",
    "InvalidTransition",
    "DataSourceError",
    # Statistics
    "PriceSeries",
    "PairSeries",
    "ZScore",
    "CointegrationEstimator",
    "CointegrationResult",
    "HalfLifeMethod",
    "DivergenceProfiler",
    "DivergenceProfile",
    "ThresholdStats",
    "RegimeDetector",
    "HurstResult",
    "HurstRegime",
    # Exits
    "ExitRuleManager",
    "ExitDecision",
    "ExitReason",
    "ExitContext",
]
