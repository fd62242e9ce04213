"""
Exit Rules
==========

Pluggable exit predicates for live pair trades.

Each predicate looks at an ExitContext (the trade's entry facts plus the
latest marks) and either returns an ExitDecision or None. The manager
checks enabled predicates in priority order and the first hit wins.

Default predicates (highest priority first):
- Partial take-profit: +3% P&L closes 50%, once per trade
- Final take-profit: +5% P&L after the partial was taken
- Z-score target: |z| <= exit threshold (0.5)
- Dynamic stop-loss: |z| >= max(|entry_z| * 1.5, max_hist_z * 1.2, 3.0)
- Time stop: days in trade > half_life * 2 (half-life 15 when unknown)
- Correlation breakdown: correlation < 0.4
- Fixed take-profit / stop-loss P&L % (off unless configured)
- Regime shift: Hurst exponent >= 0.5 (off unless configured)
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from core.regime_detector import HurstResult


logger = logging.getLogger(__name__)


class ExitReason(str, Enum):
    """Reason an exit was triggered."""
    TARGET = "TARGET"
    STOP_LOSS = "STOP_LOSS"
    TIME_STOP = "TIME_STOP"
    BREAKDOWN = "BREAKDOWN"
    REGIME_SHIFT = "REGIME_SHIFT"
    TAKE_PROFIT = "TAKE_PROFIT"
    PNL_STOP = "PNL_STOP"
    PARTIAL_TP = "PARTIAL_TP"
    FINAL_TP = "FINAL_TP"
    MANUAL = "MANUAL"


@dataclass(frozen=True)
class ExitDecision:
    """An exit instruction; fraction < 1 is a partial close."""
    reason: ExitReason
    fraction: float = 1.0
    message: str = ""

    @property
    def is_partial(self) -> bool:
        return self.fraction < 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason.value,
            "fraction": self.fraction,
            "message": self.message,
        }


@dataclass(frozen=True)
class ExitContext:
    """Everything an exit predicate may look at for one trade in one cycle."""
    z_score: float
    entry_z_score: float
    correlation: float
    pnl_pct: float
    days_in_trade: float
    half_life: float | None = None
    max_historical_z: float | None = None
    partial_exit_taken: bool = False
    hurst: HurstResult | None = None
    # Recorded on the trade at entry; overrides the predicate default
    exit_threshold: float | None = None


class ExitPredicate(ABC):
    """Base class for exit predicates."""

    name: str = "exit_predicate"

    def __init__(self, priority: int = 0, enabled: bool = True):
        self.priority = priority
        self.enabled = enabled

    @abstractmethod
    def check(self, ctx: ExitContext) -> ExitDecision | None:
        """Return an ExitDecision if this predicate fires."""
        pass

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "priority": self.priority, "enabled": self.enabled}


class PartialTakeProfit(ExitPredicate):
    """Close part of the position once P&L reaches a level, once per trade."""

    name = "partial_take_profit"

    def __init__(self, pnl_pct: float = 3.0, fraction: float = 0.5, **kwargs):
        super().__init__(**kwargs)
        self.pnl_pct = pnl_pct
        self.fraction = fraction

    def check(self, ctx: ExitContext) -> ExitDecision | None:
        if ctx.partial_exit_taken or ctx.pnl_pct < self.pnl_pct:
            return None
        return ExitDecision(
            ExitReason.PARTIAL_TP,
            self.fraction,
            f"Partial TP: P&L {ctx.pnl_pct:+.2f}% >= +{self.pnl_pct}%, "
            f"closing {self.fraction:.0%}",
        )


class FinalTakeProfit(ExitPredicate):
    """Close the remainder after a partial exit once P&L reaches a higher level."""

    name = "final_take_profit"

    def __init__(self, pnl_pct: float = 5.0, **kwargs):
        super().__init__(**kwargs)
        self.pnl_pct = pnl_pct

    def check(self, ctx: ExitContext) -> ExitDecision | None:
        if not ctx.partial_exit_taken or ctx.pnl_pct < self.pnl_pct:
            return None
        return ExitDecision(
            ExitReason.FINAL_TP,
            message=f"Final TP: P&L {ctx.pnl_pct:+.2f}% >= +{self.pnl_pct}%",
        )


class ZScoreTarget(ExitPredicate):
    """Spread has converged back inside the exit band."""

    name = "zscore_target"

    def __init__(self, exit_threshold: float = 0.5, **kwargs):
        super().__init__(**kwargs)
        self.exit_threshold = exit_threshold

    def check(self, ctx: ExitContext) -> ExitDecision | None:
        threshold = ctx.exit_threshold if ctx.exit_threshold is not None else self.exit_threshold
        if abs(ctx.z_score) > threshold:
            return None
        return ExitDecision(
            ExitReason.TARGET,
            message=f"Target: |Z| {abs(ctx.z_score):.2f} <= {threshold}",
        )


class DynamicStopLoss(ExitPredicate):
    """Z-score stop scaled to the entry z and the pair's historical extreme."""

    name = "dynamic_stop_loss"

    def __init__(
        self,
        entry_multiplier: float = 1.5,
        history_multiplier: float = 1.2,
        floor: float = 3.0,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.entry_multiplier = entry_multiplier
        self.history_multiplier = history_multiplier
        self.floor = floor

    def stop_level(self, entry_z: float, max_historical_z: float | None) -> float:
        max_hist = max_historical_z if max_historical_z is not None else 3.0
        return max(
            abs(entry_z) * self.entry_multiplier,
            max_hist * self.history_multiplier,
            self.floor,
        )

    def check(self, ctx: ExitContext) -> ExitDecision | None:
        level = self.stop_level(ctx.entry_z_score, ctx.max_historical_z)
        if abs(ctx.z_score) < level:
            return None
        return ExitDecision(
            ExitReason.STOP_LOSS,
            message=f"Stop loss: |Z| {abs(ctx.z_score):.2f} >= {level:.2f}",
        )


class TimeStop(ExitPredicate):
    """Trade has outlived a multiple of the pair's half-life."""

    name = "time_stop"

    def __init__(self, half_life_multiple: float = 2.0, default_half_life: float = 15.0, **kwargs):
        super().__init__(**kwargs)
        self.half_life_multiple = half_life_multiple
        self.default_half_life = default_half_life

    def max_days(self, half_life: float | None) -> float:
        if half_life is None or not math.isfinite(half_life) or half_life <= 0:
            half_life = self.default_half_life
        return half_life * self.half_life_multiple

    def check(self, ctx: ExitContext) -> ExitDecision | None:
        limit = self.max_days(ctx.half_life)
        if ctx.days_in_trade <= limit:
            return None
        return ExitDecision(
            ExitReason.TIME_STOP,
            message=f"Time stop: {ctx.days_in_trade:.1f}d > {limit:.1f}d",
        )


class CorrelationBreakdown(ExitPredicate):
    """The legs no longer move together."""

    name = "correlation_breakdown"

    def __init__(self, min_correlation: float = 0.4, **kwargs):
        super().__init__(**kwargs)
        self.min_correlation = min_correlation

    def check(self, ctx: ExitContext) -> ExitDecision | None:
        if ctx.correlation >= self.min_correlation:
            return None
        return ExitDecision(
            ExitReason.BREAKDOWN,
            message=f"Correlation breakdown: {ctx.correlation:.2f} < {self.min_correlation}",
        )


class FixedTakeProfit(ExitPredicate):
    """Close the whole trade at a fixed P&L percentage."""

    name = "fixed_take_profit"

    def __init__(self, pnl_pct: float, **kwargs):
        super().__init__(**kwargs)
        self.pnl_pct = pnl_pct

    def check(self, ctx: ExitContext) -> ExitDecision | None:
        if ctx.pnl_pct < self.pnl_pct:
            return None
        return ExitDecision(
            ExitReason.TAKE_PROFIT,
            message=f"Take profit: P&L {ctx.pnl_pct:+.2f}% >= +{self.pnl_pct}%",
        )


class FixedStopLoss(ExitPredicate):
    """Close the whole trade at a fixed P&L loss percentage."""

    name = "fixed_stop_loss"

    def __init__(self, pnl_pct: float, **kwargs):
        super().__init__(**kwargs)
        self.pnl_pct = abs(pnl_pct)

    def check(self, ctx: ExitContext) -> ExitDecision | None:
        if ctx.pnl_pct > -self.pnl_pct:
            return None
        return ExitDecision(
            ExitReason.PNL_STOP,
            message=f"P&L stop: {ctx.pnl_pct:+.2f}% <= -{self.pnl_pct}%",
        )


class RegimeShift(ExitPredicate):
    """Spread has turned trending according to the Hurst exponent."""

    name = "regime_shift"

    def __init__(self, hurst_threshold: float = 0.5, **kwargs):
        super().__init__(**kwargs)
        self.hurst_threshold = hurst_threshold

    def check(self, ctx: ExitContext) -> ExitDecision | None:
        if ctx.hurst is None or not ctx.hurst.is_valid or ctx.hurst.hurst < self.hurst_threshold:
            return None
        return ExitDecision(
            ExitReason.REGIME_SHIFT,
            message=f"Regime shift: Hurst {ctx.hurst.hurst:.2f} >= {self.hurst_threshold}",
        )


class ExitRuleManager:
    """
    Evaluates exit predicates for live trades.

    Usage:
        manager = ExitRuleManager(config["monitor"]["exits"])
        decision = manager.evaluate(ExitContext(...))
        if decision is not None:
            ...
    """

    def __init__(self, config: dict[str, Any] | None = None):
        config = config or {}
        self._predicates: list[ExitPredicate] = []

        partial = config.get("partial_take_profit", {})
        self.add_predicate(PartialTakeProfit(
            pnl_pct=partial.get("pnl_pct", 3.0),
            fraction=partial.get("fraction", 0.5),
            priority=100,
            enabled=partial.get("enabled", True),
        ))
        self.add_predicate(FinalTakeProfit(
            pnl_pct=partial.get("final_pnl_pct", 5.0),
            priority=90,
            enabled=partial.get("enabled", True),
        ))
        self.add_predicate(ZScoreTarget(
            exit_threshold=config.get("exit_threshold", 0.5),
            priority=80,
        ))

        stop = config.get("stop_loss", {})
        self.add_predicate(DynamicStopLoss(
            entry_multiplier=stop.get("entry_multiplier", 1.5),
            history_multiplier=stop.get("history_multiplier", 1.2),
            floor=stop.get("floor", 3.0),
            priority=70,
            enabled=stop.get("enabled", True),
        ))

        time_stop = config.get("time_stop", {})
        self.add_predicate(TimeStop(
            half_life_multiple=time_stop.get("half_life_multiple", 2.0),
            default_half_life=time_stop.get("default_half_life", 15.0),
            priority=60,
            enabled=time_stop.get("enabled", True),
        ))
        self.add_predicate(CorrelationBreakdown(
            min_correlation=config.get("breakdown_correlation", 0.4),
            priority=50,
        ))

        if config.get("take_profit_pct") is not None:
            self.add_predicate(FixedTakeProfit(config["take_profit_pct"], priority=40))
        if config.get("stop_loss_pct") is not None:
            self.add_predicate(FixedStopLoss(config["stop_loss_pct"], priority=30))

        regime = config.get("regime_shift", {})
        self.add_predicate(RegimeShift(
            hurst_threshold=regime.get("hurst_threshold", 0.5),
            priority=20,
            enabled=regime.get("enabled", False),
        ))

        self._stats: dict[str, int] = {"evaluations": 0, "total_triggers": 0}

        logger.info(
            f"ExitRuleManager initialized: "
            f"{[p.name for p in self._predicates if p.enabled]}"
        )

    @property
    def predicates(self) -> list[ExitPredicate]:
        return list(self._predicates)

    def add_predicate(self, predicate: ExitPredicate) -> None:
        """Add a predicate; higher priority is checked first."""
        self._predicates.append(predicate)
        self._predicates.sort(key=lambda p: -p.priority)

    def set_enabled(self, name: str, enabled: bool) -> None:
        for predicate in self._predicates:
            if predicate.name == name:
                predicate.enabled = enabled

    def evaluate(self, ctx: ExitContext) -> ExitDecision | None:
        """
        Check every enabled predicate in priority order.

        Returns:
            The first ExitDecision, or None to hold
        """
        self._stats["evaluations"] += 1
        for predicate in self._predicates:
            if not predicate.enabled:
                continue
            decision = predicate.check(ctx)
            if decision is not None:
                self._stats["total_triggers"] += 1
                key = f"{decision.reason.value.lower()}_triggers"
                self._stats[key] = self._stats.get(key, 0) + 1
                logger.debug(f"Exit predicate {predicate.name} fired: {decision.message}")
                return decision
        return None

    def get_stats(self) -> dict[str, Any]:
        """Get manager statistics."""
        return {
            "predicates": [p.to_dict() for p in self._predicates],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **self._stats,
        }


def create_exit_rule_manager(config: dict[str, Any] | None = None) -> ExitRuleManager:
    """Factory function to create an ExitRuleManager from the monitor section."""
    config = config or {}
    exits = dict(config.get("monitor", {}).get("exits", {}))
    exits.setdefault("exit_threshold", config.get("engine", {}).get("exit_threshold", 0.5))
    return ExitRuleManager(exits)
