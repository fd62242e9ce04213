"""
Trade Signal State Machine
==========================

Per-pair trade lifecycle:

    WATCHING -> ENTRY_SIGNAL -> IN_TRADE -> EXIT_SIGNAL -> CLOSED

CLOSED is terminal; the next cycle for the pair starts a fresh WATCHING
machine.

Entry:
- |z| >= entry threshold (pair threshold from the divergence profile,
  never below the configured floor)
- direction long (long asset1 / short asset2) when z < 0, short otherwise
- ENTRY_SIGNAL -> IN_TRADE only if the pair has no live trade and the
  live count is below the cap; otherwise the signal is dropped, not queued
- beta-neutral weights w1 = 1/(1+|beta|), w2 = |beta|/(1+|beta|)

Exit:
- pluggable predicates from core.exit_rules (z target first among the
  signal-based ones); partial exits keep the trade IN_TRADE

The exclusivity check, cap check and trade creation run as one atomic
unit under the LiveTradeBook lock. A failed price fetch means the
monitor never calls step() for that pair in that cycle.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from core.exceptions import (
    ConcurrencyCapExceeded,
    DuplicateTradeAttempt,
    EntryDropped,
    InvalidTransition,
)
from core.exit_rules import ExitContext, ExitDecision, ExitReason, ExitRuleManager
from core.regime_detector import HurstResult
from strategies.pair_fitness_strategy import FitnessVerdict


logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_TRADES = 5
DEFAULT_EXIT_THRESHOLD = 0.5
DEFAULT_MIN_ENTRY_THRESHOLD = 1.5


class TradeState(str, Enum):
    """Lifecycle states."""
    WATCHING = "WATCHING"
    ENTRY_SIGNAL = "ENTRY_SIGNAL"
    IN_TRADE = "IN_TRADE"
    EXIT_SIGNAL = "EXIT_SIGNAL"
    CLOSED = "CLOSED"


class EntryOutcome(str, Enum):
    """Outcome tag of an entry attempt."""
    ENTERED = "entered"
    NO_SIGNAL = "no_signal"
    DUPLICATE_TRADE = "duplicate_trade"
    CAP_REACHED = "cap_reached"
    ASSET_OVERLAP = "asset_overlap"
    BLOCKED = "blocked"


def position_weights(beta: float) -> tuple[float, float]:
    """Beta-neutral weights (asset1, asset2), summing to 1."""
    b = abs(beta)
    return 1.0 / (1.0 + b), b / (1.0 + b)


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts else None


def _parse(ts: str | None) -> datetime | None:
    return datetime.fromisoformat(ts) if ts else None


@dataclass(frozen=True)
class Trade:
    """
    A live pair trade.

    Weights are fractions of the position and sum to 1. Marks
    (current_*) and drift fields are refreshed each monitoring cycle by
    replacing the whole record.
    """
    pair: str
    asset1: str
    asset2: str
    direction: str  # "long" = long asset1 / short asset2
    entry_time: datetime
    entry_z_score: float
    entry_price1: float
    entry_price2: float
    beta: float
    long_asset: str
    short_asset: str
    long_weight: float
    short_weight: float
    entry_threshold: float
    exit_threshold: float
    half_life: float | None = None
    max_historical_z: float | None = None
    entry_correlation: float | None = None
    source: str = "monitor"
    current_z_score: float | None = None
    current_price1: float | None = None
    current_price2: float | None = None
    current_pnl_pct: float | None = None
    last_update: datetime | None = None
    beta_drift: float = 0.0
    max_beta_drift: float = 0.0
    partial_exit_taken: bool = False
    partial_exit_fraction: float = 0.0
    partial_exit_pnl: float | None = None
    partial_exit_time: datetime | None = None

    @classmethod
    def open(
        cls,
        verdict: FitnessVerdict,
        asset1: str,
        asset2: str,
        price1: float,
        price2: float,
        entry_threshold: float,
        exit_threshold: float = DEFAULT_EXIT_THRESHOLD,
        max_historical_z: float | None = None,
        entry_time: datetime | None = None,
        source: str = "monitor",
    ) -> Trade:
        """Build a trade from the verdict that triggered the entry."""
        direction = verdict.direction
        w1, w2 = position_weights(verdict.beta)
        if direction == "long":
            long_asset, short_asset, long_weight, short_weight = asset1, asset2, w1, w2
        else:
            long_asset, short_asset, long_weight, short_weight = asset2, asset1, w2, w1

        half_life = verdict.half_life_days if math.isfinite(verdict.half_life_days) else None
        return cls(
            pair=verdict.pair,
            asset1=asset1,
            asset2=asset2,
            direction=direction,
            entry_time=entry_time or datetime.now(timezone.utc),
            entry_z_score=verdict.current_z_score,
            entry_price1=price1,
            entry_price2=price2,
            beta=verdict.beta,
            long_asset=long_asset,
            short_asset=short_asset,
            long_weight=long_weight,
            short_weight=short_weight,
            entry_threshold=entry_threshold,
            exit_threshold=exit_threshold,
            half_life=half_life,
            max_historical_z=max_historical_z,
            entry_correlation=verdict.correlation,
            source=source,
            current_z_score=verdict.current_z_score,
            current_price1=price1,
            current_price2=price2,
            current_pnl_pct=0.0,
        )

    @property
    def assets(self) -> tuple[str, str]:
        return self.asset1, self.asset2

    def leg_prices(self, price1: float, price2: float) -> tuple[float, float]:
        """(long leg price, short leg price) for asset1/asset2 prices."""
        return (price1, price2) if self.long_asset == self.asset1 else (price2, price1)

    @property
    def long_entry_price(self) -> float:
        return self.leg_prices(self.entry_price1, self.entry_price2)[0]

    @property
    def short_entry_price(self) -> float:
        return self.leg_prices(self.entry_price1, self.entry_price2)[1]

    def days_in_trade(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.entry_time).total_seconds() / 86400

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "pair": self.pair,
            "asset1": self.asset1,
            "asset2": self.asset2,
            "direction": self.direction,
            "entry_time": self.entry_time.isoformat(),
            "entry_z_score": self.entry_z_score,
            "entry_price1": self.entry_price1,
            "entry_price2": self.entry_price2,
            "beta": self.beta,
            "long_asset": self.long_asset,
            "short_asset": self.short_asset,
            "long_weight": self.long_weight,
            "short_weight": self.short_weight,
            "entry_threshold": self.entry_threshold,
            "exit_threshold": self.exit_threshold,
            "half_life": self.half_life,
            "max_historical_z": self.max_historical_z,
            "entry_correlation": self.entry_correlation,
            "source": self.source,
            "current_z_score": self.current_z_score,
            "current_price1": self.current_price1,
            "current_price2": self.current_price2,
            "current_pnl_pct": self.current_pnl_pct,
            "last_update": _iso(self.last_update),
            "beta_drift": self.beta_drift,
            "max_beta_drift": self.max_beta_drift,
            "partial_exit_taken": self.partial_exit_taken,
            "partial_exit_fraction": self.partial_exit_fraction,
            "partial_exit_pnl": self.partial_exit_pnl,
            "partial_exit_time": _iso(self.partial_exit_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Trade:
        """Create from dictionary."""
        return cls(
            pair=data["pair"],
            asset1=data["asset1"],
            asset2=data["asset2"],
            direction=data["direction"],
            entry_time=datetime.fromisoformat(data["entry_time"]),
            entry_z_score=float(data["entry_z_score"]),
            entry_price1=float(data["entry_price1"]),
            entry_price2=float(data["entry_price2"]),
            beta=float(data["beta"]),
            long_asset=data["long_asset"],
            short_asset=data["short_asset"],
            long_weight=float(data["long_weight"]),
            short_weight=float(data["short_weight"]),
            entry_threshold=float(data["entry_threshold"]),
            exit_threshold=float(data.get("exit_threshold", DEFAULT_EXIT_THRESHOLD)),
            half_life=data.get("half_life"),
            max_historical_z=data.get("max_historical_z"),
            entry_correlation=data.get("entry_correlation"),
            source=data.get("source", "monitor"),
            current_z_score=data.get("current_z_score"),
            current_price1=data.get("current_price1"),
            current_price2=data.get("current_price2"),
            current_pnl_pct=data.get("current_pnl_pct"),
            last_update=_parse(data.get("last_update")),
            beta_drift=float(data.get("beta_drift", 0.0)),
            max_beta_drift=float(data.get("max_beta_drift", 0.0)),
            partial_exit_taken=bool(data.get("partial_exit_taken", False)),
            partial_exit_fraction=float(data.get("partial_exit_fraction", 0.0)),
            partial_exit_pnl=data.get("partial_exit_pnl"),
            partial_exit_time=_parse(data.get("partial_exit_time")),
        )


def compute_pnl(trade: Trade, price1: float, price2: float) -> float:
    """
    Weighted P&L in percent.

    long leg:  (current - entry) / entry * long_weight
    short leg: (entry - current) / entry * short_weight
    """
    long_now, short_now = trade.leg_prices(price1, price2)
    long_pnl = (long_now - trade.long_entry_price) / trade.long_entry_price * trade.long_weight
    short_pnl = (trade.short_entry_price - short_now) / trade.short_entry_price * trade.short_weight
    return (long_pnl + short_pnl) * 100


def beta_drift(entry_beta: float, current_beta: float) -> float:
    """|beta_now - beta_entry| / |beta_entry|; 0 when the entry beta is 0."""
    if entry_beta == 0:
        return 0.0
    return abs(current_beta - entry_beta) / abs(entry_beta)


@dataclass(frozen=True)
class TradeHistoryRecord:
    """A closed trade with its exit facts and realized P&L."""
    trade: Trade
    exit_time: datetime
    exit_z_score: float
    exit_price1: float
    exit_price2: float
    exit_reason: str
    pnl_pct: float  # P&L of the position closed at exit
    total_pnl_pct: float  # including any partial exit
    days_in_trade: float

    @property
    def pair(self) -> str:
        return self.trade.pair

    @property
    def is_win(self) -> bool:
        return self.total_pnl_pct > 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            **self.trade.to_dict(),
            "exit_time": self.exit_time.isoformat(),
            "exit_z_score": self.exit_z_score,
            "exit_price1": self.exit_price1,
            "exit_price2": self.exit_price2,
            "exit_reason": self.exit_reason,
            "pnl_pct": self.pnl_pct,
            "total_pnl_pct": self.total_pnl_pct,
            "days_in_trade": self.days_in_trade,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TradeHistoryRecord:
        """Create from dictionary."""
        return cls(
            trade=Trade.from_dict(data),
            exit_time=datetime.fromisoformat(data["exit_time"]),
            exit_z_score=float(data["exit_z_score"]),
            exit_price1=float(data["exit_price1"]),
            exit_price2=float(data["exit_price2"]),
            exit_reason=data["exit_reason"],
            pnl_pct=float(data["pnl_pct"]),
            total_pnl_pct=float(data["total_pnl_pct"]),
            days_in_trade=float(data["days_in_trade"]),
        )


def history_stats(records: Iterable[TradeHistoryRecord]) -> dict[str, Any]:
    """Aggregate win/loss statistics over closed trades."""
    records = list(records)
    wins = sum(1 for r in records if r.is_win)
    total_pnl = sum(r.total_pnl_pct for r in records)
    return {
        "total_trades": len(records),
        "wins": wins,
        "losses": len(records) - wins,
        "total_pnl_pct": total_pnl,
        "avg_pnl_pct": total_pnl / len(records) if records else 0.0,
        "win_rate": wins / len(records) if records else 0.0,
    }


@dataclass(frozen=True)
class TradeBookSnapshot:
    """Immutable, versioned view of the live trades."""
    version: int = 0
    trades: tuple[Trade, ...] = ()

    def get(self, pair: str) -> Trade | None:
        for trade in self.trades:
            if trade.pair == pair:
                return trade
        return None

    def __contains__(self, pair: str) -> bool:
        return self.get(pair) is not None

    def __len__(self) -> int:
        return len(self.trades)

    @property
    def live_assets(self) -> set[str]:
        return {asset for trade in self.trades for asset in trade.assets}

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "trades": {t.pair: t.to_dict() for t in self.trades},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TradeBookSnapshot:
        trades = data.get("trades", {})
        return cls(
            version=int(data.get("version", 0)),
            trades=tuple(Trade.from_dict(t) for t in trades.values()),
        )


class LiveTradeBook:
    """
    The global set of live trades.

    Every write swaps in a new snapshot under one lock, so readers always
    see a consistent version and concurrent entries cannot double-enter a
    pair or exceed the cap.
    """

    def __init__(
        self,
        max_concurrent_trades: int = DEFAULT_MAX_CONCURRENT_TRADES,
        block_asset_overlap: bool = True,
        snapshot: TradeBookSnapshot | None = None,
    ):
        self._max_concurrent = max_concurrent_trades
        self._block_asset_overlap = block_asset_overlap
        self._snapshot = snapshot or TradeBookSnapshot()
        self._lock = threading.RLock()

    @property
    def max_concurrent_trades(self) -> int:
        return self._max_concurrent

    def snapshot(self) -> TradeBookSnapshot:
        with self._lock:
            return self._snapshot

    def __len__(self) -> int:
        return len(self.snapshot())

    def __contains__(self, pair: str) -> bool:
        return pair in self.snapshot()

    def get(self, pair: str) -> Trade | None:
        return self.snapshot().get(pair)

    def try_open(self, trade: Trade, strict: bool = False) -> EntryOutcome:
        """
        Atomically check exclusivity, asset overlap and the cap, then add.

        Args:
            trade: Trade to open
            strict: Raise DuplicateTradeAttempt / ConcurrencyCapExceeded
                instead of returning the outcome

        Returns:
            EntryOutcome
        """
        with self._lock:
            current = self._snapshot
            if trade.pair in current:
                if strict:
                    raise DuplicateTradeAttempt(f"{trade.pair} already in trade", pair=trade.pair)
                return EntryOutcome.DUPLICATE_TRADE

            if self._block_asset_overlap and current.live_assets & set(trade.assets):
                if strict:
                    raise EntryDropped(
                        f"{trade.pair} shares an asset with a live trade", pair=trade.pair
                    )
                return EntryOutcome.ASSET_OVERLAP

            if len(current) >= self._max_concurrent:
                if strict:
                    raise ConcurrencyCapExceeded(
                        f"{len(current)}/{self._max_concurrent} trades live", pair=trade.pair
                    )
                return EntryOutcome.CAP_REACHED

            self._snapshot = TradeBookSnapshot(current.version + 1, current.trades + (trade,))
            return EntryOutcome.ENTERED

    def update(self, trade: Trade) -> None:
        """Replace the live record for trade.pair."""
        with self._lock:
            current = self._snapshot
            if trade.pair not in current:
                raise KeyError(f"{trade.pair} is not in trade")
            trades = tuple(trade if t.pair == trade.pair else t for t in current.trades)
            self._snapshot = TradeBookSnapshot(current.version + 1, trades)

    def close(self, pair: str) -> Trade:
        """Remove and return the live trade for pair."""
        with self._lock:
            current = self._snapshot
            trade = current.get(pair)
            if trade is None:
                raise KeyError(f"{pair} is not in trade")
            trades = tuple(t for t in current.trades if t.pair != pair)
            self._snapshot = TradeBookSnapshot(current.version + 1, trades)
            return trade


@dataclass(frozen=True)
class PairObservation:
    """One cycle's fresh view of a pair."""
    verdict: FitnessVerdict
    price1: float
    price2: float
    entry_threshold: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    max_historical_z: float | None = None
    hurst: HurstResult | None = None
    entry_allowed: bool = True
    block_reason: str | None = None


@dataclass
class StepResult:
    """What one step() did."""
    state: TradeState
    outcome: EntryOutcome | None = None
    trade: Trade | None = None
    exit_decision: ExitDecision | None = None
    record: TradeHistoryRecord | None = None
    transitions: list[TradeState] = field(default_factory=list)

    @property
    def entered(self) -> bool:
        return self.outcome is EntryOutcome.ENTERED

    @property
    def closed(self) -> bool:
        return self.record is not None

    @property
    def partial_exit(self) -> bool:
        return self.exit_decision is not None and self.exit_decision.is_partial


class TradeSignalStateMachine:
    """
    Lifecycle of one pair.

    Usage:
        machine = TradeSignalStateMachine("ETH/SOL", "ETH", "SOL", book, exit_manager, config)
        result = machine.step(observation)
        if result.closed:
            persist(result.record)
    """

    def __init__(
        self,
        pair: str,
        asset1: str,
        asset2: str,
        book: LiveTradeBook,
        exit_manager: ExitRuleManager | None = None,
        config: dict[str, Any] | None = None,
    ):
        config = config or {}

        self.pair = pair
        self.asset1 = asset1
        self.asset2 = asset2
        self._book = book
        self._exit_manager = exit_manager or ExitRuleManager(config.get("exits", {}))
        self._exit_threshold = config.get("exit_threshold", DEFAULT_EXIT_THRESHOLD)
        self._min_entry_threshold = config.get("min_entry_threshold", DEFAULT_MIN_ENTRY_THRESHOLD)

        self._state = TradeState.WATCHING
        self._trade: Trade | None = None
        self._history: list[tuple[TradeState, datetime]] = [
            (TradeState.WATCHING, datetime.now(timezone.utc))
        ]

    @classmethod
    def resume(
        cls,
        trade: Trade,
        book: LiveTradeBook,
        exit_manager: ExitRuleManager | None = None,
        config: dict[str, Any] | None = None,
    ) -> TradeSignalStateMachine:
        """Rebuild an IN_TRADE machine for a trade already in the book."""
        machine = cls(trade.pair, trade.asset1, trade.asset2, book, exit_manager, config)
        machine._state = TradeState.IN_TRADE
        machine._trade = trade
        machine._history.append((TradeState.IN_TRADE, trade.entry_time))
        return machine

    @property
    def state(self) -> TradeState:
        return self._state

    @property
    def trade(self) -> Trade | None:
        return self._trade

    @property
    def history(self) -> list[tuple[TradeState, datetime]]:
        return list(self._history)

    def _transition(self, new_state: TradeState, result: StepResult, at: datetime) -> None:
        logger.debug(f"[{self.pair}] {self._state.value} -> {new_state.value}")
        self._state = new_state
        self._history.append((new_state, at))
        result.transitions.append(new_state)
        result.state = new_state

    def entry_threshold_for(self, observation: PairObservation) -> float:
        return max(observation.entry_threshold, self._min_entry_threshold)

    def step(self, observation: PairObservation) -> StepResult:
        """
        Advance the machine with one fresh observation.

        Raises:
            InvalidTransition: if the machine is CLOSED
        """
        if self._state is TradeState.CLOSED:
            raise InvalidTransition(f"{self.pair}: machine is closed; start a fresh one")

        if self._state is TradeState.WATCHING:
            return self._step_watching(observation)
        return self._step_in_trade(observation)

    def _step_watching(self, observation: PairObservation) -> StepResult:
        result = StepResult(state=self._state)
        z = observation.verdict.current_z_score
        threshold = self.entry_threshold_for(observation)

        if abs(z) < threshold:
            result.outcome = EntryOutcome.NO_SIGNAL
            return result

        return self.enter(observation, result=result)

    def enter(
        self,
        observation: PairObservation,
        source: str = "monitor",
        result: StepResult | None = None,
    ) -> StepResult:
        """
        WATCHING -> ENTRY_SIGNAL -> IN_TRADE, or back to WATCHING if dropped.

        Called by step() on a signal, and directly for manual entries.
        """
        if self._state is not TradeState.WATCHING:
            raise InvalidTransition(f"{self.pair}: cannot enter from {self._state.value}")

        result = result or StepResult(state=self._state)
        at = observation.timestamp
        self._transition(TradeState.ENTRY_SIGNAL, result, at)

        if not observation.entry_allowed:
            result.outcome = EntryOutcome.BLOCKED
            logger.info(
                f"[{self.pair}] entry dropped: outcome={EntryOutcome.BLOCKED.value} "
                f"reason={observation.block_reason}"
            )
            self._transition(TradeState.WATCHING, result, at)
            return result

        trade = Trade.open(
            observation.verdict,
            self.asset1,
            self.asset2,
            observation.price1,
            observation.price2,
            entry_threshold=self.entry_threshold_for(observation),
            exit_threshold=self._exit_threshold,
            max_historical_z=observation.max_historical_z,
            entry_time=at,
            source=source,
        )

        outcome = self._book.try_open(trade)
        result.outcome = outcome
        if outcome is not EntryOutcome.ENTERED:
            # Steady state: dropped, re-evaluated fresh next cycle
            logger.info(
                f"[{self.pair}] entry dropped: outcome={outcome.value} "
                f"live={len(self._book)}/{self._book.max_concurrent_trades}"
            )
            self._transition(TradeState.WATCHING, result, at)
            return result

        self._trade = trade
        result.trade = trade
        self._transition(TradeState.IN_TRADE, result, at)
        logger.info(
            f"[{self.pair}] ENTERED {trade.direction.upper()}: z={trade.entry_z_score:.2f}, "
            f"long {trade.long_asset} {trade.long_weight:.0%} / "
            f"short {trade.short_asset} {trade.short_weight:.0%}, beta={trade.beta:.3f}"
        )
        return result

    def _step_in_trade(self, observation: PairObservation) -> StepResult:
        result = StepResult(state=self._state)
        trade = self._marked(observation)

        decision = self._exit_manager.evaluate(ExitContext(
            z_score=observation.verdict.current_z_score,
            entry_z_score=trade.entry_z_score,
            correlation=observation.verdict.correlation,
            pnl_pct=trade.current_pnl_pct,
            days_in_trade=trade.days_in_trade(observation.timestamp),
            half_life=trade.half_life,
            max_historical_z=trade.max_historical_z,
            partial_exit_taken=trade.partial_exit_taken,
            hurst=observation.hurst,
            exit_threshold=trade.exit_threshold,
        ))

        if decision is None:
            self._commit(trade)
            result.trade = trade
            return result

        result.exit_decision = decision
        if decision.is_partial:
            trade = replace(
                trade,
                partial_exit_taken=True,
                partial_exit_fraction=decision.fraction,
                partial_exit_pnl=trade.current_pnl_pct,
                partial_exit_time=observation.timestamp,
            )
            self._commit(trade)
            result.trade = trade
            logger.info(f"[{self.pair}] PARTIAL EXIT: {decision.message}")
            return result

        return self._close(trade, observation, decision, result)

    def close(self, observation: PairObservation, reason: ExitReason = ExitReason.MANUAL) -> StepResult:
        """Close the trade now, regardless of the exit predicates."""
        if self._state is not TradeState.IN_TRADE:
            raise InvalidTransition(f"{self.pair}: cannot exit from {self._state.value}")
        result = StepResult(state=self._state)
        decision = ExitDecision(reason, message=f"{reason.value.lower()} exit")
        result.exit_decision = decision
        return self._close(self._marked(observation), observation, decision, result)

    def _marked(self, observation: PairObservation) -> Trade:
        """Current trade with this cycle's marks applied."""
        trade = self._trade
        verdict = observation.verdict
        drift = beta_drift(trade.beta, verdict.beta)
        return replace(
            trade,
            current_z_score=verdict.current_z_score,
            current_price1=observation.price1,
            current_price2=observation.price2,
            current_pnl_pct=compute_pnl(trade, observation.price1, observation.price2),
            last_update=observation.timestamp,
            beta_drift=drift,
            max_beta_drift=max(trade.max_beta_drift, drift),
        )

    def _commit(self, trade: Trade) -> None:
        self._trade = trade
        self._book.update(trade)

    def _close(
        self,
        trade: Trade,
        observation: PairObservation,
        decision: ExitDecision,
        result: StepResult,
    ) -> StepResult:
        at = observation.timestamp
        self._transition(TradeState.EXIT_SIGNAL, result, at)

        pnl = trade.current_pnl_pct
        if trade.partial_exit_taken and trade.partial_exit_pnl is not None:
            f = trade.partial_exit_fraction
            total = f * trade.partial_exit_pnl + (1 - f) * pnl
        else:
            total = pnl

        record = TradeHistoryRecord(
            trade=trade,
            exit_time=at,
            exit_z_score=observation.verdict.current_z_score,
            exit_price1=observation.price1,
            exit_price2=observation.price2,
            exit_reason=decision.reason.value,
            pnl_pct=pnl,
            total_pnl_pct=total,
            days_in_trade=trade.days_in_trade(at),
        )

        self._book.close(self.pair)
        self._trade = None
        result.record = record
        result.trade = trade
        self._transition(TradeState.CLOSED, result, at)
        logger.info(
            f"[{self.pair}] CLOSED ({decision.reason.value}): P&L {total:+.2f}% "
            f"after {record.days_in_trade:.1f}d - {decision.message}"
        )
        return result
