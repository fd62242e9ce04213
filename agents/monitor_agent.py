"""
Monitor Agent
=============

Runs the trade monitoring cycle.

Responsibility: for every live trade and every watchlist pair, fetch
fresh prices, re-evaluate the pair and step its state machine. Persists
the live-trade book and closed trades once per cycle and sends the
status report. Does NOT discover pairs.

Failure semantics:
- a failed price fetch skips the pair for this cycle (no transition)
- a numeric rejection skips the pair for this cycle
- any other per-pair error is logged with traceback and the cycle continues
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from core.exceptions import (
    ConcurrencyCapExceeded,
    DataSourceError,
    DuplicateTradeAttempt,
    EntryDropped,
    InsufficientData,
    PairRejected,
)
from core.exit_rules import ExitReason, ExitRuleManager, create_exit_rule_manager
from core.logging_config import get_context_logger, get_performance_logger
from core.notifications import NotificationKind, Notifier
from core.pair_screener import WatchlistEntry
from core.regime_detector import HurstResult, RegimeDetector
from core.series_stats import PairSeries, log_spread
from core.state_persistence import StatePersistence
from core.trade_state_machine import (
    EntryOutcome,
    LiveTradeBook,
    PairObservation,
    StepResult,
    Trade,
    TradeHistoryRecord,
    TradeSignalStateMachine,
    history_stats,
)
from data.market_data import PriceDataSource
from strategies.pair_fitness_strategy import (
    EntryValidation,
    EntryValidator,
    PairEvaluation,
    PairFitnessEvaluator,
)


logger = logging.getLogger(__name__)


def split_pair(pair: str) -> tuple[str, str]:
    """'ETH/SOL' -> ('ETH', 'SOL')."""
    parts = pair.upper().split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Invalid pair '{pair}', expected ASSET1/ASSET2")
    return parts[0], parts[1]


@dataclass
class ApproachingPair:
    """A watchlist pair near its entry threshold."""
    pair: str
    z_score: float
    entry_threshold: float
    direction: str
    long_weight_pct: float
    short_weight_pct: float

    @property
    def proximity(self) -> float:
        return abs(self.z_score) / self.entry_threshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "pair": self.pair,
            "z_score": self.z_score,
            "entry_threshold": self.entry_threshold,
            "direction": self.direction,
            "proximity": self.proximity,
            "long_weight_pct": self.long_weight_pct,
            "short_weight_pct": self.short_weight_pct,
        }


@dataclass
class MonitorReport:
    """What one monitoring cycle did."""
    timestamp: datetime
    entries: list[Trade] = field(default_factory=list)
    exits: list[TradeHistoryRecord] = field(default_factory=list)
    partial_exits: list[tuple[Trade, str]] = field(default_factory=list)
    live_trades: list[Trade] = field(default_factory=list)
    approaching: list[ApproachingPair] = field(default_factory=list)
    dropped: dict[str, str] = field(default_factory=dict)  # pair -> outcome tag
    skipped: dict[str, str] = field(default_factory=dict)  # pair -> reason
    book_version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "entries": [t.to_dict() for t in self.entries],
            "exits": [r.to_dict() for r in self.exits],
            "partial_exits": [{"pair": t.pair, "message": m} for t, m in self.partial_exits],
            "live_trades": [t.to_dict() for t in self.live_trades],
            "approaching": [a.to_dict() for a in self.approaching],
            "dropped": self.dropped,
            "skipped": self.skipped,
            "book_version": self.book_version,
        }


@dataclass
class PairAnalysis:
    """Fresh single-pair analysis for the CLI."""
    evaluation: PairEvaluation
    validation: EntryValidation
    hurst: HurstResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.evaluation.verdict.to_dict(),
            "profile": self.evaluation.profile.to_dict(),
            "validation": self.validation.to_dict(),
            "hurst": self.hurst.to_dict(),
        }


class MonitorAgent:
    """
    Trade monitoring.

    Each cycle reads one watchlist snapshot and one live-trade snapshot,
    steps every pair, then writes the new live-trade snapshot and any
    closed trades.
    """

    def __init__(
        self,
        config: dict[str, Any],
        data_source: PriceDataSource,
        persistence: StatePersistence,
        notifier: Notifier | None = None,
        evaluator: PairFitnessEvaluator | None = None,
        exit_manager: ExitRuleManager | None = None,
        regime_detector: RegimeDetector | None = None,
    ):
        engine = config.get("engine", {})
        monitor = config.get("monitor", {})

        self._data_source = data_source
        self._persistence = persistence
        self._notifier = notifier or Notifier()
        self._evaluator = evaluator or PairFitnessEvaluator(engine)
        self._validator = EntryValidator(self._evaluator, monitor)
        self._exit_manager = exit_manager or create_exit_rule_manager(config)
        self._regime = regime_detector or RegimeDetector(config.get("regime", {}))

        self._max_concurrent = monitor.get("max_concurrent_trades", 5)
        self._block_asset_overlap = monitor.get("block_asset_overlap", True)
        windows = monitor.get("windows", {})
        self._reactive_window = windows.get("reactive", 30)
        self._hurst_window = windows.get("hurst", 60)
        self._history_days = max(windows.get("cointegration", 90), self._hurst_window)
        self._hurst_entry_guard = monitor.get("hurst_entry_guard", True)
        self._approaching_ratio = monitor.get("approaching_ratio", 0.5)
        self._pair_delay = monitor.get("pair_delay_seconds", 0.2)
        self._notify_status = monitor.get("send_status_report", True)

        self._machine_config = {
            "exit_threshold": engine.get("exit_threshold", 0.5),
            "min_entry_threshold": engine.get("min_entry_threshold", 1.5),
        }

        # One cycle at a time within this process
        self._cycle_lock = asyncio.Lock()
        self._cycle_count = 0
        self._log = get_context_logger(__name__)
        self._perf = get_performance_logger(__name__)

        logger.info(
            f"MonitorAgent initialized: max_concurrent={self._max_concurrent}, "
            f"overlap_guard={self._block_asset_overlap}, history={self._history_days}d"
        )

    def _load_book(self) -> LiveTradeBook:
        return LiveTradeBook(
            self._max_concurrent,
            self._block_asset_overlap,
            self._persistence.load_trades(),
        )

    async def fetch_pair(self, asset1: str, asset2: str) -> PairSeries:
        """Aligned daily history for both legs; DataSourceError on fetch failure."""
        s1, s2 = await asyncio.gather(
            self._data_source.get_daily_closes(asset1, self._history_days),
            self._data_source.get_daily_closes(asset2, self._history_days),
        )
        return PairSeries.align(s1, s2)

    def hurst_for(self, series: PairSeries, hedge_ratio: float) -> HurstResult:
        """Hurst exponent of the log spread over the Hurst window."""
        window = series.tail(self._hurst_window)
        if len(window) == 0:
            return self._regime.estimate_hurst([])
        return self._regime.estimate_hurst(log_spread(window.prices1, window.prices2, hedge_ratio))

    def _observe(
        self,
        series: PairSeries,
        now: datetime,
        entry_threshold: float | None = None,
        max_historical_z: float | None = None,
        validate: bool = False,
    ) -> tuple[PairObservation, PairEvaluation, EntryValidation | None]:
        reactive = series.tail(self._reactive_window)
        evaluation = self._evaluator.evaluate(reactive)
        # Thresholds must come from a profile of this exact window
        evaluation.profile.ensure_current(reactive.last_timestamp)
        verdict = evaluation.verdict
        threshold = entry_threshold if entry_threshold is not None else evaluation.entry_threshold
        hurst = self.hurst_for(series, verdict.beta)

        validation = None
        entry_allowed = True
        block_reason = None
        if validate:
            validation = self._validator.validate(series, threshold, reactive=verdict)
            if not validation.valid:
                entry_allowed = False
                block_reason = validation.reason.value
            elif self._hurst_entry_guard and self._regime.is_regime_shift(hurst):
                entry_allowed = False
                block_reason = f"hurst_trending ({hurst.hurst:.2f})"

        observation = PairObservation(
            verdict=verdict,
            price1=float(series.prices1[-1]),
            price2=float(series.prices2[-1]),
            entry_threshold=threshold,
            timestamp=now,
            max_historical_z=max_historical_z
            if max_historical_z is not None else evaluation.profile.max_historical_abs_z,
            hurst=hurst,
            entry_allowed=entry_allowed,
            block_reason=block_reason,
        )
        return observation, evaluation, validation

    async def run_cycle(self, now: datetime | None = None) -> MonitorReport:
        """Run one monitoring cycle."""
        async with self._cycle_lock:
            self._cycle_count += 1
            with self._perf.measure("monitor_cycle", log_always=True):
                return await self._run_cycle(now or datetime.now(timezone.utc))

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    async def _run_cycle(self, now: datetime) -> MonitorReport:
        report = MonitorReport(timestamp=now)
        watchlist = self._persistence.load_watchlist()
        book = self._load_book()

        logger.info(
            f"Monitor cycle: {len(book)} live trades, {len(watchlist.entries)} watchlist pairs "
            f"(watchlist v{watchlist.version}, book v{book.snapshot().version})"
        )

        for trade in book.snapshot().trades:
            await self._monitor_trade(trade, book, now, report)
            await asyncio.sleep(self._pair_delay)

        for entry in watchlist.entries:
            if entry.pair in book:
                continue
            await self._watch_pair(entry, book, now, report)
            await asyncio.sleep(self._pair_delay)

        report.approaching.sort(key=lambda a: a.proximity, reverse=True)
        snapshot = book.snapshot()
        report.live_trades = list(snapshot.trades)
        report.book_version = snapshot.version

        if not self._persistence.save_trades(snapshot):
            logger.error("Failed to persist live trades")
        if report.exits and not self._persistence.append_history(report.exits):
            logger.error("Failed to persist trade history")

        self._send_notifications(report)
        logger.info(
            f"Monitor cycle done: {len(report.entries)} entries, {len(report.exits)} exits, "
            f"{len(report.live_trades)} live, {len(report.skipped)} skipped"
        )
        return report

    async def _monitor_trade(
        self,
        trade: Trade,
        book: LiveTradeBook,
        now: datetime,
        report: MonitorReport,
    ) -> None:
        pair = trade.pair
        log = self._log.with_context(pair=pair, cycle=self._cycle_count)
        try:
            series = await self.fetch_pair(trade.asset1, trade.asset2)
            observation, _, _ = self._observe(
                series, now,
                entry_threshold=trade.entry_threshold,
                max_historical_z=trade.max_historical_z,
            )
            machine = TradeSignalStateMachine.resume(
                trade, book, self._exit_manager, self._machine_config
            )
            result = machine.step(observation)
        except DataSourceError as e:
            report.skipped[pair] = "fetch_failed"
            log.warning(f"skipped this cycle: {e}")
            return
        except PairRejected as e:
            report.skipped[pair] = e.reason
            log.info(f"skipped this cycle: {e.reason} ({e})")
            return
        except Exception:
            report.skipped[pair] = "error"
            log.exception("unexpected error while monitoring trade")
            return

        if result.closed:
            report.exits.append(result.record)
        elif result.partial_exit:
            report.partial_exits.append((result.trade, result.exit_decision.message))

    async def _watch_pair(
        self,
        entry: WatchlistEntry,
        book: LiveTradeBook,
        now: datetime,
        report: MonitorReport,
    ) -> None:
        pair = entry.pair
        log = self._log.with_context(pair=pair, cycle=self._cycle_count)
        try:
            series = await self.fetch_pair(entry.asset1, entry.asset2)
            observation, evaluation, _ = self._observe(series, now, validate=True)
            machine = TradeSignalStateMachine(
                pair, entry.asset1, entry.asset2, book, self._exit_manager, self._machine_config
            )
            result = machine.step(observation)
        except DataSourceError as e:
            report.skipped[pair] = "fetch_failed"
            log.warning(f"skipped this cycle: {e}")
            return
        except PairRejected as e:
            report.skipped[pair] = e.reason
            log.info(f"skipped this cycle: {e.reason} ({e})")
            return
        except Exception:
            report.skipped[pair] = "error"
            log.exception("unexpected error while watching pair")
            return

        if result.entered:
            report.entries.append(result.trade)
            return

        if result.outcome not in (EntryOutcome.NO_SIGNAL, None):
            report.dropped[pair] = (
                observation.block_reason
                if result.outcome is EntryOutcome.BLOCKED else result.outcome.value
            )

        threshold = machine.entry_threshold_for(observation)
        z = observation.verdict.current_z_score
        if abs(z) >= self._approaching_ratio * threshold:
            trade = Trade.open(
                observation.verdict, entry.asset1, entry.asset2,
                observation.price1, observation.price2, threshold,
            )
            report.approaching.append(ApproachingPair(
                pair=pair,
                z_score=z,
                entry_threshold=threshold,
                direction=observation.verdict.direction,
                long_weight_pct=trade.long_weight * 100,
                short_weight_pct=trade.short_weight * 100,
            ))

    # =========================================================================
    # DIRECT COMMANDS
    # =========================================================================

    async def analyze_pair(self, pair: str) -> PairAnalysis:
        """Fresh evaluation, entry validation and Hurst for one pair."""
        asset1, asset2 = split_pair(pair)
        series = await self.fetch_pair(asset1, asset2)
        evaluation = self._evaluator.evaluate(series.tail(self._reactive_window))
        validation = self._validator.validate(
            series, evaluation.entry_threshold, reactive=evaluation.verdict
        )
        return PairAnalysis(evaluation, validation, self.hurst_for(series, evaluation.verdict.beta))

    async def enter_trade(self, pair: str, now: datetime | None = None) -> Trade:
        """
        Open a trade for pair at current prices, regardless of the signal.

        Raises:
            DuplicateTradeAttempt: pair already in trade
            ConcurrencyCapExceeded: cap reached
            EntryDropped: shares an asset with a live trade
        """
        now = now or datetime.now(timezone.utc)
        asset1, asset2 = split_pair(pair)
        book = self._load_book()
        series = await self.fetch_pair(asset1, asset2)
        observation, _, _ = self._observe(series, now)

        machine = TradeSignalStateMachine(
            f"{asset1}/{asset2}", asset1, asset2, book, self._exit_manager, self._machine_config
        )
        result = machine.enter(observation, source="manual")
        if result.outcome is EntryOutcome.DUPLICATE_TRADE:
            raise DuplicateTradeAttempt(f"{machine.pair} already in trade", pair=machine.pair)
        if result.outcome is EntryOutcome.CAP_REACHED:
            raise ConcurrencyCapExceeded(
                f"{len(book)}/{self._max_concurrent} trades live", pair=machine.pair
            )
        if not result.entered:
            raise EntryDropped(f"entry dropped: {result.outcome.value}", pair=machine.pair)

        if not self._persistence.save_trades(book.snapshot()):
            logger.error("Failed to persist live trades")
        self._notifier.notify(format_entry(result.trade), kind=NotificationKind.ENTRY)
        return result.trade

    async def exit_trade(self, pair: str, now: datetime | None = None) -> TradeHistoryRecord:
        """Close a live trade at current prices."""
        now = now or datetime.now(timezone.utc)
        asset1, asset2 = split_pair(pair)
        book = self._load_book()
        trade = book.get(f"{asset1}/{asset2}")
        if trade is None:
            raise KeyError(f"{asset1}/{asset2} is not in trade")

        series = await self.fetch_pair(asset1, asset2)
        if len(series) == 0:
            raise InsufficientData("no prices to exit at", pair=trade.pair)
        observation, _, _ = self._observe(
            series, now,
            entry_threshold=trade.entry_threshold,
            max_historical_z=trade.max_historical_z,
        )
        machine = TradeSignalStateMachine.resume(trade, book, self._exit_manager, self._machine_config)
        result: StepResult = machine.close(observation, ExitReason.MANUAL)

        if not self._persistence.save_trades(book.snapshot()):
            logger.error("Failed to persist live trades")
        if not self._persistence.append_history([result.record]):
            logger.error("Failed to persist trade history")
        self._notifier.notify(format_exit(result.record), kind=NotificationKind.EXIT)
        return result.record

    # =========================================================================
    # REPORTING
    # =========================================================================

    def _send_notifications(self, report: MonitorReport) -> None:
        for trade in report.entries:
            self._notifier.notify(format_entry(trade), kind=NotificationKind.ENTRY)
        for trade, message in report.partial_exits:
            self._notifier.notify(f"PARTIAL EXIT {trade.pair}: {message}", kind=NotificationKind.PARTIAL_EXIT)
        for record in report.exits:
            self._notifier.notify(format_exit(record), kind=NotificationKind.EXIT)

        if self._notify_status:
            stats = history_stats(self._persistence.load_history())
            self._notifier.notify(format_status_report(report, stats), kind=NotificationKind.STATUS)


def format_entry(trade: Trade) -> str:
    return (
        f"ENTRY {trade.pair} {trade.direction.upper()}\n"
        f"Long {trade.long_asset} {trade.long_weight:.0%} / Short {trade.short_asset} "
        f"{trade.short_weight:.0%}\n"
        f"Z: {trade.entry_z_score:+.2f} (entry {trade.entry_threshold}), beta {trade.beta:.3f}"
    )


def format_exit(record: TradeHistoryRecord) -> str:
    return (
        f"EXIT {record.pair} ({record.exit_reason})\n"
        f"P&L: {record.total_pnl_pct:+.2f}% after {record.days_in_trade:.1f}d\n"
        f"Z: {record.trade.entry_z_score:+.2f} -> {record.exit_z_score:+.2f}"
    )


def format_status_report(report: MonitorReport, stats: dict[str, Any]) -> str:
    """Status message: actions, live positions, approaching pairs, history summary."""
    lines = [f"STATUS {report.timestamp.strftime('%Y-%m-%d %H:%M')} UTC"]

    if report.entries or report.exits or report.partial_exits:
        lines.append("")
        lines.append("Actions:")
        lines.extend(f"  + {t.pair} {t.direction}" for t in report.entries)
        lines.extend(f"  ~ {t.pair} partial" for t, _ in report.partial_exits)
        lines.extend(f"  - {r.pair} {r.exit_reason} {r.total_pnl_pct:+.2f}%" for r in report.exits)

    lines.append("")
    lines.append(f"Positions ({len(report.live_trades)}):")
    for t in report.live_trades:
        pnl = t.current_pnl_pct if t.current_pnl_pct is not None else 0.0
        z_now = t.current_z_score if t.current_z_score is not None else t.entry_z_score
        days = t.days_in_trade(report.timestamp)
        partial = " [partial taken]" if t.partial_exit_taken else ""
        lines.append(
            f"  {t.pair} L {t.long_asset} {t.long_weight:.0%} / S {t.short_asset} "
            f"{t.short_weight:.0%} | Z {t.entry_z_score:+.2f} -> {z_now:+.2f} | "
            f"P&L {pnl:+.2f}% | {days:.1f}d | drift {t.beta_drift:.0%}{partial}"
        )

    if report.approaching:
        lines.append("")
        lines.append("Approaching entry:")
        for a in report.approaching:
            lines.append(
                f"  {a.pair} z={a.z_score:+.2f}/{a.entry_threshold} ({a.proximity:.0%}) "
                f"{a.direction} L {a.long_weight_pct:.0f}% / S {a.short_weight_pct:.0f}%"
            )

    lines.append("")
    lines.append(
        f"History: {stats['total_trades']} trades, {stats['wins']}W/{stats['losses']}L, "
        f"total {stats['total_pnl_pct']:+.2f}%"
    )
    return "\n".join(lines)
