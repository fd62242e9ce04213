"""
Scanner Agent
=============

Runs the watchlist discovery cycle.

Responsibility: fetch the universe and price history, run the pair
screener and swap in the new watchlist. Does NOT open or close trades.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from core.exceptions import DataSourceError
from core.logging_config import get_performance_logger
from core.notifications import NotificationKind, Notifier
from core.pair_screener import PairScreener, ScreeningResult, WatchlistSnapshot
from core.series_stats import PriceSeries
from core.state_persistence import StatePersistence
from data.market_data import PriceDataSource
from strategies.pair_fitness_strategy import PairFitnessEvaluator


logger = logging.getLogger(__name__)


class ScannerAgent:
    """
    Watchlist discovery.

    Cycle:
    1. Fetch universe (symbol, sector, volume, open interest, funding)
    2. Build candidates from liquid, non-blacklisted assets
    3. Fetch daily closes for every candidate symbol in throttled batches
    4. Screen, rank and keep top-N per sector
    5. Persist the new watchlist as one versioned snapshot and notify
    """

    def __init__(
        self,
        config: dict[str, Any],
        data_source: PriceDataSource,
        persistence: StatePersistence,
        notifier: Notifier | None = None,
        evaluator: PairFitnessEvaluator | None = None,
    ):
        scanner_config = dict(config.get("scanner", {}))
        scanner_config.setdefault("exit_threshold", config.get("engine", {}).get("exit_threshold", 0.5))

        self._data_source = data_source
        self._persistence = persistence
        self._notifier = notifier or Notifier()
        self._evaluator = evaluator or PairFitnessEvaluator(config.get("engine", {}))
        self._screener = PairScreener(scanner_config, self._evaluator)

        self._batch_size = scanner_config.get("fetch_batch_size", 5)
        self._batch_delay = scanner_config.get("fetch_batch_delay_seconds", 0.5)

        self._last_result: ScreeningResult | None = None
        self._perf = get_performance_logger(__name__)

    @property
    def screener(self) -> PairScreener:
        return self._screener

    @property
    def last_result(self) -> ScreeningResult | None:
        return self._last_result

    async def fetch_history(self, symbols: list[str], days: int) -> dict[str, PriceSeries]:
        """
        Daily closes for many symbols, a batch at a time with a delay
        between batches. Symbols whose fetch fails are left out.
        """
        history: dict[str, PriceSeries] = {}
        for i in range(0, len(symbols), self._batch_size):
            batch = symbols[i:i + self._batch_size]
            fetched = await asyncio.gather(
                *(self._data_source.get_daily_closes(s, days) for s in batch),
                return_exceptions=True,
            )
            for symbol, outcome in zip(batch, fetched):
                if isinstance(outcome, DataSourceError):
                    logger.warning(f"No history for {symbol}: {outcome}")
                elif isinstance(outcome, Exception):
                    logger.error(f"History fetch for {symbol} failed unexpectedly", exc_info=outcome)
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    history[symbol] = outcome

            if i + self._batch_size < len(symbols):
                await asyncio.sleep(self._batch_delay)

        return history

    async def run_scan(self) -> ScreeningResult:
        """Run one discovery cycle and replace the watchlist."""
        with self._perf.measure("pair_scan", log_always=True):
            return await self._run_scan()

    async def _run_scan(self) -> ScreeningResult:
        logger.info("Starting pair scan")

        universe = await self._data_source.get_universe()
        blacklist = self._persistence.load_blacklist()

        liquid = self._screener.filter_universe(universe, blacklist)
        candidates = self._screener.generate_candidates(self._screener.group_by_sector(liquid))
        symbols = self._screener.symbols_for(candidates)

        history = await self.fetch_history(symbols, self._screener.lookback_days)
        result = self._screener.screen(universe, history, blacklist)

        previous = self._persistence.load_watchlist()
        snapshot = WatchlistSnapshot(
            version=previous.version + 1,
            generated_at=datetime.now(timezone.utc),
            entries=tuple(result.viable_pairs),
        )
        if not self._persistence.save_watchlist(snapshot):
            logger.error("Failed to persist watchlist; previous snapshot stays current")

        self._last_result = result
        self._notifier.notify(
            format_scan_summary(result),
            kind=NotificationKind.SCAN,
            details={"version": snapshot.version, "pairs": [e.pair for e in snapshot.entries]},
        )
        return result


def format_scan_summary(result: ScreeningResult) -> str:
    """Human-readable scan summary."""
    lines = [
        "PAIR SCAN COMPLETE",
        f"Universe: {result.universe_size} assets, {result.liquid_assets} liquid",
        f"Candidates: {result.total_candidates}, watchlist: {result.n_viable}",
    ]
    if result.rejection_counts:
        counts = ", ".join(f"{k}={v}" for k, v in sorted(result.rejection_counts.items()))
        lines.append(f"Rejected: {counts}")

    for entry in result.viable_pairs:
        ready = " READY" if entry.is_ready else ""
        lines.append(
            f"  {entry.pair} [{entry.sector}] score={entry.quality_score:.1f} "
            f"corr={entry.correlation:.2f} hl={entry.half_life:.1f}d "
            f"z={entry.z_score:+.2f}/{entry.entry_threshold}{ready}"
        )
    return "\n".join(lines)
