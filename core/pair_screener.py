"""
Automated Pair Discovery
========================

Screening and ranking of tradeable pairs from a sector-partitioned universe.

Pipeline (strictly ordered):
1. Universe (fetched by the scanner agent)
2. Liquidity floor (24h volume, open interest) and blacklist
3. Group by sector
4. Candidate pairs: all same-sector combinations, optionally a bounded
   cross-sector set built from the top-K most liquid assets per sector
5. Common lookback window for every symbol in any candidate (agent)
6. Evaluate; keep correlation >= min, cointegrated, half-life <= max
7. score = correlation * (1 / max(half_life, 0.5)) * mean_reversion_rate * 100
8. Sort by score, keep top-N per sector

The output replaces the persisted watchlist wholesale.
"""

from __future__ import annotations

import logging
import math
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import combinations
from typing import Any, Iterable

from core.exceptions import PairRejected
from core.series_stats import PairSeries, PriceSeries
from strategies.pair_fitness_strategy import (
    PairEvaluation,
    PairFitnessEvaluator,
    estimate_time_to_reversion,
)


logger = logging.getLogger(__name__)

HALF_LIFE_EPSILON = 0.5


@dataclass(frozen=True)
class AssetInfo:
    """One tradeable asset in the universe."""
    symbol: str
    sector: str
    volume_24h: float
    open_interest: float  # USD notional
    mark_price: float = 0.0
    funding_rate: float = 0.0  # hourly

    @property
    def annualized_funding_pct(self) -> float:
        return self.funding_rate * 24 * 365 * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "sector": self.sector,
            "volume_24h": self.volume_24h,
            "open_interest": self.open_interest,
            "mark_price": self.mark_price,
            "funding_rate": self.funding_rate,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AssetInfo:
        return cls(
            symbol=data["symbol"],
            sector=data.get("sector", "Other"),
            volume_24h=float(data.get("volume_24h", 0.0)),
            open_interest=float(data.get("open_interest", 0.0)),
            mark_price=float(data.get("mark_price", 0.0)),
            funding_rate=float(data.get("funding_rate", 0.0)),
        )


@dataclass(frozen=True)
class PairCandidate:
    """A candidate pair; asset1 is the more liquid leg."""
    asset1: str
    asset2: str
    sector: str
    cross_sector: bool = False

    @property
    def pair(self) -> str:
        return f"{self.asset1}/{self.asset2}"


@dataclass
class WatchlistEntry:
    """A ranked pair on the watchlist."""
    pair: str
    asset1: str
    asset2: str
    sector: str
    quality_score: float
    correlation: float
    beta: float
    half_life: float
    half_life_ar1: float
    mean_reversion_rate: float
    is_cointegrated: bool
    z_score: float
    signal_strength: float
    direction: str
    is_ready: bool
    entry_threshold: float
    exit_threshold: float
    max_historical_z: float
    reversion_rate_at_entry: float | None = None
    time_to_reversion_days: float | None = None
    funding_spread_pct: float | None = None
    initial_beta: float | None = None
    cross_sector: bool = False
    discovered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "pair": self.pair,
            "asset1": self.asset1,
            "asset2": self.asset2,
            "sector": self.sector,
            "quality_score": self.quality_score,
            "correlation": self.correlation,
            "beta": self.beta,
            "half_life": self.half_life if math.isfinite(self.half_life) else None,
            "half_life_ar1": self.half_life_ar1 if math.isfinite(self.half_life_ar1) else None,
            "mean_reversion_rate": self.mean_reversion_rate,
            "is_cointegrated": self.is_cointegrated,
            "z_score": self.z_score,
            "signal_strength": self.signal_strength,
            "direction": self.direction,
            "is_ready": self.is_ready,
            "entry_threshold": self.entry_threshold,
            "exit_threshold": self.exit_threshold,
            "max_historical_z": self.max_historical_z,
            "reversion_rate_at_entry": self.reversion_rate_at_entry,
            "time_to_reversion_days": self.time_to_reversion_days,
            "funding_spread_pct": self.funding_spread_pct,
            "initial_beta": self.initial_beta,
            "cross_sector": self.cross_sector,
            "discovered_at": self.discovered_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WatchlistEntry:
        """Create from dictionary."""
        half_life = data.get("half_life")
        half_life_ar1 = data.get("half_life_ar1")
        return cls(
            pair=data["pair"],
            asset1=data["asset1"],
            asset2=data["asset2"],
            sector=data.get("sector", "Other"),
            quality_score=float(data.get("quality_score", 0.0)),
            correlation=float(data["correlation"]),
            beta=float(data["beta"]),
            half_life=math.inf if half_life is None else float(half_life),
            half_life_ar1=math.inf if half_life_ar1 is None else float(half_life_ar1),
            mean_reversion_rate=float(data.get("mean_reversion_rate", 0.0)),
            is_cointegrated=bool(data.get("is_cointegrated", False)),
            z_score=float(data.get("z_score", 0.0)),
            signal_strength=float(data.get("signal_strength", 0.0)),
            direction=data.get("direction", "long"),
            is_ready=bool(data.get("is_ready", False)),
            entry_threshold=float(data.get("entry_threshold", 2.0)),
            exit_threshold=float(data.get("exit_threshold", 0.5)),
            max_historical_z=float(data.get("max_historical_z", 3.0)),
            reversion_rate_at_entry=data.get("reversion_rate_at_entry"),
            time_to_reversion_days=data.get("time_to_reversion_days"),
            funding_spread_pct=data.get("funding_spread_pct"),
            initial_beta=data.get("initial_beta"),
            cross_sector=bool(data.get("cross_sector", False)),
            discovered_at=datetime.fromisoformat(data["discovered_at"])
            if data.get("discovered_at") else datetime.now(timezone.utc),
        )


@dataclass(frozen=True)
class WatchlistSnapshot:
    """Versioned, immutable watchlist document; replaced wholesale on write."""
    version: int
    generated_at: datetime
    entries: tuple[WatchlistEntry, ...] = ()

    def by_pair(self) -> dict[str, WatchlistEntry]:
        return {e.pair: e for e in self.entries}

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "generated_at": self.generated_at.isoformat(),
            "pairs": [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WatchlistSnapshot:
        return cls(
            version=int(data.get("version", 0)),
            generated_at=datetime.fromisoformat(data["generated_at"])
            if data.get("generated_at") else datetime.now(timezone.utc),
            entries=tuple(WatchlistEntry.from_dict(e) for e in data.get("pairs", [])),
        )

    @classmethod
    def empty(cls) -> WatchlistSnapshot:
        return cls(version=0, generated_at=datetime.now(timezone.utc), entries=())


@dataclass
class ScreeningResult:
    """Result of a full screening run."""
    viable_pairs: list[WatchlistEntry]
    rejections: dict[str, str]  # pair -> reason
    total_candidates: int
    universe_size: int
    liquid_assets: int
    screening_time_seconds: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def n_viable(self) -> int:
        return len(self.viable_pairs)

    @property
    def rejection_counts(self) -> dict[str, int]:
        return dict(Counter(self.rejections.values()))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "viable_pairs": [p.to_dict() for p in self.viable_pairs],
            "rejection_counts": self.rejection_counts,
            "total_candidates": self.total_candidates,
            "universe_size": self.universe_size,
            "liquid_assets": self.liquid_assets,
            "n_viable": self.n_viable,
            "screening_time_seconds": self.screening_time_seconds,
            "timestamp": self.timestamp.isoformat(),
        }


class PairScreener:
    """
    Automated Pair Discovery System.

    Screening criteria:
    1. Liquidity floor (24h volume, open interest), blacklist
    2. Minimum correlation of returns
    3. Cointegration (autocorrelation heuristic)
    4. Half-life at most max_half_life_days

    Usage:
        screener = PairScreener(config, evaluator)
        result = screener.screen(universe, price_history, blacklist)
        watchlist = result.viable_pairs
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        evaluator: PairFitnessEvaluator | None = None,
    ):
        """
        Initialize pair screener.

        Args:
            config: Scanner section of the configuration
            evaluator: Pair fitness evaluator (engine defaults if omitted)
        """
        config = config or {}

        # Liquidity floor
        self._min_volume = config.get("min_volume_24h", 500_000)
        self._min_open_interest = config.get("min_open_interest", 100_000)

        # Fitness filter
        self._min_correlation = config.get("min_correlation", 0.6)
        self._max_half_life = config.get("max_half_life_days", 45)

        # Window and data requirements
        self._lookback_days = config.get("lookback_days", 30)
        self._min_history_ratio = config.get("min_history_ratio", 0.8)

        # Candidate generation
        self._top_per_sector = config.get("top_per_sector", 3)
        self._cross_sector = config.get("cross_sector", False)
        self._cross_sector_top_k = config.get("cross_sector_top_k", 3)

        self._exit_threshold = config.get("exit_threshold", 0.5)

        self._evaluator = evaluator or PairFitnessEvaluator()

        logger.info(
            f"PairScreener initialized: min_corr={self._min_correlation}, "
            f"max_half_life={self._max_half_life}, lookback={self._lookback_days}d, "
            f"top_per_sector={self._top_per_sector}, cross_sector={self._cross_sector}"
        )

    @property
    def lookback_days(self) -> int:
        return self._lookback_days

    def filter_universe(
        self,
        universe: Iterable[AssetInfo],
        blacklist: Iterable[str] = (),
    ) -> list[AssetInfo]:
        """Drop unsectored, illiquid and blacklisted assets."""
        banned = {s.upper() for s in blacklist}
        liquid = []
        for asset in universe:
            if not asset.sector:
                continue
            if asset.symbol.upper() in banned:
                logger.debug(f"Skipping {asset.symbol}: blacklisted")
                continue
            if asset.volume_24h < self._min_volume or asset.open_interest < self._min_open_interest:
                continue
            liquid.append(asset)
        return liquid

    @staticmethod
    def group_by_sector(assets: Iterable[AssetInfo]) -> dict[str, list[AssetInfo]]:
        """Group assets by sector, most liquid first within each sector."""
        groups: dict[str, list[AssetInfo]] = defaultdict(list)
        for asset in assets:
            groups[asset.sector].append(asset)
        for members in groups.values():
            members.sort(key=lambda a: a.volume_24h, reverse=True)
        return dict(groups)

    def generate_candidates(self, groups: dict[str, list[AssetInfo]]) -> list[PairCandidate]:
        """Same-sector combinations plus the optional bounded cross-sector set."""
        candidates = []
        for sector, members in groups.items():
            for a, b in combinations(members, 2):
                candidates.append(PairCandidate(a.symbol, b.symbol, sector))

        if self._cross_sector:
            leaders = [
                (sector, asset)
                for sector, members in groups.items()
                for asset in members[:self._cross_sector_top_k]
            ]
            for (sector_a, a), (sector_b, b) in combinations(leaders, 2):
                if sector_a == sector_b:
                    continue
                first, second = (a, b) if a.volume_24h >= b.volume_24h else (b, a)
                candidates.append(PairCandidate(
                    first.symbol, second.symbol, f"{sector_a}|{sector_b}", cross_sector=True
                ))

        return candidates

    @staticmethod
    def symbols_for(candidates: Iterable[PairCandidate]) -> list[str]:
        """Every symbol that appears in any candidate."""
        symbols = set()
        for c in candidates:
            symbols.add(c.asset1)
            symbols.add(c.asset2)
        return sorted(symbols)

    def has_enough_history(self, series: PriceSeries | None) -> bool:
        return series is not None and len(series) >= self._min_history_ratio * self._lookback_days

    @staticmethod
    def quality_score(correlation: float, half_life: float, mean_reversion_rate: float) -> float:
        """correlation * (1 / max(half_life, eps)) * mean_reversion_rate * 100."""
        return correlation * (1.0 / max(half_life, HALF_LIFE_EPSILON)) * mean_reversion_rate * 100

    def evaluate_candidate(
        self,
        candidate: PairCandidate,
        series1: PriceSeries,
        series2: PriceSeries,
        assets: dict[str, AssetInfo] | None = None,
    ) -> WatchlistEntry | str:
        """
        Evaluate one candidate.

        Returns:
            WatchlistEntry if the pair passes the fitness filter,
            otherwise the rejection reason
        """
        pair_series = PairSeries.align(series1, series2).tail(self._lookback_days)
        try:
            evaluation = self._evaluator.evaluate(pair_series)
        except PairRejected as e:
            logger.debug(f"{candidate.pair} rejected: {e.reason} ({e})")
            return e.reason

        verdict = evaluation.verdict
        if verdict.correlation < self._min_correlation:
            return "low_correlation"
        if not verdict.is_cointegrated:
            return "not_cointegrated"
        if verdict.half_life_days > self._max_half_life:
            return "slow_reversion"

        return self._build_entry(candidate, evaluation, assets or {})

    def _build_entry(
        self,
        candidate: PairCandidate,
        evaluation: PairEvaluation,
        assets: dict[str, AssetInfo],
    ) -> WatchlistEntry:
        verdict = evaluation.verdict
        profile = evaluation.profile
        entry_threshold = profile.optimal_entry_threshold
        summary = profile.summary()

        funding_spread = None
        a1, a2 = assets.get(candidate.asset1), assets.get(candidate.asset2)
        if a1 is not None and a2 is not None:
            funding_spread = a1.annualized_funding_pct - a2.annualized_funding_pct

        return WatchlistEntry(
            pair=candidate.pair,
            asset1=candidate.asset1,
            asset2=candidate.asset2,
            sector=candidate.sector,
            quality_score=self.quality_score(
                verdict.correlation, verdict.half_life_days, verdict.mean_reversion_rate
            ),
            correlation=verdict.correlation,
            beta=verdict.beta,
            half_life=verdict.half_life_days,
            half_life_ar1=verdict.half_life_ar1_days,
            mean_reversion_rate=verdict.mean_reversion_rate,
            is_cointegrated=verdict.is_cointegrated,
            z_score=verdict.current_z_score,
            signal_strength=verdict.signal_strength(entry_threshold),
            direction=verdict.direction,
            is_ready=abs(verdict.current_z_score) >= entry_threshold,
            entry_threshold=entry_threshold,
            exit_threshold=self._exit_threshold,
            max_historical_z=profile.max_historical_abs_z,
            reversion_rate_at_entry=summary["reversion_rate_at_entry"],
            time_to_reversion_days=estimate_time_to_reversion(
                verdict.half_life_days, verdict.current_z_score
            ),
            funding_spread_pct=funding_spread,
            initial_beta=verdict.beta,
            cross_sector=candidate.cross_sector,
        )

    def select_top(self, entries: Iterable[WatchlistEntry]) -> list[WatchlistEntry]:
        """Sort by score and keep the top-N per sector."""
        ranked = sorted(entries, key=lambda e: e.quality_score, reverse=True)
        kept: list[WatchlistEntry] = []
        per_sector: Counter[str] = Counter()
        for entry in ranked:
            if per_sector[entry.sector] >= self._top_per_sector:
                continue
            per_sector[entry.sector] += 1
            kept.append(entry)
        return kept

    def screen(
        self,
        universe: list[AssetInfo],
        price_history: dict[str, PriceSeries],
        blacklist: Iterable[str] = (),
    ) -> ScreeningResult:
        """
        Run steps 2-8 over an already fetched universe and price history.

        Args:
            universe: All assets with sector and liquidity data
            price_history: Daily closes for (at least) every candidate symbol
            blacklist: Symbols never to trade

        Returns:
            ScreeningResult with the ranked watchlist
        """
        start_time = time.time()

        liquid = self.filter_universe(universe, blacklist)
        groups = self.group_by_sector(liquid)
        candidates = self.generate_candidates(groups)
        assets = {a.symbol: a for a in liquid}

        logger.info(
            f"Screening {len(liquid)}/{len(universe)} liquid assets in {len(groups)} sectors "
            f"({len(candidates)} candidate pairs)"
        )

        viable = []
        rejections: dict[str, str] = {}
        for candidate in candidates:
            s1 = price_history.get(candidate.asset1)
            s2 = price_history.get(candidate.asset2)
            if not (self.has_enough_history(s1) and self.has_enough_history(s2)):
                rejections[candidate.pair] = "insufficient_history"
                continue

            try:
                outcome = self.evaluate_candidate(candidate, s1, s2, assets)
            except Exception:
                # Isolate the failure to this pair
                logger.exception(f"Unexpected error evaluating {candidate.pair}")
                rejections[candidate.pair] = "error"
                continue

            if isinstance(outcome, WatchlistEntry):
                viable.append(outcome)
            else:
                rejections[candidate.pair] = outcome

        selected = self.select_top(viable)
        screening_time = time.time() - start_time

        result = ScreeningResult(
            viable_pairs=selected,
            rejections=rejections,
            total_candidates=len(candidates),
            universe_size=len(universe),
            liquid_assets=len(liquid),
            screening_time_seconds=screening_time,
        )

        logger.info(
            f"Screening complete: {len(viable)} passed, {result.n_viable} kept, "
            f"{len(rejections)} rejected {result.rejection_counts}, time={screening_time:.1f}s"
        )
        return result


def create_pair_screener(
    config: dict[str, Any] | None = None,
    evaluator: PairFitnessEvaluator | None = None,
) -> PairScreener:
    """Factory function to create a PairScreener."""
    config = config or {}
    scanner_config = dict(config.get("scanner", {}))
    scanner_config.setdefault("exit_threshold", config.get("engine", {}).get("exit_threshold", 0.5))
    return PairScreener(scanner_config, evaluator)
