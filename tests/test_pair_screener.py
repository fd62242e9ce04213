"""
Tests for Pair Screener
=======================

Universe filtering, candidate generation, scoring and ranking.
"""

from datetime import datetime, timezone

import pytest

from core.pair_screener import (
    AssetInfo,
    PairCandidate,
    PairScreener,
    WatchlistEntry,
    WatchlistSnapshot,
    create_pair_screener,
)
from strategies.pair_fitness_strategy import PairFitnessEvaluator
from tests.fixtures import PEAK_OFFSET, generate_pattern_pair, generate_random_walk_pair


PEAK_DAY = 80 + PEAK_OFFSET


def asset(symbol, sector="L1", volume=5_000_000, oi=1_000_000, funding=0.0):
    return AssetInfo(symbol, sector, volume, oi, mark_price=10.0, funding_rate=funding)


def entry(pair, sector, score):
    a1, a2 = pair.split("/")
    return WatchlistEntry(
        pair=pair, asset1=a1, asset2=a2, sector=sector, quality_score=score,
        correlation=0.9, beta=1.0, half_life=5.0, half_life_ar1=5.0,
        mean_reversion_rate=0.7, is_cointegrated=True, z_score=1.0,
        signal_strength=0.5, direction="short", is_ready=False,
        entry_threshold=2.0, exit_threshold=0.5, max_historical_z=2.5,
    )


@pytest.fixture
def screener(test_config):
    return create_pair_screener(test_config, PairFitnessEvaluator(test_config["engine"]))


class TestUniverse:
    """Tests for filtering and grouping."""

    def test_liquidity_floor_and_blacklist(self, screener):
        """Illiquid, low-OI, blacklisted and unsectored assets are dropped."""
        universe = [
            asset("ETH"),
            asset("THIN", volume=10_000),
            asset("NOOI", oi=5_000),
            asset("BANNED"),
            asset("NOSECTOR", sector=""),
        ]

        liquid = screener.filter_universe(universe, blacklist=["banned"])

        assert [a.symbol for a in liquid] == ["ETH"]

    def test_group_by_sector_sorted_by_volume(self, screener):
        """Most liquid first within each sector."""
        groups = screener.group_by_sector([
            asset("SOL", volume=2_000_000),
            asset("ETH", volume=9_000_000),
            asset("UNI", sector="DeFi"),
        ])

        assert [a.symbol for a in groups["L1"]] == ["ETH", "SOL"]
        assert [a.symbol for a in groups["DeFi"]] == ["UNI"]


class TestCandidates:
    """Tests for candidate pair generation."""

    def test_same_sector_combinations(self, screener):
        """n assets in a sector give n*(n-1)/2 candidates, liquid leg first."""
        groups = screener.group_by_sector([
            asset("SOL", volume=2_000_000),
            asset("ETH", volume=9_000_000),
            asset("AVAX", volume=1_500_000),
            asset("UNI", sector="DeFi"),
        ])

        candidates = screener.generate_candidates(groups)

        assert {c.pair for c in candidates} == {"ETH/SOL", "ETH/AVAX", "SOL/AVAX"}
        assert not any(c.cross_sector for c in candidates)

    def test_cross_sector_bounded(self, test_config):
        """Cross-sector pairs come only from the top-K of each sector."""
        scanner = dict(test_config["scanner"], cross_sector=True, cross_sector_top_k=1)
        screener = PairScreener(scanner, PairFitnessEvaluator(test_config["engine"]))
        groups = screener.group_by_sector([
            asset("ETH", volume=9_000_000),
            asset("SOL", volume=2_000_000),
            asset("UNI", sector="DeFi", volume=3_000_000),
        ])

        cross = [c for c in screener.generate_candidates(groups) if c.cross_sector]

        assert cross == [PairCandidate("ETH", "UNI", "L1|DeFi", cross_sector=True)]

    def test_symbols_for(self):
        """Union of both legs, sorted."""
        candidates = [PairCandidate("ETH", "SOL", "L1"), PairCandidate("ETH", "AVAX", "L1")]

        assert PairScreener.symbols_for(candidates) == ["AVAX", "ETH", "SOL"]


class TestScoring:
    """Tests for quality score and ranking."""

    def test_quality_score(self):
        """correlation / half_life * mean_reversion_rate * 100."""
        assert PairScreener.quality_score(0.9, 5.0, 0.8) == pytest.approx(14.4)

    def test_half_life_epsilon(self):
        """Half-lives under 0.5 day are scored as 0.5."""
        assert PairScreener.quality_score(1.0, 0.1, 1.0) == pytest.approx(200.0)

    def test_select_top_per_sector(self, test_config):
        """At most top_per_sector per sector, ordered by score."""
        scanner = dict(test_config["scanner"], top_per_sector=2)
        screener = PairScreener(scanner)
        entries = [
            entry("A/B", "L1", 1.0),
            entry("C/D", "L1", 3.0),
            entry("E/F", "L1", 2.0),
            entry("G/H", "DeFi", 0.5),
        ]

        kept = screener.select_top(entries)

        assert [e.pair for e in kept] == ["C/D", "E/F", "G/H"]


class TestScreen:
    """Tests for the full screening pass."""

    def test_screen_keeps_reverting_pair(self, screener):
        """The pattern pair passes, independent walks fail on correlation."""
        pattern = generate_pattern_pair(n=100).until(PEAK_DAY)
        walks = generate_random_walk_pair(n=PEAK_DAY + 1)
        universe = [
            asset("AAA", volume=9_000_000),
            asset("BBB", volume=4_000_000),
            asset("EEE", sector="DeFi", volume=3_000_000),
            asset("FFF", sector="DeFi", volume=2_000_000),
        ]
        history = {
            "AAA": pattern.series1,
            "BBB": pattern.series2,
            "EEE": walks.series1,
            "FFF": walks.series2,
        }

        result = screener.screen(universe, history)

        assert [e.pair for e in result.viable_pairs] == ["AAA/BBB"]
        assert result.rejections == {"EEE/FFF": "low_correlation"}
        assert result.total_candidates == 2

        watched = result.viable_pairs[0]
        assert watched.sector == "L1"
        assert watched.direction == "short"
        assert watched.is_ready
        assert watched.entry_threshold >= 1.5
        assert watched.quality_score > 0
        assert watched.initial_beta == watched.beta

    def test_missing_history_rejected(self, screener):
        """A symbol without enough closes is rejected, not evaluated."""
        pattern = generate_pattern_pair(n=100)
        universe = [asset("AAA", volume=9_000_000), asset("BBB")]
        history = {"AAA": pattern.series1}

        result = screener.screen(universe, history)

        assert result.n_viable == 0
        assert result.rejection_counts == {"insufficient_history": 1}

    def test_short_history_rejected(self, screener):
        """Below min_history_ratio * lookback the pair is skipped."""
        pattern = generate_pattern_pair(n=40)
        universe = [asset("AAA", volume=9_000_000), asset("BBB")]

        result = screener.screen(universe, {"AAA": pattern.series1, "BBB": pattern.series2})

        assert result.rejections == {"AAA/BBB": "insufficient_history"}


class TestWatchlistSerialization:
    """Tests for watchlist documents."""

    def test_snapshot_round_trip(self):
        """Snapshot survives to_dict / from_dict, infinite half-life included."""
        at = datetime(2024, 3, 1, tzinfo=timezone.utc)
        watched = entry("ETH/SOL", "L1", 2.0)
        watched.half_life_ar1 = float("inf")
        watched.discovered_at = at
        snapshot = WatchlistSnapshot(version=4, generated_at=at, entries=(watched,))

        data = snapshot.to_dict()
        restored = WatchlistSnapshot.from_dict(data)

        assert data["pairs"][0]["half_life_ar1"] is None
        assert restored == snapshot
        assert restored.by_pair()["ETH/SOL"].half_life_ar1 == float("inf")
