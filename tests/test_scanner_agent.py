"""
Tests for Scanner Agent
=======================

Discovery cycle against an in-memory data source.
"""

import asyncio

import pytest

from agents.scanner_agent import ScannerAgent, format_scan_summary
from core.notifications import NotificationKind
from core.pair_screener import AssetInfo
from tests.fixtures import (
    PEAK_OFFSET,
    FakeDataSource,
    generate_pattern_pair,
    generate_random_walk_pair,
)


PEAK_DAY = 80 + PEAK_OFFSET


def asset(symbol, sector, volume, oi=1_000_000):
    return AssetInfo(symbol, sector, volume, oi, mark_price=10.0)


@pytest.fixture
def data_source():
    pattern = generate_pattern_pair(n=100)
    defi = generate_random_walk_pair(n=100, asset1="EEE", asset2="FFF", seed=42)
    ai = generate_random_walk_pair(n=100, asset1="GGG", asset2="HHH", seed=7)
    universe = [
        asset("AAA", "L1", 9_000_000),
        asset("BBB", "L1", 4_000_000),
        asset("CCC", "L1", 10_000),
        asset("DDD", "L1", 8_000_000),
        asset("EEE", "DeFi", 3_000_000),
        asset("FFF", "DeFi", 2_000_000),
        asset("GGG", "AI", 3_000_000),
        asset("HHH", "AI", 2_000_000),
    ]
    series = {
        "AAA": pattern.series1,
        "BBB": pattern.series2,
        "EEE": defi.series1,
        "FFF": defi.series2,
        "GGG": ai.series1,
        "HHH": ai.series2,
    }
    source = FakeDataSource(series, universe, today=PEAK_DAY)
    source.failing.add("GGG")
    return source


@pytest.fixture
def scanner(test_config, data_source, persistence, notifier):
    persistence.save_blacklist(["DDD"])
    return ScannerAgent(test_config, data_source, persistence, notifier)


class TestRunScan:
    """Tests for one discovery cycle."""

    @pytest.mark.asyncio
    async def test_watchlist_replaced(self, scanner, persistence):
        """Only the reverting pair makes the watchlist, as version 1."""
        result = await scanner.run_scan()

        watchlist = persistence.load_watchlist()
        assert watchlist.version == 1
        assert [e.pair for e in watchlist.entries] == ["AAA/BBB"]
        assert result.rejections["EEE/FFF"] == "low_correlation"
        assert result.rejections["GGG/HHH"] == "insufficient_history"
        assert scanner.last_result is result

    @pytest.mark.asyncio
    async def test_illiquid_and_blacklisted_excluded(self, scanner, data_source):
        """CCC and DDD are never fetched."""
        await scanner.run_scan()

        fetched = {symbol for symbol, _ in data_source.requests}
        assert fetched == {"AAA", "BBB", "EEE", "FFF", "GGG", "HHH"}
        assert all(days == 61 for _, days in data_source.requests)

    @pytest.mark.asyncio
    async def test_version_increments(self, scanner, persistence):
        """Each scan writes a new snapshot version."""
        await scanner.run_scan()
        await scanner.run_scan()

        assert persistence.load_watchlist().version == 2

    @pytest.mark.asyncio
    async def test_scan_notification(self, scanner, notifier):
        """A SCAN notification carries the version and pairs."""
        await scanner.run_scan()

        last = notifier.history[-1]
        assert last.kind == NotificationKind.SCAN
        assert last.details == {"version": 1, "pairs": ["AAA/BBB"]}
        assert "AAA/BBB" in last.message


class TestFetchHistory:
    """Tests for batched history fetch."""

    @pytest.mark.asyncio
    async def test_failed_symbol_left_out(self, scanner):
        """DataSourceError drops the symbol, the batch continues."""
        history = await scanner.fetch_history(["AAA", "GGG", "BBB"], 30)

        assert set(history) == {"AAA", "BBB"}
        assert len(history["AAA"]) == 30

    @pytest.mark.asyncio
    async def test_malformed_symbol_left_out(self, scanner, data_source):
        """A parsing error on one symbol does not abort the batch."""
        fetch = data_source.get_daily_closes

        async def flaky(symbol, days):
            if symbol == "BBB":
                raise KeyError("c")
            return await fetch(symbol, days)

        data_source.get_daily_closes = flaky

        history = await scanner.fetch_history(["AAA", "BBB", "EEE"], 30)

        assert set(history) == {"AAA", "EEE"}

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, scanner, data_source):
        """Task cancellation is never swallowed."""
        async def cancelled(symbol, days):
            raise asyncio.CancelledError()

        data_source.get_daily_closes = cancelled

        with pytest.raises(asyncio.CancelledError):
            await scanner.fetch_history(["AAA"], 30)


class TestFormatting:
    """Tests for the scan summary text."""

    @pytest.mark.asyncio
    async def test_summary_lists_rejections(self, scanner):
        result = await scanner.run_scan()

        text = format_scan_summary(result)

        assert text.startswith("PAIR SCAN COMPLETE")
        assert "insufficient_history=1" in text
        assert "low_correlation=1" in text
