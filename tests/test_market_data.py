"""
Tests for Market Data
=====================

Candle parsing, universe mapping and failure reporting for the
Hyperliquid data source. No network access: requests are mocked.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from core.exceptions import DataSourceError
from data.market_data import (
    HyperliquidDataSource,
    PriceDataSource,
    create_data_source,
    parse_candles,
)


DAY_MS = 86_400_000
T0_MS = int(datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp() * 1000)


def candles(closes, start_ms=T0_MS):
    return [{"t": start_ms + i * DAY_MS, "c": str(c), "o": "1", "h": "1", "l": "1"}
            for i, c in enumerate(closes)]


@pytest.fixture
def source():
    return HyperliquidDataSource(
        {"retry": {"max_attempts": 1}},
        sectors={"L1": ["ETH", "SOL"], "DeFi": ["UNI"]},
    )


class TestParseCandles:
    """Tests for candle payload parsing."""

    def test_parses_and_sorts(self):
        """Out-of-order candles come back oldest first."""
        payload = list(reversed(candles([10.0, 11.0, 12.0])))

        series = parse_candles("ETH", payload)

        assert series.symbol == "ETH"
        assert series.closes == (10.0, 11.0, 12.0)
        assert series.timestamps[0] == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_duplicate_timestamp_keeps_last(self):
        """A repeated candle replaces the earlier one."""
        payload = candles([10.0, 11.0]) + [{"t": T0_MS + DAY_MS, "c": "11.5"}]

        series = parse_candles("ETH", payload)

        assert series.closes == (10.0, 11.5)

    def test_empty(self):
        assert len(parse_candles("ETH", [])) == 0


class TestHyperliquidDataSource:
    """Tests for the API wrapper with _post mocked."""

    def test_satisfies_protocol(self, source):
        assert isinstance(source, PriceDataSource)

    @pytest.mark.asyncio
    async def test_daily_closes_trimmed(self, source):
        """Extra days fetched for safety are trimmed to the request."""
        with patch.object(source, "_post", AsyncMock(return_value=candles(range(1, 11)))) as post:
            series = await source.get_daily_closes("ETH", 5)

        assert series.closes == (6.0, 7.0, 8.0, 9.0, 10.0)
        payload = post.await_args.args[0]
        assert payload["type"] == "candleSnapshot"
        assert payload["req"]["coin"] == "ETH"
        assert payload["req"]["interval"] == "1d"

    @pytest.mark.asyncio
    async def test_hourly_closes_window(self, source):
        """Hourly candles are requested for the exact [start, end] window."""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        end = datetime(2024, 1, 2, tzinfo=timezone.utc)
        with patch.object(source, "_post", AsyncMock(return_value=candles([1.0, 2.0]))) as post:
            series = await source.get_hourly_closes("SOL", start, end)

        assert series.closes == (1.0, 2.0)
        req = post.await_args.args[0]["req"]
        assert req["interval"] == "1h"
        assert req["startTime"] == T0_MS
        assert req["endTime"] == T0_MS + DAY_MS

    @pytest.mark.asyncio
    async def test_universe_mapping(self, source):
        """Sector from config, OI converted to USD, missing contexts skipped."""
        payload = [
            {"universe": [{"name": "ETH"}, {"name": "UNI"}, {"name": "NEW"}, {"name": "DEAD"}]},
            [
                {"markPx": "2000", "dayNtlVlm": "5000000", "openInterest": "100", "funding": "0.0001"},
                {"markPx": "5", "dayNtlVlm": "800000", "openInterest": "40000", "funding": "0"},
                {"markPx": "1", "dayNtlVlm": "10", "openInterest": "1", "funding": "0"},
                None,
            ],
        ]
        with patch.object(source, "_post", AsyncMock(return_value=payload)):
            universe = await source.get_universe()

        by_symbol = {a.symbol: a for a in universe}
        assert set(by_symbol) == {"ETH", "UNI", "NEW"}
        assert by_symbol["ETH"].sector == "L1"
        assert by_symbol["ETH"].open_interest == pytest.approx(200_000)
        assert by_symbol["UNI"].sector == "DeFi"
        assert by_symbol["NEW"].sector == ""

    @pytest.mark.asyncio
    async def test_malformed_universe(self, source):
        """An unexpected payload shape is a data source error."""
        with patch.object(source, "_post", AsyncMock(return_value={"oops": 1})):
            with pytest.raises(DataSourceError):
                await source.get_universe()

    @pytest.mark.asyncio
    async def test_request_failure_raises_data_source_error(self, source):
        """Retries exhausted on a client error surface as DataSourceError."""
        session = MagicMock()
        session.post.side_effect = aiohttp.ClientError("connection reset")
        with patch.object(source, "_get_session", AsyncMock(return_value=session)):
            with pytest.raises(DataSourceError):
                await source.get_daily_closes("ETH", 5)

        assert source.get_stats() == {"requests": 1, "failures": 1}

    def test_factory_reads_sectors(self):
        """Sectors come from the scanner section."""
        source = create_data_source({"scanner": {"sectors": {"L1": ["eth"]}}})

        assert source._symbol_to_sector == {"ETH": "L1"}
