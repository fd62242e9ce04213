"""
Market Data
===========

Price-data source for the engine.

- PriceDataSource: the narrow interface the engine depends on
- HyperliquidDataSource: Hyperliquid info API over aiohttp
  (candleSnapshot for closes, metaAndAssetCtxs for the universe)

Every request goes through retry_async; a request that still fails
raises DataSourceError. Callers treat that as "data absent" for the pair.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, runtime_checkable

import aiohttp

from core.exceptions import DataSourceError
from core.pair_screener import AssetInfo
from core.retry import RETRYABLE_EXCEPTIONS, RetryPolicy, retry_async
from core.series_stats import PriceSeries


logger = logging.getLogger(__name__)

HYPERLIQUID_INFO_URL = "https://api.hyperliquid.xyz/info"


@runtime_checkable
class PriceDataSource(Protocol):
    """What the engine needs from a price feed."""

    async def get_daily_closes(self, symbol: str, days: int) -> PriceSeries:
        """Last `days` daily closes, oldest first."""
        ...

    async def get_hourly_closes(self, symbol: str, start: datetime, end: datetime) -> PriceSeries:
        """Hourly closes in [start, end], oldest first."""
        ...

    async def get_universe(self) -> list[AssetInfo]:
        """All tradeable assets with sector, liquidity and funding."""
        ...


class HyperliquidDataSource:
    """
    Hyperliquid perpetuals data over the public info endpoint.

    Usage:
        source = HyperliquidDataSource(config["data_source"], sectors)
        closes = await source.get_daily_closes("ETH", 30)
        await source.close()
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        sectors: dict[str, list[str]] | None = None,
    ):
        config = config or {}

        self._base_url = config.get("base_url", HYPERLIQUID_INFO_URL)
        self._timeout = config.get("timeout_seconds", 15.0)
        self._retry_policy = RetryPolicy.from_config(config.get("retry", {}))
        self._extra_days = config.get("extra_days", 5)

        # sector name -> symbols; assets outside the map get an empty sector
        self._symbol_to_sector: dict[str, str] = {}
        for sector, symbols in (sectors or {}).items():
            for symbol in symbols:
                self._symbol_to_sector[symbol.upper()] = sector

        self._session: aiohttp.ClientSession | None = None
        self._stats = {"requests": 0, "failures": 0}

        logger.info(
            f"HyperliquidDataSource initialized: url={self._base_url}, "
            f"sectors={len(set(self._symbol_to_sector.values()))}, "
            f"max_attempts={self._retry_policy.max_attempts}"
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> HyperliquidDataSource:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _post(self, payload: dict[str, Any]) -> Any:
        """POST to the info endpoint with retry; DataSourceError when exhausted."""
        self._stats["requests"] += 1

        async def call() -> Any:
            session = await self._get_session()
            async with session.post(self._base_url, json=payload) as response:
                response.raise_for_status()
                return await response.json()

        try:
            return await retry_async(
                call,
                self._retry_policy,
                retry_on=RETRYABLE_EXCEPTIONS,
                description=f"Hyperliquid {payload.get('type')}",
            )
        except RETRYABLE_EXCEPTIONS as e:
            self._stats["failures"] += 1
            raise DataSourceError(f"Hyperliquid {payload.get('type')} request failed: {e}") from e

    async def _candles(self, symbol: str, interval: str, start: datetime, end: datetime) -> PriceSeries:
        data = await self._post({
            "type": "candleSnapshot",
            "req": {
                "coin": symbol,
                "interval": interval,
                "startTime": int(start.timestamp() * 1000),
                "endTime": int(end.timestamp() * 1000),
            },
        })
        return parse_candles(symbol, data or [])

    async def get_daily_closes(self, symbol: str, days: int) -> PriceSeries:
        """Last `days` daily closes, oldest first."""
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=days + self._extra_days)
        series = await self._candles(symbol, "1d", start, end)
        if len(series) > days:
            series = PriceSeries(symbol, series.timestamps[-days:], series.closes[-days:])
        return series

    async def get_hourly_closes(self, symbol: str, start: datetime, end: datetime) -> PriceSeries:
        """Hourly closes in [start, end], oldest first."""
        return await self._candles(symbol, "1h", start, end)

    async def get_universe(self) -> list[AssetInfo]:
        """All perpetuals with 24h notional volume, USD open interest and funding."""
        data = await self._post({"type": "metaAndAssetCtxs"})
        try:
            meta, contexts = data
            universe = meta["universe"]
        except (TypeError, ValueError, KeyError) as e:
            raise DataSourceError(f"Unexpected metaAndAssetCtxs payload: {e}") from e

        assets = []
        for info, ctx in zip(universe, contexts):
            if not ctx:
                continue
            symbol = info["name"].replace("-PERP", "")
            mark_price = float(ctx.get("markPx") or 0)
            assets.append(AssetInfo(
                symbol=symbol,
                sector=self._symbol_to_sector.get(symbol.upper(), ""),
                volume_24h=float(ctx.get("dayNtlVlm") or 0),
                open_interest=float(ctx.get("openInterest") or 0) * mark_price,
                mark_price=mark_price,
                funding_rate=float(ctx.get("funding") or 0),
            ))

        logger.info(f"Fetched universe: {len(assets)} assets")
        return assets

    def get_stats(self) -> dict[str, Any]:
        return dict(self._stats)


def parse_candles(symbol: str, candles: list[dict[str, Any]]) -> PriceSeries:
    """Candle dicts ({"t": open ms, "c": close, ...}) to a PriceSeries; duplicates keep the last."""
    points: dict[datetime, float] = {}
    for candle in candles:
        ts = datetime.fromtimestamp(int(candle["t"]) / 1000, tz=timezone.utc)
        points[ts] = float(candle["c"])
    return PriceSeries.from_points(symbol, points.items())


def create_data_source(config: dict[str, Any] | None = None) -> HyperliquidDataSource:
    """Factory function to create the configured data source."""
    config = config or {}
    return HyperliquidDataSource(
        config.get("data_source", {}),
        sectors=config.get("scanner", {}).get("sectors", {}),
    )
