"""
Pair Trading Engine - Data Module
=================================

Price-data collaborators. The engine only sees the PriceDataSource
protocol; retries and rate limiting live here.
"""

from data.market_data import (
    PriceDataSource,
    HyperliquidDataSource,
    create_data_source,
)

__all__ = [
    "PriceDataSource",
    "HyperliquidDataSource",
    "create_data_source",
]
