"""
Market data sources for trading pair quotes.

Usage:
    from pricekeeper.src.sources import get_source, get_available_sources

    available = get_available_sources()
    # ['binance', 'coingecko', 'okx']

    source = get_source("okx")
    quote = await source.fetch_quote("SOL", "USDC")
"""

# Import base classes and utilities
from .base import (
    SOURCE_REGISTRY,
    MarketDataSource,
    SourceConfigError,
    SourceError,
    SourceHTTPError,
    get_available_sources,
    get_source,
    register_source,
)

# Import all source implementations to trigger registration
from .binance import BinanceSource
from .coingecko import CoinGeckoSource
from .okx import OkxSource

__all__ = [
    # Base classes
    "MarketDataSource",
    "SourceError",
    "SourceConfigError",
    "SourceHTTPError",
    # Registry functions
    "register_source",
    "get_source",
    "get_available_sources",
    "SOURCE_REGISTRY",
    # Source implementations
    "BinanceSource",
    "CoinGeckoSource",
    "OkxSource",
]
