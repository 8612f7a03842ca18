"""Market data source interface and shared HTTP client management.

All sources inherit from MarketDataSource and implement fetch_quote(). A shared
httpx.AsyncClient is used across all sources to avoid connection overhead.

.. code-block:: python

    @register_source
    class MySource(MarketDataSource):
        name = "mysource"

        async def fetch_quote(self, base: str, quote: str) -> SourceQuote | None:
            response = await self._get(f"https://api.example.com/{base}/{quote}")
            return self._quote(response.json()["price"])
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import ClassVar

import httpx

from ..PriceSample import SourceQuote, to_decimal

logger = logging.getLogger(__name__)


class SourceError(Exception):
    """Base exception for market data source errors."""

    pass


class SourceConfigError(SourceError):
    """Raised when source configuration is invalid (e.g., missing API key)."""

    pass


class SourceHTTPError(SourceError):
    """Raised when HTTP request fails.

    :ivar status_code: HTTP status code from the failed request.
    """

    def __init__(self, status_code: int, message: str):
        """Initialize the HTTP error.

        :param status_code: HTTP status code.
        :param message: Error message from response.
        """
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


class MarketDataSource(ABC):
    """Abstract base class for market data sources.

    Subclasses must implement:
        - name: Class variable identifying the source (e.g., "okx", "binance")
        - fetch_quote(): Async method returning a quote for a trading pair

    :cvar name: Unique identifier for this source.
    :cvar DEFAULT_TIMEOUT: Default HTTP request timeout in seconds.
    :ivar api_key: Optional API key for authenticated endpoints.
    :ivar timeout: Request timeout in seconds.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    # Source identification
    name: ClassVar[str] = ""

    # Default timeout for HTTP requests (seconds)
    DEFAULT_TIMEOUT = 10.0

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        """Initialize the source.

        :param api_key: Optional API key for authenticated endpoints.
        :param timeout: Request timeout in seconds (default: 10).
        """
        self.api_key = api_key
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    @property
    def has_api_key(self) -> bool:
        """Check if this source has an API key configured."""
        return self.api_key is not None and len(self.api_key) > 0

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        :returns: Shared httpx.AsyncClient instance.
        """
        if MarketDataSource._shared_client is None or MarketDataSource._shared_client.is_closed:
            MarketDataSource._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return MarketDataSource._shared_client

    @classmethod
    def set_shared_client(cls, client: httpx.AsyncClient | None) -> None:
        """Replace the shared HTTP client (e.g., with a mock transport)."""
        MarketDataSource._shared_client = client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        client = MarketDataSource._shared_client
        if client is not None and not client.is_closed:
            await client.aclose()
        MarketDataSource._shared_client = None

    @abstractmethod
    async def fetch_quote(self, base: str, quote: str) -> SourceQuote | None:
        """Fetch the current quote for a trading pair.

        :param base: Base currency symbol (e.g., "SOL").
        :param quote: Quote currency symbol (e.g., "USDC").
        :returns: SourceQuote, or None if the fetch failed.
        """
        pass

    async def supports_pair(self, base: str, quote: str) -> bool:
        """Check if this source supports the given trading pair.

        :param base: Base currency symbol.
        :param quote: Quote currency symbol.
        :returns: True if pair is supported.
        """
        return True

    def _quote(
        self,
        price: str | float | Decimal,
        volume: str | float | Decimal | None = None,
        timestamp: float | None = None,
    ) -> SourceQuote:
        """Build a quote attributed to this source.

        :raises ValueError: If price or volume are not numeric.
        """
        return SourceQuote(
            source=self.name,
            price=to_decimal(price),
            timestamp=time.time() if timestamp is None else timestamp,
            volume=None if volume is None else to_decimal(volume),
        )

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP GET request using the shared client.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises SourceHTTPError: On non-2xx response.
        :raises SourceError: On network/timeout errors.
        """
        client = self.get_shared_client()
        try:
            response = await client.get(
                url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
            if not response.is_success:
                logger.debug(
                    "HTTP GET %s failed with status %s: %s",
                    url,
                    response.status_code,
                    response.text[:200],
                )
                raise SourceHTTPError(response.status_code, response.text[:200])
            return response
        except httpx.TimeoutException as e:
            raise SourceError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise SourceError(f"Request failed: {e}") from e


# Registry of available sources (populated by subclass imports)
SOURCE_REGISTRY: dict[str, type[MarketDataSource]] = {}


def register_source(cls: type[MarketDataSource]) -> type[MarketDataSource]:
    """Decorator to register a source class in the global registry.

    :param cls: Source class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If source has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Source {cls.__name__} must define a 'name' class variable")
    SOURCE_REGISTRY[cls.name] = cls
    return cls


def get_source(
    name: str, api_key: str | None = None, timeout: float | None = None
) -> MarketDataSource:
    """Get a source instance by name.

    :param name: Source name (e.g., "okx", "binance").
    :param api_key: Optional API key.
    :param timeout: Optional request timeout in seconds.
    :returns: Source instance.
    :raises ValueError: If source name is unknown.
    """
    if name not in SOURCE_REGISTRY:
        available = ", ".join(sorted(SOURCE_REGISTRY.keys()))
        raise ValueError(f"Unknown source '{name}'. Available: {available}")
    return SOURCE_REGISTRY[name](api_key=api_key, timeout=timeout)


def get_available_sources() -> list[str]:
    """Get list of available source names.

    :returns: Sorted list of registered source names.
    """
    return sorted(SOURCE_REGISTRY.keys())
