"""QuoteCollector: Concurrent quote fetching across market data sources.

Architecture:
    - Resolves once per pair which sources list it (supports_pair)
    - Fetches every active supporting source for a pair concurrently
    - Applies a per-source timeout with asyncio.wait_for
    - Drops failing or timed-out sources and records them in the SourceManager
    - Collects several pairs at once with collect_all()
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .PriceSample import SourceQuote
from .SourceManager import SourceManager

if TYPE_CHECKING:
    from .sources import MarketDataSource

logger = logging.getLogger(__name__)


class QuoteCollector:
    """Collects quotes for trading pairs from multiple sources.

    :ivar sources: Dict mapping source names to source instances.
    :ivar source_manager: Per-source health tracking.
    :ivar fetch_timeout: Timeout for each source fetch in seconds.
    """

    def __init__(
        self,
        sources: dict[str, MarketDataSource],
        source_manager: SourceManager | None = None,
        fetch_timeout: float = 10.0,
    ) -> None:
        """Initialize the collector.

        :param sources: Dict mapping source names to source instances.
        :param source_manager: Health tracker (default: one over ``sources``).
        :param fetch_timeout: Timeout for each source fetch (default: 10.0).
        """
        self.sources = sources
        self.source_manager = source_manager or SourceManager(list(sources))
        self.fetch_timeout = fetch_timeout
        self._pair_sources: dict[tuple[str, str], list[str]] = {}

    async def supported_sources(self, base: str, quote: str) -> list[str]:
        """Get the sources that list a pair, resolving them on first use.

        A source whose supports_pair() raises is treated as not listing it.

        :param base: Base currency symbol.
        :param quote: Quote currency symbol.
        :returns: Source names in configuration order.
        """
        key = (base.upper(), quote.upper())
        if key in self._pair_sources:
            return self._pair_sources[key]

        supported: list[str] = []
        for name, source in self.sources.items():
            try:
                if await source.supports_pair(base, quote):
                    supported.append(name)
            except Exception as e:
                logger.warning(
                    f"[{name}] supports_pair({base}/{quote}) raised {e}; "
                    "treating as unsupported"
                )
        self._pair_sources[key] = supported
        logger.info(f"{base}/{quote}: supported by {supported}")
        return supported

    async def prepare(self, pairs: list[tuple[str, str]]) -> None:
        """Resolve the supporting sources of every pair up front.

        :param pairs: List of (base, quote) tuples.
        :raises ValueError: If no configured source supports a pair.
        """
        for base, quote in pairs:
            if not await self.supported_sources(base, quote):
                raise ValueError(
                    f"No configured sources support pair {base}/{quote}. "
                    f"Sources: {list(self.sources)}"
                )

    async def collect(self, base: str, quote: str) -> list[SourceQuote]:
        """Fetch quotes for one pair from every active source that lists it.

        Sources that do not list the pair are never asked, so the pair cannot
        back them off for the other pairs.

        :param base: Base currency symbol.
        :param quote: Quote currency symbol.
        :returns: Quotes from the sources that answered in time.
        """
        supported = await self.supported_sources(base, quote)
        if not supported:
            logger.warning(f"No source supports {base}/{quote}")
            return []

        active = [s for s in supported if self.source_manager.is_source_active(s)]
        if not active:
            logger.warning(f"All sources in backoff for {base}/{quote}")
            return []

        results = await asyncio.gather(
            *(self._fetch_single(name, base, quote) for name in active)
        )

        quotes: list[SourceQuote] = []
        for name, result in zip(active, results, strict=True):
            if result is None:
                backoff = self.source_manager.record_failure(name)
                logger.debug(f"[{name}] No quote for {base}/{quote}, backoff {backoff:.0f}s")
            else:
                self.source_manager.record_success(name)
                quotes.append(result)
        return quotes

    async def collect_all(
        self, pairs: list[tuple[str, str]]
    ) -> dict[tuple[str, str], list[SourceQuote]]:
        """Fetch quotes for several pairs concurrently.

        :param pairs: List of (base, quote) tuples.
        :returns: Dict mapping (base, quote) to its quotes.
        """
        if not pairs:
            return {}
        results = await asyncio.gather(*(self.collect(b, q) for b, q in pairs))
        return dict(zip(pairs, results, strict=True))

    async def _fetch_single(
        self,
        name: str,
        base: str,
        quote: str,
    ) -> SourceQuote | None:
        """Fetch a single quote with timeout.

        :param name: Source name.
        :param base: Base currency symbol.
        :param quote: Quote currency symbol.
        :returns: Quote or None on failure.
        """
        source = self.sources[name]
        try:
            return await asyncio.wait_for(
                source.fetch_quote(base, quote),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{name}] Timeout fetching {base}/{quote}")
            return None
        except Exception as e:
            logger.warning(f"[{name}] Error fetching {base}/{quote}: {e}")
            return None
