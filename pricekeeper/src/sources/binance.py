"""Binance source.

Endpoint: https://api.binance.com/api/v3/ticker/24hr?symbol={BASE}{QUOTE}
Rate Limit: High (no key required for public endpoints)
"""

import logging

from ..PriceSample import SourceQuote
from .base import MarketDataSource, SourceError, SourceHTTPError, register_source

logger = logging.getLogger(__name__)


@register_source
class BinanceSource(MarketDataSource):
    """Source for the Binance 24h rolling ticker.

    Reports last price, 24h base volume and the ticker close time.
    """

    name = "binance"
    BASE_URL = "https://api.binance.com/api/v3"

    # Binance answers 400 for symbols it does not list
    UNKNOWN_SYMBOL_STATUS = 400

    async def fetch_quote(self, base: str, quote: str) -> SourceQuote | None:
        """Fetch a quote from Binance.

        :param base: Base currency (e.g., "SOL").
        :param quote: Quote currency (e.g., "USDC").
        :returns: SourceQuote or None on failure.
        """
        symbol = f"{base.upper()}{quote.upper()}"
        url = f"{self.BASE_URL}/ticker/24hr"

        try:
            response = await self._get(url, params={"symbol": symbol})
            data = response.json()
            if "lastPrice" not in data:
                logger.warning(f"[binance] No price for {symbol}: {data}")
                return None

            timestamp = int(data["closeTime"]) / 1000 if data.get("closeTime") else None
            return self._quote(data["lastPrice"], data.get("volume"), timestamp)

        except SourceHTTPError as e:
            if e.status_code == self.UNKNOWN_SYMBOL_STATUS:
                logger.warning(f"[binance] Symbol {symbol} not listed")
            else:
                logger.warning(f"[binance] Failed to fetch {symbol}: {e}")
            return None
        except SourceError as e:
            logger.warning(f"[binance] Failed to fetch {symbol}: {e}")
            return None
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"[binance] Failed to parse response for {symbol}: {e}")
            return None
