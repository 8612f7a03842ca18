"""OKX source.

Endpoint: https://www.okx.com/api/v5/market/ticker?instId={BASE}-{QUOTE}
Rate Limit: 20 requests/2s per IP (no key required)
"""

import logging

from ..PriceSample import SourceQuote
from .base import MarketDataSource, SourceError, register_source

logger = logging.getLogger(__name__)


@register_source
class OkxSource(MarketDataSource):
    """Source for the OKX public market ticker.

    Reports last trade price, 24h base volume and the ticker timestamp.
    """

    name = "okx"
    BASE_URL = "https://www.okx.com/api/v5"

    async def fetch_quote(self, base: str, quote: str) -> SourceQuote | None:
        """Fetch a quote from OKX.

        :param base: Base currency (e.g., "SOL").
        :param quote: Quote currency (e.g., "USDC").
        :returns: SourceQuote or None on failure.
        """
        inst_id = f"{base.upper()}-{quote.upper()}"
        url = f"{self.BASE_URL}/market/ticker"

        try:
            response = await self._get(url, params={"instId": inst_id})
            data = response.json()

            if data.get("code") != "0":
                logger.warning(f"[okx] API error for {inst_id}: {data.get('msg')}")
                return None

            tickers = data.get("data") or []
            if not tickers:
                logger.warning(f"[okx] No ticker for {inst_id}")
                return None

            ticker = tickers[0]
            timestamp = int(ticker["ts"]) / 1000 if ticker.get("ts") else None
            return self._quote(ticker["last"], ticker.get("vol24h"), timestamp)

        except SourceError as e:
            logger.warning(f"[okx] Failed to fetch {inst_id}: {e}")
            return None
        except (KeyError, ValueError, TypeError, IndexError) as e:
            logger.warning(f"[okx] Failed to parse response for {inst_id}: {e}")
            return None
