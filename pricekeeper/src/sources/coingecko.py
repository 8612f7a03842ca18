"""CoinGecko source.

Endpoint: https://api.coingecko.com/api/v3/simple/price?ids={id}&vs_currencies={quote}
Rate Limit: 30 calls/min (free), higher with API key
"""

import logging

from ..PriceSample import SourceQuote
from .base import MarketDataSource, SourceError, register_source

logger = logging.getLogger(__name__)


@register_source
class CoinGeckoSource(MarketDataSource):
    """Source for the CoinGecko simple price API.

    API tiers:
        - Free: api.coingecko.com (no key, 30 calls/min)
        - Demo: api.coingecko.com + x-cg-demo-api-key header
        - Pro: pro-api.coingecko.com + x-cg-pro-api-key header

    To use a demo key, prefix with "demo:": API_KEY_COINGECKO=demo:CG-xxxxx
    Pro keys need no prefix: API_KEY_COINGECKO=xxxxx
    """

    name = "coingecko"
    BASE_URL_FREE = "https://api.coingecko.com/api/v3"
    BASE_URL_PRO = "https://pro-api.coingecko.com/api/v3"

    # Map common symbols to CoinGecko IDs
    COIN_IDS = {
        "btc": "bitcoin",
        "eth": "ethereum",
        "sol": "solana",
        "usdt": "tether",
        "usdc": "usd-coin",
        "bonk": "bonk",
        "jup": "jupiter-exchange-solana",
        "ray": "raydium",
    }

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        """Initialize with optional demo: prefix handling."""
        self._is_demo = False
        if api_key and api_key.lower().startswith("demo:"):
            self._is_demo = True
            api_key = api_key[5:]
        super().__init__(api_key=api_key, timeout=timeout)

    @property
    def base_url(self) -> str:
        """Return appropriate base URL based on API key type."""
        if not self.has_api_key:
            return self.BASE_URL_FREE
        return self.BASE_URL_FREE if self._is_demo else self.BASE_URL_PRO

    @property
    def api_header(self) -> tuple[str, str] | None:
        """Return appropriate header name and value for API key."""
        if not self.api_key:
            return None
        header_name = "x-cg-demo-api-key" if self._is_demo else "x-cg-pro-api-key"
        return (header_name, self.api_key)

    async def supports_pair(self, base: str, quote: str) -> bool:
        """Check if pair is supported (base must be in COIN_IDS)."""
        return base.lower() in self.COIN_IDS

    async def fetch_quote(self, base: str, quote: str) -> SourceQuote | None:
        """Fetch a quote from CoinGecko.

        :param base: Base currency (e.g., "SOL").
        :param quote: Quote currency (e.g., "USDC").
        :returns: SourceQuote or None on failure.
        """
        coin_id = self.COIN_IDS.get(base.lower())
        if not coin_id:
            logger.warning(f"[coingecko] Unknown coin: {base}")
            return None

        quote_lower = quote.lower()
        url = f"{self.base_url}/simple/price"

        headers = {}
        if self.api_header:
            header_name, header_value = self.api_header
            headers[header_name] = header_value

        try:
            response = await self._get(
                url,
                params={
                    "ids": coin_id,
                    "vs_currencies": quote_lower,
                    "include_24hr_vol": "true",
                    "include_last_updated_at": "true",
                },
                headers=headers if headers else None,
            )
            data = response.json()

            if coin_id not in data:
                logger.warning(f"[coingecko] Coin {coin_id} not in response: {data}")
                return None

            entry = data[coin_id]
            if quote_lower not in entry:
                logger.warning(
                    f"[coingecko] Quote {quote_lower} not available for {coin_id}"
                )
                return None

            updated_at = entry.get("last_updated_at")
            return self._quote(
                str(entry[quote_lower]),
                entry.get(f"{quote_lower}_24h_vol"),
                float(updated_at) if updated_at else None,
            )

        except SourceError as e:
            logger.warning(f"[coingecko] Failed to fetch {base}/{quote}: {e}")
            return None
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"[coingecko] Failed to parse response: {e}")
            return None
