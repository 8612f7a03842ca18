"""TradingPair: Identity of the trading pair a price feed account tracks.

The identity is immutable once an account is initialized. The feed account
address is derived deterministically from the authority, the controlling
program reference and the pair id:

    keccak256(authority + "/" + program + "/price_feed/" + pair_id)[-20:]

so the same keeper always finds the same account for a pair.

.. code-block:: python

    >>> pair = TradingPairIdentity.from_string("sol/usdc")
    >>> str(pair)
    'SOL/USDC'
    >>> pair.symbol_parts
    ('SOL', 'USDC')
"""

from __future__ import annotations

from dataclasses import dataclass

from web3 import Web3

# Fixed field widths in the persisted layout.
MAX_PAIR_ID_BYTES = 32
MAX_SYMBOL_BYTES = 16


@dataclass(frozen=True)
class TradingPairIdentity:
    """A base/quote trading pair with decimals metadata.

    :ivar base: Base currency symbol (upper-case).
    :ivar quote: Quote currency symbol (upper-case).
    :ivar pair_id: Unique pair identifier (e.g., "SOL/USDC").
    :ivar base_decimals: Decimals of the base token.
    :ivar quote_decimals: Decimals of the quote token.
    """

    base: str
    quote: str
    pair_id: str = ""
    base_decimals: int = 0
    quote_decimals: int = 0

    def __post_init__(self) -> None:
        """Normalize symbols and check the identity fits the layout.

        :raises ValueError: If a field is empty, too long or out of range.
        """
        base = self.base.strip().upper()
        quote = self.quote.strip().upper()
        if not base or not quote:
            raise ValueError("base and quote symbols must be non-empty")
        object.__setattr__(self, "base", base)
        object.__setattr__(self, "quote", quote)
        if not self.pair_id:
            object.__setattr__(self, "pair_id", f"{base}/{quote}")

        for name, value in (("base", base), ("quote", quote)):
            if len(value.encode("utf-8")) > MAX_SYMBOL_BYTES:
                raise ValueError(
                    f"{name} symbol '{value}' exceeds {MAX_SYMBOL_BYTES} bytes"
                )
        if len(self.pair_id.encode("utf-8")) > MAX_PAIR_ID_BYTES:
            raise ValueError(
                f"pair_id '{self.pair_id}' exceeds {MAX_PAIR_ID_BYTES} bytes"
            )
        for name, value in (
            ("base_decimals", self.base_decimals),
            ("quote_decimals", self.quote_decimals),
        ):
            if not 0 <= value <= 255:
                raise ValueError(f"{name} must be between 0 and 255, got {value}")

    def __str__(self) -> str:
        """Return the pair id."""
        return self.pair_id

    @property
    def symbol_parts(self) -> tuple[str, str]:
        """Return (base, quote) as used by market data sources."""
        return self.base, self.quote

    def derive_feed_address(self, authority: str, program_ref: str) -> str:
        """Derive the feed account address for this pair.

        :param authority: Authority address that owns the feed.
        :param program_ref: Address of the controlling program/ledger.
        :returns: Checksummed 20-byte address.

        .. code-block:: python

            >>> pair = TradingPairIdentity("btc", "usdt")
            >>> addr = pair.derive_feed_address(
            ...     "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
            ...     "0x5FbDB2315678afecb367f032d93F642f64180aa3",
            ... )
            >>> Web3.is_checksum_address(addr)
            True
        """
        seed = f"{authority.lower()}/{program_ref.lower()}/price_feed/{self.pair_id}"
        digest = Web3.keccak(text=seed)
        return Web3.to_checksum_address("0x" + bytes(digest[-20:]).hex())

    @classmethod
    def from_string(
        cls,
        pair_str: str,
        base_decimals: int = 0,
        quote_decimals: int = 0,
    ) -> TradingPairIdentity:
        """Parse a pair string in format "base/quote".

        :param pair_str: Pair string like "sol/usdc" or "BTC/USDT".
        :param base_decimals: Base token decimals.
        :param quote_decimals: Quote token decimals.
        :returns: New TradingPairIdentity instance.
        :raises ValueError: If pair string format is invalid.

        .. code-block:: python

            >>> pair = TradingPairIdentity.from_string("eth/usdt")
            >>> pair.base
            'ETH'
        """
        parts = pair_str.strip().split("/")
        if len(parts) != 2 or not all(p.strip() for p in parts):
            raise ValueError(
                f"Invalid pair format '{pair_str}'. Expected 'base/quote' (e.g., 'sol/usdc')"
            )
        return cls(
            parts[0],
            parts[1],
            base_decimals=base_decimals,
            quote_decimals=quote_decimals,
        )
