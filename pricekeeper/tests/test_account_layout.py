"""Unit tests for the account binary layout."""

from decimal import Decimal

import pytest

from pricekeeper.src.account_layout import (
    LAYOUT_VERSION,
    SAMPLE_RECORD,
    account_size,
    decode_account,
)
from pricekeeper.src.config import DEFAULT_PROGRAM_ID, FeedPolicy
from pricekeeper.src.errors import MalformedDataError, UnsupportedVersionError
from pricekeeper.src.PriceFeedAccount import PriceFeedAccount
from pricekeeper.src.PriceSample import PriceSample
from pricekeeper.src.TradingPair import TradingPairIdentity

AUTHORITY = "0x" + "22" * 20


def populated_account(capacity: int = 4, updates: int = 6) -> PriceFeedAccount:
    account = PriceFeedAccount(capacity, FeedPolicy(max_age=120.0, error_threshold=4))
    account.initialize(
        TradingPairIdentity("BTC", "USDT", base_decimals=8, quote_decimals=6),
        AUTHORITY,
        DEFAULT_PROGRAM_ID,
        now=1_700_000_000.0,
    )
    for i in range(updates):
        ts = 1_700_000_010.0 + i * 10
        account.apply_update(
            PriceSample(
                price=Decimal("64000.12345678") + i,
                confidence=0.875,
                sources=("okx", "binance", "coingecko"),
                sample_count=3,
                timestamp=ts,
                sequence=i + 1,
                volume=Decimal("12.5"),
            ),
            now=ts,
        )
    account.configure_source("okx", weight=2.0)
    account.record_error(now=1_700_000_100.0)
    return account


class TestAccountSize:
    """Test size computation."""

    def test_size_depends_only_on_capacity(self) -> None:
        assert account_size(10) - account_size(9) == SAMPLE_RECORD.size
        assert PriceFeedAccount(5).size == account_size(5)
        assert len(PriceFeedAccount(5).serialize()) == account_size(5)


class TestAccountRoundTrip:
    """Test encode/decode fidelity."""

    def test_empty_account(self) -> None:
        """An uninitialized account decodes to an uninitialized account."""
        decoded = PriceFeedAccount.deserialize(PriceFeedAccount(3).serialize())

        assert not decoded.is_initialized
        assert decoded.pair is None
        assert decoded.authority is None
        assert decoded.capacity == 3

    def test_populated_account_byte_identical(self) -> None:
        """Re-encoding a decoded account yields the same bytes."""
        account = populated_account()
        data = account.serialize()

        decoded = PriceFeedAccount.deserialize(data)

        assert decoded.serialize() == data

    def test_populated_account_fields(self) -> None:
        """Decoded fields equal the originals."""
        account = populated_account()
        decoded = PriceFeedAccount.deserialize(account.serialize())

        assert decoded.pair == account.pair
        assert decoded.authority == account.authority
        assert decoded.current == account.current
        assert decoded.statistics == account.statistics
        assert decoded.sources == account.sources
        assert decoded.breaker.state == account.breaker.state
        assert decoded.history.snapshot() == account.history.snapshot()
        assert decoded.history.head == account.history.head
        assert decoded.policy.max_age == 120.0
        assert decoded.policy.error_threshold == 4


class TestAccountDecodeErrors:
    """Test rejection of bad input."""

    def test_unknown_version(self) -> None:
        """An unknown version byte raises UnsupportedVersionError."""
        data = bytearray(populated_account().serialize())
        data[0] = LAYOUT_VERSION + 1

        with pytest.raises(UnsupportedVersionError) as exc_info:
            decode_account(bytes(data))
        assert exc_info.value.version == LAYOUT_VERSION + 1

    def test_unknown_version_checked_first(self) -> None:
        """Version is checked before length."""
        with pytest.raises(UnsupportedVersionError):
            decode_account(bytes([99, 0, 0]))

    def test_empty_data(self) -> None:
        with pytest.raises(MalformedDataError):
            decode_account(b"")

    def test_truncated(self) -> None:
        """A truncated buffer raises MalformedDataError."""
        data = populated_account().serialize()
        with pytest.raises(MalformedDataError):
            decode_account(data[:-1])
        with pytest.raises(MalformedDataError):
            decode_account(data[:40])
