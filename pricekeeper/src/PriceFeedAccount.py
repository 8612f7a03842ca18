"""PriceFeedAccount: Persistent storage entity of one price feed.

An account is allocated with a fixed history capacity, initialized once by
its authority, then mutated only through :meth:`PriceFeedAccount.apply_update`
(reached from validated update commands) and :meth:`record_error`.

Readers either use the immutable objects the account hands out
(:class:`PriceSample`, :class:`FeedStatistics`, :class:`CurrentPrice`) or take
a :meth:`snapshot`. Statistics and source records are replaced wholesale on
each update rather than mutated in place.

.. code-block:: python

    >>> account = PriceFeedAccount(capacity=100)
    >>> account.initialize(TradingPairIdentity("SOL", "USDC"), authority, program, now=0.0)
    >>> account.apply_update(PriceSample(price="101.5", confidence=0.9,
    ...                                  sources=("okx",), timestamp=10.0), now=10.0)
    >>> account.get_current_price(now=20.0).age
    10.0
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any

from web3 import Web3

from .account_layout import (
    LAYOUT_VERSION,
    MAX_TRACKED_SOURCES,
    RESERVED_BYTES,
    AccountParts,
    account_size,
    decode_account,
    encode_account,
)
from .CircuitBreaker import CircuitBreaker
from .config import FeedPolicy
from .errors import (
    AlreadyInitializedError,
    CircuitOpenError,
    ErrorKind,
    MalformedDataError,
    NotInitializedError,
    ValidationError,
)
from .FeedStatistics import (
    DAY_SECONDS,
    WEEK_SECONDS,
    FeedStatistics,
    SourceRecord,
    summarize_window,
)
from .PriceHistoryRing import DEFAULT_HISTORY_CAPACITY, PriceHistoryRing
from .PriceSample import MAX_SOURCE_NAME_BYTES, PriceSample
from .TradingPair import TradingPairIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentPrice:
    """Read model of the latest price.

    :ivar price: Current price (0 before the first update).
    :ivar confidence: Confidence of the current price.
    :ivar sources: Sources behind the current price.
    :ivar sample_count: Quotes behind the current price.
    :ivar last_updated: Unix time of the last update.
    :ivar age: Seconds since the last update.
    :ivar is_stale: Whether age exceeds the account's max age.
    """

    price: Decimal
    confidence: float
    sources: tuple[str, ...]
    sample_count: int
    last_updated: float
    age: float
    is_stale: bool


@dataclass(frozen=True)
class ValidationReport:
    """Result of :meth:`PriceFeedAccount.validate`."""

    is_valid: bool
    errors: tuple[str, ...] = field(default_factory=tuple)


def _checksum(address: str, name: str) -> str:
    if not isinstance(address, str) or not Web3.is_address(address):
        raise ValidationError(f"{name} '{address}' is not a valid address")
    return Web3.to_checksum_address(address)


class PriceFeedAccount:
    """Price feed account with bounded history and rolling statistics.

    :ivar capacity: History slots, fixed at allocation.
    :ivar policy: Validation and circuit breaker settings.
    :ivar pair: Trading pair identity (None until initialized).
    :ivar authority: Address allowed to update the feed.
    :ivar program_ref: Address of the controlling program.
    :ivar current: Latest applied sample, if any.
    :ivar statistics: Rolling statistics.
    :ivar sources: Per-source records, in registration order.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_HISTORY_CAPACITY,
        policy: FeedPolicy | None = None,
    ) -> None:
        """Allocate an uninitialized account.

        :param capacity: History slots (default: 1000).
        :param policy: Validation and breaker settings (default: FeedPolicy()).
        :raises ValueError: If capacity is not positive.
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.version = LAYOUT_VERSION
        self.capacity = capacity
        self.policy = policy or FeedPolicy()
        self.is_initialized = False
        self.authority: str | None = None
        self.program_ref: str | None = None
        self.created_at = 0.0
        self.last_updated = 0.0
        self.pair: TradingPairIdentity | None = None
        self.current: PriceSample | None = None
        self.history = PriceHistoryRing(capacity)
        self.statistics = FeedStatistics()
        self.sources: dict[str, SourceRecord] = {}
        self.breaker = self._make_breaker()
        self.reserved = bytes(RESERVED_BYTES)

    def _make_breaker(self, state=None) -> CircuitBreaker:
        return CircuitBreaker(
            error_threshold=self.policy.error_threshold,
            error_window=self.policy.error_window,
            recovery_time=self.policy.recovery_time,
            state=state,
        )

    @property
    def size(self) -> int:
        """Encoded size in bytes."""
        return account_size(self.capacity)

    def _require_initialized(self) -> None:
        if not self.is_initialized:
            raise NotInitializedError("Price feed account is not initialized")

    def initialize(
        self,
        pair: TradingPairIdentity,
        authority: str,
        program_ref: str,
        now: float | None = None,
    ) -> None:
        """Initialize the account for a trading pair.

        :param pair: Pair the feed tracks.
        :param authority: Address allowed to submit updates.
        :param program_ref: Address of the controlling program.
        :param now: Current Unix time (defaults to time.time()).
        :raises AlreadyInitializedError: If called a second time.
        :raises ValidationError: If an address is invalid.
        """
        if self.is_initialized:
            raise AlreadyInitializedError(
                f"Price feed {self.pair} is already initialized"
            )
        now = time.time() if now is None else now
        self.authority = _checksum(authority, "authority")
        self.program_ref = _checksum(program_ref, "program_ref")
        self.pair = pair
        self.created_at = now
        self.last_updated = now
        self.history = PriceHistoryRing(self.capacity)
        self.statistics = FeedStatistics()
        self.is_initialized = True
        logger.info(
            f"Initialized price feed {pair} (capacity {self.capacity}, "
            f"authority {self.authority})"
        )

    def apply_update(self, sample: PriceSample, now: float | None = None) -> None:
        """Record a new sample and refresh statistics.

        Performs no authority or staleness checks; callers validate first.

        :param sample: Sample to record.
        :param now: Current Unix time (defaults to time.time()).
        :raises NotInitializedError: If the account is not initialized.
        :raises CircuitOpenError: While the circuit breaker is open.
        :raises ValidationError: If confidence is outside [0.0, 1.0].
        """
        self._require_initialized()
        now = time.time() if now is None else now
        if self.breaker.is_open(now):
            raise CircuitOpenError(
                f"Price feed {self.pair} suspended, retry in "
                f"{self.breaker.retry_after(now):.0f}s"
            )
        if not 0.0 <= sample.confidence <= 1.0:
            raise ValidationError(
                f"confidence {sample.confidence} outside [0.0, 1.0]",
                kind=ErrorKind.CONFIDENCE_OUT_OF_RANGE,
            )

        self.history.append(sample)
        statistics = self._next_statistics(sample, now)
        sources = self._next_sources(sample)

        self.current = sample
        self.statistics = statistics
        self.sources = sources
        self.last_updated = now
        logger.debug(
            f"Applied {self.pair} price {sample.price} "
            f"(confidence {sample.confidence:.3f}, sequence {sample.sequence})"
        )

    def _next_statistics(self, sample: PriceSample, now: float) -> FeedStatistics:
        previous = self.statistics
        day = summarize_window(self.history.within(now - DAY_SECONDS))
        week = summarize_window(self.history.within(now - WEEK_SECONDS))

        ath, ath_at = previous.all_time_high, previous.all_time_high_at
        if ath is None or sample.price > ath:
            ath, ath_at = sample.price, sample.timestamp
        atl, atl_at = previous.all_time_low, previous.all_time_low_at
        if atl is None or sample.price < atl:
            atl, atl_at = sample.price, sample.timestamp

        # Mean over the intervals between applied updates.
        intervals = previous.successful_updates
        average = previous.average_update_interval
        if intervals > 0:
            elapsed = max(0.0, now - self.last_updated)
            average = (average * (intervals - 1) + elapsed) / intervals

        return replace(
            previous,
            high_24h=day.high,
            low_24h=day.low,
            volume_24h=day.volume,
            change_24h=day.change,
            change_percent_24h=day.change_percent,
            high_7d=week.high,
            low_7d=week.low,
            volume_7d=week.volume,
            change_7d=week.change,
            change_percent_7d=week.change_percent,
            all_time_high=ath,
            all_time_low=atl,
            all_time_high_at=ath_at,
            all_time_low_at=atl_at,
            total_updates=previous.total_updates + 1,
            successful_updates=previous.successful_updates + 1,
            average_update_interval=average,
        )

    def _next_sources(self, sample: PriceSample) -> dict[str, SourceRecord]:
        sources = dict(self.sources)
        for name in sample.sources:
            record = sources.get(name)
            if record is None:
                if len(sources) >= MAX_TRACKED_SOURCES:
                    logger.debug(f"Not tracking source '{name}': source table full")
                    continue
                record = SourceRecord()
            sources[name] = replace(
                record, updates=record.updates + 1, last_seen=sample.timestamp
            )
        return sources

    def record_error(self, now: float | None = None) -> bool:
        """Count a failed update and feed the circuit breaker.

        :param now: Current Unix time (defaults to time.time()).
        :returns: True if the breaker is open afterwards.
        :raises NotInitializedError: If the account is not initialized.
        """
        self._require_initialized()
        now = time.time() if now is None else now
        self.statistics = replace(
            self.statistics,
            total_updates=self.statistics.total_updates + 1,
            failed_updates=self.statistics.failed_updates + 1,
        )
        return self.breaker.record_error(now)

    def validate(self, now: float | None = None) -> ValidationReport:
        """Check the feed's health without modifying it.

        :param now: Current Unix time (defaults to time.time()).
        :returns: ValidationReport listing every violated condition.
        """
        if not self.is_initialized:
            return ValidationReport(False, ("not_initialized",))

        now = time.time() if now is None else now
        errors = []
        current = self.current
        if current is None or current.price <= 0:
            errors.append("non_positive_price")
        if current is None or current.confidence < self.policy.confidence_floor:
            errors.append("low_confidence")
        if now - self.last_updated > self.policy.max_age:
            errors.append("stale")
        return ValidationReport(not errors, tuple(errors))

    def get_current_price(self, now: float | None = None) -> CurrentPrice:
        """Return the latest price with its age and staleness.

        :param now: Current Unix time (defaults to time.time()).
        :returns: CurrentPrice.
        :raises NotInitializedError: If the account is not initialized.
        """
        self._require_initialized()
        now = time.time() if now is None else now
        age = now - self.last_updated
        current = self.current
        return CurrentPrice(
            price=current.price if current else Decimal(0),
            confidence=current.confidence if current else 0.0,
            sources=current.sources if current else (),
            sample_count=current.sample_count if current else 0,
            last_updated=self.last_updated,
            age=age,
            is_stale=age > self.policy.max_age,
        )

    def get_history(self, limit: int = 100) -> list[PriceSample]:
        """Return up to ``limit`` most recent samples, newest first.

        :raises NotInitializedError: If the account is not initialized.
        """
        self._require_initialized()
        return self.history.latest(limit)

    def get_statistics(self, now: float | None = None) -> dict[str, Any]:
        """Return a combined read model of the feed.

        :param now: Current Unix time (defaults to time.time()).
        :returns: Dict with ``pair``, ``current``, ``statistics``, ``sources``
            (per-source weight, enabled flag and reliability) and ``history``
            (entries, capacity, oldest and newest timestamps).
        :raises NotInitializedError: If the account is not initialized.
        """
        current = self.get_current_price(now)
        samples = self.history.snapshot()
        successful = self.statistics.successful_updates
        return {
            "pair": str(self.pair),
            "current": current,
            "statistics": self.statistics,
            "sources": {
                name: {
                    "weight": record.weight,
                    "enabled": record.enabled,
                    "updates": record.updates,
                    "last_seen": record.last_seen,
                    "reliability": record.reliability(successful),
                }
                for name, record in self.sources.items()
            },
            "history": {
                "entries": len(samples),
                "capacity": self.capacity,
                "oldest": min((s.timestamp for s in samples), default=None),
                "newest": max((s.timestamp for s in samples), default=None),
            },
        }

    def configure_source(
        self, name: str, weight: float = 1.0, enabled: bool = True
    ) -> None:
        """Register or reconfigure a source on the feed.

        :param name: Source name.
        :param weight: Aggregation weight (must be positive).
        :param enabled: Whether the source is enabled.
        :raises ValidationError: If the weight is invalid or the table is full.
        :raises NotInitializedError: If the account is not initialized.
        """
        self._require_initialized()
        if weight <= 0:
            raise ValidationError(f"weight for '{name}' must be positive")
        if not name or len(name.encode("utf-8")) > MAX_SOURCE_NAME_BYTES:
            raise ValidationError(f"invalid source name '{name}'")
        record = self.sources.get(name)
        if record is None and len(self.sources) >= MAX_TRACKED_SOURCES:
            raise ValidationError(
                f"At most {MAX_TRACKED_SOURCES} sources can be configured"
            )
        sources = dict(self.sources)
        sources[name] = replace(record or SourceRecord(), weight=weight, enabled=enabled)
        self.sources = sources

    def snapshot(self) -> PriceFeedAccount:
        """Return a deep copy that later updates do not affect."""
        return copy.deepcopy(self)

    def serialize(self) -> bytes:
        """Encode the account into its fixed-size binary layout."""
        return encode_account(self._to_parts())

    @classmethod
    def deserialize(cls, data: bytes) -> PriceFeedAccount:
        """Decode an account from bytes produced by :meth:`serialize`.

        :raises UnsupportedVersionError: If the version byte is unknown.
        :raises MalformedDataError: If the data is truncated or inconsistent.
        """
        return cls._from_parts(decode_account(data))

    def _to_parts(self) -> AccountParts:
        return AccountParts(
            capacity=self.capacity,
            version=self.version,
            is_initialized=self.is_initialized,
            authority=self.authority,
            program_ref=self.program_ref,
            created_at=self.created_at,
            last_updated=self.last_updated,
            pair=self.pair,
            policy=self.policy,
            current=self.current,
            statistics=self.statistics,
            sources=dict(self.sources),
            breaker=copy.copy(self.breaker.state),
            reserved=self.reserved,
            history_slots=list(self.history.physical_slots()),
            history_head=self.history.head,
            history_count=len(self.history),
        )

    @classmethod
    def _from_parts(cls, parts: AccountParts) -> PriceFeedAccount:
        account = cls(parts.capacity, parts.policy)
        account.version = parts.version
        account.is_initialized = parts.is_initialized
        account.authority = parts.authority
        account.program_ref = parts.program_ref
        account.created_at = parts.created_at
        account.last_updated = parts.last_updated
        account.pair = parts.pair
        account.current = parts.current
        account.statistics = parts.statistics
        account.sources = dict(parts.sources)
        account.breaker = account._make_breaker(parts.breaker)
        account.reserved = parts.reserved
        if parts.history_slots is not None:
            try:
                account.history = PriceHistoryRing.restore(
                    parts.capacity,
                    parts.history_slots,
                    parts.history_head,
                    parts.history_count,
                )
            except ValueError as e:
                raise MalformedDataError(f"Inconsistent history ring: {e}") from e
        return account
