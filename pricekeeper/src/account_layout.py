"""Fixed-size binary layout of a price feed account.

All integers are little-endian. The total size depends only on the history
capacity, so storage can be allocated before initialization:

    header | policy | current sample | statistics | sources | breaker |
    reserved (64 zero bytes) | ring head u32, ring count u32 | capacity x sample

A decimal is stored as a signed 128-bit coefficient plus a signed 16-bit
exponent, which is exact for coefficients up to 38 digits. Timestamps are
unsigned 64-bit milliseconds.

Decoding dispatches on the first byte; unknown versions raise
:class:`UnsupportedVersionError` before anything else is read.

.. code-block:: python

    >>> account_size(1000) == account_size(999) + SAMPLE_RECORD.size
    True
"""

from __future__ import annotations

import struct
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal

from web3 import Web3

from .CircuitBreaker import BreakerState
from .config import FeedPolicy
from .errors import MalformedDataError, UnsupportedVersionError
from .FeedStatistics import FeedStatistics, SourceRecord
from .PriceSample import MAX_SAMPLE_SOURCES, MAX_SOURCE_NAME_BYTES, PriceSample
from .TradingPair import MAX_PAIR_ID_BYTES, MAX_SYMBOL_BYTES, TradingPairIdentity

LAYOUT_VERSION = 1
RESERVED_BYTES = 64
MAX_TRACKED_SOURCES = 8
ADDRESS_BYTES = 20

FLAG_INITIALIZED = 0x01
FLAG_HAS_CURRENT = 0x02
FLAG_HAS_EXTREMES = 0x04

_DEC = "16sh"

HEADER = struct.Struct(
    f"<BB{ADDRESS_BYTES}s{ADDRESS_BYTES}sQQ"
    f"{MAX_PAIR_ID_BYTES}s{MAX_SYMBOL_BYTES}s{MAX_SYMBOL_BYTES}sBBI"
)
POLICY = struct.Struct("<QdBIQQ")
SAMPLE_RECORD = struct.Struct(
    f"<{_DEC}dHqQB{MAX_SAMPLE_SOURCES * MAX_SOURCE_NAME_BYTES}s{_DEC}"
)
STATISTICS = struct.Struct("<" + _DEC * 12 + "QQQQQd")
SOURCE_ENTRY = struct.Struct(f"<{MAX_SOURCE_NAME_BYTES}sBdQQ")
SOURCE_COUNT = struct.Struct("<B")
BREAKER = struct.Struct("<IQQB")
RING_META = struct.Struct("<II")

_FIXED_SIZE = (
    HEADER.size
    + POLICY.size
    + SAMPLE_RECORD.size
    + STATISTICS.size
    + MAX_TRACKED_SOURCES * SOURCE_ENTRY.size
    + SOURCE_COUNT.size
    + BREAKER.size
    + RESERVED_BYTES
    + RING_META.size
)


def account_size(capacity: int) -> int:
    """Total encoded size of an account with the given history capacity."""
    if capacity < 1:
        raise ValueError("capacity must be at least 1")
    return _FIXED_SIZE + capacity * SAMPLE_RECORD.size


@dataclass
class AccountParts:
    """Every persisted field of an account, in layout terms.

    The account model converts to and from this value; the codec knows
    nothing about account behavior.
    """

    capacity: int
    version: int = LAYOUT_VERSION
    is_initialized: bool = False
    authority: str | None = None
    program_ref: str | None = None
    created_at: float = 0.0
    last_updated: float = 0.0
    pair: TradingPairIdentity | None = None
    policy: FeedPolicy = field(default_factory=FeedPolicy)
    current: PriceSample | None = None
    statistics: FeedStatistics = field(default_factory=FeedStatistics)
    sources: dict[str, SourceRecord] = field(default_factory=dict)
    breaker: BreakerState = field(default_factory=BreakerState)
    reserved: bytes = bytes(RESERVED_BYTES)
    history_slots: list[PriceSample | None] | None = None
    history_head: int = 0
    history_count: int = 0


# Field codecs


def _ms(seconds: float) -> int:
    ms = round(seconds * 1000)
    if ms < 0:
        raise ValueError(f"timestamp {seconds} is negative")
    return ms


def _seconds(ms: int) -> float:
    return ms / 1000


def _pack_decimal(value: Decimal) -> tuple[bytes, int]:
    if not value.is_finite():
        raise ValueError(f"cannot encode non-finite decimal {value}")
    sign, digits, exponent = value.as_tuple()
    coefficient = int("".join(str(d) for d in digits)) if digits else 0
    if sign:
        coefficient = -coefficient
    if not -(2**15) <= exponent < 2**15:
        raise ValueError(f"decimal exponent out of range: {value}")
    try:
        return coefficient.to_bytes(16, "little", signed=True), exponent
    except OverflowError as e:
        raise ValueError(f"decimal coefficient too large: {value}") from e


def _unpack_decimal(raw: bytes, exponent: int) -> Decimal:
    coefficient = int.from_bytes(raw, "little", signed=True)
    digits = tuple(int(d) for d in str(abs(coefficient)))
    return Decimal((1 if coefficient < 0 else 0, digits, exponent))


def _pack_str(value: str, width: int) -> bytes:
    raw = value.encode("utf-8")
    if len(raw) > width:
        raise ValueError(f"'{value}' exceeds {width} bytes")
    return raw.ljust(width, b"\0")


def _unpack_str(raw: bytes) -> str:
    return raw.rstrip(b"\0").decode("utf-8")


def _pack_address(address: str | None) -> bytes:
    if address is None:
        return bytes(ADDRESS_BYTES)
    raw = bytes.fromhex(address[2:] if address.startswith("0x") else address)
    if len(raw) != ADDRESS_BYTES:
        raise ValueError(f"address '{address}' is not {ADDRESS_BYTES} bytes")
    return raw


def _unpack_address(raw: bytes) -> str | None:
    if raw == bytes(ADDRESS_BYTES):
        return None
    return Web3.to_checksum_address("0x" + raw.hex())


def _pack_sample(sample: PriceSample | None) -> bytes:
    if sample is None:
        return bytes(SAMPLE_RECORD.size)
    if not 0 <= sample.sample_count < 2**16:
        raise ValueError(f"sample_count {sample.sample_count} does not fit u16")
    names = b"".join(_pack_str(s, MAX_SOURCE_NAME_BYTES) for s in sample.sources)
    return SAMPLE_RECORD.pack(
        *_pack_decimal(sample.price),
        sample.confidence,
        sample.sample_count,
        sample.sequence,
        _ms(sample.timestamp),
        len(sample.sources),
        names,
        *_pack_decimal(sample.volume),
    )


def _unpack_sample(buf: bytes, offset: int) -> PriceSample:
    (
        price_raw,
        price_exp,
        confidence,
        sample_count,
        sequence,
        timestamp_ms,
        source_count,
        names,
        volume_raw,
        volume_exp,
    ) = SAMPLE_RECORD.unpack_from(buf, offset)
    if source_count > MAX_SAMPLE_SOURCES:
        raise MalformedDataError(f"sample source count {source_count} out of range")
    sources = tuple(
        _unpack_str(names[i * MAX_SOURCE_NAME_BYTES:(i + 1) * MAX_SOURCE_NAME_BYTES])
        for i in range(source_count)
    )
    return PriceSample(
        price=_unpack_decimal(price_raw, price_exp),
        confidence=confidence,
        sources=sources,
        sample_count=sample_count,
        timestamp=_seconds(timestamp_ms),
        sequence=sequence,
        volume=_unpack_decimal(volume_raw, volume_exp),
    )


_STAT_DECIMALS = (
    "high_24h",
    "low_24h",
    "volume_24h",
    "change_24h",
    "change_percent_24h",
    "high_7d",
    "low_7d",
    "volume_7d",
    "change_7d",
    "change_percent_7d",
)


def _pack_statistics(stats: FeedStatistics) -> bytes:
    values: list = []
    for name in _STAT_DECIMALS:
        values.extend(_pack_decimal(getattr(stats, name)))
    values.extend(_pack_decimal(stats.all_time_high or Decimal(0)))
    values.extend(_pack_decimal(stats.all_time_low or Decimal(0)))
    values.extend(
        [
            _ms(stats.all_time_high_at),
            _ms(stats.all_time_low_at),
            stats.total_updates,
            stats.successful_updates,
            stats.failed_updates,
            stats.average_update_interval,
        ]
    )
    return STATISTICS.pack(*values)


def _unpack_statistics(buf: bytes, offset: int, has_extremes: bool) -> FeedStatistics:
    values = STATISTICS.unpack_from(buf, offset)
    decimals = [
        _unpack_decimal(values[i], values[i + 1]) for i in range(0, 24, 2)
    ]
    ath_at, atl_at, total, successful, failed, average = values[24:]
    kwargs = dict(zip(_STAT_DECIMALS, decimals[:10]))
    return FeedStatistics(
        **kwargs,
        all_time_high=decimals[10] if has_extremes else None,
        all_time_low=decimals[11] if has_extremes else None,
        all_time_high_at=_seconds(ath_at),
        all_time_low_at=_seconds(atl_at),
        total_updates=total,
        successful_updates=successful,
        failed_updates=failed,
        average_update_interval=average,
    )


# Account codec


def encode_account(parts: AccountParts) -> bytes:
    """Encode an account into its fixed-size layout.

    :param parts: Persisted account fields.
    :returns: Exactly ``account_size(parts.capacity)`` bytes.
    :raises ValueError: If a field does not fit its slot.
    """
    if len(parts.sources) > MAX_TRACKED_SOURCES:
        raise ValueError(f"at most {MAX_TRACKED_SOURCES} sources can be stored")
    if len(parts.reserved) != RESERVED_BYTES:
        raise ValueError(f"reserved block must be {RESERVED_BYTES} bytes")

    flags = 0
    if parts.is_initialized:
        flags |= FLAG_INITIALIZED
    if parts.current is not None:
        flags |= FLAG_HAS_CURRENT
    if parts.statistics.all_time_high is not None:
        flags |= FLAG_HAS_EXTREMES

    pair = parts.pair
    out = bytearray()
    out += HEADER.pack(
        parts.version,
        flags,
        _pack_address(parts.authority),
        _pack_address(parts.program_ref),
        _ms(parts.created_at),
        _ms(parts.last_updated),
        _pack_str(pair.pair_id if pair else "", MAX_PAIR_ID_BYTES),
        _pack_str(pair.base if pair else "", MAX_SYMBOL_BYTES),
        _pack_str(pair.quote if pair else "", MAX_SYMBOL_BYTES),
        pair.base_decimals if pair else 0,
        pair.quote_decimals if pair else 0,
        parts.capacity,
    )

    policy = parts.policy
    out += POLICY.pack(
        _ms(policy.max_age),
        policy.confidence_floor,
        policy.minimum_sources,
        policy.error_threshold,
        _ms(policy.error_window),
        _ms(policy.recovery_time),
    )

    out += _pack_sample(parts.current)
    out += _pack_statistics(parts.statistics)

    entries = list(parts.sources.items())
    for index in range(MAX_TRACKED_SOURCES):
        if index < len(entries):
            name, record = entries[index]
            out += SOURCE_ENTRY.pack(
                _pack_str(name, MAX_SOURCE_NAME_BYTES),
                1 if record.enabled else 0,
                record.weight,
                record.updates,
                _ms(record.last_seen),
            )
        else:
            out += bytes(SOURCE_ENTRY.size)
    out += SOURCE_COUNT.pack(len(entries))

    breaker = parts.breaker
    out += BREAKER.pack(
        breaker.current_errors,
        _ms(breaker.window_start),
        _ms(breaker.last_error),
        1 if breaker.is_broken else 0,
    )
    out += parts.reserved

    slots = parts.history_slots or [None] * parts.capacity
    if len(slots) != parts.capacity:
        raise ValueError(f"expected {parts.capacity} history slots, got {len(slots)}")
    out += RING_META.pack(parts.history_head, parts.history_count)
    for sample in slots:
        out += _pack_sample(sample)

    return bytes(out)


def _decode_v1(data: bytes) -> AccountParts:
    (
        version,
        flags,
        authority,
        program_ref,
        created_ms,
        updated_ms,
        pair_id,
        base,
        quote,
        base_decimals,
        quote_decimals,
        capacity,
    ) = HEADER.unpack_from(data, 0)
    if capacity < 1:
        raise MalformedDataError("history capacity must be at least 1")
    if len(data) != account_size(capacity):
        raise MalformedDataError(
            f"expected {account_size(capacity)} bytes for capacity {capacity}, "
            f"got {len(data)}"
        )
    offset = HEADER.size

    pair = None
    if pair_id.strip(b"\0"):
        pair = TradingPairIdentity(
            _unpack_str(base),
            _unpack_str(quote),
            pair_id=_unpack_str(pair_id),
            base_decimals=base_decimals,
            quote_decimals=quote_decimals,
        )

    max_age, floor, minimum, threshold, window, recovery = POLICY.unpack_from(data, offset)
    offset += POLICY.size
    policy = FeedPolicy(
        max_age=_seconds(max_age),
        confidence_floor=floor,
        minimum_sources=minimum,
        error_threshold=threshold,
        error_window=_seconds(window),
        recovery_time=_seconds(recovery),
    )

    current = None
    if flags & FLAG_HAS_CURRENT:
        current = _unpack_sample(data, offset)
    offset += SAMPLE_RECORD.size

    statistics = _unpack_statistics(data, offset, bool(flags & FLAG_HAS_EXTREMES))
    offset += STATISTICS.size

    entries = []
    for index in range(MAX_TRACKED_SOURCES):
        entries.append(SOURCE_ENTRY.unpack_from(data, offset + index * SOURCE_ENTRY.size))
    offset += MAX_TRACKED_SOURCES * SOURCE_ENTRY.size
    (source_count,) = SOURCE_COUNT.unpack_from(data, offset)
    offset += SOURCE_COUNT.size
    if source_count > MAX_TRACKED_SOURCES:
        raise MalformedDataError(f"source count {source_count} out of range")
    sources = {}
    for name, enabled, weight, updates, last_seen in entries[:source_count]:
        sources[_unpack_str(name)] = SourceRecord(
            weight=weight,
            enabled=bool(enabled),
            updates=updates,
            last_seen=_seconds(last_seen),
        )

    errors, window_start, last_error, broken = BREAKER.unpack_from(data, offset)
    offset += BREAKER.size
    breaker = BreakerState(
        current_errors=errors,
        window_start=_seconds(window_start),
        last_error=_seconds(last_error),
        is_broken=bool(broken),
    )

    reserved = bytes(data[offset:offset + RESERVED_BYTES])
    offset += RESERVED_BYTES

    head, count = RING_META.unpack_from(data, offset)
    offset += RING_META.size
    if head >= capacity or count > capacity:
        raise MalformedDataError(f"invalid ring state head={head} count={count}")
    start = (head - count) % capacity
    occupied = {(start + i) % capacity for i in range(count)}
    slots: list[PriceSample | None] = []
    for index in range(capacity):
        if index in occupied:
            slots.append(_unpack_sample(data, offset + index * SAMPLE_RECORD.size))
        else:
            slots.append(None)

    return AccountParts(
        capacity=capacity,
        version=version,
        is_initialized=bool(flags & FLAG_INITIALIZED),
        authority=_unpack_address(authority),
        program_ref=_unpack_address(program_ref),
        created_at=_seconds(created_ms),
        last_updated=_seconds(updated_ms),
        pair=pair,
        policy=policy,
        current=current,
        statistics=statistics,
        sources=sources,
        breaker=breaker,
        reserved=reserved,
        history_slots=slots,
        history_head=head,
        history_count=count,
    )


_DECODERS: dict[int, Callable[[bytes], AccountParts]] = {
    LAYOUT_VERSION: _decode_v1,
}


def decode_account(data: bytes) -> AccountParts:
    """Decode an account from its binary layout.

    :param data: Encoded account bytes.
    :returns: AccountParts.
    :raises UnsupportedVersionError: If the version byte is unknown.
    :raises MalformedDataError: If the buffer is truncated or inconsistent.
    """
    if not data:
        raise MalformedDataError("empty account data")
    version = data[0]
    decoder = _DECODERS.get(version)
    if decoder is None:
        raise UnsupportedVersionError(version)
    if len(data) < HEADER.size:
        raise MalformedDataError(f"account data truncated at {len(data)} bytes")
    try:
        return decoder(bytes(data))
    except (struct.error, ValueError, UnicodeDecodeError) as e:
        raise MalformedDataError(f"Failed to decode account: {e}") from e
