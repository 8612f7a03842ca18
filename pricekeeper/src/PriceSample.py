"""Price records: persisted samples and transient source quotes."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

# Fixed limits imposed by the persisted sample record.
MAX_SAMPLE_SOURCES = 8
MAX_SOURCE_NAME_BYTES = 16


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Convert a price-like value to Decimal without float artifacts.

    Floats go through ``str()`` so ``0.1`` becomes ``Decimal("0.1")``.

    :param value: Price as Decimal, float, int or numeric string.
    :returns: Decimal value.
    :raises ValueError: If the value is not numeric.
    """
    if isinstance(value, Decimal):
        return value
    try:
        if isinstance(value, float):
            return Decimal(repr(value))
        return Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Not a numeric price: {value!r}") from e


@dataclass(frozen=True)
class SourceQuote:
    """A single quote reported by one market data source.

    :ivar source: Source name (e.g., "okx").
    :ivar price: Quoted price.
    :ivar timestamp: Unix time the quote was observed.
    :ivar volume: Optional 24h volume reported alongside the price.
    """

    source: str
    price: Decimal
    timestamp: float
    volume: Decimal | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "price", to_decimal(self.price))
        if self.volume is not None:
            object.__setattr__(self, "volume", to_decimal(self.volume))

    def age(self, now: float) -> float:
        """Seconds elapsed since the quote was observed."""
        return now - self.timestamp


@dataclass(frozen=True)
class PriceSample:
    """A price recorded into a feed account.

    Immutable once recorded into history.

    :ivar price: Aggregated price.
    :ivar confidence: Confidence in [0.0, 1.0].
    :ivar sources: Names of contributing sources.
    :ivar sample_count: Number of quotes the price was computed from.
    :ivar timestamp: Unix time of the price.
    :ivar sequence: Sequence number of the update that recorded it.
    :ivar volume: Summed volume reported by the sources (0 if unknown).
    """

    price: Decimal
    confidence: float
    sources: tuple[str, ...] = field(default_factory=tuple)
    sample_count: int = 0
    timestamp: float = 0.0
    sequence: int = 0
    volume: Decimal = Decimal(0)

    def __post_init__(self) -> None:
        """Normalize field types and check the sample fits a record.

        :raises ValueError: If sources exceed the record limits.
        """
        object.__setattr__(self, "price", to_decimal(self.price))
        object.__setattr__(self, "volume", to_decimal(self.volume))
        object.__setattr__(self, "sources", tuple(self.sources))
        if len(self.sources) > MAX_SAMPLE_SOURCES:
            raise ValueError(
                f"A sample holds at most {MAX_SAMPLE_SOURCES} sources, "
                f"got {len(self.sources)}"
            )
        for name in self.sources:
            if len(name.encode("utf-8")) > MAX_SOURCE_NAME_BYTES:
                raise ValueError(
                    f"Source name '{name}' exceeds {MAX_SOURCE_NAME_BYTES} bytes"
                )
