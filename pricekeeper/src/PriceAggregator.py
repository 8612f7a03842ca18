"""PriceAggregator: Weighted aggregation with z-score outlier filtering.

Algorithm:
    1. Discard quotes with a non-positive or non-finite price
    2. Discard quotes older than max_age
    3. Fail if fewer than min_sources remain
    4. Discard outliers whose z-score exceeds outlier_z_threshold
    5. Price = weighted average of the survivors
    6. Confidence from the survivors' mean absolute relative deviation
    7. Optionally apply drift limit vs previous_price

Confidence for two or more survivors is ``clamp(1 - k * MARD, floor, ceiling)``
so identical quotes reach the ceiling and widely divergent ones sit at the
floor. A single survivor always gets ``single_source_confidence``.

.. code-block:: python

    >>> aggregator = PriceAggregator(AggregatorConfig(min_sources=2))
    >>> quotes = [
    ...     SourceQuote("okx", Decimal("100"), now),
    ...     SourceQuote("binance", Decimal("100"), now),
    ... ]
    >>> result = aggregator.aggregate(quotes, now=now)
    >>> result.quote.price, result.quote.confidence
    (Decimal('100'), 0.95)
"""

from __future__ import annotations

import logging
import statistics
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TypedDict

from .config import AggregatorConfig
from .errors import ErrorKind
from .PriceSample import PriceSample, SourceQuote

logger = logging.getLogger(__name__)


class AggregationError(TypedDict, total=False):
    """Error information when aggregation fails.

    :ivar error: Error kind.
    :ivar available: Number of usable quotes available.
    :ivar stale: Sources dropped for age.
    :ivar dropped: Sources dropped as outliers.
    :ivar drift_percent: Actual drift percentage vs previous price.
    :ivar previous_price: Previous round's price.
    :ivar candidate_price: Price that was rejected due to drift.
    """

    error: ErrorKind
    available: int
    stale: list[str]
    dropped: dict[str, Decimal]
    drift_percent: float
    previous_price: Decimal
    candidate_price: Decimal


class AggregationMetadata(TypedDict, total=False):
    """Metadata about a successful aggregation.

    :ivar sources: Sources used in the final calculation.
    :ivar stale: Sources dropped for age.
    :ivar dropped: Sources dropped as outliers.
    :ivar count: Number of sources used.
    :ivar mean: Unweighted mean before outlier filtering.
    :ivar deviation: Mean absolute relative deviation of the survivors.
    """

    sources: list[str]
    stale: list[str]
    dropped: dict[str, Decimal]
    count: int
    mean: float
    deviation: float


@dataclass(frozen=True)
class AggregatedQuote:
    """Aggregated price for one pair.

    :ivar price: Weighted average price.
    :ivar confidence: Confidence in [0.0, 1.0].
    :ivar sources: Contributing sources.
    :ivar sample_count: Quotes the price was computed from.
    :ivar timestamp: Unix time of the newest contributing quote.
    :ivar volume: Summed volume reported by the contributing sources.
    """

    price: Decimal
    confidence: float
    sources: tuple[str, ...] = field(default_factory=tuple)
    sample_count: int = 0
    timestamp: float = 0.0
    volume: Decimal = Decimal(0)

    def to_sample(self, sequence: int) -> PriceSample:
        """Build the sample an update with this quote would record."""
        return PriceSample(
            price=self.price,
            confidence=self.confidence,
            sources=self.sources,
            sample_count=self.sample_count,
            timestamp=self.timestamp,
            sequence=sequence,
            volume=self.volume,
        )


@dataclass
class AggregationResult:
    """Result of price aggregation.

    :ivar quote: Aggregated quote, or None if aggregation failed.
    :ivar metadata: Additional information about the aggregation.
    """

    quote: AggregatedQuote | None
    metadata: AggregationMetadata | AggregationError

    @property
    def success(self) -> bool:
        """Check if aggregation was successful."""
        return self.quote is not None

    @property
    def price(self) -> Decimal | None:
        """Aggregated price, or None on failure."""
        return self.quote.price if self.quote else None

    @property
    def error(self) -> ErrorKind | None:
        """Get error kind if aggregation failed."""
        if self.quote is None:
            return self.metadata.get("error")
        return None


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class PriceAggregator:
    """Aggregates source quotes into one price with a confidence score.

    :ivar config: Aggregation settings.
    """

    def __init__(self, config: AggregatorConfig | None = None) -> None:
        """Initialize the aggregator.

        :param config: Aggregation settings (default: AggregatorConfig()).
        """
        self.config = config or AggregatorConfig()

    def confidence(self, prices: list[Decimal]) -> tuple[float, float]:
        """Confidence for a set of surviving prices.

        :param prices: Surviving prices.
        :returns: (confidence, mean absolute relative deviation).

        .. code-block:: python

            >>> PriceAggregator().confidence([Decimal(100), Decimal(100)])
            (0.95, 0.0)
        """
        cfg = self.config
        if not prices:
            return 0.0, 0.0
        if len(prices) == 1:
            return cfg.single_source_confidence, 0.0

        values = [float(p) for p in prices]
        mean = statistics.fmean(values)
        mard = statistics.fmean(abs(v - mean) / mean for v in values)
        score = _clamp(
            1.0 - cfg.confidence_k * mard, cfg.confidence_floor, cfg.confidence_ceiling
        )
        return score, mard

    def _filter_outliers(
        self, quotes: list[SourceQuote]
    ) -> tuple[list[SourceQuote], dict[str, Decimal], float]:
        values = [float(q.price) for q in quotes]
        mean = statistics.fmean(values)
        if not self.config.outlier_filter or len(quotes) < 2:
            return quotes, {}, mean

        std = statistics.pstdev(values)
        if std == 0:
            return quotes, {}, mean

        kept: list[SourceQuote] = []
        dropped: dict[str, Decimal] = {}
        for quote, value in zip(quotes, values):
            if abs(value - mean) / std > self.config.outlier_z_threshold:
                dropped[quote.source] = quote.price
            else:
                kept.append(quote)
        return kept, dropped, mean

    def aggregate(
        self,
        quotes: list[SourceQuote],
        *,
        previous_price: Decimal | None = None,
        now: float | None = None,
    ) -> AggregationResult:
        """Aggregate source quotes into a single price.

        Never raises for data problems; failures come back as a result with
        an error kind.

        :param quotes: Quotes from the sources.
        :param previous_price: Optional previous round's price for drift
            checking. If None, the drift check is skipped.
        :param now: Current Unix time (defaults to time.time()).
        :returns: AggregationResult with the quote and metadata, or None quote
            with error info.
        """
        cfg = self.config
        now = time.time() if now is None else now

        # Step 1-2: usable and fresh quotes
        usable = [q for q in quotes if q.price.is_finite() and q.price > 0]
        fresh = [q for q in usable if q.age(now) <= cfg.max_age]
        stale = [q.source for q in usable if q.age(now) > cfg.max_age]
        if stale:
            logger.debug(f"Discarded stale quotes from {stale}")

        # Step 3: enough sources
        if len(fresh) < cfg.min_sources:
            return AggregationResult(
                quote=None,
                metadata={
                    "error": ErrorKind.INSUFFICIENT_SOURCES,
                    "available": len(fresh),
                    "stale": stale,
                },
            )

        # Step 4: outliers
        survivors, dropped, mean = self._filter_outliers(fresh)
        if len(survivors) < cfg.min_sources:
            return AggregationResult(
                quote=None,
                metadata={
                    "error": ErrorKind.TOO_MANY_OUTLIERS,
                    "available": len(survivors),
                    "dropped": dropped,
                },
            )

        # Step 5: weighted average
        total_weight = Decimal(0)
        weighted_sum = Decimal(0)
        for quote in survivors:
            weight = Decimal(repr(cfg.weight_for(quote.source)))
            weighted_sum += quote.price * weight
            total_weight += weight
        price = weighted_sum / total_weight

        # Step 6: confidence
        confidence, deviation = self.confidence([q.price for q in survivors])

        # Step 7: drift limit
        if (
            previous_price is not None
            and previous_price > 0
            and cfg.drift_limit_percent is not None
        ):
            drift = float(abs(price - previous_price) / previous_price * 100)
            if drift > cfg.drift_limit_percent:
                return AggregationResult(
                    quote=None,
                    metadata={
                        "error": ErrorKind.DRIFT_TOO_LARGE,
                        "drift_percent": drift,
                        "previous_price": previous_price,
                        "candidate_price": price,
                    },
                )

        sources = tuple(dict.fromkeys(q.source for q in survivors))
        volume = sum((q.volume for q in survivors if q.volume is not None), Decimal(0))
        quote = AggregatedQuote(
            price=price,
            confidence=confidence,
            sources=sources,
            sample_count=len(survivors),
            timestamp=max(q.timestamp for q in survivors),
            volume=volume,
        )
        return AggregationResult(
            quote=quote,
            metadata={
                "sources": list(sources),
                "stale": stale,
                "dropped": dropped,
                "count": len(survivors),
                "mean": mean,
                "deviation": deviation,
            },
        )
