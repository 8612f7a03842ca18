"""Unit tests for PriceAggregator."""

from decimal import Decimal

import pytest

from pricekeeper.src.config import AggregatorConfig
from pricekeeper.src.errors import ErrorKind
from pricekeeper.src.PriceAggregator import AggregatedQuote, PriceAggregator
from pricekeeper.src.PriceSample import SourceQuote

NOW = 1_700_000_000.0


def quotes(*prices, ts: float = NOW) -> list[SourceQuote]:
    return [SourceQuote(f"s{i}", Decimal(str(p)), ts) for i, p in enumerate(prices)]


class TestAggregatorConfig:
    """Test AggregatorConfig validation."""

    def test_default_values(self) -> None:
        """Default values should be reasonable."""
        cfg = AggregatorConfig()
        assert cfg.min_sources == 2
        assert cfg.max_age == 60.0
        assert cfg.outlier_z_threshold == 2.0
        assert cfg.drift_limit_percent is None

    def test_invalid_min_sources(self) -> None:
        """min_sources < 1 should raise ValueError."""
        with pytest.raises(ValueError, match="min_sources must be at least 1"):
            AggregatorConfig(min_sources=0)

    def test_invalid_drift_limit(self) -> None:
        """drift_limit_percent <= 0 should raise ValueError."""
        with pytest.raises(ValueError, match="drift_limit_percent must be positive"):
            AggregatorConfig(drift_limit_percent=0)

    def test_invalid_weight(self) -> None:
        with pytest.raises(ValueError, match="weights must be positive"):
            AggregatorConfig(source_weights={"okx": 0})

    def test_weight_for(self) -> None:
        cfg = AggregatorConfig(source_weights={"okx": 2.0})
        assert cfg.weight_for("okx") == 2.0
        assert cfg.weight_for("binance") == 1.0


class TestPriceAggregatorConfidence:
    """Test confidence scoring."""

    def test_identical_quotes_reach_ceiling(self) -> None:
        """Identical quotes give the ceiling confidence."""
        result = PriceAggregator().aggregate(quotes(100, 100, 100), now=NOW)

        assert result.success
        assert result.price == Decimal("100")
        assert result.quote.confidence == 0.95

    def test_divergent_quotes_hit_floor(self) -> None:
        """Widely divergent quotes give the floor confidence."""
        result = PriceAggregator().aggregate(quotes(100, 150), now=NOW)

        assert result.success
        assert result.quote.confidence == 0.1

    def test_confidence_between_bounds(self) -> None:
        """Small dispersion lowers confidence proportionally."""
        score, mard = PriceAggregator().confidence([Decimal(100), Decimal(102)])

        assert mard == pytest.approx(1 / 101)
        assert score == pytest.approx(1 - 10 / 101)

    def test_single_source_confidence(self) -> None:
        """A single survivor gets the fixed single-source confidence."""
        agg = PriceAggregator(AggregatorConfig(min_sources=1))
        result = agg.aggregate(quotes(100), now=NOW)

        assert result.success
        assert result.quote.confidence == 0.5

    def test_confidence_in_range(self) -> None:
        """Confidence stays within [0, 1] for any spread."""
        agg = PriceAggregator()
        for spread in (0, 1, 5, 50, 500):
            result = agg.aggregate(quotes(100, 100 + spread, 100 - spread / 2), now=NOW)
            assert 0.0 <= result.quote.confidence <= 1.0


class TestPriceAggregatorFiltering:
    """Test staleness, validity and outlier filtering."""

    def test_insufficient_sources(self) -> None:
        """Fewer quotes than min_sources fails."""
        result = PriceAggregator().aggregate(quotes(100), now=NOW)

        assert not result.success
        assert result.error is ErrorKind.INSUFFICIENT_SOURCES
        assert result.metadata["available"] == 1

    def test_empty_quotes(self) -> None:
        result = PriceAggregator().aggregate([], now=NOW)
        assert result.error is ErrorKind.INSUFFICIENT_SOURCES

    def test_stale_quotes_discarded(self) -> None:
        """Quotes older than max_age are discarded."""
        fresh = quotes(100, 101)
        stale = [SourceQuote("old", Decimal("500"), NOW - 120)]
        result = PriceAggregator().aggregate(fresh + stale, now=NOW)

        assert result.success
        assert "old" not in result.quote.sources
        assert result.metadata["stale"] == ["old"]

    def test_stale_quotes_can_cause_failure(self) -> None:
        result = PriceAggregator().aggregate(quotes(100, 101, ts=NOW - 61), now=NOW)
        assert result.error is ErrorKind.INSUFFICIENT_SOURCES

    def test_non_positive_prices_discarded(self) -> None:
        """Zero and negative prices never count."""
        result = PriceAggregator().aggregate(quotes(0, -5, 100), now=NOW)
        assert result.error is ErrorKind.INSUFFICIENT_SOURCES

    def test_outlier_dropped(self) -> None:
        """A quote beyond the z-score threshold is dropped."""
        result = PriceAggregator().aggregate(
            quotes(100, 100, 100, 100, 100, 200), now=NOW
        )

        assert result.success
        assert result.price == Decimal("100")
        assert result.metadata["dropped"] == {"s5": Decimal("200")}
        assert result.quote.sample_count == 5

    def test_zero_deviation_keeps_all(self) -> None:
        """Identical quotes are never outliers."""
        result = PriceAggregator().aggregate(quotes(7, 7), now=NOW)
        assert result.metadata["dropped"] == {}

    def test_too_many_outliers(self) -> None:
        """Dropping outliers below min_sources fails."""
        agg = PriceAggregator(AggregatorConfig(min_sources=6))
        result = agg.aggregate(quotes(100, 100, 100, 100, 100, 200), now=NOW)

        assert not result.success
        assert result.error is ErrorKind.TOO_MANY_OUTLIERS

    def test_outlier_filter_disabled(self) -> None:
        agg = PriceAggregator(AggregatorConfig(outlier_filter=False))
        result = agg.aggregate(quotes(100, 100, 100, 100, 100, 200), now=NOW)

        assert result.quote.sample_count == 6
        assert result.price == Decimal(700) / Decimal(6)


class TestPriceAggregatorPrice:
    """Test the aggregated price and quote fields."""

    def test_weighted_average(self) -> None:
        """Per-source weights shape the average."""
        agg = PriceAggregator(AggregatorConfig(source_weights={"okx": 3.0}))
        result = agg.aggregate(
            [
                SourceQuote("okx", Decimal("100"), NOW),
                SourceQuote("binance", Decimal("104"), NOW),
            ],
            now=NOW,
        )
        assert result.price == Decimal("101")

    def test_quote_fields(self) -> None:
        """Timestamp is the newest quote; volume is summed."""
        result = PriceAggregator().aggregate(
            [
                SourceQuote("okx", Decimal("100"), NOW - 5, volume=Decimal("10")),
                SourceQuote("binance", Decimal("100"), NOW - 1, volume=Decimal("2.5")),
                SourceQuote("coingecko", Decimal("100"), NOW - 3),
            ],
            now=NOW,
        )

        quote = result.quote
        assert quote.timestamp == NOW - 1
        assert quote.volume == Decimal("12.5")
        assert quote.sources == ("okx", "binance", "coingecko")

    def test_to_sample(self) -> None:
        quote = AggregatedQuote(price=Decimal("5"), confidence=0.9, sources=("okx",), timestamp=3.0)
        sample = quote.to_sample(sequence=7)

        assert sample.sequence == 7
        assert sample.price == Decimal("5")
        assert sample.sources == ("okx",)


class TestPriceAggregatorDrift:
    """Test the drift limit."""

    def test_drift_exceeded(self) -> None:
        """A move beyond the drift limit is rejected."""
        agg = PriceAggregator(AggregatorConfig(drift_limit_percent=5.0))
        result = agg.aggregate(quotes(110, 110), previous_price=Decimal("100"), now=NOW)

        assert not result.success
        assert result.error is ErrorKind.DRIFT_TOO_LARGE
        assert result.metadata["drift_percent"] == pytest.approx(10.0)
        assert result.metadata["candidate_price"] == Decimal("110")

    def test_drift_within_limit(self) -> None:
        agg = PriceAggregator(AggregatorConfig(drift_limit_percent=5.0))
        result = agg.aggregate(quotes(103, 103), previous_price=Decimal("100"), now=NOW)
        assert result.success

    def test_drift_skipped_without_previous(self) -> None:
        agg = PriceAggregator(AggregatorConfig(drift_limit_percent=5.0))
        assert agg.aggregate(quotes(1000, 1000), now=NOW).success
