"""Unit tests for PriceHistoryRing."""

from decimal import Decimal

import pytest

from pricekeeper.src.PriceHistoryRing import MAX_HISTORY_CAPACITY, PriceHistoryRing
from pricekeeper.src.PriceSample import PriceSample


def sample(ts: float, price: str = "100") -> PriceSample:
    return PriceSample(price=Decimal(price), confidence=0.9, timestamp=ts)


class TestPriceHistoryRingInit:
    """Test ring allocation."""

    def test_empty_ring(self) -> None:
        """A new ring has no samples and starts at slot 0."""
        ring = PriceHistoryRing(capacity=4)
        assert len(ring) == 0
        assert ring.head == 0
        assert ring.latest() == []
        assert ring.physical_slots() == (None, None, None, None)

    def test_invalid_capacity(self) -> None:
        """Capacity outside 1..MAX should raise ValueError."""
        with pytest.raises(ValueError, match="capacity must be between"):
            PriceHistoryRing(capacity=0)
        with pytest.raises(ValueError, match="capacity must be between"):
            PriceHistoryRing(capacity=MAX_HISTORY_CAPACITY + 1)


class TestPriceHistoryRingAppend:
    """Test writing and wraparound."""

    def test_append_until_full(self) -> None:
        """Appends fill free slots without evicting."""
        ring = PriceHistoryRing(capacity=3)
        for i in range(3):
            assert ring.append(sample(float(i))) is None
        assert ring.is_full
        assert ring.head == 0

    def test_overwrite_oldest(self) -> None:
        """Once full, each append evicts the oldest sample."""
        ring = PriceHistoryRing(capacity=3)
        for i in range(3):
            ring.append(sample(float(i)))

        evicted = ring.append(sample(3.0))

        assert evicted.timestamp == 0.0
        assert len(ring) == 3
        assert [s.timestamp for s in ring] == [1.0, 2.0, 3.0]

    def test_many_wraps(self) -> None:
        """Count never exceeds capacity across many wraps."""
        ring = PriceHistoryRing(capacity=5)
        for i in range(23):
            ring.append(sample(float(i)))

        assert len(ring) == 5
        assert ring.head == 23 % 5
        assert [s.timestamp for s in ring] == [18.0, 19.0, 20.0, 21.0, 22.0]


class TestPriceHistoryRingRead:
    """Test read helpers."""

    def test_latest_newest_first(self) -> None:
        """latest() returns samples by descending timestamp."""
        ring = PriceHistoryRing(capacity=10)
        for i in range(5):
            ring.append(sample(float(i)))

        assert [s.timestamp for s in ring.latest()] == [4.0, 3.0, 2.0, 1.0, 0.0]
        assert [s.timestamp for s in ring.latest(2)] == [4.0, 3.0]
        assert ring.latest(0) == []

    def test_latest_out_of_order_timestamps(self) -> None:
        """latest() orders by timestamp, not insertion order."""
        ring = PriceHistoryRing(capacity=10)
        ring.append(sample(10.0, "1"))
        ring.append(sample(5.0, "2"))
        ring.append(sample(20.0, "3"))

        assert [s.price for s in ring.latest()] == [Decimal("3"), Decimal("1"), Decimal("2")]

    def test_latest_ties_keep_newest_insert_first(self) -> None:
        """Equal timestamps return the most recently inserted first."""
        ring = PriceHistoryRing(capacity=10)
        ring.append(sample(1.0, "1"))
        ring.append(sample(1.0, "2"))

        assert [s.price for s in ring.latest()] == [Decimal("2"), Decimal("1")]

    def test_within(self) -> None:
        """within() keeps samples at or after the cutoff."""
        ring = PriceHistoryRing(capacity=10)
        for i in range(5):
            ring.append(sample(float(i * 10)))

        assert [s.timestamp for s in ring.within(20.0)] == [20.0, 30.0, 40.0]


class TestPriceHistoryRingRestore:
    """Test rebuilding from a physical layout."""

    def test_restore_matches_original(self) -> None:
        """A restored ring has the same physical state."""
        ring = PriceHistoryRing(capacity=4)
        for i in range(6):
            ring.append(sample(float(i)))

        restored = PriceHistoryRing.restore(
            4, list(ring.physical_slots()), ring.head, len(ring)
        )

        assert restored.physical_slots() == ring.physical_slots()
        assert restored.snapshot() == ring.snapshot()
        assert restored.head == ring.head

    def test_restore_rejects_bad_head(self) -> None:
        """Head outside the slot range should raise ValueError."""
        with pytest.raises(ValueError, match="invalid ring state"):
            PriceHistoryRing.restore(2, [None, None], head=2, count=0)

    def test_restore_rejects_empty_occupied_slot(self) -> None:
        """An occupied slot that holds nothing should raise ValueError."""
        with pytest.raises(ValueError, match="is empty"):
            PriceHistoryRing.restore(2, [sample(1.0), None], head=0, count=2)

    def test_iterating_corrupted_ring_raises(self) -> None:
        """An occupied slot that lost its sample is reported, not skipped."""
        ring = PriceHistoryRing(capacity=3)
        ring.append(sample(1.0))
        ring.append(sample(2.0))
        ring._slots[ring._slot_index(0)] = None

        with pytest.raises(RuntimeError, match="offset 0 is empty"):
            list(ring)
