"""PriceHistoryRing: Fixed-capacity circular buffer of price samples.

Slots are allocated once. Appending writes at the head and advances it; once
the ring is full the oldest sample is overwritten. Entries are never removed
individually. All wraparound arithmetic lives in :meth:`_slot_index`.

.. code-block:: python

    >>> ring = PriceHistoryRing(capacity=3)
    >>> for i in range(5):
    ...     ring.append(PriceSample(price=100 + i, confidence=0.9, timestamp=float(i)))
    >>> [s.timestamp for s in ring]
    [2.0, 3.0, 4.0]
"""

from __future__ import annotations

from collections.abc import Iterator

from .PriceSample import PriceSample

DEFAULT_HISTORY_CAPACITY = 1000
MAX_HISTORY_CAPACITY = 100_000


class PriceHistoryRing:
    """Circular buffer of :class:`PriceSample`.

    :ivar capacity: Number of slots, fixed at construction.
    """

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        """Allocate the ring.

        :param capacity: Number of slots (must be positive).
        :raises ValueError: If capacity is outside 1..MAX_HISTORY_CAPACITY.
        """
        if not 1 <= capacity <= MAX_HISTORY_CAPACITY:
            raise ValueError(
                f"capacity must be between 1 and {MAX_HISTORY_CAPACITY}, got {capacity}"
            )
        self.capacity = capacity
        self._slots: list[PriceSample | None] = [None] * capacity
        self._head = 0
        self._count = 0

    def __len__(self) -> int:
        return self._count

    def __iter__(self) -> Iterator[PriceSample]:
        """Iterate samples from oldest to newest."""
        for offset in range(self._count):
            sample = self._slots[self._slot_index(offset)]
            if sample is None:
                raise RuntimeError(f"History slot at offset {offset} is empty")
            yield sample

    @property
    def head(self) -> int:
        """Index of the slot the next append writes to."""
        return self._head

    @property
    def is_full(self) -> bool:
        return self._count == self.capacity

    def _slot_index(self, offset: int) -> int:
        """Map a logical offset (0 = oldest) to a physical slot index."""
        start = (self._head - self._count) % self.capacity
        return (start + offset) % self.capacity

    def append(self, sample: PriceSample) -> PriceSample | None:
        """Write a sample at the head, overwriting the oldest when full.

        :param sample: Sample to record.
        :returns: The overwritten sample, or None if a free slot was used.
        """
        evicted = self._slots[self._head]
        self._slots[self._head] = sample
        self._head = (self._head + 1) % self.capacity
        if self._count < self.capacity:
            self._count += 1
            return None
        return evicted

    def latest(self, limit: int | None = None) -> list[PriceSample]:
        """Return the most recent samples, descending by timestamp.

        Samples with equal timestamps keep newest-inserted first.

        :param limit: Maximum number of samples (None for all).
        :returns: List of samples, newest first.
        """
        if limit is not None and limit <= 0:
            return []
        newest_first = [
            self._slots[self._slot_index(offset)]
            for offset in range(self._count - 1, -1, -1)
        ]
        ordered = sorted(newest_first, key=lambda s: s.timestamp, reverse=True)
        return ordered if limit is None else ordered[:limit]

    def within(self, since: float) -> list[PriceSample]:
        """Return samples with timestamp >= since, oldest first."""
        return [s for s in self if s.timestamp >= since]

    def physical_slots(self) -> tuple[PriceSample | None, ...]:
        """Return the raw slot contents in physical order (for encoding)."""
        return tuple(self._slots)

    def snapshot(self) -> tuple[PriceSample, ...]:
        """Return the samples oldest to newest as an immutable tuple."""
        return tuple(self)

    @classmethod
    def restore(
        cls,
        capacity: int,
        slots: list[PriceSample | None],
        head: int,
        count: int,
    ) -> PriceHistoryRing:
        """Rebuild a ring from its physical layout.

        :param capacity: Number of slots.
        :param slots: Slot contents in physical order.
        :param head: Index of the next write.
        :param count: Number of occupied slots.
        :returns: Ring with identical physical state.
        :raises ValueError: If the layout is inconsistent.
        """
        if len(slots) != capacity:
            raise ValueError(f"expected {capacity} slots, got {len(slots)}")
        if not 0 <= count <= capacity or not 0 <= head < capacity:
            raise ValueError(f"invalid ring state head={head} count={count}")
        ring = cls(capacity)
        ring._slots = list(slots)
        ring._head = head
        ring._count = count
        for offset in range(count):
            if ring._slots[ring._slot_index(offset)] is None:
                raise ValueError(f"occupied slot at offset {offset} is empty")
        return ring
