"""Rolling statistics and per-source records of a price feed account.

Both types are immutable: the account replaces them wholesale on every
update, so a reader holding a reference always sees a consistent view.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from .PriceSample import PriceSample

DAY_SECONDS = 24 * 60 * 60
WEEK_SECONDS = 7 * DAY_SECONDS

# Percent changes are stored with fixed precision.
PERCENT_QUANTUM = Decimal("0.00000001")

ZERO = Decimal(0)


@dataclass(frozen=True)
class WindowSummary:
    """High/low/volume/change over a time window."""

    high: Decimal = ZERO
    low: Decimal = ZERO
    volume: Decimal = ZERO
    change: Decimal = ZERO
    change_percent: Decimal = ZERO


def summarize_window(samples: Sequence[PriceSample]) -> WindowSummary:
    """Summarize the samples of one window.

    Change is newest price minus oldest price in the window; the percent
    change is relative to the oldest price (zero when that price is zero).

    :param samples: Samples inside the window, any order.
    :returns: WindowSummary (all zero for an empty window).
    """
    if not samples:
        return WindowSummary()

    ordered = sorted(samples, key=lambda s: s.timestamp)
    prices = [s.price for s in ordered]
    oldest, newest = prices[0], prices[-1]
    change = newest - oldest
    change_percent = ZERO
    if oldest != 0:
        change_percent = (change / oldest * 100).quantize(PERCENT_QUANTUM)

    return WindowSummary(
        high=max(prices),
        low=min(prices),
        volume=sum((s.volume for s in ordered), ZERO),
        change=change,
        change_percent=change_percent,
    )


@dataclass(frozen=True)
class FeedStatistics:
    """Rolling statistics of a feed.

    :ivar high_24h: Highest price in the last 24 hours.
    :ivar low_24h: Lowest price in the last 24 hours.
    :ivar volume_24h: Summed sample volume in the last 24 hours.
    :ivar change_24h: Price change across the last 24 hours.
    :ivar change_percent_24h: Percent change across the last 24 hours.
    :ivar all_time_high: Highest price ever recorded (None before any sample).
    :ivar all_time_low: Lowest price ever recorded (None before any sample).
    :ivar all_time_high_at: Unix time of the all-time high.
    :ivar all_time_low_at: Unix time of the all-time low.
    :ivar total_updates: Applied plus failed updates.
    :ivar successful_updates: Applied updates.
    :ivar failed_updates: Failed updates reported to the account.
    :ivar average_update_interval: Mean seconds between applied updates.
    """

    high_24h: Decimal = ZERO
    low_24h: Decimal = ZERO
    volume_24h: Decimal = ZERO
    change_24h: Decimal = ZERO
    change_percent_24h: Decimal = ZERO
    high_7d: Decimal = ZERO
    low_7d: Decimal = ZERO
    volume_7d: Decimal = ZERO
    change_7d: Decimal = ZERO
    change_percent_7d: Decimal = ZERO
    all_time_high: Decimal | None = None
    all_time_low: Decimal | None = None
    all_time_high_at: float = 0.0
    all_time_low_at: float = 0.0
    total_updates: int = 0
    successful_updates: int = 0
    failed_updates: int = 0
    average_update_interval: float = 0.0

    @property
    def success_rate(self) -> float:
        """Percentage of updates that were applied."""
        if self.total_updates == 0:
            return 0.0
        return self.successful_updates / self.total_updates * 100


@dataclass(frozen=True)
class SourceRecord:
    """Configuration and track record of one source on a feed.

    :ivar weight: Aggregation weight configured for the source.
    :ivar enabled: Whether the source is enabled for the feed.
    :ivar updates: Applied samples the source contributed to.
    :ivar last_seen: Unix time of the last sample it contributed to.
    """

    weight: float = 1.0
    enabled: bool = True
    updates: int = 0
    last_seen: float = 0.0

    def reliability(self, successful_updates: int) -> float:
        """Share of applied updates this source contributed to, in [0, 1]."""
        if successful_updates <= 0:
            return 0.0
        return min(1.0, self.updates / successful_updates)
