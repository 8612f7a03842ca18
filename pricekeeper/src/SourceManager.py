"""SourceManager: Per-source health tracking with exponential backoff.

When a source fails (returns no quote, throws, or times out), it enters a
backoff period. The backoff duration doubles with each consecutive failure,
up to a maximum (default 5 minutes). A successful fetch resets the counter.

Each source also carries a reliability score, the share of successful
fetches since tracking began, which the keeper logs alongside decisions.

.. code-block:: python

    >>> manager = SourceManager(["okx", "binance", "coingecko"])
    >>> manager.get_active_sources()
    ['okx', 'binance', 'coingecko']
    >>> manager.record_failure("binance")
    5.0
    >>> manager.record_failure("binance")
    10.0
    >>> manager.record_success("binance")
    >>> manager.get_source_status("binance").consecutive_failures
    0
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass
class SourceStatus:
    """Tracks the status of a single source.

    :ivar consecutive_failures: Number of consecutive failures.
    :ivar backoff_until: Unix timestamp when backoff period ends.
    :ivar total_failures: Total failures since tracking began.
    :ivar total_successes: Total successes since tracking began.
    :ivar last_success: Unix timestamp of the last successful fetch.
    """

    consecutive_failures: int = 0
    backoff_until: float = 0.0
    total_failures: int = 0
    total_successes: int = 0
    last_success: float = 0.0

    @property
    def reliability(self) -> float:
        """Share of successful fetches in [0, 1] (1.0 before any attempt)."""
        attempts = self.total_successes + self.total_failures
        if attempts == 0:
            return 1.0
        return self.total_successes / attempts


def backoff_delay(failures: int, base: float, maximum: float) -> float:
    """Exponential backoff: base * 2^(failures-1), capped at maximum."""
    if failures < 1:
        return 0.0
    return min(base * (2 ** (failures - 1)), maximum)


class SourceManager:
    """Manages source health tracking with exponential backoff.

    Tracks per-source failures and applies exponential backoff:
        - First failure: 5 second backoff
        - Second failure: 10 second backoff
        - Third failure: 20 second backoff
        - ... up to max_backoff_seconds (default 300 = 5 minutes)

    :ivar sources: List of tracked source names.
    :ivar base_backoff_seconds: Initial backoff duration after first failure.
    :ivar max_backoff_seconds: Maximum backoff duration.
    """

    DEFAULT_BASE_BACKOFF_SECONDS = 5
    DEFAULT_MAX_BACKOFF_SECONDS = 300  # 5 minutes

    def __init__(
        self,
        sources: list[str],
        base_backoff_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the source manager.

        :param sources: List of source names to track.
        :param base_backoff_seconds: Initial backoff duration after first failure.
        :param max_backoff_seconds: Maximum backoff duration (caps exponential growth).
        :param clock: Time source (default: time.time).
        """
        self.sources = list(sources)
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.clock = clock
        self._status: dict[str, SourceStatus] = {s: SourceStatus() for s in sources}

    def _now(self) -> float:
        return self.clock() if self.clock is not None else time.time()

    def record_failure(self, source: str) -> float:
        """Record a failure for a source and apply exponential backoff.

        :param source: Source name that failed.
        :returns: The backoff duration in seconds.
        """
        if source not in self._status:
            self._status[source] = SourceStatus()

        status = self._status[source]
        status.consecutive_failures += 1
        status.total_failures += 1

        backoff_seconds = float(
            backoff_delay(
                status.consecutive_failures,
                self.base_backoff_seconds,
                self.max_backoff_seconds,
            )
        )
        status.backoff_until = self._now() + backoff_seconds

        return backoff_seconds

    def record_success(self, source: str) -> None:
        """Record a successful fetch, resetting the failure counter.

        :param source: Source name that succeeded.
        """
        if source not in self._status:
            self._status[source] = SourceStatus()

        status = self._status[source]
        status.consecutive_failures = 0
        status.backoff_until = 0.0
        status.total_successes += 1
        status.last_success = self._now()

    def get_active_sources(self) -> list[str]:
        """Get sources that are not currently in backoff.

        :returns: List of source names available for fetching.
        """
        now = self._now()
        return [s for s in self.sources if now >= self._status[s].backoff_until]

    def get_source_status(self, source: str) -> SourceStatus | None:
        """Get the status of a specific source.

        :param source: Source name to query.
        :returns: SourceStatus or None if source not tracked.
        """
        return self._status.get(source)

    def get_all_status(self) -> dict[str, SourceStatus]:
        """Get status of all sources.

        :returns: Dict mapping source names to their status.
        """
        return dict(self._status)

    def get_reliability(self) -> dict[str, float]:
        """Get the reliability score of every tracked source."""
        return {s: status.reliability for s, status in self._status.items()}

    def is_source_active(self, source: str) -> bool:
        """Check if a specific source is currently active (not in backoff).

        :param source: Source name to check.
        :returns: True if source is active, False if in backoff or unknown.
        """
        if source not in self._status:
            return False
        return self._now() >= self._status[source].backoff_until

    def get_backoff_remaining(self, source: str) -> float:
        """Get remaining backoff time for a source.

        :param source: Source name to check.
        :returns: Seconds remaining in backoff, or 0 if not in backoff.
        """
        if source not in self._status:
            return 0.0
        remaining = self._status[source].backoff_until - self._now()
        return max(0.0, remaining)

    def reset_source(self, source: str) -> None:
        """Reset a source's status (clear backoff and failure count).

        :param source: Source name to reset.
        """
        if source in self._status:
            self._status[source] = SourceStatus()
