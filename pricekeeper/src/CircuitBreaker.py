"""CircuitBreaker: Suspends feed updates after repeated failures.

Errors are counted inside a rolling window. The window starts at the first
error and restarts at the first error recorded after it has elapsed. Once
the count reaches ``error_threshold`` the breaker opens. It closes (and the
count resets) once ``recovery_time`` has passed since the last error.

.. code-block:: python

    >>> breaker = CircuitBreaker(error_threshold=2, error_window=60, recovery_time=300)
    >>> breaker.record_error(now=1000.0)
    False
    >>> breaker.record_error(now=1010.0)
    True
    >>> breaker.is_open(now=1200.0)
    True
    >>> breaker.is_open(now=1310.0)
    False
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class BreakerState:
    """Persisted circuit breaker counters.

    :ivar current_errors: Errors counted in the current window.
    :ivar window_start: Unix time the current window started (0 if none).
    :ivar last_error: Unix time of the most recent error (0 if none).
    :ivar is_broken: Whether the breaker is open.
    """

    current_errors: int = 0
    window_start: float = 0.0
    last_error: float = 0.0
    is_broken: bool = False


class CircuitBreaker:
    """Rolling-window circuit breaker.

    :ivar error_threshold: Errors within the window that open the breaker.
    :ivar error_window: Window length in seconds.
    :ivar recovery_time: Seconds after the last error before closing.
    :ivar state: Current counters.
    """

    def __init__(
        self,
        error_threshold: int = 5,
        error_window: float = 60.0,
        recovery_time: float = 300.0,
        state: BreakerState | None = None,
    ) -> None:
        """Initialize the breaker.

        :param error_threshold: Errors that open the breaker (default: 5).
        :param error_window: Rolling window in seconds (default: 60).
        :param recovery_time: Cooldown after the last error (default: 300).
        :param state: Restored counters, if any.
        """
        self.error_threshold = error_threshold
        self.error_window = error_window
        self.recovery_time = recovery_time
        self.state = state or BreakerState()

    def record_error(self, now: float | None = None) -> bool:
        """Count an error and open the breaker if the threshold is reached.

        :param now: Current Unix time (defaults to time.time()).
        :returns: True if the breaker is open after this error.
        """
        now = time.time() if now is None else now
        state = self.state

        if state.current_errors == 0 or now - state.window_start > self.error_window:
            state.window_start = now
            state.current_errors = 0

        state.current_errors += 1
        state.last_error = now

        if not state.is_broken and state.current_errors >= self.error_threshold:
            state.is_broken = True
            logger.error(
                f"Circuit breaker opened after {state.current_errors} errors "
                f"within {self.error_window:.0f}s"
            )
        return state.is_broken

    def is_open(self, now: float | None = None) -> bool:
        """Check the breaker, closing it if the recovery time has elapsed.

        :param now: Current Unix time (defaults to time.time()).
        :returns: True while updates must be rejected.
        """
        now = time.time() if now is None else now
        if self.state.is_broken and now - self.state.last_error >= self.recovery_time:
            logger.info(
                f"Circuit breaker closed after {now - self.state.last_error:.0f}s "
                "without errors"
            )
            self.reset()
        return self.state.is_broken

    def retry_after(self, now: float | None = None) -> float:
        """Seconds until an open breaker closes (0 if closed)."""
        now = time.time() if now is None else now
        if not self.state.is_broken:
            return 0.0
        return max(0.0, self.state.last_error + self.recovery_time - now)

    def reset(self) -> None:
        """Close the breaker and clear the error count."""
        self.state = BreakerState()
