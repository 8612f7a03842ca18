"""KeeperScheduler: Decision loop that keeps price feeds up to date.

Each tick runs one cycle over every managed pair:

    IDLE -> FETCHING -> DECIDING -> SUBMITTING -> IDLE

    - FETCHING: quotes for all due pairs are collected concurrently
    - DECIDING: quotes are aggregated and compared to the last recorded price
    - SUBMITTING: updates that moved past the threshold are signed and sent,
      spaced by min_submission_interval

A tick that arrives while a cycle is in flight is skipped. ``stop()`` waits
for the in-flight cycle, then moves to STOPPED.

Failure handling per pair:
    - transport failures back off exponentially (same shape as sources)
    - authorization failures disable the pair
    - circuit-open failures are collected and raised at the end of the cycle
    - anything else is retried on the next tick
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from eth_account.signers.local import LocalAccount

from .config import DEFAULT_PROGRAM_ID, FeedPolicy, SchedulerConfig
from .errors import (
    AccountNotFoundError,
    CircuitOpenError,
    ErrorKind,
    KeeperError,
    TransportError,
    ValidationError,
    error_for,
)
from .LedgerClient import LedgerClient
from .PriceAggregator import AggregatedQuote, PriceAggregator
from .PriceHistoryRing import DEFAULT_HISTORY_CAPACITY
from .PriceSample import SourceQuote, to_decimal
from .QuoteCollector import QuoteCollector
from .sources import MarketDataSource
from .SourceManager import backoff_delay
from .TradingPair import TradingPairIdentity
from .UpdateProtocol import build_initialize, build_update

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    """Scheduler phases."""

    IDLE = "idle"
    FETCHING = "fetching"
    DECIDING = "deciding"
    SUBMITTING = "submitting"
    STOPPED = "stopped"


@dataclass
class SchedulerState:
    """Per-pair keeper state.

    :ivar last_price: Last recorded price (None before the first decision).
    :ivar last_update: Unix time of the last accepted update.
    :ivar successful_updates: Accepted submissions since start.
    :ivar consecutive_failures: Failed submissions since the last success.
    :ivar total_failures: Failed submissions since start.
    :ivar last_error: Kind of the most recent failure.
    :ivar next_sequence: Sequence number of the next update.
    :ivar backoff_until: Unix time before which the pair is skipped.
    :ivar disabled: Whether the pair is no longer kept.
    """

    last_price: Decimal | None = None
    last_update: float = 0.0
    successful_updates: int = 0
    consecutive_failures: int = 0
    total_failures: int = 0
    last_error: ErrorKind | None = None
    next_sequence: int = 1
    backoff_until: float = 0.0
    disabled: bool = False


@dataclass
class ManagedFeed:
    """A pair kept by this scheduler and the account that stores it."""

    pair: TradingPairIdentity
    address: str
    policy: FeedPolicy = field(default_factory=FeedPolicy)

    @property
    def key(self) -> str:
        return self.pair.pair_id


@dataclass
class PendingUpdate:
    """An update decided in this cycle, waiting for submission."""

    feed: ManagedFeed
    quote: AggregatedQuote
    previous_price: Decimal | None


@dataclass(frozen=True)
class PairStats:
    """Operator view of one kept pair."""

    address: str
    last_price: Decimal | None
    last_update: float
    successful_updates: int
    total_failures: int
    last_error: ErrorKind | None
    disabled: bool


@dataclass(frozen=True)
class KeeperStats:
    """Operator view of the whole keeper.

    :ivar phase: Current phase.
    :ivar running: Whether run() is looping.
    :ivar started_at: Unix time run() started (None before).
    :ivar uptime: Seconds since start (0 before).
    :ivar total_updates: Accepted submissions over all pairs.
    :ivar total_failures: Failed submissions over all pairs.
    :ivar pairs: Per-pair view by pair id.
    """

    phase: Phase
    running: bool
    started_at: float | None
    uptime: float
    total_updates: int
    total_failures: int
    pairs: dict[str, PairStats]


class KeeperScheduler:
    """Keeps one price feed account per pair up to date.

    :ivar feeds: Managed feeds by pair id.
    :ivar states: Per-pair state by pair id.
    :ivar phase: Current phase.
    :ivar config: Scheduler settings.
    """

    def __init__(
        self,
        pairs: Sequence[TradingPairIdentity],
        collector: QuoteCollector,
        ledger: LedgerClient,
        signer: LocalAccount,
        *,
        aggregator: PriceAggregator | None = None,
        config: SchedulerConfig | None = None,
        program_id: str = DEFAULT_PROGRAM_ID,
        history_capacity: int = DEFAULT_HISTORY_CAPACITY,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the scheduler.

        :param pairs: Pairs to keep.
        :param collector: Quote collector over the configured sources.
        :param ledger: Ledger client used to read and update accounts.
        :param signer: Authority account that signs updates.
        :param aggregator: Aggregator (default: PriceAggregator()).
        :param config: Scheduler settings (default: SchedulerConfig()).
        :param program_id: Program address used to derive feed addresses.
        :param history_capacity: History slots for feeds created by the keeper.
        :param clock: Time source (default: time.time).
        :raises ValueError: If no pairs are given.
        """
        if not pairs:
            raise ValueError("At least one trading pair must be specified")
        self.collector = collector
        self.ledger = ledger
        self.signer = signer
        self.aggregator = aggregator or PriceAggregator()
        self.config = config or SchedulerConfig()
        self.program_id = program_id
        self.history_capacity = history_capacity
        self.clock = clock

        self.feeds: dict[str, ManagedFeed] = {}
        self.states: dict[str, SchedulerState] = {}
        for pair in pairs:
            address = pair.derive_feed_address(signer.address, program_id)
            self.feeds[pair.pair_id] = ManagedFeed(pair=pair, address=address)
            self.states[pair.pair_id] = SchedulerState()

        self.phase = Phase.IDLE
        self.started_at: float | None = None
        self._running = False
        self._in_flight = False
        self._stop_requested = False
        self._stop_event = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

    def _now(self) -> float:
        return self.clock() if self.clock is not None else time.time()

    def _state(self, pair: str | TradingPairIdentity) -> SchedulerState:
        key = pair.pair_id if isinstance(pair, TradingPairIdentity) else pair
        if key not in self.states:
            self.states[key] = SchedulerState()
        return self.states[key]

    def should_update(
        self, pair: str | TradingPairIdentity, price: Decimal | float | str
    ) -> bool:
        """Decide whether a price moved enough to warrant an update.

        True if no price was recorded yet, if the recorded price is not
        positive, or if the relative move reaches ``price_threshold``. A
        positive decision records ``price`` as the pair's last price.

        :param pair: Pair id or identity.
        :param price: Candidate price.
        :returns: True if an update should be submitted.

        .. code-block:: python

            >>> scheduler.should_update("SOL/USDC", Decimal("100"))
            True
            >>> scheduler.should_update("SOL/USDC", Decimal("100"))
            False
        """
        state = self._state(pair)
        price = to_decimal(price)
        last = state.last_price

        if last is None or last <= 0:
            decision = True
        else:
            change = abs(price - last) / last
            decision = change >= to_decimal(self.config.price_threshold)

        if decision:
            state.last_price = price
        return decision

    def get_stats(self) -> KeeperStats:
        """Get runtime, counters and last prices for every pair.

        :returns: KeeperStats snapshot.
        """
        now = self._now()
        pairs = {
            key: PairStats(
                address=self.feeds[key].address,
                last_price=state.last_price,
                last_update=state.last_update,
                successful_updates=state.successful_updates,
                total_failures=state.total_failures,
                last_error=state.last_error,
                disabled=state.disabled,
            )
            for key, state in self.states.items()
            if key in self.feeds
        }
        return KeeperStats(
            phase=self.phase,
            running=self._running,
            started_at=self.started_at,
            uptime=now - self.started_at if self.started_at is not None else 0.0,
            total_updates=sum(p.successful_updates for p in pairs.values()),
            total_failures=sum(p.total_failures for p in pairs.values()),
            pairs=pairs,
        )

    async def ensure_feeds(self) -> None:
        """Load or create the feed account of every managed pair.

        Existing accounts seed the pair's last price and next sequence. Pairs
        whose account belongs to another authority are disabled.

        :raises KeeperError: If a feed account cannot be created.
        """
        for feed in self.feeds.values():
            state = self.states[feed.key]
            try:
                account = self.ledger.get_feed(feed.address)
            except AccountNotFoundError:
                account = None

            if account is None or not account.is_initialized:
                instruction = build_initialize(
                    feed.address, feed.pair, self.history_capacity
                )
                receipt = self.ledger.submit(instruction.encode(), self.signer)
                if not receipt.accepted:
                    raise error_for(
                        receipt.error or ErrorKind.INVALID_PARAMETER,
                        f"Failed to initialize feed {feed.pair}: {receipt.message}",
                    )
                logger.info(f"{feed.pair}: created feed account {feed.address}")
                continue

            feed.policy = account.policy
            if (account.authority or "").lower() != self.signer.address.lower():
                state.disabled = True
                state.last_error = ErrorKind.UNAUTHORIZED
                logger.error(
                    f"{feed.pair}: feed {feed.address} belongs to {account.authority}, "
                    "not this keeper; pair disabled"
                )
                continue

            if account.current is not None:
                state.last_price = account.current.price
                state.next_sequence = account.current.sequence + 1
                state.last_update = account.last_updated
            logger.info(
                f"{feed.pair}: using feed account {feed.address} "
                f"(last price {state.last_price}, next sequence {state.next_sequence})"
            )

    def _is_due(self, feed: ManagedFeed, now: float) -> bool:
        state = self.states[feed.key]
        if state.disabled:
            return False
        if now < state.backoff_until:
            logger.debug(
                f"{feed.pair}: in backoff for {state.backoff_until - now:.0f}s"
            )
            return False
        return True

    async def tick(self) -> bool:
        """Run one cycle unless one is already in flight.

        :returns: False if the tick was skipped.
        :raises CircuitOpenError: If any feed's circuit breaker is open.
        """
        if self._in_flight:
            logger.debug("Cycle still in flight, skipping tick")
            return False
        if self.phase is Phase.STOPPED or self._stop_requested:
            return False

        self._in_flight = True
        self._idle.clear()
        try:
            await self._run_cycle()
        finally:
            self._in_flight = False
            self.phase = Phase.IDLE
            self._idle.set()
        return True

    async def _run_cycle(self) -> None:
        now = self._now()
        feeds = [f for f in self.feeds.values() if self._is_due(f, now)]
        if not feeds:
            logger.info("No pairs due this cycle")
            return

        self.phase = Phase.FETCHING
        quotes = await self.collector.collect_all([f.pair.symbol_parts for f in feeds])

        self.phase = Phase.DECIDING
        pending: list[PendingUpdate] = []
        for feed in feeds:
            update = self._decide(feed, quotes.get(feed.pair.symbol_parts, []), now)
            if update is not None:
                pending.append(update)

        self.phase = Phase.SUBMITTING
        circuit_errors: list[CircuitOpenError] = []
        for index, update in enumerate(pending):
            if index > 0 and self.config.min_submission_interval > 0:
                await asyncio.sleep(self.config.min_submission_interval)
            error = self._submit(update)
            if isinstance(error, CircuitOpenError):
                circuit_errors.append(error)

        if circuit_errors:
            raise CircuitOpenError("; ".join(str(e) for e in circuit_errors))

    def _decide(
        self, feed: ManagedFeed, quotes: list[SourceQuote], now: float
    ) -> PendingUpdate | None:
        state = self.states[feed.key]
        previous = state.last_price
        result = self.aggregator.aggregate(quotes, previous_price=previous, now=now)
        if not result.success:
            state.last_error = result.error
            logger.warning(f"{feed.pair}: aggregation failed ({result.error}), skipping")
            return None

        quote = result.quote
        if not self.should_update(feed.key, quote.price):
            logger.info(
                f"{feed.pair}: price {quote.price} within threshold of {previous}, no update"
            )
            return None

        logger.info(
            f"{feed.pair}: price {quote.price} (confidence {quote.confidence:.2f}, "
            f"{quote.sample_count} sources), submitting"
        )
        return PendingUpdate(feed=feed, quote=quote, previous_price=previous)

    def _submit(self, update: PendingUpdate) -> KeeperError | None:
        """Sign and submit one update.

        :returns: The failure as an exception instance, or None if accepted.
        """
        feed, quote = update.feed, update.quote
        state = self.states[feed.key]
        now = self._now()
        sequence = state.next_sequence

        try:
            instruction = build_update(
                feed.address,
                quote.price,
                quote.confidence,
                sequence,
                quote.sources,
                timestamp=quote.timestamp,
                volume=quote.volume,
                policy=feed.policy,
                now=now,
            )
            receipt = self.ledger.submit(instruction.encode(), self.signer)
        except (TransportError, ValidationError) as e:
            return self._record_failure(update, e.kind, str(e), now)

        if not receipt.accepted:
            return self._record_failure(
                update, receipt.error or ErrorKind.INVALID_PARAMETER, receipt.message, now
            )

        state.last_update = now
        state.next_sequence = sequence + 1
        state.successful_updates += 1
        state.consecutive_failures = 0
        state.last_error = None
        state.backoff_until = 0.0
        logger.info(
            f"{feed.pair}: update {sequence} accepted "
            f"(ledger sequence {receipt.sequence_number})"
        )
        return None

    def _record_failure(
        self, update: PendingUpdate, kind: ErrorKind, message: str, now: float
    ) -> KeeperError:
        feed = update.feed
        state = self.states[feed.key]
        state.consecutive_failures += 1
        state.total_failures += 1
        state.last_error = kind
        # Retry the same price on the next tick.
        state.last_price = update.previous_price

        if kind is ErrorKind.TRANSPORT:
            delay = backoff_delay(
                state.consecutive_failures,
                self.config.base_backoff,
                self.config.max_backoff,
            )
            state.backoff_until = now + delay
            logger.warning(f"{feed.pair}: submission failed ({message}), backoff {delay:.0f}s")
        elif kind is ErrorKind.UNAUTHORIZED:
            state.disabled = True
            logger.error(f"{feed.pair}: signer not authorized for {feed.address}; pair disabled")
        elif kind is ErrorKind.CIRCUIT_OPEN:
            logger.error(f"{feed.pair}: circuit breaker open ({message})")
        elif kind is ErrorKind.REPLAYED_SEQUENCE:
            self._resync_sequence(feed)
        else:
            logger.warning(f"{feed.pair}: update rejected ({kind}), retrying next tick")

        return error_for(kind, f"{feed.pair}: {message or kind.value}")

    def _resync_sequence(self, feed: ManagedFeed) -> None:
        """Continue after the sequence stored on the account.

        Needed when an accepted update's receipt was lost and the resubmission
        reused its sequence.
        """
        state = self.states[feed.key]
        try:
            account = self.ledger.get_feed(feed.address)
        except KeeperError as e:
            logger.warning(f"{feed.pair}: cannot read feed to resync sequence: {e}")
            return
        if account.current is not None:
            state.next_sequence = max(state.next_sequence, account.current.sequence + 1)
        logger.warning(
            f"{feed.pair}: sequence already used, continuing at {state.next_sequence}"
        )

    async def run(self) -> None:
        """Run the keeper loop until stopped.

        :raises ValueError: If no configured source supports a pair.
        :raises CircuitOpenError: If a feed's circuit breaker opens.
        """
        await self.collector.prepare([f.pair.symbol_parts for f in self.feeds.values()])
        await self.ensure_feeds()
        logger.info(
            f"Keeping {len(self.feeds)} feeds, update interval "
            f"{self.config.update_interval:.0f}s"
        )

        self.started_at = self._now()
        self._running = True
        try:
            while not self._stop_requested:
                await self.tick()
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self.config.update_interval
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self.phase = Phase.STOPPED
            # Clean up shared HTTP client
            await MarketDataSource.close_shared_client()

    async def stop(self) -> None:
        """Wait for the in-flight cycle, then stop the loop."""
        self._stop_requested = True
        self._stop_event.set()
        await self._idle.wait()
        self.phase = Phase.STOPPED
        logger.info("Keeper stopped")
