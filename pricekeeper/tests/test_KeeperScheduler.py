"""Unit tests for KeeperScheduler."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from eth_account import Account

from pricekeeper.src.config import (
    DEFAULT_PROGRAM_ID,
    LOCALNET_PRIVATE_KEY,
    FeedPolicy,
    SchedulerConfig,
)
from pricekeeper.src.errors import CircuitOpenError, ErrorKind, TransportError
from pricekeeper.src.KeeperScheduler import KeeperScheduler, Phase
from pricekeeper.src.LedgerClient import LedgerClient, SubmitReceipt
from pricekeeper.src.LocalLedger import LocalLedger
from pricekeeper.src.PriceSample import SourceQuote
from pricekeeper.src.TradingPair import TradingPairIdentity
from pricekeeper.src.UpdateProtocol import (
    Instruction,
    UpdateCommand,
    build_initialize,
    build_update,
)

NOW = 1_700_000_000.0
SIGNER = Account.from_key(LOCALNET_PRIVATE_KEY)
SOL = TradingPairIdentity("SOL", "USDC")
BTC = TradingPairIdentity("BTC", "USDT")


class FakeCollector:
    """Collector returning configured prices for every pair."""

    def __init__(self, prices: dict[tuple[str, str], list[str]]):
        self.prices = prices
        self.requested: list[list[tuple[str, str]]] = []
        self.gate: asyncio.Event | None = None
        self.prepared: list[tuple[str, str]] = []

    async def prepare(self, pairs):
        self.prepared = list(pairs)

    async def collect_all(self, pairs):
        self.requested.append(list(pairs))
        if self.gate is not None:
            await self.gate.wait()
        return {
            pair: [
                SourceQuote(f"s{i}", Decimal(p), NOW)
                for i, p in enumerate(self.prices.get(pair, []))
            ]
            for pair in pairs
        }


class FlakyLedger(LedgerClient):
    """Ledger wrapper that can fail or rewrite submissions."""

    def __init__(self, inner: LocalLedger):
        self.inner = inner
        self.fail_with: Exception | None = None
        self.receipt: SubmitReceipt | None = None
        self.submits = 0

    def submit(self, instruction, signer):
        self.submits += 1
        if self.fail_with is not None:
            raise self.fail_with
        if self.receipt is not None:
            return self.receipt
        return self.inner.submit(instruction, signer)

    def get_account(self, address):
        return self.inner.get_account(address)


class RecordingLedger(FlakyLedger):
    """Ledger wrapper that logs each submission into a shared event list."""

    def __init__(self, inner: LocalLedger, events: list):
        super().__init__(inner)
        self.events = events

    def submit(self, instruction, signer):
        self.events.append("submit")
        return super().submit(instruction, signer)


def make_scheduler(prices=None, pairs=(SOL,), ledger=None, **config):
    config.setdefault("min_submission_interval", 0.0)
    collector = FakeCollector(prices or {})
    ledger = ledger or LocalLedger(clock=lambda: NOW)
    scheduler = KeeperScheduler(
        list(pairs),
        collector,
        ledger,
        SIGNER,
        config=SchedulerConfig(**config),
        history_capacity=16,
        clock=lambda: NOW,
    )
    return scheduler, collector, ledger


def feed_address(pair: TradingPairIdentity) -> str:
    return pair.derive_feed_address(SIGNER.address, DEFAULT_PROGRAM_ID)


class TestShouldUpdate:
    """Test the update threshold decision."""

    def test_first_price_updates(self) -> None:
        scheduler, _, _ = make_scheduler()
        assert scheduler.should_update("SOL/USDC", Decimal("100")) is True
        assert scheduler.states["SOL/USDC"].last_price == Decimal("100")

    def test_small_move_skipped(self) -> None:
        """A 0.01% move stays below the 1% threshold."""
        scheduler, _, _ = make_scheduler()
        scheduler.should_update(SOL, Decimal("100"))

        assert scheduler.should_update(SOL, Decimal("100.01")) is False
        assert scheduler.states["SOL/USDC"].last_price == Decimal("100")

    def test_large_move_updates(self) -> None:
        """A 5% move crosses the threshold and is recorded."""
        scheduler, _, _ = make_scheduler()
        scheduler.should_update(SOL, Decimal("100"))

        assert scheduler.should_update(SOL, Decimal("105")) is True
        assert scheduler.states["SOL/USDC"].last_price == Decimal("105")

    def test_threshold_inclusive(self) -> None:
        scheduler, _, _ = make_scheduler()
        scheduler.should_update(SOL, Decimal("100"))
        assert scheduler.should_update(SOL, Decimal("99")) is True

    def test_non_positive_last_price_updates(self) -> None:
        scheduler, _, _ = make_scheduler()
        scheduler.states["SOL/USDC"].last_price = Decimal(0)
        assert scheduler.should_update(SOL, Decimal("0.0001")) is True


class TestEnsureFeeds:
    """Test feed account discovery and creation."""

    @pytest.mark.asyncio
    async def test_creates_missing_feeds(self) -> None:
        scheduler, _, ledger = make_scheduler(pairs=(SOL, BTC))

        await scheduler.ensure_feeds()

        for pair in (SOL, BTC):
            feed = ledger.get_feed(feed_address(pair))
            assert feed.is_initialized
            assert feed.pair == pair
            assert feed.capacity == 16

    @pytest.mark.asyncio
    async def test_seeds_state_from_existing_feed(self) -> None:
        """A restarted keeper continues from the stored price and sequence."""
        prices = {("SOL", "USDC"): ["100", "100"]}
        first, _, ledger = make_scheduler(prices)
        await first.ensure_feeds()
        await first.tick()

        second, _, _ = make_scheduler(prices, ledger=ledger)
        await second.ensure_feeds()

        state = second.states["SOL/USDC"]
        assert state.last_price == Decimal("100")
        assert state.next_sequence == 2

    @pytest.mark.asyncio
    async def test_foreign_feed_disabled(self) -> None:
        """A feed owned by another authority is not kept."""
        ledger = LocalLedger(clock=lambda: NOW)
        ledger.allocate(feed_address(SOL), 16)
        other = Account.from_key("0x" + "44" * 32)
        init = build_initialize(feed_address(SOL), SOL, 16)
        assert ledger.submit(init.encode(), other).accepted

        scheduler, collector, _ = make_scheduler(ledger=ledger)
        await scheduler.ensure_feeds()
        await scheduler.tick()

        assert scheduler.states["SOL/USDC"].disabled
        assert collector.requested == []


class TestTick:
    """Test one fetch/decide/submit cycle."""

    @pytest.mark.asyncio
    async def test_submits_first_price(self) -> None:
        scheduler, _, ledger = make_scheduler({("SOL", "USDC"): ["100", "102"]})
        await scheduler.ensure_feeds()

        assert await scheduler.tick() is True

        feed = ledger.get_feed(feed_address(SOL))
        assert feed.current.price == Decimal("101")
        assert feed.current.sequence == 1
        assert scheduler.states["SOL/USDC"].next_sequence == 2
        assert scheduler.phase is Phase.IDLE

    @pytest.mark.asyncio
    async def test_unchanged_price_not_resubmitted(self) -> None:
        scheduler, collector, ledger = make_scheduler({("SOL", "USDC"): ["100", "100"]})
        await scheduler.ensure_feeds()
        await scheduler.tick()
        accepted = ledger.sequence_number

        collector.prices[("SOL", "USDC")] = ["100.01", "100.01"]
        await scheduler.tick()

        assert ledger.sequence_number == accepted

    @pytest.mark.asyncio
    async def test_moved_price_resubmitted(self) -> None:
        scheduler, collector, ledger = make_scheduler({("SOL", "USDC"): ["100", "100"]})
        await scheduler.ensure_feeds()
        await scheduler.tick()

        collector.prices[("SOL", "USDC")] = ["105", "105"]
        await scheduler.tick()

        feed = ledger.get_feed(feed_address(SOL))
        assert feed.current.price == Decimal("105")
        assert feed.current.sequence == 2

    @pytest.mark.asyncio
    async def test_aggregation_failure_skips_pair(self) -> None:
        scheduler, _, ledger = make_scheduler({("SOL", "USDC"): ["100"]})
        await scheduler.ensure_feeds()

        await scheduler.tick()

        state = scheduler.states["SOL/USDC"]
        assert state.last_error is ErrorKind.INSUFFICIENT_SOURCES
        assert state.last_price is None
        assert ledger.get_feed(feed_address(SOL)).current is None


class TestFailureHandling:
    """Test per-pair failure policies."""

    @pytest.mark.asyncio
    async def test_transport_failure_backs_off(self) -> None:
        """Transport errors restore the price and back the pair off."""
        ledger = FlakyLedger(LocalLedger(clock=lambda: NOW))
        scheduler, collector, _ = make_scheduler(
            {("SOL", "USDC"): ["100", "100"]}, ledger=ledger, base_backoff=5.0
        )
        await scheduler.ensure_feeds()
        ledger.fail_with = TransportError("gateway down")

        await scheduler.tick()

        state = scheduler.states["SOL/USDC"]
        assert state.last_error is ErrorKind.TRANSPORT
        assert state.last_price is None
        assert state.backoff_until == NOW + 5.0
        assert state.next_sequence == 1

        # Still in backoff: the pair is not fetched
        await scheduler.tick()
        assert len(collector.requested) == 1

    @pytest.mark.asyncio
    async def test_unauthorized_disables_pair(self) -> None:
        ledger = FlakyLedger(LocalLedger(clock=lambda: NOW))
        scheduler, _, _ = make_scheduler({("SOL", "USDC"): ["100", "100"]}, ledger=ledger)
        await scheduler.ensure_feeds()
        ledger.receipt = SubmitReceipt(False, error=ErrorKind.UNAUTHORIZED)

        await scheduler.tick()

        assert scheduler.states["SOL/USDC"].disabled

    @pytest.mark.asyncio
    async def test_rejected_update_retried_next_tick(self) -> None:
        ledger = FlakyLedger(LocalLedger(clock=lambda: NOW))
        scheduler, _, _ = make_scheduler({("SOL", "USDC"): ["100", "100"]}, ledger=ledger)
        await scheduler.ensure_feeds()
        ledger.receipt = SubmitReceipt(False, error=ErrorKind.STALE_TIMESTAMP)

        await scheduler.tick()
        assert scheduler.states["SOL/USDC"].last_price is None

        ledger.receipt = None
        await scheduler.tick()
        assert scheduler.states["SOL/USDC"].last_price == Decimal("100")
        assert ledger.inner.get_feed(feed_address(SOL)).current.price == Decimal("100")

    @pytest.mark.asyncio
    async def test_circuit_open_surfaces_after_cycle(self) -> None:
        """An open breaker is raised once the other pairs were handled."""
        ledger = LocalLedger(policy=FeedPolicy(error_threshold=1), clock=lambda: NOW)
        scheduler, _, _ = make_scheduler(
            {("SOL", "USDC"): ["100", "100"], ("BTC", "USDT"): ["60000", "60000"]},
            pairs=(SOL, BTC),
            ledger=ledger,
        )
        await scheduler.ensure_feeds()
        bad = Instruction(
            account=feed_address(SOL),
            command=UpdateCommand(
                price=Decimal("-1"), confidence=0.9, sequence=1, timestamp=NOW
            ),
        )
        ledger.submit(bad.encode(), SIGNER)

        with pytest.raises(CircuitOpenError):
            await scheduler.tick()

        assert scheduler.states["SOL/USDC"].last_error is ErrorKind.CIRCUIT_OPEN
        assert ledger.get_feed(feed_address(BTC)).current.price == Decimal("60000")
        assert scheduler.phase is Phase.IDLE


class TestLifecycle:
    """Test overlapping ticks, run and stop."""

    @pytest.mark.asyncio
    async def test_tick_skipped_while_in_flight(self) -> None:
        scheduler, collector, _ = make_scheduler({("SOL", "USDC"): ["100", "100"]})
        await scheduler.ensure_feeds()
        collector.gate = asyncio.Event()

        first = asyncio.create_task(scheduler.tick())
        await asyncio.sleep(0)
        assert scheduler.phase is Phase.FETCHING

        assert await scheduler.tick() is False

        collector.gate.set()
        assert await first is True
        assert len(collector.requested) == 1

    @pytest.mark.asyncio
    async def test_stop_waits_for_cycle(self) -> None:
        scheduler, collector, ledger = make_scheduler({("SOL", "USDC"): ["100", "100"]})
        await scheduler.ensure_feeds()
        collector.gate = asyncio.Event()

        cycle = asyncio.create_task(scheduler.tick())
        await asyncio.sleep(0)
        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0)
        assert not stopping.done()

        collector.gate.set()
        await cycle
        await stopping

        assert scheduler.phase is Phase.STOPPED
        assert ledger.get_feed(feed_address(SOL)).current is not None
        assert await scheduler.tick() is False

    @pytest.mark.asyncio
    async def test_run_until_stopped(self) -> None:
        scheduler, _, ledger = make_scheduler(
            {("SOL", "USDC"): ["100", "100"]}, update_interval=0.01
        )

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        await scheduler.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert scheduler.phase is Phase.STOPPED
        assert ledger.get_feed(feed_address(SOL)).current.price == Decimal("100")


class TestSubmissionSpacing:
    """Test the delay between submissions of one cycle."""

    @pytest.mark.asyncio
    async def test_delay_between_submissions(self) -> None:
        """Two updates in one cycle are separated by one delay, none before the first."""
        events: list = []
        ledger = RecordingLedger(LocalLedger(clock=lambda: NOW), events)
        scheduler, _, _ = make_scheduler(
            {("SOL", "USDC"): ["100", "100"], ("BTC", "USDT"): ["60000", "60000"]},
            pairs=(SOL, BTC),
            ledger=ledger,
            min_submission_interval=0.5,
        )
        await scheduler.ensure_feeds()
        events.clear()

        sleep = AsyncMock(side_effect=lambda delay: events.append(("sleep", delay)))
        with patch("pricekeeper.src.KeeperScheduler.asyncio.sleep", sleep):
            await scheduler.tick()

        assert events == ["submit", ("sleep", 0.5), "submit"]

    @pytest.mark.asyncio
    async def test_single_submission_not_delayed(self) -> None:
        events: list = []
        ledger = RecordingLedger(LocalLedger(clock=lambda: NOW), events)
        scheduler, collector, _ = make_scheduler(
            {("SOL", "USDC"): ["100", "100"], ("BTC", "USDT"): ["60000", "60000"]},
            pairs=(SOL, BTC),
            ledger=ledger,
            min_submission_interval=0.5,
        )
        await scheduler.ensure_feeds()
        await scheduler.tick()
        events.clear()
        collector.prices[("SOL", "USDC")] = ["110", "110"]

        sleep = AsyncMock()
        with patch("pricekeeper.src.KeeperScheduler.asyncio.sleep", sleep):
            await scheduler.tick()

        assert events == ["submit"]
        sleep.assert_not_awaited()


class TestSequenceResync:
    """Test recovery from an already used sequence."""

    @pytest.mark.asyncio
    async def test_replayed_sequence_resyncs(self) -> None:
        """A sequence the feed already holds is skipped on the next tick."""
        scheduler, _, ledger = make_scheduler({("SOL", "USDC"): ["100", "100"]})
        await scheduler.ensure_feeds()
        earlier = build_update(
            feed_address(SOL), "90", 0.9, 1, ("okx",), timestamp=NOW, now=NOW
        )
        assert ledger.submit(earlier.encode(), SIGNER).accepted

        await scheduler.tick()

        state = scheduler.states["SOL/USDC"]
        assert state.last_error is ErrorKind.REPLAYED_SEQUENCE
        assert state.next_sequence == 2

        await scheduler.tick()

        feed = ledger.get_feed(feed_address(SOL))
        assert feed.current.price == Decimal("100")
        assert feed.current.sequence == 2


class TestStats:
    """Test the operator read model."""

    def test_stats_before_start(self) -> None:
        scheduler, _, _ = make_scheduler(pairs=(SOL, BTC))

        stats = scheduler.get_stats()

        assert stats.phase is Phase.IDLE
        assert stats.running is False
        assert stats.started_at is None
        assert stats.uptime == 0.0
        assert stats.total_updates == 0
        assert set(stats.pairs) == {"SOL/USDC", "BTC/USDT"}
        assert stats.pairs["BTC/USDT"].address == feed_address(BTC)

    @pytest.mark.asyncio
    async def test_stats_count_updates_and_failures(self) -> None:
        ledger = FlakyLedger(LocalLedger(clock=lambda: NOW))
        scheduler, collector, _ = make_scheduler(
            {("SOL", "USDC"): ["100", "100"]}, ledger=ledger
        )
        await scheduler.ensure_feeds()
        await scheduler.tick()

        collector.prices[("SOL", "USDC")] = ["110", "110"]
        ledger.receipt = SubmitReceipt(False, error=ErrorKind.STALE_TIMESTAMP)
        await scheduler.tick()

        stats = scheduler.get_stats()
        pair = stats.pairs["SOL/USDC"]
        assert pair.successful_updates == 1
        assert pair.total_failures == 1
        assert pair.last_error is ErrorKind.STALE_TIMESTAMP
        assert pair.last_price == Decimal("100")
        assert pair.last_update == NOW
        assert not pair.disabled
        assert stats.total_updates == 1
        assert stats.total_failures == 1

    @pytest.mark.asyncio
    async def test_stats_while_running(self) -> None:
        clock = [NOW]
        scheduler, collector, _ = make_scheduler(
            {("SOL", "USDC"): ["100", "100"]}, update_interval=0.01
        )
        scheduler.clock = lambda: clock[0]

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.02)
        clock[0] = NOW + 30
        running = scheduler.get_stats()
        await scheduler.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert running.running is True
        assert running.started_at == NOW
        assert running.uptime == 30.0
        assert running.total_updates == 1
        assert collector.prepared == [("SOL", "USDC")]
        assert scheduler.get_stats().running is False
