"""
End-to-end tests for the Up/Down engine with fake collaborators.
"""

from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from updown_bot.bot import UpDownBot
from updown_bot.clients.base import (
    BestPrices,
    MarketListing,
    OrderResult,
    OrderService,
    OrderSide,
    OrderState,
    OrderStatus,
    PriceFeed,
    SettlementService,
    WindowResolution,
    WindowTokens,
)
from updown_bot.errors import TransientUpstreamError, WindowNotYetListedError
from updown_bot.execution.executor import OrderExecutor
from updown_bot.markets.cycle import MarketCycleTracker, current_window_id, window_start
from updown_bot.scoring.tracker import ScoreTracker
from updown_bot.settlement import SettlementReconciler
from updown_bot.storage.holdings import HoldingsLedger
from updown_bot.storage.state_store import PersistedWindowState, StateStore, state_key
from updown_bot.trading.decision import TradeDecisionEngine, WindowState
from updown_bot.utils.retry import RetryPolicy

START = window_start(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))
FIRST_ID = current_window_id("btc", START)
SECOND_ID = current_window_id("btc", START + 900)


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeFeed(PriceFeed):
    """In-memory price feed driven by push()."""

    def __init__(self):
        self.prices: dict[str, BestPrices] = {}
        self.subscribed: set[str] = set()
        self.unsubscribed: list[str] = []
        self.callback = None
        self.fail_connect = False
        self.fail_subscribe = 0

    async def connect(self) -> None:
        if self.fail_connect:
            raise TransientUpstreamError("feed down")

    async def subscribe(self, token_ids: list[str]) -> None:
        self.subscribed.update(token_ids)
        if self.fail_subscribe:
            self.fail_subscribe -= 1
            raise TransientUpstreamError("socket closed mid-send")

    async def unsubscribe(self, token_ids: list[str]) -> None:
        for token_id in token_ids:
            self.subscribed.discard(token_id)
            self.prices.pop(token_id, None)
        self.unsubscribed.extend(token_ids)

    def get_price(self, token_id: str) -> Optional[BestPrices]:
        return self.prices.get(token_id)

    def set_best_prices_callback(self, callback) -> None:
        self.callback = callback

    def push(self, token_id: str, ask: float) -> None:
        prices = BestPrices(best_bid=round(ask - 0.01, 4), best_ask=ask)
        self.prices[token_id] = prices
        self.callback(token_id, prices)


class MemoryStore(StateStore):
    def __init__(self):
        self.saved: dict[str, PersistedWindowState] = {}
        self.save_count = 0

    def load(self) -> dict[str, PersistedWindowState]:
        return {}

    def save(self, rows: dict[str, PersistedWindowState]) -> None:
        self.saved = dict(rows)
        self.save_count += 1

    async def flush(self) -> None:
        pass


def window_tokens(window_id: str) -> WindowTokens:
    suffix = "a" if window_id == FIRST_ID else "b"
    return WindowTokens(
        condition_id=f"cond-{suffix}",
        up_token_id=f"up-{suffix}",
        down_token_id=f"down-{suffix}",
        up_index=0,
        down_index=1,
    )


@pytest.fixture
def clock():
    return FakeClock(START + 10)


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mock_listing():
    listing = AsyncMock(spec=MarketListing)
    listing.fetch_window_tokens.side_effect = window_tokens
    return listing


@pytest.fixture
def mock_order_service():
    service = AsyncMock(spec=OrderService)
    service.place_order.side_effect = [
        OrderResult(order_id="order-1", success=True, status="LIVE"),
        OrderResult(order_id="order-2", success=True, status="LIVE"),
    ]
    service.get_order.return_value = OrderStatus("order-1", OrderState.FILLED, 5.0, 0.0)
    return service


@pytest.fixture
def holdings():
    return HoldingsLedger()


def make_bot(clock, feed, store, listing, order_service, holdings, reconciler=None, max_per_side=0):
    executor = OrderExecutor(
        order_service=order_service,
        holdings=holdings,
        fill_policy=RetryPolicy(max_attempts=1),
        clock=clock,
        simulation_mode=False,
        fire_and_forget=False
    )
    return UpDownBot(
        markets=["btc"],
        tracker=MarketCycleTracker(listing),
        feed=feed,
        engine=TradeDecisionEngine(shares_per_side=5.0, tick_size=0.01, max_per_side=max_per_side),
        executor=executor,
        scores=ScoreTracker(),
        store=store,
        reconciler=reconciler,
        clock=clock
    )


async def feed_pairs(bot, feed, clock, pairs, suffix="a"):
    for up_ask, down_ask in pairs:
        clock.now += 1
        feed.push(f"down-{suffix}", down_ask)
        feed.push(f"up-{suffix}", up_ask)
        await bot.wait_for_updates()


@pytest_asyncio.fixture
async def bot(clock, feed, store, mock_listing, mock_order_service, holdings):
    engine = make_bot(clock, feed, store, mock_listing, mock_order_service, holdings)
    await engine.start()
    return engine


class TestStart:
    """Tests for start-up."""

    @pytest.mark.asyncio
    async def test_start_opens_current_window(self, bot, feed, store, mock_listing):
        mock_listing.fetch_window_tokens.assert_called_once_with(FIRST_ID)
        assert feed.subscribed == {"up-a", "down-a"}
        assert bot.engine.state(FIRST_ID) == WindowState.ACTIVE
        assert state_key("btc", FIRST_ID) in store.saved
        assert bot.is_running

    @pytest.mark.asyncio
    async def test_feed_failure_propagates(self, clock, feed, store, mock_listing, mock_order_service, holdings):
        feed.fail_connect = True
        engine = make_bot(clock, feed, store, mock_listing, mock_order_service, holdings)

        with pytest.raises(TransientUpstreamError):
            await engine.start()

    @pytest.mark.asyncio
    async def test_unlisted_window_retried_on_check(
        self, clock, feed, store, mock_listing, mock_order_service, holdings
    ):
        mock_listing.fetch_window_tokens.side_effect = WindowNotYetListedError(FIRST_ID)
        engine = make_bot(clock, feed, store, mock_listing, mock_order_service, holdings)

        await engine.start()
        assert engine.tracker.active_window("btc") is None

        mock_listing.fetch_window_tokens.side_effect = window_tokens
        await engine.check_window_transitions()

        assert engine.tracker.recorded_window_id("btc") == FIRST_ID
        assert feed.subscribed == {"up-a", "down-a"}


class TestPriceFlow:
    """Tests for price updates through prediction and execution."""

    @pytest.mark.asyncio
    async def test_upward_run_places_primary_and_hedge_once(self, bot, feed, clock, mock_order_service, holdings):
        await feed_pairs(bot, feed, clock, [(0.50, 0.49), (0.53, 0.46), (0.56, 0.43), (0.54, 0.45)])

        calls = [c.args for c in mock_order_service.place_order.call_args_list]
        assert len(calls) == 2
        assert ("up-a", OrderSide.BUY, 5.0, pytest.approx(0.57), "GTC") in calls
        assert ("down-a", OrderSide.BUY, 5.0, pytest.approx(0.42), "GTC") in calls

        score = bot.scores.get_score(FIRST_ID)
        assert score.total_predictions == 1
        assert score.up_cost == pytest.approx(0.56 * 5)
        assert holdings.get("cond-a", "up-a") == 5.0

    @pytest.mark.asyncio
    async def test_duplicate_up_ask_skipped(self, bot, feed, clock, store):
        await feed_pairs(bot, feed, clock, [(0.50, 0.49)])
        saves = store.save_count

        feed.push("down-a", 0.48)
        await bot.wait_for_updates()

        assert store.save_count == saves
        assert len(bot.predictors["btc"].history) == 1

    @pytest.mark.asyncio
    async def test_missing_other_side_waits(self, bot, feed, clock):
        feed.push("up-a", 0.50)
        await bot.wait_for_updates()

        assert bot.predictors["btc"].history == []

    @pytest.mark.asyncio
    async def test_persists_previous_price(self, bot, feed, clock, store):
        await feed_pairs(bot, feed, clock, [(0.50, 0.49), (0.53, 0.46)])

        row = store.saved[state_key("btc", FIRST_ID)]
        assert row.previous_price == 0.53
        assert row.condition_id == "cond-a"

    @pytest.mark.asyncio
    async def test_order_errors_do_not_escape(self, bot, feed, clock, mock_order_service):
        mock_order_service.place_order.side_effect = RuntimeError("boom")

        await feed_pairs(bot, feed, clock, [(0.50, 0.49), (0.53, 0.46), (0.56, 0.43)])

        assert bot.engine.counters(FIRST_ID).up_count == 1

    @pytest.mark.asyncio
    async def test_prediction_without_trade_opens_score(self, bot, feed, clock, mock_order_service):
        bot.engine.min_confidence = 1.0

        await feed_pairs(bot, feed, clock, [(0.50, 0.49), (0.53, 0.46), (0.56, 0.43)])

        mock_order_service.place_order.assert_not_called()
        score = bot.scores.get_score(FIRST_ID)
        assert score is not None
        assert score.total_predictions == 0

    @pytest.mark.asyncio
    async def test_unknown_token_ignored(self, bot, feed):
        feed.push("someone-else", 0.5)
        await bot.wait_for_updates()

        assert bot.predictors["btc"].history == []


class TestWindowTransition:
    """Tests for window rollover."""

    @pytest.mark.asyncio
    async def test_rollover(self, bot, feed, clock, mock_listing):
        await feed_pairs(bot, feed, clock, [(0.50, 0.49), (0.53, 0.46), (0.56, 0.43)])
        weights_before = bot.predictors["btc"].weights

        clock.now = START + 905
        await bot.check_window_transitions()

        assert bot.tracker.recorded_window_id("btc") == SECOND_ID
        assert bot.scores.get_score(FIRST_ID) is None
        assert bot.engine.state(FIRST_ID) == WindowState.FINALIZED
        assert bot.engine.state(SECOND_ID) == WindowState.ACTIVE
        assert bot.predictors["btc"].history == []
        assert bot.predictors["btc"].weights is weights_before
        assert feed.subscribed == {"up-b", "down-b"}
        assert set(feed.unsubscribed) == {"up-a", "down-a"}

    @pytest.mark.asyncio
    async def test_price_update_triggers_rollover(self, bot, feed, clock):
        await feed_pairs(bot, feed, clock, [(0.50, 0.49)])

        clock.now = START + 905
        feed.push("up-a", 0.60)
        await bot.wait_for_updates()

        assert bot.tracker.recorded_window_id("btc") == SECOND_ID

    @pytest.mark.asyncio
    async def test_failed_resolution_retried(self, bot, clock, mock_listing):
        clock.now = START + 901
        mock_listing.fetch_window_tokens.side_effect = WindowNotYetListedError(SECOND_ID)

        await bot.check_window_transitions()
        assert bot.tracker.recorded_window_id("btc") == FIRST_ID

        mock_listing.fetch_window_tokens.side_effect = window_tokens
        await bot.check_window_transitions()
        assert bot.tracker.recorded_window_id("btc") == SECOND_ID

    @pytest.mark.asyncio
    async def test_subscribe_failure_still_completes_rollover(self, bot, feed, clock, store):
        feed.fail_subscribe = 1
        clock.now = START + 905

        await bot.check_window_transitions()

        assert bot.tracker.recorded_window_id("btc") == SECOND_ID
        assert state_key("btc", FIRST_ID) not in store.saved
        assert set(feed.unsubscribed) == {"up-a", "down-a"}
        assert bot.engine.state(SECOND_ID) == WindowState.ACTIVE

        # Old tokens no longer route to the market
        feed.prices["up-a"] = BestPrices(best_bid=0.5, best_ask=0.51)
        bot.on_best_prices("up-a", feed.prices["up-a"])
        assert bot._tasks == set()

    @pytest.mark.asyncio
    async def test_no_transition_inside_window(self, bot, clock, mock_listing):
        clock.now = START + 899
        await bot.check_window_transitions()

        assert mock_listing.fetch_window_tokens.call_count == 1


class TestShutdownAndSettlement:
    """Tests for stop() and settlement of finished windows."""

    @pytest.mark.asyncio
    async def test_stop_finalizes_open_scores(self, bot, feed, clock):
        await feed_pairs(bot, feed, clock, [(0.50, 0.49), (0.53, 0.46), (0.56, 0.43)])
        assert bot.scores.open_scores()

        bot.stop()

        assert bot.scores.open_scores() == []
        assert not bot.is_running
        assert bot.engine.state(FIRST_ID) == WindowState.FINALIZED

    @pytest.mark.asyncio
    async def test_settles_after_resolution(
        self, clock, feed, store, mock_listing, mock_order_service, holdings
    ):
        service = AsyncMock(spec=SettlementService)
        service.get_resolution.return_value = WindowResolution("cond-a", [0])
        engine = make_bot(
            clock, feed, store, mock_listing, mock_order_service, holdings,
            reconciler=SettlementReconciler(service, holdings)
        )
        await engine.start()
        await feed_pairs(engine, feed, clock, [(0.50, 0.49), (0.53, 0.46), (0.56, 0.43)])

        clock.now = START + 905
        await engine.check_window_transitions()
        assert [w.window_id for w in engine.pending_settlements] == [FIRST_ID]

        # Too early: market gets two minutes to resolve
        await engine.flush_summaries()
        service.get_resolution.assert_not_called()

        clock.now = START + 900 + 125
        await engine.flush_summaries()

        service.get_resolution.assert_called_once_with("cond-a")
        assert engine.pending_settlements == []
        assert holdings.condition_ids() == []
        assert state_key("btc", FIRST_ID) not in store.saved

    @pytest.mark.asyncio
    async def test_realized_pnl_uses_filled_spend(
        self, clock, feed, store, mock_listing, mock_order_service, holdings
    ):
        service = AsyncMock(spec=SettlementService)
        service.get_resolution.return_value = WindowResolution("cond-a", [0])
        engine = make_bot(
            clock, feed, store, mock_listing, mock_order_service, holdings,
            reconciler=SettlementReconciler(service, holdings)
        )
        await engine.start()
        await feed_pairs(engine, feed, clock, [(0.50, 0.49), (0.53, 0.46), (0.56, 0.43)])

        clock.now = START + 905
        await engine.check_window_transitions()
        settled = await engine.settle_pending(START + 900 + 125)

        # Up 5 @ 0.57 and Down 5 @ 0.42 filled, Up wins
        assert len(settled) == 1
        assert settled[0].cost == pytest.approx(4.95)
        assert settled[0].payout == pytest.approx(5.0)
        assert settled[0].profit == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_subscribe_failure_still_queues_settlement(
        self, clock, feed, store, mock_listing, mock_order_service, holdings
    ):
        service = AsyncMock(spec=SettlementService)
        service.get_resolution.return_value = WindowResolution("cond-a", [0])
        engine = make_bot(
            clock, feed, store, mock_listing, mock_order_service, holdings,
            reconciler=SettlementReconciler(service, holdings)
        )
        await engine.start()

        feed.fail_subscribe = 1
        clock.now = START + 905
        await engine.check_window_transitions()

        assert engine.tracker.recorded_window_id("btc") == SECOND_ID
        assert [w.window_id for w in engine.pending_settlements] == [FIRST_ID]

        await engine.settle_pending(START + 900 + 125)
        assert state_key("btc", FIRST_ID) not in store.saved
