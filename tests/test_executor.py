"""
Tests for order execution logic.
"""

import pytest
from unittest.mock import AsyncMock

from updown_bot.clients.base import OrderResult, OrderService, OrderSide, OrderState, OrderStatus
from updown_bot.errors import OrderSubmissionError, TransientUpstreamError
from updown_bot.execution.executor import ExecutionState, LegRole, OrderExecutor, OrderLeg
from updown_bot.markets.cycle import MarketWindow
from updown_bot.prediction.predictor import Direction, Prediction, PredictionFeatures, Signal
from updown_bot.storage.holdings import HoldingsLedger
from updown_bot.trading.decision import TradeDecisionEngine
from updown_bot.utils.retry import RetryPolicy


class FakeClock:
    """Clock that records sleeps instead of waiting."""

    def __init__(self, now: float = 1700000000.0):
        self.now = now
        self.sleeps = []

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def mock_order_service():
    """Create a mock order service."""
    service = AsyncMock(spec=OrderService)

    service.place_order.side_effect = [
        OrderResult(order_id="order-1", success=True, status="LIVE", timestamp=1000.0),
        OrderResult(order_id="order-2", success=True, status="LIVE", timestamp=1000.0),
    ]

    # Default order status (fully filled)
    service.get_order.return_value = OrderStatus(
        order_id="order-1",
        status=OrderState.FILLED,
        size_matched=5.0,
        size_remaining=0.0,
        avg_price=0.57
    )

    return service


@pytest.fixture
def window():
    return MarketWindow(
        market="btc",
        slug="btc-updown-15m-1700000100",
        condition_id="cond-1",
        up_token_id="up-token",
        down_token_id="down-token",
        up_index=0,
        down_index=1,
        start_time=1700000100,
    )


@pytest.fixture
def decision(window):
    prediction = Prediction(
        predicted_price=0.58,
        confidence=0.85,
        direction=Direction.UP,
        signal=Signal.BUY_UP,
        features=PredictionFeatures(momentum=0.04, volatility=0.07, trend=0.13),
    )
    return TradeDecisionEngine(shares_per_side=5.0).decide(prediction, window, up_ask=0.56, down_ask=0.43)


@pytest.fixture
def fast_policy():
    return RetryPolicy(max_attempts=3, initial_interval=0.5, multiplier=1.5, max_interval=3.0)


class TestOrderExecutor:
    """Tests for order execution."""

    @pytest.mark.asyncio
    async def test_places_both_legs(self, mock_order_service, decision, window, fast_policy):
        """Should submit primary and hedge as GTC buys."""
        executor = OrderExecutor(
            order_service=mock_order_service,
            fill_policy=fast_policy,
            clock=FakeClock(),
            simulation_mode=False,
            fire_and_forget=False
        )

        report = await executor.execute(decision, window)

        assert report.state == ExecutionState.SUBMITTED
        assert [leg.role for leg in report.legs] == [LegRole.PRIMARY, LegRole.HEDGE]
        assert mock_order_service.place_order.call_count == 2

        calls = [c.args for c in mock_order_service.place_order.call_args_list]
        assert ("up-token", OrderSide.BUY, 5.0, 0.57, "GTC") in calls
        assert ("down-token", OrderSide.BUY, 5.0, 0.42, "GTC") in calls

    @pytest.mark.asyncio
    async def test_fills_added_to_holdings(self, mock_order_service, decision, window, fast_policy):
        holdings = HoldingsLedger()
        executor = OrderExecutor(
            order_service=mock_order_service,
            holdings=holdings,
            fill_policy=fast_policy,
            clock=FakeClock(),
            simulation_mode=False,
            fire_and_forget=False
        )

        report = await executor.execute(decision, window)

        assert holdings.get("cond-1", "up-token") == 5.0
        assert holdings.get("cond-1", "down-token") == 5.0
        assert holdings.spend("cond-1") == pytest.approx(5.0 * 0.57 + 5.0 * 0.42)
        assert all(leg.status == "FILLED" for leg in report.legs)

    @pytest.mark.asyncio
    async def test_simulation_mode_submits_nothing(self, mock_order_service, decision, window):
        executor = OrderExecutor(order_service=mock_order_service, simulation_mode=True)

        report = await executor.execute(decision, window)

        assert report.state == ExecutionState.SIMULATED
        assert all(leg.order_id.startswith("sim-") for leg in report.legs)
        mock_order_service.place_order.assert_not_called()

    @pytest.mark.asyncio
    async def test_kill_switch_blocks(self, mock_order_service, decision, window):
        executor = OrderExecutor(
            order_service=mock_order_service,
            simulation_mode=False,
            kill_switch=True
        )

        report = await executor.execute(decision, window)

        assert report.state == ExecutionState.BLOCKED
        mock_order_service.place_order.assert_not_called()

    @pytest.mark.asyncio
    async def test_partial_failure(self, mock_order_service, decision, window, fast_policy):
        """A failed hedge leaves the primary in place and nothing is retried."""
        mock_order_service.place_order.side_effect = [
            OrderResult(order_id="order-1", success=True, status="LIVE"),
            OrderSubmissionError("rejected"),
        ]
        executor = OrderExecutor(
            order_service=mock_order_service,
            fill_policy=fast_policy,
            clock=FakeClock(),
            simulation_mode=False,
            fire_and_forget=False
        )

        report = await executor.execute(decision, window)

        assert report.state == ExecutionState.PARTIAL
        assert report.legs[1].status == "FAILED"
        assert report.legs[1].error == "rejected"
        assert [leg.order_id for leg in report.placed_legs] == ["order-1"]
        assert mock_order_service.place_order.call_count == 2

    @pytest.mark.asyncio
    async def test_all_legs_rejected(self, mock_order_service, decision, window):
        mock_order_service.place_order.side_effect = None
        mock_order_service.place_order.return_value = OrderResult(
            order_id="", success=False, status="REJECTED", error="not enough balance"
        )
        executor = OrderExecutor(order_service=mock_order_service, simulation_mode=False)

        report = await executor.execute(decision, window)

        assert report.state == ExecutionState.FAILED
        assert report.placed_legs == []
        mock_order_service.get_order.assert_not_called()

    def test_live_mode_requires_service(self):
        with pytest.raises(ValueError):
            OrderExecutor(order_service=None, simulation_mode=False)


class TestFillTracking:
    """Tests for order status polling."""

    @pytest.mark.asyncio
    async def test_partial_fills_accumulate(self, mock_order_service, fast_policy):
        mock_order_service.get_order.side_effect = [
            OrderStatus("order-1", OrderState.PARTIALLY_FILLED, 2.0, 3.0),
            OrderStatus("order-1", OrderState.PARTIALLY_FILLED, 4.0, 1.0),
            OrderStatus("order-1", OrderState.FILLED, 5.0, 0.0),
        ]
        holdings = HoldingsLedger()
        executor = OrderExecutor(
            order_service=mock_order_service,
            holdings=holdings,
            fill_policy=fast_policy,
            clock=FakeClock(),
            simulation_mode=False
        )
        leg = OrderLeg(LegRole.PRIMARY, "up-token", 5.0, 0.57, order_id="order-1")

        await executor.track_fill(leg, "cond-1")

        assert leg.filled_size == 5.0
        assert leg.status == "FILLED"
        assert holdings.get("cond-1", "up-token") == 5.0
        assert holdings.spend("cond-1") == pytest.approx(5.0 * 0.57)

    @pytest.mark.asyncio
    async def test_polling_is_bounded(self, mock_order_service, fast_policy):
        """An order that never fills stops being tracked after the last attempt."""
        mock_order_service.get_order.return_value = OrderStatus("order-1", OrderState.OPEN, 0.0, 5.0)
        clock = FakeClock()
        executor = OrderExecutor(
            order_service=mock_order_service,
            fill_policy=fast_policy,
            clock=clock,
            simulation_mode=False
        )
        leg = OrderLeg(LegRole.PRIMARY, "up-token", 5.0, 0.57, order_id="order-1")

        await executor.track_fill(leg, "cond-1")

        assert mock_order_service.get_order.call_count == 3
        assert clock.sleeps == [0.5, 0.75, 1.125]
        assert leg.status == "OPEN"

    @pytest.mark.asyncio
    async def test_transient_errors_keep_polling(self, mock_order_service, fast_policy):
        mock_order_service.get_order.side_effect = [
            TransientUpstreamError("timeout"),
            None,
            OrderStatus("order-1", OrderState.CANCELLED, 0.0, 5.0),
        ]
        executor = OrderExecutor(
            order_service=mock_order_service,
            fill_policy=fast_policy,
            clock=FakeClock(),
            simulation_mode=False
        )
        leg = OrderLeg(LegRole.HEDGE, "down-token", 5.0, 0.42, order_id="order-1")

        await executor.track_fill(leg, "cond-1")

        assert leg.status == "CANCELLED"
        assert leg.filled_size == 0.0

    @pytest.mark.asyncio
    async def test_background_tracking(self, mock_order_service, decision, window, fast_policy):
        holdings = HoldingsLedger()
        executor = OrderExecutor(
            order_service=mock_order_service,
            holdings=holdings,
            fill_policy=fast_policy,
            clock=FakeClock(),
            simulation_mode=False,
            fire_and_forget=True
        )

        await executor.execute(decision, window)
        await executor.wait_for_tracking()

        assert holdings.get("cond-1", "up-token") == 5.0
