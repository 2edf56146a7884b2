"""
Order execution for trade decisions.
Places the primary and hedge legs and tracks their fills.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
import time
import uuid

from ..clients.base import OrderService, OrderSide
from ..errors import TransientUpstreamError
from ..markets.cycle import MarketWindow
from ..storage.holdings import HoldingsLedger
from ..trading.decision import OrderRequest, TradeDecision
from ..utils.clock import SystemClock
from ..utils.logger import get_logger, TradeLogger
from ..utils.retry import RetryPolicy

logger = get_logger("executor")
trade_logger = TradeLogger()


class LegRole(Enum):
    PRIMARY = "primary"
    HEDGE = "hedge"


class ExecutionState(Enum):
    """Outcome of handing a decision to the executor."""
    SUBMITTED = "submitted"
    PARTIAL = "partial"        # At least one leg failed
    FAILED = "failed"          # No leg was accepted
    SIMULATED = "simulated"
    BLOCKED = "blocked"        # Kill switch on


@dataclass
class OrderLeg:
    """Single submitted order of a trade."""
    role: LegRole
    token_id: str
    size: float
    price: float
    order_id: Optional[str] = None
    status: str = "pending"
    filled_size: float = 0.0
    error: Optional[str] = None


@dataclass
class ExecutionReport:
    """Result of executing one TradeDecision."""
    trade_id: str
    window_id: str
    state: ExecutionState
    legs: list[OrderLeg] = field(default_factory=list)
    timestamp: float = 0.0

    @property
    def placed_legs(self) -> list[OrderLeg]:
        return [leg for leg in self.legs if leg.order_id]


class OrderExecutor:
    """
    Submits trade decisions to the order service.

    Both legs are submitted concurrently. Failures are logged; counters
    already committed by the decision engine are left as they are and
    nothing is retried. Accepted orders are polled under a bounded retry
    policy and newly matched size is added to the holdings ledger.
    """

    def __init__(
        self,
        order_service: Optional[OrderService],
        holdings: Optional[HoldingsLedger] = None,
        fill_policy: Optional[RetryPolicy] = None,
        clock: Optional[SystemClock] = None,
        simulation_mode: bool = True,
        kill_switch: bool = False,
        fire_and_forget: bool = True
    ):
        """
        Initialize order executor.

        Args:
            order_service: Order submission/status service
            holdings: Ledger updated on fills
            fill_policy: Polling schedule for fill tracking
            clock: Sleep provider for polling
            simulation_mode: Log orders instead of submitting them
            kill_switch: Refuse to execute anything
            fire_and_forget: Track fills in background tasks
        """
        self.order_service = order_service
        self.holdings = holdings or HoldingsLedger()
        self.fill_policy = fill_policy or RetryPolicy()
        self.clock = clock or SystemClock()
        self.simulation_mode = simulation_mode
        self.kill_switch = kill_switch
        self.fire_and_forget = fire_and_forget

        self._tracking_tasks: set[asyncio.Task] = set()

        if not simulation_mode and order_service is None:
            raise ValueError("order_service is required outside simulation mode")

    async def execute(self, decision: TradeDecision, window: MarketWindow) -> ExecutionReport:
        """
        Execute a trade decision.

        Args:
            decision: Accepted decision from the decision engine
            window: Window the decision belongs to

        Returns:
            ExecutionReport with one leg per submitted order
        """
        trade_id = str(uuid.uuid4())[:8]
        legs = [self._leg(LegRole.PRIMARY, decision.primary)]
        if decision.hedge:
            legs.append(self._leg(LegRole.HEDGE, decision.hedge))

        report = ExecutionReport(
            trade_id=trade_id,
            window_id=decision.window_id,
            state=ExecutionState.SUBMITTED,
            legs=legs,
            timestamp=time.time()
        )

        if self.kill_switch:
            logger.warning("Kill switch active, trade not executed", extra={"trade_id": trade_id})
            report.state = ExecutionState.BLOCKED
            return report

        if self.simulation_mode:
            for leg in legs:
                leg.order_id = f"sim-{trade_id}-{leg.role.value}"
                leg.status = "SIMULATED"
                logger.info(
                    "Simulated order",
                    extra={
                        "trade_id": trade_id,
                        "window_id": decision.window_id,
                        "leg": leg.role.value,
                        "token_id": leg.token_id,
                        "size": leg.size,
                        "price": leg.price
                    }
                )
            report.state = ExecutionState.SIMULATED
            return report

        await self._place_orders(report, decision.window_id)

        for leg in report.placed_legs:
            if self.fire_and_forget:
                task = asyncio.create_task(self.track_fill(leg, window.condition_id))
                self._tracking_tasks.add(task)
                task.add_done_callback(self._tracking_tasks.discard)
            else:
                await self.track_fill(leg, window.condition_id)

        return report

    def _leg(self, role: LegRole, request: OrderRequest) -> OrderLeg:
        return OrderLeg(
            role=role,
            token_id=request.token_id,
            size=request.size,
            price=request.price
        )

    async def _place_orders(self, report: ExecutionReport, window_id: str) -> None:
        """Place all legs in parallel."""
        results = await asyncio.gather(
            *[
                self.order_service.place_order(leg.token_id, OrderSide.BUY, leg.size, leg.price, "GTC")
                for leg in report.legs
            ],
            return_exceptions=True
        )

        success_count = 0
        for leg, result in zip(report.legs, results):
            if isinstance(result, Exception):
                leg.status = "FAILED"
                leg.error = str(result)
            elif result.success:
                leg.order_id = result.order_id
                leg.status = result.status
                success_count += 1
                trade_logger.order_placed(
                    window_id=window_id,
                    order_id=result.order_id,
                    token_id=leg.token_id,
                    leg=leg.role.value,
                    size=leg.size,
                    price=leg.price
                )
                continue
            else:
                leg.status = result.status
                leg.error = result.error

            trade_logger.order_failed(
                window_id=window_id,
                token_id=leg.token_id,
                leg=leg.role.value,
                error=leg.error
            )

        if success_count == 0:
            report.state = ExecutionState.FAILED
        elif success_count < len(report.legs):
            report.state = ExecutionState.PARTIAL

    async def track_fill(self, leg: OrderLeg, condition_id: str) -> OrderLeg:
        """
        Poll an order until it reaches a terminal state or attempts run out.

        Newly matched size is booked to the holdings ledger on every poll,
        at the leg's limit price.
        Exhausting the policy leaves the order's fate unresolved.
        """
        for delay in self.fill_policy.delays():
            await self.clock.sleep(delay)

            try:
                status = await self.order_service.get_order(leg.order_id)
            except TransientUpstreamError as e:
                # Service blip, keep polling
                logger.debug(f"Order status poll failed for {leg.order_id}: {e}")
                continue

            if status is None:
                continue

            new_fill = status.size_matched - leg.filled_size
            if new_fill > 0:
                leg.filled_size = status.size_matched
                self.holdings.record_fill(condition_id, leg.token_id, new_fill, leg.price)
                trade_logger.order_filled(
                    order_id=leg.order_id,
                    token_id=leg.token_id,
                    fill_size=new_fill,
                    status=status.status.value
                )

            leg.status = status.status.value
            if status.status.is_terminal:
                return leg

        logger.debug(
            "Stopped tracking order",
            extra={"order_id": leg.order_id, "filled_size": leg.filled_size}
        )
        return leg

    async def wait_for_tracking(self) -> None:
        """Wait for all background fill tracking to finish."""
        if self._tracking_tasks:
            await asyncio.gather(*list(self._tracking_tasks), return_exceptions=True)

    async def cancel_tracking(self) -> None:
        """Stop background fill tracking (shutdown)."""
        for task in list(self._tracking_tasks):
            task.cancel()
        await self.wait_for_tracking()
