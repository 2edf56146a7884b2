"""
Trade decision engine.

Turns a pole prediction plus the current best asks into a primary order
and an opposite-side hedge. Owns the per-window side counters and the
window state machine:

    UNINITIALIZED -> ACTIVE -> (PAUSED | ACTIVE) -> FINALIZED

Counters are incremented inside decide(), before any order is awaited, so
two overlapping price updates can never both pass the cap check.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..errors import InvalidHedgePriceError
from ..markets.cycle import WINDOW_SECONDS, MarketWindow, window_id_start
from ..prediction.predictor import Prediction, Signal
from ..utils.logger import get_logger, TradeLogger

logger = get_logger("decision")
trade_logger = TradeLogger()


class TradeSide(Enum):
    UP = "UP"
    DOWN = "DOWN"


class WindowState(Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    PAUSED = "paused"
    FINALIZED = "finalized"


@dataclass
class SideCounters:
    """Trades committed in one window, per side."""
    up_count: int = 0
    down_count: int = 0

    def count(self, side: TradeSide) -> int:
        return self.up_count if side == TradeSide.UP else self.down_count


@dataclass
class OrderRequest:
    """Limit buy to hand to the order service."""
    token_id: str
    side: TradeSide
    price: float
    size: float
    order_type: str = "GTC"


@dataclass
class TradeDecision:
    """Accepted trade: primary order plus optional hedge."""
    window_id: str
    side: TradeSide
    primary: OrderRequest
    hedge: Optional[OrderRequest]
    ask_price: float  # Best ask of the primary side at decision time
    prediction: Prediction

    @property
    def orders(self) -> list[OrderRequest]:
        return [o for o in (self.primary, self.hedge) if o is not None]


class TradeDecisionEngine:
    """
    Decides whether a prediction becomes a trade.

    Per-window state is keyed by window id, so operations still in flight
    for an old window only touch entries that are never consulted again.
    """

    def __init__(
        self,
        shares_per_side: float = 5.0,
        tick_size: float = 0.01,
        max_per_side: int = 0,
        min_confidence: float = 0.50,
        hedge_pair_price: float = 0.98
    ):
        """
        Initialize decision engine.

        Args:
            shares_per_side: Size of each order
            tick_size: Price increment added to the primary ask
            max_per_side: Per-side trade cap per window (0 = unlimited)
            min_confidence: Minimum prediction confidence to trade
            hedge_pair_price: Hedge limit is this minus the primary ask
        """
        self.shares_per_side = shares_per_side
        self.tick_size = tick_size
        self.max_per_side = max_per_side
        self.min_confidence = min_confidence
        self.hedge_pair_price = hedge_pair_price

        self._counters: dict[str, SideCounters] = {}
        self._states: dict[str, WindowState] = {}

    def open_window(self, window_id: str) -> None:
        """Start a window in ACTIVE state with fresh counters."""
        self._counters[window_id] = SideCounters()
        self._states[window_id] = WindowState.ACTIVE

    def state(self, window_id: str) -> WindowState:
        return self._states.get(window_id, WindowState.UNINITIALIZED)

    def counters(self, window_id: str) -> SideCounters:
        return self._counters.setdefault(window_id, SideCounters())

    def is_paused(self, window_id: str) -> bool:
        return self.state(window_id) == WindowState.PAUSED

    def decide(
        self,
        prediction: Prediction,
        window: MarketWindow,
        up_ask: float,
        down_ask: float
    ) -> Optional[TradeDecision]:
        """
        Evaluate a prediction against the current asks.

        Args:
            prediction: Prediction emitted at a pole
            window: Active market window
            up_ask: Best ask of the Up token
            down_ask: Best ask of the Down token

        Returns:
            TradeDecision, or None when the trade is rejected
        """
        window_id = window.window_id

        if prediction.confidence < self.min_confidence:
            trade_logger.trade_rejected(window_id, "low_confidence", confidence=prediction.confidence)
            return None
        if prediction.signal == Signal.HOLD:
            trade_logger.trade_rejected(window_id, "hold_signal", confidence=prediction.confidence)
            return None

        state = self.state(window_id)
        if state == WindowState.UNINITIALIZED:
            self.open_window(window_id)
        elif state == WindowState.PAUSED:
            trade_logger.trade_rejected(window_id, "window_paused")
            return None
        elif state == WindowState.FINALIZED:
            trade_logger.trade_rejected(window_id, "window_finalized")
            return None

        if prediction.signal == Signal.BUY_UP:
            side = TradeSide.UP
            ask, token_id, other_token_id = up_ask, window.up_token_id, window.down_token_id
        else:
            side = TradeSide.DOWN
            ask, token_id, other_token_id = down_ask, window.down_token_id, window.up_token_id

        counters = self.counters(window_id)
        if self.max_per_side > 0 and counters.count(side) >= self.max_per_side:
            trade_logger.trade_rejected(
                window_id,
                "side_cap_reached",
                side=side.value,
                count=counters.count(side),
                max_per_side=self.max_per_side
            )
            return None

        # Every accepted trade commits both legs, so both counters move
        counters.up_count += 1
        counters.down_count += 1

        primary = OrderRequest(
            token_id=token_id,
            side=side,
            price=self.primary_price(ask),
            size=self.shares_per_side,
        )

        hedge: Optional[OrderRequest] = None
        try:
            hedge = OrderRequest(
                token_id=other_token_id,
                side=TradeSide.DOWN if side == TradeSide.UP else TradeSide.UP,
                price=self.hedge_price(ask),
                size=self.shares_per_side,
            )
        except InvalidHedgePriceError as e:
            trade_logger.hedge_skipped(window_id, e.hedge_price, e.primary_price)

        trade_logger.trade_decided(
            window_id=window_id,
            side=side.value,
            primary_price=primary.price,
            hedge_price=hedge.price if hedge else None,
            size=self.shares_per_side,
            up_count=counters.up_count,
            down_count=counters.down_count
        )

        if (
            self.max_per_side > 0
            and counters.up_count >= self.max_per_side
            and counters.down_count >= self.max_per_side
        ):
            self._states[window_id] = WindowState.PAUSED
            trade_logger.window_paused(window_id, counters.up_count, counters.down_count)

        return TradeDecision(
            window_id=window_id,
            side=side,
            primary=primary,
            hedge=hedge,
            ask_price=ask,
            prediction=prediction,
        )

    def primary_price(self, ask: float) -> float:
        """Ask plus one tick, kept below 1."""
        price = round(ask + self.tick_size, 4)
        if price >= 1:
            price = round(1 - self.tick_size, 4)
        return price

    def hedge_price(self, primary_ask: float) -> float:
        """
        Limit price for the opposite side.

        Raises:
            InvalidHedgePriceError: price falls outside (0, 1)
        """
        price = round(self.hedge_pair_price - primary_ask, 4)
        if price <= 0 or price >= 1:
            raise InvalidHedgePriceError(price, primary_ask)
        return price

    def finalize_window(self, window_id: str) -> bool:
        """
        Move a window to FINALIZED.

        Returns:
            True the first time, False if it was already finalized
        """
        if self.state(window_id) == WindowState.FINALIZED:
            return False
        self._states[window_id] = WindowState.FINALIZED
        self._counters.pop(window_id, None)
        self._prune_finalized(window_id)
        return True

    def _prune_finalized(self, window_id: str) -> None:
        """Forget finalized windows older than the one before window_id."""
        cutoff = window_id_start(window_id) - WINDOW_SECONDS
        for old_id, state in list(self._states.items()):
            if state == WindowState.FINALIZED and window_id_start(old_id) < cutoff:
                del self._states[old_id]

    def reset_window(self, window_id: str) -> None:
        """Drop all per-window state."""
        self._counters.pop(window_id, None)
        self._states.pop(window_id, None)
