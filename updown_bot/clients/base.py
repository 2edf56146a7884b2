"""
Collaborator ports used by the core engine.

Concrete adapters (Gamma REST, CLOB websocket, py-clob-client) implement
these; tests substitute mocks or small fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional


@dataclass
class WindowTokens:
    """Token mapping for one window as returned by the listing."""
    condition_id: str
    up_token_id: str
    down_token_id: str
    up_index: int
    down_index: int


@dataclass
class BestPrices:
    """Top of book for one token."""
    best_bid: Optional[float]
    best_ask: Optional[float]
    timestamp: float = 0.0


class OrderSide(Enum):
    """Order side enum."""
    BUY = "BUY"
    SELL = "SELL"


class OrderState(Enum):
    """Normalized order lifecycle states."""
    OPEN = "OPEN"
    FILLED = "FILLED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderState.FILLED, OrderState.CANCELLED, OrderState.REJECTED)


@dataclass
class OrderResult:
    """Result of an order placement."""
    order_id: str
    success: bool
    status: str
    error: Optional[str] = None
    timestamp: float = 0.0


@dataclass
class OrderStatus:
    """Current status of an order."""
    order_id: str
    status: OrderState
    size_matched: float
    size_remaining: float
    avg_price: Optional[float] = None


BestPricesCallback = Callable[[str, BestPrices], Any]


class MarketListing(ABC):
    """Resolves window ids into outcome token ids."""

    @abstractmethod
    async def fetch_window_tokens(self, window_id: str) -> WindowTokens:
        """
        Look up a window by slug.

        Raises:
            WindowNotYetListedError: window unknown to the listing
            TransientUpstreamError: listing unreachable
        """
        pass


class PriceFeed(ABC):
    """Push source of best bid/ask updates keyed by token id."""

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def subscribe(self, token_ids: list[str]) -> None:
        pass

    @abstractmethod
    async def unsubscribe(self, token_ids: list[str]) -> None:
        pass

    @abstractmethod
    def get_price(self, token_id: str) -> Optional[BestPrices]:
        """Latest cached top of book for a token."""
        pass

    @abstractmethod
    def set_best_prices_callback(self, callback: BestPricesCallback) -> None:
        pass


class OrderService(ABC):
    """Order submission and status queries."""

    @abstractmethod
    async def place_order(
        self,
        token_id: str,
        side: OrderSide,
        size: float,
        price: float,
        order_type: str = "GTC"
    ) -> OrderResult:
        """
        Submit a limit order.

        Raises:
            OrderSubmissionError: order could not be submitted at all
        """
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[OrderStatus]:
        """
        Current status of an order, or None if unknown.

        Raises:
            TransientUpstreamError: status could not be queried
        """
        pass


@dataclass
class WindowResolution:
    """Resolved outcome of one market condition."""
    condition_id: str
    winning_indices: list[int]
    payout_ratio: float = 1.0  # Collateral paid per winning share


class SettlementService(ABC):
    """Reports market resolutions."""

    @abstractmethod
    async def get_resolution(self, condition_id: str) -> Optional[WindowResolution]:
        """Resolution for a condition, or None while unresolved."""
        pass
