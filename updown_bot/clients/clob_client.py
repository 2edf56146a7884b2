"""
CLOB client wrapper for Polymarket order operations.
Wraps py-clob-client with async support and error handling.
"""

import asyncio
import time
from typing import Optional

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    ApiCreds,
    AssetType,
    BalanceAllowanceParams,
    OpenOrderParams,
    OrderArgs,
    OrderType,
    PartialCreateOrderOptions,
)
from py_clob_client.exceptions import PolyApiException
from py_clob_client.order_builder.constants import BUY, SELL

from .base import OrderResult, OrderService, OrderSide, OrderState, OrderStatus
from ..errors import OrderSubmissionError, TransientUpstreamError
from ..utils.logger import get_logger

logger = get_logger("clob")

# CLOB status strings -> normalized states
_STATUS_MAP = {
    "LIVE": OrderState.OPEN,
    "OPEN": OrderState.OPEN,
    "UNMATCHED": OrderState.OPEN,
    "DELAYED": OrderState.OPEN,
    "MATCHED": OrderState.FILLED,
    "FILLED": OrderState.FILLED,
    "PARTIALLY_FILLED": OrderState.PARTIALLY_FILLED,
    "CANCELED": OrderState.CANCELLED,
    "CANCELLED": OrderState.CANCELLED,
    "REJECTED": OrderState.REJECTED,
}

USDC_DECIMALS = 6

_ORDER_TYPES = {
    "GTC": OrderType.GTC,
    "FOK": OrderType.FOK,
    "GTD": OrderType.GTD,
}


def normalize_status(raw: str, size_matched: float = 0.0, original_size: float = 0.0) -> OrderState:
    """
    Map a CLOB order status onto OrderState.

    An open order with some matched size is reported as PARTIALLY_FILLED.
    """
    state = _STATUS_MAP.get((raw or "").upper(), OrderState.OPEN)
    if state == OrderState.OPEN and size_matched > 0:
        if original_size and size_matched >= original_size:
            return OrderState.FILLED
        return OrderState.PARTIALLY_FILLED
    return state


class CLOBClient(OrderService):
    """
    Async wrapper for Polymarket CLOB client.

    Handles order placement and status queries.
    Uses the official py-clob-client under the hood.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        api_passphrase: str,
        private_key: str,
        chain_id: int = 137,  # Polygon Mainnet
        host: str = "https://clob.polymarket.com",
        tick_size: str = "0.01",
        neg_risk: bool = False
    ):
        """
        Initialize CLOB client.

        Args:
            api_key: Polymarket API key
            api_secret: Polymarket API secret
            api_passphrase: Polymarket API passphrase
            private_key: Wallet private key
            chain_id: Blockchain chain ID (137 for Polygon)
            host: CLOB REST endpoint
            tick_size: Market tick size used when building orders
            neg_risk: Whether markets are neg-risk
        """
        self.api_key = api_key
        self.api_secret = api_secret
        self.api_passphrase = api_passphrase
        self.private_key = private_key
        self.chain_id = chain_id
        self.host = host
        self.tick_size = tick_size
        self.neg_risk = neg_risk

        self._client: Optional[ClobClient] = None

    async def initialize(self) -> None:
        """Initialize the CLOB client."""
        logger.info("Initializing CLOB client")

        # Create client in executor since it may do blocking I/O
        loop = asyncio.get_running_loop()
        self._client = await loop.run_in_executor(
            None,
            self._create_client
        )

        logger.info("CLOB client initialized successfully")

    def _create_client(self) -> ClobClient:
        """Create the underlying py-clob-client instance."""
        return ClobClient(
            host=self.host,
            key=self.private_key,
            chain_id=self.chain_id,
            creds=ApiCreds(
                api_key=self.api_key,
                api_secret=self.api_secret,
                api_passphrase=self.api_passphrase
            )
        )

    async def place_order(
        self,
        token_id: str,
        side: OrderSide,
        size: float,
        price: float,
        order_type: str = "GTC"
    ) -> OrderResult:
        """
        Place a limit order on the CLOB.

        Args:
            token_id: Token ID (asset ID) to trade
            side: BUY or SELL
            size: Order size in shares
            price: Limit price (0-1)
            order_type: GTC, FOK or GTD

        Returns:
            OrderResult with order ID and status

        Raises:
            OrderSubmissionError: client not initialized
        """
        if not self._client:
            raise OrderSubmissionError("CLOB client not initialized")

        logger.debug(
            f"Placing order: {side.value} {size} @ {price} for {token_id}"
        )

        try:
            loop = asyncio.get_running_loop()

            order_args = OrderArgs(
                token_id=token_id,
                price=price,
                size=size,
                side=BUY if side == OrderSide.BUY else SELL
            )
            options = PartialCreateOrderOptions(
                tick_size=self.tick_size,
                neg_risk=self.neg_risk
            )

            signed_order = await loop.run_in_executor(
                None,
                lambda: self._client.create_order(order_args, options)
            )

            result = await loop.run_in_executor(
                None,
                lambda: self._client.post_order(signed_order, _ORDER_TYPES.get(order_type, OrderType.GTC))
            )

        except Exception as e:
            logger.error(f"Failed to place order: {e}")
            return OrderResult(
                order_id="",
                success=False,
                status="FAILED",
                error=str(e),
                timestamp=time.time()
            )

        order_id = (result or {}).get("orderID", "")
        if not order_id:
            error = (result or {}).get("errorMsg") or "no order id returned"
            logger.error(f"Order rejected: {error}")
            return OrderResult(
                order_id="",
                success=False,
                status="REJECTED",
                error=error,
                timestamp=time.time()
            )

        logger.info(
            "Order placed successfully",
            extra={
                "order_id": order_id,
                "token_id": token_id,
                "side": side.value,
                "size": size,
                "price": price
            }
        )

        return OrderResult(
            order_id=order_id,
            success=True,
            status=(result.get("status") or "LIVE").upper(),
            timestamp=time.time()
        )

    async def get_order(self, order_id: str) -> Optional[OrderStatus]:
        """
        Get status of an order.

        Args:
            order_id: Order ID to query

        Returns:
            OrderStatus or None if not found

        Raises:
            OrderSubmissionError: client not initialized
            TransientUpstreamError: status query failed
        """
        if not self._client:
            raise OrderSubmissionError("CLOB client not initialized")

        try:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(
                None,
                lambda: self._client.get_order(order_id)
            )
        except PolyApiException as e:
            if e.status_code == 404:
                return None
            raise TransientUpstreamError(f"Order status query failed for {order_id}: {e}") from e
        except Exception as e:
            raise TransientUpstreamError(f"Order status query failed for {order_id}: {e}") from e

        if not result:
            return None

        size_matched = float(result.get("size_matched", 0) or 0)
        original_size = float(result.get("original_size", 0) or 0)
        return OrderStatus(
            order_id=order_id,
            status=normalize_status(result.get("status", ""), size_matched, original_size),
            size_matched=size_matched,
            size_remaining=max(0.0, original_size - size_matched),
            avg_price=float(result["price"]) if result.get("price") else None
        )

    async def get_collateral_balance(self) -> float:
        """
        Available USDC collateral.

        Balance reported by the CLOB minus what resting BUY orders still
        reserve. The CLOB view is refreshed first; a failed refresh is only
        logged.

        Returns:
            Available USDC, never negative

        Raises:
            OrderSubmissionError: client not initialized
            TransientUpstreamError: balance or open orders query failed
        """
        if not self._client:
            raise OrderSubmissionError("CLOB client not initialized")

        params = BalanceAllowanceParams(asset_type=AssetType.COLLATERAL)
        loop = asyncio.get_running_loop()

        try:
            await loop.run_in_executor(None, lambda: self._client.update_balance_allowance(params))
        except Exception as e:
            logger.warning(f"Balance allowance refresh failed: {e}")

        try:
            response = await loop.run_in_executor(None, lambda: self._client.get_balance_allowance(params))
            open_orders = await loop.run_in_executor(None, lambda: self._client.get_orders(OpenOrderParams()))
        except Exception as e:
            raise TransientUpstreamError(f"Balance query failed: {e}") from e

        # Collateral is reported in 6-decimal base units
        balance = float((response or {}).get("balance", 0) or 0) / 10 ** USDC_DECIMALS

        reserved = 0.0
        for order in open_orders or []:
            if (order.get("side") or "").upper() != "BUY":
                continue
            remaining = float(order.get("original_size", 0) or 0) - float(order.get("size_matched", 0) or 0)
            reserved += max(0.0, remaining) * float(order.get("price", 0) or 0)

        available = max(0.0, balance - reserved)
        logger.debug(
            "Collateral balance",
            extra={"balance": round(balance, 6), "reserved": round(reserved, 6), "available": round(available, 6)}
        )
        return available
