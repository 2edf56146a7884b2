"""
WebSocket client for Polymarket CLOB market data.
Streams best bid/ask per token and keeps a top-of-book cache.
"""

import asyncio
import json
import time
from typing import Optional, Callable

import websockets
from websockets.protocol import State

from .base import BestPrices, BestPricesCallback, PriceFeed
from ..errors import TransientUpstreamError
from ..utils.logger import get_logger

logger = get_logger("websocket")


def _to_price(value) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class WebSocketClient(PriceFeed):
    """
    Async WebSocket client for the Polymarket CLOB market channel.

    Subscribes with custom features enabled so the server pushes
    best_bid_ask messages; book and price_change messages also update the
    cache. Reconnects with exponential backoff and resubscribes every token.
    """

    BASE_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"

    def __init__(
        self,
        url: Optional[str] = None,
        on_best_prices: Optional[BestPricesCallback] = None,
        max_reconnect_attempts: int = 10,
        initial_reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 60.0,
        ping_interval: float = 10.0
    ):
        """
        Initialize WebSocket client.

        Args:
            url: Market channel URL
            on_best_prices: Callback(token_id, BestPrices) on every top-of-book update
            max_reconnect_attempts: Maximum consecutive reconnection attempts
            initial_reconnect_delay: Initial delay between reconnections
            max_reconnect_delay: Maximum delay between reconnections
            ping_interval: Seconds between keepalive PING frames
        """
        self.url = url or self.BASE_URL
        self.on_best_prices = on_best_prices
        self.max_reconnect_attempts = max_reconnect_attempts
        self.initial_reconnect_delay = initial_reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.ping_interval = ping_interval

        self._ws = None
        self._subscribed_assets: set[str] = set()
        self._prices: dict[str, BestPrices] = {}
        self._running = False
        self._reconnect_attempts = 0
        self._ping_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        """Check if WebSocket is connected."""
        if self._ws is None:
            return False
        return self._ws.state == State.OPEN

    @property
    def subscribed_assets(self) -> set[str]:
        return set(self._subscribed_assets)

    def set_best_prices_callback(self, callback: BestPricesCallback) -> None:
        self.on_best_prices = callback

    async def connect(self) -> None:
        """
        Establish WebSocket connection.

        Raises:
            TransientUpstreamError: connection could not be opened
        """
        logger.info("Connecting to Polymarket WebSocket", extra={"url": self.url})

        try:
            self._ws = await websockets.connect(
                self.url,
                ping_interval=30,
                ping_timeout=10,
                close_timeout=5
            )
        except (OSError, websockets.WebSocketException) as e:
            logger.error(f"Failed to connect to WebSocket: {e}")
            raise TransientUpstreamError(f"WebSocket connect failed: {e}") from e

        self._reconnect_attempts = 0
        logger.info("WebSocket connected successfully")

        if self._ping_task is None or self._ping_task.done():
            self._ping_task = asyncio.create_task(self._ping_loop())

        # Resubscribe to assets if reconnecting
        if self._subscribed_assets:
            await self._resubscribe()

    async def disconnect(self) -> None:
        """Close WebSocket connection."""
        self._running = False
        if self._ping_task:
            self._ping_task.cancel()
            self._ping_task = None
        if self._ws:
            await self._ws.close()
            self._ws = None
        logger.info("WebSocket disconnected")

    async def subscribe(self, token_ids: list[str]) -> None:
        """
        Subscribe to top-of-book updates for given tokens.

        Args:
            token_ids: Token IDs to subscribe to
        """
        new_assets = [a for a in token_ids if a not in self._subscribed_assets]
        if not new_assets:
            return

        # For initial subscription, use "type": "market"
        # For subsequent subscriptions, use "operation": "subscribe"
        is_initial = len(self._subscribed_assets) == 0
        self._subscribed_assets.update(new_assets)
        if not self._ws:
            # Sent on the next (re)connect
            return

        if is_initial:
            message = {"assets_ids": new_assets, "type": "market"}
        else:
            message = {"assets_ids": new_assets, "operation": "subscribe"}
        message["custom_feature_enabled"] = True
        await self._ws.send(json.dumps(message))
        logger.info(
            f"Subscribed to {len(new_assets)} new assets (total: {len(self._subscribed_assets)})"
        )

    async def unsubscribe(self, token_ids: list[str]) -> None:
        """Unsubscribe from token updates and drop their cached prices."""
        assets_to_remove = [a for a in token_ids if a in self._subscribed_assets]
        if not assets_to_remove:
            return

        for asset_id in assets_to_remove:
            self._subscribed_assets.discard(asset_id)
            self._prices.pop(asset_id, None)

        if self._ws:
            await self._ws.send(json.dumps({
                "assets_ids": assets_to_remove,
                "operation": "unsubscribe"
            }))

    async def _resubscribe(self) -> None:
        """Resubscribe to all assets after reconnection."""
        assets = list(self._subscribed_assets)
        await self._ws.send(json.dumps({
            "assets_ids": assets,
            "type": "market",
            "custom_feature_enabled": True
        }))
        logger.info(f"Resubscribed to {len(assets)} assets")

    async def run(self) -> None:
        """
        Main loop - connect and process messages.
        Handles reconnection on disconnect.
        """
        self._running = True

        while self._running:
            try:
                if not self.is_connected:
                    await self.connect()

                await self._process_messages()

            except websockets.ConnectionClosed as e:
                logger.warning(f"WebSocket connection closed: {e}")
                await self._handle_reconnect()

            except TransientUpstreamError as e:
                logger.error(f"WebSocket error: {e}")
                await self._handle_reconnect()

    async def _process_messages(self) -> None:
        """Process incoming WebSocket messages."""
        if not self._ws:
            return

        async for message in self._ws:
            if message == "PING":
                await self._ws.send("PONG")
                continue
            if message == "PONG":
                continue

            try:
                data = json.loads(message)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON message: {message[:100]}")
                continue

            await self._handle_message(data)

    async def _ping_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            if self.is_connected:
                try:
                    await self._ws.send("PING")
                except websockets.ConnectionClosed:
                    pass

    async def _handle_message(self, data) -> None:
        """Route message to appropriate handler."""
        # Server sometimes sends arrays of messages
        if isinstance(data, list):
            for item in data:
                if isinstance(item, dict):
                    await self._handle_single_message(item)
            return

        if isinstance(data, dict):
            await self._handle_single_message(data)

    async def _handle_single_message(self, data: dict) -> None:
        """Handle a single message dict."""
        msg_type = data.get("event_type") or data.get("type")

        if msg_type == "best_bid_ask":
            await self._update_price(
                data.get("asset_id", ""),
                _to_price(data.get("best_bid")),
                _to_price(data.get("best_ask"))
            )
        elif msg_type == "book":
            await self._handle_book_message(data)
        elif msg_type == "price_change":
            await self._handle_price_change(data)
        elif msg_type == "error":
            logger.error(f"WebSocket server error: {data.get('message', data)}")
        else:
            logger.debug(f"Unhandled message type: {msg_type}")

    async def _handle_book_message(self, data: dict) -> None:
        """Handle full order book snapshot."""
        bids = [_to_price(level.get("price")) for level in data.get("bids", [])]
        asks = [_to_price(level.get("price")) for level in data.get("asks", [])]
        bids = [b for b in bids if b is not None]
        asks = [a for a in asks if a is not None]

        await self._update_price(
            data.get("asset_id", ""),
            max(bids) if bids else None,
            min(asks) if asks else None
        )

    async def _handle_price_change(self, data: dict) -> None:
        """Handle price change update; each change carries the new top of book."""
        for change in data.get("price_changes", []):
            best_bid = _to_price(change.get("best_bid"))
            best_ask = _to_price(change.get("best_ask"))
            if best_bid is None and best_ask is None:
                continue
            await self._update_price(change.get("asset_id", ""), best_bid, best_ask)

    async def _update_price(
        self,
        asset_id: str,
        best_bid: Optional[float],
        best_ask: Optional[float]
    ) -> None:
        if not asset_id:
            return

        prices = BestPrices(best_bid=best_bid, best_ask=best_ask, timestamp=time.time())
        self._prices[asset_id] = prices

        if self.on_best_prices:
            await self._call_handler(self.on_best_prices, asset_id, prices)

    async def _call_handler(self, handler: Callable, *args) -> None:
        """Call handler, supporting both sync and async callbacks."""
        try:
            result = handler(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Price handler failed: {e}")

    async def _handle_reconnect(self) -> None:
        """
        Handle reconnection with exponential backoff.

        Raises:
            TransientUpstreamError: attempts exhausted
        """
        self._ws = None
        self._reconnect_attempts += 1

        if self._reconnect_attempts > self.max_reconnect_attempts:
            logger.error("Max reconnection attempts exceeded")
            self._running = False
            raise TransientUpstreamError("Failed to reconnect to WebSocket")

        delay = min(
            self.initial_reconnect_delay * (2 ** (self._reconnect_attempts - 1)),
            self.max_reconnect_delay
        )

        logger.info(
            f"Reconnecting in {delay:.1f}s (attempt {self._reconnect_attempts})"
        )
        await asyncio.sleep(delay)

    def get_price(self, token_id: str) -> Optional[BestPrices]:
        """Get cached top of book for a token."""
        return self._prices.get(token_id)
