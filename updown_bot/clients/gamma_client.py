"""
Gamma API client for Up/Down window metadata.
Resolves a window slug into its condition id and Up/Down token ids,
and reports resolved outcomes of closed windows.
"""

import json
from typing import Optional

import aiohttp

from .base import MarketListing, SettlementService, WindowResolution, WindowTokens
from ..errors import TransientUpstreamError, WindowNotYetListedError
from ..utils.logger import get_logger

logger = get_logger("gamma")


def _parse_list(raw) -> list:
    """Gamma returns some list fields as JSON-encoded strings."""
    if isinstance(raw, list):
        return raw
    if not raw:
        return []
    if isinstance(raw, str) and raw.startswith("["):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            pass
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def parse_resolution(data: dict, win_threshold: float = 0.99) -> Optional[WindowResolution]:
    """
    Winning outcome indices of a closed market.

    Returns None while the market is open or no outcome price has
    settled at the win threshold.
    """
    if not data.get("closed"):
        return None

    prices = []
    for raw in _parse_list(data.get("outcomePrices")):
        try:
            prices.append(float(raw))
        except (TypeError, ValueError):
            prices.append(0.0)

    winners = [i for i, p in enumerate(prices) if p >= win_threshold]
    if not winners:
        return None

    return WindowResolution(
        condition_id=data.get("conditionId", ""),
        winning_indices=winners,
        payout_ratio=1.0
    )


def parse_window_tokens(slug: str, data: dict) -> WindowTokens:
    """
    Extract the Up/Down mapping from a Gamma market payload.

    Raises:
        WindowNotYetListedError: payload lacks an Up/Down outcome pair
    """
    outcomes = [str(o).strip() for o in _parse_list(data.get("outcomes"))]
    token_ids = [str(t).strip() for t in _parse_list(data.get("clobTokenIds"))]

    lowered = [o.lower() for o in outcomes]
    if "up" not in lowered or "down" not in lowered:
        raise WindowNotYetListedError(slug, "has no Up/Down outcomes")

    up_index = lowered.index("up")
    down_index = lowered.index("down")
    if max(up_index, down_index) >= len(token_ids):
        raise WindowNotYetListedError(slug, "has no token ids yet")

    return WindowTokens(
        condition_id=data.get("conditionId", ""),
        up_token_id=token_ids[up_index],
        down_token_id=token_ids[down_index],
        up_index=up_index,
        down_index=down_index,
    )


class GammaClient(MarketListing, SettlementService):
    """
    Client for Polymarket Gamma API.

    The Gamma API provides market metadata without requiring authentication.
    """

    BASE_URL = "https://gamma-api.polymarket.com"

    def __init__(self, base_url: Optional[str] = None, timeout_seconds: float = 10.0):
        """
        Initialize Gamma client.

        Args:
            base_url: Override of the API root
            timeout_seconds: Per-request timeout
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        """Initialize HTTP session."""
        if not self._session:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
        logger.info("Gamma client initialized")

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def _request(self, endpoint: str, params: Optional[dict] = None) -> Optional[dict]:
        """GET an endpoint; None on 404."""
        if not self._session:
            await self.initialize()

        url = f"{self.base_url}{endpoint}"

        try:
            async with self._session.get(url, params=params) as response:
                if response.status == 404:
                    return None
                response.raise_for_status()
                return await response.json()
        except aiohttp.ClientError as e:
            logger.error(f"Gamma API request failed: {e}")
            raise TransientUpstreamError(f"Gamma request {endpoint} failed: {e}") from e

    async def fetch_window_tokens(self, window_id: str) -> WindowTokens:
        """
        Resolve a window slug.

        Args:
            window_id: Window slug, e.g. "btc-updown-15m-1700000100"

        Returns:
            WindowTokens for the window
        """
        data = await self._request(f"/markets/slug/{window_id}")
        if not data:
            raise WindowNotYetListedError(window_id)

        tokens = parse_window_tokens(window_id, data)
        logger.debug(
            "Resolved window",
            extra={
                "window_id": window_id,
                "condition_id": tokens.condition_id,
                "up_index": tokens.up_index,
                "down_index": tokens.down_index
            }
        )
        return tokens

    async def get_resolution(self, condition_id: str) -> Optional[WindowResolution]:
        """
        Resolution of a market by condition id.

        Returns:
            WindowResolution, or None while the market is unresolved
        """
        data = await self._request("/markets", params={"condition_ids": condition_id})
        if not data:
            return None

        market = data[0] if isinstance(data, list) else data
        resolution = parse_resolution(market)
        if resolution and not resolution.condition_id:
            resolution.condition_id = condition_id
        return resolution
