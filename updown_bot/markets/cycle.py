"""
15-minute market window tracking.

A window id is a pure function of the market name and the wall clock:
"{market}-updown-15m-{boundary_seconds}". The tracker remembers the last
successfully resolved window per market and reports when the clock has
moved past it.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from ..clients.base import MarketListing
from ..utils.logger import get_logger

logger = get_logger("cycle")

WINDOW_SECONDS = 15 * 60

Timestamp = Union[datetime, float, int]


def _to_seconds(now: Timestamp) -> float:
    if isinstance(now, datetime):
        return now.timestamp()
    return float(now)


def window_start(now: Timestamp) -> int:
    """Unix seconds of the most recent 15-minute boundary at or before now."""
    return int(math.floor(_to_seconds(now) / WINDOW_SECONDS) * WINDOW_SECONDS)


def current_window_id(market: str, now: Timestamp) -> str:
    """
    Deterministic id of the window active at `now`.

    Args:
        market: Market name, e.g. "btc"
        now: Aware datetime or Unix seconds

    Returns:
        Window id (also the listing slug)
    """
    return f"{market.lower()}-updown-15m-{window_start(now)}"


def window_id_start(window_id: str) -> int:
    """Boundary seconds encoded at the end of a window id."""
    return int(window_id.rsplit("-", 1)[-1])


def is_quarter_hour(now: Timestamp) -> bool:
    """True during the first minute of a quarter hour (:00, :15, :30, :45)."""
    return (_to_seconds(now) - window_start(now)) < 60


@dataclass
class MarketWindow:
    """One 15-minute trading instance of a market."""
    market: str
    slug: str
    condition_id: str
    up_token_id: str
    down_token_id: str
    up_index: int
    down_index: int
    start_time: int

    @property
    def window_id(self) -> str:
        return self.slug

    @property
    def end_time(self) -> int:
        return self.start_time + WINDOW_SECONDS

    @property
    def token_ids(self) -> list[str]:
        return [self.up_token_id, self.down_token_id]


class MarketCycleTracker:
    """
    Tracks the active window per market.

    advance() only records the new window once the listing resolves it,
    so a failed resolution is retried on the next check.
    """

    def __init__(self, listing: MarketListing):
        """
        Initialize tracker.

        Args:
            listing: Market listing used to resolve window ids
        """
        self.listing = listing
        self._windows: dict[str, MarketWindow] = {}

    async def resolve_window(self, market: str, window_id: str) -> MarketWindow:
        """
        Resolve a window id into its token mapping.

        Raises:
            WindowNotYetListedError: window is not in the listing yet
            TransientUpstreamError: listing unavailable
        """
        tokens = await self.listing.fetch_window_tokens(window_id)
        start = window_id_start(window_id)
        return MarketWindow(
            market=market,
            slug=window_id,
            condition_id=tokens.condition_id,
            up_token_id=tokens.up_token_id,
            down_token_id=tokens.down_token_id,
            up_index=tokens.up_index,
            down_index=tokens.down_index,
            start_time=start,
        )

    async def initialize_market(self, market: str, now: Timestamp) -> MarketWindow:
        """Resolve and record the current window for a market."""
        window = await self.resolve_window(market, current_window_id(market, now))
        self._windows[market] = window
        logger.info(
            "Market initialized",
            extra={
                "market": market,
                "window_id": window.window_id,
                "condition_id": window.condition_id
            }
        )
        return window

    def recorded_window_id(self, market: str) -> Optional[str]:
        window = self._windows.get(market)
        return window.window_id if window else None

    def active_window(self, market: str) -> Optional[MarketWindow]:
        return self._windows.get(market)

    def needs_transition(self, market: str, now: Timestamp) -> bool:
        """Whether the clock has left the recorded window."""
        recorded = self.recorded_window_id(market)
        return recorded is not None and recorded != current_window_id(market, now)

    async def advance(self, market: str, now: Timestamp) -> MarketWindow:
        """
        Resolve the window active at `now` and record it on success.

        Raises:
            WindowNotYetListedError, TransientUpstreamError: recorded window unchanged
        """
        window = await self.resolve_window(market, current_window_id(market, now))
        self._windows[market] = window
        return window
