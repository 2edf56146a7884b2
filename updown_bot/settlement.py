"""
Settlement reconciliation.

Once a window's market resolves, the settlement service reports the
winning outcome indices and the payout ratio. Combined with the holdings
ledger, which carries both filled shares and the collateral spent on them,
this gives realized P&L per window. Redemption itself happens outside this
package.
"""

from dataclasses import dataclass
from typing import Optional

from .clients.base import SettlementService, WindowResolution
from .markets.cycle import MarketWindow
from .storage.holdings import HoldingsLedger
from .utils.logger import get_logger

logger = get_logger("settlement")


@dataclass
class RealizedPnL:
    window_id: str
    condition_id: str
    winning_indices: list[int]
    payout: float
    cost: float

    @property
    def profit(self) -> float:
        return self.payout - self.cost


def compute_realized_pnl(
    resolution: WindowResolution,
    window: MarketWindow,
    holdings: HoldingsLedger
) -> RealizedPnL:
    """
    Realized P&L of a window.

    Args:
        resolution: Winning indices and payout ratio
        window: Window metadata mapping outcome indices to token ids
        holdings: Ledger of filled shares and their cost

    Returns:
        RealizedPnL with payout and profit
    """
    token_by_index = {
        window.up_index: window.up_token_id,
        window.down_index: window.down_token_id,
    }

    payout = 0.0
    for index in resolution.winning_indices:
        token_id = token_by_index.get(index)
        if token_id is None:
            continue
        payout += holdings.get(window.condition_id, token_id) * resolution.payout_ratio

    return RealizedPnL(
        window_id=window.window_id,
        condition_id=window.condition_id,
        winning_indices=list(resolution.winning_indices),
        payout=payout,
        cost=holdings.spend(window.condition_id),
    )


class SettlementReconciler:
    """Computes and logs realized P&L for resolved windows."""

    def __init__(self, service: SettlementService, holdings: HoldingsLedger):
        self.service = service
        self.holdings = holdings

    async def reconcile(self, window: MarketWindow) -> Optional[RealizedPnL]:
        """
        Settle one window if its market has resolved.

        Clears the window's holdings once P&L is computed.

        Returns:
            RealizedPnL, or None while the market is unresolved
        """
        resolution = await self.service.get_resolution(window.condition_id)
        if resolution is None:
            logger.debug("Window not resolved yet", extra={"window_id": window.window_id})
            return None

        pnl = compute_realized_pnl(resolution, window, self.holdings)
        self.holdings.clear(window.condition_id)

        logger.info(
            "Window settled",
            extra={
                "event": "window_settled",
                "window_id": pnl.window_id,
                "condition_id": pnl.condition_id,
                "winning_indices": pnl.winning_indices,
                "payout": round(pnl.payout, 4),
                "cost": round(pnl.cost, 4),
                "profit": round(pnl.profit, 4)
            }
        )
        return pnl
