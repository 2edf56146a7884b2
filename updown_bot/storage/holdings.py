"""
Filled-token holdings ledger.

condition_id -> {token_id: shares}, plus the collateral spent per condition.
Updated from fill tracking and read by settlement to compute realized P&L
per window.
"""

import json
from pathlib import Path
from typing import Optional

from ..utils.logger import get_logger

logger = get_logger("holdings")


class HoldingsLedger:
    """Share balances and spend per market condition, optionally backed by a JSON file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._holdings: dict[str, dict[str, float]] = {}
        self._spend: dict[str, float] = {}
        if self.path:
            self._load()

    def _load(self) -> None:
        try:
            if self.path.exists():
                with open(self.path, "r") as f:
                    data = json.load(f)
                self._holdings = {
                    cid: {tid: float(amount) for tid, amount in tokens.items()}
                    for cid, tokens in data.get("shares", {}).items()
                }
                self._spend = {cid: float(cost) for cid, cost in data.get("spend", {}).items()}
        except (OSError, json.JSONDecodeError, AttributeError, ValueError) as e:
            logger.warning(f"Could not load holdings from {self.path}: {e}")

    def _save(self) -> None:
        if not self.path:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump({"shares": self._holdings, "spend": self._spend}, f, indent=2)
        except OSError as e:
            logger.error(f"Holdings save failed: {e}")

    def add(self, condition_id: str, token_id: str, amount: float) -> float:
        """Add shares; returns the new balance."""
        tokens = self._holdings.setdefault(condition_id, {})
        tokens[token_id] = tokens.get(token_id, 0.0) + amount
        self._save()
        return tokens[token_id]

    def record_fill(self, condition_id: str, token_id: str, shares: float, price: float) -> float:
        """
        Book a fill: shares go to the token balance, shares * price to spend.

        Returns:
            The new token balance
        """
        self._spend[condition_id] = self._spend.get(condition_id, 0.0) + shares * price
        return self.add(condition_id, token_id, shares)

    def get(self, condition_id: str, token_id: str) -> float:
        return self._holdings.get(condition_id, {}).get(token_id, 0.0)

    def spend(self, condition_id: str) -> float:
        """Collateral spent on filled orders of a condition."""
        return self._spend.get(condition_id, 0.0)

    def tokens(self, condition_id: str) -> dict[str, float]:
        return dict(self._holdings.get(condition_id, {}))

    def remove(self, condition_id: str, token_id: str, amount: float) -> float:
        """Remove shares, floored at zero; empty entries are pruned."""
        tokens = self._holdings.get(condition_id)
        if not tokens or token_id not in tokens:
            return 0.0

        remaining = max(0.0, tokens[token_id] - amount)
        if remaining <= 0:
            del tokens[token_id]
        else:
            tokens[token_id] = remaining
        if not tokens:
            del self._holdings[condition_id]

        self._save()
        return remaining

    def clear(self, condition_id: str) -> None:
        """Forget a settled market, shares and spend."""
        had_shares = self._holdings.pop(condition_id, None) is not None
        had_spend = self._spend.pop(condition_id, None) is not None
        if had_shares or had_spend:
            self._save()

    def condition_ids(self) -> list[str]:
        return list(self._holdings.keys())
