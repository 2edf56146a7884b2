"""
Per-window prediction scoring and trade summaries.
"""

from dataclasses import dataclass, field
from typing import Optional

from ..markets.cycle import WINDOW_SECONDS, current_window_id, is_quarter_hour, window_id_start
from ..prediction.predictor import Direction, Prediction
from ..trading.decision import TradeDecision, TradeSide
from ..utils.logger import get_logger, TradeLogger

logger = get_logger("scoring")
trade_logger = TradeLogger()

OUTCOME_THRESHOLD = 0.02


@dataclass
class TradeRecord:
    """One trade committed in a window."""
    predicted_direction: Direction
    predicted_price: float
    actual_buy_price: float
    side: TradeSide
    cost: float
    timestamp: float
    was_correct: Optional[bool] = None  # None until the next pole scores it


@dataclass
class WindowScore:
    """Running statistics for one market window."""
    market: str
    window_id: str
    start_time: float
    end_time: Optional[float] = None
    total_predictions: int = 0
    correct_predictions: int = 0
    up_cost: float = 0.0
    down_cost: float = 0.0
    up_count: int = 0
    down_count: int = 0
    trades: list[TradeRecord] = field(default_factory=list)

    @property
    def total_cost(self) -> float:
        return self.up_cost + self.down_cost


@dataclass
class WindowSummary:
    """Final statistics emitted when a window closes."""
    market: str
    window_id: str
    duration_seconds: float
    total_predictions: int
    correct_predictions: int
    wrong_predictions: int
    success_rate: float  # Percent
    up_count: int
    up_cost: float
    down_count: int
    down_cost: float
    total_cost: float

    def to_dict(self) -> dict:
        return {
            "market": self.market,
            "window_id": self.window_id,
            "duration_seconds": round(self.duration_seconds, 1),
            "total_predictions": self.total_predictions,
            "correct_predictions": self.correct_predictions,
            "wrong_predictions": self.wrong_predictions,
            "success_rate_pct": round(self.success_rate, 2),
            "up_count": self.up_count,
            "up_cost": round(self.up_cost, 4),
            "down_count": self.down_count,
            "down_cost": round(self.down_cost, 4),
            "total_cost": round(self.total_cost, 4),
        }


def actual_direction(previous_price: float, current_price: float) -> Direction:
    """
    Realized direction between two prices.

    Moves of at least the threshold follow their sign; smaller moves,
    including no move, count as continuation upward unless negative.
    """
    diff = current_price - previous_price
    if abs(diff) >= OUTCOME_THRESHOLD:
        return Direction.UP if diff > 0 else Direction.DOWN
    return Direction.UP if diff >= 0 else Direction.DOWN


class ScoreTracker:
    """
    Tracks accuracy and cost per (market, window).

    Scores are created on the first prediction or trade of a window,
    finalized exactly once and then evicted. Finalized ids are remembered
    back to the previous window only.
    """

    def __init__(self):
        self._scores: dict[str, WindowScore] = {}
        self._finalized: set[str] = set()

    def get_score(self, window_id: str) -> Optional[WindowScore]:
        return self._scores.get(window_id)

    def open_scores(self) -> list[WindowScore]:
        return list(self._scores.values())

    def _ensure(self, market: str, window_id: str, now: float) -> WindowScore:
        score = self._scores.get(window_id)
        if score is None:
            score = WindowScore(market=market, window_id=window_id, start_time=now)
            self._scores[window_id] = score
        return score

    def record_prediction(self, market: str, window_id: str, now: float) -> Optional[WindowScore]:
        """Open the window's score when a pole prediction is made there."""
        if window_id in self._finalized:
            return None
        return self._ensure(market, window_id, now)

    def record_trade(self, market: str, decision: TradeDecision, now: float) -> Optional[TradeRecord]:
        """
        Add an accepted trade to its window.

        Both side counts move with every trade and the primary cost is
        booked against both sides, mirroring the paired side counters.

        Returns:
            The new TradeRecord, or None if the window is already finalized
        """
        if decision.window_id in self._finalized:
            logger.debug("Trade for finalized window ignored", extra={"window_id": decision.window_id})
            return None

        score = self._ensure(market, decision.window_id, now)
        cost = decision.ask_price * decision.primary.size

        score.total_predictions += 1
        score.up_count += 1
        score.down_count += 1
        score.up_cost += cost
        score.down_cost += cost

        record = TradeRecord(
            predicted_direction=decision.prediction.direction,
            predicted_price=decision.prediction.predicted_price,
            actual_buy_price=decision.ask_price,
            side=decision.side,
            cost=cost,
            timestamp=now,
        )
        score.trades.append(record)
        return record

    def record_outcome(
        self,
        window_id: str,
        previous_prediction: Prediction,
        previous_price: float,
        current_price: float
    ) -> bool:
        """
        Score the previous prediction against the realized move.

        Returns:
            Whether the previous prediction's direction was right
        """
        actual = actual_direction(previous_price, current_price)
        correct = previous_prediction.direction == actual

        trade_logger.prediction_scored(
            window_id=window_id,
            predicted=previous_prediction.direction.value,
            actual=actual.value,
            correct=correct
        )

        score = self._scores.get(window_id)
        if score and score.trades and score.trades[-1].was_correct is None:
            score.trades[-1].was_correct = correct
            if correct:
                score.correct_predictions += 1

        return correct

    def finalize(self, window_id: str, now: float) -> Optional[WindowSummary]:
        """
        Close a window, log its summary and stop tracking it.

        Returns:
            The summary, or None if already finalized or never predicted in
        """
        if window_id in self._finalized:
            return None
        self._finalized.add(window_id)
        self._prune_finalized(window_id)

        score = self._scores.pop(window_id, None)
        if score is None:
            return None

        score.end_time = now
        success_rate = (
            score.correct_predictions / score.total_predictions * 100
            if score.total_predictions > 0 else 0.0
        )
        summary = WindowSummary(
            market=score.market,
            window_id=window_id,
            duration_seconds=score.end_time - score.start_time,
            total_predictions=score.total_predictions,
            correct_predictions=score.correct_predictions,
            wrong_predictions=score.total_predictions - score.correct_predictions,
            success_rate=success_rate,
            up_count=score.up_count,
            up_cost=score.up_cost,
            down_count=score.down_count,
            down_cost=score.down_cost,
            total_cost=score.total_cost,
        )
        trade_logger.window_summary(summary.to_dict())
        return summary

    def _prune_finalized(self, window_id: str) -> None:
        cutoff = window_id_start(window_id) - WINDOW_SECONDS
        self._finalized = {w for w in self._finalized if window_id_start(w) >= cutoff}

    def finalize_all(self, now: float) -> list[WindowSummary]:
        """Finalize every open window (shutdown)."""
        summaries = []
        for window_id in list(self._scores.keys()):
            summary = self.finalize(window_id, now)
            if summary:
                summaries.append(summary)
        return summaries

    def flush_due(self, now: float) -> list[WindowSummary]:
        """
        Finalize windows that have ended but were never rolled over.

        Only runs during the first minute of a quarter hour, and only for
        windows that are no longer current and saw at least one trade.
        """
        if not is_quarter_hour(now):
            return []

        summaries = []
        for score in list(self._scores.values()):
            if score.total_predictions == 0:
                continue
            if score.window_id == current_window_id(score.market, now):
                continue
            summary = self.finalize(score.window_id, now)
            if summary:
                summaries.append(summary)
        return summaries
