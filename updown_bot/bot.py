"""
Up/Down trading engine.

Wires the window tracker, one predictor per market, the decision engine,
order execution and scoring together. The orchestrator owns the timers and
calls check_window_transitions() and flush_summaries() periodically.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

from .clients.base import BestPrices, PriceFeed
from .errors import TransientUpstreamError, WindowNotYetListedError
from .execution.executor import OrderExecutor
from .markets.cycle import MarketCycleTracker, MarketWindow
from .prediction.predictor import PolePredictor, Prediction
from .scoring.tracker import ScoreTracker
from .settlement import RealizedPnL, SettlementReconciler
from .storage.state_store import PersistedWindowState, StateStore, state_key
from .trading.decision import TradeDecisionEngine
from .utils.clock import SystemClock
from .utils.logger import get_logger, TradeLogger

logger = get_logger("bot")
trade_logger = TradeLogger()


class UpDownBot:
    """
    Core engine for 15-minute Up/Down markets.

    Price updates are handed off to background tasks so the feed is never
    blocked by a slow decision. Every failure inside update processing is
    logged and dropped; only start() lets a feed connection error through.
    """

    PRICE_EPSILON = 0.0001
    STATS_INTERVAL = 25
    STATS_MILESTONES = (10, 50, 100, 200, 500, 1000)
    SETTLEMENT_DELAY_SECONDS = 120

    def __init__(
        self,
        markets: list[str],
        tracker: MarketCycleTracker,
        feed: PriceFeed,
        engine: TradeDecisionEngine,
        executor: OrderExecutor,
        scores: ScoreTracker,
        store: StateStore,
        reconciler: Optional[SettlementReconciler] = None,
        clock: Optional[SystemClock] = None
    ):
        """
        Initialize engine.

        Args:
            markets: Market names, e.g. ["btc", "eth"]
            tracker: Window tracker backed by the market listing
            feed: Best bid/ask push feed
            engine: Trade decision engine
            executor: Order executor
            scores: Per-window scoring
            store: Persisted window bookkeeping
            reconciler: Settles finished windows when set
            clock: Time source
        """
        self.markets = [m.lower() for m in markets]
        self.tracker = tracker
        self.feed = feed
        self.engine = engine
        self.executor = executor
        self.scores = scores
        self.store = store
        self.reconciler = reconciler
        self.clock = clock or SystemClock()

        self.predictors: dict[str, PolePredictor] = {m: PolePredictor() for m in self.markets}

        self._running = False
        self._rows: dict[str, PersistedWindowState] = {}
        self._token_market: dict[str, str] = {}
        self._last_up_ask: dict[str, float] = {}
        self._last_predictions: dict[str, tuple[Prediction, float]] = {}
        self._locks: dict[str, asyncio.Lock] = {m: asyncio.Lock() for m in self.markets}
        self._tasks: set[asyncio.Task] = set()
        self._pending_settlements: list[MarketWindow] = []
        self._last_stats_count: dict[str, int] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Connect the feed and open the current window of every market.

        Raises:
            TransientUpstreamError: feed connection failed
        """
        logger.info("Starting Up/Down bot", extra={"markets": self.markets})

        self._rows = self.store.load()
        await self.feed.connect()
        self.feed.set_best_prices_callback(self.on_best_prices)
        self._running = True

        now = self.clock.time()
        for market in self.markets:
            await self._initialize_market(market, now)

    async def _initialize_market(self, market: str, now: float) -> Optional[MarketWindow]:
        try:
            window = await self.tracker.initialize_market(market, now)
        except (WindowNotYetListedError, TransientUpstreamError) as e:
            # Retried by the next window check
            logger.warning(f"Could not initialize {market}: {e}")
            return None

        await self._open_window(window, now)
        trade_logger.window_transition(market, None, window.window_id)
        return window

    async def _open_window(self, window: MarketWindow, now: float) -> None:
        self.engine.open_window(window.window_id)
        for token_id in window.token_ids:
            self._token_market[token_id] = window.market
        self._persist_window(window, now)
        try:
            await self.feed.subscribe(window.token_ids)
        except Exception as e:
            # The feed keeps the tokens and sends them again on reconnect
            logger.error(f"Subscribe failed for {window.window_id}: {e}")

    def stop(self) -> None:
        """Stop processing and finalize every open window score."""
        self._running = False
        now = self.clock.time()

        summaries = self.scores.finalize_all(now)
        for market in self.markets:
            window = self.tracker.active_window(market)
            if window:
                self.engine.finalize_window(window.window_id)

        logger.info("Up/Down bot stopped", extra={"finalized_windows": len(summaries)})

    def on_best_prices(self, token_id: str, prices: BestPrices) -> None:
        """Feed callback: schedule processing for the token's market."""
        if not self._running:
            return
        market = self._token_market.get(token_id)
        if market is None:
            return

        task = asyncio.create_task(self._run_update(market))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_for_updates(self) -> None:
        """Wait until every scheduled price update has been processed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_update(self, market: str) -> None:
        try:
            await self.process_update(market)
        except Exception as e:
            logger.error(f"Price update failed for {market}: {e}")

    async def process_update(self, market: str) -> None:
        """
        Run one price update for a market through prediction and trading.

        Uses the cached best asks of both tokens of the active window.
        """
        window = self.tracker.active_window(market)
        if window is None:
            return

        now = self.clock.time()
        if self.tracker.needs_transition(market, now):
            await self.transition_market(market, now)
            return

        up_ask = self._best_ask(window.up_token_id)
        down_ask = self._best_ask(window.down_token_id)
        if up_ask is None or down_ask is None:
            return

        last = self._last_up_ask.get(market)
        if last is not None and abs(up_ask - last) < self.PRICE_EPSILON:
            return
        self._last_up_ask[market] = up_ask

        self._persist_window(window, now, price=up_ask)

        prediction = self.predictors[market].update(up_ask, now)
        if prediction is None:
            return

        previous = self._last_predictions.get(market)
        if previous is not None:
            previous_prediction, previous_price = previous
            self.scores.record_outcome(window.window_id, previous_prediction, previous_price, up_ask)
        self._last_predictions[market] = (prediction, up_ask)
        self.scores.record_prediction(market, window.window_id, now)
        self._log_accuracy(market)

        trade_logger.prediction_made(
            market=market,
            window_id=window.window_id,
            price=up_ask,
            predicted_price=round(prediction.predicted_price, 4),
            confidence=round(prediction.confidence, 4),
            direction=prediction.direction.value,
            signal=prediction.signal.value
        )

        decision = self.engine.decide(prediction, window, up_ask, down_ask)
        if decision is None:
            return

        self.scores.record_trade(market, decision, now)
        await self.executor.execute(decision, window)

    def _best_ask(self, token_id: str) -> Optional[float]:
        prices = self.feed.get_price(token_id)
        if prices is None:
            return None
        return prices.best_ask

    def _log_accuracy(self, market: str) -> None:
        stats = self.predictors[market].accuracy_stats()
        count = stats.total_predictions
        if count == 0 or count == self._last_stats_count.get(market):
            return
        if count % self.STATS_INTERVAL != 0 and count not in self.STATS_MILESTONES:
            return

        self._last_stats_count[market] = count
        logger.info(
            "Prediction accuracy",
            extra={
                "market": market,
                "accuracy_pct": round(stats.accuracy * 100, 2),
                "total_predictions": stats.total_predictions,
                "correct_predictions": stats.correct_predictions
            }
        )

    async def check_window_transitions(self) -> None:
        """Periodic hook: roll every market whose window has ended."""
        now = self.clock.time()
        for market in self.markets:
            try:
                if self.tracker.active_window(market) is None:
                    async with self._locks[market]:
                        if self.tracker.active_window(market) is None:
                            await self._initialize_market(market, now)
                elif self.tracker.needs_transition(market, now):
                    await self.transition_market(market, now)
            except Exception as e:
                logger.error(f"Window check failed for {market}: {e}")

    async def transition_market(self, market: str, now: float) -> Optional[MarketWindow]:
        """
        Move a market to the window active at `now`.

        The outgoing window is finalized and the predictor reset before the
        new window is resolved. If resolution fails the recorded window is
        kept and the transition is retried on the next check. Once the new
        window is recorded the old one is queued for settlement before any
        feed call is made.

        Returns:
            The new window, or None if nothing changed
        """
        async with self._locks[market]:
            if not self.tracker.needs_transition(market, now):
                return None

            old = self.tracker.active_window(market)
            self.scores.finalize(old.window_id, now)
            self.engine.finalize_window(old.window_id)
            self.predictors[market].reset()
            self._last_predictions.pop(market, None)
            self._last_up_ask.pop(market, None)

            try:
                new = await self.tracker.advance(market, now)
            except (WindowNotYetListedError, TransientUpstreamError) as e:
                logger.warning(f"Window transition for {market} deferred: {e}")
                return None

            if self.reconciler:
                self._pending_settlements.append(old)
            else:
                self._drop_row(old)

            await self._roll_subscriptions(old, new, now)
            trade_logger.window_transition(market, old.window_id, new.window_id)
            return new

    async def _roll_subscriptions(self, old: MarketWindow, new: MarketWindow, now: float) -> None:
        await self._open_window(new, now)
        stale = [t for t in old.token_ids if t not in new.token_ids]
        for token_id in stale:
            self._token_market.pop(token_id, None)
        try:
            await self.feed.unsubscribe(stale)
        except Exception as e:
            logger.error(f"Unsubscribe failed for {old.window_id}: {e}")

    async def flush_summaries(self) -> None:
        """Periodic hook: finalize ended windows and settle resolved ones."""
        now = self.clock.time()
        self.scores.flush_due(now)

        if self.reconciler:
            await self.settle_pending(now)

    async def settle_pending(self, now: float) -> list[RealizedPnL]:
        """
        Reconcile finished windows whose markets have had time to resolve.

        Returns:
            P&L of every window settled by this call
        """
        settled = []
        remaining = []
        for window in self._pending_settlements:
            if now < window.end_time + self.SETTLEMENT_DELAY_SECONDS:
                remaining.append(window)
                continue
            try:
                pnl = await self.reconciler.reconcile(window)
            except TransientUpstreamError as e:
                logger.warning(f"Settlement check failed for {window.window_id}: {e}")
                pnl = None

            if pnl is None:
                remaining.append(window)
            else:
                settled.append(pnl)
                self._drop_row(window)
        self._pending_settlements = remaining
        return settled

    @property
    def pending_settlements(self) -> list[MarketWindow]:
        return list(self._pending_settlements)

    def _persist_window(self, window: MarketWindow, now: float, price: Optional[float] = None) -> None:
        key = state_key(window.market, window.window_id)
        row = self._rows.get(key)
        if row is None:
            row = PersistedWindowState(
                market=window.market,
                slug=window.slug,
                condition_id=window.condition_id,
                up_index=window.up_index,
                down_index=window.down_index,
            )
            self._rows[key] = row
        if price is not None:
            row.previous_price = price
        row.last_updated = datetime.fromtimestamp(now, tz=timezone.utc).isoformat()
        self.store.save(self._rows)

    def _drop_row(self, window: MarketWindow) -> None:
        if self._rows.pop(state_key(window.market, window.window_id), None) is not None:
            self.store.save(self._rows)

    @property
    def rows(self) -> dict[str, PersistedWindowState]:
        return dict(self._rows)
