"""
Application entry point for the Up/Down bot.
Builds the concrete clients from configuration and drives the engine's periodic hooks.
"""

import asyncio
import sys
from typing import Optional

from .bot import UpDownBot
from .clients.clob_client import CLOBClient
from .clients.gamma_client import GammaClient
from .clients.websocket_client import WebSocketClient
from .config import load_config, Config
from .errors import InsufficientBalanceError, TransientUpstreamError
from .execution.executor import OrderExecutor
from .markets.cycle import MarketCycleTracker
from .scoring.tracker import ScoreTracker
from .settlement import SettlementReconciler
from .storage.holdings import HoldingsLedger
from .storage.state_store import JsonStateStore
from .trading.decision import TradeDecisionEngine
from .utils.logger import setup_logging, get_logger

logger = get_logger("app")


class Application:
    """
    Owns every client and the engine.

    Runs the websocket loop, the window-transition check and the summary
    flush side by side until shutdown is requested.
    """

    def __init__(self, config: Config):
        """Initialize application with configuration."""
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.gamma_client = GammaClient(base_url=config.polymarket.gamma_url)
        self.ws_client = WebSocketClient(url=config.polymarket.ws_url)
        self.holdings = HoldingsLedger(config.storage.holdings_file)
        self.store = JsonStateStore(
            config.storage.state_file,
            debounce_seconds=config.storage.save_debounce_seconds
        )

        self.clob_client: Optional[CLOBClient] = None
        if not config.risk.simulation_mode:
            self.clob_client = CLOBClient(
                api_key=config.polymarket.api_key,
                api_secret=config.polymarket.api_secret,
                api_passphrase=config.polymarket.api_passphrase,
                private_key=config.wallet.private_key,
                chain_id=config.wallet.chain_id,
                host=config.polymarket.clob_url,
                tick_size=config.trading.tick_size,
                neg_risk=config.trading.neg_risk
            )

        self.executor = OrderExecutor(
            order_service=self.clob_client,
            holdings=self.holdings,
            simulation_mode=config.risk.simulation_mode,
            kill_switch=config.risk.kill_switch,
            fire_and_forget=config.trading.fire_and_forget
        )

        reconciler = None
        if not config.risk.simulation_mode:
            reconciler = SettlementReconciler(self.gamma_client, self.holdings)

        self.bot = UpDownBot(
            markets=config.trading.markets,
            tracker=MarketCycleTracker(self.gamma_client),
            feed=self.ws_client,
            engine=TradeDecisionEngine(
                shares_per_side=config.trading.shares_per_side,
                tick_size=config.trading.tick,
                max_per_side=config.trading.max_buy_counts_per_side,
                min_confidence=config.trading.min_confidence_for_trade,
                hedge_pair_price=config.trading.hedge_pair_price
            ),
            executor=self.executor,
            scores=ScoreTracker(),
            store=self.store,
            reconciler=reconciler
        )

    async def initialize(self) -> None:
        """Initialize clients."""
        logger.info(
            "Initializing Up/Down bot",
            extra={
                "markets": self.config.trading.markets,
                "simulation_mode": self.config.risk.simulation_mode
            }
        )

        if self.config.risk.kill_switch:
            logger.warning("Kill switch is enabled - bot will not trade")

        await self.gamma_client.initialize()
        if self.clob_client:
            await self.clob_client.initialize()
            await self.wait_for_funding()

    async def wait_for_funding(self) -> float:
        """
        Block until available USDC reaches the configured minimum.

        Polls the CLOB balance; failed checks are logged and retried.

        Returns:
            Available USDC once the minimum is met

        Raises:
            InsufficientBalanceError: timeout elapsed first
        """
        risk = self.config.risk
        loop = asyncio.get_running_loop()
        deadline = None
        if risk.balance_wait_timeout_seconds > 0:
            deadline = loop.time() + risk.balance_wait_timeout_seconds

        available = 0.0
        while True:
            try:
                available = await self.clob_client.get_collateral_balance()
            except TransientUpstreamError as e:
                logger.warning(f"USDC balance check failed: {e}")
            else:
                logger.info(
                    "USDC balance check",
                    extra={"available": round(available, 6), "required": risk.min_usdc_balance}
                )
                if available >= risk.min_usdc_balance:
                    logger.info("Wallet is funded", extra={"available": round(available, 6)})
                    return available

            if deadline is not None and loop.time() >= deadline:
                raise InsufficientBalanceError(available, risk.min_usdc_balance)
            await asyncio.sleep(risk.balance_poll_seconds)

    async def run(self) -> None:
        """Start the engine and run until shutdown is requested."""
        self._running = True
        tasks: list[asyncio.Task] = []

        try:
            await self.bot.start()
            tasks = [
                asyncio.create_task(self._run_websocket()),
                asyncio.create_task(
                    self._run_periodic(self.bot.check_window_transitions, self.config.trading.window_check_seconds)
                ),
                asyncio.create_task(
                    self._run_periodic(self.bot.flush_summaries, self.config.trading.summary_check_seconds)
                ),
            ]
            await self._shutdown_event.wait()
        finally:
            self._running = False
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.shutdown()

    async def _run_websocket(self) -> None:
        """Run WebSocket message processing."""
        try:
            await self.ws_client.run()
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
            self.request_shutdown()

    async def _run_periodic(self, hook, interval: float) -> None:
        while self._running:
            await asyncio.sleep(interval)
            if not self._running:
                break
            try:
                await hook()
            except Exception as e:
                logger.error(f"Periodic task {hook.__name__} failed: {e}")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        """Gracefully shut down the engine and clients."""
        if self.bot.is_running:
            logger.info("Shutting down Up/Down bot")
        self._running = False

        self.bot.stop()
        await self.executor.cancel_tracking()
        await self.ws_client.disconnect()
        await self.gamma_client.close()
        await self.store.flush()

        logger.info("Shutdown complete")


async def main() -> None:
    """Main entry point."""
    try:
        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(
        level=config.logging.log_level,
        json_format=config.logging.json_logging
    )

    app = Application(config)
    try:
        await app.initialize()
        await app.run()
    except InsufficientBalanceError as e:
        logger.error(f"Not starting: {e}")
        await app.shutdown()
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
