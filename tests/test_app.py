"""
Tests for application start-up.
"""

import pytest
from unittest.mock import AsyncMock

from updown_bot.app import Application
from updown_bot.clients.clob_client import CLOBClient
from updown_bot.config import (
    Config,
    LogConfig,
    PolymarketConfig,
    RiskConfig,
    StorageConfig,
    TradingConfig,
    WalletConfig,
)
from updown_bot.errors import InsufficientBalanceError, TransientUpstreamError


def make_config(tmp_path, simulation_mode: bool = False, timeout: float = 0.0) -> Config:
    return Config(
        polymarket=PolymarketConfig(api_key="key", api_secret="secret", api_passphrase="pass"),
        wallet=WalletConfig(private_key="0x" + "1" * 64),
        trading=TradingConfig(),
        risk=RiskConfig(
            simulation_mode=simulation_mode,
            min_usdc_balance=1.0,
            balance_poll_seconds=0.0,
            balance_wait_timeout_seconds=timeout
        ),
        storage=StorageConfig(
            state_file=tmp_path / "state.json",
            holdings_file=tmp_path / "holdings.json"
        ),
        logging=LogConfig(),
    )


@pytest.fixture
def mock_clob():
    return AsyncMock(spec=CLOBClient)


class TestFundingGate:
    """Tests for the minimum USDC balance check."""

    @pytest.mark.asyncio
    async def test_waits_until_funded(self, tmp_path, mock_clob):
        app = Application(make_config(tmp_path))
        app.clob_client = mock_clob
        mock_clob.get_collateral_balance.side_effect = [
            0.5,
            TransientUpstreamError("rate limited"),
            2.0,
        ]

        available = await app.wait_for_funding()

        assert available == 2.0
        assert mock_clob.get_collateral_balance.await_count == 3

    @pytest.mark.asyncio
    async def test_timeout_raises(self, tmp_path, mock_clob):
        app = Application(make_config(tmp_path, timeout=0.05))
        app.clob_client = mock_clob
        mock_clob.get_collateral_balance.return_value = 0.25

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await app.wait_for_funding()

        assert exc_info.value.available == 0.25
        assert exc_info.value.required == 1.0

    @pytest.mark.asyncio
    async def test_initialize_checks_balance_in_live_mode(self, tmp_path, mock_clob):
        app = Application(make_config(tmp_path))
        app.clob_client = mock_clob
        app.gamma_client.initialize = AsyncMock()
        mock_clob.get_collateral_balance.return_value = 10.0

        await app.initialize()

        mock_clob.initialize.assert_awaited_once()
        mock_clob.get_collateral_balance.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_simulation_skips_balance_check(self, tmp_path):
        app = Application(make_config(tmp_path, simulation_mode=True))
        app.gamma_client.initialize = AsyncMock()

        await app.initialize()

        assert app.clob_client is None
