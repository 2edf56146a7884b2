"""
Configuration module for the Up/Down trading bot.
Loads settings from environment variables with validation.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

# Load .env file if present
load_dotenv()


@dataclass
class PolymarketConfig:
    """Polymarket API configuration."""
    api_key: str = ""
    api_secret: str = ""
    api_passphrase: str = ""

    # API endpoints
    clob_url: str = "https://clob.polymarket.com"
    gamma_url: str = "https://gamma-api.polymarket.com"
    ws_url: str = "wss://ws-subscriptions-clob.polymarket.com/ws/market"


@dataclass
class WalletConfig:
    """Wallet configuration."""
    private_key: str = ""

    # Chain ID for Polygon Mainnet
    chain_id: int = 137


@dataclass
class TradingConfig:
    """Trading parameters and thresholds."""
    markets: list[str] = field(default_factory=lambda: ["btc"])
    shares_per_side: float = 5.0
    tick_size: str = "0.01"
    neg_risk: bool = False
    max_buy_counts_per_side: int = 0  # 0 = unlimited
    min_confidence_for_trade: float = 0.50
    hedge_pair_price: float = 0.98  # hedge limit = this - primary ask
    fire_and_forget: bool = True  # Don't await fill tracking

    # Periodic hooks
    window_check_seconds: float = 10.0
    summary_check_seconds: float = 60.0

    @property
    def tick(self) -> float:
        return float(self.tick_size)


@dataclass
class RiskConfig:
    """Risk control settings."""
    kill_switch: bool = False
    simulation_mode: bool = True  # Dry run - decide but don't submit

    # Start-up funding gate, live mode only
    min_usdc_balance: float = 1.0
    balance_poll_seconds: float = 15.0
    balance_wait_timeout_seconds: float = 0.0  # 0 = wait indefinitely


@dataclass
class StorageConfig:
    """Local state files."""
    state_file: Path = Path("data/updown-state.json")
    holdings_file: Path = Path("data/token-holdings.json")
    save_debounce_seconds: float = 0.5


@dataclass
class LogConfig:
    """Logging configuration."""
    log_level: str = "INFO"
    json_logging: bool = True


@dataclass
class Config:
    """Main configuration container."""
    polymarket: PolymarketConfig
    wallet: WalletConfig
    trading: TradingConfig
    risk: RiskConfig
    storage: StorageConfig
    logging: LogConfig


def get_env(key: str, default: Optional[str] = None, required: bool = True) -> str:
    """Get environment variable with validation."""
    value = os.getenv(key, default)
    if value is not None:
        value = value.strip()
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value or ""


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key, str(default)).strip().lower()
    return value in ("true", "1", "yes")


def get_env_int(key: str, default: int) -> int:
    """Get integer environment variable."""
    value = os.getenv(key, str(default))
    return int(value)


def get_env_float(key: str, default: float) -> float:
    """Get float environment variable."""
    value = os.getenv(key, str(default))
    return float(value)


def get_env_list(key: str, default: str) -> list[str]:
    """Get comma separated, lower-cased list environment variable."""
    raw = os.getenv(key, default) or default
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


def load_config() -> Config:
    """Load and validate configuration from environment."""
    risk = RiskConfig(
        kill_switch=get_env_bool("KILL_SWITCH", False),
        simulation_mode=get_env_bool("SIMULATION_MODE", True),  # Default to simulation
        min_usdc_balance=get_env_float("BOT_MIN_USDC_BALANCE", 1),
        balance_poll_seconds=get_env_float("BALANCE_POLL_SECONDS", 15),
        balance_wait_timeout_seconds=get_env_float("BALANCE_WAIT_TIMEOUT_SECONDS", 0),
    )

    # Credentials are only needed once orders actually reach the CLOB
    live = not risk.simulation_mode

    trading = TradingConfig(
        markets=get_env_list("TRADING_MARKETS", "btc"),
        shares_per_side=get_env_float("SHARES_PER_SIDE", 5),
        tick_size=get_env("TICK_SIZE", "0.01", required=False),
        neg_risk=get_env_bool("NEG_RISK", False),
        max_buy_counts_per_side=get_env_int("MAX_BUY_COUNTS_PER_SIDE", 0),
        min_confidence_for_trade=get_env_float("MIN_CONFIDENCE_FOR_TRADE", 0.50),
        hedge_pair_price=get_env_float("HEDGE_PAIR_PRICE", 0.98),
        fire_and_forget=get_env_bool("FIRE_AND_FORGET", True),
        window_check_seconds=get_env_float("WINDOW_CHECK_SECONDS", 10),
        summary_check_seconds=get_env_float("SUMMARY_CHECK_SECONDS", 60),
    )
    if not trading.markets:
        raise ValueError("TRADING_MARKETS must name at least one market")
    if trading.max_buy_counts_per_side < 0:
        raise ValueError("MAX_BUY_COUNTS_PER_SIDE must be >= 0")
    if risk.min_usdc_balance < 0:
        raise ValueError("BOT_MIN_USDC_BALANCE must be >= 0")

    return Config(
        polymarket=PolymarketConfig(
            api_key=get_env("POLYMARKET_API_KEY", required=live),
            api_secret=get_env("POLYMARKET_API_SECRET", required=live),
            api_passphrase=get_env("POLYMARKET_API_PASSPHRASE", required=live),
            clob_url=get_env("CLOB_API_URL", "https://clob.polymarket.com", required=False),
            gamma_url=get_env("GAMMA_API_URL", "https://gamma-api.polymarket.com", required=False),
            ws_url=get_env(
                "CLOB_WS_URL", "wss://ws-subscriptions-clob.polymarket.com/ws/market", required=False
            ),
        ),
        wallet=WalletConfig(
            private_key=get_env("PRIVATE_KEY", required=live),
            chain_id=get_env_int("CHAIN_ID", 137),
        ),
        trading=trading,
        risk=risk,
        storage=StorageConfig(
            state_file=Path(get_env("STATE_FILE", "data/updown-state.json", required=False)),
            holdings_file=Path(get_env("HOLDINGS_FILE", "data/token-holdings.json", required=False)),
            save_debounce_seconds=get_env_float("STATE_SAVE_DEBOUNCE_SECONDS", 0.5),
        ),
        logging=LogConfig(
            log_level=get_env("LOG_LEVEL", "INFO", required=False),
            json_logging=get_env_bool("JSON_LOGGING", True),
        ),
    )
