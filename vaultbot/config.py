"""Application configuration via environment variables."""

from pathlib import Path

from pydantic import BaseModel
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class TokenSettings(BaseModel):
    address: str
    symbol: str
    market_symbol: str = ""  # Hyperliquid ticker; derived from symbol when empty
    decimals: int = 18

    @property
    def ticker(self) -> str:
        return self.market_symbol or self.symbol.removeprefix("W")


class ChainSettings(BaseModel):
    name: str
    rpc_url: str = ""
    vault_address: str = ""
    vault_version: str = "paper"  # "paper", "v6", "v8"
    max_positions: int = 1
    tokens: list[TokenSettings] = []


ARBITRUM_TOKENS = [
    TokenSettings(address="0x82aF49447D8a07e3bd95BD0d56f35241523fBab1", symbol="WETH", market_symbol="ETH"),
    TokenSettings(address="0x912CE59144191C1204E64559FE8253a0e49E6548", symbol="ARB", market_symbol="ARB"),
    TokenSettings(address="0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f", symbol="WBTC", market_symbol="BTC", decimals=8),
]


class Settings(BaseSettings):
    database_url: str = "sqlite:///./vaultbot.db"
    encryption_key: str = ""  # Fernet key; generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]

    # Auth
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 1440  # 24 hours

    # Telegram
    telegram_bot_token: str = ""
    telegram_chat_ids: list[int] = []

    # Job intervals
    trading_interval_seconds: int = 30
    monitoring_interval_seconds: int = 10
    reconciliation_interval_seconds: int = 300
    fee_sweep_interval_seconds: int = 600

    # Timeouts for external calls
    signal_timeout_seconds: float = 15.0
    price_timeout_seconds: float = 5.0
    rpc_timeout_seconds: float = 10.0
    tx_timeout_seconds: float = 120.0

    # Risk controls
    max_failures_before_pause: int = 2
    failure_reset_seconds: float = 300.0
    trade_cooldown_seconds: float = 300.0
    min_collateral: float = 1.0  # USDC

    # Behaviour switches
    require_subscription: bool = True
    reconcile_estimate_exit: bool = False
    closing_grace_seconds: float = 600.0
    close_retry_seconds: float = 30.0  # back-off before the monitor resubmits a failed close
    price_source: str = "hyperliquid"  # "hyperliquid" or "vault"
    paper_starting_balance: float = 1000.0  # USDC credited to each wallet by the paper vault

    chains: dict[int, ChainSettings] = {
        42161: ChainSettings(name="Arbitrum", max_positions=3, tokens=ARBITRUM_TOKENS),
    }

    model_config = {"env_prefix": "VB_", "env_file": ".env", "extra": "ignore"}


settings = Settings()
