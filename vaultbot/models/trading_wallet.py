"""TradingWallet model: per-wallet, per-chain auto-trading settings."""

from datetime import datetime, timezone

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class TradingWallet(SQLModel, table=True):
    __tablename__ = "trading_wallet"
    __table_args__ = (UniqueConstraint("wallet_address", "chain_id", name="uq_trading_wallet_chain"),)

    id: int | None = Field(default=None, primary_key=True)
    wallet_address: str = Field(index=True)  # lower-cased
    chain_id: int = 42161
    label: str = ""

    # Position parameters
    leverage: float = 1.0
    take_profit_percent: float = 5.0
    trailing_stop_percent: float = 1.0
    profit_lock_percent: float = 0.5
    trailing_step_percent: float | None = None  # None = continuous trailing
    use_signal_levels: bool = True  # prefer the signal's suggested TP / trailing %

    # Signal strategy: "conservative", "normal", "risky"
    strategy: str = "normal"

    is_enabled: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
