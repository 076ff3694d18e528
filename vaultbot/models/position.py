"""Position model: the permanent ledger row for every vault position."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Index, text
from sqlmodel import SQLModel, Field

from vaultbot.engine.protection import Armed, Protection, ProtectionState, Unarmed


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


class CloseReason(str, Enum):
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    STOP_LOSS = "stop_loss"
    MANUAL = "manual"
    EMERGENCY_CLOSE = "emergency_close"
    SIGNAL_REVERSAL = "signal_reversal"
    SYNC_FAILURE = "sync-failure"


# Rows in these states hold the (wallet, chain, token) slot.
ACTIVE_STATUSES = (PositionStatus.OPEN.value, PositionStatus.CLOSING.value)

_BLOCKING_PREDICATE = (
    "status IN ('open', 'closing') OR (status = 'failed' AND reconciled_at IS NULL)"
)


class Position(SQLModel, table=True):
    __tablename__ = "position"
    __table_args__ = (
        Index("ix_position_wallet_chain_token_status", "wallet_address", "chain_id", "token_address", "status"),
        Index(
            "ux_position_blocking_token",
            "wallet_address", "chain_id", "token_address",
            unique=True,
            sqlite_where=text(_BLOCKING_PREDICATE),
            postgresql_where=text(_BLOCKING_PREDICATE),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    wallet_address: str = Field(index=True)  # lower-cased
    chain_id: int
    token_address: str
    token_symbol: str
    direction: str  # Direction value

    # Entry
    entry_price: float
    entry_amount: float  # notional exposure in USDC (collateral x leverage)
    token_amount: float = 0.0
    entry_tx_hash: str = Field(unique=True)

    # Protection
    highest_price: float
    lowest_price: float
    trailing_stop_price: float | None = None
    trailing_stop_percent: float = 1.0
    trailing_step_percent: float | None = None  # set -> increment trailing
    take_profit_price: float | None = None
    take_profit_percent: float = 0.0
    profit_lock_percent: float = 0.5
    stop_activated: bool = False

    # Leverage
    leverage: float = 1.0
    collateral_amount: float = 0.0
    borrowed_amount: float = 0.0
    health_factor: float | None = None

    # Lifecycle
    status: str = Field(default=PositionStatus.OPEN.value, index=True)
    close_reason: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    closed_at: datetime | None = None
    reconciled_at: datetime | None = None

    # Exit
    exit_price: float | None = None
    exit_amount: float | None = None
    exit_tx_hash: str | None = None
    profit_loss: float | None = None
    profit_loss_percent: float | None = None

    @property
    def is_long(self) -> bool:
        return self.direction == Direction.LONG.value

    @property
    def watermark(self) -> float:
        return self.highest_price if self.is_long else self.lowest_price

    @property
    def protection(self) -> Protection:
        if self.stop_activated and self.trailing_stop_price is not None:
            return Armed(stop_price=self.trailing_stop_price, watermark=self.watermark)
        return Unarmed()

    def protection_state(self) -> ProtectionState:
        """Snapshot of the fields the protection engine works on."""
        return ProtectionState(
            is_long=self.is_long,
            entry_price=self.entry_price,
            profit_lock_percent=self.profit_lock_percent,
            take_profit_price=self.take_profit_price,
            protection=self.protection,
        )

    def apply_protection(self, protection: Protection) -> None:
        """Write a protection variant back onto the row's columns."""
        if isinstance(protection, Armed):
            self.stop_activated = True
            self.trailing_stop_price = protection.stop_price
            if self.is_long:
                self.highest_price = max(self.highest_price, protection.watermark)
            else:
                self.lowest_price = min(self.lowest_price, protection.watermark)
        else:
            self.stop_activated = False
            self.trailing_stop_price = None
