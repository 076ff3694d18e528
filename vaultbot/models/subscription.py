"""Subscription model: entitlement record per wallet."""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class Subscription(SQLModel, table=True):
    __tablename__ = "subscription"

    id: int | None = Field(default=None, primary_key=True)
    wallet_address: str = Field(unique=True, index=True)  # lower-cased
    plan_tier: str = "free"  # "free", "starter", "pro", "elite", "desktop"
    is_active: bool = True
    expires_at: datetime | None = None
    daily_trades_used: int = 0
    daily_trades_reset_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
