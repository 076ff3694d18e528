"""Subscription entitlement: may this wallet open another trade today?"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from vaultbot.config import settings
from vaultbot.models.subscription import Subscription
from vaultbot.utils.constants import PAPER_ONLY_TIERS, PLAN_DAILY_TRADES

logger = logging.getLogger(__name__)


@dataclass
class TradePermission:
    allowed: bool
    plan_tier: str
    daily_trades_remaining: int  # -1 = unlimited
    reason: str | None = None


def _aware(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


class EntitlementService:
    def __init__(self, engine: Engine, now: Callable[[], datetime] | None = None, require_subscription: bool | None = None):
        self.engine = engine
        self.now = now or (lambda: datetime.now(timezone.utc))
        self.require_subscription = (
            settings.require_subscription if require_subscription is None else require_subscription
        )

    def can_trade(self, wallet_address: str, paper: bool = False) -> TradePermission:
        wallet = wallet_address.lower()
        now = self.now()
        with Session(self.engine) as session:
            sub = session.exec(select(Subscription).where(Subscription.wallet_address == wallet)).first()

            if sub is None:
                if self.require_subscription:
                    return TradePermission(False, "none", 0, "No active subscription found")
                return TradePermission(True, "none", -1)

            if not sub.is_active:
                return TradePermission(False, sub.plan_tier, 0, "Subscription is not active")
            if sub.expires_at is not None and now > _aware(sub.expires_at):
                return TradePermission(False, sub.plan_tier, 0, "Subscription has expired")
            if sub.plan_tier in PAPER_ONLY_TIERS and not paper:
                return TradePermission(False, sub.plan_tier, 0, f"{sub.plan_tier} tier is limited to paper trading")

            limit = PLAN_DAILY_TRADES.get(sub.plan_tier)
            if limit is None:
                return TradePermission(False, sub.plan_tier, 0, "Invalid subscription tier")

            if now >= _aware(sub.daily_trades_reset_at):
                sub.daily_trades_used = 0
                sub.daily_trades_reset_at = now + timedelta(days=1)
                session.add(sub)
                session.commit()

            if limit == -1:
                return TradePermission(True, sub.plan_tier, -1)
            remaining = max(0, limit - sub.daily_trades_used)
            if remaining <= 0:
                return TradePermission(False, sub.plan_tier, 0, "Daily trade limit reached")
            return TradePermission(True, sub.plan_tier, remaining)

    def record_trade(self, wallet_address: str):
        """Count one executed trade against the daily limit."""
        with Session(self.engine) as session:
            sub = session.exec(
                select(Subscription).where(Subscription.wallet_address == wallet_address.lower())
            ).first()
            if sub is None:
                return
            sub.daily_trades_used += 1
            session.add(sub)
            session.commit()
            logger.debug(f"[entitlement] {wallet_address[:10]} used {sub.daily_trades_used} trades today")
