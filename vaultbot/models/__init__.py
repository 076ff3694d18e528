"""Database models."""

from vaultbot.models.position import Position, PositionStatus, CloseReason, Direction
from vaultbot.models.position_event import PositionEvent
from vaultbot.models.job_log import JobLog
from vaultbot.models.trading_wallet import TradingWallet
from vaultbot.models.subscription import Subscription
from vaultbot.models.credential import Credential
from vaultbot.models.operator import Operator

__all__ = [
    "Position",
    "PositionStatus",
    "CloseReason",
    "Direction",
    "PositionEvent",
    "JobLog",
    "TradingWallet",
    "Subscription",
    "Credential",
    "Operator",
]
