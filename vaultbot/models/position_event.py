"""PositionEvent model: append-only audit row for every ledger transition."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class PositionEvent(SQLModel, table=True):
    __tablename__ = "position_event"

    id: int | None = Field(default=None, primary_key=True)
    position_id: int = Field(foreign_key="position.id", index=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event: str  # "opened", "stop_armed", "stop_advanced", "closing", "closed", "failed", ...
    price: float | None = None
    message: str | None = None
    data: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
