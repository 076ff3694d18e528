"""JobLog model: one row per scheduled job run."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class JobLog(SQLModel, table=True):
    __tablename__ = "job_log"

    id: int | None = Field(default=None, primary_key=True)
    job: str = Field(index=True)  # "trading", "monitoring", "reconciliation", "fee_sweep"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: str  # "success", "error", "skipped"
    message: str | None = None
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
