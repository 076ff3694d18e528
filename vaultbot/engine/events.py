"""Cycle bookkeeping shared by the scheduled jobs."""

import logging
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from vaultbot.models.job_log import JobLog

logger = logging.getLogger(__name__)


def notify(message: str):
    """Send a Telegram notification (fire-and-forget)."""
    try:
        from vaultbot.services.telegram_bot import get_bot
        bot = get_bot()
        if bot:
            bot.post(message)
    except Exception as e:
        logger.debug(f"Telegram notification dropped: {e}")


def log_job(
    engine: Engine,
    job: str,
    status: str,
    message: str | None = None,
    details: dict[str, Any] | None = None,
):
    """Write a JobLog entry. A failing write is logged, never raised."""
    try:
        with Session(engine) as session:
            session.add(JobLog(job=job, status=status, message=message, details=details))
            session.commit()
    except SQLAlchemyError as e:
        logger.error(f"[{job}] Could not write job log: {e}")
