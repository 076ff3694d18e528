"""APScheduler integration for FastAPI.

Runs the four engine jobs on fixed intervals. Each fire goes through
`Runtime.run_job`, which skips a fire that overlaps a running cycle.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from vaultbot.config import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


def _job_id(name: str) -> str:
    return f"job_{name}"


def _intervals() -> dict[str, int]:
    return {
        "trading": settings.trading_interval_seconds,
        "monitoring": settings.monitoring_interval_seconds,
        "reconciliation": settings.reconciliation_interval_seconds,
        "fee_sweep": settings.fee_sweep_interval_seconds,
    }


async def _run(name: str):
    from vaultbot.engine.runtime import get_runtime

    await get_runtime().run_job(name)


def add_job(name: str, seconds: int):
    """Add or replace the interval job for an engine job."""
    job_id = _job_id(name)
    if scheduler.get_job(job_id):
        scheduler.remove_job(job_id)

    scheduler.add_job(
        _run,
        trigger=IntervalTrigger(seconds=seconds),
        args=[name],
        id=job_id,
        name=name,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=max(seconds, 10),
    )
    logger.info(f"Scheduled {name} every {seconds}s")


def start_scheduler():
    """Start the scheduler with every enabled job. An interval of 0 disables a job."""
    for name, seconds in _intervals().items():
        if seconds > 0:
            add_job(name, seconds)

    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if j.next_run_time else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
