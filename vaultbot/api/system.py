"""System API: liveness, scheduler status, job logs, manual triggers, risk controls, emergency stop."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from vaultbot.database import get_session
from vaultbot.engine.runtime import get_runtime
from vaultbot.models.job_log import JobLog
from vaultbot.api.deps import get_current_operator
from vaultbot.utils.constants import JOB_NAMES

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    """Liveness probe: uptime and the last completed cycle of every job."""
    health = get_runtime().health()
    return {
        "status": health["status"],
        "uptime_seconds": health["uptime_seconds"],
        "last_cycles": health["last_cycles"],
    }


@router.get("/status", dependencies=[Depends(get_current_operator)])
def engine_status():
    return get_runtime().health()


@router.get("/scheduler", dependencies=[Depends(get_current_operator)])
def scheduler_status():
    """Current scheduler state with job details."""
    from vaultbot.engine.scheduler import get_scheduler_status
    return get_scheduler_status()


@router.post("/run/{job}", dependencies=[Depends(get_current_operator)])
async def trigger_job(job: str):
    """Manually run one cycle of a job."""
    if job not in JOB_NAMES:
        raise HTTPException(status_code=404, detail=f"Unknown job '{job}'")
    runtime = get_runtime()
    if runtime.is_running(job):
        raise HTTPException(status_code=409, detail=f"{job} cycle already running")
    counters = await runtime.run_job(job)
    if counters is None:
        raise HTTPException(status_code=500, detail=f"{job} cycle failed, see job logs")
    return {"status": "ok", "job": job, "result": counters}


@router.get("/logs", dependencies=[Depends(get_current_operator)])
def job_logs(
    job: str | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(JobLog).order_by(JobLog.timestamp.desc())
    if job is not None:
        stmt = stmt.where(JobLog.job == job)
    if status is not None:
        stmt = stmt.where(JobLog.status == status)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.get("/circuit-breaker", dependencies=[Depends(get_current_operator)])
def circuit_breaker_status():
    return get_runtime().context.breaker.snapshot()


@router.post("/circuit-breaker/reset", dependencies=[Depends(get_current_operator)])
def circuit_breaker_reset():
    breaker = get_runtime().context.breaker
    breaker.reset()
    return breaker.snapshot()


class PauseRequest(BaseModel):
    reason: str = "paused by operator"


@router.post("/pause", dependencies=[Depends(get_current_operator)])
def pause_trading(body: PauseRequest):
    """Stop new entries. Open positions keep being monitored."""
    context = get_runtime().context
    context.pause(body.reason)
    return {"paused": True, "reason": context.pause_reason}


@router.post("/resume", dependencies=[Depends(get_current_operator)])
def resume_trading():
    get_runtime().context.resume()
    return {"paused": False}


class EmergencyStopRequest(BaseModel):
    close_positions: bool = True
    disable_wallets: bool = False


@router.post("/emergency-stop", dependencies=[Depends(get_current_operator)])
async def emergency_stop(body: EmergencyStopRequest):
    """Emergency stop: pause entries, close all positions and optionally disable all wallets."""
    from vaultbot.services.emergency_stop import run_emergency_stop

    return await run_emergency_stop(
        get_runtime(),
        close_positions=body.close_positions,
        disable_wallets=body.disable_wallets,
    )
