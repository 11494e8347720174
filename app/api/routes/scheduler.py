"""Scheduler control API routes."""

from fastapi import APIRouter, Depends

from app.core.engine import Engine, get_engine
from app.core.scheduler import get_scheduler
from app.schemas.dashboard import TickResponse

router = APIRouter(prefix="/api/v1/scheduler", tags=["scheduler"])


@router.post("/run", response_model=TickResponse)
async def run_tick(engine: Engine = Depends(get_engine)):
    """Run one engine tick now.

    Returns ``skipped=true`` if a tick is already running.
    """
    return await engine.orchestrator.tick()


@router.get("/status")
async def get_scheduler_status(engine: Engine = Depends(get_engine)):
    """Scheduled jobs and the outcome of the last tick."""
    scheduler = get_scheduler()
    jobs = []
    if scheduler:
        for job in scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            })

    last_tick = engine.orchestrator.last_tick
    return {
        "status": "running" if scheduler and scheduler.running else "not_running",
        "tick_in_progress": engine.orchestrator.running,
        "jobs": jobs,
        "last_tick": last_tick.model_dump(mode="json") if last_tick else None,
        "circuit_breakers": engine.breakers.states(),
    }
