"""Background job scheduler for the engine tick."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import get_settings
from app.core.orchestrator import Orchestrator

logger = logging.getLogger(__name__)
settings = get_settings()

TICK_JOB_ID = "engine_tick"

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


def init_scheduler(orchestrator: Orchestrator, interval_seconds: int | None = None) -> AsyncIOScheduler:
    """Initialize the scheduler with the engine tick job.

    One tick runs at a time; ticks missed while one is running are
    coalesced into a single run.
    """
    global scheduler

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        orchestrator.tick,
        trigger=IntervalTrigger(seconds=interval_seconds or settings.scheduler_interval_seconds),
        id=TICK_JOB_ID,
        name="Score deadlines, dispatch and escalate notifications",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    logger.info(
        f"Scheduler initialized with engine tick every "
        f"{interval_seconds or settings.scheduler_interval_seconds}s"
    )
    return scheduler


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the scheduler instance."""
    return scheduler

