"""APScheduler configuration and job management."""

from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from tastegraph.logging import get_logger

logger = get_logger(__name__)

_scheduler: AsyncIOScheduler | None = None

GENERATION_SWEEP_JOB_ID = "generation_sweep"


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global _scheduler

    if _scheduler is None:
        logger.info("Creating scheduler")
        _scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
        )

    return _scheduler


def start_scheduler() -> None:
    """Start the scheduler if not already running."""
    scheduler = get_scheduler()
    if not scheduler.running:
        logger.info("Starting scheduler")
        scheduler.start()


def shutdown_scheduler() -> None:
    """Shutdown the scheduler gracefully."""
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        logger.info("Shutting down scheduler")
        _scheduler.shutdown(wait=True)
    _scheduler = None


def remove_job(job_id: str) -> bool:
    """Remove a job from the scheduler."""
    scheduler = get_scheduler()
    try:
        scheduler.remove_job(job_id)
    except JobLookupError:
        logger.warning(f"Job {job_id} not found")
        return False
    logger.info(f"Removed job {job_id}")
    return True


def setup_sweep_job() -> str:
    """Schedule the periodic sweep of stale generation state."""
    from tastegraph.config import config
    from tastegraph.jobs.sweep import run_generation_sweep

    scheduler = get_scheduler()
    job = scheduler.add_job(
        run_generation_sweep,
        "interval",
        minutes=config.sweep_interval_minutes,
        id=GENERATION_SWEEP_JOB_ID,
        name="Generation State Sweep",
        replace_existing=True,
    )
    logger.info(
        f"Scheduled generation sweep: every {config.sweep_interval_minutes}m, "
        f"job_id={job.id}"
    )
    return job.id


def setup_all_jobs() -> None:
    """Setup all scheduled jobs."""
    setup_sweep_job()
    logger.info("All jobs configured")
