"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from restock.config import settings
from restock.worker.runner import PredictionRunError, prediction_runner

logger = logging.getLogger(__name__)


async def run_nightly_prediction() -> None:
    """Scheduled trigger for the prediction engine."""
    try:
        summary = await prediction_runner.run(trigger="scheduled")
    except PredictionRunError as e:
        # Already logged and recorded by the runner; the next night retries.
        logger.error(f"Nightly prediction run {e.run_id[:16]} aborted: {e}")
        return

    if summary.skipped:
        logger.info("Nightly prediction skipped, a run was already in progress")


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    The prediction engine runs once a day at
    settings.prediction_cron_hour:settings.prediction_cron_minute UTC.

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        run_nightly_prediction,
        CronTrigger(
            hour=settings.prediction_cron_hour,
            minute=settings.prediction_cron_minute,
            timezone="UTC",
        ),
        id="nightly_prediction",
        name="Recalculate purchase cycles and auto-add due products",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=3600,
        replace_existing=True,
    )

    logger.info(
        f"Scheduled nightly prediction at "
        f"{settings.prediction_cron_hour:02d}:{settings.prediction_cron_minute:02d} UTC"
    )
    return scheduler
