"""Scheduler for background jobs (occurrence materialization, overdue scan)."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.core.clock import Clock, utc_now
from src.core.config import Settings, settings
from src.core.scheduler_tracker import retry_job_with_backoff
from src.services.materializer import OccurrenceMaterializer
from src.services.notification_service import (
    NotificationDispatcher,
    NotificationFact,
    NotificationType,
    dispatch_safely,
)
from src.services.projection import TaskProjection


logger = logging.getLogger(__name__)

MATERIALIZE_JOB = "materialize_occurrences"
OVERDUE_JOB = "overdue_scan"


async def materialize_occurrences(materializer: OccurrenceMaterializer) -> None:
    """Materialize upcoming occurrences for every tenant.

    Raises when any template failed so the run is retried and tracked.
    """
    report = await materializer.materialize_all()
    if report.failures:
        failed = ", ".join(failure.template_id for failure in report.failures)
        msg = f"{len(report.failures)} template(s) failed to materialize: {failed}"
        raise RuntimeError(msg)


async def scan_overdue_tasks(
    projection: TaskProjection,
    dispatcher: NotificationDispatcher,
    now: Clock = utc_now,
) -> int:
    """Emit a ``task_overdue`` fact for every open task past its due date.

    Returns:
        Number of facts emitted
    """
    overdue = await projection.list_overdue_tasks(now=now())
    emitted = 0
    for task in overdue:
        fact = NotificationFact(
            type=NotificationType.TASK_OVERDUE,
            tenant_id=task["tenant_id"],
            user_id=task["assigned_to_id"],
            task_id=task["id"],
            title=task["title"],
        )
        if await dispatch_safely(dispatcher, fact):
            emitted += 1
    logger.info("Overdue scan finished", extra={"overdue_count": len(overdue), "emitted_count": emitted})
    return emitted


def build_scheduler(
    materializer: OccurrenceMaterializer,
    projection: TaskProjection,
    dispatcher: NotificationDispatcher,
    app_settings: Settings | None = None,
) -> AsyncIOScheduler:
    """Create the scheduler and register all jobs (not started)."""
    active = app_settings or settings
    scheduler = AsyncIOScheduler()

    async def run_materialization() -> None:
        await retry_job_with_backoff(lambda: materialize_occurrences(materializer), MATERIALIZE_JOB)

    async def run_overdue_scan() -> None:
        await retry_job_with_backoff(lambda: scan_overdue_tasks(projection, dispatcher), OVERDUE_JOB)

    scheduler.add_job(
        run_materialization,
        trigger=CronTrigger(hour=active.materialization_hour, minute=0),
        id=MATERIALIZE_JOB,
        name="Materialize Recurring Task Occurrences",
        replace_existing=True,
    )
    logger.info(f"Scheduled materialization job: daily at {active.materialization_hour}:00")

    scheduler.add_job(
        run_overdue_scan,
        trigger=CronTrigger(hour=active.overdue_scan_hour, minute=0),
        id=OVERDUE_JOB,
        name="Scan Overdue Tasks",
        replace_existing=True,
    )
    logger.info(f"Scheduled overdue scan job: daily at {active.overdue_scan_hour}:00")

    return scheduler


def start_scheduler(scheduler: AsyncIOScheduler) -> None:
    """Start the scheduler. Called during FastAPI app startup."""
    logger.info("Starting scheduler")
    scheduler.start()
    logger.info("Scheduler started successfully")


def stop_scheduler(scheduler: AsyncIOScheduler) -> None:
    """Stop the scheduler. Called during FastAPI app shutdown."""
    logger.info("Stopping scheduler")
    scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")
