"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from lastmile.config import settings
from lastmile.worker.tasks import TaskRunner, task_runner

logger = logging.getLogger(__name__)


def setup_scheduler(runner: TaskRunner | None = None) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Active shipment refresh every settings.shipment_refresh_interval_minutes
    - Recent order import for all accounts every settings.account_sync_interval_minutes
    - Token refresh every settings.token_refresh_interval_hours
    - Problem check every settings.problem_check_interval_minutes
    - Alert cleanup daily at settings.alert_cleanup_hour
    - Shipment retention daily at settings.retention_hour

    Returns:
        Configured scheduler instance
    """
    runner = runner or task_runner
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        runner.refresh_active_shipments,
        IntervalTrigger(minutes=max(1, settings.shipment_refresh_interval_minutes)),
        id="shipment_refresh",
        name="Refresh in-flight shipments",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.sync_all_accounts,
        IntervalTrigger(minutes=max(1, settings.account_sync_interval_minutes)),
        id="account_sync",
        name="Import recent orders from every account",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.refresh_tokens,
        IntervalTrigger(hours=max(1, settings.token_refresh_interval_hours)),
        id="token_refresh",
        name="Refresh expiring marketplace tokens",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.check_for_problems,
        IntervalTrigger(minutes=max(1, settings.problem_check_interval_minutes)),
        id="problem_check",
        name="Detect stuck and orphaned shipments",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.cleanup_alerts,
        CronTrigger(hour=settings.alert_cleanup_hour, minute=0),
        id="alert_cleanup",
        name="Clean up orphaned and duplicate alerts",
        max_instances=1,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.cleanup_old_shipments,
        CronTrigger(hour=settings.retention_hour, minute=30),
        id="shipment_retention",
        name="Slim finished shipments and expire old scan logs",
        max_instances=1,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: shipment refresh every %d minutes, account sync every %d minutes, "
        "token refresh every %d hours, problem check every %d minutes, alert cleanup at %02d:00, "
        "retention at %02d:30",
        settings.shipment_refresh_interval_minutes,
        settings.account_sync_interval_minutes,
        settings.token_refresh_interval_hours,
        settings.problem_check_interval_minutes,
        settings.alert_cleanup_hour,
        settings.retention_hour,
    )

    return scheduler
