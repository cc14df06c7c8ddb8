"""APScheduler integration for periodic incident checks.

Uses AsyncIOScheduler with CronTrigger to run a reconciliation pass on a
configurable schedule.  No-ops gracefully if no cron expression is configured.
"""

import contextlib
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.cron import CronTrigger  # type: ignore[import-untyped]

from incident_relay.config import get_settings
from incident_relay.engine.runs import run_check
from incident_relay.state.store import IncidentStateStore

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


async def _scheduled_check_job(store: IncidentStateStore) -> None:
    """Async job executed by the scheduler. Never raises."""
    try:
        report = await run_check(store, trigger="scheduled")
        if report.rate_limited:
            logger.info("Scheduled check skipped (rate limited)")
    except Exception:
        logger.exception("Scheduled incident check failed")
        return

    try:
        purged = await store.kv.purge_expired()
        if purged:
            logger.info("Purged %d expired state entries", purged)
    except Exception:
        logger.warning("Failed to purge expired state entries", exc_info=True)


def start_scheduler(store: IncidentStateStore) -> None:
    """Start the APScheduler if a cron expression is configured."""
    global _scheduler  # noqa: PLW0603

    settings = get_settings()
    if not settings.check_schedule_cron:
        logger.info("Incident check scheduler disabled (CHECK_SCHEDULE_CRON not set)")
        return

    trigger = CronTrigger.from_crontab(settings.check_schedule_cron)
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        _scheduled_check_job,
        trigger=trigger,
        args=[store],
        id="incident_check",
        name="Status Page Incident Check",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info("Incident check scheduler started with cron: %s", settings.check_schedule_cron)


def stop_scheduler() -> None:
    """Gracefully shut down the scheduler if it is running."""
    global _scheduler  # noqa: PLW0603

    if _scheduler is not None:
        with contextlib.suppress(Exception):
            _scheduler.shutdown(wait=False)
        logger.info("Incident check scheduler stopped")
        _scheduler = None
