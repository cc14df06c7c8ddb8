"""Run-level rate limiting and the persisted run metrics."""

import logging
from datetime import datetime, timedelta

from incident_relay.state.models import RunMetrics
from incident_relay.state.store import IncidentStateStore

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(minutes=1)


async def is_rate_limited(
    store: IncidentStateStore,
    now: datetime,
    cooldown: timedelta = DEFAULT_COOLDOWN,
) -> bool:
    """True if the last notification-sending run finished less than ``cooldown`` ago."""
    last = await store.get_last_notification()
    if last is None:
        return False
    return now - last < cooldown


async def record_run(
    store: IncidentStateStore,
    *,
    now: datetime,
    sent: int,
    processed: int,
    errors: int,
) -> RunMetrics:
    """Add this run's counts to the stored totals and move the rate-limit marker if anything was sent."""
    current = await store.get_metrics()
    metrics = await store.put_metrics(
        {
            "lastRun": now.isoformat(),
            "notificationsSent": current["notificationsSent"] + sent,
            "incidentsProcessed": current["incidentsProcessed"] + processed,
            "errors": current["errors"] + errors,
        }
    )
    if sent > 0:
        await store.set_last_notification(now)
    return metrics


async def record_failed_run(store: IncidentStateStore, now: datetime) -> None:
    """Count an aborted run in the stored error total. Never raises."""
    try:
        current = await store.get_metrics()
        await store.put_metrics({"lastRun": now.isoformat(), "errors": current["errors"] + 1})
    except Exception:
        logger.warning("Could not record failed run in metrics store", exc_info=True)
