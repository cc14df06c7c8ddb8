"""Incident reconciliation: diff fetched incidents against stored state and notify.

One call to ``run_reconciliation`` is one pass:

1. skip entirely if a notification-sending run happened within the cooldown;
2. fetch incidents and keep those started within the recency window;
3. read their stored state concurrently;
4. classify each incident (impact filter first, then the status diff);
5. fold new incidents into a digest when there are enough of them;
6. dispatch every notification concurrently, tolerating individual failures;
7. persist incident state, then run metrics and the rate-limit marker.

The engine keeps nothing between runs; all cross-run state is in the store.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

import httpx

from incident_relay.config import Settings, get_settings
from incident_relay.engine.rate_limit import is_rate_limited, record_run
from incident_relay.notify.dispatcher import DispatchError, RetryPolicy, send_notification
from incident_relay.notify.formatter import (
    DEFAULT_STATUS_PAGE_URL,
    CardMessage,
    format_digest,
    format_monitoring,
    format_new_incident,
    format_resolved,
    format_status_change,
)
from incident_relay.observability.metrics import INCIDENTS_PROCESSED_TOTAL, NOTIFICATIONS_TOTAL
from incident_relay.state.models import StoredIncidentState
from incident_relay.state.store import IncidentStateStore
from incident_relay.status.fetcher import fetch_snapshot
from incident_relay.status.models import Incident, impact_priority, status_priority

logger = logging.getLogger(__name__)


class Action(StrEnum):
    NEW = "new"
    RESOLVED = "resolved"
    MONITORING = "monitoring"
    STATUS_PROGRESSED = "status_progressed"
    STATUS_UPDATED = "status_updated"  # persisted silently, no notification
    FILTERED = "filtered"
    NONE = "none"


# Actions that overwrite the stored status
_WRITE_ACTIONS = frozenset(
    {Action.NEW, Action.RESOLVED, Action.MONITORING, Action.STATUS_PROGRESSED, Action.STATUS_UPDATED}
)


@dataclass
class ProcessResult:
    id: str
    name: str
    impact: str
    status: str
    stored_status: str | None
    action: Action

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "impact": self.impact,
            "status": self.status,
            "storedStatus": self.stored_status,
            "action": str(self.action),
        }


@dataclass
class Notification:
    """A formatted card waiting to be sent, with context for logging."""

    kind: str
    payload: CardMessage
    context: str


@dataclass
class ReconciliationReport:
    total_incidents: int = 0
    results: list[ProcessResult] = field(default_factory=list)
    notifications_sent: int = 0
    notifications_failed: int = 0
    rate_limited: bool = False

    def to_response(self) -> dict[str, Any]:
        """Body returned by the manual trigger."""
        if self.rate_limited:
            message = "Rate limited: a notification batch was sent less than a minute ago"
        else:
            message = "Incident check completed"
        return {
            "message": message,
            "totalIncidents": self.total_incidents,
            "results": [r.to_dict() for r in self.results],
        }


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def is_recent(incident: Incident, now: datetime, window: timedelta) -> bool:
    return now - incident.start_time <= window


def is_below_min_impact(incident: Incident, min_impact_level: str) -> bool:
    if not min_impact_level:
        return False
    return impact_priority(incident.impact) < impact_priority(min_impact_level)


def classify(
    incident: Incident,
    stored: StoredIncidentState | None,
    min_impact_level: str = "",
) -> Action:
    """Decide what a single incident needs this run. First matching rule wins."""
    if is_below_min_impact(incident, min_impact_level):
        return Action.FILTERED
    if stored is None:
        return Action.NEW

    previous = stored["status"]
    current = incident.status
    if previous != "resolved" and current == "resolved":
        return Action.RESOLVED
    # Must stay ahead of the priority comparison below.
    if previous != "monitoring" and current == "monitoring":
        return Action.MONITORING
    if previous != current:
        if status_priority(current) > status_priority(previous):
            return Action.STATUS_PROGRESSED
        return Action.STATUS_UPDATED
    return Action.NONE


# ---------------------------------------------------------------------------
# Notification planning and dispatch
# ---------------------------------------------------------------------------


def _describe(incident: Incident) -> str:
    return f"incident {incident.id} ({incident.name})"


def plan_notifications(
    classified: list[tuple[Incident, StoredIncidentState | None, Action]],
    *,
    digest_threshold: int,
    status_page_url: str,
    display_timezone: str,
    now: datetime,
) -> list[Notification]:
    """Turn classified incidents into the list of cards to send."""
    notifications: list[Notification] = []
    new_incidents: list[Incident] = []

    for incident, stored, action in classified:
        if action is Action.NEW:
            if incident.status != "resolved":
                new_incidents.append(incident)
        elif action is Action.RESOLVED:
            notifications.append(
                Notification(
                    kind="resolved",
                    payload=format_resolved(incident, status_page_url=status_page_url, tz=display_timezone, now=now),
                    context=_describe(incident),
                )
            )
        elif action is Action.MONITORING:
            notifications.append(
                Notification(
                    kind="monitoring",
                    payload=format_monitoring(incident, status_page_url=status_page_url),
                    context=_describe(incident),
                )
            )
        elif action is Action.STATUS_PROGRESSED and stored is not None:
            notifications.append(
                Notification(
                    kind="status_progressed",
                    payload=format_status_change(incident, stored["status"], status_page_url=status_page_url),
                    context=_describe(incident),
                )
            )

    if len(new_incidents) >= digest_threshold:
        notifications.append(
            Notification(
                kind="digest",
                payload=format_digest(new_incidents, status_page_url=status_page_url),
                context=f"digest of {len(new_incidents)} new incidents",
            )
        )
    else:
        notifications.extend(
            Notification(
                kind="new",
                payload=format_new_incident(incident, status_page_url=status_page_url, tz=display_timezone),
                context=_describe(incident),
            )
            for incident in new_incidents
        )
    return notifications


async def dispatch_all(
    notifications: list[Notification],
    webhook_url: str,
    *,
    client: httpx.AsyncClient,
    policy: RetryPolicy,
) -> tuple[int, int]:
    """Send every notification concurrently. Returns ``(succeeded, failed)``."""
    outcomes = await asyncio.gather(
        *[send_notification(n.payload, webhook_url, client=client, policy=policy) for n in notifications],
        return_exceptions=True,
    )

    succeeded = failed = 0
    for notification, outcome in zip(notifications, outcomes, strict=True):
        if isinstance(outcome, BaseException):
            failed += 1
            NOTIFICATIONS_TOTAL.labels(kind=notification.kind, status="error").inc()
            if isinstance(outcome, DispatchError):
                logger.error(
                    "Failed to send %s notification for %s: %s", notification.kind, notification.context, outcome
                )
            else:
                logger.error(
                    "Unexpected error sending %s notification for %s",
                    notification.kind,
                    notification.context,
                    exc_info=outcome,
                )
        else:
            succeeded += 1
            NOTIFICATIONS_TOTAL.labels(kind=notification.kind, status="success").inc()
            logger.info("Sent %s notification for %s", notification.kind, notification.context)
    return succeeded, failed


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def run_reconciliation(
    store: IncidentStateStore,
    settings: Settings | None = None,
    *,
    now: datetime | None = None,
    client: httpx.AsyncClient | None = None,
) -> ReconciliationReport:
    """Run one reconciliation pass.

    Args:
        store: Incident state store.
        settings: Defaults to the cached application settings.
        now: Reference time for recency, rate limiting and stored timestamps.
        client: Optional shared HTTP client for the fetch and the webhook posts.

    Raises:
        FetchError: If the status source cannot be read. Nothing is written.
        sqlite3.Error: If the state store fails.
    """
    settings = settings or get_settings()
    now = now or datetime.now(UTC)

    cooldown = timedelta(seconds=settings.rate_limit_cooldown_seconds)
    if await is_rate_limited(store, now, cooldown):
        logger.info("Rate limited: last notification batch was within %s, skipping run", cooldown)
        return ReconciliationReport(rate_limited=True)

    if client is None:
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as own_client:
            return await _reconcile(store, settings, now, own_client)
    return await _reconcile(store, settings, now, client)


async def _reconcile(
    store: IncidentStateStore,
    settings: Settings,
    now: datetime,
    client: httpx.AsyncClient,
) -> ReconciliationReport:
    snapshot = await fetch_snapshot(settings.status_api_url, client=client)
    window = timedelta(days=settings.recency_window_days)
    incidents = [i for i in snapshot.incidents if is_recent(i, now, window)]
    logger.info(
        "Found %d incidents, %d started within the last %d days",
        len(snapshot.incidents),
        len(incidents),
        settings.recency_window_days,
    )

    stored_states = await store.batch_get(i.id for i in incidents)

    report = ReconciliationReport(total_incidents=len(incidents))
    classified: list[tuple[Incident, StoredIncidentState | None, Action]] = []
    for incident in incidents:
        stored = stored_states.get(incident.id)
        action = classify(incident, stored, settings.min_impact_level)
        classified.append((incident, stored, action))
        INCIDENTS_PROCESSED_TOTAL.labels(action=str(action)).inc()
        report.results.append(
            ProcessResult(
                id=incident.id,
                name=incident.name,
                impact=incident.impact,
                status=incident.status,
                stored_status=stored["status"] if stored else None,
                action=action,
            )
        )
        if action is not Action.NONE:
            logger.info(
                "Incident %s (%s): %s -> %s [%s]",
                incident.id,
                incident.name,
                stored["status"] if stored else "-",
                incident.status,
                action,
            )

    page_url = snapshot.page.url if snapshot.page else ""
    status_page_url = settings.status_page_url or page_url or DEFAULT_STATUS_PAGE_URL
    notifications = plan_notifications(
        classified,
        digest_threshold=settings.digest_threshold,
        status_page_url=status_page_url,
        display_timezone=settings.display_timezone,
        now=now,
    )

    if notifications:
        policy = RetryPolicy(
            max_attempts=settings.dispatch_max_attempts,
            base_delay_seconds=settings.dispatch_backoff_seconds,
        )
        report.notifications_sent, report.notifications_failed = await dispatch_all(
            notifications,
            settings.google_chat_webhook.get_secret_value(),
            client=client,
            policy=policy,
        )

    await asyncio.gather(
        *[
            store.put(incident.id, incident.status, now=now)
            for incident, _, action in classified
            if action in _WRITE_ACTIONS
        ]
    )

    await record_run(
        store,
        now=now,
        sent=report.notifications_sent,
        processed=report.total_incidents,
        errors=report.notifications_failed,
    )
    logger.info(
        "Run complete: %d incidents processed, %d notifications sent, %d failed",
        report.total_incidents,
        report.notifications_sent,
        report.notifications_failed,
    )
    return report
