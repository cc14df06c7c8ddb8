"""TypedDict models for persisted state records."""

from typing_extensions import TypedDict


class StoredIncidentState(TypedDict):
    status: str
    timestamp: str  # ISO 8601, when the status was stored


class RunMetrics(TypedDict):
    lastRun: str | None  # ISO 8601
    notificationsSent: int
    incidentsProcessed: int
    errors: int


def empty_metrics() -> RunMetrics:
    return RunMetrics(lastRun=None, notificationsSent=0, incidentsProcessed=0, errors=0)
