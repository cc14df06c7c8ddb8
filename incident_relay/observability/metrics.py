"""Prometheus metric definitions for incident-relay self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Histogram, Info

RUN_DURATION_BUCKETS = (0.5, 1.0, 2.0, 5.0, 10.0, 15.0, 30.0, 60.0)

# ---------------------------------------------------------------------------
# Reconciliation runs
# ---------------------------------------------------------------------------

RUNS_TOTAL = Counter(
    "incident_relay_runs_total",
    "Total number of reconciliation runs",
    labelnames=["trigger", "status"],
)

RUN_DURATION = Histogram(
    "incident_relay_run_duration_seconds",
    "Time taken by a reconciliation run in seconds",
    labelnames=["trigger"],
    buckets=RUN_DURATION_BUCKETS,
)

INCIDENTS_PROCESSED_TOTAL = Counter(
    "incident_relay_incidents_processed_total",
    "Incidents classified by reconciliation runs",
    labelnames=["action"],
)

# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

NOTIFICATIONS_TOTAL = Counter(
    "incident_relay_notifications_total",
    "Notifications dispatched to the chat webhook",
    labelnames=["kind", "status"],
)

DISPATCH_ATTEMPTS_TOTAL = Counter(
    "incident_relay_dispatch_attempts_total",
    "Individual webhook POST attempts by outcome",
    labelnames=["outcome"],
)

# ---------------------------------------------------------------------------
# Info
# ---------------------------------------------------------------------------

APP_INFO = Info(
    "incident_relay",
    "incident-relay build information",
)
