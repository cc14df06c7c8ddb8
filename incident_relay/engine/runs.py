"""Instrumented wrapper around a reconciliation pass, shared by every trigger."""

import logging
import time
from datetime import UTC, datetime

from incident_relay.engine.rate_limit import record_failed_run
from incident_relay.engine.reconcile import ReconciliationReport, run_reconciliation
from incident_relay.observability.metrics import RUN_DURATION, RUNS_TOTAL
from incident_relay.state.store import IncidentStateStore

logger = logging.getLogger(__name__)


async def run_check(store: IncidentStateStore, *, trigger: str) -> ReconciliationReport:
    """Run one pass, recording Prometheus metrics and stored error counts.

    Failures are re-raised after being counted; callers decide whether to
    surface or swallow them.
    """
    start = time.monotonic()
    started_at = datetime.now(UTC)
    try:
        report = await run_reconciliation(store, now=started_at)
    except Exception:
        RUNS_TOTAL.labels(trigger=trigger, status="error").inc()
        RUN_DURATION.labels(trigger=trigger).observe(time.monotonic() - start)
        await record_failed_run(store, started_at)
        raise

    status = "rate_limited" if report.rate_limited else "success"
    RUNS_TOTAL.labels(trigger=trigger, status=status).inc()
    RUN_DURATION.labels(trigger=trigger).observe(time.monotonic() - start)
    return report
