"""Tests for the scheduled check job, the scheduler lifecycle and the run wrapper."""

from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx
from prometheus_client import REGISTRY

from incident_relay import scheduler
from incident_relay.engine.reconcile import ReconciliationReport
from incident_relay.engine.runs import run_check
from incident_relay.state.store import IncidentStateStore
from incident_relay.status.fetcher import FetchError

STATUS_URL = "https://status.test/api/v2/incidents.json"


def _sample(metric_name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(metric_name, labels) or 0.0


class TestRunCheck:
    @respx.mock
    async def test_success_counts_run(self, state_store: IncidentStateStore, mock_settings: Any) -> None:
        respx.get(STATUS_URL).mock(return_value=httpx.Response(200, json={"incidents": []}))
        labels = {"trigger": "test", "status": "success"}
        before = _sample("incident_relay_runs_total", labels)

        report = await run_check(state_store, trigger="test")

        assert not report.rate_limited
        assert _sample("incident_relay_runs_total", labels) == before + 1

    @respx.mock
    async def test_failure_recorded_and_reraised(self, state_store: IncidentStateStore, mock_settings: Any) -> None:
        respx.get(STATUS_URL).mock(return_value=httpx.Response(502))
        labels = {"trigger": "test", "status": "error"}
        before = _sample("incident_relay_runs_total", labels)

        with pytest.raises(FetchError):
            await run_check(state_store, trigger="test")

        assert _sample("incident_relay_runs_total", labels) == before + 1
        assert (await state_store.get_metrics())["errors"] == 1


class TestScheduledJob:
    async def test_swallows_failures(self, state_store: IncidentStateStore) -> None:
        with patch("incident_relay.scheduler.run_check", new=AsyncMock(side_effect=FetchError("down"))):
            await scheduler._scheduled_check_job(state_store)

    async def test_purges_expired_entries_after_run(self, state_store: IncidentStateStore) -> None:
        purge = AsyncMock(return_value=2)
        with (
            patch("incident_relay.scheduler.run_check", new=AsyncMock(return_value=ReconciliationReport())),
            patch.object(state_store.kv, "purge_expired", new=purge),
        ):
            await scheduler._scheduled_check_job(state_store)
        purge.assert_awaited_once()

    async def test_skips_purge_after_failure(self, state_store: IncidentStateStore) -> None:
        purge = AsyncMock(return_value=0)
        with (
            patch("incident_relay.scheduler.run_check", new=AsyncMock(side_effect=FetchError("down"))),
            patch.object(state_store.kv, "purge_expired", new=purge),
        ):
            await scheduler._scheduled_check_job(state_store)
        purge.assert_not_awaited()


class TestSchedulerLifecycle:
    def test_disabled_without_cron(self, state_store: IncidentStateStore, mock_settings: Any) -> None:
        mock_settings.check_schedule_cron = ""
        scheduler.start_scheduler(state_store)
        assert scheduler._scheduler is None

    async def test_start_and_stop(self, state_store: IncidentStateStore, mock_settings: Any) -> None:
        mock_settings.check_schedule_cron = "*/5 * * * *"
        scheduler.start_scheduler(state_store)
        try:
            assert scheduler._scheduler is not None
            job = scheduler._scheduler.get_job("incident_check")
            assert job is not None
            assert job.max_instances == 1
        finally:
            scheduler.stop_scheduler()
        assert scheduler._scheduler is None
