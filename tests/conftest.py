"""Shared pytest configuration and fixtures."""

from collections.abc import AsyncGenerator, Generator
from typing import Any
from unittest.mock import patch

import pytest
from pydantic import SecretStr

from incident_relay.config import Settings, get_settings
from incident_relay.state.store import IncidentStateStore, KeyValueStore, get_connection

STATUS_API_URL = "https://status.test/api/v2/incidents.json"
WEBHOOK_URL = "https://chat.test/v1/spaces/AAA/messages?key=fake"


@pytest.fixture(autouse=True)
def _no_dotenv() -> Generator[None]:
    """Block .env loading so tests that forget mock_settings fail locally, not just in CI."""
    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


def make_fake_settings(**overrides: Any) -> Any:
    values: dict[str, Any] = {
        "status_api_url": STATUS_API_URL,
        "google_chat_webhook": SecretStr(WEBHOOK_URL),
        "min_impact_level": "",
        "status_page_url": "https://status.test",
        "state_db_path": ":memory:",
        "check_schedule_cron": "",
        "display_timezone": "UTC",
        "http_timeout_seconds": 5.0,
        "log_level": "INFO",
        "rate_limit_cooldown_seconds": 60,
        "recency_window_days": 7,
        "digest_threshold": 3,
        "incident_retention_days": 30,
        "dispatch_max_attempts": 3,
        # No real sleeping between retries in tests
        "dispatch_backoff_seconds": 0.0,
    }
    values.update(overrides)
    return type("FakeSettings", (), values)()


@pytest.fixture
def mock_settings() -> Generator[Any]:
    """Provide fake settings so tests don't need a .env file.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = make_fake_settings()
    with (
        patch("incident_relay.config.get_settings", return_value=fake_settings),
        patch("incident_relay.state.store.get_settings", return_value=fake_settings),
        patch("incident_relay.engine.reconcile.get_settings", return_value=fake_settings),
        patch("incident_relay.scheduler.get_settings", return_value=fake_settings),
        patch("incident_relay.api.main.get_settings", return_value=fake_settings),
    ):
        yield fake_settings


@pytest.fixture
async def state_store() -> AsyncGenerator[IncidentStateStore]:
    """An incident state store over an in-memory SQLite database."""
    kv = KeyValueStore(get_connection(":memory:"))
    yield IncidentStateStore(kv)
    kv.close()
