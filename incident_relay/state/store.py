"""SQLite-backed key/value store with expiry, and the incident state layer on top.

``KeyValueStore`` is a plain get/put-with-expiry capability over a single
table. ``IncidentStateStore`` maps incident status, run metrics and the
rate-limit marker onto keys in it. Neither class recovers from database
errors: ``sqlite3.Error`` propagates to the caller.

SQLite calls are blocking, so the async API offloads each statement with
``asyncio.to_thread``. One connection is shared (``check_same_thread=False``)
and statements are serialized with a lock.
"""

import asyncio
import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from incident_relay.config import get_settings
from incident_relay.state.models import RunMetrics, StoredIncidentState, empty_metrics

logger = logging.getLogger(__name__)

INCIDENT_KEY_PREFIX = "incident:"
METRICS_KEY = "metrics:data"
LAST_NOTIFICATION_KEY = "metrics:last_notification"

DEFAULT_RETENTION_SECONDS = 30 * 24 * 60 * 60

# Status assumed for values written before statuses were stored
LEGACY_STATUS = "identified"

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS kv (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    expires_at REAL
);
CREATE INDEX IF NOT EXISTS idx_kv_expires ON kv(expires_at);
"""


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode for concurrent reads.

    Args:
        db_path: Explicit path to the database file. If None, reads from settings.
                 Pass ":memory:" for in-memory databases (tests).

    Raises:
        ValueError: If no database path is configured.
    """
    if db_path is None:
        db_path = get_settings().state_db_path
    if not db_path:
        msg = "State store not configured (STATE_DB_PATH is empty)"
        raise ValueError(msg)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Create the key/value table if it doesn't exist (idempotent)."""
    conn.executescript(_SCHEMA_SQL)


# ---------------------------------------------------------------------------
# Key/value capability
# ---------------------------------------------------------------------------


class KeyValueStore:
    """String key/value store with optional per-key time-to-live."""

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], float] | None = None) -> None:
        self._conn = conn
        self._lock = threading.Lock()
        self._clock = clock or time.time
        init_schema(conn)

    @classmethod
    def open(cls, db_path: str | None = None) -> "KeyValueStore":
        return cls(get_connection(db_path))

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def get_sync(self, key: str) -> str | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM kv WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
                (key, self._clock()),
            ).fetchone()
        return None if row is None else row["value"]

    def put_sync(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        with self._lock:
            self._conn.execute(
                """INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at""",
                (key, value, expires_at),
            )
            self._conn.commit()

    def delete_sync(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            self._conn.commit()

    def purge_expired_sync(self) -> int:
        """Delete expired rows. Returns the number removed."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._clock(),),
            )
            self._conn.commit()
        return cursor.rowcount

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self.get_sync, key)

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await asyncio.to_thread(self.put_sync, key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self.delete_sync, key)

    async def purge_expired(self) -> int:
        return await asyncio.to_thread(self.purge_expired_sync)


# ---------------------------------------------------------------------------
# Incident state
# ---------------------------------------------------------------------------


def parse_stored_state(raw: str) -> StoredIncidentState:
    """Decode a stored incident value, upgrading the legacy plain-timestamp format."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return StoredIncidentState(status=LEGACY_STATUS, timestamp=raw)
    if not isinstance(data, dict) or not isinstance(data.get("status"), str):
        return StoredIncidentState(status=LEGACY_STATUS, timestamp=raw)
    return StoredIncidentState(status=data["status"], timestamp=str(data.get("timestamp", "")))


class IncidentStateStore:
    """Per-incident status, run metrics and the rate-limit marker."""

    def __init__(self, kv: KeyValueStore, retention_seconds: int = DEFAULT_RETENTION_SECONDS) -> None:
        self.kv = kv
        self.retention_seconds = retention_seconds

    async def get(self, incident_id: str) -> StoredIncidentState | None:
        raw = await self.kv.get(f"{INCIDENT_KEY_PREFIX}{incident_id}")
        if raw is None:
            return None
        return parse_stored_state(raw)

    async def batch_get(self, incident_ids: Iterable[str]) -> dict[str, StoredIncidentState | None]:
        """Read several incidents at once. All reads are issued concurrently."""
        ids = list(dict.fromkeys(incident_ids))
        states = await asyncio.gather(*[self.get(i) for i in ids])
        return dict(zip(ids, states, strict=True))

    async def put(self, incident_id: str, status: str, now: datetime | None = None) -> None:
        record = StoredIncidentState(
            status=status,
            timestamp=(now or datetime.now(UTC)).isoformat(),
        )
        await self.kv.put(
            f"{INCIDENT_KEY_PREFIX}{incident_id}",
            json.dumps(record),
            ttl_seconds=self.retention_seconds,
        )

    async def get_metrics(self) -> RunMetrics:
        metrics = empty_metrics()
        raw = await self.kv.get(METRICS_KEY)
        if raw is None:
            return metrics
        try:
            stored = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable metrics record")
            return metrics
        if isinstance(stored, dict):
            metrics.update({k: v for k, v in stored.items() if k in metrics})  # type: ignore[typeddict-item]
        return metrics

    async def put_metrics(self, partial: dict[str, object]) -> RunMetrics:
        """Merge ``partial`` into the stored metrics record and write it back.

        Not atomic: concurrent runs are last-writer-wins.
        """
        metrics = await self.get_metrics()
        metrics.update(partial)  # type: ignore[typeddict-item]
        await self.kv.put(METRICS_KEY, json.dumps(metrics))
        return metrics

    async def get_last_notification(self) -> datetime | None:
        raw = await self.kv.get(LAST_NOTIFICATION_KEY)
        if not raw:
            return None
        try:
            marker = datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("Ignoring unreadable rate-limit marker %r", raw)
            return None
        return marker if marker.tzinfo else marker.replace(tzinfo=UTC)

    async def set_last_notification(self, now: datetime | None = None) -> None:
        await self.kv.put(LAST_NOTIFICATION_KEY, (now or datetime.now(UTC)).isoformat())


def open_state_store(db_path: str | None = None) -> IncidentStateStore:
    """Open the configured state store. Convenience wrapper."""
    settings = get_settings()
    kv = KeyValueStore.open(db_path)
    return IncidentStateStore(kv, retention_seconds=settings.incident_retention_days * 24 * 60 * 60)
