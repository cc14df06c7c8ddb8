"""Pydantic models for the Statuspage incidents API, plus ordering tables.

The models validate the external JSON at the fetch boundary. Status and impact
are kept as plain strings so unknown values from the source do not fail
validation; the priority tables below give them a rank of 0.
"""

from datetime import UTC, datetime
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field, field_validator

STATUS_PRIORITY = MappingProxyType(
    {
        "investigating": 1,
        "identified": 2,
        "monitoring": 3,
        "resolved": 4,
    }
)

IMPACT_PRIORITY = MappingProxyType(
    {
        "none": 0,
        "minor": 1,
        "major": 2,
        "critical": 3,
    }
)


def status_priority(status: str) -> int:
    return STATUS_PRIORITY.get(status, 0)


def impact_priority(impact: str) -> int:
    return IMPACT_PRIORITY.get(impact, 0)


class IncidentUpdate(BaseModel):
    """A single free-text update posted on an incident."""

    model_config = ConfigDict(extra="ignore")

    body: str = ""
    status: str = ""
    created_at: datetime | None = None
    display_at: datetime | None = None


class AffectedComponent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    name: str
    status: str = ""


class Incident(BaseModel):
    """An incident as reported by the status API.

    ``incident_updates`` is reverse chronological: index 0 is the latest update.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    status: str
    impact: str = "none"
    created_at: datetime
    updated_at: datetime | None = None
    started_at: datetime | None = None
    resolved_at: datetime | None = None
    shortlink: str | None = None
    incident_updates: list[IncidentUpdate] = Field(default_factory=list)
    components: list[AffectedComponent] = Field(default_factory=list)

    @field_validator("created_at", "updated_at", "started_at", "resolved_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def start_time(self) -> datetime:
        """When the incident started affecting users (falls back to creation time)."""
        return self.started_at or self.created_at

    @property
    def latest_update(self) -> IncidentUpdate | None:
        return self.incident_updates[0] if self.incident_updates else None

    def first_update_with_status(self, status: str) -> IncidentUpdate | None:
        """Return the first (most recent) update tagged with ``status``, if any."""
        for update in self.incident_updates:
            if update.status == status:
                return update
        return None

    @property
    def component_names(self) -> list[str]:
        return [c.name for c in self.components if c.name]


class StatusPage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    name: str = ""
    url: str = ""
    updated_at: datetime | None = None


class StatusPageResponse(BaseModel):
    """Top-level document returned by ``/api/v2/incidents.json``."""

    model_config = ConfigDict(extra="ignore")

    page: StatusPage | None = None
    incidents: list[Incident] = Field(default_factory=list)

    @field_validator("incidents", mode="before")
    @classmethod
    def _null_incidents_as_empty(cls, value: object) -> object:
        return [] if value is None else value
