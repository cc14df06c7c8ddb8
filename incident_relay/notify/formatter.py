"""Google Chat card builders, one per notification kind.

Every builder is a pure function of its inputs and returns the JSON-ready
card message (``{"cards": [...]}``) accepted by a Chat incoming webhook.
"""

from collections import Counter
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta, tzinfo
from types import MappingProxyType
from typing import Any
from zoneinfo import ZoneInfo

from incident_relay.status.models import Incident

CardMessage = dict[str, Any]

IMPACT_COLORS = MappingProxyType(
    {
        "critical": "#D32F2F",
        "major": "#F57C00",
        "minor": "#FBC02D",
        "none": "#757575",
    }
)

IMPACT_EMOJIS = MappingProxyType(
    {
        "critical": "🔴",
        "major": "🟠",
        "minor": "🟡",
        "none": "⚪",
    }
)

RESOLVED_EMOJI = "✅"
MONITORING_EMOJI = "🔧"
STATUS_CHANGE_EMOJI = "🔄"
DIGEST_EMOJI = "🚨"

DIGEST_MAX_LISTED = 10

DEFAULT_STATUS_PAGE_URL = "https://www.cloudflarestatus.com"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def impact_emoji(impact: str) -> str:
    return IMPACT_EMOJIS.get(impact, IMPACT_EMOJIS["none"])


def impact_color(impact: str) -> str:
    return IMPACT_COLORS.get(impact, IMPACT_COLORS["none"])


def format_timestamp(value: datetime, tz: tzinfo | str = UTC) -> str:
    """Render a timestamp like ``Jan 15, 2024, 10:00 AM UTC``."""
    if isinstance(tz, str):
        zone = UTC if tz.upper() == "UTC" else ZoneInfo(tz)
    else:
        zone = tz
    local = value.astimezone(zone)
    return f"{local:%b} {local.day}, {local.year}, {local.hour % 12 or 12}:{local:%M %p} {local.tzname()}"


def format_duration(start: datetime, end: datetime) -> str:
    """Render ``end - start`` as ``"{H}h {M}m"`` or ``"{M}m"``, floor-divided."""
    total_minutes = max((end - start) // timedelta(minutes=1), 0)
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def incident_duration(incident: Incident, now: datetime | None = None) -> str:
    end = incident.resolved_at or now or datetime.now(UTC)
    return format_duration(incident.start_time, end)


def _key_value(label: str, content: str, icon: str) -> dict[str, Any]:
    return {
        "keyValue": {
            "topLabel": label,
            "content": content,
            "contentMultiline": False,
            "icon": icon,
        }
    }


def _impact_widget(impact: str) -> dict[str, Any]:
    return _key_value(
        "Impact Level",
        f'<font color="{impact_color(impact)}">{impact.upper()}</font>',
        "DESCRIPTION",
    )


def _components_widget(incident: Incident) -> list[dict[str, Any]]:
    names = incident.component_names
    if not names:
        return []
    return [_key_value("Affected Components", ", ".join(names), "MULTIPLE_PEOPLE")]


def _link_button(text: str, url: str) -> dict[str, Any]:
    return {"textButton": {"text": text, "onClick": {"openLink": {"url": url}}}}


def _card(
    title: str,
    subtitle: str,
    fields: list[dict[str, Any]],
    body: str,
    buttons: list[dict[str, Any]],
) -> CardMessage:
    return {
        "cards": [
            {
                "header": {"title": title, "subtitle": subtitle},
                "sections": [
                    {"widgets": fields},
                    {"widgets": [{"textParagraph": {"text": body}}]},
                    {"widgets": [{"buttons": buttons}]},
                ],
            }
        ]
    }


def _incident_buttons(incident: Incident, status_page_url: str) -> list[dict[str, Any]]:
    buttons = []
    if incident.shortlink:
        buttons.append(_link_button("VIEW INCIDENT", incident.shortlink))
    buttons.append(_link_button("STATUS PAGE", status_page_url))
    return buttons


# ---------------------------------------------------------------------------
# Card builders
# ---------------------------------------------------------------------------


def format_new_incident(
    incident: Incident,
    *,
    status_page_url: str = DEFAULT_STATUS_PAGE_URL,
    tz: tzinfo | str = UTC,
) -> CardMessage:
    latest = incident.latest_update
    body = latest.body if latest and latest.body else "No details available"
    fields = [
        _impact_widget(incident.impact),
        _key_value("Status", incident.status, "CLOCK"),
        _key_value("Started", format_timestamp(incident.start_time, tz), "EVENT_SEAT"),
        *_components_widget(incident),
    ]
    return _card(
        title=f"{impact_emoji(incident.impact)} Incident: {incident.name}",
        subtitle=f"Impact: {incident.impact.upper()} | Status: {incident.status}",
        fields=fields,
        body=f"<b>Latest Update:</b><br>{body}",
        buttons=_incident_buttons(incident, status_page_url),
    )


def format_resolved(
    incident: Incident,
    *,
    status_page_url: str = DEFAULT_STATUS_PAGE_URL,
    tz: tzinfo | str = UTC,
    now: datetime | None = None,
) -> CardMessage:
    update = incident.first_update_with_status("resolved")
    body = update.body if update and update.body else "This incident has been resolved."
    duration = incident_duration(incident, now)
    resolved_time = incident.resolved_at or incident.updated_at or now or datetime.now(UTC)
    fields = [
        _key_value("Status", "RESOLVED", "STAR"),
        _impact_widget(incident.impact),
        _key_value("Duration", duration, "CLOCK"),
        *_components_widget(incident),
    ]
    return _card(
        title=f"{RESOLVED_EMOJI} Incident Resolved: {incident.name}",
        subtitle=f"Duration: {duration} | Resolved at {format_timestamp(resolved_time, tz)}",
        fields=fields,
        body=f"<b>Resolution:</b><br>{body}",
        buttons=_incident_buttons(incident, status_page_url),
    )


def format_status_change(
    incident: Incident,
    previous_status: str,
    *,
    status_page_url: str = DEFAULT_STATUS_PAGE_URL,
) -> CardMessage:
    latest = incident.latest_update
    body = latest.body if latest and latest.body else "Status updated"
    return _card(
        title=f"{STATUS_CHANGE_EMOJI} Status Update: {incident.name}",
        subtitle=f"{previous_status.upper()} → {incident.status.upper()}",
        fields=[
            _key_value("New Status", incident.status.upper(), "CLOCK"),
            _impact_widget(incident.impact),
        ],
        body=f"<b>Latest Update:</b><br>{body}",
        buttons=_incident_buttons(incident, status_page_url),
    )


def format_monitoring(
    incident: Incident,
    *,
    status_page_url: str = DEFAULT_STATUS_PAGE_URL,
) -> CardMessage:
    update = incident.first_update_with_status("monitoring")
    body = (
        update.body
        if update and update.body
        else "A fix has been implemented and we are monitoring the results."
    )
    return _card(
        title=f"{MONITORING_EMOJI} Fix Deployed: {incident.name}",
        subtitle=f"Impact: {incident.impact.upper()} | Status: MONITORING",
        fields=[
            _key_value("Status", "MONITORING", "CLOCK"),
            _impact_widget(incident.impact),
        ],
        body=f"<b>Update:</b><br>{body}",
        buttons=_incident_buttons(incident, status_page_url),
    )


def format_digest(
    incidents: Sequence[Incident],
    *,
    status_page_url: str = DEFAULT_STATUS_PAGE_URL,
) -> CardMessage:
    """Summarize several new incidents in a single card."""
    counts = Counter(i.impact for i in incidents)
    lines = [
        f"{impact_emoji(i.impact)} {i.name} ({i.impact})"
        for i in incidents[:DIGEST_MAX_LISTED]
    ]
    if len(incidents) > DIGEST_MAX_LISTED:
        lines.append(f"...and {len(incidents) - DIGEST_MAX_LISTED} more")
    return _card(
        title=f"{DIGEST_EMOJI} {len(incidents)} New Incidents",
        subtitle="Multiple incidents detected",
        fields=[
            _key_value("Critical", str(counts["critical"]), "DESCRIPTION"),
            _key_value("Major", str(counts["major"]), "DESCRIPTION"),
            _key_value("Minor", str(counts["minor"]), "DESCRIPTION"),
        ],
        body="<br>".join(lines),
        buttons=[_link_button("STATUS PAGE", status_page_url)],
    )
