"""Fetch the current incident list from a Statuspage-compatible API."""

import logging

import httpx
from pydantic import ValidationError

from incident_relay.status.models import Incident, StatusPageResponse

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0


class FetchError(RuntimeError):
    """The status source was unreachable or returned an unusable document."""

    def __init__(self, message: str, status_code: int | None = None, reason: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


async def _get(client: httpx.AsyncClient, url: str) -> httpx.Response:
    try:
        return await client.get(url, headers={"Accept": "application/json"})
    except httpx.HTTPError as e:
        raise FetchError(f"Failed to fetch incidents from {url}: {e}") from e


async def fetch_snapshot(
    url: str,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> StatusPageResponse:
    """GET the status document and validate it.

    Args:
        url: Full URL of the incidents endpoint.
        client: Optional shared client. A short-lived one is created if omitted.
        timeout: Request timeout in seconds (only used for the short-lived client).

    Raises:
        FetchError: On transport failure, a non-2xx response, or a body that is
            not JSON of the expected shape. Not retried.
    """
    if client is None:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            response = await _get(own_client, url)
    else:
        response = await _get(client, url)

    if not response.is_success:
        raise FetchError(
            f"Failed to fetch incidents: {response.status_code} {response.reason_phrase}",
            status_code=response.status_code,
            reason=response.reason_phrase,
        )

    try:
        return StatusPageResponse.model_validate_json(response.content)
    except ValidationError as e:
        raise FetchError(
            f"Malformed status response ({response.status_code} {response.reason_phrase}): "
            f"{e.error_count()} validation error(s)",
            status_code=response.status_code,
            reason=response.reason_phrase,
        ) from e


async def fetch_incidents(
    url: str,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> list[Incident]:
    """Return every incident currently listed by the status source."""
    snapshot = await fetch_snapshot(url, client=client, timeout=timeout)
    logger.info("Fetched %d incidents from %s", len(snapshot.incidents), url)
    return snapshot.incidents
