"""Post card messages to a Google Chat webhook with bounded retry."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from incident_relay.observability.metrics import DISPATCH_ATTEMPTS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0
MAX_ERROR_BODY_CHARS = 500


class DispatchError(RuntimeError):
    """The webhook rejected the message or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        reason: str | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason
        self.body = body


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff.

    The delay before retry ``n`` (1-based) is ``base_delay_seconds * 2 ** (n - 1)``,
    so the default policy waits 1s then 2s between its three attempts.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 1.0

    def delay_before_retry(self, retry_number: int) -> float:
        return self.base_delay_seconds * 2 ** (retry_number - 1)


async def _post_once(client: httpx.AsyncClient, webhook_url: str, payload: dict[str, Any]) -> None:
    try:
        response = await client.post(webhook_url, json=payload)
    except httpx.HTTPError as e:
        raise DispatchError(f"Failed to reach Google Chat webhook: {e}") from e

    if not response.is_success:
        body = response.text[:MAX_ERROR_BODY_CHARS]
        raise DispatchError(
            f"Failed to send Google Chat notification: {response.status_code} {response.reason_phrase} - {body}",
            status_code=response.status_code,
            reason=response.reason_phrase,
            body=body,
        )


async def _post_with_retry(
    client: httpx.AsyncClient,
    webhook_url: str,
    payload: dict[str, Any],
    policy: RetryPolicy,
) -> None:
    for attempt in range(1, policy.max_attempts + 1):
        try:
            await _post_once(client, webhook_url, payload)
        except DispatchError as exc:
            if attempt >= policy.max_attempts:
                DISPATCH_ATTEMPTS_TOTAL.labels(outcome="exhausted").inc()
                raise
            DISPATCH_ATTEMPTS_TOTAL.labels(outcome="retry").inc()
            wait = policy.delay_before_retry(attempt)
            logger.warning(
                "Webhook delivery failed (attempt %d/%d), retrying in %.1fs: %s",
                attempt,
                policy.max_attempts,
                wait,
                exc,
            )
            await asyncio.sleep(wait)
            continue
        DISPATCH_ATTEMPTS_TOTAL.labels(outcome="success").inc()
        return


async def send_notification(
    payload: dict[str, Any],
    webhook_url: str,
    *,
    client: httpx.AsyncClient | None = None,
    policy: RetryPolicy | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> None:
    """Deliver one card message, retrying according to ``policy``.

    Raises:
        DispatchError: After the last attempt fails. Carries the HTTP status,
            reason phrase and (truncated) response body when there was a response.
    """
    policy = policy or RetryPolicy()
    if client is None:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            await _post_with_retry(own_client, webhook_url, payload, policy)
    else:
        await _post_with_retry(client, webhook_url, payload, policy)
