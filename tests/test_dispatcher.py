"""Tests for webhook dispatch and the retry policy."""

from unittest.mock import AsyncMock, call, patch

import httpx
import pytest
import respx

from incident_relay.notify.dispatcher import DispatchError, RetryPolicy, send_notification

WEBHOOK_URL = "https://chat.test/v1/spaces/AAA/messages"
PAYLOAD = {"cards": [{"header": {"title": "t", "subtitle": "s"}, "sections": []}]}
NO_WAIT = RetryPolicy(max_attempts=3, base_delay_seconds=0.0)


class TestRetryPolicy:
    def test_default_delays_double(self) -> None:
        policy = RetryPolicy()
        assert [policy.delay_before_retry(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_custom_base(self) -> None:
        assert RetryPolicy(base_delay_seconds=0.5).delay_before_retry(3) == 2.0


@pytest.mark.integration
class TestSendNotification:
    @respx.mock
    async def test_success_posts_json(self) -> None:
        route = respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(200, json={"name": "msg"}))

        await send_notification(PAYLOAD, WEBHOOK_URL, policy=NO_WAIT)
        assert route.call_count == 1
        request = route.calls.last.request
        assert request.headers["content-type"] == "application/json"
        assert b'"title":"t"' in request.content.replace(b" ", b"")

    @respx.mock
    async def test_fails_twice_then_succeeds(self) -> None:
        route = respx.post(WEBHOOK_URL).mock(
            side_effect=[
                httpx.Response(500, text="boom"),
                httpx.Response(502, text="bad gateway"),
                httpx.Response(200, json={}),
            ]
        )

        await send_notification(PAYLOAD, WEBHOOK_URL, policy=NO_WAIT)
        assert route.call_count == 3

    @respx.mock
    async def test_exhausted_retries_raise_last_error(self) -> None:
        route = respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(429, text="slow down"))

        with pytest.raises(DispatchError) as exc_info:
            await send_notification(PAYLOAD, WEBHOOK_URL, policy=NO_WAIT)
        assert route.call_count == 3
        err = exc_info.value
        assert err.status_code == 429
        assert err.reason == "Too Many Requests"
        assert err.body == "slow down"
        assert "429 Too Many Requests - slow down" in str(err)

    @respx.mock
    async def test_transport_error_is_retried(self) -> None:
        route = respx.post(WEBHOOK_URL).mock(
            side_effect=[httpx.ConnectError("Connection refused"), httpx.Response(200, json={})]
        )

        await send_notification(PAYLOAD, WEBHOOK_URL, policy=NO_WAIT)
        assert route.call_count == 2

    @respx.mock
    async def test_transport_error_exhausted(self) -> None:
        respx.post(WEBHOOK_URL).mock(side_effect=httpx.ConnectError("Connection refused"))

        with pytest.raises(DispatchError, match="Connection refused") as exc_info:
            await send_notification(PAYLOAD, WEBHOOK_URL, policy=NO_WAIT)
        assert exc_info.value.status_code is None

    @respx.mock
    async def test_backoff_schedule(self) -> None:
        respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(500))

        with (
            patch("incident_relay.notify.dispatcher.asyncio.sleep", new_callable=AsyncMock) as sleep,
            pytest.raises(DispatchError),
        ):
            await send_notification(PAYLOAD, WEBHOOK_URL)
        assert sleep.await_args_list == [call(1.0), call(2.0)]

    @respx.mock
    async def test_single_attempt_policy(self) -> None:
        route = respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(500))

        with pytest.raises(DispatchError):
            await send_notification(PAYLOAD, WEBHOOK_URL, policy=RetryPolicy(max_attempts=1))
        assert route.call_count == 1
