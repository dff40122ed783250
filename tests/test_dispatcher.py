"""
Unit tests for the request dispatcher.

Uses respx to mock the gateway, so no Evolution API server is needed.
Retry sleeps are recorded instead of awaited.
"""

from __future__ import annotations

import json
import logging

import httpx
import pytest
import respx

from evolution_runtime.config import (
    BucketLimit,
    ClientConfig,
    LoggingOptions,
    RateLimitOptions,
    RetryOptions,
)
from evolution_runtime.connections import ConnectionRegistry
from evolution_runtime.dispatcher import RequestDispatcher, build_envelope
from evolution_runtime.errors import (
    ApiError,
    AuthenticationError,
    ConnectionFailureError,
    InstanceNotFoundError,
    InstanceRequiredError,
    RateLimitError,
)
from evolution_runtime.rate_limit import DEFAULT, MEDIA, RateLimiter
from evolution_runtime.types import RequestCoordinates, RequestOptions, UploadFile


BASE_URL = "http://evolution.test"
API_KEY = "test-api-key"


def make_dispatcher(
    slept: list[float] | None = None,
    rate_limit: RateLimitOptions | None = None,
    **profile_options,
) -> tuple[RequestDispatcher, ConnectionRegistry]:
    config = ClientConfig.single(BASE_URL, API_KEY, **profile_options)
    registry = ConnectionRegistry.from_config(config)

    async def fake_sleep(seconds: float) -> None:
        if slept is not None:
            slept.append(seconds)

    limiter = RateLimiter(rate_limit or RateLimitOptions(enabled=False))
    return RequestDispatcher(registry, limiter, sleep=fake_sleep), registry


def coords(endpoint: str, method: str = "GET", instance: str | None = "sales", **kwargs) -> RequestCoordinates:
    return RequestCoordinates(
        connection_name="default",
        instance_name=instance,
        endpoint_template=endpoint,
        method=method,
        **kwargs,
    )


# ============================================================
#  Envelope
# ============================================================


def test_build_envelope_wraps_non_object_json() -> None:
    envelope = build_envelope(httpx.Response(200, json=[{"id": 1}]), 12.3456)

    assert envelope.is_successful
    assert envelope.body == {"raw": [{"id": 1}]}
    assert envelope.response_time_ms == 12.35


def test_build_envelope_message() -> None:
    structured = build_envelope(httpx.Response(400, json={"message": ["number invalid"]}), 1)
    plain = build_envelope(httpx.Response(503, text="upstream down"), 1)

    assert structured.message == '["number invalid"]'
    assert plain.body == {}
    assert plain.message == "Service Unavailable"


# ============================================================
#  Requests
# ============================================================


@pytest.mark.asyncio
async def test_post_sends_json_and_api_key() -> None:
    """Instance placeholder is substituted and the credential header is sent."""
    dispatcher, registry = make_dispatcher()
    with respx.mock:
        route = respx.post(f"{BASE_URL}/message/sendText/sales").mock(
            return_value=httpx.Response(201, json={"key": {"id": "MSG1"}, "status": "PENDING"})
        )

        envelope = await dispatcher.execute(
            coords("message/sendText/{instance}", "POST", body={"number": "5511999999999", "text": "Hi"})
        )
        await registry.aclose()

        request = route.calls.last.request
        assert request.headers["apikey"] == API_KEY
        assert json.loads(request.content) == {"number": "5511999999999", "text": "Hi"}
        assert envelope.is_successful
        assert envelope.status_code == 201
        assert envelope.get("key") == {"id": "MSG1"}


@pytest.mark.asyncio
async def test_get_sends_query_params() -> None:
    dispatcher, registry = make_dispatcher()
    with respx.mock:
        route = respx.get(f"{BASE_URL}/chat/findChats/sales").mock(
            return_value=httpx.Response(200, json={"chats": []})
        )

        await dispatcher.execute(coords("chat/findChats/{instance}", query_params={"limit": 10}))
        await registry.aclose()

        request = route.calls.last.request
        assert request.url.params["limit"] == "10"
        assert request.content == b""


@pytest.mark.asyncio
async def test_per_call_headers() -> None:
    dispatcher, registry = make_dispatcher()
    with respx.mock:
        route = respx.get(f"{BASE_URL}/instance/fetchInstances").mock(
            return_value=httpx.Response(200, json={})
        )

        await dispatcher.execute(
            coords("instance/fetchInstances", instance=None),
            RequestOptions(headers={"X-Request-Id": "abc"}),
        )
        await registry.aclose()

        assert route.calls.last.request.headers["x-request-id"] == "abc"


@pytest.mark.asyncio
async def test_upload_sends_multipart() -> None:
    dispatcher, registry = make_dispatcher()
    with respx.mock:
        route = respx.post(f"{BASE_URL}/message/sendMedia/sales").mock(
            return_value=httpx.Response(201, json={"status": "PENDING"})
        )

        await dispatcher.upload(
            coords("message/sendMedia/{instance}", "POST"),
            fields={"number": "5511999999999", "mediatype": "image", "delay": 100},
            files=[UploadFile(name="file", contents=b"\x89PNG", filename="photo.png", content_type="image/png")],
        )
        await registry.aclose()

        request = route.calls.last.request
        request.read()
        assert request.headers["content-type"].startswith("multipart/form-data; boundary=")
        assert b'name="number"' in request.content
        assert b'filename="photo.png"' in request.content
        assert b"\x89PNG" in request.content


@pytest.mark.asyncio
async def test_upload_without_files_is_still_multipart() -> None:
    dispatcher, registry = make_dispatcher()
    with respx.mock:
        route = respx.post(f"{BASE_URL}/message/sendMedia/sales").mock(
            return_value=httpx.Response(201, json={"status": "PENDING"})
        )

        await dispatcher.upload(
            coords("message/sendMedia/{instance}", "POST"),
            fields={"number": "5511999999999", "mediatype": "image", "caption": {"lang": "pt"}},
        )
        await registry.aclose()

        request = route.calls.last.request
        request.read()
        assert request.headers["content-type"].startswith("multipart/form-data; boundary=")
        assert b'name="mediatype"' in request.content
        assert b"filename=" not in request.content
        assert b'{"lang": "pt"}' in request.content


# ============================================================
#  Error classification
# ============================================================


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error_type",
    [(401, AuthenticationError), (404, InstanceNotFoundError), (400, ApiError)],
)
async def test_status_maps_to_error(status: int, error_type: type) -> None:
    dispatcher, registry = make_dispatcher(retry=RetryOptions(enabled=False))
    with respx.mock:
        respx.get(f"{BASE_URL}/chat/findChats/sales").mock(
            return_value=httpx.Response(status, json={"message": "nope"})
        )

        with pytest.raises(error_type) as exc_info:
            await dispatcher.execute(coords("chat/findChats/{instance}"))
        await registry.aclose()

    assert exc_info.value.status_code == status
    assert exc_info.value.instance_name == "sales"
    assert exc_info.value.message == "nope"


@pytest.mark.asyncio
async def test_429_carries_retry_after() -> None:
    dispatcher, registry = make_dispatcher(retry=RetryOptions(enabled=False))
    with respx.mock:
        respx.post(f"{BASE_URL}/message/sendText/sales").mock(
            return_value=httpx.Response(429, headers={"Retry-After": "30"}, json={})
        )

        with pytest.raises(RateLimitError) as exc_info:
            await dispatcher.execute(coords("message/sendText/{instance}", "POST"))
        await registry.aclose()

    assert exc_info.value.retry_after == 30
    assert exc_info.value.instance_name == "sales"


@pytest.mark.asyncio
async def test_throw_on_error_per_call_override() -> None:
    """A per-call override beats the profile setting in both directions."""
    dispatcher, registry = make_dispatcher(retry=RetryOptions(enabled=False))
    quiet, quiet_registry = make_dispatcher(retry=RetryOptions(enabled=False), throw_on_error=False)
    with respx.mock:
        respx.get(f"{BASE_URL}/chat/findChats/sales").mock(
            return_value=httpx.Response(404, json={"message": "Instance not found"})
        )

        envelope = await dispatcher.execute(
            coords("chat/findChats/{instance}"), RequestOptions(throw_on_error=False)
        )
        silent = await quiet.execute(coords("chat/findChats/{instance}"))
        with pytest.raises(InstanceNotFoundError):
            await quiet.execute(coords("chat/findChats/{instance}"), RequestOptions(throw_on_error=True))
        await registry.aclose()
        await quiet_registry.aclose()

    assert envelope.is_failed
    assert envelope.message == "Instance not found"
    assert silent.status_code == 404


# ============================================================
#  Retry
# ============================================================


@pytest.mark.asyncio
async def test_retries_retryable_status_until_success() -> None:
    slept: list[float] = []
    dispatcher, registry = make_dispatcher(slept)
    with respx.mock:
        route = respx.get(f"{BASE_URL}/chat/findChats/sales").mock(
            side_effect=[
                httpx.Response(503),
                httpx.Response(503),
                httpx.Response(200, json={"chats": []}),
            ]
        )

        envelope = await dispatcher.execute(coords("chat/findChats/{instance}"))
        await registry.aclose()

    assert route.call_count == 3
    assert envelope.is_successful
    assert slept == [1.0, 2.0]


@pytest.mark.asyncio
async def test_non_retryable_status_is_not_retried() -> None:
    slept: list[float] = []
    dispatcher, registry = make_dispatcher(slept)
    with respx.mock:
        route = respx.post(f"{BASE_URL}/message/sendText/sales").mock(
            return_value=httpx.Response(400, json={"message": "bad number"})
        )

        with pytest.raises(ApiError):
            await dispatcher.execute(coords("message/sendText/{instance}", "POST"))
        await registry.aclose()

    assert route.call_count == 1
    assert slept == []


@pytest.mark.asyncio
async def test_retry_exhaustion_surfaces_last_response() -> None:
    dispatcher, registry = make_dispatcher(retry=RetryOptions(max_attempts=2))
    with respx.mock:
        route = respx.get(f"{BASE_URL}/chat/findChats/sales").mock(
            return_value=httpx.Response(502, json={"error": "Bad Gateway"})
        )

        with pytest.raises(ApiError) as exc_info:
            await dispatcher.execute(coords("chat/findChats/{instance}"))
        await registry.aclose()

    assert route.call_count == 2
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_transport_errors_become_connection_failure() -> None:
    slept: list[float] = []
    dispatcher, registry = make_dispatcher(slept)
    with respx.mock:
        route = respx.get(f"{BASE_URL}/chat/findChats/sales").mock(
            side_effect=httpx.ConnectError("connection refused")
        )

        with pytest.raises(ConnectionFailureError) as exc_info:
            await dispatcher.execute(coords("chat/findChats/{instance}"))
        await registry.aclose()

    assert route.call_count == 3
    assert slept == [1.0, 2.0]
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
    assert exc_info.value.url == f"{BASE_URL}/chat/findChats/sales"


@pytest.mark.asyncio
async def test_request_errors_are_wrapped_without_retry() -> None:
    slept: list[float] = []
    dispatcher, registry = make_dispatcher(slept)
    with respx.mock:
        route = respx.get(f"{BASE_URL}/chat/findChats/sales").mock(
            side_effect=httpx.TooManyRedirects("redirect loop")
        )

        with pytest.raises(ConnectionFailureError) as exc_info:
            await dispatcher.execute(coords("chat/findChats/{instance}"))
        assert await dispatcher.probe(coords("chat/findChats/{instance}")) is None
        await registry.aclose()

    assert route.call_count == 2
    assert slept == []
    assert isinstance(exc_info.value.__cause__, httpx.TooManyRedirects)


@pytest.mark.asyncio
async def test_retry_disabled_makes_single_attempt() -> None:
    dispatcher, registry = make_dispatcher(retry=RetryOptions(enabled=False))
    with respx.mock:
        route = respx.get(f"{BASE_URL}/chat/findChats/sales").mock(
            side_effect=httpx.ReadTimeout("timed out")
        )

        with pytest.raises(ConnectionFailureError):
            await dispatcher.execute(coords("chat/findChats/{instance}"))
        await registry.aclose()

    assert route.call_count == 1


# ============================================================
#  Pre-flight checks
# ============================================================


@pytest.mark.asyncio
async def test_missing_instance_fails_before_network() -> None:
    dispatcher, registry = make_dispatcher()
    with respx.mock(assert_all_called=False) as mock:
        mock.post(f"{BASE_URL}/message/sendText/sales").mock(
            return_value=httpx.Response(201, json={})
        )

        with pytest.raises(InstanceRequiredError) as exc_info:
            await dispatcher.execute(coords("message/sendText/{instance}", "POST", instance=None))
        await registry.aclose()

        assert mock.calls.call_count == 0
    assert exc_info.value.endpoint == "message/sendText/{instance}"


@pytest.mark.asyncio
async def test_local_rate_limit_blocks_before_network() -> None:
    limits = RateLimitOptions(
        limits={"default": BucketLimit(max_attempts=60, decay_seconds=60),
                "messages": BucketLimit(max_attempts=1, decay_seconds=60)},
    )
    dispatcher, registry = make_dispatcher(rate_limit=limits)
    with respx.mock:
        route = respx.post(f"{BASE_URL}/message/sendText/sales").mock(
            return_value=httpx.Response(201, json={})
        )

        await dispatcher.execute(coords("message/sendText/{instance}", "POST"))
        with pytest.raises(RateLimitError) as exc_info:
            await dispatcher.execute(coords("message/sendText/{instance}", "POST"))
        await registry.aclose()

    assert route.call_count == 1
    assert exc_info.value.limit_type == "messages"


@pytest.mark.asyncio
async def test_instance_name_does_not_change_operation_class() -> None:
    """An instance named like a media endpoint is still charged by endpoint shape."""
    limits = RateLimitOptions(
        limits={"default": BucketLimit(max_attempts=60, decay_seconds=60),
                "media": BucketLimit(max_attempts=1, decay_seconds=60)},
    )
    dispatcher, registry = make_dispatcher(rate_limit=limits)
    with respx.mock:
        route = respx.get(f"{BASE_URL}/chat/findChats/media-bot").mock(
            return_value=httpx.Response(200, json=[])
        )

        for _ in range(2):
            await dispatcher.execute(coords("chat/findChats/{instance}", instance="media-bot"))
        await dispatcher.probe(coords("chat/findChats/{instance}", instance="media-bot"))
        await registry.aclose()

    assert route.call_count == 3
    assert dispatcher.rate_limiter.remaining("default:media-bot", MEDIA) == 1
    assert dispatcher.rate_limiter.remaining("default:media-bot", DEFAULT) == 57


@pytest.mark.asyncio
async def test_probe_never_raises() -> None:
    dispatcher, registry = make_dispatcher(retry=RetryOptions(enabled=False))
    with respx.mock:
        respx.get(f"{BASE_URL}/instance/connectionState/sales").mock(
            side_effect=httpx.ConnectError("down")
        )

        assert await dispatcher.probe(coords("instance/connectionState/{instance}")) is None
        assert await dispatcher.probe(coords("instance/connectionState/{instance}", instance=None)) is None
        await registry.aclose()


# ============================================================
#  Tracing
# ============================================================


@pytest.mark.asyncio
async def test_request_and_response_logs_are_redacted(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher, registry = make_dispatcher()
    caplog.set_level(logging.INFO, logger="evolution_runtime.http")
    with respx.mock:
        respx.post(f"{BASE_URL}/instance/create").mock(
            return_value=httpx.Response(201, json={"hash": {"apikey": "instance-secret"}})
        )

        await dispatcher.execute(coords(
            "instance/create",
            "POST",
            instance=None,
            body={"instanceName": "sales", "token": "t0k3n", "webhook": {"headers": {"Secret": "s"}}},
        ))
        await registry.aclose()

    request_record, response_record = [r for r in caplog.records if r.name == "evolution_runtime.http"]
    sent = request_record.evolution["options"]["json"]
    assert sent["token"] == "[REDACTED]"
    assert sent["webhook"]["headers"]["Secret"] == "[REDACTED]"
    assert sent["instanceName"] == "sales"
    assert response_record.evolution["body"]["hash"]["apikey"] == "[REDACTED]"
    assert response_record.levelno == logging.INFO


@pytest.mark.asyncio
async def test_failed_response_logged_as_error(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher, registry = make_dispatcher(
        retry=RetryOptions(enabled=False),
        logging=LoggingOptions(log_requests=False),
    )
    caplog.set_level(logging.INFO, logger="evolution_runtime.http")
    with respx.mock:
        respx.get(f"{BASE_URL}/chat/findChats/sales").mock(return_value=httpx.Response(500, json={}))

        await dispatcher.execute(coords("chat/findChats/{instance}"), RequestOptions(throw_on_error=False))
        await registry.aclose()

    records = [r for r in caplog.records if r.name == "evolution_runtime.http"]
    assert len(records) == 1
    assert records[0].levelno == logging.ERROR
    assert records[0].evolution["status_code"] == 500
