"""
Request dispatcher for the Evolution API.

Turns one :class:`RequestCoordinates` into one logical HTTP call:
instance substitution, rate limiting, retry with backoff, the response
envelope, error classification and redacted request/response tracing.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, NamedTuple, Sequence

import httpx

from evolution_runtime.config import ConnectionProfile, LimitPolicy
from evolution_runtime.connections import ConnectionRegistry
from evolution_runtime.errors import (
    ConnectionFailureError,
    InstanceRequiredError,
    error_from_envelope,
)
from evolution_runtime.rate_limit import RateLimiter, operation_class_for
from evolution_runtime.redaction import redact_sensitive
from evolution_runtime.types import (
    INSTANCE_PLACEHOLDER,
    RequestCoordinates,
    RequestOptions,
    ResponseEnvelope,
    UploadFile,
)

logger = logging.getLogger(__name__)

# Request/response traces go to their own logger so they can be routed
# or silenced independently.
trace_logger = logging.getLogger("evolution_runtime.http")

_QUERY_METHODS = frozenset({"GET", "HEAD"})


class _Exchange(NamedTuple):
    """Outcome of the retry loop: a response, or the last transport error."""

    response: httpx.Response | None
    error: httpx.RequestError | None
    attempts: int


class _Multipart(NamedTuple):
    fields: dict[str, Any]
    files: Sequence[UploadFile]


def build_envelope(response: httpx.Response, response_time_ms: float) -> ResponseEnvelope:
    """Wrap a completed exchange.

    The body is the decoded JSON object; other JSON values are wrapped as
    ``{"raw": value}`` and non-JSON bodies become ``{}``. ``message`` is the
    body's ``message`` field (JSON-encoded when not a string) or, for
    failures, the HTTP reason phrase.
    """
    try:
        data = response.json()
    except ValueError:
        data = None
    if data is None:
        body: dict[str, Any] = {}
    elif isinstance(data, dict):
        body = data
    else:
        body = {"raw": data}

    is_successful = response.is_success
    message: str | None = None
    if body.get("message") is not None:
        raw_message = body["message"]
        message = raw_message if isinstance(raw_message, str) else json.dumps(raw_message)
    elif not is_successful:
        message = response.reason_phrase or None

    return ResponseEnvelope(
        status_code=response.status_code,
        is_successful=is_successful,
        message=message,
        body=body,
        headers=dict(response.headers.items()),
        response_time_ms=round(response_time_ms, 2),
    )


class RequestDispatcher:
    """Executes calls against the gateway on behalf of a client."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        rate_limiter: RateLimiter | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._sleep = sleep

    @property
    def rate_limiter(self) -> RateLimiter | None:
        return self._rate_limiter

    async def execute(
        self,
        coordinates: RequestCoordinates,
        options: RequestOptions | None = None,
    ) -> ResponseEnvelope:
        """Send one JSON/query call.

        Raises:
            InstanceRequiredError: The endpoint needs an instance and none is set.
            RateLimitError: Local admission denied under the ``throw`` policy.
            ApiError: Non-2xx response while throw-on-error is in effect.
            ConnectionFailureError: No response after exhausting retries.
        """
        return await self._dispatch(coordinates, options or RequestOptions(), None)

    async def upload(
        self,
        coordinates: RequestCoordinates,
        fields: dict[str, Any] | None = None,
        files: Sequence[UploadFile] = (),
        options: RequestOptions | None = None,
    ) -> ResponseEnvelope:
        """Like :meth:`execute` but sends a multipart/form-data body."""
        multipart = _Multipart(dict(fields or {}), list(files))
        return await self._dispatch(coordinates, options or RequestOptions(), multipart)

    async def probe(self, coordinates: RequestCoordinates) -> ResponseEnvelope | None:
        """Best-effort call for status queries.

        Returns ``None`` instead of raising when the call cannot be made
        (no instance, rate limited) or no response arrives.
        """
        if coordinates.needs_instance and not coordinates.instance_name:
            return None
        path = self._resolve_path(coordinates)
        if self._rate_limiter is not None:
            decision = self._rate_limiter.admit(
                coordinates.rate_limit_scope, operation_class_for(coordinates.endpoint_template)
            )
            if not decision.allowed and self._rate_limiter.policy is not LimitPolicy.SKIP:
                return None

        profile = self._registry.profile(coordinates.connection_name)
        url = self._build_url(profile, path)
        started = time.perf_counter()
        exchange = await self._send_with_retry(
            profile, coordinates.method.upper(), url, self._request_kwargs(coordinates, None), {}
        )
        if exchange.response is None:
            return None
        return build_envelope(exchange.response, (time.perf_counter() - started) * 1000)

    # ---- Pipeline ----

    async def _dispatch(
        self,
        coordinates: RequestCoordinates,
        options: RequestOptions,
        multipart: _Multipart | None,
    ) -> ResponseEnvelope:
        profile = self._registry.profile(coordinates.connection_name)
        instance = coordinates.instance_name
        method = "POST" if multipart is not None else coordinates.method.upper()

        path = self._resolve_path(coordinates)
        if self._rate_limiter is not None:
            await self._rate_limiter.acquire(
                coordinates.rate_limit_scope, operation_class_for(coordinates.endpoint_template), instance
            )

        url = self._build_url(profile, path)
        self._log_request(profile, coordinates, method, url, multipart)

        started = time.perf_counter()
        exchange = await self._send_with_retry(
            profile, method, url, self._request_kwargs(coordinates, multipart), options.headers
        )
        elapsed_ms = (time.perf_counter() - started) * 1000

        if exchange.response is None:
            logger.error(
                "Evolution API request %s %s failed after %d attempt(s): %s",
                method, url, exchange.attempts, exchange.error,
            )
            raise ConnectionFailureError(
                f"Failed to connect to Evolution API: {exchange.error}",
                url=url,
                instance_name=instance,
            ) from exchange.error

        envelope = build_envelope(exchange.response, elapsed_ms)
        self._log_response(profile, method, url, envelope)

        throw = profile.throw_on_error if options.throw_on_error is None else options.throw_on_error
        if envelope.is_failed and throw:
            raise error_from_envelope(envelope, instance, profile.retry.default_retry_after)
        return envelope

    async def _send_with_retry(
        self,
        profile: ConnectionProfile,
        method: str,
        url: str,
        kwargs: dict[str, Any],
        headers: dict[str, str],
    ) -> _Exchange:
        """Run the attempt loop.

        Retries transport errors and responses whose status is retryable.
        Any other response, or a request error such as too many redirects,
        ends the loop immediately.
        """
        retry = profile.retry
        max_attempts = retry.max_attempts if retry.enabled else 1
        last_error: httpx.RequestError | None = None

        async with self._registry.lease(profile.name) as client:
            for attempt in range(1, max_attempts + 1):
                try:
                    response = await client.request(method, url, headers=headers or None, **kwargs)
                except httpx.RequestError as exc:
                    last_error = exc
                    if attempt >= max_attempts or not isinstance(exc, httpx.TransportError):
                        return _Exchange(None, exc, attempt)
                    delay = retry.delay_for(attempt)
                    logger.warning(
                        "Transport error on %s %s (%s), retrying in %.2fs (attempt %d/%d)",
                        method, url, type(exc).__name__, delay, attempt, max_attempts,
                    )
                    await self._sleep(delay)
                    continue

                if attempt < max_attempts and retry.is_retryable(response.status_code):
                    delay = retry.delay_for(attempt)
                    logger.warning(
                        "Retryable status %d on %s %s, retrying in %.2fs (attempt %d/%d)",
                        response.status_code, method, url, delay, attempt, max_attempts,
                    )
                    await response.aclose()
                    await self._sleep(delay)
                    continue
                return _Exchange(response, None, attempt)

        return _Exchange(None, last_error, max_attempts)

    # ---- Helpers ----

    def _resolve_path(self, coordinates: RequestCoordinates) -> str:
        path = coordinates.endpoint_template.lstrip("/")
        if INSTANCE_PLACEHOLDER in path:
            if not coordinates.instance_name:
                raise InstanceRequiredError(coordinates.endpoint_template)
            path = path.replace(INSTANCE_PLACEHOLDER, coordinates.instance_name)
        return path

    @staticmethod
    def _build_url(profile: ConnectionProfile, path: str) -> str:
        return f"{profile.base_url}/{path}" if path else profile.base_url

    @staticmethod
    def _request_kwargs(
        coordinates: RequestCoordinates,
        multipart: _Multipart | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if coordinates.query_params:
            kwargs["params"] = coordinates.query_params
        if multipart is not None:
            # Fields travel as filename-less parts so the body is always multipart
            parts: list[tuple[str, tuple]] = [
                (key, (None, _form_value(value).encode())) for key, value in multipart.fields.items()
            ]
            parts.extend((f.name, _file_part(f)) for f in multipart.files)
            kwargs["files"] = parts
        elif coordinates.method.upper() not in _QUERY_METHODS and (
            coordinates.body or coordinates.method.upper() != "DELETE"
        ):
            kwargs["json"] = coordinates.body
        return kwargs

    def _log_request(
        self,
        profile: ConnectionProfile,
        coordinates: RequestCoordinates,
        method: str,
        url: str,
        multipart: _Multipart | None,
    ) -> None:
        if not profile.logging.log_requests:
            return
        if multipart is not None:
            payload: dict[str, Any] = {
                "fields": multipart.fields,
                "files": f"{len(multipart.files)} files",
            }
        elif method in _QUERY_METHODS:
            payload = {"query": coordinates.query_params}
        else:
            payload = {"json": coordinates.body}
        if profile.logging.redact_sensitive:
            payload = redact_sensitive(payload, profile.logging.sensitive_fields)

        trace_logger.info(
            "Evolution API Request %s %s",
            method,
            url,
            extra={
                "evolution": {
                    "method": method,
                    "url": url,
                    "connection": coordinates.connection_name,
                    "instance": coordinates.instance_name,
                    "options": payload,
                }
            },
        )

    def _log_response(
        self,
        profile: ConnectionProfile,
        method: str,
        url: str,
        envelope: ResponseEnvelope,
    ) -> None:
        if not profile.logging.log_responses:
            return
        body: Any = envelope.body
        if profile.logging.redact_sensitive:
            body = redact_sensitive(body, profile.logging.sensitive_fields)
        level = logging.INFO if envelope.is_successful else logging.ERROR
        trace_logger.log(
            level,
            "Evolution API Response %s %s -> %d (%.1fms)",
            method,
            url,
            envelope.status_code,
            envelope.response_time_ms,
            extra={
                "evolution": {
                    "method": method,
                    "url": url,
                    "status_code": envelope.status_code,
                    "success": envelope.is_successful,
                    "body": body,
                    "response_time_ms": envelope.response_time_ms,
                }
            },
        )


def _form_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _file_part(upload: UploadFile) -> tuple:
    filename = upload.filename or upload.name
    if upload.content_type:
        return (filename, upload.contents, upload.content_type)
    return (filename, upload.contents)
