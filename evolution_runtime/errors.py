"""
Exception hierarchy for the Evolution API runtime.

::

    EvolutionError
    ├── ConfigurationError
    │   └── InstanceRequiredError
    ├── ApiError
    │   ├── AuthenticationError       (401)
    │   ├── InstanceNotFoundError     (404)
    │   └── RateLimitError            (429 / local admission denied)
    ├── ConnectionFailureError        (no HTTP response)
    └── WebhookProcessingError
        └── InvalidSignatureError
"""

from __future__ import annotations

from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from evolution_runtime.types import ResponseEnvelope


class EvolutionError(Exception):
    """Base class for every error raised by this package."""

    def __init__(
        self,
        message: str = "",
        *,
        status_code: int | None = None,
        instance_name: str | None = None,
        response_body: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.instance_name = instance_name
        self.response_body = response_body

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "status_code": self.status_code,
            "instance_name": self.instance_name,
            "response_data": self.response_body,
        }


class ConfigurationError(EvolutionError):
    """Bad or missing connection/instance selection. Never touches the network."""


class InstanceRequiredError(ConfigurationError):
    """An endpoint needs an instance but none was selected."""

    def __init__(self, endpoint: str) -> None:
        super().__init__(
            f"Instance name is required for endpoint '{endpoint}'. "
            "Select one with .instance(name) or pass instance=..."
        )
        self.endpoint = endpoint


class ApiError(EvolutionError):
    """The gateway answered with a non-2xx status."""

    @classmethod
    def from_response(
        cls,
        body: dict[str, Any],
        status_code: int,
        instance_name: str | None = None,
    ) -> ApiError:
        # The gateway reports errors as {"message": ...}, {"error": ...} or
        # {"response": {"message": ...}, "error": ...}; the nested one is
        # the most specific.
        nested = body.get("response")
        message = None
        if isinstance(nested, dict):
            message = nested.get("message")
        message = message or body.get("message") or body.get("error") or "Unknown error"
        if not isinstance(message, str):
            message = str(message)
        return cls(
            message,
            status_code=status_code,
            instance_name=instance_name,
            response_body=body,
        )


class AuthenticationError(ApiError):
    """The credential was rejected (401)."""


class InstanceNotFoundError(ApiError):
    """The addressed instance or resource does not exist (404)."""


class RateLimitError(ApiError):
    """Rate limit exceeded, either locally or reported by the gateway (429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float = 60,
        limit_type: str = "default",
        instance_name: str | None = None,
        response_body: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            status_code=429,
            instance_name=instance_name,
            response_body=response_body,
        )
        self.retry_after = retry_after
        self.limit_type = limit_type

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(retry_after=self.retry_after, limit_type=self.limit_type)
        return data


class ConnectionFailureError(EvolutionError):
    """No HTTP response could be obtained (DNS, TLS, refused, timeout...)."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        instance_name: str | None = None,
    ) -> None:
        super().__init__(message, instance_name=instance_name)
        self.url = url

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["url"] = self.url
        return data


class WebhookProcessingError(EvolutionError):
    """A webhook could not be processed, usually because a handler raised."""

    def __init__(
        self,
        message: str = "Webhook processing failed",
        *,
        event: str | None = None,
        instance_name: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, instance_name=instance_name)
        self.event = event
        self.payload = payload

    @classmethod
    def processing_failed(
        cls,
        event: str,
        instance_name: str | None,
        cause: BaseException,
    ) -> WebhookProcessingError:
        return cls(
            f"Failed to process webhook event {event}: {cause}",
            event=event,
            instance_name=instance_name,
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["event"] = self.event
        return data


class InvalidSignatureError(WebhookProcessingError):
    """The webhook signature header is missing or does not match."""


# ============================================================
#  Status mapping
# ============================================================


def error_from_envelope(
    envelope: ResponseEnvelope,
    instance_name: str | None = None,
    default_retry_after: int = 60,
) -> ApiError:
    """Map a failed exchange onto the error taxonomy.

    Pure function of status, body, headers and instance: 401, 404 and 429
    have dedicated types, every other non-2xx is a plain :class:`ApiError`.
    """
    status = envelope.status_code
    body = envelope.body

    if status == 401:
        return AuthenticationError(
            envelope.message or "Authentication failed",
            status_code=401,
            instance_name=instance_name,
            response_body=body,
        )
    if status == 404:
        return InstanceNotFoundError(
            envelope.message or "Resource not found",
            status_code=404,
            instance_name=instance_name,
            response_body=body,
        )
    if status == 429:
        return RateLimitError(
            envelope.message or "Rate limit exceeded",
            retry_after=_parse_retry_after(envelope.header("Retry-After"), default_retry_after),
            limit_type="api",
            instance_name=instance_name,
            response_body=body,
        )
    return ApiError.from_response(body, status, instance_name)


def _parse_retry_after(value: str | None, default: int) -> float:
    if value is None:
        return default
    try:
        seconds = float(value.strip())
    except ValueError:
        return default
    return int(seconds) if seconds.is_integer() else seconds
