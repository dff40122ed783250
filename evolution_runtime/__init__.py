"""
Evolution API runtime for Python.

Async client for Evolution API (WhatsApp) gateways: named connections,
per-instance endpoints, local rate limiting, retries with backoff, typed
errors, and a webhook pipeline that turns gateway notifications into
domain events.

Example::

    from evolution_runtime import ClientConfig, EvolutionClient

    config = ClientConfig.single(
        "https://evolution.example.com",
        "your-api-key",
        instance="sales",
    )

    async with EvolutionClient(config) as client:
        await client.post(
            "message/sendText/{instance}",
            {"number": "5511999999999", "text": "Hello!"},
        )

        # Another instance, without touching the shared selection
        support = client.using(instance="support")
        if await support.is_connected():
            await support.get("chat/findChats/{instance}")

    # Webhooks
    client.webhooks.bus.subscribe(MessageReceived, handle_message)
    await client.webhooks.process(request_json)
"""

from evolution_runtime.client import EvolutionClient
from evolution_runtime.config import (
    BackoffStrategy,
    BucketLimit,
    ClientConfig,
    ConnectionProfile,
    HttpOptions,
    LimitPolicy,
    LoggingOptions,
    RateLimitOptions,
    RetryOptions,
)
from evolution_runtime.connections import ConnectionRegistry
from evolution_runtime.dispatcher import RequestDispatcher
from evolution_runtime.errors import (
    ApiError,
    AuthenticationError,
    ConfigurationError,
    ConnectionFailureError,
    EvolutionError,
    InstanceNotFoundError,
    InstanceRequiredError,
    InvalidSignatureError,
    RateLimitError,
    WebhookProcessingError,
    error_from_envelope,
)
from evolution_runtime.events import (
    ConnectionUpdated,
    DomainEvent,
    EventBus,
    InstanceStatusChanged,
    MessageDelivered,
    MessageRead,
    MessageReceived,
    MessageSent,
    QrCodeReceived,
    WebhookReceived,
    event_type_name,
)
from evolution_runtime.payload import WebhookPayload
from evolution_runtime.rate_limit import (
    BucketStore,
    InMemoryBucketStore,
    RateLimiter,
    operation_class_for,
)
from evolution_runtime.redaction import redact_sensitive
from evolution_runtime.types import (
    ConnectionStatus,
    MessageType,
    RequestCoordinates,
    RequestOptions,
    ResponseEnvelope,
    UploadFile,
    WebhookEvent,
)
from evolution_runtime.webhooks import (
    WebhookHandler,
    WebhookProcessor,
    determine_message_type,
    signature_from_headers,
    verify_signature,
)

__all__ = [
    "EvolutionClient",
    "ClientConfig",
    "ConnectionProfile",
    "HttpOptions",
    "RetryOptions",
    "BackoffStrategy",
    "LoggingOptions",
    "RateLimitOptions",
    "BucketLimit",
    "LimitPolicy",
    "ConnectionRegistry",
    "RequestDispatcher",
    "RateLimiter",
    "BucketStore",
    "InMemoryBucketStore",
    "operation_class_for",
    "RequestCoordinates",
    "RequestOptions",
    "ResponseEnvelope",
    "UploadFile",
    "ConnectionStatus",
    "MessageType",
    "WebhookEvent",
    "WebhookPayload",
    "WebhookProcessor",
    "WebhookHandler",
    "determine_message_type",
    "verify_signature",
    "signature_from_headers",
    "EventBus",
    "DomainEvent",
    "WebhookReceived",
    "MessageReceived",
    "MessageSent",
    "MessageDelivered",
    "MessageRead",
    "ConnectionUpdated",
    "InstanceStatusChanged",
    "QrCodeReceived",
    "event_type_name",
    "EvolutionError",
    "ConfigurationError",
    "InstanceRequiredError",
    "ApiError",
    "AuthenticationError",
    "InstanceNotFoundError",
    "RateLimitError",
    "ConnectionFailureError",
    "WebhookProcessingError",
    "InvalidSignatureError",
    "error_from_envelope",
    "redact_sensitive",
]

__version__ = "0.1.0"
