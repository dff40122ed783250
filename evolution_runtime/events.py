"""
Domain events and the in-process event bus.

Webhook processing turns gateway notifications into the typed events
below and dispatches them on an :class:`EventBus`. Listeners subscribe
per event type, by class or by its ``type`` literal, or to everything.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import defaultdict
from typing import Annotated, Any, Callable, Coroutine, Literal, Union

from pydantic import BaseModel, Field

from evolution_runtime.types import ConnectionStatus, MessageType, WebhookEvent

logger = logging.getLogger(__name__)


# ============================================================
#  Domain events
# ============================================================


class BaseEvent(BaseModel):
    """Fields shared by every domain event."""

    instance_name: str
    timestamp: float = Field(default_factory=time.time)


class WebhookReceived(BaseEvent):
    """Emitted for every webhook before any specific handling."""

    type: Literal["webhook.received"] = "webhook.received"
    event: str
    webhook_event: WebhookEvent = WebhookEvent.UNKNOWN
    payload: dict[str, Any] = Field(default_factory=dict)


class MessageReceived(BaseEvent):
    type: Literal["message.received"] = "message.received"
    message: dict[str, Any] = Field(default_factory=dict)
    sender: dict[str, Any] = Field(default_factory=dict)
    message_type: MessageType = MessageType.UNKNOWN
    is_group: bool = False
    group_id: str | None = None

    @property
    def message_id(self) -> str | None:
        key = self.message.get("key")
        if isinstance(key, dict) and key.get("id"):
            return key["id"]
        return self.message.get("id")

    @property
    def sender_name(self) -> str | None:
        return self.sender.get("pushName") or self.message.get("pushName")

    @property
    def content(self) -> str | None:
        """Text body for text messages."""
        inner = self.message.get("message")
        if isinstance(inner, dict):
            if isinstance(inner.get("conversation"), str):
                return inner["conversation"]
            extended = inner.get("extendedTextMessage")
            if isinstance(extended, dict) and isinstance(extended.get("text"), str):
                return extended["text"]
        body = self.message.get("body")
        return body if isinstance(body, str) else None

    @property
    def quoted_message(self) -> dict[str, Any] | None:
        inner = self.message.get("message") or {}
        extended = inner.get("extendedTextMessage") if isinstance(inner, dict) else None
        if not isinstance(extended, dict):
            return None
        context = extended.get("contextInfo") or {}
        quoted = context.get("quotedMessage") if isinstance(context, dict) else None
        return quoted if isinstance(quoted, dict) else None

    @property
    def is_reply(self) -> bool:
        return self.quoted_message is not None


class MessageSent(BaseEvent):
    type: Literal["message.sent"] = "message.sent"
    message_type: MessageType = MessageType.UNKNOWN
    message: dict[str, Any] = Field(default_factory=dict)
    response: dict[str, Any] = Field(default_factory=dict)

    @property
    def recipient(self) -> str | None:
        return self.message.get("number")


class MessageDelivered(BaseEvent):
    type: Literal["message.delivered"] = "message.delivered"
    message_id: str
    remote_jid: str
    data: dict[str, Any] = Field(default_factory=dict)


class MessageRead(BaseEvent):
    type: Literal["message.read"] = "message.read"
    message_ids: list[str]
    remote_jid: str
    data: dict[str, Any] = Field(default_factory=dict)


class ConnectionUpdated(BaseEvent):
    type: Literal["connection.updated"] = "connection.updated"
    status: ConnectionStatus
    # Not tracked here; a stateful layer would have to supply it
    previous_status: ConnectionStatus | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_connected(self) -> bool:
        return self.status.is_connected

    @property
    def is_disconnected(self) -> bool:
        return self.status.is_disconnected


class InstanceStatusChanged(BaseEvent):
    type: Literal["instance.status_changed"] = "instance.status_changed"
    status: ConnectionStatus
    previous_status: ConnectionStatus | None = None
    phone_number: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_ready(self) -> bool:
        return self.status.is_connected

    @property
    def needs_qr_code(self) -> bool:
        return self.status.requires_qr_code


class QrCodeReceived(BaseEvent):
    type: Literal["qrcode.received"] = "qrcode.received"
    qr_code: str
    pairing_code: str | None = None
    attempt: int = 1
    data: dict[str, Any] = Field(default_factory=dict)


DomainEvent = Annotated[
    Union[
        WebhookReceived,
        MessageReceived,
        MessageSent,
        MessageDelivered,
        MessageRead,
        ConnectionUpdated,
        InstanceStatusChanged,
        QrCodeReceived,
    ],
    Field(discriminator="type"),
]


# ============================================================
#  Event bus
# ============================================================

# Listeners may be plain functions or coroutines
EventListener = Callable[[BaseEvent], Coroutine[Any, Any, None] | None]

# A subscription key: the ``type`` literal or the event class carrying it
EventKey = Union[str, type[BaseEvent]]


def event_type_name(event: EventKey | BaseEvent) -> str:
    """The ``type`` literal for an event instance, class or name.

    Raises:
        ValueError: ``event`` is a class without a ``type`` literal,
            such as :class:`BaseEvent` itself.
    """
    if isinstance(event, str):
        return event
    if isinstance(event, BaseEvent):
        event = type(event)
    field = event.model_fields.get("type")
    if field is None or not isinstance(field.default, str):
        raise ValueError(f"{event.__name__} has no event type")
    return field.default


class EventBus:
    """Dispatches domain events to subscribed listeners.

    Subscriptions are keyed by event type and accept either the name
    (``"message.received"``) or the class (``MessageReceived``). Listener
    failures are logged and never propagate, so one faulty listener
    cannot stop the others or the webhook pipeline.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[EventListener]] = defaultdict(list)
        self._wildcard_listeners: list[EventListener] = []
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventKey, listener: EventListener) -> None:
        key = event_type_name(event_type)
        with self._lock:
            self._listeners[key].append(listener)

    def subscribe_all(self, listener: EventListener) -> None:
        with self._lock:
            self._wildcard_listeners.append(listener)

    def on(self, event_type: EventKey) -> Callable[[EventListener], EventListener]:
        """Decorator form of :meth:`subscribe`::

            @bus.on(MessageReceived)
            async def reply(event: MessageReceived) -> None: ...
        """
        def register(listener: EventListener) -> EventListener:
            self.subscribe(event_type, listener)
            return listener

        return register

    def unsubscribe(self, event_type: EventKey, listener: EventListener | None = None) -> None:
        """Remove one listener, or every listener when ``listener`` is None."""
        key = event_type_name(event_type)
        with self._lock:
            if listener is None:
                self._listeners.pop(key, None)
            elif key in self._listeners:
                self._listeners[key] = [
                    existing for existing in self._listeners[key] if existing is not listener
                ]

    def listener_count(self, event_type: EventKey | None = None) -> int:
        """Listeners that would receive ``event_type``, wildcards included."""
        with self._lock:
            typed = len(self._listeners.get(event_type_name(event_type), [])) if event_type else 0
            return typed + len(self._wildcard_listeners)

    async def dispatch(self, event: BaseEvent) -> int:
        """Deliver to typed listeners, then wildcard ones.

        Returns the number of listeners that failed.
        """
        event_type = event_type_name(event)
        with self._lock:
            listeners = [*self._listeners.get(event_type, []), *self._wildcard_listeners]

        failures = 0
        for listener in listeners:
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                failures += 1
                logger.exception("Event listener %r failed for %s", listener, event_type)
        return failures
