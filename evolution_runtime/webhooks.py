"""
Inbound webhook processing.

A :class:`WebhookProcessor` takes one decoded webhook body, emits a
generic :class:`~evolution_runtime.events.WebhookReceived` event, turns
recognised notifications into typed domain events on an
:class:`~evolution_runtime.events.EventBus`, and finally hands the
normalised payload to any registered custom handlers.

Example::

    processor = WebhookProcessor()
    processor.bus.subscribe("message.received", on_message)
    processor.register_handler("MESSAGES_UPSERT", MyHandler().for_instances(["sales"]))
    await processor.process(body)
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import threading
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, Union

from evolution_runtime.errors import InvalidSignatureError, WebhookProcessingError
from evolution_runtime.events import (
    BaseEvent,
    ConnectionUpdated,
    EventBus,
    InstanceStatusChanged,
    MessageDelivered,
    MessageRead,
    MessageReceived,
    MessageSent,
    QrCodeReceived,
    WebhookReceived,
)
from evolution_runtime.payload import WebhookPayload
from evolution_runtime.types import ConnectionStatus, MessageType, WebhookEvent

logger = logging.getLogger(__name__)

WILDCARD = "*"

SIGNATURE_HEADERS = ("X-Webhook-Signature", "X-Evolution-Signature", "X-Signature")

# MESSAGES_UPDATE status values
_DELIVERED_STATUSES = (3, "DELIVERY_ACK")
_READ_STATUSES = (4, "READ")


# ============================================================
#  Message content classification
# ============================================================

# First match wins
_CONTENT_FIELDS: tuple[tuple[tuple[str, ...], MessageType], ...] = (
    (("conversation", "extendedTextMessage"), MessageType.TEXT),
    (("imageMessage",), MessageType.IMAGE),
    (("videoMessage",), MessageType.VIDEO),
    (("audioMessage",), MessageType.AUDIO),
    (("documentMessage",), MessageType.DOCUMENT),
    (("stickerMessage",), MessageType.STICKER),
    (("locationMessage",), MessageType.LOCATION),
    (("contactMessage",), MessageType.CONTACT),
    (("contactsArrayMessage",), MessageType.CONTACT_ARRAY),
    (("reactionMessage",), MessageType.REACTION),
    (("pollCreationMessage",), MessageType.POLL),
    (("listMessage", "listResponseMessage"), MessageType.LIST),
    (("buttonsMessage", "buttonsResponseMessage"), MessageType.BUTTON),
    (("templateMessage",), MessageType.TEMPLATE),
)


def determine_message_type(message_data: Mapping[str, Any] | None) -> MessageType:
    """Classify a message by which content field it carries.

    Looks inside ``message_data["message"]`` when present. Never raises;
    unrecognised shapes are :attr:`MessageType.UNKNOWN`.
    """
    if not isinstance(message_data, Mapping):
        return MessageType.UNKNOWN
    inner = message_data.get("message")
    message = inner if isinstance(inner, Mapping) else message_data

    for fields, message_type in _CONTENT_FIELDS:
        if any(message.get(field) is not None for field in fields):
            return message_type
    return MessageType.UNKNOWN


def map_connection_state(state: str | None) -> ConnectionStatus:
    return ConnectionStatus.from_state(state)


# ============================================================
#  Signature verification
# ============================================================


def compute_signature(body: bytes | str, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes | str, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature.strip())


def signature_from_headers(headers: Mapping[str, str]) -> str | None:
    """First signature header present, matched case-insensitively."""
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in SIGNATURE_HEADERS:
        value = lowered.get(name.lower())
        if value:
            return value
    return None


def require_valid_signature(
    body: bytes | str,
    headers: Mapping[str, str],
    secret: str | None,
) -> None:
    """Raise :class:`InvalidSignatureError` unless the request is signed.

    An empty ``secret`` disables verification.
    """
    if not secret:
        return
    signature = signature_from_headers(headers)
    if signature is None:
        raise InvalidSignatureError("Missing signature header")
    if not verify_signature(body, signature, secret):
        raise InvalidSignatureError("Invalid signature")


# ============================================================
#  Handlers
# ============================================================


class SupportsHandle(Protocol):
    def should_handle(self, payload: WebhookPayload) -> bool: ...

    def handle(self, payload: WebhookPayload) -> Awaitable[None] | None: ...


# A handler object or a plain (sync or async) callable taking the payload
HandlerLike = Union[SupportsHandle, Callable[[WebhookPayload], Any]]


_HOOKS: dict[WebhookEvent, str] = {
    WebhookEvent.MESSAGES_UPSERT: "on_message_received",
    WebhookEvent.MESSAGES_UPDATE: "on_message_updated",
    WebhookEvent.SEND_MESSAGE: "on_message_sent",
    WebhookEvent.MESSAGES_DELETE: "on_message_deleted",
    WebhookEvent.CONNECTION_UPDATE: "on_connection_updated",
    WebhookEvent.QRCODE_UPDATED: "on_qr_code_received",
    WebhookEvent.PRESENCE_UPDATE: "on_presence_updated",
    WebhookEvent.GROUPS_UPSERT: "on_group_created",
    WebhookEvent.GROUP_UPDATE: "on_group_updated",
    WebhookEvent.GROUP_PARTICIPANTS_UPDATE: "on_group_participants_updated",
    WebhookEvent.CONTACTS_UPSERT: "on_contact_created",
    WebhookEvent.CONTACTS_UPDATE: "on_contact_updated",
    WebhookEvent.CHATS_UPSERT: "on_chat_created",
    WebhookEvent.CHATS_UPDATE: "on_chat_updated",
    WebhookEvent.CHATS_DELETE: "on_chat_deleted",
    WebhookEvent.CALL: "on_call_received",
    WebhookEvent.LABELS_EDIT: "on_labels_edited",
    WebhookEvent.LABELS_ASSOCIATION: "on_labels_associated",
}


class WebhookHandler:
    """Base class for custom webhook handlers.

    Override the ``on_*`` hooks you care about; each receives the
    normalised :class:`WebhookPayload` and may be a plain method or a
    coroutine. :meth:`on_webhook_received` runs after the event-specific
    hook for every payload that passes the filters.

    Example::

        class OrderBot(WebhookHandler):
            async def on_message_received(self, payload):
                ...

        processor.register_wildcard_handler(OrderBot().only_message_events())
    """

    def __init__(self) -> None:
        self.allowed_instances: list[str] = []
        self.allowed_events: list[WebhookEvent] = []

    # ---- Filters ----

    def for_instances(self, instances: Iterable[str]) -> WebhookHandler:
        self.allowed_instances = list(instances)
        return self

    def for_events(self, events: Iterable[WebhookEvent | str]) -> WebhookHandler:
        self.allowed_events = [
            e if isinstance(e, WebhookEvent) else WebhookEvent.from_string(e) for e in events
        ]
        return self

    def only_message_events(self) -> WebhookHandler:
        return self.for_events([
            WebhookEvent.MESSAGES_SET,
            WebhookEvent.MESSAGES_UPSERT,
            WebhookEvent.MESSAGES_UPDATE,
            WebhookEvent.MESSAGES_DELETE,
            WebhookEvent.SEND_MESSAGE,
        ])

    def only_connection_events(self) -> WebhookHandler:
        return self.for_events([WebhookEvent.CONNECTION_UPDATE, WebhookEvent.QRCODE_UPDATED])

    def only_group_events(self) -> WebhookHandler:
        return self.for_events([
            WebhookEvent.GROUPS_UPSERT,
            WebhookEvent.GROUP_UPDATE,
            WebhookEvent.GROUP_PARTICIPANTS_UPDATE,
        ])

    def should_handle(self, payload: WebhookPayload) -> bool:
        """Empty filter lists mean no restriction."""
        if self.allowed_instances and payload.instance_name not in self.allowed_instances:
            return False
        if self.allowed_events and payload.webhook_event not in self.allowed_events:
            return False
        return True

    # ---- Dispatch ----

    async def handle(self, payload: WebhookPayload) -> None:
        if not self.should_handle(payload):
            return
        hook = getattr(self, _HOOKS.get(payload.webhook_event, "on_unknown_event"))
        await _maybe_await(hook(payload))
        await _maybe_await(self.on_webhook_received(payload))

    # ---- Hooks ----

    def on_webhook_received(self, payload: WebhookPayload) -> Any:
        pass

    def on_message_received(self, payload: WebhookPayload) -> Any:
        pass

    def on_message_updated(self, payload: WebhookPayload) -> Any:
        """Delivery and read receipts."""

    def on_message_sent(self, payload: WebhookPayload) -> Any:
        pass

    def on_message_deleted(self, payload: WebhookPayload) -> Any:
        pass

    def on_connection_updated(self, payload: WebhookPayload) -> Any:
        pass

    def on_qr_code_received(self, payload: WebhookPayload) -> Any:
        pass

    def on_presence_updated(self, payload: WebhookPayload) -> Any:
        """Online/typing presence."""

    def on_group_created(self, payload: WebhookPayload) -> Any:
        pass

    def on_group_updated(self, payload: WebhookPayload) -> Any:
        pass

    def on_group_participants_updated(self, payload: WebhookPayload) -> Any:
        pass

    def on_contact_created(self, payload: WebhookPayload) -> Any:
        pass

    def on_contact_updated(self, payload: WebhookPayload) -> Any:
        pass

    def on_chat_created(self, payload: WebhookPayload) -> Any:
        pass

    def on_chat_updated(self, payload: WebhookPayload) -> Any:
        pass

    def on_chat_deleted(self, payload: WebhookPayload) -> Any:
        pass

    def on_call_received(self, payload: WebhookPayload) -> Any:
        pass

    def on_labels_edited(self, payload: WebhookPayload) -> Any:
        pass

    def on_labels_associated(self, payload: WebhookPayload) -> Any:
        pass

    def on_unknown_event(self, payload: WebhookPayload) -> Any:
        """Events without a dedicated hook, including unrecognised ones."""


# ============================================================
#  Processor
# ============================================================


class WebhookProcessor:
    """Classifies webhook bodies and fans them out to events and handlers.

    Handlers are keyed by event name (``MESSAGES_UPSERT``) or ``"*"``.
    Registration is serialised by a lock; processing works on a
    snapshot, so payloads may be processed concurrently.
    """

    def __init__(self, bus: EventBus | None = None, dispatch_events: bool = True) -> None:
        self.bus = bus or EventBus()
        self._dispatch_events = dispatch_events
        self._handlers: dict[str, HandlerLike] = {}
        self._lock = threading.Lock()

        table: dict[WebhookEvent, Callable[[WebhookPayload], Awaitable[None]]] = {
            WebhookEvent.MESSAGES_UPSERT: self._on_message_received,
            WebhookEvent.MESSAGES_UPDATE: self._on_message_update,
            WebhookEvent.SEND_MESSAGE: self._on_message_sent,
            WebhookEvent.CONNECTION_UPDATE: self._on_connection_update,
            WebhookEvent.QRCODE_UPDATED: self._on_qr_code_updated,
            # Generic WebhookReceived only
            WebhookEvent.APPLICATION_STARTUP: self._ignore,
            WebhookEvent.MESSAGES_SET: self._ignore,
            WebhookEvent.MESSAGES_DELETE: self._ignore,
            WebhookEvent.CONTACTS_SET: self._ignore,
            WebhookEvent.CONTACTS_UPSERT: self._ignore,
            WebhookEvent.CONTACTS_UPDATE: self._ignore,
            WebhookEvent.PRESENCE_UPDATE: self._ignore,
            WebhookEvent.CHATS_SET: self._ignore,
            WebhookEvent.CHATS_UPSERT: self._ignore,
            WebhookEvent.CHATS_UPDATE: self._ignore,
            WebhookEvent.CHATS_DELETE: self._ignore,
            WebhookEvent.GROUPS_UPSERT: self._ignore,
            WebhookEvent.GROUP_UPDATE: self._ignore,
            WebhookEvent.GROUP_PARTICIPANTS_UPDATE: self._ignore,
            WebhookEvent.LABELS_EDIT: self._ignore,
            WebhookEvent.LABELS_ASSOCIATION: self._ignore,
            WebhookEvent.CALL: self._ignore,
            WebhookEvent.TYPEBOT_START: self._ignore,
            WebhookEvent.TYPEBOT_CHANGE_STATUS: self._ignore,
            WebhookEvent.UNKNOWN: self._ignore,
        }
        missing = set(WebhookEvent) - set(table)
        if missing:
            raise RuntimeError(f"No webhook route for {sorted(e.value for e in missing)}")
        self._routes = table

    @property
    def events_enabled(self) -> bool:
        return self._dispatch_events

    def enable_events(self) -> WebhookProcessor:
        self._dispatch_events = True
        return self

    def disable_events(self) -> WebhookProcessor:
        """Stop emitting domain events. Custom handlers still run."""
        self._dispatch_events = False
        return self

    # ---- Handler registry ----

    def register_handler(self, event: WebhookEvent | str, handler: HandlerLike) -> WebhookProcessor:
        key = event.value if isinstance(event, WebhookEvent) else event
        with self._lock:
            self._handlers = {**self._handlers, key: handler}
        return self

    def register_wildcard_handler(self, handler: HandlerLike) -> WebhookProcessor:
        return self.register_handler(WILDCARD, handler)

    def remove_handler(self, event: WebhookEvent | str) -> WebhookProcessor:
        key = event.value if isinstance(event, WebhookEvent) else event
        with self._lock:
            self._handlers = {k: v for k, v in self._handlers.items() if k != key}
        return self

    def handlers(self) -> dict[str, HandlerLike]:
        with self._lock:
            return dict(self._handlers)

    def route_for(self, event: WebhookEvent) -> Callable[[WebhookPayload], Awaitable[None]]:
        return self._routes[event]

    # ---- Processing ----

    async def process(self, body: Mapping[str, Any] | None) -> WebhookPayload:
        """Process one webhook body.

        Raises:
            WebhookProcessingError: A built-in step or a custom handler
                failed. The generic ``WebhookReceived`` event has already
                been emitted at that point.
        """
        payload = WebhookPayload.from_payload(body)
        logger.info("Processing webhook %s for instance %s", payload.event, payload.instance_name)

        try:
            if self._dispatch_events:
                await self._emit(WebhookReceived(
                    instance_name=payload.instance_name,
                    event=payload.event,
                    webhook_event=payload.webhook_event,
                    payload=payload.raw,
                ))
            await self._routes[payload.webhook_event](payload)
            await self._call_handlers(payload)
        except Exception as exc:
            logger.error(
                "Webhook processing failed for %s (instance %s): %s",
                payload.event, payload.instance_name, exc,
            )
            raise WebhookProcessingError.processing_failed(
                payload.event, payload.instance_name, exc
            ) from exc
        return payload

    async def _call_handlers(self, payload: WebhookPayload) -> None:
        with self._lock:
            handlers = self._handlers

        exact = handlers.get(payload.event)
        if exact is None and payload.is_known_event:
            exact = handlers.get(payload.webhook_event.value)
        for handler in (exact, handlers.get(WILDCARD)):
            if handler is None:
                continue
            if hasattr(handler, "handle"):
                await _maybe_await(handler.handle(payload))
            else:
                await _maybe_await(handler(payload))

    async def _emit(self, event: BaseEvent) -> None:
        if self._dispatch_events:
            await self.bus.dispatch(event)

    # ---- Built-in routes ----

    async def _ignore(self, payload: WebhookPayload) -> None:
        return None

    async def _on_message_received(self, payload: WebhookPayload) -> None:
        message = payload.message_data() or {}
        await self._emit(MessageReceived(
            instance_name=payload.instance_name,
            message=message,
            sender=payload.sender_data() or {},
            message_type=determine_message_type(message),
            is_group=payload.is_from_group(),
            group_id=payload.group_id(),
        ))

    async def _on_message_update(self, payload: WebhookPayload) -> None:
        message_id = payload.message_id()
        remote_jid = payload.remote_jid()
        if message_id is None or remote_jid is None:
            return

        status = payload.get("status")
        # A status can match both; both events are emitted
        if status in _DELIVERED_STATUSES:
            await self._emit(MessageDelivered(
                instance_name=payload.instance_name,
                message_id=message_id,
                remote_jid=remote_jid,
                data=payload.data,
            ))
        if status in _READ_STATUSES:
            await self._emit(MessageRead(
                instance_name=payload.instance_name,
                message_ids=[message_id],
                remote_jid=remote_jid,
                data=payload.data,
            ))

    async def _on_message_sent(self, payload: WebhookPayload) -> None:
        message = payload.message_data() or {}
        await self._emit(MessageSent(
            instance_name=payload.instance_name,
            message_type=determine_message_type(message),
            message=message,
            response=payload.data,
        ))

    async def _on_connection_update(self, payload: WebhookPayload) -> None:
        state = payload.connection_state()
        if state is None:
            return
        status = map_connection_state(state)
        await self._emit(ConnectionUpdated(
            instance_name=payload.instance_name,
            status=status,
            data=payload.data,
        ))
        phone_number = payload.get("phoneNumber")
        await self._emit(InstanceStatusChanged(
            instance_name=payload.instance_name,
            status=status,
            phone_number=str(phone_number) if phone_number is not None else None,
            data=payload.data,
        ))

    async def _on_qr_code_updated(self, payload: WebhookPayload) -> None:
        qr_code = payload.qr_code()
        if qr_code is None:
            return
        await self._emit(QrCodeReceived(
            instance_name=payload.instance_name,
            qr_code=qr_code,
            pairing_code=payload.pairing_code(),
            attempt=_as_int(payload.get("count"), 1),
            data=payload.data,
        ))


async def _maybe_await(result: Any) -> None:
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        await result


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
