"""
Pydantic models and enumerations for the Evolution API runtime.

Request coordinates, per-call options and the response envelope used by
the dispatcher, plus the closed enumerations used by webhook processing.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


INSTANCE_PLACEHOLDER = "{instance}"


# ============================================================
#  Requests
# ============================================================


class RequestCoordinates(BaseModel):
    """Everything needed to address one logical call.

    Captured once when the call is built so that a later change of the
    client's active connection or instance cannot retarget it.
    """

    model_config = ConfigDict(frozen=True)

    connection_name: str
    instance_name: str | None = None
    endpoint_template: str
    method: str = "GET"
    query_params: dict[str, Any] = Field(default_factory=dict)
    body: dict[str, Any] = Field(default_factory=dict)

    @property
    def needs_instance(self) -> bool:
        return INSTANCE_PLACEHOLDER in self.endpoint_template

    @property
    def rate_limit_scope(self) -> str:
        """``connection`` or ``connection:instance``."""
        if self.instance_name:
            return f"{self.connection_name}:{self.instance_name}"
        return self.connection_name


class RequestOptions(BaseModel):
    """One-shot options for a single call."""

    model_config = ConfigDict(frozen=True)

    # None defers to the connection profile
    throw_on_error: bool | None = None
    headers: dict[str, str] = Field(default_factory=dict)


class UploadFile(BaseModel):
    """A named file part for multipart uploads."""

    name: str
    contents: bytes | str
    filename: str | None = None
    content_type: str | None = None


# ============================================================
#  Responses
# ============================================================


class ResponseEnvelope(BaseModel):
    """Uniform wrapper around one completed HTTP exchange."""

    model_config = ConfigDict(frozen=True)

    status_code: int
    is_successful: bool
    message: str | None = None
    body: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    response_time_ms: float = 0.0

    @property
    def is_failed(self) -> bool:
        return not self.is_successful

    def get(self, key: str, default: Any = None) -> Any:
        return self.body.get(key, default)

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.is_successful,
            "status_code": self.status_code,
            "data": self.body,
            "message": self.message,
            "response_time": self.response_time_ms,
        }

    def raise_for_error(
        self,
        instance_name: str | None = None,
        default_retry_after: int = 60,
    ) -> ResponseEnvelope:
        """Raise the mapped :class:`ApiError` if this exchange failed."""
        if self.is_failed:
            from evolution_runtime.errors import error_from_envelope

            raise error_from_envelope(self, instance_name, default_retry_after)
        return self


# ============================================================
#  Enumerations
# ============================================================


class MessageType(str, Enum):
    """Content type of a WhatsApp message."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"
    CONTACT = "contact"
    CONTACT_ARRAY = "contactArray"
    POLL = "poll"
    LIST = "list"
    BUTTON = "button"
    TEMPLATE = "template"
    REACTION = "reaction"
    UNKNOWN = "unknown"

    @property
    def is_media(self) -> bool:
        return self in _MEDIA_TYPES

    @property
    def is_interactive(self) -> bool:
        return self in (MessageType.POLL, MessageType.LIST, MessageType.BUTTON)


_MEDIA_TYPES = frozenset({
    MessageType.IMAGE,
    MessageType.VIDEO,
    MessageType.AUDIO,
    MessageType.DOCUMENT,
    MessageType.STICKER,
})


class ConnectionStatus(str, Enum):
    """Lifecycle status of a gateway instance."""

    OPEN = "open"
    CONNECTING = "connecting"
    CLOSE = "close"
    QRCODE = "qrcode"
    UNKNOWN = "unknown"

    @classmethod
    def from_state(cls, state: str | None) -> ConnectionStatus:
        """Map a free-text gateway state. Unrecognised values give UNKNOWN."""
        if not isinstance(state, str):
            return cls.UNKNOWN
        return _STATE_ALIASES.get(state.strip().lower(), cls.UNKNOWN)

    @property
    def is_connected(self) -> bool:
        return self is ConnectionStatus.OPEN

    @property
    def is_disconnected(self) -> bool:
        return self is ConnectionStatus.CLOSE

    @property
    def requires_qr_code(self) -> bool:
        return self is ConnectionStatus.QRCODE

    @property
    def label(self) -> str:
        return {
            ConnectionStatus.OPEN: "Connected",
            ConnectionStatus.CONNECTING: "Connecting",
            ConnectionStatus.CLOSE: "Disconnected",
            ConnectionStatus.QRCODE: "Awaiting QR Code Scan",
            ConnectionStatus.UNKNOWN: "Unknown",
        }[self]


_STATE_ALIASES = {
    "open": ConnectionStatus.OPEN,
    "connected": ConnectionStatus.OPEN,
    "connecting": ConnectionStatus.CONNECTING,
    "close": ConnectionStatus.CLOSE,
    "closed": ConnectionStatus.CLOSE,
    "disconnected": ConnectionStatus.CLOSE,
    "qrcode": ConnectionStatus.QRCODE,
    "qr": ConnectionStatus.QRCODE,
}


class WebhookEvent(str, Enum):
    """Closed set of webhook events sent by the gateway."""

    APPLICATION_STARTUP = "APPLICATION_STARTUP"
    QRCODE_UPDATED = "QRCODE_UPDATED"
    MESSAGES_SET = "MESSAGES_SET"
    MESSAGES_UPSERT = "MESSAGES_UPSERT"
    MESSAGES_UPDATE = "MESSAGES_UPDATE"
    MESSAGES_DELETE = "MESSAGES_DELETE"
    SEND_MESSAGE = "SEND_MESSAGE"
    CONTACTS_SET = "CONTACTS_SET"
    CONTACTS_UPSERT = "CONTACTS_UPSERT"
    CONTACTS_UPDATE = "CONTACTS_UPDATE"
    PRESENCE_UPDATE = "PRESENCE_UPDATE"
    CHATS_SET = "CHATS_SET"
    CHATS_UPSERT = "CHATS_UPSERT"
    CHATS_UPDATE = "CHATS_UPDATE"
    CHATS_DELETE = "CHATS_DELETE"
    GROUPS_UPSERT = "GROUPS_UPSERT"
    GROUP_UPDATE = "GROUP_UPDATE"
    GROUP_PARTICIPANTS_UPDATE = "GROUP_PARTICIPANTS_UPDATE"
    CONNECTION_UPDATE = "CONNECTION_UPDATE"
    LABELS_EDIT = "LABELS_EDIT"
    LABELS_ASSOCIATION = "LABELS_ASSOCIATION"
    CALL = "CALL"
    TYPEBOT_START = "TYPEBOT_START"
    TYPEBOT_CHANGE_STATUS = "TYPEBOT_CHANGE_STATUS"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_string(cls, value: str | None) -> WebhookEvent:
        """Parse an event name.

        Accepts both ``MESSAGES_UPSERT`` and the dotted lower-case form
        (``messages.upsert``) that the gateway uses in webhook bodies.
        """
        if not isinstance(value, str):
            return cls.UNKNOWN
        normalized = value.strip().upper().replace(".", "_").replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_message_event(self) -> bool:
        return self in _MESSAGE_EVENTS

    @property
    def is_connection_event(self) -> bool:
        return self in _CONNECTION_EVENTS

    @property
    def is_group_event(self) -> bool:
        return self in _GROUP_EVENTS

    @property
    def is_contact_event(self) -> bool:
        return self in (
            WebhookEvent.CONTACTS_SET,
            WebhookEvent.CONTACTS_UPSERT,
            WebhookEvent.CONTACTS_UPDATE,
        )

    @property
    def is_chat_event(self) -> bool:
        return self in (
            WebhookEvent.CHATS_SET,
            WebhookEvent.CHATS_UPSERT,
            WebhookEvent.CHATS_UPDATE,
            WebhookEvent.CHATS_DELETE,
        )

    @property
    def label(self) -> str:
        return _EVENT_LABELS.get(self, self.value.replace("_", " ").title())


_MESSAGE_EVENTS = frozenset({
    WebhookEvent.MESSAGES_SET,
    WebhookEvent.MESSAGES_UPSERT,
    WebhookEvent.MESSAGES_UPDATE,
    WebhookEvent.MESSAGES_DELETE,
    WebhookEvent.SEND_MESSAGE,
})

_CONNECTION_EVENTS = frozenset({
    WebhookEvent.CONNECTION_UPDATE,
    WebhookEvent.QRCODE_UPDATED,
    WebhookEvent.APPLICATION_STARTUP,
})

_GROUP_EVENTS = frozenset({
    WebhookEvent.GROUPS_UPSERT,
    WebhookEvent.GROUP_UPDATE,
    WebhookEvent.GROUP_PARTICIPANTS_UPDATE,
})

_EVENT_LABELS = {
    WebhookEvent.QRCODE_UPDATED: "QR Code Updated",
    WebhookEvent.MESSAGES_UPSERT: "Message Received",
    WebhookEvent.MESSAGES_UPDATE: "Message Updated",
    WebhookEvent.MESSAGES_DELETE: "Message Deleted",
    WebhookEvent.SEND_MESSAGE: "Message Sent",
    WebhookEvent.CONTACTS_UPSERT: "Contact Added",
    WebhookEvent.CHATS_UPSERT: "Chat Added",
    WebhookEvent.GROUPS_UPSERT: "Group Added",
    WebhookEvent.CALL: "Call Received",
    WebhookEvent.TYPEBOT_START: "Typebot Started",
    WebhookEvent.TYPEBOT_CHANGE_STATUS: "Typebot Status Changed",
    WebhookEvent.UNKNOWN: "Unknown Event",
}
