"""
Normalised view over an inbound webhook body.

Gateways put event-specific fields either at the top level or under a
nested ``data`` object, and the shape varies by event and gateway
version. :class:`WebhookPayload` hides that behind dotted-path lookups
that never raise.
"""

from __future__ import annotations

import time
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from evolution_runtime.types import WebhookEvent

_MISSING = object()

_ENVELOPE_KEYS = ("event", "instance", "instanceName")


def _dig(source: Any, path: str) -> Any:
    value = source
    for segment in path.split("."):
        if isinstance(value, Mapping) and segment in value:
            value = value[segment]
        elif isinstance(value, list) and segment.isdigit() and int(segment) < len(value):
            value = value[int(segment)]
        else:
            return _MISSING
    return value


class WebhookPayload(BaseModel):
    """A decoded webhook body plus typed accessors."""

    model_config = ConfigDict(frozen=True)

    event: str = "UNKNOWN"
    instance_name: str = "unknown"
    # The body without the event/instance envelope keys
    data: dict[str, Any] = Field(default_factory=dict)
    webhook_event: WebhookEvent = WebhookEvent.UNKNOWN
    api_key: str | None = None
    received_at: float = Field(default_factory=time.time)
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> WebhookPayload:
        raw = dict(payload or {})
        event = raw.get("event")
        event = event if isinstance(event, str) and event else "UNKNOWN"
        instance = raw.get("instance") or raw.get("instanceName")
        if isinstance(instance, Mapping):
            # Some gateway versions send {"instance": {"instanceName": ...}}
            instance = instance.get("instanceName") or instance.get("name")
        instance_name = str(instance) if instance else "unknown"
        api_key = raw.get("apikey") or raw.get("apiKey")

        return cls(
            event=event,
            instance_name=instance_name,
            data={k: v for k, v in raw.items() if k not in _ENVELOPE_KEYS},
            webhook_event=WebhookEvent.from_string(event),
            api_key=api_key if isinstance(api_key, str) else None,
            raw=raw,
        )

    # ---- Lookups ----

    def get(self, path: str, default: Any = None) -> Any:
        """Dotted-path lookup.

        Paths not already rooted at ``data`` are tried inside the nested
        ``data`` object first, then at the top level. ``None`` values
        count as absent.
        """
        if path != "data" and not path.startswith("data."):
            value = _dig(self.data.get("data"), path)
            if value is not _MISSING and value is not None:
                return value
        value = _dig(self.data, path)
        if value is _MISSING or value is None:
            return default
        return value

    def first(self, *paths: str, default: Any = None) -> Any:
        """Value of the first path that resolves."""
        for path in paths:
            value = self.get(path)
            if value is not None:
                return value
        return default

    def has(self, path: str) -> bool:
        return self.get(path) is not None

    # ---- Classification ----

    @property
    def event_type(self) -> WebhookEvent:
        return self.webhook_event

    @property
    def is_known_event(self) -> bool:
        return self.webhook_event is not WebhookEvent.UNKNOWN

    @property
    def is_message_event(self) -> bool:
        return self.webhook_event.is_message_event

    @property
    def is_connection_event(self) -> bool:
        return self.webhook_event.is_connection_event

    @property
    def is_group_event(self) -> bool:
        return self.webhook_event.is_group_event

    # ---- Extractors ----

    def message_id(self) -> str | None:
        """``data.key.id`` -> ``key.id`` -> ``messageId``."""
        return _as_str(self.first("key.id", "messageId", "keyId"))

    def remote_jid(self) -> str | None:
        """``data.key.remoteJid`` -> ``key.remoteJid`` -> ``remoteJid``."""
        return _as_str(self.first("key.remoteJid", "remoteJid"))

    def is_from_group(self) -> bool:
        jid = self.remote_jid()
        return jid is not None and "@g.us" in jid

    def group_id(self) -> str | None:
        return self.remote_jid() if self.is_from_group() else None

    def message_data(self) -> dict[str, Any] | None:
        """The message object: ``data``, else ``message``."""
        for path in ("data", "message"):
            value = self.get(path)
            if isinstance(value, dict):
                return value
        return None

    def sender_data(self) -> dict[str, Any] | None:
        value = self.get("sender")
        if isinstance(value, dict):
            return value
        if isinstance(value, str):
            return {"jid": value}
        return None

    def connection_state(self) -> str | None:
        """``data.state`` -> ``state`` -> ``status``."""
        return _as_str(self.first("state", "status"))

    def qr_code(self) -> str | None:
        """``data.qrcode.base64`` -> ``qrcode.base64`` -> ``qrcode`` -> ``base64``."""
        for path in ("qrcode.base64", "qrcode", "base64"):
            value = self.get(path)
            if isinstance(value, str) and value:
                return value
        return None

    def pairing_code(self) -> str | None:
        return _as_str(self.get("pairingCode"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "instance_name": self.instance_name,
            "webhook_event": self.webhook_event.value,
            "is_known_event": self.is_known_event,
            "data": self.data,
            "received_at": self.received_at,
        }


def _as_str(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)
