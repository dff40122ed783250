"""Redaction helpers for request/response traces."""

from __future__ import annotations

from typing import Any, Iterable

REDACTED = "[REDACTED]"


def redact_sensitive(data: Any, sensitive_fields: Iterable[str]) -> Any:
    """Return a copy of ``data`` with sensitive keys masked at any depth.

    Key comparison is case-insensitive. Lists and tuples are walked so
    that dicts nested inside them are masked too. The input is never
    mutated.
    """
    fields = {f.lower() for f in sensitive_fields}
    if not fields:
        return data
    return _redact(data, fields)


def _redact(value: Any, fields: set[str]) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED if isinstance(key, str) and key.lower() in fields else _redact(item, fields)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item, fields) for item in value]
    return value
