"""
Configuration models for the Evolution API runtime.

A :class:`ClientConfig` holds one or more named :class:`ConnectionProfile`
objects plus the shared rate-limit settings. It can be built directly,
from the nested mapping layout used by the gateway's config files, or
from ``EVOLUTION_*`` environment variables.
"""

from __future__ import annotations

import os
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from evolution_runtime.errors import ConfigurationError

DEFAULT_CONNECTION = "default"

DEFAULT_SENSITIVE_FIELDS = ["apikey", "api_key", "token", "password", "secret"]


# ============================================================
#  Per-connection options
# ============================================================


class HttpOptions(BaseModel):
    """Transport settings for one connection."""

    model_config = ConfigDict(frozen=True)

    timeout: float = 30.0
    connect_timeout: float = 10.0
    verify_tls: bool = True


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class RetryOptions(BaseModel):
    """Retry policy for transient failures."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    max_attempts: int = Field(3, ge=1)
    base_delay_ms: int = Field(1000, ge=0)
    max_delay_ms: int = Field(30000, ge=0)
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    retryable_status_codes: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})
    # Used for 429 responses that carry no Retry-After header
    default_retry_after: int = 60

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt.

        Non-decreasing in ``attempt`` for every strategy and capped at
        ``max_delay_ms``.
        """
        attempt = max(1, attempt)
        if self.backoff_strategy is BackoffStrategy.FIXED:
            delay_ms = self.base_delay_ms
        elif self.backoff_strategy is BackoffStrategy.LINEAR:
            delay_ms = self.base_delay_ms * attempt
        else:
            delay_ms = self.base_delay_ms * (2 ** (attempt - 1))
        if self.max_delay_ms:
            delay_ms = min(delay_ms, max(self.max_delay_ms, self.base_delay_ms))
        return delay_ms / 1000.0

    def is_retryable(self, status_code: int) -> bool:
        return status_code in self.retryable_status_codes


class LoggingOptions(BaseModel):
    """Request/response trace settings."""

    model_config = ConfigDict(frozen=True)

    log_requests: bool = True
    log_responses: bool = True
    redact_sensitive: bool = True
    sensitive_fields: tuple[str, ...] = tuple(DEFAULT_SENSITIVE_FIELDS)


class ConnectionProfile(BaseModel):
    """A named gateway endpoint with its credential and policies."""

    model_config = ConfigDict(frozen=True)

    name: str = DEFAULT_CONNECTION
    base_url: str
    credential: str
    http: HttpOptions = Field(default_factory=HttpOptions)
    retry: RetryOptions = Field(default_factory=RetryOptions)
    logging: LoggingOptions = Field(default_factory=LoggingOptions)
    throw_on_error: bool = True

    @field_validator("base_url")
    @classmethod
    def _normalize_base_url(cls, value: str) -> str:
        value = (value or "").strip()
        if not value.startswith(("http://", "https://")) or len(value.split("://", 1)[1]) == 0:
            raise ValueError("base_url must be an http(s) URL")
        return value.rstrip("/")

    @field_validator("credential")
    @classmethod
    def _require_credential(cls, value: str) -> str:
        if not value:
            raise ValueError("credential must not be empty")
        return value


# ============================================================
#  Rate limiting
# ============================================================


class LimitPolicy(str, Enum):
    """What to do when a rate-limit bucket is exhausted."""

    SKIP = "skip"
    THROW = "throw"
    WAIT = "wait"


class BucketLimit(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(ge=1)
    decay_seconds: float = Field(gt=0)


def _default_limits() -> dict[str, BucketLimit]:
    return {
        "default": BucketLimit(max_attempts=60, decay_seconds=60),
        "messages": BucketLimit(max_attempts=30, decay_seconds=60),
        "media": BucketLimit(max_attempts=10, decay_seconds=60),
    }


class RateLimitOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    on_limit_reached: LimitPolicy = LimitPolicy.THROW
    limits: dict[str, BucketLimit] = Field(default_factory=_default_limits)

    def limit_for(self, operation_class: str) -> BucketLimit:
        """Bucket settings for a class, falling back to ``default``."""
        if operation_class in self.limits:
            return self.limits[operation_class]
        return self.limits.get("default") or _default_limits()["default"]


# ============================================================
#  Client configuration
# ============================================================


class ClientConfig(BaseModel):
    """Everything an :class:`~evolution_runtime.client.EvolutionClient` needs."""

    connections: dict[str, ConnectionProfile]
    default_connection: str = DEFAULT_CONNECTION
    default_instance: str | None = None
    rate_limit: RateLimitOptions = Field(default_factory=RateLimitOptions)

    @classmethod
    def single(
        cls,
        base_url: str,
        credential: str,
        *,
        instance: str | None = None,
        **profile_options: Any,
    ) -> ClientConfig:
        """Shortcut for a one-connection setup."""
        profile = _build_profile(
            name=DEFAULT_CONNECTION,
            base_url=base_url,
            credential=credential,
            **profile_options,
        )
        return cls(connections={DEFAULT_CONNECTION: profile}, default_instance=instance)

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> ClientConfig:
        """Build from the nested config layout.

        Recognised keys: ``connections`` (name -> ``server_url``/``api_key``,
        optionally with their own ``http``/``retry``/``logging``), the legacy
        top-level ``server_url``/``api_key`` pair, and the shared ``http``,
        ``retry``, ``logging``, ``rate_limiting`` and ``default_instance``
        sections.
        """
        shared = {
            "http": _http_options(config.get("http") or {}),
            "retry": _retry_options(config.get("retry") or {}),
            "logging": _logging_options(config.get("logging") or {}),
        }

        raw_connections: dict[str, Mapping[str, Any]] = dict(config.get("connections") or {})
        if config.get("server_url") and config.get("api_key"):
            raw_connections.setdefault(
                DEFAULT_CONNECTION,
                {"server_url": config["server_url"], "api_key": config["api_key"]},
            )
        if not raw_connections:
            raise ConfigurationError("No Evolution API connections are configured.")

        connections: dict[str, ConnectionProfile] = {}
        for name, raw in raw_connections.items():
            options = dict(shared)
            if "http" in raw:
                options["http"] = _http_options(raw["http"])
            if "retry" in raw:
                options["retry"] = _retry_options(raw["retry"])
            if "logging" in raw:
                options["logging"] = _logging_options(raw["logging"])
            if "throw_on_error" in raw:
                options["throw_on_error"] = bool(raw["throw_on_error"])
            connections[name] = _build_profile(
                name=name,
                base_url=raw.get("server_url") or raw.get("base_url") or "",
                credential=raw.get("api_key") or raw.get("credential") or "",
                **options,
            )

        default_connection = config.get("default_connection", DEFAULT_CONNECTION)
        if default_connection not in connections:
            default_connection = next(iter(connections))

        return cls(
            connections=connections,
            default_connection=default_connection,
            default_instance=config.get("default_instance"),
            rate_limit=_rate_limit_options(config.get("rate_limiting") or {}),
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ClientConfig:
        """Build a single ``default`` connection from ``EVOLUTION_*`` variables."""
        env = os.environ if environ is None else environ
        config: dict[str, Any] = {
            "server_url": env.get("EVOLUTION_API_URL", "http://localhost:8080"),
            "api_key": env.get("EVOLUTION_API_KEY", ""),
            "default_instance": env.get("EVOLUTION_DEFAULT_INSTANCE") or None,
            "http": {
                "timeout": env.get("EVOLUTION_HTTP_TIMEOUT", 30),
                "connect_timeout": env.get("EVOLUTION_HTTP_CONNECT_TIMEOUT", 10),
                "verify_ssl": _env_flag(env.get("EVOLUTION_VERIFY_SSL"), True),
            },
            "retry": {
                "enabled": _env_flag(env.get("EVOLUTION_RETRY_ENABLED"), True),
                "max_attempts": env.get("EVOLUTION_RETRY_MAX_ATTEMPTS", 3),
            },
            "rate_limiting": {
                "enabled": _env_flag(env.get("EVOLUTION_RATE_LIMIT_ENABLED"), True),
            },
        }
        if not config["api_key"]:
            raise ConfigurationError(
                "Evolution API connection [default] is missing 'api_key'."
            )
        return cls.from_mapping(config)

    def profile(self, name: str) -> ConnectionProfile:
        try:
            return self.connections[name]
        except KeyError:
            raise ConfigurationError(
                f"Evolution API connection [{name}] is not configured."
            ) from None


# ============================================================
#  Helpers
# ============================================================


def _build_profile(**fields: Any) -> ConnectionProfile:
    name = fields.get("name", DEFAULT_CONNECTION)
    try:
        return ConnectionProfile(**fields)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigurationError(
            f"Evolution API connection [{name}] is invalid: {problems}"
        ) from exc


def _http_options(raw: Mapping[str, Any]) -> HttpOptions:
    return HttpOptions(
        timeout=float(raw.get("timeout", 30)),
        connect_timeout=float(raw.get("connect_timeout", 10)),
        verify_tls=bool(raw.get("verify_ssl", raw.get("verify_tls", True))),
    )


def _retry_options(raw: Mapping[str, Any]) -> RetryOptions:
    fields: dict[str, Any] = {}
    if "enabled" in raw:
        fields["enabled"] = bool(raw["enabled"])
    if "max_attempts" in raw:
        fields["max_attempts"] = int(raw["max_attempts"])
    if "base_delay" in raw or "base_delay_ms" in raw:
        fields["base_delay_ms"] = int(raw.get("base_delay_ms", raw.get("base_delay")))
    if "max_delay" in raw or "max_delay_ms" in raw:
        fields["max_delay_ms"] = int(raw.get("max_delay_ms", raw.get("max_delay")))
    if "backoff_strategy" in raw:
        fields["backoff_strategy"] = BackoffStrategy(raw["backoff_strategy"])
    if "retryable_status_codes" in raw:
        fields["retryable_status_codes"] = frozenset(int(c) for c in raw["retryable_status_codes"])
    if "default_retry_after" in raw:
        fields["default_retry_after"] = int(raw["default_retry_after"])
    return RetryOptions(**fields)


def _logging_options(raw: Mapping[str, Any]) -> LoggingOptions:
    fields: dict[str, Any] = {}
    for key in ("log_requests", "log_responses", "redact_sensitive"):
        if key in raw:
            fields[key] = bool(raw[key])
    if "sensitive_fields" in raw:
        fields["sensitive_fields"] = tuple(raw["sensitive_fields"])
    return LoggingOptions(**fields)


def _rate_limit_options(raw: Mapping[str, Any]) -> RateLimitOptions:
    limits = _default_limits()
    for operation_class, limit in (raw.get("limits") or {}).items():
        if "max_attempts" in limit and "decay_seconds" in limit:
            limits[operation_class] = BucketLimit(
                max_attempts=int(limit["max_attempts"]),
                decay_seconds=float(limit["decay_seconds"]),
            )
    return RateLimitOptions(
        enabled=bool(raw.get("enabled", True)),
        on_limit_reached=LimitPolicy(raw.get("on_limit_reached", LimitPolicy.THROW.value)),
        limits=limits,
    )


def _env_flag(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")
