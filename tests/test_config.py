"""
Unit tests for configuration parsing and retry backoff.
"""

from __future__ import annotations

import pytest

from evolution_runtime.config import (
    BackoffStrategy,
    ClientConfig,
    LimitPolicy,
    RetryOptions,
)
from evolution_runtime.errors import ConfigurationError


# ============================================================
#  ClientConfig
# ============================================================


def test_single_connection() -> None:
    config = ClientConfig.single("https://evolution.test/", "key-1", instance="sales")

    profile = config.profile("default")
    assert profile.base_url == "https://evolution.test"
    assert profile.credential == "key-1"
    assert config.default_instance == "sales"
    assert profile.throw_on_error is True


def test_from_mapping_with_named_connections() -> None:
    """Shared sections apply to every connection unless overridden."""
    config = ClientConfig.from_mapping({
        "default_connection": "primary",
        "connections": {
            "primary": {"server_url": "https://a.test", "api_key": "ka"},
            "backup": {
                "server_url": "https://b.test",
                "api_key": "kb",
                "retry": {"max_attempts": 5, "backoff_strategy": "linear"},
            },
        },
        "retry": {"max_attempts": 2, "base_delay": 500},
        "http": {"timeout": 12, "verify_ssl": False},
        "rate_limiting": {
            "on_limit_reached": "wait",
            "limits": {"messages": {"max_attempts": 5, "decay_seconds": 10}},
        },
    })

    assert config.default_connection == "primary"
    assert config.profile("primary").retry.max_attempts == 2
    assert config.profile("primary").retry.base_delay_ms == 500
    assert config.profile("primary").http.timeout == 12
    assert config.profile("primary").http.verify_tls is False
    assert config.profile("backup").retry.max_attempts == 5
    assert config.profile("backup").retry.backoff_strategy is BackoffStrategy.LINEAR
    assert config.rate_limit.on_limit_reached is LimitPolicy.WAIT
    assert config.rate_limit.limit_for("messages").max_attempts == 5
    assert config.rate_limit.limit_for("media").max_attempts == 10


def test_from_mapping_legacy_top_level_connection() -> None:
    config = ClientConfig.from_mapping({"server_url": "http://localhost:8080", "api_key": "k"})
    assert config.connections["default"].base_url == "http://localhost:8080"


def test_from_mapping_without_connections_fails() -> None:
    with pytest.raises(ConfigurationError):
        ClientConfig.from_mapping({})


@pytest.mark.parametrize("base_url", ["", "evolution.test", "ftp://evolution.test", "https://"])
def test_invalid_base_url(base_url: str) -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        ClientConfig.single(base_url, "key")
    assert "base_url" in str(exc_info.value)


def test_empty_credential() -> None:
    with pytest.raises(ConfigurationError):
        ClientConfig.single("https://evolution.test", "")


def test_unknown_profile() -> None:
    config = ClientConfig.single("https://evolution.test", "key")
    with pytest.raises(ConfigurationError):
        config.profile("missing")


def test_from_env() -> None:
    config = ClientConfig.from_env({
        "EVOLUTION_API_URL": "https://env.test",
        "EVOLUTION_API_KEY": "env-key",
        "EVOLUTION_DEFAULT_INSTANCE": "sales",
        "EVOLUTION_RETRY_MAX_ATTEMPTS": "4",
        "EVOLUTION_VERIFY_SSL": "false",
        "EVOLUTION_RATE_LIMIT_ENABLED": "0",
    })

    profile = config.profile("default")
    assert profile.base_url == "https://env.test"
    assert profile.credential == "env-key"
    assert profile.retry.max_attempts == 4
    assert profile.http.verify_tls is False
    assert config.default_instance == "sales"
    assert config.rate_limit.enabled is False


def test_from_env_requires_api_key() -> None:
    with pytest.raises(ConfigurationError):
        ClientConfig.from_env({"EVOLUTION_API_URL": "https://env.test"})


# ============================================================
#  Backoff
# ============================================================


@pytest.mark.parametrize("strategy", list(BackoffStrategy))
def test_backoff_is_non_decreasing_and_capped(strategy: BackoffStrategy) -> None:
    retry = RetryOptions(base_delay_ms=1000, max_delay_ms=8000, backoff_strategy=strategy)

    delays = [retry.delay_for(attempt) for attempt in range(1, 12)]

    assert delays == sorted(delays)
    assert max(delays) <= 8.0


def test_backoff_values() -> None:
    exponential = RetryOptions(base_delay_ms=1000, max_delay_ms=30000)
    linear = RetryOptions(base_delay_ms=1000, backoff_strategy="linear")
    fixed = RetryOptions(base_delay_ms=250, backoff_strategy="fixed")

    assert [exponential.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]
    assert exponential.delay_for(10) == 30.0
    assert [linear.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]
    assert fixed.delay_for(7) == 0.25


def test_retryable_statuses() -> None:
    retry = RetryOptions()
    assert all(retry.is_retryable(code) for code in (408, 429, 500, 502, 503, 504))
    assert not retry.is_retryable(400)
    assert not retry.is_retryable(404)
