"""
Connection registry for multi-gateway setups.

Holds the named :class:`ConnectionProfile` objects, tracks which one is
active, and caches one ``httpx.AsyncClient`` per connection. Clients
retired by a switch are closed once no request still holds them.
"""

from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

from evolution_runtime.config import DEFAULT_CONNECTION, ClientConfig, ConnectionProfile
from evolution_runtime.errors import ConfigurationError, InstanceRequiredError

logger = logging.getLogger(__name__)

# Content-Type is left to httpx so multipart uploads get their boundary
_DEFAULT_HEADERS = {"Accept": "application/json"}


class ConnectionRegistry:
    """Named connection profiles plus the active selection."""

    def __init__(
        self,
        profiles: dict[str, ConnectionProfile] | None = None,
        active: str = DEFAULT_CONNECTION,
        default_instance: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._profiles: dict[str, ConnectionProfile] = dict(profiles or {})
        self._active = active if active in self._profiles or not self._profiles else next(iter(self._profiles))
        self._default_instance = default_instance
        self._transport = transport
        self._clients: dict[str, httpx.AsyncClient] = {}
        self._stale: list[httpx.AsyncClient] = []
        # In-flight request count per client
        self._leases: dict[httpx.AsyncClient, int] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: ClientConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ConnectionRegistry:
        return cls(
            config.connections,
            active=config.default_connection,
            default_instance=config.default_instance,
            transport=transport,
        )

    # ---- Profiles ----

    def add(self, profile: ConnectionProfile) -> None:
        """Register (or replace) a profile at runtime."""
        with self._lock:
            replaced = self._clients.pop(profile.name, None)
            if replaced is not None:
                self._stale.append(replaced)
            self._profiles[profile.name] = profile

    def remove(self, name: str) -> None:
        """Drop a profile. Removing the active one falls back to ``default``."""
        with self._lock:
            self._profiles.pop(name, None)
            client = self._clients.pop(name, None)
            if client is not None:
                self._stale.append(client)
            if self._active == name:
                self._active = DEFAULT_CONNECTION

    def has(self, name: str) -> bool:
        return name in self._profiles

    def names(self) -> list[str]:
        return list(self._profiles)

    def profile(self, name: str) -> ConnectionProfile:
        try:
            return self._profiles[name]
        except KeyError:
            raise ConfigurationError(
                f"Evolution API connection [{name}] is not configured."
            ) from None

    # ---- Selection ----

    @property
    def active_name(self) -> str:
        return self._active

    @property
    def default_instance(self) -> str | None:
        return self._default_instance

    def select(self, name: str) -> None:
        """Make ``name`` the active connection.

        Raises:
            ConfigurationError: ``name`` is not a registered connection.
        """
        self.profile(name)
        with self._lock:
            previous = self._active
            if previous != name:
                client = self._clients.pop(previous, None)
                if client is not None:
                    self._stale.append(client)
                logger.debug("Switched active connection %s -> %s", previous, name)
            self._active = name

    def current_profile(self) -> ConnectionProfile:
        return self.profile(self._active)

    def resolve_instance(
        self,
        explicit: str | None = None,
        *,
        required: bool = False,
        endpoint: str = "",
    ) -> str | None:
        """Pick the explicit instance, else the bound default.

        Raises:
            InstanceRequiredError: ``required`` and no instance is available.
        """
        instance = explicit or self._default_instance
        if instance is None and required:
            raise InstanceRequiredError(endpoint)
        return instance

    # ---- HTTP clients ----

    def http_client(self, name: str) -> httpx.AsyncClient:
        """Cached ``httpx.AsyncClient`` configured from the profile."""
        profile = self.profile(name)
        with self._lock:
            return self._client_for(profile)

    @asynccontextmanager
    async def lease(self, name: str) -> AsyncIterator[httpx.AsyncClient]:
        """Hold the connection's client for the duration of one request.

        On exit, retired clients that nothing holds any more are closed.
        """
        profile = self.profile(name)
        with self._lock:
            client = self._client_for(profile)
            self._leases[client] = self._leases.get(client, 0) + 1
        try:
            yield client
        finally:
            with self._lock:
                count = self._leases.pop(client) - 1
                if count:
                    self._leases[client] = count
            await self.close_retired()

    async def close_retired(self) -> int:
        """Release retired clients with no request in flight. Returns how many."""
        with self._lock:
            idle = [client for client in self._stale if client not in self._leases]
            self._stale = [client for client in self._stale if client in self._leases]
        # An injected transport is shared with the live clients
        if self._transport is None:
            for client in idle:
                await client.aclose()
        if idle:
            logger.debug("Released %d retired HTTP client(s)", len(idle))
        return len(idle)

    @property
    def retired_count(self) -> int:
        """Retired clients still waiting to be closed."""
        return len(self._stale)

    def _client_for(self, profile: ConnectionProfile) -> httpx.AsyncClient:
        client = self._clients.get(profile.name)
        if client is None or client.is_closed:
            client = self._build_client(profile)
            self._clients[profile.name] = client
        return client

    def _build_client(self, profile: ConnectionProfile) -> httpx.AsyncClient:
        kwargs: dict = {
            "base_url": profile.base_url,
            "headers": {"apikey": profile.credential, **_DEFAULT_HEADERS},
            "timeout": httpx.Timeout(profile.http.timeout, connect=profile.http.connect_timeout),
            "verify": profile.http.verify_tls,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    async def aclose(self) -> None:
        with self._lock:
            clients = list(self._clients.values()) + self._stale
            self._clients.clear()
            self._stale = []
        for client in clients:
            await client.aclose()
