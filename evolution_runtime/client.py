"""
Evolution API client.

Async HTTP client for an Evolution API (WhatsApp) gateway, built on
``httpx``. Calls go through a shared pipeline: connection and instance
resolution, local rate limiting, retry with backoff, and error
classification.

Usage::

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
        print(await client.connection_state())
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

import httpx

from evolution_runtime.config import ClientConfig
from evolution_runtime.connections import ConnectionRegistry
from evolution_runtime.dispatcher import RequestDispatcher
from evolution_runtime.rate_limit import BucketStore, RateLimiter
from evolution_runtime.types import (
    ConnectionStatus,
    RequestCoordinates,
    RequestOptions,
    ResponseEnvelope,
    UploadFile,
)
from evolution_runtime.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)

CONNECTION_STATE_ENDPOINT = "instance/connectionState/{instance}"


class EvolutionClient:
    """
    Entry point for talking to one or more Evolution API gateways.

    Endpoints are relative paths; ``{instance}`` is replaced with the
    resolved instance name. The instance is the one passed to the call,
    else the one pinned on this client, else the configured default.

    A client returned by :meth:`using` shares connections, rate-limit
    state and the dispatcher with its parent but has its own connection
    and instance pinned, so concurrent callers do not disturb each other.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        bucket_store: BucketStore | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._registry = ConnectionRegistry.from_config(config, transport=transport)
        self._rate_limiter = RateLimiter(config.rate_limit, store=bucket_store, sleep=sleep)
        self._dispatcher = RequestDispatcher(self._registry, self._rate_limiter, sleep=sleep)
        self.webhooks = WebhookProcessor()

        # Pinned selection; None follows the registry
        self._connection: str | None = None
        self._instance: str | None = None

    @classmethod
    def from_env(cls, **kwargs: Any) -> EvolutionClient:
        """Client configured from ``EVOLUTION_*`` environment variables."""
        return cls(ClientConfig.from_env(), **kwargs)

    def _scoped(self, connection: str | None, instance: str | None) -> EvolutionClient:
        scoped = object.__new__(EvolutionClient)
        scoped.config = self.config
        scoped._registry = self._registry
        scoped._rate_limiter = self._rate_limiter
        scoped._dispatcher = self._dispatcher
        scoped.webhooks = self.webhooks
        scoped._connection = connection
        scoped._instance = instance
        return scoped

    # ---- Selection ----

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def connection_name(self) -> str:
        return self._connection or self._registry.active_name

    @property
    def instance_name(self) -> str | None:
        return self._registry.resolve_instance(self._instance)

    def connection(self, name: str) -> EvolutionClient:
        """Switch the active connection for this client and its unscoped siblings.

        Raises:
            ConfigurationError: ``name`` is not configured.
        """
        if self._connection is not None:
            self._registry.profile(name)
            self._connection = name
        else:
            self._registry.select(name)
        return self

    def instance(self, name: str) -> EvolutionClient:
        self._instance = name
        return self

    def using(self, connection: str | None = None, instance: str | None = None) -> EvolutionClient:
        """Scoped client pinned to a connection and/or instance.

        Raises:
            ConfigurationError: ``connection`` is not configured.
        """
        name = connection or self.connection_name
        self._registry.profile(name)
        return self._scoped(name, instance or self._instance)

    # ---- HTTP verbs ----

    def _coordinates(
        self,
        method: str,
        endpoint: str,
        *,
        query: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        instance: str | None = None,
    ) -> RequestCoordinates:
        # Resolved now so later selection changes cannot retarget the call
        return RequestCoordinates(
            connection_name=self.connection_name,
            instance_name=self._registry.resolve_instance(instance or self._instance),
            endpoint_template=endpoint,
            method=method,
            query_params=dict(query or {}),
            body=dict(body or {}),
        )

    async def get(
        self,
        endpoint: str,
        query: dict[str, Any] | None = None,
        *,
        instance: str | None = None,
        options: RequestOptions | None = None,
    ) -> ResponseEnvelope:
        coords = self._coordinates("GET", endpoint, query=query, instance=instance)
        return await self._dispatcher.execute(coords, options)

    async def post(
        self,
        endpoint: str,
        data: dict[str, Any] | None = None,
        *,
        instance: str | None = None,
        options: RequestOptions | None = None,
    ) -> ResponseEnvelope:
        coords = self._coordinates("POST", endpoint, body=data, instance=instance)
        return await self._dispatcher.execute(coords, options)

    async def put(
        self,
        endpoint: str,
        data: dict[str, Any] | None = None,
        *,
        instance: str | None = None,
        options: RequestOptions | None = None,
    ) -> ResponseEnvelope:
        coords = self._coordinates("PUT", endpoint, body=data, instance=instance)
        return await self._dispatcher.execute(coords, options)

    async def patch(
        self,
        endpoint: str,
        data: dict[str, Any] | None = None,
        *,
        instance: str | None = None,
        options: RequestOptions | None = None,
    ) -> ResponseEnvelope:
        coords = self._coordinates("PATCH", endpoint, body=data, instance=instance)
        return await self._dispatcher.execute(coords, options)

    async def delete(
        self,
        endpoint: str,
        data: dict[str, Any] | None = None,
        *,
        instance: str | None = None,
        options: RequestOptions | None = None,
    ) -> ResponseEnvelope:
        coords = self._coordinates("DELETE", endpoint, body=data, instance=instance)
        return await self._dispatcher.execute(coords, options)

    async def upload(
        self,
        endpoint: str,
        fields: dict[str, Any] | None = None,
        files: Sequence[UploadFile] = (),
        *,
        instance: str | None = None,
        options: RequestOptions | None = None,
    ) -> ResponseEnvelope:
        """POST a multipart/form-data body."""
        coords = self._coordinates("POST", endpoint, instance=instance)
        return await self._dispatcher.upload(coords, fields, files, options)

    # ---- Queries ----

    async def ping(self) -> bool:
        """Whether the gateway answers at all. Never raises."""
        envelope = await self._dispatcher.probe(self._coordinates("GET", ""))
        return envelope is not None and envelope.is_successful

    async def connection_state(self, instance: str | None = None) -> ConnectionStatus:
        """WhatsApp connection state of an instance.

        ``UNKNOWN`` when there is no instance, the gateway is unreachable
        or the response carries no recognisable state.
        """
        coords = self._coordinates("GET", CONNECTION_STATE_ENDPOINT, instance=instance)
        envelope = await self._dispatcher.probe(coords)
        if envelope is None or not envelope.is_successful:
            return ConnectionStatus.UNKNOWN

        nested = envelope.body.get("instance")
        state = nested.get("state") if isinstance(nested, dict) else None
        return ConnectionStatus.from_state(state or envelope.body.get("state"))

    async def is_connected(self, instance: str | None = None) -> bool:
        return (await self.connection_state(instance)).is_connected

    # ---- Lifecycle ----

    async def aclose(self) -> None:
        await self._registry.aclose()

    async def __aenter__(self) -> EvolutionClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
