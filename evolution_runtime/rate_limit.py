"""
Fixed-window rate limiting keyed by (scope, operation class).

The scope is the connection name, optionally suffixed with
``:instance``. The operation class is derived from the endpoint path:

=========  ==========================================================
media      path contains image, video, audio, document, sticker, media
messages   otherwise, path contains send or message
default    everything else
=========  ==========================================================

Each class has its own :class:`BucketLimit`; classes without one use the
``default`` limit.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sys
import threading
import time
from typing import Awaitable, Callable, Protocol

from pydantic import BaseModel

from evolution_runtime.config import BucketLimit, LimitPolicy, RateLimitOptions
from evolution_runtime.errors import RateLimitError

logger = logging.getLogger(__name__)

MEDIA = "media"
MESSAGES = "messages"
DEFAULT = "default"

_MEDIA_PATTERN = re.compile(r"image|video|audio|document|sticker|media", re.IGNORECASE)
_MESSAGES_PATTERN = re.compile(r"send|message", re.IGNORECASE)


def operation_class_for(path: str) -> str:
    """Quota class consumed by a call to ``path``."""
    if _MEDIA_PATTERN.search(path):
        return MEDIA
    if _MESSAGES_PATTERN.search(path):
        return MESSAGES
    return DEFAULT


# ============================================================
#  Buckets
# ============================================================


class RateLimitBucket(BaseModel):
    """Counter state for one key inside one window."""

    max_attempts: int
    decay_seconds: float
    consumed_count: int = 0
    window_started_at: float

    def expired(self, now: float) -> bool:
        return now - self.window_started_at >= self.decay_seconds

    def retry_after(self, now: float) -> float:
        return max(0.0, self.decay_seconds - (now - self.window_started_at))


class RateLimitDecision(BaseModel):
    allowed: bool
    retry_after: float = 0.0
    remaining: int = 0


class BucketStore(Protocol):
    """Persistence for bucket state. In-memory by default; may be shared."""

    def get(self, key: str) -> RateLimitBucket | None: ...

    def put(self, key: str, bucket: RateLimitBucket) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryBucketStore:
    def __init__(self) -> None:
        self._buckets: dict[str, RateLimitBucket] = {}

    def get(self, key: str) -> RateLimitBucket | None:
        return self._buckets.get(key)

    def put(self, key: str, bucket: RateLimitBucket) -> None:
        self._buckets[key] = bucket

    def delete(self, key: str) -> None:
        self._buckets.pop(key, None)


# ============================================================
#  Limiter
# ============================================================


class RateLimiter:
    """Fixed-window counter per (scope, operation class).

    Read-roll-compare-increment-write happens under one lock, so
    concurrent admissions can never let more than ``max_attempts`` calls
    through in a window.
    """

    KEY_PREFIX = "evolution_api_rate_limit:"

    def __init__(
        self,
        options: RateLimitOptions | None = None,
        store: BucketStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.options = options or RateLimitOptions()
        self._store = store or InMemoryBucketStore()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.options.enabled

    @property
    def policy(self) -> LimitPolicy:
        return self.options.on_limit_reached

    def limit_for(self, operation_class: str) -> BucketLimit:
        return self.options.limit_for(operation_class)

    def admit(self, scope: str, operation_class: str = DEFAULT) -> RateLimitDecision:
        """Try to consume one unit of the bucket's budget."""
        if not self.enabled:
            return RateLimitDecision(allowed=True, remaining=sys.maxsize)

        key = self._key(scope, operation_class)
        limit = self.limit_for(operation_class)
        with self._lock:
            now = self._clock()
            bucket = self._store.get(key)
            if bucket is None or bucket.expired(now):
                bucket = RateLimitBucket(
                    max_attempts=limit.max_attempts,
                    decay_seconds=limit.decay_seconds,
                    window_started_at=now,
                )
            if bucket.consumed_count < bucket.max_attempts:
                bucket.consumed_count += 1
                self._store.put(key, bucket)
                return RateLimitDecision(
                    allowed=True,
                    remaining=bucket.max_attempts - bucket.consumed_count,
                )
            self._store.put(key, bucket)
            return RateLimitDecision(allowed=False, retry_after=bucket.retry_after(now))

    def remaining(self, scope: str, operation_class: str = DEFAULT) -> int:
        """Budget left in the current window. Never mutates state."""
        if not self.enabled:
            return sys.maxsize
        limit = self.limit_for(operation_class)
        with self._lock:
            bucket = self._store.get(self._key(scope, operation_class))
            now = self._clock()
        if bucket is None or bucket.expired(now):
            return limit.max_attempts
        return max(0, bucket.max_attempts - bucket.consumed_count)

    def available_in(self, scope: str, operation_class: str = DEFAULT) -> float:
        """Seconds until the bucket has budget again (0 if it has now)."""
        if not self.enabled:
            return 0.0
        with self._lock:
            bucket = self._store.get(self._key(scope, operation_class))
            now = self._clock()
        if bucket is None or bucket.expired(now) or bucket.consumed_count < bucket.max_attempts:
            return 0.0
        return bucket.retry_after(now)

    def clear(self, scope: str, operation_class: str | None = None) -> None:
        if operation_class:
            classes = {operation_class}
        else:
            # Classes without their own limit still keep their own bucket
            classes = {DEFAULT, MESSAGES, MEDIA} | set(self.options.limits)
        with self._lock:
            for cls in classes:
                self._store.delete(self._key(scope, cls))

    async def acquire(
        self,
        scope: str,
        operation_class: str = DEFAULT,
        instance_name: str | None = None,
    ) -> RateLimitDecision:
        """Admit and apply the configured policy on denial.

        ``skip`` lets the call through, ``throw`` raises
        :class:`RateLimitError`, ``wait`` sleeps until the window rolls
        over and tries again.
        """
        decision = self.admit(scope, operation_class)
        while not decision.allowed:
            logger.warning(
                "Rate limit reached for %s [%s] (retry in %.1fs, policy=%s)",
                scope, operation_class, decision.retry_after, self.policy.value,
            )
            if self.policy is LimitPolicy.SKIP:
                return decision
            if self.policy is LimitPolicy.WAIT:
                await self._sleep(decision.retry_after)
                decision = self.admit(scope, operation_class)
                continue
            raise RateLimitError(
                f"Rate limit exceeded for key [{scope}] type [{operation_class}].",
                retry_after=decision.retry_after,
                limit_type=operation_class,
                instance_name=instance_name,
            )
        return decision

    def _key(self, scope: str, operation_class: str) -> str:
        return f"{self.KEY_PREFIX}{operation_class}:{scope}"
