"""Moving-window request quotas backed by the `limits` counter storage."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from limits import RateLimitItem, parse
from limits.storage import Storage, storage_from_string
from limits.strategies import MovingWindowRateLimiter

from auth import Identity
from config import settings

logger = logging.getLogger("cityweather.api.rate_limit")

RATE_LIMIT_MESSAGE = "Too many requests, please try again later."


@dataclass(slots=True)
class RateLimitStatus:
    allowed: bool
    remaining: int
    retry_after_seconds: int


class RateLimiter:
    """Atomic increment-and-check against a sliding window per key."""

    def __init__(self, limit: str, *, namespace: str, storage_uri: str = "memory://") -> None:
        self._item: RateLimitItem = parse(limit)
        self._namespace = namespace
        self._storage: Storage = storage_from_string(storage_uri)
        self._strategy = MovingWindowRateLimiter(self._storage)

    @property
    def limit(self) -> RateLimitItem:
        return self._item

    def hit(self, key: str) -> bool:
        return self._strategy.hit(self._item, self._namespace, key)

    def check(self, key: str) -> RateLimitStatus:
        """Count one request for ``key`` and report whether it is admitted."""
        allowed = self.hit(key)
        reset_time, remaining = self._strategy.get_window_stats(self._item, self._namespace, key)
        retry_after = max(0, int(reset_time - time.time())) if not allowed else 0
        if not allowed:
            logger.info("Rate limit %s exceeded for %s", self._item, key)
        return RateLimitStatus(allowed=allowed, remaining=int(remaining), retry_after_seconds=retry_after)

    def reset(self) -> None:
        self._storage.reset()


def caller_key(identity: Identity | None, remote_addr: str | None) -> str:
    if identity is not None:
        return f"user:{identity.id}"
    return f"addr:{remote_addr or 'unknown'}"


def is_exempt(identity: Identity | None) -> bool:
    exempt = settings.rate_limit_exempt_username
    return identity is not None and exempt is not None and identity.username == exempt


weather_rate_limiter = RateLimiter(
    settings.weather_rate_limit,
    namespace="weather",
    storage_uri=settings.rate_limit_storage_uri,
)
api_rate_limiter = RateLimiter(
    settings.api_rate_limit,
    namespace="api",
    storage_uri=settings.rate_limit_storage_uri,
)
