"""
In-process cache for the limits document.

One read of the document fills both the rate-limit and the quota views
under a single timestamp. Configuration problems never reach callers:
a failed read serves the last good snapshot, or the built-in defaults
when nothing was cached yet.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from metering.policy.store import SystemConfigStore
from metering.policy.types import (
    DEFAULT_QUOTAS,
    DEFAULT_RATE_LIMITS,
    Operation,
    QuotaConfig,
    RateLimitConfig,
    Window,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigSnapshot:
    """Both policy views parsed from one document read."""

    rate_limits: RateLimitConfig
    quotas: QuotaConfig
    fetched_at: float
    """Monotonic time of the read."""


@dataclass
class CacheStatus:
    """Introspection of the config cache."""

    is_cached: bool
    age_seconds: float | None = None
    expires_in_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_cached": self.is_cached,
            "age_seconds": round(self.age_seconds, 3) if self.age_seconds is not None else None,
            "expires_in_seconds": (
                round(self.expires_in_seconds, 3) if self.expires_in_seconds is not None else None
            ),
        }


class ConfigCache:
    """
    TTL cache over the limits document.

    Constructed once per process and shared by the rate limiter, the quota
    tracker and the admin routes.
    """

    def __init__(
        self,
        store: SystemConfigStore,
        ttl_seconds: float = 300,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the cache.

        Args:
            store: Source of the limits document
            ttl_seconds: Seconds a snapshot stays fresh
            monotonic: Time source for expiry (injectable for tests)
        """
        self._store = store
        self._ttl = ttl_seconds
        self._monotonic = monotonic
        self._snapshot: ConfigSnapshot | None = None
        self._lock = asyncio.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def _is_fresh(self, snapshot: ConfigSnapshot | None) -> bool:
        if snapshot is None:
            return False
        return (self._monotonic() - snapshot.fetched_at) < self._ttl

    async def get_rate_limit_config(self, force_refresh: bool = False) -> RateLimitConfig:
        """Current rate limits per operation."""
        snapshot = await self._get_snapshot(force_refresh)
        return snapshot.rate_limits

    async def get_quota_config(self, force_refresh: bool = False) -> QuotaConfig:
        """Current monthly quotas per subscription tier."""
        snapshot = await self._get_snapshot(force_refresh)
        return snapshot.quotas

    async def get_rate_limit_for_operation(
        self,
        operation: Operation,
        window: Window = Window.MINUTE,
    ) -> int:
        """Configured request limit for one operation and window."""
        config = await self.get_rate_limit_config()
        return config.for_operation(operation).for_window(window)

    def invalidate(self) -> None:
        """Drop the cached snapshot so the next call reads the document."""
        self._snapshot = None
        logger.info("Config cache invalidated")

    def get_cache_status(self) -> CacheStatus:
        snapshot = self._snapshot
        if snapshot is None:
            return CacheStatus(is_cached=False)
        age = self._monotonic() - snapshot.fetched_at
        return CacheStatus(
            is_cached=self._is_fresh(snapshot),
            age_seconds=age,
            expires_in_seconds=max(0.0, self._ttl - age),
        )

    async def _get_snapshot(self, force_refresh: bool) -> ConfigSnapshot:
        snapshot = self._snapshot
        if not force_refresh and self._is_fresh(snapshot):
            return snapshot  # type: ignore[return-value]

        async with self._lock:
            # Another coroutine may have refreshed while we waited
            snapshot = self._snapshot
            if not force_refresh and self._is_fresh(snapshot):
                return snapshot  # type: ignore[return-value]
            return await self._refresh()

    async def _refresh(self) -> ConfigSnapshot:
        try:
            document = await self._store.fetch()
        except Exception as e:
            logger.error(f"Failed to read limits document '{self._store.document_id}': {e}")
            if self._snapshot is not None:
                logger.warning("Serving stale limits configuration")
                return self._snapshot
            logger.warning("No cached limits configuration, using defaults")
            return ConfigSnapshot(
                rate_limits=DEFAULT_RATE_LIMITS,
                quotas=DEFAULT_QUOTAS,
                fetched_at=self._monotonic(),
            )

        if document is None:
            logger.warning(f"Limits document '{self._store.document_id}' not found, using defaults")
            snapshot = ConfigSnapshot(
                rate_limits=DEFAULT_RATE_LIMITS,
                quotas=DEFAULT_QUOTAS,
                fetched_at=self._monotonic(),
            )
        else:
            snapshot = ConfigSnapshot(
                rate_limits=RateLimitConfig.from_document(document),
                quotas=QuotaConfig.from_document(document),
                fetched_at=self._monotonic(),
            )

        self._snapshot = snapshot
        logger.debug("Limits configuration refreshed")
        return snapshot
