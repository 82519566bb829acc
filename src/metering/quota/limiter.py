"""
Sliding window rate limiting for metered operations.

Each tenant and operation owns one record holding the timestamps of the
requests admitted in the trailing window. Admission is a read-filter-
compare-write cycle run inside a single locking transaction, so two
requests racing for the last slot can never both be admitted.
"""

import asyncio
import functools
import logging
import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from metering.clock import Clock, from_epoch, to_epoch, utcnow
from metering.db.manager import DatabaseManager
from metering.db.models import RateLimitRecord
from metering.policy.types import Operation

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    """Whether the request is allowed."""

    remaining: int
    """Remaining requests in the current window."""

    limit: int
    """Maximum requests allowed in the window."""

    reset_time: datetime
    """When the oldest counted request leaves the window."""

    retry_after: int | None = None
    """Whole seconds to wait before retrying (if not allowed)."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_time": self.reset_time.isoformat(),
            "retry_after": self.retry_after,
        }


@dataclass
class RateLimitStatus:
    """Read-only view of a rate limit window."""

    current: int
    limit: int
    remaining: int
    reset_time: datetime
    percent_used: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_time": self.reset_time.isoformat(),
            "percent_used": round(self.percent_used, 2),
        }


class RateLimiter:
    """
    Persistent sliding window rate limiter.

    Storage failures fail open: the request is admitted and the error
    logged, so a database outage never blocks metered traffic.
    """

    def __init__(self, db_manager: DatabaseManager, clock: Clock = utcnow) -> None:
        """
        Initialize the rate limiter.

        Args:
            db_manager: Database holding the rate limit records
            clock: Source of the current naive UTC time
        """
        self._db = db_manager
        self._clock = clock

    def _load(
        self,
        session: Session,
        tenant_id: str,
        operation: Operation,
        for_update: bool = False,
    ) -> RateLimitRecord | None:
        stmt = select(RateLimitRecord).where(
            RateLimitRecord.tenant_id == tenant_id,
            RateLimitRecord.operation == operation.value,
        )
        if for_update and not self._db.is_sqlite:
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _in_window(timestamps: list[float], now: float, window_seconds: int) -> list[float]:
        """Keep only timestamps inside the trailing window."""
        cutoff = now - window_seconds
        return [ts for ts in timestamps if ts > cutoff]

    async def check_rate_limit(
        self,
        tenant_id: str,
        operation: Operation | str,
        limit: int,
        window_seconds: int = 60,
        bypass: bool = False,
    ) -> RateLimitResult:
        """
        Admit or reject one request and record it when admitted.

        Args:
            tenant_id: Tenant identifier
            operation: Metered operation
            limit: Maximum requests in the window
            window_seconds: Window length
            bypass: Privileged caller; skip the check and record nothing

        Returns:
            RateLimitResult for this request
        """
        operation = Operation(operation)

        if bypass:
            return RateLimitResult(
                allowed=True,
                remaining=limit,
                limit=limit,
                reset_time=self._clock() + timedelta(seconds=window_seconds),
            )

        def work(session: Session) -> RateLimitResult:
            # Read per attempt so conflict retries see the current time
            now_dt = self._clock()
            now = to_epoch(now_dt)
            record = self._load(session, tenant_id, operation, for_update=True)
            timestamps = self._in_window(record.timestamps if record else [], now, window_seconds)
            count = len(timestamps)

            if count >= limit:
                oldest = min(timestamps) if timestamps else now
                reset_at = oldest + window_seconds
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    limit=limit,
                    reset_time=from_epoch(reset_at),
                    retry_after=max(0, math.ceil(reset_at - now)),
                )

            timestamps.append(now)
            if record is None:
                record = RateLimitRecord(
                    tenant_id=tenant_id,
                    operation=operation.value,
                    created_at=now_dt,
                )
                session.add(record)
            record.timestamps = timestamps
            record.updated_at = now_dt

            return RateLimitResult(
                allowed=True,
                remaining=limit - count - 1,
                limit=limit,
                reset_time=from_epoch(min(timestamps) + window_seconds),
            )

        try:
            result = await self._db.run_transaction_async(work)
        except Exception as e:
            logger.error(f"Rate limit check failed for {tenant_id}/{operation.value}, allowing request: {e}")
            return RateLimitResult(
                allowed=True,
                remaining=limit,
                limit=limit,
                reset_time=self._clock() + timedelta(seconds=window_seconds),
            )

        if not result.allowed:
            logger.info(
                f"Rate limit exceeded for {tenant_id}/{operation.value}: "
                f"{limit} per {window_seconds}s, retry after {result.retry_after}s"
            )
        return result

    async def get_rate_limit_status(
        self,
        tenant_id: str,
        operation: Operation | str,
        limit: int,
        window_seconds: int = 60,
    ) -> RateLimitStatus:
        """Inspect the current window without recording a request."""
        operation = Operation(operation)

        def work(session: Session) -> tuple[list[float], float]:
            now = to_epoch(self._clock())
            record = self._load(session, tenant_id, operation)
            return self._in_window(record.timestamps if record else [], now, window_seconds), now

        try:
            timestamps, now = await self._db.run_transaction_async(work)
        except Exception as e:
            logger.error(f"Failed to read rate limit status for {tenant_id}/{operation.value}: {e}")
            timestamps, now = [], to_epoch(self._clock())

        current = len(timestamps)
        oldest = min(timestamps) if timestamps else now
        return RateLimitStatus(
            current=current,
            limit=limit,
            remaining=max(0, limit - current),
            reset_time=from_epoch(oldest + window_seconds),
            percent_used=(current / limit * 100) if limit > 0 else 0.0,
        )

    async def clear_rate_limit(self, tenant_id: str, operation: Operation | str | None = None) -> int:
        """
        Delete rate limit records for a tenant.

        Args:
            tenant_id: Tenant identifier
            operation: Only clear this operation (all operations if None)

        Returns:
            Number of records deleted
        """
        stmt = delete(RateLimitRecord).where(RateLimitRecord.tenant_id == tenant_id)
        if operation is not None:
            stmt = stmt.where(RateLimitRecord.operation == Operation(operation).value)

        deleted = await self._db.run_transaction_async(lambda session: session.execute(stmt).rowcount)
        scope = Operation(operation).value if operation is not None else "all operations"
        logger.info(f"Cleared {deleted} rate limit record(s) for {tenant_id} ({scope})")
        return deleted

    def cleanup_old_rate_limits_sync(self, max_age_seconds: int = 86400) -> int:
        """
        Delete records not updated within ``max_age_seconds``.

        Returns:
            Number of deleted records (0 if the cleanup failed)
        """
        cutoff = self._clock() - timedelta(seconds=max_age_seconds)

        def work(session: Session) -> Counter[str]:
            tenants = Counter(
                session.execute(
                    select(RateLimitRecord.tenant_id).where(RateLimitRecord.updated_at < cutoff)
                ).scalars()
            )
            if tenants:
                session.execute(
                    delete(RateLimitRecord).where(RateLimitRecord.updated_at < cutoff)
                )
            return tenants

        try:
            per_tenant = self._db.run_transaction(work)
        except Exception as e:
            logger.error(f"Rate limit cleanup failed: {e}")
            return 0

        for tenant_id, count in sorted(per_tenant.items()):
            logger.info(f"Cleaned up {count} old rate limit record(s) for tenant {tenant_id}")

        total = sum(per_tenant.values())
        if total:
            logger.info(f"Rate limit cleanup removed {total} record(s) older than {max_age_seconds}s")
        else:
            logger.debug("No stale rate limit records to clean up")
        return total

    async def cleanup_old_rate_limits(self, max_age_seconds: int = 86400) -> int:
        """Async variant of ``cleanup_old_rate_limits_sync``."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, functools.partial(self.cleanup_old_rate_limits_sync, max_age_seconds)
        )
