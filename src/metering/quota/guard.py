"""Admission control for metered operations."""

import logging
from dataclasses import dataclass
from typing import Any, Literal

from metering.policy.cache import ConfigCache
from metering.policy.types import Operation, Window
from metering.quota.limiter import RateLimiter, RateLimitResult
from metering.quota.tracker import QuotaResult, QuotaTracker

logger = logging.getLogger(__name__)

RefusalReason = Literal["rate_limited", "quota_exceeded"]


@dataclass
class Admission:
    """Outcome of an admission decision."""

    allowed: bool
    reason: RefusalReason | None
    rate_limit: RateLimitResult
    quota: QuotaResult | None = None
    """None when the request was stopped by the rate limiter."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "rate_limit": self.rate_limit.to_dict(),
            "quota": self.quota.to_dict() if self.quota else None,
        }


class MeteringGuard:
    """
    Gate in front of an expensive operation.

    The short-horizon rate limit is checked first; the monthly quota is
    only consulted (and incremented) for requests the rate limiter admits.
    """

    def __init__(
        self,
        config_cache: ConfigCache,
        rate_limiter: RateLimiter,
        quota_tracker: QuotaTracker,
    ) -> None:
        self._config = config_cache
        self._rate_limiter = rate_limiter
        self._quota_tracker = quota_tracker

    async def admit(
        self,
        tenant_id: str,
        operation: Operation | str,
        bypass: bool = False,
    ) -> Admission:
        """
        Decide whether a tenant may run an operation now.

        Raises:
            TenantNotFoundError: If the tenant does not exist
        """
        operation = Operation(operation)
        limit = await self._config.get_rate_limit_for_operation(operation, Window.MINUTE)

        rate_limit = await self._rate_limiter.check_rate_limit(
            tenant_id,
            operation,
            limit=limit,
            window_seconds=Window.MINUTE.seconds,
            bypass=bypass,
        )
        if not rate_limit.allowed:
            return Admission(allowed=False, reason="rate_limited", rate_limit=rate_limit)

        quota = await self._quota_tracker.check_quota(tenant_id, operation, bypass=bypass)
        if not quota.allowed:
            return Admission(
                allowed=False,
                reason="quota_exceeded",
                rate_limit=rate_limit,
                quota=quota,
            )

        logger.debug(f"Admitted {operation.value} for tenant {tenant_id}")
        return Admission(allowed=True, reason=None, rate_limit=rate_limit, quota=quota)
