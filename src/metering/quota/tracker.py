"""
Monthly quota tracking.

Counts metered operations per tenant over the current UTC calendar month
and decides admission against the tenant's subscription tier. Usage is
recorded for every call, including bypassed and unlimited ones, so the
counters double as an activity record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from metering.clock import Clock, utcnow
from metering.db.manager import DatabaseManager
from metering.db.models import MonthlyUsage, Tenant
from metering.errors import TenantNotFoundError, UsageNotInitializedError
from metering.policy.cache import ConfigCache
from metering.policy.types import (
    UNLIMITED,
    Limit,
    Limited,
    Operation,
    QuotaConfig,
    SubscriptionTier,
    Unlimited,
    limit_to_raw,
)

logger = logging.getLogger(__name__)


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    """First instant of the month containing ``now`` and of the next month."""
    start = datetime(now.year, now.month, 1)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1)
    else:
        end = datetime(now.year, now.month + 1, 1)
    return start, end


@dataclass
class QuotaResult:
    """Result of a quota check or status lookup."""

    allowed: bool
    """Whether the request is within quota."""

    current: int
    """Usage this period (after the increment, for checks)."""

    limit: Limit
    """Monthly limit for the tenant's tier."""

    remaining: int | None
    """Requests left this period, None when unlimited."""

    reset_time: datetime
    """When the current period ends."""

    percent_used: float = 0.0

    @property
    def unlimited(self) -> bool:
        return isinstance(self.limit, Unlimited)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "current": self.current,
            "limit": limit_to_raw(self.limit),
            "remaining": -1 if self.remaining is None else self.remaining,
            "reset_time": self.reset_time.isoformat(),
            "percent_used": round(self.percent_used, 2),
            "unlimited": self.unlimited,
        }


class QuotaTracker:
    """
    Tier-aware monthly usage counters.

    Every check runs as one transaction holding the tenant row lock:
    period rollover, tier lookup, the increment and the admission decision
    are serialized per tenant, so concurrent requests at the limit boundary
    cannot be over-admitted.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        config_cache: ConfigCache,
        clock: Clock = utcnow,
    ) -> None:
        """
        Initialize the quota tracker.

        Args:
            db_manager: Database holding tenant records
            config_cache: Source of per-tier quotas
            clock: Source of the current naive UTC time
        """
        self._db = db_manager
        self._config = config_cache
        self._clock = clock

    def _load_tenant(self, session: Session, tenant_id: str) -> Tenant:
        stmt = select(Tenant).where(Tenant.tenant_id == tenant_id)
        if not self._db.is_sqlite:
            stmt = stmt.with_for_update()
        tenant = session.execute(stmt).scalar_one_or_none()
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    def _ensure_period(self, tenant: Tenant, now: datetime) -> MonthlyUsage:
        """Start a fresh period if the tenant's usage predates this month."""
        start, end = month_bounds(now)
        usage = tenant.monthly_usage
        if usage is not None and usage.period_start >= start:
            return usage

        if usage is None:
            logger.info(f"Initializing monthly usage for tenant {tenant.tenant_id}")
        else:
            logger.info(
                f"Monthly rollover for tenant {tenant.tenant_id}: "
                f"{usage.period_start:%Y-%m} -> {start:%Y-%m}"
            )
        return tenant.start_period(start, end, now)

    async def ensure_current_month(self, tenant_id: str) -> MonthlyUsage:
        """
        Make sure the tenant's usage block covers the current month.

        Idempotent within a month. A tenant that missed several months is
        reset once, straight to the current month.

        Raises:
            TenantNotFoundError: If the tenant does not exist
        """

        def work(session: Session) -> MonthlyUsage:
            return self._ensure_period(self._load_tenant(session, tenant_id), self._clock())

        return await self._db.run_transaction_async(work)

    async def check_quota(
        self,
        tenant_id: str,
        operation: Operation | str,
        bypass: bool = False,
    ) -> QuotaResult:
        """
        Record one operation and decide whether it is within quota.

        The counter is always incremented. Admission is decided from the
        count before this request.

        Args:
            tenant_id: Tenant identifier
            operation: Metered operation
            bypass: Privileged caller; always allowed, still counted

        Returns:
            QuotaResult for this request

        Raises:
            TenantNotFoundError: If the tenant does not exist
        """
        operation = Operation(operation)
        quotas = await self._config.get_quota_config()

        def work(session: Session) -> QuotaResult:
            now = self._clock()
            tenant = self._load_tenant(session, tenant_id)
            usage = self._ensure_period(tenant, now)
            tier = SubscriptionTier.parse(tenant.subscription_tier)
            limit = UNLIMITED if bypass else quotas.limit_for(tier, operation)

            column = operation.usage_column
            previous = usage.count_for(column)
            current = previous + 1
            setattr(tenant, column, current)
            tenant.usage_updated_at = now

            if isinstance(limit, Unlimited):
                return QuotaResult(
                    allowed=True,
                    current=current,
                    limit=UNLIMITED,
                    remaining=None,
                    reset_time=usage.period_end,
                )

            if previous >= limit.value:
                return QuotaResult(
                    allowed=False,
                    current=current,
                    limit=limit,
                    remaining=0,
                    reset_time=usage.period_end,
                    percent_used=100.0,
                )

            return QuotaResult(
                allowed=True,
                current=current,
                limit=limit,
                remaining=limit.value - previous - 1,
                reset_time=usage.period_end,
                percent_used=current / limit.value * 100,
            )

        result = await self._db.run_transaction_async(work)
        if not result.allowed:
            logger.info(
                f"Monthly quota exceeded for {tenant_id}/{operation.value}: "
                f"{result.current} of {limit_to_raw(result.limit)}"
            )
        return result

    async def get_quota_status(self, tenant_id: str, operation: Operation | str) -> QuotaResult:
        """
        Current quota state without recording usage.

        Raises:
            TenantNotFoundError: If the tenant does not exist
        """
        operation = Operation(operation)
        quotas = await self._config.get_quota_config()

        def work(session: Session) -> tuple[MonthlyUsage, SubscriptionTier]:
            tenant = self._load_tenant(session, tenant_id)
            usage = self._ensure_period(tenant, self._clock())
            return usage, SubscriptionTier.parse(tenant.subscription_tier)

        usage, tier = await self._db.run_transaction_async(work)
        return self._status(usage, quotas, tier, operation)

    @staticmethod
    def _status(
        usage: MonthlyUsage,
        quotas: QuotaConfig,
        tier: SubscriptionTier,
        operation: Operation,
    ) -> QuotaResult:
        count = usage.count_for(operation.usage_column)
        limit = quotas.limit_for(tier, operation)

        if isinstance(limit, Limited):
            return QuotaResult(
                allowed=count < limit.value,
                current=count,
                limit=limit,
                remaining=max(0, limit.value - count),
                reset_time=usage.period_end,
                percent_used=(count / limit.value * 100) if limit.value > 0 else 0.0,
            )

        return QuotaResult(
            allowed=True,
            current=count,
            limit=UNLIMITED,
            remaining=None,
            reset_time=usage.period_end,
        )

    async def get_usage(self, tenant_id: str) -> MonthlyUsage:
        """
        The stored usage block as-is, without period reconciliation.

        Raises:
            TenantNotFoundError: If the tenant does not exist
            UsageNotInitializedError: If no period was ever recorded
        """

        def work(session: Session) -> MonthlyUsage:
            usage = self._load_tenant(session, tenant_id).monthly_usage
            if usage is None:
                raise UsageNotInitializedError(tenant_id)
            return usage

        return await self._db.run_transaction_async(work)

    async def reset_quota(self, tenant_id: str) -> MonthlyUsage:
        """
        Start a fresh zeroed period for the current month.

        Raises:
            TenantNotFoundError: If the tenant does not exist
        """

        def work(session: Session) -> MonthlyUsage:
            now = self._clock()
            tenant = self._load_tenant(session, tenant_id)
            start, end = month_bounds(now)
            return tenant.start_period(start, end, now)

        usage = await self._db.run_transaction_async(work)
        logger.info(f"Quota reset for tenant {tenant_id}")
        return usage

    async def initialize_quota(self, tenant_id: str) -> MonthlyUsage:
        """Set up usage tracking for a newly provisioned tenant."""
        return await self.ensure_current_month(tenant_id)
