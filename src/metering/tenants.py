"""Tenant records: provisioning and lookup."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from metering.clock import Clock, utcnow
from metering.db.manager import DatabaseManager
from metering.db.models import MonthlyUsage, Tenant
from metering.errors import MeteringError, TenantNotFoundError
from metering.policy.types import SubscriptionTier

logger = logging.getLogger(__name__)


class TenantExistsError(MeteringError):
    """Raised when provisioning a tenant id that is already taken."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant already exists: {tenant_id}")
        self.tenant_id = tenant_id


@dataclass
class TenantInfo:
    """Detached snapshot of a tenant row."""

    tenant_id: str
    name: str | None
    subscription_tier: SubscriptionTier
    monthly_usage: MonthlyUsage | None
    created_at: datetime

    @classmethod
    def from_model(cls, tenant: Tenant) -> "TenantInfo":
        return cls(
            tenant_id=tenant.tenant_id,
            name=tenant.name,
            subscription_tier=SubscriptionTier.parse(tenant.subscription_tier),
            monthly_usage=tenant.monthly_usage,
            created_at=tenant.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "name": self.name,
            "subscription_tier": self.subscription_tier.value,
            "monthly_usage": self.monthly_usage.to_dict() if self.monthly_usage else None,
            "created_at": self.created_at.isoformat(),
        }


class TenantDirectory:
    """Creates and looks up tenants."""

    def __init__(self, db_manager: DatabaseManager, clock: Clock = utcnow) -> None:
        self._db = db_manager
        self._clock = clock

    @staticmethod
    def _find(session: Session, tenant_id: str) -> Tenant | None:
        return session.execute(
            select(Tenant).where(Tenant.tenant_id == tenant_id)
        ).scalar_one_or_none()

    async def create_tenant(
        self,
        tenant_id: str,
        name: str | None = None,
        tier: SubscriptionTier | str = SubscriptionTier.TRIAL,
    ) -> TenantInfo:
        """
        Provision a tenant with no usage period yet.

        Raises:
            TenantExistsError: If the tenant id is taken
        """
        tier = SubscriptionTier(tier)

        def work(session: Session) -> TenantInfo:
            if self._find(session, tenant_id) is not None:
                raise TenantExistsError(tenant_id)
            now = self._clock()
            tenant = Tenant(
                tenant_id=tenant_id,
                name=name,
                subscription_tier=tier.value,
                bill_analysis_count=0,
                report_generation_count=0,
                created_at=now,
                updated_at=now,
            )
            session.add(tenant)
            return TenantInfo.from_model(tenant)

        info = await self._db.run_transaction_async(work)
        logger.info(f"Created tenant {tenant_id} ({tier.value})")
        return info

    async def get_tenant(self, tenant_id: str) -> TenantInfo:
        """
        Raises:
            TenantNotFoundError: If the tenant does not exist
        """

        def work(session: Session) -> TenantInfo:
            tenant = self._find(session, tenant_id)
            if tenant is None:
                raise TenantNotFoundError(tenant_id)
            return TenantInfo.from_model(tenant)

        return await self._db.run_transaction_async(work)

    async def exists(self, tenant_id: str) -> bool:
        return await self._db.run_transaction_async(
            lambda session: self._find(session, tenant_id) is not None
        )

    async def list_tenants(self) -> list[TenantInfo]:
        def work(session: Session) -> list[TenantInfo]:
            tenants = session.execute(select(Tenant).order_by(Tenant.tenant_id)).scalars()
            return [TenantInfo.from_model(t) for t in tenants]

        return await self._db.run_transaction_async(work)

    async def set_tier(self, tenant_id: str, tier: SubscriptionTier | str) -> TenantInfo:
        """
        Change a tenant's subscription tier. Usage counters are kept.

        Raises:
            TenantNotFoundError: If the tenant does not exist
        """
        tier = SubscriptionTier(tier)

        def work(session: Session) -> TenantInfo:
            tenant = self._find(session, tenant_id)
            if tenant is None:
                raise TenantNotFoundError(tenant_id)
            tenant.subscription_tier = tier.value
            tenant.updated_at = self._clock()
            return TenantInfo.from_model(tenant)

        info = await self._db.run_transaction_async(work)
        logger.info(f"Tenant {tenant_id} moved to tier {tier.value}")
        return info
