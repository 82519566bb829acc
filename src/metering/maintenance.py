"""Maintenance jobs: stale rate limit cleanup and first-run bootstrap."""

import logging
from dataclasses import dataclass, field
from typing import Any

from metering.errors import UsageNotInitializedError
from metering.policy.store import SystemConfigStore
from metering.quota.limiter import RateLimiter
from metering.quota.tracker import QuotaTracker
from metering.tenants import TenantDirectory

logger = logging.getLogger(__name__)


# --- Rate limit janitor ---


class RateLimitJanitor:
    """
    Deletes rate limit records that have not been touched recently.

    Runs as a scheduled job so abandoned tenant/operation pairs do not
    accumulate; active windows are pruned lazily on every check.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        max_age_seconds: int = 86400,
    ) -> None:
        """
        Initialize the janitor.

        Args:
            rate_limiter: Limiter owning the records
            max_age_seconds: Records older than this are deleted
        """
        self._rate_limiter = rate_limiter
        self._max_age_seconds = max_age_seconds
        self.last_run_deleted: int | None = None

    @property
    def max_age_seconds(self) -> int:
        return self._max_age_seconds

    def run(self) -> int:
        """
        Run one cleanup pass.

        Returns:
            Number of deleted records
        """
        logger.info(f"Running rate limit cleanup (max age {self._max_age_seconds}s)")
        deleted = self._rate_limiter.cleanup_old_rate_limits_sync(self._max_age_seconds)
        self.last_run_deleted = deleted
        return deleted


# --- Bootstrap ---


@dataclass
class BootstrapReport:
    """Outcome of a bootstrap run."""

    config_seeded: bool = False
    initialized: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "config_seeded": self.config_seeded,
            "initialized": len(self.initialized),
            "skipped": len(self.skipped),
        }


async def bootstrap(
    store: SystemConfigStore,
    tenants: TenantDirectory,
    quota_tracker: QuotaTracker,
) -> BootstrapReport:
    """
    Prepare a database for metering.

    Seeds the limits document if it is missing, then starts a usage period
    for every tenant that has none. Tenants already tracked are skipped.
    """
    report = BootstrapReport()
    report.config_seeded = await store.seed_defaults()

    for tenant in await tenants.list_tenants():
        try:
            await quota_tracker.get_usage(tenant.tenant_id)
        except UsageNotInitializedError:
            await quota_tracker.initialize_quota(tenant.tenant_id)
            report.initialized.append(tenant.tenant_id)
        else:
            report.skipped.append(tenant.tenant_id)

    logger.info(
        f"Bootstrap complete: config seeded={report.config_seeded}, "
        f"{len(report.initialized)} tenant(s) initialized, {len(report.skipped)} skipped"
    )
    return report
