"""Tests for combined rate limit and quota admission."""

from collections.abc import Callable

import pytest

from metering.errors import TenantNotFoundError
from metering.policy.cache import ConfigCache
from metering.policy.store import SystemConfigStore
from metering.quota.guard import MeteringGuard
from metering.quota.limiter import RateLimiter
from metering.quota.tracker import QuotaTracker


@pytest.fixture
def guard(
    config_cache: ConfigCache,
    rate_limiter: RateLimiter,
    quota_tracker: QuotaTracker,
) -> MeteringGuard:
    return MeteringGuard(config_cache, rate_limiter, quota_tracker)


class TestMeteringGuard:
    """Tests for MeteringGuard.admit."""

    @pytest.mark.asyncio
    async def test_admitted(self, guard: MeteringGuard, add_tenant: Callable[..., None]) -> None:
        add_tenant("acme", tier="standard", bills=5)

        admission = await guard.admit("acme", "billAnalysis")

        assert admission.allowed is True
        assert admission.reason is None
        assert admission.rate_limit.limit == 10
        assert admission.rate_limit.remaining == 9
        assert admission.quota.current == 6

        data = admission.to_dict()
        assert data["quota"]["remaining"] == 44
        assert data["rate_limit"]["allowed"] is True

    @pytest.mark.asyncio
    async def test_rate_limited_before_quota(
        self,
        guard: MeteringGuard,
        config_store: SystemConfigStore,
        quota_tracker: QuotaTracker,
        add_tenant: Callable[..., None],
    ) -> None:
        """Test that a rate limited request leaves the monthly counter alone."""
        await config_store.update(rate_limits={"billAnalysis": {"requestsPerMinute": 2}})
        add_tenant("acme", tier="standard")

        assert (await guard.admit("acme", "billAnalysis")).allowed is True
        assert (await guard.admit("acme", "billAnalysis")).allowed is True
        admission = await guard.admit("acme", "billAnalysis")

        assert admission.allowed is False
        assert admission.reason == "rate_limited"
        assert admission.quota is None
        assert admission.rate_limit.retry_after == 60
        assert admission.to_dict()["quota"] is None
        assert (await quota_tracker.get_usage("acme")).bill_analysis_count == 2

    @pytest.mark.asyncio
    async def test_quota_exceeded(self, guard: MeteringGuard, add_tenant: Callable[..., None]) -> None:
        add_tenant("trial-co", tier="trial")

        admission = await guard.admit("trial-co", "reportGeneration")

        assert admission.allowed is False
        assert admission.reason == "quota_exceeded"
        assert admission.rate_limit.allowed is True
        assert admission.quota.limit.value == 0

    @pytest.mark.asyncio
    async def test_bypass(self, guard: MeteringGuard, add_tenant: Callable[..., None]) -> None:
        add_tenant("trial-co", tier="trial", bills=2)

        for _ in range(12):
            admission = await guard.admit("trial-co", "billAnalysis", bypass=True)
            assert admission.allowed is True

        assert admission.quota.current == 14
        assert admission.rate_limit.remaining == 10

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, guard: MeteringGuard) -> None:
        with pytest.raises(TenantNotFoundError):
            await guard.admit("ghost", "billAnalysis")

    @pytest.mark.asyncio
    async def test_unknown_operation(
        self, guard: MeteringGuard, add_tenant: Callable[..., None]
    ) -> None:
        add_tenant("acme")

        with pytest.raises(ValueError):
            await guard.admit("acme", "imageUpload")
