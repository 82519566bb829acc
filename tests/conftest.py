"""Pytest configuration and fixtures."""

import os
import tempfile
from collections.abc import Callable, Generator
from datetime import datetime, timedelta

import pytest

from metering.db.manager import DatabaseManager
from metering.db.models import Tenant
from metering.policy.cache import ConfigCache
from metering.policy.store import SystemConfigStore
from metering.quota.limiter import RateLimiter
from metering.quota.tracker import QuotaTracker, month_bounds


class FakeClock:
    """Controllable naive UTC clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    yield db_path
    # Cleanup (WAL mode leaves side files behind)
    for path in (db_path, f"{db_path}-wal", f"{db_path}-shm"):
        try:
            os.unlink(path)
        except OSError:
            pass


@pytest.fixture
def db_manager(temp_db_path: str) -> Generator[DatabaseManager, None, None]:
    """Create a DatabaseManager with a temporary database."""
    manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}")
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen mid-month: 2025-03-15 12:00:00 UTC."""
    return FakeClock(datetime(2025, 3, 15, 12, 0, 0))


@pytest.fixture
def config_store(db_manager: DatabaseManager, clock: FakeClock) -> SystemConfigStore:
    return SystemConfigStore(db_manager, clock=clock)


@pytest.fixture
def config_cache(config_store: SystemConfigStore) -> ConfigCache:
    return ConfigCache(config_store, ttl_seconds=300)


@pytest.fixture
def rate_limiter(db_manager: DatabaseManager, clock: FakeClock) -> RateLimiter:
    return RateLimiter(db_manager, clock=clock)


@pytest.fixture
def quota_tracker(
    db_manager: DatabaseManager,
    config_cache: ConfigCache,
    clock: FakeClock,
) -> QuotaTracker:
    return QuotaTracker(db_manager, config_cache, clock=clock)


@pytest.fixture
def add_tenant(db_manager: DatabaseManager, clock: FakeClock) -> Callable[..., None]:
    """
    Insert a tenant row directly.

    By default the tenant has a usage period for the clock's current month;
    pass ``period_start=None`` for a tenant that was never initialized.
    """
    current_start, _ = month_bounds(clock())

    def _add(
        tenant_id: str,
        tier: str = "standard",
        bills: int = 0,
        reports: int = 0,
        period_start: datetime | None = current_start,
    ) -> None:
        with db_manager.get_session() as session:
            tenant = Tenant(
                tenant_id=tenant_id,
                name=tenant_id.title(),
                subscription_tier=tier,
                bill_analysis_count=bills,
                report_generation_count=reports,
            )
            if period_start is not None:
                _, period_end = month_bounds(period_start)
                tenant.usage_period_start = period_start
                tenant.usage_period_end = period_end
                tenant.usage_last_reset = period_start
                tenant.usage_updated_at = period_start
            session.add(tenant)

    return _add
