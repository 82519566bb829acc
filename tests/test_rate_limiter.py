"""Tests for the persistent sliding window rate limiter."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from metering.clock import to_epoch
from metering.db.manager import DatabaseManager
from metering.db.models import RateLimitRecord
from metering.quota.limiter import RateLimiter, RateLimitResult, RateLimitStatus

from conftest import FakeClock

NOW = datetime(2025, 3, 15, 12, 0, 0)


def stored_timestamps(db_manager: DatabaseManager, tenant_id: str, operation: str) -> list[float] | None:
    with db_manager.get_session() as session:
        record = session.execute(
            select(RateLimitRecord).where(
                RateLimitRecord.tenant_id == tenant_id,
                RateLimitRecord.operation == operation,
            )
        ).scalar_one_or_none()
        return record.timestamps if record else None


class ConflictingClock(FakeClock):
    """Clock whose first read loses a lock race after time has moved on."""

    def __init__(self, start: datetime) -> None:
        super().__init__(start)
        self.conflicted = False

    def __call__(self) -> datetime:
        if not self.conflicted:
            self.conflicted = True
            self.advance(5)
            raise OperationalError("BEGIN", {}, Exception("database is locked"))
        return self.now


class TestResultSerialization:
    """Tests for result dataclasses."""

    def test_result_to_dict(self) -> None:
        result = RateLimitResult(
            allowed=False,
            remaining=0,
            limit=10,
            reset_time=datetime(2025, 1, 1, 12, 0, 0),
            retry_after=30,
        )
        data = result.to_dict()

        assert data["allowed"] is False
        assert data["reset_time"] == "2025-01-01T12:00:00"
        assert data["retry_after"] == 30

    def test_status_to_dict(self) -> None:
        status = RateLimitStatus(
            current=1,
            limit=3,
            remaining=2,
            reset_time=datetime(2025, 1, 1),
            percent_used=33.3333,
        )
        assert status.to_dict()["percent_used"] == 33.33


class TestCheckRateLimit:
    """Tests for admission decisions."""

    @pytest.mark.asyncio
    async def test_admits_up_to_limit_then_rejects(self, rate_limiter: RateLimiter) -> None:
        """Test 10 admissions with decreasing remaining, then a rejection."""
        remaining = []
        for _ in range(10):
            result = await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=10, window_seconds=60)
            assert result.allowed is True
            remaining.append(result.remaining)

        assert remaining == [9, 8, 7, 6, 5, 4, 3, 2, 1, 0]

        result = await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=10, window_seconds=60)
        assert result.allowed is False
        assert result.remaining == 0
        assert result.retry_after is not None
        assert result.retry_after > 0
        assert result.reset_time == NOW + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_rejection_does_not_record(
        self, rate_limiter: RateLimiter, db_manager: DatabaseManager
    ) -> None:
        for _ in range(3):
            await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=2)

        assert len(stored_timestamps(db_manager, "acme", "billAnalysis")) == 2

    @pytest.mark.asyncio
    async def test_window_slides(self, rate_limiter: RateLimiter, clock: FakeClock) -> None:
        """Test that requests age out of the window."""
        await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=2)
        clock.advance(30)
        await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=2)

        clock.advance(20)
        blocked = await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=2)
        assert blocked.allowed is False
        assert blocked.retry_after == 10
        assert blocked.reset_time == NOW + timedelta(seconds=60)

        clock.advance(11)
        result = await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=2)
        assert result.allowed is True
        assert result.remaining == 0
        # The oldest request still counted is the one from t+30s
        assert result.reset_time == NOW + timedelta(seconds=90)

    @pytest.mark.asyncio
    async def test_expired_entries_pruned_on_write(
        self, rate_limiter: RateLimiter, clock: FakeClock, db_manager: DatabaseManager
    ) -> None:
        await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=5)
        await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=5)
        clock.advance(120)
        await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=5)

        assert len(stored_timestamps(db_manager, "acme", "billAnalysis")) == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, rate_limiter: RateLimiter) -> None:
        """Test isolation between tenants and operations."""
        await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=1)

        assert (await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=1)).allowed is False
        assert (await rate_limiter.check_rate_limit("acme", "reportGeneration", limit=1)).allowed is True
        assert (await rate_limiter.check_rate_limit("globex", "billAnalysis", limit=1)).allowed is True

    @pytest.mark.asyncio
    async def test_bypass_skips_persistence(
        self, rate_limiter: RateLimiter, db_manager: DatabaseManager
    ) -> None:
        result = await rate_limiter.check_rate_limit(
            "acme", "billAnalysis", limit=10, window_seconds=60, bypass=True
        )

        assert result.allowed is True
        assert result.remaining == 10
        assert result.reset_time == NOW + timedelta(seconds=60)
        assert stored_timestamps(db_manager, "acme", "billAnalysis") is None

    @pytest.mark.asyncio
    async def test_unknown_operation_rejected(self, rate_limiter: RateLimiter) -> None:
        with pytest.raises(ValueError):
            await rate_limiter.check_rate_limit("acme", "imageUpload", limit=1)

    @pytest.mark.asyncio
    async def test_fails_open_on_storage_error(self, clock: FakeClock) -> None:
        """Test that a storage outage admits the request."""
        db_manager = MagicMock()
        db_manager.run_transaction_async = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("disk I/O error"))
        )
        limiter = RateLimiter(db_manager, clock=clock)

        result = await limiter.check_rate_limit("acme", "billAnalysis", limit=10)

        assert result.allowed is True
        assert result.remaining == 10
        assert result.retry_after is None

    @pytest.mark.asyncio
    async def test_concurrent_requests_for_last_slot(self, rate_limiter: RateLimiter) -> None:
        """Test that only one of several racing requests takes the last slot."""
        for _ in range(4):
            await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=5)

        results = await asyncio.gather(
            *(rate_limiter.check_rate_limit("acme", "billAnalysis", limit=5) for _ in range(6))
        )

        assert sum(1 for r in results if r.allowed) == 1

    @pytest.mark.asyncio
    async def test_concurrent_first_requests(self, rate_limiter: RateLimiter) -> None:
        """Test racing requests when no record exists yet."""
        results = await asyncio.gather(
            *(rate_limiter.check_rate_limit("acme", "reportGeneration", limit=3) for _ in range(8))
        )

        assert sum(1 for r in results if r.allowed) == 3


    @pytest.mark.asyncio
    async def test_retry_uses_time_of_successful_attempt(
        self, db_manager: DatabaseManager
    ) -> None:
        """Test that a conflicting first attempt does not stamp a stale time."""
        clock = ConflictingClock(NOW)
        limiter = RateLimiter(db_manager, clock=clock)

        result = await limiter.check_rate_limit("acme", "billAnalysis", limit=5)

        assert result.allowed is True
        assert result.reset_time == NOW + timedelta(seconds=65)
        assert stored_timestamps(db_manager, "acme", "billAnalysis") == [
            to_epoch(NOW + timedelta(seconds=5))
        ]


class TestRateLimitStatus:
    """Tests for the read-only status view."""

    @pytest.mark.asyncio
    async def test_status_does_not_record(self, rate_limiter: RateLimiter) -> None:
        await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=4)

        for _ in range(3):
            status = await rate_limiter.get_rate_limit_status("acme", "billAnalysis", limit=4)

        assert status.current == 1
        assert status.remaining == 3
        assert status.percent_used == 25.0
        assert status.reset_time == NOW + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_status_for_unknown_key(self, rate_limiter: RateLimiter) -> None:
        status = await rate_limiter.get_rate_limit_status("nobody", "reportGeneration", limit=5)

        assert status.current == 0
        assert status.remaining == 5
        assert status.percent_used == 0

    @pytest.mark.asyncio
    async def test_status_fails_soft(self, clock: FakeClock) -> None:
        db_manager = MagicMock()
        db_manager.run_transaction_async = AsyncMock(side_effect=RuntimeError("down"))
        limiter = RateLimiter(db_manager, clock=clock)

        status = await limiter.get_rate_limit_status("acme", "billAnalysis", limit=10)

        assert status.current == 0
        assert status.remaining == 10


class TestClearAndCleanup:
    """Tests for administrative deletion."""

    @pytest.mark.asyncio
    async def test_clear_single_operation(
        self, rate_limiter: RateLimiter, db_manager: DatabaseManager
    ) -> None:
        await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=5)
        await rate_limiter.check_rate_limit("acme", "reportGeneration", limit=5)

        deleted = await rate_limiter.clear_rate_limit("acme", "billAnalysis")

        assert deleted == 1
        assert stored_timestamps(db_manager, "acme", "billAnalysis") is None
        assert stored_timestamps(db_manager, "acme", "reportGeneration") is not None

    @pytest.mark.asyncio
    async def test_clear_all_operations(self, rate_limiter: RateLimiter) -> None:
        await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=1)
        await rate_limiter.check_rate_limit("acme", "reportGeneration", limit=1)
        await rate_limiter.check_rate_limit("globex", "billAnalysis", limit=1)

        assert await rate_limiter.clear_rate_limit("acme") == 2
        assert (await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=1)).allowed is True
        assert (await rate_limiter.check_rate_limit("globex", "billAnalysis", limit=1)).allowed is False

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_stale_records(
        self, rate_limiter: RateLimiter, clock: FakeClock, db_manager: DatabaseManager
    ) -> None:
        await rate_limiter.check_rate_limit("acme", "billAnalysis", limit=5)
        await rate_limiter.check_rate_limit("acme", "reportGeneration", limit=5)
        clock.advance(2 * 86400)
        await rate_limiter.check_rate_limit("globex", "billAnalysis", limit=5)
        clock.advance(1)

        deleted = await rate_limiter.cleanup_old_rate_limits(max_age_seconds=86400)

        assert deleted == 2
        assert stored_timestamps(db_manager, "acme", "billAnalysis") is None
        assert stored_timestamps(db_manager, "globex", "billAnalysis") is not None

    def test_cleanup_keeps_recent_record(
        self, rate_limiter: RateLimiter, clock: FakeClock
    ) -> None:
        asyncio.run(rate_limiter.check_rate_limit("acme", "billAnalysis", limit=5))
        clock.advance(1)

        assert rate_limiter.cleanup_old_rate_limits_sync(max_age_seconds=86400) == 0

    def test_cleanup_swallows_errors(self, clock: FakeClock) -> None:
        db_manager = MagicMock()
        db_manager.run_transaction.side_effect = OperationalError("DELETE", {}, Exception("locked"))
        limiter = RateLimiter(db_manager, clock=clock)

        assert limiter.cleanup_old_rate_limits_sync() == 0
