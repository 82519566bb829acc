"""Service wiring shared by the API and the CLI."""

import logging
from dataclasses import dataclass

from metering.clock import Clock, utcnow
from metering.config import Settings
from metering.db import DatabaseManager
from metering.maintenance import RateLimitJanitor
from metering.policy import ConfigCache, SystemConfigStore
from metering.quota import MeteringGuard, QuotaTracker, RateLimiter
from metering.scheduler import SchedulerService
from metering.tenants import TenantDirectory

logger = logging.getLogger(__name__)

JANITOR_JOB_ID = "rate_limit_cleanup"


@dataclass
class MeteringServices:
    """All metering services built around one database."""

    settings: Settings
    db_manager: DatabaseManager
    config_store: SystemConfigStore
    config_cache: ConfigCache
    rate_limiter: RateLimiter
    quota_tracker: QuotaTracker
    guard: MeteringGuard
    tenants: TenantDirectory
    janitor: RateLimitJanitor
    scheduler: SchedulerService

    def start(self, run_scheduler: bool = True) -> None:
        """Create tables and start background maintenance."""
        self.db_manager.init_db()

        if run_scheduler and self.settings.rate_limit_cleanup_enabled:
            self.scheduler.add_job(
                job_id=JANITOR_JOB_ID,
                func=self.janitor.run,
                interval_minutes=self.settings.rate_limit_cleanup_interval,
            )
            self.scheduler.start()
            logger.info(
                f"Rate limit cleanup registered ({self.settings.rate_limit_cleanup_interval}m interval)"
            )

    def close(self) -> None:
        """Stop background jobs and release the database."""
        self.scheduler.shutdown(wait=True)
        self.db_manager.close()


def build_services(settings: Settings, clock: Clock = utcnow) -> MeteringServices:
    """Construct the service graph from settings."""
    db_manager = DatabaseManager(
        database_url=settings.database_url,
        echo=settings.database_echo,
        max_attempts=settings.transaction_max_attempts,
        retry_backoff_seconds=settings.transaction_retry_backoff_seconds,
    )
    config_store = SystemConfigStore(db_manager, settings.config_document_id, clock=clock)
    config_cache = ConfigCache(config_store, ttl_seconds=settings.config_cache_ttl_seconds)
    rate_limiter = RateLimiter(db_manager, clock=clock)
    quota_tracker = QuotaTracker(db_manager, config_cache, clock=clock)

    return MeteringServices(
        settings=settings,
        db_manager=db_manager,
        config_store=config_store,
        config_cache=config_cache,
        rate_limiter=rate_limiter,
        quota_tracker=quota_tracker,
        guard=MeteringGuard(config_cache, rate_limiter, quota_tracker),
        tenants=TenantDirectory(db_manager, clock=clock),
        janitor=RateLimitJanitor(rate_limiter, settings.rate_limit_max_age_seconds),
        scheduler=SchedulerService(
            max_workers=settings.scheduler_max_workers,
            timezone=settings.scheduler_timezone,
        ),
    )
