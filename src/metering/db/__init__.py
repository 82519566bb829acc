"""Database package for the metering service."""

from metering.db.base import Base
from metering.db.manager import DatabaseManager
from metering.db.models import MonthlyUsage, RateLimitRecord, SystemConfig, Tenant

__all__ = [
    "Base",
    "DatabaseManager",
    "MonthlyUsage",
    "RateLimitRecord",
    "SystemConfig",
    "Tenant",
]
