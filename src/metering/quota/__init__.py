"""
Usage metering: sliding window rate limits and monthly quotas.

Per-tenant, per-operation counters persisted in the metering database.
"""

from metering.quota.guard import Admission, MeteringGuard
from metering.quota.limiter import RateLimiter, RateLimitResult, RateLimitStatus
from metering.quota.tracker import QuotaResult, QuotaTracker, month_bounds

__all__ = [
    "Admission",
    "MeteringGuard",
    "QuotaResult",
    "QuotaTracker",
    "RateLimitResult",
    "RateLimitStatus",
    "RateLimiter",
    "month_bounds",
]
