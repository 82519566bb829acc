"""
Limit policy: rate limits per operation and monthly quotas per tier.

Backed by a single limits document and served through a TTL cache.
"""

from metering.policy.cache import CacheStatus, ConfigCache
from metering.policy.store import SystemConfigStore
from metering.policy.types import (
    DEFAULT_QUOTAS,
    DEFAULT_RATE_LIMITS,
    UNLIMITED,
    Limit,
    Limited,
    Operation,
    OperationRateLimits,
    QuotaConfig,
    RateLimitConfig,
    SubscriptionTier,
    TierQuota,
    Unlimited,
    Window,
    limit_to_raw,
    parse_limit,
)

__all__ = [
    "CacheStatus",
    "ConfigCache",
    "DEFAULT_QUOTAS",
    "DEFAULT_RATE_LIMITS",
    "Limit",
    "Limited",
    "Operation",
    "OperationRateLimits",
    "QuotaConfig",
    "RateLimitConfig",
    "SubscriptionTier",
    "SystemConfigStore",
    "TierQuota",
    "UNLIMITED",
    "Unlimited",
    "Window",
    "limit_to_raw",
    "parse_limit",
]
