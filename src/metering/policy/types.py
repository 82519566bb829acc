"""
Limit policy types.

Rate limits and tier quotas as they are stored in the central
configuration document, plus the built-in defaults used whenever the
document is missing, partial, or unreadable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    """Metered operations with real monetary cost."""

    BILL_ANALYSIS = "billAnalysis"
    REPORT_GENERATION = "reportGeneration"

    @property
    def usage_column(self) -> str:
        """Tenant column holding this operation's monthly counter."""
        return _USAGE_COLUMNS[self]


_USAGE_COLUMNS = {
    Operation.BILL_ANALYSIS: "bill_analysis_count",
    Operation.REPORT_GENERATION: "report_generation_count",
}


class SubscriptionTier(str, Enum):
    """Subscription tiers selecting quota limits."""

    TRIAL = "trial"
    STANDARD = "standard"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value: str | None) -> SubscriptionTier:
        """Parse a stored tier, falling back to trial for unknown values."""
        if not value:
            return cls.TRIAL
        try:
            return cls(value)
        except ValueError:
            logger.warning(f"Unknown subscription tier '{value}', treating as trial")
            return cls.TRIAL


class Window(str, Enum):
    """Rate limit windows."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def seconds(self) -> int:
        return {"minute": 60, "hour": 3600, "day": 86400}[self.value]


# --- Limits ---


@dataclass(frozen=True)
class Limited:
    """A finite limit."""

    value: int

    def __post_init__(self) -> None:
        if self.value < 0:
            raise ValueError(f"Limit must be >= 0, got {self.value}")


@dataclass(frozen=True)
class Unlimited:
    """No limit at all."""

    def __repr__(self) -> str:
        return "UNLIMITED"


UNLIMITED = Unlimited()

Limit = Union[Limited, Unlimited]

# Wire representation of "unlimited" in the configuration document
UNLIMITED_SENTINEL = -1


def parse_limit(raw: Any) -> Limit:
    """Convert a stored limit (-1 = unlimited) into a Limit."""
    value = int(raw)
    if value == UNLIMITED_SENTINEL:
        return UNLIMITED
    if value < UNLIMITED_SENTINEL:
        raise ValueError(f"Invalid limit {value}: must be >= -1 (use -1 for unlimited)")
    return Limited(value)


def limit_to_raw(limit: Limit) -> int:
    """Convert a Limit back to its stored form."""
    if isinstance(limit, Unlimited):
        return UNLIMITED_SENTINEL
    return limit.value


# --- Rate limits ---


@dataclass(frozen=True)
class OperationRateLimits:
    """Request limits for one operation across the three windows."""

    requests_per_minute: int
    requests_per_hour: int
    requests_per_day: int

    def for_window(self, window: Window) -> int:
        if window == Window.HOUR:
            return self.requests_per_hour
        if window == Window.DAY:
            return self.requests_per_day
        return self.requests_per_minute

    def to_dict(self) -> dict[str, int]:
        return {
            "requestsPerMinute": self.requests_per_minute,
            "requestsPerHour": self.requests_per_hour,
            "requestsPerDay": self.requests_per_day,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, defaults: OperationRateLimits) -> OperationRateLimits:
        data = data or {}
        return cls(
            requests_per_minute=_int_or(data.get("requestsPerMinute"), defaults.requests_per_minute),
            requests_per_hour=_int_or(data.get("requestsPerHour"), defaults.requests_per_hour),
            requests_per_day=_int_or(data.get("requestsPerDay"), defaults.requests_per_day),
        )


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-operation rate limits."""

    operations: dict[Operation, OperationRateLimits]
    last_updated: datetime | None = None

    def for_operation(self, operation: Operation) -> OperationRateLimits:
        return self.operations[Operation(operation)]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {op.value: limits.to_dict() for op, limits in self.operations.items()}
        data["lastUpdated"] = self.last_updated.isoformat() if self.last_updated else None
        return data

    @classmethod
    def from_document(cls, document: dict[str, Any] | None) -> RateLimitConfig:
        """Build from the config document, merging field by field with defaults."""
        section = (document or {}).get("rateLimits") or {}
        return cls(
            operations={
                op: OperationRateLimits.from_dict(section.get(op.value), DEFAULT_RATE_LIMITS.operations[op])
                for op in Operation
            },
            last_updated=_parse_datetime((document or {}).get("updatedAt")),
        )


# --- Quotas ---


@dataclass(frozen=True)
class TierQuota:
    """Monthly limits for one subscription tier."""

    max_users: Limit
    max_bills_per_month: Limit
    max_reports_per_month: Limit

    def limit_for(self, operation: Operation) -> Limit:
        if Operation(operation) == Operation.BILL_ANALYSIS:
            return self.max_bills_per_month
        return self.max_reports_per_month

    def to_dict(self) -> dict[str, int]:
        return {
            "maxUsers": limit_to_raw(self.max_users),
            "maxBillsPerMonth": limit_to_raw(self.max_bills_per_month),
            "maxReportsPerMonth": limit_to_raw(self.max_reports_per_month),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, defaults: TierQuota) -> TierQuota:
        data = data or {}
        return cls(
            max_users=_limit_or(data.get("maxUsers"), defaults.max_users),
            max_bills_per_month=_limit_or(data.get("maxBillsPerMonth"), defaults.max_bills_per_month),
            max_reports_per_month=_limit_or(data.get("maxReportsPerMonth"), defaults.max_reports_per_month),
        )


@dataclass(frozen=True)
class QuotaConfig:
    """Monthly quotas by subscription tier."""

    tiers: dict[SubscriptionTier, TierQuota] = field(default_factory=dict)

    def for_tier(self, tier: SubscriptionTier) -> TierQuota:
        return self.tiers[SubscriptionTier(tier)]

    def limit_for(self, tier: SubscriptionTier, operation: Operation) -> Limit:
        return self.for_tier(tier).limit_for(operation)

    def to_dict(self) -> dict[str, Any]:
        return {tier.value: quota.to_dict() for tier, quota in self.tiers.items()}

    @classmethod
    def from_document(cls, document: dict[str, Any] | None) -> QuotaConfig:
        """Build from the config document, merging field by field with defaults."""
        section = (document or {}).get("quotas") or {}
        return cls(
            tiers={
                tier: TierQuota.from_dict(section.get(tier.value), DEFAULT_QUOTAS.tiers[tier])
                for tier in SubscriptionTier
            }
        )


def _int_or(raw: Any, default: int) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed rate limit value {raw!r}")
        return default
    if value < 1:
        logger.warning(f"Ignoring non-positive rate limit value {raw!r}")
        return default
    return value


def _limit_or(raw: Any, default: Limit) -> Limit:
    if raw is None:
        return default
    try:
        return parse_limit(raw)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed quota value {raw!r}")
        return default


def _parse_datetime(raw: Any) -> datetime | None:
    if raw is None or isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError:
        return None


# --- Defaults ---

DEFAULT_RATE_LIMITS = RateLimitConfig(
    operations={
        Operation.BILL_ANALYSIS: OperationRateLimits(
            requests_per_minute=10,
            requests_per_hour=100,
            requests_per_day=500,
        ),
        Operation.REPORT_GENERATION: OperationRateLimits(
            requests_per_minute=5,
            requests_per_hour=50,
            requests_per_day=200,
        ),
    }
)

DEFAULT_QUOTAS = QuotaConfig(
    tiers={
        SubscriptionTier.TRIAL: TierQuota(
            max_users=Limited(1),
            max_bills_per_month=Limited(2),
            max_reports_per_month=Limited(0),
        ),
        SubscriptionTier.STANDARD: TierQuota(
            max_users=Limited(10),
            max_bills_per_month=Limited(50),
            max_reports_per_month=Limited(50),
        ),
        SubscriptionTier.PREMIUM: TierQuota(
            max_users=Limited(50),
            max_bills_per_month=Limited(2000),
            max_reports_per_month=Limited(200),
        ),
        SubscriptionTier.ENTERPRISE: TierQuota(
            max_users=UNLIMITED,
            max_bills_per_month=UNLIMITED,
            max_reports_per_month=UNLIMITED,
        ),
    }
)


def default_document() -> dict[str, Any]:
    """The configuration document holding the built-in defaults."""
    rate_limits = DEFAULT_RATE_LIMITS.to_dict()
    rate_limits.pop("lastUpdated")
    return {
        "rateLimits": rate_limits,
        "quotas": DEFAULT_QUOTAS.to_dict(),
    }
