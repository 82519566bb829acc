"""SQLAlchemy models for the metering database."""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from metering.db.base import Base, TimestampMixin


@dataclass(frozen=True)
class MonthlyUsage:
    """Usage block embedded in a tenant row."""

    bill_analysis_count: int
    report_generation_count: int
    period_start: datetime
    period_end: datetime
    last_reset: datetime
    updated_at: datetime

    def count_for(self, column: str) -> int:
        return getattr(self, column)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bill_analysis_count": self.bill_analysis_count,
            "report_generation_count": self.report_generation_count,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "last_reset": self.last_reset.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class Tenant(TimestampMixin, Base):
    """Customer organization with its subscription tier and monthly usage."""

    __tablename__ = "tenants"

    tenant_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subscription_tier: Mapped[str] = mapped_column(String(32), default="trial", nullable=False)

    # Monthly usage (null until the first period is reconciled)
    bill_analysis_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    report_generation_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    usage_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    usage_last_reset: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    usage_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def monthly_usage(self) -> MonthlyUsage | None:
        """The embedded usage block, or None if never initialized."""
        if self.usage_period_start is None or self.usage_period_end is None:
            return None
        return MonthlyUsage(
            bill_analysis_count=self.bill_analysis_count or 0,
            report_generation_count=self.report_generation_count or 0,
            period_start=self.usage_period_start,
            period_end=self.usage_period_end,
            last_reset=self.usage_last_reset or self.usage_period_start,
            updated_at=self.usage_updated_at or self.usage_period_start,
        )

    def start_period(self, start: datetime, end: datetime, now: datetime) -> MonthlyUsage:
        """Replace the usage block with a zeroed one bounded to [start, end)."""
        self.bill_analysis_count = 0
        self.report_generation_count = 0
        self.usage_period_start = start
        self.usage_period_end = end
        self.usage_last_reset = now
        self.usage_updated_at = now
        return MonthlyUsage(
            bill_analysis_count=0,
            report_generation_count=0,
            period_start=start,
            period_end=end,
            last_reset=now,
            updated_at=now,
        )


class RateLimitRecord(TimestampMixin, Base):
    """Rolling request timestamps for one tenant and operation."""

    __tablename__ = "rate_limit_records"

    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamps_json: Mapped[str] = mapped_column(Text, default="[]", nullable=False)

    __table_args__ = (
        Index("ix_rate_limit_records_tenant_operation", "tenant_id", "operation", unique=True),
        Index("ix_rate_limit_records_updated_at", "updated_at"),
    )

    @property
    def timestamps(self) -> list[float]:
        """Admitted request times as epoch seconds, oldest first."""
        return [float(ts) for ts in json.loads(self.timestamps_json or "[]")]

    @timestamps.setter
    def timestamps(self, values: list[float]) -> None:
        self.timestamps_json = json.dumps(list(values))


class SystemConfig(TimestampMixin, Base):
    """Singleton configuration documents (rate limits and tier quotas)."""

    __tablename__ = "system_config"

    document_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    data_json: Mapped[str] = mapped_column(Text, default="{}", nullable=False)
    updated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    @property
    def data(self) -> dict[str, Any]:
        return json.loads(self.data_json or "{}")

    @data.setter
    def data(self, value: dict[str, Any]) -> None:
        self.data_json = json.dumps(value, default=str)
