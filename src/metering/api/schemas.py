"""Request models for the metering API."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from metering.policy.types import Operation


class _CamelModel(BaseModel):
    """Accepts the camelCase keys of the limits document or snake_case names."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# --- Limits document updates ---


class OperationRateLimitsUpdate(_CamelModel):
    """Partial rate limits for one operation."""

    requests_per_minute: int | None = Field(default=None, ge=1, alias="requestsPerMinute")
    requests_per_hour: int | None = Field(default=None, ge=1, alias="requestsPerHour")
    requests_per_day: int | None = Field(default=None, ge=1, alias="requestsPerDay")


class RateLimitsUpdate(_CamelModel):
    bill_analysis: OperationRateLimitsUpdate | None = Field(default=None, alias="billAnalysis")
    report_generation: OperationRateLimitsUpdate | None = Field(default=None, alias="reportGeneration")


class TierQuotaUpdate(_CamelModel):
    """Partial quotas for one tier. -1 means unlimited."""

    max_users: int | None = Field(default=None, ge=-1, alias="maxUsers")
    max_bills_per_month: int | None = Field(default=None, ge=-1, alias="maxBillsPerMonth")
    max_reports_per_month: int | None = Field(default=None, ge=-1, alias="maxReportsPerMonth")


class QuotasUpdate(_CamelModel):
    trial: TierQuotaUpdate | None = None
    standard: TierQuotaUpdate | None = None
    premium: TierQuotaUpdate | None = None
    enterprise: TierQuotaUpdate | None = None


class LimitsUpdateRequest(_CamelModel):
    """PATCH body for the limits document."""

    rate_limits: RateLimitsUpdate | None = Field(default=None, alias="rateLimits")
    quotas: QuotasUpdate | None = None
    updated_by: str | None = Field(default=None, alias="updatedBy", max_length=255)


# --- Admin actions ---


class RateLimitResetRequest(_CamelModel):
    """Clear rate limit records for a tenant."""

    tenant_id: str = Field(..., min_length=1, alias="tenantId")
    operation: Operation | None = Field(
        default=None,
        description="Clear only this operation (all operations if omitted)",
    )


class QuotaResetRequest(_CamelModel):
    """Reset a tenant's monthly usage."""

    tenant_id: str = Field(..., min_length=1, alias="tenantId")
