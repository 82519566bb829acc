"""API routes for tenant metering and system administration."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from metering.api.deps import get_services, get_tenant_id, is_privileged, require_admin
from metering.api.schemas import LimitsUpdateRequest, QuotaResetRequest, RateLimitResetRequest
from metering.policy.types import Operation, Window
from metering.services import MeteringServices

logger = logging.getLogger(__name__)

tenant_router = APIRouter(prefix="/tenant", tags=["tenant"])
admin_router = APIRouter(
    prefix="/system-admin",
    tags=["system-admin"],
    dependencies=[Depends(require_admin)],
)


# --- Tenant endpoints ---


@tenant_router.get("/quota")
async def get_tenant_quota(
    tenant_id: str = Depends(get_tenant_id),
    services: MeteringServices = Depends(get_services),
) -> dict[str, Any]:
    """Monthly quota status for every metered operation."""
    tenant = await services.tenants.get_tenant(tenant_id)
    quotas = {}
    for operation in Operation:
        result = await services.quota_tracker.get_quota_status(tenant_id, operation)
        quotas[operation.value] = result.to_dict()

    return {
        "tenant_id": tenant_id,
        "subscription_tier": tenant.subscription_tier.value,
        "quotas": quotas,
    }


@tenant_router.get("/usage")
async def get_tenant_usage(
    tenant_id: str = Depends(get_tenant_id),
    services: MeteringServices = Depends(get_services),
) -> dict[str, Any]:
    """Per-minute rate limit status for every metered operation."""
    if not await services.tenants.exists(tenant_id):
        raise HTTPException(status_code=404, detail=f"Tenant not found: {tenant_id}")

    usage = {}
    for operation in Operation:
        limit = await services.config_cache.get_rate_limit_for_operation(operation, Window.MINUTE)
        result = await services.rate_limiter.get_rate_limit_status(
            tenant_id, operation, limit, Window.MINUTE.seconds
        )
        usage[operation.value] = result.to_dict()

    return {"tenant_id": tenant_id, "window": Window.MINUTE.value, "usage": usage}


@tenant_router.post("/operations/{operation}/admit")
async def admit_operation(
    operation: Operation,
    tenant_id: str = Depends(get_tenant_id),
    privileged: bool = Depends(is_privileged),
    services: MeteringServices = Depends(get_services),
) -> dict[str, Any]:
    """
    Reserve one metered operation for the tenant.

    Callers run the expensive work only after a 200 response. Refusals
    carry the reset time so clients can back off or upgrade.
    """
    admission = await services.guard.admit(tenant_id, operation, bypass=privileged)

    if admission.reason == "rate_limited":
        rate_limit = admission.rate_limit
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limited",
                "message": f"Too many {operation.value} requests. Try again in {rate_limit.retry_after}s.",
                "reset_time": rate_limit.reset_time.isoformat(),
                "retry_after": rate_limit.retry_after,
                "limit": rate_limit.limit,
            },
            headers={"Retry-After": str(rate_limit.retry_after or 0)},
        )

    if admission.reason == "quota_exceeded" and admission.quota is not None:
        quota = admission.quota
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "quota_exceeded",
                "message": f"Monthly {operation.value} quota exhausted.",
                "reset_time": quota.reset_time.isoformat(),
                "current": quota.current,
                "limit": quota.to_dict()["limit"],
            },
        )

    return {"tenant_id": tenant_id, "operation": operation.value, **admission.to_dict()}


# --- System admin endpoints ---


async def _limits_response(services: MeteringServices) -> dict[str, Any]:
    rate_limits = await services.config_cache.get_rate_limit_config(force_refresh=True)
    quotas = await services.config_cache.get_quota_config()
    return {
        "rate_limits": rate_limits.to_dict(),
        "quotas": quotas.to_dict(),
    }


@admin_router.get("/rate-limits")
async def get_limits(services: MeteringServices = Depends(get_services)) -> dict[str, Any]:
    """Current rate limits and tier quotas, read fresh from the database."""
    return await _limits_response(services)


@admin_router.patch("/rate-limits")
async def update_limits(
    request: LimitsUpdateRequest,
    services: MeteringServices = Depends(get_services),
) -> dict[str, Any]:
    """Apply a partial update to the limits document."""
    rate_limits = request.rate_limits.to_document() if request.rate_limits else {}
    quotas = request.quotas.to_document() if request.quotas else {}
    if not rate_limits and not quotas:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide rateLimits and/or quotas to update",
        )

    await services.config_store.update(
        rate_limits=rate_limits or None,
        quotas=quotas or None,
        updated_by=request.updated_by or "system-admin",
    )
    services.config_cache.invalidate()
    logger.info("Limits updated through admin API")

    response = await _limits_response(services)
    response["message"] = "Limits updated"
    return response


@admin_router.post("/rate-limits/reset")
async def reset_rate_limits(
    request: RateLimitResetRequest,
    services: MeteringServices = Depends(get_services),
) -> dict[str, Any]:
    """Clear a tenant's rate limit windows."""
    if not await services.tenants.exists(request.tenant_id):
        raise HTTPException(status_code=404, detail=f"Tenant not found: {request.tenant_id}")

    deleted = await services.rate_limiter.clear_rate_limit(request.tenant_id, request.operation)
    return {
        "tenant_id": request.tenant_id,
        "operation": request.operation.value if request.operation else None,
        "deleted": deleted,
    }


@admin_router.post("/quotas/reset")
async def reset_quota(
    request: QuotaResetRequest,
    services: MeteringServices = Depends(get_services),
) -> dict[str, Any]:
    """Start a fresh monthly period for a tenant."""
    usage = await services.quota_tracker.reset_quota(request.tenant_id)
    return {"tenant_id": request.tenant_id, "monthly_usage": usage.to_dict()}


@admin_router.get("/config-cache")
async def get_config_cache_status(
    services: MeteringServices = Depends(get_services),
) -> dict[str, Any]:
    """Introspect the limits cache."""
    status_info = services.config_cache.get_cache_status().to_dict()
    status_info["ttl_seconds"] = services.config_cache.ttl_seconds
    return status_info


@admin_router.get("/jobs")
async def list_maintenance_jobs(
    services: MeteringServices = Depends(get_services),
) -> dict[str, Any]:
    """Scheduled maintenance jobs with their last outcome."""
    return {
        "scheduler_running": services.scheduler.is_running,
        "jobs": [job.to_dict() for job in services.scheduler.list_jobs()],
    }
