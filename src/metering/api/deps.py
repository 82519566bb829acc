"""FastAPI dependencies."""

from fastapi import Depends, Header, HTTPException, Request, status

from metering.security import is_admin_request, verify_admin_key
from metering.services import MeteringServices


def get_services(request: Request) -> MeteringServices:
    """Services attached to the application at startup."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Metering services not initialized",
        )
    return services


def require_admin(
    request: Request,
    services: MeteringServices = Depends(get_services),
) -> str:
    return verify_admin_key(request, services.settings.admin_api_key)


def is_privileged(
    request: Request,
    services: MeteringServices = Depends(get_services),
) -> bool:
    """Whether the caller presented the admin key (metering bypass)."""
    return is_admin_request(request, services.settings.admin_api_key)


def get_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str:
    """Tenant identifier from the X-Tenant-ID header."""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing X-Tenant-ID header",
        )
    return x_tenant_id
