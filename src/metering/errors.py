"""Exceptions raised by the metering layer."""


class MeteringError(Exception):
    """Base class for metering errors."""

    pass


class TenantNotFoundError(MeteringError, LookupError):
    """Raised when an operation targets a tenant that does not exist."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant not found: {tenant_id}")
        self.tenant_id = tenant_id


class UsageNotInitializedError(MeteringError):
    """Raised when a tenant record carries no monthly usage block."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Monthly usage data not initialized for tenant {tenant_id}")
        self.tenant_id = tenant_id
