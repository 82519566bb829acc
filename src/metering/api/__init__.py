"""HTTP API for tenant metering."""

from metering.api.app import create_app

__all__ = ["create_app"]
