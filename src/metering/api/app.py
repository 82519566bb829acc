"""FastAPI application for tenant metering."""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from metering import __version__
from metering.api.routes import admin_router, tenant_router
from metering.config import get_settings
from metering.errors import TenantNotFoundError, UsageNotInitializedError
from metering.services import MeteringServices, build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan events."""
    owned = app.state.services is None
    if owned:
        logger.info("Starting tenant metering API...")
        app.state.services = build_services(get_settings())
        app.state.services.start()
    yield
    if owned:
        logger.info("Shutting down tenant metering API...")
        app.state.services.close()
        app.state.services = None


def create_app(services: MeteringServices | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        services: Prebuilt services (the lifespan builds and owns them if None)
    """
    app = FastAPI(
        title="Tenant Metering",
        description="Per-tenant rate limits and monthly quotas for metered operations",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request timing middleware
    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"
        return response

    @app.exception_handler(TenantNotFoundError)
    async def tenant_not_found(request: Request, exc: TenantNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(UsageNotInitializedError)
    async def usage_not_initialized(request: Request, exc: UsageNotInitializedError) -> JSONResponse:
        logger.error(f"Provisioning error: {exc}")
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    app.include_router(tenant_router, prefix="/v1")
    app.include_router(admin_router, prefix="/v1")

    # Health check
    @app.get("/health")
    async def health_check(request: Request):
        services = request.app.state.services
        db_ok = services is not None and services.db_manager.health_check()
        return {
            "status": "healthy" if db_ok else "degraded",
            "version": __version__,
            "database": "ok" if db_ok else "unavailable",
        }

    return app


# Create app instance
app = create_app()
