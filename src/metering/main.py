"""Main entry point for the metering API server."""

import logging

import uvicorn

from metering.config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main() -> None:
    """Serve the API with uvicorn."""
    logger.info(f"Starting metering API on {settings.api_host}:{settings.api_port}")
    if not settings.admin_api_key:
        logger.warning("ADMIN_API_KEY not set; system-admin endpoints are disabled")

    uvicorn.run(
        "metering.api.app:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
