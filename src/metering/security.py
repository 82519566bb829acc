"""Admin bearer key checks for privileged endpoints."""

import logging
import secrets

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)


def extract_bearer_token(request: Request) -> str | None:
    """Return the Bearer token from the Authorization header, if any."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:]  # Strip "Bearer "


def _matches(token: str, api_key: str) -> bool:
    # Headers arrive latin-1 decoded; compare_digest only accepts ASCII str
    return secrets.compare_digest(token.encode("utf-8"), api_key.encode("utf-8"))


def is_admin_request(request: Request, api_key: str | None) -> bool:
    """True if the request carries the configured admin key."""
    if not api_key:
        return False
    token = extract_bearer_token(request)
    return token is not None and _matches(token, api_key)


def verify_admin_key(request: Request, api_key: str | None) -> str:
    """
    Validate the admin Bearer token.

    Raises:
        HTTPException: 503 if no admin key is configured, 401 if the
            header is missing, malformed, or carries the wrong key
    """
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is disabled (no admin key configured)",
        )

    token = extract_bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not _matches(token, api_key):
        client_host = request.client.host if request.client else "unknown"
        logger.warning(f"Invalid admin key attempt from {client_host}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token
