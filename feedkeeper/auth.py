"""
API key authentication.

Single user, one shared key from AUTH_API_KEY. When it is unset every
request is allowed (local use). Otherwise requests carry the key in the
X-API-Key header; the streaming endpoints also accept ?api_key= because
EventSource clients cannot set headers.
"""

import logging
import secrets

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader, APIKeyQuery

from .config import config

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)
API_KEY_QUERY = APIKeyQuery(name="api_key", auto_error=False)

# Paths that may authenticate with the query parameter
QUERY_KEY_PATHS = ("/feeds/refresh-multiple", "/feeds/refresh-events")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "ApiKey"},
    )


def verify_api_key(
    request: Request,
    header_key: str | None = Security(API_KEY_HEADER),
    query_key: str | None = Security(API_KEY_QUERY),
) -> str:
    """
    Check the request's API key against AUTH_API_KEY.

    Returns:
        The accepted key, or "" when authentication is disabled

    Raises:
        HTTPException: 401 if the key is missing or wrong
    """
    configured_key = config.AUTH_API_KEY
    if not configured_key:
        return ""

    api_key = header_key
    if not api_key and query_key and request.url.path in QUERY_KEY_PATHS:
        api_key = query_key

    if not api_key:
        raise _unauthorized("Missing API key. Provide X-API-Key header.")

    if not secrets.compare_digest(api_key.encode(), configured_key.encode()):
        logger.warning(f"Rejected request to {request.url.path}: invalid API key")
        raise _unauthorized("Invalid API key")

    return api_key
