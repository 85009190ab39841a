"""
Request-level security: rate limiter, response headers, admin token check.
"""

import secrets

from fastapi import Header, HTTPException, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from chartvolt.core.config import settings

limiter = Limiter(key_func=get_remote_address)


def get_security_headers() -> dict[str, str]:
    return {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "no-referrer",
        "Cache-Control": "no-store",
    }


async def require_admin_token(x_admin_token: str | None = Header(default=None)) -> None:
    """Admin endpoints are disabled unless ADMIN_API_TOKEN is configured"""
    if not settings.ADMIN_API_TOKEN:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Admin API disabled")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.ADMIN_API_TOKEN):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid admin token")
