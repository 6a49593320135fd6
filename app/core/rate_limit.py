"""Rate limiting for the public API surface."""

from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def rate_limit_key(request: Request) -> str:
    """Key requests by bearer token when present so NAT-ed clients do not share a bucket."""

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.removeprefix("Bearer ").strip()
        if token:
            return f"token:{token[-32:]}"
    return get_remote_address(request)


# The storage backend is chosen by URI: memory:// for single node and tests,
# redis://... when several workers must share counters.
limiter = Limiter(
    key_func=rate_limit_key,
    storage_uri=settings.rate_limit_storage_uri,
    enabled=settings.rate_limit_enabled,
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.info("Rate limit exceeded for %s on %s", rate_limit_key(request), request.url.path)
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded: {exc.detail}", "code": "RATE_LIMITED"},
    )
