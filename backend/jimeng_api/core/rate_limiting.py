"""
Rate limiting configuration and utilities
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request, status
from fastapi.responses import JSONResponse
import logging

from jimeng_api.core.config import settings

logger = logging.getLogger(__name__)


def token_or_address(request: Request) -> str:
    """Limit per upstream session token when one is supplied"""
    authorization = request.headers.get("authorization")
    if authorization:
        return f"token:{authorization.replace('Bearer ', '').strip()}"
    return get_remote_address(request)


# Create rate limiter instance
limiter = Limiter(
    key_func=token_or_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT]
)


def custom_rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """Custom handler for rate limit exceeded"""
    logger.warning(f"Rate limit exceeded for {get_remote_address(request)}: {exc.detail}")

    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": {
                "message": f"Too many requests. Limit: {exc.detail}",
                "type": "rate_limit_error",
                "code": "RateLimitExceeded",
            }
        }
    )
