"""
Rate-limit response helpers.

Every limited response carries ``X-RateLimit-Limit``,
``X-RateLimit-Remaining`` and ``X-RateLimit-Reset`` (Unix seconds).
Rejections are ``429 Too Many Requests`` with a ``Retry-After`` header
and a JSON body naming the operation, tier and reset time.
"""

from datetime import datetime, timezone
from typing import Dict

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from quota_guard.core.limiter import RateLimitExceeded, RateLimitStatus, Rejection

RATE_LIMIT_ERROR = "Rate limit exceeded"


def format_reset_time(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    text = value.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def rate_limit_headers(status: RateLimitStatus) -> Dict[str, str]:
    """Quota headers for a snapshot; empty when no rule applies."""
    if status.unlimited:
        return {}
    return {
        "X-RateLimit-Limit": str(status.limit),
        "X-RateLimit-Remaining": str(int(status.remaining)),
        "X-RateLimit-Reset": str(status.reset_epoch),
    }


def add_rate_limit_headers(response: Response, status: RateLimitStatus) -> Response:
    """Attach quota headers to an outgoing response in place."""
    for name, value in rate_limit_headers(status).items():
        response.headers[name] = value
    return response


def rate_limit_response(rejection: Rejection) -> JSONResponse:
    """Build the 429 response for a rejected admission."""
    return JSONResponse(
        status_code=429,
        content={
            "error": RATE_LIMIT_ERROR,
            "details": {
                "endpoint": rejection.operation,
                "tier": rejection.tier.value,
                "resetTime": format_reset_time(rejection.reset_at),
            },
        },
        headers={
            "X-RateLimit-Limit": str(rejection.limit),
            "X-RateLimit-Remaining": str(rejection.remaining),
            "X-RateLimit-Reset": str(rejection.reset_epoch),
            "Retry-After": str(rejection.retry_after),
        },
    )


async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return rate_limit_response(exc.rejection)
