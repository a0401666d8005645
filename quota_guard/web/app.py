"""
Usage accounting service.

Exposes the limiter over HTTP: quota checks, usage recording with 429
rejections, and a per-subject usage listing.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from quota_guard.config.loader import Tier
from quota_guard.config.log_setup import configure_logging
from quota_guard.config.settings import QuotaGuardSettings
from quota_guard.core.factory import build_limiter
from quota_guard.core.limiter import RateLimiter, RateLimitExceeded

from .responses import add_rate_limit_headers, rate_limit_exception_handler
from .schemas import LimitStatusOut, UsageEventOut, UsageListOut, UsageRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def get_limiter(request: Request) -> RateLimiter:
    return request.app.state.limiter


def _parse_tier(value: str) -> Tier:
    try:
        return Tier.parse(value)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/v1/limits/{operation}/{subject}")
def get_limit_status(
    operation: str,
    subject: str,
    tier: str = Query(default="BASE"),
    limiter: RateLimiter = Depends(get_limiter),
) -> JSONResponse:
    """Report the subject's current quota without recording anything."""
    parsed_tier = _parse_tier(tier)
    status = limiter.check(subject, operation, parsed_tier)
    body = LimitStatusOut(
        subject=subject,
        operation=operation,
        tier=parsed_tier.value,
        admitted=status.admitted,
        limit=status.limit,
        remaining=None if status.unlimited else int(status.remaining),
        reset_time=status.reset_at,
    )
    response = JSONResponse(content=body.model_dump(mode="json"))
    return add_rate_limit_headers(response, status)


@router.post("/v1/usage/{operation}/{subject}", status_code=201)
def record_usage(
    operation: str,
    subject: str,
    body: Optional[UsageRequest] = None,
    limiter: RateLimiter = Depends(get_limiter),
) -> JSONResponse:
    """Admit and record one operation for the subject.

    Rejected requests get a 429 with ``Retry-After``. Admitted ones are
    recorded and answered with the quota left after recording.
    """
    body = body or UsageRequest()
    tier = _parse_tier(body.tier)

    admission = limiter.admit_or_reject(subject, operation, tier)
    if not admission.admitted:
        raise RateLimitExceeded(admission.rejection)

    event = limiter.record(subject, operation, cost=body.cost, metadata=body.metadata)
    status = limiter.check(subject, operation, tier)

    response = JSONResponse(
        status_code=201,
        content=UsageEventOut.from_event(event).model_dump(mode="json"),
    )
    return add_rate_limit_headers(response, status)


@router.get("/v1/usage/{subject}")
def list_usage(
    subject: str,
    operation: Optional[str] = None,
    days: Optional[int] = Query(default=None, ge=1),
    limit: int = Query(default=100, ge=1, le=1000),
    limiter: RateLimiter = Depends(get_limiter),
) -> UsageListOut:
    """List the subject's recorded events, newest first."""
    if not hasattr(limiter.store, "get_recent_events"):
        raise HTTPException(status_code=501, detail="Usage store does not support listing")
    events = limiter.store.get_recent_events(
        subject=subject,
        operation=operation,
        days=days,
        limit=limit,
    )
    return UsageListOut(
        subject=subject,
        events=[UsageEventOut.from_event(event) for event in events],
    )


def create_app(
    limiter: Optional[RateLimiter] = None,
    settings: Optional[QuotaGuardSettings] = None,
) -> FastAPI:
    """Application factory.

    Logging is configured from the settings whenever settings are in play,
    i.e. passed explicitly or loaded because no limiter was given.

    Args:
        limiter: Limiter to serve; built from settings when omitted
        settings: Settings for logging and for building the limiter

    Returns:
        Configured FastAPI application
    """
    if limiter is None and settings is None:
        settings = QuotaGuardSettings()
    if settings is not None:
        configure_logging(settings.log_level, settings.structured_logging)
    if limiter is None:
        limiter = build_limiter(settings)

    app = FastAPI(title="Quota Guard")
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)
    app.include_router(router)

    logger.info("Usage service ready with %d rate-limited operations", len(limiter.rules.operations))
    return app
