"""Maintenance routes for gigsettle.

Endpoints for the periodic settlement sweeps. These should be called by an
external scheduler (e.g., cron) with the X-API-Key header to enforce:
- Auto-release of submitted milestones after the grace period
- Overdue notices for milestones past their due date
- Cancellation of trades whose escrow deposit never arrived
"""

from datetime import datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ...auth import CronAuth
from ...database import Engine
from ...logging_config import get_logger
from ...rate_limit import limiter

logger = get_logger("gigsettle.commerce.maintenance")
router = APIRouter(prefix="/maintenance", tags=["commerce", "maintenance"], dependencies=[CronAuth])


# =============================================================================
# Request/Response Models
# =============================================================================


class AutoReleaseResponse(BaseModel):
    """Response from an auto-release sweep."""

    checked_at: datetime
    released: int
    released_ids: list[str]
    skipped: int
    overdue_notified: int
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class AutoReleaseStatusResponse(BaseModel):
    """Counts for monitoring before running a sweep."""

    status: str
    grace_period_hours: int
    pending_auto_release: int
    overdue_milestones: int
    checked_at: datetime


class TradeExpiryResponse(BaseModel):
    expired: int
    expired_ids: list[str]
    skipped: int
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# =============================================================================
# Routes
# =============================================================================


@router.post("/auto-release", response_model=AutoReleaseResponse)
@limiter.limit("10/minute")
def run_auto_release(request: Request, engine: Engine):
    """
    Release submitted milestones whose grace period has elapsed.

    Safe to call repeatedly or concurrently: a milestone is released at most
    once. Failures on individual milestones are reported, not raised.
    """
    logger.info("POST /maintenance/auto-release")
    result = engine.reconciler.run()
    if result.errors:
        logger.warning(f"Auto-release sweep finished with {len(result.errors)} errors")
    return AutoReleaseResponse(
        checked_at=result.checked_at,
        released=len(result.released),
        released_ids=result.released,
        skipped=len(result.skipped),
        overdue_notified=len(result.overdue_notified),
        errors=result.errors,
        warnings=result.warnings,
    )


@router.get("/auto-release", response_model=AutoReleaseStatusResponse)
@limiter.limit("60/minute")
def auto_release_status(request: Request, engine: Engine):
    """
    Health check for the auto-release sweep.

    Returns counts of milestones that the next sweep would act on.
    """
    logger.info("GET /maintenance/auto-release")
    snapshot = engine.reconciler.status()
    needs_action = snapshot.pending_auto_release or snapshot.overdue_milestones
    return AutoReleaseStatusResponse(
        status="action_needed" if needs_action else "healthy",
        grace_period_hours=engine.config.grace_period_hours,
        pending_auto_release=snapshot.pending_auto_release,
        overdue_milestones=snapshot.overdue_milestones,
        checked_at=snapshot.checked_at,
    )


@router.post("/expire-trades", response_model=TradeExpiryResponse)
@limiter.limit("10/minute")
def expire_trades(request: Request, engine: Engine):
    """Cancel trades still awaiting deposit after the deposit window."""
    logger.info("POST /maintenance/expire-trades")
    result = engine.jobs.expire_unfunded_trades()
    return TradeExpiryResponse(
        expired=len(result.expired),
        expired_ids=result.expired,
        skipped=len(result.skipped),
        errors=result.errors,
        warnings=result.warnings,
    )
