"""Milestone routes for gigsettle.

Milestones split a job's payment. The freelancer starts and submits them;
the client approves, which releases the amount into the freelancer's
earnings. Submitted milestones the client ignores are released by the
maintenance sweep after the grace period.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field

from gigsettle.commerce.milestones import ApprovalResult, Milestone

from ...auth import CurrentUser
from ...database import Engine
from ...logging_config import get_logger
from ...rate_limit import limiter

logger = get_logger("gigsettle.commerce.milestones")
router = APIRouter(prefix="/jobs/{job_id}/milestones", tags=["commerce", "milestones"])


# =============================================================================
# Request/Response Models
# =============================================================================

MilestoneStatus = Literal["pending", "in_progress", "submitted", "approved", "disputed"]


class MilestoneCreate(BaseModel):
    """Request to add a milestone to a job."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    amount: Decimal = Field(..., gt=0)
    due_date: datetime
    sort_order: int | None = Field(default=None, ge=0)
    auto_release_enabled: bool = True


class MilestoneResponse(BaseModel):
    """Milestone details response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    title: str
    description: str
    amount: Decimal
    due_date: datetime
    sort_order: int
    status: MilestoneStatus
    auto_release_enabled: bool
    feedback: str | None = None
    submission_url: str | None = None
    submission_note: str | None = None
    pending_release: dict[str, Any] | None = None
    auto_released: bool = False
    dispute_reason: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    disputed_at: datetime | None = None


class MilestoneActionResponse(BaseModel):
    milestone: MilestoneResponse
    warnings: list[str] = Field(default_factory=list)


class MilestoneSubmit(BaseModel):
    """Deliverable for review."""

    submission_url: str = Field(..., min_length=1, max_length=2000)
    note: str | None = Field(default=None, max_length=5000)


class MilestoneApprove(BaseModel):
    feedback: str | None = Field(default=None, max_length=5000)
    tip_amount: Decimal | None = Field(default=None, ge=0)


class MilestoneDispute(BaseModel):
    reason: str = Field(..., min_length=1, max_length=5000)


class ApprovalResponse(BaseModel):
    """Result of releasing a milestone."""

    milestone: MilestoneResponse
    released_amount: Decimal
    earning_ids: list[str]
    job_status: str
    job_completed: bool
    warnings: list[str] = Field(default_factory=list)


def to_milestone_response(milestone: Milestone) -> MilestoneResponse:
    descriptor = milestone.pending_release
    return MilestoneResponse(
        id=milestone.id,
        job_id=milestone.job_id,
        title=milestone.title,
        description=milestone.description,
        amount=milestone.amount,
        due_date=milestone.due_date,
        sort_order=milestone.sort_order,
        status=milestone.status,
        auto_release_enabled=milestone.auto_release_enabled,
        feedback=milestone.feedback,
        submission_url=milestone.submission_url,
        submission_note=milestone.submission_note,
        pending_release=descriptor.to_dict() if descriptor else None,
        auto_released=milestone.auto_released,
        dispute_reason=milestone.dispute_reason,
        created_at=milestone.created_at,
        started_at=milestone.started_at,
        submitted_at=milestone.submitted_at,
        approved_at=milestone.approved_at,
        disputed_at=milestone.disputed_at,
    )


def to_approval_response(result: ApprovalResult) -> ApprovalResponse:
    return ApprovalResponse(
        milestone=to_milestone_response(result.milestone),
        released_amount=result.released_amount,
        earning_ids=[e.id for e in result.earnings],
        job_status=result.job.status,
        job_completed=result.job_completed,
        warnings=result.warnings,
    )


# =============================================================================
# Management
# =============================================================================


@router.post("", response_model=MilestoneResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def add_milestone(
    request: Request, job_id: str, milestone: MilestoneCreate, auth: CurrentUser, engine: Engine
):
    """Add a milestone (client only, job open or in progress)."""
    logger.info(f"POST /jobs/{job_id}/milestones | client={auth.user_id} | amount={milestone.amount}")
    created = engine.milestones.add_milestone(
        job_id,
        auth.user_id,
        title=milestone.title,
        amount=milestone.amount,
        due_date=milestone.due_date,
        description=milestone.description,
        sort_order=milestone.sort_order,
        auto_release_enabled=milestone.auto_release_enabled,
    )
    return to_milestone_response(created)


@router.get("", response_model=list[MilestoneResponse])
@limiter.limit("60/minute")
def list_milestones(request: Request, job_id: str, auth: CurrentUser, engine: Engine):
    logger.info(f"GET /jobs/{job_id}/milestones | user={auth.user_id}")
    return [to_milestone_response(m) for m in engine.milestones.list_milestones(job_id)]


@router.get("/{milestone_id}", response_model=MilestoneResponse)
@limiter.limit("60/minute")
def get_milestone(request: Request, job_id: str, milestone_id: str, auth: CurrentUser, engine: Engine):
    return to_milestone_response(engine.milestones.get_milestone(job_id, milestone_id))


@router.delete("/{milestone_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("30/minute")
def remove_milestone(
    request: Request, job_id: str, milestone_id: str, auth: CurrentUser, engine: Engine
):
    """Remove a milestone that has not been started."""
    logger.info(f"DELETE /jobs/{job_id}/milestones/{milestone_id} | client={auth.user_id}")
    engine.milestones.remove_milestone(job_id, milestone_id, auth.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Lifecycle
# =============================================================================


@router.post("/{milestone_id}/start", response_model=MilestoneActionResponse)
@limiter.limit("30/minute")
def start_milestone(
    request: Request, job_id: str, milestone_id: str, auth: CurrentUser, engine: Engine
):
    logger.info(f"POST /jobs/{job_id}/milestones/{milestone_id}/start | freelancer={auth.user_id}")
    result = engine.milestones.start_milestone(job_id, milestone_id, auth.user_id)
    return MilestoneActionResponse(
        milestone=to_milestone_response(result.value), warnings=result.warnings
    )


@router.post("/{milestone_id}/submit", response_model=MilestoneActionResponse)
@limiter.limit("30/minute")
def submit_milestone(
    request: Request,
    job_id: str,
    milestone_id: str,
    submission: MilestoneSubmit,
    auth: CurrentUser,
    engine: Engine,
):
    """Submit work for review. Starts the auto-release grace period."""
    logger.info(f"POST /jobs/{job_id}/milestones/{milestone_id}/submit | freelancer={auth.user_id}")
    result = engine.milestones.submit_milestone(
        job_id,
        milestone_id,
        auth.user_id,
        submission_url=submission.submission_url,
        note=submission.note,
    )
    return MilestoneActionResponse(
        milestone=to_milestone_response(result.value), warnings=result.warnings
    )


@router.post("/{milestone_id}/approve", response_model=ApprovalResponse)
@limiter.limit("20/minute")
def approve_milestone(
    request: Request,
    job_id: str,
    milestone_id: str,
    approval: MilestoneApprove,
    auth: CurrentUser,
    engine: Engine,
):
    """
    Approve a submitted milestone (client only).

    Releases the amount (plus any tip) into the freelancer's earnings and
    completes the job when this was the last open milestone. A second
    approval, or one racing the auto-release sweep, returns 409.
    """
    logger.info(f"POST /jobs/{job_id}/milestones/{milestone_id}/approve | client={auth.user_id}")
    result = engine.milestones.approve_milestone(
        job_id,
        milestone_id,
        auth.user_id,
        feedback=approval.feedback,
        tip_amount=approval.tip_amount,
    )
    return to_approval_response(result)


@router.post("/{milestone_id}/dispute", response_model=MilestoneActionResponse)
@limiter.limit("10/minute")
def dispute_milestone(
    request: Request,
    job_id: str,
    milestone_id: str,
    dispute: MilestoneDispute,
    auth: CurrentUser,
    engine: Engine,
):
    logger.info(f"POST /jobs/{job_id}/milestones/{milestone_id}/dispute | user={auth.user_id}")
    result = engine.milestones.dispute_milestone(
        job_id, milestone_id, auth.user_id, reason=dispute.reason
    )
    return MilestoneActionResponse(
        milestone=to_milestone_response(result.value), warnings=result.warnings
    )
