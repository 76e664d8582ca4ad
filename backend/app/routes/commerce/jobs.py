"""Jobs routes for gigsettle.

Endpoints for job postings, bids, bid acceptance and escrow deposits.
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field

from gigsettle.commerce.jobs import AcceptanceResult

from ...auth import CurrentUser
from ...database import Engine
from ...logging_config import get_logger
from ...rate_limit import limiter

logger = get_logger("gigsettle.commerce.jobs")
router = APIRouter(prefix="/jobs", tags=["commerce", "jobs"])


# =============================================================================
# Request/Response Models
# =============================================================================

JobStatus = Literal["open", "in_progress", "completed", "cancelled"]
BidStatus = Literal["pending", "shortlisted", "accepted", "rejected", "withdrawn"]
TradeStatus = Literal["pending_deposit", "active", "completed", "cancelled"]


class JobCreate(BaseModel):
    """Request to post a job."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=10000)
    currency: str | None = Field(default=None, min_length=1, max_length=10)


class JobResponse(BaseModel):
    """Job details response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    freelancer_id: str | None = None
    title: str
    description: str
    currency: str
    status: JobStatus
    bid_count: int
    created_at: datetime
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobActionResponse(BaseModel):
    job: JobResponse
    warnings: list[str] = Field(default_factory=list)


class BidCreate(BaseModel):
    """Request to bid on a job."""

    amount: Decimal = Field(..., gt=0)
    delivery_days: int = Field(..., gt=0, le=3650)
    proposal: str = Field(default="", max_length=10000)


class BidResponse(BaseModel):
    """Bid details response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    freelancer_id: str
    amount: Decimal
    delivery_days: int
    proposal: str
    status: BidStatus
    created_at: datetime
    shortlisted_at: datetime | None = None
    accepted_at: datetime | None = None
    rejected_at: datetime | None = None
    withdrawn_at: datetime | None = None


class BidActionResponse(BaseModel):
    bid: BidResponse
    warnings: list[str] = Field(default_factory=list)


class BidListResponse(BaseModel):
    bids: list[BidResponse]
    total: int


class TradeResponse(BaseModel):
    """Escrow pointer for an accepted bid."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    bid_id: str
    buyer_id: str
    seller_id: str
    amount: Decimal
    currency: str
    chain_id: int
    escrow_id: int | None = None
    status: TradeStatus
    deposit_deadline: datetime
    created_at: datetime
    deposited_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None


class TradeActionResponse(BaseModel):
    trade: TradeResponse
    warnings: list[str] = Field(default_factory=list)


class AcceptBidResponse(BaseModel):
    """Result of accepting a bid."""

    job: JobResponse
    bid: BidResponse
    trade: TradeResponse
    rejected_bid_ids: list[str]
    warnings: list[str] = Field(default_factory=list)


class DepositRequest(BaseModel):
    """Escrow identifier assigned by the contract when the client deposited."""

    escrow_id: int = Field(..., ge=0)


class TransitionResponse(BaseModel):
    entity_type: str
    entity_id: str
    from_status: str | None = None
    to_status: str
    actor: str
    reason: str | None = None
    created_at: datetime


def to_acceptance_response(result: AcceptanceResult) -> AcceptBidResponse:
    return AcceptBidResponse(
        job=JobResponse.model_validate(result.job),
        bid=BidResponse.model_validate(result.bid),
        trade=TradeResponse.model_validate(result.trade),
        rejected_bid_ids=result.rejected_bid_ids,
        warnings=result.warnings,
    )


# =============================================================================
# Jobs
# =============================================================================


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_job(request: Request, job: JobCreate, auth: CurrentUser, engine: Engine):
    """
    Post a new job.

    The authenticated user becomes the client. Jobs start 'open'.
    """
    logger.info(f"POST /jobs | client={auth.user_id} | title={job.title[:50]}")
    created = engine.jobs.post_job(
        client_id=auth.user_id,
        title=job.title,
        description=job.description,
        currency=job.currency,
    )
    return JobResponse.model_validate(created)


@router.get("", response_model=JobListResponse)
@limiter.limit("60/minute")
def list_jobs(
    request: Request,
    auth: CurrentUser,
    engine: Engine,
    status_filter: JobStatus | None = Query(None, alias="status"),
    mine: Literal["client", "freelancer"] | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """List jobs, optionally only those the caller posted or works on."""
    logger.info(f"GET /jobs | user={auth.user_id} | status={status_filter} | mine={mine}")
    jobs = engine.jobs.list_jobs(
        status=status_filter,
        client_id=auth.user_id if mine == "client" else None,
        freelancer_id=auth.user_id if mine == "freelancer" else None,
        limit=limit,
        offset=offset,
    )
    return JobListResponse(
        jobs=[JobResponse.model_validate(j) for j in jobs],
        total=len(jobs),
        limit=limit,
        offset=offset,
    )


@router.get("/{job_id}", response_model=JobResponse)
@limiter.limit("60/minute")
def get_job(request: Request, job_id: str, auth: CurrentUser, engine: Engine):
    logger.info(f"GET /jobs/{job_id} | user={auth.user_id}")
    return JobResponse.model_validate(engine.jobs.get_job(job_id))


@router.post("/{job_id}/cancel", response_model=JobActionResponse)
@limiter.limit("10/minute")
def cancel_job(request: Request, job_id: str, auth: CurrentUser, engine: Engine):
    """Cancel an open job. Pending and shortlisted bids are rejected."""
    logger.info(f"POST /jobs/{job_id}/cancel | user={auth.user_id}")
    result = engine.jobs.cancel_job(job_id, auth.user_id)
    return JobActionResponse(job=JobResponse.model_validate(result.value), warnings=result.warnings)


@router.get("/{job_id}/history", response_model=list[TransitionResponse])
@limiter.limit("30/minute")
def get_job_history(request: Request, job_id: str, auth: CurrentUser, engine: Engine):
    """State transitions of the job. Parties only."""
    job = engine.jobs.get_job(job_id)
    if not job.is_party(auth.user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a party to this job")
    return [
        TransitionResponse(
            entity_type=t.entity_type,
            entity_id=t.entity_id,
            from_status=t.from_status,
            to_status=t.to_status,
            actor=str(t.actor),
            reason=t.reason,
            created_at=t.created_at,
        )
        for t in engine.jobs.get_transitions("job", job_id)
    ]


# =============================================================================
# Bids
# =============================================================================


@router.post("/{job_id}/bids", response_model=BidActionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def submit_bid(request: Request, job_id: str, bid: BidCreate, auth: CurrentUser, engine: Engine):
    """Bid on an open job. One bid per freelancer per job."""
    logger.info(f"POST /jobs/{job_id}/bids | freelancer={auth.user_id} | amount={bid.amount}")
    result = engine.jobs.submit_bid(
        job_id,
        auth.user_id,
        amount=bid.amount,
        delivery_days=bid.delivery_days,
        proposal=bid.proposal,
    )
    return BidActionResponse(bid=BidResponse.model_validate(result.value), warnings=result.warnings)


@router.get("/{job_id}/bids", response_model=BidListResponse)
@limiter.limit("30/minute")
def list_bids(
    request: Request,
    job_id: str,
    auth: CurrentUser,
    engine: Engine,
    status_filter: BidStatus | None = Query(None, alias="status"),
):
    """The client sees every bid; a freelancer sees only their own."""
    logger.info(f"GET /jobs/{job_id}/bids | user={auth.user_id}")
    job = engine.jobs.get_job(job_id)
    bids = engine.jobs.list_bids(job_id, statuses=[status_filter] if status_filter else None)
    if auth.user_id != job.client_id:
        bids = [b for b in bids if b.freelancer_id == auth.user_id]
    return BidListResponse(bids=[BidResponse.model_validate(b) for b in bids], total=len(bids))


@router.post("/{job_id}/bids/{bid_id}/accept", response_model=AcceptBidResponse)
@limiter.limit("10/minute")
def accept_bid(request: Request, job_id: str, bid_id: str, auth: CurrentUser, engine: Engine):
    """
    Accept a bid.

    Atomically moves the job to 'in_progress', accepts the bid, rejects every
    other pending or shortlisted bid and creates the trade awaiting deposit.
    A second acceptance on the same job returns 409.
    """
    logger.info(f"POST /jobs/{job_id}/bids/{bid_id}/accept | client={auth.user_id}")
    result = engine.jobs.accept_bid(job_id, bid_id, auth.user_id)
    logger.info(f"Bid accepted | job={job_id} | freelancer={result.bid.freelancer_id}")
    return to_acceptance_response(result)


@router.post("/{job_id}/bids/{bid_id}/shortlist", response_model=BidActionResponse)
@limiter.limit("30/minute")
def shortlist_bid(request: Request, job_id: str, bid_id: str, auth: CurrentUser, engine: Engine):
    logger.info(f"POST /jobs/{job_id}/bids/{bid_id}/shortlist | client={auth.user_id}")
    result = engine.jobs.shortlist_bid(job_id, bid_id, auth.user_id)
    return BidActionResponse(bid=BidResponse.model_validate(result.value), warnings=result.warnings)


@router.post("/{job_id}/bids/{bid_id}/reject", response_model=BidActionResponse)
@limiter.limit("30/minute")
def reject_bid(request: Request, job_id: str, bid_id: str, auth: CurrentUser, engine: Engine):
    logger.info(f"POST /jobs/{job_id}/bids/{bid_id}/reject | client={auth.user_id}")
    result = engine.jobs.reject_bid(job_id, bid_id, auth.user_id)
    return BidActionResponse(bid=BidResponse.model_validate(result.value), warnings=result.warnings)


@router.post("/{job_id}/bids/{bid_id}/withdraw", response_model=BidActionResponse)
@limiter.limit("30/minute")
def withdraw_bid(request: Request, job_id: str, bid_id: str, auth: CurrentUser, engine: Engine):
    logger.info(f"POST /jobs/{job_id}/bids/{bid_id}/withdraw | freelancer={auth.user_id}")
    result = engine.jobs.withdraw_bid(job_id, bid_id, auth.user_id)
    return BidActionResponse(bid=BidResponse.model_validate(result.value), warnings=result.warnings)


# =============================================================================
# Trade / escrow deposit
# =============================================================================


@router.get("/{job_id}/trade", response_model=TradeResponse)
@limiter.limit("60/minute")
def get_trade(request: Request, job_id: str, auth: CurrentUser, engine: Engine):
    trade = engine.jobs.get_trade(job_id)
    if auth.user_id not in (trade.buyer_id, trade.seller_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a party to this trade")
    return TradeResponse.model_validate(trade)


@router.post("/{job_id}/trade/deposit", response_model=TradeActionResponse)
@limiter.limit("10/minute")
def record_deposit(
    request: Request, job_id: str, deposit: DepositRequest, auth: CurrentUser, engine: Engine
):
    """Record the escrow id after the client funded the contract."""
    logger.info(f"POST /jobs/{job_id}/trade/deposit | client={auth.user_id} | escrow={deposit.escrow_id}")
    result = engine.jobs.record_deposit(job_id, auth.user_id, deposit.escrow_id)
    return TradeActionResponse(
        trade=TradeResponse.model_validate(result.value), warnings=result.warnings
    )
