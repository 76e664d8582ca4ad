"""Earnings and withdrawal routes for gigsettle.

Freelancers read their earnings and balance and request withdrawals.
Admins move withdrawals through processing to completion or rejection.
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field

from gigsettle.commerce.errors import WithdrawalNotFoundError
from gigsettle.commerce.ledger import BalanceSummary

from ...auth import AdminUser, CurrentUser
from ...database import Engine
from ...logging_config import get_logger
from ...rate_limit import limiter

logger = get_logger("gigsettle.commerce.ledger")
router = APIRouter(tags=["commerce", "ledger"])


# =============================================================================
# Request/Response Models
# =============================================================================

EarningStatus = Literal["pending", "completed", "withdrawn"]
EarningType = Literal["milestone", "tip"]
WithdrawalStatus = Literal["pending", "processing", "completed", "rejected"]
WithdrawalMethod = Literal["crypto", "bank", "paypal"]


class EarningResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    freelancer_id: str
    amount: Decimal
    type: EarningType
    status: EarningStatus
    job_id: str | None = None
    milestone_id: str | None = None
    description: str | None = None
    created_at: datetime
    withdrawn_at: datetime | None = None


class BalanceResponse(BaseModel):
    """Derived balance for the authenticated freelancer."""

    freelancer_id: str
    available: Decimal
    total_released: Decimal
    total_tips: Decimal
    pending_earnings: Decimal
    pending_withdrawals: Decimal
    processing_withdrawals: Decimal
    withdrawn: Decimal
    fees_paid: Decimal
    earning_count: int
    withdrawal_count: int


class WithdrawalCreate(BaseModel):
    """Request to withdraw from the available balance."""

    amount: Decimal = Field(..., gt=0)
    method: WithdrawalMethod
    destination: str = Field(..., min_length=1, max_length=500)
    notes: str | None = Field(default=None, max_length=2000)


class WithdrawalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    freelancer_id: str
    amount: Decimal
    fee: Decimal
    net_amount: Decimal
    method: WithdrawalMethod
    destination: str
    status: WithdrawalStatus
    notes: str | None = None
    transaction_ref: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    processed_at: datetime | None = None


class WithdrawalActionResponse(BaseModel):
    withdrawal: WithdrawalResponse
    warnings: list[str] = Field(default_factory=list)


class WithdrawalComplete(BaseModel):
    transaction_ref: str | None = Field(default=None, max_length=200)


class WithdrawalReject(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


def to_balance_response(summary: BalanceSummary) -> BalanceResponse:
    return BalanceResponse(
        freelancer_id=summary.freelancer_id,
        available=summary.available,
        total_released=summary.total_released,
        total_tips=summary.total_tips,
        pending_earnings=summary.pending_earnings,
        pending_withdrawals=summary.pending_withdrawals,
        processing_withdrawals=summary.processing_withdrawals,
        withdrawn=summary.withdrawn,
        fees_paid=summary.fees_paid,
        earning_count=summary.earning_count,
        withdrawal_count=summary.withdrawal_count,
    )


# =============================================================================
# Earnings
# =============================================================================


@router.get("/earnings", response_model=list[EarningResponse])
@limiter.limit("60/minute")
def list_earnings(
    request: Request,
    auth: CurrentUser,
    engine: Engine,
    status_filter: EarningStatus | None = Query(None, alias="status"),
    type_filter: EarningType | None = Query(None, alias="type"),
):
    logger.info(f"GET /earnings | freelancer={auth.user_id}")
    earnings = engine.ledger.list_earnings(auth.user_id, status=status_filter, type=type_filter)
    return [EarningResponse.model_validate(e) for e in earnings]


@router.get("/earnings/balance", response_model=BalanceResponse)
@limiter.limit("60/minute")
def get_balance(request: Request, auth: CurrentUser, engine: Engine):
    """Released earnings minus pending, processing and completed withdrawals."""
    logger.info(f"GET /earnings/balance | freelancer={auth.user_id}")
    return to_balance_response(engine.ledger.get_balance_summary(auth.user_id))


# =============================================================================
# Withdrawals
# =============================================================================


@router.post(
    "/withdrawals", response_model=WithdrawalActionResponse, status_code=status.HTTP_201_CREATED
)
@limiter.limit("5/minute")
def request_withdrawal(
    request: Request, withdrawal: WithdrawalCreate, auth: CurrentUser, engine: Engine
):
    """
    Request a withdrawal.

    The amount is reserved against the available balance immediately; a
    request larger than the balance returns 400 with the available amount.
    """
    logger.info(
        f"POST /withdrawals | freelancer={auth.user_id} | amount={withdrawal.amount} "
        f"| method={withdrawal.method}"
    )
    result = engine.ledger.request_withdrawal(
        auth.user_id,
        amount=withdrawal.amount,
        method=withdrawal.method,
        destination=withdrawal.destination,
        notes=withdrawal.notes,
    )
    return WithdrawalActionResponse(
        withdrawal=WithdrawalResponse.model_validate(result.value), warnings=result.warnings
    )


@router.get("/withdrawals", response_model=list[WithdrawalResponse])
@limiter.limit("60/minute")
def list_withdrawals(
    request: Request,
    auth: CurrentUser,
    engine: Engine,
    status_filter: WithdrawalStatus | None = Query(None, alias="status"),
):
    withdrawals = engine.ledger.list_withdrawals(freelancer_id=auth.user_id, status=status_filter)
    return [WithdrawalResponse.model_validate(w) for w in withdrawals]


@router.get("/withdrawals/{withdrawal_id}", response_model=WithdrawalResponse)
@limiter.limit("60/minute")
def get_withdrawal(request: Request, withdrawal_id: str, auth: CurrentUser, engine: Engine):
    withdrawal = engine.ledger.get_withdrawal(withdrawal_id)
    if withdrawal.freelancer_id != auth.user_id and not auth.is_admin:
        # Hide other freelancers' withdrawals entirely
        raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
    return WithdrawalResponse.model_validate(withdrawal)


# =============================================================================
# Admin processing
# =============================================================================


@router.get("/admin/withdrawals", response_model=list[WithdrawalResponse])
@limiter.limit("30/minute")
def admin_list_withdrawals(
    request: Request,
    admin: AdminUser,
    engine: Engine,
    status_filter: WithdrawalStatus | None = Query(None, alias="status"),
    method: WithdrawalMethod | None = Query(None),
    freelancer_id: str | None = Query(None),
):
    logger.info(f"ADMIN: list withdrawals | admin={admin.user_id} | status={status_filter}")
    withdrawals = engine.ledger.list_withdrawals(
        freelancer_id=freelancer_id, status=status_filter, method=method
    )
    return [WithdrawalResponse.model_validate(w) for w in withdrawals]


@router.post("/admin/withdrawals/{withdrawal_id}/process", response_model=WithdrawalActionResponse)
@limiter.limit("30/minute")
def process_withdrawal(request: Request, withdrawal_id: str, admin: AdminUser, engine: Engine):
    logger.info(f"ADMIN: process withdrawal {withdrawal_id} | admin={admin.user_id}")
    result = engine.ledger.mark_processing(withdrawal_id, admin.user_id)
    return WithdrawalActionResponse(
        withdrawal=WithdrawalResponse.model_validate(result.value), warnings=result.warnings
    )


@router.post("/admin/withdrawals/{withdrawal_id}/complete", response_model=WithdrawalActionResponse)
@limiter.limit("30/minute")
def complete_withdrawal(
    request: Request,
    withdrawal_id: str,
    body: WithdrawalComplete,
    admin: AdminUser,
    engine: Engine,
):
    """Mark a processing withdrawal paid out."""
    logger.info(f"ADMIN: complete withdrawal {withdrawal_id} | admin={admin.user_id}")
    result = engine.ledger.complete_withdrawal(
        withdrawal_id, admin.user_id, transaction_ref=body.transaction_ref
    )
    return WithdrawalActionResponse(
        withdrawal=WithdrawalResponse.model_validate(result.value), warnings=result.warnings
    )


@router.post("/admin/withdrawals/{withdrawal_id}/reject", response_model=WithdrawalActionResponse)
@limiter.limit("30/minute")
def reject_withdrawal(
    request: Request,
    withdrawal_id: str,
    body: WithdrawalReject,
    admin: AdminUser,
    engine: Engine,
):
    """Reject a withdrawal. The amount returns to the available balance."""
    logger.info(f"ADMIN: reject withdrawal {withdrawal_id} | admin={admin.user_id}")
    result = engine.ledger.reject_withdrawal(withdrawal_id, admin.user_id, reason=body.reason)
    return WithdrawalActionResponse(
        withdrawal=WithdrawalResponse.model_validate(result.value), warnings=result.warnings
    )
