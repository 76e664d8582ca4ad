"""Auth routes for gigsettle.

Tokens are issued by the identity provider that fronts the marketplace;
this service only verifies them.
"""

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ..auth import CurrentUser
from ..logging_config import get_logger
from ..rate_limit import limiter

logger = get_logger("gigsettle.auth")
router = APIRouter(prefix="/auth", tags=["auth"])


class WhoAmIResponse(BaseModel):
    user_id: str
    is_admin: bool


@router.get("/me", response_model=WhoAmIResponse)
@limiter.limit("60/minute")
def get_me(request: Request, auth: CurrentUser):
    """Identity carried by the bearer token."""
    logger.debug(f"GET /auth/me | user={auth.user_id}")
    return WhoAmIResponse(user_id=auth.user_id, is_admin=auth.is_admin)
