"""API routes."""

from .auth import router as auth_router
from .commerce import jobs_router, ledger_router, maintenance_router, milestones_router

__all__ = [
    "auth_router",
    "jobs_router",
    "milestones_router",
    "ledger_router",
    "maintenance_router",
]
