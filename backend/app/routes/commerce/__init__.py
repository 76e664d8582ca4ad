"""Settlement API routes for gigsettle."""

from .jobs import router as jobs_router
from .ledger import router as ledger_router
from .maintenance import router as maintenance_router
from .milestones import router as milestones_router

__all__ = ["jobs_router", "milestones_router", "ledger_router", "maintenance_router"]
