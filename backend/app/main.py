"""gigsettle Backend API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from gigsettle import __version__

from .config import get_settings
from .database import get_engine
from .errors import register_error_handlers
from .logging_config import configure_logging, get_logger
from .rate_limit import limiter
from .routes import auth_router, jobs_router, ledger_router, maintenance_router, milestones_router

logger = get_logger("gigsettle.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_settings()
    configure_logging(settings.debug)
    logger.info(f"Starting gigsettle API (debug={settings.debug})")
    yield
    # Shutdown
    logger.info("Shutting down gigsettle API")


app = FastAPI(
    title="gigsettle API",
    description="Job, bid and milestone settlement for a freelance marketplace",
    version=__version__,
    lifespan=lifespan,
)

settings = get_settings()

# Rate limiting
limiter.enabled = settings.rate_limit_enabled
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Settlement errors -> HTTP status codes
register_error_handlers(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth_router)
app.include_router(jobs_router)
app.include_router(milestones_router)
app.include_router(ledger_router)
app.include_router(maintenance_router)


@app.get("/")
def root():
    """Health check endpoint."""
    return {
        "service": "gigsettle",
        "version": __version__,
        "status": "ok",
    }


@app.get("/health")
def health():
    """Detailed health check with actual database verification."""
    db_status = "disconnected"
    try:
        engine = get_engine()
        engine.reconciler.status()
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:50]}"

    overall_status = "healthy" if db_status == "connected" else "degraded"

    return {
        "status": overall_status,
        "database": db_status,
    }
