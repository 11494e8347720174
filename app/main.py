"""Compliance Deadline Risk Engine - Main Application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.api.routes import (
    dashboard_router,
    notifications_router,
    risk_router,
    scheduler_router,
)
from app.core.config import get_settings
from app.core.database import SessionLocal, get_db_stats, init_db
from app.core.engine import build_engine
from app.core.exceptions import (
    DataUnavailable,
    DeadlineEngineError,
    EscalationExhausted,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.core.scheduler import get_scheduler, init_scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()
logging.getLogger().setLevel(settings.log_level.upper())

ERROR_STATUS_CODES: dict[type[DeadlineEngineError], int] = {
    ValidationError: 422,
    NotFoundError: 404,
    InvalidTransitionError: 409,
    EscalationExhausted: 409,
    DataUnavailable: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting Compliance Deadline Risk Engine...")

    # Initialize database
    init_db()
    logger.info("Database initialized")

    # Tests install their own engine before startup
    if getattr(app.state, "engine", None) is None:
        app.state.engine = build_engine(settings)

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = init_scheduler(app.state.engine.orchestrator)
        scheduler.start()
        logger.info("Background scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if scheduler:
        scheduler.shutdown()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Scores compliance deadline risk and drives multi-channel alert "
                "notifications with retry and escalation.",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(risk_router)
app.include_router(notifications_router)
app.include_router(dashboard_router)
app.include_router(scheduler_router)


@app.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


@app.get("/health/detailed")
async def detailed_health_check(request: Request):
    """Detailed health check with component status."""
    components = {
        "database": "unknown",
        "scheduler": "unknown",
        "channels": [],
    }
    database_stats = {}

    # Check database
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        database_stats = get_db_stats(db)
        db.close()
        components["database"] = "healthy"
    except Exception as e:
        components["database"] = f"unhealthy: {str(e)}"

    # Check scheduler
    scheduler = get_scheduler()
    if scheduler and scheduler.running:
        components["scheduler"] = "running"
    else:
        components["scheduler"] = "not_running"

    engine = getattr(request.app.state, "engine", None)
    recent_events = []
    if engine is not None:
        components["channels"] = engine.registry.configured_channels()
        components["circuit_breakers"] = engine.breakers.states()
        recent_events = [event.to_dict() for event in engine.recorder.events[-10:]]

    return {
        "status": "healthy" if components["database"] == "healthy" else "degraded",
        "version": settings.app_version,
        "components": components,
        "database_stats": database_stats,
        "recent_events": recent_events,
    }


@app.exception_handler(DeadlineEngineError)
async def engine_exception_handler(request: Request, exc: DeadlineEngineError):
    """Map engine errors to HTTP responses."""
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
        500,
    )
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
