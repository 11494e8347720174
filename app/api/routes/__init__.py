"""API routes module."""

from app.api.routes.dashboard import router as dashboard_router
from app.api.routes.notifications import router as notifications_router
from app.api.routes.risk import router as risk_router
from app.api.routes.scheduler import router as scheduler_router

__all__ = [
    "dashboard_router",
    "notifications_router",
    "risk_router",
    "scheduler_router",
]
