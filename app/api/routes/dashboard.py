"""Dashboard API routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.services.dashboard_service import DashboardService
from app.core.database import get_db
from app.schemas.dashboard import NotificationSummary

router = APIRouter(prefix="/api/v1/dashboard", tags=["dashboard"])


@router.get("/summary", response_model=NotificationSummary)
async def get_summary(db: Session = Depends(get_db)):
    """Notification and risk counts."""
    return DashboardService(db).get_summary()
