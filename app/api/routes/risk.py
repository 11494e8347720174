"""Risk assessment API routes."""

from fastapi import APIRouter, Depends, Query

from app.core.engine import Engine, get_engine
from app.schemas.risk import RiskAssessmentResponse, RiskRunResponse

router = APIRouter(prefix="/api/v1/risk", tags=["risk"])


@router.post("/deadlines/{deadline_id}/assess", response_model=RiskRunResponse)
async def run_risk_assessment(deadline_id: str, engine: Engine = Depends(get_engine)):
    """Score a deadline now and compose any alerts the change warrants."""
    assessment, previous, composed = await engine.orchestrator.assess_deadline(deadline_id)
    return RiskRunResponse(
        assessment=RiskAssessmentResponse.model_validate(assessment),
        previous_level=previous.risk_level if previous else None,
        notifications_composed=composed,
    )


@router.get("/deadlines/{deadline_id}/current", response_model=RiskAssessmentResponse | None)
async def get_current_assessment(deadline_id: str, engine: Engine = Depends(get_engine)):
    """Current (not superseded) assessment of a deadline."""
    return engine.risk.get_current_assessment(deadline_id)


@router.get("/deadlines/{deadline_id}/history", response_model=list[RiskAssessmentResponse])
async def get_risk_history(
    deadline_id: str,
    limit: int | None = Query(default=None, ge=1, le=500),
    engine: Engine = Depends(get_engine),
):
    """Assessment history of a deadline, oldest first."""
    return engine.risk.get_history(deadline_id, limit)


@router.get("/assessments/{assessment_id}", response_model=RiskAssessmentResponse)
async def get_assessment(assessment_id: str, engine: Engine = Depends(get_engine)):
    return engine.risk.get_assessment(assessment_id)
