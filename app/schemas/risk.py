"""Risk assessment Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.enums import RiskLevel


class RiskFactor(BaseModel):
    """One contributing factor of a risk score."""

    name: str
    impact: float = Field(..., ge=0, le=100)
    probability: float = Field(..., ge=0, le=100)


class RiskAssessmentResponse(BaseModel):
    """Point-in-time risk evaluation of a deadline."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    deadline_id: str
    risk_score: float = Field(..., ge=0, le=100)
    risk_level: RiskLevel
    factors: list[RiskFactor] = Field(default_factory=list)
    computed_at: datetime
    superseded_by: str | None = None


class RiskRunResponse(BaseModel):
    """Result of an on-demand risk assessment."""

    assessment: RiskAssessmentResponse
    previous_level: RiskLevel | None = None
    notifications_composed: int = 0
