"""Core configuration settings.

Centralized configuration using Pydantic Settings for environment
variable management with sensible defaults. Every engine component
receives its Settings instance at construction time.
"""

import json
import logging
import os
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

ALL_CHANNELS = ("email", "sms", "whatsapp", "phone", "push", "in_app")


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Safety features:
    - Debug mode validation (cannot be True in production)
    - Risk weights must sum to 1.0
    - Scheduler interval bounded in production
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Environment Detection
    # =========================================================================

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        alias="ENVIRONMENT",
    )

    # Application
    app_name: str = "Compliance Deadline Risk Engine"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "sqlite:///./data/deadlines.db"
    slow_query_threshold_ms: float = Field(default=500.0, alias="SLOW_QUERY_THRESHOLD_MS")
    enable_query_logging: bool = Field(default=False, alias="ENABLE_QUERY_LOGGING")

    # =========================================================================
    # Scheduler
    # =========================================================================

    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = 120
    risk_staleness_minutes: int = 60
    # Days-remaining boundaries; crossing one forces a re-score
    deadline_tier_days: list[int] = Field(default_factory=lambda: [0, 1, 7, 30])
    data_unavailable_alert_threshold: int = 3

    # =========================================================================
    # Risk Scoring
    # =========================================================================

    risk_weight_time_pressure: float = 0.35
    risk_weight_completion_gap: float = 0.45
    risk_weight_priority: float = 0.20
    risk_pressure_half_life_days: float = 10.0
    risk_trend_window: int = 3
    risk_trend_factor: float = 0.25
    risk_trend_cap: float = 10.0

    # =========================================================================
    # Delivery
    # =========================================================================

    max_retries: int = 3
    retry_base_seconds: float = 60.0
    retry_max_seconds: float = 3600.0
    retry_jitter_seconds: float = 0.0
    provider_timeout_seconds: float = 10.0
    max_concurrent_dispatches: int = 20
    channel_concurrency_limits: dict[str, int] = Field(
        default_factory=lambda: {
            "email": 5,
            "sms": 2,
            "whatsapp": 2,
            "phone": 2,
            "push": 5,
            "in_app": 5,
        }
    )
    channel_gateway_urls: dict[str, str] = Field(default_factory=dict)
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 60.0

    # =========================================================================
    # Escalation
    # =========================================================================

    response_window_minutes: dict[str, int] = Field(
        default_factory=lambda: {
            "critical": 60,
            "urgent": 120,
            "high": 240,
            "medium": 1440,
            "low": 1440,
        }
    )
    escalation_role_ref: str = "compliance_officer"
    escalation_department_ref: str = "compliance"
    max_escalation_level: int = 3

    # =========================================================================
    # Composer
    # =========================================================================

    critical_risk_extra_roles: list[str] = Field(default_factory=list)
    reminder_window_days: int = 7

    # Recipient directory (external collaborator)
    recipient_directory_url: str | None = None
    recipient_directory_file: str | None = None

    # Observability / alerting sink
    observability_enabled: bool = True
    teams_webhook_url: str | None = None

    # CORS
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("environment", mode="before")
    @classmethod
    def detect_environment(cls, v: str | None) -> str:
        """Auto-detect environment from common environment variables."""
        if v:
            return v.lower()

        if os.getenv("PRODUCTION") or os.getenv("PROD"):
            return "production"
        if os.getenv("STAGING"):
            return "staging"

        return "development"

    @field_validator("cors_origins", "critical_risk_extra_roles", mode="before")
    @classmethod
    def parse_comma_separated(cls, v: str | list[str]) -> list[str]:
        """Parse list settings from a comma-separated string or list."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("deadline_tier_days", mode="before")
    @classmethod
    def parse_tier_days(cls, v: str | list[int]) -> list[int]:
        """Parse and sort tier boundaries."""
        if isinstance(v, str):
            v = [int(item) for item in v.split(",") if item.strip()]
        return sorted(v)

    @field_validator(
        "channel_concurrency_limits",
        "channel_gateway_urls",
        "response_window_minutes",
        mode="before",
    )
    @classmethod
    def parse_json_mapping(cls, v: str | dict) -> dict:
        """Accept JSON-encoded mappings from the environment."""
        if isinstance(v, str):
            return json.loads(v)
        return v

    @field_validator("channel_gateway_urls")
    @classmethod
    def validate_gateway_channels(cls, v: dict[str, str]) -> dict[str, str]:
        """Reject gateway URLs for unknown channels."""
        unknown = set(v) - set(ALL_CHANNELS)
        if unknown:
            raise ValueError(f"Unknown channels in gateway URLs: {sorted(unknown)}")
        return v

    @field_validator("max_escalation_level")
    @classmethod
    def validate_escalation_cap(cls, v: int) -> int:
        """Escalation level is bounded at 3."""
        if not 1 <= v <= 3:
            raise ValueError("max_escalation_level must be between 1 and 3")
        return v

    @model_validator(mode="after")
    def validate_debug_mode(self):
        """Prevent debug mode in production."""
        if self.environment == "production" and self.debug:
            logger.error(
                "CRITICAL CONFIGURATION ERROR: DEBUG mode cannot be enabled in production! "
                "Set DEBUG=false or ENVIRONMENT=development"
            )
            raise ValueError("DEBUG cannot be True in production environment")
        return self

    @model_validator(mode="after")
    def validate_risk_weights(self):
        """Risk factor weights must form a convex combination."""
        total = (
            self.risk_weight_time_pressure
            + self.risk_weight_completion_gap
            + self.risk_weight_priority
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Risk weights must sum to 1.0 (got {total:.3f})")
        return self

    @model_validator(mode="after")
    def validate_scheduler_interval(self):
        """Keep the tick interval sane."""
        if self.scheduler_interval_seconds <= 0:
            raise ValueError("scheduler_interval_seconds must be positive")
        if self.is_production and not 60 <= self.scheduler_interval_seconds <= 300:
            raise ValueError("scheduler_interval_seconds must be 60-300 in production")
        return self

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    def get_channel_limit(self, channel: str) -> int:
        """Get the concurrency limit for a channel."""
        return self.channel_concurrency_limits.get(channel, 5)

    def get_response_window_minutes(self, priority: str) -> int:
        """Get the acknowledgment window for a priority level."""
        return self.response_window_minutes.get(priority, 1440)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
