"""Tests for settings validation."""

import pytest
from pydantic import ValidationError

from app.core.config import Settings


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestSettings:
    """Tests for Settings validators."""

    def test_defaults(self):
        settings = make_settings()
        assert settings.max_retries == 3
        assert settings.deadline_tier_days == [0, 1, 7, 30]
        assert settings.get_response_window_minutes("critical") == 60
        assert settings.get_response_window_minutes("unknown") == 1440

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValidationError, match="sum to 1.0"):
            make_settings(risk_weight_priority=0.5)

    def test_debug_rejected_in_production(self):
        with pytest.raises(ValidationError):
            make_settings(ENVIRONMENT="production", debug=True)

    def test_production_interval_bounded(self):
        with pytest.raises(ValidationError):
            make_settings(ENVIRONMENT="production", scheduler_interval_seconds=30)
        assert make_settings(ENVIRONMENT="production", scheduler_interval_seconds=120).is_production

    def test_json_mappings_from_environment(self, monkeypatch):
        monkeypatch.setenv("CHANNEL_GATEWAY_URLS", '{"email": "https://gateway.test/email"}')
        monkeypatch.setenv("DEADLINE_TIER_DAYS", "[30, 0, 7, 1]")
        settings = make_settings()
        assert settings.channel_gateway_urls == {"email": "https://gateway.test/email"}
        assert settings.deadline_tier_days == [0, 1, 7, 30]

    def test_unknown_gateway_channel_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(channel_gateway_urls={"fax": "https://gateway.test/fax"})

    def test_escalation_cap_bounded(self):
        with pytest.raises(ValidationError):
            make_settings(max_escalation_level=5)

    def test_comma_separated_roles(self):
        settings = make_settings(critical_risk_extra_roles="auditor, legal")
        assert settings.critical_risk_extra_roles == ["auditor", "legal"]
