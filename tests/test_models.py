"""Tests for Pydantic models, enums, errors and settings."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from lead_dispatch.core.config import RoutingConfig, SchedulingParameters, Settings
from lead_dispatch.core.errors import DispatchError, NotFoundError, ValidationError
from lead_dispatch.core.models import (
    PRIORITY_WEIGHT,
    AgentStatus,
    Channel,
    DateRange,
    LeadSnapshot,
    LeadSource,
    Outcome,
    Priority,
    RoutingAction,
    RoutingDecision,
    TargetAgent,
)


class TestEnums:
    def test_lead_sources(self):
        assert {s.value for s in LeadSource} == {
            "gmail",
            "meta_ads",
            "website",
            "slack",
            "third_party",
            "referral",
            "other",
        }

    def test_channels(self):
        assert {c.value for c in Channel} == {"sms", "email", "whatsapp"}

    def test_priority_weights_order(self):
        assert PRIORITY_WEIGHT[Priority.HIGH] > PRIORITY_WEIGHT[Priority.MEDIUM] > PRIORITY_WEIGHT[Priority.LOW]

    def test_from_string(self):
        assert TargetAgent("outbound") == TargetAgent.OUTBOUND


class TestLeadSnapshot:
    def test_defaults(self):
        lead = LeadSnapshot(id="l1")
        assert lead.source == LeadSource.OTHER
        assert lead.urgency_level == 1
        assert lead.intent_signals == []
        assert lead.created_at.tzinfo is not None

    def test_frozen(self):
        lead = LeadSnapshot(id="l1")
        with pytest.raises(PydanticValidationError):
            lead.urgency_level = 5

    @pytest.mark.parametrize("field, value", [("urgency_level", 11), ("qualification_score", 1.5)])
    def test_bounds(self, field, value):
        with pytest.raises(PydanticValidationError):
            LeadSnapshot(id="l1", **{field: value})


class TestRoutingDecision:
    def test_action_key(self):
        decision = RoutingDecision(
            lead_id="l1",
            target_agent=TargetAgent.INBOUND,
            priority=Priority.HIGH,
            estimated_response_time=300,
        )
        action = RoutingAction(
            target_agent=TargetAgent.INBOUND, priority=Priority.HIGH, estimated_response_time=60
        )
        assert decision.action_key == action.action_key

    def test_satisfaction_range(self):
        with pytest.raises(PydanticValidationError):
            Outcome(conversion_successful=True, customer_satisfaction=6)


class TestDateRange:
    def test_contains_is_inclusive(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        period = DateRange(start=start, end=start + timedelta(days=1))
        assert period.contains(start)
        assert period.contains(start + timedelta(days=1))
        assert not period.contains(start - timedelta(seconds=1))

    def test_start_after_end(self):
        start = datetime(2024, 1, 2, tzinfo=timezone.utc)
        with pytest.raises(PydanticValidationError):
            DateRange(start=start, end=start - timedelta(hours=1))

    def test_naive_bounds_and_timestamps_are_utc(self):
        period = DateRange(start=datetime(2024, 1, 1), end=datetime(2024, 1, 2))
        assert period.start.tzinfo == timezone.utc
        assert period.contains(datetime(2024, 1, 1, 12))
        assert period.contains(datetime(2024, 1, 1, 12, tzinfo=timezone.utc))


class TestAgentStatus:
    def test_load_bounds(self):
        with pytest.raises(PydanticValidationError):
            AgentStatus(agent_id="inbound", agent_type="inbound", current_load=1.2)


class TestErrors:
    def test_not_found_message(self):
        err = NotFoundError("Appointment", "appt-1")
        assert str(err) == "Appointment not found: appt-1"
        assert err.entity_id == "appt-1"
        assert isinstance(err, DispatchError)
        assert isinstance(err, LookupError)

    def test_validation_error_is_value_error(self):
        assert issubclass(ValidationError, ValueError)
        assert issubclass(ValidationError, DispatchError)


class TestSettings:
    def test_unit_lists(self):
        settings = Settings(optimization_units=" inbound, ,outbound ", supervised_units="scheduler")
        assert settings.optimization_unit_ids == ["inbound", "outbound"]
        assert settings.supervised_unit_ids == ["scheduler"]

    def test_default_units(self):
        settings = Settings()
        assert "feedback-collector" in settings.optimization_unit_ids
        assert "dispatcher" in settings.supervised_unit_ids

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("SUPERVISED_UNITS", "inbound,analytics")
        monkeypatch.setenv("POLL_INTERVAL", "15")
        monkeypatch.setenv("URGENCY_THRESHOLD_HIGH", "9")
        settings = Settings()
        assert settings.supervised_unit_ids == ["inbound", "analytics"]
        assert settings.poll_interval == 15
        assert RoutingConfig.from_settings(settings).urgency_thresholds.high == 9

    def test_routing_config_defaults(self):
        config = RoutingConfig.from_settings(Settings())
        assert config.response_time_sla == 60
        assert (config.urgency_thresholds.high, config.urgency_thresholds.medium) == (8, 5)
        assert (config.intent_thresholds.high, config.intent_thresholds.medium) == (0.7, 0.4)
        assert config.source_quality_weights["website"] == 0.95

    def test_scheduling_parameters(self):
        params = SchedulingParameters.from_settings(Settings(step_delay_multiplier=2))
        assert params.delay_multiplier == 2
        assert params.reminder_offsets_hours == [24, 2]
