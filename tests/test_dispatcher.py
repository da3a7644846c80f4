"""Tests for the lead dispatcher, system wiring and worker."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from lead_dispatch.core.config import Settings
from lead_dispatch.core.errors import ValidationError
from lead_dispatch.core.models import (
    LeadSource,
    Outcome,
    PerformanceFeedback,
    StepType,
    TargetAgent,
    UnitStatus,
)
from lead_dispatch.dispatcher import LeadDispatcher
from lead_dispatch.system import DispatchSystem
from lead_dispatch.worker import DispatchWorker
from lead_dispatch.workflows import WorkflowExecutor

from conftest import RecordingAuditSink


def _engine(settings: Settings, handler) -> WorkflowExecutor:
    configured = settings.model_copy(update={"workflow_base_url": "http://engine.test"})
    return WorkflowExecutor(configured, transport=httpx.MockTransport(handler))


@pytest.fixture
def dispatcher(rule_engine, scheduler, analytics, settings, audit):
    return LeadDispatcher(rule_engine, scheduler, analytics, settings=settings, audit=audit)


def _hot_lead(make_lead, lead_id="lead_1"):
    return make_lead(
        lead_id,
        source=LeadSource.WEBSITE,
        urgency=9,
        signals=["budget", "timeline", "decision_maker"],
        qualification=0.8,
    )


class TestDispatch:
    async def test_handoff_skipped_without_engine(self, dispatcher, make_lead, audit):
        result = await dispatcher.dispatch(_hot_lead(make_lead))

        assert result.handoff_status == "skipped"
        assert result.workflow_id is None
        assert result.campaign_id is None
        assert audit.interactions[-1][:2] == ("lead_1", "dispatched")

    async def test_handoff_completed(self, rule_engine, scheduler, analytics, settings, make_lead):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "exec-1", "finished": True})

        dispatcher = LeadDispatcher(
            rule_engine, scheduler, analytics, executor=_engine(settings, handler), settings=settings
        )
        result = await dispatcher.dispatch(_hot_lead(make_lead))
        await dispatcher.close()

        assert result.handoff_status == "completed"
        assert result.execution_id == "exec-1"
        expected = (
            settings.inbound_workflow_id
            if result.decision.target_agent == TargetAgent.INBOUND
            else settings.outbound_workflow_id
        )
        assert result.workflow_id == expected
        assert seen[0].url.path == f"/workflows/{expected}/execute"

        event = json.loads(seen[0].content)["data"]
        assert event["eventType"] == "lead.routed"
        assert event["correlationId"] == "lead_1"
        assert event["data"]["lead"]["id"] == "lead_1"
        assert event["data"]["decision"]["target_agent"] == result.decision.target_agent.value

    async def test_handoff_failure_does_not_block_campaign(
        self, rule_engine, scheduler, analytics, settings, make_lead
    ):
        campaign = scheduler.create_campaign(
            "Welcome", "follow_up", steps=[{"order": 1, "type": "email", "content": "Hi"}]
        )
        dispatcher = LeadDispatcher(
            rule_engine,
            scheduler,
            analytics,
            executor=_engine(settings, lambda r: httpx.Response(400)),
            settings=settings,
        )

        result = await dispatcher.dispatch(_hot_lead(make_lead))

        assert result.handoff_status == "failed"
        assert result.campaign_id == campaign.id
        assert result.first_step_succeeded is True

    async def test_first_campaign_step_uses_lead_contact(self, dispatcher, scheduler, messenger, make_lead):
        campaign = scheduler.create_campaign(
            "Welcome",
            "follow_up",
            target_audience={"sources": ["website"]},
            steps=[
                {"order": 1, "type": StepType.EMAIL, "content": "Welcome aboard"},
                {"order": 2, "type": StepType.CALLBACK, "delay_hours": 24},
            ],
        )

        result = await dispatcher.dispatch(_hot_lead(make_lead))

        assert result.first_step_id == campaign.steps[0].id
        assert messenger.sent[0][1] == "lead@example.com"
        progress = scheduler.get_campaign_progress(campaign.id, "lead_1")
        assert progress.completed_step_ids == [campaign.steps[0].id]

    async def test_non_matching_campaign_ignored(self, dispatcher, scheduler, make_lead):
        scheduler.create_campaign(
            "Referrals only",
            "follow_up",
            target_audience={"sources": ["referral"]},
            steps=[{"order": 1, "type": "message"}],
        )
        result = await dispatcher.dispatch(_hot_lead(make_lead))
        assert result.campaign_id is None

    async def test_missing_lead_id_rejected(self, dispatcher, make_lead, audit):
        with pytest.raises(ValidationError):
            await dispatcher.dispatch(make_lead(None))
        assert audit.interactions == []


class TestRecordOutcome:
    async def test_feeds_rule_engine_and_analytics(self, dispatcher, rule_engine, analytics, make_lead):
        result = await dispatcher.dispatch(_hot_lead(make_lead))
        feedback = PerformanceFeedback(
            lead_id=result.lead_id,
            decision=result.decision,
            outcome=Outcome(conversion_successful=True, response_time_seconds=20),
        )

        await dispatcher.record_outcome(feedback, script_id="s1", lead_source="website")

        assert len(rule_engine.get_lead_feedback("lead_1")) == 1
        [record] = analytics.records_since(datetime.now(timezone.utc) - timedelta(minutes=1))
        assert record.agent_id == result.decision.target_agent.value
        assert record.response_time_ms == 20000
        assert record.script_id == "s1"


# ---------------------------------------------------------------------------
# System wiring and worker
# ---------------------------------------------------------------------------


@pytest.fixture
def system(settings):
    return DispatchSystem(settings, audit=RecordingAuditSink())


class TestDispatchSystem:
    def test_uses_logging_messenger_without_relay(self, system):
        assert system.messenger.channel_name == "logging"

    def test_uses_webhook_with_relay(self, settings):
        relay = settings.model_copy(update={"messaging_relay_url": "http://relay.test"})
        assert DispatchSystem(relay).messenger.channel_name == "webhook"

    async def test_scheduler_pause_override_reaches_scheduler(self, system):
        system.overseer.issue_system_override(
            "pause_agent", "maintenance", "ops", target_agent="scheduler"
        )
        assert system.scheduler.paused is True

        system.overseer.issue_system_override("resume_agent", "done", "ops", target_agent="scheduler")
        assert system.scheduler.paused is False

    async def test_poll_once(self, system):
        await system.scheduler.schedule_callback(
            "lead_1", datetime.now(timezone.utc) - timedelta(seconds=1)
        )
        await system.scheduler.book_appointment(
            "lead_2", "consultation", datetime.now(timezone.utc) + timedelta(hours=1)
        )

        counts = await system.poll_once()

        assert counts["callbacks"]["completed"] == 1
        assert counts["reminders"]["sent"] == 2

    async def test_refresh_unit_performance(self, system, make_lead):
        result = await system.dispatcher.dispatch(_hot_lead(make_lead))
        await system.dispatcher.record_outcome(
            PerformanceFeedback(
                lead_id=result.lead_id,
                decision=result.decision,
                outcome=Outcome(conversion_successful=True, response_time_seconds=10),
            )
        )

        await system.refresh_unit_performance()

        unit = system.overseer.get_agent_status(result.decision.target_agent.value)
        assert unit.performance.total_interactions == 1
        assert unit.performance.conversion_rate == 1.0

    async def test_close_stops_optimizer(self, system):
        await system.optimizer.start()
        await system.close()
        assert system.optimizer.running is False


class TestWorker:
    async def test_stop_is_idempotent(self, settings, system):
        worker = DispatchWorker(settings, system)
        await worker.stop()
        await worker.stop()
        assert system.optimizer.running is False

    def test_default_system_built_from_settings(self, settings):
        worker = DispatchWorker(settings)
        assert worker.system.settings is settings
        assert worker.system.overseer.get_agent_status("scheduler").status == UnitStatus.ACTIVE
