"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from lead_dispatch.analytics.base import AnalyticsProvider
from lead_dispatch.analytics.feedback import FeedbackAnalytics
from lead_dispatch.campaigns.scheduler import CampaignScheduler
from lead_dispatch.core.audit import AuditSink
from lead_dispatch.core.config import Settings
from lead_dispatch.core.errors import TransientDeliveryFailure
from lead_dispatch.core.models import (
    AgentPerformance,
    Channel,
    ContactInfo,
    LeadSnapshot,
    LeadSource,
    PerformanceMetrics,
)
from lead_dispatch.messaging.base import Message, MessagingChannel
from lead_dispatch.messaging.logging_messenger import LoggingMessenger
from lead_dispatch.routing.rule_engine import RuleEngine


class RecordingAuditSink(AuditSink):
    def __init__(self):
        self.interactions: list[tuple] = []
        self.status_changes: list[tuple] = []

    async def record_interaction(self, lead_id, kind, details=None):
        self.interactions.append((lead_id, kind, details))

    async def record_status_change(
        self, entity, entity_id, previous_status, new_status, reason=None
    ):
        self.status_changes.append((entity, entity_id, previous_status, new_status))


class FailingMessenger(MessagingChannel):
    """Every send fails, either by returning False or by raising."""

    channel_name = "failing"

    def __init__(self, raise_error: bool = False):
        self.raise_error = raise_error
        self.attempts = 0

    async def send(self, channel: Channel, destination: str, message: Message) -> bool:
        self.attempts += 1
        if self.raise_error:
            raise TransientDeliveryFailure("relay down")
        return False


class StaticAnalytics(AnalyticsProvider):
    """Returns the same metrics for every unit; swap ``metrics`` to simulate change."""

    def __init__(self, metrics: PerformanceMetrics | None = None):
        self.metrics = metrics or PerformanceMetrics()
        self.insights = []
        self.scripts = []
        self.trends = []
        self.script_calls = 0
        self.trend_calls = 0

    async def collect_performance_data(self, agent_id, period):
        return AgentPerformance(agent_id=agent_id, period=period, metrics=self.metrics.model_copy())

    async def generate_intelligence_report(self):
        return list(self.insights)

    async def analyze_script_performance(self):
        self.script_calls += 1
        return list(self.scripts)

    async def analyze_performance_trends(self, period):
        self.trend_calls += 1
        return list(self.trends)


@pytest.fixture
def settings():
    return Settings(
        simulated_io_delay_seconds=0,
        optimization_units="inbound,outbound",
        workflow_retry_delay=0,
    )


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def messenger(settings):
    return LoggingMessenger(settings)


@pytest.fixture
def rule_engine(settings):
    return RuleEngine(settings)


@pytest.fixture
def scheduler(settings, messenger, audit):
    return CampaignScheduler(settings, messenger, audit)


@pytest.fixture
def analytics(settings):
    return FeedbackAnalytics(settings)


@pytest.fixture
def make_lead():
    """Factory fixture for creating lead snapshots."""

    def _make(
        lead_id: str | None = "lead_1",
        source: LeadSource = LeadSource.OTHER,
        urgency: int = 1,
        signals: list[str] | None = None,
        qualification: float = 0.0,
        **kwargs,
    ) -> LeadSnapshot:
        return LeadSnapshot(
            id=lead_id,
            source=source,
            urgency_level=urgency,
            intent_signals=signals or [],
            qualification_score=qualification,
            contact_info=kwargs.pop(
                "contact_info",
                ContactInfo(name="Test Lead", email="lead@example.com", phone="+15550100"),
            ),
            created_at=kwargs.pop("created_at", datetime.now(timezone.utc)),
            **kwargs,
        )

    return _make
