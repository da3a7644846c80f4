"""Wires every dispatch component from one ``Settings`` instance."""

from __future__ import annotations

import logging
from datetime import timedelta

from lead_dispatch.analytics.feedback import FeedbackAnalytics
from lead_dispatch.campaigns.scheduler import CampaignScheduler
from lead_dispatch.core.audit import AuditSink, LoggingAuditSink
from lead_dispatch.core.config import Settings
from lead_dispatch.core.models import DateRange, utcnow
from lead_dispatch.dispatcher import LeadDispatcher
from lead_dispatch.messaging.base import MessagingChannel
from lead_dispatch.messaging.logging_messenger import LoggingMessenger
from lead_dispatch.messaging.webhook import WebhookMessenger
from lead_dispatch.optimization.loop import Optimizer
from lead_dispatch.routing.rule_engine import RuleEngine
from lead_dispatch.supervision.overseer import SupervisorOverseer
from lead_dispatch.workflows.executor import WorkflowExecutor

logger = logging.getLogger(__name__)


class DispatchSystem:
    """Owns one instance of each component and the links between them."""

    def __init__(
        self,
        settings: Settings | None = None,
        messenger: MessagingChannel | None = None,
        executor: WorkflowExecutor | None = None,
        audit: AuditSink | None = None,
    ):
        self.settings = settings or Settings()
        self.audit = audit or LoggingAuditSink()

        if messenger is None:
            if self.settings.messaging_relay_url:
                messenger = WebhookMessenger(self.settings)
            else:
                messenger = LoggingMessenger(self.settings)
        self.messenger = messenger

        self.rule_engine = RuleEngine(self.settings)
        self.scheduler = CampaignScheduler(self.settings, self.messenger, self.audit)
        self.analytics = FeedbackAnalytics(self.settings)
        self.optimizer = Optimizer(self.rule_engine, self.scheduler, self.analytics, self.settings)
        self.overseer = SupervisorOverseer(self.settings, self.rule_engine, self.scheduler)
        self.dispatcher = LeadDispatcher(
            self.rule_engine,
            self.scheduler,
            self.analytics,
            executor or WorkflowExecutor(self.settings),
            self.settings,
            self.audit,
        )

        if "scheduler" in self.settings.supervised_unit_ids:
            self.overseer.register_override_hook(
                "scheduler", self.scheduler.pause, self.scheduler.resume
            )

    async def poll_once(self) -> dict[str, dict[str, int]]:
        """Fire due callbacks and reminders, then refresh unit performance."""
        callbacks = await self.scheduler.process_pending_callbacks()
        reminders = await self.scheduler.process_pending_reminders()
        await self.refresh_unit_performance()
        return {"callbacks": callbacks, "reminders": reminders}

    async def refresh_unit_performance(self) -> None:
        now = utcnow()
        period = DateRange(start=now - timedelta(days=self.settings.optimization_lookback_days), end=now)
        for status in self.overseer.get_agent_statuses():
            if status.agent_id == self.scheduler.agent_id:
                perf = self.scheduler.get_agent_performance(period)
            else:
                perf = await self.analytics.collect_performance_data(status.agent_id, period)
            self.overseer.record_unit_performance(status.agent_id, perf.metrics)

    async def close(self) -> None:
        await self.optimizer.stop()
        await self.dispatcher.close()
        await self.messenger.close()
        logger.info("Dispatch system closed")
