"""End-to-end handling of a single lead.

analyze -> workflow hand-off -> campaign enrolment and first step. Outcome
feedback flows back to the rule engine and the analytics collaborator.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from lead_dispatch.analytics.feedback import FeedbackAnalytics
from lead_dispatch.campaigns.scheduler import CampaignScheduler
from lead_dispatch.core.audit import AuditSink, LoggingAuditSink
from lead_dispatch.core.config import Settings
from lead_dispatch.core.errors import WorkflowExecutionError
from lead_dispatch.core.models import (
    LeadSnapshot,
    PerformanceFeedback,
    RoutingDecision,
    TargetAgent,
)
from lead_dispatch.routing.rule_engine import RuleEngine
from lead_dispatch.workflows.executor import WorkflowExecutor, build_event

logger = logging.getLogger(__name__)


class DispatchResult(BaseModel):
    lead_id: str
    decision: RoutingDecision
    workflow_id: str | None = None
    execution_id: str | None = None
    handoff_status: str = "skipped"  # completed, failed, skipped
    campaign_id: str | None = None
    first_step_id: str | None = None
    first_step_succeeded: bool | None = None


class LeadDispatcher:
    def __init__(
        self,
        rule_engine: RuleEngine,
        scheduler: CampaignScheduler,
        analytics: FeedbackAnalytics,
        executor: WorkflowExecutor | None = None,
        settings: Settings | None = None,
        audit: AuditSink | None = None,
    ):
        self.settings = settings or Settings()
        self.rule_engine = rule_engine
        self.scheduler = scheduler
        self.analytics = analytics
        self.executor = executor or WorkflowExecutor(self.settings)
        self.audit = audit or LoggingAuditSink()

    def _workflow_for(self, target: TargetAgent) -> str:
        if target == TargetAgent.INBOUND:
            return self.settings.inbound_workflow_id
        return self.settings.outbound_workflow_id

    async def dispatch(self, lead: LeadSnapshot) -> DispatchResult:
        decision = await self.rule_engine.analyze(lead)
        lead_id = decision.lead_id
        self.scheduler.register_contact(lead_id, lead.contact_info)

        result = DispatchResult(lead_id=lead_id, decision=decision)

        if self.executor.configured:
            workflow_id = self._workflow_for(decision.target_agent)
            result.workflow_id = workflow_id
            event = build_event(
                "lead.routed",
                {
                    "lead": lead.model_dump(mode="json"),
                    "decision": decision.model_dump(mode="json"),
                },
                correlation_id=lead_id,
            )
            try:
                execution = await self.executor.execute_workflow(workflow_id, event)
            except WorkflowExecutionError as e:
                logger.error("Hand-off of lead %s to %s failed: %s", lead_id, workflow_id, e)
                result.handoff_status = "failed"
            else:
                result.execution_id = execution.id
                result.handoff_status = "completed"

        campaign = self.scheduler.find_campaign_for(lead)
        if campaign is not None and campaign.steps:
            first = campaign.steps[0]
            result.campaign_id = campaign.id
            result.first_step_id = first.id
            result.first_step_succeeded = await self.scheduler.execute_campaign_step(
                campaign.id, lead_id, first.id
            )

        await self.audit.record_interaction(
            lead_id,
            "dispatched",
            {
                "target_agent": decision.target_agent.value,
                "priority": decision.priority.value,
                "handoff_status": result.handoff_status,
                "campaign_id": result.campaign_id,
            },
        )
        logger.info(
            "Dispatched lead %s -> %s/%s (handoff=%s, campaign=%s)",
            lead_id,
            decision.target_agent.value,
            decision.priority.value,
            result.handoff_status,
            result.campaign_id,
        )
        return result

    async def record_outcome(
        self,
        feedback: PerformanceFeedback,
        script_id: str | None = None,
        script_name: str | None = None,
        lead_source: str | None = None,
    ) -> None:
        """Feed one observed outcome to routing and analytics."""
        await self.rule_engine.process_performance_feedback(feedback)
        self.analytics.record_outcome(
            feedback.decision.target_agent.value,
            feedback.outcome,
            timestamp=feedback.timestamp,
            script_id=script_id,
            script_name=script_name,
            lead_source=lead_source,
        )

    async def close(self) -> None:
        await self.executor.close()
