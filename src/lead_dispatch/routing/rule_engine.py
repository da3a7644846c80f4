"""Rule-based lead dispatcher with performance-driven rule adjustment.

A lead snapshot is reduced to derived signals (adjusted urgency, intent score,
source quality, lead type) and then matched against an ordered rule list.
The first enabled rule whose condition holds decides the target workflow.
Outcome feedback feeds back into each rule's rolling success rate, which in
turn nudges the rule's evaluation priority.
"""

from __future__ import annotations

import itertools
import logging
import threading
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from lead_dispatch.core.config import RoutingConfig, Settings, Thresholds
from lead_dispatch.core.errors import NotFoundError, ValidationError
from lead_dispatch.core.models import (
    LeadAnalysis,
    LeadSnapshot,
    LeadSource,
    LeadType,
    PerformanceFeedback,
    Priority,
    RoutingAction,
    RoutingDecision,
    RoutingRule,
    TargetAgent,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Heuristic tables
# ---------------------------------------------------------------------------

SOURCE_URGENCY_MODIFIERS: dict[LeadSource, int] = {
    LeadSource.WEBSITE: 2,
    LeadSource.GMAIL: 0,
    LeadSource.META_ADS: -1,
    LeadSource.SLACK: 1,
    LeadSource.THIRD_PARTY: 0,
    LeadSource.REFERRAL: 1,
    LeadSource.OTHER: 0,
}

SOURCE_TYPE_POINTS: dict[LeadSource, int] = {
    LeadSource.WEBSITE: 3,
    LeadSource.GMAIL: 2,
    LeadSource.META_ADS: 1,
    LeadSource.SLACK: 2,
    LeadSource.THIRD_PARTY: 1,
    LeadSource.REFERRAL: 3,
    LeadSource.OTHER: 1,
}

INTENT_SIGNAL_WEIGHTS: dict[str, float] = {
    "requested_callback": 0.9,
    "asked_about_pricing": 0.8,
    "requested_brochure": 0.7,
    "visited_multiple_pages": 0.6,
    "downloaded_content": 0.5,
    "social_media_engagement": 0.4,
    "email_opened": 0.3,
    "form_submission": 0.8,
    "phone_inquiry": 0.9,
    "repeat_visitor": 0.6,
}

UNKNOWN_SIGNAL_WEIGHT = 0.2
NO_SIGNAL_SCORE = 0.1
MAX_INTENT_SCORE = 0.95
UNKNOWN_SOURCE_QUALITY = 0.5

FALLBACK_ACTION = RoutingAction(
    target_agent=TargetAgent.OUTBOUND,
    priority=Priority.LOW,
    reasoning=["No specific routing rule matched", "Using default outbound processing"],
    estimated_response_time=300,
    suggested_actions=["Standard follow-up sequence"],
)


def default_rules(engine: RuleEngine) -> list[RoutingRule]:
    """Build the stock rule set.

    Conditions read thresholds from ``engine.config`` at evaluation time, so
    later ``update_config`` calls take effect without rebuilding the rules.
    """
    return [
        RoutingRule(
            id="hot-lead-immediate",
            name="Hot Lead Immediate Response",
            condition=lambda lead, a: (
                a.lead_type == LeadType.HOT
                or a.urgency_level >= engine.config.urgency_thresholds.high
            ),
            action=RoutingAction(
                target_agent=TargetAgent.INBOUND,
                priority=Priority.HIGH,
                reasoning=["Hot lead requires immediate attention", "High urgency level detected"],
                estimated_response_time=30,
                suggested_actions=["Activate virtual sales assistant", "Schedule immediate callback"],
            ),
            priority=1,
        ),
        RoutingRule(
            id="direct-inquiry-inbound",
            name="Direct Inquiry to Inbound",
            condition=lambda lead, a: (
                lead.source == LeadSource.WEBSITE
                and a.intent_score >= engine.config.intent_thresholds.high
            ),
            action=RoutingAction(
                target_agent=TargetAgent.INBOUND,
                priority=Priority.HIGH,
                reasoning=["Direct website inquiry", "High intent signals detected"],
                estimated_response_time=45,
                suggested_actions=["Qualification call", "Appointment booking"],
            ),
            priority=2,
        ),
        RoutingRule(
            id="warm-lead-nurture",
            name="Warm Lead Nurturing",
            condition=lambda lead, a: (
                a.lead_type == LeadType.WARM
                and a.intent_score >= engine.config.intent_thresholds.medium
            ),
            action=RoutingAction(
                target_agent=TargetAgent.OUTBOUND,
                priority=Priority.MEDIUM,
                reasoning=["Warm lead needs nurturing", "Medium intent level"],
                estimated_response_time=120,
                suggested_actions=["Follow-up sequence", "Educational content"],
            ),
            priority=3,
        ),
        RoutingRule(
            id="cold-lead-outbound",
            name="Cold Lead Outbound Processing",
            condition=lambda lead, a: (
                a.lead_type == LeadType.COLD
                or a.intent_score < engine.config.intent_thresholds.medium
            ),
            action=RoutingAction(
                target_agent=TargetAgent.OUTBOUND,
                priority=Priority.LOW,
                reasoning=["Cold lead requires outbound approach", "Low intent signals"],
                estimated_response_time=300,
                suggested_actions=["Cold outreach sequence", "Lead warming campaign"],
            ),
            priority=4,
        ),
    ]


def lead_age_hours(lead: LeadSnapshot, now: datetime | None = None) -> float:
    now = now or utcnow()
    return abs((now - as_utc(lead.created_at)).total_seconds()) / 3600


class RuleEngine:
    """Maps lead snapshots to routing decisions.

    Owns the rule list, the per-lead routing history and the per-lead
    feedback history. All three are mutated only through this class.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        rules: list[RoutingRule] | None = None,
        config: RoutingConfig | None = None,
    ):
        self.settings = settings or Settings()
        self.config = config or RoutingConfig.from_settings(self.settings)
        self._lock = threading.RLock()
        self._routing_history: dict[str, LeadAnalysis] = {}
        self._feedback: dict[str, list[PerformanceFeedback]] = {}
        # (target, priority) -> [successes, total]
        self._action_outcomes: dict[tuple[TargetAgent, Priority], list[int]] = {}
        self._registration = itertools.count()
        self._registered: dict[str, int] = {}
        source = rules if rules is not None else default_rules(self)
        self._rules: list[RoutingRule] = [r.model_copy() for r in source]
        for r in self._rules:
            self._registered.setdefault(r.id, next(self._registration))
        self._sort_rules()

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze(self, lead: LeadSnapshot) -> RoutingDecision:
        """Derive signals for ``lead`` and pick a routing decision.

        Raises ValidationError if the lead id is empty or missing.
        """
        if not lead.id or not lead.id.strip():
            raise ValidationError("Lead ID is required and cannot be empty")

        now = utcnow()
        with self._lock:
            source_quality = self.evaluate_source_quality(lead.source)
            analysis = LeadAnalysis(
                lead_id=lead.id,
                lead_type=self.evaluate_lead_type(lead),
                urgency_level=self.calculate_urgency(lead, now),
                intent_score=self.calculate_intent_score(lead.intent_signals),
                source_quality=source_quality,
                confidence=self.calculate_confidence(lead, source_quality, now),
                analyzed_at=now,
            )
            decision = self._decide(lead, analysis)
            analysis = analysis.model_copy(update={"decision": decision})
            self._routing_history[lead.id] = analysis

        logger.debug(
            "Lead %s -> %s/%s (rule=%s, confidence=%.2f)",
            lead.id,
            decision.target_agent.value,
            decision.priority.value,
            decision.rule_id,
            decision.confidence,
        )
        return decision

    def calculate_urgency(self, lead: LeadSnapshot, now: datetime | None = None) -> int:
        urgency: float = lead.urgency_level
        urgency += SOURCE_URGENCY_MODIFIERS.get(lead.source, 0)
        urgency += min(len(lead.intent_signals) * 0.5, 2)

        if lead.qualification_score >= 0.8:
            urgency += 2
        elif lead.qualification_score >= 0.5:
            urgency += 1

        age = lead_age_hours(lead, now)
        if age <= 1:
            urgency += 1
        elif age >= 24:
            urgency -= 1

        return max(1, min(10, round(urgency)))

    @staticmethod
    def calculate_intent_score(signals: list[str]) -> float:
        if not signals:
            return NO_SIGNAL_SCORE
        total = sum(
            INTENT_SIGNAL_WEIGHTS.get(s.lower(), UNKNOWN_SIGNAL_WEIGHT) for s in signals
        )
        return round(min(MAX_INTENT_SCORE, total / len(signals)), 2)

    def evaluate_source_quality(self, source: LeadSource | str) -> float:
        key = source.value if isinstance(source, LeadSource) else source
        return self.config.source_quality_weights.get(key, UNKNOWN_SOURCE_QUALITY)

    def evaluate_lead_type(self, lead: LeadSnapshot) -> LeadType:
        """Keep the supplied label when consistent, otherwise re-score it."""
        if lead.lead_type is not None and self.is_lead_type_consistent(lead):
            return lead.lead_type

        score = float(SOURCE_TYPE_POINTS.get(lead.source, 1))
        score += len(lead.intent_signals) * 0.5
        score += lead.qualification_score * 2
        if lead.contact_info.email and lead.contact_info.phone:
            score += 1
        if lead.urgency_level >= 8:
            score += 2
        elif lead.urgency_level >= 5:
            score += 1

        if score >= 6:
            return LeadType.HOT
        if score >= 3:
            return LeadType.WARM
        return LeadType.COLD

    @staticmethod
    def is_lead_type_consistent(lead: LeadSnapshot) -> bool:
        urgency = lead.urgency_level
        signals = len(lead.intent_signals)
        qual = lead.qualification_score

        if lead.lead_type == LeadType.HOT:
            return urgency >= 7 or signals >= 3 or qual >= 0.7
        if lead.lead_type == LeadType.WARM:
            return 4 <= urgency < 8 or 1 <= signals < 3 or 0.3 <= qual < 0.7
        if lead.lead_type == LeadType.COLD:
            return urgency < 5 and signals < 2 and qual < 0.4
        return False

    @staticmethod
    def calculate_confidence(
        lead: LeadSnapshot, source_quality: float, now: datetime | None = None
    ) -> float:
        confidence = 0.5
        contact = lead.contact_info
        if contact.email and contact.phone:
            confidence += 0.15
        elif contact.email or contact.phone:
            confidence += 0.1

        if len(lead.intent_signals) >= 3:
            confidence += 0.15
        elif lead.intent_signals:
            confidence += 0.1

        if lead.qualification_score > 0:
            confidence += 0.1

        confidence += source_quality * 0.1

        if lead_age_hours(lead, now) <= 2:
            confidence += 0.05

        return min(0.95, max(0.1, confidence))

    def _decide(self, lead: LeadSnapshot, analysis: LeadAnalysis) -> RoutingDecision:
        for rule in self._rules:
            if not rule.enabled:
                continue
            try:
                matched = rule.condition(lead, analysis)
            except Exception:
                logger.exception("Routing rule %s raised while evaluating lead %s", rule.id, lead.id)
                continue
            if matched:
                action = self._apply_performance_adjustment(rule)
                return RoutingDecision(
                    **action.model_dump(),
                    lead_id=lead.id,
                    rule_id=rule.id,
                    confidence=analysis.confidence,
                    decided_at=analysis.analyzed_at,
                )

        return RoutingDecision(
            **FALLBACK_ACTION.model_dump(),
            lead_id=lead.id,
            rule_id=None,
            confidence=analysis.confidence,
            decided_at=analysis.analyzed_at,
        )

    def _apply_performance_adjustment(self, rule: RoutingRule) -> RoutingAction:
        action = rule.action
        if not self.config.optimization_enabled or not rule.success_rate:
            return action

        response_time = action.estimated_response_time
        if rule.success_rate < 0.5:
            response_time = round(response_time * 1.2)
        elif rule.success_rate > 0.8:
            response_time = round(response_time * 0.9)

        return action.model_copy(
            update={
                "estimated_response_time": response_time,
                "reasoning": [
                    *action.reasoning,
                    f"Performance-adjusted ({round(rule.success_rate * 100)}% success rate)",
                ],
            }
        )

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    async def process_performance_feedback(self, feedback: PerformanceFeedback) -> None:
        """Record ``feedback`` and re-tune the rule that owns its action."""
        with self._lock:
            self._feedback.setdefault(feedback.lead_id, []).append(feedback)
            counts = self._action_outcomes.setdefault(feedback.decision.action_key, [0, 0])
            counts[0] += int(feedback.outcome.conversion_successful)
            counts[1] += 1
            if self.config.optimization_enabled:
                self._tune_rule_for(feedback)

    def _tune_rule_for(self, feedback: PerformanceFeedback) -> None:
        # Statistics are shared by every rule with the same (target, priority).
        key = feedback.decision.action_key
        rule = next((r for r in self._rules if r.action.action_key == key), None)
        if rule is None:
            return

        successes, total = self._action_outcomes[key]
        rule.success_rate = successes / total

        if rule.success_rate < 0.3 and rule.priority < 10:
            rule.priority += 1
        elif rule.success_rate > 0.8 and rule.priority > 1:
            rule.priority -= 1
        self._sort_rules()

        logger.info(
            "Rule %s success rate %.2f over %d outcomes, priority now %d",
            rule.id,
            rule.success_rate,
            total,
            rule.priority,
        )

    # ------------------------------------------------------------------
    # Rule and config management
    # ------------------------------------------------------------------

    def _sort_rules(self) -> None:
        self._rules.sort(key=lambda r: (r.priority, self._registered[r.id]))

    def add_routing_rule(self, rule: RoutingRule) -> None:
        """Insert ``rule`` or replace the rule with the same id in place."""
        with self._lock:
            stored = rule.model_copy()
            for i, existing in enumerate(self._rules):
                if existing.id == rule.id:
                    self._rules[i] = stored
                    break
            else:
                self._rules.append(stored)
                self._registered[stored.id] = next(self._registration)
            self._sort_rules()

    def remove_routing_rule(self, rule_id: str) -> bool:
        with self._lock:
            before = len(self._rules)
            self._rules = [r for r in self._rules if r.id != rule_id]
            self._registered.pop(rule_id, None)
            self._sort_rules()
            return len(self._rules) < before

    def update_rule(self, rule_id: str, **updates: Any) -> RoutingRule:
        with self._lock:
            existing = self.get_rule(rule_id)
            if existing is None:
                raise NotFoundError("Routing rule", rule_id)
            updated = existing.model_copy(update=updates)
            self.add_routing_rule(updated)
            return updated.model_copy()

    def get_rule(self, rule_id: str) -> RoutingRule | None:
        with self._lock:
            for r in self._rules:
                if r.id == rule_id:
                    return r.model_copy()
            return None

    def get_rules(self) -> list[RoutingRule]:
        with self._lock:
            return [r.model_copy() for r in self._rules]

    def update_config(self, **changes: Any) -> RoutingConfig:
        """Replace routing configuration fields.

        ``source_quality_weights`` is merged into the current weights; every
        other field is replaced. Unknown fields raise ValidationError.
        """
        unknown = set(changes) - set(RoutingConfig.model_fields)
        if unknown:
            raise ValidationError(f"Unknown routing config fields: {sorted(unknown)}")

        with self._lock:
            data = self.config.model_dump()
            for key, value in changes.items():
                if isinstance(value, Thresholds):
                    value = value.model_dump()
                if key == "source_quality_weights":
                    value = {**data["source_quality_weights"], **value}
                data[key] = value
            try:
                self.config = RoutingConfig.model_validate(data)
            except PydanticValidationError as e:
                raise ValidationError(str(e)) from e
            self._sort_rules()
            logger.info("Routing config updated: %s", sorted(changes))
            return self.config.model_copy(deep=True)

    def set_optimization_enabled(self, enabled: bool) -> None:
        self.update_config(optimization_enabled=enabled)

    async def apply_optimization_feedback(
        self,
        routing_adjustments: dict[str, Any] | None = None,
        new_rules: list[RoutingRule] | None = None,
        rule_updates: dict[str, dict[str, Any]] | None = None,
        rule_removals: list[str] | None = None,
    ) -> None:
        """Apply a batch of tuning changes proposed by the optimizer.

        Updates for rule ids that no longer exist are skipped.
        """
        with self._lock:
            if routing_adjustments:
                self.update_config(**routing_adjustments)
            for rule in new_rules or []:
                self.add_routing_rule(rule)
            for rule_id, updates in (rule_updates or {}).items():
                if self.get_rule(rule_id) is None:
                    logger.warning("Skipping update for unknown routing rule %s", rule_id)
                    continue
                self.update_rule(rule_id, **updates)
            for rule_id in rule_removals or []:
                self.remove_routing_rule(rule_id)
        logger.info("Applied optimization feedback to rule engine")

    def get_routing_configuration(self) -> dict[str, Any]:
        """Snapshot of thresholds, weights and rules. Mutating it has no effect."""
        with self._lock:
            return {
                "response_time_sla": self.config.response_time_sla,
                "urgency_thresholds": self.config.urgency_thresholds.model_copy(),
                "intent_thresholds": self.config.intent_thresholds.model_copy(),
                "source_quality_weights": dict(self.config.source_quality_weights),
                "routing_rules": [r.model_copy() for r in self._rules],
                "optimization_enabled": self.config.optimization_enabled,
            }

    # ------------------------------------------------------------------
    # History and metrics
    # ------------------------------------------------------------------

    def get_performance_metrics(self) -> dict[str, Any]:
        with self._lock:
            analyses = list(self._routing_history.values())
            successes = sum(c[0] for c in self._action_outcomes.values())
            total = sum(c[1] for c in self._action_outcomes.values())
            rule_performance = [
                {
                    "rule_id": r.id,
                    "success_rate": r.success_rate or 0.0,
                    "usage_count": self._action_outcomes.get(r.action.action_key, [0, 0])[1],
                }
                for r in self._rules
                if r.success_rate is not None
            ]
            return {
                "total_leads_analyzed": len(analyses),
                "routing_accuracy": successes / total if total else 0.0,
                "average_confidence": (
                    sum(a.confidence for a in analyses) / len(analyses) if analyses else 0.0
                ),
                "rule_performance": rule_performance,
            }

    def get_lead_routing_history(self, lead_id: str) -> LeadAnalysis | None:
        with self._lock:
            return self._routing_history.get(lead_id)

    def get_lead_feedback(self, lead_id: str) -> list[PerformanceFeedback]:
        with self._lock:
            return list(self._feedback.get(lead_id, []))

    def analyses_since(self, since: datetime) -> list[LeadAnalysis]:
        with self._lock:
            return [a for a in self._routing_history.values() if a.analyzed_at >= as_utc(since)]

    def clear_history(self) -> None:
        with self._lock:
            self._routing_history.clear()
            self._feedback.clear()
            self._action_outcomes.clear()
