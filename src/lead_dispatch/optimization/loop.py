"""Closed-loop optimizer.

Each cycle measures live performance through the analytics collaborator,
derives recommendations, applies the most important ones to the rule engine
and scheduler through their public methods, and later validates each
applied change against its baseline, rolling it back when it made things
measurably worse.

State machine per recommendation::

    pending -> implemented -> validated
                           -> failed -> rolled_back
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import timedelta
from typing import Any, Callable

from lead_dispatch.analytics.base import AnalyticsProvider
from lead_dispatch.campaigns.scheduler import CampaignScheduler
from lead_dispatch.core.config import Settings
from lead_dispatch.core.errors import NotFoundError, OptimizationCycleFailure
from lead_dispatch.core.models import (
    PRIORITY_WEIGHT,
    DateRange,
    Impact,
    Improvement,
    OptimizationFeedback,
    OptimizationImplementation,
    OptimizationRecommendation,
    OptimizationResult,
    OptimizationState,
    PerformanceMetrics,
    Priority,
    RecommendationType,
    RoutingAction,
    RoutingRule,
    TargetAgent,
    TrendDirection,
    ValidationCriteria,
    utcnow,
)
from lead_dispatch.routing.rule_engine import RuleEngine

logger = logging.getLogger(__name__)

CONVERSION_FLOOR = 0.6
RESPONSE_SLA_MS = 60000
FAST_RESPONSE_SLA_SECONDS = 45
ROLLBACK_THRESHOLD = -5.0

TIMING_MULTIPLIERS = {"minor": 0.9, "major": 0.75}

# Actions that change one shared setting no matter which unit triggered them.
GLOBAL_ACTIONS = {"adjust_routing_thresholds", "adjust_timing_sequences"}

# Lower response time is an improvement, so a falling trend there is not a signal.
TIMING_EXEMPT_METRICS = {"average_response_time"}


def percent_change(baseline: float, current: float) -> float:
    if not baseline:
        return 0.0
    return (current - baseline) / baseline * 100


def compute_improvement(baseline: PerformanceMetrics, current: PerformanceMetrics) -> Improvement:
    conversion = percent_change(baseline.conversion_rate, current.conversion_rate)
    # response time improves when it goes down
    response = -percent_change(baseline.average_response_time, current.average_response_time)
    satisfaction = percent_change(
        baseline.customer_satisfaction_score, current.customer_satisfaction_score
    )
    return Improvement(
        conversion_rate=conversion,
        response_time=response,
        satisfaction=satisfaction,
        overall=conversion * 0.4 + response * 0.3 + satisfaction * 0.3,
    )


def recommendation_key(rec: OptimizationRecommendation) -> tuple:
    """Identity of the change a recommendation makes, used to avoid stacking it."""
    action = rec.implementation.action
    if action in GLOBAL_ACTIONS:
        return (rec.type, action, None)
    params = rec.implementation.parameters
    target = params.get("agent_id") or params.get("script_id") or params.get("metric")
    return (rec.type, action, target)


class Optimizer:
    """Proposes, implements, validates and rolls back tuning changes."""

    def __init__(
        self,
        rule_engine: RuleEngine,
        scheduler: CampaignScheduler,
        analytics: AnalyticsProvider,
        settings: Settings | None = None,
    ):
        self.rule_engine = rule_engine
        self.scheduler = scheduler
        self.analytics = analytics
        self.settings = settings or Settings()

        self._lock = threading.RLock()
        self._results: dict[str, OptimizationResult] = {}
        self._active: dict[str, OptimizationRecommendation] = {}
        self._undo: dict[str, Callable[[], None]] = {}
        self._feedback_queue: list[OptimizationFeedback] = []
        self._script_revisions: list[dict[str, Any]] = []
        self._task: asyncio.Task | None = None
        self._running = False
        self.last_failure: OptimizationCycleFailure | None = None

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run one cycle now, then one every ``optimization_interval_hours``."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Optimizer started (interval=%sh, units=%s)",
            self.settings.optimization_interval_hours,
            ",".join(self.settings.optimization_unit_ids),
        )

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Optimizer stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _loop(self) -> None:
        interval = self.settings.optimization_interval_hours * 3600
        while self._running:
            await self.run_optimization_cycle()
            await asyncio.sleep(interval)

    async def run_optimization_cycle(self) -> dict[str, int] | None:
        """collect -> recommend -> implement -> validate -> drain review queue.

        Returns per-stage counts, or None if the cycle failed. A failure is
        logged and never propagates.
        """
        try:
            feedback = await self.collect_optimization_feedback()
            recommendations = await self.generate_optimization_recommendations(feedback)
            implemented = await self.implement_optimizations(recommendations)
            validated = await self.validate_optimizations()
            review = self.process_feedback_queue()
        except Exception as e:
            failure = OptimizationCycleFailure(f"Optimization cycle failed: {e}")
            failure.__cause__ = e
            self.last_failure = failure
            logger.exception("%s", failure)
            return None

        summary = {
            "feedback": len(feedback),
            "recommendations": len(recommendations),
            "implemented": len(implemented),
            "validated": len(validated),
            "manual_review": review,
        }
        logger.info("Optimization cycle complete: %s", summary)
        return summary

    # ------------------------------------------------------------------
    # Collect
    # ------------------------------------------------------------------

    def _lookback(self, days: int) -> DateRange:
        now = utcnow()
        return DateRange(start=now - timedelta(days=days), end=now)

    async def collect_optimization_feedback(self) -> list[OptimizationFeedback]:
        period = self._lookback(self.settings.optimization_lookback_days)
        insights = [
            i
            for i in await self.analytics.generate_intelligence_report()
            if i.actionable and i.impact in (Impact.HIGH, Impact.MEDIUM)
        ]

        feedback = []
        for agent_id in self.settings.optimization_unit_ids:
            try:
                performance = await self.analytics.collect_performance_data(agent_id, period)
            except Exception:
                logger.exception("Failed to collect performance data for %s", agent_id)
                continue
            feedback.append(
                OptimizationFeedback(
                    agent_id=agent_id,
                    insights=insights,
                    performance_data=performance,
                )
            )
        return feedback

    # ------------------------------------------------------------------
    # Recommend
    # ------------------------------------------------------------------

    async def generate_optimization_recommendations(
        self, feedback: list[OptimizationFeedback]
    ) -> list[OptimizationRecommendation]:
        """Derive routing, script and timing recommendations.

        Sorted by priority (high first), then expected impact (largest first).
        """
        recommendations: list[OptimizationRecommendation] = []
        for fb in feedback:
            recommendations.extend(self._routing_recommendations(fb))

        if feedback:
            try:
                scripts = await self.analytics.analyze_script_performance()
            except Exception:
                logger.exception("Script analysis failed")
                scripts = []
            try:
                trends = await self.analytics.analyze_performance_trends(
                    self._lookback(self.settings.trend_lookback_days)
                )
            except Exception:
                logger.exception("Trend analysis failed")
                trends = []
            recommendations.extend(self._script_recommendations(scripts))
            recommendations.extend(self._timing_recommendations(trends))

        recommendations.sort(key=lambda r: (-PRIORITY_WEIGHT[r.priority], -r.expected_impact))
        return recommendations

    @staticmethod
    def _routing_recommendations(fb: OptimizationFeedback) -> list[OptimizationRecommendation]:
        metrics = fb.performance_data.metrics
        if metrics.total_interactions == 0:
            return []

        recs = []
        if metrics.conversion_rate < CONVERSION_FLOOR:
            recs.append(
                OptimizationRecommendation(
                    type=RecommendationType.ROUTING_RULE,
                    priority=Priority.HIGH,
                    description=f"Improve routing rules for {fb.agent_id} - conversion rate below 60%",
                    expected_impact=15,
                    agent_id=fb.agent_id,
                    implementation=OptimizationImplementation(
                        action="adjust_routing_thresholds",
                        parameters={
                            "agent_id": fb.agent_id,
                            "urgency_threshold": 7,
                            "intent_threshold": 0.5,
                        },
                        rollback_plan="Revert to previous thresholds if performance degrades",
                        testing_period=7,
                    ),
                    validation_criteria=ValidationCriteria(
                        metrics=["conversion_rate", "average_response_time"],
                        minimum_improvement=10,
                        test_period=14,
                    ),
                )
            )
        if metrics.average_response_time > RESPONSE_SLA_MS:
            recs.append(
                OptimizationRecommendation(
                    type=RecommendationType.ROUTING_RULE,
                    priority=Priority.HIGH,
                    description=(
                        f"Optimize routing for faster response times - currently "
                        f"{round(metrics.average_response_time / 1000)}s"
                    ),
                    expected_impact=20,
                    agent_id=fb.agent_id,
                    implementation=OptimizationImplementation(
                        action="prioritize_fast_agents",
                        parameters={
                            "agent_id": fb.agent_id,
                            "response_time_sla": FAST_RESPONSE_SLA_SECONDS,
                        },
                        rollback_plan="Remove priority boost if quality degrades",
                        testing_period=5,
                    ),
                    validation_criteria=ValidationCriteria(
                        metrics=["average_response_time", "customer_satisfaction_score"],
                        minimum_improvement=15,
                        test_period=10,
                    ),
                )
            )
        return recs

    @staticmethod
    def _script_recommendations(scripts) -> list[OptimizationRecommendation]:
        recs = []
        for opt in scripts:
            estimate = opt.estimated_impact.conversion_rate_improvement
            if estimate <= 10:
                continue
            recs.append(
                OptimizationRecommendation(
                    type=RecommendationType.SCRIPT_UPDATE,
                    priority=Priority.HIGH if estimate > 20 else Priority.MEDIUM,
                    description=f"Optimize {opt.script_name} - potential {estimate:g}% improvement",
                    expected_impact=estimate,
                    implementation=OptimizationImplementation(
                        action="update_script",
                        parameters={
                            "script_id": opt.script_id,
                            "recommendations": [r.model_dump(mode="json") for r in opt.recommendations],
                            "current_performance": opt.current_performance.model_dump(mode="json"),
                        },
                        rollback_plan="Revert to previous script version if performance degrades",
                        testing_period=14,
                    ),
                    validation_criteria=ValidationCriteria(
                        metrics=["conversion_rate", "customer_satisfaction_score"],
                        minimum_improvement=8,
                        test_period=21,
                    ),
                )
            )
        return recs

    @staticmethod
    def _timing_recommendations(trends) -> list[OptimizationRecommendation]:
        recs = []
        for trend in trends:
            if trend.metric in TIMING_EXEMPT_METRICS:
                continue
            if trend.trend != TrendDirection.DECREASING or trend.significance != Impact.HIGH:
                continue
            change = abs(trend.change_percent)
            recs.append(
                OptimizationRecommendation(
                    type=RecommendationType.TIMING_ADJUSTMENT,
                    priority=Priority.MEDIUM,
                    description=f"Adjust timing for {trend.metric} - showing {change:g}% decline",
                    expected_impact=change * 0.8,
                    implementation=OptimizationImplementation(
                        action="adjust_timing_sequences",
                        parameters={
                            "metric": trend.metric,
                            "adjustment": "minor" if trend.change_percent > -10 else "major",
                            "target_improvement": change,
                        },
                        rollback_plan="Revert timing adjustments if trend continues",
                        testing_period=10,
                    ),
                    validation_criteria=ValidationCriteria(
                        metrics=[trend.metric],
                        minimum_improvement=5,
                        test_period=14,
                        significance_threshold=0.1,
                    ),
                )
            )
        return recs

    # ------------------------------------------------------------------
    # Implement
    # ------------------------------------------------------------------

    async def implement_optimizations(
        self, recommendations: list[OptimizationRecommendation]
    ) -> list[OptimizationRecommendation]:
        """Apply at most ``max_implementations_per_cycle`` high-priority recommendations.

        A recommendation whose change is already active is skipped.
        """
        with self._lock:
            active_keys = {
                recommendation_key(r)
                for r in self._active.values()
                if r.id in self._results
                and self._results[r.id].state == OptimizationState.IMPLEMENTED
            }

        selected = []
        for rec in recommendations:
            if rec.priority != Priority.HIGH:
                continue
            key = recommendation_key(rec)
            if key in active_keys:
                logger.debug("Skipping %s: same change already under test", rec.id)
                continue
            active_keys.add(key)
            selected.append(rec)
            if len(selected) >= self.settings.max_implementations_per_cycle:
                break

        implemented = []
        for rec in selected:
            baseline = await self.current_metrics()
            try:
                undo = self._apply(rec)
            except Exception as e:
                logger.exception("Failed to implement optimization %s", rec.id)
                with self._lock:
                    self._results[rec.id] = OptimizationResult(
                        recommendation_id=rec.id,
                        state=OptimizationState.FAILED,
                        baseline_metrics=baseline,
                        notes=[f"Implementation failed: {e}"],
                    )
                continue

            with self._lock:
                self._active[rec.id] = rec
                self._undo[rec.id] = undo
                self._results[rec.id] = OptimizationResult(
                    recommendation_id=rec.id,
                    state=OptimizationState.IMPLEMENTED,
                    implemented=True,
                    implemented_at=utcnow(),
                    baseline_metrics=baseline,
                )
            implemented.append(rec)
            logger.info("Implemented optimization: %s", rec.description)
        return implemented

    def _apply(self, rec: OptimizationRecommendation) -> Callable[[], None]:
        """Apply ``rec`` and return a callable that reverts it."""
        action = rec.implementation.action
        params = rec.implementation.parameters

        if action == "adjust_routing_thresholds":
            config = self.rule_engine.get_routing_configuration()
            previous = {
                "urgency_thresholds": config["urgency_thresholds"],
                "intent_thresholds": config["intent_thresholds"],
            }
            urgency = params["urgency_threshold"]
            intent = params["intent_threshold"]
            self.rule_engine.update_config(
                urgency_thresholds={"high": urgency, "medium": urgency - 2},
                intent_thresholds={"high": round(intent + 0.2, 2), "medium": intent},
            )
            return lambda: self.rule_engine.update_config(**previous)

        if action == "prioritize_fast_agents":
            rule_id = f"fast-response-{params.get('agent_id', 'all')}"
            self.rule_engine.add_routing_rule(
                RoutingRule(
                    id=rule_id,
                    name="Fast Response Priority",
                    condition=lambda lead, analysis: analysis.urgency_level >= 6,
                    action=RoutingAction(
                        target_agent=TargetAgent.INBOUND,
                        priority=Priority.HIGH,
                        reasoning=["Prioritized for fast response"],
                        estimated_response_time=params.get(
                            "response_time_sla", FAST_RESPONSE_SLA_SECONDS
                        ),
                        suggested_actions=["Immediate contact"],
                    ),
                    priority=0,
                )
            )
            return lambda: self.rule_engine.remove_routing_rule(rule_id)

        if action == "adjust_timing_sequences":
            previous = self.scheduler.get_scheduling_parameters().delay_multiplier
            factor = TIMING_MULTIPLIERS[params.get("adjustment", "minor")]
            self.scheduler.update_scheduling_parameters(delay_multiplier=previous * factor)
            return lambda: self.scheduler.update_scheduling_parameters(delay_multiplier=previous)

        if action == "update_script":
            revision = {
                "recommendation_id": rec.id,
                "script_id": params.get("script_id"),
                "recommendations": params.get("recommendations", []),
                "applied_at": utcnow(),
                "reverted": False,
            }
            with self._lock:
                self._script_revisions.append(revision)

            def revert_script() -> None:
                revision["reverted"] = True

            return revert_script

        if rec.type == RecommendationType.THRESHOLD_CHANGE:
            config = self.rule_engine.get_routing_configuration()
            previous = {k: config[k] for k in params if k in config and k != "routing_rules"}
            self.rule_engine.update_config(**params)
            return lambda: self.rule_engine.update_config(**previous)

        raise ValueError(f"Unknown optimization action: {action}")

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    async def current_metrics(self) -> PerformanceMetrics:
        """Interaction-weighted metrics across every optimized unit."""
        period = self._lookback(self.settings.optimization_lookback_days)
        snapshots = []
        for agent_id in self.settings.optimization_unit_ids:
            try:
                perf = await self.analytics.collect_performance_data(agent_id, period)
            except Exception:
                logger.exception("Failed to collect performance data for %s", agent_id)
                continue
            snapshots.append(perf.metrics)

        total = sum(m.total_interactions for m in snapshots)
        if total == 0:
            return PerformanceMetrics()

        def weighted(field: str) -> float:
            return sum(getattr(m, field) * m.total_interactions for m in snapshots) / total

        return PerformanceMetrics(
            total_interactions=total,
            conversion_rate=weighted("conversion_rate"),
            average_response_time=weighted("average_response_time"),
            appointment_booking_rate=weighted("appointment_booking_rate"),
            customer_satisfaction_score=weighted("customer_satisfaction_score"),
        )

    async def validate_optimizations(self) -> list[OptimizationResult]:
        """Validate every implemented change whose test period has elapsed."""
        now = utcnow()
        with self._lock:
            due = [
                (rec_id, result.model_copy(deep=True), self._active[rec_id])
                for rec_id, result in self._results.items()
                if result.state == OptimizationState.IMPLEMENTED
                and result.implemented_at is not None
                and rec_id in self._active
                and now - result.implemented_at
                >= timedelta(days=self._active[rec_id].validation_criteria.test_period)
            ]
        if not due:
            return []

        current = await self.current_metrics()
        validated = []
        for rec_id, result, rec in due:
            improvement = compute_improvement(result.baseline_metrics, current)
            passed = improvement.overall >= rec.validation_criteria.minimum_improvement
            rollback = not passed and improvement.overall < ROLLBACK_THRESHOLD

            updated = result.model_copy(
                update={
                    "current_metrics": current,
                    "improvement": improvement,
                    "validated": passed,
                    "validated_at": now,
                    "rollback_required": rollback,
                    "state": OptimizationState.VALIDATED if passed else OptimizationState.FAILED,
                }
            )
            if rollback:
                updated = self._rollback(rec, updated)

            with self._lock:
                self._results[rec_id] = updated
            validated.append(updated.model_copy(deep=True))
            logger.info(
                "Validated optimization %s: %s (overall %.1f%%)",
                rec_id,
                "SUCCESS" if passed else "FAILED",
                improvement.overall,
            )
        return validated

    def _rollback(self, rec: OptimizationRecommendation, result: OptimizationResult) -> OptimizationResult:
        logger.warning("Rolling back optimization %s: %s", rec.id, rec.implementation.rollback_plan)
        with self._lock:
            undo = self._undo.pop(rec.id, None)
            self._active.pop(rec.id, None)
        notes = list(result.notes)
        if undo is None:
            notes.append("No revert action recorded")
        else:
            try:
                undo()
                notes.append(f"Rolled back: {rec.implementation.rollback_plan}")
            except Exception as e:
                logger.exception("Rollback of %s failed", rec.id)
                notes.append(f"Rollback failed: {e}")
                return result.model_copy(update={"notes": notes})
        return result.model_copy(update={"state": OptimizationState.ROLLED_BACK, "notes": notes})

    # ------------------------------------------------------------------
    # Manual review queue
    # ------------------------------------------------------------------

    def add_feedback(self, feedback: OptimizationFeedback) -> None:
        with self._lock:
            self._feedback_queue.append(feedback)

    def process_feedback_queue(self) -> int:
        """Drain the queue, returning how many items need a human."""
        with self._lock:
            queued, self._feedback_queue = self._feedback_queue, []
        needs_review = [
            fb
            for fb in queued
            if any(i.impact == Impact.HIGH and not i.actionable for i in fb.insights)
        ]
        if needs_review:
            logger.warning("%d high-impact items require manual review", len(needs_review))
        return len(needs_review)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def add_optimization_result(
        self, recommendation: OptimizationRecommendation, result: OptimizationResult
    ) -> None:
        """Register an externally applied change so it is validated like any other."""
        with self._lock:
            self._active[recommendation.id] = recommendation
            self._results[recommendation.id] = result.model_copy(deep=True)

    def add_result_note(self, recommendation_id: str, note: str) -> OptimizationResult:
        with self._lock:
            result = self._results.get(recommendation_id)
            if result is None:
                raise NotFoundError("Optimization result", recommendation_id)
            result.notes.append(note)
            return result.model_copy(deep=True)

    def get_optimization_result(self, recommendation_id: str) -> OptimizationResult | None:
        with self._lock:
            result = self._results.get(recommendation_id)
            return result.model_copy(deep=True) if result else None

    def get_optimization_history(self) -> dict[str, OptimizationResult]:
        with self._lock:
            return {k: v.model_copy(deep=True) for k, v in self._results.items()}

    def get_active_optimizations(self) -> dict[str, OptimizationRecommendation]:
        with self._lock:
            return {k: v.model_copy(deep=True) for k, v in self._active.items()}

    def get_script_revisions(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._script_revisions]

    def get_optimization_stats(self) -> dict[str, Any]:
        with self._lock:
            results = list(self._results.values())
            active = len(self._active)
        judged = [r for r in results if r.validated_at is not None and r.improvement is not None]
        successful = [r for r in judged if r.improvement.overall > 0]
        failed = [r for r in judged if r.improvement.overall <= 0]
        return {
            "total_optimizations": len(results),
            "successful_optimizations": len(successful),
            "failed_optimizations": len(failed),
            "rolled_back": sum(1 for r in results if r.state == OptimizationState.ROLLED_BACK),
            "average_improvement": (
                sum(r.improvement.overall for r in successful) / len(successful) if successful else 0.0
            ),
            "active_optimizations": active,
        }
