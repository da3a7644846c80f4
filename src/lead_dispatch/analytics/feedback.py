"""In-memory analytics built from recorded lead outcomes."""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from lead_dispatch.analytics.base import AnalyticsProvider
from lead_dispatch.core.config import Settings
from lead_dispatch.core.models import (
    AgentPerformance,
    DateRange,
    EstimatedImpact,
    Impact,
    Insight,
    InsightType,
    Outcome,
    PerformanceMetrics,
    PerformanceTrend,
    Priority,
    ScriptMetrics,
    ScriptOptimization,
    ScriptRecommendation,
    TrendDirection,
    TrendPoint,
    UtcDatetime,
    as_utc,
    utcnow,
)


TREND_METRICS = (
    "conversion_rate",
    "average_response_time",
    "customer_satisfaction_score",
    "appointment_booking_rate",
)

SLA_RESPONSE_MS = 60000
TARGET_SATISFACTION = 4.0
MIN_SOURCE_SAMPLE = 5


class InteractionRecord(BaseModel):
    """One measured outcome attributed to a downstream unit."""

    agent_id: str
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    conversion_successful: bool
    response_time_ms: float = 0.0
    customer_satisfaction: float | None = None
    appointment_booked: bool = False
    script_id: str | None = None
    script_name: str | None = None
    lead_source: str | None = None


def aggregate(records: list[InteractionRecord]) -> PerformanceMetrics:
    if not records:
        return PerformanceMetrics()
    n = len(records)
    rated = [r.customer_satisfaction for r in records if r.customer_satisfaction is not None]
    return PerformanceMetrics(
        total_interactions=n,
        conversion_rate=sum(1 for r in records if r.conversion_successful) / n,
        average_response_time=sum(r.response_time_ms for r in records) / n,
        appointment_booking_rate=sum(1 for r in records if r.appointment_booked) / n,
        customer_satisfaction_score=sum(rated) / len(rated) if rated else 0.0,
    )


def classify_trend(change_percent: float) -> tuple[TrendDirection, Impact]:
    if change_percent > 5:
        direction = TrendDirection.INCREASING
    elif change_percent < -5:
        direction = TrendDirection.DECREASING
    else:
        direction = TrendDirection.STABLE

    magnitude = abs(change_percent)
    if magnitude >= 20:
        significance = Impact.HIGH
    elif magnitude >= 10:
        significance = Impact.MEDIUM
    else:
        significance = Impact.LOW
    return direction, significance


class FeedbackAnalytics(AnalyticsProvider):
    """Aggregates outcomes recorded by the dispatcher.

    Metrics, script statistics and trends are all computed from the same
    record list. Nothing is persisted.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._lock = threading.RLock()
        self._records: list[InteractionRecord] = []
        self._next_prune = utcnow()

    def record_outcome(
        self,
        agent_id: str,
        outcome: Outcome,
        timestamp: datetime | None = None,
        script_id: str | None = None,
        script_name: str | None = None,
        lead_source: str | None = None,
    ) -> InteractionRecord:
        record = InteractionRecord(
            agent_id=agent_id,
            timestamp=timestamp or utcnow(),
            conversion_successful=outcome.conversion_successful,
            response_time_ms=outcome.response_time_seconds * 1000,
            customer_satisfaction=outcome.customer_satisfaction,
            appointment_booked=outcome.appointment_booked,
            script_id=script_id,
            script_name=script_name,
            lead_source=lead_source,
        )
        with self._lock:
            self._records.append(record)
            self._prune()
        return record

    def _prune(self) -> None:
        # Runs at most hourly; records may arrive out of timestamp order.
        now = utcnow()
        if now < self._next_prune:
            return
        cutoff = now - timedelta(days=self.settings.analytics_retention_days)
        self._records = [r for r in self._records if r.timestamp >= cutoff]
        self._next_prune = now + timedelta(hours=1)

    def _select(self, agent_id: str | None = None, period: DateRange | None = None) -> list[InteractionRecord]:
        with self._lock:
            return [
                r
                for r in self._records
                if (agent_id is None or r.agent_id == agent_id)
                and (period is None or period.contains(r.timestamp))
            ]

    def _recent_period(self) -> DateRange:
        now = utcnow()
        return DateRange(start=now - timedelta(days=self.settings.optimization_lookback_days), end=now)

    # ------------------------------------------------------------------
    # AnalyticsProvider
    # ------------------------------------------------------------------

    async def collect_performance_data(self, agent_id: str, period: DateRange) -> AgentPerformance:
        records = self._select(agent_id, period)
        metrics = aggregate(records)
        return AgentPerformance(
            agent_id=agent_id,
            period=period,
            metrics=metrics,
            script_performance=self._script_metrics(records),
            optimization_suggestions=self._suggestions(metrics),
        )

    async def generate_intelligence_report(self) -> list[Insight]:
        period = self._recent_period()
        insights: list[Insight] = []
        insights.extend(self._performance_insights(period))
        insights.extend(self._script_insights(period))
        insights.extend(self._trend_insights())
        insights.extend(self._source_insights(period))
        return insights

    async def analyze_script_performance(self) -> list[ScriptOptimization]:
        optimizations = [self._optimize_script(m) for m in self._script_metrics(self._select())]
        optimizations.sort(key=lambda o: o.estimated_impact.conversion_rate_improvement, reverse=True)
        return optimizations

    async def analyze_performance_trends(self, period: DateRange) -> list[PerformanceTrend]:
        return self._compute_trends(period)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _compute_trends(self, period: DateRange) -> list[PerformanceTrend]:
        records = self._select(period=period)
        buckets: dict = defaultdict(list)
        for r in records:
            buckets[r.timestamp.date()].append(r)
        days = sorted(buckets)

        trends = []
        for metric in TREND_METRICS:
            points = [
                TrendPoint(
                    date=datetime.combine(day, datetime.min.time(), tzinfo=period.end.tzinfo),
                    value=getattr(aggregate(buckets[day]), metric),
                )
                for day in days
            ]
            change = 0.0
            if len(points) >= 2 and points[0].value:
                change = (points[-1].value - points[0].value) / points[0].value * 100
            direction, significance = classify_trend(change)
            trends.append(
                PerformanceTrend(
                    metric=metric,
                    period=period,
                    data_points=points,
                    trend=direction,
                    change_percent=round(change, 1),
                    significance=significance,
                )
            )
        return trends

    @staticmethod
    def _script_metrics(records: list[InteractionRecord]) -> list[ScriptMetrics]:
        by_script: dict[str, list[InteractionRecord]] = defaultdict(list)
        for r in records:
            if r.script_id:
                by_script[r.script_id].append(r)

        metrics = []
        for script_id, items in by_script.items():
            agg = aggregate(items)
            rated = [r for r in items if r.customer_satisfaction is not None]
            metrics.append(
                ScriptMetrics(
                    script_id=script_id,
                    script_name=next((r.script_name for r in items if r.script_name), script_id),
                    usage_count=len(items),
                    # a rating of 4+ counts as a successful interaction
                    success_rate=(
                        sum(1 for r in rated if r.customer_satisfaction >= 4) / len(rated)
                        if rated
                        else agg.conversion_rate
                    ),
                    average_response_time=agg.average_response_time,
                    conversion_rate=agg.conversion_rate,
                )
            )
        return metrics

    @staticmethod
    def _optimize_script(script: ScriptMetrics) -> ScriptOptimization:
        recommendations = []
        if script.conversion_rate < 0.7:
            recommendations.append(
                ScriptRecommendation(
                    type="content",
                    description="Revise opening questions to better qualify leads",
                    expected_impact=15,
                    priority=Priority.HIGH,
                )
            )
        if script.average_response_time > SLA_RESPONSE_MS:
            recommendations.append(
                ScriptRecommendation(
                    type="timing",
                    description="Optimize script flow to reduce interaction time",
                    expected_impact=20,
                    priority=Priority.MEDIUM,
                )
            )
        if script.success_rate < 0.8:
            recommendations.append(
                ScriptRecommendation(
                    type="approach",
                    description="Improve objection handling techniques",
                    expected_impact=12,
                    priority=Priority.MEDIUM,
                )
            )
        if not recommendations:
            recommendations.append(
                ScriptRecommendation(
                    type="content",
                    description="Fine-tune script based on recent interaction patterns",
                    expected_impact=8,
                    priority=Priority.LOW,
                )
            )

        total = sum(r.expected_impact for r in recommendations)
        return ScriptOptimization(
            script_id=script.script_id,
            script_name=script.script_name,
            current_performance=script,
            recommendations=recommendations,
            estimated_impact=EstimatedImpact(
                conversion_rate_improvement=max(15, total / 2),
                response_time_improvement=20,
                satisfaction_improvement=10,
            ),
        )

    @staticmethod
    def _suggestions(metrics: PerformanceMetrics) -> list[str]:
        if metrics.total_interactions == 0:
            return []
        suggestions = []
        if metrics.conversion_rate < 0.6:
            suggestions.append(
                "Consider improving qualification questions to better identify high-intent leads"
            )
        if metrics.average_response_time > SLA_RESPONSE_MS:
            suggestions.append("Response time exceeds SLA - optimize routing and agent availability")
        if 0 < metrics.customer_satisfaction_score < TARGET_SATISFACTION:
            suggestions.append(
                "Customer satisfaction below target - review conversation scripts and agent training"
            )
        if metrics.appointment_booking_rate < 0.3:
            suggestions.append(
                "Low appointment booking rate - enhance closing techniques and availability options"
            )
        return suggestions

    def _performance_insights(self, period: DateRange) -> list[Insight]:
        by_agent: dict[str, list[InteractionRecord]] = defaultdict(list)
        for r in self._select(period=period):
            by_agent[r.agent_id].append(r)

        insights = []
        for agent_id, records in sorted(by_agent.items()):
            metrics = aggregate(records)
            if metrics.conversion_rate < 0.6:
                insights.append(
                    Insight(
                        type=InsightType.PERFORMANCE,
                        title="Conversion Rate Improvement Opportunity",
                        description=(
                            f"{agent_id} converted {metrics.conversion_rate:.0%} of "
                            f"{metrics.total_interactions} leads in the last "
                            f"{self.settings.optimization_lookback_days} days"
                        ),
                        impact=Impact.HIGH,
                        recommendations=[
                            "Implement advanced qualification scripts",
                            "Provide additional agent training on objection handling",
                        ],
                        data={"agent_id": agent_id, "current_rate": metrics.conversion_rate},
                    )
                )
            if metrics.average_response_time > SLA_RESPONSE_MS:
                insights.append(
                    Insight(
                        type=InsightType.PERFORMANCE,
                        title="Response Time Above SLA",
                        description=(
                            f"{agent_id} averages {metrics.average_response_time / 1000:.0f}s to respond"
                        ),
                        impact=Impact.HIGH,
                        recommendations=["Review agent workload distribution"],
                        data={"agent_id": agent_id, "average_response_time": metrics.average_response_time},
                    )
                )
            if 0 < metrics.customer_satisfaction_score < TARGET_SATISFACTION:
                insights.append(
                    Insight(
                        type=InsightType.PERFORMANCE,
                        title="Customer Satisfaction Below Target",
                        description=(
                            f"{agent_id} satisfaction is {metrics.customer_satisfaction_score:.1f}/5"
                        ),
                        impact=Impact.MEDIUM,
                        recommendations=["Review conversation scripts and agent training"],
                        data={"agent_id": agent_id, "satisfaction": metrics.customer_satisfaction_score},
                    )
                )
        return insights

    def _script_insights(self, period: DateRange) -> list[Insight]:
        return [
            Insight(
                type=InsightType.SCRIPT,
                title="Script Optimization Identified",
                description=f"{m.script_name} converts {m.conversion_rate:.0%} over {m.usage_count} uses",
                impact=Impact.MEDIUM,
                recommendations=["Add urgency-building questions", "Improve appointment booking flow"],
                data={"script_id": m.script_id, "conversion_rate": m.conversion_rate},
            )
            for m in self._script_metrics(self._select(period=period))
            if m.conversion_rate < 0.7
        ]

    def _trend_insights(self) -> list[Insight]:
        now = utcnow()
        period = DateRange(start=now - timedelta(days=self.settings.trend_lookback_days), end=now)
        return [
            Insight(
                type=InsightType.TREND,
                title=f"{t.metric.replace('_', ' ').capitalize()} Trending {t.trend.value.capitalize()}",
                description=(
                    f"{t.metric} changed {t.change_percent:+.0f}% over the last "
                    f"{self.settings.trend_lookback_days} days"
                ),
                impact=t.significance,
                data={"trend": t.trend.value, "change_percent": t.change_percent},
            )
            for t in self._compute_trends(period)
            if t.trend != TrendDirection.STABLE and t.significance != Impact.LOW
        ]

    def _source_insights(self, period: DateRange) -> list[Insight]:
        by_source: dict[str, list[InteractionRecord]] = defaultdict(list)
        for r in self._select(period=period):
            if r.lead_source:
                by_source[r.lead_source].append(r)

        rates = {
            source: aggregate(items).conversion_rate
            for source, items in by_source.items()
            if len(items) >= MIN_SOURCE_SAMPLE
        }
        if len(rates) < 2:
            return []

        best = max(rates, key=rates.get)
        worst = min(rates, key=rates.get)
        if rates[best] - rates[worst] < 0.2:
            return []
        return [
            Insight(
                type=InsightType.OPTIMIZATION,
                title="Lead Source Performance Variance",
                description=(
                    f"{best} leads convert at {rates[best]:.0%} against {rates[worst]:.0%} for {worst}"
                ),
                impact=Impact.HIGH,
                recommendations=[f"Increase budget allocation for {best}", f"Review lead capture for {worst}"],
                data={"conversion_by_source": rates},
            )
        ]

    def record_count(self) -> int:
        with self._lock:
            return len(self._records)

    def records_since(self, since: datetime) -> list[InteractionRecord]:
        with self._lock:
            return [r for r in self._records if r.timestamp >= as_utc(since)]
