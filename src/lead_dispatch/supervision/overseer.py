"""Supervisory layer: unit health, overrides, directives, alerts and reports.

The overseer only mutates its own status, alert, override and directive
maps. Other components are reached through read accessors and the pause /
resume hooks they register.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from lead_dispatch.campaigns.scheduler import CampaignScheduler
from lead_dispatch.core.config import Settings
from lead_dispatch.core.errors import NotFoundError, ValidationError
from lead_dispatch.core.models import (
    AgentPerformance,
    AgentStatus,
    AlertLevel,
    DashboardMetrics,
    DateRange,
    DirectiveStatus,
    DirectiveType,
    ExecutiveReport,
    OverrideType,
    PerformanceMetrics,
    ReportSummary,
    ReportType,
    StrategicDirective,
    SystemAlert,
    SystemOverride,
    SystemStatus,
    UnitStatus,
    utcnow,
)
from lead_dispatch.routing.rule_engine import RuleEngine

logger = logging.getLogger(__name__)

SOURCE = "supervisor"

ERROR_COUNT_LIMIT = 10
LOAD_LIMIT = 0.9
ALERT_LOG_LEVELS = {
    AlertLevel.INFO: logging.INFO,
    AlertLevel.WARNING: logging.WARNING,
    AlertLevel.ERROR: logging.WARNING,
    AlertLevel.CRITICAL: logging.ERROR,
}
OFFLINE_FRACTION_LIMIT = 0.3
SLOW_RESPONSE_MS = 60000
SLUGGISH_RESPONSE_MS = 45000

UPDATABLE_STATUS_FIELDS = {
    "agent_type",
    "status",
    "current_load",
    "error_count",
    "uptime",
    "performance",
    "last_activity",
}

DIRECTIVE_TRANSITIONS: dict[DirectiveStatus, set[DirectiveStatus]] = {
    DirectiveStatus.PENDING: {DirectiveStatus.ACTIVE, DirectiveStatus.CANCELLED},
    DirectiveStatus.ACTIVE: {DirectiveStatus.COMPLETED, DirectiveStatus.CANCELLED},
    DirectiveStatus.COMPLETED: set(),  # terminal
    DirectiveStatus.CANCELLED: set(),  # terminal
}

DIRECTIVE_ALERT_TITLES: dict[DirectiveType, str] = {
    DirectiveType.CAMPAIGN: "Campaign Directive Executing",
    DirectiveType.ROUTING_CHANGE: "Routing Changes Applied",
    DirectiveType.PERFORMANCE_TARGET: "Performance Targets Updated",
    DirectiveType.PROCESS_UPDATE: "Process Updates Applied",
}


class OverrideHooks:
    """Pause / resume callbacks a unit registers with the overseer."""

    def __init__(self, pause: Callable[[], Any], resume: Callable[[], Any]):
        self.pause = pause
        self.resume = resume


class SupervisorOverseer:
    """Aggregates health across units and lets operators intervene."""

    def __init__(
        self,
        settings: Settings | None = None,
        rule_engine: RuleEngine | None = None,
        scheduler: CampaignScheduler | None = None,
    ):
        self.settings = settings or Settings()
        self.rule_engine = rule_engine
        self.scheduler = scheduler

        self._lock = threading.RLock()
        self._started_at = utcnow()
        self._statuses: dict[str, AgentStatus] = {}
        self._alerts: dict[str, SystemAlert] = {}
        self._overrides: dict[str, SystemOverride] = {}
        self._directives: dict[str, StrategicDirective] = {}
        self._hooks: dict[str, OverrideHooks] = {}

        for unit_id in self.settings.supervised_unit_ids:
            self._statuses[unit_id] = AgentStatus(agent_id=unit_id, agent_type=unit_id)
        logger.info("Supervising units: %s", ", ".join(self._statuses))

    # ------------------------------------------------------------------
    # Unit status
    # ------------------------------------------------------------------

    def register_override_hook(
        self, agent_id: str, pause: Callable[[], Any], resume: Callable[[], Any]
    ) -> None:
        with self._lock:
            if agent_id not in self._statuses:
                raise NotFoundError("Agent", agent_id)
            self._hooks[agent_id] = OverrideHooks(pause, resume)

    def _snapshot(self, status: AgentStatus) -> AgentStatus:
        snapshot = status.model_copy(deep=True)
        if snapshot.status != UnitStatus.OFFLINE:
            snapshot.uptime = self.get_system_uptime()
        return snapshot

    def get_agent_status(self, agent_id: str) -> AgentStatus:
        with self._lock:
            status = self._statuses.get(agent_id)
            if status is None:
                raise NotFoundError("Agent", agent_id)
            return self._snapshot(status)

    def get_agent_statuses(self) -> list[AgentStatus]:
        with self._lock:
            return [self._snapshot(s) for s in self._statuses.values()]

    def update_agent_status(self, agent_id: str, **updates: Any) -> AgentStatus:
        """Apply ``updates`` to one unit and re-evaluate its alert conditions."""
        unknown = set(updates) - UPDATABLE_STATUS_FIELDS
        if unknown:
            raise ValidationError(f"Unknown agent status fields: {sorted(unknown)}")

        with self._lock:
            current = self._statuses.get(agent_id)
            if current is None:
                raise NotFoundError("Agent", agent_id)
            data = current.model_dump()
            data["last_activity"] = utcnow()
            data.update(updates)
            try:
                status = AgentStatus.model_validate(data)
            except PydanticValidationError as e:
                raise ValidationError(str(e)) from e
            self._statuses[agent_id] = status
            self._check_agent_alerts(status)
            return status.model_copy(deep=True)

    def _check_agent_alerts(self, status: AgentStatus) -> None:
        if status.error_count > ERROR_COUNT_LIMIT:
            self._raise_alert(
                AlertLevel.WARNING,
                "High Error Count",
                f"Agent {status.agent_id} has {status.error_count} errors",
                status.agent_id,
                dedupe=True,
            )
        if status.status == UnitStatus.OFFLINE:
            self._raise_alert(
                AlertLevel.ERROR,
                "Agent Offline",
                f"Agent {status.agent_id} is offline",
                status.agent_id,
                dedupe=True,
            )
        if status.current_load > LOAD_LIMIT:
            self._raise_alert(
                AlertLevel.WARNING,
                "High Agent Load",
                f"Agent {status.agent_id} load is {status.current_load:.0%}",
                status.agent_id,
                dedupe=True,
            )

    def record_unit_performance(self, agent_id: str, performance: PerformanceMetrics) -> None:
        """Replace the performance snapshot shown for one unit."""
        with self._lock:
            status = self._statuses.get(agent_id)
            if status is None:
                raise NotFoundError("Agent", agent_id)
            status.performance = performance.model_copy()

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def _raise_alert(
        self,
        level: AlertLevel,
        title: str,
        message: str,
        source: str = SOURCE,
        dedupe: bool = False,
    ) -> SystemAlert | None:
        with self._lock:
            if dedupe:
                for existing in self._alerts.values():
                    if (
                        not existing.acknowledged
                        and existing.title == title
                        and existing.source == source
                    ):
                        return None
            alert = SystemAlert(level=level, title=title, message=message, source=source)
            self._alerts[alert.id] = alert

        logger.log(ALERT_LOG_LEVELS[level], "[%s] %s: %s", level.value.upper(), title, message)
        return alert

    def raise_alert(
        self, level: AlertLevel, title: str, message: str, source: str = SOURCE
    ) -> SystemAlert | None:
        return self._raise_alert(level, title, message, source)

    def get_system_alerts(self, include_acknowledged: bool = False) -> list[SystemAlert]:
        with self._lock:
            alerts = [
                a.model_copy()
                for a in self._alerts.values()
                if include_acknowledged or not a.acknowledged
            ]
        return sorted(alerts, key=lambda a: a.timestamp, reverse=True)

    def acknowledge_alert(self, alert_id: str) -> SystemAlert:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise NotFoundError("Alert", alert_id)
            if not alert.acknowledged:
                alert.acknowledged = True
                alert.acknowledged_at = utcnow()
            return alert.model_copy()

    def resolve_alert(self, alert_id: str) -> SystemAlert:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise NotFoundError("Alert", alert_id)
            now = utcnow()
            if not alert.acknowledged:
                alert.acknowledged = True
                alert.acknowledged_at = now
            alert.resolved_at = alert.resolved_at or now
            return alert.model_copy()

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------

    def issue_system_override(
        self,
        type: OverrideType | str,
        reason: str,
        issued_by: str,
        target_agent: str | None = None,
        parameters: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> SystemOverride:
        try:
            override_type = OverrideType(type)
        except ValueError as e:
            raise ValidationError(f"Unknown override type: {type}") from e

        if override_type in (
            OverrideType.PAUSE_AGENT,
            OverrideType.RESUME_AGENT,
            OverrideType.PRIORITY_BOOST,
        ):
            if not target_agent:
                raise ValidationError(f"{override_type.value} requires a target agent")
            with self._lock:
                if target_agent not in self._statuses:
                    raise NotFoundError("Agent", target_agent)

        override = SystemOverride(
            type=override_type,
            target_agent=target_agent,
            parameters=parameters or {},
            reason=reason,
            issued_by=issued_by,
            expires_at=expires_at,
        )
        with self._lock:
            self._overrides[override.id] = override

        self._execute_override(override)
        self._raise_alert(
            AlertLevel.INFO,
            "System Override Issued",
            f"{override_type.value} issued by {issued_by}: {reason}",
        )
        return override.model_copy(deep=True)

    def _execute_override(self, override: SystemOverride) -> None:
        if override.type == OverrideType.PAUSE_AGENT:
            self._set_unit_running(override.target_agent, False)
        elif override.type == OverrideType.RESUME_AGENT:
            self._set_unit_running(override.target_agent, True)
        elif override.type == OverrideType.EMERGENCY_STOP:
            for agent_id in list(self._statuses):
                self._set_unit_running(agent_id, False)
            self._raise_alert(
                AlertLevel.CRITICAL,
                "Emergency Stop Activated",
                "All agents have been stopped due to emergency override",
            )
        elif override.type == OverrideType.PRIORITY_BOOST:
            self._raise_alert(
                AlertLevel.INFO,
                "Agent Priority Boosted",
                f"Priority boost applied to agent {override.target_agent}",
            )
        elif override.type == OverrideType.REDIRECT_LEADS:
            self._raise_alert(
                AlertLevel.INFO,
                "Lead Redirection Active",
                f"Lead routing has been modified by system override: {override.parameters}",
            )

    def _set_unit_running(self, agent_id: str, running: bool) -> None:
        self.update_agent_status(
            agent_id, status=UnitStatus.ACTIVE if running else UnitStatus.OFFLINE
        )
        hooks = self._hooks.get(agent_id)
        if hooks is None:
            return
        try:
            (hooks.resume if running else hooks.pause)()
        except Exception:
            logger.exception("Override hook for %s failed", agent_id)
            self._raise_alert(
                AlertLevel.ERROR,
                "Override Hook Failed",
                f"Could not {'resume' if running else 'pause'} {agent_id}",
                agent_id,
            )

    def _expire_overrides(self) -> None:
        now = utcnow()
        with self._lock:
            for override in self._overrides.values():
                if override.is_active and override.expires_at and override.expires_at <= now:
                    override.is_active = False
                    override.cancelled_at = now
                    override.cancel_reason = "expired"

    def cancel_system_override(self, override_id: str, reason: str) -> SystemOverride:
        with self._lock:
            override = self._overrides.get(override_id)
            if override is None:
                raise NotFoundError("Override", override_id)
            override.is_active = False
            override.cancelled_at = utcnow()
            override.cancel_reason = reason
            snapshot = override.model_copy(deep=True)
        self._raise_alert(
            AlertLevel.INFO,
            "System Override Cancelled",
            f"Override {snapshot.type.value} cancelled: {reason}",
        )
        return snapshot

    def get_system_overrides(self, include_inactive: bool = False) -> list[SystemOverride]:
        self._expire_overrides()
        with self._lock:
            return [
                o.model_copy(deep=True)
                for o in self._overrides.values()
                if include_inactive or o.is_active
            ]

    # ------------------------------------------------------------------
    # Strategic directives
    # ------------------------------------------------------------------

    def create_strategic_directive(
        self,
        title: str,
        type: DirectiveType | str,
        created_by: str,
        description: str = "",
        priority: str = "medium",
        target_agents: list[str] | None = None,
        parameters: dict[str, Any] | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> StrategicDirective:
        try:
            directive = StrategicDirective(
                title=title,
                type=DirectiveType(type),
                created_by=created_by,
                description=description,
                priority=priority,
                target_agents=target_agents or [],
                parameters=parameters or {},
                start_date=start_date or utcnow(),
                end_date=end_date,
            )
        except (ValueError, PydanticValidationError) as e:
            raise ValidationError(f"Invalid directive: {e}") from e

        with self._lock:
            self._directives[directive.id] = directive
        self._raise_alert(AlertLevel.INFO, "Strategic Directive Created", f"New directive: {title}")
        return directive.model_copy(deep=True)

    def _transition_directive(self, directive_id: str, target: DirectiveStatus) -> StrategicDirective:
        with self._lock:
            directive = self._directives.get(directive_id)
            if directive is None:
                raise NotFoundError("Directive", directive_id)
            current = directive.status
            if current != target and target not in DIRECTIVE_TRANSITIONS[current]:
                raise ValidationError(
                    f"Illegal directive transition: {current.value} -> {target.value}"
                )
            directive.status = target
            return directive.model_copy(deep=True)

    def activate_strategic_directive(self, directive_id: str) -> StrategicDirective:
        directive = self._transition_directive(directive_id, DirectiveStatus.ACTIVE)

        routing = directive.parameters.get("routing_config")
        if directive.type == DirectiveType.ROUTING_CHANGE and routing and self.rule_engine:
            self.rule_engine.update_config(**routing)

        self._raise_alert(
            AlertLevel.INFO,
            DIRECTIVE_ALERT_TITLES[directive.type],
            f"Directive activated: {directive.title}",
        )
        return directive

    def complete_strategic_directive(self, directive_id: str) -> StrategicDirective:
        return self._transition_directive(directive_id, DirectiveStatus.COMPLETED)

    def cancel_strategic_directive(self, directive_id: str) -> StrategicDirective:
        return self._transition_directive(directive_id, DirectiveStatus.CANCELLED)

    def get_strategic_directives(self) -> list[StrategicDirective]:
        with self._lock:
            return [d.model_copy(deep=True) for d in self._directives.values()]

    def get_active_strategic_directives(self) -> list[StrategicDirective]:
        return [d for d in self.get_strategic_directives() if d.status == DirectiveStatus.ACTIVE]

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def calculate_system_status(self) -> SystemStatus:
        self._expire_overrides()
        with self._lock:
            statuses = list(self._statuses.values())
            critical = any(
                a.level == AlertLevel.CRITICAL and not a.acknowledged for a in self._alerts.values()
            )
            stopped = any(
                o.type == OverrideType.EMERGENCY_STOP and o.is_active for o in self._overrides.values()
            )

        if critical:
            return SystemStatus.CRITICAL
        offline = sum(1 for s in statuses if s.status == UnitStatus.OFFLINE)
        errored = any(s.status == UnitStatus.ERROR for s in statuses)
        if errored or (statuses and offline / len(statuses) > OFFLINE_FRACTION_LIMIT):
            return SystemStatus.DEGRADED
        if stopped:
            return SystemStatus.MAINTENANCE
        return SystemStatus.OPERATIONAL

    def _combined_performance(self) -> PerformanceMetrics:
        with self._lock:
            snapshots = [s.performance for s in self._statuses.values()]
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

    @staticmethod
    def _start_of_day(now: datetime) -> datetime:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)

    def _leads_processed(self, period: DateRange) -> int:
        if self.rule_engine is None:
            return 0
        return sum(1 for a in self.rule_engine.analyses_since(period.start) if a.analyzed_at <= period.end)

    def _appointments_booked(self, period: DateRange) -> int:
        if self.scheduler is None:
            return 0
        return self.scheduler.appointments_created_in(period)

    def get_dashboard_metrics(self) -> DashboardMetrics:
        now = utcnow()
        today = DateRange(start=self._start_of_day(now), end=now)
        performance = self._combined_performance()

        with self._lock:
            statuses = list(self._statuses.values())
            open_alerts = [a for a in self._alerts.values() if not a.acknowledged]

        return DashboardMetrics(
            system_status=self.calculate_system_status(),
            active_agents=sum(
                1 for s in statuses if s.status in (UnitStatus.ACTIVE, UnitStatus.BUSY)
            ),
            total_agents=len(statuses),
            current_load=sum(s.current_load for s in statuses) / len(statuses) if statuses else 0.0,
            leads_processed_today=self._leads_processed(today),
            average_response_time=performance.average_response_time,
            conversion_rate_today=performance.conversion_rate,
            appointments_booked_today=self._appointments_booked(today),
            active_alerts=len(open_alerts),
            critical_alerts=sum(1 for a in open_alerts if a.level == AlertLevel.CRITICAL),
            last_updated=now,
        )

    def get_system_health_score(self) -> float:
        """1.0 for a healthy system, decreasing with outages, load, alerts and latency."""
        metrics = self.get_dashboard_metrics()
        with self._lock:
            statuses = list(self._statuses.values())

        score = 1.0
        if statuses:
            offline = sum(1 for s in statuses if s.status == UnitStatus.OFFLINE)
            score -= offline / len(statuses) * 0.3

        if metrics.current_load > 0.9:
            score -= 0.2
        elif metrics.current_load > 0.7:
            score -= 0.1

        score -= min(metrics.critical_alerts * 0.1, 0.3)
        score -= min(metrics.active_alerts * 0.02, 0.2)

        if metrics.average_response_time > SLOW_RESPONSE_MS:
            score -= 0.2
        elif metrics.average_response_time > SLUGGISH_RESPONSE_MS:
            score -= 0.1

        return max(0.0, score)

    def get_system_uptime(self) -> float:
        """Seconds since the overseer was created."""
        return (utcnow() - self._started_at).total_seconds()

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    @staticmethod
    def default_report_period(report_type: ReportType, now: datetime | None = None) -> DateRange:
        now = now or utcnow()
        if report_type == ReportType.DAILY:
            start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        elif report_type == ReportType.WEEKLY:
            start = now - timedelta(days=7)
        elif report_type == ReportType.MONTHLY:
            start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        else:
            start = now - timedelta(days=1)
        return DateRange(start=start, end=now)

    def generate_executive_report(
        self, report_type: ReportType | str, period: DateRange | None = None
    ) -> ExecutiveReport:
        try:
            kind = ReportType(report_type)
        except ValueError as e:
            raise ValidationError(f"Unknown report type: {report_type}") from e
        period = period or self.default_report_period(kind)

        performance = self._combined_performance()
        metrics = self.get_dashboard_metrics()
        routing_accuracy = (
            self.rule_engine.get_performance_metrics()["routing_accuracy"] if self.rule_engine else None
        )

        with self._lock:
            statuses = list(self._statuses.values())
            critical_alerts = [
                a.model_copy()
                for a in self._alerts.values()
                if a.level == AlertLevel.CRITICAL and period.contains(a.timestamp)
            ]

        return ExecutiveReport(
            report_type=kind,
            period=period,
            summary=ReportSummary(
                total_leads=self._leads_processed(period),
                conversion_rate=performance.conversion_rate,
                average_response_time=performance.average_response_time,
                appointments_booked=self._appointments_booked(period),
                customer_satisfaction=performance.customer_satisfaction_score,
            ),
            agent_performance=[
                AgentPerformance(agent_id=s.agent_id, period=period, metrics=s.performance)
                for s in statuses
            ],
            key_insights=self._key_insights(metrics, routing_accuracy),
            recommendations=self._recommendations(metrics, routing_accuracy),
            alerts=critical_alerts,
        )

    @staticmethod
    def _key_insights(metrics: DashboardMetrics, routing_accuracy: float | None) -> list[str]:
        insights = []
        if metrics.conversion_rate_today > 0.8:
            insights.append("Conversion rates are performing exceptionally well today")
        if 0 < metrics.average_response_time < 30000:
            insights.append("Response times are well within SLA targets")
        if metrics.active_alerts > 5:
            insights.append("Higher than normal alert activity detected")
        if routing_accuracy is not None and routing_accuracy > 0.9:
            insights.append("Routing accuracy is excellent")
        if not insights:
            insights.append("System is operating within normal parameters")
        return insights

    @staticmethod
    def _recommendations(metrics: DashboardMetrics, routing_accuracy: float | None) -> list[str]:
        recommendations = []
        if metrics.current_load > 0.8:
            recommendations.append("Consider scaling up agent capacity due to high system load")
        if metrics.average_response_time > SLUGGISH_RESPONSE_MS:
            recommendations.append("Investigate response time delays and optimize agent workflows")
        if metrics.critical_alerts > 0:
            recommendations.append("Address critical system alerts immediately")
        if routing_accuracy is not None and 0 < routing_accuracy < 0.7:
            recommendations.append("Review and optimize lead routing rules")
        if not recommendations:
            recommendations.append("System is performing well - continue monitoring")
        return recommendations
