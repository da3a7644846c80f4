"""FastAPI application - JSON API over the lead dispatch components."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from lead_dispatch.core.errors import NotFoundError, ValidationError
from lead_dispatch.core.models import (
    AlertLevel,
    AppointmentType,
    CampaignAudience,
    CampaignStepSpec,
    CampaignType,
    DateRange,
    DirectiveType,
    LeadSnapshot,
    Outcome,
    OverrideType,
    PerformanceFeedback,
    ReportType,
    UtcDatetime,
)
from lead_dispatch.system import DispatchSystem

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def get_system(request: Request) -> DispatchSystem:
    return request.app.state.system


# =========================================================================
# Request bodies
# =========================================================================


class FeedbackRequest(BaseModel):
    lead_id: str
    outcome: Outcome
    script_id: str | None = None
    script_name: str | None = None
    lead_source: str | None = None


class RuleUpdateRequest(BaseModel):
    name: str | None = None
    priority: int | None = None
    enabled: bool | None = None


class CampaignCreateRequest(BaseModel):
    name: str
    type: CampaignType
    target_audience: CampaignAudience = Field(default_factory=CampaignAudience)
    steps: list[CampaignStepSpec] = Field(default_factory=list)


class StepRequest(BaseModel):
    lead_id: str


class CallbackRequest(BaseModel):
    lead_id: str
    scheduled_at: UtcDatetime
    campaign_id: str | None = None
    max_attempts: int | None = None
    notes: str | None = None


class AppointmentRequest(BaseModel):
    lead_id: str
    type: AppointmentType
    scheduled_at: UtcDatetime
    duration_minutes: int | None = None
    location: str | None = None
    campaign_id: str | None = None


class RescheduleRequest(BaseModel):
    new_time: UtcDatetime
    reason: str | None = None


class ReasonRequest(BaseModel):
    reason: str | None = None


class OverrideRequest(BaseModel):
    type: OverrideType
    reason: str
    issued_by: str
    target_agent: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    expires_at: UtcDatetime | None = None


class DirectiveRequest(BaseModel):
    title: str
    type: DirectiveType
    created_by: str
    description: str = ""
    priority: str = "medium"
    target_agents: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)
    start_date: UtcDatetime | None = None
    end_date: UtcDatetime | None = None


class AlertRequest(BaseModel):
    level: AlertLevel
    title: str
    message: str
    source: str = "operator"


def _rule_json(rule) -> dict[str, Any]:
    return rule.model_dump(mode="json")


# =========================================================================
# API: Leads
# =========================================================================


@router.post("/leads/dispatch")
async def api_dispatch(lead: LeadSnapshot, system: DispatchSystem = Depends(get_system)):
    result = await system.dispatcher.dispatch(lead)
    return result.model_dump(mode="json")


@router.post("/leads/analyze")
async def api_analyze(lead: LeadSnapshot, system: DispatchSystem = Depends(get_system)):
    decision = await system.rule_engine.analyze(lead)
    return decision.model_dump(mode="json")


@router.get("/leads/{lead_id}/routing")
async def api_lead_routing(lead_id: str, system: DispatchSystem = Depends(get_system)):
    analysis = system.rule_engine.get_lead_routing_history(lead_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail="Lead has not been analyzed")
    return analysis.model_dump(mode="json")


@router.post("/leads/feedback")
async def api_feedback(request: FeedbackRequest, system: DispatchSystem = Depends(get_system)):
    analysis = system.rule_engine.get_lead_routing_history(request.lead_id)
    if analysis is None or analysis.decision is None:
        raise HTTPException(status_code=404, detail="Lead has not been analyzed")
    feedback = PerformanceFeedback(
        lead_id=request.lead_id, decision=analysis.decision, outcome=request.outcome
    )
    await system.dispatcher.record_outcome(
        feedback,
        script_id=request.script_id,
        script_name=request.script_name,
        lead_source=request.lead_source,
    )
    return {"success": True, "lead_id": request.lead_id}


@router.get("/leads/{lead_id}/callbacks")
async def api_lead_callbacks(lead_id: str, system: DispatchSystem = Depends(get_system)):
    return {"items": [c.model_dump(mode="json") for c in system.scheduler.get_lead_callbacks(lead_id)]}


@router.get("/leads/{lead_id}/appointments")
async def api_lead_appointments(lead_id: str, system: DispatchSystem = Depends(get_system)):
    appointments = system.scheduler.get_lead_appointments(lead_id)
    return {"items": [a.model_dump(mode="json") for a in appointments]}


# =========================================================================
# API: Routing
# =========================================================================


@router.get("/routing/config")
async def api_routing_config(system: DispatchSystem = Depends(get_system)):
    config = system.rule_engine.get_routing_configuration()
    config["routing_rules"] = [_rule_json(r) for r in config["routing_rules"]]
    return jsonable_encoder(config)


@router.patch("/routing/config")
async def api_update_routing_config(
    changes: dict[str, Any], system: DispatchSystem = Depends(get_system)
):
    config = system.rule_engine.update_config(**changes)
    return config.model_dump(mode="json")


@router.get("/routing/metrics")
async def api_routing_metrics(system: DispatchSystem = Depends(get_system)):
    return system.rule_engine.get_performance_metrics()


@router.get("/routing/rules")
async def api_routing_rules(system: DispatchSystem = Depends(get_system)):
    return {"items": [_rule_json(r) for r in system.rule_engine.get_rules()]}


@router.patch("/routing/rules/{rule_id}")
async def api_update_rule(
    rule_id: str, request: RuleUpdateRequest, system: DispatchSystem = Depends(get_system)
):
    rule = system.rule_engine.update_rule(rule_id, **request.model_dump(exclude_none=True))
    return _rule_json(rule)


@router.delete("/routing/rules/{rule_id}")
async def api_remove_rule(rule_id: str, system: DispatchSystem = Depends(get_system)):
    if not system.rule_engine.remove_routing_rule(rule_id):
        raise HTTPException(status_code=404, detail="Routing rule not found")
    return {"success": True, "rule_id": rule_id}


# =========================================================================
# API: Campaigns
# =========================================================================


@router.post("/campaigns")
async def api_create_campaign(
    request: CampaignCreateRequest, system: DispatchSystem = Depends(get_system)
):
    campaign = system.scheduler.create_campaign(
        request.name, request.type, request.target_audience, request.steps
    )
    return campaign.model_dump(mode="json")


@router.get("/campaigns")
async def api_active_campaigns(system: DispatchSystem = Depends(get_system)):
    return {"items": [c.model_dump(mode="json") for c in system.scheduler.get_active_campaigns()]}


@router.get("/campaigns/{campaign_id}")
async def api_campaign(campaign_id: str, system: DispatchSystem = Depends(get_system)):
    return system.scheduler.get_campaign(campaign_id).model_dump(mode="json")


@router.get("/campaigns/{campaign_id}/performance")
async def api_campaign_performance(campaign_id: str, system: DispatchSystem = Depends(get_system)):
    return system.scheduler.get_campaign_performance(campaign_id).model_dump(mode="json")


@router.post("/campaigns/{campaign_id}/pause")
async def api_pause_campaign(campaign_id: str, system: DispatchSystem = Depends(get_system)):
    return system.scheduler.pause_campaign(campaign_id).model_dump(mode="json")


@router.post("/campaigns/{campaign_id}/resume")
async def api_resume_campaign(campaign_id: str, system: DispatchSystem = Depends(get_system)):
    return system.scheduler.resume_campaign(campaign_id).model_dump(mode="json")


@router.post("/campaigns/{campaign_id}/steps/{step_id}/execute")
async def api_execute_step(
    campaign_id: str,
    step_id: str,
    request: StepRequest,
    system: DispatchSystem = Depends(get_system),
):
    ok = await system.scheduler.execute_campaign_step(campaign_id, request.lead_id, step_id)
    return {"success": ok, "campaign_id": campaign_id, "step_id": step_id, "lead_id": request.lead_id}


# =========================================================================
# API: Callbacks
# =========================================================================


@router.post("/callbacks")
async def api_schedule_callback(request: CallbackRequest, system: DispatchSystem = Depends(get_system)):
    callback = await system.scheduler.schedule_callback(
        request.lead_id,
        request.scheduled_at,
        campaign_id=request.campaign_id,
        max_attempts=request.max_attempts,
        notes=request.notes,
    )
    return callback.model_dump(mode="json")


@router.get("/callbacks/{callback_id}")
async def api_callback(callback_id: str, system: DispatchSystem = Depends(get_system)):
    return system.scheduler.get_callback(callback_id).model_dump(mode="json")


@router.post("/callbacks/{callback_id}/cancel")
async def api_cancel_callback(
    callback_id: str, request: ReasonRequest, system: DispatchSystem = Depends(get_system)
):
    callback = await system.scheduler.cancel_callback(callback_id, request.reason)
    return callback.model_dump(mode="json")


# =========================================================================
# API: Appointments
# =========================================================================


@router.post("/appointments")
async def api_book_appointment(
    request: AppointmentRequest, system: DispatchSystem = Depends(get_system)
):
    appointment = await system.scheduler.book_appointment(
        request.lead_id,
        request.type,
        request.scheduled_at,
        duration_minutes=request.duration_minutes,
        location=request.location,
        campaign_id=request.campaign_id,
    )
    return appointment.model_dump(mode="json")


@router.get("/appointments/upcoming")
async def api_upcoming_appointments(
    window_hours: float = Query(24, gt=0),
    system: DispatchSystem = Depends(get_system),
):
    appointments = system.scheduler.get_upcoming_appointments(window_hours)
    return {"items": [a.model_dump(mode="json") for a in appointments]}


@router.get("/appointments/{appointment_id}")
async def api_appointment(appointment_id: str, system: DispatchSystem = Depends(get_system)):
    return system.scheduler.get_appointment(appointment_id).model_dump(mode="json")


@router.get("/appointments/{appointment_id}/reminders")
async def api_appointment_reminders(appointment_id: str, system: DispatchSystem = Depends(get_system)):
    sequences = system.scheduler.get_reminder_sequences(appointment_id)
    return {"items": [s.model_dump(mode="json") for s in sequences]}


@router.post("/appointments/{appointment_id}/reschedule")
async def api_reschedule_appointment(
    appointment_id: str, request: RescheduleRequest, system: DispatchSystem = Depends(get_system)
):
    appointment = await system.scheduler.reschedule_appointment(
        appointment_id, request.new_time, request.reason
    )
    return appointment.model_dump(mode="json")


@router.post("/appointments/{appointment_id}/confirm")
async def api_confirm_appointment(appointment_id: str, system: DispatchSystem = Depends(get_system)):
    return (await system.scheduler.confirm_appointment(appointment_id)).model_dump(mode="json")


@router.post("/appointments/{appointment_id}/cancel")
async def api_cancel_appointment(
    appointment_id: str, request: ReasonRequest, system: DispatchSystem = Depends(get_system)
):
    appointment = await system.scheduler.cancel_appointment(appointment_id, request.reason)
    return appointment.model_dump(mode="json")


@router.post("/appointments/{appointment_id}/complete")
async def api_complete_appointment(
    appointment_id: str, request: ReasonRequest, system: DispatchSystem = Depends(get_system)
):
    appointment = await system.scheduler.complete_appointment(appointment_id, request.reason)
    return appointment.model_dump(mode="json")


@router.post("/appointments/{appointment_id}/no-show")
async def api_no_show(appointment_id: str, system: DispatchSystem = Depends(get_system)):
    return (await system.scheduler.mark_no_show(appointment_id)).model_dump(mode="json")


# =========================================================================
# API: Optimizer
# =========================================================================


@router.post("/optimizer/run")
async def api_run_optimization(system: DispatchSystem = Depends(get_system)):
    summary = await system.optimizer.run_optimization_cycle()
    if summary is None:
        failure = system.optimizer.last_failure
        raise HTTPException(status_code=500, detail=str(failure) if failure else "Cycle failed")
    return summary


@router.get("/optimizer/stats")
async def api_optimizer_stats(system: DispatchSystem = Depends(get_system)):
    return system.optimizer.get_optimization_stats()


@router.get("/optimizer/history")
async def api_optimizer_history(system: DispatchSystem = Depends(get_system)):
    history = system.optimizer.get_optimization_history()
    return {k: v.model_dump(mode="json") for k, v in history.items()}


@router.get("/optimizer/active")
async def api_optimizer_active(system: DispatchSystem = Depends(get_system)):
    active = system.optimizer.get_active_optimizations()
    return {k: v.model_dump(mode="json") for k, v in active.items()}


# =========================================================================
# API: Supervisor
# =========================================================================


@router.get("/supervisor/agents")
async def api_agents(system: DispatchSystem = Depends(get_system)):
    return {"items": [s.model_dump(mode="json") for s in system.overseer.get_agent_statuses()]}


@router.get("/supervisor/alerts")
async def api_alerts(
    include_acknowledged: bool = Query(False),
    system: DispatchSystem = Depends(get_system),
):
    alerts = system.overseer.get_system_alerts(include_acknowledged)
    return {"items": [a.model_dump(mode="json") for a in alerts]}


@router.post("/supervisor/alerts")
async def api_raise_alert(request: AlertRequest, system: DispatchSystem = Depends(get_system)):
    alert = system.overseer.raise_alert(request.level, request.title, request.message, request.source)
    return alert.model_dump(mode="json") if alert else {"deduplicated": True}


@router.post("/supervisor/alerts/{alert_id}/acknowledge")
async def api_acknowledge_alert(alert_id: str, system: DispatchSystem = Depends(get_system)):
    return system.overseer.acknowledge_alert(alert_id).model_dump(mode="json")


@router.post("/supervisor/alerts/{alert_id}/resolve")
async def api_resolve_alert(alert_id: str, system: DispatchSystem = Depends(get_system)):
    return system.overseer.resolve_alert(alert_id).model_dump(mode="json")


@router.get("/supervisor/overrides")
async def api_overrides(
    include_inactive: bool = Query(False),
    system: DispatchSystem = Depends(get_system),
):
    overrides = system.overseer.get_system_overrides(include_inactive)
    return {"items": [o.model_dump(mode="json") for o in overrides]}


@router.post("/supervisor/overrides")
async def api_issue_override(request: OverrideRequest, system: DispatchSystem = Depends(get_system)):
    override = system.overseer.issue_system_override(
        request.type,
        request.reason,
        request.issued_by,
        target_agent=request.target_agent,
        parameters=request.parameters,
        expires_at=request.expires_at,
    )
    return override.model_dump(mode="json")


@router.post("/supervisor/overrides/{override_id}/cancel")
async def api_cancel_override(
    override_id: str, request: ReasonRequest, system: DispatchSystem = Depends(get_system)
):
    override = system.overseer.cancel_system_override(override_id, request.reason or "cancelled")
    return override.model_dump(mode="json")


@router.get("/supervisor/directives")
async def api_directives(system: DispatchSystem = Depends(get_system)):
    return {"items": [d.model_dump(mode="json") for d in system.overseer.get_strategic_directives()]}


@router.post("/supervisor/directives")
async def api_create_directive(request: DirectiveRequest, system: DispatchSystem = Depends(get_system)):
    directive = system.overseer.create_strategic_directive(**request.model_dump())
    return directive.model_dump(mode="json")


@router.post("/supervisor/directives/{directive_id}/activate")
async def api_activate_directive(directive_id: str, system: DispatchSystem = Depends(get_system)):
    return system.overseer.activate_strategic_directive(directive_id).model_dump(mode="json")


@router.post("/supervisor/directives/{directive_id}/complete")
async def api_complete_directive(directive_id: str, system: DispatchSystem = Depends(get_system)):
    return system.overseer.complete_strategic_directive(directive_id).model_dump(mode="json")


@router.post("/supervisor/directives/{directive_id}/cancel")
async def api_cancel_directive(directive_id: str, system: DispatchSystem = Depends(get_system)):
    return system.overseer.cancel_strategic_directive(directive_id).model_dump(mode="json")


@router.get("/supervisor/dashboard")
async def api_dashboard(system: DispatchSystem = Depends(get_system)):
    return system.overseer.get_dashboard_metrics().model_dump(mode="json")


@router.get("/supervisor/health")
async def api_health(system: DispatchSystem = Depends(get_system)):
    return {
        "status": system.overseer.calculate_system_status().value,
        "health_score": system.overseer.get_system_health_score(),
        "uptime_seconds": system.overseer.get_system_uptime(),
        "workflow_engine": await system.dispatcher.executor.health_check(),
    }


@router.get("/supervisor/report")
async def api_report(
    report_type: ReportType = Query(ReportType.DAILY),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    system: DispatchSystem = Depends(get_system),
):
    period = None
    if start is not None and end is not None:
        try:
            period = DateRange(start=start, end=end)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    report = system.overseer.generate_executive_report(report_type, period)
    return report.model_dump(mode="json")


# =========================================================================
# API: Maintenance
# =========================================================================


@router.post("/maintenance/callbacks")
async def api_process_callbacks(system: DispatchSystem = Depends(get_system)):
    return await system.scheduler.process_pending_callbacks()


@router.post("/maintenance/reminders")
async def api_process_reminders(system: DispatchSystem = Depends(get_system)):
    return await system.scheduler.process_pending_reminders()


# =========================================================================
# Application
# =========================================================================


def create_app(system: DispatchSystem | None = None) -> FastAPI:
    system = system or DispatchSystem()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await system.close()

    app = FastAPI(title="Lead Dispatch", version="0.1.0", lifespan=lifespan)
    app.state.system = system
    app.include_router(router)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    return app

