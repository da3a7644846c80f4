"""Pydantic models for the lead dispatch system."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Callable

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class LeadSource(str, enum.Enum):
    GMAIL = "gmail"
    META_ADS = "meta_ads"
    WEBSITE = "website"
    SLACK = "slack"
    THIRD_PARTY = "third_party"
    REFERRAL = "referral"
    OTHER = "other"


class LeadType(str, enum.Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"


class TargetAgent(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Priority(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_WEIGHT: dict[Priority, int] = {
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}


class Channel(str, enum.Enum):
    SMS = "sms"
    EMAIL = "email"
    WHATSAPP = "whatsapp"


class CampaignType(str, enum.Enum):
    CALLBACK_SEQUENCE = "callback_sequence"
    APPOINTMENT_BOOKING = "appointment_booking"
    FOLLOW_UP = "follow_up"
    RE_ENGAGEMENT = "re_engagement"


class CampaignStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StepType(str, enum.Enum):
    CALLBACK = "callback"
    APPOINTMENT = "appointment"
    MESSAGE = "message"
    EMAIL = "email"
    WAIT = "wait"


class CallbackStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AppointmentType(str, enum.Enum):
    CONSULTATION = "consultation"
    SITE_VISIT = "site_visit"
    CALLBACK = "callback"
    FOLLOW_UP = "follow_up"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class ReminderType(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    CALL = "call"


class ReminderStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class SequenceStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Impact(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class InsightType(str, enum.Enum):
    PERFORMANCE = "performance"
    SCRIPT = "script"
    TREND = "trend"
    OPTIMIZATION = "optimization"


class TrendDirection(str, enum.Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class RecommendationType(str, enum.Enum):
    ROUTING_RULE = "routing_rule"
    SCRIPT_UPDATE = "script_update"
    TIMING_ADJUSTMENT = "timing_adjustment"
    THRESHOLD_CHANGE = "threshold_change"


class OptimizationState(str, enum.Enum):
    PENDING = "pending"
    IMPLEMENTED = "implemented"
    VALIDATED = "validated"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class UnitStatus(str, enum.Enum):
    ACTIVE = "active"
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"
    OFFLINE = "offline"


class AlertLevel(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class OverrideType(str, enum.Enum):
    PAUSE_AGENT = "pause_agent"
    RESUME_AGENT = "resume_agent"
    REDIRECT_LEADS = "redirect_leads"
    EMERGENCY_STOP = "emergency_stop"
    PRIORITY_BOOST = "priority_boost"


class DirectiveType(str, enum.Enum):
    CAMPAIGN = "campaign"
    ROUTING_CHANGE = "routing_change"
    PERFORMANCE_TARGET = "performance_target"
    PROCESS_UPDATE = "process_update"


class DirectiveStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SystemStatus(str, enum.Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    MAINTENANCE = "maintenance"
    CRITICAL = "critical"


class ReportType(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


# ---------------------------------------------------------------------------
# Leads and routing
# ---------------------------------------------------------------------------

class ContactInfo(BaseModel):
    name: str = ""
    email: str | None = None
    phone: str | None = None
    preferred_channel: Channel = Channel.EMAIL


class LeadSnapshot(BaseModel):
    """Read-only view of a lead handed to the rule engine."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    source: LeadSource = LeadSource.OTHER
    contact_info: ContactInfo = Field(default_factory=ContactInfo)
    lead_type: LeadType | None = None
    urgency_level: int = Field(default=1, ge=1, le=10)
    intent_signals: list[str] = Field(default_factory=list)
    qualification_score: float = Field(default=0.0, ge=0.0, le=1.0)
    created_at: UtcDatetime = Field(default_factory=utcnow)


class RoutingAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    target_agent: TargetAgent
    priority: Priority
    reasoning: list[str] = Field(default_factory=list)
    estimated_response_time: int  # seconds
    suggested_actions: list[str] = Field(default_factory=list)

    @property
    def action_key(self) -> tuple[TargetAgent, Priority]:
        return (self.target_agent, self.priority)


class RoutingDecision(RoutingAction):
    """The dispatcher's verdict for one analysis call. Never mutated."""

    lead_id: str
    rule_id: str | None = None
    confidence: float = 0.0
    decided_at: UtcDatetime = Field(default_factory=utcnow)


class LeadAnalysis(BaseModel):
    lead_id: str
    lead_type: LeadType
    urgency_level: int
    intent_score: float
    source_quality: float
    confidence: float = 0.0
    decision: RoutingDecision | None = None
    analyzed_at: UtcDatetime = Field(default_factory=utcnow)


RuleCondition = Callable[[LeadSnapshot, LeadAnalysis], bool]


class RoutingRule(BaseModel):
    id: str
    name: str = ""
    condition: RuleCondition = Field(exclude=True)
    action: RoutingAction
    priority: int = 5
    enabled: bool = True
    success_rate: float | None = None


class Outcome(BaseModel):
    conversion_successful: bool
    response_time_seconds: float = 0.0
    customer_satisfaction: float | None = Field(default=None, ge=0.0, le=5.0)
    appointment_booked: bool = False


class PerformanceFeedback(BaseModel):
    lead_id: str
    decision: RoutingDecision
    outcome: Outcome
    timestamp: UtcDatetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Campaigns, callbacks, appointments
# ---------------------------------------------------------------------------

class CampaignAudience(BaseModel):
    lead_types: list[LeadType] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    qualification_score_min: float | None = None
    qualification_score_max: float | None = None


class CampaignStepSpec(BaseModel):
    """A campaign step as supplied by the caller, before an id is assigned."""

    order: int
    type: StepType
    delay_hours: float = 0.0
    content: str | None = None


class CampaignStep(CampaignStepSpec):
    model_config = ConfigDict(frozen=True)

    id: str


class CampaignPerformance(BaseModel):
    total_leads: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    appointments_booked: int = 0
    callbacks_scheduled: int = 0
    conversion_rate: float = 0.0


class Campaign(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    type: CampaignType
    status: CampaignStatus = CampaignStatus.ACTIVE
    target_audience: CampaignAudience = Field(default_factory=CampaignAudience)
    steps: list[CampaignStep] = Field(default_factory=list)
    performance: CampaignPerformance = Field(default_factory=CampaignPerformance)
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)


class CampaignProgress(BaseModel):
    campaign_id: str
    lead_id: str
    completed_step_ids: list[str] = Field(default_factory=list)
    failed_step_ids: list[str] = Field(default_factory=list)
    enrolled_at: UtcDatetime = Field(default_factory=utcnow)
    last_step_at: UtcDatetime | None = None


class Callback(BaseModel):
    id: str = Field(default_factory=new_id)
    lead_id: str
    campaign_id: str | None = None
    scheduled_at: UtcDatetime
    status: CallbackStatus = CallbackStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    notes: str | None = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)


class Appointment(BaseModel):
    id: str = Field(default_factory=new_id)
    lead_id: str
    campaign_id: str | None = None
    type: AppointmentType = AppointmentType.CONSULTATION
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    scheduled_at: UtcDatetime
    duration_minutes: int = 60
    location: str | None = None
    notes: list[str] = Field(default_factory=list)
    confirmation_sent: bool = False
    reminders_sent: int = 0
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)


class Reminder(BaseModel):
    id: str = Field(default_factory=new_id)
    type: ReminderType
    offset_hours: int
    scheduled_at: UtcDatetime
    status: ReminderStatus = ReminderStatus.PENDING
    content: str
    sent_at: UtcDatetime | None = None


class ReminderSequence(BaseModel):
    id: str = Field(default_factory=new_id)
    appointment_id: str
    reminders: list[Reminder] = Field(default_factory=list)
    status: SequenceStatus = SequenceStatus.ACTIVE
    created_at: UtcDatetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Performance and analytics
# ---------------------------------------------------------------------------

class DateRange(BaseModel):
    start: UtcDatetime
    end: UtcDatetime

    @model_validator(mode="after")
    def _check_order(self) -> DateRange:
        if self.start > self.end:
            raise ValueError("Start date must be before or equal to end date")
        return self

    def contains(self, ts: datetime) -> bool:
        return self.start <= as_utc(ts) <= self.end


class PerformanceMetrics(BaseModel):
    total_interactions: int = 0
    conversion_rate: float = 0.0
    average_response_time: float = 0.0  # milliseconds
    appointment_booking_rate: float = 0.0
    customer_satisfaction_score: float = 0.0  # 0-5


class ScriptMetrics(BaseModel):
    script_id: str
    script_name: str
    usage_count: int = 0
    success_rate: float = 0.0
    average_response_time: float = 0.0
    conversion_rate: float = 0.0


class AgentPerformance(BaseModel):
    id: str = Field(default_factory=new_id)
    agent_id: str
    period: DateRange
    metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    script_performance: list[ScriptMetrics] = Field(default_factory=list)
    optimization_suggestions: list[str] = Field(default_factory=list)
    created_at: UtcDatetime = Field(default_factory=utcnow)


class Insight(BaseModel):
    id: str = Field(default_factory=new_id)
    type: InsightType
    title: str
    description: str = ""
    impact: Impact = Impact.LOW
    actionable: bool = True
    recommendations: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)
    generated_at: UtcDatetime = Field(default_factory=utcnow)


class ScriptRecommendation(BaseModel):
    type: str  # timing, content, approach, targeting
    description: str
    expected_impact: float
    priority: Priority


class EstimatedImpact(BaseModel):
    conversion_rate_improvement: float = 0.0
    response_time_improvement: float = 0.0
    satisfaction_improvement: float = 0.0


class ScriptOptimization(BaseModel):
    script_id: str
    script_name: str
    current_performance: ScriptMetrics
    recommendations: list[ScriptRecommendation] = Field(default_factory=list)
    estimated_impact: EstimatedImpact = Field(default_factory=EstimatedImpact)


class TrendPoint(BaseModel):
    date: UtcDatetime
    value: float


class PerformanceTrend(BaseModel):
    metric: str
    period: DateRange
    data_points: list[TrendPoint] = Field(default_factory=list)
    trend: TrendDirection = TrendDirection.STABLE
    change_percent: float = 0.0
    significance: Impact = Impact.LOW


# ---------------------------------------------------------------------------
# Optimization
# ---------------------------------------------------------------------------

class OptimizationImplementation(BaseModel):
    action: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    rollback_plan: str = ""
    testing_period: int = 7  # days


class ValidationCriteria(BaseModel):
    metrics: list[str] = Field(default_factory=list)
    minimum_improvement: float = 10.0  # percent
    test_period: int = 14  # days
    significance_threshold: float = 0.05


class OptimizationRecommendation(BaseModel):
    id: str = Field(default_factory=new_id)
    type: RecommendationType
    priority: Priority
    description: str
    expected_impact: float  # percent
    implementation: OptimizationImplementation
    validation_criteria: ValidationCriteria = Field(default_factory=ValidationCriteria)
    agent_id: str | None = None
    created_at: UtcDatetime = Field(default_factory=utcnow)


class Improvement(BaseModel):
    conversion_rate: float = 0.0
    response_time: float = 0.0
    satisfaction: float = 0.0
    overall: float = 0.0


class OptimizationResult(BaseModel):
    recommendation_id: str
    state: OptimizationState = OptimizationState.PENDING
    implemented: bool = False
    implemented_at: UtcDatetime | None = None
    baseline_metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    current_metrics: PerformanceMetrics | None = None
    improvement: Improvement | None = None
    validated: bool = False
    validated_at: UtcDatetime | None = None
    rollback_required: bool = False
    notes: list[str] = Field(default_factory=list)


class OptimizationFeedback(BaseModel):
    id: str = Field(default_factory=new_id)
    type: str = "general"  # routing, script, timing, general
    agent_id: str
    insights: list[Insight] = Field(default_factory=list)
    recommendations: list[OptimizationRecommendation] = Field(default_factory=list)
    performance_data: AgentPerformance
    timestamp: UtcDatetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Supervision
# ---------------------------------------------------------------------------

class AgentStatus(BaseModel):
    agent_id: str
    agent_type: str
    status: UnitStatus = UnitStatus.ACTIVE
    last_activity: UtcDatetime = Field(default_factory=utcnow)
    current_load: float = Field(default=0.0, ge=0.0, le=1.0)
    error_count: int = 0
    uptime: float = 0.0  # seconds
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)


class SystemAlert(BaseModel):
    id: str = Field(default_factory=new_id)
    level: AlertLevel
    title: str
    message: str
    source: str
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    acknowledged: bool = False
    acknowledged_at: UtcDatetime | None = None
    resolved_at: UtcDatetime | None = None


class SystemOverride(BaseModel):
    id: str = Field(default_factory=new_id)
    type: OverrideType
    target_agent: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    reason: str
    issued_by: str
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    expires_at: UtcDatetime | None = None
    is_active: bool = True
    cancelled_at: UtcDatetime | None = None
    cancel_reason: str | None = None


class StrategicDirective(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    type: DirectiveType
    priority: str = "medium"  # low, medium, high, critical
    target_agents: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)
    start_date: UtcDatetime = Field(default_factory=utcnow)
    end_date: UtcDatetime | None = None
    status: DirectiveStatus = DirectiveStatus.PENDING
    created_by: str
    created_at: UtcDatetime = Field(default_factory=utcnow)


class DashboardMetrics(BaseModel):
    system_status: SystemStatus
    active_agents: int = 0
    total_agents: int = 0
    current_load: float = 0.0
    leads_processed_today: int = 0
    average_response_time: float = 0.0
    conversion_rate_today: float = 0.0
    appointments_booked_today: int = 0
    active_alerts: int = 0
    critical_alerts: int = 0
    last_updated: UtcDatetime = Field(default_factory=utcnow)


class ReportSummary(BaseModel):
    total_leads: int = 0
    conversion_rate: float = 0.0
    average_response_time: float = 0.0
    appointments_booked: int = 0
    revenue: float = 0.0
    customer_satisfaction: float = 0.0


class ExecutiveReport(BaseModel):
    id: str = Field(default_factory=new_id)
    report_type: ReportType
    period: DateRange
    summary: ReportSummary = Field(default_factory=ReportSummary)
    agent_performance: list[AgentPerformance] = Field(default_factory=list)
    key_insights: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    alerts: list[SystemAlert] = Field(default_factory=list)
    generated_at: UtcDatetime = Field(default_factory=utcnow)
