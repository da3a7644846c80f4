"""Configuration via environment variables.

Every recognised option lives on ``Settings`` with its default. Components
derive their own explicit config structs (``RoutingConfig``,
``SchedulingParameters``) from it instead of merging loose dicts.
"""

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


DEFAULT_SOURCE_QUALITY_WEIGHTS: dict[str, float] = {
    "gmail": 0.8,
    "meta_ads": 0.9,
    "website": 0.95,
    "slack": 0.7,
    "third_party": 0.6,
    "referral": 0.85,
    "other": 0.5,
}


class Settings(BaseSettings):
    # --- Routing ---
    response_time_sla_seconds: int = 60
    urgency_threshold_high: int = 8
    urgency_threshold_medium: int = 5
    intent_threshold_high: float = 0.7
    intent_threshold_medium: float = 0.4
    source_quality_weights: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_SOURCE_QUALITY_WEIGHTS)
    )
    routing_optimization_enabled: bool = True

    # --- Campaign scheduler ---
    poll_interval: int = 60  # seconds between callback/reminder polls
    callback_max_attempts: int = 3
    appointment_duration_minutes: int = 60
    reminder_offsets_hours: list[int] = Field(default_factory=lambda: [24, 2])
    step_delay_multiplier: float = 1.0

    # --- Optimizer ---
    optimization_interval_hours: float = 24.0
    optimization_units: str = "inbound,outbound,virtual-sales,retention,feedback-collector"
    max_implementations_per_cycle: int = 3
    optimization_lookback_days: int = 7
    trend_lookback_days: int = 30
    analytics_retention_days: int = 90  # recorded outcomes older than this are dropped

    # --- Supervisor ---
    supervised_units: str = "dispatcher,inbound,outbound,scheduler,analytics"

    # --- Messaging relay ---
    messaging_relay_url: str = ""
    messaging_api_key: str = ""

    # --- Workflow automation engine ---
    workflow_base_url: str = ""
    workflow_api_key: str = ""
    workflow_timeout: float = 30.0
    workflow_retry_attempts: int = 3
    workflow_retry_delay: float = 1.0
    inbound_workflow_id: str = "inbound-lead"
    outbound_workflow_id: str = "outbound-lead"

    # Stand-in latency for simulated collaborators (seconds)
    simulated_io_delay_seconds: float = 0.01

    log_level: str = "INFO"

    model_config = {"env_prefix": ""}

    @staticmethod
    def split_units(value: str) -> list[str]:
        return [u.strip() for u in value.split(",") if u.strip()]

    @property
    def optimization_unit_ids(self) -> list[str]:
        return self.split_units(self.optimization_units)

    @property
    def supervised_unit_ids(self) -> list[str]:
        return self.split_units(self.supervised_units)


class Thresholds(BaseModel):
    high: float
    medium: float


class RoutingConfig(BaseModel):
    """Tunable routing parameters owned by the rule engine.

    - ``response_time_sla``: target first-response time in seconds.
    - ``urgency_thresholds``: adjusted-urgency cut-offs (1-10 scale).
    - ``intent_thresholds``: intent-score cut-offs (0-1 scale).
    - ``source_quality_weights``: per-source quality, unknown sources get 0.5.
    - ``optimization_enabled``: apply success-rate adjustments and self-tuning.
    """

    response_time_sla: int = 60
    urgency_thresholds: Thresholds = Field(default_factory=lambda: Thresholds(high=8, medium=5))
    intent_thresholds: Thresholds = Field(default_factory=lambda: Thresholds(high=0.7, medium=0.4))
    source_quality_weights: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_SOURCE_QUALITY_WEIGHTS)
    )
    optimization_enabled: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> RoutingConfig:
        return cls(
            response_time_sla=settings.response_time_sla_seconds,
            urgency_thresholds=Thresholds(
                high=settings.urgency_threshold_high,
                medium=settings.urgency_threshold_medium,
            ),
            intent_thresholds=Thresholds(
                high=settings.intent_threshold_high,
                medium=settings.intent_threshold_medium,
            ),
            source_quality_weights=dict(settings.source_quality_weights),
            optimization_enabled=settings.routing_optimization_enabled,
        )


class SchedulingParameters(BaseModel):
    """Tunable scheduling parameters owned by the campaign scheduler.

    - ``delay_multiplier``: scales every step's ``delay_hours``.
    - ``callback_max_attempts``: default attempts for new callbacks.
    - ``appointment_duration_minutes``: default appointment length.
    - ``reminder_offsets_hours``: hours before an appointment each reminder fires.
    """

    delay_multiplier: float = 1.0
    callback_max_attempts: int = 3
    appointment_duration_minutes: int = 60
    reminder_offsets_hours: list[int] = Field(default_factory=lambda: [24, 2])

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulingParameters:
        return cls(
            delay_multiplier=settings.step_delay_multiplier,
            callback_max_attempts=settings.callback_max_attempts,
            appointment_duration_minutes=settings.appointment_duration_minutes,
            reminder_offsets_hours=list(settings.reminder_offsets_hours),
        )
