"""Core modules: models, config, errors, audit hooks."""

from lead_dispatch.core.config import RoutingConfig, SchedulingParameters, Settings
from lead_dispatch.core.errors import (
    DispatchError,
    NotFoundError,
    OptimizationCycleFailure,
    TransientDeliveryFailure,
    ValidationError,
    WorkflowExecutionError,
)
from lead_dispatch.core.models import (
    LeadSnapshot,
    PerformanceFeedback,
    RoutingDecision,
    RoutingRule,
)

__all__ = [
    "Settings",
    "RoutingConfig",
    "SchedulingParameters",
    "DispatchError",
    "ValidationError",
    "NotFoundError",
    "TransientDeliveryFailure",
    "WorkflowExecutionError",
    "OptimizationCycleFailure",
    "LeadSnapshot",
    "RoutingDecision",
    "RoutingRule",
    "PerformanceFeedback",
]
