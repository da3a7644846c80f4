"""Exception hierarchy shared by all dispatch components."""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for lead dispatch errors."""


class ValidationError(DispatchError, ValueError):
    """Raised for malformed or missing required input. Never retried."""


class NotFoundError(DispatchError, LookupError):
    """Raised when an entity id is unknown to its owning component."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class TransientDeliveryFailure(DispatchError):
    """Raised by messaging collaborators when a send could not be completed."""


class WorkflowExecutionError(DispatchError):
    """Raised when the workflow automation engine rejects or fails a hand-off."""


class OptimizationCycleFailure(DispatchError):
    """Wraps an exception that aborted a single optimization cycle."""
