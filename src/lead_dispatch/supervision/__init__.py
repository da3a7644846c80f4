"""Supervision: unit health, operator overrides, directives and reporting."""

from lead_dispatch.supervision.overseer import SupervisorOverseer

__all__ = ["SupervisorOverseer"]
