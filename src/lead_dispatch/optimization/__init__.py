"""Closed-loop tuning of routing and scheduling parameters."""

from lead_dispatch.optimization.loop import Optimizer, compute_improvement

__all__ = ["Optimizer", "compute_improvement"]
