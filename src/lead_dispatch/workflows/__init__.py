"""Hand-off to the external workflow-automation engine."""

from lead_dispatch.workflows.executor import WorkflowExecution, WorkflowExecutor, build_event

__all__ = ["WorkflowExecution", "WorkflowExecutor", "build_event"]
