"""Tests for the workflow-engine client."""

from __future__ import annotations

import json

import httpx
import pytest

from lead_dispatch.core.config import Settings
from lead_dispatch.core.errors import WorkflowExecutionError
from lead_dispatch.workflows import WorkflowExecutor, build_event


@pytest.fixture
def engine_settings():
    return Settings(
        workflow_base_url="http://engine.test/api/v1/",
        workflow_api_key="secret",
        workflow_retry_attempts=2,
        workflow_retry_delay=0,
        simulated_io_delay_seconds=0,
    )


def _executor(settings: Settings, handler) -> WorkflowExecutor:
    return WorkflowExecutor(settings, transport=httpx.MockTransport(handler))


class TestBuildEvent:
    def test_envelope(self):
        event = build_event("lead.routed", {"lead": {"id": "l1"}}, correlation_id="l1")
        assert event["eventType"] == "lead.routed"
        assert event["source"] == "lead-dispatch"
        assert event["correlationId"] == "l1"
        assert event["data"] == {"lead": {"id": "l1"}}
        assert "timestamp" in event

    def test_correlation_optional(self):
        assert "correlationId" not in build_event("ping", {})


class TestExecuteWorkflow:
    async def test_request_shape(self, engine_settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"data": {"id": 42, "finished": True, "data": {"ok": True}}}
            )

        executor = _executor(engine_settings, handler)
        execution = await executor.execute_workflow("inbound-lead", {"lead_id": "l1"})
        await executor.close()

        [request] = seen
        assert request.method == "POST"
        assert request.url.path == "/api/v1/workflows/inbound-lead/execute"
        assert request.headers["X-API-Key"] == "secret"
        assert json.loads(request.content) == {"data": {"lead_id": "l1"}}
        assert execution.id == "42"
        assert execution.status == "success"
        assert execution.data == {"ok": True}

    async def test_unfinished_execution_is_running(self, engine_settings):
        executor = _executor(engine_settings, lambda r: httpx.Response(200, json={"id": "e1"}))
        execution = await executor.execute_workflow("wf")
        assert execution.status == "running"
        assert execution.id == "e1"

    async def test_server_error_retried_then_succeeds(self, engine_settings):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"id": "e1", "finished": True})

        execution = await _executor(engine_settings, handler).execute_workflow("wf")

        assert len(calls) == 3
        assert execution.status == "success"

    async def test_retries_exhausted(self, engine_settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        with pytest.raises(WorkflowExecutionError, match="502"):
            await _executor(engine_settings, handler).execute_workflow("wf")
        assert len(calls) == 3

    async def test_client_error_not_retried(self, engine_settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, json={"message": "workflow not found"})

        with pytest.raises(WorkflowExecutionError, match="404"):
            await _executor(engine_settings, handler).execute_workflow("missing")
        assert len(calls) == 1

    async def test_connection_error(self, engine_settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(WorkflowExecutionError, match="connection error"):
            await _executor(engine_settings, handler).execute_workflow("wf")

    async def test_not_configured(self, settings):
        executor = WorkflowExecutor(settings)
        assert executor.configured is False
        with pytest.raises(WorkflowExecutionError):
            await executor.execute_workflow("wf")


class TestHealthCheck:
    async def test_healthy(self, engine_settings):
        def handler(request):
            assert request.url.path == "/api/v1/healthz"
            return httpx.Response(200, json={"status": "ok"})

        assert await _executor(engine_settings, handler).health_check() is True

    async def test_unhealthy_status(self, engine_settings):
        assert await _executor(engine_settings, lambda r: httpx.Response(500)).health_check() is False

    async def test_unreachable(self, engine_settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert await _executor(engine_settings, handler).health_check() is False

    async def test_not_configured(self, settings):
        assert await WorkflowExecutor(settings).health_check() is False
