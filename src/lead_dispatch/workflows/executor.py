"""HTTP client for the downstream workflow-automation engine."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

import httpx
from pydantic import BaseModel, Field

from lead_dispatch.core.config import Settings
from lead_dispatch.core.errors import WorkflowExecutionError
from lead_dispatch.core.models import utcnow

logger = logging.getLogger(__name__)

EVENT_SOURCE = "lead-dispatch"


class WorkflowExecution(BaseModel):
    id: str
    workflow_id: str
    status: str  # new, running, success, error, canceled, waiting
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    data: Any = None
    error: str | None = None


def build_event(
    event_type: str, data: dict[str, Any], correlation_id: str | None = None
) -> dict[str, Any]:
    """Wrap ``data`` in the event envelope workflows are triggered with."""
    event: dict[str, Any] = {
        "eventType": event_type,
        "timestamp": utcnow().isoformat(),
        "data": data,
        "source": EVENT_SOURCE,
    }
    if correlation_id:
        event["correlationId"] = correlation_id
    return event


def _is_retryable(exc: httpx.HTTPError) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError))


class WorkflowExecutor:
    """Triggers workflow executions, retrying transient failures with backoff."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or Settings()
        self.base_url = self.settings.workflow_base_url.rstrip("/")
        self.api_key = self.settings.workflow_api_key
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["X-API-Key"] = self.api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.settings.workflow_timeout,
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        attempts = max(self.settings.workflow_retry_attempts, 0)
        retry = 0
        while True:
            try:
                resp = await self.client.request(method, path, **kwargs)
                resp.raise_for_status()
                return resp
            except httpx.HTTPError as e:
                if retry >= attempts or not _is_retryable(e):
                    raise
                retry += 1
                delay = self.settings.workflow_retry_delay * 2 ** (retry - 1)
                logger.warning(
                    "Retrying %s %s (attempt %d/%d) after %.2fs: %s",
                    method, path, retry, attempts, delay, e,
                )
                await asyncio.sleep(delay)

    async def execute_workflow(
        self, workflow_id: str, payload: dict[str, Any] | None = None
    ) -> WorkflowExecution:
        if not self.configured:
            raise WorkflowExecutionError("Workflow base URL not configured")

        try:
            resp = await self._request(
                "POST", f"/workflows/{workflow_id}/execute", json={"data": payload or {}}
            )
        except httpx.HTTPStatusError as e:
            raise WorkflowExecutionError(
                f"Workflow {workflow_id} failed: {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise WorkflowExecutionError(f"Workflow {workflow_id} connection error: {e}") from e

        body = resp.json() if resp.content else {}
        data = body.get("data", body) if isinstance(body, dict) else {}
        execution = WorkflowExecution(
            id=str(data.get("id", "")),
            workflow_id=workflow_id,
            status="success" if data.get("finished") else "running",
            started_at=data.get("startedAt") or utcnow(),
            finished_at=data.get("stoppedAt"),
            data=data.get("data"),
            error=data.get("error"),
        )
        logger.info("Workflow %s execution %s: %s", workflow_id, execution.id, execution.status)
        return execution

    async def health_check(self) -> bool:
        if not self.configured:
            return False
        try:
            resp = await self.client.get("/healthz")
        except httpx.HTTPError as e:
            logger.error("Workflow engine health check failed: %s", e)
            return False
        return resp.status_code == 200

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
