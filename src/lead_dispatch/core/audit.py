"""Extension points for persistence and CRM audit sync."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class AuditSink(ABC):
    """Receives interaction and status-change events from the core components.

    Calls are made after the owning component has released its lock.
    """

    @abstractmethod
    async def record_interaction(
        self,
        lead_id: str,
        kind: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record a completed interaction (campaign step, message, callback)."""
        ...

    @abstractmethod
    async def record_status_change(
        self,
        entity: str,
        entity_id: str,
        previous_status: str | None,
        new_status: str,
        reason: str | None = None,
    ) -> None:
        """Record a status transition on a callback or appointment."""
        ...


class LoggingAuditSink(AuditSink):
    """Default sink: writes audit events to the log and keeps nothing."""

    async def record_interaction(self, lead_id, kind, details=None):
        logger.info("Interaction %s for lead %s: %s", kind, lead_id, details or {})

    async def record_status_change(
        self, entity, entity_id, previous_status, new_status, reason=None
    ):
        logger.info(
            "%s %s: %s -> %s%s",
            entity,
            entity_id,
            previous_status,
            new_status,
            f" ({reason})" if reason else "",
        )
