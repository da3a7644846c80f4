"""Abstract base class for the analytics collaborator."""

from __future__ import annotations

from abc import ABC, abstractmethod

from lead_dispatch.core.models import (
    AgentPerformance,
    DateRange,
    Insight,
    PerformanceTrend,
    ScriptOptimization,
)


class AnalyticsProvider(ABC):
    """Source of aggregated performance data and insights for the optimizer."""

    @abstractmethod
    async def collect_performance_data(self, agent_id: str, period: DateRange) -> AgentPerformance:
        """Aggregate metrics for one downstream unit over ``period``."""
        ...

    @abstractmethod
    async def generate_intelligence_report(self) -> list[Insight]:
        ...

    @abstractmethod
    async def analyze_script_performance(self) -> list[ScriptOptimization]:
        """Per-script improvement estimates, highest estimated impact first."""
        ...

    @abstractmethod
    async def analyze_performance_trends(self, period: DateRange) -> list[PerformanceTrend]:
        ...
