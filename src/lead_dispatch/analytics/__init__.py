"""Analytics collaborators feeding the optimizer."""

from lead_dispatch.analytics.base import AnalyticsProvider
from lead_dispatch.analytics.feedback import FeedbackAnalytics, InteractionRecord

__all__ = ["AnalyticsProvider", "FeedbackAnalytics", "InteractionRecord"]
