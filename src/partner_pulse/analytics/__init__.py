"""Response-time analytics over synced message metadata."""

from partner_pulse.analytics.engine import (
    ALGORITHM_VERSION,
    AnalyticsEngine,
    AnalyticsMessage,
    BulkComputeResult,
    process_message_sequence,
)
from partner_pulse.analytics.summary import AnalyticsSummary, get_analytics_summary, summarize_metrics

__all__ = [
    "ALGORITHM_VERSION",
    "AnalyticsEngine",
    "AnalyticsMessage",
    "AnalyticsSummary",
    "BulkComputeResult",
    "get_analytics_summary",
    "process_message_sequence",
    "summarize_metrics",
]
