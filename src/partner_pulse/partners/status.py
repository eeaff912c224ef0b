"""Partner weekly-status classification.

Free-text statuses are bucketed by partial, case-insensitive keyword match.
Buckets are checked from most to least severe and the first hit wins, so
"onboarding, inactive" is paused, not onboarding.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable


class StatusBucket(str, Enum):
    HEALTHY = "healthy"
    ONBOARDING = "onboarding"
    WARNING = "warning"
    PAUSED = "paused"
    OFFBOARDING = "offboarding"
    CHURNED = "churned"
    UNKNOWN = "unknown"        # has a status, but no keyword matched
    NO_DATA = "no-data"        # nothing recorded

    @property
    def label(self) -> str:
        return BUCKET_LABELS[self]


# Check order is the dict order.
STATUS_KEYWORDS: dict[StatusBucket, tuple[str, ...]] = {
    StatusBucket.CHURNED: ("churn", "cancel", "terminated", "ended"),
    StatusBucket.OFFBOARDING: ("offboard", "off-board", "winding down", "ending"),
    StatusBucket.WARNING: (
        "at risk", "at-risk", "under-perform", "underperform", "struggling",
        "needs attention", "concern", "issue", "problem", "declining",
    ),
    StatusBucket.PAUSED: (
        "pause", "hold", "on hold", "on-hold", "inactive", "dormant", "suspended",
    ),
    StatusBucket.ONBOARDING: (
        "onboard", "on-board", "waiting", "new", "setup", "set-up",
        "setting up", "getting started", "welcome",
    ),
    StatusBucket.HEALTHY: (
        "high perform", "high-perform", "outperform", "out-perform", "excellent",
        "great", "on track", "on-track", "active", "subscribed", "healthy",
        "good", "stable", "strong", "growing",
    ),
}

BUCKET_LABELS: dict[StatusBucket, str] = {
    StatusBucket.HEALTHY: "Healthy",
    StatusBucket.ONBOARDING: "Onboarding",
    StatusBucket.WARNING: "Needs Attention",
    StatusBucket.PAUSED: "Paused",
    StatusBucket.OFFBOARDING: "Offboarding",
    StatusBucket.CHURNED: "Churned",
    StatusBucket.UNKNOWN: "Unknown (Unmapped)",
    StatusBucket.NO_DATA: "No Data",
}


def get_status_bucket(status: str | None) -> StatusBucket:
    if not status or not status.strip():
        return StatusBucket.NO_DATA
    s = status.strip().lower()
    for bucket, keywords in STATUS_KEYWORDS.items():
        if any(keyword in s for keyword in keywords):
            return bucket
    return StatusBucket.UNKNOWN


def find_unmapped_statuses(statuses: Iterable[str | None]) -> list[str]:
    """Distinct statuses no keyword recognizes, sorted, for review."""
    return sorted({
        status for status in statuses
        if status and get_status_bucket(status) is StatusBucket.UNKNOWN
    })
