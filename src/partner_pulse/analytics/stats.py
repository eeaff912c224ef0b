"""Statistics, response-time buckets and date helpers for analytics."""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Sequence


class ResponseBucket(str, Enum):
    UNDER_30M = "under_30m"
    M30_TO_1H = "30m_to_1h"
    H1_TO_4H = "1h_to_4h"
    H4_TO_24H = "4h_to_24h"
    OVER_24H = "over_24h"


# (exclusive upper bound in minutes, bucket); checked in order
_BUCKET_BOUNDS: tuple[tuple[float, ResponseBucket], ...] = (
    (30, ResponseBucket.UNDER_30M),
    (60, ResponseBucket.M30_TO_1H),
    (240, ResponseBucket.H1_TO_4H),
    (1440, ResponseBucket.H4_TO_24H),
)


# ═══════════════════════════════════════════════════════════════════════════
# STATISTICS
# ═══════════════════════════════════════════════════════════════════════════

def median(sorted_values: Sequence[float]) -> float | None:
    """Median of an already-sorted sequence; even counts average the middle pair."""
    n = len(sorted_values)
    if n == 0:
        return None
    mid = n // 2
    if n % 2 == 0:
        return (sorted_values[mid - 1] + sorted_values[mid]) / 2
    return sorted_values[mid]


def percentile(sorted_values: Sequence[float], p: float) -> float | None:
    """Nearest-rank percentile of an already-sorted sequence."""
    n = len(sorted_values)
    if n == 0:
        return None
    rank = math.ceil(p / 100 * n) - 1
    return sorted_values[max(0, min(rank, n - 1))]


def p95(sorted_values: Sequence[float]) -> float | None:
    return percentile(sorted_values, 95)


def average(values: Sequence[float]) -> float | None:
    if not values:
        return None
    return sum(values) / len(values)


def round2(value: float | None) -> float | None:
    """Round half up to two decimals (NUMERIC(10, 2) storage)."""
    if value is None:
        return None
    return math.floor(value * 100 + 0.5) / 100


# ═══════════════════════════════════════════════════════════════════════════
# BUCKETS
# ═══════════════════════════════════════════════════════════════════════════

def classify_bucket(minutes: float) -> ResponseBucket:
    for bound, bucket in _BUCKET_BOUNDS:
        if minutes < bound:
            return bucket
    return ResponseBucket.OVER_24H


def bucket_counts(minutes: Sequence[float]) -> dict[ResponseBucket, int]:
    counts = {bucket: 0 for bucket in ResponseBucket}
    for value in minutes:
        counts[classify_bucket(value)] += 1
    return counts


# ═══════════════════════════════════════════════════════════════════════════
# DATES
# ═══════════════════════════════════════════════════════════════════════════

def date_range(start: date, end: date) -> list[date]:
    """Every day from start to end, both inclusive."""
    days = []
    current = start
    while current <= end:
        days.append(current)
        current += timedelta(days=1)
    return days


def diff_minutes(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 60
