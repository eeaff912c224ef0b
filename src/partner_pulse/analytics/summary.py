"""Dashboard-level KPIs over stored response metrics."""

from __future__ import annotations

import math
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Iterable

from partner_pulse.analytics.stats import ResponseBucket, round2
from partner_pulse.db.models import SlackResponseMetric
from partner_pulse.db.store import MetricStore

LEADERBOARD_SIZE = 5


@dataclass
class LeaderboardEntry:
    pod_leader_id: uuid.UUID
    avg_response_time_mins: float | None
    total_responses: int
    total_unanswered: int
    channels: int


@dataclass
class AnalyticsSummary:
    date_from: date | None = None
    date_to: date | None = None
    overall_avg_response_mins: float | None = None
    percent_under_1h: float | None = None
    total_responses: int = 0
    total_unanswered: int = 0
    active_channels: int = 0
    buckets: dict[str, int] = field(default_factory=dict)
    pod_leader_leaderboard: list[LeaderboardEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["date_from"] = self.date_from.isoformat() if self.date_from else None
        data["date_to"] = self.date_to.isoformat() if self.date_to else None
        for entry in data["pod_leader_leaderboard"]:
            entry["pod_leader_id"] = str(entry["pod_leader_id"])
        return data


@dataclass
class _Accumulator:
    weighted_sum: float = 0.0
    responses: int = 0
    unanswered: int = 0
    channels: set[str] = field(default_factory=set)

    def add(self, row: SlackResponseMetric) -> None:
        responses = row.total_responses
        if row.avg_response_time_mins is not None and responses > 0:
            self.weighted_sum += row.avg_response_time_mins * responses
            self.responses += responses
        self.unanswered += row.unanswered_count
        self.channels.add(row.channel_id)

    @property
    def weighted_average(self) -> float | None:
        if self.responses == 0:
            return None
        return round2(self.weighted_sum / self.responses)


def summarize_metrics(rows: Iterable[SlackResponseMetric]) -> AnalyticsSummary:
    """Response-weighted KPIs plus the pod-leader leaderboard (lowest average first)."""
    overall = _Accumulator()
    leaders: dict[uuid.UUID, _Accumulator] = {}
    buckets = {bucket.value: 0 for bucket in ResponseBucket}
    total_responses = 0
    under_1h = 0

    for row in rows:
        overall.add(row)
        total_responses += row.total_responses
        under_1h += row.responses_under_30m + row.responses_30m_to_1h
        buckets[ResponseBucket.UNDER_30M.value] += row.responses_under_30m
        buckets[ResponseBucket.M30_TO_1H.value] += row.responses_30m_to_1h
        buckets[ResponseBucket.H1_TO_4H.value] += row.responses_1h_to_4h
        buckets[ResponseBucket.H4_TO_24H.value] += row.responses_4h_to_24h
        buckets[ResponseBucket.OVER_24H.value] += row.responses_over_24h
        if row.pod_leader_id is not None:
            leaders.setdefault(row.pod_leader_id, _Accumulator()).add(row)

    leaderboard = [
        LeaderboardEntry(
            pod_leader_id=leader_id,
            avg_response_time_mins=acc.weighted_average,
            total_responses=acc.responses,
            total_unanswered=acc.unanswered,
            channels=len(acc.channels),
        )
        for leader_id, acc in leaders.items()
        if acc.weighted_average is not None
    ]
    leaderboard.sort(key=lambda e: e.avg_response_time_mins)

    percent = None
    if total_responses > 0:
        percent = math.floor(under_1h / total_responses * 10000 + 0.5) / 100

    return AnalyticsSummary(
        overall_avg_response_mins=overall.weighted_average,
        percent_under_1h=percent,
        total_responses=total_responses,
        total_unanswered=overall.unanswered,
        active_channels=len(overall.channels),
        buckets=buckets,
        pod_leader_leaderboard=leaderboard[:LEADERBOARD_SIZE],
    )


async def get_analytics_summary(
    metrics: MetricStore,
    date_from: date,
    date_to: date,
) -> AnalyticsSummary:
    summary = summarize_metrics(await metrics.list_range(date_from, date_to))
    summary.date_from = date_from
    summary.date_to = date_to
    return summary
