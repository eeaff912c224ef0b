"""Response time analytics engine.

Measures how quickly staff answer partner messages in mapped channels and
pre-aggregates the result per channel per day into slack_response_metrics.

Algorithm (per channel, per anchor day):
1. Load messages for [anchor day, anchor day + lookahead + 1)
2. Partition into the top-level stream and one stream per thread
3. Walk each stream in order: anchor-day partner messages open a pending
   window; the next staff message closes every pending message at once
4. Response time = staff reply - EARLIEST pending partner message
5. Aggregate (avg, median, p95, min, max, buckets) and upsert the day's row

Recent days are recomputed on every scheduled run until their lookahead
has fully elapsed; the upsert makes that safe.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any, Callable, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError

from partner_pulse.analytics.stats import (
    ResponseBucket,
    average,
    bucket_counts,
    date_range,
    diff_minutes,
    median,
    p95,
    round2,
)
from partner_pulse.config import Settings, settings as default_settings
from partner_pulse.db.models import SlackMessage, SlackResponseMetric, utcnow
from partner_pulse.db.session import SessionFactory
from partner_pulse.db.store import DirectoryStore, MessageStore, MetricStore, SyncStateStore
from partner_pulse.observability.metrics import get_metrics

logger = structlog.get_logger()

ALGORITHM_VERSION = 1


@dataclass
class AnalyticsMessage:
    message_ts: str
    thread_ts: str | None
    sender_is_staff: bool
    is_bot: bool
    posted_at: datetime

    @classmethod
    def from_row(cls, row: SlackMessage) -> AnalyticsMessage:
        return cls(
            message_ts=row.message_ts,
            thread_ts=row.thread_ts,
            sender_is_staff=row.sender_is_staff,
            is_bot=row.is_bot,
            posted_at=row.posted_at,
        )


@dataclass
class SequenceResult:
    response_times: list[float] = field(default_factory=list)
    unanswered: int = 0


@dataclass
class ResponseTimes:
    """Raw output of one (channel, day) computation, before aggregation."""
    channel_id: str
    partner_id: uuid.UUID
    pod_leader_id: uuid.UUID | None
    date: date
    total_messages: int
    staff_messages: int
    partner_messages: int
    response_times: list[float]
    unanswered_count: int


@dataclass
class ComputeError:
    channel_id: str
    date: date
    error: str


@dataclass
class BulkComputeResult:
    computed: int = 0
    failed: int = 0
    errors: list[ComputeError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "computed": self.computed,
            "failed": self.failed,
            "errors": [
                {"channel_id": e.channel_id, "date": e.date.isoformat(), "error": e.error}
                for e in self.errors
            ],
        }


# ═══════════════════════════════════════════════════════════════════════════
# CORE ALGORITHM (pure)
# ═══════════════════════════════════════════════════════════════════════════

def process_message_sequence(
    messages: Sequence[AnalyticsMessage],
    anchor_start: datetime,
    anchor_end: datetime,
) -> SequenceResult:
    """Walk one chronologically ordered stream (top-level or a single thread).

    Only partner messages posted on the anchor day open pending windows;
    staff replies anywhere in the lookahead close them. A staff message with
    nothing pending contributes no sample.
    """
    result = SequenceResult()
    pending: list[AnalyticsMessage] = []

    for msg in messages:
        if msg.is_bot:
            continue
        if msg.sender_is_staff:
            if pending:
                result.response_times.append(diff_minutes(msg.posted_at, pending[0].posted_at))
                pending.clear()
        elif anchor_start <= msg.posted_at < anchor_end:
            pending.append(msg)

    result.unanswered = len(pending)
    return result


def partition_by_scope(messages: Sequence[AnalyticsMessage]) -> list[list[AnalyticsMessage]]:
    """Top-level stream first, then one stream per thread; order is preserved."""
    top_level: list[AnalyticsMessage] = []
    threads: dict[str, list[AnalyticsMessage]] = {}
    for msg in messages:
        if msg.thread_ts is None:
            top_level.append(msg)
        else:
            threads.setdefault(msg.thread_ts, []).append(msg)
    return [top_level, *threads.values()]


def anchor_bounds(anchor_date: date) -> tuple[datetime, datetime]:
    start = datetime.combine(anchor_date, dt_time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def build_metric_values(result: ResponseTimes, computed_at: datetime) -> dict[str, Any]:
    """Aggregate raw response times into a slack_response_metrics row."""
    ordered = sorted(result.response_times)
    buckets = bucket_counts(ordered)
    return {
        "channel_id": result.channel_id,
        "partner_id": result.partner_id,
        "pod_leader_id": result.pod_leader_id,
        "date": result.date,
        "total_messages": result.total_messages,
        "staff_messages": result.staff_messages,
        "partner_messages": result.partner_messages,
        "avg_response_time_mins": round2(average(ordered)),
        "median_response_time_mins": round2(median(ordered)),
        "p95_response_time_mins": round2(p95(ordered)),
        "max_response_time_mins": round2(ordered[-1]) if ordered else None,
        "min_response_time_mins": round2(ordered[0]) if ordered else None,
        "responses_under_30m": buckets[ResponseBucket.UNDER_30M],
        "responses_30m_to_1h": buckets[ResponseBucket.M30_TO_1H],
        "responses_1h_to_4h": buckets[ResponseBucket.H1_TO_4H],
        "responses_4h_to_24h": buckets[ResponseBucket.H4_TO_24H],
        "responses_over_24h": buckets[ResponseBucket.OVER_24H],
        "unanswered_count": result.unanswered_count,
        "computed_at": computed_at,
        "algorithm_version": ALGORITHM_VERSION,
    }


# ═══════════════════════════════════════════════════════════════════════════
# ENGINE (database-backed)
# ═══════════════════════════════════════════════════════════════════════════

class AnalyticsEngine:
    """Computes and stores response metrics."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or default_settings
        self.clock = clock
        self.messages = MessageStore(session_factory)
        self.metrics = MetricStore(session_factory)
        self.states = SyncStateStore(session_factory)
        self.directory = DirectoryStore(session_factory)

    @property
    def lookahead_days(self) -> int:
        return self.config.analytics_lookahead_days

    async def compute_response_times(
        self,
        channel_id: str,
        partner_id: uuid.UUID,
        anchor_date: date,
    ) -> ResponseTimes:
        anchor_start, anchor_end = anchor_bounds(anchor_date)
        window_end = anchor_start + timedelta(days=self.lookahead_days + 1)

        rows = await self.messages.fetch_window(channel_id, anchor_start, window_end)
        messages = [AnalyticsMessage.from_row(row) for row in rows]

        response_times: list[float] = []
        unanswered = 0
        for stream in partition_by_scope(messages):
            seq = process_message_sequence(stream, anchor_start, anchor_end)
            response_times.extend(seq.response_times)
            unanswered += seq.unanswered

        on_anchor_day = [
            m for m in messages
            if not m.is_bot and anchor_start <= m.posted_at < anchor_end
        ]
        staff_messages = sum(1 for m in on_anchor_day if m.sender_is_staff)

        return ResponseTimes(
            channel_id=channel_id,
            partner_id=partner_id,
            pod_leader_id=await self._pod_leader(partner_id),
            date=anchor_date,
            total_messages=len(on_anchor_day),
            staff_messages=staff_messages,
            partner_messages=len(on_anchor_day) - staff_messages,
            response_times=response_times,
            unanswered_count=unanswered,
        )

    async def compute_channel_metrics(
        self,
        channel_id: str,
        partner_id: uuid.UUID,
        anchor_date: date,
    ) -> SlackResponseMetric:
        """Compute one (channel, day) and overwrite its stored row."""
        result = await self.compute_response_times(channel_id, partner_id, anchor_date)
        return await self.metrics.upsert(build_metric_values(result, self.clock()))

    async def compute_all_channels(
        self,
        date_from: date,
        date_to: date,
        channel_id: str | None = None,
    ) -> BulkComputeResult:
        """Every mapped channel (or just ``channel_id``) for every day in range.

        One failing (channel, day) is recorded and skipped; the rest still run.
        """
        channels = [
            c for c in await self.states.list_mapped()
            if channel_id is None or c.channel_id == channel_id
        ]
        outcome = BulkComputeResult()
        if not channels:
            return outcome

        days = date_range(date_from, date_to)
        metrics = get_metrics()
        for channel in channels:
            for day in days:
                t0 = time.monotonic()
                try:
                    await self.compute_channel_metrics(channel.channel_id, channel.partner_id, day)
                except Exception as e:
                    outcome.failed += 1
                    outcome.errors.append(
                        ComputeError(channel_id=channel.channel_id, date=day, error=str(e))
                    )
                    logger.error(
                        "analytics_compute_failed",
                        channel_id=channel.channel_id,
                        date=day.isoformat(),
                        error=str(e),
                    )
                    await metrics.metric_computed(False, (time.monotonic() - t0) * 1000)
                    continue
                outcome.computed += 1
                await metrics.metric_computed(True, (time.monotonic() - t0) * 1000)

        logger.info(
            "analytics_compute_done",
            computed=outcome.computed,
            failed=outcome.failed,
            channels=len(channels),
            days=len(days),
        )
        return outcome

    async def compute_daily_rolling_window(self) -> BulkComputeResult:
        """Scheduled entry point: recompute [today - lookahead, yesterday]."""
        date_from, date_to = self.rolling_window()
        logger.info(
            "analytics_rolling_window",
            date_from=date_from.isoformat(),
            date_to=date_to.isoformat(),
        )
        return await self.compute_all_channels(date_from, date_to)

    def rolling_window(self) -> tuple[date, date]:
        today = self.clock().astimezone(timezone.utc).date()
        return today - timedelta(days=self.lookahead_days), today - timedelta(days=1)

    async def _pod_leader(self, partner_id: uuid.UUID) -> uuid.UUID | None:
        try:
            return await self.directory.current_assignee(partner_id)
        except SQLAlchemyError as e:
            logger.warning("pod_leader_lookup_failed", partner_id=str(partner_id), error=str(e))
            return None
