"""Tests for the pure response-time algorithm."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from partner_pulse.analytics.engine import (
    AnalyticsMessage,
    ResponseTimes,
    anchor_bounds,
    build_metric_values,
    partition_by_scope,
    process_message_sequence,
)

ANCHOR = datetime(2026, 3, 2, tzinfo=timezone.utc)
START, END = ANCHOR, ANCHOR + timedelta(days=1)


def msg(minutes: float, staff: bool = False, bot: bool = False, thread: str | None = None) -> AnalyticsMessage:
    posted = ANCHOR + timedelta(minutes=minutes)
    return AnalyticsMessage(
        message_ts=f"{posted.timestamp():.6f}",
        thread_ts=thread,
        sender_is_staff=staff,
        is_bot=bot,
        posted_at=posted,
    )


class TestProcessMessageSequence:
    def test_single_reply(self):
        result = process_message_sequence([msg(600), msg(645, staff=True)], START, END)
        assert result.response_times == [45]
        assert result.unanswered == 0

    def test_measured_from_earliest_pending(self):
        seq = [msg(600), msg(610), msg(615), msg(620, staff=True)]
        result = process_message_sequence(seq, START, END)
        assert result.response_times == [20]

    def test_staff_without_pending_adds_nothing(self):
        seq = [msg(500, staff=True), msg(600), msg(630, staff=True), msg(640, staff=True)]
        result = process_message_sequence(seq, START, END)
        assert result.response_times == [30]

    def test_unanswered_partner_messages(self):
        result = process_message_sequence([msg(600), msg(601)], START, END)
        assert result.response_times == []
        assert result.unanswered == 2

    def test_bots_are_skipped_both_ways(self):
        seq = [msg(600, bot=True), msg(610), msg(615, bot=True, staff=True), msg(640, staff=True)]
        result = process_message_sequence(seq, START, END)
        assert result.response_times == [30]

    def test_reply_in_lookahead_counts(self):
        seq = [msg(23 * 60), msg(24 * 60 + 60, staff=True)]
        result = process_message_sequence(seq, START, END)
        assert result.response_times == [120]

    def test_lookahead_partner_messages_do_not_open(self):
        seq = [msg(24 * 60 + 10), msg(24 * 60 + 20, staff=True)]
        result = process_message_sequence(seq, START, END)
        assert result.response_times == []
        assert result.unanswered == 0

    def test_messages_before_anchor_do_not_open(self):
        seq = [msg(-30), msg(10, staff=True)]
        assert process_message_sequence(seq, START, END).response_times == []


class TestPartition:
    def test_top_level_then_threads(self):
        a, b = msg(1), msg(2, thread="T1")
        c, d = msg(3, thread="T2"), msg(4, thread="T1")
        streams = partition_by_scope([a, b, c, d])
        assert streams == [[a], [b, d], [c]]

    def test_thread_reply_does_not_answer_top_level(self):
        top = msg(600)
        reply = msg(605, staff=True, thread="T1")
        total = []
        unanswered = 0
        for stream in partition_by_scope([top, reply]):
            r = process_message_sequence(stream, START, END)
            total += r.response_times
            unanswered += r.unanswered
        assert total == []
        assert unanswered == 1


class TestMetricValues:
    def test_aggregates_and_rounds(self):
        result = ResponseTimes(
            channel_id="C1",
            partner_id=uuid.uuid4(),
            pod_leader_id=None,
            date=ANCHOR.date(),
            total_messages=6,
            staff_messages=3,
            partner_messages=3,
            response_times=[45.0, 10.0, 20.333333],
            unanswered_count=1,
        )
        values = build_metric_values(result, computed_at=ANCHOR)
        assert values["avg_response_time_mins"] == 25.11
        assert values["median_response_time_mins"] == 20.33
        assert values["p95_response_time_mins"] == 45.0
        assert values["min_response_time_mins"] == 10.0
        assert values["max_response_time_mins"] == 45.0
        assert values["responses_under_30m"] == 2
        assert values["responses_30m_to_1h"] == 1
        assert values["unanswered_count"] == 1
        assert values["algorithm_version"] == 1

    def test_no_samples_leaves_times_null(self):
        result = ResponseTimes(
            channel_id="C1", partner_id=uuid.uuid4(), pod_leader_id=None,
            date=ANCHOR.date(), total_messages=0, staff_messages=0,
            partner_messages=0, response_times=[], unanswered_count=0,
        )
        values = build_metric_values(result, computed_at=ANCHOR)
        assert values["avg_response_time_mins"] is None
        assert values["p95_response_time_mins"] is None
        assert values["max_response_time_mins"] is None

    def test_anchor_bounds(self):
        start, end = anchor_bounds(ANCHOR.date())
        assert start == ANCHOR
        assert end - start == timedelta(days=1)
