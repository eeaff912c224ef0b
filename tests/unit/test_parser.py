"""Tests for message parsing and sender classification."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from partner_pulse.slack.types import MessageMeta
from partner_pulse.sync.parser import SKIP_SUBTYPES, parse_message, ts_key, ts_to_datetime

STAFF_ID = uuid.uuid4()
LOOKUP = {"USTAFF": STAFF_ID}


def meta(**kwargs) -> MessageMeta:
    kwargs.setdefault("ts", "1772445600.000100")
    return MessageMeta(**kwargs)


class TestTimestamps:
    def test_parses_epoch_with_micros(self):
        dt = ts_to_datetime("1772445600.000100")
        assert dt == datetime(2026, 3, 2, 10, 0, 0, 100, tzinfo=timezone.utc)

    @pytest.mark.parametrize("bad", ["", "abc", "nan", "inf", None])
    def test_unparseable_is_none(self, bad):
        assert ts_to_datetime(bad) is None

    def test_ts_key_orders_numerically(self):
        assert ts_key("999.000001") < ts_key("1000.000000")
        assert ts_key("garbage") == Decimal(0)


class TestSenderClassification:
    def test_staff_user(self):
        row = parse_message(meta(user="USTAFF"), "C1", LOOKUP)
        assert row.sender_type == "user"
        assert row.sender_slack_id == "USTAFF"
        assert row.sender_staff_id == STAFF_ID
        assert row.sender_is_staff is True
        assert row.is_bot is False

    def test_partner_user(self):
        row = parse_message(meta(user="UPARTNER"), "C1", LOOKUP)
        assert row.sender_type == "user"
        assert row.sender_staff_id is None
        assert row.sender_is_staff is False

    def test_bot(self):
        row = parse_message(meta(bot_id="B1"), "C1", LOOKUP)
        assert row.sender_type == "bot"
        assert row.sender_bot_id == "B1"
        assert row.sender_slack_id is None
        assert row.is_bot is True

    def test_user_wins_over_bot_id(self):
        row = parse_message(meta(user="USTAFF", bot_id="B1"), "C1", LOOKUP)
        assert row.sender_type == "user"
        assert row.is_bot is False
        assert row.sender_bot_id is None

    def test_neither_is_system(self):
        row = parse_message(meta(subtype="reminder_add"), "C1", LOOKUP)
        assert row.sender_type == "system"
        assert row.is_bot is False


class TestFiltering:
    @pytest.mark.parametrize("subtype", sorted(SKIP_SUBTYPES))
    def test_housekeeping_subtypes_are_dropped(self, subtype):
        assert parse_message(meta(user="U1", subtype=subtype), "C1", LOOKUP) is None

    def test_other_subtypes_are_kept(self):
        assert parse_message(meta(user="U1", subtype="thread_broadcast"), "C1", LOOKUP) is not None

    def test_malformed_ts_is_dropped(self):
        assert parse_message(meta(ts="not-a-ts", user="U1"), "C1", LOOKUP) is None

    def test_thread_reference_is_kept(self):
        row = parse_message(meta(user="U1", thread_ts="1772445000.000000"), "C1", LOOKUP)
        assert row.thread_ts == "1772445000.000000"
        assert row.channel_id == "C1"
        assert row.message_ts == "1772445600.000100"

    def test_row_has_no_text(self):
        row = parse_message(MessageMeta.from_api({"ts": "1.0", "user": "U1", "text": "secret"}), "C1", {})
        assert "text" not in row.to_row()
