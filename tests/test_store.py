"""Store-level behavior against a throwaway SQLite database."""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import utc
from partner_pulse.db.models import EntityExternalId, PartnerAssignment, SlackMessage
from partner_pulse.db.session import db_session
from partner_pulse.db.store import (
    DirectoryStore,
    MessageStore,
    MetricStore,
    SyncRunStore,
    SyncStateStore,
)

POSTED = utc(2026, 3, 2, 10, 0)


def row(ts: str, channel_id: str = "C1", **overrides) -> dict:
    values = {
        "channel_id": channel_id,
        "message_ts": ts,
        "thread_ts": None,
        "sender_type": "user",
        "sender_slack_id": "U1",
        "sender_bot_id": None,
        "sender_staff_id": None,
        "sender_is_staff": False,
        "is_bot": False,
        "posted_at": POSTED,
    }
    values.update(overrides)
    return values


# ─────────────────────────────────────────────────────────────────────────────
# Channel sync state
# ─────────────────────────────────────────────────────────────────────────────

class TestSyncStateStore:
    async def test_map_channel_creates_then_remaps(self, session_factory, partner_id):
        states = SyncStateStore(session_factory)
        state = await states.map_channel("C1", "acme", partner_id)
        assert state.partner_id == partner_id
        assert state.is_backfill_complete is False
        assert state.message_count == 0

        await states.advance_latest_ts("C1", "1700000000.000100")
        other = uuid.uuid4()
        state = await states.map_channel("C1", "acme-renamed", other)
        assert state.partner_id == other
        assert state.channel_name == "acme-renamed"
        assert state.latest_ts == "1700000000.000100"

    async def test_latest_ts_only_moves_forward(self, session_factory, partner_id):
        states = SyncStateStore(session_factory)
        await states.map_channel("C1", "acme", partner_id)

        assert await states.advance_latest_ts("C1", "1700000005.000000") is True
        assert await states.advance_latest_ts("C1", "1700000001.000000") is False
        assert (await states.get("C1")).latest_ts == "1700000005.000000"

    async def test_oldest_ts_only_moves_backward(self, session_factory, partner_id):
        states = SyncStateStore(session_factory)
        await states.map_channel("C1", "acme", partner_id)

        assert await states.seed_oldest_ts("C1", "1700000005.000000") is True
        assert await states.seed_oldest_ts("C1", "1600000000.000000") is False
        assert await states.recede_oldest_ts("C1", "1700000009.000000") is False
        assert await states.recede_oldest_ts("C1", "1690000000.000000") is True
        assert (await states.get("C1")).oldest_ts == "1690000000.000000"

    async def test_success_accumulates_and_clears_error(self, session_factory, partner_id):
        states = SyncStateStore(session_factory)
        await states.map_channel("C1", "acme", partner_id)
        await states.record_error("C1", "boom")
        await states.record_success("C1", 3, POSTED)
        await states.record_success("C1", 4, POSTED + timedelta(hours=1))

        state = await states.get("C1")
        assert state.message_count == 7
        assert state.error is None
        assert state.last_synced_at == POSTED + timedelta(hours=1)

    async def test_only_mapped_channels_are_listed(self, session_factory, partner_id):
        states = SyncStateStore(session_factory)
        await states.map_channel("C1", "acme", partner_id)
        await states.map_channel("C2", "random", None)
        await states.map_channel("C3", "globex", partner_id)
        await states.record_success("C3", 0, POSTED)

        assert await states.count_mapped() == 2
        window = await states.list_mapped_window(0, 10)
        assert [s.channel_id for s in window] == ["C1", "C3"]      # never synced first
        status = await states.list_mapped()
        assert [s.channel_id for s in status] == ["C3", "C1"]      # nulls last

    async def test_run_window_keeps_processed_channels_in_front(self, session_factory, partner_id):
        states = SyncStateStore(session_factory)
        runs = SyncRunStore(session_factory)
        for channel_id in ("C1", "C2", "C3", "C4"):
            await states.map_channel(channel_id, channel_id.lower(), partner_id)
        run = await runs.create("cron", now=POSTED, stale_after=timedelta(minutes=15))
        leased = await runs.acquire_lease(run.id, now=POSTED, duration=timedelta(minutes=4))

        first = await states.list_mapped_window(0, 2, run_id=run.id)
        assert [s.channel_id for s in first] == ["C1", "C2"]
        # Syncing makes C1 and C2 the freshest channels
        await states.record_success("C1", 0, POSTED)
        await states.record_success("C2", 0, POSTED)
        await runs.record_progress(
            run.id,
            lease=leased.worker_lease_expires_at,
            channel_ids=["C1", "C2"],
            synced=2,
            failed=0,
            messages=0,
            next_offset=2,
            now=POSTED,
        )

        second = await states.list_mapped_window(2, 2, run_id=run.id)
        assert [s.channel_id for s in second] == ["C3", "C4"]
        unscoped = await states.list_mapped_window(2, 2)
        assert [s.channel_id for s in unscoped] == ["C1", "C2"]


# ─────────────────────────────────────────────────────────────────────────────
# Messages
# ─────────────────────────────────────────────────────────────────────────────

class TestMessageStore:
    async def test_duplicate_insert_is_a_noop(self, session_factory):
        messages = MessageStore(session_factory)
        assert await messages.insert_ignore_duplicates([row("1.000001"), row("1.000002")]) == 2
        assert await messages.insert_ignore_duplicates([row("1.000001"), row("1.000003")]) == 1
        assert await messages.count_for_channel("C1") == 3

    async def test_same_ts_in_other_channel_is_distinct(self, session_factory):
        messages = MessageStore(session_factory)
        await messages.insert_ignore_duplicates([row("1.000001")])
        assert await messages.insert_ignore_duplicates([row("1.000001", channel_id="C2")]) == 1

    async def test_empty_batch(self, session_factory):
        assert await MessageStore(session_factory).insert_ignore_duplicates([]) == 0

    async def test_fetch_window_is_half_open_and_ordered(self, session_factory):
        messages = MessageStore(session_factory)
        await messages.insert_ignore_duplicates([
            row("3.0", posted_at=POSTED + timedelta(hours=2)),
            row("1.0", posted_at=POSTED),
            row("2.0", posted_at=POSTED + timedelta(hours=1)),
            row("4.0", posted_at=POSTED + timedelta(hours=3)),
        ])
        window = await messages.fetch_window("C1", POSTED, POSTED + timedelta(hours=3))
        assert [m.message_ts for m in window] == ["1.0", "2.0", "3.0"]
        assert window[0].posted_at.tzinfo is not None

    def test_text_is_not_a_column(self):
        assert "text" not in SlackMessage.__table__.columns


# ─────────────────────────────────────────────────────────────────────────────
# Directory
# ─────────────────────────────────────────────────────────────────────────────

class TestDirectoryStore:
    async def test_staff_lookup_filters_type_and_source(self, session_factory):
        staff_id = uuid.uuid4()
        async with db_session(session_factory) as db:
            db.add_all([
                EntityExternalId(entity_type="staff", entity_id=staff_id,
                                 source="slack_user", external_id="USTAFF"),
                EntityExternalId(entity_type="partner", entity_id=uuid.uuid4(),
                                 source="slack_user", external_id="UPARTNER"),
                EntityExternalId(entity_type="staff", entity_id=uuid.uuid4(),
                                 source="email", external_id="ana@example.com"),
            ])

        lookup = await DirectoryStore(session_factory).staff_by_slack_user()
        assert lookup == {"USTAFF": staff_id}

    async def test_current_pod_leader(self, session_factory, partner_id):
        old, current, csm = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        async with db_session(session_factory) as db:
            db.add_all([
                PartnerAssignment(partner_id=partner_id, staff_id=old, assignment_role="pod_leader",
                                  assigned_at=utc(2025, 1, 1), unassigned_at=utc(2026, 1, 1)),
                PartnerAssignment(partner_id=partner_id, staff_id=current, assignment_role="pod_leader",
                                  assigned_at=utc(2026, 1, 1)),
                PartnerAssignment(partner_id=partner_id, staff_id=csm, assignment_role="csm",
                                  assigned_at=utc(2026, 2, 1)),
            ])

        directory = DirectoryStore(session_factory)
        assert await directory.current_assignee(partner_id) == current
        assert await directory.current_assignee(uuid.uuid4()) is None


# ─────────────────────────────────────────────────────────────────────────────
# Metrics
# ─────────────────────────────────────────────────────────────────────────────

class TestMetricStore:
    async def test_upsert_overwrites_same_channel_day(self, session_factory, partner_id):
        store = MetricStore(session_factory)
        base = {
            "channel_id": "C1",
            "partner_id": partner_id,
            "pod_leader_id": None,
            "date": POSTED.date(),
            "avg_response_time_mins": 12.5,
            "responses_under_30m": 2,
            "computed_at": POSTED,
        }
        first = await store.upsert(base)
        second = await store.upsert({**base, "avg_response_time_mins": 40.0,
                                     "computed_at": POSTED + timedelta(days=1)})

        assert first.id == second.id
        assert second.avg_response_time_mins == 40.0
        assert second.computed_at == POSTED + timedelta(days=1)
        rows = await store.list_range(POSTED.date(), POSTED.date())
        assert len(rows) == 1

    async def test_list_range_filters_channels(self, session_factory, partner_id):
        store = MetricStore(session_factory)
        for channel_id in ("C1", "C2"):
            await store.upsert({"channel_id": channel_id, "partner_id": partner_id,
                                "date": POSTED.date(), "computed_at": POSTED})
        rows = await store.list_range(POSTED.date(), POSTED.date(), channel_ids=["C2"])
        assert [r.channel_id for r in rows] == ["C2"]
        assert await store.get("C1", POSTED.date()) is not None
