"""Sync run lifecycle: creation, stale recovery, leases, terminal states."""

from __future__ import annotations

import uuid
from datetime import timedelta

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import utc
from partner_pulse.db.models import SlackSyncRun, SyncRunStatus
from partner_pulse.db.store import SyncRunConflictError, SyncRunStore, SyncStateStore

NOW = utc(2026, 3, 2, 12, 0)
LEASE = timedelta(minutes=4)
STALE = timedelta(minutes=15)


@pytest.fixture
def runs(session_factory) -> SyncRunStore:
    return SyncRunStore(session_factory)


async def progress(
    runs: SyncRunStore,
    leased: SlackSyncRun,
    now,
    offset: int = 1,
    channel_ids: tuple[str, ...] = (),
    completed: bool = False,
) -> bool:
    return await runs.record_progress(
        leased.id,
        lease=leased.worker_lease_expires_at,
        channel_ids=channel_ids,
        synced=1,
        failed=0,
        messages=5,
        next_offset=offset,
        now=now,
        completed=completed,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Creation and stale recovery
# ─────────────────────────────────────────────────────────────────────────────

class TestCreateRun:
    async def test_counts_mapped_channels(self, session_factory, runs, partner_id):
        states = SyncStateStore(session_factory)
        await states.map_channel("C1", "acme", partner_id)
        await states.map_channel("C2", "globex", partner_id)
        await states.map_channel("C3", "random", None)

        run = await runs.create("cron", now=NOW, stale_after=STALE)
        assert run.status == SyncRunStatus.PENDING.value
        assert run.total_channels == 2
        assert run.next_channel_offset == 0
        assert run.triggered_by == "cron"

    async def test_second_active_run_conflicts(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        with pytest.raises(SyncRunConflictError) as exc_info:
            await runs.create("manual", now=NOW + timedelta(minutes=1), stale_after=STALE)
        assert exc_info.value.run_id == run.id
        assert exc_info.value.status == "pending"

    async def test_expired_lease_is_recovered_as_failed(self, runs):
        stale = await runs.create("cron", now=NOW, stale_after=STALE)
        await runs.acquire_lease(stale.id, now=NOW, duration=LEASE)

        later = NOW + LEASE + timedelta(minutes=16)
        fresh = await runs.create("cron", now=later, stale_after=STALE)

        old = await runs.get(stale.id)
        assert old.status == SyncRunStatus.FAILED.value
        assert old.error == "Stale run recovered — lease expired"
        assert old.completed_at == later
        assert fresh.status == SyncRunStatus.PENDING.value

    async def test_live_lease_still_conflicts(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        await runs.acquire_lease(run.id, now=NOW, duration=LEASE)
        with pytest.raises(SyncRunConflictError):
            await runs.create("cron", now=NOW + timedelta(minutes=10), stale_after=STALE)

    async def test_never_leased_run_goes_stale_after_creation(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        await runs.create("cron", now=NOW + timedelta(minutes=16), stale_after=STALE)
        assert (await runs.get(run.id)).status == SyncRunStatus.FAILED.value

    async def test_released_lease_counts_from_last_heartbeat(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        leased = await runs.acquire_lease(run.id, now=NOW, duration=LEASE)
        assert await progress(runs, leased, now=NOW + timedelta(minutes=20)) is True

        # Created 30 minutes ago but heartbeat was 10 minutes ago
        with pytest.raises(SyncRunConflictError):
            await runs.create("cron", now=NOW + timedelta(minutes=30), stale_after=STALE)
        await runs.create("cron", now=NOW + timedelta(minutes=36), stale_after=STALE)

    async def test_terminal_runs_do_not_block(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        assert await runs.mark_cancelled(run.id, NOW) is True
        await runs.create("cron", now=NOW + timedelta(seconds=1), stale_after=STALE)

    async def test_database_allows_one_active_run(self, session_factory):
        async with session_factory() as db:
            db.add_all([
                SlackSyncRun(status=SyncRunStatus.COMPLETED.value, created_at=NOW),
                SlackSyncRun(status=SyncRunStatus.FAILED.value, created_at=NOW),
                SlackSyncRun(status=SyncRunStatus.PENDING.value, created_at=NOW),
            ])
            await db.commit()

        async with session_factory() as db:
            db.add(SlackSyncRun(status=SyncRunStatus.RUNNING.value, created_at=NOW))
            with pytest.raises(IntegrityError):
                await db.commit()

    async def test_racing_create_surfaces_as_conflict(self, runs, monkeypatch):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        # Second creator read "no active run" before the first one committed
        monkeypatch.setattr(runs, "_active_run", AsyncMock(return_value=None))

        with pytest.raises(SyncRunConflictError) as exc_info:
            await runs.create("manual", now=NOW + timedelta(seconds=1), stale_after=STALE)
        assert isinstance(exc_info.value.__cause__, IntegrityError)
        assert exc_info.value.run_id == run.id
        assert (await runs.find_active()).id == run.id


# ─────────────────────────────────────────────────────────────────────────────
# Leases
# ─────────────────────────────────────────────────────────────────────────────

class TestLease:
    async def test_first_acquire_starts_the_run(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        leased = await runs.acquire_lease(run.id, now=NOW, duration=LEASE)
        assert leased.status == SyncRunStatus.RUNNING.value
        assert leased.started_at == NOW
        assert leased.worker_lease_expires_at == NOW + LEASE
        assert leased.last_heartbeat_at == NOW

    async def test_held_lease_blocks_other_workers(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        assert await runs.acquire_lease(run.id, now=NOW, duration=LEASE) is not None
        assert await runs.acquire_lease(run.id, now=NOW + timedelta(minutes=1), duration=LEASE) is None

    async def test_expired_lease_is_reclaimed(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        await runs.acquire_lease(run.id, now=NOW, duration=LEASE)
        later = NOW + timedelta(minutes=5)
        leased = await runs.acquire_lease(run.id, now=later, duration=LEASE)
        assert leased is not None
        assert leased.started_at == NOW
        assert leased.worker_lease_expires_at == later + LEASE

    async def test_progress_accumulates_and_releases(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        leased = await runs.acquire_lease(run.id, now=NOW, duration=LEASE)
        await progress(runs, leased, now=NOW, offset=2)
        leased = await runs.acquire_lease(run.id, now=NOW + timedelta(seconds=1), duration=LEASE)
        await progress(runs, leased, now=NOW, offset=4)

        run = await runs.get(run.id)
        assert run.synced_channels == 2
        assert run.total_messages_synced == 10
        assert run.next_channel_offset == 4
        assert run.worker_lease_expires_at is None

    async def test_reclaimed_lease_rejects_late_progress(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        worker_a = await runs.acquire_lease(run.id, now=NOW, duration=LEASE)
        worker_b = await runs.acquire_lease(run.id, now=NOW + timedelta(minutes=5), duration=LEASE)
        assert worker_b is not None

        # A finishes its chunk after B took over
        assert await progress(runs, worker_a, now=NOW + timedelta(minutes=5, seconds=30), offset=2) is False
        assert await runs.mark_failed(run.id, "late", NOW, lease=worker_a.worker_lease_expires_at) is False

        current = await runs.get(run.id)
        assert current.status == SyncRunStatus.RUNNING.value
        assert current.worker_lease_expires_at == worker_b.worker_lease_expires_at
        assert current.next_channel_offset == 0
        assert current.synced_channels == 0
        assert current.total_messages_synced == 0

        # B's lease is intact, so a third worker is still turned away
        third = await runs.acquire_lease(
            run.id, now=NOW + timedelta(minutes=5, seconds=1), duration=LEASE
        )
        assert third is None
        assert await progress(runs, worker_b, now=NOW + timedelta(minutes=6), offset=2) is True

    async def test_progress_stamps_the_chunk_channels(self, session_factory, runs, partner_id):
        states = SyncStateStore(session_factory)
        await states.map_channel("C1", "acme", partner_id)
        await states.map_channel("C2", "globex", partner_id)
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        leased = await runs.acquire_lease(run.id, now=NOW, duration=LEASE)

        await progress(runs, leased, now=NOW, channel_ids=("C1",))
        assert (await states.get("C1")).last_run_id == run.id
        assert (await states.get("C2")).last_run_id is None

    async def test_lost_lease_stamps_nothing(self, session_factory, runs, partner_id):
        states = SyncStateStore(session_factory)
        await states.map_channel("C1", "acme", partner_id)
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        worker_a = await runs.acquire_lease(run.id, now=NOW, duration=LEASE)
        await runs.acquire_lease(run.id, now=NOW + timedelta(minutes=5), duration=LEASE)

        assert await progress(runs, worker_a, now=NOW, channel_ids=("C1",)) is False
        assert (await states.get("C1")).last_run_id is None

    async def test_terminal_and_unknown_runs_cannot_be_leased(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        await runs.mark_cancelled(run.id, NOW)
        assert await runs.acquire_lease(run.id, now=NOW, duration=LEASE) is None
        assert await runs.acquire_lease(uuid.uuid4(), now=NOW, duration=LEASE) is None


# ─────────────────────────────────────────────────────────────────────────────
# Terminal transitions
# ─────────────────────────────────────────────────────────────────────────────

class TestTerminalStates:
    async def test_completion_needs_a_held_lease(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        not_started = await runs.get(run.id)
        assert await progress(runs, not_started, now=NOW, completed=True) is False

        leased = await runs.acquire_lease(run.id, now=NOW, duration=LEASE)
        assert await progress(runs, leased, now=NOW + timedelta(minutes=1), completed=True) is True
        done = await runs.get(run.id)
        assert done.status == SyncRunStatus.COMPLETED.value
        assert done.completed_at == NOW + timedelta(minutes=1)
        assert done.worker_lease_expires_at is None
        assert await progress(runs, leased, now=NOW, completed=True) is False

    async def test_terminal_transition_happens_once(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        assert await runs.mark_cancelled(run.id, NOW) is True
        assert await runs.mark_cancelled(run.id, NOW) is False
        assert await runs.mark_failed(run.id, "late", NOW) is False
        assert (await runs.get(run.id)).status == SyncRunStatus.CANCELLED.value

    async def test_failed_records_error(self, runs):
        run = await runs.create("cron", now=NOW, stale_after=STALE)
        assert await runs.mark_failed(run.id, "Failed to fetch channels: boom", NOW) is True
        assert (await runs.get(run.id)).error == "Failed to fetch channels: boom"

    async def test_find_active_and_latest(self, runs):
        first = await runs.create("cron", now=NOW, stale_after=STALE)
        await runs.mark_cancelled(first.id, NOW)
        second = await runs.create("cron", now=NOW + timedelta(minutes=1), stale_after=STALE)
        assert (await runs.find_active()).id == second.id
        assert (await runs.latest()).id == second.id
        await runs.mark_cancelled(second.id, NOW)
        assert await runs.find_active() is None
