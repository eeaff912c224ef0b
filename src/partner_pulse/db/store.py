"""Typed data access for the sync and analytics tables.

Each store method is one short transaction and one named, field-level
change: there is no generic "update these columns" entry point. Atomicity
that matters (lease acquisition, idempotent inserts, metric upserts) is
pushed into single conditional SQL statements rather than
check-then-write in Python.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Sequence

import structlog
from sqlalchemy import Table, case, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from partner_pulse.db.models import (
    EntityExternalId,
    PartnerAssignment,
    SlackMessage,
    SlackResponseMetric,
    SlackSyncRun,
    SlackSyncState,
    SyncRunStatus,
    utcnow,
)
from partner_pulse.db.session import SessionFactory, db_session

logger = structlog.get_logger()

STAFF_ENTITY_TYPE = "staff"
SLACK_USER_SOURCE = "slack_user"
POD_LEADER_ROLE = "pod_leader"


class SyncRunConflictError(RuntimeError):
    """Raised when a sync run is requested while another is still active."""

    def __init__(self, run_id: uuid.UUID, status: str) -> None:
        self.run_id = run_id
        self.status = status
        super().__init__(f"A sync run is already {status} ({run_id})")


class SyncRunNotFoundError(LookupError):
    """Raised when a run id does not exist."""


def dialect_insert(session: AsyncSession, table: Table) -> Any:
    """INSERT construct supporting ON CONFLICT for the session's backend."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)


class _Store:
    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._factory = session_factory

    def _session(self):
        return db_session(self._factory)


# ═══════════════════════════════════════════════════════════════════════════════
# CHANNEL SYNC STATE
# ═══════════════════════════════════════════════════════════════════════════════

class SyncStateStore(_Store):
    """Per-channel watermarks. Only the lease holder writes here."""

    async def get(self, channel_id: str) -> SlackSyncState | None:
        async with self._session() as db:
            return await db.scalar(
                select(SlackSyncState).where(SlackSyncState.channel_id == channel_id)
            )

    async def map_channel(
        self,
        channel_id: str,
        channel_name: str,
        partner_id: uuid.UUID | None,
    ) -> SlackSyncState:
        """Create or re-map a channel's sync row. Watermarks are never touched."""
        async with self._session() as db:
            table = SlackSyncState.__table__
            stmt = dialect_insert(db, table).values(
                id=uuid.uuid4(),
                channel_id=channel_id,
                channel_name=channel_name,
                partner_id=partner_id,
                is_backfill_complete=False,
                bot_is_member=False,
                message_count=0,
                created_at=utcnow(),
                updated_at=utcnow(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.channel_id],
                set_={
                    "channel_name": stmt.excluded.channel_name,
                    "partner_id": stmt.excluded.partner_id,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await db.execute(stmt)
            return await db.scalar(
                select(SlackSyncState)
                .where(SlackSyncState.channel_id == channel_id)
                .execution_options(populate_existing=True)
            )

    async def count_mapped(self) -> int:
        async with self._session() as db:
            return await db.scalar(
                select(func.count())
                .select_from(SlackSyncState)
                .where(SlackSyncState.partner_id.is_not(None))
            ) or 0

    async def list_mapped_window(
        self,
        offset: int,
        limit: int,
        run_id: uuid.UUID | None = None,
    ) -> list[SlackSyncState]:
        """Mapped channels, stalest first (never-synced channels lead).

        With ``run_id``, channels already stamped by that run sort first.
        Each chunk stamps exactly the channels it handled, so the prefix
        grows by the offset's advance and an offset into this ordering
        stays valid across chunks even though syncing moves last_synced_at.
        """
        order_by: list[Any] = []
        if run_id is not None:
            order_by.append(case((SlackSyncState.last_run_id == run_id, 0), else_=1))
        order_by += [
            SlackSyncState.last_synced_at.asc().nulls_first(),
            SlackSyncState.channel_id.asc(),
        ]
        async with self._session() as db:
            result = await db.scalars(
                select(SlackSyncState)
                .where(SlackSyncState.partner_id.is_not(None))
                .order_by(*order_by)
                .offset(offset)
                .limit(limit)
            )
            return list(result)

    async def list_mapped(self) -> list[SlackSyncState]:
        """Mapped channels, most recently synced first (for status views)."""
        async with self._session() as db:
            result = await db.scalars(
                select(SlackSyncState)
                .where(SlackSyncState.partner_id.is_not(None))
                .order_by(
                    SlackSyncState.last_synced_at.desc().nulls_last(),
                    SlackSyncState.channel_id.asc(),
                )
            )
            return list(result)

    async def mark_bot_member(self, channel_id: str) -> None:
        await self._update(channel_id, bot_is_member=True)

    async def advance_latest_ts(self, channel_id: str, ts: str) -> bool:
        """Move the forward watermark to ``ts`` unless it is already newer."""
        return await self._update(
            channel_id,
            or_(SlackSyncState.latest_ts.is_(None), SlackSyncState.latest_ts < ts),
            latest_ts=ts,
        )

    async def seed_oldest_ts(self, channel_id: str, ts: str) -> bool:
        """Set the backfill watermark for the first time."""
        return await self._update(
            channel_id,
            SlackSyncState.oldest_ts.is_(None),
            oldest_ts=ts,
        )

    async def recede_oldest_ts(self, channel_id: str, ts: str) -> bool:
        """Move the backfill watermark to ``ts`` unless it is already older."""
        return await self._update(
            channel_id,
            or_(SlackSyncState.oldest_ts.is_(None), SlackSyncState.oldest_ts > ts),
            oldest_ts=ts,
        )

    async def mark_backfill_complete(self, channel_id: str) -> None:
        await self._update(channel_id, is_backfill_complete=True)

    async def record_success(
        self,
        channel_id: str,
        messages_added: int,
        synced_at: datetime,
    ) -> None:
        await self._update(
            channel_id,
            message_count=SlackSyncState.message_count + messages_added,
            last_synced_at=synced_at,
            error=None,
        )

    async def record_error(self, channel_id: str, error: str) -> None:
        await self._update(channel_id, error=error)

    async def _update(self, channel_id: str, *criteria: Any, **values: Any) -> bool:
        values["updated_at"] = utcnow()
        async with self._session() as db:
            result = await db.execute(
                update(SlackSyncState.__table__)
                .where(SlackSyncState.__table__.c.channel_id == channel_id, *criteria)
                .values(**values)
            )
            return result.rowcount > 0


# ═══════════════════════════════════════════════════════════════════════════════
# MESSAGE METADATA
# ═══════════════════════════════════════════════════════════════════════════════

class MessageStore(_Store):
    """Content-free message rows keyed by (channel_id, message_ts)."""

    async def insert_ignore_duplicates(self, rows: list[dict[str, Any]]) -> int:
        """Insert rows, silently skipping ones already stored.

        Returns the number of rows actually inserted.
        """
        if not rows:
            return 0
        table = SlackMessage.__table__
        async with self._session() as db:
            stmt = (
                dialect_insert(db, table)
                .values([{"id": uuid.uuid4(), **row} for row in rows])
                .on_conflict_do_nothing(index_elements=[table.c.channel_id, table.c.message_ts])
                .returning(table.c.id)
            )
            result = await db.execute(stmt)
            return len(result.all())

    async def fetch_window(
        self,
        channel_id: str,
        start: datetime,
        end: datetime,
    ) -> list[SlackMessage]:
        """Messages with start <= posted_at < end, oldest first."""
        async with self._session() as db:
            result = await db.scalars(
                select(SlackMessage)
                .where(
                    SlackMessage.channel_id == channel_id,
                    SlackMessage.posted_at >= start,
                    SlackMessage.posted_at < end,
                )
                .order_by(SlackMessage.posted_at.asc(), SlackMessage.message_ts.asc())
            )
            return list(result)

    async def count_for_channel(self, channel_id: str) -> int:
        async with self._session() as db:
            return await db.scalar(
                select(func.count())
                .select_from(SlackMessage)
                .where(SlackMessage.channel_id == channel_id)
            ) or 0

    async def attribute_to_staff(self, slack_user_id: str, staff_id: uuid.UUID) -> int:
        """Attribute a user's still-unattributed messages to a staff member."""
        table = SlackMessage.__table__
        async with self._session() as db:
            result = await db.execute(
                update(table)
                .where(
                    table.c.sender_slack_id == slack_user_id,
                    table.c.sender_staff_id.is_(None),
                )
                .values(sender_staff_id=staff_id, sender_is_staff=True)
            )
            return result.rowcount

    async def clear_staff_attribution(self, slack_user_id: str, staff_id: uuid.UUID) -> int:
        """Undo ``attribute_to_staff`` for rows attributed to ``staff_id``."""
        table = SlackMessage.__table__
        async with self._session() as db:
            result = await db.execute(
                update(table)
                .where(
                    table.c.sender_slack_id == slack_user_id,
                    table.c.sender_staff_id == staff_id,
                )
                .values(sender_staff_id=None, sender_is_staff=False)
            )
            return result.rowcount


# ═══════════════════════════════════════════════════════════════════════════════
# SYNC RUNS
# ═══════════════════════════════════════════════════════════════════════════════

class SyncRunStore(_Store):
    """Run lifecycle and the lease that serializes workers."""

    async def get(self, run_id: uuid.UUID) -> SlackSyncRun | None:
        async with self._session() as db:
            return await db.get(SlackSyncRun, run_id)

    async def latest(self) -> SlackSyncRun | None:
        async with self._session() as db:
            return await db.scalar(
                select(SlackSyncRun)
                .order_by(SlackSyncRun.created_at.desc(), SlackSyncRun.id.desc())
                .limit(1)
            )

    async def find_active(self) -> SlackSyncRun | None:
        async with self._session() as db:
            return await db.scalar(
                select(SlackSyncRun)
                .where(SlackSyncRun.status.in_(SyncRunStatus.active()))
                .order_by(SlackSyncRun.created_at.desc(), SlackSyncRun.id.desc())
                .limit(1)
            )

    async def create(
        self,
        triggered_by: str,
        now: datetime,
        stale_after: timedelta,
    ) -> SlackSyncRun:
        """Recover stale runs, refuse if one is still active, then insert.

        All three steps share one transaction. The single-active unique index
        backs the check, so two concurrent creators cannot both insert.
        """
        try:
            return await self._create(triggered_by, now, stale_after)
        except IntegrityError as e:
            existing = await self.find_active()
            if existing is None:
                raise
            logger.warning("sync_run_create_raced", active_run_id=str(existing.id))
            raise SyncRunConflictError(existing.id, existing.status) from e

    async def _active_run(self, db: AsyncSession) -> SlackSyncRun | None:
        return await db.scalar(
            select(SlackSyncRun)
            .where(SlackSyncRun.status.in_(SyncRunStatus.active()))
            .order_by(SlackSyncRun.created_at.desc())
            .limit(1)
        )

    async def _create(
        self,
        triggered_by: str,
        now: datetime,
        stale_after: timedelta,
    ) -> SlackSyncRun:
        stale_before = now - stale_after
        async with self._session() as db:
            table = SlackSyncRun.__table__
            # Last sign of life: the lease, else the last heartbeat, else creation.
            last_alive = func.coalesce(
                table.c.worker_lease_expires_at,
                table.c.last_heartbeat_at,
                table.c.created_at,
            )
            recovered = await db.execute(
                update(table)
                .where(table.c.status.in_(SyncRunStatus.active()), last_alive < stale_before)
                .values(
                    status=SyncRunStatus.FAILED.value,
                    error="Stale run recovered — lease expired",
                    completed_at=now,
                )
            )
            if recovered.rowcount:
                logger.warning("sync_runs_recovered_stale", count=recovered.rowcount)

            existing = await self._active_run(db)
            if existing is not None:
                raise SyncRunConflictError(existing.id, existing.status)

            total = await db.scalar(
                select(func.count())
                .select_from(SlackSyncState)
                .where(SlackSyncState.partner_id.is_not(None))
            ) or 0

            run = SlackSyncRun(
                status=SyncRunStatus.PENDING.value,
                triggered_by=triggered_by,
                total_channels=total,
                created_at=now,
            )
            db.add(run)
            await db.flush()
            return run

    async def acquire_lease(
        self,
        run_id: uuid.UUID,
        now: datetime,
        duration: timedelta,
    ) -> SlackSyncRun | None:
        """Compare-and-swap the lease; None means someone else holds it."""
        table = SlackSyncRun.__table__
        async with self._session() as db:
            result = await db.execute(
                update(table)
                .where(
                    table.c.id == run_id,
                    table.c.status.in_(SyncRunStatus.active()),
                    or_(
                        table.c.worker_lease_expires_at.is_(None),
                        table.c.worker_lease_expires_at < now,
                    ),
                )
                .values(
                    status=SyncRunStatus.RUNNING.value,
                    worker_lease_expires_at=now + duration,
                    last_heartbeat_at=now,
                    started_at=func.coalesce(table.c.started_at, now),
                )
                .returning(table.c.id)
            )
            if result.first() is None:
                return None
            return await db.get(SlackSyncRun, run_id, populate_existing=True)

    async def record_progress(
        self,
        run_id: uuid.UUID,
        *,
        lease: datetime,
        channel_ids: Sequence[str],
        synced: int,
        failed: int,
        messages: int,
        next_offset: int,
        now: datetime,
        completed: bool = False,
    ) -> bool:
        """Add a chunk's counts, move the offset and hand the lease back.

        Applies only while the run is running under ``lease``; False means
        another worker reclaimed it (or the run was cancelled meanwhile) and
        nothing was written. The chunk's
        channels are stamped with the run in the same transaction, and with
        ``completed`` the run is closed there too.
        """
        table = SlackSyncRun.__table__
        values: dict[str, Any] = {
            "synced_channels": table.c.synced_channels + synced,
            "failed_channels": table.c.failed_channels + failed,
            "total_messages_synced": table.c.total_messages_synced + messages,
            "next_channel_offset": next_offset,
            "last_heartbeat_at": now,
            "worker_lease_expires_at": None,
        }
        if completed:
            values["status"] = SyncRunStatus.COMPLETED.value
            values["completed_at"] = now
        async with self._session() as db:
            result = await db.execute(
                update(table)
                .where(
                    table.c.id == run_id,
                    table.c.status == SyncRunStatus.RUNNING.value,
                    table.c.worker_lease_expires_at == lease,
                )
                .values(**values)
            )
            if result.rowcount == 0:
                return False
            if channel_ids:
                state = SlackSyncState.__table__
                await db.execute(
                    update(state)
                    .where(state.c.channel_id.in_(list(channel_ids)))
                    .values(last_run_id=run_id, updated_at=utcnow())
                )
            return True

    async def mark_failed(
        self,
        run_id: uuid.UUID,
        error: str,
        now: datetime,
        lease: datetime | None = None,
    ) -> bool:
        """Fail an active run; with ``lease``, only while it is still held."""
        return await self._finish(run_id, SyncRunStatus.FAILED, now, error=error, lease=lease)

    async def mark_cancelled(self, run_id: uuid.UUID, now: datetime) -> bool:
        return await self._finish(run_id, SyncRunStatus.CANCELLED, now)

    async def _finish(
        self,
        run_id: uuid.UUID,
        status: SyncRunStatus,
        now: datetime,
        error: str | None = None,
        lease: datetime | None = None,
    ) -> bool:
        """Terminal transition; succeeds at most once per run."""
        table = SlackSyncRun.__table__
        values: dict[str, Any] = {
            "status": status.value,
            "completed_at": now,
            "worker_lease_expires_at": None,
        }
        if error is not None:
            values["error"] = error
        criteria = [table.c.id == run_id, table.c.status.in_(SyncRunStatus.active())]
        if lease is not None:
            criteria.append(table.c.worker_lease_expires_at == lease)
        async with self._session() as db:
            result = await db.execute(update(table).where(*criteria).values(**values))
            return result.rowcount > 0


# ═══════════════════════════════════════════════════════════════════════════════
# STAFF DIRECTORY (external identity + assignments)
# ═══════════════════════════════════════════════════════════════════════════════

class DirectoryStore(_Store):
    """Read-only view of identity mappings and partner assignments."""

    async def staff_by_slack_user(self) -> dict[str, uuid.UUID]:
        async with self._session() as db:
            result = await db.execute(
                select(EntityExternalId.external_id, EntityExternalId.entity_id).where(
                    EntityExternalId.entity_type == STAFF_ENTITY_TYPE,
                    EntityExternalId.source == SLACK_USER_SOURCE,
                )
            )
            return {external_id: entity_id for external_id, entity_id in result.all()}

    async def current_assignee(
        self,
        partner_id: uuid.UUID,
        role: str = POD_LEADER_ROLE,
    ) -> uuid.UUID | None:
        async with self._session() as db:
            return await db.scalar(
                select(PartnerAssignment.staff_id)
                .where(
                    PartnerAssignment.partner_id == partner_id,
                    PartnerAssignment.assignment_role == role,
                    PartnerAssignment.unassigned_at.is_(None),
                )
                .order_by(PartnerAssignment.assigned_at.desc())
                .limit(1)
            )


# ═══════════════════════════════════════════════════════════════════════════════
# RESPONSE METRICS
# ═══════════════════════════════════════════════════════════════════════════════

class MetricStore(_Store):
    """One row per (channel_id, date); recomputation overwrites."""

    async def upsert(self, values: dict[str, Any]) -> SlackResponseMetric:
        table = SlackResponseMetric.__table__
        async with self._session() as db:
            stmt = dialect_insert(db, table).values(id=uuid.uuid4(), **values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.channel_id, table.c.date],
                set_={
                    key: getattr(stmt.excluded, key)
                    for key in values
                    if key not in ("channel_id", "date")
                },
            )
            await db.execute(stmt)
            return await db.scalar(
                select(SlackResponseMetric)
                .where(
                    SlackResponseMetric.channel_id == values["channel_id"],
                    SlackResponseMetric.date == values["date"],
                )
                .execution_options(populate_existing=True)
            )

    async def get(self, channel_id: str, day: date) -> SlackResponseMetric | None:
        async with self._session() as db:
            return await db.scalar(
                select(SlackResponseMetric).where(
                    SlackResponseMetric.channel_id == channel_id,
                    SlackResponseMetric.date == day,
                )
            )

    async def list_range(
        self,
        date_from: date,
        date_to: date,
        channel_ids: Iterable[str] | None = None,
    ) -> list[SlackResponseMetric]:
        async with self._session() as db:
            stmt = select(SlackResponseMetric).where(
                SlackResponseMetric.date >= date_from,
                SlackResponseMetric.date <= date_to,
            )
            if channel_ids is not None:
                stmt = stmt.where(SlackResponseMetric.channel_id.in_(list(channel_ids)))
            result = await db.scalars(
                stmt.order_by(SlackResponseMetric.date.asc(), SlackResponseMetric.channel_id.asc())
            )
            return list(result)
