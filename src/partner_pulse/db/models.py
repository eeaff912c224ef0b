"""Partner Pulse database models.

Design principles:
- Slack message metadata only, never message text
- Natural-key uniqueness for idempotent re-ingestion
  (channel_id, message_ts) and (channel_id, date)
- Timestamps are always timezone-aware UTC, regardless of backend
- Identity and partner-assignment tables are owned elsewhere; they are
  modelled here only as far as sync and analytics read them
"""

from __future__ import annotations

import uuid
from datetime import date as date_type, datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """DateTime that always binds UTC and always returns aware datetimes.

    PostgreSQL keeps the offset natively; SQLite drops it, so results are
    re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class with common utilities."""

    type_annotation_map = {
        datetime: UTCDateTime(),
    }

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dict for serialization."""
        return {
            c.name: getattr(self, c.name)
            for c in self.__table__.columns
        }


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class SyncRunStatus(str, Enum):
    """Sync run lifecycle states."""
    PENDING = "pending"        # Created, no worker has leased it yet
    RUNNING = "running"        # A worker holds (or held) the lease
    COMPLETED = "completed"    # All mapped channels processed
    FAILED = "failed"          # Aborted or recovered as stale
    CANCELLED = "cancelled"    # Stopped by an operator

    @classmethod
    def active(cls) -> tuple[str, ...]:
        return (cls.PENDING.value, cls.RUNNING.value)


ACTIVE_RUN_PREDICATE = "status IN ('pending', 'running')"


class SenderType(str, Enum):
    """Who posted a Slack message."""
    USER = "user"
    BOT = "bot"
    SYSTEM = "system"


# ═══════════════════════════════════════════════════════════════════════════════
# SYNC TABLES
# ═══════════════════════════════════════════════════════════════════════════════

class SlackSyncState(Base):
    """Per-channel sync position: forward and backfill watermarks."""

    __tablename__ = "slack_sync_state"
    __table_args__ = (
        Index("idx_slack_sync_partner", "partner_id"),
        Index("idx_slack_sync_last_synced", "last_synced_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    channel_id: Mapped[str] = mapped_column(
        String(32), unique=True, nullable=False,
        comment="Slack channel ID (C01234ABCDE)"
    )
    channel_name: Mapped[str] = mapped_column(String(255), nullable=False)
    partner_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, nullable=True,
        comment="Only channels mapped to a partner are synced"
    )

    latest_ts: Mapped[str | None] = mapped_column(
        String(32), nullable=True,
        comment="Forward watermark: newest message ts seen"
    )
    oldest_ts: Mapped[str | None] = mapped_column(
        String(32), nullable=True,
        comment="Backfill watermark: oldest message ts reached"
    )
    is_backfill_complete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    bot_is_member: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    message_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_run_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, nullable=True,
        comment="Sync run that most recently processed this channel"
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )


class SlackMessage(Base):
    """Message metadata (no content) for response time analytics."""

    __tablename__ = "slack_messages"
    __table_args__ = (
        UniqueConstraint("channel_id", "message_ts", name="slack_messages_channel_ts"),
        Index("idx_slack_messages_channel_posted", "channel_id", "posted_at"),
        Index("idx_slack_messages_sender", "sender_slack_id", "posted_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    message_ts: Mapped[str] = mapped_column(
        String(32), nullable=False,
        comment="Slack message timestamp (1234567890.123456)"
    )
    thread_ts: Mapped[str | None] = mapped_column(
        String(32), nullable=True,
        comment="Parent thread ts, NULL for top-level messages"
    )
    sender_slack_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    sender_bot_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    sender_type: Mapped[str] = mapped_column(
        String(10), default=SenderType.USER.value, nullable=False,
        comment="user|bot|system"
    )
    sender_staff_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    sender_is_staff: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_bot: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    posted_at: Mapped[datetime] = mapped_column(nullable=False)


class SlackSyncRun(Base):
    """One chunked sync run; its lease is the subsystem-wide mutex."""

    __tablename__ = "slack_sync_runs"
    __table_args__ = (
        Index("idx_slack_sync_runs_status", "status"),
        Index("idx_slack_sync_runs_created", "created_at"),
        # At most one pending or running run, enforced by the database
        Index(
            "slack_sync_runs_single_active",
            text(f"({ACTIVE_RUN_PREDICATE})"),
            unique=True,
            postgresql_where=text(ACTIVE_RUN_PREDICATE),
            sqlite_where=text(ACTIVE_RUN_PREDICATE),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    status: Mapped[str] = mapped_column(
        String(20), default=SyncRunStatus.PENDING.value, nullable=False,
        comment="pending|running|completed|failed|cancelled"
    )
    triggered_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_channels: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    synced_channels: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_channels: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_messages_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_channel_offset: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False,
        comment="Cursor into the ordered mapped-channel list"
    )
    worker_lease_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class SlackResponseMetric(Base):
    """Pre-computed response time analytics per channel per day."""

    __tablename__ = "slack_response_metrics"
    __table_args__ = (
        UniqueConstraint("channel_id", "date", name="slack_response_metrics_channel_date"),
        Index("idx_response_metrics_partner", "partner_id", "date"),
        Index("idx_response_metrics_pod", "pod_leader_id", "date"),
        Index("idx_response_metrics_date", "date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    partner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    pod_leader_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, nullable=True,
        comment="Snapshotted at compute time"
    )
    date: Mapped[date_type] = mapped_column(Date, nullable=False)

    # Volume
    total_messages: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    staff_messages: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    partner_messages: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Response times (minutes)
    avg_response_time_mins: Mapped[float | None] = mapped_column(
        Numeric(10, 2, asdecimal=False), nullable=True
    )
    median_response_time_mins: Mapped[float | None] = mapped_column(
        Numeric(10, 2, asdecimal=False), nullable=True
    )
    p95_response_time_mins: Mapped[float | None] = mapped_column(
        Numeric(10, 2, asdecimal=False), nullable=True
    )
    max_response_time_mins: Mapped[float | None] = mapped_column(
        Numeric(10, 2, asdecimal=False), nullable=True
    )
    min_response_time_mins: Mapped[float | None] = mapped_column(
        Numeric(10, 2, asdecimal=False), nullable=True
    )

    # Buckets
    responses_under_30m: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    responses_30m_to_1h: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    responses_1h_to_4h: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    responses_4h_to_24h: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    responses_over_24h: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unanswered_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    computed_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    algorithm_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    @property
    def total_responses(self) -> int:
        return (
            self.responses_under_30m
            + self.responses_30m_to_1h
            + self.responses_1h_to_4h
            + self.responses_4h_to_24h
            + self.responses_over_24h
        )


# ═══════════════════════════════════════════════════════════════════════════════
# EXTERNAL COLLABORATOR TABLES (read-only from this package)
# ═══════════════════════════════════════════════════════════════════════════════

class EntityExternalId(Base):
    """Links internal entities (staff, partners) to identifiers in external systems."""

    __tablename__ = "entity_external_ids"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "source",
                         name="entity_external_ids_unique_entity_source"),
        UniqueConstraint("source", "external_id",
                         name="entity_external_ids_unique_source_external"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class PartnerAssignment(Base):
    """Staff assigned to a partner in some role; active while unassigned_at is NULL."""

    __tablename__ = "partner_assignments"
    __table_args__ = (
        Index("idx_partner_assignments_partner_role", "partner_id", "assignment_role"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    partner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    staff_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    assignment_role: Mapped[str] = mapped_column(String(64), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    unassigned_at: Mapped[datetime | None] = mapped_column(nullable=True)
