"""Sync run lifecycle: create, lease, chunk, complete.

A run walks every partner-mapped channel in bounded chunks, one chunk per
scheduler invocation. The run row is the subsystem-wide mutex: a worker
processes a chunk only while it holds the run's lease, taken with a single
conditional UPDATE so separate processes cannot both win. A crashed
worker's lease simply expires and the next invocation reclaims it.

Usage (from a scheduler):
    run = await coordinator.create_sync_run("cron")
    summary = await coordinator.process_chunk(run.id)   # repeat until completed
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog
from sqlalchemy.exc import SQLAlchemyError

from partner_pulse.config import Settings, settings as default_settings
from partner_pulse.db.models import SlackSyncRun, SlackSyncState, utcnow
from partner_pulse.db.session import SessionFactory
from partner_pulse.db.store import (
    DirectoryStore,
    MessageStore,
    SyncRunNotFoundError,
    SyncRunStore,
    SyncStateStore,
)
from partner_pulse.observability.metrics import get_metrics
from partner_pulse.slack.client import SlackClient
from partner_pulse.slack.errors import SlackConfigError
from partner_pulse.sync.channel import ChannelSyncer
from partner_pulse.sync.staff import build_staff_lookup
from partner_pulse.sync.types import SyncChannelResult, SyncRunSummary

logger = structlog.get_logger()


@dataclass
class ScheduledChunkResult:
    status: str                         # "no_active_run" | "processed"
    summary: SyncRunSummary | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "summary": self.summary.to_dict() if self.summary else None,
        }


@dataclass
class SyncStatus:
    latest_run: SlackSyncRun | None
    channels: list[SlackSyncState] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "latest_run": self.latest_run.to_dict() if self.latest_run else None,
            "channels": [c.to_dict() for c in self.channels],
        }


class SyncCoordinator:
    """Entry points for the sync engine."""

    def __init__(
        self,
        slack: SlackClient | None = None,
        session_factory: SessionFactory | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or default_settings
        self.clock = clock
        self.runs = SyncRunStore(session_factory)
        self.states = SyncStateStore(session_factory)
        self.messages = MessageStore(session_factory)
        self.directory = DirectoryStore(session_factory)
        # Run bookkeeping (status, cancel) works without a Slack client.
        self.syncer: ChannelSyncer | None = None
        if slack is not None:
            self.syncer = ChannelSyncer(
                slack, self.states, self.messages, config=self.config, clock=clock
            )

    # ═══════════════════════════════════════════════════════════════════════
    # RUN LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════

    async def create_sync_run(self, triggered_by: str) -> SlackSyncRun:
        """Start a run; raises SyncRunConflictError if one is already active.

        Runs whose lease expired more than ``sync_stale_run_minutes`` ago
        are failed first, so a crashed run never blocks the schedule forever.
        """
        run = await self.runs.create(
            triggered_by,
            now=self.clock(),
            stale_after=timedelta(minutes=self.config.sync_stale_run_minutes),
        )
        logger.info(
            "sync_run_created",
            run_id=str(run.id),
            triggered_by=triggered_by,
            total_channels=run.total_channels,
        )
        return run

    async def acquire_lease(self, run_id: uuid.UUID) -> SlackSyncRun | None:
        """Take (or reclaim an expired) lease. None means another worker owns it."""
        run = await self.runs.acquire_lease(
            run_id,
            now=self.clock(),
            duration=timedelta(minutes=self.config.sync_lease_minutes),
        )
        if run is None:
            logger.info("sync_lease_not_acquired", run_id=str(run_id))
            await get_metrics().lease_contended()
        return run

    async def cancel_sync_run(self, run_id: uuid.UUID) -> bool:
        cancelled = await self.runs.mark_cancelled(run_id, self.clock())
        logger.info("sync_run_cancel", run_id=str(run_id), cancelled=cancelled)
        return cancelled

    async def get_sync_status(self) -> SyncStatus:
        return SyncStatus(
            latest_run=await self.runs.latest(),
            channels=await self.states.list_mapped(),
        )

    # ═══════════════════════════════════════════════════════════════════════
    # CHUNK PROCESSING
    # ═══════════════════════════════════════════════════════════════════════

    async def process_chunk(self, run_id: uuid.UUID) -> SyncRunSummary:
        """Sync the next window of channels for ``run_id``.

        Losing the lease race is a normal outcome and returns an empty
        summary with ``lease_acquired=False``. A chunk that outlives its lease
        records nothing and comes back with ``lease_lost=True``.
        """
        syncer = self._require_syncer()
        t0 = time.monotonic()
        summary = SyncRunSummary(run_id=run_id)
        log = logger.bind(run_id=str(run_id))

        run = await self.acquire_lease(run_id)
        if run is None:
            summary.lease_acquired = False
            return await self._finish_summary(summary, t0, "skipped")

        offset = run.next_channel_offset
        limit = self.config.sync_channels_per_chunk
        lease = run.worker_lease_expires_at
        try:
            channels = await self.states.list_mapped_window(offset, limit, run_id=run_id)
        except SQLAlchemyError as e:
            error = f"Failed to fetch channels: {e}"
            log.error("sync_chunk_channels_unreadable", error=str(e))
            await self.runs.mark_failed(run_id, error, self.clock(), lease=lease)
            return await self._finish_summary(summary, t0, "failed")

        staff_lookup = await build_staff_lookup(self.directory)

        # Sequential on purpose: every call already queues on the global rate gate.
        for channel in channels:
            result = await syncer.sync(channel, staff_lookup)
            self._tally(summary, result)

        new_offset = offset + len(channels)
        completed = new_offset >= run.total_channels or len(channels) < limit
        held = await self.runs.record_progress(
            run_id,
            lease=lease,
            channel_ids=[channel.channel_id for channel in channels],
            synced=summary.channels_synced,
            failed=summary.channels_failed,
            messages=summary.total_messages,
            next_offset=new_offset,
            now=self.clock(),
            completed=completed,
        )
        if not held:
            # Lease reclaimed or run cancelled meanwhile; nothing from this chunk was recorded.
            summary.lease_lost = True
            log.warning(
                "sync_lease_lost",
                offset=offset,
                channels=len(channels),
                lease_expired_at=lease.isoformat(),
            )
            await get_metrics().lease_lost()
            return await self._finish_summary(summary, t0, "lease_lost")
        summary.run_completed = completed

        metrics = get_metrics()
        log.info(
            "sync_chunk_done",
            offset=offset,
            new_offset=new_offset,
            total_channels=run.total_channels,
            synced=summary.channels_synced,
            failed=summary.channels_failed,
            messages=summary.total_messages,
            run_completed=summary.run_completed,
            channel_sync_p95_ms=metrics.p95("channel_sync_latency_ms"),
            slack_api_p95_ms=metrics.p95("slack_api_latency_ms"),
        )
        return await self._finish_summary(
            summary, t0, "completed" if summary.run_completed else "partial"
        )

    async def run_scheduled_chunk(self, triggered_by: str = "cron") -> ScheduledChunkResult:
        """Scheduler tick: process one chunk of the active run, if there is one."""
        run = await self.runs.find_active()
        if run is None:
            logger.info("sync_no_active_run", triggered_by=triggered_by)
            return ScheduledChunkResult(status="no_active_run")
        summary = await self.process_chunk(run.id)
        return ScheduledChunkResult(status="processed", summary=summary)

    async def sync_single_channel(self, channel_id: str) -> SyncChannelResult:
        """Debug/admin path: sync one channel outside any run."""
        syncer = self._require_syncer()
        channel = await self.states.get(channel_id)
        if channel is None:
            return SyncChannelResult(
                channel_id=channel_id,
                channel_name="unknown",
                error="Channel not found in sync state",
            )
        staff_lookup = await build_staff_lookup(self.directory)
        return await syncer.sync(channel, staff_lookup)

    async def require_run(self, run_id: uuid.UUID) -> SlackSyncRun:
        run = await self.runs.get(run_id)
        if run is None:
            raise SyncRunNotFoundError(f"Sync run {run_id} not found")
        return run

    # ═══════════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════════

    def _require_syncer(self) -> ChannelSyncer:
        if self.syncer is None:
            raise SlackConfigError("Channel sync needs a Slack client")
        return self.syncer

    @staticmethod
    def _tally(summary: SyncRunSummary, result: SyncChannelResult) -> None:
        summary.results.append(result)
        if result.success:
            summary.channels_synced += 1
            summary.total_messages += result.messages_synced
        else:
            summary.channels_failed += 1

    @staticmethod
    async def _finish_summary(
        summary: SyncRunSummary,
        t0: float,
        outcome: str,
    ) -> SyncRunSummary:
        elapsed_ms = (time.monotonic() - t0) * 1000
        summary.duration_ms = int(elapsed_ms)
        await get_metrics().chunk_finished(outcome, elapsed_ms)
        return summary
