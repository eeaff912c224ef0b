"""Per-channel sync: membership, forward pass, bounded backfill.

Two watermarks per channel:
    latest_ts  newest message seen; only moves forward
    oldest_ts  oldest message reached by backfill; only moves backward

Each invocation makes bounded progress in both directions
(``sync_max_pages_per_channel`` pages each way), so a huge channel
cannot starve the rest of the chunk, and backfill eventually ends.

Channel failures are contained here: any exception is recorded on the
channel's state row and returned as a failed result, never raised.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timedelta
from typing import Callable

import structlog

from partner_pulse.config import Settings, settings as default_settings
from partner_pulse.db.models import SlackSyncState, utcnow
from partner_pulse.db.store import MessageStore, SyncStateStore
from partner_pulse.observability.metrics import get_metrics
from partner_pulse.slack.client import SlackClient
from partner_pulse.slack.errors import SlackApiError
from partner_pulse.slack.types import HistoryPage
from partner_pulse.sync.parser import parse_message, ts_key
from partner_pulse.sync.types import ParsedMessage, SyncChannelResult

logger = structlog.get_logger()

PRIVATE_NOT_MEMBER_ERROR = "Bot not in private channel — admin must invite the bot"


def seed_ts(now: datetime, backfill_days: int) -> str:
    """Slack ts for the initial lookback boundary (whole seconds)."""
    return f"{int((now - timedelta(days=backfill_days)).timestamp())}.000000"


class ChannelSyncer:
    """Syncs one channel at a time. Holds no per-channel state between calls."""

    def __init__(
        self,
        slack: SlackClient,
        states: SyncStateStore,
        messages: MessageStore,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.slack = slack
        self.states = states
        self.messages = messages
        self.config = config or default_settings
        self.clock = clock

    async def sync(
        self,
        channel: SlackSyncState,
        staff_lookup: dict[str, uuid.UUID],
    ) -> SyncChannelResult:
        result = SyncChannelResult(channel_id=channel.channel_id, channel_name=channel.channel_name)
        log = logger.bind(channel_id=channel.channel_id, channel_name=channel.channel_name)
        t0 = time.monotonic()

        try:
            if not channel.bot_is_member:
                error = await self._ensure_membership(channel.channel_id)
                if error is not None:
                    result.error = error
                    await self.states.record_error(channel.channel_id, error)
                    log.warning("channel_membership_denied", error=error)
                    return result
                await self.states.mark_bot_member(channel.channel_id)

            now = self.clock()
            inserted = await self._sync_forward(channel, staff_lookup, now)

            # Backfill uses the state as loaded for this invocation: on a
            # channel's first sync oldest_ts was only just seeded, so it waits
            # for the next run.
            if not channel.is_backfill_complete and channel.oldest_ts:
                inserted += await self._sync_backfill(channel, staff_lookup)

            await self.states.record_success(channel.channel_id, inserted, self.clock())
            result.success = True
            result.messages_synced = inserted
            log.info("channel_synced", messages=inserted)
        except Exception as e:
            result.error = str(e) or type(e).__name__
            log.error("channel_sync_failed", error=result.error, exc_info=True)
            await self._record_error_safely(channel.channel_id, result.error)
        finally:
            await get_metrics().channel_synced(
                result.success, result.messages_synced, (time.monotonic() - t0) * 1000
            )

        return result

    # ═══════════════════════════════════════════════════════════════════════
    # MEMBERSHIP
    # ═══════════════════════════════════════════════════════════════════════

    async def _ensure_membership(self, channel_id: str) -> str | None:
        """Join as if public, then fall back to a private-channel check.

        Returns None when the bot can read the channel, else an error string:
        the private-channel hint when the bot is simply not invited, or the
        join failure code when the member list cannot be read either.
        """
        try:
            await self.slack.join_channel(channel_id)
            return None
        except SlackApiError as e:
            if e.code == "already_in_channel":
                return None
            join_code = e.code
            logger.info("channel_join_failed", channel_id=channel_id, code=join_code)

        # Private channels cannot be joined; the bot must have been invited.
        try:
            bot_user_id = await self.slack.bot_user_id()
            members = await self.slack.get_channel_members(channel_id)
        except SlackApiError as e:
            logger.info("private_membership_check_failed", channel_id=channel_id, code=e.code)
            # Not a readable private channel either, so the join failure is the cause
            return f"Failed to join channel: {join_code}"
        if bot_user_id and bot_user_id in members:
            return None
        return PRIVATE_NOT_MEMBER_ERROR

    # ═══════════════════════════════════════════════════════════════════════
    # FORWARD PASS
    # ═══════════════════════════════════════════════════════════════════════

    async def _sync_forward(
        self,
        channel: SlackSyncState,
        staff_lookup: dict[str, uuid.UUID],
        now: datetime,
    ) -> int:
        seed = seed_ts(now, self.config.sync_backfill_days)
        oldest = channel.latest_ts or seed

        inserted = 0
        max_ts: str | None = None
        cursor: str | None = None
        pages = 0
        while True:
            page = await self.slack.get_channel_history_page(
                channel.channel_id, oldest=oldest, cursor=cursor
            )
            pages += 1
            parsed = self._parse_page(page, channel.channel_id, staff_lookup)
            inserted += await self._store(parsed)
            for row in parsed:
                if max_ts is None or ts_key(row.message_ts) > ts_key(max_ts):
                    max_ts = row.message_ts

            cursor = page.next_cursor
            if not cursor or pages >= self.config.sync_max_pages_per_channel:
                break

        if max_ts is not None:
            await self.states.advance_latest_ts(channel.channel_id, max_ts)

        if not channel.latest_ts and not channel.oldest_ts:
            await self.states.seed_oldest_ts(channel.channel_id, seed)

        logger.debug(
            "forward_pass_done",
            channel_id=channel.channel_id,
            pages=pages,
            inserted=inserted,
            latest_ts=max_ts,
        )
        return inserted

    # ═══════════════════════════════════════════════════════════════════════
    # BACKFILL PASS
    # ═══════════════════════════════════════════════════════════════════════

    async def _sync_backfill(
        self,
        channel: SlackSyncState,
        staff_lookup: dict[str, uuid.UUID],
    ) -> int:
        inserted = 0
        min_ts: str | None = None
        cursor: str | None = None
        has_more = True
        pages = 0
        while True:
            page = await self.slack.get_channel_history_page(
                channel.channel_id, latest=channel.oldest_ts, cursor=cursor
            )
            pages += 1
            parsed = self._parse_page(page, channel.channel_id, staff_lookup)
            inserted += await self._store(parsed)
            for row in parsed:
                if min_ts is None or ts_key(row.message_ts) < ts_key(min_ts):
                    min_ts = row.message_ts

            has_more = page.has_more
            cursor = page.next_cursor
            if not cursor or not has_more or pages >= self.config.sync_max_pages_per_channel:
                break

        if min_ts is not None:
            await self.states.recede_oldest_ts(channel.channel_id, min_ts)

        if not has_more or not cursor:
            await self.states.mark_backfill_complete(channel.channel_id)
            logger.info("backfill_complete", channel_id=channel.channel_id, oldest_ts=min_ts)

        return inserted

    # ═══════════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════════

    @staticmethod
    def _parse_page(
        page: HistoryPage,
        channel_id: str,
        staff_lookup: dict[str, uuid.UUID],
    ) -> list[ParsedMessage]:
        parsed = []
        for msg in page.messages:
            row = parse_message(msg, channel_id, staff_lookup)
            if row is not None:
                parsed.append(row)
        return parsed

    async def _store(self, parsed: list[ParsedMessage]) -> int:
        """Insert in fixed-size batches; returns rows actually inserted."""
        inserted = 0
        batch_size = self.config.sync_upsert_batch_size
        for i in range(0, len(parsed), batch_size):
            batch = parsed[i:i + batch_size]
            inserted += await self.messages.insert_ignore_duplicates(
                [row.to_row() for row in batch]
            )
        return inserted

    async def _record_error_safely(self, channel_id: str, error: str) -> None:
        try:
            await self.states.record_error(channel_id, error)
        except Exception as e:
            logger.error("channel_error_not_recorded", channel_id=channel_id, error=str(e))
