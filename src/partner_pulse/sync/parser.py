"""Slack message -> content-free row.

Classifies the sender and filters out channel housekeeping events.
Malformed timestamps drop the message; they are never an error.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from partner_pulse.db.models import SenderType
from partner_pulse.slack.types import MessageMeta
from partner_pulse.sync.types import ParsedMessage

# Non-conversation events. These never count as traffic.
SKIP_SUBTYPES = frozenset({
    "channel_join",
    "channel_leave",
    "channel_topic",
    "channel_purpose",
    "channel_name",
    "channel_archive",
    "channel_unarchive",
    "pinned_item",
    "unpinned_item",
})


def ts_to_datetime(ts: str) -> datetime | None:
    """``"1712345678.123456"`` -> aware UTC datetime, or None if unparseable."""
    try:
        seconds = float(ts)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(seconds):
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def ts_key(ts: str) -> Decimal:
    """Numeric ordering key for a Slack ts (lexical order breaks on width)."""
    try:
        return Decimal(ts)
    except InvalidOperation:
        return Decimal(0)


def parse_message(
    msg: MessageMeta,
    channel_id: str,
    staff_lookup: dict[str, uuid.UUID],
) -> ParsedMessage | None:
    if msg.subtype and msg.subtype in SKIP_SUBTYPES:
        return None

    posted_at = ts_to_datetime(msg.ts)
    if posted_at is None:
        return None

    sender_slack_id: str | None = None
    sender_bot_id: str | None = None
    sender_staff_id: uuid.UUID | None = None

    # A user id wins over bot_id when Slack sends both.
    if msg.user:
        sender_type = SenderType.USER
        sender_slack_id = msg.user
        sender_staff_id = staff_lookup.get(msg.user)
    elif msg.bot_id:
        sender_type = SenderType.BOT
        sender_bot_id = msg.bot_id
    else:
        sender_type = SenderType.SYSTEM

    return ParsedMessage(
        channel_id=channel_id,
        message_ts=msg.ts,
        thread_ts=msg.thread_ts or None,
        sender_type=sender_type.value,
        sender_slack_id=sender_slack_id,
        sender_bot_id=sender_bot_id,
        sender_staff_id=sender_staff_id,
        sender_is_staff=sender_staff_id is not None,
        is_bot=sender_type is SenderType.BOT,
        posted_at=posted_at,
    )
