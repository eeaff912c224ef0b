"""Result and record types for the sync engine."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class ParsedMessage:
    """A content-free message row, ready for insertion."""
    channel_id: str
    message_ts: str
    thread_ts: str | None
    sender_type: str
    sender_slack_id: str | None
    sender_bot_id: str | None
    sender_staff_id: uuid.UUID | None
    sender_is_staff: bool
    is_bot: bool
    posted_at: datetime

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncChannelResult:
    channel_id: str
    channel_name: str
    success: bool = False
    messages_synced: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncRunSummary:
    """What one process_chunk invocation did."""
    run_id: uuid.UUID
    channels_synced: int = 0
    channels_failed: int = 0
    channels_skipped: int = 0
    total_messages: int = 0
    duration_ms: int = 0
    run_completed: bool = False
    lease_acquired: bool = True
    lease_lost: bool = False
    results: list[SyncChannelResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["run_id"] = str(self.run_id)
        return data
