"""Incremental Slack message-metadata sync."""

from partner_pulse.db.store import SyncRunConflictError, SyncRunNotFoundError
from partner_pulse.sync.channel import ChannelSyncer
from partner_pulse.sync.coordinator import ScheduledChunkResult, SyncCoordinator, SyncStatus
from partner_pulse.sync.parser import parse_message
from partner_pulse.sync.reclassify import (
    bulk_reclassify_staff_messages,
    reclassify_staff_messages,
    unclassify_staff_messages,
)
from partner_pulse.sync.types import ParsedMessage, SyncChannelResult, SyncRunSummary

__all__ = [
    "ChannelSyncer",
    "ParsedMessage",
    "ScheduledChunkResult",
    "SyncChannelResult",
    "SyncCoordinator",
    "SyncRunConflictError",
    "SyncRunNotFoundError",
    "SyncRunSummary",
    "SyncStatus",
    "bulk_reclassify_staff_messages",
    "parse_message",
    "reclassify_staff_messages",
    "unclassify_staff_messages",
]
