"""Slack user id -> staff id lookup, built once per chunk."""

from __future__ import annotations

import uuid

import structlog
from sqlalchemy.exc import SQLAlchemyError

from partner_pulse.db.store import DirectoryStore

logger = structlog.get_logger()


async def build_staff_lookup(directory: DirectoryStore) -> dict[str, uuid.UUID]:
    """Map Slack user ids to staff ids.

    A failed query degrades to an empty map: messages are stored
    unattributed and can be reclassified later.
    """
    try:
        lookup = await directory.staff_by_slack_user()
    except (SQLAlchemyError, OSError) as e:
        logger.error("staff_lookup_failed", error=str(e))
        return {}
    logger.debug("staff_lookup_built", mappings=len(lookup))
    return lookup
