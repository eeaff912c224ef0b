"""Retroactive staff attribution of stored messages.

Run after a Slack user is mapped to (or unmapped from) a staff member.
Both directions only touch rows still in the state they expect, so
re-running with the same input is a no-op.
"""

from __future__ import annotations

import uuid
from typing import Iterable

import structlog
from sqlalchemy.exc import SQLAlchemyError

from partner_pulse.db.store import MessageStore

logger = structlog.get_logger()


async def reclassify_staff_messages(
    messages: MessageStore,
    slack_user_id: str,
    staff_id: uuid.UUID,
) -> int:
    """Attribute a user's unattributed messages to ``staff_id``. Returns rows updated."""
    try:
        updated = await messages.attribute_to_staff(slack_user_id, staff_id)
    except SQLAlchemyError as e:
        logger.error(
            "reclassify_failed",
            slack_user_id=slack_user_id,
            staff_id=str(staff_id),
            error=str(e),
        )
        return 0
    logger.info(
        "messages_reclassified",
        slack_user_id=slack_user_id,
        staff_id=str(staff_id),
        updated=updated,
    )
    return updated


async def unclassify_staff_messages(
    messages: MessageStore,
    slack_user_id: str,
    staff_id: uuid.UUID,
) -> int:
    try:
        updated = await messages.clear_staff_attribution(slack_user_id, staff_id)
    except SQLAlchemyError as e:
        logger.error(
            "unclassify_failed",
            slack_user_id=slack_user_id,
            staff_id=str(staff_id),
            error=str(e),
        )
        return 0
    logger.info(
        "messages_unclassified",
        slack_user_id=slack_user_id,
        staff_id=str(staff_id),
        updated=updated,
    )
    return updated


async def bulk_reclassify_staff_messages(
    messages: MessageStore,
    mappings: Iterable[tuple[str, uuid.UUID]],
) -> int:
    total = 0
    for slack_user_id, staff_id in mappings:
        total += await reclassify_staff_messages(messages, slack_user_id, staff_id)
    return total
