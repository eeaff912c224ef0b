"""Database layer: ORM models, async sessions, typed stores."""

from partner_pulse.db.models import (
    Base,
    EntityExternalId,
    PartnerAssignment,
    SenderType,
    SlackMessage,
    SlackResponseMetric,
    SlackSyncRun,
    SlackSyncState,
    SyncRunStatus,
)
from partner_pulse.db.session import (
    close_db,
    create_engine,
    db_session,
    get_session_factory,
    init_db,
    make_session_factory,
)

__all__ = [
    "Base",
    "EntityExternalId",
    "PartnerAssignment",
    "SenderType",
    "SlackMessage",
    "SlackResponseMetric",
    "SlackSyncRun",
    "SlackSyncState",
    "SyncRunStatus",
    "close_db",
    "create_engine",
    "db_session",
    "get_session_factory",
    "init_db",
    "make_session_factory",
]
