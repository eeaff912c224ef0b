"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                          # Run all tests
    pytest tests/unit/test_stats.py -v     # Run specific test file

Database tests use a throwaway SQLite file per test (aiosqlite), so
nothing here needs PostgreSQL or a Slack token.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio

from partner_pulse.config import Settings
from partner_pulse.db.session import SessionFactory, create_engine, init_db, make_session_factory
from partner_pulse.observability.metrics import get_metrics
from partner_pulse.slack.errors import SlackApiError
from partner_pulse.slack.rate_limiter import reset_rate_gate
from partner_pulse.slack.types import HistoryPage, MessageMeta
from partner_pulse.sync.parser import ts_key


# ─────────────────────────────────────────────────────────────────────────────
# Global state
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _reset_globals():
    get_metrics().reset_all()
    reset_rate_gate()
    yield
    reset_rate_gate()


@pytest.fixture
def config() -> Settings:
    """Settings with a fake token, no pacing and tiny pages."""
    return Settings(
        _env_file=None,
        slack_bot_token="xoxb-test",
        slack_min_call_interval_s=0,
        slack_max_retries=3,
        slack_page_size=2,
        sync_backfill_days=30,
        sync_max_pages_per_channel=10,
        sync_channels_per_chunk=2,
        sync_lease_minutes=4,
        sync_stale_run_minutes=15,
        sync_upsert_batch_size=100,
        analytics_lookahead_days=7,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[SessionFactory, None]:
    """Fresh SQLite database with every table created."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()


# ─────────────────────────────────────────────────────────────────────────────
# Slack
# ─────────────────────────────────────────────────────────────────────────────

def ts_at(dt: datetime) -> str:
    """Slack ts string for an aware datetime."""
    return f"{dt.timestamp():.6f}"


def slack_msg(ts: str, user: str | None = "UPARTNER", **extra: Any) -> dict[str, Any]:
    """A raw conversations.history message."""
    raw: dict[str, Any] = {"type": "message", "ts": ts, "text": "hello"}
    if user is not None:
        raw["user"] = user
    raw.update(extra)
    return raw


class FakeSlack:
    """In-memory stand-in for the parts of SlackClient the sync engine calls.

    History pages are newest first and honor the exclusive oldest/latest
    bounds; the cursor is an offset into the filtered list.
    """

    def __init__(self, page_size: int = 2, bot_user: str = "UBOT") -> None:
        self.page_size = page_size
        self.bot_user = bot_user
        self.history: dict[str, list[dict[str, Any]]] = {}
        self.join_errors: dict[str, str] = {}
        self.members: dict[str, list[str]] = {}
        self.member_errors: dict[str, str] = {}
        self.broken: set[str] = set()
        self.history_calls: list[dict[str, Any]] = []

    async def join_channel(self, channel_id: str) -> None:
        code = self.join_errors.get(channel_id)
        if code:
            raise SlackApiError(code, method="conversations.join")

    async def bot_user_id(self) -> str:
        return self.bot_user

    async def get_channel_members(self, channel_id: str) -> list[str]:
        code = self.member_errors.get(channel_id)
        if code:
            raise SlackApiError(code, method="conversations.members")
        return list(self.members.get(channel_id, []))

    async def get_channel_history_page(
        self,
        channel_id: str,
        oldest: str | None = None,
        latest: str | None = None,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> HistoryPage:
        self.history_calls.append(
            {"channel": channel_id, "oldest": oldest, "latest": latest, "cursor": cursor}
        )
        if channel_id in self.broken:
            raise SlackApiError("channel_not_found", method="conversations.history")

        messages = [
            m for m in self.history.get(channel_id, [])
            if (oldest is None or ts_key(m["ts"]) > ts_key(oldest))
            and (latest is None or ts_key(m["ts"]) < ts_key(latest))
        ]
        messages.sort(key=lambda m: ts_key(m["ts"]), reverse=True)

        start = int(cursor or 0)
        size = limit or self.page_size
        page = messages[start:start + size]
        more = start + size < len(messages)
        return HistoryPage(
            messages=[MessageMeta.from_api(m) for m in page],
            has_more=more,
            next_cursor=str(start + size) if more else None,
        )

    def calls_for(self, channel_id: str, backfill: bool) -> list[dict[str, Any]]:
        return [
            c for c in self.history_calls
            if c["channel"] == channel_id and (c["latest"] is not None) == backfill
        ]


@pytest.fixture
def fake_slack() -> FakeSlack:
    return FakeSlack()


@pytest.fixture
def partner_id() -> uuid.UUID:
    return uuid.uuid4()


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)
