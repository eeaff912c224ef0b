"""Typed views of the Slack payloads the sync path consumes.

Only metadata is kept. Message text is dropped at the client boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SlackUserType(str, Enum):
    """Account type of a workspace user."""
    MEMBER = "member"
    MULTI_CHANNEL_GUEST = "multi_channel_guest"
    SINGLE_CHANNEL_GUEST = "single_channel_guest"
    BOT = "bot"
    DEACTIVATED = "deactivated"
    CONNECT = "connect"          # Slack Connect (external org)

    @property
    def label(self) -> str:
        return _USER_TYPE_LABELS[self]


_USER_TYPE_LABELS: dict[SlackUserType, str] = {
    SlackUserType.MEMBER: "Member",
    SlackUserType.MULTI_CHANNEL_GUEST: "Multi-Channel Guest",
    SlackUserType.SINGLE_CHANNEL_GUEST: "Single-Channel Guest",
    SlackUserType.BOT: "Bot",
    SlackUserType.DEACTIVATED: "Deactivated",
    SlackUserType.CONNECT: "Slack Connect",
}


@dataclass
class SlackUser:
    id: str
    name: str = ""
    real_name: str = ""
    email: str | None = None
    deleted: bool = False
    is_bot: bool = False
    is_app_user: bool = False
    is_restricted: bool = False          # Multi-channel guest
    is_ultra_restricted: bool = False    # Single-channel guest
    is_stranger: bool = False
    tz: str | None = None

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> SlackUser:
        profile = raw.get("profile") or {}
        return cls(
            id=raw["id"],
            name=raw.get("name", ""),
            real_name=raw.get("real_name") or profile.get("real_name", ""),
            email=profile.get("email"),
            deleted=bool(raw.get("deleted")),
            is_bot=bool(raw.get("is_bot")),
            is_app_user=bool(raw.get("is_app_user")),
            is_restricted=bool(raw.get("is_restricted")),
            is_ultra_restricted=bool(raw.get("is_ultra_restricted")),
            is_stranger=bool(raw.get("is_stranger")),
            tz=raw.get("tz"),
        )

    @property
    def account_type(self) -> SlackUserType:
        """Classify the account. Checks run in priority order."""
        if self.deleted:
            return SlackUserType.DEACTIVATED
        if self.is_bot or self.is_app_user:
            return SlackUserType.BOT
        if self.is_stranger:
            return SlackUserType.CONNECT
        if self.is_ultra_restricted:
            return SlackUserType.SINGLE_CHANNEL_GUEST
        if self.is_restricted:
            return SlackUserType.MULTI_CHANNEL_GUEST
        return SlackUserType.MEMBER


@dataclass
class SlackChannel:
    id: str
    name: str
    is_private: bool = False
    is_archived: bool = False
    is_shared: bool = False
    is_ext_shared: bool = False
    num_members: int = 0
    purpose: str = ""
    topic: str = ""

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> SlackChannel:
        return cls(
            id=raw["id"],
            name=raw.get("name", ""),
            is_private=bool(raw.get("is_private")),
            is_archived=bool(raw.get("is_archived")),
            is_shared=bool(raw.get("is_shared")),
            is_ext_shared=bool(raw.get("is_ext_shared")),
            num_members=int(raw.get("num_members") or 0),
            purpose=(raw.get("purpose") or {}).get("value", ""),
            topic=(raw.get("topic") or {}).get("value", ""),
        )


@dataclass
class MessageMeta:
    """Content-free projection of one conversations.history message."""
    ts: str
    type: str = "message"
    thread_ts: str | None = None
    user: str | None = None
    bot_id: str | None = None
    subtype: str | None = None

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> MessageMeta:
        return cls(
            ts=str(raw.get("ts", "")),
            type=raw.get("type", "message"),
            thread_ts=raw.get("thread_ts"),
            user=raw.get("user"),
            bot_id=raw.get("bot_id"),
            subtype=raw.get("subtype"),
        )


@dataclass
class HistoryPage:
    messages: list[MessageMeta] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None


@dataclass
class AuthInfo:
    workspace_name: str
    bot_user_id: str
