"""Slack Web API client.

Rate-limited, retrying wrapper around the handful of Web API methods the
sync and analytics engines consume, built on slack_sdk's AsyncWebClient
with bot-token auth.

Rate limits (internal app):
- conversations.history is Tier 3 (~50 req/min)
- conversations.list / users.list are Tier 2

Every request is admitted by the process-wide RateLimitGate before it is
sent, retries included. The SDK's own retry handlers are switched off:
HTTP 429 and 5xx / connection errors are retried here with tenacity, and
the wait honors Retry-After when Slack sends one, otherwise it doubles
from the minimum call interval.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping

import aiohttp
import structlog
from slack_sdk.errors import SlackApiError as SdkApiError
from slack_sdk.web.async_client import AsyncWebClient
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from partner_pulse.config import Settings, settings as default_settings
from partner_pulse.observability.metrics import get_metrics
from partner_pulse.slack.errors import (
    SlackApiError,
    SlackConfigError,
    SlackRateLimitError,
    SlackTransientError,
)
from partner_pulse.slack.rate_limiter import RateLimitGate, get_rate_gate
from partner_pulse.slack.types import (
    AuthInfo,
    HistoryPage,
    MessageMeta,
    SlackChannel,
    SlackUser,
)

logger = structlog.get_logger()

DEFAULT_CHANNEL_TYPES = "public_channel,private_channel"

ApiMethod = Callable[..., Awaitable[Any]]


def retry_delay(attempt: int, retry_after: float | None, min_interval: float) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based)."""
    if retry_after is not None and retry_after > 0:
        return retry_after
    return min_interval * (2 ** attempt)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _header(headers: Mapping[str, Any] | None, name: str) -> str | None:
    """Case-insensitive header lookup; the SDK may hand back lists."""
    for key, value in (headers or {}).items():
        if key.lower() == name.lower():
            if isinstance(value, (list, tuple)):
                return value[0] if value else None
            return value
    return None


def _as_dict(data: Any) -> dict[str, Any]:
    return data if isinstance(data, dict) else {}


def translate_error(error: SdkApiError, method: str) -> SlackApiError:
    """Map an SDK error response onto this package's error taxonomy."""
    response = error.response
    status = getattr(response, "status_code", None)
    if status == 429:
        retry_after = _parse_retry_after(_header(getattr(response, "headers", None), "Retry-After"))
        return SlackRateLimitError(retry_after, method=method)
    if status is not None and status >= 500:
        return SlackTransientError(f"http_{status}", status_code=status, method=method)
    code = _as_dict(getattr(response, "data", None)).get("error")
    if not code:
        code = f"http_{status}" if status and status != 200 else "unknown_error"
    return SlackApiError(code, status_code=status, method=method)


class SlackClient:
    """Async Slack Web API client.

    Usage:
        slack = SlackClient()
        page = await slack.get_channel_history_page("C0123", oldest="1700000000.000000")
    """

    def __init__(
        self,
        token: str | None = None,
        *,
        config: Settings | None = None,
        gate: RateLimitGate | None = None,
        web_client: AsyncWebClient | None = None,
        retry_sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._settings = config or default_settings
        token = token if token is not None else self._settings.slack_bot_token
        if not token:
            raise SlackConfigError(
                "PULSE_SLACK_BOT_TOKEN is not set; the Slack client cannot authenticate"
            )

        self._gate = gate or get_rate_gate(self._settings.slack_min_call_interval_s)
        self._retry_sleep = retry_sleep
        self._max_retries = self._settings.slack_max_retries
        self._page_size = self._settings.slack_page_size
        self._bot_user_id: str | None = None

        self._web = web_client or AsyncWebClient(
            token=token,
            base_url=self._settings.slack_api_base.rstrip("/") + "/",
            timeout=int(self._settings.slack_request_timeout_s),
            retry_handlers=[],
        )

    # ═══════════════════════════════════════════════════════════════════════
    # TRANSPORT
    # ═══════════════════════════════════════════════════════════════════════

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = exc.retry_after if isinstance(exc, SlackRateLimitError) else None
        return retry_delay(retry_state.attempt_number, retry_after, self._gate.min_interval)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        reason = "ratelimited" if isinstance(exc, SlackRateLimitError) else "transient"
        delay = retry_state.next_action.sleep if retry_state.next_action else None
        logger.warning(
            "slack_api_retry",
            method=getattr(exc, "method", None),
            reason=reason,
            attempt=retry_state.attempt_number,
            max_retries=self._max_retries,
            delay_s=delay,
        )
        get_metrics().slack_api_retried(reason)

    async def _call(self, method: str, func: ApiMethod, **kwargs: Any) -> dict[str, Any]:
        """One logical API call: gate, send, retry, unwrap the envelope."""
        retry_kwargs: dict[str, Any] = {}
        if self._retry_sleep is not None:
            retry_kwargs["sleep"] = self._retry_sleep
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((SlackRateLimitError, SlackTransientError)),
                stop=stop_after_attempt(self._max_retries + 1),
                wait=self._wait,
                before_sleep=self._before_sleep,
                reraise=True,
                **retry_kwargs,
            ):
                with attempt:
                    return await self._send_once(method, func, kwargs)
        except SlackApiError as e:
            logger.error(
                "slack_api_failed",
                method=method,
                code=e.code,
                status_code=e.status_code,
            )
            await get_metrics().slack_api_failed(e.code)
            raise
        raise AssertionError("unreachable")  # pragma: no cover

    async def _send_once(
        self,
        method: str,
        func: ApiMethod,
        kwargs: dict[str, Any],
    ) -> dict[str, Any]:
        await self._gate.wait_turn()
        metrics = get_metrics()
        await metrics.slack_api_called(method)

        try:
            async with metrics.timer("slack_api_latency_ms"):
                response = await func(**kwargs)
        except SdkApiError as e:
            raise translate_error(e, method) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SlackTransientError(f"transport_{type(e).__name__}", method=method) from e
        return _as_dict(response.data)

    async def _paginate(
        self,
        method: str,
        func: ApiMethod,
        key: str,
        **kwargs: Any,
    ) -> AsyncIterator[Any]:
        """Yield items of ``key`` across every cursor page."""
        cursor: str | None = None
        while True:
            data = await self._call(method, func, cursor=cursor, **kwargs)
            for item in data.get(key) or []:
                yield item
            cursor = (data.get("response_metadata") or {}).get("next_cursor") or None
            if not cursor:
                break

    # ═══════════════════════════════════════════════════════════════════════
    # WORKSPACE
    # ═══════════════════════════════════════════════════════════════════════

    async def auth_test(self) -> AuthInfo:
        data = await self._call("auth.test", self._web.auth_test)
        info = AuthInfo(
            workspace_name=data.get("team", ""),
            bot_user_id=data.get("user_id", ""),
        )
        self._bot_user_id = info.bot_user_id
        return info

    async def bot_user_id(self) -> str:
        """The bot's own user id, fetched once per client."""
        if self._bot_user_id is None:
            await self.auth_test()
        return self._bot_user_id or ""

    async def list_users(
        self,
        include_bots: bool = False,
        include_deleted: bool = False,
    ) -> list[SlackUser]:
        users: list[SlackUser] = []
        async for raw in self._paginate(
            "users.list", self._web.users_list, "members", limit=self._page_size
        ):
            user = SlackUser.from_api(raw)
            if not include_bots and (user.is_bot or user.is_app_user):
                continue
            if not include_deleted and user.deleted:
                continue
            users.append(user)
        return users

    async def list_channels(
        self,
        include_archived: bool = False,
        types: str = DEFAULT_CHANNEL_TYPES,
    ) -> list[SlackChannel]:
        return [
            SlackChannel.from_api(raw)
            async for raw in self._paginate(
                "conversations.list",
                self._web.conversations_list,
                "channels",
                limit=self._page_size,
                types=types,
                exclude_archived=not include_archived,
            )
        ]

    # ═══════════════════════════════════════════════════════════════════════
    # CHANNELS
    # ═══════════════════════════════════════════════════════════════════════

    async def get_channel_history_page(
        self,
        channel_id: str,
        oldest: str | None = None,
        latest: str | None = None,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> HistoryPage:
        """One page of conversations.history, metadata only.

        ``oldest`` and ``latest`` are exclusive bounds.
        """
        data = await self._call(
            "conversations.history",
            self._web.conversations_history,
            channel=channel_id,
            limit=limit or self._page_size,
            oldest=oldest,
            latest=latest,
            cursor=cursor,
        )
        return HistoryPage(
            messages=[MessageMeta.from_api(m) for m in data.get("messages") or []],
            has_more=bool(data.get("has_more")),
            next_cursor=(data.get("response_metadata") or {}).get("next_cursor") or None,
        )

    async def get_channel_history(
        self,
        channel_id: str,
        oldest: str | None = None,
        limit: int | None = None,
    ) -> list[MessageMeta]:
        """Follow cursors until exhausted or ``limit`` messages are collected."""
        messages: list[MessageMeta] = []
        cursor: str | None = None
        while True:
            page_limit = self._page_size
            if limit is not None:
                page_limit = min(page_limit, limit - len(messages))
            page = await self.get_channel_history_page(
                channel_id, oldest=oldest, cursor=cursor, limit=page_limit
            )
            messages.extend(page.messages)
            cursor = page.next_cursor
            if not cursor or (limit is not None and len(messages) >= limit):
                break
        return messages

    async def get_channel_members(self, channel_id: str) -> list[str]:
        return [
            member
            async for member in self._paginate(
                "conversations.members",
                self._web.conversations_members,
                "members",
                channel=channel_id,
                limit=self._page_size,
            )
        ]

    async def join_channel(self, channel_id: str) -> None:
        """Join a public channel (needs the channels:join scope)."""
        await self._call("conversations.join", self._web.conversations_join, channel=channel_id)

    # ═══════════════════════════════════════════════════════════════════════
    # MESSAGES
    # ═══════════════════════════════════════════════════════════════════════

    async def post_message(self, channel_id: str, text: str) -> str:
        """Post plain text; returns the new message's ts."""
        data = await self._call(
            "chat.postMessage",
            self._web.chat_postMessage,
            channel=channel_id,
            text=text,
            mrkdwn=True,
        )
        ts = data.get("ts")
        if not isinstance(ts, str):
            raise SlackApiError("missing_ts", method="chat.postMessage")
        return ts

    async def get_permalink(self, channel_id: str, message_ts: str) -> str | None:
        data = await self._call(
            "chat.getPermalink",
            self._web.chat_getPermalink,
            channel=channel_id,
            message_ts=message_ts,
        )
        permalink = data.get("permalink")
        return permalink if isinstance(permalink, str) else None
