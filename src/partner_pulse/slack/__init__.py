"""Slack Web API access: rate-limited client, payload types, errors."""

from partner_pulse.slack.client import SlackClient, retry_delay
from partner_pulse.slack.errors import (
    SlackApiError,
    SlackConfigError,
    SlackError,
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
    SlackUserType,
)

__all__ = [
    "AuthInfo",
    "HistoryPage",
    "MessageMeta",
    "RateLimitGate",
    "SlackApiError",
    "SlackChannel",
    "SlackClient",
    "SlackConfigError",
    "SlackError",
    "SlackRateLimitError",
    "SlackTransientError",
    "SlackUser",
    "SlackUserType",
    "get_rate_gate",
    "retry_delay",
]
