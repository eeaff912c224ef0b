"""Slack API error taxonomy.

The client translates slack_sdk's own SlackApiError into these, keeping
the SDK error as ``__cause__``.
"""

from __future__ import annotations


class SlackError(Exception):
    """Base class for everything the Slack client raises."""


class SlackConfigError(SlackError):
    """Client cannot be used as configured (e.g. no bot token)."""


class SlackApiError(SlackError):
    """Slack answered, but with an error.

    ``code`` is the envelope's ``error`` string (``channel_not_found``,
    ``already_in_channel``...) or ``http_<status>`` for non-2xx responses.
    """

    def __init__(self, code: str, status_code: int | None = None, method: str | None = None):
        self.code = code
        self.status_code = status_code
        self.method = method
        where = f" ({method})" if method else ""
        super().__init__(f"Slack API error{where}: {code}")


class SlackRateLimitError(SlackApiError):
    """HTTP 429. Retried inside the client; raised once retries are exhausted."""

    def __init__(self, retry_after: float | None = None, method: str | None = None):
        self.retry_after = retry_after
        super().__init__("ratelimited", status_code=429, method=method)


class SlackTransientError(SlackApiError):
    """5xx or transport failure; safe to retry."""
