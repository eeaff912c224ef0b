"""Partner Pulse: Slack message-metadata sync and response-time analytics."""

__version__ = "0.1.0"
