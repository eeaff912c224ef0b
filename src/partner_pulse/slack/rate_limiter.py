"""Process-wide pacing for Slack Web API calls.

Every request waits its turn at a single gate. The gate is a FIFO
(asyncio.Lock wakes waiters in arrival order) and holds the lock while
sleeping, so call starts are spaced at least ``min_interval`` apart no
matter how many coroutines are calling.

Retries re-enter the gate like any other call: a 429 backoff sleep
happens outside the lock, so it never blocks callers queued earlier.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

import structlog

from partner_pulse.config import settings

logger = structlog.get_logger()


class RateLimitGate:
    """Serializes callers with a minimum interval between admissions."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_admit: float | None = None
        self._admitted = 0

    async def wait_turn(self) -> None:
        """Block until this caller may issue its request."""
        async with self._lock:
            if self._last_admit is not None:
                delay = self._last_admit + self.min_interval - self._clock()
                if delay > 0:
                    await self._sleep(delay)
            self._last_admit = self._clock()
            self._admitted += 1

    @property
    def admitted(self) -> int:
        return self._admitted


# ═══════════════════════════════════════════════════════════════════════════
# SINGLETON
# ═══════════════════════════════════════════════════════════════════════════

_gate: RateLimitGate | None = None


def get_rate_gate(min_interval: float | None = None) -> RateLimitGate:
    """Get or create the gate shared by every SlackClient in this process.

    ``min_interval`` defaults to the global settings. A client configured
    with a longer interval than the live gate tightens it; a shorter one
    never loosens it, since the gate paces every client at once.
    """
    global _gate
    interval = settings.slack_min_call_interval_s if min_interval is None else min_interval
    if _gate is None:
        _gate = RateLimitGate(interval)
    elif interval > _gate.min_interval:
        logger.info(
            "slack_rate_gate_tightened",
            previous_interval_s=_gate.min_interval,
            interval_s=interval,
        )
        _gate.min_interval = interval
    return _gate


def reset_rate_gate() -> None:
    global _gate
    _gate = None
