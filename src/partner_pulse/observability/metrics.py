"""In-process metrics for the sync and analytics engines.

Tracks:
  - Slack API calls, retries and failures by method / reason
  - Per-channel sync outcomes and ingested message volume
  - Lease contention and chunk throughput
  - Analytics computations by outcome
  - Latency histograms for API calls, channel syncs, chunks and metric computes

All state is held in a single process-global singleton. Snapshots are plain
dicts; the CLI prints one after every command when asked, and every
``sync_chunk_done`` log line carries the process-wide channel-sync and
Slack API p95s.

Counters/histograms use an asyncio.Lock so they are safe from concurrent
coroutines. Sync contexts (tests) can call the _sync_* helpers directly.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator


# ---------------------------------------------------------------------------
# Histogram implementation
# ---------------------------------------------------------------------------

# Fixed upper-bound buckets in milliseconds. Chunks can legitimately take
# minutes, so the tail extends past the lease duration.
_LATENCY_BUCKETS_MS: tuple[float, ...] = (
    10, 25, 50, 100, 250, 500, 1_000, 2_500, 5_000, 10_000,
    30_000, 60_000, 120_000, 240_000, float("inf"),
)


@dataclass
class Histogram:
    """Latency histogram backed by fixed buckets + running stats."""

    name: str
    _buckets: list[int] = field(default_factory=lambda: [0] * len(_LATENCY_BUCKETS_MS))
    _count: int = 0
    _sum_ms: float = 0.0
    _min_ms: float = float("inf")
    _max_ms: float = 0.0

    def record(self, value_ms: float) -> None:
        self._count += 1
        self._sum_ms += value_ms
        self._min_ms = min(self._min_ms, value_ms)
        self._max_ms = max(self._max_ms, value_ms)
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            if value_ms <= bound:
                self._buckets[i] += 1
                break

    @property
    def count(self) -> int:
        return self._count

    @property
    def mean_ms(self) -> float:
        return self._sum_ms / self._count if self._count else 0.0

    def percentile(self, p: float) -> float:
        """Estimate percentile via linear interpolation across buckets."""
        if self._count == 0:
            return 0.0
        target = math.ceil(p / 100 * self._count)
        cumulative = 0
        prev_bound = 0.0
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            cumulative += self._buckets[i]
            if cumulative >= target:
                bucket_count = self._buckets[i]
                if bucket_count == 0:
                    return bound
                frac = (target - (cumulative - bucket_count)) / bucket_count
                upper = bound if not math.isinf(bound) else self._max_ms
                return prev_bound + frac * (upper - prev_bound)
            prev_bound = bound
        return self._max_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self._count,
            "min_ms": round(self._min_ms, 2) if self._count else 0,
            "max_ms": round(self._max_ms, 2),
            "mean_ms": round(self.mean_ms, 2),
            "p50_ms": round(self.percentile(50), 2),
            "p95_ms": round(self.percentile(95), 2),
            "buckets": {
                str(b) if not math.isinf(b) else "+Inf": self._buckets[i]
                for i, b in enumerate(_LATENCY_BUCKETS_MS)
            },
        }

    def reset(self) -> None:
        self._buckets = [0] * len(_LATENCY_BUCKETS_MS)
        self._count = 0
        self._sum_ms = 0.0
        self._min_ms = float("inf")
        self._max_ms = 0.0


# ---------------------------------------------------------------------------
# MetricsCollector
# ---------------------------------------------------------------------------

class MetricsCollector:
    """Process-global metrics registry.

    Attributes tracked
    ------------------
    Counters:
        slack_api_calls_total[method]      Every request admitted by the rate gate
        slack_api_retries_total[reason]    Retries scheduled (ratelimited / transient)
        slack_api_failures_total[code]     Errors surfaced to callers
        channels_synced_total[outcome]     success / failed
        messages_ingested_total            Rows actually inserted (duplicates excluded)
        lease_contended_total              Chunks skipped because another worker held the lease
        lease_lost_total                   Chunks whose lease was reclaimed before they finished
        chunks_total[outcome]              completed / partial / failed / skipped / lease_lost
        metrics_computed_total[outcome]    success / failed per (channel, date)

    Histograms (milliseconds):
        slack_api_latency_ms               One HTTP round-trip
        channel_sync_latency_ms            One channel's full sync
        chunk_latency_ms                   One process_chunk invocation
        metric_compute_latency_ms          One (channel, date) computation
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

        self._counters: dict[str, int] = defaultdict(int)
        self._labeled_counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))

        self._histograms: dict[str, Histogram] = {
            "slack_api_latency_ms": Histogram("slack_api_latency_ms"),
            "channel_sync_latency_ms": Histogram("channel_sync_latency_ms"),
            "chunk_latency_ms": Histogram("chunk_latency_ms"),
            "metric_compute_latency_ms": Histogram("metric_compute_latency_ms"),
        }

        self._started_at: float = time.monotonic()

    # ------------------------------------------------------------------
    # Async increment / record (safe for concurrent coroutines)
    # ------------------------------------------------------------------

    async def inc(self, name: str, value: int = 1) -> None:
        async with self._lock:
            self._counters[name] += value

    async def inc_labeled(self, name: str, label: str, value: int = 1) -> None:
        async with self._lock:
            self._labeled_counters[name][label] += value

    async def record(self, histogram: str, value_ms: float) -> None:
        async with self._lock:
            if histogram in self._histograms:
                self._histograms[histogram].record(value_ms)

    # ------------------------------------------------------------------
    # Sync variants (for test code that does not run an event loop)
    # ------------------------------------------------------------------

    def _sync_inc(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def _sync_inc_labeled(self, name: str, label: str, value: int = 1) -> None:
        self._labeled_counters[name][label] += value

    def _sync_record(self, histogram: str, value_ms: float) -> None:
        if histogram in self._histograms:
            self._histograms[histogram].record(value_ms)

    # ------------------------------------------------------------------
    # Context-manager timer
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def timer(self, histogram: str) -> AsyncIterator[None]:
        """Async context manager that auto-records elapsed ms."""
        t0 = time.monotonic()
        try:
            yield
        finally:
            elapsed_ms = (time.monotonic() - t0) * 1000
            await self.record(histogram, elapsed_ms)

    # ------------------------------------------------------------------
    # Named semantic helpers
    # ------------------------------------------------------------------

    async def slack_api_called(self, method: str) -> None:
        await self.inc_labeled("slack_api_calls_total", method)

    def slack_api_retried(self, reason: str) -> None:
        # Called from a synchronous tenacity hook.
        self._sync_inc_labeled("slack_api_retries_total", reason)

    async def slack_api_failed(self, code: str) -> None:
        await self.inc_labeled("slack_api_failures_total", code)

    async def channel_synced(self, success: bool, messages: int, elapsed_ms: float) -> None:
        await self.inc_labeled("channels_synced_total", "success" if success else "failed")
        if messages:
            await self.inc("messages_ingested_total", messages)
        await self.record("channel_sync_latency_ms", elapsed_ms)

    async def lease_contended(self) -> None:
        await self.inc("lease_contended_total")

    async def lease_lost(self) -> None:
        await self.inc("lease_lost_total")

    async def chunk_finished(self, outcome: str, elapsed_ms: float) -> None:
        await self.inc_labeled("chunks_total", outcome)
        await self.record("chunk_latency_ms", elapsed_ms)

    async def metric_computed(self, success: bool, elapsed_ms: float) -> None:
        await self.inc_labeled("metrics_computed_total", "success" if success else "failed")
        await self.record("metric_compute_latency_ms", elapsed_ms)

    # ------------------------------------------------------------------
    # Snapshot / export
    # ------------------------------------------------------------------

    async def snapshot(self) -> dict[str, Any]:
        """Return a complete metrics snapshot (lock-protected copy)."""
        async with self._lock:
            return self._build_snapshot()

    def snapshot_sync(self) -> dict[str, Any]:
        return self._build_snapshot()

    def p95(self, histogram: str) -> float:
        """Current p95 of one histogram, rounded for log lines."""
        return round(self._histograms[histogram].percentile(95), 2)

    def _build_snapshot(self) -> dict[str, Any]:
        return {
            "uptime_seconds": round(time.monotonic() - self._started_at, 1),
            "counters": dict(self._counters),
            "labeled_counters": {k: dict(v) for k, v in self._labeled_counters.items()},
            "histograms": {k: v.to_dict() for k, v in self._histograms.items()},
        }

    def reset_all(self) -> None:
        """Reset all metrics. Intended for tests only."""
        self._counters.clear()
        for v in self._labeled_counters.values():
            v.clear()
        for h in self._histograms.values():
            h.reset()


# ---------------------------------------------------------------------------
# Process-global singleton
# ---------------------------------------------------------------------------

_collector: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Return (or lazily create) the process-global MetricsCollector."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
