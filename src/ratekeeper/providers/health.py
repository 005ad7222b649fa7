"""Sliding-window health tracker for a single provider.

Purely observational: the numbers end up in ``status()`` snapshots and
never influence provider selection.
"""

from __future__ import annotations

import bisect
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable


@dataclass
class _Sample:
    timestamp: float
    success: bool
    latency_ms: float


class ProviderHealthTracker:
    """Rolling success rate and latency percentiles over a time window."""

    def __init__(
        self,
        provider_id: str,
        *,
        window_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider_id = provider_id
        self._window = window_seconds
        self._clock = clock

        self._samples: deque[_Sample] = deque()
        self._latencies: list[float] = []  # sorted for percentile calcs
        self._last_error: str | None = None

    def record_success(self, latency_ms: float) -> None:
        self._append(_Sample(self._clock(), success=True, latency_ms=latency_ms))

    def record_failure(self, error: str, latency_ms: float = 0.0) -> None:
        self._last_error = error
        self._append(_Sample(self._clock(), success=False, latency_ms=latency_ms))

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def success_rate(self) -> float:
        self._evict()
        if not self._samples:
            return 1.0
        successes = sum(1 for s in self._samples if s.success)
        return float(f"{successes / len(self._samples):.4f}")

    def percentile(self, p: float) -> float:
        self._evict()
        if not self._latencies:
            return 0.0
        idx = min(int(len(self._latencies) * p), len(self._latencies) - 1)
        return float(f"{self._latencies[idx]:.2f}")

    # ── Internals ────────────────────────────────────────────
    def _append(self, sample: _Sample) -> None:
        self._samples.append(sample)
        if sample.latency_ms > 0:
            bisect.insort(self._latencies, sample.latency_ms)
        self._evict()

    def _evict(self) -> None:
        cutoff = self._clock() - self._window
        while self._samples and self._samples[0].timestamp < cutoff:
            old = self._samples.popleft()
            if old.latency_ms > 0:
                idx = bisect.bisect_left(self._latencies, old.latency_ms)
                if idx < len(self._latencies) and self._latencies[idx] == old.latency_ms:
                    del self._latencies[idx]
