"""
Channel base infrastructure shared by the delivery layer.

Provides:
- ChannelError: structured error hierarchy
- SlidingWindowRateLimiter: per-recipient admission over a trailing window
- DeliveryMetrics: send/fail/queue/drop/latency tracking
"""
from __future__ import annotations

import time
from collections import deque
from typing import Any, Callable, Optional

from models.schemas import SendOutcome


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class TransportError(ChannelError):
    """The transport failed to carry out a send/download/lookup."""

    def __init__(self, message: str, channel: str = ""):
        super().__init__(message, channel, retryable=True)


class NotReadyError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Connection not ready for {channel or 'transport'}", channel, retryable=True)


class MediaValidationError(ChannelError):
    """Media content is unusable: unsupported format, oversize, unreadable."""

    def __init__(self, reason: str, channel: str = ""):
        self.reason = reason
        super().__init__(f"Invalid media: {reason}", channel, retryable=False)


# ══════════════════════════════════════════════════════════════
#  SLIDING WINDOW RATE LIMITER
# ══════════════════════════════════════════════════════════════

class SlidingWindowRateLimiter:
    """
    Per-recipient admission control.

    Each recipient owns a deque of admitted-send timestamps. On every check
    timestamps outside the trailing window are pruned, then the send is
    admitted only if fewer than `limit` remain.
    """

    def __init__(
        self,
        limit: int = 10,
        window_seconds: float = 3600.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window = window_seconds
        self.enabled = enabled
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}

    def admit(self, recipient_key: str) -> bool:
        if not recipient_key:
            raise ValueError("recipient_key must be non-empty")
        if not self.enabled:
            return True

        now = self._clock()
        window = self._windows.setdefault(recipient_key, deque())
        cutoff = now - self.window
        while window and window[0] <= cutoff:
            window.popleft()

        if len(window) >= self.limit:
            return False

        window.append(now)
        return True

    def reset(self, recipient_key: Optional[str] = None):
        if recipient_key is None:
            self._windows.clear()
        else:
            self._windows.pop(recipient_key, None)

    @property
    def tracked_recipients(self) -> int:
        return len(self._windows)


# ══════════════════════════════════════════════════════════════
#  DELIVERY METRICS
# ══════════════════════════════════════════════════════════════

class DeliveryMetrics:
    """Tracks send, failure, queueing, drop and latency counters."""

    def __init__(self):
        self.outcomes: dict[str, int] = {o.value: 0 for o in SendOutcome}
        self.chunks_sent: int = 0
        self.retries: int = 0
        self.dropped_stale: int = 0
        self.dropped_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record(self, outcome: SendOutcome, latency_ms: float = 0.0, error: str = ""):
        self.outcomes[outcome.value] += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
        if error:
            self._errors.append(error)

    def record_chunk(self):
        self.chunks_sent += 1

    def record_retry(self):
        self.retries += 1

    def record_drop(self, stale: bool = False, error: str = ""):
        if stale:
            self.dropped_stale += 1
        else:
            self.dropped_failed += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        delivered = self.outcomes[SendOutcome.DELIVERED.value]
        failed = self.outcomes[SendOutcome.FAILED.value]
        total = delivered + failed
        return failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.outcomes,
            "chunks_sent": self.chunks_sent,
            "retries": self.retries,
            "dropped_stale": self.dropped_stale,
            "dropped_failed": self.dropped_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }
