"""In-process per-subscriber rate limiting.

This is intentionally simple:
 - No external deps
 - Per-process (not distributed)
 - Fixed window per subscriber, independent of ledger-backed quota

A request denied here never reaches the ledger. The limiter counts request
volume, not request validity: content rejected later by pricing still counted.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple


@dataclass
class RateWindow:
    count: int
    window_start: float
    window_length_ms: int
    max_requests: int

    @property
    def reset_at(self) -> float:
        return self.window_start + self.window_length_ms / 1000.0

    def is_expired(self, now: float) -> bool:
        return now >= self.reset_at


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    reset_at: float

    def retry_after(self, now: Optional[float] = None) -> float:
        return max(0.0, self.reset_at - (time.time() if now is None else now))


class RateLimiter:
    """Keyed fixed-window rate limiter (per-process).

    Windows reset when ``now >= window_start + window_length``. Exactly
    ``max_requests`` checks are allowed per window; further checks are denied
    without advancing the counter.
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        max_keys: int = 20000,
        clock: Optional[Callable[[], float]] = None,
    ):
        if max_requests <= 0 or window_ms <= 0:
            raise ValueError("max_requests and window_ms must be positive")
        self._max_requests = int(max_requests)
        self._window_ms = int(window_ms)
        self._max_keys = int(max_keys) if int(max_keys) > 0 else 20000
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._windows: Dict[str, RateWindow] = {}

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_ms(self) -> int:
        return self._window_ms

    def now(self) -> float:
        return self._clock()

    def _purge_expired(self, now: float) -> None:
        for key in [k for k, w in self._windows.items() if w.is_expired(now)]:
            del self._windows[key]

    def check(self, subscriber_id: str) -> RateDecision:
        key = subscriber_id or "_anon"
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                # Prevent unbounded memory growth from high-cardinality keys.
                if len(self._windows) >= self._max_keys:
                    self._purge_expired(now)
                    if len(self._windows) >= self._max_keys:
                        return RateDecision(allowed=False, remaining=0, reset_at=now + self._window_ms / 1000.0)
                window = RateWindow(count=0, window_start=now, window_length_ms=self._window_ms, max_requests=self._max_requests)
                self._windows[key] = window
            elif window.is_expired(now):
                window.count = 0
                window.window_start = now

            if window.count >= window.max_requests:
                return RateDecision(allowed=False, remaining=0, reset_at=window.reset_at)

            window.count += 1
            return RateDecision(
                allowed=True,
                remaining=window.max_requests - window.count,
                reset_at=window.reset_at,
            )

    def reset(self, subscriber_id: str) -> None:
        with self._lock:
            self._windows.pop(subscriber_id, None)

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._windows)


def parse_rate_limit(rule: str) -> Tuple[int, int]:
    """Parse a compact rate limit rule like '10/m' or '5/s'.

    Returns (max_requests, window_ms).
    """
    s = (rule or "").strip().lower()
    if not s:
        raise ValueError("empty rate limit rule")
    if "/" not in s:
        raise ValueError("invalid rate limit rule; expected like '10/m' or '5/s'")
    num_str, unit = s.split("/", 1)
    n = int(num_str)
    unit = unit.strip()
    if n <= 0:
        raise ValueError("rate must be positive")
    if unit in ("s", "sec", "second", "seconds"):
        window_ms = 1000
    elif unit in ("m", "min", "minute", "minutes"):
        window_ms = 60_000
    elif unit in ("h", "hr", "hour", "hours"):
        window_ms = 3_600_000
    else:
        raise ValueError(f"unsupported rate unit: {unit}")
    return n, window_ms
