"""Suspicious-subscriber monitoring.

Subscribers that keep tripping the rate limiter or keep sending prohibited
content are flagged for operator review. A flag is informational: it shows up
in logs and `/v1/stats` but does not deny requests on its own.

Per-process and bounded, like the rate limiter.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("quota_gateway.security")

STRIKE_RATE_LIMITED = "rate_limited"
STRIKE_PROHIBITED_CONTENT = "prohibited_content"


@dataclass
class SuspiciousFlag:
    subscriber_id: str
    reason: str
    flagged_at: float
    strikes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriber_id": self.subscriber_id,
            "reason": self.reason,
            "flagged_at": self.flagged_at,
            "strikes": self.strikes,
        }


@dataclass
class _Strikes:
    count: int
    window_start: float


class SuspiciousActivityMonitor:
    """Counts strikes per subscriber in a fixed window and flags repeat offenders.

    ``threshold`` strikes of the same kind inside ``window_seconds`` flag the
    subscriber. Flags stay until ``clear`` is called or the flag table is full,
    in which case the oldest flag is dropped.
    """

    def __init__(
        self,
        threshold: int = 5,
        window_seconds: float = 600.0,
        max_keys: int = 10000,
        clock: Optional[Callable[[], float]] = None,
    ):
        if threshold <= 0 or window_seconds <= 0:
            raise ValueError("threshold and window_seconds must be positive")
        self._threshold = int(threshold)
        self._window_seconds = float(window_seconds)
        self._max_keys = int(max_keys) if int(max_keys) > 0 else 10000
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._strikes: Dict[Tuple[str, str], _Strikes] = {}
        self._flags: "OrderedDict[str, SuspiciousFlag]" = OrderedDict()

    def _purge_expired(self, now: float) -> None:
        for key in [k for k, s in self._strikes.items() if now >= s.window_start + self._window_seconds]:
            del self._strikes[key]

    def record_strike(self, subscriber_id: str, kind: str) -> bool:
        """Count one strike. Returns True when this strike flags the subscriber."""
        key = (subscriber_id.lower(), kind)
        now = self._clock()
        with self._lock:
            entry = self._strikes.get(key)
            if entry is None or now >= entry.window_start + self._window_seconds:
                if entry is None and len(self._strikes) >= self._max_keys:
                    self._purge_expired(now)
                    if len(self._strikes) >= self._max_keys:
                        return False
                entry = self._strikes[key] = _Strikes(count=0, window_start=now)
            entry.count += 1
            if entry.count < self._threshold or key[0] in self._flags:
                return False
            strikes = entry.count
        self.flag(subscriber_id, f"repeated {kind}", strikes=strikes)
        return True

    def flag(self, subscriber_id: str, reason: str, strikes: int = 0) -> None:
        sid = subscriber_id.lower()
        with self._lock:
            if sid not in self._flags and len(self._flags) >= self._max_keys:
                self._flags.popitem(last=False)
            self._flags[sid] = SuspiciousFlag(sid, reason, self._clock(), strikes)
            self._flags.move_to_end(sid)
        logger.warning("Flagged subscriber %s for: %s", sid, reason)

    def is_flagged(self, subscriber_id: str) -> bool:
        with self._lock:
            return subscriber_id.lower() in self._flags

    def clear(self, subscriber_id: str) -> bool:
        sid = subscriber_id.lower()
        with self._lock:
            for kind in (STRIKE_RATE_LIMITED, STRIKE_PROHIBITED_CONTENT):
                self._strikes.pop((sid, kind), None)
            return self._flags.pop(sid, None) is not None

    def flagged(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recently flagged first."""
        with self._lock:
            items = list(self._flags.values())[-limit:] if limit > 0 else []
        return [f.to_dict() for f in reversed(items)]

    def snapshot(self, limit: int = 100) -> Dict[str, Any]:
        with self._lock:
            total = len(self._flags)
        return {"flagged_total": total, "flagged": self.flagged(limit)}
