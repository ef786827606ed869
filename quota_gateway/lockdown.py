"""Circuit breaker for the SQLite ledger.

The SQLite ledger is the authority for quota. When it turns slow, locked or
unresponsive, reads and debits stop (LOCKDOWN) for a short window and callers
get ``LedgerUnavailable`` instead of answers computed on guesses.

Ledger calls run in worker threads (``asyncio.to_thread``), so the breaker's
counters are guarded by a lock.

Env:
- QG_LEDGER_LATENCY_THRESHOLD_MS: one operation at least this slow trips immediately
- QG_LEDGER_FAILURE_THRESHOLD: failures (decayed by successes) required to trip
- QG_LEDGER_LOCKDOWN_SECONDS: how long a trip lasts
- QG_LEDGER_CONNECT_TIMEOUT_SECONDS: sqlite busy/connect timeout
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


class LedgerLockdownError(RuntimeError):
    """The ledger is in LOCKDOWN; no storage operation was attempted."""


def _env_number(name: str, default: float, lo: float, cast: Callable[[str], Any] = float) -> Any:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        return default
    return value if value >= lo else cast(str(lo))


@dataclass(frozen=True)
class CircuitBreakerConfig:
    latency_threshold_ms: int = 1000
    failure_threshold: int = 3
    lockdown_seconds: int = 15
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        return cls(
            latency_threshold_ms=_env_number("QG_LEDGER_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms, 1, int),
            failure_threshold=_env_number("QG_LEDGER_FAILURE_THRESHOLD", cls.failure_threshold, 1, int),
            lockdown_seconds=_env_number("QG_LEDGER_LOCKDOWN_SECONDS", cls.lockdown_seconds, 1, int),
            connect_timeout_seconds=_env_number(
                "QG_LEDGER_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds, 0.01,
            ),
        )


class LedgerCircuitBreaker:
    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or CircuitBreakerConfig.from_env()
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._failures = 0
        self._trips = 0
        self._lockdown_until = 0.0

    def is_lockdown_active(self) -> bool:
        with self._lock:
            return self._clock() < self._lockdown_until

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise LedgerLockdownError("LOCKDOWN_ACTIVE")

    def _trip_locked(self) -> None:
        self._lockdown_until = self._clock() + float(self.config.lockdown_seconds)
        self._failures = self.config.failure_threshold
        self._trips += 1

    def record_success(self) -> None:
        # Decay slowly so a flapping store still trips.
        with self._lock:
            if self._failures > 0:
                self._failures -= 1

    def record_latency(self, elapsed_ms: float) -> None:
        if elapsed_ms < float(self.config.latency_threshold_ms):
            return
        with self._lock:
            self._trip_locked()

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            self._failures += 1
            if self._failures >= self.config.failure_threshold:
                self._trip_locked()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            remaining = max(0.0, self._lockdown_until - self._clock())
            return {
                "lockdown_active": remaining > 0,
                "lockdown_remaining_seconds": round(remaining, 3),
                "failures": self._failures,
                "trips_total": self._trips,
            }
