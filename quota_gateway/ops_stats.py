"""Operational statistics for the gateway.

Lightweight in-memory counters and a snapshot for `/v1/stats`.

Notes
-----
- Counters reset on process restart.
- One instance per service context; nothing here is a module-level singleton.
- Do not treat these as billing records. The ledger is authoritative.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    # Outcomes
    requests_total: int = 0
    requests_by_state: Dict[str, int] = field(default_factory=dict)
    rejections_by_reason: Dict[str, int] = field(default_factory=dict)
    requests_by_tier: Dict[str, int] = field(default_factory=dict)
    units_committed_total: int = 0

    # Fail-closed signals
    ledger_unavailable_total: int = 0
    commit_anomalies_total: int = 0
    sink_failures_by_name: Dict[str, int] = field(default_factory=dict)


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_outcome(self, state: str, reason: str = "", tier: str = "", cost: int = 0) -> None:
        with self._lock:
            self._c.requests_total += 1
            self._inc_map(self._c.requests_by_state, state or "unknown")
            if reason:
                self._inc_map(self._c.rejections_by_reason, reason)
            if tier:
                self._inc_map(self._c.requests_by_tier, tier)
            self._c.units_committed_total += int(cost)

    def record_ledger_unavailable(self) -> None:
        with self._lock:
            self._c.ledger_unavailable_total += 1

    def record_commit_anomaly(self) -> None:
        with self._lock:
            self._c.commit_anomalies_total += 1

    def record_sink_failure(self, sink: str) -> None:
        with self._lock:
            self._inc_map(self._c.sink_failures_by_name, sink)

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "requests_total": c.requests_total,
                "requests_by_state": dict(c.requests_by_state),
                "rejections_by_reason": dict(c.rejections_by_reason),
                "requests_by_tier": dict(c.requests_by_tier),
                "units_committed_total": c.units_committed_total,
                "ledger_unavailable_total": c.ledger_unavailable_total,
                "commit_anomalies_total": c.commit_anomalies_total,
                "sink_failures_by_name": dict(c.sink_failures_by_name),
            }
        if extra:
            snap.update(extra)
        return snap
