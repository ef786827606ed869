"""Crash-safe journal of commit anomalies.

Purpose
-------
When content has been served but the ledger debit did not land (or its outcome
is unknown), the gateway has given something away that the ledger has not
charged for. Each such case is appended here so an operator or a batch job can
reconcile it against the ledger later.

The journal:
- is append-only and fsync'd per record
- survives process restarts
- tolerates a truncated final line after a crash
- records resolutions as separate lines; nothing is rewritten in place
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .crypto import _now_utc

STATUS_PENDING = "pending"
STATUS_RESOLVED = "resolved"


@dataclass(frozen=True)
class CommitAnomaly:
    correlation_id: str
    subscriber_id: str
    cost: int
    tier_id: str
    error_code: str
    ts_utc: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "subscriber_id": self.subscriber_id,
            "cost": self.cost,
            "tier_id": self.tier_id,
            "error_code": self.error_code,
            "ts_utc": self.ts_utc,
        }


class ReconciliationJournal:
    """Append-only journal of unreconciled commits with fsync for durability."""

    def __init__(self, path: str):
        self.path = str(path)
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _write(self, rec: Dict[str, Any]) -> None:
        line = json.dumps(rec, separators=(",", ":"), sort_keys=True) + "\n"
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    def append(
        self,
        *,
        correlation_id: str,
        subscriber_id: str,
        cost: int,
        tier_id: str,
        error_code: str,
        ts_utc: Optional[str] = None,
    ) -> CommitAnomaly:
        anomaly = CommitAnomaly(
            correlation_id=correlation_id,
            subscriber_id=subscriber_id,
            cost=int(cost),
            tier_id=tier_id,
            error_code=error_code,
            ts_utc=ts_utc or _now_utc().isoformat(),
        )
        with self._lock:
            self._write({"status": STATUS_PENDING, **anomaly.to_dict()})
        return anomaly

    def mark_resolved(self, correlation_id: str, note: str = "") -> None:
        with self._lock:
            self._write({
                "status": STATUS_RESOLVED,
                "correlation_id": correlation_id,
                "note": note,
                "ts_utc": _now_utc().isoformat(),
            })

    def load(self) -> List[Dict[str, Any]]:
        """All well-formed records in append order. Stops at a truncated tail line."""
        with self._lock:
            p = Path(self.path)
            if not p.exists() or p.stat().st_size == 0:
                return []
            records: List[Dict[str, Any]] = []
            with open(p, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        rec = json.loads(line)
                    except json.JSONDecodeError:
                        # Likely a truncated tail line after crash.
                        break
                    if isinstance(rec, dict) and isinstance(rec.get("correlation_id"), str):
                        records.append(rec)
            return records

    def pending(self) -> List[CommitAnomaly]:
        open_items: Dict[str, CommitAnomaly] = {}
        for rec in self.load():
            cid = rec["correlation_id"]
            if rec.get("status") == STATUS_RESOLVED:
                open_items.pop(cid, None)
                continue
            try:
                open_items[cid] = CommitAnomaly(
                    correlation_id=cid,
                    subscriber_id=str(rec["subscriber_id"]),
                    cost=int(rec["cost"]),
                    tier_id=str(rec.get("tier_id", "")),
                    error_code=str(rec.get("error_code", "")),
                    ts_utc=str(rec.get("ts_utc", "")),
                )
            except (KeyError, TypeError, ValueError):
                continue
        return list(open_items.values())
