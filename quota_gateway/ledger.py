"""quota_gateway.ledger

Quota ledger backends and the async client the controller talks to.

The ledger is the authoritative source of truth for entitlements and the
concurrency boundary for debits: it, not this process, must reject a commit
that would take quota negative. Three backends are provided:

* ``SQLiteLedger``   reference ledger (single BEGIN IMMEDIATE transaction per
                     debit, idempotent per correlation id, circuit breaker)
* ``HttpLedger``     JSON-over-HTTP adapter for an external ledger service
* ``InMemoryLedger`` process-local ledger for tests and demos

``QuotaLedgerClient`` wraps any backend with bounded timeouts and a single
retry with backoff. Every transport failure, storage lockdown or timeout is
reported as ``LedgerUnavailable``; callers never see raw transport text.

Wire format (HttpLedger):
    GET  {base}/entitlements/{subscriber_id}
         200 -> {"subscriber_id", "tier_id", "expires_at", "remaining_quota", "source_record_id"}
         404 -> NotFound
    POST {base}/usage  {"subscriber_id", "cost", "correlation_id"}
         200 -> {"remaining_quota", "committed_at"?, "source_record_id"?, "replayed"?}
         404 -> NotFound, 409 -> InsufficientQuota
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from .crypto import _now_utc, _parse_iso_utc
from .errors import (
    QuotaGatewayError,
    insufficient_quota,
    ledger_unavailable,
    not_found,
)
from .lockdown import LedgerCircuitBreaker
from .metrics import observe_ledger_call
from .models import CommitReceipt, Entitlement, normalize_subscriber_id

logger = logging.getLogger("quota_gateway.ledger")


class Ledger(Protocol):
    """Authoritative subscription ledger (blocking calls)."""

    def read_entitlement(self, subscriber_id: str) -> Entitlement:
        ...

    def commit_usage(self, subscriber_id: str, cost: int, correlation_id: str) -> CommitReceipt:
        ...


# ---------------------------
# SQLite reference ledger
# ---------------------------

class SQLiteLedger:
    """
    Persistent reference ledger.

    Storage Properties:
    - WAL mode for concurrent readers
    - One BEGIN IMMEDIATE transaction per debit (check + decrement + record)
    - usage_commits keyed by correlation_id makes retried commits idempotent
    """

    def __init__(self, db_path: str = "quota_ledger.db", circuit: Optional[LedgerCircuitBreaker] = None):
        self.db_path = db_path
        self.circuit = circuit or LedgerCircuitBreaker()
        self._init_db()

    @contextmanager
    def _db(self, isolation_level: Optional[str] = ""):
        """DB connection wrapper with circuit breaker (fail-closed)."""
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=isolation_level,
            )
            try:
                with conn:
                    yield conn
            finally:
                conn.close()
            elapsed_ms = (time.monotonic() - start) * 1000.0
            if elapsed_ms >= float(self.circuit.config.latency_threshold_ms):
                self.circuit.record_latency(elapsed_ms)
            else:
                self.circuit.record_success()
        except sqlite3.OperationalError as e:
            self.circuit.record_failure(e)
            raise

    def _init_db(self) -> None:
        with self._db() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS entitlements (
                record_id TEXT PRIMARY KEY,
                subscriber_id TEXT NOT NULL,
                tier_id TEXT NOT NULL,
                expires_at_utc TEXT NOT NULL,
                remaining_quota INTEGER NOT NULL CHECK (remaining_quota >= 0),
                created_at_utc TEXT NOT NULL
            )
            """)
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_entitlements_subscriber
            ON entitlements(subscriber_id, expires_at_utc)
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_commits (
                correlation_id TEXT PRIMARY KEY,
                subscriber_id TEXT NOT NULL,
                record_id TEXT NOT NULL,
                cost INTEGER NOT NULL CHECK (cost > 0),
                remaining_after INTEGER NOT NULL,
                committed_at_utc TEXT NOT NULL
            )
            """)
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_usage_subscriber
            ON usage_commits(subscriber_id, committed_at_utc)
            """)

    @staticmethod
    def _row_to_entitlement(row: Any) -> Entitlement:
        record_id, subscriber_id, tier_id, expires_at, remaining = row
        return Entitlement(
            subscriber_id=subscriber_id,
            tier_id=tier_id,
            expires_at=_parse_iso_utc(expires_at),
            remaining_quota=int(remaining),
            source_record_id=record_id,
        )

    def grant(
        self,
        subscriber_id: str,
        tier_id: str,
        quota: int,
        duration_seconds: int,
        *,
        record_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Entitlement:
        """Record a purchased subscription (one entitlement per purchase)."""
        if int(quota) < 0:
            raise ValueError("quota must be >= 0")
        if int(duration_seconds) <= 0:
            raise ValueError("duration_seconds must be positive")
        issued = now or _now_utc()
        ent = Entitlement(
            subscriber_id=normalize_subscriber_id(subscriber_id),
            tier_id=str(tier_id),
            expires_at=issued + timedelta(seconds=int(duration_seconds)),
            remaining_quota=int(quota),
            source_record_id=record_id or f"ent_{uuid.uuid4().hex[:16]}",
        )
        with self._db() as conn:
            conn.execute("""
            INSERT INTO entitlements
            (record_id, subscriber_id, tier_id, expires_at_utc, remaining_quota, created_at_utc)
            VALUES (?, ?, ?, ?, ?, ?)
            """, (ent.source_record_id, ent.subscriber_id, ent.tier_id,
                  ent.expires_at.isoformat(), ent.remaining_quota, issued.isoformat()))
        return ent

    def read_entitlement(self, subscriber_id: str, now: Optional[datetime] = None) -> Entitlement:
        """
        Return the active entitlement (latest expiry), or the newest expired one
        so callers can tell "expired" from "absent". Raises NotFound otherwise.
        """
        key = normalize_subscriber_id(subscriber_id)
        now_s = (now or _now_utc()).isoformat()
        with self._db() as conn:
            cur = conn.execute("""
            SELECT record_id, subscriber_id, tier_id, expires_at_utc, remaining_quota
            FROM entitlements
            WHERE subscriber_id = ? AND expires_at_utc > ?
            ORDER BY expires_at_utc DESC LIMIT 1
            """, (key, now_s))
            row = cur.fetchone()
            if row is None:
                cur = conn.execute("""
                SELECT record_id, subscriber_id, tier_id, expires_at_utc, remaining_quota
                FROM entitlements
                WHERE subscriber_id = ?
                ORDER BY expires_at_utc DESC LIMIT 1
                """, (key,))
                row = cur.fetchone()
        if row is None:
            raise not_found(key)
        return self._row_to_entitlement(row)

    def commit_usage(
        self,
        subscriber_id: str,
        cost: int,
        correlation_id: str,
        now: Optional[datetime] = None,
    ) -> CommitReceipt:
        """
        Atomically debit `cost` from the active entitlement.

        Checks in one transaction:
        1. correlation_id not already committed (replay -> original receipt)
        2. an unexpired entitlement exists
        3. remaining_quota >= cost
        4. decrements quota and records the commit
        """
        if int(cost) <= 0:
            raise ValueError("cost must be positive")
        key = normalize_subscriber_id(subscriber_id)
        ts = now or _now_utc()
        with self._db(isolation_level=None) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cur = conn.execute("""
                SELECT subscriber_id, record_id, cost, remaining_after, committed_at_utc
                FROM usage_commits WHERE correlation_id = ?
                """, (correlation_id,))
                row = cur.fetchone()
                if row is not None:
                    conn.execute("COMMIT")
                    return CommitReceipt(
                        correlation_id=correlation_id,
                        subscriber_id=row[0],
                        cost=int(row[2]),
                        remaining_quota=int(row[3]),
                        committed_at=_parse_iso_utc(row[4]),
                        source_record_id=row[1],
                        replayed=True,
                    )

                cur = conn.execute("""
                SELECT record_id, remaining_quota FROM entitlements
                WHERE subscriber_id = ? AND expires_at_utc > ?
                ORDER BY expires_at_utc DESC LIMIT 1
                """, (key, ts.isoformat()))
                row = cur.fetchone()
                if row is None:
                    raise not_found(key)
                record_id, remaining = row[0], int(row[1])
                if int(cost) > remaining:
                    raise insufficient_quota(key, int(cost), remaining)

                cur = conn.execute("""
                UPDATE entitlements SET remaining_quota = remaining_quota - ?
                WHERE record_id = ? AND remaining_quota >= ?
                """, (int(cost), record_id, int(cost)))
                if cur.rowcount != 1:
                    raise insufficient_quota(key, int(cost), remaining)
                remaining_after = remaining - int(cost)
                conn.execute("""
                INSERT INTO usage_commits
                (correlation_id, subscriber_id, record_id, cost, remaining_after, committed_at_utc)
                VALUES (?, ?, ?, ?, ?, ?)
                """, (correlation_id, key, record_id, int(cost), remaining_after, ts.isoformat()))
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

        return CommitReceipt(
            correlation_id=correlation_id,
            subscriber_id=key,
            cost=int(cost),
            remaining_quota=remaining_after,
            committed_at=ts,
            source_record_id=record_id,
        )

    def usage_history(self, subscriber_id: str, limit: int = 100) -> List[CommitReceipt]:
        key = normalize_subscriber_id(subscriber_id)
        with self._db() as conn:
            cur = conn.execute("""
            SELECT correlation_id, record_id, cost, remaining_after, committed_at_utc
            FROM usage_commits WHERE subscriber_id = ?
            ORDER BY committed_at_utc DESC LIMIT ?
            """, (key, int(limit)))
            rows = cur.fetchall()
        return [
            CommitReceipt(
                correlation_id=r[0],
                subscriber_id=key,
                cost=int(r[2]),
                remaining_quota=int(r[3]),
                committed_at=_parse_iso_utc(r[4]),
                source_record_id=r[1],
            )
            for r in rows
        ]


# ---------------------------
# In-memory ledger
# ---------------------------

@dataclass(frozen=True)
class DemoGrant:
    """Entitlement handed to unknown subscribers by an auto-granting ledger."""
    tier_id: str = "premium"
    quota: int = 10
    duration_seconds: int = 30 * 24 * 3600


@dataclass
class _Record:
    record_id: str
    tier_id: str
    expires_at: datetime
    remaining_quota: int


class InMemoryLedger:
    """Process-local ledger.

    With ``auto_grant`` set, unknown subscribers receive a demo entitlement on
    first read. That is fail-open by construction and is only meant for demos;
    it is never used as a fallback for a failing real ledger.
    """

    def __init__(self, auto_grant: Optional[DemoGrant] = None, clock: Optional[Callable[[], datetime]] = None):
        self.auto_grant = auto_grant
        self._clock = clock or _now_utc
        self._lock = threading.Lock()
        self._records: Dict[str, List[_Record]] = {}
        self._commits: Dict[str, CommitReceipt] = {}
        self.calls: Counter = Counter()

    def grant(self, subscriber_id: str, tier_id: str, quota: int, duration_seconds: int,
              *, record_id: Optional[str] = None) -> Entitlement:
        if int(quota) < 0:
            raise ValueError("quota must be >= 0")
        key = normalize_subscriber_id(subscriber_id)
        rec = _Record(
            record_id=record_id or f"mem_{uuid.uuid4().hex[:16]}",
            tier_id=str(tier_id),
            expires_at=self._clock() + timedelta(seconds=int(duration_seconds)),
            remaining_quota=int(quota),
        )
        with self._lock:
            self._records.setdefault(key, []).append(rec)
        return self._to_entitlement(key, rec)

    @staticmethod
    def _to_entitlement(key: str, rec: _Record) -> Entitlement:
        return Entitlement(
            subscriber_id=key,
            tier_id=rec.tier_id,
            expires_at=rec.expires_at,
            remaining_quota=rec.remaining_quota,
            source_record_id=rec.record_id,
        )

    def _select(self, key: str, now: datetime, active_only: bool) -> Optional[_Record]:
        records = sorted(self._records.get(key, []), key=lambda r: r.expires_at, reverse=True)
        for rec in records:
            if rec.expires_at > now:
                return rec
        if active_only or not records:
            return None
        return records[0]

    def read_entitlement(self, subscriber_id: str) -> Entitlement:
        key = normalize_subscriber_id(subscriber_id)
        self.calls["read_entitlement"] += 1
        if self.auto_grant is not None:
            with self._lock:
                known = key in self._records
            if not known:
                logger.warning("Demo ledger auto-granting entitlement to %s", key)
                self.grant(key, self.auto_grant.tier_id, self.auto_grant.quota, self.auto_grant.duration_seconds)
        with self._lock:
            rec = self._select(key, self._clock(), active_only=False)
            if rec is None:
                raise not_found(key)
            return self._to_entitlement(key, rec)

    def commit_usage(self, subscriber_id: str, cost: int, correlation_id: str) -> CommitReceipt:
        if int(cost) <= 0:
            raise ValueError("cost must be positive")
        key = normalize_subscriber_id(subscriber_id)
        self.calls["commit_usage"] += 1
        with self._lock:
            prior = self._commits.get(correlation_id)
            if prior is not None:
                return replace(prior, replayed=True)
            now = self._clock()
            rec = self._select(key, now, active_only=True)
            if rec is None:
                raise not_found(key)
            if int(cost) > rec.remaining_quota:
                raise insufficient_quota(key, int(cost), rec.remaining_quota)
            rec.remaining_quota -= int(cost)
            receipt = CommitReceipt(
                correlation_id=correlation_id,
                subscriber_id=key,
                cost=int(cost),
                remaining_quota=rec.remaining_quota,
                committed_at=now,
                source_record_id=rec.record_id,
            )
            self._commits[correlation_id] = receipt
            return receipt


# ---------------------------
# HTTP ledger adapter
# ---------------------------

def _parse_expiry(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    parsed = _parse_iso_utc(str(value))
    if parsed is None:
        raise ValueError(f"invalid expires_at: {value!r}")
    return parsed


@dataclass
class HttpLedger:
    """HTTP-based ledger client.

    Non-2xx statuses other than 404/409, network errors, and malformed bodies
    are all reported as LedgerUnavailable.
    """

    base_url: str
    timeout_seconds: float = 5.0
    token: str = ""

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = self.base_url.rstrip("/") + path
        data = json.dumps(body).encode("utf-8") if body is not None else None
        headers = {"Accept": "application/json"}
        if data is not None:
            headers["Content-Type"] = "application/json"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
            decoded = json.loads(resp.read().decode("utf-8"))
        if not isinstance(decoded, dict):
            raise ValueError("expected JSON object")
        return decoded

    def read_entitlement(self, subscriber_id: str) -> Entitlement:
        key = normalize_subscriber_id(subscriber_id)
        try:
            doc = self._request("GET", "/entitlements/" + urllib.parse.quote(key, safe=""))
        except urllib.error.HTTPError as e:
            if e.code == 404:
                raise not_found(key) from e
            raise ledger_unavailable("read_entitlement", http_status_code=e.code) from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise ledger_unavailable("read_entitlement", error_type=type(e).__name__) from e

        try:
            return Entitlement(
                subscriber_id=key,
                tier_id=str(doc.get("tier_id", doc.get("tierId"))),
                expires_at=_parse_expiry(doc.get("expires_at", doc.get("expiresAt"))),
                remaining_quota=int(doc.get("remaining_quota", doc.get("remainingQuota"))),
                source_record_id=str(doc.get("source_record_id", doc.get("sourceRecordId", ""))),
            )
        except (TypeError, ValueError) as e:
            raise ledger_unavailable("read_entitlement", error_type="INVALID_RESPONSE") from e

    def commit_usage(self, subscriber_id: str, cost: int, correlation_id: str) -> CommitReceipt:
        key = normalize_subscriber_id(subscriber_id)
        body = {"subscriber_id": key, "cost": int(cost), "correlation_id": correlation_id}
        try:
            doc = self._request("POST", "/usage", body)
        except urllib.error.HTTPError as e:
            if e.code == 404:
                raise not_found(key) from e
            if e.code == 409:
                raise insufficient_quota(key, int(cost), -1) from e
            raise ledger_unavailable("commit_usage", http_status_code=e.code) from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise ledger_unavailable("commit_usage", error_type=type(e).__name__) from e

        try:
            committed_at = _parse_iso_utc(doc.get("committed_at")) or _now_utc()
            return CommitReceipt(
                correlation_id=correlation_id,
                subscriber_id=key,
                cost=int(cost),
                remaining_quota=int(doc.get("remaining_quota", doc.get("remainingQuota"))),
                committed_at=committed_at,
                source_record_id=str(doc.get("source_record_id", "")),
                replayed=bool(doc.get("replayed", False)),
            )
        except (TypeError, ValueError) as e:
            # The debit may have landed; the controller journals this for reconciliation.
            raise ledger_unavailable("commit_usage", error_type="INVALID_RESPONSE") from e


# ---------------------------
# Async client
# ---------------------------

class QuotaLedgerClient:
    """Async facade over a blocking Ledger backend.

    - each call runs in a worker thread under ``asyncio.wait_for``
    - timeouts and transport failures become LedgerUnavailable
    - LedgerUnavailable is retried once after ``retry_backoff_seconds``
    - commits are retried only when ``retry_commits`` is set; every backend
      here is idempotent per correlation id, so a retry cannot double-debit
    """

    def __init__(
        self,
        ledger: Ledger,
        *,
        read_timeout_seconds: float = 5.0,
        commit_timeout_seconds: float = 10.0,
        retry_backoff_seconds: float = 0.2,
        retry_commits: bool = True,
    ):
        self.ledger = ledger
        self.read_timeout_seconds = float(read_timeout_seconds)
        self.commit_timeout_seconds = float(commit_timeout_seconds)
        self.retry_backoff_seconds = float(retry_backoff_seconds)
        self.retry_commits = bool(retry_commits)

    @classmethod
    def from_config(cls, ledger: Ledger, config: Any) -> "QuotaLedgerClient":
        return cls(
            ledger,
            read_timeout_seconds=config.ledger_timeout_seconds,
            commit_timeout_seconds=config.commit_timeout_seconds,
            retry_backoff_seconds=config.ledger_retry_backoff_seconds,
        )

    async def _call_once(self, op: str, fn: Callable[..., Any], *args: Any, timeout: float) -> Any:
        start = time.monotonic()
        result = "ok"
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout)
        except QuotaGatewayError as e:
            result = e.code
            raise
        except asyncio.TimeoutError as e:
            result = "timeout"
            raise ledger_unavailable(op, timed_out=True, timeout_seconds=timeout) from e
        except Exception as e:
            result = "error"
            logger.warning("Ledger %s failed: %s: %s", op, type(e).__name__, e)
            raise ledger_unavailable(op, error_type=type(e).__name__) from e
        finally:
            observe_ledger_call(op, result, time.monotonic() - start)

    async def _call(self, op: str, fn: Callable[..., Any], *args: Any, timeout: float, retry: bool) -> Any:
        try:
            return await self._call_once(op, fn, *args, timeout=timeout)
        except QuotaGatewayError as e:
            if not (retry and e.retryable):
                raise
            logger.warning("Ledger %s unavailable, retrying once in %.2fs", op, self.retry_backoff_seconds)
        await asyncio.sleep(self.retry_backoff_seconds)
        return await self._call_once(op, fn, *args, timeout=timeout)

    async def read_entitlement(self, subscriber_id: str) -> Entitlement:
        return await self._call(
            "read_entitlement",
            self.ledger.read_entitlement,
            subscriber_id,
            timeout=self.read_timeout_seconds,
            retry=True,
        )

    async def commit_usage(self, subscriber_id: str, cost: int, correlation_id: str) -> CommitReceipt:
        return await self._call(
            "commit_usage",
            self.ledger.commit_usage,
            subscriber_id,
            int(cost),
            correlation_id,
            timeout=self.commit_timeout_seconds,
            retry=self.retry_commits,
        )


def build_ledger_from_env() -> Ledger:
    """Build the ledger backend from env vars.

    Env:
      QG_LEDGER_MODE: sqlite|http|demo (default sqlite)
      QG_LEDGER_DB_PATH: sqlite path (default quota_ledger.db)
      QG_LEDGER_URL: required if QG_LEDGER_MODE=http
      QG_LEDGER_TOKEN: optional bearer token for the HTTP ledger
      QG_LEDGER_HTTP_TIMEOUT_SECONDS: optional, float
    """
    mode = (os.getenv("QG_LEDGER_MODE", "sqlite") or "sqlite").strip().lower()
    if mode == "http":
        url = (os.getenv("QG_LEDGER_URL", "") or "").strip()
        if not url:
            raise RuntimeError("QG_LEDGER_URL must be set when QG_LEDGER_MODE=http")
        timeout_s = float(os.getenv("QG_LEDGER_HTTP_TIMEOUT_SECONDS", "5") or "5")
        return HttpLedger(base_url=url, timeout_seconds=timeout_s, token=(os.getenv("QG_LEDGER_TOKEN", "") or "").strip())
    if mode == "demo":
        logger.warning("QG_LEDGER_MODE=demo: every unknown subscriber receives a demo entitlement (fail-open)")
        return InMemoryLedger(auto_grant=DemoGrant())
    if mode != "sqlite":
        raise RuntimeError(f"Unsupported QG_LEDGER_MODE={mode!r}; expected sqlite|http|demo")
    return SQLiteLedger(db_path=os.getenv("QG_LEDGER_DB_PATH") or "quota_ledger.db")
