"""Signed, hash-chained JSONL log of request outcomes.

Each line carries:
- prev_hash: entry_hash of the previous line (genesis is 64 zeros)
- event_hash: SHA-256 of the canonical event JSON
- entry_hash: SHA-256 over (prev_hash, event_hash, ts_utc), length-prefixed
- signature_b64: Ed25519 over (version, ts_utc, prev_hash, event_hash, entry_hash)

Editing, dropping or reordering lines breaks the chain or a signature. A host
compromise that also steals the signing key is out of reach; ship the log to
an append-only store for that.

Env (read by service wiring):
- QG_AUDIT_LOG_PATH: enables the log
- QG_AUDIT_SIGNING_KEY / QG_AUDIT_KEY_ID: hex Ed25519 seed and its key id
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Tuple

from .crypto import Ed25519KeyPair, _now_utc, _safe_hash_encode, _sha256_hex, canonical_json_dumps

if TYPE_CHECKING:  # pragma: no cover
    from .models import Outcome

logger = logging.getLogger("quota_gateway.audit_log")

AUDIT_VERSION = "QG_AUDIT_V1"
GENESIS_HASH = "0" * 64
_TAIL_READ_BYTES = 4096


@dataclass
class AuditLogRecord:
    version: str
    ts_utc: str
    prev_hash: str
    event: Dict[str, Any]
    event_hash: str
    entry_hash: str
    key_id: str
    signature_b64: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


def _event_hash(event: Dict[str, Any]) -> str:
    return _sha256_hex(canonical_json_dumps(event).encode("utf-8"))


def _entry_hash(prev_hash: str, event_hash: str, ts: str) -> str:
    return _sha256_hex(_safe_hash_encode([prev_hash, event_hash, ts]))


def _signed_payload(ts: str, prev_hash: str, event_hash: str, entry_hash: str) -> bytes:
    return _safe_hash_encode([AUDIT_VERSION, ts, prev_hash, event_hash, entry_hash])


def outcome_event(outcome: "Outcome", tier_id: Optional[str]) -> Dict[str, Any]:
    """Audit view of an outcome: identifiers and accounting only, never content."""
    event: Dict[str, Any] = {
        "type": "outcome",
        "correlation_id": outcome.correlation_id,
        "subscriber_id": outcome.subscriber_id,
        "state": outcome.state.value,
        "reason": outcome.reason.value if outcome.reason else None,
        "cost": outcome.cost,
        "tier_id": tier_id,
    }
    if outcome.receipt is not None:
        event["response_digest"] = outcome.receipt.response_digest
    return event


class TamperEvidentAuditLog:
    def __init__(self, path: str, signing_key: Ed25519KeyPair):
        if not signing_key.can_sign():
            raise ValueError("audit log requires a key pair with a private key")
        self.path = str(path)
        self.signing_key = signing_key
        self._lock = threading.Lock()

        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)
        self._last_hash = self._resume_hash(p)

    def _resume_hash(self, p: Path) -> str:
        if not p.exists() or p.stat().st_size == 0:
            return GENESIS_HASH
        with p.open("rb") as f:
            f.seek(0, 2)
            end = f.tell()
            f.seek(max(0, end - _TAIL_READ_BYTES))
            lines = f.read().splitlines()
        try:
            rec = json.loads(lines[-1].decode("utf-8"))
            return str(rec["entry_hash"])
        except (IndexError, KeyError, TypeError, UnicodeDecodeError, ValueError):
            # verify_file reports the break at this point.
            logger.warning("Audit log %s has an unreadable tail; chaining from genesis", self.path)
            return GENESIS_HASH

    def append_event(self, event: Dict[str, Any], ts_utc: Optional[str] = None) -> AuditLogRecord:
        ts = ts_utc or _now_utc().isoformat()
        event_hash = _event_hash(event)
        with self._lock:
            prev_hash = self._last_hash
            entry_hash = _entry_hash(prev_hash, event_hash, ts)
            sig = self.signing_key.sign(_signed_payload(ts, prev_hash, event_hash, entry_hash))
            rec = AuditLogRecord(
                version=AUDIT_VERSION,
                ts_utc=ts,
                prev_hash=prev_hash,
                event=event,
                event_hash=event_hash,
                entry_hash=entry_hash,
                key_id=self.signing_key.key_id,
                signature_b64=base64.b64encode(sig).decode("ascii"),
            )
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(rec.to_json() + "\n")
            self._last_hash = entry_hash
        return rec

    def append_outcome(self, outcome: "Outcome", tier_id: Optional[str] = None) -> AuditLogRecord:
        return self.append_event(outcome_event(outcome, tier_id))

    @staticmethod
    def _check_record(rec: Any, prev: str, trusted_keys: Mapping[str, Ed25519KeyPair]) -> Tuple[str, str]:
        """Returns (reason, entry_hash); reason is "" when the record is valid."""
        if not isinstance(rec, dict):
            return "PARSE_ERROR", ""
        version = rec.get("version")
        if version != AUDIT_VERSION:
            return f"BAD_VERSION:{version}", ""
        ts = str(rec.get("ts_utc"))
        prev_hash = str(rec.get("prev_hash"))
        if prev_hash != prev:
            return "CHAIN_BROKEN", ""

        event = rec.get("event")
        if not isinstance(event, dict):
            return "BAD_EVENT", ""
        try:
            event_hash = _event_hash(event)
        except ValueError:
            return "BAD_EVENT", ""
        if event_hash != str(rec.get("event_hash")):
            return "EVENT_HASH_MISMATCH", ""

        entry_hash = _entry_hash(prev_hash, event_hash, ts)
        if entry_hash != str(rec.get("entry_hash")):
            return "ENTRY_HASH_MISMATCH", ""

        key = trusted_keys.get(str(rec.get("key_id")))
        if key is None:
            return "UNKNOWN_KEY", ""
        try:
            sig = base64.b64decode(str(rec.get("signature_b64")), validate=True)
        except (binascii.Error, ValueError):
            return "BAD_SIGNATURE_ENCODING", ""
        if not key.verify(_signed_payload(ts, prev_hash, event_hash, entry_hash), sig):
            return "INVALID_SIGNATURE", ""
        return "", entry_hash

    @classmethod
    def verify_file(cls, path: str, trusted_keys: Mapping[str, Ed25519KeyPair]) -> Tuple[bool, str, int]:
        """Verify a log file. Returns (ok, reason, records_checked); a missing file is trivially OK."""
        p = Path(path)
        if not p.exists():
            return True, "NO_FILE", 0

        prev = GENESIS_HASH
        count = 0
        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                count += 1
                try:
                    rec = json.loads(line)
                except ValueError:
                    return False, "PARSE_ERROR", count
                reason, prev = cls._check_record(rec, prev, trusted_keys)
                if reason:
                    return False, reason, count
        return True, "OK", count
