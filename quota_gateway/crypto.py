"""Hashing and signing primitives shared by receipts and the audit log.

Receipts are keyless: their attestation is re-derivable by anyone holding the
inputs (see receipts.py). Only the audit log signs, with Ed25519.
"""

import hashlib
import json
import os
from datetime import datetime, timezone
from typing import Any, List, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """ISO-8601 (trailing 'Z' allowed, naive means UTC) -> aware UTC datetime, or None."""
    if not ts:
        return None
    s = str(ts).strip()
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _safe_hash_encode(components: List[str]) -> bytes:
    """Length-prefixed (8-byte big-endian) concatenation; no delimiter collisions."""
    parts = []
    for component in components:
        raw = component.encode("utf-8")
        parts.append(len(raw).to_bytes(8, "big"))
        parts.append(raw)
    return b"".join(parts)


def canonical_json_dumps(obj: Any) -> str:
    """Sorted keys, no whitespace, UTF-8 preserved, NaN/Infinity refused."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


class Ed25519KeyPair:
    """An Ed25519 verification key, optionally with its signing half.

    Trusted keys loaded for offline verification carry the public half only.
    """

    def __init__(self, key_id: str, public_key: Ed25519PublicKey, private_key: Optional[Ed25519PrivateKey] = None):
        self.key_id = key_id
        self._public = public_key
        self._private = private_key

    @classmethod
    def generate(cls, key_id: str) -> "Ed25519KeyPair":
        private = Ed25519PrivateKey.generate()
        return cls(key_id, private.public_key(), private)

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str) -> "Ed25519KeyPair":
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        private = Ed25519PrivateKey.from_private_bytes(seed)
        return cls(key_id, private.public_key(), private)

    @classmethod
    def from_public_key(cls, key_id: str, public_key_hex: str) -> "Ed25519KeyPair":
        return cls(key_id, Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex)))

    @property
    def public_key_hex(self) -> str:
        raw = self._public.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return raw.hex()

    def can_sign(self) -> bool:
        return self._private is not None

    def sign(self, message: bytes) -> bytes:
        if self._private is None:
            raise ValueError(f"Key {self.key_id} has no private key - cannot sign")
        return self._private.sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            self._public.verify(signature, message)
        except (InvalidSignature, ValueError):
            return False
        return True

    def __repr__(self) -> str:
        return f"Ed25519KeyPair(key_id={self.key_id!r}, can_sign={self.can_sign()})"


def load_signing_key_from_env(
    *,
    seed_env: str = "QG_AUDIT_SIGNING_KEY",
    key_id_env: str = "QG_AUDIT_KEY_ID",
) -> Optional[Ed25519KeyPair]:
    """Load the audit-log signing key from a hex-encoded 32-byte seed.

    Returns None when the variable is unset. A malformed seed raises so the
    service refuses to start instead of silently running unsigned.
    """
    raw = (os.getenv(seed_env, "") or "").strip()
    if not raw:
        return None
    try:
        seed = bytes.fromhex(raw)
    except ValueError as e:
        raise RuntimeError(f"{seed_env} must be hex-encoded") from e
    key_id = (os.getenv(key_id_env, "") or "").strip() or "qg_audit"
    try:
        return Ed25519KeyPair.from_seed(seed, key_id)
    except ValueError as e:
        raise RuntimeError(f"{seed_env} must encode 32 bytes") from e
