"""
Quota Gateway Verifiable Receipts (v1)

Tamper-evident record of one served request.

Properties:
- Bound to correlation_id + subscriber_id + cost + issued_at
- Contains SHA-256 digests of the request payload and the response content
- Attestation is a deterministic encoding of those fields plus a binding hash;
  any holder of the same inputs can re-derive it, no key material involved
- Detects response substitution after the fact (verify), NOT where or how the
  response was computed

Attestation format:
    qgr1.<base64url(canonical JSON body)>.<sha256 binding hex>
"""

import base64
import binascii
import hmac
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .crypto import _now_utc, _safe_hash_encode, _sha256_hex, canonical_json_dumps
from .models import PricedRequest

ATTESTATION_VERSION = "qgr1"
_PAYLOAD_DOMAIN = "QG_PAYLOAD_V1"
_RESPONSE_DOMAIN = "QG_RESPONSE_V1"
_BINDING_DOMAIN = "QG_RECEIPT_V1"


def payload_digest(payload: str) -> str:
    return _sha256_hex(_safe_hash_encode([_PAYLOAD_DOMAIN, payload]))


def response_digest(content: str) -> str:
    return _sha256_hex(_safe_hash_encode([_RESPONSE_DOMAIN, content]))


def compute_binding(
    *,
    correlation_id: str,
    subscriber_id: str,
    payload_digest: str,
    response_digest: str,
    cost: int,
    issued_at: str,
) -> str:
    """Binding hash over every receipt field (anti-splice)."""
    components = [
        _BINDING_DOMAIN,
        correlation_id,
        subscriber_id,
        payload_digest,
        response_digest,
        str(int(cost)),
        issued_at,
    ]
    return _sha256_hex(_safe_hash_encode(components))


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _digest_eq(a: str, b: str) -> bool:
    # Caller-supplied text; non-ASCII must compare unequal.
    return hmac.compare_digest(str(a).encode("utf-8"), str(b).encode("utf-8"))


def encode_attestation(body: Dict[str, Any]) -> str:
    binding = compute_binding(
        correlation_id=body["cid"],
        subscriber_id=body["sub"],
        payload_digest=body["pd"],
        response_digest=body["rd"],
        cost=body["cost"],
        issued_at=body["iat"],
    )
    encoded = _b64url(canonical_json_dumps(body).encode("utf-8"))
    return f"{ATTESTATION_VERSION}.{encoded}.{binding}"


def decode_attestation(attestation: str) -> Optional[Dict[str, Any]]:
    """Decode an attestation; None if malformed or its binding does not re-derive."""
    parts = (attestation or "").split(".")
    if len(parts) != 3 or parts[0] != ATTESTATION_VERSION:
        return None
    try:
        body = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    if not isinstance(body, dict):
        return None
    required = ("cid", "sub", "pd", "rd", "cost", "iat")
    if any(k not in body for k in required) or not isinstance(body["cost"], int):
        return None
    expected = compute_binding(
        correlation_id=str(body["cid"]),
        subscriber_id=str(body["sub"]),
        payload_digest=str(body["pd"]),
        response_digest=str(body["rd"]),
        cost=body["cost"],
        issued_at=str(body["iat"]),
    )
    if not _digest_eq(expected, parts[2]):
        return None
    return body


@dataclass(frozen=True)
class Receipt:
    """
    Tamper-evident receipt binding (subscriber, request, response, cost, time).

    Immutable once issued. The attestation re-derives every other field, so a
    receipt whose fields were edited no longer matches its own attestation.
    """
    correlation_id: str
    subscriber_id: str
    payload_digest: str
    response_digest: str
    cost: int
    issued_at: str
    attestation: str

    def _body(self) -> Dict[str, Any]:
        return {
            "cid": self.correlation_id,
            "sub": self.subscriber_id,
            "pd": self.payload_digest,
            "rd": self.response_digest,
            "cost": int(self.cost),
            "iat": self.issued_at,
        }

    def is_self_consistent(self) -> bool:
        """True when the attestation decodes to exactly this receipt's fields."""
        body = decode_attestation(self.attestation)
        return body is not None and body == self._body()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "subscriber_id": self.subscriber_id,
            "payload_digest": self.payload_digest,
            "response_digest": self.response_digest,
            "cost": self.cost,
            "issued_at": self.issued_at,
            "attestation": self.attestation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Receipt":
        return cls(
            correlation_id=str(data["correlation_id"]),
            subscriber_id=str(data["subscriber_id"]),
            payload_digest=str(data["payload_digest"]),
            response_digest=str(data["response_digest"]),
            cost=int(data["cost"]),
            issued_at=str(data["issued_at"]),
            attestation=str(data["attestation"]),
        )

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, json_str: str) -> "Receipt":
        return cls.from_dict(json.loads(json_str))


class ReceiptGenerator:
    """Issues and verifies receipts for served requests."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or _now_utc

    def issue(self, priced: PricedRequest, response_content: str) -> Receipt:
        body = {
            "cid": priced.correlation_id,
            "sub": priced.subscriber_id,
            "pd": payload_digest(priced.request.payload),
            "rd": response_digest(response_content),
            "cost": int(priced.cost),
            "iat": self._clock().isoformat(),
        }
        return Receipt(
            correlation_id=body["cid"],
            subscriber_id=body["sub"],
            payload_digest=body["pd"],
            response_digest=body["rd"],
            cost=body["cost"],
            issued_at=body["iat"],
            attestation=encode_attestation(body),
        )

    @staticmethod
    def verify(receipt: Receipt, claimed_response: str) -> bool:
        """Check that `claimed_response` is the response this receipt was issued for."""
        if not receipt.is_self_consistent():
            return False
        return _digest_eq(response_digest(claimed_response), receipt.response_digest)

    @staticmethod
    def verify_payload(receipt: Receipt, claimed_payload: str) -> bool:
        if not receipt.is_self_consistent():
            return False
        return _digest_eq(payload_digest(claimed_payload), receipt.payload_digest)

    @staticmethod
    def problems(receipt: Receipt, claimed_response: Optional[str] = None) -> List[str]:
        """Human-readable verification failures (empty when valid)."""
        errs: List[str] = []
        body = decode_attestation(receipt.attestation)
        if body is None:
            errs.append("ATTESTATION_INVALID")
        elif body != receipt._body():
            errs.append("ATTESTATION_FIELD_MISMATCH")
        if claimed_response is not None and response_digest(claimed_response) != receipt.response_digest:
            errs.append("RESPONSE_DIGEST_MISMATCH")
        return errs
