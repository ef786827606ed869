"""Core data types shared by the quota gateway components."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, TYPE_CHECKING

from .crypto import _now_utc

if TYPE_CHECKING:  # pragma: no cover
    from .receipts import Receipt


class RequestState(str, Enum):
    """Per-request lifecycle states of the access controller."""
    RECEIVED = "Received"
    RATE_CHECKED = "RateChecked"
    ENTITLEMENT_CHECKED = "EntitlementChecked"
    PRICED = "Priced"
    EXECUTED = "Executed"
    COMMITTED = "Committed"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


class RejectReason(str, Enum):
    RATE_LIMITED = "RateLimited"
    NO_ACCESS = "NoAccess"
    QUOTA_EXHAUSTED = "QuotaExhausted"
    INVALID_REQUEST = "InvalidRequest"
    LEDGER_UNAVAILABLE = "LedgerUnavailable"
    EXECUTION_FAILED = "ExecutionFailed"
    COMMIT_FAILED = "CommitFailed"


def normalize_subscriber_id(subscriber_id: str) -> str:
    """Canonical key for a subscriber (addresses compare case-insensitively)."""
    return (subscriber_id or "").strip().lower()


@dataclass(frozen=True)
class Entitlement:
    """A subscriber's current right to consume the service."""
    subscriber_id: str
    tier_id: str
    expires_at: datetime
    remaining_quota: int
    source_record_id: str

    def __post_init__(self) -> None:
        if int(self.remaining_quota) < 0:
            raise ValueError(f"remaining_quota must be >= 0, got {self.remaining_quota}")
        if self.expires_at.tzinfo is None:
            raise ValueError("expires_at must be timezone-aware")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _now_utc()) >= self.expires_at

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        """Expired entitlements are never usable, whatever quota is left."""
        return not self.is_expired(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriber_id": self.subscriber_id,
            "tier_id": self.tier_id,
            "expires_at": self.expires_at.isoformat(),
            "remaining_quota": self.remaining_quota,
            "source_record_id": self.source_record_id,
        }


@dataclass(frozen=True)
class CachedEntitlement:
    entitlement: Entitlement
    fetched_at: float

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return (now - self.fetched_at) < ttl_seconds


@dataclass(frozen=True)
class AccessRequest:
    subscriber_id: str
    payload: str
    submitted_at: datetime = field(default_factory=_now_utc)
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class PricedRequest:
    request: AccessRequest
    tier_id: str
    cost: int

    def __post_init__(self) -> None:
        if int(self.cost) < 1:
            raise ValueError(f"cost must be a positive integer, got {self.cost}")

    @property
    def subscriber_id(self) -> str:
        return self.request.subscriber_id

    @property
    def correlation_id(self) -> str:
        return self.request.correlation_id


@dataclass(frozen=True)
class CommitReceipt:
    """Ledger acknowledgement of a debit."""
    correlation_id: str
    subscriber_id: str
    cost: int
    remaining_quota: int
    committed_at: datetime
    source_record_id: str
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "subscriber_id": self.subscriber_id,
            "cost": self.cost,
            "remaining_quota": self.remaining_quota,
            "committed_at": self.committed_at.isoformat(),
            "source_record_id": self.source_record_id,
            "replayed": self.replayed,
        }


@dataclass(frozen=True)
class Outcome:
    """Result of AccessController.submit()."""
    correlation_id: str
    subscriber_id: str
    state: RequestState
    reason: Optional[RejectReason] = None
    message: str = ""
    content: Optional[str] = None
    cost: int = 0
    remaining_quota: Optional[int] = None
    receipt: Optional["Receipt"] = None
    rate_remaining: Optional[int] = None
    retry_after_seconds: Optional[float] = None
    history: Tuple[RequestState, ...] = ()

    @property
    def completed(self) -> bool:
        return self.state is RequestState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "subscriber_id": self.subscriber_id,
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "content": self.content,
            "cost": self.cost,
            "remaining_quota": self.remaining_quota,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "rate_remaining": self.rate_remaining,
            "retry_after_seconds": self.retry_after_seconds,
            "history": [s.value for s in self.history],
        }
