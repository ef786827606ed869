"""Stable error taxonomy for the quota gateway.

This module defines machine-readable error codes and a single exception type
used across the ledger client, pricing policy, controller and HTTP layer.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Caller-facing outcomes (expected, not logged as errors)
QG_E_RATE_LIMITED = "QG_E_RATE_LIMITED"
QG_E_NO_ACCESS = "QG_E_NO_ACCESS"
QG_E_QUOTA_EXHAUSTED = "QG_E_QUOTA_EXHAUSTED"
QG_E_INVALID_REQUEST = "QG_E_INVALID_REQUEST"

# Ledger
QG_E_NOT_FOUND = "QG_E_NOT_FOUND"
QG_E_INSUFFICIENT_QUOTA = "QG_E_INSUFFICIENT_QUOTA"
QG_E_LEDGER_UNAVAILABLE = "QG_E_LEDGER_UNAVAILABLE"

# Post-pricing failures
QG_E_EXECUTION_FAILED = "QG_E_EXECUTION_FAILED"
QG_E_COMMIT_FAILED = "QG_E_COMMIT_FAILED"

# Transport / generic
QG_E_AUTH_REQUIRED = "QG_E_AUTH_REQUIRED"
QG_E_BAD_REQUEST = "QG_E_BAD_REQUEST"
QG_E_CONFIG_INVALID = "QG_E_CONFIG_INVALID"


@dataclass
class QuotaGatewayError(Exception):
    """Base quota gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def qg_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> QuotaGatewayError:
    return QuotaGatewayError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def not_found(subscriber_id: str) -> QuotaGatewayError:
    return qg_error(QG_E_NOT_FOUND, "No entitlement record", http_status=404, subscriber_id=subscriber_id)


def insufficient_quota(subscriber_id: str, cost: int, remaining: int) -> QuotaGatewayError:
    return qg_error(
        QG_E_INSUFFICIENT_QUOTA,
        "Usage would exceed remaining quota",
        http_status=409,
        subscriber_id=subscriber_id,
        cost=cost,
        remaining_quota=remaining,
    )


def ledger_unavailable(operation: str, **details: Any) -> QuotaGatewayError:
    # Callers only ever see this generic message; transport text stays in details/logs.
    return qg_error(
        QG_E_LEDGER_UNAVAILABLE,
        "Ledger temporarily unavailable, try again later",
        retryable=True,
        http_status=503,
        operation=operation,
        **details,
    )


def invalid_request(message: str, **details: Any) -> QuotaGatewayError:
    return qg_error(QG_E_INVALID_REQUEST, message, http_status=400, **details)
