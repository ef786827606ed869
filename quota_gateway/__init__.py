"""Quota Gateway package.

Token-gated usage metering and access control in front of a paid capability:

- Entitlements read from an authoritative ledger through a short-lived cache
- Per-subscriber fixed-window rate limiting
- Deterministic, tier-aware pricing of each request
- Exactly-once debits (idempotent per correlation id)
- Verifiable receipts binding request, response and cost

Convenience imports
------------------
The package avoids heavy import-time side effects. For convenience, these are
available as top-level imports:

    from quota_gateway import AccessController, build_service, create_app

All of them are loaded lazily.
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """
    pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
    try:
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "AccessController",
    "AccessCache",
    "AccessRequest",
    "GatewayConfig",
    "InMemoryLedger",
    "Outcome",
    "PricingPolicy",
    "QuotaGatewayError",
    "QuotaLedgerClient",
    "RateLimiter",
    "Receipt",
    "ReceiptGenerator",
    "SQLiteLedger",
    "build_service",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "AccessController": ("quota_gateway.controller", "AccessController"),
    "AccessCache": ("quota_gateway.cache", "AccessCache"),
    "AccessRequest": ("quota_gateway.models", "AccessRequest"),
    "GatewayConfig": ("quota_gateway.config", "GatewayConfig"),
    "InMemoryLedger": ("quota_gateway.ledger", "InMemoryLedger"),
    "Outcome": ("quota_gateway.models", "Outcome"),
    "PricingPolicy": ("quota_gateway.pricing", "PricingPolicy"),
    "QuotaGatewayError": ("quota_gateway.errors", "QuotaGatewayError"),
    "QuotaLedgerClient": ("quota_gateway.ledger", "QuotaLedgerClient"),
    "RateLimiter": ("quota_gateway.ratelimit", "RateLimiter"),
    "Receipt": ("quota_gateway.receipts", "Receipt"),
    "ReceiptGenerator": ("quota_gateway.receipts", "ReceiptGenerator"),
    "SQLiteLedger": ("quota_gateway.ledger", "SQLiteLedger"),
    "build_service": ("quota_gateway.service", "build_service"),
    "create_app": ("quota_gateway.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'quota_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
