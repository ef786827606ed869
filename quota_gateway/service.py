"""Service wiring.

Builds every per-process component exactly once and hands them to the
controller and the HTTP layer. Nothing in the package keeps module-level
mutable state; tests build as many independent service contexts as they need.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .analytics import UsageAggregator
from .audit_log import TamperEvidentAuditLog
from .auth import ApiKeyAuth
from .cache import AccessCache
from .capability import Capability, TemplateCapability, build_capability_from_env
from .config import GatewayConfig
from .controller import AccessController
from .crypto import load_signing_key_from_env
from .events import EventChannel
from .ledger import Ledger, QuotaLedgerClient, build_ledger_from_env
from .ops_stats import OpsStats
from .pricing import PricingPolicy
from .ratelimit import RateLimiter
from .receipts import ReceiptGenerator
from .reconciliation import ReconciliationJournal
from .security import SuspiciousActivityMonitor

logger = logging.getLogger("quota_gateway.service")


@dataclass
class ServiceContext:
    config: GatewayConfig
    ledger: Ledger
    ledger_client: QuotaLedgerClient
    cache: AccessCache
    rate_limiter: RateLimiter
    events: EventChannel
    analytics: UsageAggregator
    stats: OpsStats
    controller: AccessController
    auth: ApiKeyAuth
    security: SuspiciousActivityMonitor
    journal: Optional[ReconciliationJournal] = None
    audit_log: Optional[TamperEvidentAuditLog] = None
    admin_token: str = ""


def build_service(
    *,
    ledger: Ledger,
    config: Optional[GatewayConfig] = None,
    capability: Optional[Capability] = None,
    auth: Optional[ApiKeyAuth] = None,
    journal: Optional[ReconciliationJournal] = None,
    audit_log: Optional[TamperEvidentAuditLog] = None,
    admin_token: str = "",
    monotonic_clock: Optional[Callable[[], float]] = None,
    wall_clock: Optional[Callable[[], float]] = None,
) -> ServiceContext:
    config = config or GatewayConfig()
    client = QuotaLedgerClient.from_config(ledger, config)
    cache = AccessCache(
        client,
        ttl_seconds=config.cache_ttl_seconds,
        stale_policy=config.stale_policy,
        clock=monotonic_clock or time.monotonic,
    )
    limiter = RateLimiter(
        config.rate_limit.max_requests,
        config.rate_limit.window_ms,
        clock=wall_clock or time.time,
    )
    security = SuspiciousActivityMonitor(
        threshold=config.suspicion_threshold,
        window_seconds=config.suspicion_window_seconds,
        clock=wall_clock or time.time,
    )
    events = EventChannel()
    analytics = UsageAggregator(max_subscribers=config.max_tracked_subscribers)
    analytics.attach(events)
    stats = OpsStats()
    controller = AccessController(
        config=config,
        cache=cache,
        rate_limiter=limiter,
        ledger=client,
        pricing=PricingPolicy(config),
        capability=capability or TemplateCapability(fallback_tier=config.default_tier),
        receipts=ReceiptGenerator(),
        events=events,
        stats=stats,
        journal=journal,
        audit_log=audit_log,
        security=security,
    )
    return ServiceContext(
        config=config,
        ledger=ledger,
        ledger_client=client,
        cache=cache,
        rate_limiter=limiter,
        events=events,
        analytics=analytics,
        stats=stats,
        controller=controller,
        auth=auth or ApiKeyAuth(api_key_to_subscriber={}),
        security=security,
        journal=journal,
        audit_log=audit_log,
        admin_token=admin_token,
    )


def build_service_from_env() -> ServiceContext:
    """Build the service from env vars.

    Env (besides the ones read by config, ledger, capability and auth):
      QG_RECONCILIATION_JOURNAL: anomaly journal path (default qg_reconciliation.jsonl)
      QG_AUDIT_LOG_PATH: enables the signed audit log (requires QG_AUDIT_SIGNING_KEY)
      QG_ADMIN_TOKEN: enables POST /v1/admin/entitlements
    """
    config = GatewayConfig.from_env()
    ledger = build_ledger_from_env()

    journal = ReconciliationJournal(os.getenv("QG_RECONCILIATION_JOURNAL") or "qg_reconciliation.jsonl")

    audit_log: Optional[TamperEvidentAuditLog] = None
    audit_path = (os.getenv("QG_AUDIT_LOG_PATH", "") or "").strip()
    if audit_path:
        key = load_signing_key_from_env()
        if key is None:
            raise RuntimeError("QG_AUDIT_LOG_PATH is set but QG_AUDIT_SIGNING_KEY is not")
        audit_log = TamperEvidentAuditLog(audit_path, key)
        logger.info("Audit log enabled at %s (key_id=%s)", audit_path, key.key_id)

    return build_service(
        ledger=ledger,
        config=config,
        capability=build_capability_from_env(),
        auth=ApiKeyAuth.load_from_env(),
        journal=journal,
        audit_log=audit_log,
        admin_token=(os.getenv("QG_ADMIN_TOKEN", "") or "").strip(),
    )
