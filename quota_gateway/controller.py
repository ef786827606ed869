"""Access controller: the single entry point for metered requests.

Per-request lifecycle:

    Received -> RateChecked -> EntitlementChecked -> Priced -> Executed -> Committed -> Completed
                                          any step -> Rejected{reason}

Guarantees:
- Rate limiting runs first and never touches the ledger.
- Nothing is charged unless the capability produced content.
- Quota is only ever debited by the ledger commit; a cached entitlement can
  deny early but never debits.
- Every commit outcome invalidates the subscriber's cache entry.
- Served-but-uncommitted requests are journaled for reconciliation.
- Audit log and journal write failures are logged and counted, never raised
  once the outcome is decided.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import metrics
from .audit_log import TamperEvidentAuditLog
from .cache import AccessCache
from .capability import Capability
from .config import GatewayConfig
from .crypto import _now_utc
from .errors import (
    QG_E_COMMIT_FAILED,
    QG_E_EXECUTION_FAILED,
    QG_E_INVALID_REQUEST,
    QG_E_LEDGER_UNAVAILABLE,
    QG_E_NO_ACCESS,
    QG_E_NOT_FOUND,
    QG_E_QUOTA_EXHAUSTED,
    QG_E_RATE_LIMITED,
    QuotaGatewayError,
)
from .events import EVENT_COMMIT, EVENT_DENIED, EVENT_USAGE, EventChannel, UsageEvent
from .ledger import QuotaLedgerClient
from .models import (
    AccessRequest,
    CommitReceipt,
    Entitlement,
    Outcome,
    PricedRequest,
    RejectReason,
    RequestState,
    normalize_subscriber_id,
)
from .ops_stats import OpsStats
from .pricing import PricingPolicy
from .ratelimit import RateLimiter
from .receipts import Receipt, ReceiptGenerator
from .reconciliation import ReconciliationJournal
from .security import STRIKE_PROHIBITED_CONTENT, STRIKE_RATE_LIMITED, SuspiciousActivityMonitor

logger = logging.getLogger("quota_gateway")

MSG_NO_ACCESS = "Access denied. Please purchase a valid subscription to access this service."
MSG_EXPIRED = "Subscription expired. Please renew to continue."
MSG_QUOTA_EXHAUSTED = "Usage quota exceeded. Please upgrade your subscription or wait for renewal."
MSG_EXECUTION_FAILED = "Failed to process query. Please try again later."
MSG_COMMIT_FAILED = "Response delivered but usage could not be recorded; it has been queued for reconciliation."


class AccessController:
    def __init__(
        self,
        *,
        config: GatewayConfig,
        cache: AccessCache,
        rate_limiter: RateLimiter,
        ledger: QuotaLedgerClient,
        pricing: PricingPolicy,
        capability: Capability,
        receipts: Optional[ReceiptGenerator] = None,
        events: Optional[EventChannel] = None,
        stats: Optional[OpsStats] = None,
        journal: Optional[ReconciliationJournal] = None,
        audit_log: Optional[TamperEvidentAuditLog] = None,
        security: Optional[SuspiciousActivityMonitor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.ledger = ledger
        self.pricing = pricing
        self.capability = capability
        self.receipts = receipts or ReceiptGenerator()
        self.events = events or EventChannel()
        self.stats = stats or OpsStats()
        self.journal = journal
        self.audit_log = audit_log
        self.security = security
        self._clock = clock or _now_utc

    async def submit(self, request: AccessRequest) -> Outcome:
        """Run one request through the lifecycle and return its terminal outcome."""
        request = replace(request, subscriber_id=normalize_subscriber_id(request.subscriber_id))
        history: List[RequestState] = [RequestState.RECEIVED]
        key = request.subscriber_id

        if not key:
            return await self._reject(request, history, RejectReason.INVALID_REQUEST, "A subscriber id is required.")

        # Rate limit (local, cheap; never reaches the ledger when denied)
        decision = self.rate_limiter.check(key)
        if not decision.allowed:
            retry_after = decision.retry_after(self.rate_limiter.now())
            self._strike(key, STRIKE_RATE_LIMITED)
            return await self._reject(
                request,
                history,
                RejectReason.RATE_LIMITED,
                f"Rate limit exceeded. Try again in {int(retry_after) + 1} seconds.",
                rate_remaining=0,
                retry_after_seconds=round(retry_after, 3),
            )
        history.append(RequestState.RATE_CHECKED)

        # Entitlement
        try:
            entitlement = await self.cache.get(key, force_refresh=self.config.synchronous_reads)
        except QuotaGatewayError as e:
            if e.code == QG_E_NOT_FOUND:
                return await self._reject(request, history, RejectReason.NO_ACCESS, MSG_NO_ACCESS,
                                    rate_remaining=decision.remaining)
            if e.code == QG_E_LEDGER_UNAVAILABLE:
                self.stats.record_ledger_unavailable()
                return await self._reject(request, history, RejectReason.LEDGER_UNAVAILABLE, e.message,
                                    rate_remaining=decision.remaining)
            raise
        if not entitlement.is_usable(self._clock()):
            return await self._reject(request, history, RejectReason.NO_ACCESS, MSG_EXPIRED,
                                entitlement=entitlement, rate_remaining=decision.remaining)
        if entitlement.remaining_quota <= 0:
            return await self._reject(request, history, RejectReason.QUOTA_EXHAUSTED, MSG_QUOTA_EXHAUSTED,
                                entitlement=entitlement, rate_remaining=decision.remaining)
        history.append(RequestState.ENTITLEMENT_CHECKED)

        # Pricing
        try:
            priced = self.pricing.price(request, entitlement.tier_id)
        except QuotaGatewayError as e:
            if e.code != QG_E_INVALID_REQUEST:
                raise
            if e.details.get("rule") == "disallowed_content":
                self._strike(key, STRIKE_PROHIBITED_CONTENT)
            return await self._reject(request, history, RejectReason.INVALID_REQUEST, e.message,
                                entitlement=entitlement, rate_remaining=decision.remaining)
        if priced.cost > entitlement.remaining_quota:
            return await self._reject(request, history, RejectReason.QUOTA_EXHAUSTED, MSG_QUOTA_EXHAUSTED,
                                entitlement=entitlement, tier_id=priced.tier_id, rate_remaining=decision.remaining)
        history.append(RequestState.PRICED)

        # Execution
        try:
            content = await self._execute(priced)
        except asyncio.TimeoutError:
            logger.warning("Capability timed out after %.1fs for %s", self.config.execute_timeout_seconds,
                           request.correlation_id)
            return await self._reject(request, history, RejectReason.EXECUTION_FAILED, MSG_EXECUTION_FAILED,
                                entitlement=entitlement, tier_id=priced.tier_id, rate_remaining=decision.remaining)
        except Exception as e:
            logger.warning("Capability failed for %s: %s: %s", request.correlation_id, type(e).__name__, e)
            return await self._reject(request, history, RejectReason.EXECUTION_FAILED, MSG_EXECUTION_FAILED,
                                entitlement=entitlement, tier_id=priced.tier_id, rate_remaining=decision.remaining)
        history.append(RequestState.EXECUTED)

        # Commit (the ledger is the concurrency boundary)
        try:
            commit = await self.ledger.commit_usage(key, priced.cost, request.correlation_id)
        except QuotaGatewayError as e:
            self.cache.invalidate(key)
            return await self._commit_failed(priced, content, history, e, decision.remaining)
        self.cache.invalidate(key)
        history.append(RequestState.COMMITTED)

        receipt = self.receipts.issue(priced, content)
        history.append(RequestState.COMPLETED)
        return await self._complete(priced, content, commit, receipt, history, decision.remaining)

    async def _execute(self, priced: PricedRequest) -> str:
        content = await asyncio.wait_for(
            self.capability.execute(priced.request.payload, priced.tier_id),
            timeout=self.config.execute_timeout_seconds,
        )
        if not isinstance(content, str):
            raise TypeError(f"capability returned {type(content).__name__}, expected str")
        return content

    # ---------------------------
    # Terminal states
    # ---------------------------

    async def _reject(
        self,
        request: AccessRequest,
        history: List[RequestState],
        reason: RejectReason,
        message: str,
        *,
        entitlement: Optional[Entitlement] = None,
        tier_id: Optional[str] = None,
        rate_remaining: Optional[int] = None,
        retry_after_seconds: Optional[float] = None,
    ) -> Outcome:
        if tier_id is None and entitlement is not None:
            tier_id = self.config.resolve_tier(entitlement.tier_id)
        history.append(RequestState.REJECTED)
        outcome = Outcome(
            correlation_id=request.correlation_id,
            subscriber_id=request.subscriber_id,
            state=RequestState.REJECTED,
            reason=reason,
            message=message,
            remaining_quota=entitlement.remaining_quota if entitlement is not None else None,
            rate_remaining=rate_remaining,
            retry_after_seconds=retry_after_seconds,
            history=tuple(history),
        )
        logger.info("Rejected %s for %s: %s", request.correlation_id, request.subscriber_id or "-", reason.value)
        await self._finish(outcome, EVENT_DENIED, tier_id)
        return outcome

    async def _commit_failed(
        self,
        priced: PricedRequest,
        content: str,
        history: List[RequestState],
        error: QuotaGatewayError,
        rate_remaining: int,
    ) -> Outcome:
        logger.error(
            "Commit failed after serving content: correlation_id=%s subscriber=%s cost=%d code=%s",
            priced.correlation_id,
            priced.subscriber_id,
            priced.cost,
            error.code,
        )
        if self.journal is not None:
            await self._write_sink(
                "reconciliation_journal",
                priced.correlation_id,
                self.journal.append,
                correlation_id=priced.correlation_id,
                subscriber_id=priced.subscriber_id,
                cost=priced.cost,
                tier_id=priced.tier_id,
                error_code=error.code,
            )
        self.stats.record_commit_anomaly()
        metrics.record_commit_anomaly()
        history.append(RequestState.REJECTED)
        outcome = Outcome(
            correlation_id=priced.correlation_id,
            subscriber_id=priced.subscriber_id,
            state=RequestState.REJECTED,
            reason=RejectReason.COMMIT_FAILED,
            message=MSG_COMMIT_FAILED,
            content=content,
            cost=priced.cost,
            rate_remaining=rate_remaining,
            history=tuple(history),
        )
        await self._finish(outcome, EVENT_COMMIT, priced.tier_id)
        return outcome

    async def _complete(
        self,
        priced: PricedRequest,
        content: str,
        commit: CommitReceipt,
        receipt: Receipt,
        history: List[RequestState],
        rate_remaining: int,
    ) -> Outcome:
        outcome = Outcome(
            correlation_id=priced.correlation_id,
            subscriber_id=priced.subscriber_id,
            state=RequestState.COMPLETED,
            content=content,
            cost=priced.cost,
            remaining_quota=commit.remaining_quota,
            receipt=receipt,
            rate_remaining=rate_remaining,
            history=tuple(history),
        )
        logger.info(
            "Completed %s for %s: cost=%d remaining=%d%s",
            priced.correlation_id,
            priced.subscriber_id,
            priced.cost,
            commit.remaining_quota,
            " (replayed commit)" if commit.replayed else "",
        )
        await self._finish(outcome, EVENT_USAGE, priced.tier_id)
        return outcome

    async def _finish(self, outcome: Outcome, event_type: str, tier_id: Optional[str]) -> None:
        reason = outcome.reason.value if outcome.reason else ""
        charged = outcome.cost if outcome.completed else 0
        self.events.publish(UsageEvent(
            type=event_type,
            subscriber_id=outcome.subscriber_id,
            cost=outcome.cost if event_type != EVENT_DENIED else 0,
            timestamp=self._clock(),
            correlation_id=outcome.correlation_id,
            tier_id=tier_id,
            reason=reason or None,
        ))
        self.stats.record_outcome(outcome.state.value, reason, tier_id or "", charged)
        metrics.record_outcome(outcome.state.value, reason, tier_id or "", charged)
        if self.audit_log is not None:
            await self._write_sink("audit_log", outcome.correlation_id, self.audit_log.append_outcome, outcome, tier_id)

    async def _write_sink(self, sink: str, correlation_id: str, write: Callable[..., Any], /, *args: Any, **kwargs: Any) -> None:
        # Outcome is final here; sink failures are logged, never raised.
        try:
            await asyncio.to_thread(write, *args, **kwargs)
        except OSError as e:
            logger.error("%s write failed for %s: %s: %s", sink, correlation_id, type(e).__name__, e)
            self.stats.record_sink_failure(sink)
            metrics.record_sink_failure(sink)

    def _strike(self, subscriber_id: str, kind: str) -> None:
        if self.security is not None:
            self.security.record_strike(subscriber_id, kind)

    # ---------------------------
    # Read-only operations
    # ---------------------------

    async def entitlement_status(self, subscriber_id: str, refresh: bool = False) -> Dict[str, Any]:
        """Current entitlement view for dashboards. Raises QuotaGatewayError (NotFound/Unavailable)."""
        entitlement = await self.cache.get(subscriber_id, force_refresh=refresh)
        status = entitlement.to_dict()
        status["tier"] = self.config.resolve_tier(entitlement.tier_id)
        status["active"] = entitlement.is_usable(self._clock())
        status["has_access"] = status["active"] and entitlement.remaining_quota > 0
        return status

    def verify_receipt(self, receipt: Receipt, claimed_response: str) -> bool:
        return self.receipts.verify(receipt, claimed_response)


REASON_CODES: Dict[str, str] = {
    RejectReason.RATE_LIMITED.value: QG_E_RATE_LIMITED,
    RejectReason.NO_ACCESS.value: QG_E_NO_ACCESS,
    RejectReason.QUOTA_EXHAUSTED.value: QG_E_QUOTA_EXHAUSTED,
    RejectReason.INVALID_REQUEST.value: QG_E_INVALID_REQUEST,
    RejectReason.LEDGER_UNAVAILABLE.value: QG_E_LEDGER_UNAVAILABLE,
    RejectReason.EXECUTION_FAILED.value: QG_E_EXECUTION_FAILED,
    RejectReason.COMMIT_FAILED.value: QG_E_COMMIT_FAILED,
}

REASON_HTTP_STATUS: Dict[str, int] = {
    RejectReason.RATE_LIMITED.value: 429,
    RejectReason.NO_ACCESS.value: 403,
    RejectReason.QUOTA_EXHAUSTED.value: 402,
    RejectReason.INVALID_REQUEST.value: 400,
    RejectReason.LEDGER_UNAVAILABLE.value: 503,
    RejectReason.EXECUTION_FAILED.value: 502,
    RejectReason.COMMIT_FAILED.value: 200,
}
