import asyncio
import json

import pytest

from quota_gateway.audit_log import TamperEvidentAuditLog
from quota_gateway.capability import TemplateCapability
from quota_gateway.config import GatewayConfig, RateLimitConfig
from quota_gateway.crypto import Ed25519KeyPair
from quota_gateway.errors import ledger_unavailable
from quota_gateway.events import EVENT_COMMIT, EVENT_DENIED, EVENT_USAGE
from quota_gateway.ledger import InMemoryLedger
from quota_gateway.models import AccessRequest, RejectReason, RequestState
from quota_gateway.reconciliation import ReconciliationJournal
from quota_gateway.service import build_service

ADDR = "0x" + "ab" * 20


class _CountingCapability(TemplateCapability):
    def __init__(self):
        super().__init__()
        self.calls = 0

    async def execute(self, payload, tier_id):
        self.calls += 1
        return await super().execute(payload, tier_id)


class _FailingCapability:
    async def execute(self, payload, tier_id):
        raise RuntimeError("model backend exploded")


class _SlowCapability:
    async def execute(self, payload, tier_id):
        await asyncio.sleep(5)
        return "too late"


class _CommitDownLedger(InMemoryLedger):
    def commit_usage(self, subscriber_id, cost, correlation_id):
        self.calls["commit_usage"] += 1
        raise ledger_unavailable("commit_usage")


class _ReadDownLedger(InMemoryLedger):
    def read_entitlement(self, subscriber_id):
        raise ConnectionRefusedError("ledger.internal:5432 refused")


def _config(**kw):
    kw.setdefault("ledger_retry_backoff_seconds", 0.0)
    return GatewayConfig(**kw)


def _service(ledger, tmp_path=None, **kw):
    config = kw.pop("config", None) or _config()
    journal = ReconciliationJournal(str(tmp_path / "journal.jsonl")) if tmp_path is not None else None
    return build_service(ledger=ledger, config=config, journal=journal, **kw)


def _req(payload="What is DeFi?", subscriber_id=ADDR, **kw):
    return AccessRequest(subscriber_id=subscriber_id, payload=payload, **kw)


@pytest.mark.asyncio
async def test_back_to_back_requests_exhaust_quota():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 1, 3600)
    svc = _service(ledger)

    first = await svc.controller.submit(_req())
    assert first.state is RequestState.COMPLETED
    assert first.cost == 1
    assert first.remaining_quota == 0
    assert first.content
    assert first.history[-1] is RequestState.COMPLETED
    assert RequestState.COMMITTED in first.history

    second = await svc.controller.submit(_req())
    assert second.state is RequestState.REJECTED
    assert second.reason is RejectReason.QUOTA_EXHAUSTED
    assert ledger.read_entitlement(ADDR).remaining_quota == 0


@pytest.mark.asyncio
async def test_unknown_subscriber_has_no_access():
    svc = _service(InMemoryLedger())
    out = await svc.controller.submit(_req())
    assert out.reason is RejectReason.NO_ACCESS
    assert out.content is None


@pytest.mark.asyncio
async def test_empty_subscriber_id_is_invalid():
    ledger = InMemoryLedger()
    svc = _service(ledger)
    out = await svc.controller.submit(_req(subscriber_id="   "))
    assert out.reason is RejectReason.INVALID_REQUEST
    assert ledger.calls["read_entitlement"] == 0


@pytest.mark.asyncio
async def test_expired_entitlement_is_no_access_even_with_quota():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "premium", 50, -60)
    cap = _CountingCapability()
    svc = _service(ledger, capability=cap)

    out = await svc.controller.submit(_req())
    assert out.reason is RejectReason.NO_ACCESS
    assert "expired" in out.message.lower()
    assert cap.calls == 0


@pytest.mark.asyncio
async def test_rate_limit_rejects_without_touching_ledger():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "premium", 100, 3600)
    svc = _service(ledger, config=_config(rate_limit=RateLimitConfig(max_requests=10, window_ms=60_000)))

    outcomes = [await svc.controller.submit(_req()) for _ in range(11)]
    assert all(o.completed for o in outcomes[:10])
    last = outcomes[10]
    assert last.reason is RejectReason.RATE_LIMITED
    assert last.retry_after_seconds is not None and last.retry_after_seconds > 0
    assert last.history == (RequestState.RECEIVED, RequestState.REJECTED)
    assert ledger.calls["commit_usage"] == 10


@pytest.mark.asyncio
async def test_failed_execution_consumes_no_quota():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    svc = _service(ledger, capability=_FailingCapability())

    out = await svc.controller.submit(_req())
    assert out.reason is RejectReason.EXECUTION_FAILED
    assert "exploded" not in out.message
    assert ledger.calls["commit_usage"] == 0

    ent = await svc.cache.get(ADDR, force_refresh=True)
    assert ent.remaining_quota == 5


@pytest.mark.asyncio
async def test_execution_timeout_is_execution_failed():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    svc = _service(ledger, capability=_SlowCapability(), config=_config(execute_timeout_seconds=0.05))

    out = await svc.controller.submit(_req())
    assert out.reason is RejectReason.EXECUTION_FAILED
    assert ledger.read_entitlement(ADDR).remaining_quota == 5


@pytest.mark.asyncio
async def test_cost_above_remaining_is_rejected_before_execution():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 1, 3600)
    cap = _CountingCapability()
    svc = _service(ledger, capability=cap)

    # Long payload with an expensive marker prices at 3 on the basic tier.
    out = await svc.controller.submit(_req("give me a detailed market analysis " + "x" * 120))
    assert out.reason is RejectReason.QUOTA_EXHAUSTED
    assert cap.calls == 0
    assert ledger.calls["commit_usage"] == 0


@pytest.mark.asyncio
async def test_prohibited_payload_is_invalid_and_uncharged():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    svc = _service(ledger)

    out = await svc.controller.submit(_req("how do I exploit this contract"))
    assert out.reason is RejectReason.INVALID_REQUEST
    assert ledger.read_entitlement(ADDR).remaining_quota == 5


@pytest.mark.asyncio
async def test_ledger_unavailable_surfaces_generic_message():
    svc = _service(_ReadDownLedger())
    out = await svc.controller.submit(_req())
    assert out.reason is RejectReason.LEDGER_UNAVAILABLE
    assert "5432" not in out.message
    assert "try again" in out.message.lower()
    assert svc.stats.snapshot()["ledger_unavailable_total"] == 1


@pytest.mark.asyncio
async def test_commit_failure_returns_content_and_journals(tmp_path):
    ledger = _CommitDownLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    svc = _service(ledger, tmp_path)
    seen = []
    svc.events.subscribe(seen.append)

    out = await svc.controller.submit(_req(correlation_id="cid-anomaly"))
    assert out.reason is RejectReason.COMMIT_FAILED
    assert out.content
    assert out.cost == 1
    assert out.receipt is None
    # one attempt plus the single retry
    assert ledger.calls["commit_usage"] == 2

    pending = svc.journal.pending()
    assert [a.correlation_id for a in pending] == ["cid-anomaly"]
    assert pending[0].cost == 1
    assert [e.type for e in seen] == [EVENT_COMMIT]
    assert svc.stats.snapshot()["commit_anomalies_total"] == 1


@pytest.mark.asyncio
async def test_commit_invalidates_cached_entitlement():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    svc = _service(ledger)

    await svc.cache.get(ADDR)
    assert svc.cache.peek(ADDR).remaining_quota == 5

    out = await svc.controller.submit(_req())
    assert out.completed
    assert svc.cache.peek(ADDR) is None
    ent = await svc.cache.get(ADDR)
    assert ent.remaining_quota == 4


@pytest.mark.asyncio
async def test_synchronous_reads_always_hit_ledger():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "premium", 50, 3600)
    svc = _service(ledger, config=_config(synchronous_reads=True))

    await svc.controller.entitlement_status(ADDR)
    before = ledger.calls["read_entitlement"]
    await svc.controller.submit(_req())
    assert ledger.calls["read_entitlement"] == before + 1


@pytest.mark.asyncio
async def test_tier_alias_prices_with_discount():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "Lifetime Access", 10, 3600)
    svc = _service(ledger)

    # base 3 (long + marker) * 0.5 -> 1
    out = await svc.controller.submit(_req("yield strategy " + "y" * 120))
    assert out.completed
    assert out.cost == 1


@pytest.mark.asyncio
async def test_completed_outcome_carries_verifiable_receipt():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    svc = _service(ledger)

    out = await svc.controller.submit(_req())
    assert out.receipt is not None
    assert out.receipt.correlation_id == out.correlation_id
    assert svc.controller.verify_receipt(out.receipt, out.content)
    assert not svc.controller.verify_receipt(out.receipt, out.content + " (edited)")


@pytest.mark.asyncio
async def test_events_and_stats_track_outcomes():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 1, 3600)
    svc = _service(ledger)
    seen = []
    svc.events.subscribe(seen.append)

    await svc.controller.submit(_req())
    await svc.controller.submit(_req())

    assert [e.type for e in seen] == [EVENT_USAGE, EVENT_DENIED]
    assert seen[0].cost == 1
    assert seen[1].cost == 0
    assert seen[1].reason == RejectReason.QUOTA_EXHAUSTED.value

    snap = svc.stats.snapshot()
    assert snap["requests_total"] == 2
    assert snap["units_committed_total"] == 1
    assert snap["rejections_by_reason"] == {"QuotaExhausted": 1}

    totals = svc.analytics.subscriber(ADDR)
    assert totals["served"] == 1
    assert totals["denied"] == 1


@pytest.mark.asyncio
async def test_outcomes_are_written_to_audit_log(tmp_path):
    key = Ed25519KeyPair.generate("audit-1")
    path = tmp_path / "audit.jsonl"
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 1, 3600)
    svc = _service(ledger, audit_log=TamperEvidentAuditLog(str(path), key))

    await svc.controller.submit(_req())
    await svc.controller.submit(_req())

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    events = [json.loads(line)["event"] for line in lines]
    assert events[0]["state"] == "Completed"
    assert "response_digest" in events[0]
    assert events[1]["reason"] == "QuotaExhausted"

    ok, reason, count = TamperEvidentAuditLog.verify_file(str(path), {key.key_id: key})
    assert ok, reason
    assert count == 2


@pytest.mark.asyncio
async def test_concurrent_requests_never_overdraw():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 3, 3600)
    svc = _service(ledger)

    outcomes = await asyncio.gather(*(svc.controller.submit(_req()) for _ in range(10)))
    completed = [o for o in outcomes if o.completed]
    assert len(completed) == 3
    assert ledger.read_entitlement(ADDR).remaining_quota == 0
    for o in outcomes:
        if not o.completed:
            assert o.reason in (RejectReason.QUOTA_EXHAUSTED, RejectReason.COMMIT_FAILED)


@pytest.mark.asyncio
async def test_entitlement_status_reports_resolved_tier():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "Monthly Access", 7, 3600)
    svc = _service(ledger)

    status = await svc.controller.entitlement_status(ADDR.upper().replace("0X", "0x"))
    assert status["tier"] == "premium"
    assert status["active"] is True
    assert status["has_access"] is True
    assert status["remaining_quota"] == 7


@pytest.mark.asyncio
async def test_unwritable_audit_log_still_delivers_charged_request(tmp_path):
    key = Ed25519KeyPair.generate("audit-1")
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    log = TamperEvidentAuditLog(str(tmp_path / "audit.jsonl"), key)
    svc = _service(ledger, audit_log=log)
    seen = []
    svc.events.subscribe(seen.append)
    log.path = str(tmp_path)  # a directory: every append raises IsADirectoryError

    out = await svc.controller.submit(_req())
    assert out.completed
    assert out.content
    assert out.receipt is not None
    assert ledger.read_entitlement(ADDR).remaining_quota == 4
    assert [e.type for e in seen] == [EVENT_USAGE]
    assert svc.stats.snapshot()["sink_failures_by_name"] == {"audit_log": 1}


@pytest.mark.asyncio
async def test_unwritable_journal_still_returns_commit_failed_content(tmp_path):
    ledger = _CommitDownLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    svc = _service(ledger, tmp_path)
    svc.journal.path = str(tmp_path)

    out = await svc.controller.submit(_req())
    assert out.reason is RejectReason.COMMIT_FAILED
    assert out.content
    snap = svc.stats.snapshot()
    assert snap["commit_anomalies_total"] == 1
    assert snap["sink_failures_by_name"] == {"reconciliation_journal": 1}


@pytest.mark.asyncio
async def test_retry_after_follows_limiter_clock():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "premium", 100, 3600)
    svc = _service(
        ledger,
        config=_config(rate_limit=RateLimitConfig(max_requests=1, window_ms=60_000)),
        wall_clock=lambda: 1000.0,
    )

    assert (await svc.controller.submit(_req())).completed
    limited = await svc.controller.submit(_req())
    assert limited.reason is RejectReason.RATE_LIMITED
    assert limited.retry_after_seconds == 60.0
    assert "61 seconds" in limited.message


@pytest.mark.asyncio
async def test_repeated_prohibited_content_flags_subscriber():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "premium", 100, 3600)
    svc = _service(ledger, config=_config(suspicion_threshold=3))

    for _ in range(2):
        await svc.controller.submit(_req(payload="how to hack a wallet"))
    assert not svc.security.is_flagged(ADDR)
    # other validation failures are not strikes
    await svc.controller.submit(_req(payload="   "))
    assert not svc.security.is_flagged(ADDR)

    await svc.controller.submit(_req(payload="commit fraud please"))
    assert svc.security.is_flagged(ADDR)
    flagged = svc.security.snapshot()["flagged"]
    assert flagged[0]["subscriber_id"] == ADDR
    assert flagged[0]["reason"] == "repeated prohibited_content"
    # informational only: clean requests still go through
    assert (await svc.controller.submit(_req())).completed


@pytest.mark.asyncio
async def test_repeated_rate_limiting_flags_subscriber():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "premium", 100, 3600)
    svc = _service(
        ledger,
        config=_config(rate_limit=RateLimitConfig(max_requests=1, window_ms=60_000), suspicion_threshold=2),
    )
    for _ in range(3):
        await svc.controller.submit(_req())
    assert svc.security.snapshot()["flagged"][0]["reason"] == "repeated rate_limited"
