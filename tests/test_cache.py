import asyncio

import pytest

from quota_gateway.cache import AccessCache
from quota_gateway.config import STALE_FAIL_CLOSED, STALE_SERVE
from quota_gateway.errors import QG_E_LEDGER_UNAVAILABLE, QG_E_NOT_FOUND, QuotaGatewayError, ledger_unavailable
from quota_gateway.ledger import InMemoryLedger, QuotaLedgerClient

ADDR = "0x" + "12" * 20


class _Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class _SwitchableLedger(InMemoryLedger):
    def __init__(self):
        super().__init__()
        self.down = False

    def read_entitlement(self, subscriber_id):
        if self.down:
            self.calls["read_entitlement"] += 1
            raise ledger_unavailable("read_entitlement")
        return super().read_entitlement(subscriber_id)


def _cache(ledger, clock, ttl=60.0, stale_policy=STALE_FAIL_CLOSED):
    client = QuotaLedgerClient(ledger, retry_backoff_seconds=0.0)
    return AccessCache(client, ttl_seconds=ttl, stale_policy=stale_policy, clock=clock)


@pytest.mark.asyncio
async def test_fresh_hit_makes_zero_ledger_calls():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    clock = _Clock()
    cache = _cache(ledger, clock)

    await cache.get(ADDR)
    clock.now += 59.0
    for _ in range(5):
        await cache.get(ADDR)

    assert ledger.calls["read_entitlement"] == 1
    assert cache.stats()["hits"] == 5


@pytest.mark.asyncio
async def test_entry_expires_after_ttl():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    clock = _Clock()
    cache = _cache(ledger, clock)

    await cache.get(ADDR)
    clock.now += 60.0
    await cache.get(ADDR)
    assert ledger.calls["read_entitlement"] == 2


@pytest.mark.asyncio
async def test_keys_are_case_normalised():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    cache = _cache(ledger, _Clock())
    await cache.get(ADDR)
    await cache.get(ADDR.upper().replace("0X", "0x"))
    assert ledger.calls["read_entitlement"] == 1


@pytest.mark.asyncio
async def test_force_refresh_and_invalidate_go_to_ledger():
    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    cache = _cache(ledger, _Clock())

    await cache.get(ADDR)
    await cache.get(ADDR, force_refresh=True)
    cache.invalidate(ADDR)
    await cache.get(ADDR)
    assert ledger.calls["read_entitlement"] == 3


@pytest.mark.asyncio
async def test_not_found_is_not_cached():
    ledger = InMemoryLedger()
    cache = _cache(ledger, _Clock())
    with pytest.raises(QuotaGatewayError) as ei:
        await cache.get(ADDR)
    assert ei.value.code == QG_E_NOT_FOUND

    ledger.grant(ADDR, "premium", 7, 3600)
    ent = await cache.get(ADDR)
    assert ent.remaining_quota == 7


@pytest.mark.asyncio
async def test_stale_entry_fails_closed_by_default():
    ledger = _SwitchableLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    clock = _Clock()
    cache = _cache(ledger, clock)
    await cache.get(ADDR)

    ledger.down = True
    clock.now += 120.0
    with pytest.raises(QuotaGatewayError) as ei:
        await cache.get(ADDR)
    assert ei.value.code == QG_E_LEDGER_UNAVAILABLE


@pytest.mark.asyncio
async def test_serve_stale_policy_answers_from_last_entry():
    ledger = _SwitchableLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    clock = _Clock()
    cache = _cache(ledger, clock, stale_policy=STALE_SERVE)
    await cache.get(ADDR)

    ledger.down = True
    clock.now += 120.0
    ent = await cache.get(ADDR)
    assert ent.remaining_quota == 5
    assert cache.stats()["stale_served"] == 1


@pytest.mark.asyncio
async def test_invalidate_during_inflight_read_is_not_clobbered():
    started = asyncio.Event()
    release = asyncio.Event()

    class _GatedClient:
        def __init__(self, ledger):
            self.ledger = ledger

        async def read_entitlement(self, subscriber_id):
            ent = self.ledger.read_entitlement(subscriber_id)
            started.set()
            await release.wait()
            return ent

    ledger = InMemoryLedger()
    ledger.grant(ADDR, "basic", 5, 3600)
    cache = AccessCache(_GatedClient(ledger), ttl_seconds=60.0, clock=_Clock())

    task = asyncio.create_task(cache.get(ADDR))
    await started.wait()
    cache.invalidate(ADDR)
    release.set()
    await task

    # The in-flight (pre-invalidation) read must not be installed.
    assert cache.peek(ADDR) is None


def test_rejects_unknown_stale_policy():
    with pytest.raises(ValueError):
        AccessCache(QuotaLedgerClient(InMemoryLedger()), stale_policy="yolo")
