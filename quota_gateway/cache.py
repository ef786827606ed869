"""Short-lived entitlement cache in front of the quota ledger.

Decisions made from a fresh entry are consistent for at most ``ttl_seconds``;
debits are never taken from the cache (the ledger commit is authoritative).

Notes
-----
- Keys are normalised subscriber ids (addresses compare case-insensitively).
- NotFound is not cached: a subscriber who just purchased is visible on the
  next request.
- Each key carries a generation counter. ``invalidate`` bumps it, and a ledger
  read that started under an older generation does not install its result.
- When the ledger is unavailable, ``fail_closed`` propagates the error and
  ``serve_stale`` answers from the last known entry (logged as a warning).
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from .config import STALE_FAIL_CLOSED, STALE_SERVE
from .errors import QG_E_LEDGER_UNAVAILABLE, QG_E_NOT_FOUND, QuotaGatewayError
from .ledger import QuotaLedgerClient
from .models import CachedEntitlement, Entitlement, normalize_subscriber_id

logger = logging.getLogger("quota_gateway.cache")


class AccessCache:
    def __init__(
        self,
        client: QuotaLedgerClient,
        ttl_seconds: float = 60.0,
        stale_policy: str = STALE_FAIL_CLOSED,
        clock: Optional[Callable[[], float]] = None,
    ):
        if stale_policy not in (STALE_FAIL_CLOSED, STALE_SERVE):
            raise ValueError(f"unsupported stale_policy: {stale_policy!r}")
        self._client = client
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self.stale_policy = stale_policy
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._entries: Dict[str, CachedEntitlement] = {}
        self._generations: Dict[str, int] = {}
        self._stats = {"hits": 0, "misses": 0, "refreshes": 0, "stale_served": 0, "invalidations": 0}

    async def get(self, subscriber_id: str, force_refresh: bool = False) -> Entitlement:
        key = normalize_subscriber_id(subscriber_id)
        with self._lock:
            entry = self._entries.get(key)
            generation = self._generations.get(key, 0)
            if entry is not None and not force_refresh and entry.is_fresh(self._clock(), self.ttl_seconds):
                self._stats["hits"] += 1
                return entry.entitlement
            self._stats["refreshes" if force_refresh else "misses"] += 1

        try:
            entitlement = await self._client.read_entitlement(key)
        except QuotaGatewayError as e:
            if e.code == QG_E_NOT_FOUND:
                with self._lock:
                    if self._generations.get(key, 0) == generation:
                        self._entries.pop(key, None)
                raise
            if e.code == QG_E_LEDGER_UNAVAILABLE and entry is not None and self.stale_policy == STALE_SERVE:
                with self._lock:
                    self._stats["stale_served"] += 1
                logger.warning(
                    "Ledger unavailable; serving stale entitlement for %s (age %.1fs)",
                    key,
                    self._clock() - entry.fetched_at,
                )
                return entry.entitlement
            raise

        with self._lock:
            if self._generations.get(key, 0) == generation:
                self._entries[key] = CachedEntitlement(entitlement=entitlement, fetched_at=self._clock())
            else:
                logger.debug("Discarding entitlement read for %s; invalidated while in flight", key)
        return entitlement

    def invalidate(self, subscriber_id: str) -> None:
        key = normalize_subscriber_id(subscriber_id)
        with self._lock:
            self._generations[key] = self._generations.get(key, 0) + 1
            self._entries.pop(key, None)
            self._stats["invalidations"] += 1

    def peek(self, subscriber_id: str) -> Optional[Entitlement]:
        """Cached entitlement regardless of freshness (no ledger call)."""
        with self._lock:
            entry = self._entries.get(normalize_subscriber_id(subscriber_id))
            return entry.entitlement if entry is not None else None

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            snap: Dict[str, Any] = dict(self._stats)
            snap["entries"] = len(self._entries)
        snap["ttl_seconds"] = self.ttl_seconds
        snap["stale_policy"] = self.stale_policy
        return snap
