"""Usage analytics fed from the event channel.

In-memory rollups only; counters reset on process restart. The ledger's own
usage history remains the billing record.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .events import EVENT_COMMIT, EVENT_DENIED, EVENT_USAGE, EventChannel, UsageEvent

DAILY_WINDOW_DAYS = 30
MAX_TRACKED_SUBSCRIBERS = 10000


@dataclass
class SubscriberUsage:
    served: int = 0
    denied: int = 0
    unreconciled: int = 0
    units_charged: int = 0
    denials_by_reason: Dict[str, int] = field(default_factory=dict)
    last_seen: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "served": self.served,
            "denied": self.denied,
            "unreconciled": self.unreconciled,
            "units_charged": self.units_charged,
            "denials_by_reason": dict(self.denials_by_reason),
            "last_seen": self.last_seen,
        }


@dataclass
class _Day:
    usage: int = 0
    requests: int = 0
    denied: int = 0


class UsageAggregator:
    """Per-subscriber, per-tier and daily usage totals.

    Per-subscriber rollups are bounded: once ``max_subscribers`` ids are
    tracked, the least recently seen one is dropped. Global totals keep
    counting evicted subscribers.
    """

    def __init__(self, daily_window_days: int = DAILY_WINDOW_DAYS, max_subscribers: int = MAX_TRACKED_SUBSCRIBERS):
        self._lock = threading.Lock()
        self._daily_window_days = max(1, int(daily_window_days))
        self._max_subscribers = max(1, int(max_subscribers))
        self._subscribers: "OrderedDict[str, SubscriberUsage]" = OrderedDict()
        self._totals = {"usage": 0, "served": 0, "denied": 0}
        self._evicted = 0
        self._tiers: Dict[str, Dict[str, int]] = {}
        self._days: Dict[str, _Day] = {}
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, channel: EventChannel) -> None:
        self.detach()
        self._unsubscribe = channel.subscribe(self.handle)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def handle(self, event: UsageEvent) -> None:
        day = event.timestamp.date().isoformat()
        tier = event.tier_id or "unknown"
        with self._lock:
            sub = self._touch(event.subscriber_id)
            sub.last_seen = event.timestamp.isoformat()
            daily = self._days.setdefault(day, _Day())
            tier_stats = self._tiers.setdefault(tier, {"requests": 0, "usage": 0})
            if event.type == EVENT_USAGE:
                sub.served += 1
                sub.units_charged += int(event.cost)
                self._totals["served"] += 1
                self._totals["usage"] += int(event.cost)
                daily.usage += int(event.cost)
                daily.requests += 1
                tier_stats["requests"] += 1
                tier_stats["usage"] += int(event.cost)
            elif event.type == EVENT_COMMIT:
                # Served but not debited; counted as a request, not as usage.
                sub.served += 1
                sub.unreconciled += 1
                self._totals["served"] += 1
                daily.requests += 1
                tier_stats["requests"] += 1
            elif event.type == EVENT_DENIED:
                sub.denied += 1
                self._totals["denied"] += 1
                reason = event.reason or "unknown"
                sub.denials_by_reason[reason] = sub.denials_by_reason.get(reason, 0) + 1
                daily.denied += 1
            self._trim_days()

    def _touch(self, subscriber_id: str) -> SubscriberUsage:
        sub = self._subscribers.get(subscriber_id)
        if sub is not None:
            self._subscribers.move_to_end(subscriber_id)
            return sub
        while len(self._subscribers) >= self._max_subscribers:
            self._subscribers.popitem(last=False)
            self._evicted += 1
        sub = self._subscribers[subscriber_id] = SubscriberUsage()
        return sub

    def _trim_days(self) -> None:
        if len(self._days) > self._daily_window_days:
            for stale in sorted(self._days)[: len(self._days) - self._daily_window_days]:
                del self._days[stale]

    def subscriber(self, subscriber_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            sub = self._subscribers.get(subscriber_id)
            return sub.to_dict() if sub is not None else None

    def daily_stats(self) -> List[Dict[str, Any]]:
        """Oldest first, at most the configured number of days."""
        with self._lock:
            return [
                {"date": d, "usage": s.usage, "requests": s.requests, "denied": s.denied}
                for d, s in sorted(self._days.items())
            ]

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            active = [s for s in self._subscribers.values() if s.served]
            return {
                "total_usage": self._totals["usage"],
                "total_served": self._totals["served"],
                "total_denied": self._totals["denied"],
                "active_subscribers": len(active),
                "average_usage_per_subscriber": sum(s.units_charged for s in active) / max(len(active), 1),
                "tracked_subscribers": len(self._subscribers),
                "evicted_subscribers": self._evicted,
                "usage_by_tier": {k: dict(v) for k, v in self._tiers.items()},
            }
