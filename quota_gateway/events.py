"""In-process publish/subscribe channel for usage events.

Event types:
- ``usage``   a request completed and its cost was committed
- ``commit``  content was served but the debit did not land (reconciliation)
- ``denied``  a request was rejected before anything was charged

Handlers run synchronously in the publisher's thread, in subscription order.
A failing handler is logged and does not stop delivery to the others.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger("quota_gateway.events")

EVENT_USAGE = "usage"
EVENT_COMMIT = "commit"
EVENT_DENIED = "denied"


@dataclass(frozen=True)
class UsageEvent:
    type: str
    subscriber_id: str
    cost: int
    timestamp: datetime
    correlation_id: str
    tier_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "subscriber_id": self.subscriber_id,
            "cost": self.cost,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
            "tier_id": self.tier_id,
            "reason": self.reason,
        }


Handler = Callable[[UsageEvent], None]


class EventChannel:
    def __init__(self, history_size: int = 1000):
        self._lock = threading.Lock()
        self._handlers: List[Handler] = []
        self._recent: Deque[UsageEvent] = deque(maxlen=max(1, int(history_size)))

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register `handler`; returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: UsageEvent) -> None:
        with self._lock:
            handlers = list(self._handlers)
            self._recent.append(event)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Usage event handler %r failed for %s", handler, event.correlation_id)

    def recent(self, limit: int = 50) -> List[UsageEvent]:
        with self._lock:
            items = list(self._recent)
        return items[-int(limit):] if limit > 0 else []

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._handlers)
