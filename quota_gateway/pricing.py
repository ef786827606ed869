"""Request validation and quota pricing.

Pure and deterministic: no I/O, no clock. The same (payload, tier) always
prices to the same cost.

Cost model:
  base unit (1)
  + 1 when the payload is longer than the long-payload threshold (100 chars)
  + 1 when any "expensive" marker occurs (keyword match, case-insensitive)
  then multiplied by the tier's pricing multiplier, floored, minimum 1.

The marker list is an extension point for operators; it carries no
cryptographic meaning.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, Tuple

from .config import GatewayConfig
from .errors import invalid_request
from .models import AccessRequest, PricedRequest

MAX_PAYLOAD_LENGTH = 1000
LONG_PAYLOAD_THRESHOLD = 100
BASE_COST = 1
LONG_PAYLOAD_INCREMENT = 1
EXPENSIVE_MARKER_INCREMENT = 1

DEFAULT_PROHIBITED_TERMS: Tuple[str, ...] = ("hack", "exploit", "illegal", "fraud")
DEFAULT_EXPENSIVE_MARKERS: Tuple[str, ...] = ("analysis", "strategy")

ContentPredicate = Callable[[str], Optional[str]]


def prohibited_terms_predicate(terms: Sequence[str]) -> ContentPredicate:
    """Build a predicate returning the first prohibited term found, else None."""
    lowered = tuple(t.lower() for t in terms if t)

    def _check(payload: str) -> Optional[str]:
        text = payload.lower()
        for term in lowered:
            if term in text:
                return term
        return None

    return _check


@dataclass
class PricingPolicy:
    config: GatewayConfig
    max_payload_length: int = MAX_PAYLOAD_LENGTH
    long_payload_threshold: int = LONG_PAYLOAD_THRESHOLD
    expensive_markers: Sequence[str] = DEFAULT_EXPENSIVE_MARKERS
    disallowed: Sequence[ContentPredicate] = field(
        default_factory=lambda: (prohibited_terms_predicate(DEFAULT_PROHIBITED_TERMS),)
    )

    def validate(self, payload: str, tier_id: str) -> None:
        """Raise InvalidRequest for empty, oversized or disallowed payloads."""
        if payload is None or not payload.strip():
            raise invalid_request(f"Query must be between 1-{self.max_payload_length} characters.", rule="empty")
        if len(payload) > self.max_payload_length:
            raise invalid_request(
                f"Query must be between 1-{self.max_payload_length} characters.",
                rule="max_length",
                length=len(payload),
            )
        tier = self.config.resolve_tier(tier_id)
        tier_limit = self.config.tiers[tier].max_payload_length
        if len(payload) > tier_limit:
            raise invalid_request(
                f"{tier.capitalize()} tier limited to {tier_limit} character queries. Upgrade for longer queries.",
                rule="tier_max_length",
                tier=tier,
                length=len(payload),
            )
        for predicate in self.disallowed:
            hit = predicate(payload)
            if hit:
                raise invalid_request("Query contains prohibited content.", rule="disallowed_content")

    def base_cost(self, payload: str) -> int:
        cost = BASE_COST
        if len(payload) > self.long_payload_threshold:
            cost += LONG_PAYLOAD_INCREMENT
        text = payload.lower()
        if any(marker.lower() in text for marker in self.expensive_markers):
            cost += EXPENSIVE_MARKER_INCREMENT
        return cost

    def cost_for(self, payload: str, tier_id: str) -> int:
        multiplier = self.config.tier_policy(tier_id).pricing_multiplier
        return max(1, math.floor(self.base_cost(payload) * multiplier))

    def price(self, request: AccessRequest, tier_id: str) -> PricedRequest:
        self.validate(request.payload, tier_id)
        return PricedRequest(
            request=request,
            tier_id=self.config.resolve_tier(tier_id),
            cost=self.cost_for(request.payload, tier_id),
        )
