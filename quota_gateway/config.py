"""Gateway configuration.

The configuration surface mirrors the external shape consumed by operators:

    {
      "cacheTtlMs": 60000,
      "rateLimit": {"maxRequests": 10, "windowMs": 60000},
      "tiers": {"basic": {"pricingMultiplier": 1.0, "maxPayloadLength": 200}, ...}
    }

plus a few operational knobs (timeouts, stale-cache policy, synchronous reads).

Env:
- QG_CONFIG_JSON / QG_CONFIG_FILE: base document (JSON, shape above)
- QG_CACHE_TTL_MS, QG_RATE_LIMIT (e.g. "10/m"), QG_STALE_POLICY,
  QG_SYNCHRONOUS_READS, QG_LEDGER_TIMEOUT_SECONDS, QG_EXECUTE_TIMEOUT_SECONDS:
  per-field overrides
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import QG_E_CONFIG_INVALID, qg_error
from .ratelimit import parse_rate_limit

STALE_FAIL_CLOSED = "fail_closed"
STALE_SERVE = "serve_stale"
_STALE_POLICIES = (STALE_FAIL_CLOSED, STALE_SERVE)


@dataclass(frozen=True)
class TierPolicy:
    pricing_multiplier: float = 1.0
    max_payload_length: int = 1000

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TierPolicy":
        multiplier = float(data.get("pricingMultiplier", data.get("pricing_multiplier", 1.0)))
        max_len = int(data.get("maxPayloadLength", data.get("max_payload_length", 1000)))
        if multiplier <= 0:
            raise ValueError("pricingMultiplier must be positive")
        if max_len < 1:
            raise ValueError("maxPayloadLength must be >= 1")
        return cls(pricing_multiplier=multiplier, max_payload_length=max_len)


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int = 10
    window_ms: int = 60_000

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RateLimitConfig":
        max_requests = int(data.get("maxRequests", data.get("max_requests", cls.max_requests)))
        window_ms = int(data.get("windowMs", data.get("window_ms", cls.window_ms)))
        if max_requests < 1 or window_ms < 1:
            raise ValueError("rateLimit.maxRequests and rateLimit.windowMs must be positive")
        return cls(max_requests=max_requests, window_ms=window_ms)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _default_tiers() -> Dict[str, TierPolicy]:
    return {
        "basic": TierPolicy(pricing_multiplier=1.0, max_payload_length=200),
        "premium": TierPolicy(pricing_multiplier=0.8, max_payload_length=1000),
        "enterprise": TierPolicy(pricing_multiplier=0.5, max_payload_length=1000),
    }


# Ledger tier names are free text ("Lifetime Access", "Monthly Access", ...).
# Substring (case-insensitive) -> configured tier id; first match wins.
DEFAULT_TIER_ALIASES: Tuple[Tuple[str, str], ...] = (
    ("lifetime", "enterprise"),
    ("monthly", "premium"),
)


@dataclass(frozen=True)
class GatewayConfig:
    cache_ttl_ms: int = 60_000
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    tiers: Dict[str, TierPolicy] = field(default_factory=_default_tiers)
    default_tier: str = "basic"
    tier_aliases: Tuple[Tuple[str, str], ...] = DEFAULT_TIER_ALIASES

    stale_policy: str = STALE_FAIL_CLOSED
    synchronous_reads: bool = False

    ledger_timeout_seconds: float = 5.0
    commit_timeout_seconds: float = 10.0
    execute_timeout_seconds: float = 30.0
    ledger_retry_backoff_seconds: float = 0.2

    suspicion_threshold: int = 5
    suspicion_window_seconds: float = 600.0
    max_tracked_subscribers: int = 10000

    def __post_init__(self) -> None:
        if self.stale_policy not in _STALE_POLICIES:
            raise ValueError(f"stale_policy must be one of {_STALE_POLICIES}, got {self.stale_policy!r}")
        if self.default_tier not in self.tiers:
            raise ValueError(f"default_tier {self.default_tier!r} is not a configured tier")
        if self.cache_ttl_ms < 0:
            raise ValueError("cache_ttl_ms must be >= 0")
        if self.suspicion_threshold < 1 or self.suspicion_window_seconds <= 0:
            raise ValueError("suspicion_threshold and suspicion_window_seconds must be positive")
        if self.max_tracked_subscribers < 1:
            raise ValueError("max_tracked_subscribers must be >= 1")

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_ms / 1000.0

    def resolve_tier(self, tier_id: str) -> str:
        """Map a ledger tier identifier onto a configured tier id."""
        if tier_id in self.tiers:
            return tier_id
        lowered = (tier_id or "").strip().lower()
        if lowered in self.tiers:
            return lowered
        for needle, target in self.tier_aliases:
            if needle in lowered and target in self.tiers:
                return target
        return self.default_tier

    def tier_policy(self, tier_id: str) -> TierPolicy:
        return self.tiers[self.resolve_tier(tier_id)]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GatewayConfig":
        """Build from the camelCase configuration surface (snake_case accepted too)."""
        kwargs: Dict[str, Any] = {}
        if "cacheTtlMs" in data or "cache_ttl_ms" in data:
            kwargs["cache_ttl_ms"] = int(data.get("cacheTtlMs", data.get("cache_ttl_ms")))
        rl = data.get("rateLimit", data.get("rate_limit"))
        if rl is not None:
            kwargs["rate_limit"] = RateLimitConfig.from_dict(rl)
        tiers = data.get("tiers")
        if tiers is not None:
            if not isinstance(tiers, Mapping) or not tiers:
                raise ValueError("tiers must be a non-empty object")
            kwargs["tiers"] = {str(k): TierPolicy.from_dict(v) for k, v in tiers.items()}
        if "defaultTier" in data or "default_tier" in data:
            kwargs["default_tier"] = str(data.get("defaultTier", data.get("default_tier")))
        elif "tiers" in kwargs and "basic" not in kwargs["tiers"]:
            kwargs["default_tier"] = next(iter(kwargs["tiers"]))
        aliases = data.get("tierAliases", data.get("tier_aliases"))
        if aliases is not None:
            kwargs["tier_aliases"] = tuple((str(k).lower(), str(v)) for k, v in dict(aliases).items())
        for camel, snake, conv in (
            ("stalePolicy", "stale_policy", str),
            ("synchronousReads", "synchronous_reads", _as_bool),
            ("ledgerTimeoutSeconds", "ledger_timeout_seconds", float),
            ("commitTimeoutSeconds", "commit_timeout_seconds", float),
            ("executeTimeoutSeconds", "execute_timeout_seconds", float),
            ("ledgerRetryBackoffSeconds", "ledger_retry_backoff_seconds", float),
            ("suspicionThreshold", "suspicion_threshold", int),
            ("suspicionWindowSeconds", "suspicion_window_seconds", float),
            ("maxTrackedSubscribers", "max_tracked_subscribers", int),
        ):
            if camel in data or snake in data:
                kwargs[snake] = conv(data.get(camel, data.get(snake)))
        return cls(**kwargs)

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        raw_json = (os.getenv("QG_CONFIG_JSON", "") or "").strip()
        file_path = (os.getenv("QG_CONFIG_FILE", "") or "").strip()
        try:
            if raw_json:
                base = cls.from_dict(json.loads(raw_json))
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    base = cls.from_dict(json.load(f))
            else:
                base = cls()
            return base._apply_env_overrides()
        except (OSError, ValueError, TypeError) as e:
            # Fail closed: a present-but-broken config must not start a permissive gateway.
            raise qg_error(QG_E_CONFIG_INVALID, f"Invalid gateway configuration: {e}") from e

    def _apply_env_overrides(self) -> "GatewayConfig":
        def _get_float(name: str, default: float, lo: float, hi: float) -> float:
            raw = (os.getenv(name, "") or "").strip()
            if not raw:
                return default
            return max(lo, min(float(raw), hi))

        updates: Dict[str, Any] = {}
        ttl = (os.getenv("QG_CACHE_TTL_MS", "") or "").strip()
        if ttl:
            updates["cache_ttl_ms"] = max(0, min(int(ttl), 24 * 3600 * 1000))
        rl = (os.getenv("QG_RATE_LIMIT", "") or "").strip()
        if rl:
            max_requests, window_ms = parse_rate_limit(rl)
            updates["rate_limit"] = RateLimitConfig(max_requests=max_requests, window_ms=window_ms)
        stale = (os.getenv("QG_STALE_POLICY", "") or "").strip().lower()
        if stale:
            updates["stale_policy"] = stale
        sync = (os.getenv("QG_SYNCHRONOUS_READS", "") or "").strip().lower()
        if sync:
            updates["synchronous_reads"] = sync in ("1", "true", "yes", "on")
        updates["ledger_timeout_seconds"] = _get_float("QG_LEDGER_TIMEOUT_SECONDS", self.ledger_timeout_seconds, 0.01, 120.0)
        updates["commit_timeout_seconds"] = _get_float("QG_COMMIT_TIMEOUT_SECONDS", self.commit_timeout_seconds, 0.01, 300.0)
        updates["execute_timeout_seconds"] = _get_float("QG_EXECUTE_TIMEOUT_SECONDS", self.execute_timeout_seconds, 0.01, 600.0)
        return replace(self, **updates)


def load_config(path: Optional[str] = None) -> GatewayConfig:
    if path:
        with open(path, "r", encoding="utf-8") as f:
            return GatewayConfig.from_dict(json.load(f))
    return GatewayConfig.from_env()
