"""Caller authentication helpers for the quota gateway.

This provides a simple API-key based identity mechanism so that the subscriber
a request is charged to is not client-controlled. If no mapping is configured,
callers may still supply X-Subscriber-Id but it is treated as unauthenticated.

Env vars:
  - QG_API_KEYS_JSON: JSON dict mapping api_key -> subscriber_id
  - QG_API_KEYS_FILE: path to a JSON file with the same mapping
  - QG_REQUIRE_ADDRESS_IDS: when true, subscriber ids must be 0x-prefixed
    40-hex-digit addresses
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .models import normalize_subscriber_id

ENV_API_KEYS_JSON = "QG_API_KEYS_JSON"
ENV_API_KEYS_FILE = "QG_API_KEYS_FILE"

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_valid_address(subscriber_id: str) -> bool:
    return bool(_ADDRESS_RE.match(subscriber_id or ""))


@dataclass(frozen=True)
class AuthContext:
    """Resolved caller identity context."""

    subscriber_id: Optional[str]
    authenticated: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ApiKeyAuth:
    """API key authentication config."""

    api_key_to_subscriber: Dict[str, str]
    configured: bool = False
    config_error: Optional[str] = None
    require_address_ids: bool = False

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """Load API key mapping from env/file.

        If configuration is *present* but malformed, the instance carries
        config_error so every request fails closed.
        """
        mapping: Dict[str, str] = {}
        config_error: Optional[str] = None

        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        configured = bool(raw_json or file_path)
        require_address = (os.getenv("QG_REQUIRE_ADDRESS_IDS", "") or "").strip().lower() in ("1", "true", "yes", "on")

        try:
            if raw_json:
                data = json.loads(raw_json)
                if not isinstance(data, dict):
                    raise ValueError("QG_API_KEYS_JSON must be a JSON object")
                mapping = {str(k): normalize_subscriber_id(str(v)) for k, v in data.items()}
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("QG_API_KEYS_FILE must contain a JSON object")
                mapping = {str(k): normalize_subscriber_id(str(v)) for k, v in data.items()}
        except (OSError, ValueError):
            config_error = "API_KEY_CONFIG_INVALID"
            mapping = {}

        return cls(
            api_key_to_subscriber=mapping,
            configured=configured,
            config_error=config_error,
            require_address_ids=require_address,
        )

    def enabled(self) -> bool:
        return self.configured

    def resolve_identity(
        self,
        api_key: Optional[str],
        claimed_subscriber_id: Optional[str] = None,
    ) -> Tuple[Optional[str], Optional[str]]:
        """Resolve caller identity.

        Returns (subscriber_id, error). If error is not None, the request
        should be rejected.
        """
        if self.config_error:
            return None, self.config_error

        claimed = normalize_subscriber_id(claimed_subscriber_id) if claimed_subscriber_id else None

        if not self.enabled():
            subscriber_id = claimed
        else:
            if not api_key:
                return None, "API_KEY_REQUIRED"
            subscriber_id = self.api_key_to_subscriber.get(api_key)
            if not subscriber_id:
                return None, "API_KEY_INVALID"
            if claimed and claimed != subscriber_id:
                return None, "SUBSCRIBER_ID_MISMATCH"

        if not subscriber_id:
            return None, "SUBSCRIBER_ID_REQUIRED"
        if self.require_address_ids and not is_valid_address(subscriber_id):
            return None, "SUBSCRIBER_ID_INVALID"
        return subscriber_id, None

    def resolve_context(self, api_key: Optional[str], claimed_subscriber_id: Optional[str] = None) -> AuthContext:
        subscriber_id, err = self.resolve_identity(api_key=api_key, claimed_subscriber_id=claimed_subscriber_id)
        if err:
            return AuthContext(subscriber_id=None, authenticated=False, error=err)
        return AuthContext(subscriber_id=subscriber_id, authenticated=self.enabled(), error=None)
