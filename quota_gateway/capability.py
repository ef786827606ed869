"""Paid capabilities the gateway meters.

A capability turns a validated payload into response text for a tier. Any
exception it raises is an execution failure; the controller never charges for
it. Two implementations ship here:

- `TemplateCapability`: canned answers keyed by topic category and tier
- `HttpCapability`: forwards to an external service over HTTP

Enable the HTTP one by setting:
- QG_CAPABILITY_URL=http://agent:9000
- QG_CAPABILITY_API_KEY=...   (optional; forwarded as X-Capability-Api-Key)
"""

from __future__ import annotations

import asyncio
import json
import os
import urllib.error
import urllib.request
from typing import Dict, Optional, Protocol, Sequence, Tuple

from .errors import QG_E_EXECUTION_FAILED, qg_error


class Capability(Protocol):
    async def execute(self, payload: str, tier_id: str) -> str:
        ...


DEFAULT_TEMPLATES: Dict[str, Dict[str, str]] = {
    "defi": {
        "basic": "Current DeFi opportunities include staking ETH (~4% APY) and providing liquidity on major DEXs.",
        "premium": (
            "Top DeFi yield strategies: 1) ETH staking on Lido (4.2% APY), 2) Uniswap V3 concentrated "
            "liquidity (8-15% APY), 3) Aave lending (3-6% APY). Risk assessment: Medium to high depending "
            "on strategy."
        ),
        "enterprise": (
            "Comprehensive DeFi analysis: 1) Liquid staking derivatives (Lido, Rocket Pool) offering 4-5% "
            "with high liquidity, 2) Concentrated liquidity positions on Uniswap V3 with dynamic rebalancing "
            "(potential 10-20% APY), 3) Yield farming on Curve with CRV rewards (6-12% APY), 4) Leveraged "
            "strategies using Aave/Compound (15-30% APY, high risk). Include impermanent loss calculations "
            "and gas optimization strategies."
        ),
    },
    "nft": {
        "basic": "NFT market shows mixed trends with blue-chip collections maintaining value.",
        "premium": (
            "NFT market analysis: Blue-chip collections (BAYC, CryptoPunks) showing 15% decline but strong "
            "floor support. Utility NFTs and gaming assets gaining traction. AI-generated art emerging as "
            "new category."
        ),
        "enterprise": (
            "Detailed NFT market intelligence: 1) Blue-chip analysis with floor price predictions, "
            "2) Emerging categories (AI art, utility tokens, gaming assets), 3) Market sentiment indicators, "
            "4) Liquidity analysis across marketplaces, 5) Upcoming drops and mint strategies with ROI "
            "projections."
        ),
    },
    "default": {
        "basic": "I'm an AI agent powered by DAT subscriptions. I can help with basic crypto and blockchain questions.",
        "premium": (
            "I'm an advanced AI agent with access to real-time market data, DeFi protocols, and NFT "
            "analytics. I can provide detailed investment strategies and risk assessments."
        ),
        "enterprise": (
            "I'm an enterprise-grade AI agent with comprehensive blockchain intelligence, advanced analytics, "
            "and institutional-level insights. I provide detailed market analysis, risk modeling, and "
            "strategic recommendations."
        ),
    },
}

# (category, keywords); first match wins.
DEFAULT_CATEGORIES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("defi", ("defi", "yield")),
    ("nft", ("nft",)),
)


class TemplateCapability:
    """Answer from fixed templates keyed by (category, tier)."""

    def __init__(
        self,
        templates: Optional[Dict[str, Dict[str, str]]] = None,
        categories: Sequence[Tuple[str, Tuple[str, ...]]] = DEFAULT_CATEGORIES,
        fallback_tier: str = "basic",
    ):
        self.templates = templates or DEFAULT_TEMPLATES
        if "default" not in self.templates:
            raise ValueError("templates must define a 'default' category")
        self.categories = tuple(categories)
        self.fallback_tier = fallback_tier

    def categorize(self, payload: str) -> str:
        text = payload.lower()
        for category, keywords in self.categories:
            if category in self.templates and any(k in text for k in keywords):
                return category
        return "default"

    def render(self, payload: str, tier_id: str) -> str:
        by_tier = self.templates[self.categorize(payload)]
        if tier_id in by_tier:
            return by_tier[tier_id]
        return by_tier[self.fallback_tier]

    async def execute(self, payload: str, tier_id: str) -> str:
        return self.render(payload, tier_id)


class HttpCapability:
    """Invoke an external capability via HTTP POST.

    Request:  POST {base}/execute {"payload": ..., "tier": ...}
    Response: {"content": "..."}; anything else is an execution failure.
    """

    def __init__(self, base_url: str, api_key: str = "", timeout_seconds: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = float(timeout_seconds)

    def _post(self, payload: str, tier_id: str) -> str:
        body = json.dumps({"payload": payload, "tier": tier_id}).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-Capability-Api-Key"] = self.api_key
        req = urllib.request.Request(f"{self.base_url}/execute", data=body, headers=headers, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                data = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            raise qg_error(QG_E_EXECUTION_FAILED, f"CAPABILITY_HTTP_ERROR_{e.code}", http_status=502) from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise qg_error(QG_E_EXECUTION_FAILED, f"CAPABILITY_CONNECT_ERROR: {type(e).__name__}", http_status=502) from e
        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, str):
            raise qg_error(QG_E_EXECUTION_FAILED, "CAPABILITY_RESPONSE_INVALID", http_status=502)
        return content

    async def execute(self, payload: str, tier_id: str) -> str:
        return await asyncio.to_thread(self._post, payload, tier_id)


def build_capability_from_env() -> Capability:
    url = (os.getenv("QG_CAPABILITY_URL", "") or "").strip()
    if url:
        return HttpCapability(
            base_url=url,
            api_key=(os.getenv("QG_CAPABILITY_API_KEY", "") or "").strip(),
            timeout_seconds=float(os.getenv("QG_CAPABILITY_TIMEOUT_SECONDS", "30") or "30"),
        )
    return TemplateCapability()
