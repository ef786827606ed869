"""HTTP surface of the quota gateway (FastAPI).

Endpoints:
    POST /v1/query                     - metered request (the only path that debits)
    GET  /v1/entitlements/{id}         - current entitlement view
    POST /v1/receipts/verify           - check a response against its receipt
    GET  /v1/usage                     - aggregate usage + daily rollup
    GET  /v1/usage/{id}                - per-subscriber usage + ledger history
    POST /v1/admin/entitlements        - grant a subscription (admin token)
    GET  /v1/stats                     - operational counters
    GET  /v1/health                    - health check
    GET  /metrics                      - Prometheus
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import os
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .controller import REASON_CODES, REASON_HTTP_STATUS
from .errors import QG_E_AUTH_REQUIRED, QG_E_BAD_REQUEST, QuotaGatewayError
from .metrics import instrument_fastapi
from .models import AccessRequest, RejectReason
from .receipts import Receipt, ReceiptGenerator
from .service import ServiceContext, build_service_from_env

logger = logging.getLogger("quota_gateway")


def _http_exc(status: int, code: str, message: str, *, retryable: bool = False, **details: Any) -> HTTPException:
    """Create an HTTPException with a stable error envelope in `detail`."""
    detail: Dict[str, Any] = {"code": code, "message": message, "retryable": bool(retryable)}
    if details:
        detail["details"] = details
    return HTTPException(status, detail)


class QueryRequest(BaseModel):
    """A metered request."""
    payload: str
    correlation_id: Optional[str] = Field(default=None, max_length=128)


class VerifyReceiptRequest(BaseModel):
    receipt: Dict[str, Any]
    response: str
    payload: Optional[str] = None


class GrantRequest(BaseModel):
    """Record a purchased subscription in the ledger."""
    subscriber_id: str
    tier_id: str
    quota: int = Field(ge=0)
    duration_seconds: int = Field(gt=0)


def _secret_eq(given: str, expected: str) -> bool:
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def create_app(service: Optional[ServiceContext] = None) -> FastAPI:
    """Create FastAPI application with gateway endpoints."""
    from . import __version__ as qg_version

    if service is None:
        service = build_service_from_env()

    app = FastAPI(
        title="Quota Gateway",
        description="Token-gated usage metering and access control",
        version=qg_version,
    )
    app.state.service = service
    controller = service.controller

    @app.exception_handler(QuotaGatewayError)
    async def _qg_error_handler(request: Request, exc: QuotaGatewayError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    metrics_token = (os.getenv("QG_METRICS_TOKEN", "") or "").strip()

    def _token_matches(req: Request, expected: str, header: str) -> bool:
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and _secret_eq(authz.split(" ", 1)[1].strip(), expected):
            return True
        return _secret_eq((req.headers.get(header) or "").strip(), expected)

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        return _token_matches(req, metrics_token, "X-Metrics-Token")

    instrument_fastapi(app, authorize=_authorize_metrics)

    # Request body size limit (checks Content-Length).
    max_request_bytes = int(os.getenv("QG_MAX_REQUEST_BYTES", "65536") or "65536")

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                return JSONResponse(status_code=400, content={"detail": "BAD_CONTENT_LENGTH"})
            if too_large:
                return JSONResponse(status_code=413, content={"detail": "REQUEST_TOO_LARGE"})
        return await call_next(req)

    def _caller(x_api_key: Optional[str], claimed: Optional[str]) -> str:
        ctx = service.auth.resolve_context(x_api_key, claimed)
        if ctx.error or not ctx.subscriber_id:
            raise _http_exc(401, QG_E_AUTH_REQUIRED, ctx.error or "SUBSCRIBER_ID_REQUIRED")
        return ctx.subscriber_id

    @app.post("/v1/query")
    async def query(
        request: QueryRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_subscriber_id: Optional[str] = Header(None, alias="X-Subscriber-Id"),
    ):
        """Submit a metered request. Rejections carry the outcome plus an error code."""
        subscriber_id = _caller(x_api_key, x_subscriber_id)
        kwargs: Dict[str, Any] = {}
        if request.correlation_id:
            kwargs["correlation_id"] = request.correlation_id
        outcome = await controller.submit(AccessRequest(subscriber_id=subscriber_id, payload=request.payload, **kwargs))

        body = outcome.to_dict()
        if outcome.completed:
            return body
        reason = outcome.reason.value if outcome.reason else ""
        body["code"] = REASON_CODES.get(reason, QG_E_BAD_REQUEST)
        body["retryable"] = outcome.reason in (RejectReason.RATE_LIMITED, RejectReason.LEDGER_UNAVAILABLE)
        headers: Dict[str, str] = {}
        if outcome.retry_after_seconds is not None:
            headers["Retry-After"] = str(int(outcome.retry_after_seconds) + 1)
        return JSONResponse(status_code=REASON_HTTP_STATUS.get(reason, 400), content=body, headers=headers)

    @app.get("/v1/entitlements/{subscriber_id}")
    async def entitlement(
        subscriber_id: str,
        refresh: bool = False,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        caller = _caller(x_api_key, subscriber_id)
        return await controller.entitlement_status(caller, refresh=refresh)

    @app.post("/v1/receipts/verify")
    async def verify_receipt(request: VerifyReceiptRequest):
        try:
            receipt = Receipt.from_dict(request.receipt)
        except (KeyError, TypeError, ValueError) as e:
            raise _http_exc(400, QG_E_BAD_REQUEST, "Malformed receipt", error=type(e).__name__)
        problems = ReceiptGenerator.problems(receipt, request.response)
        if request.payload is not None and not ReceiptGenerator.verify_payload(receipt, request.payload):
            problems.append("PAYLOAD_DIGEST_MISMATCH")
        return {
            "valid": controller.verify_receipt(receipt, request.response) and not problems,
            "problems": problems,
            "correlation_id": receipt.correlation_id,
        }

    @app.get("/v1/usage")
    async def usage_summary():
        summary = service.analytics.summary()
        summary["daily_stats"] = service.analytics.daily_stats()
        return summary

    @app.get("/v1/usage/{subscriber_id}")
    async def usage_for(
        subscriber_id: str,
        limit: int = 50,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ):
        caller = _caller(x_api_key, subscriber_id)
        history = None
        usage_history = getattr(service.ledger, "usage_history", None)
        if usage_history is not None:
            records = await asyncio.to_thread(usage_history, caller, max(1, min(int(limit), 500)))
            history = [r.to_dict() for r in records]
        return {
            "subscriber_id": caller,
            "totals": service.analytics.subscriber(caller),
            "history": history,
        }

    @app.post("/v1/admin/entitlements")
    async def grant_entitlement(
        request: GrantRequest,
        x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    ):
        if not service.admin_token:
            # avoid leaking existence details
            raise HTTPException(404, "Not Found")
        if not x_admin_token or not _secret_eq(x_admin_token, service.admin_token):
            raise _http_exc(403, QG_E_AUTH_REQUIRED, "ADMIN_TOKEN_INVALID")
        grant = getattr(service.ledger, "grant", None)
        if grant is None:
            raise _http_exc(501, QG_E_BAD_REQUEST, "Ledger backend does not support grants")
        try:
            ent = await asyncio.to_thread(
                grant, request.subscriber_id, request.tier_id, request.quota, request.duration_seconds,
            )
        except ValueError as e:
            raise _http_exc(400, QG_E_BAD_REQUEST, str(e))
        logger.info("Granted %s quota=%d tier=%s", ent.subscriber_id, ent.remaining_quota, ent.tier_id)
        return ent.to_dict()

    stats_token = (os.getenv("QG_STATS_TOKEN", "") or "").strip()

    def _lockdown_active() -> Optional[bool]:
        circuit = getattr(service.ledger, "circuit", None)
        return circuit.is_lockdown_active() if circuit is not None else None

    @app.get("/v1/stats")
    async def stats(http_request: Request):
        if stats_token and not _token_matches(http_request, stats_token, "X-Stats-Token"):
            raise HTTPException(401, "STATS_UNAUTHORIZED")
        extra: Dict[str, Any] = {
            "cache": service.cache.stats(),
            "rate_limiter_tracked_keys": service.rate_limiter.tracked_keys(),
            "lockdown_active": _lockdown_active(),
            "suspicious_subscribers": service.security.snapshot(),
        }
        circuit = getattr(service.ledger, "circuit", None)
        if circuit is not None:
            extra["ledger_circuit"] = circuit.snapshot()
        if service.journal is not None:
            extra["pending_reconciliations"] = len(await asyncio.to_thread(service.journal.pending))
        return service.stats.snapshot(extra=extra)

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": qg_version,
            "ledger": type(service.ledger).__name__,
            "lockdown_active": _lockdown_active(),
        }

    return app


def main():
    """
    Main entry point for the quota-gateway CLI.

    Usage:
        quota-gateway                    # Start on default port 8000
        quota-gateway --port 9000        # Start on custom port
        quota-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Quota Gateway - token-gated usage metering",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    quota-gateway                         Start gateway on 0.0.0.0:8000
    quota-gateway --port 9000             Start on custom port

Environment Variables:
    QG_LOG_LEVEL          Logging level (default: INFO)
    QG_LEDGER_MODE        sqlite|http|demo (default: sqlite)
    QG_LEDGER_DB_PATH     Path to SQLite ledger (default: quota_ledger.db)
    QG_LEDGER_URL         HTTP ledger base URL (QG_LEDGER_MODE=http)
    QG_CONFIG_FILE        Gateway configuration JSON
    QG_API_KEYS_JSON      API key -> subscriber id map
    QG_PROXY_HEADERS      If set (1/true), trust X-Forwarded-* headers
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    args = parser.parse_args()

    logging.basicConfig(
        level=(os.getenv("QG_LOG_LEVEL", "INFO") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    import uvicorn

    app = create_app()
    logger.info("Starting Quota Gateway on %s:%d", args.host, args.port)

    env_proxy = (os.environ.get("QG_PROXY_HEADERS", "") or "").strip().lower()
    proxy_headers = args.proxy_headers or env_proxy in ("1", "true", "yes")
    uvicorn.run(app, host=args.host, port=args.port, proxy_headers=proxy_headers)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
