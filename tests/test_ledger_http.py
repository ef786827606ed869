import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from quota_gateway.errors import (
    QG_E_INSUFFICIENT_QUOTA,
    QG_E_LEDGER_UNAVAILABLE,
    QG_E_NOT_FOUND,
    QuotaGatewayError,
)
from quota_gateway.ledger import HttpLedger

ADDR = "0x" + "cd" * 20


class _LedgerHandler(BaseHTTPRequestHandler):
    # Class-level behaviour, reset per test by the fixture.
    entitlement_status = 200
    usage_status = 200
    last_body = None
    last_auth = None

    def _send(self, status, doc):
        body = json.dumps(doc).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):  # noqa: N802
        _LedgerHandler.last_auth = self.headers.get("Authorization")
        if _LedgerHandler.entitlement_status != 200:
            self._send(_LedgerHandler.entitlement_status, {"error": "nope"})
            return
        self._send(200, {
            "tierId": "Lifetime Access",
            "expiresAt": "2099-01-01T00:00:00Z",
            "remainingQuota": 42,
            "sourceRecordId": "tok-7",
        })

    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length", "0") or "0")
        _LedgerHandler.last_body = json.loads(self.rfile.read(length).decode("utf-8"))
        if _LedgerHandler.usage_status != 200:
            self._send(_LedgerHandler.usage_status, {"error": "nope"})
            return
        self._send(200, {"remaining_quota": 40, "source_record_id": "tok-7"})

    def log_message(self, format, *args):  # noqa: A003
        return


@pytest.fixture
def ledger_server():
    _LedgerHandler.entitlement_status = 200
    _LedgerHandler.usage_status = 200
    _LedgerHandler.last_body = None
    _LedgerHandler.last_auth = None
    httpd = HTTPServer(("127.0.0.1", 0), _LedgerHandler)
    host, port = httpd.server_address
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        httpd.server_close()
        t.join(timeout=2)


def test_read_entitlement_parses_camel_case(ledger_server):
    ledger = HttpLedger(base_url=ledger_server, token="s3cret")
    ent = ledger.read_entitlement(ADDR.upper().replace("0X", "0x"))
    assert ent.subscriber_id == ADDR
    assert ent.tier_id == "Lifetime Access"
    assert ent.remaining_quota == 42
    assert ent.source_record_id == "tok-7"
    assert _LedgerHandler.last_auth == "Bearer s3cret"


def test_read_404_is_not_found(ledger_server):
    _LedgerHandler.entitlement_status = 404
    with pytest.raises(QuotaGatewayError) as ei:
        HttpLedger(base_url=ledger_server).read_entitlement(ADDR)
    assert ei.value.code == QG_E_NOT_FOUND


def test_read_500_is_unavailable_without_transport_text(ledger_server):
    _LedgerHandler.entitlement_status = 500
    with pytest.raises(QuotaGatewayError) as ei:
        HttpLedger(base_url=ledger_server).read_entitlement(ADDR)
    assert ei.value.code == QG_E_LEDGER_UNAVAILABLE
    assert ei.value.retryable is True
    assert "500" not in ei.value.message


def test_commit_posts_correlation_id(ledger_server):
    receipt = HttpLedger(base_url=ledger_server).commit_usage(ADDR, 2, "cid-9")
    assert receipt.remaining_quota == 40
    assert _LedgerHandler.last_body == {"subscriber_id": ADDR, "cost": 2, "correlation_id": "cid-9"}


@pytest.mark.parametrize(
    "status,code",
    [(409, QG_E_INSUFFICIENT_QUOTA), (404, QG_E_NOT_FOUND), (502, QG_E_LEDGER_UNAVAILABLE)],
)
def test_commit_status_mapping(ledger_server, status, code):
    _LedgerHandler.usage_status = status
    with pytest.raises(QuotaGatewayError) as ei:
        HttpLedger(base_url=ledger_server).commit_usage(ADDR, 1, "cid-1")
    assert ei.value.code == code


def test_connection_refused_is_unavailable():
    # Port 9 (discard) on localhost is not listening in test environments.
    with pytest.raises(QuotaGatewayError) as ei:
        HttpLedger(base_url="http://127.0.0.1:9", timeout_seconds=0.5).read_entitlement(ADDR)
    assert ei.value.code == QG_E_LEDGER_UNAVAILABLE
