"""qg_verify: Offline verifier for quota gateway artifacts.

Checks artifacts without trusting the running gateway:

  receipt    receipt JSON vs. the response (and optionally request) text
  audit-log  hash chain and Ed25519 signatures of the signed audit log
  reconcile  commit anomalies still awaiting reconciliation

Trusted keys for `audit-log` are a JSON object {"key_id": "<public_key_hex>"}.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from quota_gateway.audit_log import TamperEvidentAuditLog
from quota_gateway.crypto import Ed25519KeyPair
from quota_gateway.receipts import Receipt, ReceiptGenerator
from quota_gateway.reconciliation import ReconciliationJournal


@dataclass
class VerifyMessage:
    ok: bool
    code: str
    detail: str


def _read_text(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def verify_receipt_file(
    receipt_path: str,
    response_path: str,
    payload_path: Optional[str] = None,
) -> Tuple[bool, List[VerifyMessage]]:
    msgs: List[VerifyMessage] = []
    try:
        receipt = Receipt.from_json(_read_text(receipt_path))
    except (OSError, KeyError, TypeError, ValueError) as e:
        return False, [VerifyMessage(False, "RECEIPT_UNREADABLE", f"{type(e).__name__}: {e}")]

    response = _read_text(response_path)
    problems = ReceiptGenerator.problems(receipt, response)
    if problems:
        msgs.extend(VerifyMessage(False, p, receipt.correlation_id) for p in problems)
    else:
        msgs.append(VerifyMessage(True, "RECEIPT_OK", f"{receipt.correlation_id} cost={receipt.cost}"))

    if payload_path is not None:
        if ReceiptGenerator.verify_payload(receipt, _read_text(payload_path)):
            msgs.append(VerifyMessage(True, "PAYLOAD_OK", receipt.payload_digest))
        else:
            msgs.append(VerifyMessage(False, "PAYLOAD_DIGEST_MISMATCH", receipt.payload_digest))

    return all(m.ok for m in msgs), msgs


def load_trusted_keys(path: Optional[str]) -> Dict[str, Ed25519KeyPair]:
    if not path:
        return {}
    data = json.loads(_read_text(path))
    if not isinstance(data, dict):
        raise ValueError("trusted keys file must contain a JSON object")
    return {str(k): Ed25519KeyPair.from_public_key(str(k), str(v)) for k, v in data.items()}


def verify_audit_log(path: str, trusted_keys_path: Optional[str] = None) -> Tuple[bool, str, int]:
    return TamperEvidentAuditLog.verify_file(path, load_trusted_keys(trusted_keys_path))


def _print_messages(msgs: List[VerifyMessage]) -> None:
    for m in msgs:
        mark = "✓" if m.ok else "✗"
        print(f"{mark} {m.code}: {m.detail}")


def _emit_json(
    ok: bool,
    command: str,
    messages: Optional[List[VerifyMessage]] = None,
    *,
    extra: Optional[Dict[str, Any]] = None,
    pretty: bool = False,
) -> int:
    """Emit a machine-readable JSON report and return an exit code."""
    payload: Dict[str, Any] = {"ok": bool(ok), "command": command}
    if extra:
        payload.update(extra)
    if messages is not None:
        payload["messages"] = [
            {"ok": bool(m.ok), "code": str(m.code), "detail": str(m.detail)} for m in messages
        ]

    if pretty:
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        print(json.dumps(payload, separators=(",", ":"), sort_keys=True))

    return 0 if ok else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="qg-verify", description="Offline verifier for quota gateway artifacts")
    parser.add_argument(
        "--json",
        dest="json_out",
        action="store_true",
        help="Emit machine-readable JSON output instead of human text",
    )
    parser.add_argument(
        "--pretty",
        dest="json_pretty",
        action="store_true",
        help="Pretty-print JSON output (only with --json)",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_rcpt = sub.add_parser("receipt", help="Verify a receipt against a response")
    p_rcpt.add_argument("receipt", help="Path to receipt JSON")
    p_rcpt.add_argument("response", help="Path to the response text the receipt claims")
    p_rcpt.add_argument("--payload", default=None, help="Path to the request payload text (optional)")

    p_log = sub.add_parser("audit-log", help="Verify a tamper-evident audit log file")
    p_log.add_argument("path", help="Path to audit log JSONL")
    p_log.add_argument("--trusted-keys", help="Path to trusted keys JSON", default=None)

    p_rec = sub.add_parser("reconcile", help="List commit anomalies awaiting reconciliation")
    p_rec.add_argument("path", help="Path to reconciliation journal JSONL")

    args = parser.parse_args(argv)

    if args.cmd == "receipt":
        ok, msgs = verify_receipt_file(args.receipt, args.response, args.payload)
        if args.json_out:
            return _emit_json(ok, "receipt", msgs, extra={"receipt": args.receipt}, pretty=args.json_pretty)
        _print_messages(msgs)
        return 0 if ok else 1

    if args.cmd == "audit-log":
        ok, reason, count = verify_audit_log(args.path, args.trusted_keys)
        if args.json_out:
            msgs = [VerifyMessage(ok, "AUDIT_LOG_OK" if ok else "AUDIT_LOG_FAIL", f"{reason} (records={count})")]
            return _emit_json(ok, "audit-log", msgs, extra={"path": args.path, "records": count},
                              pretty=args.json_pretty)
        if ok:
            print(f"✓ AUDIT_LOG_OK: {reason} (records={count})")
            return 0
        print(f"✗ AUDIT_LOG_FAIL: {reason} (records={count})")
        return 1

    if args.cmd == "reconcile":
        pending = ReconciliationJournal(args.path).pending()
        ok = not pending
        msgs = [
            VerifyMessage(False, "UNRECONCILED", f"{a.correlation_id} subscriber={a.subscriber_id} cost={a.cost} code={a.error_code}")
            for a in pending
        ]
        if args.json_out:
            return _emit_json(ok, "reconcile", msgs, extra={"path": args.path, "pending": len(pending)},
                              pretty=args.json_pretty)
        if ok:
            print("✓ RECONCILED: no pending anomalies")
            return 0
        _print_messages(msgs)
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
