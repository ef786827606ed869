import json

from quota_gateway.audit_log import TamperEvidentAuditLog
from quota_gateway.crypto import Ed25519KeyPair
from quota_gateway.reconciliation import ReconciliationJournal


def _anomaly(journal, cid, cost=1):
    return journal.append(
        correlation_id=cid,
        subscriber_id="0xaa",
        cost=cost,
        tier_id="basic",
        error_code="QG_E_LEDGER_UNAVAILABLE",
    )


def test_pending_until_resolved(tmp_path):
    journal = ReconciliationJournal(str(tmp_path / "nested" / "journal.jsonl"))
    _anomaly(journal, "c1")
    _anomaly(journal, "c2", cost=3)
    journal.mark_resolved("c1", note="debited manually")

    pending = journal.pending()
    assert [a.correlation_id for a in pending] == ["c2"]
    assert pending[0].cost == 3
    assert len(journal.load()) == 3


def test_survives_restart(tmp_path):
    path = str(tmp_path / "journal.jsonl")
    _anomaly(ReconciliationJournal(path), "c1")
    assert [a.correlation_id for a in ReconciliationJournal(path).pending()] == ["c1"]


def test_truncated_tail_is_ignored(tmp_path):
    path = tmp_path / "journal.jsonl"
    journal = ReconciliationJournal(str(path))
    _anomaly(journal, "c1")
    with open(path, "a", encoding="utf-8") as f:
        f.write('{"status":"pending","correlation_id":"c2","subscr')

    assert [a.correlation_id for a in journal.pending()] == ["c1"]


def test_missing_file_has_nothing_pending(tmp_path):
    assert ReconciliationJournal(str(tmp_path / "none.jsonl")).pending() == []


def _log(tmp_path, key):
    path = str(tmp_path / "audit.jsonl")
    log = TamperEvidentAuditLog(path, key)
    log.append_event({"type": "outcome", "correlation_id": "a", "state": "Completed"})
    log.append_event({"type": "outcome", "correlation_id": "b", "state": "Rejected"})
    return path


def test_audit_log_verifies(tmp_path):
    key = Ed25519KeyPair.generate("k1")
    path = _log(tmp_path, key)
    assert TamperEvidentAuditLog.verify_file(path, {"k1": key}) == (True, "OK", 2)


def test_audit_log_chain_continues_after_reopen(tmp_path):
    key = Ed25519KeyPair.generate("k1")
    path = _log(tmp_path, key)
    TamperEvidentAuditLog(path, key).append_event({"type": "outcome", "correlation_id": "c"})
    assert TamperEvidentAuditLog.verify_file(path, {"k1": key}) == (True, "OK", 3)


def test_audit_log_detects_edited_event(tmp_path):
    key = Ed25519KeyPair.generate("k1")
    path = _log(tmp_path, key)
    with open(path, "r", encoding="utf-8") as f:
        lines = f.read().splitlines()
    rec = json.loads(lines[0])
    rec["event"]["state"] = "Rejected"
    lines[0] = json.dumps(rec, sort_keys=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")

    ok, reason, count = TamperEvidentAuditLog.verify_file(path, {"k1": key})
    assert not ok
    assert reason == "EVENT_HASH_MISMATCH"
    assert count == 1


def test_audit_log_detects_dropped_entry(tmp_path):
    key = Ed25519KeyPair.generate("k1")
    path = _log(tmp_path, key)
    with open(path, "r", encoding="utf-8") as f:
        lines = f.read().splitlines()
    with open(path, "w", encoding="utf-8") as f:
        f.write(lines[1] + "\n")

    ok, reason, _ = TamperEvidentAuditLog.verify_file(path, {"k1": key})
    assert not ok
    assert reason == "CHAIN_BROKEN"


def test_audit_log_rejects_untrusted_key(tmp_path):
    key = Ed25519KeyPair.generate("k1")
    path = _log(tmp_path, key)
    other = Ed25519KeyPair.generate("k1")

    ok, reason, _ = TamperEvidentAuditLog.verify_file(path, {"k1": other})
    assert not ok
    assert reason == "INVALID_SIGNATURE"

    ok, reason, _ = TamperEvidentAuditLog.verify_file(path, {})
    assert reason == "UNKNOWN_KEY"


def test_audit_log_verifies_with_public_key_only(tmp_path):
    key = Ed25519KeyPair.generate("k1")
    path = _log(tmp_path, key)
    public = Ed25519KeyPair.from_public_key("k1", key.public_key_hex)
    assert TamperEvidentAuditLog.verify_file(path, {"k1": public})[0] is True
