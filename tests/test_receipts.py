from dataclasses import replace
from datetime import datetime, timezone

from quota_gateway.models import AccessRequest, PricedRequest
from quota_gateway.receipts import Receipt, ReceiptGenerator, decode_attestation, encode_attestation


def _fixed_clock():
    return datetime(2026, 1, 13, 12, 0, tzinfo=timezone.utc)


def _issue(content="answer text"):
    priced = PricedRequest(
        request=AccessRequest(subscriber_id="0xabc", payload="defi yield?", correlation_id="cid-1"),
        tier_id="premium",
        cost=2,
    )
    return ReceiptGenerator(clock=_fixed_clock).issue(priced, content)


def test_receipt_verifies_original_response():
    r = _issue()
    assert ReceiptGenerator.verify(r, "answer text")
    assert ReceiptGenerator.verify_payload(r, "defi yield?")
    assert ReceiptGenerator.problems(r, "answer text") == []


def test_substituted_response_fails():
    r = _issue()
    assert not ReceiptGenerator.verify(r, "answer text!")
    assert ReceiptGenerator.problems(r, "other") == ["RESPONSE_DIGEST_MISMATCH"]


def test_edited_fields_break_attestation_binding():
    r = _issue()
    tampered = replace(r, cost=1)
    assert not tampered.is_self_consistent()
    assert not ReceiptGenerator.verify(tampered, "answer text")
    assert "ATTESTATION_FIELD_MISMATCH" in ReceiptGenerator.problems(tampered)


def test_rewritten_response_digest_is_detected():
    # Swapping in the digest of a different response still fails: the
    # attestation body carries the original digest.
    forged_source = _issue("forged")
    r = replace(_issue(), response_digest=forged_source.response_digest)
    assert not ReceiptGenerator.verify(r, "forged")


def test_attestation_is_deterministic_and_decodable():
    a, b = _issue(), _issue()
    assert a.attestation == b.attestation
    body = decode_attestation(a.attestation)
    assert body["cid"] == "cid-1"
    assert body["sub"] == "0xabc"
    assert body["cost"] == 2


def test_garbage_attestation_is_rejected():
    r = replace(_issue(), attestation="qgr1.not-base64!.deadbeef")
    assert decode_attestation(r.attestation) is None
    assert ReceiptGenerator.problems(r)[0] == "ATTESTATION_INVALID"


def test_json_exchange_preserves_validity():
    r = _issue()
    restored = Receipt.from_json(r.to_json())
    assert restored == r
    assert ReceiptGenerator.verify(restored, "answer text")


def test_non_ascii_binding_is_rejected_not_raised():
    r = _issue()
    head, body, _ = r.attestation.split(".")
    forged = replace(r, attestation=f"{head}.{body}.é")
    assert decode_attestation(forged.attestation) is None
    assert not ReceiptGenerator.verify(forged, "answer text")
    assert ReceiptGenerator.problems(forged, "answer text") == ["ATTESTATION_INVALID"]


def test_self_consistent_receipt_with_non_ascii_digest_fails_verification():
    body = {"cid": "cid-9", "sub": "0xabc", "pd": "ü", "rd": "é", "cost": 1, "iat": "2026-01-13T12:00:00+00:00"}
    forged = Receipt(
        correlation_id="cid-9",
        subscriber_id="0xabc",
        payload_digest="ü",
        response_digest="é",
        cost=1,
        issued_at=body["iat"],
        attestation=encode_attestation(body),
    )
    assert forged.is_self_consistent()
    assert not ReceiptGenerator.verify(forged, "resp")
    assert not ReceiptGenerator.verify_payload(forged, "q")
    assert ReceiptGenerator.problems(forged, "resp") == ["RESPONSE_DIGEST_MISMATCH"]
