from __future__ import annotations

from consentgate.services.billing_events import build_billing_signature, verify_billing_signature


def test_signature_round_trip() -> None:
    body = b'{"type":"subscription.status_changed"}'
    signature = build_billing_signature("secret", body)
    assert verify_billing_signature("secret", body, signature)
    assert verify_billing_signature("secret", body, signature.upper())


def test_signature_rejects_tampering_and_missing_header() -> None:
    body = b'{"type":"subscription.status_changed"}'
    signature = build_billing_signature("secret", body)
    assert not verify_billing_signature("secret", body + b" ", signature)
    assert not verify_billing_signature("other", body, signature)
    assert not verify_billing_signature("secret", body, None)
