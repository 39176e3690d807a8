"""
Tests for audit event signatures.
"""

from datetime import datetime, timezone

from credential_broker.utils.signature_utils import signing_payload, sign, verify

EVENT = {
    "id": "6a0c6d2e-7f39-4a53-9a0e-2b7c1f7f4d11",
    "event_type": "decrypt_success",
    "outcome": "success",
    "actor": "agent-a",
    "agent_id": "agent-a",
    "credential_id": "c-1",
    "scope": "gmail.readonly",
    "details": {"b": 2, "a": 1},
    "occurred_at": datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc),
}


class TestSignatures:
    """Test HMAC signing of audit event fields."""

    def test_payload_is_canonical(self):
        """Key order does not change the signed payload."""
        reordered = dict(reversed(list(EVENT.items())))
        reordered["details"] = {"a": 1, "b": 2}
        assert signing_payload(EVENT) == signing_payload(reordered)

    def test_unsigned_fields_ignored(self):
        """Fields outside the signed set do not affect the signature."""
        assert sign({**EVENT, "signature": "x"}, "k") == sign(EVENT, "k")

    def test_verify_roundtrip(self):
        """A signature verifies against the same content and key."""
        signature = sign(EVENT, "k")
        assert verify(EVENT, signature, "k")

    def test_tampering_detected(self):
        """Changing a signed field breaks verification."""
        signature = sign(EVENT, "k")
        assert not verify({**EVENT, "outcome": "denied"}, signature, "k")

    def test_wrong_key_or_missing_signature(self):
        """A different key or a missing signature fails."""
        signature = sign(EVENT, "k")
        assert not verify(EVENT, signature, "other")
        assert not verify(EVENT, None, "k")
