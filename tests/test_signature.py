"""
Tests for Kajabi webhook signature verification.
"""

import hashlib
import hmac

from elevate.ingest.signature import compute_signature, verify_signature

SECRET = "shh"
BODY = b'{"event_id":"evt1","tag":{"name":"Elevate-AI-1-Completed"}}'


class TestComputeSignature:
    def test_matches_hmac_sha256_hex(self):
        expected = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
        assert compute_signature(BODY, SECRET) == expected


class TestVerifySignature:
    """verify_signature accepts only an exact HMAC of the raw bytes."""

    def test_valid_signature(self):
        assert verify_signature(BODY, compute_signature(BODY, SECRET), SECRET) is True

    def test_sha256_prefix_and_uppercase_accepted(self):
        sig = "sha256=" + compute_signature(BODY, SECRET).upper()
        assert verify_signature(BODY, sig, SECRET) is True

    def test_wrong_secret_rejected(self):
        assert verify_signature(BODY, compute_signature(BODY, "other"), SECRET) is False

    def test_modified_body_rejected(self):
        """A single changed byte (even whitespace) invalidates the signature."""
        sig = compute_signature(BODY, SECRET)
        assert verify_signature(BODY + b" ", sig, SECRET) is False

    def test_missing_signature_rejected(self):
        assert verify_signature(BODY, None, SECRET) is False
        assert verify_signature(BODY, "", SECRET) is False

    def test_missing_secret_rejects_everything(self):
        """No configured secret means no request can authenticate."""
        assert verify_signature(BODY, compute_signature(BODY, ""), None) is False
        assert verify_signature(BODY, compute_signature(BODY, ""), "") is False

    def test_non_ascii_header_is_mismatch_not_error(self):
        assert verify_signature(BODY, "é" * 64, SECRET) is False
