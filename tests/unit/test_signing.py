"""
Unit tests for payload signing.
"""

import hashlib
import hmac

from webhook_relay.signing import canonicalize, sign, verify

SECRET = "shh"


class TestCanonicalize:
    """Tests for the canonical payload form."""

    def test_sorted_keys_and_compact_separators(self):
        payload = {"transactionId": "t1", "amount": 100, "merchantId": "m1", "currency": "USD"}

        assert canonicalize(payload) == (
            '{"amount":100,"currency":"USD","merchantId":"m1","transactionId":"t1"}'
        )

    def test_key_order_does_not_matter(self):
        a = {"merchantId": "m1", "amount": 100}
        b = {"amount": 100, "merchantId": "m1"}

        assert canonicalize(a) == canonicalize(b)


class TestSignVerify:
    """Tests for sign and verify."""

    def test_sign_is_hmac_sha256_hex(self):
        body = canonicalize({"merchantId": "m1"})
        expected = hmac.new(SECRET.encode(), body.encode(), hashlib.sha256).hexdigest()

        assert sign(body, SECRET) == expected
        assert len(sign(body, SECRET)) == 64

    def test_verify_accepts_own_signature(self):
        body = canonicalize({"merchantId": "m1", "amount": 100})

        assert verify(body, sign(body, SECRET), SECRET) is True

    def test_verify_rejects_altered_payload(self):
        body = canonicalize({"merchantId": "m1", "amount": 100})
        tag = sign(body, SECRET)
        altered = body.replace("100", "101")

        assert verify(altered, tag, SECRET) is False

    def test_verify_rejects_altered_tag(self):
        body = canonicalize({"merchantId": "m1"})
        tag = sign(body, SECRET)
        flipped = ("0" if tag[0] != "0" else "1") + tag[1:]

        assert verify(body, flipped, SECRET) is False

    def test_verify_rejects_wrong_secret(self):
        body = canonicalize({"merchantId": "m1"})

        assert verify(body, sign(body, SECRET), "other") is False

    def test_verify_rejects_malformed_tags(self):
        body = canonicalize({"merchantId": "m1"})

        assert verify(body, "", SECRET) is False
        assert verify(body, "not-hex", SECRET) is False
        assert verify(body, "é" * 64, SECRET) is False
        assert verify(body, None, SECRET) is False
