"""
Webhook payload signing.

Signatures are HMAC-SHA256 hex digests over the canonical JSON form of the
payload. The canonical form is also the exact request body, so a receiver can
verify against the raw bytes it got.
"""

import hashlib
import hmac
import json
from typing import Any


def canonicalize(payload: dict[str, Any]) -> str:
    """Deterministic JSON: sorted keys, no insignificant whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sign(canonical_payload: str, secret: str) -> str:
    """
    Compute the signature tag for a canonical payload.

    Args:
        canonical_payload: Output of canonicalize().
        secret: Shared signing secret.

    Returns:
        Lowercase hex HMAC-SHA256 digest.
    """
    return hmac.new(
        secret.encode("utf-8"),
        canonical_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify(canonical_payload: str, tag: str, secret: str) -> bool:
    """
    Check a signature tag in constant time.

    Returns:
        True if the tag matches; False for any mismatch, including malformed tags.
    """
    if not isinstance(tag, str):
        return False
    expected = sign(canonical_payload, secret)
    try:
        return hmac.compare_digest(expected.encode("ascii"), tag.encode("ascii"))
    except UnicodeEncodeError:
        return False
