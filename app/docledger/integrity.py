from __future__ import annotations

import hashlib
import hmac

FINGERPRINT_LENGTH = 64  # sha256 hex


def content_fingerprint(data: bytes) -> str:
    """SHA-256 hex digest of the exact bytes given."""
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def is_fingerprint(value: str | None) -> bool:
    v = (value or "").strip().lower()
    return len(v) == FINGERPRINT_LENGTH and all(c in "0123456789abcdef" for c in v)


def fingerprint_matches(data: bytes, expected: str) -> bool:
    if not is_fingerprint(expected):
        return False
    return hmac.compare_digest(content_fingerprint(data), expected.strip().lower())
