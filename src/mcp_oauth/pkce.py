"""
PKCE (Proof Key for Code Exchange, RFC 7636).

The client invents a random code_verifier, sends
code_challenge = BASE64URL(SHA256(code_verifier)) with the authorize request,
and later proves possession by sending the verifier with the token request.
An intercepted code is useless without the verifier.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets

SUPPORTED_METHODS = ("S256", "plain")

# 43-128 characters from the unreserved set (RFC 7636 section 4.1).
_VERIFIER_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def is_valid_code_verifier(code_verifier: str | None) -> bool:
    return bool(code_verifier) and _VERIFIER_PATTERN.match(code_verifier) is not None


def is_valid_code_challenge(code_challenge: str | None) -> bool:
    return bool(code_challenge) and _VERIFIER_PATTERN.match(code_challenge) is not None


def s256_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_code_verifier(code_verifier: str, code_challenge: str, method: str) -> bool:
    """Check a verifier against the stored challenge, in constant time."""
    if method == "S256":
        expected = s256_challenge(code_verifier)
    elif method == "plain":
        expected = code_verifier
    else:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), code_challenge.encode("utf-8"))


def generate_pkce_pair() -> tuple[str, str]:
    """Return (code_verifier, S256 code_challenge). Used by clients and tests."""
    verifier = secrets.token_urlsafe(48)
    return verifier, s256_challenge(verifier)
