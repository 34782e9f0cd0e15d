"""
pkce.py: S256 code_verifier / code_challenge helpers (RFC 7636).

The verifier stays with the client until token exchange; only the
challenge travels with the authorization request. Checking that the two
correspond is the decision engine's job, not the gateway's.
"""

import base64
import hashlib
import hmac
import secrets
import string
from dataclasses import dataclass

VERIFIER_MIN_LENGTH = 43
VERIFIER_MAX_LENGTH = 128
VERIFIER_ENTROPY_BYTES = 48  # 64 chars once base64url-encoded

_UNRESERVED = frozenset(string.ascii_letters + string.digits + "-._~")


class InvalidInput(ValueError):
    """Raised for a verifier that RFC 7636 does not allow."""


@dataclass(frozen=True)
class PkcePair:
    verifier: str
    challenge: str


def generate_verifier() -> str:
    """Return a fresh URL-safe verifier carrying 384 bits of randomness."""
    return secrets.token_urlsafe(VERIFIER_ENTROPY_BYTES)


def derive_challenge(verifier: str) -> str:
    """BASE64URL(SHA256(verifier)) without padding."""
    if len(verifier) < VERIFIER_MIN_LENGTH:
        raise InvalidInput(
            f"code_verifier must be at least {VERIFIER_MIN_LENGTH} characters "
            f"(got {len(verifier)})"
        )
    if len(verifier) > VERIFIER_MAX_LENGTH:
        raise InvalidInput(
            f"code_verifier must be at most {VERIFIER_MAX_LENGTH} characters "
            f"(got {len(verifier)})"
        )
    if not _UNRESERVED.issuperset(verifier):
        raise InvalidInput("code_verifier contains characters outside [A-Za-z0-9-._~]")
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pair() -> PkcePair:
    verifier = generate_verifier()
    return PkcePair(verifier=verifier, challenge=derive_challenge(verifier))


def verify(verifier: str, challenge: str) -> bool:
    """Constant-time check that ``verifier`` hashes to ``challenge``."""
    try:
        expected = derive_challenge(verifier)
    except InvalidInput:
        return False
    return hmac.compare_digest(expected, challenge)
