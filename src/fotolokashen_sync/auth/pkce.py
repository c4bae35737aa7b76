"""PKCE (Proof Key for Code Exchange) helpers.

RFC 7636 defines PKCE to protect public OAuth clients.  The mechanism relies on
a *code verifier* (random high-entropy string) generated at the beginning of
the flow and a *code challenge* derived from that verifier that is sent to the
authorization endpoint.  Only the challenge ever leaves the device before the
token exchange.

Only the S256 transformation is implemented because the fotolokashen
authorization server requires it.

This module intentionally performs **no logging** of verifiers or challenges.
"""

from __future__ import annotations

import base64
import secrets
from hashlib import sha256
from typing import Final

from fotolokashen_sync.auth.models import PKCEPair

# 32 random bytes -> 43 base64url characters, the RFC-7636 minimum length.
_VERIFIER_BYTES: Final[int] = 32
# 96 random bytes -> 128 characters, the RFC-7636 maximum length.
_MAX_VERIFIER_BYTES: Final[int] = 96

CHALLENGE_METHOD: Final[str] = "S256"


def _b64url(data: bytes) -> str:
    """Base64-URL encode *without* padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_code_verifier(num_bytes: int = _VERIFIER_BYTES) -> str:
    """Generate a high-entropy code verifier.

    Parameters
    ----------
    num_bytes:
        Number of random bytes drawn from the system CSPRNG (32-96), giving a
        verifier of 43-128 characters.

    Returns
    -------
    str
        The base64url-encoded verifier without padding.
    """
    if not _VERIFIER_BYTES <= num_bytes <= _MAX_VERIFIER_BYTES:
        raise ValueError("code verifier must be built from 32-96 random bytes")
    return _b64url(secrets.token_bytes(num_bytes))


def code_challenge_s256(verifier: str) -> str:
    """Compute the *S256* PKCE code challenge for a given verifier.

    Parameters
    ----------
    verifier:
        The code verifier string.

    Returns
    -------
    str
        Base64url-encoded SHA-256 hash without padding.
    """
    return _b64url(sha256(verifier.encode("ascii")).digest())


def generate_pkce_pair() -> PKCEPair:
    """Return a fresh verifier together with its S256 challenge."""
    verifier = generate_code_verifier()
    return PKCEPair(verifier=verifier, challenge=code_challenge_s256(verifier))
