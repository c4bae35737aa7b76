"""Authentication core package.

Sub-modules
-----------
clock
    Test-friendly time abstraction.
pkce
    Proof-Key for Code Exchange helpers.
models
    Immutable credential / PKCE records and the session states.
store
    Encrypted token persistence.
session
    Login / refresh / logout state machine (import it directly; it depends on
    :mod:`fotolokashen_sync.transport`, which depends on this package).
"""

from __future__ import annotations

from .clock import Clock, default_clock  # noqa: F401
from .pkce import code_challenge_s256, generate_code_verifier, generate_pkce_pair  # noqa: F401
from .models import Credential, PKCEPair, SessionState  # noqa: F401
from .store import DiskTokenStore, MemoryTokenStore, TokenStore  # noqa: F401

__all__ = [
    # clock
    "Clock",
    "default_clock",
    # pkce
    "generate_code_verifier",
    "code_challenge_s256",
    "generate_pkce_pair",
    # models
    "Credential",
    "PKCEPair",
    "SessionState",
    # store
    "TokenStore",
    "DiskTokenStore",
    "MemoryTokenStore",
]
