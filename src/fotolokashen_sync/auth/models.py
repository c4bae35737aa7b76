"""Typed, immutable records used by the auth session logic."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Final, Mapping

from fotolokashen_sync.auth.clock import Clock, default_clock

# Refresh proactively when the access token expires within five minutes.
DEFAULT_REFRESH_LEAD_SECONDS: Final[int] = 300


class SessionState(str, enum.Enum):
    """Lifecycle states of :class:`~fotolokashen_sync.auth.session.AuthSessionManager`."""

    LOGGED_OUT = "logged_out"
    AWAITING_CALLBACK = "awaiting_callback"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


@dataclass(frozen=True, slots=True)
class PKCEPair:
    """Verifier held by the client plus the challenge sent to the browser."""

    verifier: str = field(repr=False)
    challenge: str = field(repr=False)

    @classmethod
    def from_verifier(cls, verifier: str) -> "PKCEPair":
        """Build a pair whose challenge is derived from *verifier*."""
        from fotolokashen_sync.auth.pkce import code_challenge_s256

        return cls(verifier=verifier, challenge=code_challenge_s256(verifier))


@dataclass(frozen=True, slots=True)
class Credential:
    """Snapshot of the OAuth access/refresh token pair for the signed-in user."""

    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_at: float
    subject_id: str
    token_type: str = "Bearer"
    scope: str = ""

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        """Return *True* once the access token is past its expiry."""
        return clock() >= self.expires_at

    def needs_refresh(
        self,
        *,
        clock: Clock = default_clock,
        lead_seconds: float = DEFAULT_REFRESH_LEAD_SECONDS,
    ) -> bool:
        """Return *True* when ``now + lead_seconds`` reached ``expires_at``."""
        return clock() + lead_seconds >= self.expires_at

    @classmethod
    def from_token_response(
        cls,
        payload: Mapping[str, Any],
        *,
        clock: Clock = default_clock,
        previous: "Credential | None" = None,
    ) -> "Credential":
        """Build a credential from a token-endpoint JSON response.

        Refresh responses may omit ``refresh_token`` and ``user``; the values
        of *previous* are kept in that case.

        Raises
        ------
        ValueError
            If the response lacks ``access_token`` or a usable refresh token.
        """
        access_token = payload.get("access_token")
        if not access_token:
            raise ValueError("token response missing access_token")

        refresh_token = payload.get("refresh_token") or (
            previous.refresh_token if previous else None
        )
        if not refresh_token:
            raise ValueError("token response missing refresh_token")

        user = payload.get("user") or {}
        subject = user.get("id") if isinstance(user, Mapping) else None
        if subject is None:
            subject = previous.subject_id if previous else ""

        try:
            expires_in = int(payload.get("expires_in", 3600))
        except (TypeError, ValueError):
            raise ValueError(
                f"token response has invalid expires_in: {payload.get('expires_in')!r}"
            ) from None
        return cls(
            access_token=str(access_token),
            refresh_token=str(refresh_token),
            expires_at=clock() + expires_in,
            subject_id=str(subject),
            token_type=str(payload.get("token_type") or "Bearer"),
            scope=str(payload.get("scope") or (previous.scope if previous else "")),
        )
