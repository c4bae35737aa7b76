"""AuthSessionManager – PKCE login, coalesced refresh and logout.

The manager owns the session state machine::

    LOGGED_OUT --start_login--> AWAITING_CALLBACK
    AWAITING_CALLBACK --handle_callback--> AUTHENTICATED | LOGGED_OUT
    AUTHENTICATED --refresh--> REFRESHING --ok--> AUTHENTICATED
                                          --rejected--> LOGGED_OUT
    * --logout--> LOGGED_OUT

At most one refresh request is ever in flight.  Every caller that needs a
refresh (proactive lead window, a 401 on a request, the transport's
session-invalidated signal) awaits the same shared task.

Secrets (verifier, authorization code, tokens) are never logged in clear.
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from typing import Any, Awaitable, Callable, Final, NoReturn, TypeVar
from urllib.parse import SplitResult, parse_qs, urlencode, urlsplit

from fotolokashen_sync.auth.clock import Clock, default_clock
from fotolokashen_sync.auth.models import (
    DEFAULT_REFRESH_LEAD_SECONDS,
    Credential,
    PKCEPair,
    SessionState,
)
from fotolokashen_sync.auth.pkce import CHALLENGE_METHOD, generate_pkce_pair
from fotolokashen_sync.auth.store import TokenStore
from fotolokashen_sync.errors import (
    ApiError,
    AuthExpiredError,
    FotolokashenError,
    MissingAuthorizationCodeError,
    MissingCodeVerifierError,
    RefreshRaceLostError,
    TokenExchangeError,
    UnauthorizedError,
)
from fotolokashen_sync.transport import AuthenticatedTransport, SessionInvalidated
from fotolokashen_sync.utils.logging import mask_sensitive

_LOG = logging.getLogger("fotolokashen.auth.session")

T = TypeVar("T")
StateListener = Callable[[SessionState, SessionState], None]

LOGIN_PATH: Final[str] = "/login"
TOKEN_PATH: Final[str] = "/api/auth/oauth/token"
REVOKE_PATH: Final[str] = "/api/auth/oauth/revoke"

# Token endpoint answers that mean the refresh token is no longer usable.
_TERMINAL_REFRESH_STATUSES: Final[frozenset[int]] = frozenset({400, 401, 403})


def _first(query: dict[str, list[str]], key: str) -> str | None:
    values = query.get(key)
    return values[0] if values and values[0] else None


class AuthSessionManager:
    """Drive login, token refresh and logout for one signed-in user."""

    def __init__(
        self,
        transport: AuthenticatedTransport,
        store: TokenStore,
        *,
        backend_url: str,
        client_id: str,
        redirect_uri: str,
        scopes: str = "read write",
        clock: Clock = default_clock,
        refresh_lead_seconds: float = DEFAULT_REFRESH_LEAD_SECONDS,
        pkce_factory: Callable[[], PKCEPair] = generate_pkce_pair,
    ) -> None:
        self.transport = transport
        self.store = store
        self.backend_url = backend_url.rstrip("/")
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.clock = clock
        self.refresh_lead_seconds = refresh_lead_seconds
        self._pkce_factory = pkce_factory

        self._listeners: list[StateListener] = []
        self._refresh_task: asyncio.Task[Credential] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        # Bumped on logout so a refresh finishing afterwards is discarded.
        self._generation = 0
        # Access token minted by the latest refresh; a 401 for it is not refreshed again.
        self._last_refreshed_token: str | None = None
        self._state = self._state_from_store()

        transport.add_session_invalidated_listener(self._on_session_invalidated)

    # ------------------------------------------------------------------ #
    # State                                                              #
    # ------------------------------------------------------------------ #
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state in (SessionState.AUTHENTICATED, SessionState.REFRESHING)

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call *listener(old, new)* on every state transition."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _state_from_store(self) -> SessionState:
        if self.store.load() is not None:
            return SessionState.AUTHENTICATED
        if self.store.has_pending_login():
            return SessionState.AWAITING_CALLBACK
        return SessionState.LOGGED_OUT

    def _set_state(self, new: SessionState, *, notify_unchanged: bool = False) -> None:
        old = self._state
        if old is new and not notify_unchanged:
            return
        self._state = new
        _LOG.info("Session state %s -> %s", old.value, new.value)
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:  # noqa: BLE001 – listeners must not break the state machine
                _LOG.exception("Session state listener failed")

    # ------------------------------------------------------------------ #
    # Login                                                              #
    # ------------------------------------------------------------------ #
    def authorization_url(self, pair: PKCEPair) -> str:
        """Return the browser URL for *pair*; only the challenge is embedded."""
        query = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "code_challenge": pair.challenge,
            "code_challenge_method": CHALLENGE_METHOD,
            "scope": self.scopes,
            "response_type": "code",
        }
        return f"{self.backend_url}{LOGIN_PATH}?{urlencode(query)}"

    def start_login(
        self, open_browser: Callable[[str], Any] | None = webbrowser.open
    ) -> str:
        """Issue a new PKCE pair, hand the login URL to the browser and return it."""
        pair = self._pkce_factory()
        self.store.save_pending_login(pair)
        url = self.authorization_url(pair)
        self._set_state(SessionState.AWAITING_CALLBACK)
        if open_browser is not None:
            open_browser(url)
        _LOG.debug("Started login challenge=%s", mask_sensitive(pair.challenge, 6))
        return url

    async def handle_callback(self, callback_url: str) -> Credential:
        """Exchange the code carried by *callback_url* for a stored credential.

        The pending PKCE pair is consumed whatever the outcome.  Any failure
        leaves the manager logged out (or authenticated, when an earlier
        credential is still stored) and re-raises.
        """
        parts = urlsplit(callback_url)
        pair = self.store.consume_pending_login()
        try:
            if not self._is_redirect(parts):
                raise MissingAuthorizationCodeError(
                    "Callback does not target the registered redirect URI"
                )
            credential = await self._exchange_code(parse_qs(parts.query), pair)
        except BaseException:
            self._set_state(
                SessionState.AUTHENTICATED
                if self.store.load() is not None
                else SessionState.LOGGED_OUT
            )
            raise
        self._set_state(SessionState.AUTHENTICATED)
        _LOG.info("Signed in subject=%s", credential.subject_id)
        return credential

    def _is_redirect(self, parts: SplitResult) -> bool:
        expected = urlsplit(self.redirect_uri)
        return (
            parts.scheme.lower() == expected.scheme.lower()
            and parts.netloc.lower() == expected.netloc.lower()
            and parts.path.rstrip("/") == expected.path.rstrip("/")
        )

    async def _exchange_code(
        self, query: dict[str, list[str]], pair: PKCEPair | None
    ) -> Credential:
        provider_error = _first(query, "error")
        if provider_error:
            raise MissingAuthorizationCodeError(
                f"Authorization was not granted: {provider_error}"
            )
        code = _first(query, "code")
        if code is None:
            raise MissingAuthorizationCodeError()
        if pair is None:
            raise MissingCodeVerifierError()

        _LOG.debug("Exchanging authorization code=%s", mask_sensitive(code))
        try:
            payload = await self.transport.request(
                "POST",
                TOKEN_PATH,
                json={
                    "grant_type": "authorization_code",
                    "code": code,
                    "code_verifier": pair.verifier,
                    "client_id": self.client_id,
                    "redirect_uri": self.redirect_uri,
                },
                authenticated=False,
            )
        except (ApiError, UnauthorizedError) as exc:
            raise TokenExchangeError(f"Token endpoint rejected the code: {exc}") from exc

        try:
            credential = Credential.from_token_response(payload, clock=self.clock)
        except ValueError as exc:
            raise TokenExchangeError(str(exc)) from exc
        self.store.save(credential)
        return credential

    # ------------------------------------------------------------------ #
    # Token access & coalesced refresh                                   #
    # ------------------------------------------------------------------ #
    async def ensure_fresh_token(self) -> str:
        """Return a usable access token, refreshing first inside the lead window."""
        credential = self.store.load()
        if credential is None:
            raise AuthExpiredError("Not signed in")
        if credential.needs_refresh(
            clock=self.clock, lead_seconds=self.refresh_lead_seconds
        ):
            credential = await self.refresh()
        return credential.access_token

    async def refresh(self, rejected_token: str | None = None) -> Credential:
        """Refresh the credential, joining an in-flight refresh if there is one.

        When *rejected_token* is given and is no longer the stored token the
        session was already refreshed; the current credential is returned
        without a network call.
        """
        current = self.store.load()
        if current is None:
            raise AuthExpiredError("Not signed in")
        if rejected_token is not None and current.access_token != rejected_token:
            return current

        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(
                self._do_refresh(current, self._generation)
            )
            self._refresh_task = task

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise AuthExpiredError("Session ended while refreshing") from None
            raise
        except RefreshRaceLostError as exc:
            raise AuthExpiredError("Session ended while refreshing") from exc

    async def _do_refresh(self, current: Credential, generation: int) -> Credential:
        self._set_state(SessionState.REFRESHING)
        try:
            payload = await self.transport.request(
                "POST",
                TOKEN_PATH,
                json={
                    "grant_type": "refresh_token",
                    "refresh_token": current.refresh_token,
                    "client_id": self.client_id,
                },
                authenticated=False,
            )
        except UnauthorizedError:
            self._expire_session("refresh token rejected (401)")
        except ApiError as exc:
            if exc.status_code in _TERMINAL_REFRESH_STATUSES:
                self._expire_session(f"refresh token rejected ({exc.status_code})")
            self._restore_after_refresh(generation)
            raise
        except BaseException:
            # Offline or cancelled: the credential stays for a later attempt.
            self._restore_after_refresh(generation)
            raise

        if generation != self._generation:
            raise RefreshRaceLostError()
        try:
            refreshed = Credential.from_token_response(
                payload, clock=self.clock, previous=current
            )
        except ValueError as exc:
            self._expire_session(str(exc))
        try:
            self.store.save(refreshed)
            self._last_refreshed_token = refreshed.access_token
        finally:
            self._restore_after_refresh(generation)
        _LOG.info(
            "Refreshed access token for subject=%s (expires at %s)",
            refreshed.subject_id,
            int(refreshed.expires_at),
        )
        return refreshed

    def _restore_after_refresh(self, generation: int) -> None:
        if generation == self._generation and self._state is SessionState.REFRESHING:
            self._set_state(SessionState.AUTHENTICATED)

    def _expire_session(self, reason: str) -> NoReturn:
        _LOG.warning("Session expired: %s", reason)
        self._generation += 1
        self.store.clear()
        self._set_state(SessionState.LOGGED_OUT)
        raise AuthExpiredError(f"Please sign in again ({reason})")

    async def run_authenticated(self, call: Callable[[], Awaitable[T]]) -> T:
        """Await *call* with a fresh token; after a 401 refresh once and retry once."""
        token = await self.ensure_fresh_token()
        try:
            return await call()
        except UnauthorizedError:
            _LOG.info("Request unauthorized; refreshing and retrying once")
            await self.refresh(rejected_token=token)
            return await call()

    def _on_session_invalidated(self, event: SessionInvalidated) -> None:
        if event.rejected_token == self._last_refreshed_token:
            # The retry after the one allowed refresh was rejected too; the
            # caller sees the UnauthorizedError instead of another rotation.
            _LOG.warning("Freshly refreshed token rejected; not refreshing again")
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.refresh(rejected_token=event.rejected_token))
        self._background.add(task)
        task.add_done_callback(self._background_refresh_done)

    def _background_refresh_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, AuthExpiredError):
            _LOG.info("Background refresh ended the session")
        elif exc is not None:
            _LOG.warning("Background refresh failed: %s", exc)

    # ------------------------------------------------------------------ #
    # Logout                                                             #
    # ------------------------------------------------------------------ #
    async def logout(self) -> None:
        """Revoke (best effort) and clear local credentials unconditionally."""
        self._generation += 1
        self._last_refreshed_token = None
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None
        for task in list(self._background):
            task.cancel()

        try:
            try:
                refresh_token = self.store.get_refresh_token()
                if refresh_token:
                    await self.transport.request(
                        "POST",
                        REVOKE_PATH,
                        json={"token": refresh_token, "client_id": self.client_id},
                        authenticated=False,
                    )
            except FotolokashenError as exc:
                _LOG.info("Token revocation failed (%s); continuing logout", exc.code)
            self.store.clear()
            self.store.consume_pending_login()
        finally:
            # Listeners always hear about a logout, even when the manager was
            # built before the credential it just cleared was stored.
            self._set_state(SessionState.LOGGED_OUT, notify_unchanged=True)
        _LOG.info("Signed out")
