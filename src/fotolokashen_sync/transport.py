"""Authenticated HTTP transport shared by the auth and upload layers.

The transport only *sends* requests.  It reads the bearer token from the
:class:`~fotolokashen_sync.auth.store.TokenStore` on every call, never caches
or mutates it, and reports a rejected token through an explicit listener
channel instead of refreshing on its own.  Deciding whether to refresh and
whether to retry belongs to
:class:`~fotolokashen_sync.auth.session.AuthSessionManager`.

Status mapping
--------------
* 2xx            – decoded JSON object (empty body → ``{}``)
* 401            – :class:`UnauthorizedError` (+ one ``SessionInvalidated`` event per token)
* anything else  – :class:`ApiError` carrying the server's ``error``/``code``
* no response    – :class:`NetworkUnavailableError`
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import httpx

from fotolokashen_sync.auth.store import TokenStore
from fotolokashen_sync.errors import (
    ApiError,
    AuthExpiredError,
    InvalidResponseError,
    NetworkUnavailableError,
    UnauthorizedError,
)

_LOG = logging.getLogger("fotolokashen.transport")

DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True, slots=True)
class SessionInvalidated:
    """Emitted when the backend answers 401 to an authenticated call."""

    rejected_token: str = field(repr=False)
    url: str


SessionInvalidatedListener = Callable[[SessionInvalidated], None]


def _error_details(response: httpx.Response) -> tuple[str | None, str | None]:
    """Return ``(message, code)`` from an ``{"error": ..., "code": ...}`` body."""
    try:
        body = response.json()
    except ValueError:
        return None, None
    if not isinstance(body, Mapping):
        return None, None
    message = body.get("error") or body.get("message")
    code = body.get("code")
    return (
        str(message) if isinstance(message, str) else None,
        str(code) if code is not None else None,
    )


class AuthenticatedTransport:
    """Thin wrapper around :class:`httpx.AsyncClient` with bearer-token auth."""

    def __init__(
        self,
        store: TokenStore,
        *,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.timeout)
        self._listeners: list[SessionInvalidatedListener] = []
        self._invalidated_tokens: set[str] = set()

    # ------------------------------------------------------------------ #
    # Listener channel                                                   #
    # ------------------------------------------------------------------ #
    def add_session_invalidated_listener(
        self, listener: SessionInvalidatedListener
    ) -> Callable[[], None]:
        """Register *listener*; the returned callable unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit_invalidated(self, token: str, url: str) -> None:
        if token in self._invalidated_tokens:
            return
        self._invalidated_tokens.add(token)
        event = SessionInvalidated(rejected_token=token, url=url)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001 – one broken listener must not starve the rest
                _LOG.exception("Session-invalidated listener failed")

    # ------------------------------------------------------------------ #
    # Requests                                                           #
    # ------------------------------------------------------------------ #
    def url_for(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return f"{self.base_url}/{path_or_url.lstrip('/')}"

    async def request(
        self,
        method: str,
        path_or_url: str,
        *,
        json: Any = None,
        data: Mapping[str, Any] | None = None,
        files: Mapping[str, Any] | None = None,
        authenticated: bool = True,
    ) -> dict[str, Any]:
        """Send a request and return the decoded JSON object body."""
        url = self.url_for(path_or_url)
        headers = {"Accept": "application/json"}
        token: str | None = None
        if authenticated:
            token = self.store.get_access_token()
            if not token:
                raise AuthExpiredError("Not signed in")
            headers["Authorization"] = f"Bearer {token}"

        _LOG.debug("%s %s", method, url)
        try:
            response = await self.client.request(
                method,
                url,
                json=json,
                data=data,
                files=files,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise NetworkUnavailableError(f"{method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise NetworkUnavailableError(f"{method} {url} failed: {exc}") from exc

        return self._interpret(response, token, url)

    def _interpret(
        self, response: httpx.Response, token: str | None, url: str
    ) -> dict[str, Any]:
        status = response.status_code
        if 200 <= status < 300:
            if not response.content:
                return {}
            try:
                body = response.json()
            except ValueError as exc:
                raise InvalidResponseError(f"Undecodable response from {url}") from exc
            if not isinstance(body, dict):
                raise InvalidResponseError(f"Expected a JSON object from {url}")
            return body

        if status == 401:
            if token is not None:
                self._emit_invalidated(token, url)
            raise UnauthorizedError()

        message, code = _error_details(response)
        _LOG.info("Request to %s failed with HTTP %s (%s)", url, status, code or "-")
        raise ApiError(status, message, error_code=code)

    async def post_multipart(
        self,
        url: str,
        fields: Mapping[str, str],
        file: tuple[str, bytes, str],
    ) -> tuple[int, bytes]:
        """POST a multipart form without auth; the raw status/body is returned.

        Used for the storage-provider step whose success criteria differ from
        the backend's, so no status interpretation happens here.
        """
        try:
            response = await self.client.post(
                url, data=dict(fields), files={"file": file}, timeout=self.timeout
            )
        except httpx.TimeoutException as exc:
            raise NetworkUnavailableError(f"Upload to {url} timed out") from exc
        except httpx.TransportError as exc:
            raise NetworkUnavailableError(f"Upload to {url} failed: {exc}") from exc
        return response.status_code, response.content

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
