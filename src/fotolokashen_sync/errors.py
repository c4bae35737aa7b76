"""Exception types raised by the auth session and upload pipeline.

Only lightweight, **data-carrying** exceptions live here so that callers
(UI layers, the CLI, the retry queue) can tell "nothing happened" apart from
"partially happened" and render user-friendly messages.

Every exception exposes a stable ``code``, a ``retryable`` flag consulted by
the offline retry queue and a ``to_payload()`` method returning a
JSON-serialisable dict **without secrets**.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover
    from fotolokashen_sync.upload.models import UploadJob


class FotolokashenError(RuntimeError):
    """Base class for all errors raised by this package."""

    code: str = "error"
    retryable: bool = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable payload **without secrets**."""
        return {"error": self.code, "message": str(self)}


# --------------------------------------------------------------------------- #
# Authentication                                                              #
# --------------------------------------------------------------------------- #
class AuthExpiredError(FotolokashenError):
    """No valid refresh is possible; the user must log in again."""

    code = "auth_expired"


class RefreshRaceLostError(FotolokashenError):
    """A refresh finished after the session it belonged to was discarded."""

    code = "refresh_race_lost"


class UnauthorizedError(FotolokashenError):
    """An authenticated request was rejected with HTTP 401."""

    code = "unauthorized"


class MissingAuthorizationCodeError(FotolokashenError):
    """The OAuth callback did not carry an authorization code."""

    code = "missing_authorization_code"


class MissingCodeVerifierError(FotolokashenError):
    """No login is in progress, so there is no PKCE verifier to exchange."""

    code = "missing_code_verifier"


class TokenExchangeError(FotolokashenError):
    """The token endpoint refused or garbled the authorization-code exchange."""

    code = "token_exchange_failed"


class TokenStorageError(FotolokashenError):
    """The secure token storage could not be read or written."""

    code = "token_storage_failed"


# --------------------------------------------------------------------------- #
# Transport                                                                   #
# --------------------------------------------------------------------------- #
class NetworkUnavailableError(FotolokashenError):
    """The request could not reach the server (offline, DNS, timeout)."""

    code = "network_unavailable"
    retryable = True


class InvalidResponseError(FotolokashenError):
    """The server answered with a body that could not be decoded."""

    code = "invalid_response"


class ApiError(FotolokashenError):
    """The server answered with a non-success HTTP status."""

    code = "api_error"

    def __init__(
        self,
        status_code: int,
        message: str | None = None,
        *,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message or f"Unknown error ({status_code})")
        self.status_code: int = status_code
        self.error_code: str | None = error_code

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code in (408, 425, 429) or self.status_code >= 500

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["status_code"] = self.status_code
        if self.error_code:
            payload["error_code"] = self.error_code
        return payload


# --------------------------------------------------------------------------- #
# Upload pipeline                                                             #
# --------------------------------------------------------------------------- #
class CompressionFailedError(FotolokashenError):
    """The image could not be encoded."""

    code = "compression_failed"


class UploadValidationError(FotolokashenError):
    """The backend rejected the upload request as invalid."""

    code = "upload_validation_failed"

    def __init__(self, message: str | None = None, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code: int = status_code


class InvalidUploadResponseError(FotolokashenError):
    """The storage provider answered 200 but did not store the file."""

    code = "invalid_upload_response"

    def __init__(self, reason: str, *, status_code: int = 200) -> None:
        super().__init__(f"Invalid upload response: {reason}")
        self.reason: str = reason
        self.status_code: int = status_code


class StaleSignatureError(FotolokashenError):
    """Signed upload parameters expired or were already used."""

    code = "stale_signature"
    # A fresh request-upload step issues new parameters.
    retryable = True


class PartialUploadFailureError(FotolokashenError):
    """Photo metadata exists on the backend but the media never landed."""

    code = "partial_upload_failure"

    def __init__(
        self,
        *,
        photo_id: int | str,
        location_id: int | str,
        cause: BaseException,
        job: "UploadJob | None" = None,
    ) -> None:
        super().__init__(
            f"Photo {photo_id} was created for location {location_id} "
            f"but its media upload failed: {cause}"
        )
        self.photo_id = photo_id
        self.location_id = location_id
        self.cause: BaseException = cause
        self.job = job

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return bool(getattr(self.cause, "retryable", False))

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload.update(
            {
                "photo_id": self.photo_id,
                "location_id": self.location_id,
                "cause": getattr(self.cause, "code", type(self.cause).__name__),
            }
        )
        return payload


class RetryExhaustedError(FotolokashenError):
    """The offline queue gave up on a job after the retry bound."""

    code = "retry_exhausted"

    def __init__(self, job: "UploadJob", last_error: str | None = None) -> None:
        super().__init__(
            f"Upload {job.client_id[:8]} dropped after {job.retry_count} attempts"
            + (f": {last_error}" if last_error else "")
        )
        self.job = job

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload.update(
            {
                "client_id": self.job.client_id,
                "retry_count": self.job.retry_count,
                "photo_id": self.job.photo_id,
            }
        )
        return payload
