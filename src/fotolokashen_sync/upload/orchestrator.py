"""UploadOrchestrator – the three-step signed upload protocol.

Step 1  ``POST /api/locations/{id}/photos/request-upload``
        creates a placeholder photo record and returns single-use signed
        parameters for the storage provider.
Step 2  multipart ``POST`` straight to the storage provider.  A 200 answer
        is only a success when it names the stored file (``fileId``/``url``).
Step 3  ``POST /api/locations/{id}/photos/{photoId}/confirm`` attaches the
        stored file to the placeholder.

Steps of one job run strictly in sequence.  Once Step 1 succeeded every
failure is reported as :class:`PartialUploadFailureError` so callers can tell
"nothing happened" apart from "a placeholder exists without media".
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Final, TypeVar

from cachetools import TTLCache

from fotolokashen_sync.auth.clock import Clock, default_clock, iso8601
from fotolokashen_sync.auth.session import AuthSessionManager
from fotolokashen_sync.errors import (
    ApiError,
    FotolokashenError,
    InvalidUploadResponseError,
    PartialUploadFailureError,
    StaleSignatureError,
    UploadValidationError,
)
from fotolokashen_sync.media.compressor import (
    CompressionResult,
    CompressionSettings,
    ImageCompressor,
)
from fotolokashen_sync.transport import AuthenticatedTransport
from fotolokashen_sync.upload.models import (
    JPEG_MIME_TYPE,
    ConfirmedPhoto,
    ProviderUploadMalformed,
    ProviderUploadStored,
    SignedUploadParams,
    UploadJob,
    parse_provider_response,
)
from fotolokashen_sync.utils.logging import get_context_logger

_LOG = logging.getLogger("fotolokashen.upload.orchestrator")

T = TypeVar("T")
CheckpointCallback = Callable[[UploadJob], None]

DEFAULT_UPLOAD_ENDPOINT: Final[str] = "https://upload.imagekit.io/api/v1/files/upload"


def _provider_message(body: bytes) -> str | None:
    text = body[:200].decode("utf-8", errors="replace").strip()
    return text or None


class UploadOrchestrator:
    """Move one :class:`UploadJob` through compression and Steps 1–3."""

    def __init__(
        self,
        transport: AuthenticatedTransport,
        auth: AuthSessionManager,
        *,
        upload_endpoint: str = DEFAULT_UPLOAD_ENDPOINT,
        compression: CompressionSettings | None = None,
        clock: Clock = default_clock,
        step_retries: int = 2,
        retry_backoff: float = 0.5,
        confirmed_ttl: float = 3600,
    ) -> None:
        self.transport = transport
        self.auth = auth
        self.upload_endpoint = upload_endpoint
        self.compressor = ImageCompressor(compression)
        self.clock = clock
        self.step_retries = step_retries
        self.retry_backoff = retry_backoff
        self._consumed_tokens: set[str] = set()
        self._confirmed: TTLCache = TTLCache(maxsize=256, ttl=confirmed_ttl, timer=clock)

    # ------------------------------------------------------------------ #
    # Helpers                                                            #
    # ------------------------------------------------------------------ #
    async def _with_retries(self, step: str, call: Callable[[], Awaitable[T]]) -> T:
        """Retry transient failures of one step with linear backoff."""
        attempt = 0
        while True:
            try:
                return await call()
            except StaleSignatureError:
                raise
            except FotolokashenError as exc:
                if not exc.retryable or attempt >= self.step_retries:
                    raise
                attempt += 1
                _LOG.info("%s failed (%s); retry %d/%d", step, exc.code, attempt, self.step_retries)
                await asyncio.sleep(self.retry_backoff * attempt)

    async def _backend_post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self.auth.run_authenticated(
            lambda: self.transport.request("POST", path, json=body)
        )

    # ------------------------------------------------------------------ #
    # Step 1                                                             #
    # ------------------------------------------------------------------ #
    async def request_upload(
        self, job: UploadJob, compressed: CompressionResult
    ) -> SignedUploadParams:
        """Create the placeholder photo and obtain signed provider params."""
        width, height = compressed.pixel_size
        body = {
            "filename": job.filename,
            "mimeType": JPEG_MIME_TYPE,
            "size": compressed.size,
            "width": width,
            "height": height,
            "capturedAt": iso8601(job.captured_at),
            "gpsLatitude": job.gps_latitude,
            "gpsLongitude": job.gps_longitude,
            "gpsAltitude": job.gps_altitude,
            "gpsAccuracy": job.gps_accuracy,
        }
        path = f"/api/locations/{job.location_id}/photos/request-upload"
        try:
            payload = await self._with_retries(
                "request-upload", lambda: self._backend_post(path, body)
            )
        except ApiError as exc:
            if 400 <= exc.status_code < 500 and not exc.retryable:
                raise UploadValidationError(str(exc), status_code=exc.status_code) from exc
            raise
        return SignedUploadParams.from_response(payload)

    # ------------------------------------------------------------------ #
    # Step 2                                                             #
    # ------------------------------------------------------------------ #
    async def direct_upload(
        self, params: SignedUploadParams, data: bytes
    ) -> ProviderUploadStored:
        """Upload *data* to the storage provider with single-use *params*."""
        if params.upload_token in self._consumed_tokens:
            raise StaleSignatureError("Signed upload parameters were already used")

        fields = {
            "publicKey": params.public_key,
            "signature": params.signature,
            "expire": str(int(params.expire)),
            "token": params.upload_token,
            "fileName": params.file_name,
            "folder": params.clean_folder,
        }

        async def _send() -> tuple[int, bytes]:
            # Re-sending is only safe while no response arrived and the
            # signature window is still open.
            if params.is_expired(clock=self.clock):
                raise StaleSignatureError("Signed upload parameters expired")
            return await self.transport.post_multipart(
                self.upload_endpoint, fields, (params.file_name, data, JPEG_MIME_TYPE)
            )

        status, body = await self._with_retries("provider upload", _send)
        self._consumed_tokens.add(params.upload_token)

        if status != 200:
            raise ApiError(status, _provider_message(body))
        result = parse_provider_response(status, body)
        if isinstance(result, ProviderUploadMalformed):
            _LOG.warning(
                "Provider answered %s without a stored file: %s (%r)",
                result.status_code,
                result.reason,
                result.body_excerpt,
            )
            raise InvalidUploadResponseError(result.reason, status_code=result.status_code)
        return result

    # ------------------------------------------------------------------ #
    # Step 3                                                             #
    # ------------------------------------------------------------------ #
    async def confirm_upload(
        self,
        job: UploadJob,
        photo_id: int | str,
        stored: ProviderUploadStored,
        *,
        file_size: int | None = None,
    ) -> ConfirmedPhoto:
        """Attach the stored file to the placeholder photo (idempotent locally)."""
        cached = self._confirmed.get(photo_id)
        if cached is not None:
            return cached

        path = f"/api/locations/{job.location_id}/photos/{photo_id}/confirm"
        body = {"imagekitFileId": stored.file_id, "imagekitUrl": stored.url}
        payload = await self._with_retries("confirm", lambda: self._backend_post(path, body))
        photo = ConfirmedPhoto.from_response(
            payload,
            location_id=job.location_id,
            file_size=file_size or stored.size or 0,
        )
        self._confirmed[photo_id] = photo
        return photo

    # ------------------------------------------------------------------ #
    # Whole job                                                          #
    # ------------------------------------------------------------------ #
    async def upload(
        self, job: UploadJob, *, on_checkpoint: CheckpointCallback | None = None
    ) -> ConfirmedPhoto:
        """Run compression and Steps 1–3, resuming from the job's checkpoints.

        *on_checkpoint* receives the job each time a checkpoint is reached so
        it can be persisted before the next step starts.
        """
        log = get_context_logger(
            "fotolokashen.upload.orchestrator",
            client_id=job.client_id,
            location_id=job.location_id,
        )

        def _checkpoint(updated: UploadJob) -> UploadJob:
            if on_checkpoint is not None:
                on_checkpoint(updated)
            return updated

        file_size: int | None = None
        photo_id = job.photo_id
        if job.media_stored and photo_id is not None:
            log.info("Media already stored for photo %s; confirming only", photo_id)
            stored = ProviderUploadStored(file_id=job.file_id or "", url=job.file_url or "")
        else:
            compressed = self.compressor.compress_with_metadata(job.image_bytes)
            log.debug(
                "Compressed to %d bytes at quality %.2f", compressed.size, compressed.quality
            )
            if job.photo_id is not None:
                log.info("Placeholder %s has no media; requesting new parameters", job.photo_id)
            params = await self.request_upload(job, compressed)
            photo_id = params.photo_id
            job = _checkpoint(replace(job, photo_id=params.photo_id, file_id=None, file_url=None))
            log.info("Placeholder photo %s created", params.photo_id)

            try:
                stored = await self.direct_upload(params, compressed.data)
            except FotolokashenError as exc:
                raise PartialUploadFailureError(
                    photo_id=params.photo_id,
                    location_id=job.location_id,
                    cause=exc,
                    job=job,
                ) from exc
            job = _checkpoint(replace(job, file_id=stored.file_id, file_url=stored.url))
            file_size = compressed.size

        try:
            photo = await self.confirm_upload(job, photo_id, stored, file_size=file_size)
        except FotolokashenError as exc:
            raise PartialUploadFailureError(
                photo_id=photo_id, location_id=job.location_id, cause=exc, job=job
            ) from exc
        log.info("Photo %s confirmed", photo.id)
        return photo
