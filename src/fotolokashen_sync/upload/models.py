"""Immutable records exchanged by the upload pipeline.

``UploadJob`` is the unit persisted by the offline queue.  Its
``photo_id``/``file_id``/``file_url`` fields are protocol checkpoints: a job
that already obtained a backend photo id (Step 1) or stored its media with
the provider (Step 2) resumes from the first unfinished step instead of
starting over.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Mapping, Union

from fotolokashen_sync.auth.clock import Clock, default_clock
from fotolokashen_sync.errors import InvalidResponseError

JPEG_MIME_TYPE = "image/jpeg"


# --------------------------------------------------------------------------- #
# Upload job                                                                  #
# --------------------------------------------------------------------------- #
@dataclass(frozen=True, slots=True)
class UploadJob:
    """A captured photo waiting to be delivered to a location."""

    client_id: str
    image_bytes: bytes = field(repr=False)
    location_id: int | str
    captured_at: float
    queued_at: float
    caption: str | None = None
    gps_latitude: float | None = None
    gps_longitude: float | None = None
    gps_altitude: float | None = None
    gps_accuracy: float | None = None
    retry_count: int = 0
    last_error: str | None = None
    last_retry_at: float | None = None
    # protocol checkpoints
    photo_id: int | str | None = None
    file_id: str | None = None
    file_url: str | None = None

    @classmethod
    def new(
        cls,
        image_bytes: bytes,
        location_id: int | str,
        *,
        caption: str | None = None,
        gps_latitude: float | None = None,
        gps_longitude: float | None = None,
        gps_altitude: float | None = None,
        gps_accuracy: float | None = None,
        captured_at: float | None = None,
        clock: Clock = default_clock,
    ) -> "UploadJob":
        now = clock()
        return cls(
            client_id=str(uuid.uuid4()),
            image_bytes=bytes(image_bytes),
            location_id=location_id,
            captured_at=now if captured_at is None else captured_at,
            queued_at=now,
            caption=caption,
            gps_latitude=gps_latitude,
            gps_longitude=gps_longitude,
            gps_altitude=gps_altitude,
            gps_accuracy=gps_accuracy,
        )

    @property
    def filename(self) -> str:
        return f"photo_{int(self.captured_at)}_{self.client_id[:8]}.jpg"

    @property
    def has_placeholder(self) -> bool:
        """True once the backend has created a photo record for this job."""
        return self.photo_id is not None

    @property
    def media_stored(self) -> bool:
        return self.file_id is not None and self.file_url is not None

    def should_retry(self, max_retries: int = 3) -> bool:
        return self.retry_count < max_retries

    def with_failure(self, error: str, *, clock: Clock = default_clock) -> "UploadJob":
        return replace(
            self,
            retry_count=self.retry_count + 1,
            last_error=error,
            last_retry_at=clock(),
        )

    def to_record(self) -> dict[str, Any]:
        """Return a JSON-serialisable dict without the image payload."""
        record = asdict(self)
        record.pop("image_bytes")
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any], image_bytes: bytes) -> "UploadJob":
        known = {f.name for f in fields(cls)} - {"image_bytes"}
        return cls(image_bytes=image_bytes, **{k: v for k, v in record.items() if k in known})


# --------------------------------------------------------------------------- #
# Step 1 – signed upload parameters                                           #
# --------------------------------------------------------------------------- #
@dataclass(frozen=True, slots=True)
class SignedUploadParams:
    """Short-lived, single-use credentials for the direct provider upload."""

    photo_id: int | str
    upload_token: str = field(repr=False)
    signature: str = field(repr=False)
    expire: float
    file_name: str
    folder: str
    public_key: str
    upload_url: str | None = None

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        return clock() >= self.expire

    @property
    def clean_folder(self) -> str:
        return self.folder[1:] if self.folder.startswith("/") else self.folder

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "SignedUploadParams":
        try:
            return cls(
                photo_id=payload["photoId"],
                upload_token=str(payload["uploadToken"]),
                signature=str(payload["signature"]),
                expire=float(payload["expire"]),
                file_name=str(payload["fileName"]),
                folder=str(payload.get("folder") or ""),
                public_key=str(payload["publicKey"]),
                upload_url=payload.get("uploadUrl"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidResponseError(f"request-upload response incomplete: {exc}") from exc


# --------------------------------------------------------------------------- #
# Step 2 – provider result (tagged variant)                                   #
# --------------------------------------------------------------------------- #
@dataclass(frozen=True, slots=True)
class ProviderUploadStored:
    file_id: str
    url: str
    name: str | None = None
    thumbnail_url: str | None = None
    width: int | None = None
    height: int | None = None
    size: int | None = None


@dataclass(frozen=True, slots=True)
class ProviderUploadMalformed:
    reason: str
    status_code: int
    body_excerpt: str = ""


ProviderUploadResult = Union[ProviderUploadStored, ProviderUploadMalformed]


def parse_provider_response(status_code: int, body: bytes) -> ProviderUploadResult:
    """Classify a 200 provider response; empty identifiers are *not* success."""
    excerpt = body[:200].decode("utf-8", errors="replace")
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return ProviderUploadMalformed("undecodable body", status_code, excerpt)
    if not isinstance(payload, dict):
        return ProviderUploadMalformed("body is not an object", status_code, excerpt)

    file_id = payload.get("fileId")
    url = payload.get("url")
    if not isinstance(file_id, str) or not file_id:
        return ProviderUploadMalformed("empty fileId", status_code, excerpt)
    if not isinstance(url, str) or not url:
        return ProviderUploadMalformed("empty url", status_code, excerpt)
    return ProviderUploadStored(
        file_id=file_id,
        url=url,
        name=payload.get("name"),
        thumbnail_url=payload.get("thumbnailUrl"),
        width=payload.get("width"),
        height=payload.get("height"),
        size=payload.get("size"),
    )


# --------------------------------------------------------------------------- #
# Step 3 – confirmed photo                                                    #
# --------------------------------------------------------------------------- #
@dataclass(frozen=True, slots=True)
class ConfirmedPhoto:
    id: int | str
    file_path: str
    url: str
    uploaded_at: str
    location_id: int | str
    file_size: int
    mime_type: str = JPEG_MIME_TYPE

    @classmethod
    def from_response(
        cls,
        payload: Mapping[str, Any],
        *,
        location_id: int | str,
        file_size: int,
    ) -> "ConfirmedPhoto":
        photo = payload.get("photo")
        if not payload.get("success", True) or not isinstance(photo, Mapping):
            raise InvalidResponseError("confirm response carries no photo")
        try:
            return cls(
                id=photo["id"],
                file_path=str(photo.get("imagekitFilePath") or ""),
                url=str(photo["url"]),
                uploaded_at=str(photo.get("uploadedAt") or ""),
                location_id=location_id,
                file_size=file_size,
            )
        except KeyError as exc:
            raise InvalidResponseError(f"confirm response missing {exc}") from exc
