"""Photo upload pipeline: orchestrator, offline queue and service."""

from __future__ import annotations

from .models import (  # noqa: F401
    ConfirmedPhoto,
    ProviderUploadMalformed,
    ProviderUploadStored,
    SignedUploadParams,
    UploadJob,
)
from .orchestrator import UploadOrchestrator  # noqa: F401
from .queue import OfflineRetryQueue, ReplayReport  # noqa: F401
from .service import PhotoUploadService, UploadOutcome  # noqa: F401

__all__ = [
    "ConfirmedPhoto",
    "ProviderUploadMalformed",
    "ProviderUploadStored",
    "SignedUploadParams",
    "UploadJob",
    "UploadOrchestrator",
    "OfflineRetryQueue",
    "ReplayReport",
    "PhotoUploadService",
    "UploadOutcome",
]
