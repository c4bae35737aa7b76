"""Environment-driven client configuration.

All settings come from ``FOTOLOKASHEN_*`` environment variables; every one
has a default suited to the production backend, so an empty environment is a
valid configuration.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Final, Mapping, Tuple, TypeVar

from fotolokashen_sync.media.compressor import CompressionSettings

logger = logging.getLogger("fotolokashen.config")

T = TypeVar("T")

_TRUTHY: Final[Tuple[str, ...]] = ("true", "1", "yes", "y", "on")

DEFAULT_BACKEND_URL: Final[str] = "https://fotolokashen.com"
DEFAULT_UPLOAD_ENDPOINT: Final[str] = "https://upload.imagekit.io/api/v1/files/upload"
DEFAULT_CLIENT_ID: Final[str] = "fotolokashen-ios"
DEFAULT_REDIRECT_URI: Final[str] = "fotolokashen://oauth-callback"
DEFAULT_SCOPES: Final[str] = "read write"


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def _parsed(
    env: Mapping[str, str], name: str, parse: Callable[[str], T], default: T
) -> T:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return parse(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _default_storage_dir() -> Path:
    return Path.home() / ".fotolokashen"


@dataclass(frozen=True)
class ClientConfig:
    """Resolved settings for one client instance."""

    backend_url: str = DEFAULT_BACKEND_URL
    upload_endpoint: str = DEFAULT_UPLOAD_ENDPOINT
    client_id: str = DEFAULT_CLIENT_ID
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: str = DEFAULT_SCOPES
    storage_dir: Path = field(default_factory=_default_storage_dir)
    store_key: str | None = field(default=None, repr=False)
    request_timeout: float = 30.0
    refresh_lead_seconds: float = 300.0
    max_concurrent_uploads: int = 3
    max_retries: int = 3
    step_retries: int = 2
    compression: CompressionSettings = field(default_factory=CompressionSettings)
    offline_mode: bool = True
    debug_logging: bool = False

    @property
    def auth_dir(self) -> Path:
        return self.storage_dir / "auth"

    @property
    def queue_dir(self) -> Path:
        return self.storage_dir / "queue"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "ClientConfig":
        """Build a config from *env* (``os.environ`` by default).

        Raises
        ------
        ValueError
            When a numeric variable does not parse; the message names it.
        """
        env = os.environ if env is None else env
        defaults = CompressionSettings()
        compression = CompressionSettings(
            target_bytes=_parsed(env, "FOTOLOKASHEN_UPLOAD_TARGET_BYTES", int, defaults.target_bytes),
            quality_start=_parsed(
                env, "FOTOLOKASHEN_COMPRESSION_QUALITY_START", float, defaults.quality_start
            ),
            quality_floor=_parsed(
                env, "FOTOLOKASHEN_COMPRESSION_QUALITY_FLOOR", float, defaults.quality_floor
            ),
            quality_step=_parsed(
                env, "FOTOLOKASHEN_COMPRESSION_QUALITY_STEP", float, defaults.quality_step
            ),
            max_dimension_pixels=_parsed(
                env, "FOTOLOKASHEN_COMPRESSION_MAX_DIMENSION", int, defaults.max_dimension_pixels
            ),
        )
        storage_raw = env.get("FOTOLOKASHEN_STORAGE_DIR")
        offline_raw = env.get("FOTOLOKASHEN_OFFLINE_MODE")

        config = cls(
            backend_url=(env.get("FOTOLOKASHEN_BACKEND_URL") or DEFAULT_BACKEND_URL).rstrip("/"),
            upload_endpoint=env.get("FOTOLOKASHEN_UPLOAD_ENDPOINT") or DEFAULT_UPLOAD_ENDPOINT,
            client_id=env.get("FOTOLOKASHEN_OAUTH_CLIENT_ID") or DEFAULT_CLIENT_ID,
            redirect_uri=env.get("FOTOLOKASHEN_OAUTH_REDIRECT_URI") or DEFAULT_REDIRECT_URI,
            scopes=env.get("FOTOLOKASHEN_OAUTH_SCOPES") or DEFAULT_SCOPES,
            storage_dir=Path(storage_raw).expanduser() if storage_raw else _default_storage_dir(),
            store_key=env.get("FOTOLOKASHEN_STORE_KEY") or None,
            request_timeout=_parsed(env, "FOTOLOKASHEN_REQUEST_TIMEOUT", float, 30.0),
            refresh_lead_seconds=_parsed(env, "FOTOLOKASHEN_REFRESH_LEAD_SECONDS", float, 300.0),
            max_concurrent_uploads=_parsed(env, "FOTOLOKASHEN_MAX_CONCURRENT_UPLOADS", int, 3),
            max_retries=_parsed(env, "FOTOLOKASHEN_MAX_RETRIES", int, 3),
            step_retries=_parsed(env, "FOTOLOKASHEN_STEP_RETRIES", int, 2),
            compression=compression,
            offline_mode=True if offline_raw is None else _truthy(offline_raw),
            debug_logging=_truthy(env.get("FOTOLOKASHEN_DEBUG_LOGGING")),
        )
        logger.debug("Loaded configuration for backend %s", config.backend_url)
        return config

    def describe(self) -> dict[str, Any]:
        """Return a secret-free summary suitable for printing."""
        return {
            "backend_url": self.backend_url,
            "upload_endpoint": self.upload_endpoint,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scopes": self.scopes,
            "storage_dir": str(self.storage_dir),
            "store_key": "set" if self.store_key else "generated",
            "request_timeout": self.request_timeout,
            "refresh_lead_seconds": self.refresh_lead_seconds,
            "max_concurrent_uploads": self.max_concurrent_uploads,
            "max_retries": self.max_retries,
            "step_retries": self.step_retries,
            "compression": {
                "target_bytes": self.compression.target_bytes,
                "quality_start": self.compression.quality_start,
                "quality_floor": self.compression.quality_floor,
                "quality_step": self.compression.quality_step,
                "max_dimension_pixels": self.compression.max_dimension_pixels,
            },
            "offline_mode": self.offline_mode,
            "debug_logging": self.debug_logging,
        }
