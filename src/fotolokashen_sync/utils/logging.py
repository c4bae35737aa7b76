"""Structured logging helpers for the auth session and upload pipeline.

This module purposefully restricts **which** contextual attributes are attached
to log records in order to avoid accidentally leaking secrets.  The adapter
ONLY injects the following *non-sensitive* fields:

- ``client_id``      – Upload job identifier (first 8 chars kept)
- ``photo_id``       – Backend photo identifier
- ``location_id``    – Target location identifier
- ``correlation_id`` – Caller supplied identifier for a user action

Usage
-----
>>> from fotolokashen_sync.utils.logging import get_context_logger
>>> log = get_context_logger(
...     "fotolokashen.upload",
...     client_id="0d6f5c8e-8a6b-4a3e-9c51-5f8a7d3c2b10",
...     location_id=456,
... )
>>> log.info("Requesting signed upload parameters")
INFO fotolokashen.upload client_id=0d6f5c8e location_id=456 ...

Access tokens, refresh tokens, PKCE verifiers, authorization codes and upload
signatures must only ever be logged through :func:`mask_sensitive`.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping

_ROOT_LOGGER = "fotolokashen"
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def mask_sensitive(value: str | None, keep: int = 4) -> str:
    """Return *value* with everything but the first *keep* characters hidden."""
    if not value:
        return "<empty>"
    if len(value) <= keep:
        return "*" * len(value)
    return f"{value[:keep]}****"


def configure_logging(*, debug: bool = False, handler: logging.Handler | None = None) -> logging.Logger:
    """Attach a single stream handler to the package root logger.

    Calling it repeatedly only adjusts the level.
    """
    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    if not logger.handlers:
        handler = handler or logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(handler)
    return logger


class _ContextLoggerAdapter(logging.LoggerAdapter):
    """Inject whitelisted upload context into log records."""

    extra_keys = ("client_id", "photo_id", "location_id", "correlation_id")

    def __init__(self, logger: logging.Logger, extra: Mapping[str, Any] | None = None):
        extra_clean: MutableMapping[str, Any] = {}
        for k in self.extra_keys:
            if k == "client_id" and extra and extra.get("client_id"):
                # keep only the first UUID group
                extra_clean[k] = str(extra["client_id"])[:8]
            elif extra and k in extra and extra[k] is not None:
                extra_clean[k] = extra[k]
        super().__init__(logger, extra_clean)

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        if "extra" not in kwargs or kwargs["extra"] is None:
            kwargs["extra"] = {}
        # merge but do not overwrite call-site provided extras
        for k, v in self.extra.items():
            kwargs["extra"].setdefault(k, v)
        if self.extra:
            context = " ".join(f"{k}={v}" for k, v in self.extra.items())
            msg = f"[{context}] {msg}"
        return msg, kwargs


def get_context_logger(
    base_logger_name: str = _ROOT_LOGGER,
    *,
    client_id: str | None = None,
    photo_id: int | str | None = None,
    location_id: int | str | None = None,
    correlation_id: str | None = None,
) -> logging.LoggerAdapter:
    """Return a LoggerAdapter pre-filled with upload context."""
    return _ContextLoggerAdapter(
        logging.getLogger(base_logger_name),
        {
            "client_id": client_id,
            "photo_id": photo_id,
            "location_id": location_id,
            "correlation_id": correlation_id,
        },
    )
