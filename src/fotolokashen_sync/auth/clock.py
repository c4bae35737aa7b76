"""Injectable time source.

Credential expiry, the refresh lead window, signed-upload expiry and queue
timestamps all compare against ``clock()`` instead of reading the system time
themselves, so tests can pin "now" with a plain callable.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Anything callable that returns epoch seconds."""

    def __call__(self) -> float: ...


def default_clock() -> float:
    return time.time()


def iso8601(timestamp: float) -> str:
    """Render epoch *timestamp* as a UTC ISO-8601 string ending in ``Z``.

    >>> iso8601(0)
    '1970-01-01T00:00:00Z'
    """
    return (
        datetime.fromtimestamp(timestamp, tz=timezone.utc)
        .isoformat(timespec="seconds")
        .replace("+00:00", "Z")
    )
