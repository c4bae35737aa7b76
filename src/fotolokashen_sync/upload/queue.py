"""Durable FIFO queue of uploads that could not be delivered yet.

Layout on disk (``<storage>/queue`` by default)::

    queue.json            manifest, FIFO order, written atomically
    images/<client_id>    captured image bytes, one file per job

The manifest never holds image bytes, and the image file is written before the
manifest references it, so a crash can at worst leave an orphaned image
file behind, never a job without its photo.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Protocol

from fotolokashen_sync.auth.clock import Clock, default_clock
from fotolokashen_sync.auth.store import _atomic_write, default_storage_dir  # type: ignore
from fotolokashen_sync.errors import (
    AuthExpiredError,
    FotolokashenError,
    PartialUploadFailureError,
    RetryExhaustedError,
)
from fotolokashen_sync.upload.models import ConfirmedPhoto, UploadJob
from fotolokashen_sync.utils.logging import get_context_logger

_LOG = logging.getLogger("fotolokashen.upload.queue")

MANIFEST_VERSION = 1


class UploadRunner(Protocol):
    def __call__(
        self, job: UploadJob, *, on_checkpoint: Callable[[UploadJob], None]
    ) -> Awaitable[ConfirmedPhoto]: ...


@dataclass
class ReplayReport:
    """Outcome of one :meth:`OfflineRetryQueue.replay` pass."""

    succeeded: list[ConfirmedPhoto] = field(default_factory=list)
    retried: list[UploadJob] = field(default_factory=list)
    dropped: list[FotolokashenError] = field(default_factory=list)
    stopped_by: FotolokashenError | None = None

    @property
    def stopped(self) -> bool:
        return self.stopped_by is not None


def _auth_expired(exc: BaseException) -> bool:
    if isinstance(exc, AuthExpiredError):
        return True
    return isinstance(exc, PartialUploadFailureError) and isinstance(
        exc.cause, AuthExpiredError
    )


class OfflineRetryQueue:
    """Persisted FIFO of :class:`UploadJob` with bounded retries."""

    def __init__(
        self,
        base_dir: str | os.PathLike | None = None,
        *,
        max_retries: int = 3,
        clock: Clock = default_clock,
    ) -> None:
        self.base_dir = Path(base_dir or default_storage_dir() / "queue").expanduser()
        self.max_retries = max_retries
        self.clock = clock
        self._images_dir = self.base_dir / "images"
        self._images_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        self._manifest_path = self.base_dir / "queue.json"
        self._lock = threading.RLock()
        self._records: dict[str, dict[str, Any]] = self._load_manifest()

    # ------------------------------------------------------------------ #
    # Persistence                                                        #
    # ------------------------------------------------------------------ #
    def _image_path(self, client_id: str) -> Path:
        return self._images_dir / client_id

    def _load_manifest(self) -> dict[str, dict[str, Any]]:
        try:
            raw = json.loads(self._manifest_path.read_text("utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            aside = self._manifest_path.with_suffix(".json.corrupt")
            _LOG.error("Queue manifest unreadable (%s); moved to %s", exc, aside.name)
            os.replace(self._manifest_path, aside)
            return {}

        records: dict[str, dict[str, Any]] = {}
        for record in raw.get("jobs", []):
            client_id = record.get("client_id")
            if not client_id or not self._image_path(client_id).exists():
                _LOG.warning("Skipping queued job %s without image data", client_id)
                continue
            records[client_id] = record
        return records

    def _save_manifest(self) -> None:
        payload = {"version": MANIFEST_VERSION, "jobs": list(self._records.values())}
        _atomic_write(
            self._manifest_path,
            json.dumps(payload, indent=2, sort_keys=True).encode("utf-8"),
        )

    # ------------------------------------------------------------------ #
    # Queue operations                                                   #
    # ------------------------------------------------------------------ #
    def enqueue(self, job: UploadJob) -> bool:
        """Append *job*; returns ``False`` when its ``client_id`` is already queued."""
        with self._lock:
            if job.client_id in self._records:
                return False
            _atomic_write(self._image_path(job.client_id), job.image_bytes)
            self._records[job.client_id] = job.to_record()
            self._save_manifest()
        get_context_logger(
            "fotolokashen.upload.queue", client_id=job.client_id, location_id=job.location_id
        ).info("Queued upload (%d pending)", len(self))
        return True

    def get(self, client_id: str) -> UploadJob | None:
        with self._lock:
            record = self._records.get(client_id)
            if record is None:
                return None
            return UploadJob.from_record(record, self._image_path(client_id).read_bytes())

    def jobs(self) -> list[UploadJob]:
        """Return the queued jobs in FIFO order."""
        with self._lock:
            ids = list(self._records)
        return [job for job in (self.get(cid) for cid in ids) if job is not None]

    def replace(self, job: UploadJob) -> None:
        """Overwrite the stored record of *job*, keeping its queue position."""
        with self._lock:
            if job.client_id not in self._records:
                raise KeyError(job.client_id)
            self._records[job.client_id] = job.to_record()
            self._save_manifest()

    def remove(self, client_id: str) -> bool:
        with self._lock:
            if self._records.pop(client_id, None) is None:
                return False
            self._save_manifest()
            self._image_path(client_id).unlink(missing_ok=True)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, client_id: object) -> bool:
        with self._lock:
            return client_id in self._records

    def __iter__(self) -> Iterator[UploadJob]:
        return iter(self.jobs())

    # ------------------------------------------------------------------ #
    # Replay                                                             #
    # ------------------------------------------------------------------ #
    async def replay(self, runner: UploadRunner, *, concurrency: int = 1) -> ReplayReport:
        """Attempt every queued job once, starting them in FIFO order."""
        report = ReplayReport()
        semaphore = asyncio.Semaphore(max(1, concurrency))
        stop = asyncio.Event()

        async def _run(job: UploadJob) -> None:
            async with semaphore:
                if not stop.is_set():
                    await self._attempt(job.client_id, runner, report, stop)

        snapshot = self.jobs()
        if snapshot:
            _LOG.info("Replaying %d queued upload(s)", len(snapshot))
        await asyncio.gather(*(_run(job) for job in snapshot))
        return report

    async def _attempt(
        self,
        client_id: str,
        runner: UploadRunner,
        report: ReplayReport,
        stop: asyncio.Event,
    ) -> None:
        job = self.get(client_id)
        if job is None:
            return
        log = get_context_logger(
            "fotolokashen.upload.queue", client_id=client_id, location_id=job.location_id
        )

        try:
            photo = await runner(job, on_checkpoint=self.replace)
        except FotolokashenError as exc:
            latest = self.get(client_id) or job
            if isinstance(exc, PartialUploadFailureError) and exc.job is not None:
                latest = exc.job

            if _auth_expired(exc):
                if client_id in self:
                    self.replace(latest)
                log.info("Sign-in required; replay stopped")
                report.stopped_by = exc
                stop.set()
                return

            if not exc.retryable:
                self.remove(client_id)
                log.warning("Dropped upload after non-retryable %s", exc.code)
                report.dropped.append(exc)
                return

            failed = latest.with_failure(str(exc), clock=self.clock)
            if failed.should_retry(self.max_retries):
                self.replace(failed)
                log.info("Upload failed (%s); attempt %d kept for retry", exc.code, failed.retry_count)
                report.retried.append(failed)
            else:
                self.remove(client_id)
                log.warning("Dropped upload after %d attempts", failed.retry_count)
                report.dropped.append(RetryExhaustedError(failed, str(exc)))
            return

        self.remove(client_id)
        report.succeeded.append(photo)
