"""PhotoUploadService – capture submission, bounded concurrency and sync.

The service is the entry point used by the rest of the app:

* :meth:`submit` uploads a capture right away when online, and otherwise (or
  on a retryable failure) parks it in the offline queue;
* :meth:`sync` replays the queue, e.g. after connectivity returns;
* logout cancels in-flight uploads; their jobs go back to the queue with the
  checkpoints they reached.

At most ``max_concurrent`` uploads run at any time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable

from fotolokashen_sync.auth.models import SessionState
from fotolokashen_sync.auth.session import AuthSessionManager
from fotolokashen_sync.errors import (
    AuthExpiredError,
    FotolokashenError,
    NetworkUnavailableError,
    PartialUploadFailureError,
)
from fotolokashen_sync.upload.models import ConfirmedPhoto, UploadJob
from fotolokashen_sync.upload.orchestrator import UploadOrchestrator
from fotolokashen_sync.upload.queue import OfflineRetryQueue, ReplayReport
from fotolokashen_sync.utils.logging import get_context_logger

_LOG = logging.getLogger("fotolokashen.upload.service")


@dataclass(frozen=True, slots=True)
class UploadOutcome:
    job: UploadJob
    photo: ConfirmedPhoto | None = None
    error: FotolokashenError | None = None

    @property
    def uploaded(self) -> bool:
        return self.photo is not None

    @property
    def queued(self) -> bool:
        return self.photo is None


class PhotoUploadService:
    """Front door for photo uploads with an offline fallback."""

    def __init__(
        self,
        orchestrator: UploadOrchestrator,
        queue: OfflineRetryQueue,
        auth: AuthSessionManager,
        *,
        max_concurrent: int = 3,
        offline_mode: bool = True,
    ) -> None:
        self.orchestrator = orchestrator
        self.queue = queue
        self.auth = auth
        self.max_concurrent = max_concurrent
        self.offline_mode = offline_mode
        self.connected = True
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._sync_lock = asyncio.Lock()
        self._inflight: dict[str, asyncio.Task] = {}
        self._cancelled: set[str] = set()
        auth.add_state_listener(self._on_auth_state)

    # ------------------------------------------------------------------ #
    # Submission                                                         #
    # ------------------------------------------------------------------ #
    def _park(self, job: UploadJob, error: FotolokashenError | None) -> UploadOutcome:
        if job.client_id in self.queue:
            self.queue.replace(job)
        else:
            self.queue.enqueue(job)
        return UploadOutcome(job=job, error=error)

    async def submit(self, job: UploadJob) -> UploadOutcome:
        """Upload *job* now, or queue it when that is not possible.

        Non-retryable failures (validation, malformed provider answers, a
        placeholder that cannot receive media) are raised to the caller.
        """
        log = get_context_logger(
            "fotolokashen.upload.service", client_id=job.client_id, location_id=job.location_id
        )
        if not self.connected:
            if not self.offline_mode:
                raise NetworkUnavailableError("Offline and offline mode is disabled")
            log.info("Offline; queued for later")
            return self._park(job, None)

        latest = [job]

        def _checkpoint(updated: UploadJob) -> None:
            latest[0] = updated
            if updated.client_id in self.queue:
                self.queue.replace(updated)

        async def _run() -> ConfirmedPhoto:
            async with self._semaphore:
                return await self.orchestrator.upload(job, on_checkpoint=_checkpoint)

        task = asyncio.get_running_loop().create_task(_run())
        self._inflight[job.client_id] = task
        try:
            photo = await task
        except asyncio.CancelledError:
            self._park(latest[0], None)
            if job.client_id in self._cancelled:
                log.info("Upload cancelled; job returned to the queue")
                return UploadOutcome(job=latest[0])
            raise
        except FotolokashenError as exc:
            if isinstance(exc, PartialUploadFailureError) and exc.job is not None:
                latest[0] = exc.job
            requeue = isinstance(exc, AuthExpiredError) or (
                exc.retryable and self.offline_mode
            )
            if not requeue:
                raise
            log.info("Upload failed (%s); queued for retry", exc.code)
            # Queue replays own the retry budget; a parked job starts at zero.
            parked = replace(latest[0], last_error=str(exc), last_retry_at=self.queue.clock())
            return self._park(parked, exc)
        finally:
            self._inflight.pop(job.client_id, None)
            self._cancelled.discard(job.client_id)
        return UploadOutcome(job=latest[0], photo=photo)

    # ------------------------------------------------------------------ #
    # Queue replay                                                       #
    # ------------------------------------------------------------------ #
    async def _run_queued(
        self, job: UploadJob, *, on_checkpoint: Callable[[UploadJob], None]
    ) -> ConfirmedPhoto:
        task = asyncio.current_task()
        async with self._semaphore:
            if task is not None:
                self._inflight[job.client_id] = task
            try:
                return await self.orchestrator.upload(job, on_checkpoint=on_checkpoint)
            except asyncio.CancelledError:
                if job.client_id in self._cancelled and not self.auth.is_authenticated:
                    raise AuthExpiredError("Upload cancelled by sign-out") from None
                raise
            finally:
                self._inflight.pop(job.client_id, None)
                self._cancelled.discard(job.client_id)

    async def sync(self) -> ReplayReport:
        """Replay queued uploads; concurrent calls are serialised."""
        async with self._sync_lock:
            if not self.auth.is_authenticated:
                return ReplayReport(stopped_by=AuthExpiredError("Not signed in"))
            report = await self.queue.replay(self._run_queued, concurrency=self.max_concurrent)
        _LOG.info(
            "Sync finished: %d uploaded, %d kept, %d dropped",
            len(report.succeeded),
            len(report.retried),
            len(report.dropped),
        )
        return report

    async def set_connectivity(self, connected: bool) -> ReplayReport | None:
        """Record connectivity; returning online replays the queue."""
        was_connected, self.connected = self.connected, connected
        if connected and not was_connected and len(self.queue):
            _LOG.info("Back online; syncing %d queued upload(s)", len(self.queue))
            return await self.sync()
        return None

    # ------------------------------------------------------------------ #
    # Cancellation                                                       #
    # ------------------------------------------------------------------ #
    def cancel_all(self) -> int:
        """Cancel in-flight uploads; their jobs revert to queued."""
        count = 0
        for client_id, task in list(self._inflight.items()):
            if not task.done():
                self._cancelled.add(client_id)
                task.cancel()
                count += 1
        if count:
            _LOG.info("Cancelled %d in-flight upload(s)", count)
        return count

    def _on_auth_state(self, old: SessionState, new: SessionState) -> None:
        if new is SessionState.LOGGED_OUT:
            self.cancel_all()
