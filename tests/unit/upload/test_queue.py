"""
Unit tests for OfflineRetryQueue.

Coverage:
* FIFO persistence across instances, duplicate client ids
* replay outcomes: success, retry bookkeeping, exhaustion, non-retryable drop
* auth expiry stops replay, cancellation keeps the job queued
* checkpoints reported during replay are persisted
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from pathlib import Path

import pytest

from fotolokashen_sync.errors import (
    AuthExpiredError,
    InvalidUploadResponseError,
    NetworkUnavailableError,
    PartialUploadFailureError,
    RetryExhaustedError,
    UploadValidationError,
)
from fotolokashen_sync.upload.models import ConfirmedPhoto, UploadJob
from fotolokashen_sync.upload.queue import OfflineRetryQueue


# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #
def _photo(job: UploadJob, photo_id: int = 1) -> ConfirmedPhoto:
    return ConfirmedPhoto(
        id=photo_id,
        file_path="/p.jpg",
        url="https://ik.test/p.jpg",
        uploaded_at="2024-01-01T00:00:00Z",
        location_id=job.location_id,
        file_size=10,
    )


def _runner(outcomes: dict, seen: list | None = None):
    """Build a runner returning/raising ``outcomes[client_id]``."""

    async def run(job: UploadJob, *, on_checkpoint) -> ConfirmedPhoto:
        if seen is not None:
            seen.append(job)
        result = outcomes.get(job.client_id)
        if isinstance(result, BaseException):
            raise result
        return _photo(job)

    return run


@pytest.fixture
def queue(tmp_path: Path, clock) -> OfflineRetryQueue:
    return OfflineRetryQueue(tmp_path / "queue", clock=clock)


# --------------------------------------------------------------------------- #
# storage                                                                     #
# --------------------------------------------------------------------------- #
def test_enqueue_persists_fifo_across_instances(tmp_path: Path, clock, make_job) -> None:
    first = OfflineRetryQueue(tmp_path, clock=clock)
    jobs = [make_job(caption=f"c{i}") for i in range(3)]
    for job in jobs:
        assert first.enqueue(job) is True

    reopened = OfflineRetryQueue(tmp_path, clock=clock)

    assert [j.client_id for j in reopened.jobs()] == [j.client_id for j in jobs]
    assert reopened.get(jobs[1].client_id) == jobs[1]
    manifest = json.loads((tmp_path / "queue.json").read_text())
    assert "image_bytes" not in manifest["jobs"][0]


def test_duplicate_client_id_rejected(queue, make_job) -> None:
    job = make_job()
    assert queue.enqueue(job) is True
    assert queue.enqueue(job) is False
    assert len(queue) == 1


def test_replace_keeps_position_and_remove_deletes_image(queue, make_job, tmp_path) -> None:
    a, b = make_job(), make_job()
    queue.enqueue(a)
    queue.enqueue(b)

    queue.replace(replace(a, retry_count=2))
    assert [j.client_id for j in queue.jobs()] == [a.client_id, b.client_id]
    assert queue.get(a.client_id).retry_count == 2

    assert queue.remove(a.client_id) is True
    assert queue.remove(a.client_id) is False
    assert not (tmp_path / "queue" / "images" / a.client_id).exists()


def test_replace_unknown_job_raises(queue, make_job) -> None:
    with pytest.raises(KeyError):
        queue.replace(make_job())


def test_corrupt_manifest_is_set_aside(tmp_path: Path, clock) -> None:
    tmp_path.joinpath("queue.json").write_text("{nope")

    queue = OfflineRetryQueue(tmp_path, clock=clock)

    assert len(queue) == 0
    assert (tmp_path / "queue.json.corrupt").exists()


# --------------------------------------------------------------------------- #
# replay                                                                      #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_replay_success_removes_jobs_in_fifo_order(queue, make_job) -> None:
    jobs = [make_job() for _ in range(3)]
    for job in jobs:
        queue.enqueue(job)
    seen: list[UploadJob] = []

    report = await queue.replay(_runner({}, seen))

    assert [j.client_id for j in seen] == [j.client_id for j in jobs]
    assert len(report.succeeded) == 3
    assert len(queue) == 0


@pytest.mark.anyio
async def test_retryable_failure_records_attempt(queue, make_job, clock) -> None:
    job = make_job()
    queue.enqueue(job)

    report = await queue.replay(_runner({job.client_id: NetworkUnavailableError("offline")}))

    kept = queue.get(job.client_id)
    assert kept.retry_count == 1
    assert kept.last_error == "offline"
    assert kept.last_retry_at == clock.now
    assert report.retried == [kept]


@pytest.mark.anyio
async def test_job_dropped_after_three_failed_attempts(queue, make_job) -> None:
    job = make_job()
    queue.enqueue(job)
    runner = _runner({job.client_id: NetworkUnavailableError("offline")})

    await queue.replay(runner)
    await queue.replay(runner)
    report = await queue.replay(runner)

    assert job.client_id not in queue
    [dropped] = report.dropped
    assert isinstance(dropped, RetryExhaustedError)
    assert dropped.job.retry_count == 3
    assert dropped.to_payload()["client_id"] == job.client_id


@pytest.mark.anyio
async def test_non_retryable_failure_dropped_immediately(queue, make_job) -> None:
    job = make_job()
    queue.enqueue(job)
    error = UploadValidationError("File too large")

    report = await queue.replay(_runner({job.client_id: error}))

    assert report.dropped == [error]
    assert len(queue) == 0


@pytest.mark.anyio
async def test_partial_failure_keeps_checkpoints_for_retry(queue, make_job) -> None:
    job = make_job()
    queue.enqueue(job)
    checkpointed = replace(job, photo_id=101, file_id="file-xyz", file_url="https://ik.test/x")
    error = PartialUploadFailureError(
        photo_id=101,
        location_id=456,
        cause=NetworkUnavailableError("offline"),
        job=checkpointed,
    )

    await queue.replay(_runner({job.client_id: error}))

    kept = queue.get(job.client_id)
    assert (kept.photo_id, kept.file_id, kept.retry_count) == (101, "file-xyz", 1)


@pytest.mark.anyio
async def test_partial_failure_with_malformed_provider_answer_is_dropped(queue, make_job) -> None:
    job = make_job()
    queue.enqueue(job)
    error = PartialUploadFailureError(
        photo_id=101,
        location_id=456,
        cause=InvalidUploadResponseError("empty fileId"),
        job=replace(job, photo_id=101),
    )

    report = await queue.replay(_runner({job.client_id: error}))

    assert report.dropped == [error]
    assert len(queue) == 0


@pytest.mark.anyio
async def test_auth_expiry_stops_replay_without_counting(queue, make_job) -> None:
    first, second = make_job(), make_job()
    queue.enqueue(first)
    queue.enqueue(second)
    seen: list[UploadJob] = []

    report = await queue.replay(_runner({first.client_id: AuthExpiredError()}, seen))

    assert report.stopped is True
    assert [j.client_id for j in seen] == [first.client_id]
    assert [j.retry_count for j in queue.jobs()] == [0, 0]


@pytest.mark.anyio
async def test_checkpoints_persisted_during_replay(queue, make_job) -> None:
    job = make_job()
    queue.enqueue(job)
    seen_in_queue = []

    async def run(job: UploadJob, *, on_checkpoint) -> ConfirmedPhoto:
        on_checkpoint(replace(job, photo_id=55))
        seen_in_queue.append(queue.get(job.client_id).photo_id)
        raise NetworkUnavailableError("offline")

    await queue.replay(run)

    assert seen_in_queue == [55]
    assert queue.get(job.client_id).photo_id == 55


@pytest.mark.anyio
async def test_cancelled_replay_leaves_job_queued(queue, make_job) -> None:
    job = make_job()
    queue.enqueue(job)
    started = asyncio.Event()

    async def run(job: UploadJob, *, on_checkpoint) -> ConfirmedPhoto:
        started.set()
        await asyncio.Event().wait()
        raise AssertionError("unreachable")

    task = asyncio.create_task(queue.replay(run))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert queue.get(job.client_id) == job


@pytest.mark.anyio
async def test_replay_concurrency_is_bounded(queue, make_job) -> None:
    for _ in range(6):
        queue.enqueue(make_job())
    running = 0
    peak = 0

    async def run(job: UploadJob, *, on_checkpoint) -> ConfirmedPhoto:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return _photo(job)

    report = await queue.replay(run, concurrency=3)

    assert peak == 3
    assert len(report.succeeded) == 6
