"""Tests for JobStore: keyed access, secondary lookup, atomic updates."""

import threading
from datetime import timedelta

import pytest

from converter.errors import ConversionConflict, DuplicateJobError, JobNotFound
from converter.models import Job, JobStatus, utcnow


def make_job(job_id="job-1", **overrides) -> Job:
    fields = dict(
        id=job_id,
        original_name="song.wav",
        stored_path=f"/tmp/{job_id}-song.wav",
        size_bytes=42,
        mime_type="audio/wav",
    )
    fields.update(overrides)
    return Job(**fields)


def test_create_and_get(store):
    store.create(make_job())

    job = store.get("job-1")
    assert job is not None
    assert job.status == JobStatus.UPLOADED
    assert job.conversion_id is None
    assert job.user_id == "anonymous"
    assert store.get("missing") is None


def test_create_rejects_duplicate_id(store):
    store.create(make_job())
    with pytest.raises(DuplicateJobError):
        store.create(make_job())


def test_lookup_by_conversion_id(store):
    store.create(make_job("a"))
    store.create(make_job("b"))

    def assign(job):
        job.conversion_id = "conv-b"

    store.update("b", assign)

    assert store.get_by_conversion_id("conv-b").id == "b"
    assert store.get_by_conversion_id("conv-a") is None


def test_update_unknown_job(store):
    with pytest.raises(JobNotFound):
        store.update("missing", lambda job: None)


def test_failed_mutator_commits_nothing(store):
    store.create(make_job())

    def half_then_raise(job):
        job.status = JobStatus.PROCESSING
        job.progress = 70
        raise ConversionConflict("nope")

    with pytest.raises(ConversionConflict):
        store.update("job-1", half_then_raise)

    job = store.get("job-1")
    assert job.status == JobStatus.UPLOADED
    assert job.progress is None


def test_returned_records_are_snapshots(store):
    store.create(make_job())
    job = store.get("job-1")
    job.status = JobStatus.FAILED

    assert store.get("job-1").status == JobStatus.UPLOADED


def test_concurrent_updates_are_not_lost(store):
    store.create(make_job(progress=0))

    def bump(job):
        job.progress += 1

    threads = [
        threading.Thread(target=lambda: [store.update("job-1", bump) for _ in range(20)])
        for _ in range(5)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get("job-1").progress == 100


def test_purge_finished_only_removes_old_terminal_jobs(store):
    now = utcnow()
    store.create(make_job("old-done", status=JobStatus.COMPLETED, completed_at=now - timedelta(hours=2)))
    store.create(make_job("old-failed", status=JobStatus.FAILED, completed_at=now - timedelta(hours=2)))
    store.create(make_job("new-done", status=JobStatus.COMPLETED, completed_at=now))
    store.create(make_job("busy", status=JobStatus.PROCESSING))

    removed = store.purge_finished(now - timedelta(hours=1))

    assert sorted(job.id for job in removed) == ["old-done", "old-failed"]
    assert store.get("old-done") is None
    assert store.get("new-done") is not None
    assert store.get("busy") is not None


def test_timestamps_are_timezone_aware(store):
    job = store.create(make_job())

    assert job.uploaded_at.tzinfo is not None
    assert job.uploaded_at.utcoffset() == timedelta(0)
