"""Tests for the part upload worker pool."""

from unittest.mock import call, patch

import pytest
from conftest import make_file

from geoint_upload.core.cancellation import CancelToken
from geoint_upload.core.exceptions import FatalUploadError, UserCancelledError
from geoint_upload.core.models import PartRecord, UploadSession
from geoint_upload.core.workers import MultipartJob, PartUploadPool, total_parts_for


def make_job(size=100, chunk_size=40, completed=None):
    descriptor = make_file(size=size)
    session = UploadSession(
        session_id="up-1",
        item_id="item-1",
        entity_id="ent-1",
        chunk_size=chunk_size,
        total_parts=total_parts_for(size, chunk_size),
    )
    return MultipartJob(
        file_index=0,
        descriptor=descriptor,
        session=session,
        resume_key="key-1",
        service_id="1",
        completed=completed,
    )


@pytest.fixture
def pool(upload_api, transport, store, progress, config):
    return PartUploadPool(
        upload_api=upload_api,
        transport=transport,
        store=store,
        progress=progress,
        config=config,
    )


@pytest.mark.parametrize(
    "size,chunk,expected",
    [(0, 40, 1), (1, 40, 1), (40, 40, 1), (41, 40, 2), (100, 40, 3), (120, 40, 3)],
)
def test_total_parts(size, chunk, expected):
    """Test part counts, including the one-part minimum."""
    assert total_parts_for(size, chunk) == expected


def test_part_ranges_cover_file_exactly():
    """Test that part ranges are contiguous and the last part is short."""
    job = make_job(size=100, chunk_size=40)

    assert [job.part_range(n) for n in (1, 2, 3)] == [(0, 40), (40, 80), (80, 100)]
    assert job.part_size(3) == 20


def test_pending_parts_exclude_committed():
    """Test that committed parts are not pending and bogus numbers are dropped."""
    job = make_job(
        completed=[
            PartRecord(part_number=2, etag="a"),
            PartRecord(part_number=9, etag="b"),
        ]
    )

    assert job.pending_parts() == [1, 3]
    assert job.committed_bytes() == {2: 40}


def test_run_commits_every_pending_part(pool, store, upload_api, progress):
    """Test that a run uploads, confirms and persists every part."""
    job = make_job()
    progress.start_file(0, job.descriptor.name, job.descriptor.size)

    parts = pool.run(job, job.pending_parts(), CancelToken())

    assert [p.part_number for p in parts] == [1, 2, 3]
    assert sorted(n for _, n, _ in upload_api.confirmed) == [1, 2, 3]
    state = store.get("key-1")
    assert sorted(p.part_number for p in state.completed_parts) == [1, 2, 3]


def test_each_attempt_requests_a_fresh_url(pool, upload_api, transport):
    """Test that a retried part asks for a new target every time."""
    transport.failures = {1: 1}
    job = make_job(size=30)

    pool.run(job, job.pending_parts(), CancelToken())

    assert upload_api.calls.count(("get_part_url", "up-1", 1)) == 2


def test_backoff_doubles_between_attempts(pool, transport, config):
    """Test that waits grow as base * 2**retry_count and attempts are bounded."""
    pool.config = config.model_copy(update={"retry_base_delay": 1.0})
    transport.always_fail = {1}
    job = make_job(size=30)

    with patch.object(CancelToken, "sleep") as sleep:
        with pytest.raises(FatalUploadError) as exc_info:
            pool.run(job, job.pending_parts(), CancelToken())

    assert sleep.call_args_list == [call(1.0), call(2.0), call(4.0)]
    assert transport.attempts[1] == config.max_part_retries + 1
    assert exc_info.value.part_number == 1


def test_zero_retries_means_one_attempt(pool, transport, config):
    """Test that with retries disabled a part is tried exactly once."""
    pool.config = config.model_copy(update={"max_part_retries": 0})
    transport.always_fail = {1}
    job = make_job(size=30)

    with pytest.raises(FatalUploadError):
        pool.run(job, job.pending_parts(), CancelToken())

    assert transport.attempts[1] == 1


def test_retry_resets_part_progress(pool, transport, listener, progress):
    """Test that a restarted part drops back to zero bytes."""
    transport.failures = {1: 1}
    job = make_job(size=30)
    progress.start_file(0, job.descriptor.name, job.descriptor.size)

    pool.run(job, job.pending_parts(), CancelToken())

    percents = [e.file_percent for e in listener.events]
    assert percents == [0, 50, 0, 50, 99]


def test_cancellation_is_not_retried(pool, transport):
    """Test that a cancelled part propagates immediately."""
    token = CancelToken()
    transport.on_put = lambda part_number, t: token.cancel()
    job = make_job(size=30)

    with pytest.raises(UserCancelledError):
        pool.run(job, job.pending_parts(), token)

    assert transport.attempts == {1: 1}


def test_cancelled_token_starts_nothing(pool, transport):
    """Test that a pool run with a cancelled token transfers no part."""
    token = CancelToken()
    token.cancel()
    job = make_job()

    with pytest.raises(UserCancelledError):
        pool.run(job, job.pending_parts(), token)

    assert transport.attempts == {}


def test_fatal_failure_stops_new_parts(pool, transport, config):
    """Test that no worker starts a new part after a fatal failure."""
    pool.config = config.model_copy(update={"concurrency": 1})
    transport.always_fail = {2}
    job = make_job(size=400)

    with pytest.raises(FatalUploadError):
        pool.run(job, job.pending_parts(), CancelToken())

    assert sorted(transport.attempts) == [1, 2]


def test_run_with_nothing_pending_returns_committed(pool, transport):
    """Test that a fully committed job only returns its parts."""
    committed = [PartRecord(part_number=n, etag=f"e{n}") for n in (3, 1, 2)]
    job = make_job(completed=committed)

    parts = pool.run(job, job.pending_parts(), CancelToken())

    assert [p.part_number for p in parts] == [1, 2, 3]
    assert transport.attempts == {}
