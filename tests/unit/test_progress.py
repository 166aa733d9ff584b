"""Tests for the progress store: counters, idempotent chunk results, logs."""
import json
import random
from datetime import date, datetime, timedelta

import pytest

from azsync.models.sync import COMPLETED, FAILED, RUNNING, ChunkRecord
from azsync.sync.progress import (
    JobNotFoundError,
    ProgressStore,
    compute_rate_and_eta,
    tally_chunks,
)


def _chunks(n):
    return [ChunkRecord(chunk_index=i, label=f"unit {i}") for i in range(n)]


@pytest.fixture
def store(engine):
    return ProgressStore(engine)


@pytest.fixture
def job(store):
    return store.create_job(
        tenant_id=1,
        sync_type="sql-insights",
        chunks=_chunks(3),
        start_date=date(2026, 1, 1),
        end_date=date(2026, 1, 8),
    )


class TestCreateJob:
    def test_job_starts_running_with_zero_counters(self, job):
        assert job.status == RUNNING
        assert job.total_chunks == 3
        assert (job.completed_chunks, job.failed_chunks, job.records_synced) == (0, 0, 0)

    def test_chunk_details_persisted(self, store, job):
        chunks = store.load_chunks(job.id)
        assert [c.label for c in chunks] == ["unit 0", "unit 1", "unit 2"]

    def test_get_missing_job_raises(self, store):
        with pytest.raises(JobNotFoundError):
            store.get_job(999)


class TestMarkChunkRunning:
    def test_sets_chunk_running_and_operation(self, store, job):
        store.mark_chunk_running(job.id, 1, operation="Fetching SQL insights", resource_name="db1")
        stored = store.get_job(job.id)
        assert store.load_chunks(job.id)[1].status == RUNNING
        assert stored.current_operation == "Fetching SQL insights"
        assert stored.current_resource_name == "db1"

    def test_resource_name_defaults_to_label(self, store, job):
        store.mark_chunk_running(job.id, 2, operation="x")
        assert store.get_job(job.id).current_resource_name == "unit 2"


class TestRecordChunkResult:
    def test_success_updates_counters(self, store, job):
        updated = store.record_chunk_result(job.id, 0, records=7)
        assert updated.completed_chunks == 1
        assert updated.failed_chunks == 0
        assert updated.records_synced == 7

    def test_failure_counts_zero_records(self, store, job):
        updated = store.record_chunk_result(job.id, 0, records=5, error="credential error")
        assert updated.failed_chunks == 1
        assert updated.records_synced == 0
        chunk = store.load_chunks(job.id)[0]
        assert chunk.status == FAILED
        assert chunk.error == "credential error"

    def test_duplicate_result_is_noop(self, store, job):
        store.record_chunk_result(job.id, 0, records=7)
        again = store.record_chunk_result(job.id, 0, records=7)
        assert again is None
        stored = store.get_job(job.id)
        assert stored.completed_chunks == 1
        assert stored.records_synced == 7

    def test_records_sets_timestamps(self, store, job):
        now = datetime(2026, 1, 8, 12, 0)
        store.record_chunk_result(job.id, 0, records=1, now=now)
        chunk = store.load_chunks(job.id)[0]
        assert chunk.completed_at == now
        assert chunk.started_at == now

    def test_rate_and_eta_populated(self, store, job):
        later = job.started_at + timedelta(seconds=10)
        updated = store.record_chunk_result(job.id, 0, records=20, now=later)
        assert updated.processing_rate == pytest.approx(2.0)
        # 2 chunks left at 10s each
        assert updated.estimated_completion_at == later + timedelta(seconds=20)

    def test_counter_invariants_hold_for_any_order(self, store):
        """Random orders of successes, failures and duplicates keep the counters
        consistent with the chunk list and records never decrease."""
        rng = random.Random(1234)
        for _ in range(10):
            n = rng.randint(1, 8)
            job = store.create_job(tenant_id=1, sync_type="metrics", chunks=_chunks(n))
            order = list(range(n)) + [rng.randrange(n) for _ in range(3)]
            rng.shuffle(order)
            previous_records = 0
            for index in order:
                error = "boom" if rng.random() < 0.3 else None
                store.record_chunk_result(job.id, index, records=rng.randint(0, 50), error=error)
                stored = store.get_job(job.id)
                chunks = store.load_chunks(job.id)
                completed, failed, records = tally_chunks(chunks)
                assert stored.completed_chunks == completed
                assert stored.failed_chunks == failed
                assert stored.completed_chunks + stored.failed_chunks <= stored.total_chunks
                assert stored.records_synced >= previous_records
                assert stored.records_synced == records
                previous_records = stored.records_synced
            assert stored.completed_chunks + stored.failed_chunks == n


class TestComputeRateAndEta:
    def test_no_finished_chunks_has_no_eta(self):
        start = datetime(2026, 1, 1)
        rate, eta = compute_rate_and_eta(0, 0, 5, start, start + timedelta(seconds=5))
        assert rate == 0.0
        assert eta is None

    def test_zero_elapsed_rate_is_zero(self):
        start = datetime(2026, 1, 1)
        rate, _ = compute_rate_and_eta(10, 1, 5, start, start)
        assert rate == 0.0

    def test_last_chunk_eta_is_now(self):
        start = datetime(2026, 1, 1)
        now = start + timedelta(seconds=30)
        _, eta = compute_rate_and_eta(10, 3, 3, start, now)
        assert eta == now


class TestSyncLog:
    def test_start_and_finish(self, store):
        log = store.start_log(1, "metrics")
        assert log.status == RUNNING
        done = store.finish_log(
            log.id, status=COMPLETED, records_processed=12, details={"timedOut": False}
        )
        assert done.status == COMPLETED
        assert done.records_processed == 12
        assert done.completed_at is not None
        assert json.loads(done.details) == {"timedOut": False}
