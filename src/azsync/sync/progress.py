"""
Progress Store: the durable state of sync runs.

SyncJob rows track chunked runs chunk by chunk; SyncLog rows track bounded
runs start to finish. Observers poll these rows; nothing is pushed.

Counters on a SyncJob (completed_chunks, failed_chunks, records_synced) are
always recomputed from the persisted chunk_details list, never incremented
from values carried in a continuation payload. A chunk that is already
completed or failed is never recorded again, so a duplicated continuation
cannot double-count.
"""
import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import Session

from azsync.models.sync import (
    COMPLETED,
    FAILED,
    RUNNING,
    ChunkRecord,
    SyncJob,
    SyncLog,
    dump_chunk_details,
    load_chunk_details,
)

logger = logging.getLogger(__name__)


class JobNotFoundError(RuntimeError):
    """Raised when a progress id does not resolve to a SyncJob."""


def tally_chunks(chunks: List[ChunkRecord]) -> Tuple[int, int, int]:
    """Return (completed_chunks, failed_chunks, records_synced) for a chunk list."""
    completed = sum(1 for c in chunks if c.status == COMPLETED)
    failed = sum(1 for c in chunks if c.status == FAILED)
    records = sum(c.records for c in chunks if c.status == COMPLETED)
    return completed, failed, records


def compute_rate_and_eta(
    records_synced: int,
    finished_chunks: int,
    total_chunks: int,
    started_at: datetime,
    now: datetime,
) -> Tuple[float, Optional[datetime]]:
    """Throughput in records/sec and a linear ETA from the average chunk duration."""
    elapsed = (now - started_at).total_seconds()
    rate = round(records_synced / elapsed, 2) if elapsed > 0 else 0.0
    if finished_chunks <= 0:
        return rate, None
    remaining = max(total_chunks - finished_chunks, 0)
    avg_seconds = elapsed / finished_chunks
    return rate, now + timedelta(seconds=remaining * avg_seconds)


class ProgressStore:
    """Reads and writes SyncJob / SyncLog rows."""

    def __init__(self, engine):
        self.engine = engine

    # ─── SyncJob ──────────────────────────────────────────────────────────────

    def create_job(
        self,
        *,
        tenant_id: int,
        sync_type: str,
        chunks: List[ChunkRecord],
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> SyncJob:
        job = SyncJob(
            tenant_id=tenant_id,
            sync_type=sync_type,
            status=RUNNING,
            start_date=start_date,
            end_date=end_date,
            total_chunks=len(chunks),
            chunk_details=dump_chunk_details(chunks),
            started_at=datetime.utcnow(),
        )
        with Session(self.engine) as s:
            s.add(job)
            s.commit()
            s.refresh(job)
        logger.info(
            "Created %s job %s for tenant %s with %d chunks",
            sync_type, job.id, tenant_id, job.total_chunks,
        )
        return job

    def get_job(self, job_id: int) -> SyncJob:
        with Session(self.engine) as s:
            job = s.get(SyncJob, job_id)
        if job is None:
            raise JobNotFoundError(f"Sync job {job_id} not found")
        return job

    def load_chunks(self, job_id: int) -> List[ChunkRecord]:
        return load_chunk_details(self.get_job(job_id).chunk_details)

    def mark_chunk_running(
        self,
        job_id: int,
        chunk_index: int,
        *,
        operation: str,
        resource_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ChunkRecord:
        now = now or datetime.utcnow()
        with Session(self.engine) as s:
            job = s.get(SyncJob, job_id)
            chunks = load_chunk_details(job.chunk_details)
            chunk = chunks[chunk_index]
            chunk.status = RUNNING
            chunk.started_at = now
            job.chunk_details = dump_chunk_details(chunks)
            job.current_operation = operation
            job.current_resource_name = resource_name or chunk.label
            s.add(job)
            s.commit()
        return chunk

    def record_chunk_result(
        self,
        job_id: int,
        chunk_index: int,
        *,
        records: int,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[SyncJob]:
        """
        Set a chunk to completed (error is None) or failed, then recompute the
        job's counters, throughput and ETA from the chunk list.

        Returns:
            The updated SyncJob, or None if the chunk was already finished
            (duplicate invocation; nothing is changed).
        """
        now = now or datetime.utcnow()
        with Session(self.engine) as s:
            job = s.get(SyncJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Sync job {job_id} not found")
            chunks = load_chunk_details(job.chunk_details)
            chunk = chunks[chunk_index]
            if chunk.is_finished:
                logger.warning(
                    "Job %s chunk %d already %s; ignoring duplicate result",
                    job_id, chunk_index, chunk.status,
                )
                return None

            if error is None:
                chunk.status = COMPLETED
                chunk.records = records
            else:
                chunk.status = FAILED
                chunk.records = 0
                chunk.error = error
            chunk.completed_at = now
            if chunk.started_at is None:
                chunk.started_at = now

            completed, failed, total_records = tally_chunks(chunks)
            job.chunk_details = dump_chunk_details(chunks)
            job.completed_chunks = completed
            job.failed_chunks = failed
            job.records_synced = max(job.records_synced, total_records)
            job.processing_rate, job.estimated_completion_at = compute_rate_and_eta(
                job.records_synced, completed + failed, job.total_chunks, job.started_at, now
            )
            s.add(job)
            s.commit()
            s.refresh(job)
        return job

    # ─── SyncLog ──────────────────────────────────────────────────────────────

    def start_log(self, tenant_id: int, sync_type: str) -> SyncLog:
        log = SyncLog(
            tenant_id=tenant_id,
            sync_type=sync_type,
            status=RUNNING,
            started_at=datetime.utcnow(),
        )
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def finish_log(
        self,
        log_id: int,
        *,
        status: str,
        records_processed: int = 0,
        error_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> SyncLog:
        with Session(self.engine) as s:
            log = s.get(SyncLog, log_id)
            log.status = status
            log.completed_at = datetime.utcnow()
            log.records_processed = records_processed
            log.error_message = error_message
            log.details = json.dumps(details) if details is not None else None
            s.add(log)
            s.commit()
            s.refresh(log)
        return log
