"""Closing write for a chunked run."""
import logging
from datetime import datetime
from typing import Optional

from sqlmodel import Session

from azsync.models.sync import COMPLETED, FAILED, TERMINAL_STATUSES, SyncJob

logger = logging.getLogger(__name__)


def terminal_status(completed_chunks: int, failed_chunks: int, total_chunks: int) -> str:
    """'failed' only when every chunk failed; partial failure is still 'completed'."""
    if total_chunks > 0 and failed_chunks == total_chunks:
        return FAILED
    return COMPLETED


def finalize_job(engine, job_id: int, now: Optional[datetime] = None) -> SyncJob:
    """
    Write the terminal status of a job whose chunks have all finished.

    Counters are taken from the stored row. Per-chunk failure detail stays in
    chunk_details for operators to inspect.
    """
    now = now or datetime.utcnow()
    with Session(engine) as s:
        job = s.get(SyncJob, job_id)
        if job.status in TERMINAL_STATUSES:
            # Already finalized, or reaped while the last chunk ran
            return job
        job.status = terminal_status(job.completed_chunks, job.failed_chunks, job.total_chunks)
        job.current_operation = None
        job.current_resource_name = None
        job.estimated_completion_at = None
        job.completed_at = now
        if job.status == FAILED:
            job.error_message = "All chunks failed"
        s.add(job)
        s.commit()
        s.refresh(job)

    logger.info(
        "%s job %s %s: %d records, %d/%d chunks failed",
        job.sync_type, job.id, job.status, job.records_synced,
        job.failed_chunks, job.total_chunks,
    )
    return job
