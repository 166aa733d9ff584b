"""
Stuck-job reaper.

A chunked run whose continuation was lost (transport failure, process killed
between chunks) never reaches a terminal state on its own. reap_stuck_jobs
fails every 'running' SyncJob whose last activity is older than the maximum
runtime, and every 'running' SyncLog started before it. It runs at the start
of every sync request and on an interval from the scheduler.

A SyncJob's last activity is the newest chunk start or finish recorded in its
chunk_details, or its own started_at before any chunk has run. A long run
that keeps making progress is therefore never reaped; only a chain that has
stopped moving is.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlmodel import Session, select

from azsync.models.sync import (
    FAILED,
    RUNNING,
    STUCK_JOB_ERROR,
    SyncJob,
    SyncLog,
    load_chunk_details,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RUNTIME = timedelta(minutes=10)


@dataclass
class ReapResult:
    jobs: int = 0
    logs: int = 0

    @property
    def total(self) -> int:
        return self.jobs + self.logs


def last_activity_at(job: SyncJob) -> datetime:
    """Newest of job.started_at and every chunk's started_at / completed_at."""
    latest = job.started_at
    for chunk in load_chunk_details(job.chunk_details):
        for moment in (chunk.started_at, chunk.completed_at):
            if moment is not None and moment > latest:
                latest = moment
    return latest


def reap_stuck_jobs(
    engine,
    max_runtime: timedelta = DEFAULT_MAX_RUNTIME,
    now: Optional[datetime] = None,
) -> ReapResult:
    """
    Fail runs stuck in 'running' with no activity since now - max_runtime.

    Returns:
        How many SyncJob and SyncLog rows were failed.
    """
    now = now or datetime.utcnow()
    cutoff = now - max_runtime
    result = ReapResult()

    with Session(engine) as s:
        # Last activity is never before started_at, so this narrows the scan
        candidates = s.exec(
            select(SyncJob).where(SyncJob.status == RUNNING, SyncJob.started_at < cutoff)
        ).all()
        for job in candidates:
            if last_activity_at(job) >= cutoff:
                continue
            job.status = FAILED
            job.completed_at = now
            job.error_message = STUCK_JOB_ERROR
            job.current_operation = None
            job.current_resource_name = None
            s.add(job)
            result.jobs += 1

        stuck_logs = s.exec(
            select(SyncLog).where(SyncLog.status == RUNNING, SyncLog.started_at < cutoff)
        ).all()
        for log in stuck_logs:
            log.status = FAILED
            log.completed_at = now
            log.error_message = STUCK_JOB_ERROR
            s.add(log)
        result.logs = len(stuck_logs)
        s.commit()

    if result.total:
        logger.warning(
            "Reaped %d stuck jobs and %d stuck logs (idle longer than %s)",
            result.jobs, result.logs, max_runtime,
        )
    return result
