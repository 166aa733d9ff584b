"""Sync entry point and progress routes."""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from pydantic import BaseModel, ValidationError
from sqlmodel import Session, select

from azsync.azure.auth import TenantNotFoundError
from azsync.config import get_settings
from azsync.db.engine import get_session
from azsync.models.sync import ChunkRecord, SyncJob, SyncLog, load_chunk_details
from azsync.sync.engine import SyncEngine, parse_request
from azsync.sync.requests import ContinuationPayload

router = APIRouter()


class JobProgressResponse(BaseModel):
    id: int
    tenant_id: int
    sync_type: str
    status: str
    total_chunks: int
    completed_chunks: int
    failed_chunks: int
    records_synced: int
    current_operation: Optional[str]
    current_resource_name: Optional[str]
    processing_rate: Optional[float]
    estimated_completion_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error_message: Optional[str]
    chunks: List[ChunkRecord] = []

    @classmethod
    def from_job(cls, job: SyncJob, with_chunks: bool = True) -> "JobProgressResponse":
        return cls(
            id=job.id,
            tenant_id=job.tenant_id,
            sync_type=job.sync_type,
            status=job.status,
            total_chunks=job.total_chunks,
            completed_chunks=job.completed_chunks,
            failed_chunks=job.failed_chunks,
            records_synced=job.records_synced,
            current_operation=job.current_operation,
            current_resource_name=job.current_resource_name,
            processing_rate=job.processing_rate,
            estimated_completion_at=job.estimated_completion_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            error_message=job.error_message,
            chunks=load_chunk_details(job.chunk_details) if with_chunks else [],
        )


class SyncLogResponse(BaseModel):
    id: int
    tenant_id: int
    sync_type: str
    status: str
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    records_processed: int
    error_message: Optional[str]
    details: Optional[Dict[str, Any]]


def get_sync_engine(request: Request) -> SyncEngine:
    """FastAPI dependency: the SyncEngine built in the app lifespan."""
    return request.app.state.sync_engine


def _check_service_token(authorization: Optional[str]) -> None:
    token = get_settings().service_token
    if token and authorization != f"Bearer {token}":
        raise HTTPException(status_code=401, detail="Invalid service token")


@router.post("")
async def sync(
    body: Dict[str, Any],
    background_tasks: BackgroundTasks,
    sync_engine: SyncEngine = Depends(get_sync_engine),
    authorization: Optional[str] = Header(default=None),
):
    """
    Single entry point: bounded sync, historical-sync, or continue.

    `continue` is acknowledged immediately and the chunk runs in the
    background, so the sender is never held for the chunk's duration.
    """
    try:
        request = parse_request(body)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors(include_url=False))

    if isinstance(request, ContinuationPayload):
        _check_service_token(authorization)
        background_tasks.add_task(sync_engine.run_chunk, request)
        return {
            "success": True,
            "message": f"Chunk {request.chunk_index} accepted",
            "progressId": request.job_id,
        }

    try:
        return await sync_engine.handle(request)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TenantNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.get("/progress/{job_id}", response_model=JobProgressResponse)
def job_progress(job_id: int, session: Session = Depends(get_session)):
    """Poll one chunked run."""
    job = session.get(SyncJob, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Sync job {job_id} not found")
    return JobProgressResponse.from_job(job)


@router.get("/progress", response_model=List[JobProgressResponse])
def list_jobs(
    tenant_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 20,
    session: Session = Depends(get_session),
):
    """Most recent chunked runs, newest first, without per-chunk detail."""
    query = select(SyncJob)
    if tenant_id is not None:
        query = query.where(SyncJob.tenant_id == tenant_id)
    if status is not None:
        query = query.where(SyncJob.status == status)
    jobs = session.exec(query.order_by(SyncJob.id.desc()).limit(limit)).all()
    return [JobProgressResponse.from_job(j, with_chunks=False) for j in jobs]


@router.get("/logs", response_model=List[SyncLogResponse])
def list_logs(
    tenant_id: Optional[int] = None,
    limit: int = 20,
    session: Session = Depends(get_session),
):
    """Most recent bounded runs, newest first."""
    query = select(SyncLog)
    if tenant_id is not None:
        query = query.where(SyncLog.tenant_id == tenant_id)
    logs = session.exec(query.order_by(SyncLog.id.desc()).limit(limit)).all()
    return [
        SyncLogResponse(
            id=log.id,
            tenant_id=log.tenant_id,
            sync_type=log.sync_type,
            status=log.status,
            started_at=log.started_at,
            completed_at=log.completed_at,
            records_processed=log.records_processed,
            error_message=log.error_message,
            details=json.loads(log.details) if log.details else None,
        )
        for log in logs
    ]


@router.post("/reap")
def reap(sync_engine: SyncEngine = Depends(get_sync_engine)):
    """Fail runs stuck past the maximum runtime."""
    result = sync_engine.reap()
    return {"jobs": result.jobs, "logs": result.logs, "total": result.total}
