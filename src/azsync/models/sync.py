"""Sync bookkeeping models: chunked jobs, per-chunk records, and bounded run logs."""
import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlmodel import Field, SQLModel

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATUSES = (COMPLETED, FAILED)

STUCK_JOB_ERROR = "exceeded maximum runtime"


class ChunkRecord(BaseModel):
    """One work unit of a SyncJob, serialized into SyncJob.chunk_details.

    Carries the identifying data of its work unit so a continuation can
    rebuild the unit from chunk_index alone.
    """

    chunk_index: int
    label: str
    status: str = PENDING  # "pending", "running", "completed", "failed"
    records: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    entity_id: Optional[int] = None
    entity_name: Optional[str] = None
    scope_id: Optional[int] = None
    scope_name: Optional[str] = None
    params: Dict[str, Any] = {}

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SyncJob(SQLModel, table=True):
    """One row per historical (chunked) run. Never deleted."""

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: int = Field(index=True)
    sync_type: str = Field(index=True)  # "metrics", "sql-insights", "costs"
    status: str = Field(default=PENDING, index=True)
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    total_chunks: int = 0
    completed_chunks: int = 0
    failed_chunks: int = 0
    records_synced: int = 0

    # Live progress for observers
    current_operation: Optional[str] = None
    current_resource_name: Optional[str] = None
    processing_rate: Optional[float] = None  # records/sec
    estimated_completion_at: Optional[datetime] = None

    chunk_details: str = "[]"  # JSON list of ChunkRecord

    started_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class SyncLog(SQLModel, table=True):
    """Records each bounded (single-invocation) sync attempt."""

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: int = Field(index=True)
    sync_type: str
    status: str = Field(default=RUNNING, index=True)  # "running", "completed", "failed"
    started_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    completed_at: Optional[datetime] = None
    records_processed: int = 0
    error_message: Optional[str] = None
    details: Optional[str] = None  # JSON blob


def load_chunk_details(raw: Optional[str]) -> List[ChunkRecord]:
    """Parse the chunk_details column back into ordered ChunkRecords."""
    if not raw:
        return []
    return [ChunkRecord.model_validate(item) for item in json.loads(raw)]


def dump_chunk_details(chunks: List[ChunkRecord]) -> str:
    return json.dumps([c.model_dump(mode="json") for c in chunks])
