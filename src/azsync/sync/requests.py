"""Entry-point request models, discriminated on `action`."""
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from azsync.models.sync import ChunkRecord

SYNC_TYPES = ("metrics", "sql-insights", "costs")
SyncType = Literal["metrics", "sql-insights", "costs"]

# The inventory sync has no historical form
BoundedSyncType = Literal["metrics", "sql-insights", "costs", "resources"]


class BoundedSyncRequest(BaseModel):
    """Recent data, finished (or timed out) inside one invocation."""

    action: Literal["sync"] = "sync"
    sync_type: BoundedSyncType
    tenant_id: int
    hours: Optional[int] = Field(default=None, ge=1)  # lookback; per-kind default if None


class HistoricalSyncRequest(BaseModel):
    """Backfill over `days`, split into chunks that run one per invocation."""

    action: Literal["historical-sync"] = "historical-sync"
    sync_type: SyncType
    tenant_id: int
    days: Optional[int] = Field(default=None, ge=1)


class ContinuationPayload(BaseModel):
    """Self-sent message that carries a chunked run to its next chunk.

    The counters and chunk_details mirror the job row at send time. The job
    row stays authoritative; these are for tracing only.
    """

    action: Literal["continue"] = "continue"
    job_id: int
    tenant_id: int
    sync_type: str
    chunk_index: int
    completed_chunks: int = 0
    failed_chunks: int = 0
    records_synced: int = 0
    chunk_details: List[ChunkRecord] = []


SyncRequest = Annotated[
    Union[BoundedSyncRequest, HistoricalSyncRequest, ContinuationPayload],
    Field(discriminator="action"),
]
