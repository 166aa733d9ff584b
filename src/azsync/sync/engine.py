"""
SyncEngine: the single entry point for every sync request.

Three request shapes (see azsync.sync.requests):

  sync             bounded run: every unit in time-budgeted parallel batches
                   inside this invocation; returns a summary. The
                   "resources" kind refreshes the tenant inventory instead.
  historical-sync  chunked run: enumerate units, create a SyncJob, send
                   chunk 0, return {progressId, totalUnits} immediately.
  continue         one step of a chunked run: execute the chunk named in the
                   payload, record it, then continue or finalize.

Flow for one `continue` step:
  1. Load the SyncJob; stop if it is terminal or the chunk already finished
  2. Mark the chunk running and publish the current operation
  3. Execute the unit (fresh tokens, fault-isolated sub-fetches)
  4. Record the result; counters are recomputed from chunk_details
  5. Send the next chunk after the inter-chunk delay, or finalize
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import TypeAdapter
from sqlmodel import Session, select

from azsync.azure.auth import TenantNotFoundError
from azsync.config import get_settings
from azsync.models.azure import AzureTenant
from azsync.models.sync import COMPLETED, FAILED, TERMINAL_STATUSES, load_chunk_details
from azsync.sync.batch import process_batched
from azsync.sync.continuation import ContinuationScheduler, ContinuationTransport
from azsync.sync.enumerator import NoWorkError, build_chunk_records, enumerate_work_units
from azsync.sync.executor import EXECUTOR_CLASSES, ChunkExecutor, ChunkResult, RunContext
from azsync.sync.finalizer import finalize_job
from azsync.sync.inventory import sync_inventory
from azsync.sync.progress import ProgressStore
from azsync.sync.reaper import ReapResult, reap_stuck_jobs
from azsync.sync.requests import (
    BoundedSyncRequest,
    ContinuationPayload,
    HistoricalSyncRequest,
    SyncRequest,
)

logger = logging.getLogger(__name__)

# Lookback of a bounded run when the request names none
BOUNDED_LOOKBACK = {
    "metrics": timedelta(hours=1),
    "sql-insights": timedelta(hours=24),
    "costs": timedelta(days=7),
}

INVENTORY_SYNC_TYPE = "resources"

_request_adapter = TypeAdapter(SyncRequest)


def parse_request(body: Dict[str, Any]):
    """Validate a raw request dict into its concrete request model."""
    return _request_adapter.validate_python(body)


class SyncEngine:
    """Runs bounded syncs, starts chunked syncs, and executes their chunks."""

    def __init__(
        self,
        engine,
        credentials,
        client,
        transport: ContinuationTransport,
        *,
        executors: Optional[Dict[str, ChunkExecutor]] = None,
        chunk_delay_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
        max_runtime: Optional[timedelta] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine for both the progress store and synced data.
            credentials: AzureCredentialProvider (or AsyncMock in tests).
            client: AzureClient (or AsyncMock in tests).
            transport: How continuations are delivered back to run_payload().
            executors: sync_type → executor; defaults to one of each kind.
            Remaining args override the corresponding Settings values.
        """
        settings = get_settings()
        self.engine = engine
        self.credentials = credentials
        self.client = client
        self.progress = ProgressStore(engine)
        self.executors = executors or {
            sync_type: cls(engine, credentials, client, subfetch_timeout=settings.subfetch_timeout_seconds)
            for sync_type, cls in EXECUTOR_CLASSES.items()
        }
        self.batch_size = batch_size or settings.bounded_batch_size
        self.time_budget_seconds = time_budget_seconds or settings.bounded_time_budget_seconds
        self.max_runtime = max_runtime or timedelta(minutes=settings.stuck_job_max_runtime_minutes)

        delay = settings.chunk_delay_seconds if chunk_delay_seconds is None else chunk_delay_seconds
        self.transport = transport
        transport.bind(self.run_payload)
        self.continuations = ContinuationScheduler(
            transport, finalize=lambda job_id: finalize_job(engine, job_id), delay_seconds=delay
        )

    # ─── Dispatch ─────────────────────────────────────────────────────────────

    async def handle(self, request) -> Dict[str, Any]:
        """Dispatch a parsed request model (or raw dict) to its handler."""
        if isinstance(request, dict):
            request = parse_request(request)
        if isinstance(request, ContinuationPayload):
            return await self.run_chunk(request)
        if isinstance(request, HistoricalSyncRequest):
            return await self.start_historical(request.sync_type, request.tenant_id, request.days)
        if isinstance(request, BoundedSyncRequest):
            return await self.run_bounded(request.sync_type, request.tenant_id, request.hours)
        raise ValueError(f"Unsupported request: {request!r}")

    async def run_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Transport entry: execute a delivered continuation dict."""
        return await self.run_chunk(ContinuationPayload.model_validate(payload))

    def reap(self) -> ReapResult:
        return reap_stuck_jobs(self.engine, max_runtime=self.max_runtime)

    def enabled_tenant_ids(self) -> List[int]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(AzureTenant.id).where(AzureTenant.is_enabled == True)  # noqa: E712
                .order_by(AzureTenant.id)
            ).all())

    # ─── Historical (chunked) ─────────────────────────────────────────────────

    async def start_historical(
        self, sync_type: str, tenant_id: int, days: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Enumerate the run, create its SyncJob and send chunk 0.

        Returns immediately; callers poll the job by progressId.

        Raises:
            ValueError: unknown sync type or days out of range.
            TenantNotFoundError: tenant does not exist.
        """
        executor = self._executor(sync_type)
        days = days or executor.default_days
        if days < 1 or days > executor.max_days:
            raise ValueError(f"Maximum historical period for {sync_type} is {executor.max_days} days")

        self.reap()
        self._require_tenant(tenant_id)
        ctx = RunContext.for_days(tenant_id, days)

        try:
            units = enumerate_work_units(executor.list_entities(ctx), executor.list_scopes(ctx))
        except NoWorkError as exc:
            logger.info("Historical %s sync for tenant %s: nothing to sync (%s)", sync_type, tenant_id, exc)
            return {
                "success": True,
                "message": f"Nothing to sync: {exc}",
                "progressId": None,
                "totalUnits": 0,
            }

        job = self.progress.create_job(
            tenant_id=tenant_id,
            sync_type=sync_type,
            chunks=build_chunk_records(units),
            start_date=ctx.start_date,
            end_date=ctx.end_date,
        )
        self.continuations.start(job)
        return {
            "success": True,
            "message": f"Historical {sync_type} sync started for {days} days",
            "progressId": job.id,
            "totalUnits": job.total_chunks,
        }

    async def run_chunk(self, payload: ContinuationPayload) -> Dict[str, Any]:
        """Execute one chunk of a chunked run, then continue or finalize."""
        job = self.progress.get_job(payload.job_id)
        index = payload.chunk_index

        if job.status in TERMINAL_STATUSES:
            logger.warning("Job %s is %s; dropping chunk %d", job.id, job.status, index)
            return {"success": False, "skipped": True, "message": f"Job already {job.status}"}

        chunks = load_chunk_details(job.chunk_details)
        if not 0 <= index < len(chunks):
            raise ValueError(f"Chunk index {index} out of range for job {job.id}")
        if chunks[index].is_finished:
            logger.warning("Job %s chunk %d already %s; skipping", job.id, index, chunks[index].status)
            return {"success": True, "skipped": True, "message": "Chunk already processed"}

        if payload.records_synced != job.records_synced:
            logger.debug(
                "Job %s payload records %d differ from stored %d; using stored",
                job.id, payload.records_synced, job.records_synced,
            )

        executor = self._executor(job.sync_type)
        logger.info("Processing chunk %d/%d of job %s: %s", index + 1, job.total_chunks, job.id, chunks[index].label)
        chunk = self.progress.mark_chunk_running(
            job.id, index,
            operation=executor.operation,
            resource_name=chunks[index].entity_name or chunks[index].label,
        )

        result = await executor.execute(self._job_context(job), chunk)
        if result.success:
            logger.info("Chunk %d of job %s completed: %d records", index + 1, job.id, result.records)
        updated = self.progress.record_chunk_result(
            job.id, index,
            records=result.records,
            error=None if result.success else (result.error or "Unknown error"),
        )
        if updated is None:
            return {"success": True, "skipped": True, "message": "Chunk already processed"}

        self.continuations.after_chunk(updated, index)
        return {
            "success": result.success,
            "chunkIndex": index,
            "records": result.records,
            "error": result.error,
        }

    # ─── Bounded ──────────────────────────────────────────────────────────────

    async def run_bounded(
        self,
        sync_type: str,
        tenant_id: int,
        hours: Optional[int] = None,
        start_time: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Sync recent data for every unit inside this invocation.

        Stops starting new batches once the time budget is spent and reports
        timedOut; nothing is scheduled for the remainder.
        """
        if sync_type == INVENTORY_SYNC_TYPE:
            return await self.sync_resources(tenant_id)

        start_time = time.monotonic() if start_time is None else start_time
        executor = self._executor(sync_type)
        self.reap()
        self._require_tenant(tenant_id)

        lookback = timedelta(hours=hours) if hours else BOUNDED_LOOKBACK[sync_type]
        today = datetime.utcnow().date()
        ctx = RunContext(
            tenant_id=tenant_id,
            start_date=today - timedelta(days=max(lookback.days, 0)),
            end_date=today,
            lookback=lookback,
            deadline=start_time + self.time_budget_seconds,
        )
        log = self.progress.start_log(tenant_id, sync_type)

        try:
            units = enumerate_work_units(executor.list_entities(ctx), executor.list_scopes(ctx))
        except NoWorkError as exc:
            self.progress.finish_log(log.id, status=COMPLETED, details={"message": str(exc)})
            return _bounded_summary(True, f"Nothing to sync: {exc}", 0, 0, 0, False)

        try:
            tokens = await executor.acquire_tokens(tenant_id)
        except Exception as exc:
            logger.error("Bounded %s sync for tenant %s: credentials failed: %s", sync_type, tenant_id, exc)
            self.progress.finish_log(log.id, status=FAILED, error_message=str(exc))
            return _bounded_summary(False, str(exc), 0, 0, len(units), False)

        chunks = build_chunk_records(units)

        async def process(chunk) -> ChunkResult:
            return await executor.execute(ctx, chunk, tokens)

        outcome = await process_batched(
            chunks, process,
            batch_size=self.batch_size,
            start_time=start_time,
            budget_seconds=self.time_budget_seconds,
        )

        results: List[ChunkResult] = outcome.results
        synced = sum(r.records for r in results if r.success)
        failed_units = [r for r in results if not r.success]
        failed_sub_fetches: Dict[str, int] = {}
        for r in results:
            for name in r.failed_sub_fetches:
                failed_sub_fetches[name] = failed_sub_fetches.get(name, 0) + 1

        all_failed = outcome.processed_count > 0 and len(failed_units) == outcome.processed_count
        status = FAILED if all_failed else COMPLETED
        message = f"Synced {synced} {sync_type} records for {outcome.processed_count}/{len(chunks)} units"
        if outcome.timed_out:
            message += " (stopped early: time budget reached)"

        self.progress.finish_log(
            log.id,
            status=status,
            records_processed=synced,
            error_message=failed_units[0].error if all_failed else None,
            details={
                "message": message,
                "processed": outcome.processed_count,
                "total": len(chunks),
                "timedOut": outcome.timed_out,
                "failedUnits": len(failed_units),
                "failedSubFetches": failed_sub_fetches,
            },
        )
        logger.info("Bounded %s sync for tenant %s: %s", sync_type, tenant_id, message)
        return _bounded_summary(
            not all_failed, message, synced, outcome.processed_count, len(chunks), outcome.timed_out
        )

    # ─── Inventory ────────────────────────────────────────────────────────────

    async def sync_resources(self, tenant_id: int) -> Dict[str, Any]:
        """Refresh the resources and workspaces every other kind enumerates over."""
        self.reap()
        tenant = self._require_tenant(tenant_id)
        log = self.progress.start_log(tenant_id, INVENTORY_SYNC_TYPE)

        try:
            result = await sync_inventory(self.engine, self.credentials, self.client, tenant)
        except Exception as exc:
            logger.error("Resource sync for tenant %s failed: %s", tenant_id, exc)
            self.progress.finish_log(log.id, status=FAILED, error_message=str(exc))
            return _bounded_summary(False, str(exc), 0, 0, 0, False)

        synced = result.resources + result.workspaces
        message = f"Synced {result.resources} resources and {result.workspaces} workspaces"
        self.progress.finish_log(
            log.id,
            status=COMPLETED,
            records_processed=synced,
            details={
                "message": message,
                "resources": result.resources,
                "workspaces": result.workspaces,
                "failedWorkspaces": result.failed_workspaces,
            },
        )
        logger.info("Resource sync for tenant %s: %s", tenant_id, message)
        return _bounded_summary(True, message, synced, result.resources, result.resources, False)

    # ─── Helpers ──────────────────────────────────────────────────────────────

    def _executor(self, sync_type: str) -> ChunkExecutor:
        try:
            return self.executors[sync_type]
        except KeyError:
            raise ValueError(f"Unknown sync type: {sync_type}") from None

    def _require_tenant(self, tenant_id: int) -> AzureTenant:
        with Session(self.engine) as s:
            tenant = s.get(AzureTenant, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} not found")
        return tenant

    @staticmethod
    def _job_context(job) -> RunContext:
        end = job.end_date or datetime.utcnow().date()
        start = job.start_date or end
        return RunContext(
            tenant_id=job.tenant_id,
            start_date=start,
            end_date=end,
            lookback=max(end - start, timedelta(hours=1)),
        )


def _bounded_summary(
    success: bool, message: str, synced: int, processed: int, total: int, timed_out: bool
) -> Dict[str, Any]:
    return {
        "success": success,
        "message": message,
        "syncedCount": synced,
        "processedCount": processed,
        "totalCount": total,
        "timedOut": timed_out,
    }


def build_sync_engine(engine=None, scheduler=None) -> SyncEngine:
    """
    Wire a SyncEngine from settings.

    With the default "scheduler" transport, continuations are one-shot jobs
    on `scheduler`, which the caller must start. The "http" transport posts
    them back to continuation_url instead.
    """
    from azsync.azure.auth import AzureCredentialProvider
    from azsync.azure.client import AzureClient
    from azsync.db.engine import get_engine
    from azsync.sync.continuation import APSchedulerTransport, HttpCallbackTransport

    settings = get_settings()
    engine = engine or get_engine()

    if settings.continuation_transport == "http":
        transport = HttpCallbackTransport(settings.continuation_url, settings.service_token)
    elif settings.continuation_transport == "scheduler":
        if scheduler is None:
            raise ValueError("The scheduler continuation transport needs a scheduler")
        transport = APSchedulerTransport(scheduler)
    else:
        raise ValueError(f"Unknown continuation transport: {settings.continuation_transport}")

    return SyncEngine(engine, AzureCredentialProvider(engine), AzureClient(), transport)
