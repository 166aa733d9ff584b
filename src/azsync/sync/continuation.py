"""
Continuation scheduling for chunked runs.

After every chunk the ContinuationScheduler either sends exactly one
ContinuationPayload for the next chunk, after a fixed delay, or hands the
job to the finalizer. Sending is fire-and-forget: the current invocation
never waits for, or learns about, the next chunk's outcome. A continuation
that is lost in transit is caught later by the reaper.

Transports decide how "run the same logic later with this payload" happens:

  APSchedulerTransport   one-shot `date` job on the in-process scheduler
  HttpCallbackTransport  POST to the service's own /sync endpoint
  QueueTransport         in-memory queue drained by a local loop (CLI, tests)
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

import httpx

from azsync.models.sync import TERMINAL_STATUSES, SyncJob, load_chunk_details
from azsync.sync.requests import ContinuationPayload

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_DELAY_SECONDS = 2.0

Runner = Callable[[Dict[str, Any]], Awaitable[Any]]


class ContinuationTransport:
    """Delivers a payload to the entry point, later, without blocking."""

    runner: Optional[Runner] = None

    def bind(self, runner: Runner) -> None:
        """Register the coroutine that executes a delivered payload."""
        self.runner = runner

    def send(self, payload: ContinuationPayload, delay_seconds: float) -> None:
        raise NotImplementedError


class APSchedulerTransport(ContinuationTransport):
    """Schedule the next chunk as a one-shot job on an APScheduler scheduler.

    Job ids are derived from (job_id, chunk_index), so sending the same
    continuation twice replaces the pending job instead of adding a second one.
    """

    def __init__(self, scheduler):
        self.scheduler = scheduler

    @staticmethod
    def job_id(payload: ContinuationPayload) -> str:
        return f"sync-job-{payload.job_id}-chunk-{payload.chunk_index}"

    def send(self, payload: ContinuationPayload, delay_seconds: float) -> None:
        if self.runner is None:
            raise RuntimeError("APSchedulerTransport has no runner bound")
        self.scheduler.add_job(
            self.runner,
            trigger="date",
            run_date=datetime.now(timezone.utc) + timedelta(seconds=delay_seconds),
            id=self.job_id(payload),
            replace_existing=True,
            misfire_grace_time=300,
            kwargs={"payload": payload.model_dump(mode="json")},
        )


class HttpCallbackTransport(ContinuationTransport):
    """POST the payload back to the service from a detached task.

    For deployments where each request may land on a different worker
    process: the continuation survives the sender as long as the receiving
    endpoint is up.
    """

    def __init__(self, url: str, token: str = "", http: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.token = token
        self._http = http
        self._pending: Set[asyncio.Task] = set()

    def send(self, payload: ContinuationPayload, delay_seconds: float) -> None:
        task = asyncio.get_running_loop().create_task(
            self._post_later(payload.model_dump(mode="json"), delay_seconds)
        )
        # Hold a reference so the task isn't garbage collected mid-flight
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post_later(self, body: Dict[str, Any], delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            if self._http is not None:
                response = await self._http.post(self.url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=30.0) as http:
                    response = await http.post(self.url, json=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "Continuation for job %s chunk %s was not delivered: %s",
                body.get("job_id"), body.get("chunk_index"), exc,
            )


class QueueTransport(ContinuationTransport):
    """Collect continuations in memory for a local loop to drain in order."""

    def __init__(self):
        self.queue: "asyncio.Queue[Tuple[ContinuationPayload, float]]" = asyncio.Queue()

    def send(self, payload: ContinuationPayload, delay_seconds: float) -> None:
        self.queue.put_nowait((payload, delay_seconds))

    def empty(self) -> bool:
        return self.queue.empty()

    def next(self) -> Tuple[ContinuationPayload, float]:
        return self.queue.get_nowait()


class ContinuationScheduler:
    """Decides, after each chunk, between 'send the next chunk' and 'finalize'."""

    def __init__(
        self,
        transport: ContinuationTransport,
        finalize: Callable[[int], Any],
        delay_seconds: float = DEFAULT_CHUNK_DELAY_SECONDS,
    ):
        self.transport = transport
        self.finalize = finalize
        self.delay_seconds = delay_seconds

    @staticmethod
    def build_payload(job: SyncJob, chunk_index: int) -> ContinuationPayload:
        return ContinuationPayload(
            job_id=job.id,
            tenant_id=job.tenant_id,
            sync_type=job.sync_type,
            chunk_index=chunk_index,
            completed_chunks=job.completed_chunks,
            failed_chunks=job.failed_chunks,
            records_synced=job.records_synced,
            chunk_details=load_chunk_details(job.chunk_details),
        )

    def start(self, job: SyncJob) -> ContinuationPayload:
        """Send chunk 0 of a freshly created job."""
        payload = self.build_payload(job, 0)
        self.transport.send(payload, self.delay_seconds)
        return payload

    def after_chunk(self, job: SyncJob, chunk_index: int) -> Optional[ContinuationPayload]:
        """
        Continue with chunk_index + 1, or finalize after the last chunk.

        Returns:
            The payload that was sent, or None when the job was finalized (or
            had already been failed by the reaper, which ends the chain).
        """
        if job.status in TERMINAL_STATUSES:
            logger.warning("Job %s is already %s; not continuing", job.id, job.status)
            return None

        if chunk_index < job.total_chunks - 1:
            payload = self.build_payload(job, chunk_index + 1)
            logger.info(
                "Scheduling chunk %d/%d of job %s in %.1fs",
                chunk_index + 2, job.total_chunks, job.id, self.delay_seconds,
            )
            self.transport.send(payload, self.delay_seconds)
            return payload

        self.finalize(job.id)
        return None

