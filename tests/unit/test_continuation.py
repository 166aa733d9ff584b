"""Tests for continuation scheduling and transports."""
import asyncio
from unittest.mock import MagicMock

import httpx
import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from azsync.models.sync import ChunkRecord
from azsync.sync.continuation import (
    APSchedulerTransport,
    ContinuationScheduler,
    HttpCallbackTransport,
    QueueTransport,
)
from azsync.sync.progress import ProgressStore
from azsync.sync.requests import ContinuationPayload


async def _run_payload(payload):
    return payload


@pytest.fixture
def job(engine):
    return ProgressStore(engine).create_job(
        tenant_id=7,
        sync_type="metrics",
        chunks=[ChunkRecord(chunk_index=i, label=f"r{i}") for i in range(3)],
    )


class TestContinuationScheduler:
    def test_start_sends_chunk_zero(self, job):
        transport = QueueTransport()
        scheduler = ContinuationScheduler(transport, finalize=MagicMock(), delay_seconds=2.0)
        scheduler.start(job)
        payload, delay = transport.next()
        assert payload.chunk_index == 0
        assert payload.job_id == job.id
        assert payload.tenant_id == 7
        assert delay == 2.0
        assert len(payload.chunk_details) == 3

    def test_after_chunk_sends_next(self, job):
        transport = QueueTransport()
        finalize = MagicMock()
        scheduler = ContinuationScheduler(transport, finalize=finalize)
        sent = scheduler.after_chunk(job, 0)
        assert sent.chunk_index == 1
        assert transport.next()[0].chunk_index == 1
        finalize.assert_not_called()

    def test_after_last_chunk_finalizes(self, job):
        transport = QueueTransport()
        finalize = MagicMock()
        scheduler = ContinuationScheduler(transport, finalize=finalize)
        assert scheduler.after_chunk(job, 2) is None
        assert transport.empty()
        finalize.assert_called_once_with(job.id)

    def test_terminal_job_ends_the_chain(self, job):
        job.status = "failed"
        transport = QueueTransport()
        finalize = MagicMock()
        scheduler = ContinuationScheduler(transport, finalize=finalize)
        assert scheduler.after_chunk(job, 0) is None
        assert transport.empty()
        finalize.assert_not_called()


class TestAPSchedulerTransport:
    def test_adds_one_shot_job(self):
        scheduler = AsyncIOScheduler()
        transport = APSchedulerTransport(scheduler)
        transport.bind(_run_payload)
        payload = ContinuationPayload(job_id=5, tenant_id=1, sync_type="costs", chunk_index=2)

        transport.send(payload, 2.0)

        job = scheduler.get_job("sync-job-5-chunk-2")
        assert job is not None
        assert job.trigger.__class__.__name__ == "DateTrigger"
        assert job.kwargs["payload"]["chunk_index"] == 2
        assert job.kwargs["payload"]["action"] == "continue"

    @pytest.mark.asyncio
    async def test_duplicate_send_replaces_pending_job(self):
        scheduler = AsyncIOScheduler()
        scheduler.start(paused=True)
        try:
            transport = APSchedulerTransport(scheduler)
            transport.bind(_run_payload)
            payload = ContinuationPayload(job_id=5, tenant_id=1, sync_type="costs", chunk_index=2)
            transport.send(payload, 2.0)
            transport.send(payload, 2.0)
            assert len(scheduler.get_jobs()) == 1
        finally:
            scheduler.shutdown(wait=False)

    def test_unbound_transport_raises(self):
        transport = APSchedulerTransport(AsyncIOScheduler())
        with pytest.raises(RuntimeError):
            transport.send(ContinuationPayload(job_id=1, tenant_id=1, sync_type="x", chunk_index=0), 1.0)


class TestHttpCallbackTransport:
    @pytest.mark.asyncio
    async def test_posts_payload_after_delay(self):
        received = []

        def handler(request):
            received.append(request)
            return httpx.Response(200, json={"success": True})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = HttpCallbackTransport("http://svc/sync", token="t0k", http=http)
        payload = ContinuationPayload(job_id=3, tenant_id=1, sync_type="metrics", chunk_index=1)

        transport.send(payload, 0.0)
        assert received == []  # fire-and-forget: nothing sent synchronously
        await asyncio.gather(*transport._pending)

        assert len(received) == 1
        assert received[0].headers["Authorization"] == "Bearer t0k"
        assert b'"chunk_index":1' in received[0].content.replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_delivery_failure_is_logged_not_raised(self, caplog):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        transport = HttpCallbackTransport("http://svc/sync", http=http)
        transport.send(ContinuationPayload(job_id=3, tenant_id=1, sync_type="metrics", chunk_index=1), 0.0)
        await asyncio.gather(*transport._pending)
        assert "was not delivered" in caplog.text
