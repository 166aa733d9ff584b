"""
Historical sync script: run a chunked sync to completion in this process.

Usage:
    python -m azsync.scripts.historical costs 1 --days 395

Uses the same enumeration, progress tracking and finalization as the service,
but continuations go to an in-memory queue that is drained here, one chunk at
a time, sleeping the inter-chunk delay in between. The SyncJob row can be
polled from the API while this runs.
"""
import argparse
import asyncio
import logging
from typing import Optional

from azsync.models.sync import COMPLETED
from azsync.sync.requests import SYNC_TYPES

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def run_historical(
    sync_type: str,
    tenant_id: int,
    days: Optional[int] = None,
    engine=None,
    credentials=None,
    client=None,
    delay_seconds: Optional[float] = None,
) -> bool:
    """
    Start a chunked run and drain its continuations until it is finalized.

    Returns:
        True if the job ended completed (including partial failure).
    """
    from azsync.azure.auth import AzureCredentialProvider
    from azsync.azure.client import AzureClient
    from azsync.db.engine import get_engine
    from azsync.sync.continuation import QueueTransport
    from azsync.sync.engine import SyncEngine

    engine = engine or get_engine()
    transport = QueueTransport()
    sync_engine = SyncEngine(
        engine,
        credentials or AzureCredentialProvider(engine),
        client or AzureClient(),
        transport,
        chunk_delay_seconds=delay_seconds,
    )

    started = await sync_engine.start_historical(sync_type, tenant_id, days)
    job_id = started["progressId"]
    if job_id is None:
        logger.info(started["message"])
        return True
    logger.info("Job %s: %d chunks", job_id, started["totalUnits"])

    while not transport.empty():
        payload, delay = transport.next()
        await asyncio.sleep(delay)
        await sync_engine.run_chunk(payload)

    job = sync_engine.progress.get_job(job_id)
    logger.info(
        "Historical %s sync %s: %d records, %d/%d chunks failed",
        sync_type, job.status, job.records_synced, job.failed_chunks, job.total_chunks,
    )
    return job.status == COMPLETED


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a historical Azure sync")
    parser.add_argument("sync_type", choices=SYNC_TYPES)
    parser.add_argument("tenant_id", type=int)
    parser.add_argument(
        "--days",
        type=int,
        default=None,
        help="Number of days to sync (default depends on sync type)",
    )
    args = parser.parse_args()
    asyncio.run(run_historical(args.sync_type, args.tenant_id, args.days))


if __name__ == "__main__":
    main()
