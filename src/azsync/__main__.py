"""
Main entrypoint.

Usage:
    python -m azsync                                   # API + scheduler
    python -m azsync historical costs 1 --days 90      # chunked run, in-process
    python -m azsync reap                              # fail stuck runs now
    uvicorn azsync.api.main:app --host 0.0.0.0 --port 8000
"""
import argparse
import asyncio
import logging
import sys
from datetime import timedelta

from azsync.sync.requests import SYNC_TYPES

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_api(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("azsync.api.main:app", host=host, port=port)


def _run_reap() -> None:
    from azsync.config import get_settings
    from azsync.db.engine import get_engine
    from azsync.sync.reaper import reap_stuck_jobs

    minutes = get_settings().stuck_job_max_runtime_minutes
    result = reap_stuck_jobs(get_engine(), max_runtime=timedelta(minutes=minutes))
    logger.info("Reaped %d jobs and %d logs", result.jobs, result.logs)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(prog="azsync", description="Azure monitoring sync")
    sub = parser.add_subparsers(dest="command")

    api = sub.add_parser("api", help="Run the API and scheduler (default)")
    api.add_argument("--host", default="0.0.0.0")
    api.add_argument("--port", type=int, default=8000)

    hist = sub.add_parser("historical", help="Run a chunked historical sync in this process")
    hist.add_argument("sync_type", choices=SYNC_TYPES)
    hist.add_argument("tenant_id", type=int)
    hist.add_argument("--days", type=int, default=None)

    sub.add_parser("reap", help="Fail runs stuck past the maximum runtime")

    args = parser.parse_args(argv)

    if args.command == "historical":
        from azsync.scripts.historical import run_historical

        sys.exit(0 if asyncio.run(run_historical(args.sync_type, args.tenant_id, args.days)) else 1)
    elif args.command == "reap":
        _run_reap()
    elif args.command == "api":
        _run_api(args.host, args.port)
    else:
        _run_api("0.0.0.0", 8000)


if __name__ == "__main__":
    main()
