"""Background job worker.

Usage:
    python -m backend.workers.job_worker --once
    python -m backend.workers.job_worker --loop

Environment flags:
- JOB_BATCH_LIMIT (default 10)
- JOB_POLL_SECONDS (default 10)
- JOB_LEASE_SECONDS (default 300)
- JOB_MAX_ATTEMPTS (default 3)
"""
from __future__ import annotations

import argparse
import time
from typing import Any, Dict, List, Optional

from backend.core.config import settings
from backend.core.logging import configure_logging
from backend.features.jobs.queue import default_worker_id, process_queue


def run_once(limit: int, worker_id: Optional[str] = None) -> Dict[str, Any]:
    return process_queue(limit=limit, worker_id=worker_id)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Background job worker")
    parser.add_argument("--once", action="store_true", help="Process one batch and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument("--limit", type=int, default=settings.JOB_BATCH_LIMIT, help="Batch size per poll")
    parser.add_argument(
        "--sleep",
        type=int,
        default=settings.JOB_POLL_SECONDS,
        help="Seconds to sleep between polls (when --loop)",
    )
    parser.add_argument("--worker-id", default=None, help="Lease owner name (default host:pid)")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    worker_id = args.worker_id or default_worker_id()

    if args.once:
        stats = run_once(args.limit, worker_id)
        print(f"[job-worker] {stats}")
        return

    print(f"[job-worker] Starting loop as {worker_id} (sleep={args.sleep}s, batch={args.limit}). CTRL+C to stop.")
    try:
        while True:
            stats = run_once(args.limit, worker_id)
            if stats.get("claimed"):
                print(f"[job-worker] {stats}")
                # More work may be waiting; poll again without sleeping
                if stats["claimed"] >= args.limit:
                    continue
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[job-worker] Stopped")


if __name__ == "__main__":
    main()
