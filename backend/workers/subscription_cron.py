"""Subscription reconciliation cron.

Usage:
    python -m backend.workers.subscription_cron --once
    python -m backend.workers.subscription_cron --loop --sleep 3600
    python -m backend.workers.subscription_cron --once --sweep reminders

Environment flags:
- CRON_LOOP_SECONDS (default 86400)
- REMINDER_DAYS (csv, default 7,3,1)
- GRACE_PERIOD_DAYS (default 3)
"""
from __future__ import annotations

import argparse
import time
from typing import Any, Dict, List, Optional

from backend.core.config import settings
from backend.core.logging import configure_logging
from backend.features.reconciliation.sweeps import SWEEPS, run_all_sweeps


def run_once(sweep: Optional[str] = None) -> Dict[str, Any]:
    if sweep:
        return {sweep: SWEEPS[sweep](None)}
    return run_all_sweeps()


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Subscription reconciliation cron")
    parser.add_argument("--once", action="store_true", help="Run the sweeps once and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument("--sweep", choices=sorted(SWEEPS), default=None, help="Run a single sweep")
    parser.add_argument(
        "--sleep",
        type=int,
        default=settings.CRON_LOOP_SECONDS,
        help="Seconds to sleep between runs (when --loop)",
    )
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)

    if args.once:
        print(f"[cron] {run_once(args.sweep)}")
        return

    print(f"[cron] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        while True:
            print(f"[cron] {run_once(args.sweep)}")
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[cron] Stopped")


if __name__ == "__main__":
    main()
