#!/usr/bin/env python3
"""
Run the approval escalation and reminder sweeps.

Runs one round and exits (default), or keeps polling on the configured
interval until interrupted.  Settings come from ``approval_config``:
an optional YAML file plus ``APPROVAL_*`` environment variables.

Usage:
  python3 scripts/run_sweeps.py [--config FILE] [--loop] [--timeout-hours H] [--reminder-days D]
"""

import argparse
import json
import signal
import sys
from dataclasses import asdict
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run approval escalation/reminder sweeps")
    p.add_argument("--config", help="Settings YAML file (default: APPROVAL_CONFIG_FILE)")
    p.add_argument("--db-url", help="Database URL (overrides settings)")
    p.add_argument("--timeout-hours", type=float, help="Escalation timeout in hours")
    p.add_argument("--reminder-days", type=int, help="Reminder window in days")
    p.add_argument("--retention-days", type=int, help="Purge records older than this")
    p.add_argument("--loop", action="store_true", help="Keep polling until interrupted")
    p.add_argument("--interval", type=float, help="Polling interval in seconds (with --loop)")
    p.add_argument("--create-tables", action="store_true", help="Create missing tables first")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    from dataclasses import replace

    from approval_batch.scheduler import ApprovalSweepScheduler
    from approval_config.settings import get_settings
    from approval_kernel.db.engine import create_tables
    from approval_services.engine import ApprovalEngine

    try:
        settings = get_settings(args.config)
    except (OSError, ValueError) as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 2
    if args.db_url:
        settings = replace(settings, database_url=args.db_url)

    engine = ApprovalEngine.from_settings(settings)
    if args.create_tables:
        create_tables()

    scheduler = ApprovalSweepScheduler(
        engine,
        tick_interval_seconds=args.interval or settings.sweep_interval_seconds,
        escalation_timeout_hours=args.timeout_hours,
        reminder_days=args.reminder_days,
        retention_days=args.retention_days,
    )

    if not args.loop:
        result = scheduler.tick()
        print(json.dumps(asdict(result), default=str, indent=2))
        return 1 if result.failed_sweeps else 0

    def _stop(signum, frame):
        scheduler.stop()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    scheduler.start()
    scheduler.wait()
    return 0


if __name__ == "__main__":
    sys.exit(main())
