"""
Periodic scheduler jobs.

Each job opens its own session and runs one bounded scan, so any external
trigger (cron, a systemd timer, a platform scheduler) can drive it:

    python -m dealseries.worker generate
    python -m dealseries.worker notify --hours-ahead 24
"""

import argparse
import logging
import sys
from typing import List, Optional

from dealseries.config import settings
from dealseries.database import SessionLocal
from dealseries.services.orchestrator import (
    NotificationResult,
    ProcessResult,
    process_due_recurring,
    process_upcoming_notifications,
)

logger = logging.getLogger(__name__)


def run_due_cycle(limit: Optional[int] = None) -> ProcessResult:
    """Generate deals for one batch of due series."""
    db = SessionLocal()
    try:
        return process_due_recurring(db, limit=limit)
    finally:
        db.close()


def run_notification_cycle(hours_ahead: Optional[int] = None, limit: Optional[int] = None) -> NotificationResult:
    """Send advance notices for series coming due within the look-ahead window."""
    db = SessionLocal()
    try:
        return process_upcoming_notifications(db, hours_ahead=hours_ahead, limit=limit)
    finally:
        db.close()


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one recurring deal scheduler job.")
    parser.add_argument("job", choices=["generate", "notify"], help="Job to run.")
    parser.add_argument("--limit", type=int, default=None, help="Batch size override.")
    parser.add_argument(
        "--hours-ahead",
        type=int,
        default=None,
        help=f"Notification look-ahead in hours (default: {settings.upcoming_notification_hours}).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.job == "generate":
        result = run_due_cycle(limit=args.limit)
        if result.has_more:
            logger.info("Batch limit reached; remaining series are picked up by the next run")
        return 1 if result.failed and not result.processed else 0

    result = run_notification_cycle(hours_ahead=args.hours_ahead, limit=args.limit)
    return 1 if result.failed and not result.notified else 0


if __name__ == "__main__":
    sys.exit(main())
