#!/usr/bin/env python3
"""
Scheduled dispatch evaluators.

Each job runs one idempotent pass in its own session. Recommended crontab:
    */5 * * * *  python -m cron.dispatch_jobs auto-drop
    */5 * * * *  python -m cron.dispatch_jobs close-bid-windows
    */5 * * * *  python -m cron.dispatch_jobs no-show-detection
    0 * * * *    python -m cron.dispatch_jobs confirmation-reminders
    30 2 * * *   python -m cron.dispatch_jobs health-daily
    0 3 * * 1    python -m cron.dispatch_jobs health-weekly
    0 0 * * 1    python -m cron.dispatch_jobs lock-preferences
    * * * * *    python -m cron.dispatch_jobs deliver-notifications

Times are evaluated against the operating timezone, not the host clock.
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from typing import Dict, Optional, Type

from app.core.policy import get_policy
from app.database import async_session_maker
from app.services.bidding import BidWindowCloser
from app.services.confirmations import AutoDropPipeline, ConfirmationReminderPipeline
from app.services.health import HealthDailyPipeline, HealthWeeklyPipeline
from app.services.noshow import NoShowPipeline
from app.services.notifications import get_notification_sender
from app.services.outbox import NotificationDeliveryPipeline
from app.services.pipeline import DispatchPipeline
from app.services.preferences import PreferenceLockPipeline


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("dispatch_jobs")


JOBS: Dict[str, Type[DispatchPipeline]] = {
    "auto-drop": AutoDropPipeline,
    "confirmation-reminders": ConfirmationReminderPipeline,
    "close-bid-windows": BidWindowCloser,
    "no-show-detection": NoShowPipeline,
    "health-daily": HealthDailyPipeline,
    "health-weekly": HealthWeeklyPipeline,
    "lock-preferences": PreferenceLockPipeline,
    "deliver-notifications": NotificationDeliveryPipeline,
}


async def run_job(job: str, now: Optional[datetime] = None) -> dict:
    """Run one job pass and return its metrics."""
    pipeline_cls = JOBS[job]
    async with async_session_maker() as db:
        pipeline = pipeline_cls(
            db,
            get_policy(),
            sender=get_notification_sender(),
            now=now,
        )
        return await pipeline.run()


def _parse_now(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        raise argparse.ArgumentTypeError("--now must include a UTC offset")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m cron.dispatch_jobs",
        description="Run one scheduled dispatch evaluator pass.",
    )
    parser.add_argument("job", choices=sorted(JOBS), help="Evaluator to run")
    parser.add_argument(
        "--now",
        type=_parse_now,
        default=None,
        help="Evaluate as of this ISO-8601 instant (default: current time)",
    )
    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    metrics = asyncio.run(run_job(args.job, args.now))

    print("\n" + "=" * 50)
    print(f"{args.job.upper()} COMPLETE")
    print("=" * 50)
    for key, value in metrics.items():
        if key == "errors":
            continue
        print(f"{key}: {value}")
    errors = metrics.get("errors", [])
    if errors:
        print(f"Errors: {len(errors)}")
        for error in errors[:5]:
            print(f"  - {error}")
        logger.warning(f"{args.job} finished with {len(errors)} failed item(s)")
    return 1 if errors else 0


if __name__ == "__main__":
    sys.exit(main())
