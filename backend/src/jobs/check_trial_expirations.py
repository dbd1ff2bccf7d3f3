"""
Trial expiration job.

Runs hourly. Sends the "trial ending soon" decision for trials with one or
two days left (at most once per account per day) and downgrades trials
whose end has passed.

Usage:
    python -m src.jobs.check_trial_expirations

Schedule with cron (e.g. `0 * * * *`).
"""

import sys
import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from src.database.session import get_session_factory
from src.services.trial_monitor import TrialMonitor, TrialNotifier

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run_trial_check(
    session: Optional[Session] = None,
    notifier: Optional[TrialNotifier] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Run one trial monitor pass.

    Args:
        session: Database session (a new one is opened and closed if omitted)
        notifier: Notification sink (logs decisions if omitted)
        now: Evaluation instant (defaults to the current UTC time)

    Returns:
        Statistics dictionary with job results
    """
    logger.info("Starting trial expiration job")

    owns_session = session is None
    if owns_session:
        session = get_session_factory()()

    try:
        stats = TrialMonitor(session, notifier=notifier).run_pass(now=now)
        result = stats.to_dict()
        logger.info("Trial expiration job completed", extra=result)
        return result
    except Exception as e:
        logger.error("Trial expiration job failed", extra={
            "error": str(e)
        })
        raise
    finally:
        if owns_session:
            session.close()


def main():
    """Entry point for running the trial job from command line."""
    try:
        result = asyncio.run(run_trial_check())
        print(f"Trial check completed: {result}")
        sys.exit(0)
    except Exception as e:
        print(f"Trial check failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
