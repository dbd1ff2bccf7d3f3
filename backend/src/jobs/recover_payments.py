"""
Payment recovery job.

Runs every 15 minutes. Finds completed subscription payments from the
last week whose account has no active entitlement and activates them.
Ensures entitlement is granted even if the approving webhook was missed.

Usage:
    python -m src.jobs.recover_payments [window_days]

Schedule with cron (e.g. `*/15 * * * *`).
"""

import sys
import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from src.database.session import get_session_factory
from src.services.payment_reconciliation import DEFAULT_WINDOW_DAYS
from src.services.payment_recovery import PaymentRecoveryService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run_payment_recovery(
    session: Optional[Session] = None,
    window_days: int = DEFAULT_WINDOW_DAYS,
    now: Optional[datetime] = None,
) -> dict:
    """
    Run the payment recovery job.

    Returns:
        Recovery report dictionary (totals, per-item results and errors)
    """
    logger.info("Starting payment recovery job", extra={"window_days": window_days})

    owns_session = session is None
    if owns_session:
        session = get_session_factory()()

    try:
        report = PaymentRecoveryService(session).process_all_divergent(
            window_days=window_days,
            now=now,
            source="job",
        )
        result = report.to_dict()
        logger.info("Payment recovery job completed", extra={
            "total": report.total,
            "successful": report.successful,
            "failed": report.failed,
            "already_active": report.already_active,
        })
        return result
    except Exception as e:
        logger.error("Payment recovery job failed", extra={
            "error": str(e)
        })
        raise
    finally:
        if owns_session:
            session.close()


def main():
    """Entry point for running the recovery job from command line."""
    window_days = int(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_WINDOW_DAYS
    try:
        result = asyncio.run(run_payment_recovery(window_days=window_days))
        print(
            f"Payment recovery completed: total={result['total']} "
            f"successful={result['successful']} failed={result['failed']}"
        )
        sys.exit(1 if result["failed"] else 0)
    except Exception as e:
        print(f"Payment recovery failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
