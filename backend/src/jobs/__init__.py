"""
Background jobs module.
"""

from src.jobs.recover_payments import run_payment_recovery
from src.jobs.check_trial_expirations import run_trial_check

__all__ = [
    "run_payment_recovery",
    "run_trial_check",
]
