"""
Tests for the cron job entry points.
"""

import pytest
from datetime import timedelta
from unittest.mock import MagicMock, patch

from src.jobs.check_trial_expirations import run_trial_check
from src.jobs.recover_payments import main as recover_main, run_payment_recovery
from src.services.trial_monitor import TrialNotifier


class TestRunTrialCheck:

    @pytest.mark.asyncio
    async def test_returns_pass_statistics(self, db_session, make_account, now):
        make_account(entitlement_status="trial", trial_end=now + timedelta(hours=30))
        make_account(entitlement_status="trial", trial_end=now - timedelta(hours=1))
        notifier = MagicMock(spec=TrialNotifier)

        result = await run_trial_check(session=db_session, notifier=notifier, now=now)

        assert result["accounts_checked"] == 2
        assert result["notifications_sent"] == 1
        assert result["trials_expired"] == 1
        assert result["errors"] == 0


class TestRunPaymentRecovery:

    @pytest.mark.asyncio
    async def test_returns_report(self, db_session, make_account, make_transaction, now):
        account = make_account()
        make_transaction(account, status="completed", processed_at=now - timedelta(hours=2))

        result = await run_payment_recovery(session=db_session, now=now)

        assert result["total"] == 1
        assert result["successful"] == 1
        assert result["results"][0]["account_id"] == account.id

    def test_main_exits_nonzero_on_failures(self):
        report = {"total": 2, "successful": 1, "failed": 1}

        async def fake_recovery(window_days):
            assert window_days == 3
            return report

        with patch("src.jobs.recover_payments.run_payment_recovery", side_effect=fake_recovery), \
                patch("sys.argv", ["recover_payments", "3"]):
            with pytest.raises(SystemExit) as exc_info:
                recover_main()

        assert exc_info.value.code == 1
