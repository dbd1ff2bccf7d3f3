"""
Tests for PaymentAuditService integrity checks and audit queries.
"""

from datetime import timedelta

from src.platform.payment_audit import PaymentAuditEventType, emit_payment_event
from src.services.payment_audit_service import PaymentAuditService


class TestVerifyTransactionIntegrity:

    def test_completed_payment_without_entitlement(self, db_session, make_account, make_transaction, now):
        account = make_account()
        transaction = make_transaction(account, status="completed", processed_at=now - timedelta(hours=3))

        report = PaymentAuditService(db_session).verify_transaction_integrity(transaction.id, now=now)

        assert not report.valid
        assert report.requires_activation
        assert report.details["account_id"] == account.id

    def test_covered_payment_is_valid(self, db_session, make_account, make_subscription, make_transaction, now):
        account = make_account()
        make_subscription(account, current_period_end=now + timedelta(days=25))
        transaction = make_transaction(account, status="completed", processed_at=now - timedelta(days=5))

        report = PaymentAuditService(db_session).verify_transaction_integrity(transaction.id, now=now)

        assert report.valid
        assert not report.requires_activation

    def test_pending_payment_is_valid(self, db_session, make_account, make_transaction, now):
        account = make_account()
        transaction = make_transaction(account, status="pending")

        assert PaymentAuditService(db_session).verify_transaction_integrity(transaction.id, now=now).valid

    def test_unknown_transaction(self, db_session, now):
        report = PaymentAuditService(db_session).verify_transaction_integrity("missing", now=now)
        assert not report.valid
        assert report.error == "Transaction not found"


class TestListEvents:

    def test_filters_and_redacts(self, db_session, make_account):
        account = make_account()
        other = make_account()
        emit_payment_event(
            db_session,
            PaymentAuditEventType.CHECKOUT_CREATED,
            account_id=account.id,
            plan="monthly",
            payer_email="someone@example.com",
        )
        emit_payment_event(db_session, PaymentAuditEventType.TRIAL_STARTED, account_id=other.id)
        db_session.flush()

        events = PaymentAuditService(db_session).list_events(account_id=account.id)

        assert len(events) == 1
        assert events[0]["event_type"] == "CHECKOUT_CREATED"
        assert events[0]["payload"]["plan"] == "monthly"
        assert events[0]["payload"]["payer_email"] == "***@example.com"
