"""
Root test configuration and fixtures.

Provides database fixtures that can be used by all tests, plus factories
for accounts, subscriptions and ledger rows.
"""

import os
import uuid
import pytest
from datetime import datetime, timedelta, timezone
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")

TEST_JWT_SECRET = "test-session-secret-with-at-least-32-bytes"


def _get_test_database_url() -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        # Hosted providers hand out postgres:// URLs
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    # Default to SQLite for unit tests if no PostgreSQL available
    return "sqlite:///:memory:"


def _is_postgres() -> bool:
    """Check if using PostgreSQL."""
    url = _get_test_database_url()
    return url.startswith("postgresql")


@pytest.fixture(scope="session")
def db_engine():
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    """
    database_url = _get_test_database_url()

    if _is_postgres():
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(
                f"PostgreSQL not available. Set DATABASE_URL or use SQLite. Error: {e}"
            )
    else:
        # SQLite in-memory for fast unit tests
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        # pysqlite defers BEGIN; emit it ourselves so SAVEPOINTs nest properly
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    # Import and create all tables
    from src.db_base import Base
    from src import models  # noqa: F401 - domain tables
    from src.platform import payment_audit  # noqa: F401 - audit table

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    Services commit freely; commits land in the outer test transaction,
    which is rolled back when the test completes.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=connection,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Clock and environment
# =============================================================================

@pytest.fixture
def now() -> datetime:
    """Fixed evaluation instant shared by a test and the code under test."""
    return datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def payment_env(monkeypatch):
    """Minimal provider configuration for checkout and webhook tests."""
    monkeypatch.setenv("MERCADOPAGO_ACCESS_TOKEN", "TEST-0000000000000000-000000")
    monkeypatch.delenv("MERCADOPAGO_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("MERCADOPAGO_WEBHOOK_IPS", raising=False)
    monkeypatch.setenv("SESSION_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("ENV", "test")
    return monkeypatch


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_account(db_session):
    """
    Factory fixture that persists an Account.

    Usage:
        account = make_account(entitlement_status="trial", trial_end=now + timedelta(hours=36))
    """
    from src.models.account import Account

    def _make(**overrides) -> Account:
        values = {
            "id": str(uuid.uuid4()),
            "email": f"user-{uuid.uuid4().hex[:8]}@example.com",
            "name": "Test User",
        }
        values.update(overrides)
        account = Account(**values)
        db_session.add(account)
        db_session.flush()
        return account

    return _make


@pytest.fixture
def make_subscription(db_session):
    """Factory fixture that persists a Subscription for an account."""
    from src.models.subscription import Subscription

    def _make(account, **overrides) -> Subscription:
        values = {"account_id": account.id, "status": "active", "plan": "monthly"}
        values.update(overrides)
        subscription = Subscription(**values)
        db_session.add(subscription)
        db_session.flush()
        return subscription

    return _make


@pytest.fixture
def make_transaction(db_session):
    """Factory fixture that persists a ledger row for an account."""
    from src.models.transaction import Transaction

    def _make(account, processed_at: Optional[datetime] = None, **overrides) -> Transaction:
        values = {
            "account_id": account.id,
            "type": "subscription",
            "amount": 3600,
            "currency": "CLP",
            "status": "pending",
            "provider": "mercadopago",
            "plan": "monthly",
            "processed_at": processed_at,
        }
        values.update(overrides)
        transaction = Transaction(**values)
        db_session.add(transaction)
        db_session.flush()
        return transaction

    return _make


@pytest.fixture
def audit_events(db_session):
    """Return audit rows of a given type (all types if omitted)."""
    from src.platform.payment_audit import PaymentAuditLog

    def _events(event_type=None, account_id=None):
        db_session.flush()
        query = db_session.query(PaymentAuditLog)
        if event_type is not None:
            query = query.filter(PaymentAuditLog.event_type == getattr(event_type, "value", event_type))
        if account_id is not None:
            query = query.filter(PaymentAuditLog.account_id == account_id)
        return query.all()

    return _events


@pytest.fixture
def future(now):
    """Offset helper: future(days=3) -> now + 3 days."""
    def _future(**kwargs) -> datetime:
        return now + timedelta(**kwargs)
    return _future
