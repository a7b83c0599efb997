"""
Pytest fixtures for the reconciliation test suite.

Provides:
- A database session per test, rolled back at teardown
- A deterministic clock and the kernel services wired to it
- An ingest helper (raw record factories live in tests/factories.py)
- Captured structured logs

Environment Variables:
- DATABASE_URL: SQLAlchemy URL of the test database.  Defaults to an
  in-memory SQLite database; set a postgresql:// URL to run the suite
  against PostgreSQL.
"""

import json
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Generator

import pytest
from sqlalchemy.orm import Session

from recon_config import CompanySettings
from recon_kernel.db.engine import (
    create_tables,
    drop_tables,
    init_engine_from_url,
    reset_engine,
)
from recon_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from recon_kernel.domain.clock import DeterministicClock
from recon_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from recon_kernel.services.auditor_service import AuditorService
from recon_kernel.services.exception_lifecycle import ExceptionLifecycleService
from recon_kernel.services.source_record_store import SourceRecordStore
from recon_services.matching_coordinator import MatchingCoordinator

DEFAULT_DATABASE_URL = "sqlite:///:memory:"

COMPANY_ID = "acme"


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture recon_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, coordinator):
            coordinator.run_matching("acme")
            logs = captured_logs()
            assert any(r["message"] == "matching_run_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("recon_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Session-scoped DB infrastructure (create engine + tables ONCE per suite)
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    eng = init_engine_from_url(get_database_url(), echo=False)
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session; immutability listeners stay active."""
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()
    drop_tables()


@pytest.fixture(scope="function")
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    The session joins an outer transaction on a dedicated connection
    (``join_transaction_mode="create_savepoint"``), so ``commit()`` inside a
    test only releases a savepoint.  The outer transaction is rolled back
    at teardown, undoing every change the test made.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


# =============================================================================
# Clock, settings, services
# =============================================================================


@pytest.fixture
def company_id() -> str:
    return COMPANY_ID


@pytest.fixture
def deterministic_clock():
    return DeterministicClock(datetime(2026, 3, 10, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> CompanySettings:
    return CompanySettings(
        company_id=COMPANY_ID,
        home_currency="CAD",
        amount_tolerance_percent=Decimal("0.5"),
        amount_tolerance_floor_minor_units=1,
        date_tolerance_days=2,
        bank_account_id="acct-bank",
        revenue_account_id="acct-revenue",
        fees_account_id="acct-fees",
        cash_sales_account_id="acct-cash-sales",
        max_workers=2,
        checksum="test-settings",
    )


@pytest.fixture
def auditor_service(session, deterministic_clock):
    return AuditorService(session, deterministic_clock)


@pytest.fixture
def source_store(session, deterministic_clock):
    return SourceRecordStore(session, deterministic_clock)


@pytest.fixture
def lifecycle(session, deterministic_clock):
    return ExceptionLifecycleService(session, deterministic_clock)


@pytest.fixture
def coordinator(session, deterministic_clock, settings):
    return MatchingCoordinator(session, deterministic_clock, settings=settings)


@pytest.fixture
def ingest(source_store, company_id):
    """``ingest("payout", raw, raw, ...)`` -> IngestResult."""

    def _ingest(source_type: str, *raws: dict, company: str | None = None):
        return source_store.upsert_records(company or company_id, source_type, list(raws))

    return _ingest
