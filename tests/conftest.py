"""
Pytest fixtures for the billing test suite.

Provides:
- In-memory SQLite engine shared across threads (StaticPool), with
  SAVEPOINT support enabled for the pysqlite driver
- Session factory / session fixtures
- DeterministicClock pinned to an aware UTC timestamp
- Catalog helpers (items, taxes) and a captured_logs fixture
"""

import json
import logging
from datetime import UTC, datetime
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from billing_kernel.db.engine import create_tables, drop_tables
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_kernel.models.catalog import ItemModel, TaxModel
from billing_kernel.services.notifications import BillingEvents

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()
TEST_OWNER_ID = uuid4()
TEST_CUSTOMER_ID = uuid4()

# Thursday
TEST_NOW = datetime(2026, 1, 15, 9, 0, 0, tzinfo=UTC)


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
    Capture billing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            ...
            logs = captured_logs()
            assert any(r["message"] == "payment_recorded" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; take it over.
    @event.listens_for(eng, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    create_tables(eng)
    yield eng
    drop_tables(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory) -> Session:
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(TEST_NOW)


@pytest.fixture
def events() -> BillingEvents:
    return BillingEvents()


@pytest.fixture
def test_actor_id() -> UUID:
    return TEST_ACTOR_ID


@pytest.fixture
def owner_id() -> UUID:
    return TEST_OWNER_ID


@pytest.fixture
def customer_id() -> UUID:
    return TEST_CUSTOMER_ID


# =============================================================================
# Catalog helpers
# =============================================================================


def add_item(
    session: Session,
    unit_price: str | Decimal,
    name: str = "Consulting hour",
    owner_id: UUID = TEST_OWNER_ID,
    currency: str = "USD",
) -> UUID:
    item = ItemModel(
        owner_id=owner_id,
        name=name,
        unit_price=Decimal(str(unit_price)),
        currency=currency,
        created_by_id=TEST_ACTOR_ID,
    )
    session.add(item)
    session.flush()
    return item.id


def add_tax(
    session: Session,
    rate_percent: str | Decimal,
    name: str = "VAT",
    owner_id: UUID = TEST_OWNER_ID,
) -> UUID:
    tax = TaxModel(
        owner_id=owner_id,
        name=name,
        rate_percent=Decimal(str(rate_percent)),
        created_by_id=TEST_ACTOR_ID,
    )
    session.add(tax)
    session.flush()
    return tax.id


@pytest.fixture
def make_item(session):
    """Factory fixture: ``make_item("100.00")`` returns the new item id."""

    def _make(unit_price: str | Decimal, **kwargs) -> UUID:
        return add_item(session, unit_price, **kwargs)

    return _make


@pytest.fixture
def make_tax(session):
    def _make(rate_percent: str | Decimal, **kwargs) -> UUID:
        return add_tax(session, rate_percent, **kwargs)

    return _make
