"""
Pytest configuration and shared fixtures for backend tests.

WHAT: Centralized test configuration with markers and core fixtures
WHY: Enable test organization, filtering, and shared test utilities
HOW: Point settings at a throwaway SQLite file, define markers, and build
     core components around a frozen clock
"""

import os

# Settings are read at import time, so the environment must be set first
os.environ["DATABASE_URL"] = "sqlite:///./data/test_bazaar.db"
os.environ["LOG_FILE"] = "./data/logs/test.log"
os.environ["MAINTENANCE_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "true"

import pytest

from bazaar.core.database import Base, engine, init_db
from bazaar.services import (
    ResourceLedger,
    NegotiationStateMachine,
    QRSessionProtocol,
    RateGovernor,
    MaintenanceScheduler,
)
from tests.fixtures.clock import FrozenClock


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (isolated component tests)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (core components against the database)"
    )
    config.addinivalue_line(
        "markers", "concurrency: Tests that race threads against one entity"
    )
    config.addinivalue_line(
        "markers", "api: HTTP tests through the FastAPI TestClient"
    )


@pytest.fixture(scope="function")
def fresh_db():
    """
    Create a fresh database for each test.

    WHAT: Drop and recreate every table
    WHY: Ensure test isolation (stock, counters and tokens never leak between tests)
    HOW: drop_all then init_db before the test runs
    """
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield


@pytest.fixture
def clock():
    """A clock that only moves when the test says so."""
    return FrozenClock()


@pytest.fixture
def ledger(fresh_db, clock):
    return ResourceLedger(clock=clock)


@pytest.fixture
def negotiations(ledger, clock):
    return NegotiationStateMachine(ledger, clock=clock)


@pytest.fixture
def qr_protocol(negotiations, clock):
    return QRSessionProtocol(negotiations, clock=clock)


@pytest.fixture
def governor(fresh_db, clock):
    return RateGovernor(clock=clock)


@pytest.fixture
def scheduler(ledger, negotiations, qr_protocol, governor):
    return MaintenanceScheduler(ledger, negotiations, qr_protocol, governor, interval_seconds=0.05)


# Test data constants
CUSTOMER = "customer-asha"
VENDOR = "vendor-ravi"
PRODUCT = "saree-silk-001"
