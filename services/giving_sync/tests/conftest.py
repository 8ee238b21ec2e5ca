"""
Pytest fixtures for giving_sync tests.

Storage is an in-memory SQLite engine with the full schema; the Source and
Ledger APIs are replaced by in-process fakes (see ``factories``). Tests that
need a real PostgreSQL are marked ``db`` and skipped without DATABASE_URL.
"""

import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from services.giving_sync.db.connector import create_schema
from services.giving_sync.settings import GivingSyncSettings

from .factories import FakeClock, FakeLedger, FakeSource


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across connections, schema created."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return GivingSyncSettings(
        _env_file=None,
        source_app_id="app-id",
        source_secret="app-secret",
        ledger_client_id="client-id",
        ledger_client_secret="client-secret",
        retry_log_path=str(tmp_path / "retries.log"),
        database_url="sqlite+pysqlite:///:memory:",
        trigger_secrets=["trigger-secret"],
        webhook_secrets={
            "giving.v2.events.donation.created": "donation-secret",
            "giving.v2.events.batch.committed": "batch-secret",
            "people.v2.events.person.created": "person-secret",
        },
        operator_token="operator-token",
        deposit_bank_account_name="Checking",
        income_account_name="Income:Giving",
        fee_account_name="Expenses:Fees",
        registration_deposit_account_name="Checking",
        registration_income_account_name="Income:Events",
        registration_class_name="Events",
        registration_location_name="Main",
        refund_account_name="Income:Events",
    )


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def database_url() -> str:
    """PostgreSQL URL for ``db``-marked tests, skipped when not configured."""
    url = os.environ.get("DATABASE_URL")
    if not url or not url.startswith("postgres"):
        pytest.skip("requires PostgreSQL integration DB (set DATABASE_URL)")
    return url
