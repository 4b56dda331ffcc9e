"""Shared pytest fixtures for loan-sync tests."""

import pytest
from datasette.app import Datasette

from datasette_loan_sync.migrations import run_migrations
from loan_sync.models import BookDatabase, PlannedLoanStore


@pytest.fixture
def db_path(tmp_path):
    """Create a temporary database with full schema via migrations.

    This is the canonical way to get a test database - uses the same
    migration system as production.
    """
    db_file = tmp_path / "test_loan_sync.db"
    run_migrations(db_file, verbose=False)
    return db_file


@pytest.fixture
def books(db_path):
    return BookDatabase(db_path)


@pytest.fixture
def planned_loans(db_path):
    return PlannedLoanStore(db_path)


@pytest.fixture
def datasette(db_path):
    """Create a Datasette instance with the plugin configured."""
    return Datasette(
        [str(db_path)],
        config={
            "plugins": {
                "datasette-loan-sync": {
                    "db_path": str(db_path),
                    "library": {
                        "api_base": "http://fake-library:9010/pyxis-api",
                        "login_id": "20240001",
                        "password": "secret",
                    },
                    "metadata": {"enabled": False},
                }
            },
        },
    )
