"""
Pytest configuration and shared fixtures

Fun fact: The name "conftest" comes from pytest's configuration testing
framework. Files named conftest.py are automatically discovered and their
fixtures are available to all tests in the same directory and subdirectories!
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest

from budget_ledger.approval.models import Approver
from budget_ledger.approval.resolver import ApproverDirectory, DirectoryApproverResolver
from budget_ledger.budget.handlers import BudgetCommandHandlers
from budget_ledger.budget.ledger import BudgetLedger
from budget_ledger.engine import BudgetEngine
from budget_ledger.kernel.event_store import SQLiteEventStore
from budget_ledger.kernel.policy import LedgerPolicy
from budget_ledger.kernel.time import TestTimeProvider

from tests.helpers import FINANCE, HEAD_OF_BUSINESS, IT_HEAD, OPS_HEAD, PRESIDENT


@pytest.fixture
def temp_db() -> Iterator[Path]:
    """Provide a temporary database file that's cleaned up after test"""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    # Cleanup (WAL mode leaves -wal and -shm files next to the database)
    for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
        if path.exists():
            path.unlink()


@pytest.fixture
def event_store(temp_db: Path) -> SQLiteEventStore:
    """Provide a fresh event store for each test"""
    return SQLiteEventStore(temp_db)


@pytest.fixture
def test_time() -> TestTimeProvider:
    """
    Provide a controllable time provider for deterministic tests

    Default time: 2025-01-15 12:00:00 UTC (chosen because it's a well-known
    Wednesday in the middle of Q1 2025 - perfect for testing fiscal year logic!)
    """
    return TestTimeProvider(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy() -> LedgerPolicy:
    """Provide default ledger policy for tests"""
    return LedgerPolicy()


@pytest.fixture
def directory() -> ApproverDirectory:
    """
    Provide a small organisation: two departments and three executives

    Fun fact: Most approval matrices in real companies fit on a single
    sheet of paper - the hard part is keeping it current!
    """
    return ApproverDirectory(
        department_heads={
            "IT": Approver(
                name="Irene Head", role="department_head", email=IT_HEAD, department="IT"
            ),
            "Operations": Approver(
                name="Oscar Head",
                role="department_head",
                email=OPS_HEAD,
                department="Operations",
            ),
        },
        executives={
            "head_of_business": Approver(
                name="Hana Business", role="head_of_business", email=HEAD_OF_BUSINESS
            ),
            "president": Approver(name="Paul President", role="president", email=PRESIDENT),
            "finance": Approver(name="Fiona Finance", role="finance", email=FINANCE),
        },
    )


@pytest.fixture
def resolver(directory: ApproverDirectory) -> DirectoryApproverResolver:
    return DirectoryApproverResolver(directory)


@pytest.fixture
def handlers(test_time: TestTimeProvider, policy: LedgerPolicy) -> BudgetCommandHandlers:
    """
    Provide budget command handlers for testing

    Handlers are stateless - they take rebuilt state as parameters.
    """
    return BudgetCommandHandlers(test_time, policy)


@pytest.fixture
def ledger(
    event_store: SQLiteEventStore, test_time: TestTimeProvider, policy: LedgerPolicy
) -> BudgetLedger:
    return BudgetLedger(event_store, test_time, policy)


@pytest.fixture
def engine(
    temp_db: Path,
    resolver: DirectoryApproverResolver,
    policy: LedgerPolicy,
    test_time: TestTimeProvider,
) -> BudgetEngine:
    """Provide a BudgetEngine over a fresh database with controllable time"""
    return BudgetEngine(temp_db, resolver, policy=policy, time_provider=test_time)
