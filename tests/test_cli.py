"""
CLI Integration Tests

Drives the budget-ledger commands end-to-end against a temporary database
and the example approver directory written by ``init``.
"""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from budget_ledger.cli.main import app
from budget_ledger.kernel.errors import InsufficientBudget

runner = CliRunner()

APPROVAL_ORDER = ["it.head@example.com", "business.head@example.com", "finance@example.com"]


@pytest.fixture
def ledger_paths(tmp_path: Path) -> list[str]:
    db_path = tmp_path / "ledger.db"
    approvers_path = tmp_path / "approvers.json"

    result = runner.invoke(
        app, ["init", "--db", str(db_path), "--approvers", str(approvers_path)]
    )
    assert result.exit_code == 0
    assert "Initialized ledger database" in result.stdout
    assert approvers_path.exists()

    return ["--db", str(db_path), "--approvers", str(approvers_path)]


def create_code(paths: list[str], code: str = "IT-OPS-2025", budget: str = "1000000") -> None:
    result = runner.invoke(
        app,
        [
            "code",
            "create",
            "--code",
            code,
            "--name",
            "IT Operations",
            "--department",
            "IT",
            "--budget",
            budget,
            "--fiscal-year",
            "2025",
            "--start-date",
            "2025-01-01",
            *paths,
        ],
    )
    assert result.exit_code == 0, result.output
    assert f"Created budget code: {code}" in result.stdout
    assert "Approval levels: 3" in result.stdout


def approve_code(paths: list[str], code: str = "IT-OPS-2025") -> None:
    for email in APPROVAL_ORDER:
        result = runner.invoke(
            app, ["code", "approve", "--id", code, "--actor", email, *paths]
        )
        assert result.exit_code == 0, result.output


def test_init_refuses_existing_database(ledger_paths: list[str]) -> None:
    result = runner.invoke(app, ["init", *ledger_paths])
    assert result.exit_code == 1
    assert "already exists" in result.output


def test_code_lifecycle_via_cli(ledger_paths: list[str]) -> None:
    create_code(ledger_paths)

    result = runner.invoke(app, ["code", "list", "--json", *ledger_paths])
    assert result.exit_code == 0
    codes = json.loads(result.stdout)
    assert [c["status"] for c in codes] == ["pending_departmental_head"]

    result = runner.invoke(
        app, ["code", "approve", "--id", "IT-OPS-2025", "--actor", APPROVAL_ORDER[0], *ledger_paths]
    )
    assert "Budget code status: pending_head_of_business" in result.stdout

    for email in APPROVAL_ORDER[1:]:
        result = runner.invoke(
            app, ["code", "approve", "--id", "IT-OPS-2025", "--actor", email, *ledger_paths]
        )
        assert result.exit_code == 0, result.output
    assert "Chain: approved" in result.stdout
    assert "Budget code status: active" in result.stdout

    result = runner.invoke(app, ["code", "history", "--id", "IT-OPS-2025", *ledger_paths])
    assert result.exit_code == 0
    assert result.stdout.count("[approved]") == 3


def test_reserve_forecast_and_dashboard(ledger_paths: list[str]) -> None:
    create_code(ledger_paths)
    approve_code(ledger_paths)

    result = runner.invoke(
        app,
        [
            "reserve",
            "--code-id",
            "IT-OPS-2025",
            "--requisition-id",
            "REQ-001",
            "--amount",
            "400000",
            *ledger_paths,
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Reserved 400000" in result.stdout
    assert "Remaining: 600000" in result.stdout

    result = runner.invoke(app, ["forecast", "--id", "IT-OPS-2025", "--json", *ledger_paths])
    assert result.exit_code == 0
    forecast = json.loads(result.stdout)
    assert forecast["current_remaining"] == "600000"
    assert forecast["projected_months"] == 999
    assert forecast["projected_exhaustion_date"] is None
    assert forecast["status"] == "healthy"

    result = runner.invoke(app, ["dashboard", "--json", *ledger_paths])
    assert result.exit_code == 0
    dashboard = json.loads(result.stdout)
    assert dashboard["active_codes"] == 1
    assert dashboard["total_reserved"] == "400000"
    assert dashboard["overall_utilization"] == 40.0


def test_release_by_requisition(ledger_paths: list[str]) -> None:
    create_code(ledger_paths)
    approve_code(ledger_paths)
    runner.invoke(
        app,
        ["reserve", "--code-id", "IT-OPS-2025", "--requisition-id", "REQ-001", "--amount", "100", *ledger_paths],
    )

    result = runner.invoke(
        app,
        ["release", "--code-id", "IT-OPS-2025", "--requisition-id", "REQ-001", *ledger_paths],
    )
    assert result.exit_code == 0, result.output
    assert "Released 100" in result.stdout


def test_release_needs_exactly_one_id(ledger_paths: list[str]) -> None:
    result = runner.invoke(app, ["release", "--code-id", "IT-OPS-2025", *ledger_paths])
    assert result.exit_code == 1
    assert "exactly one" in result.output


def test_insufficient_budget_surfaces(ledger_paths: list[str]) -> None:
    create_code(ledger_paths, budget="1000")
    approve_code(ledger_paths)

    result = runner.invoke(
        app,
        ["reserve", "--code-id", "IT-OPS-2025", "--requisition-id", "REQ-001", "--amount", "5000", *ledger_paths],
    )
    assert result.exit_code != 0
    assert isinstance(result.exception, InsufficientBudget)


def test_unknown_code_exits(ledger_paths: list[str]) -> None:
    result = runner.invoke(app, ["code", "show", "--id", "NOPE-2025", *ledger_paths])
    assert result.exit_code == 1
    assert "Budget code not found" in result.output


def test_missing_database(tmp_path: Path) -> None:
    result = runner.invoke(app, ["dashboard", "--db", str(tmp_path / "missing.db")])
    assert result.exit_code == 1
    assert "Database not found" in result.output


def test_sweep_and_pending(ledger_paths: list[str]) -> None:
    create_code(ledger_paths)

    result = runner.invoke(app, ["pending", "--actor", APPROVAL_ORDER[0], *ledger_paths])
    assert result.exit_code == 0
    assert "Awaiting approval (1)" in result.stdout
    assert "budget_code" in result.stdout

    result = runner.invoke(app, ["sweep", *ledger_paths])
    assert result.exit_code == 0
    assert "Released: 0" in result.stdout
