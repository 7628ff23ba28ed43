"""
Tests for StaleReservationSweeper

Covers the periodic sweep across every settleable code and the expiry of
codes whose end date has passed.
"""

from decimal import Decimal

from budget_ledger.engine import BudgetEngine
from budget_ledger.kernel.time import TestTimeProvider

from tests.helpers import LONG_REASON, create_active_code


def test_sweep_releases_stale_reservations_across_codes(
    engine: BudgetEngine, test_time: TestTimeProvider
) -> None:
    it_code = create_active_code(engine)
    ops_code = create_active_code(engine, code="OPS-2025", department="Operations")
    engine.reserve(it_code["budget_code_id"], "REQ-1", "1000")
    engine.reserve(ops_code["budget_code_id"], "REQ-2", "2000")
    test_time.advance_days(31)
    fresh = engine.reserve(it_code["budget_code_id"], "REQ-3", "500")

    report = engine.sweep_stale_reservations()

    assert report.max_age_days == 30
    assert report.total_released == 2
    assert report.total_skipped == 0
    assert sorted(r.code for r in report.results) == ["IT-OPS-2025", "OPS-2025"]
    assert "Released: 2" in report.summary()

    it_view = engine.get_budget_code(it_code["budget_code_id"])
    assert Decimal(it_view["reserved"]) == Decimal("500")
    assert it_view["allocations"][fresh["allocation_id"]]["status"] == "allocated"


def test_sweep_with_nothing_stale(engine: BudgetEngine) -> None:
    code = create_active_code(engine)
    engine.reserve(code["budget_code_id"], "REQ-1", "1000")

    report = engine.sweep_stale_reservations()

    assert report.results == []
    assert report.total_released == 0
    assert report.expired_codes == []


def test_sweep_covers_suspended_codes(
    engine: BudgetEngine, test_time: TestTimeProvider
) -> None:
    code = create_active_code(engine)
    engine.reserve(code["budget_code_id"], "REQ-1", "1000")
    engine.suspend_budget_code(code["budget_code_id"], LONG_REASON)
    test_time.advance_days(45)

    report = engine.sweep_stale_reservations()

    assert report.total_released == 1
    assert Decimal(engine.get_budget_code(code["budget_code_id"])["reserved"]) == 0


def test_sweep_expires_ended_codes(engine: BudgetEngine, test_time: TestTimeProvider) -> None:
    short = create_active_code(engine, code="IT-Q1-2025", end_date="2025-03-31")
    full_year = create_active_code(engine)
    allocation = engine.reserve(short["budget_code_id"], "REQ-1", "1000")

    test_time.advance_days(80)  # 2025-04-05
    report = engine.sweep_stale_reservations(max_age_days=365)

    assert report.expired_codes == ["IT-Q1-2025"]
    assert engine.get_budget_code(short["budget_code_id"])["status"] == "expired"
    assert engine.get_budget_code(full_year["budget_code_id"])["status"] == "active"

    # An expired code still settles what it already reserved
    assert engine.spend(short["budget_code_id"], allocation["allocation_id"])["status"] == "spent"


def test_expire_budget_codes_is_idempotent(
    engine: BudgetEngine, test_time: TestTimeProvider
) -> None:
    create_active_code(engine, code="IT-Q1-2025", end_date="2025-03-31")
    test_time.advance_days(80)

    assert engine.expire_budget_codes() == ["IT-Q1-2025"]
    assert engine.expire_budget_codes() == []
