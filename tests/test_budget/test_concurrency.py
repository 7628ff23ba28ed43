"""
Concurrency tests - competing writers on the same budget code

Threads share one engine and one database file. Every reservation is a
compare-and-swap on the code's stream version, so however the writers
interleave the committed total can never exceed the budget.
"""

import threading
from decimal import Decimal

import pytest

from budget_ledger.engine import BudgetEngine
from budget_ledger.kernel.errors import InsufficientBudget, InvalidState
from budget_ledger.kernel.policy import LedgerPolicy

from tests.helpers import (
    FINANCE,
    HEAD_OF_BUSINESS,
    IT_HEAD,
    LONG_REASON,
    REQUESTER,
    create_active_code,
)


@pytest.fixture
def policy() -> LedgerPolicy:
    # Many writers on one stream: give each enough attempts to get through
    return LedgerPolicy(max_commit_attempts=50)


def run_threads(count: int, target) -> None:
    barrier = threading.Barrier(count)

    def wrapped(index: int) -> None:
        barrier.wait()
        target(index)

    threads = [threading.Thread(target=wrapped, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()


def test_concurrent_reservations_never_overdraw(engine: BudgetEngine) -> None:
    code_id = create_active_code(engine, budget="1000")["budget_code_id"]
    outcomes: list[str] = []
    lock = threading.Lock()

    def reserve(index: int) -> None:
        try:
            engine.reserve(code_id, f"REQ-{index}", "300")
            outcome = "reserved"
        except InsufficientBudget:
            outcome = "insufficient"
        with lock:
            outcomes.append(outcome)

    run_threads(6, reserve)

    assert outcomes.count("reserved") == 3
    assert outcomes.count("insufficient") == 3

    code = engine.ledger.load_code(code_id)
    assert code.reserved == Decimal("900")
    assert code.remaining == Decimal("100")


def test_same_requisition_reserves_once(engine: BudgetEngine) -> None:
    code_id = create_active_code(engine)["budget_code_id"]
    outcomes: list[str] = []
    lock = threading.Lock()

    def reserve(index: int) -> None:
        try:
            engine.reserve(code_id, "REQ-SHARED", "100")
            outcome = "reserved"
        except InvalidState:
            outcome = "duplicate"
        with lock:
            outcomes.append(outcome)

    run_threads(4, reserve)

    assert sorted(outcomes) == ["duplicate", "duplicate", "duplicate", "reserved"]
    assert engine.ledger.load_code(code_id).reserved == Decimal("100")


def test_spend_and_release_race(engine: BudgetEngine) -> None:
    code_id = create_active_code(engine)["budget_code_id"]
    allocation_id = engine.reserve(code_id, "REQ-1", "500")["allocation_id"]
    outcomes: list[str] = []
    lock = threading.Lock()

    def settle(index: int) -> None:
        try:
            if index % 2 == 0:
                engine.spend(code_id, allocation_id)
                outcome = "spent"
            else:
                engine.release(code_id, allocation_id)
                outcome = "released"
        except InvalidState:
            outcome = "lost"
        with lock:
            outcomes.append(outcome)

    run_threads(2, settle)

    assert outcomes.count("lost") == 1
    code = engine.ledger.load_code(code_id)
    status = code.allocations[allocation_id].status.value
    assert status in outcomes
    assert code.used + code.reserved + code.remaining == code.budget


def test_opposite_transfers_both_settle(engine: BudgetEngine) -> None:
    """A to B and B to A executing at once: no lost update, budget conserved"""
    first = create_active_code(engine)["budget_code_id"]
    second = create_active_code(engine, code="IT-CAPEX-2025", budget="500000")[
        "budget_code_id"
    ]
    transfer_ids = []
    for source, target, amount in ((first, second, "200000"), (second, first, "50000")):
        transfer_id = engine.request_transfer(
            {
                "from_budget_code_id": source,
                "to_budget_code_id": target,
                "amount": amount,
                "reason": LONG_REASON,
            },
            actor_id=REQUESTER,
        )["transfer_id"]
        engine.decide_transfer(transfer_id, IT_HEAD, "approved")
        engine.decide_transfer(transfer_id, HEAD_OF_BUSINESS, "approved")
        transfer_ids.append(transfer_id)

    outcomes: list[str] = []
    lock = threading.Lock()

    def execute(index: int) -> None:
        result = engine.decide_transfer(transfer_ids[index], FINANCE, "approved")
        with lock:
            outcomes.append(result["transfer"]["status"])

    run_threads(2, execute)

    assert outcomes == ["approved", "approved"]
    source = engine.ledger.load_code(first)
    target = engine.ledger.load_code(second)
    assert source.budget == Decimal("850000")
    assert target.budget == Decimal("650000")
    assert source.budget + target.budget == Decimal("1500000")
