"""
Tests for the budget read models

Registries are rebuilt from the same events the engine writes, so these
drive the engine and then query its registries directly.
"""

from budget_ledger.budget.projections import BudgetCodeRegistry, TransferRegistry
from budget_ledger.engine import BudgetEngine

from tests.helpers import LONG_REASON, REQUESTER, code_data, create_active_code


def test_code_filters(engine: BudgetEngine) -> None:
    create_active_code(engine)
    create_active_code(engine, code="OPS-FLEET-2025", department="Operations")
    engine.create_budget_code(code_data("IT-LAB-2026", fiscal_year=2026), actor_id=REQUESTER)
    registry = engine.code_registry

    assert [c["code"] for c in registry.list_codes()] == [
        "IT-LAB-2026",
        "IT-OPS-2025",
        "OPS-FLEET-2025",
    ]
    assert [c["code"] for c in registry.list_codes(department="IT")] == [
        "IT-LAB-2026",
        "IT-OPS-2025",
    ]
    assert [c["code"] for c in registry.list_codes(fiscal_year=2026)] == ["IT-LAB-2026"]
    assert [c["code"] for c in registry.list_codes(active=False)] == ["IT-LAB-2026"]
    assert [c["code"] for c in registry.list_active()] == ["IT-OPS-2025", "OPS-FLEET-2025"]


def test_transfer_filters(engine: BudgetEngine) -> None:
    source = create_active_code(engine)["budget_code_id"]
    target = create_active_code(engine, code="IT-CAPEX-2025")["budget_code_id"]
    unrelated = create_active_code(engine, code="IT-LAB-2025")["budget_code_id"]
    transfer = engine.request_transfer(
        {
            "from_budget_code_id": source,
            "to_budget_code_id": target,
            "amount": "1000",
            "reason": LONG_REASON,
        },
        actor_id=REQUESTER,
    )
    registry = engine.transfer_registry

    assert [t["transfer_id"] for t in registry.list_transfers(budget_code_id=target)] == [
        transfer["transfer_id"]
    ]
    assert registry.list_transfers(budget_code_id=unrelated) == []
    assert registry.list_transfers(status="approved") == []
    assert [t["transfer_id"] for t in registry.list_pending()] == [transfer["transfer_id"]]


def test_registries_rebuild_from_store(engine: BudgetEngine) -> None:
    create_active_code(engine)
    events = engine.event_store.load_all_events()

    assert [c["code"] for c in BudgetCodeRegistry.from_events(events).list_codes()] == [
        "IT-OPS-2025"
    ]
    assert TransferRegistry.from_events(events).list_transfers() == []
