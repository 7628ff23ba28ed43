"""
Tests for the ApprovalChainStore read model

The store is folded from the same events the workflow engine writes, so
these tests drive the engine and then rebuild the store from the log.
"""

import pytest

from budget_ledger.approval.models import Approver, EntityType
from budget_ledger.approval.projections import ApprovalChainStore
from budget_ledger.approval.workflow import ApprovalWorkflowEngine
from budget_ledger.kernel.event_store import SQLiteEventStore
from budget_ledger.kernel.ids import generate_id

from tests.helpers import FINANCE, IT_HEAD, OPS_HEAD


@pytest.fixture
def workflow(event_store, test_time, policy) -> ApprovalWorkflowEngine:
    return ApprovalWorkflowEngine(event_store, test_time, policy)


def open_requisition(
    workflow: ApprovalWorkflowEngine, requisition_id: str, head: str = IT_HEAD
) -> str:
    approvers = [
        Approver(name="Head", role="department_head", email=head),
        Approver(name="Fiona", role="finance", email=FINANCE),
    ]
    append = workflow.open_chain(
        EntityType.REQUISITION,
        requisition_id,
        approvers,
        generate_id(),
        context={"amount": "100"},
    )
    workflow.event_store.append_streams([append])
    return append.stream_id


def rebuild(event_store: SQLiteEventStore) -> ApprovalChainStore:
    return ApprovalChainStore.from_events(event_store.load_all_events())


def test_pending_for_follows_current_level(workflow, event_store, test_time) -> None:
    first = open_requisition(workflow, "REQ-1")
    test_time.advance_seconds(60)
    second = open_requisition(workflow, "REQ-2")

    store = rebuild(event_store)
    assert [c["chain_id"] for c in store.pending_for(IT_HEAD)] == [first, second]
    assert store.pending_for(FINANCE) == []

    workflow.submit_decision(first, IT_HEAD, "approved")
    store = rebuild(event_store)
    assert [c["chain_id"] for c in store.pending_for(IT_HEAD)] == [second]
    assert [c["chain_id"] for c in store.pending_for(FINANCE.upper())] == [first]


def test_all_pending_filters_by_entity_type(workflow, event_store) -> None:
    open_requisition(workflow, "REQ-1")
    open_requisition(workflow, "REQ-2", head=OPS_HEAD)

    store = rebuild(event_store)
    assert len(store.all_pending()) == 2
    assert len(store.all_pending(EntityType.REQUISITION.value)) == 2
    assert store.all_pending(EntityType.BUDGET_CODE.value) == []


def test_completed_chains_leave_pending_lists(workflow, event_store) -> None:
    chain_id = open_requisition(workflow, "REQ-1")
    workflow.submit_decision(chain_id, IT_HEAD, "approved")
    workflow.submit_decision(chain_id, FINANCE, "approved")

    store = rebuild(event_store)
    assert store.all_pending() == []
    chain = store.get(chain_id)
    assert chain["state"] == {"kind": "approved"}
    assert chain["completed_at"] is not None


def test_history_of_open_chain_includes_pending_steps(workflow, event_store) -> None:
    chain_id = open_requisition(workflow, "REQ-1")
    workflow.submit_decision(chain_id, IT_HEAD, "approved", "ok")

    history = rebuild(event_store).history(EntityType.REQUISITION.value, "REQ-1")
    assert [(s["level"], s["status"]) for s in history] == [(1, "approved"), (2, "pending")]
    assert history[0]["action_date"] == "2025-01-15"
    assert history[0]["action_time"] == "12:00:00"
    assert history[0]["comments"] == "ok"


def test_history_of_rejected_chain_drops_pending_steps(workflow, event_store) -> None:
    chain_id = open_requisition(workflow, "REQ-1")
    workflow.submit_decision(chain_id, IT_HEAD, "rejected", "Duplicate request")

    store = rebuild(event_store)
    history = store.history(EntityType.REQUISITION.value, "REQ-1")
    assert [(s["level"], s["status"]) for s in history] == [(1, "rejected")]
    assert store.get(chain_id)["state"]["reason"] == "Duplicate request"


def test_history_of_unknown_entity_is_empty(event_store) -> None:
    assert rebuild(event_store).history(EntityType.REQUISITION.value, "nope") == []


def test_get_model_round_trips(workflow, event_store) -> None:
    chain_id = open_requisition(workflow, "REQ-1")
    model = rebuild(event_store).get_model(chain_id)
    assert model is not None
    assert model.entity_type == EntityType.REQUISITION
    assert model.context == {"amount": "100"}
    assert model.current_level() == 1
