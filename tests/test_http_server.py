"""
Tests for the HTTP+JSON server

Drives the Flask app through its test client against a real engine and
checks the response envelope, the status code of every error kind and
the main approval flows.

Fun fact: HTTP 422 "Unprocessable Entity" came from WebDAV (RFC 4918),
not from HTTP itself - APIs borrowed it because "the request was fine,
the business rules said no" needed a name!
"""

import pytest

from budget_ledger import http_server
from budget_ledger.http_server import app, initialize_server, status_for
from budget_ledger.kernel.errors import (
    AlreadyDecided,
    ConstraintViolation,
    InsufficientBudget,
    InvalidState,
    LedgerError,
    NotCurrentApprover,
    NotFound,
    NotRequester,
    StreamVersionConflict,
    ValidationError,
)

from tests.helpers import (
    CODE_CHAIN,
    FINANCE,
    IT_HEAD,
    LONG_REASON,
    REQUESTER,
    REQUISITION_CHAIN,
    REVISION_CHAIN,
    TRANSFER_CHAIN,
    code_data,
)


@pytest.fixture
def client():
    """Flask test client"""
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


@pytest.fixture
def server(engine):
    """Server initialized with the test engine"""
    initialize_server(engine)
    yield engine
    # Reset global state after test
    http_server._engine = None
    http_server._db_path = None


def as_user(email: str) -> dict[str, str]:
    return {"X-User-Email": email}


def create_code(client, **overrides) -> dict:
    response = client.post("/budget-codes", json=code_data(**overrides), headers=as_user(REQUESTER))
    assert response.status_code == 201
    return response.get_json()["data"]


def approve_code(client, code_id: str) -> dict:
    data = {}
    for email in CODE_CHAIN:
        response = client.post(
            f"/budget-codes/{code_id}/approve",
            json={"decision": "approved"},
            headers=as_user(email),
        )
        assert response.status_code == 200
        data = response.get_json()["data"]
    return data


def active_code(client, **overrides) -> str:
    code_id = create_code(client, **overrides)["budget_code_id"]
    approve_code(client, code_id)
    return code_id


# =============================================================================
# Error mapping
# =============================================================================


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (ValidationError("bad"), 400),
        (NotCurrentApprover("c", "x@example.com", 1), 403),
        (NotRequester("transfer t", "x@example.com"), 403),
        (NotFound("BudgetCode", "x"), 404),
        (InvalidState("Budget code X", "suspended"), 409),
        (AlreadyDecided("c"), 409),
        (StreamVersionConflict("s", 1, 2), 409),
        (InsufficientBudget("X", "10", "5"), 422),
        (ConstraintViolation("below floor"), 422),
        (LedgerError("boom"), 500),
    ],
)
def test_status_for_errors(error: LedgerError, status: int) -> None:
    assert status_for(error) == status


# =============================================================================
# Health
# =============================================================================


def test_liveness_without_engine(client) -> None:
    response = client.get("/health/live")
    assert response.status_code == 200
    assert response.get_json()["data"]["status"] == "alive"


def test_readiness_without_engine(client) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 503
    body = response.get_json()
    assert body["success"] is False
    assert body["data"]["reason"] == "not_initialized"


def test_readiness_with_engine(client, server) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.get_json()["data"]["status"] == "ready"


def test_readiness_missing_database(client, server, tmp_path) -> None:
    initialize_server(server, tmp_path / "gone.db")
    response = client.get("/health/ready")
    assert response.status_code == 503
    assert response.get_json()["data"]["reason"] == "database_file_not_found"


def test_uninitialized_server_fails_requests(client) -> None:
    response = client.get("/budget-codes")
    assert response.status_code == 500
    assert response.get_json()["success"] is False


# =============================================================================
# Budget codes
# =============================================================================


def test_create_budget_code_envelope(client, server) -> None:
    response = client.post("/budget-codes", json=code_data(), headers=as_user(REQUESTER))

    assert response.status_code == 201
    body = response.get_json()
    assert body["success"] is True
    assert body["data"]["status"] == "pending_departmental_head"
    assert body["data"]["budget"] == "1000000"


def test_create_requires_user_header(client, server) -> None:
    response = client.post("/budget-codes", json=code_data())
    assert response.status_code == 400
    assert response.get_json()["data"]["code"] == "validation_error"


def test_create_with_invalid_input(client, server) -> None:
    response = client.post(
        "/budget-codes", json=code_data(budget="lots"), headers=as_user(REQUESTER)
    )
    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_non_object_body(client, server) -> None:
    response = client.post("/budget-codes", json=[1, 2], headers=as_user(REQUESTER))
    assert response.status_code == 400


def test_approval_flow_and_pending_lists(client, server) -> None:
    code_id = create_code(client)["budget_code_id"]

    mine = client.get("/budget-codes/pending-approvals", headers=as_user(IT_HEAD))
    assert [p["entity_id"] for p in mine.get_json()["data"]] == [code_id]
    everyone = client.get("/budget-codes/pending-approvals?scope=all")
    assert len(everyone.get_json()["data"]) == 1

    out_of_turn = client.post(
        f"/budget-codes/{code_id}/approve", json={"decision": "approved"}, headers=as_user(FINANCE)
    )
    assert out_of_turn.status_code == 403

    data = approve_code(client, code_id)
    assert data["budget_code"]["status"] == "active"

    again = client.post(
        f"/budget-codes/{code_id}/approve", json={"decision": "approved"}, headers=as_user(FINANCE)
    )
    assert again.status_code == 409

    history = client.get(f"/budget-codes/{code_id}/approval-history").get_json()["data"]
    assert [s["status"] for s in history] == ["approved", "approved", "approved"]


def test_reject_without_comments(client, server) -> None:
    code_id = create_code(client)["budget_code_id"]
    response = client.post(
        f"/budget-codes/{code_id}/approve", json={"decision": "rejected"}, headers=as_user(IT_HEAD)
    )
    assert response.status_code == 400


def test_get_list_update_delete(client, server) -> None:
    code_id = create_code(client)["budget_code_id"]

    assert client.get(f"/budget-codes/{code_id}").status_code == 200
    assert client.get("/budget-codes/missing").status_code == 404

    listed = client.get("/budget-codes?status=pending_departmental_head&fiscal_year=2025")
    assert len(listed.get_json()["data"]) == 1
    assert client.get("/budget-codes?fiscal_year=soon").status_code == 400

    updated = client.put(
        f"/budget-codes/{code_id}", json={"name": "Renamed"}, headers=as_user(REQUESTER)
    )
    assert updated.get_json()["data"]["name"] == "Renamed"

    deleted = client.delete(f"/budget-codes/{code_id}", headers=as_user(REQUESTER))
    assert deleted.status_code == 200
    assert client.get(f"/budget-codes/{code_id}").status_code == 404


def test_status_changes(client, server) -> None:
    code_id = active_code(client)

    suspended = client.post(
        f"/budget-codes/{code_id}/status",
        json={"action": "suspend", "reason": "Audit"},
        headers=as_user(REQUESTER),
    )
    assert suspended.get_json()["data"]["status"] == "suspended"

    blocked = client.post(
        f"/budget-codes/{code_id}/reserve", json={"requisition_id": "REQ-1", "amount": "10"}
    )
    assert blocked.status_code == 409

    reactivated = client.post(
        f"/budget-codes/{code_id}/status", json={"action": "reactivate"}, headers=as_user(REQUESTER)
    )
    assert reactivated.get_json()["data"]["status"] == "active"


# =============================================================================
# Reservations
# =============================================================================


def test_reserve_spend_release(client, server) -> None:
    code_id = active_code(client)

    reserved = client.post(
        f"/budget-codes/{code_id}/reserve", json={"requisition_id": "REQ-1", "amount": "400000"}
    )
    assert reserved.status_code == 201
    allocation_id = reserved.get_json()["data"]["allocation_id"]

    spent = client.post(f"/budget-codes/{code_id}/allocations/{allocation_id}/spend")
    assert spent.get_json()["data"]["status"] == "spent"

    client.post(f"/budget-codes/{code_id}/reserve", json={"requisition_id": "REQ-2", "amount": "100"})
    released = client.post(f"/budget-codes/{code_id}/release/REQ-2", json={"reason": "Withdrawn"})
    assert released.get_json()["data"]["release_reason"] == "Withdrawn"

    code = client.get(f"/budget-codes/{code_id}").get_json()["data"]
    assert code["used"] == "400000"
    assert code["remaining"] == "600000"


def test_reserve_errors(client, server) -> None:
    code_id = active_code(client)

    missing = client.post(f"/budget-codes/{code_id}/reserve", json={"amount": "10"})
    assert missing.status_code == 400

    too_much = client.post(
        f"/budget-codes/{code_id}/reserve", json={"requisition_id": "REQ-1", "amount": "1000001"}
    )
    assert too_much.status_code == 422
    assert too_much.get_json()["data"]["code"] == "insufficient_budget"

    not_a_number = client.post(
        f"/budget-codes/{code_id}/reserve", json={"requisition_id": "REQ-1", "amount": "NaN"}
    )
    assert not_a_number.status_code == 400
    assert not_a_number.get_json()["success"] is False
    assert not_a_number.get_json()["data"]["code"] == "validation_error"


def test_unknown_route_and_method_use_envelope(client, server) -> None:
    missing = client.get("/no-such-route")
    assert missing.status_code == 404
    assert missing.get_json()["success"] is False
    assert missing.get_json()["data"]["code"] == "not_found"

    wrong_method = client.delete("/health/live")
    assert wrong_method.status_code == 405
    assert wrong_method.get_json()["data"]["code"] == "method_not_allowed"


def test_unexpected_error_uses_envelope(client, server, monkeypatch) -> None:
    def explode(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(server, "dashboard", explode)
    response = client.get("/budget-codes/dashboard")
    assert response.status_code == 500
    body = response.get_json()
    assert body["success"] is False
    assert body["data"]["code"] == "internal_error"
    assert "disk on fire" not in body["message"]


def test_release_stale_and_sweep(client, server, test_time) -> None:
    code_id = active_code(client)
    client.post(f"/budget-codes/{code_id}/reserve", json={"requisition_id": "REQ-1", "amount": "10"})
    test_time.advance_days(10)

    bad = client.post(f"/budget-codes/{code_id}/release-stale", json={"max_age_days": "ten"})
    assert bad.status_code == 400

    released = client.post(f"/budget-codes/{code_id}/release-stale", json={"max_age_days": 5})
    assert released.get_json()["data"]["released_count"] == 1

    swept = client.post("/maintenance/sweep", json={})
    assert swept.status_code == 200
    assert swept.get_json()["data"]["total_released"] == 0


def test_forecast_and_dashboard(client, server) -> None:
    code_id = active_code(client)

    forecast = client.get(f"/budget-codes/{code_id}/forecast").get_json()["data"]
    assert forecast["projected_months"] == 999
    assert forecast["status"] == "healthy"

    dashboard = client.get("/budget-codes/dashboard").get_json()["data"]
    assert dashboard["active_codes"] == 1
    assert dashboard["total_budget"] == "1000000"


# =============================================================================
# Revisions, transfers, requisitions
# =============================================================================


def test_revision_flow(client, server) -> None:
    code_id = active_code(client)
    created = client.post(
        f"/budget-codes/{code_id}/revisions",
        json={"requested_budget": "1200000", "reason": LONG_REASON},
        headers=as_user(REQUESTER),
    )
    assert created.status_code == 201
    revision_id = created.get_json()["data"]["revision_id"]

    pending = client.get("/budget-codes/revisions/pending").get_json()["data"]
    assert [r["revision_id"] for r in pending] == [revision_id]

    unknown_action = client.post(
        f"/budget-codes/{code_id}/revisions/{revision_id}/maybe", headers=as_user(IT_HEAD)
    )
    assert unknown_action.status_code == 404

    for email in REVISION_CHAIN:
        response = client.post(
            f"/budget-codes/{code_id}/revisions/{revision_id}/approve", headers=as_user(email)
        )
        assert response.status_code == 200

    assert client.get(f"/budget-codes/{code_id}").get_json()["data"]["budget"] == "1200000"
    listed = client.get(f"/budget-codes/{code_id}/revisions?status=approved").get_json()["data"]
    assert len(listed) == 1


def test_revision_below_floor(client, server) -> None:
    code_id = active_code(client)
    client.post(f"/budget-codes/{code_id}/reserve", json={"requisition_id": "REQ-1", "amount": "600000"})

    response = client.post(
        f"/budget-codes/{code_id}/revisions",
        json={"requested_budget": "500000", "reason": LONG_REASON},
        headers=as_user(REQUESTER),
    )
    assert response.status_code == 422


def test_transfer_flow(client, server) -> None:
    source = active_code(client)
    target = active_code(client, code="IT-CAPEX-2025")

    created = client.post(
        "/budget-transfers",
        json={
            "from_budget_code_id": source,
            "to_budget_code_id": target,
            "amount": "250000",
            "reason": LONG_REASON,
        },
        headers=as_user(REQUESTER),
    )
    assert created.status_code == 201
    transfer_id = created.get_json()["data"]["transfer_id"]
    assert len(client.get("/budget-transfers/pending").get_json()["data"]) == 1

    for email in TRANSFER_CHAIN:
        client.post(f"/budget-transfers/{transfer_id}/approve", headers=as_user(email))

    transfer = client.get(f"/budget-transfers/{transfer_id}").get_json()["data"]
    assert transfer["status"] == "approved"
    stats = client.get("/budget-transfers/statistics").get_json()["data"]
    assert stats["total_amount_transferred"] == "250000"
    listed = client.get(f"/budget-transfers?budget_code_id={target}").get_json()["data"]
    assert len(listed) == 1


def test_transfer_cancel_by_other_user(client, server) -> None:
    source = active_code(client)
    target = active_code(client, code="IT-CAPEX-2025")
    created = client.post(
        "/budget-transfers",
        json={
            "from_budget_code_id": source,
            "to_budget_code_id": target,
            "amount": "10",
            "reason": LONG_REASON,
        },
        headers=as_user(REQUESTER),
    )
    transfer_id = created.get_json()["data"]["transfer_id"]

    forbidden = client.post(
        f"/budget-transfers/{transfer_id}/cancel", headers=as_user("intruder@example.com")
    )
    assert forbidden.status_code == 403

    cancelled = client.post(f"/budget-transfers/{transfer_id}/cancel", headers=as_user(REQUESTER))
    assert cancelled.get_json()["data"]["status"] == "cancelled"


def test_requisition_flow(client, server) -> None:
    code_id = active_code(client)
    submitted = client.post(
        "/requisitions",
        json={"budget_code_id": code_id, "requisition_id": "REQ-9", "amount": "5000"},
        headers=as_user(REQUESTER),
    )
    assert submitted.status_code == 201

    mine = client.get("/approvals/pending?entity_type=requisition", headers=as_user(IT_HEAD))
    assert [p["entity_id"] for p in mine.get_json()["data"]] == ["REQ-9"]
    assert client.get("/approvals/pending?entity_type=nope", headers=as_user(IT_HEAD)).status_code == 400

    for email in REQUISITION_CHAIN:
        client.post("/requisitions/REQ-9/approve", headers=as_user(email))

    requisition = client.get("/requisitions/REQ-9").get_json()["data"]
    assert requisition["approval_chain"]["state"]["kind"] == "approved"
    assert client.get(f"/budget-codes/{code_id}").get_json()["data"]["reserved"] == "5000"
