"""
Test Helper Functions - Builders and shortcuts

Provides reusable builders for test data creation and shortcuts for
walking an entity through its whole approval chain.

Fun fact: The Builder pattern was formalized by the Gang of Four in 1994,
but test data builders were popularized by the growing programmer test
movement in the 2000s - we use them to keep tests readable and maintainable!
"""

from typing import Any

from budget_ledger.kernel.events import Event, StreamAppend

IT_HEAD = "it.head@example.com"
OPS_HEAD = "ops.head@example.com"
HEAD_OF_BUSINESS = "business.head@example.com"
PRESIDENT = "president@example.com"
FINANCE = "finance@example.com"
REQUESTER = "requester@example.com"

DEPARTMENT_HEADS = {"IT": IT_HEAD, "Operations": OPS_HEAD}

CODE_CHAIN = [IT_HEAD, HEAD_OF_BUSINESS, FINANCE]
REVISION_CHAIN = [IT_HEAD, PRESIDENT, FINANCE]
TRANSFER_CHAIN = [IT_HEAD, HEAD_OF_BUSINESS, FINANCE]
REQUISITION_CHAIN = [IT_HEAD, FINANCE]

LONG_REASON = "Additional licences needed for the new support team"


def code_data(
    code: str = "IT-OPS-2025",
    department: str = "IT",
    budget: str = "1000000",
    **overrides: Any,
) -> dict[str, Any]:
    """
    Builder for budget code creation input

    Example:
        >>> code_data("IT-CAPEX-2025", budget="250000", budget_type="CAPEX")
    """
    data = {
        "code": code,
        "name": f"{code} budget",
        "department": department,
        "budget_type": "OPEX",
        "budget_period": "yearly",
        "fiscal_year": 2025,
        "budget": budget,
        "start_date": "2025-01-01",
        "end_date": "2025-12-31",
        "budget_owner": "owner@example.com",
        "description": "Test budget code",
    }
    data.update(overrides)
    return data


def approve_all(decide: Any, entity_id: str, approvers: list[str]) -> dict[str, Any]:
    """Approve every level in order, returning the last decision result"""
    result: dict[str, Any] = {}
    for email in approvers:
        result = decide(entity_id, email, "approved")
    return result


def create_active_code(engine: Any, **kwargs: Any) -> dict[str, Any]:
    """Create a budget code and approve it through its whole chain"""
    data = code_data(**kwargs)
    created = engine.create_budget_code(data, actor_id=REQUESTER)
    chain = [DEPARTMENT_HEADS[data["department"]], HEAD_OF_BUSINESS, FINANCE]
    approve_all(engine.decide_budget_code, created["budget_code_id"], chain)
    return engine.get_budget_code(created["budget_code_id"])


def append_to_stream(
    store: Any, stream_id: str, expected_version: int, events: list[Event]
) -> list[Event]:
    """Single-stream write through the store's atomic multi-stream append"""
    return store.append_streams(
        [StreamAppend(stream_id=stream_id, expected_version=expected_version, events=events)]
    )
