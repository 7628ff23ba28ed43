"""
Budget Module Events - Domain events for the ledger

Events are immutable facts about what happened. They form the
append-only log that is the source of truth for the budget module.

Streams:
- budget_code: one stream per code (lifecycle, reservations, budget changes)
- budget_code_claim: one stream per code string, guarding uniqueness
- budget_revision / budget_transfer: one stream per request
- requisition_claim: one stream per requisition id, guarding resubmission
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from budget_ledger.budget.models import BudgetPeriod, BudgetStatus, BudgetType


# ========== Code Lifecycle ==========


class BudgetCodeClaimed(BaseModel):
    """A code string was taken by a new budget code"""

    code: str
    budget_code_id: str
    claimed_at: datetime


class BudgetCodeClaimReleased(BaseModel):
    """A code string became available again (its budget code was deleted)"""

    code: str
    budget_code_id: str
    released_at: datetime


class BudgetCodeCreated(BaseModel):
    """
    A new budget code was created, pending approval

    The code is not usable (no reservations) until activated.
    """

    budget_code_id: str
    code: str
    name: str
    department: str
    budget_type: BudgetType
    budget_period: BudgetPeriod
    fiscal_year: int
    budget: Decimal
    start_date: date
    end_date: date | None
    budget_owner: str | None
    description: str
    status: BudgetStatus
    chain_id: str
    created_at: datetime
    created_by: str | None


class BudgetCodeApprovalAdvanced(BaseModel):
    """A level of the code's chain was approved; the code waits on the next one"""

    budget_code_id: str
    level: int
    status: BudgetStatus
    advanced_at: datetime


class BudgetCodeActivated(BaseModel):
    """The code's approval chain completed - the code is usable"""

    budget_code_id: str
    chain_id: str | None
    activated_at: datetime
    activated_by: str | None


class BudgetCodeRejected(BaseModel):
    budget_code_id: str
    level: int
    reason: str
    rejected_at: datetime
    rejected_by: str | None


class BudgetCodeUpdated(BaseModel):
    """Non-monetary fields changed; ``changes`` holds only the changed fields"""

    budget_code_id: str
    changes: dict[str, Any]
    updated_at: datetime
    updated_by: str | None


class BudgetCodeSuspended(BaseModel):
    """New commitments are frozen; existing reservations may still settle"""

    budget_code_id: str
    reason: str
    suspended_at: datetime
    suspended_by: str | None


class BudgetCodeReactivated(BaseModel):
    budget_code_id: str
    reactivated_at: datetime
    reactivated_by: str | None


class BudgetCodeExpired(BaseModel):
    """The code's end date passed"""

    budget_code_id: str
    end_date: date
    expired_at: datetime


class BudgetCodeDeleted(BaseModel):
    budget_code_id: str
    code: str
    deleted_at: datetime
    deleted_by: str | None


# ========== Reservations ==========


class FundsReserved(BaseModel):
    """Funds were reserved for a requisition (allocation is 'allocated')"""

    budget_code_id: str
    allocation_id: str
    requisition_id: str
    amount: Decimal
    allocated_date: datetime
    reserved_by: str | None


class AllocationSpent(BaseModel):
    """A reservation was converted into spend - ``used`` grows by amount"""

    budget_code_id: str
    allocation_id: str
    amount: Decimal
    spent_date: datetime
    spent_by: str | None


class AllocationReleased(BaseModel):
    """
    A reservation was returned to the pool

    ``stale`` marks releases made by the sweeper so they stay auditable.
    """

    budget_code_id: str
    allocation_id: str
    amount: Decimal
    reason: str
    stale: bool = False
    released_date: datetime
    released_by: str | None


# ========== Budget Changes ==========


class BudgetRevised(BaseModel):
    """An approved revision set the code's budget to a new amount"""

    budget_code_id: str
    revision_id: str
    previous_budget: Decimal
    new_budget: Decimal
    change_amount: Decimal
    reason: str
    changed_by: str | None
    revised_at: datetime


class TransferDebited(BaseModel):
    """An executed transfer took budget out of this code"""

    budget_code_id: str
    transfer_id: str
    counterpart_budget_code_id: str
    amount: Decimal
    previous_budget: Decimal
    new_budget: Decimal
    reason: str
    changed_by: str | None
    executed_at: datetime


class TransferCredited(BaseModel):
    """An executed transfer added budget to this code"""

    budget_code_id: str
    transfer_id: str
    counterpart_budget_code_id: str
    amount: Decimal
    previous_budget: Decimal
    new_budget: Decimal
    reason: str
    changed_by: str | None
    executed_at: datetime


# ========== Revision Requests ==========


class RevisionRequested(BaseModel):
    revision_id: str
    budget_code_id: str
    previous_budget: Decimal
    requested_budget: Decimal
    change_amount: Decimal
    reason: str
    requested_by: str | None
    request_date: datetime
    chain_id: str


class RevisionApproved(BaseModel):
    revision_id: str
    budget_code_id: str
    approval_date: datetime


class RevisionRejected(BaseModel):
    revision_id: str
    budget_code_id: str
    reason: str
    rejected_at: datetime


# ========== Transfer Requests ==========


class TransferRequested(BaseModel):
    transfer_id: str
    from_budget_code_id: str
    to_budget_code_id: str
    amount: Decimal
    reason: str
    requested_by: str | None
    requested_at: datetime
    chain_id: str


class TransferExecuted(BaseModel):
    transfer_id: str
    executed_date: datetime


class TransferRejected(BaseModel):
    transfer_id: str
    reason: str
    rejected_at: datetime


class TransferCancelled(BaseModel):
    transfer_id: str
    reason: str
    cancelled_at: datetime
    cancelled_by: str | None = Field(default=None)


# ========== Requisitions ==========


class RequisitionClaimed(BaseModel):
    """A requisition id was submitted for approval; it cannot be submitted again"""

    requisition_id: str
    budget_code_id: str
    chain_id: str
    amount: Decimal
    claimed_at: datetime
