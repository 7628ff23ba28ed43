"""
Budget Domain Models - Core entities of the ledger

These models represent the fundamental building blocks of the budget system:
budget codes (the ledger accounts), allocations (reservations against a
code), revisions and transfers (the only ways a budget amount changes).

Key concepts:
- Reserve-then-spend: a requisition first reserves funds, spending converts
  the reservation into used budget
- remaining = budget - used - reserved, and never goes negative
- Budget amounts change only through an approved revision or transfer,
  each leaving an entry in budget_history
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, computed_field


class BudgetType(str, Enum):
    OPEX = "OPEX"
    CAPEX = "CAPEX"
    PROJECT = "PROJECT"
    OPERATIONAL = "OPERATIONAL"


class BudgetPeriod(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    PROJECT = "project"


class BudgetStatus(str, Enum):
    """
    Budget code lifecycle states

    pending_* → active → suspended ⇄ active → expired
             ↘ rejected

    The pending_* value names whose approval the code is waiting for.
    """

    PENDING = "pending"
    PENDING_DEPARTMENTAL_HEAD = "pending_departmental_head"
    PENDING_HEAD_OF_BUSINESS = "pending_head_of_business"
    PENDING_FINANCE = "pending_finance"
    ACTIVE = "active"
    REJECTED = "rejected"
    SUSPENDED = "suspended"
    EXPIRED = "expired"

    @property
    def is_pending(self) -> bool:
        return self.value.startswith("pending")


class AllocationStatus(str, Enum):
    """allocated → spent | released (both terminal)"""

    ALLOCATED = "allocated"
    SPENT = "spent"
    RELEASED = "released"


class RevisionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TransferStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class Allocation(BaseModel):
    """
    A reservation of funds on a budget code for one requisition

    Attributes:
        allocation_id: Unique identifier
        requisition_id: Requisition the funds are held for
        amount: Reserved amount (strictly positive)
        allocated_date: When the funds were reserved
        status: allocated, spent or released
        spent_date: When the reservation was converted into spend
        released_date: When the reservation was returned to the pool
        release_reason: Why it was released (manual, stale, requisition cancelled)
    """

    allocation_id: str
    requisition_id: str
    amount: Decimal = Field(gt=0)
    allocated_date: datetime
    status: AllocationStatus = AllocationStatus.ALLOCATED
    spent_date: datetime | None = None
    released_date: datetime | None = None
    release_reason: str | None = None


class BudgetHistoryEntry(BaseModel):
    """One change of a code's budget amount (append-only)"""

    previous_budget: Decimal
    new_budget: Decimal
    change_amount: Decimal
    reason: str
    changed_by: str | None
    change_date: datetime
    source: str  # revision, transfer_in, transfer_out
    reference_id: str | None = None


class BudgetCode(BaseModel):
    """
    A ledger account with a budget, usage and reservations

    Invariants enforced:
    - budget = used + reserved + remaining
    - remaining >= 0
    - used only grows, via allocated → spent
    - budget only changes via applied revisions and executed transfers

    ``version`` is the stream version the code was rebuilt at.
    """

    budget_code_id: str
    code: str
    name: str
    department: str
    budget_type: BudgetType
    budget_period: BudgetPeriod
    fiscal_year: int
    budget: Decimal = Field(ge=0)
    used: Decimal = Field(default=Decimal("0"), ge=0)
    active: bool = False
    status: BudgetStatus = BudgetStatus.PENDING
    start_date: date
    end_date: date | None = None
    budget_owner: str | None = None
    description: str = ""
    chain_id: str | None = None
    budget_history: list[BudgetHistoryEntry] = Field(default_factory=list)
    allocations: dict[str, Allocation] = Field(default_factory=dict)
    created_at: datetime | None = None
    created_by: str | None = None
    activated_at: datetime | None = None
    rejection_reason: str | None = None
    suspension_reason: str | None = None
    deleted: bool = False
    version: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def reserved(self) -> Decimal:
        return sum(
            (a.amount for a in self.allocations.values() if a.status == AllocationStatus.ALLOCATED),
            Decimal("0"),
        )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def remaining(self) -> Decimal:
        return self.budget - self.used - self.reserved

    @computed_field  # type: ignore[prop-decorator]
    @property
    def utilization_percentage(self) -> float:
        if self.budget == 0:
            return 0.0
        return round(float((self.budget - self.remaining) / self.budget * 100), 2)

    def outstanding_allocation_for(self, requisition_id: str) -> Allocation | None:
        """The allocated (not yet spent or released) reservation of a requisition"""
        for allocation in self.allocations.values():
            if (
                allocation.requisition_id == requisition_id
                and allocation.status == AllocationStatus.ALLOCATED
            ):
                return allocation
        return None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "budget_code_id": "01908e9a-3b87-7000-8000-00000000c0de",
                    "code": "IT-OPS-2025",
                    "name": "IT Operations",
                    "department": "IT",
                    "budget_type": "OPEX",
                    "budget_period": "yearly",
                    "fiscal_year": 2025,
                    "budget": "1000000",
                    "used": "0",
                    "status": "active",
                    "start_date": "2025-01-01",
                }
            ]
        }
    }


class Revision(BaseModel):
    """
    A request to change a code's budget to a new amount

    Applied only when its approval chain completes.
    """

    revision_id: str
    budget_code_id: str
    previous_budget: Decimal
    requested_budget: Decimal = Field(ge=0)
    change_amount: Decimal
    reason: str
    requested_by: str | None
    request_date: datetime
    status: RevisionStatus = RevisionStatus.PENDING
    chain_id: str | None = None
    approval_date: datetime | None = None
    rejection_reason: str | None = None
    version: int = 0


class Transfer(BaseModel):
    """
    A request to move budget from one code to another

    Executed (debit and credit together) only when its approval chain
    completes.
    """

    transfer_id: str
    from_budget_code_id: str
    to_budget_code_id: str
    amount: Decimal = Field(gt=0)
    reason: str
    requested_by: str | None
    requested_at: datetime
    status: TransferStatus = TransferStatus.PENDING
    chain_id: str | None = None
    executed_date: datetime | None = None
    rejection_reason: str | None = None
    cancellation_reason: str | None = None
    version: int = 0
