"""
Budget Module Invariants - Guards checked before any ledger write

These pure functions enforce the ledger's constraints. Each takes the
state rebuilt from the event store and either returns silently or raises
the precise domain error, so no partial mutation is ever planned.

Suspension freezes new commitments only: reservations, revisions and
transfers need an active code, while spending or releasing an existing
reservation is allowed on suspended and expired codes too.
"""

from decimal import Decimal

from budget_ledger.budget.models import (
    Allocation,
    AllocationStatus,
    BudgetCode,
    BudgetStatus,
    Revision,
    RevisionStatus,
    Transfer,
    TransferStatus,
)
from budget_ledger.kernel.errors import (
    ConstraintViolation,
    InsufficientBudget,
    InvalidState,
    NotFound,
    ValidationError,
)

SETTLEABLE_STATUSES = {BudgetStatus.ACTIVE, BudgetStatus.SUSPENDED, BudgetStatus.EXPIRED}


def validate_reason(reason: str, min_length: int) -> None:
    """
    Require a meaningful justification

    Raises:
        ValidationError: If the stripped reason is shorter than ``min_length``
    """
    if len(reason.strip()) < min_length:
        raise ValidationError(
            f"Reason must be at least {min_length} characters", field="reason"
        )


def validate_accepts_commitments(code: BudgetCode) -> None:
    """
    Require an active code for new reservations, revisions and transfers

    Raises:
        InvalidState: If the code is pending, rejected, suspended or expired
    """
    if code.status != BudgetStatus.ACTIVE or not code.active:
        raise InvalidState(
            f"Budget code {code.code}",
            code.status.value,
            f"Budget code {code.code} is {code.status.value}; it must be active",
        )


def validate_can_settle(code: BudgetCode) -> None:
    """
    Require a code on which existing reservations may be spent or released

    Raises:
        InvalidState: If the code never became active
    """
    if code.status not in SETTLEABLE_STATUSES:
        raise InvalidState(f"Budget code {code.code}", code.status.value)


def validate_sufficient_funds(code: BudgetCode, amount: Decimal) -> None:
    """
    Raises:
        InsufficientBudget: If ``amount`` exceeds what is left on the code
    """
    remaining = code.remaining
    if amount > remaining:
        raise InsufficientBudget(code.code, str(amount), str(remaining))


def validate_no_outstanding_reservation(code: BudgetCode, requisition_id: str) -> None:
    """
    One open reservation per requisition per code

    Raises:
        InvalidState: If the requisition already holds allocated funds here
    """
    existing = code.outstanding_allocation_for(requisition_id)
    if existing is not None:
        raise InvalidState(
            f"Requisition {requisition_id}",
            existing.status.value,
            f"Requisition {requisition_id} already has allocation "
            f"{existing.allocation_id} on {code.code}",
        )


def validate_allocation_open(code: BudgetCode, allocation_id: str) -> Allocation:
    """
    Require an allocation that is still 'allocated'

    Returns:
        The allocation

    Raises:
        NotFound: If the code has no such allocation
        InvalidState: If the allocation was already spent or released
    """
    allocation = code.allocations.get(allocation_id)
    if allocation is None:
        raise NotFound("Allocation", allocation_id)
    if allocation.status != AllocationStatus.ALLOCATED:
        raise InvalidState(f"Allocation {allocation_id}", allocation.status.value)
    return allocation


def validate_revision_amount(code: BudgetCode, requested_budget: Decimal) -> None:
    """
    A revision must change the budget and may not go below committed funds

    Raises:
        ValidationError: If the requested budget equals the current one
        ConstraintViolation: If it is below used + reserved
    """
    if requested_budget == code.budget:
        raise ValidationError(
            "Requested budget equals the current budget", field="requested_budget"
        )
    floor = code.used + code.reserved
    if requested_budget < floor:
        raise ConstraintViolation(
            f"Requested budget {requested_budget} for {code.code} is below "
            f"used plus reserved funds {floor}"
        )


def validate_deletable(code: BudgetCode) -> None:
    """
    A code can be deleted while pending or rejected, or while active with
    nothing ever committed against it

    Raises:
        InvalidState: Otherwise
    """
    if code.status.is_pending or code.status == BudgetStatus.REJECTED:
        return
    if code.status == BudgetStatus.ACTIVE and code.used == 0 and not code.allocations:
        return
    raise InvalidState(
        f"Budget code {code.code}",
        code.status.value,
        f"Budget code {code.code} has committed funds or history and cannot be deleted",
    )


def validate_revision_pending(revision: Revision) -> None:
    if revision.status != RevisionStatus.PENDING:
        raise InvalidState(f"Revision {revision.revision_id}", revision.status.value)


def validate_transfer_pending(transfer: Transfer) -> None:
    if transfer.status != TransferStatus.PENDING:
        raise InvalidState(f"Transfer {transfer.transfer_id}", transfer.status.value)
