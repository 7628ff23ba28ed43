"""
BudgetLedger - Reserve, spend, release, revise, transfer, activate

The ledger owns every monetary mutation of a budget code. Each mutation
is a compare-and-swap on the code's stream version: read the code from
its stream, check the guard, append with the version that was read. A
writer that loses the race re-reads and re-checks, so two requisitions
can never jointly reserve more than what remains.

Operations come in two shapes:
- plan_* methods return StreamAppends without writing. Approval hooks use
  them so a chain's final approval and its ledger effect commit together.
- reserve / spend / release / release_stale commit immediately under the
  version-retry loop.

Fun fact: "Encumbrance" is the public-sector accountant's word for a
reservation. Money you have promised is money you no longer have!
"""

from datetime import timedelta
from decimal import Decimal

from pydantic import BaseModel, Field

from budget_ledger.budget.events import (
    AllocationReleased,
    AllocationSpent,
    BudgetCodeActivated,
    BudgetRevised,
    FundsReserved,
    TransferCredited,
    TransferDebited,
)
from budget_ledger.budget.handlers import plan_code_append
from budget_ledger.budget.invariants import (
    validate_accepts_commitments,
    validate_allocation_open,
    validate_can_settle,
    validate_no_outstanding_reservation,
    validate_sufficient_funds,
)
from budget_ledger.budget.models import (
    Allocation,
    AllocationStatus,
    BudgetCode,
    Revision,
    Transfer,
)
from budget_ledger.budget.projections import BudgetCodeRegistry
from budget_ledger.kernel.errors import (
    ConstraintViolation,
    InvalidState,
    NotFound,
    ValidationError,
)
from budget_ledger.kernel.event_store import SQLiteEventStore
from budget_ledger.kernel.events import StreamAppend
from budget_ledger.kernel.ids import generate_id
from budget_ledger.kernel.logging import LogOperation, get_logger
from budget_ledger.kernel.metrics import (
    ledger_mutations_total,
    stale_reservations_released_total,
    track_command_duration,
)
from budget_ledger.kernel.policy import LedgerPolicy
from budget_ledger.kernel.retry import run_with_version_retry
from budget_ledger.kernel.time import TimeProvider

logger = get_logger(__name__)


class StaleReleaseResult(BaseModel):
    """Outcome of releasing the stale reservations of one code"""

    budget_code_id: str
    released: list[str] = Field(default_factory=list)  # allocation ids
    skipped: int = 0

    @property
    def released_count(self) -> int:
        return len(self.released)


class BudgetLedger:
    """
    Monetary operations on budget codes

    The ledger reads exclusively from the event store, never from read
    models, so every guard sees the latest committed state.
    """

    def __init__(
        self,
        event_store: SQLiteEventStore,
        time_provider: TimeProvider,
        policy: LedgerPolicy,
    ) -> None:
        self.event_store = event_store
        self.time_provider = time_provider
        self.policy = policy

    def load_code(self, budget_code_id: str) -> BudgetCode:
        """
        Rebuild a budget code from its stream

        Raises:
            NotFound: If the code does not exist or was deleted
        """
        events = self.event_store.load_stream(budget_code_id)
        code = BudgetCodeRegistry.from_events(events).get_model(budget_code_id)
        if code is None:
            raise NotFound("BudgetCode", budget_code_id)
        return code

    # ========== Planning ==========

    def plan_reserve(
        self,
        code: BudgetCode,
        requisition_id: str,
        amount: Decimal,
        command_id: str,
        actor_id: str | None = None,
    ) -> tuple[StreamAppend, str]:
        """
        Plan a reservation of ``amount`` for a requisition

        Returns:
            The planned append and the new allocation id

        Raises:
            ValidationError: If amount is not a positive number
            InvalidState: If the code is not active, or the requisition
                already holds an open reservation on it
            InsufficientBudget: If amount exceeds remaining
        """
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Amount must be positive", field="amount")
        validate_accepts_commitments(code)
        validate_no_outstanding_reservation(code, requisition_id)
        validate_sufficient_funds(code, amount)

        now = self.time_provider.now()
        allocation_id = generate_id()
        append = plan_code_append(
            code,
            [
                (
                    "FundsReserved",
                    FundsReserved(
                        budget_code_id=code.budget_code_id,
                        allocation_id=allocation_id,
                        requisition_id=requisition_id,
                        amount=amount,
                        allocated_date=now,
                        reserved_by=actor_id,
                    ),
                )
            ],
            command_id,
            actor_id,
            now,
        )
        return append, allocation_id

    def plan_spend(
        self,
        code: BudgetCode,
        allocation_id: str,
        command_id: str,
        actor_id: str | None = None,
    ) -> StreamAppend:
        """
        Plan allocated → spent; ``used`` grows by the allocation amount

        Raises:
            NotFound: Unknown allocation
            InvalidState: Allocation not 'allocated', or code never activated
        """
        validate_can_settle(code)
        allocation = validate_allocation_open(code, allocation_id)

        now = self.time_provider.now()
        return plan_code_append(
            code,
            [
                (
                    "AllocationSpent",
                    AllocationSpent(
                        budget_code_id=code.budget_code_id,
                        allocation_id=allocation_id,
                        amount=allocation.amount,
                        spent_date=now,
                        spent_by=actor_id,
                    ),
                )
            ],
            command_id,
            actor_id,
            now,
        )

    def plan_release(
        self,
        code: BudgetCode,
        allocation_id: str,
        reason: str,
        command_id: str,
        actor_id: str | None = None,
        stale: bool = False,
    ) -> StreamAppend:
        """
        Plan allocated → released; the amount returns to remaining

        Raises:
            NotFound: Unknown allocation
            InvalidState: Allocation already spent or released
        """
        validate_can_settle(code)
        allocation = validate_allocation_open(code, allocation_id)

        now = self.time_provider.now()
        return plan_code_append(
            code,
            [
                (
                    "AllocationReleased",
                    AllocationReleased(
                        budget_code_id=code.budget_code_id,
                        allocation_id=allocation_id,
                        amount=allocation.amount,
                        reason=reason,
                        stale=stale,
                        released_date=now,
                        released_by=actor_id,
                    ),
                )
            ],
            command_id,
            actor_id,
            now,
        )

    def plan_activate(
        self, code: BudgetCode, command_id: str, actor_id: str | None = None
    ) -> StreamAppend:
        """
        Plan pending → active (approval-only)

        Raises:
            InvalidState: If the code is not pending
        """
        if not code.status.is_pending:
            raise InvalidState(f"Budget code {code.code}", code.status.value)

        now = self.time_provider.now()
        return plan_code_append(
            code,
            [
                (
                    "BudgetCodeActivated",
                    BudgetCodeActivated(
                        budget_code_id=code.budget_code_id,
                        chain_id=code.chain_id,
                        activated_at=now,
                        activated_by=actor_id,
                    ),
                )
            ],
            command_id,
            actor_id,
            now,
        )

    def plan_apply_revision(
        self,
        code: BudgetCode,
        revision: Revision,
        command_id: str,
        actor_id: str | None = None,
    ) -> StreamAppend:
        """
        Plan budget = requested_budget with a history entry (approval-only)

        The floor is re-checked against the code as it is now, since funds
        may have been reserved or spent while the revision was pending.

        Raises:
            InvalidState: If the code is no longer active
            ConstraintViolation: If requested_budget < used + reserved
        """
        validate_accepts_commitments(code)
        floor = code.used + code.reserved
        if revision.requested_budget < floor:
            raise ConstraintViolation(
                f"Requested budget {revision.requested_budget} for {code.code} is "
                f"below used plus reserved funds {floor}"
            )

        now = self.time_provider.now()
        return plan_code_append(
            code,
            [
                (
                    "BudgetRevised",
                    BudgetRevised(
                        budget_code_id=code.budget_code_id,
                        revision_id=revision.revision_id,
                        previous_budget=code.budget,
                        new_budget=revision.requested_budget,
                        change_amount=revision.requested_budget - code.budget,
                        reason=revision.reason,
                        changed_by=revision.requested_by,
                        revised_at=now,
                    ),
                )
            ],
            command_id,
            actor_id,
            now,
        )

    def plan_execute_transfer(
        self,
        from_code: BudgetCode,
        to_code: BudgetCode,
        transfer: Transfer,
        command_id: str,
        actor_id: str | None = None,
    ) -> list[StreamAppend]:
        """
        Plan the debit and the credit of a transfer (approval-only)

        Both appends must be committed in the same write; the event store
        orders them by stream id.

        Raises:
            InvalidState: If either code is no longer active
            InsufficientBudget: If the source cannot cover the amount now
        """
        validate_accepts_commitments(from_code)
        validate_accepts_commitments(to_code)
        validate_sufficient_funds(from_code, transfer.amount)

        now = self.time_provider.now()
        debit = plan_code_append(
            from_code,
            [
                (
                    "TransferDebited",
                    TransferDebited(
                        budget_code_id=from_code.budget_code_id,
                        transfer_id=transfer.transfer_id,
                        counterpart_budget_code_id=to_code.budget_code_id,
                        amount=transfer.amount,
                        previous_budget=from_code.budget,
                        new_budget=from_code.budget - transfer.amount,
                        reason=transfer.reason,
                        changed_by=transfer.requested_by,
                        executed_at=now,
                    ),
                )
            ],
            command_id,
            actor_id,
            now,
        )
        credit = plan_code_append(
            to_code,
            [
                (
                    "TransferCredited",
                    TransferCredited(
                        budget_code_id=to_code.budget_code_id,
                        transfer_id=transfer.transfer_id,
                        counterpart_budget_code_id=from_code.budget_code_id,
                        amount=transfer.amount,
                        previous_budget=to_code.budget,
                        new_budget=to_code.budget + transfer.amount,
                        reason=transfer.reason,
                        changed_by=transfer.requested_by,
                        executed_at=now,
                    ),
                )
            ],
            command_id,
            actor_id,
            now,
        )
        return sorted([debit, credit], key=lambda a: a.stream_id)

    # ========== Committing Operations ==========

    @track_command_duration("reserve")
    def reserve(
        self,
        budget_code_id: str,
        requisition_id: str,
        amount: Decimal,
        actor_id: str | None = None,
    ) -> Allocation:
        """
        Reserve funds on a code for a requisition

        Args:
            budget_code_id: Code to reserve on
            requisition_id: Requisition the funds are held for
            amount: Amount to reserve (> 0)
            actor_id: Who asked

        Returns:
            The new allocation (status 'allocated')

        Raises:
            NotFound, ValidationError, InvalidState, InsufficientBudget
        """

        def attempt() -> str:
            code = self.load_code(budget_code_id)
            append, allocation_id = self.plan_reserve(
                code, requisition_id, amount, generate_id(), actor_id
            )
            self.event_store.append_streams([append])
            return allocation_id

        with LogOperation(
            logger,
            "reserve",
            budget_code_id=budget_code_id,
            requisition_id=requisition_id,
            amount=str(amount),
        ):
            allocation_id = run_with_version_retry(
                attempt, max_attempts=self.policy.max_commit_attempts
            )

        ledger_mutations_total.labels(operation="reserve").inc()
        return self.load_code(budget_code_id).allocations[allocation_id]

    @track_command_duration("spend")
    def spend(
        self, budget_code_id: str, allocation_id: str, actor_id: str | None = None
    ) -> Allocation:
        """
        Convert a reservation into spend

        Raises:
            NotFound, InvalidState
        """

        def attempt() -> None:
            code = self.load_code(budget_code_id)
            self.event_store.append_streams(
                [self.plan_spend(code, allocation_id, generate_id(), actor_id)]
            )

        with LogOperation(
            logger, "spend", budget_code_id=budget_code_id, allocation_id=allocation_id
        ):
            run_with_version_retry(attempt, max_attempts=self.policy.max_commit_attempts)

        ledger_mutations_total.labels(operation="spend").inc()
        return self.load_code(budget_code_id).allocations[allocation_id]

    @track_command_duration("release")
    def release(
        self,
        budget_code_id: str,
        allocation_id: str,
        reason: str = "released",
        actor_id: str | None = None,
    ) -> Allocation:
        """
        Return a reservation to the pool

        Raises:
            NotFound, InvalidState
        """
        self._release_one(budget_code_id, allocation_id, reason, actor_id, stale=False)
        ledger_mutations_total.labels(operation="release").inc()
        return self.load_code(budget_code_id).allocations[allocation_id]

    def release_for_requisition(
        self,
        budget_code_id: str,
        requisition_id: str,
        reason: str = "requisition cancelled",
        actor_id: str | None = None,
    ) -> Allocation:
        """
        Release the open reservation a requisition holds on a code

        Raises:
            NotFound: If the requisition holds no open reservation there
        """
        code = self.load_code(budget_code_id)
        allocation = code.outstanding_allocation_for(requisition_id)
        if allocation is None:
            raise NotFound("Reservation for requisition", requisition_id)
        return self.release(budget_code_id, allocation.allocation_id, reason, actor_id)

    def _release_one(
        self,
        budget_code_id: str,
        allocation_id: str,
        reason: str,
        actor_id: str | None,
        stale: bool,
    ) -> None:
        def attempt() -> None:
            code = self.load_code(budget_code_id)
            self.event_store.append_streams(
                [
                    self.plan_release(
                        code, allocation_id, reason, generate_id(), actor_id, stale=stale
                    )
                ]
            )

        with LogOperation(
            logger,
            "release",
            budget_code_id=budget_code_id,
            allocation_id=allocation_id,
            stale=stale,
        ):
            run_with_version_retry(attempt, max_attempts=self.policy.max_commit_attempts)

    def release_stale(
        self, budget_code_id: str, max_age_days: int | None = None
    ) -> StaleReleaseResult:
        """
        Release every reservation older than ``max_age_days``

        Each allocation is released under its own guard. An allocation that
        was spent or released concurrently is counted as skipped, not raised.

        Args:
            budget_code_id: Code to clean up
            max_age_days: Age threshold (defaults to policy.stale_reservation_days)

        Returns:
            StaleReleaseResult with released allocation ids and skip count
        """
        days = max_age_days if max_age_days is not None else self.policy.stale_reservation_days
        cutoff = self.time_provider.now() - timedelta(days=days)
        code = self.load_code(budget_code_id)

        candidates = [
            allocation.allocation_id
            for allocation in code.allocations.values()
            if allocation.status == AllocationStatus.ALLOCATED and allocation.allocated_date < cutoff
        ]

        result = StaleReleaseResult(budget_code_id=budget_code_id)
        for allocation_id in candidates:
            try:
                self._release_one(
                    budget_code_id,
                    allocation_id,
                    f"Stale reservation (older than {days} days)",
                    None,
                    stale=True,
                )
            except InvalidState:
                result.skipped += 1
                continue
            result.released.append(allocation_id)

        if result.released:
            stale_reservations_released_total.inc(len(result.released))
            logger.info(
                "Stale reservations released",
                budget_code_id=budget_code_id,
                released=len(result.released),
                skipped=result.skipped,
            )
        return result
