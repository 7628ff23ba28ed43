"""
Budget Module Handlers - Entity lifecycle as planned stream appends

Handlers are the decision-making layer for budget codes, revisions and
transfers. They:
1. Take current state (rebuilt from the event store)
2. Validate invariants
3. Plan events as StreamAppends
4. Leave committing to the caller

Returning plans instead of writing lets the façade and the approval hooks
commit an entity change together with its approval chain transition.
Monetary mutations (reserve, spend, revise, transfer) live in BudgetLedger.
"""

from datetime import date, datetime

from pydantic import BaseModel

from budget_ledger.budget.commands import (
    CreateBudgetCode,
    RequestRevision,
    RequestTransfer,
    SubmitRequisition,
    UpdateBudgetCode,
)
from budget_ledger.budget.events import (
    BudgetCodeApprovalAdvanced,
    BudgetCodeClaimed,
    BudgetCodeClaimReleased,
    BudgetCodeCreated,
    BudgetCodeDeleted,
    BudgetCodeExpired,
    BudgetCodeReactivated,
    BudgetCodeRejected,
    BudgetCodeSuspended,
    BudgetCodeUpdated,
    RequisitionClaimed,
    RevisionApproved,
    RevisionRejected,
    RevisionRequested,
    TransferCancelled,
    TransferExecuted,
    TransferRejected,
    TransferRequested,
)
from budget_ledger.budget.invariants import (
    validate_accepts_commitments,
    validate_deletable,
    validate_reason,
    validate_revision_amount,
    validate_revision_pending,
    validate_sufficient_funds,
    validate_transfer_pending,
)
from budget_ledger.budget.models import BudgetCode, BudgetStatus, Revision, Transfer
from budget_ledger.kernel.errors import InvalidState, ValidationError
from budget_ledger.kernel.events import Event, StreamAppend, create_event
from budget_ledger.kernel.ids import generate_id
from budget_ledger.kernel.policy import LedgerPolicy
from budget_ledger.kernel.time import TimeProvider

CODE_STREAM_TYPE = "budget_code"
CLAIM_STREAM_TYPE = "budget_code_claim"
REVISION_STREAM_TYPE = "budget_revision"
TRANSFER_STREAM_TYPE = "budget_transfer"
REQUISITION_CLAIM_STREAM_TYPE = "requisition_claim"


def claim_stream_id(code: str) -> str:
    """Stream that serialises ownership of a code string"""
    return f"budget-code-claim:{code.upper()}"


def requisition_claim_stream_id(requisition_id: str) -> str:
    return f"requisition-claim:{requisition_id}"


def plan_event(
    *,
    stream_id: str,
    stream_type: str,
    event_type: str,
    payload: BaseModel,
    version: int,
    command_id: str,
    actor_id: str | None,
    occurred_at: datetime,
) -> Event:
    """Wrap a payload model into an Event"""
    return create_event(
        event_id=generate_id(),
        stream_id=stream_id,
        stream_type=stream_type,
        event_type=event_type,
        occurred_at=occurred_at,
        command_id=command_id,
        actor_id=actor_id,
        payload=payload.model_dump(mode="json"),
        version=version,
    )


def plan_code_append(
    code: BudgetCode,
    events: list[tuple[str, BaseModel]],
    command_id: str,
    actor_id: str | None,
    occurred_at: datetime,
) -> StreamAppend:
    """Plan consecutive events on a budget code stream, starting after code.version"""
    planned = [
        plan_event(
            stream_id=code.budget_code_id,
            stream_type=CODE_STREAM_TYPE,
            event_type=event_type,
            payload=payload,
            version=code.version + offset,
            command_id=command_id,
            actor_id=actor_id,
            occurred_at=occurred_at,
        )
        for offset, (event_type, payload) in enumerate(events, start=1)
    ]
    return StreamAppend(
        stream_id=code.budget_code_id, expected_version=code.version, events=planned
    )


class BudgetCommandHandlers:
    """
    Command handlers for budget code, revision and transfer lifecycles

    Handlers convert commands into planned appends, enforcing invariants.
    They never touch the event store.
    """

    def __init__(self, time_provider: TimeProvider, policy: LedgerPolicy) -> None:
        """
        Initialize handlers with dependencies

        Args:
            time_provider: For timestamps (injectable for testing)
            policy: Ledger policy (reason length, pending statuses)
        """
        self.time_provider = time_provider
        self.policy = policy

    def _code_append(
        self,
        code: BudgetCode,
        event_type: str,
        payload: BaseModel,
        command_id: str,
        actor_id: str | None,
    ) -> StreamAppend:
        return plan_code_append(
            code, [(event_type, payload)], command_id, actor_id, self.time_provider.now()
        )

    # ========== Budget Code Lifecycle ==========

    def handle_create_code(
        self,
        command: CreateBudgetCode,
        budget_code_id: str,
        chain_id: str,
        status: BudgetStatus,
        claim_events: list[Event],
        command_id: str,
        actor_id: str | None,
    ) -> list[StreamAppend]:
        """
        Handle CreateBudgetCode

        Claims the code string and creates the code pending approval.

        Args:
            command: Validated creation command
            budget_code_id: Id of the new code
            chain_id: Id of the approval chain opened alongside
            status: Initial pending status (from the first approver's role)
            claim_events: Current events of the code string's claim stream
            command_id: Idempotency key
            actor_id: Who issued the command

        Returns:
            Appends for the claim stream and the new code stream

        Raises:
            ValidationError: If the code string is already taken
        """
        now = self.time_provider.now()
        claim_id = claim_stream_id(command.code)

        if claim_events and claim_events[-1].event_type == "BudgetCodeClaimed":
            raise ValidationError(f"Budget code {command.code} already exists", field="code")

        claim_version = claim_events[-1].version if claim_events else 0
        claim_event = plan_event(
            stream_id=claim_id,
            stream_type=CLAIM_STREAM_TYPE,
            event_type="BudgetCodeClaimed",
            payload=BudgetCodeClaimed(
                code=command.code, budget_code_id=budget_code_id, claimed_at=now
            ),
            version=claim_version + 1,
            command_id=command_id,
            actor_id=actor_id,
            occurred_at=now,
        )

        created = plan_event(
            stream_id=budget_code_id,
            stream_type=CODE_STREAM_TYPE,
            event_type="BudgetCodeCreated",
            payload=BudgetCodeCreated(
                budget_code_id=budget_code_id,
                code=command.code,
                name=command.name,
                department=command.department,
                budget_type=command.budget_type,
                budget_period=command.budget_period,
                fiscal_year=command.fiscal_year,
                budget=command.budget,
                start_date=command.start_date,
                end_date=command.end_date,
                budget_owner=command.budget_owner,
                description=command.description,
                status=status,
                chain_id=chain_id,
                created_at=now,
                created_by=actor_id,
            ),
            version=1,
            command_id=command_id,
            actor_id=actor_id,
            occurred_at=now,
        )

        return [
            StreamAppend(stream_id=claim_id, expected_version=claim_version, events=[claim_event]),
            StreamAppend(stream_id=budget_code_id, expected_version=0, events=[created]),
        ]

    def handle_approval_advanced(
        self,
        code: BudgetCode,
        level: int,
        next_role: str,
        command_id: str,
        actor_id: str | None,
    ) -> StreamAppend:
        """Move a pending code to the status of its next approver"""
        if not code.status.is_pending:
            raise InvalidState(f"Budget code {code.code}", code.status.value)

        return self._code_append(
            code,
            "BudgetCodeApprovalAdvanced",
            BudgetCodeApprovalAdvanced(
                budget_code_id=code.budget_code_id,
                level=level,
                status=BudgetStatus(self.policy.pending_status_for(next_role)),
                advanced_at=self.time_provider.now(),
            ),
            command_id,
            actor_id,
        )

    def handle_code_rejected(
        self,
        code: BudgetCode,
        level: int,
        reason: str,
        command_id: str,
        actor_id: str | None,
    ) -> StreamAppend:
        if not code.status.is_pending:
            raise InvalidState(f"Budget code {code.code}", code.status.value)

        return self._code_append(
            code,
            "BudgetCodeRejected",
            BudgetCodeRejected(
                budget_code_id=code.budget_code_id,
                level=level,
                reason=reason,
                rejected_at=self.time_provider.now(),
                rejected_by=actor_id,
            ),
            command_id,
            actor_id,
        )

    def handle_update_code(
        self,
        code: BudgetCode,
        command: UpdateBudgetCode,
        command_id: str,
        actor_id: str | None,
    ) -> StreamAppend | None:
        """
        Handle UpdateBudgetCode

        Returns:
            The planned append, or None when nothing actually changes
        """
        if code.status in (BudgetStatus.REJECTED, BudgetStatus.EXPIRED):
            raise InvalidState(f"Budget code {code.code}", code.status.value)

        requested = command.model_dump(mode="json", exclude_unset=True)
        current = code.model_dump(mode="json")
        changes = {k: v for k, v in requested.items() if current.get(k) != v}
        if not changes:
            return None

        end_date = changes.get("end_date")
        if end_date is not None and date.fromisoformat(end_date) < code.start_date:
            raise ValidationError("end_date must not be before start_date", field="end_date")

        return self._code_append(
            code,
            "BudgetCodeUpdated",
            BudgetCodeUpdated(
                budget_code_id=code.budget_code_id,
                changes=changes,
                updated_at=self.time_provider.now(),
                updated_by=actor_id,
            ),
            command_id,
            actor_id,
        )

    def handle_suspend(
        self, code: BudgetCode, reason: str, command_id: str, actor_id: str | None
    ) -> StreamAppend:
        """
        Suspend an active code

        Raises:
            InvalidState: If the code is not active
        """
        if code.status != BudgetStatus.ACTIVE:
            raise InvalidState(f"Budget code {code.code}", code.status.value)

        return self._code_append(
            code,
            "BudgetCodeSuspended",
            BudgetCodeSuspended(
                budget_code_id=code.budget_code_id,
                reason=reason,
                suspended_at=self.time_provider.now(),
                suspended_by=actor_id,
            ),
            command_id,
            actor_id,
        )

    def handle_reactivate(
        self, code: BudgetCode, command_id: str, actor_id: str | None
    ) -> StreamAppend:
        """
        Reactivate a suspended code

        Raises:
            InvalidState: If the code is not suspended
        """
        if code.status != BudgetStatus.SUSPENDED:
            raise InvalidState(f"Budget code {code.code}", code.status.value)

        return self._code_append(
            code,
            "BudgetCodeReactivated",
            BudgetCodeReactivated(
                budget_code_id=code.budget_code_id,
                reactivated_at=self.time_provider.now(),
                reactivated_by=actor_id,
            ),
            command_id,
            actor_id,
        )

    def handle_expire(self, code: BudgetCode, command_id: str) -> StreamAppend:
        """
        Expire a code whose end date has passed (system action)

        Raises:
            InvalidState: If the code is not active/suspended or has not ended
        """
        today = self.time_provider.today()
        if code.status not in (BudgetStatus.ACTIVE, BudgetStatus.SUSPENDED):
            raise InvalidState(f"Budget code {code.code}", code.status.value)
        if code.end_date is None or code.end_date >= today:
            raise InvalidState(
                f"Budget code {code.code}",
                code.status.value,
                f"Budget code {code.code} has not reached its end date",
            )

        return self._code_append(
            code,
            "BudgetCodeExpired",
            BudgetCodeExpired(
                budget_code_id=code.budget_code_id,
                end_date=code.end_date,
                expired_at=self.time_provider.now(),
            ),
            command_id,
            None,
        )

    def handle_delete(
        self,
        code: BudgetCode,
        claim_version: int,
        command_id: str,
        actor_id: str | None,
    ) -> list[StreamAppend]:
        """
        Delete a code and free its code string

        Raises:
            InvalidState: If funds were ever committed against the code
        """
        validate_deletable(code)
        now = self.time_provider.now()

        release = plan_event(
            stream_id=claim_stream_id(code.code),
            stream_type=CLAIM_STREAM_TYPE,
            event_type="BudgetCodeClaimReleased",
            payload=BudgetCodeClaimReleased(
                code=code.code, budget_code_id=code.budget_code_id, released_at=now
            ),
            version=claim_version + 1,
            command_id=command_id,
            actor_id=actor_id,
            occurred_at=now,
        )

        return [
            self._code_append(
                code,
                "BudgetCodeDeleted",
                BudgetCodeDeleted(
                    budget_code_id=code.budget_code_id,
                    code=code.code,
                    deleted_at=now,
                    deleted_by=actor_id,
                ),
                command_id,
                actor_id,
            ),
            StreamAppend(
                stream_id=claim_stream_id(code.code),
                expected_version=claim_version,
                events=[release],
            ),
        ]

    # ========== Revisions ==========

    def handle_request_revision(
        self,
        code: BudgetCode,
        command: RequestRevision,
        revision_id: str,
        chain_id: str,
        command_id: str,
        actor_id: str | None,
    ) -> StreamAppend:
        """
        Handle RequestRevision

        Raises:
            InvalidState: If the code is not active
            ValidationError: If the reason is too short or nothing changes
            ConstraintViolation: If the amount is below used + reserved
        """
        validate_accepts_commitments(code)
        validate_reason(command.reason, self.policy.min_reason_length)
        validate_revision_amount(code, command.requested_budget)
        now = self.time_provider.now()

        event = plan_event(
            stream_id=revision_id,
            stream_type=REVISION_STREAM_TYPE,
            event_type="RevisionRequested",
            payload=RevisionRequested(
                revision_id=revision_id,
                budget_code_id=code.budget_code_id,
                previous_budget=code.budget,
                requested_budget=command.requested_budget,
                change_amount=command.requested_budget - code.budget,
                reason=command.reason.strip(),
                requested_by=actor_id,
                request_date=now,
                chain_id=chain_id,
            ),
            version=1,
            command_id=command_id,
            actor_id=actor_id,
            occurred_at=now,
        )
        return StreamAppend(stream_id=revision_id, expected_version=0, events=[event])

    def handle_revision_approved(
        self, revision: Revision, command_id: str, actor_id: str | None
    ) -> StreamAppend:
        validate_revision_pending(revision)
        now = self.time_provider.now()
        event = plan_event(
            stream_id=revision.revision_id,
            stream_type=REVISION_STREAM_TYPE,
            event_type="RevisionApproved",
            payload=RevisionApproved(
                revision_id=revision.revision_id,
                budget_code_id=revision.budget_code_id,
                approval_date=now,
            ),
            version=revision.version + 1,
            command_id=command_id,
            actor_id=actor_id,
            occurred_at=now,
        )
        return StreamAppend(
            stream_id=revision.revision_id, expected_version=revision.version, events=[event]
        )

    def handle_revision_rejected(
        self, revision: Revision, reason: str, command_id: str, actor_id: str | None
    ) -> StreamAppend:
        validate_revision_pending(revision)
        now = self.time_provider.now()
        event = plan_event(
            stream_id=revision.revision_id,
            stream_type=REVISION_STREAM_TYPE,
            event_type="RevisionRejected",
            payload=RevisionRejected(
                revision_id=revision.revision_id,
                budget_code_id=revision.budget_code_id,
                reason=reason,
                rejected_at=now,
            ),
            version=revision.version + 1,
            command_id=command_id,
            actor_id=actor_id,
            occurred_at=now,
        )
        return StreamAppend(
            stream_id=revision.revision_id, expected_version=revision.version, events=[event]
        )

    # ========== Transfers ==========

    def handle_request_transfer(
        self,
        from_code: BudgetCode,
        to_code: BudgetCode,
        command: RequestTransfer,
        transfer_id: str,
        chain_id: str,
        command_id: str,
        actor_id: str | None,
    ) -> StreamAppend:
        """
        Handle RequestTransfer

        Funds are not held while the transfer awaits approval; availability
        is checked again when the transfer executes.

        Raises:
            InvalidState: If either code is not active
            ValidationError: If the reason is too short
            InsufficientBudget: If the source code cannot cover the amount now
        """
        validate_accepts_commitments(from_code)
        validate_accepts_commitments(to_code)
        validate_reason(command.reason, self.policy.min_reason_length)
        validate_sufficient_funds(from_code, command.amount)
        now = self.time_provider.now()

        event = plan_event(
            stream_id=transfer_id,
            stream_type=TRANSFER_STREAM_TYPE,
            event_type="TransferRequested",
            payload=TransferRequested(
                transfer_id=transfer_id,
                from_budget_code_id=from_code.budget_code_id,
                to_budget_code_id=to_code.budget_code_id,
                amount=command.amount,
                reason=command.reason.strip(),
                requested_by=actor_id,
                requested_at=now,
                chain_id=chain_id,
            ),
            version=1,
            command_id=command_id,
            actor_id=actor_id,
            occurred_at=now,
        )
        return StreamAppend(stream_id=transfer_id, expected_version=0, events=[event])

    def _transfer_append(
        self,
        transfer: Transfer,
        event_type: str,
        payload: BaseModel,
        command_id: str,
        actor_id: str | None,
    ) -> StreamAppend:
        validate_transfer_pending(transfer)
        event = plan_event(
            stream_id=transfer.transfer_id,
            stream_type=TRANSFER_STREAM_TYPE,
            event_type=event_type,
            payload=payload,
            version=transfer.version + 1,
            command_id=command_id,
            actor_id=actor_id,
            occurred_at=self.time_provider.now(),
        )
        return StreamAppend(
            stream_id=transfer.transfer_id, expected_version=transfer.version, events=[event]
        )

    def handle_transfer_executed(
        self, transfer: Transfer, command_id: str, actor_id: str | None
    ) -> StreamAppend:
        return self._transfer_append(
            transfer,
            "TransferExecuted",
            TransferExecuted(
                transfer_id=transfer.transfer_id, executed_date=self.time_provider.now()
            ),
            command_id,
            actor_id,
        )

    def handle_transfer_rejected(
        self, transfer: Transfer, reason: str, command_id: str, actor_id: str | None
    ) -> StreamAppend:
        return self._transfer_append(
            transfer,
            "TransferRejected",
            TransferRejected(
                transfer_id=transfer.transfer_id,
                reason=reason,
                rejected_at=self.time_provider.now(),
            ),
            command_id,
            actor_id,
        )

    def handle_transfer_cancelled(
        self, transfer: Transfer, reason: str, command_id: str, actor_id: str | None
    ) -> StreamAppend:
        return self._transfer_append(
            transfer,
            "TransferCancelled",
            TransferCancelled(
                transfer_id=transfer.transfer_id,
                reason=reason,
                cancelled_at=self.time_provider.now(),
                cancelled_by=actor_id,
            ),
            command_id,
            actor_id,
        )

    # ========== Requisitions ==========

    def handle_claim_requisition(
        self,
        command: SubmitRequisition,
        chain_id: str,
        claim_version: int,
        command_id: str,
        actor_id: str | None,
    ) -> StreamAppend:
        """
        Claim a requisition id for the chain opened alongside

        The claim is written at expected version 0, so of two submissions
        racing on one id only the first commit lands.

        Raises:
            InvalidState: If the requisition id was already claimed
        """
        if claim_version > 0:
            raise InvalidState(
                f"Requisition {command.requisition_id}",
                "submitted",
                f"Requisition {command.requisition_id} was already submitted",
            )

        now = self.time_provider.now()
        stream_id = requisition_claim_stream_id(command.requisition_id)
        event = plan_event(
            stream_id=stream_id,
            stream_type=REQUISITION_CLAIM_STREAM_TYPE,
            event_type="RequisitionClaimed",
            payload=RequisitionClaimed(
                requisition_id=command.requisition_id,
                budget_code_id=command.budget_code_id,
                chain_id=chain_id,
                amount=command.amount,
                claimed_at=now,
            ),
            version=1,
            command_id=command_id,
            actor_id=actor_id,
            occurred_at=now,
        )
        return StreamAppend(stream_id=stream_id, expected_version=0, events=[event])
