"""
BudgetEngine - Main façade class

This is the primary interface for interacting with the Budget Ledger.
It provides a high-level API that hides event sourcing, approval chains
and projections.

Example:
    >>> from budget_ledger import BudgetEngine
    >>> from budget_ledger.approval import ApproverDirectory, DirectoryApproverResolver
    >>> directory = ApproverDirectory.from_json_file("approvers.json")
    >>> engine = BudgetEngine("ledger.db", DirectoryApproverResolver(directory))
    >>> code = engine.create_budget_code({...}, actor_id="owner@example.com")
    >>> engine.decide_budget_code(code["budget_code_id"], "head@example.com", "approved")
    >>> engine.reserve(code["budget_code_id"], "REQ-1", Decimal("400000"))
    >>> engine.forecast(code["budget_code_id"])
"""

import threading
import time
from decimal import Decimal
from pathlib import Path
from typing import Any

from budget_ledger.approval.models import ApprovalChain, Decision, EntityType
from budget_ledger.approval.projections import ApprovalChainStore
from budget_ledger.approval.resolver import ApproverResolver
from budget_ledger.approval.workflow import (
    CHAIN_STREAM_TYPE,
    ApprovalWorkflowEngine,
    DecisionContext,
    DecisionOutcome,
)
from budget_ledger.budget.commands import (
    ChangeCodeStatus,
    CreateBudgetCode,
    DecisionRequest,
    RequestRevision,
    RequestTransfer,
    ReserveFunds,
    SubmitRequisition,
    UpdateBudgetCode,
    parse_command,
)
from budget_ledger.budget.forecast import Forecast, ForecastCalculator, ForecastStatus
from budget_ledger.budget.handlers import (
    CODE_STREAM_TYPE,
    REVISION_STREAM_TYPE,
    TRANSFER_STREAM_TYPE,
    BudgetCommandHandlers,
    claim_stream_id,
    requisition_claim_stream_id,
)
from budget_ledger.budget.invariants import (
    validate_accepts_commitments,
    validate_no_outstanding_reservation,
    validate_sufficient_funds,
)
from budget_ledger.budget.ledger import BudgetLedger, StaleReleaseResult
from budget_ledger.budget.models import (
    BudgetCode,
    BudgetStatus,
    Revision,
    RevisionStatus,
    Transfer,
    TransferStatus,
)
from budget_ledger.budget.projections import (
    BudgetCodeRegistry,
    RevisionRegistry,
    TransferRegistry,
)
from budget_ledger.budget.sweeper import StaleReservationSweeper, SweepReport
from budget_ledger.budget.triggers import (
    evaluate_balance_trigger,
    evaluate_utilization_trigger,
)
from budget_ledger.kernel.errors import (
    InvalidState,
    NotFound,
    NotRequester,
    StreamVersionConflict,
    ValidationError,
)
from budget_ledger.kernel.event_store import SQLiteEventStore
from budget_ledger.kernel.events import Event, StreamAppend
from budget_ledger.kernel.ids import generate_id
from budget_ledger.kernel.logging import LogOperation, get_logger
from budget_ledger.kernel.metrics import (
    approval_chains_completed_total,
    ledger_mutations_total,
    projection_rebuild_duration_seconds,
    track_command_duration,
    update_utilization_metrics,
)
from budget_ledger.kernel.policy import LedgerPolicy
from budget_ledger.kernel.retry import retry_projection_rebuild, run_with_version_retry
from budget_ledger.kernel.time import RealTimeProvider, TimeProvider

logger = get_logger(__name__)


class BudgetEngine:
    """
    Budget Ledger main façade

    Provides a unified API for all ledger operations including:
    - Budget code lifecycle (create, approve, update, suspend, delete)
    - Reservations, spending and release
    - Revisions and transfers behind approval chains
    - Requisition approval with automatic reservation
    - Forecasts, dashboard and stale reservation sweeping

    Write paths always decide against state replayed from the event store.
    Read paths serve in-memory projections caught up after every write made
    through this instance; call refresh() to pick up writes made elsewhere.
    """

    def __init__(
        self,
        sqlite_path: str | Path,
        resolver: ApproverResolver,
        policy: LedgerPolicy | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        """
        Initialize the engine

        Args:
            sqlite_path: Path to SQLite database
            resolver: Supplies the ordered approvers of every new chain
            policy: Ledger policy (uses defaults if None)
            time_provider: Time provider (uses real time if None)
        """
        self.sqlite_path = Path(sqlite_path)
        self.resolver = resolver
        self.policy = policy or LedgerPolicy()
        self.time_provider = time_provider or RealTimeProvider()

        # Infrastructure
        self.event_store = SQLiteEventStore(str(self.sqlite_path))
        self.handlers = BudgetCommandHandlers(self.time_provider, self.policy)
        self.ledger = BudgetLedger(self.event_store, self.time_provider, self.policy)
        self.workflow = ApprovalWorkflowEngine(
            self.event_store, self.time_provider, self.policy
        )
        self.forecaster = ForecastCalculator(self.time_provider, self.policy)
        self.sweeper = StaleReservationSweeper(self.ledger, self.handlers)
        self._register_hooks()

        # Projections
        self._lock = threading.RLock()
        self._stream_positions: dict[str, int] = {}
        self.code_registry = BudgetCodeRegistry()
        self.revision_registry = RevisionRegistry()
        self.transfer_registry = TransferRegistry()
        self.chain_store = ApprovalChainStore()
        self._rebuild_projections()

    # ========== Projections ==========

    @retry_projection_rebuild()
    def _rebuild_projections(self) -> None:
        """Rebuild all projections from event store"""
        start = time.perf_counter()
        with self._lock:
            self._stream_positions = {}
            self.code_registry = BudgetCodeRegistry()
            self.revision_registry = RevisionRegistry()
            self.transfer_registry = TransferRegistry()
            self.chain_store = ApprovalChainStore()
            for event in self.event_store.load_all_events():
                self._apply(event)
        projection_rebuild_duration_seconds.observe(time.perf_counter() - start)

    def _apply(self, event: Event) -> None:
        if event.stream_type == CODE_STREAM_TYPE:
            self.code_registry.apply_event(event)
        elif event.stream_type == REVISION_STREAM_TYPE:
            self.revision_registry.apply_event(event)
        elif event.stream_type == TRANSFER_STREAM_TYPE:
            self.transfer_registry.apply_event(event)
        elif event.stream_type == CHAIN_STREAM_TYPE:
            self.chain_store.apply_event(event)
        self._stream_positions[event.stream_id] = event.version

    def _sync(self, stream_ids: list[str]) -> None:
        """Catch projections up with the given streams"""
        with self._lock:
            for stream_id in sorted(set(stream_ids)):
                position = self._stream_positions.get(stream_id, 0)
                for event in self.event_store.load_stream(stream_id, position):
                    self._apply(event)

    def refresh(self) -> None:
        """Catch projections up with every stream, including writes by other processes"""
        with self._lock:
            for event in self.event_store.load_all_events():
                if event.version > self._stream_positions.get(event.stream_id, 0):
                    self._apply(event)

    def _commit(self, appends: list[StreamAppend]) -> list[str]:
        self.event_store.append_streams(appends)
        return [a.stream_id for a in appends]

    # ========== Approval Hooks ==========

    def _register_hooks(self) -> None:
        self.workflow.register_hooks(
            EntityType.BUDGET_CODE,
            on_advanced=self._code_advanced,
            on_approved=self._code_approved,
            on_rejected=self._code_rejected,
        )
        self.workflow.register_hooks(
            EntityType.BUDGET_REVISION,
            on_approved=self._revision_approved,
            on_rejected=self._revision_rejected,
        )
        self.workflow.register_hooks(
            EntityType.BUDGET_TRANSFER,
            on_approved=self._transfer_approved,
            on_rejected=self._transfer_rejected,
        )
        self.workflow.register_hooks(
            EntityType.REQUISITION,
            on_approved=self._requisition_approved,
            on_rejected=self._requisition_rejected,
        )

    def _code_advanced(self, ctx: DecisionContext) -> list[StreamAppend]:
        code = self.ledger.load_code(ctx.chain.entity_id)
        return [
            self.handlers.handle_approval_advanced(
                code, ctx.level, ctx.next_approver.role, ctx.command_id, ctx.actor_email
            )
        ]

    def _code_approved(self, ctx: DecisionContext) -> list[StreamAppend]:
        code = self.ledger.load_code(ctx.chain.entity_id)
        return [self.ledger.plan_activate(code, ctx.command_id, ctx.actor_email)]

    def _code_rejected(self, ctx: DecisionContext) -> list[StreamAppend]:
        code = self.ledger.load_code(ctx.chain.entity_id)
        return [
            self.handlers.handle_code_rejected(
                code, ctx.level, ctx.comments or "", ctx.command_id, ctx.actor_email
            )
        ]

    def _load_revision(self, revision_id: str) -> Revision:
        events = self.event_store.load_stream(revision_id)
        revision = RevisionRegistry.from_events(events).get_model(revision_id)
        if revision is None:
            raise NotFound("Revision", revision_id)
        return revision

    def _load_transfer(self, transfer_id: str) -> Transfer:
        events = self.event_store.load_stream(transfer_id)
        transfer = TransferRegistry.from_events(events).get_model(transfer_id)
        if transfer is None:
            raise NotFound("Transfer", transfer_id)
        return transfer

    def _revision_approved(self, ctx: DecisionContext) -> list[StreamAppend]:
        revision = self._load_revision(ctx.chain.entity_id)
        code = self.ledger.load_code(revision.budget_code_id)
        return [
            self.ledger.plan_apply_revision(code, revision, ctx.command_id, ctx.actor_email),
            self.handlers.handle_revision_approved(revision, ctx.command_id, ctx.actor_email),
        ]

    def _revision_rejected(self, ctx: DecisionContext) -> list[StreamAppend]:
        revision = self._load_revision(ctx.chain.entity_id)
        return [
            self.handlers.handle_revision_rejected(
                revision, ctx.comments or "", ctx.command_id, ctx.actor_email
            )
        ]

    def _transfer_approved(self, ctx: DecisionContext) -> list[StreamAppend]:
        transfer = self._load_transfer(ctx.chain.entity_id)
        from_code = self.ledger.load_code(transfer.from_budget_code_id)
        to_code = self.ledger.load_code(transfer.to_budget_code_id)
        return self.ledger.plan_execute_transfer(
            from_code, to_code, transfer, ctx.command_id, ctx.actor_email
        ) + [self.handlers.handle_transfer_executed(transfer, ctx.command_id, ctx.actor_email)]

    def _transfer_rejected(self, ctx: DecisionContext) -> list[StreamAppend]:
        transfer = self._load_transfer(ctx.chain.entity_id)
        return [
            self.handlers.handle_transfer_rejected(
                transfer, ctx.comments or "", ctx.command_id, ctx.actor_email
            )
        ]

    def _requisition_approved(self, ctx: DecisionContext) -> list[StreamAppend]:
        context = ctx.chain.context
        code = self.ledger.load_code(context["budget_code_id"])
        append, _ = self.ledger.plan_reserve(
            code,
            context["requisition_id"],
            Decimal(str(context["amount"])),
            ctx.command_id,
            ctx.actor_email,
        )
        return [append]

    def _requisition_rejected(self, ctx: DecisionContext) -> list[StreamAppend]:
        context = ctx.chain.context
        code = self.ledger.load_code(context["budget_code_id"])
        allocation = code.outstanding_allocation_for(context["requisition_id"])
        if allocation is None:
            return []
        return [
            self.ledger.plan_release(
                code,
                allocation.allocation_id,
                "Requisition rejected",
                ctx.command_id,
                ctx.actor_email,
            )
        ]

    def _decide(
        self,
        chain_id: str,
        actor_email: str,
        decision: Decision | str,
        comments: str | None,
        level: int | None,
    ) -> DecisionOutcome:
        request = parse_command(
            DecisionRequest,
            {
                "decision": decision.value if isinstance(decision, Decision) else decision,
                "comments": comments,
                "level": level,
            },
        )
        outcome = self.workflow.submit_decision(
            chain_id, actor_email, request.decision, request.comments, request.level
        )
        self._sync(outcome.streams)
        return outcome

    # ========== Views ==========

    def _code_view(self, code: dict) -> dict[str, Any]:
        view = BudgetCode.model_validate(code).model_dump(mode="json")
        view["revisions"] = self.revision_registry.list_for_code(code["budget_code_id"])
        chain = self.chain_store.get(code["chain_id"]) if code.get("chain_id") else None
        view["approval_chain"] = chain
        return view

    def _require_code(self, budget_code_id: str) -> dict:
        code = self.code_registry.get(budget_code_id)
        if code is None:
            raise NotFound("BudgetCode", budget_code_id)
        return code

    # ========== Budget Code Operations ==========

    @track_command_duration("create_budget_code")
    def create_budget_code(
        self, data: dict[str, Any] | CreateBudgetCode, actor_id: str | None = None
    ) -> dict[str, Any]:
        """
        Create a budget code pending approval

        The code and its approval chain are written together. The code's
        status names the role of the approver it waits on.

        Args:
            data: Creation fields (see CreateBudgetCode)
            actor_id: Creator's identity

        Returns:
            Budget code view

        Raises:
            ValidationError: Invalid input, duplicate code, or no approvers
        """
        command = parse_command(CreateBudgetCode, data)
        approvers = self.resolver.resolve(
            EntityType.BUDGET_CODE,
            command.department,
            {"code": command.code, "budget": str(command.budget)},
        )
        if not approvers:
            raise ValidationError("No approvers resolved for the budget code")
        status = BudgetStatus(self.policy.pending_status_for(approvers[0].role))

        def attempt() -> tuple[str, list[str]]:
            command_id = generate_id()
            budget_code_id = generate_id()
            chain_append = self.workflow.open_chain(
                EntityType.BUDGET_CODE,
                budget_code_id,
                approvers,
                command_id,
                actor_id,
                context={"code": command.code, "department": command.department},
            )
            appends = self.handlers.handle_create_code(
                command,
                budget_code_id,
                chain_append.stream_id,
                status,
                self.event_store.load_stream(claim_stream_id(command.code)),
                command_id,
                actor_id,
            )
            return budget_code_id, self._commit(appends + [chain_append])

        with LogOperation(logger, "create_budget_code", code=command.code):
            budget_code_id, streams = run_with_version_retry(
                attempt, max_attempts=self.policy.max_commit_attempts
            )
        self._sync(streams)
        return self.get_budget_code(budget_code_id)

    def get_budget_code(self, budget_code_id: str) -> dict[str, Any]:
        """
        Get a budget code with its derived figures, revisions and chain

        Raises:
            NotFound: Unknown or deleted code
        """
        return self._code_view(self._require_code(budget_code_id))

    def get_budget_code_by_code(self, code: str) -> dict[str, Any]:
        found = self.code_registry.get_by_code(code)
        if found is None:
            raise NotFound("BudgetCode", code)
        return self._code_view(found)

    def list_budget_codes(
        self,
        status: str | None = None,
        department: str | None = None,
        fiscal_year: int | None = None,
        active: bool | None = None,
    ) -> list[dict[str, Any]]:
        """List budget codes matching every given filter"""
        return [
            self._code_view(code)
            for code in self.code_registry.list_codes(status, department, fiscal_year, active)
        ]

    def update_budget_code(
        self,
        budget_code_id: str,
        data: dict[str, Any] | UpdateBudgetCode,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Change non-monetary fields (name, description, owner, end date)

        Raises:
            ValidationError: Unknown or monetary fields, bad dates
            InvalidState: Code is rejected or expired
        """
        command = parse_command(UpdateBudgetCode, data)

        def attempt() -> list[str]:
            code = self.ledger.load_code(budget_code_id)
            append = self.handlers.handle_update_code(code, command, generate_id(), actor_id)
            return self._commit([append]) if append else []

        with LogOperation(logger, "update_budget_code", budget_code_id=budget_code_id):
            streams = run_with_version_retry(
                attempt, max_attempts=self.policy.max_commit_attempts
            )
        self._sync(streams)
        return self.get_budget_code(budget_code_id)

    def delete_budget_code(self, budget_code_id: str, actor_id: str | None = None) -> None:
        """
        Delete a budget code and free its code string

        A pending code's open approval chain is cancelled in the same write.

        Raises:
            InvalidState: Funds were committed against the code, or a
                revision or transfer involving it is still pending
        """
        pending_revisions = [
            r
            for r in self.revision_registry.list_for_code(budget_code_id)
            if r["status"] == RevisionStatus.PENDING.value
        ]
        pending_transfers = self.transfer_registry.list_transfers(
            status=TransferStatus.PENDING.value, budget_code_id=budget_code_id
        )
        if pending_revisions or pending_transfers:
            raise InvalidState(
                f"Budget code {budget_code_id}",
                "has_pending_requests",
                "Budget code has pending revisions or transfers and cannot be deleted",
            )

        def attempt() -> list[str]:
            code = self.ledger.load_code(budget_code_id)
            command_id = generate_id()
            claim_version = self.event_store.get_stream_version(claim_stream_id(code.code))
            appends = self.handlers.handle_delete(code, claim_version, command_id, actor_id)
            if code.chain_id:
                chain = self.workflow.load_chain(code.chain_id)
                if not chain.is_terminal:
                    appends.append(
                        self.workflow.cancel_chain(
                            chain, "Budget code deleted", command_id, actor_id
                        )
                    )
            return self._commit(appends)

        with LogOperation(logger, "delete_budget_code", budget_code_id=budget_code_id):
            streams = run_with_version_retry(
                attempt, max_attempts=self.policy.max_commit_attempts
            )
        self._sync(streams)

    def change_budget_code_status(
        self,
        budget_code_id: str,
        data: dict[str, Any] | ChangeCodeStatus,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Suspend or reactivate a code

        Suspension freezes new reservations, revisions and transfers.
        Existing reservations may still be spent or released.

        Raises:
            ValidationError: Unknown action, or suspension without a reason
            InvalidState: Suspending a non-active or reactivating a non-suspended code
        """
        command = parse_command(ChangeCodeStatus, data)
        if command.action == "suspend" and not command.reason.strip():
            raise ValidationError("A reason is required to suspend a code", field="reason")

        def attempt() -> list[str]:
            code = self.ledger.load_code(budget_code_id)
            if command.action == "suspend":
                append = self.handlers.handle_suspend(
                    code, command.reason.strip(), generate_id(), actor_id
                )
            else:
                append = self.handlers.handle_reactivate(code, generate_id(), actor_id)
            return self._commit([append])

        with LogOperation(
            logger, "change_status", budget_code_id=budget_code_id, action=command.action
        ):
            streams = run_with_version_retry(
                attempt, max_attempts=self.policy.max_commit_attempts
            )
        self._sync(streams)
        return self.get_budget_code(budget_code_id)

    def suspend_budget_code(
        self, budget_code_id: str, reason: str, actor_id: str | None = None
    ) -> dict[str, Any]:
        return self.change_budget_code_status(
            budget_code_id, {"action": "suspend", "reason": reason}, actor_id
        )

    def reactivate_budget_code(
        self, budget_code_id: str, actor_id: str | None = None
    ) -> dict[str, Any]:
        return self.change_budget_code_status(
            budget_code_id, {"action": "reactivate"}, actor_id
        )

    def decide_budget_code(
        self,
        budget_code_id: str,
        actor_email: str,
        decision: Decision | str,
        comments: str | None = None,
        level: int | None = None,
    ) -> dict[str, Any]:
        """
        Record an approver's decision on a budget code's creation chain

        Returns:
            {"outcome": DecisionOutcome dict, "budget_code": code view}
        """
        code = self._require_code(budget_code_id)
        if not code.get("chain_id"):
            raise NotFound("ApprovalChain for budget code", budget_code_id)
        outcome = self._decide(code["chain_id"], actor_email, decision, comments, level)
        return {
            "outcome": outcome.model_dump(mode="json"),
            "budget_code": self.get_budget_code(budget_code_id),
        }

    # ========== Revisions ==========

    @track_command_duration("request_revision")
    def request_revision(
        self,
        budget_code_id: str,
        data: dict[str, Any] | RequestRevision,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Ask to change a code's budget; applied only after full approval

        Raises:
            ValidationError: Short reason, unchanged amount, bad input
            ConstraintViolation: Requested budget below used + reserved
            InvalidState: Code not active
        """
        command = parse_command(RequestRevision, data)
        code = self.ledger.load_code(budget_code_id)
        approvers = self.resolver.resolve(
            EntityType.BUDGET_REVISION,
            code.department,
            {"budget_code_id": budget_code_id, "requested_budget": str(command.requested_budget)},
        )

        def attempt() -> tuple[str, list[str]]:
            current = self.ledger.load_code(budget_code_id)
            command_id = generate_id()
            revision_id = generate_id()
            chain_append = self.workflow.open_chain(
                EntityType.BUDGET_REVISION,
                revision_id,
                approvers,
                command_id,
                actor_id,
                context={
                    "budget_code_id": budget_code_id,
                    "requested_budget": str(command.requested_budget),
                },
            )
            revision_append = self.handlers.handle_request_revision(
                current, command, revision_id, chain_append.stream_id, command_id, actor_id
            )
            return revision_id, self._commit([revision_append, chain_append])

        with LogOperation(logger, "request_revision", budget_code_id=budget_code_id):
            revision_id, streams = run_with_version_retry(
                attempt, max_attempts=self.policy.max_commit_attempts
            )
        self._sync(streams)
        return self.get_revision(revision_id)

    def get_revision(self, revision_id: str) -> dict[str, Any]:
        revision = self.revision_registry.get(revision_id)
        if revision is None:
            raise NotFound("Revision", revision_id)
        view = dict(revision)
        view["approval_chain"] = self.chain_store.get(revision["chain_id"])
        return view

    def list_revisions(
        self, budget_code_id: str | None = None, status: str | None = None
    ) -> list[dict[str, Any]]:
        if budget_code_id is not None:
            revisions = self.revision_registry.list_for_code(budget_code_id)
        else:
            revisions = sorted(
                self.revision_registry.revisions.values(), key=lambda r: r["request_date"]
            )
        return [r for r in revisions if status is None or r["status"] == status]

    def pending_revisions(self) -> list[dict[str, Any]]:
        return self.revision_registry.list_pending()

    def decide_revision(
        self,
        revision_id: str,
        actor_email: str,
        decision: Decision | str,
        comments: str | None = None,
        level: int | None = None,
        budget_code_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Record a decision on a revision; the final approval applies it

        Raises:
            NotFound: Unknown revision, or it does not belong to budget_code_id
            ConstraintViolation: Final approval when the new budget is now
                below used + reserved (nothing is written)
        """
        revision = self.revision_registry.get(revision_id)
        if revision is None or (
            budget_code_id is not None and revision["budget_code_id"] != budget_code_id
        ):
            raise NotFound("Revision", revision_id)
        outcome = self._decide(revision["chain_id"], actor_email, decision, comments, level)
        if outcome.completed and outcome.state.kind == "approved":
            ledger_mutations_total.labels(operation="revise").inc()
        return {
            "outcome": outcome.model_dump(mode="json"),
            "revision": self.get_revision(revision_id),
        }

    # ========== Transfers ==========

    @track_command_duration("request_transfer")
    def request_transfer(
        self, data: dict[str, Any] | RequestTransfer, actor_id: str | None = None
    ) -> dict[str, Any]:
        """
        Ask to move budget between two codes; executed after full approval

        Funds are not held while the transfer is pending. Availability is
        checked now and again at execution.

        Raises:
            ValidationError: Same code, short reason, bad input
            InsufficientBudget: Source cannot cover the amount
            InvalidState: Either code not active
        """
        command = parse_command(RequestTransfer, data)
        from_code = self.ledger.load_code(command.from_budget_code_id)
        self.ledger.load_code(command.to_budget_code_id)
        approvers = self.resolver.resolve(
            EntityType.BUDGET_TRANSFER,
            from_code.department,
            {"amount": str(command.amount)},
        )

        def attempt() -> tuple[str, list[str]]:
            source = self.ledger.load_code(command.from_budget_code_id)
            target = self.ledger.load_code(command.to_budget_code_id)
            command_id = generate_id()
            transfer_id = generate_id()
            chain_append = self.workflow.open_chain(
                EntityType.BUDGET_TRANSFER,
                transfer_id,
                approvers,
                command_id,
                actor_id,
                context={
                    "from_budget_code_id": source.budget_code_id,
                    "to_budget_code_id": target.budget_code_id,
                    "amount": str(command.amount),
                },
            )
            transfer_append = self.handlers.handle_request_transfer(
                source, target, command, transfer_id, chain_append.stream_id, command_id, actor_id
            )
            return transfer_id, self._commit([transfer_append, chain_append])

        with LogOperation(
            logger,
            "request_transfer",
            from_budget_code_id=command.from_budget_code_id,
            to_budget_code_id=command.to_budget_code_id,
            amount=str(command.amount),
        ):
            transfer_id, streams = run_with_version_retry(
                attempt, max_attempts=self.policy.max_commit_attempts
            )
        self._sync(streams)
        return self.get_transfer(transfer_id)

    def get_transfer(self, transfer_id: str) -> dict[str, Any]:
        transfer = self.transfer_registry.get(transfer_id)
        if transfer is None:
            raise NotFound("Transfer", transfer_id)
        view = dict(transfer)
        view["approval_chain"] = self.chain_store.get(transfer["chain_id"])
        return view

    def list_transfers(
        self, status: str | None = None, budget_code_id: str | None = None
    ) -> list[dict[str, Any]]:
        return self.transfer_registry.list_transfers(status=status, budget_code_id=budget_code_id)

    def pending_transfers(self) -> list[dict[str, Any]]:
        return self.transfer_registry.list_pending()

    def transfer_statistics(self) -> dict[str, Any]:
        return self.transfer_registry.statistics()

    def decide_transfer(
        self,
        transfer_id: str,
        actor_email: str,
        decision: Decision | str,
        comments: str | None = None,
        level: int | None = None,
    ) -> dict[str, Any]:
        """
        Record a decision on a transfer; the final approval executes it

        Raises:
            InsufficientBudget: Final approval when the source can no longer
                cover the amount (nothing is written, chain stays pending)
        """
        transfer = self.transfer_registry.get(transfer_id)
        if transfer is None:
            raise NotFound("Transfer", transfer_id)
        outcome = self._decide(transfer["chain_id"], actor_email, decision, comments, level)
        if outcome.completed and outcome.state.kind == "approved":
            ledger_mutations_total.labels(operation="transfer").inc()
        return {
            "outcome": outcome.model_dump(mode="json"),
            "transfer": self.get_transfer(transfer_id),
        }

    def cancel_transfer(
        self, transfer_id: str, actor_id: str | None, reason: str = "Cancelled by requester"
    ) -> dict[str, Any]:
        """
        Withdraw a pending transfer; its chain is cancelled in the same write

        Raises:
            NotRequester: Actor is not the requester
            InvalidState: Transfer is no longer pending
        """

        def attempt() -> list[str]:
            transfer = self._load_transfer(transfer_id)
            requester = (transfer.requested_by or "").strip().lower()
            if requester and requester != (actor_id or "").strip().lower():
                raise NotRequester(f"transfer {transfer_id}", actor_id)
            command_id = generate_id()
            appends = [
                self.handlers.handle_transfer_cancelled(transfer, reason, command_id, actor_id)
            ]
            if transfer.chain_id:
                chain = self.workflow.load_chain(transfer.chain_id)
                if not chain.is_terminal:
                    appends.append(
                        self.workflow.cancel_chain(chain, reason, command_id, actor_id)
                    )
            return self._commit(appends)

        with LogOperation(logger, "cancel_transfer", transfer_id=transfer_id):
            streams = run_with_version_retry(
                attempt, max_attempts=self.policy.max_commit_attempts
            )
        approval_chains_completed_total.labels(
            entity_type=EntityType.BUDGET_TRANSFER.value, outcome="cancelled"
        ).inc()
        self._sync(streams)
        return self.get_transfer(transfer_id)

    # ========== Requisitions ==========

    def submit_requisition(
        self, data: dict[str, Any] | SubmitRequisition, actor_id: str | None = None
    ) -> dict[str, Any]:
        """
        Open the approval chain of a requisition

        Funds are reserved by the chain's final approval, not now; the
        checks made here only fail fast.

        Raises:
            InvalidState: Code not active, or the requisition was already submitted
            InsufficientBudget: Amount exceeds what remains now
        """
        command = parse_command(SubmitRequisition, data)
        code = self.ledger.load_code(command.budget_code_id)
        validate_accepts_commitments(code)
        validate_no_outstanding_reservation(code, command.requisition_id)
        validate_sufficient_funds(code, command.amount)

        claim_id = requisition_claim_stream_id(command.requisition_id)
        command_id = generate_id()
        approvers = self.resolver.resolve(
            EntityType.REQUISITION, code.department, {"amount": str(command.amount)}
        )
        chain_append = self.workflow.open_chain(
            EntityType.REQUISITION,
            command.requisition_id,
            approvers,
            command_id,
            actor_id,
            context={
                "budget_code_id": command.budget_code_id,
                "requisition_id": command.requisition_id,
                "amount": str(command.amount),
                "description": command.description,
            },
        )
        claim_append = self.handlers.handle_claim_requisition(
            command,
            chain_append.stream_id,
            self.event_store.get_stream_version(claim_id),
            command_id,
            actor_id,
        )
        with LogOperation(
            logger, "submit_requisition", requisition_id=command.requisition_id
        ):
            try:
                streams = self._commit([claim_append, chain_append])
            except StreamVersionConflict as e:
                if e.stream_id != claim_id:
                    raise
                raise InvalidState(
                    f"Requisition {command.requisition_id}",
                    "submitted",
                    f"Requisition {command.requisition_id} was already submitted",
                ) from None
        self._sync(streams)
        return self.get_requisition(command.requisition_id)

    def get_requisition(self, requisition_id: str) -> dict[str, Any]:
        chain = self.chain_store.get_for_entity(EntityType.REQUISITION.value, requisition_id)
        if chain is None:
            raise NotFound("Requisition", requisition_id)
        return {
            "requisition_id": requisition_id,
            **chain["context"],
            "approval_chain": chain,
        }

    def decide_requisition(
        self,
        requisition_id: str,
        actor_email: str,
        decision: Decision | str,
        comments: str | None = None,
        level: int | None = None,
    ) -> dict[str, Any]:
        """
        Record a decision on a requisition; the final approval reserves funds

        Raises:
            InsufficientBudget: Final approval when funds no longer suffice
                (nothing is written, chain stays pending)
        """
        chain = self.chain_store.get_for_entity(EntityType.REQUISITION.value, requisition_id)
        if chain is None:
            raise NotFound("Requisition", requisition_id)
        outcome = self._decide(chain["chain_id"], actor_email, decision, comments, level)
        if outcome.completed and outcome.state.kind == "approved":
            ledger_mutations_total.labels(operation="reserve").inc()
        return {
            "outcome": outcome.model_dump(mode="json"),
            "requisition": self.get_requisition(requisition_id),
        }

    # ========== Ledger Operations ==========

    def reserve(
        self,
        budget_code_id: str,
        requisition_id: str,
        amount: Decimal | str | int,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Reserve funds for a requisition

        Returns:
            Allocation dict

        Raises:
            InsufficientBudget, InvalidState, NotFound, ValidationError
        """
        command = parse_command(
            ReserveFunds, {"requisition_id": requisition_id, "amount": str(amount)}
        )
        allocation = self.ledger.reserve(
            budget_code_id, command.requisition_id, command.amount, actor_id
        )
        self._sync([budget_code_id])
        return allocation.model_dump(mode="json")

    def spend(
        self, budget_code_id: str, allocation_id: str, actor_id: str | None = None
    ) -> dict[str, Any]:
        allocation = self.ledger.spend(budget_code_id, allocation_id, actor_id)
        self._sync([budget_code_id])
        return allocation.model_dump(mode="json")

    def release(
        self,
        budget_code_id: str,
        allocation_id: str,
        reason: str = "released",
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        allocation = self.ledger.release(budget_code_id, allocation_id, reason, actor_id)
        self._sync([budget_code_id])
        return allocation.model_dump(mode="json")

    def release_requisition(
        self,
        budget_code_id: str,
        requisition_id: str,
        reason: str = "requisition cancelled",
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        allocation = self.ledger.release_for_requisition(
            budget_code_id, requisition_id, reason, actor_id
        )
        self._sync([budget_code_id])
        return allocation.model_dump(mode="json")

    def release_stale(
        self, budget_code_id: str, max_age_days: int | None = None
    ) -> StaleReleaseResult:
        result = self.ledger.release_stale(budget_code_id, max_age_days)
        self._sync([budget_code_id])
        return result

    def sweep_stale_reservations(self, max_age_days: int | None = None) -> SweepReport:
        """Release stale reservations on every code and expire ended codes"""
        report = self.sweeper.sweep(max_age_days)
        self.refresh()
        return report

    def expire_budget_codes(self) -> list[str]:
        expired = self.sweeper.expire_ended_codes()
        self.refresh()
        return expired

    # ========== Insight ==========

    def forecast(self, budget_code_id: str) -> Forecast:
        code = self.code_registry.get_model(budget_code_id)
        if code is None:
            raise NotFound("BudgetCode", budget_code_id)
        return self.forecaster.forecast(code)

    def dashboard(self) -> dict[str, Any]:
        """
        Portfolio overview of active codes

        Returns:
            Totals, overall utilization, health band counts, alerts and
            pending approval counts
        """
        active = [BudgetCode.model_validate(c) for c in self.code_registry.list_active()]
        total_budget = sum((c.budget for c in active), Decimal("0"))
        total_used = sum((c.used for c in active), Decimal("0"))
        total_reserved = sum((c.reserved for c in active), Decimal("0"))
        total_remaining = sum((c.remaining for c in active), Decimal("0"))
        overall = (
            round(float((total_budget - total_remaining) / total_budget * 100), 2)
            if total_budget
            else 0.0
        )

        alerts = evaluate_utilization_trigger(active, self.policy)
        violations = evaluate_balance_trigger(active)
        if violations:
            logger.error(
                "Ledger balance violation detected",
                codes=[v.code for v in violations],
            )

        by_status: dict[str, int] = {status.value: 0 for status in BudgetStatus}
        for code in self.code_registry.list_codes():
            by_status[code["status"]] += 1

        pending = {entity.value: 0 for entity in EntityType}
        for chain in self.chain_store.all_pending():
            pending[chain["entity_type"]] += 1

        update_utilization_metrics(
            [{"code": c.code, "utilization_percentage": c.utilization_percentage} for c in active]
        )

        return {
            "total_budget": str(total_budget),
            "total_used": str(total_used),
            "total_reserved": str(total_reserved),
            "total_remaining": str(total_remaining),
            "overall_utilization": overall,
            "active_codes": len(active),
            "codes_by_status": by_status,
            "critical_count": sum(1 for a in alerts if a.severity == ForecastStatus.CRITICAL),
            "warning_count": sum(1 for a in alerts if a.severity == ForecastStatus.WARNING),
            "alerts": [a.model_dump(mode="json") for a in alerts],
            "balance_violations": [v.model_dump(mode="json") for v in violations],
            "pending_approvals": pending,
        }

    def pending_approvals(
        self, email: str | None = None, entity_type: EntityType | str | None = None
    ) -> list[dict[str, Any]]:
        """
        Chains awaiting a decision, all or only those whose current step is ``email``'s

        Each entry carries the current level and approver and the entity id.
        """
        kind = EntityType(entity_type).value if entity_type is not None else None
        chains = (
            self.chain_store.pending_for(email, kind)
            if email
            else self.chain_store.all_pending(kind)
        )
        result = []
        for chain in chains:
            model = ApprovalChain.model_validate(chain)
            step = model.current_step()
            result.append(
                {
                    "chain_id": model.chain_id,
                    "entity_type": model.entity_type.value,
                    "entity_id": model.entity_id,
                    "current_level": step.level,
                    "current_approver": step.approver.model_dump(mode="json"),
                    "total_levels": len(model.steps),
                    "context": model.context,
                    "created_at": chain["created_at"],
                }
            )
        return result

    def approval_history(
        self, entity_type: EntityType | str, entity_id: str
    ) -> list[dict[str, Any]]:
        """
        Steps of an entity's chain in level order

        Raises:
            NotFound: The entity has no approval chain
        """
        kind = EntityType(entity_type).value
        if self.chain_store.get_for_entity(kind, entity_id) is None:
            raise NotFound(f"ApprovalChain for {kind}", entity_id)
        return self.chain_store.history(kind, entity_id)

    def check_ready(self) -> dict[str, Any]:
        """Readiness facts: the store answers and projections are loaded"""
        return {
            "event_count": self.event_store.count_events(),
            "stream_count": self.event_store.count_streams(),
            "budget_codes": len(self.code_registry.list_codes()),
        }
