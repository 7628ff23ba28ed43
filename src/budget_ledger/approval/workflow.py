"""
ApprovalWorkflowEngine - Ordered multi-level approval with atomic activation

The engine owns approval chains. It opens them, records decisions, and
when a chain completes it hands control to hooks registered per entity
type. Hooks do not write anything themselves: they return planned stream
appends, and the engine commits the chain transition together with those
appends in a single atomic write. A decision that fails validation in a
hook therefore leaves the chain exactly where it was.

Each decision is a compare-and-swap on the chain stream's version. Two
approvers racing on the same step cannot both win: the loser re-reads the
chain, sees it has moved on, and gets AlreadyDecided. Hooks run at most
once per chain.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from budget_ledger.approval.events import (
    ApprovalChainCancelled,
    ApprovalChainCreated,
    ApprovalStepApproved,
    ApprovalStepRejected,
    ApprovalStepSpec,
)
from budget_ledger.approval.models import (
    ApprovalChain,
    ApprovalStep,
    Approver,
    ChainState,
    Decision,
    EntityType,
)
from budget_ledger.approval.projections import ApprovalChainStore
from budget_ledger.kernel.errors import (
    AlreadyDecided,
    NotCurrentApprover,
    NotFound,
    ValidationError,
)
from budget_ledger.kernel.event_store import SQLiteEventStore
from budget_ledger.kernel.events import StreamAppend, create_event
from budget_ledger.kernel.ids import generate_id
from budget_ledger.kernel.logging import LogOperation, get_logger
from budget_ledger.kernel.metrics import (
    approval_chains_completed_total,
    approval_decisions_total,
)
from budget_ledger.kernel.policy import LedgerPolicy
from budget_ledger.kernel.retry import run_with_version_retry
from budget_ledger.kernel.time import TimeProvider

logger = get_logger(__name__)

CHAIN_STREAM_TYPE = "approval_chain"


class DecisionContext(BaseModel):
    """Everything a hook needs to plan the consequences of a decision"""

    chain: ApprovalChain
    level: int
    decision: Decision
    actor_email: str
    comments: str | None
    decided_at: datetime
    command_id: str
    next_approver: Approver | None = None


class DecisionOutcome(BaseModel):
    """Result of a submitted decision"""

    chain_id: str
    entity_type: EntityType
    entity_id: str
    level: int
    decision: Decision
    state: ChainState
    completed: bool
    streams: list[str] = Field(default_factory=list)


Hook = Callable[[DecisionContext], list[StreamAppend]]


def _no_appends(ctx: DecisionContext) -> list[StreamAppend]:
    return []


class ChainHooks:
    """
    Per entity type callbacks invoked inside a decision

    on_advanced: a non-final level was approved
    on_approved: the final level was approved (entity activation)
    on_rejected: a level was rejected (entity rejection / rollback)
    """

    def __init__(
        self,
        on_advanced: Hook | None = None,
        on_approved: Hook | None = None,
        on_rejected: Hook | None = None,
    ) -> None:
        self.on_advanced = on_advanced or _no_appends
        self.on_approved = on_approved or _no_appends
        self.on_rejected = on_rejected or _no_appends


def check_decision_allowed(
    chain: ApprovalChain, actor_email: str, level: int | None = None
) -> ApprovalStep:
    """
    Validate that ``actor_email`` may decide the chain's current step now

    Args:
        chain: Chain rebuilt from its stream
        actor_email: Identity submitting the decision
        level: Level the caller believes it is deciding (optional)

    Returns:
        The current step

    Raises:
        AlreadyDecided: Chain is terminal, or the targeted level was already decided
        NotCurrentApprover: Actor does not own the current level
        ValidationError: ``level`` does not exist in the chain
    """
    if chain.is_terminal:
        raise AlreadyDecided(chain.chain_id)

    current = chain.current_step()
    if current is None:
        raise AlreadyDecided(chain.chain_id, f"Approval chain {chain.chain_id} is not open")

    if level is not None:
        targeted = chain.step_at(level)
        if targeted is None:
            raise ValidationError(
                f"Approval chain {chain.chain_id} has no level {level}", field="level"
            )
        if targeted.level < current.level:
            raise AlreadyDecided(
                chain.chain_id, f"Level {level} of chain {chain.chain_id} is already decided"
            )
        if targeted.level != current.level:
            raise NotCurrentApprover(chain.chain_id, actor_email, current.level)

    if not current.approver.matches(actor_email):
        raise NotCurrentApprover(chain.chain_id, actor_email, current.level)

    return current


class ApprovalWorkflowEngine:
    """
    Opens approval chains and records decisions on them

    The engine depends on the event store directly: decisions are always
    taken against state replayed from the chain's own stream, never against
    a possibly stale read model.
    """

    def __init__(
        self,
        event_store: SQLiteEventStore,
        time_provider: TimeProvider,
        policy: LedgerPolicy,
    ) -> None:
        """
        Initialize the workflow engine

        Args:
            event_store: Source of truth for chain streams
            time_provider: For timestamps (injectable for testing)
            policy: Ledger policy (retry budget)
        """
        self.event_store = event_store
        self.time_provider = time_provider
        self.policy = policy
        self._hooks: dict[EntityType, ChainHooks] = {}

    def register_hooks(
        self,
        entity_type: EntityType,
        on_advanced: Hook | None = None,
        on_approved: Hook | None = None,
        on_rejected: Hook | None = None,
    ) -> None:
        self._hooks[entity_type] = ChainHooks(on_advanced, on_approved, on_rejected)

    def load_chain(self, chain_id: str) -> ApprovalChain:
        """
        Rebuild a chain from its stream

        Raises:
            NotFound: If the chain stream does not exist
        """
        events = self.event_store.load_stream(chain_id)
        chain = ApprovalChainStore.from_events(events).get_model(chain_id)
        if chain is None:
            raise NotFound("ApprovalChain", chain_id)
        return chain

    def open_chain(
        self,
        entity_type: EntityType,
        entity_id: str,
        approvers: list[Approver],
        command_id: str,
        actor_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> StreamAppend:
        """
        Plan the creation of a new chain awaiting level 1

        The caller commits the returned append together with the entity's
        own creation event.

        Raises:
            ValidationError: If no approvers were resolved
        """
        if not approvers:
            raise ValidationError(
                f"Cannot open an approval chain for {entity_type.value} without approvers"
            )

        now = self.time_provider.now()
        chain_id = generate_id()

        payload = ApprovalChainCreated(
            chain_id=chain_id,
            entity_type=entity_type,
            entity_id=entity_id,
            steps=[
                ApprovalStepSpec(level=index, approver=approver)
                for index, approver in enumerate(approvers, start=1)
            ],
            context=context or {},
            created_at=now,
            created_by=actor_id,
        ).model_dump(mode="json")

        event = create_event(
            event_id=generate_id(),
            stream_id=chain_id,
            stream_type=CHAIN_STREAM_TYPE,
            event_type="ApprovalChainCreated",
            occurred_at=now,
            command_id=command_id,
            actor_id=actor_id,
            payload=payload,
            version=1,
        )
        return StreamAppend(stream_id=chain_id, expected_version=0, events=[event])

    def submit_decision(
        self,
        chain_id: str,
        actor_email: str,
        decision: Decision | str,
        comments: str | None = None,
        level: int | None = None,
    ) -> DecisionOutcome:
        """
        Record an approver's decision on the chain's current level

        Approving a non-final level advances the chain; approving the final
        level marks it Approved and commits the entity's activation in the
        same write; rejecting marks it Rejected and commits the entity's
        rejection in the same write.

        Args:
            chain_id: Chain to decide on
            actor_email: Identity of the deciding approver
            decision: "approved" or "rejected"
            comments: Free text; required when rejecting
            level: Level the caller believes is current (optional check)

        Returns:
            DecisionOutcome describing the new chain state

        Raises:
            ValidationError: Unknown decision or rejection without comments
            NotFound: Chain does not exist
            AlreadyDecided: Chain or step already decided
            NotCurrentApprover: Actor does not own the current level
            LedgerError: Anything the activation hook raises (nothing is written)
        """
        try:
            decision = Decision(decision)
        except ValueError:
            raise ValidationError(
                f"Decision must be 'approved' or 'rejected', got '{decision}'",
                field="decision",
            ) from None

        if decision == Decision.REJECTED and not (comments and comments.strip()):
            raise ValidationError("Comments are required when rejecting", field="comments")

        with LogOperation(
            logger,
            "submit_decision",
            chain_id=chain_id,
            decision=decision.value,
            actor_email=actor_email,
        ):
            # Retries keep deciding the level the first attempt saw
            target = {"level": level}
            outcome = run_with_version_retry(
                lambda: self._decide_once(chain_id, actor_email, decision, comments, target),
                max_attempts=self.policy.max_commit_attempts,
            )

        approval_decisions_total.labels(
            entity_type=outcome.entity_type.value, decision=decision.value
        ).inc()
        if outcome.completed:
            approval_chains_completed_total.labels(
                entity_type=outcome.entity_type.value, outcome=outcome.state.kind
            ).inc()
        return outcome

    def _decide_once(
        self,
        chain_id: str,
        actor_email: str,
        decision: Decision,
        comments: str | None,
        target: dict[str, int | None],
    ) -> DecisionOutcome:
        chain = self.load_chain(chain_id)
        step = check_decision_allowed(chain, actor_email, target["level"])
        target["level"] = step.level

        now = self.time_provider.now()
        command_id = generate_id()
        hooks = self._hooks.get(chain.entity_type, ChainHooks())
        last = chain.is_last_level(step.level)
        next_approver = None if last else chain.steps[step.level].approver

        ctx = DecisionContext(
            chain=chain,
            level=step.level,
            decision=decision,
            actor_email=actor_email,
            comments=comments,
            decided_at=now,
            command_id=command_id,
            next_approver=next_approver,
        )

        if decision == Decision.APPROVED:
            event_type = "ApprovalStepApproved"
            payload = ApprovalStepApproved(
                chain_id=chain_id,
                entity_type=chain.entity_type,
                entity_id=chain.entity_id,
                level=step.level,
                approver_email=step.approver.email,
                comments=comments,
                decided_at=now,
                next_level=None if last else step.level + 1,
            ).model_dump(mode="json")
            follow_up = hooks.on_approved(ctx) if last else hooks.on_advanced(ctx)
        else:
            event_type = "ApprovalStepRejected"
            payload = ApprovalStepRejected(
                chain_id=chain_id,
                entity_type=chain.entity_type,
                entity_id=chain.entity_id,
                level=step.level,
                approver_email=step.approver.email,
                comments=comments or "",
                decided_at=now,
            ).model_dump(mode="json")
            follow_up = hooks.on_rejected(ctx)

        event = create_event(
            event_id=generate_id(),
            stream_id=chain_id,
            stream_type=CHAIN_STREAM_TYPE,
            event_type=event_type,
            occurred_at=now,
            command_id=command_id,
            actor_id=actor_email,
            payload=payload,
            version=chain.version + 1,
        )
        appends = [
            StreamAppend(stream_id=chain_id, expected_version=chain.version, events=[event])
        ] + follow_up
        self.event_store.append_streams(appends)

        store = ApprovalChainStore.from_events(self.event_store.load_stream(chain_id))
        decided = store.get_model(chain_id)
        return DecisionOutcome(
            chain_id=chain_id,
            entity_type=chain.entity_type,
            entity_id=chain.entity_id,
            level=step.level,
            decision=decision,
            state=decided.state,
            completed=decided.is_terminal,
            streams=[a.stream_id for a in appends],
        )

    def cancel_chain(
        self,
        chain: ApprovalChain,
        reason: str,
        command_id: str,
        actor_id: str | None = None,
    ) -> StreamAppend:
        """
        Plan the cancellation of an open chain

        Used when the entity is withdrawn (transfer cancelled, pending code
        deleted). The chain ends Rejected with no rejecting level.

        Raises:
            AlreadyDecided: If the chain is already terminal
        """
        if chain.is_terminal:
            raise AlreadyDecided(chain.chain_id)

        now = self.time_provider.now()
        payload = ApprovalChainCancelled(
            chain_id=chain.chain_id,
            entity_type=chain.entity_type,
            entity_id=chain.entity_id,
            reason=reason,
            cancelled_at=now,
            cancelled_by=actor_id,
        ).model_dump(mode="json")

        event = create_event(
            event_id=generate_id(),
            stream_id=chain.chain_id,
            stream_type=CHAIN_STREAM_TYPE,
            event_type="ApprovalChainCancelled",
            occurred_at=now,
            command_id=command_id,
            actor_id=actor_id,
            payload=payload,
            version=chain.version + 1,
        )
        return StreamAppend(
            stream_id=chain.chain_id, expected_version=chain.version, events=[event]
        )
