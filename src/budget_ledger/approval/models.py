"""
Approval Domain Models - Ordered, single-path approval chains

An approval chain is a linear list of steps, each owned by one named
approver. The chain's position is an explicit state value rather than
something recomputed by scanning steps:

    NotStarted -> AwaitingLevel(1) -> AwaitingLevel(2) -> ... -> Approved
                                 \\-> Rejected(level, reason)

Key concepts:
- Levels are 1-based and contiguous
- Only the approver of the current level may decide
- A rejection is terminal; later steps simply stay pending
"""

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, model_validator


class EntityType(str, Enum):
    """Kinds of entity whose lifecycle is gated by an approval chain"""

    BUDGET_CODE = "budget_code"
    BUDGET_REVISION = "budget_revision"
    BUDGET_TRANSFER = "budget_transfer"
    REQUISITION = "requisition"


class Decision(str, Enum):
    """What an approver can do with the step in front of them"""

    APPROVED = "approved"
    REJECTED = "rejected"


class StepStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Approver(BaseModel):
    """
    A named approver occupying one step of a chain

    Attributes:
        name: Display name
        role: Role this approver plays in the chain (e.g., "finance")
        email: Identity used to authorise decisions (compared case-insensitively)
        department: Department the approver belongs to
    """

    name: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    department: str = ""

    model_config = {"frozen": True}

    def matches(self, email: str) -> bool:
        return self.email.strip().lower() == email.strip().lower()


class ApprovalStep(BaseModel):
    """One level of an approval chain"""

    level: int = Field(..., ge=1)
    approver: Approver
    status: StepStatus = StepStatus.PENDING
    action_date: date | None = None
    action_time: str | None = None  # HH:MM:SS, kept apart from the date for display
    comments: str | None = None


# ========== Chain State ==========


class NotStarted(BaseModel):
    kind: Literal["not_started"] = "not_started"


class AwaitingLevel(BaseModel):
    kind: Literal["awaiting_level"] = "awaiting_level"
    level: int = Field(..., ge=1)


class ChainApproved(BaseModel):
    kind: Literal["approved"] = "approved"


class ChainRejected(BaseModel):
    """Terminal rejection; ``level`` is None when the chain was cancelled"""

    kind: Literal["rejected"] = "rejected"
    level: int | None = None
    reason: str = ""


ChainState = Annotated[
    Union[NotStarted, AwaitingLevel, ChainApproved, ChainRejected],
    Field(discriminator="kind"),
]


class ApprovalChain(BaseModel):
    """
    An ordered sequence of approval steps attached to one entity

    The chain is rebuilt from its event stream; ``version`` is the stream
    version it was rebuilt at and is the expected version for the next
    decision.

    Invariants (checked on construction):
    - Step levels are exactly 1..n
    - AwaitingLevel(n): steps < n approved, steps >= n pending
    - Approved: every step approved
    - Rejected(k): steps < k approved, step k rejected, later steps pending
    """

    chain_id: str
    entity_type: EntityType
    entity_id: str
    context: dict[str, Any] = Field(default_factory=dict)
    steps: list[ApprovalStep] = Field(..., min_length=1)
    state: ChainState = Field(default_factory=NotStarted)
    created_at: datetime | None = None
    created_by: str | None = None
    completed_at: datetime | None = None
    version: int = 0

    @model_validator(mode="after")
    def _check_consistency(self) -> "ApprovalChain":
        levels = [step.level for step in self.steps]
        if levels != list(range(1, len(self.steps) + 1)):
            raise ValueError(f"Approval levels must be contiguous from 1, got {levels}")

        statuses = [step.status for step in self.steps]
        state = self.state

        if isinstance(state, NotStarted):
            expected_approved = 0
            rejected_at = None
        elif isinstance(state, AwaitingLevel):
            if state.level > len(self.steps):
                raise ValueError(f"Awaiting level {state.level} beyond last level")
            expected_approved = state.level - 1
            rejected_at = None
        elif isinstance(state, ChainApproved):
            expected_approved = len(self.steps)
            rejected_at = None
        elif state.level is None:
            # Cancelled: whatever was approved stays approved, nothing rejected
            expected_approved = sum(1 for s in statuses if s == StepStatus.APPROVED)
            rejected_at = None
        else:
            if state.level > len(self.steps):
                raise ValueError(f"Rejected level {state.level} beyond last level")
            expected_approved = state.level - 1
            rejected_at = state.level

        for index, status in enumerate(statuses, start=1):
            if index <= expected_approved:
                wanted = StepStatus.APPROVED
            elif index == rejected_at:
                wanted = StepStatus.REJECTED
            else:
                wanted = StepStatus.PENDING
            if status != wanted:
                raise ValueError(
                    f"Step {index} is {status.value} but chain state "
                    f"{state.kind} requires {wanted.value}"
                )
        return self

    @property
    def is_terminal(self) -> bool:
        return isinstance(self.state, (ChainApproved, ChainRejected))

    @property
    def is_approved(self) -> bool:
        return isinstance(self.state, ChainApproved)

    def current_level(self) -> int | None:
        """Level awaiting a decision, or None when the chain is not waiting"""
        if isinstance(self.state, AwaitingLevel):
            return self.state.level
        return None

    def current_step(self) -> ApprovalStep | None:
        level = self.current_level()
        return self.steps[level - 1] if level else None

    def step_at(self, level: int) -> ApprovalStep | None:
        if 1 <= level <= len(self.steps):
            return self.steps[level - 1]
        return None

    def is_last_level(self, level: int) -> bool:
        return level == len(self.steps)
