"""
Approval Module - Ordered multi-level approval chains

Every mutating action in the ledger (new budget code, revision, transfer,
requisition) is gated by a linear chain of named approvers. The chain is an
event-sourced aggregate; its completion triggers the entity's activation in
the same atomic write.
"""

from budget_ledger.approval.models import (
    ApprovalChain,
    ApprovalStep,
    Approver,
    AwaitingLevel,
    ChainApproved,
    ChainRejected,
    Decision,
    EntityType,
    NotStarted,
    StepStatus,
)
from budget_ledger.approval.resolver import (
    ApproverDirectory,
    ApproverResolver,
    DirectoryApproverResolver,
)
from budget_ledger.approval.workflow import (
    ApprovalWorkflowEngine,
    DecisionContext,
    DecisionOutcome,
)

__all__ = [
    "ApprovalChain",
    "ApprovalStep",
    "Approver",
    "AwaitingLevel",
    "ChainApproved",
    "ChainRejected",
    "Decision",
    "EntityType",
    "NotStarted",
    "StepStatus",
    "ApproverDirectory",
    "ApproverResolver",
    "DirectoryApproverResolver",
    "ApprovalWorkflowEngine",
    "DecisionContext",
    "DecisionOutcome",
]
