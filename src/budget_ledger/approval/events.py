"""
Approval Module Events - Domain events for approval chains

Every chain lives in its own stream ("approval_chain"). A chain is opened
once, receives one event per decision and ends approved, rejected or
cancelled. The full decision trail is therefore the stream itself.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from budget_ledger.approval.models import Approver, EntityType


class ApprovalStepSpec(BaseModel):
    """Spec for a chain step (in event payload)"""

    level: int
    approver: Approver


class ApprovalChainCreated(BaseModel):
    """
    A chain was opened for an entity and is awaiting level 1

    ``context`` carries whatever the activation hook needs later (for a
    requisition: budget code, requisition id and amount).
    """

    chain_id: str
    entity_type: EntityType
    entity_id: str
    steps: list[ApprovalStepSpec]
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    created_by: str | None


class ApprovalStepApproved(BaseModel):
    """
    The current approver approved their step

    ``next_level`` is None when this was the last level, which makes the
    chain Approved.
    """

    chain_id: str
    entity_type: EntityType
    entity_id: str
    level: int
    approver_email: str
    comments: str | None
    decided_at: datetime
    next_level: int | None


class ApprovalStepRejected(BaseModel):
    """The current approver rejected their step - the chain is terminal"""

    chain_id: str
    entity_type: EntityType
    entity_id: str
    level: int
    approver_email: str
    comments: str
    decided_at: datetime


class ApprovalChainCancelled(BaseModel):
    """The entity was withdrawn before the chain completed"""

    chain_id: str
    entity_type: EntityType
    entity_id: str
    reason: str
    cancelled_at: datetime
    cancelled_by: str | None
