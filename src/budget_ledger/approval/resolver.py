"""
Approver resolution - who approves what

The workflow engine never hard-codes an organisation chart. It asks an
injected ApproverResolver for the ordered approvers of a new chain.
DirectoryApproverResolver is the stock implementation, driven by an
ApproverDirectory that can be loaded from a JSON file.
"""

import json
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

from budget_ledger.approval.models import Approver, EntityType
from budget_ledger.kernel.errors import ValidationError

DEPARTMENT_HEAD = "department_head"


class ApproverResolver(Protocol):
    """Capability that turns an entity into its ordered list of approvers"""

    def resolve(
        self,
        entity_type: EntityType,
        department: str,
        context: dict[str, Any] | None = None,
    ) -> list[Approver]:
        """Return approvers in level order (level 1 first)"""
        ...


def default_chain_templates() -> dict[EntityType, list[str]]:
    return {
        EntityType.BUDGET_CODE: [DEPARTMENT_HEAD, "head_of_business", "finance"],
        EntityType.BUDGET_REVISION: [DEPARTMENT_HEAD, "president", "finance"],
        EntityType.BUDGET_TRANSFER: [DEPARTMENT_HEAD, "head_of_business", "finance"],
        EntityType.REQUISITION: [DEPARTMENT_HEAD, "finance"],
    }


class ApproverDirectory(BaseModel):
    """
    Organisation data needed to build approval chains

    Attributes:
        department_heads: Department name -> its head
        executives: Role (head_of_business, president, finance) -> approver
        chain_templates: Entity type -> ordered roles; "department_head"
            resolves against the entity's department
    """

    department_heads: dict[str, Approver] = Field(default_factory=dict)
    executives: dict[str, Approver] = Field(default_factory=dict)
    chain_templates: dict[EntityType, list[str]] = Field(
        default_factory=default_chain_templates
    )

    @classmethod
    def from_json_file(cls, path: str | Path) -> "ApproverDirectory":
        with open(path, encoding="utf-8") as f:
            return cls.model_validate(json.load(f))


class DirectoryApproverResolver:
    """
    Resolve approvers from an ApproverDirectory

    Consecutive steps that land on the same person collapse into one step
    (a department head who is also head of business approves once).
    """

    def __init__(self, directory: ApproverDirectory) -> None:
        self.directory = directory

    def resolve(
        self,
        entity_type: EntityType,
        department: str,
        context: dict[str, Any] | None = None,
    ) -> list[Approver]:
        roles = self.directory.chain_templates.get(entity_type)
        if not roles:
            raise ValidationError(f"No approval template for {entity_type.value}")

        approvers: list[Approver] = []
        for role in roles:
            if role == DEPARTMENT_HEAD:
                approver = self.directory.department_heads.get(department)
                if approver is None:
                    raise ValidationError(
                        f"No department head configured for department '{department}'",
                        field="department",
                    )
            else:
                approver = self.directory.executives.get(role)
                if approver is None:
                    raise ValidationError(f"No approver configured for role '{role}'")

            if approvers and approvers[-1].matches(approver.email):
                continue
            approvers.append(approver.model_copy(update={"role": role}))

        return approvers
