"""
Budget Module Commands - Intentions to change ledger state

Commands represent what users want to do with budget codes. They are
validated structurally here (pydantic) and against ledger invariants by the
handlers, before anything is written.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Literal, TypeVar

import pydantic
from pydantic import BaseModel, Field, field_validator, model_validator

from budget_ledger.budget.models import BudgetPeriod, BudgetType
from budget_ledger.kernel.errors import ValidationError

CODE_PATTERN = r"^[A-Z0-9_-]{3,20}$"

C = TypeVar("C", bound=BaseModel)


def parse_command(command_cls: type[C], data: Any) -> C:
    """
    Build a command from untrusted input

    Raises:
        ValidationError: With the first offending field, if the input is invalid
    """
    if isinstance(data, command_cls):
        return data
    try:
        return command_cls.model_validate(data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or None
        message = first["msg"]
        if first["type"] == "extra_forbidden":
            message = f"Field '{field}' cannot be changed here"
        raise ValidationError(
            f"{field}: {message}" if field else message, field=field
        ) from None


class CreateBudgetCode(BaseModel):
    """
    Create a new budget code, pending approval

    The code starts pending; it becomes usable only after every approver
    of its chain has approved.
    """

    code: str = Field(..., pattern=CODE_PATTERN)
    name: str = Field(..., min_length=1, max_length=200)
    department: str = Field(..., min_length=1, max_length=100)
    budget_type: BudgetType
    budget_period: BudgetPeriod = BudgetPeriod.YEARLY
    fiscal_year: int = Field(..., ge=2000, le=2100)
    budget: Decimal = Field(..., ge=0, allow_inf_nan=False)
    start_date: date
    end_date: date | None = None
    budget_owner: str | None = None
    description: str = Field(default="", max_length=1000)

    @field_validator("code", mode="before")
    @classmethod
    def _normalise_code(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _check_dates(self) -> "CreateBudgetCode":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class UpdateBudgetCode(BaseModel):
    """
    Change non-monetary fields of a budget code

    The budget amount, department and code itself are not editable here:
    amounts change via revisions and transfers only.
    """

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    budget_owner: str | None = None
    end_date: date | None = None

    model_config = {"extra": "forbid"}


class ChangeCodeStatus(BaseModel):
    """Suspend or reactivate an active budget code"""

    action: Literal["suspend", "reactivate"]
    reason: str = ""


class RequestRevision(BaseModel):
    """Ask to change a code's budget to ``requested_budget``"""

    requested_budget: Decimal = Field(..., ge=0, allow_inf_nan=False)
    reason: str


class RequestTransfer(BaseModel):
    """Ask to move ``amount`` from one code to another"""

    from_budget_code_id: str = Field(..., min_length=1)
    to_budget_code_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, allow_inf_nan=False)
    reason: str

    @model_validator(mode="after")
    def _check_distinct(self) -> "RequestTransfer":
        if self.from_budget_code_id == self.to_budget_code_id:
            raise ValueError("Cannot transfer a budget code to itself")
        return self


class ReserveFunds(BaseModel):
    """Reserve funds on a code for a requisition"""

    requisition_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, allow_inf_nan=False)


class SubmitRequisition(BaseModel):
    """Submit a requisition whose approval reserves funds on a code"""

    budget_code_id: str = Field(..., min_length=1)
    requisition_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, allow_inf_nan=False)
    description: str = ""


class DecisionRequest(BaseModel):
    """An approver's decision as received from a client"""

    decision: Literal["approved", "rejected"]
    comments: str | None = None
    level: int | None = Field(default=None, ge=1)
