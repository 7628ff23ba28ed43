"""
Ledger Policy - Tunable parameters for budget control

The LedgerPolicy holds the thresholds the ledger enforces: how long a
reservation may sit unspent, when a code counts as warning or critical,
how many compare-and-swap attempts a write gets.

Fun fact: The 75/90 utilization bands are the same ones most finance teams
already colour amber and red in their spreadsheets!
"""

from pydantic import BaseModel, Field, model_validator


class LedgerPolicy(BaseModel):
    """
    Ledger configuration parameters

    The default values mirror common finance practice and can be
    overridden per deployment (e.g., a longer stale window for CAPEX-heavy
    organisations).
    """

    policy_version: str = Field(
        default="1.0",
        description="Policy version for tracking changes over time",
    )

    # Reservations
    stale_reservation_days: int = Field(
        default=30,
        ge=1,
        description="Days after which an unspent reservation is released by the sweeper",
    )

    # Forecast / health bands
    warning_utilization_percent: float = Field(
        default=75.0,
        gt=0.0,
        le=100.0,
        description="Utilization at or above which a code is in warning",
    )

    critical_utilization_percent: float = Field(
        default=90.0,
        gt=0.0,
        le=100.0,
        description="Utilization at or above which a code is critical",
    )

    forecast_sentinel_months: int = Field(
        default=999,
        ge=1,
        description="Projected months reported when there is no burn history",
    )

    # Input rules
    min_reason_length: int = Field(
        default=20,
        ge=1,
        description="Minimum characters for revision and transfer reasons",
    )

    # Concurrency
    max_commit_attempts: int = Field(
        default=5,
        ge=1,
        description="Compare-and-swap attempts before a version conflict surfaces",
    )

    # Budget code status while awaiting a given approver role
    pending_status_by_role: dict[str, str] = Field(
        default={
            "department_head": "pending_departmental_head",
            "head_of_business": "pending_head_of_business",
            "finance": "pending_finance",
        },
        description="Budget code status shown while a step of this role is current",
    )

    model_config = {
        "frozen": False,
        "json_schema_extra": {
            "description": "Thresholds and limits governing the budget ledger"
        },
    }

    @model_validator(mode="after")
    def _check_bands(self) -> "LedgerPolicy":
        if self.warning_utilization_percent > self.critical_utilization_percent:
            raise ValueError("warning_utilization_percent must not exceed critical")
        return self

    def pending_status_for(self, role: str) -> str:
        """Budget code status for a chain currently waiting on ``role``"""
        return self.pending_status_by_role.get(role, "pending")
