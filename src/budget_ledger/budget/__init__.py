"""
Budget Module - The ledger of codes, reservations and budget changes

A budget code holds a budget; requisitions reserve against it, spending
converts reservations into used funds, and the budget itself changes only
through approved revisions and transfers.
"""

from budget_ledger.budget.forecast import Forecast, ForecastCalculator, ForecastStatus
from budget_ledger.budget.ledger import BudgetLedger, StaleReleaseResult
from budget_ledger.budget.models import (
    Allocation,
    AllocationStatus,
    BudgetCode,
    BudgetPeriod,
    BudgetStatus,
    BudgetType,
    Revision,
    RevisionStatus,
    Transfer,
    TransferStatus,
)
from budget_ledger.budget.sweeper import StaleReservationSweeper, SweepReport

__all__ = [
    "Allocation",
    "AllocationStatus",
    "BudgetCode",
    "BudgetPeriod",
    "BudgetStatus",
    "BudgetType",
    "Revision",
    "RevisionStatus",
    "Transfer",
    "TransferStatus",
    "BudgetLedger",
    "StaleReleaseResult",
    "Forecast",
    "ForecastCalculator",
    "ForecastStatus",
    "StaleReservationSweeper",
    "SweepReport",
]
