"""
ForecastCalculator - How long will the money last?

Read-only projection of a code's burn rate. Spend is grouped by the
calendar month of its spent date; the average over months that saw any
spend is the monthly burn. Remaining funds divided by that burn gives the
number of whole months left.

Fun fact: A code that never spent anything is forecast to last 999
months - roughly 83 years, which outlives most fiscal policies!
"""

import calendar
from collections import defaultdict
from datetime import date
from decimal import ROUND_FLOOR, Decimal
from enum import Enum

from pydantic import BaseModel

from budget_ledger.budget.models import AllocationStatus, BudgetCode
from budget_ledger.kernel.policy import LedgerPolicy
from budget_ledger.kernel.time import TimeProvider


class ForecastStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class Forecast(BaseModel):
    """Burn-rate forecast for one budget code"""

    budget_code_id: str
    code: str
    budget: Decimal
    used: Decimal
    reserved: Decimal
    current_remaining: Decimal
    utilization_percentage: float
    average_monthly_burn: Decimal
    projected_months: int
    projected_exhaustion_date: date | None = None
    status: ForecastStatus
    recommendation: str


def add_months(start: date, months: int) -> date:
    """Calendar month arithmetic, clamping to the last day of the month"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def classify_utilization(utilization: float, policy: LedgerPolicy) -> ForecastStatus:
    if utilization >= policy.critical_utilization_percent:
        return ForecastStatus.CRITICAL
    if utilization >= policy.warning_utilization_percent:
        return ForecastStatus.WARNING
    return ForecastStatus.HEALTHY


def recommend(status: ForecastStatus, projected_months: int, sentinel: int = 999) -> str:
    """Advice text derived only from the health band and the months left"""
    if status == ForecastStatus.CRITICAL:
        if projected_months <= 1:
            return "Budget is nearly exhausted. Freeze non-essential spending and request a revision now."
        return "Budget utilization is critical. Review pending requisitions and plan a revision or transfer."
    if status == ForecastStatus.WARNING:
        if projected_months < 3:
            return "Budget will run out within three months at the current burn rate. Plan a revision."
        return "Budget utilization is high. Monitor spending closely."
    if projected_months == sentinel:
        return "No spending recorded yet. Budget is sufficient for the foreseeable future."
    if projected_months < 3:
        return "Spending is fast relative to what remains. Review the burn rate."
    return "Budget is healthy. Spending is on track."


def monthly_burn(code: BudgetCode) -> Decimal:
    """Average spend per calendar month, over months with at least one spend"""
    per_month: dict[tuple[int, int], Decimal] = defaultdict(lambda: Decimal("0"))
    for allocation in code.allocations.values():
        if allocation.status != AllocationStatus.SPENT or allocation.spent_date is None:
            continue
        key = (allocation.spent_date.year, allocation.spent_date.month)
        per_month[key] += allocation.amount

    if not per_month:
        return Decimal("0")
    return sum(per_month.values(), Decimal("0")) / len(per_month)


class ForecastCalculator:
    """Computes forecasts against the injected clock and policy"""

    def __init__(self, time_provider: TimeProvider, policy: LedgerPolicy) -> None:
        self.time_provider = time_provider
        self.policy = policy

    def forecast(self, code: BudgetCode) -> Forecast:
        """
        Forecast a code's remaining runway

        Args:
            code: Budget code state (with allocations)

        Returns:
            Forecast; projected_months is the policy sentinel and the
            exhaustion date is omitted when nothing has been spent
        """
        sentinel = self.policy.forecast_sentinel_months
        burn = monthly_burn(code)
        remaining = code.remaining

        if burn > 0:
            months = int((remaining / burn).to_integral_value(rounding=ROUND_FLOOR))
            months = min(months, sentinel)
        else:
            months = sentinel

        exhaustion = None
        if months != sentinel:
            exhaustion = add_months(self.time_provider.today(), months)

        status = classify_utilization(code.utilization_percentage, self.policy)
        return Forecast(
            budget_code_id=code.budget_code_id,
            code=code.code,
            budget=code.budget,
            used=code.used,
            reserved=code.reserved,
            current_remaining=remaining,
            utilization_percentage=code.utilization_percentage,
            average_monthly_burn=burn.quantize(Decimal("0.01")),
            projected_months=months,
            projected_exhaustion_date=exhaustion,
            status=status,
            recommendation=recommend(status, months, sentinel),
        )
