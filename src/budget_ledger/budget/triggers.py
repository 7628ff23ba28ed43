"""
Budget Module Triggers - Automatic Budget Health Monitoring

Triggers evaluate budget code state and report anomalies. They never
write: the dashboard and the sweeper surface what they find.

- Utilization trigger: codes in the warning or critical band
- Balance trigger: codes whose figures break budget = used + reserved +
  remaining, or whose remaining went negative

NOTE: The balance trigger should NEVER fire if the ledger guards work.
If it does, it indicates a bug in invariant validation.
"""

from decimal import Decimal

from pydantic import BaseModel

from budget_ledger.budget.forecast import ForecastStatus, classify_utilization
from budget_ledger.budget.models import BudgetCode
from budget_ledger.kernel.policy import LedgerPolicy


class UtilizationAlert(BaseModel):
    budget_code_id: str
    code: str
    name: str
    severity: ForecastStatus
    utilization_percentage: float
    remaining: Decimal
    message: str


class BalanceViolation(BaseModel):
    budget_code_id: str
    code: str
    budget: Decimal
    used: Decimal
    reserved: Decimal
    remaining: Decimal
    reason: str


def evaluate_utilization_trigger(
    codes: list[BudgetCode], policy: LedgerPolicy
) -> list[UtilizationAlert]:
    """
    Alert on every code at or above the warning band

    Args:
        codes: Codes to check (normally the active ones)
        policy: Warning and critical thresholds

    Returns:
        Alerts, critical first, then by utilization descending
    """
    alerts = []
    for code in codes:
        severity = classify_utilization(code.utilization_percentage, policy)
        if severity == ForecastStatus.HEALTHY:
            continue
        alerts.append(
            UtilizationAlert(
                budget_code_id=code.budget_code_id,
                code=code.code,
                name=code.name,
                severity=severity,
                utilization_percentage=code.utilization_percentage,
                remaining=code.remaining,
                message=(
                    f"{code.code} is {code.utilization_percentage}% utilized "
                    f"({severity.value})"
                ),
            )
        )
    return sorted(
        alerts,
        key=lambda a: (a.severity != ForecastStatus.CRITICAL, -a.utilization_percentage),
    )


def evaluate_balance_trigger(codes: list[BudgetCode]) -> list[BalanceViolation]:
    """Detect codes whose figures do not add up"""
    violations = []
    for code in codes:
        reason = None
        if code.remaining < 0:
            reason = "negative_remaining"
        elif code.used + code.reserved + code.remaining != code.budget:
            reason = "unbalanced"
        elif code.used < Decimal("0"):
            reason = "negative_used"
        if reason is None:
            continue
        violations.append(
            BalanceViolation(
                budget_code_id=code.budget_code_id,
                code=code.code,
                budget=code.budget,
                used=code.used,
                reserved=code.reserved,
                remaining=code.remaining,
                reason=reason,
            )
        )
    return violations
