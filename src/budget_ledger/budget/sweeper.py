"""
StaleReservationSweeper - Periodic reclaiming of forgotten reservations

The sweeper is run periodically (e.g., nightly) by an operator or a
scheduler. It walks every code that can still settle reservations,
releases the ones older than the stale window and expires codes whose end
date has passed. It is never approval-gated, and every release it makes is
an ordinary AllocationReleased event flagged ``stale``.

Fun fact: This is the ledger's janitor - it never decides anything, it
just sweeps up promises nobody kept!
"""

import time
from datetime import datetime

from pydantic import BaseModel, Field

from budget_ledger.budget.handlers import CODE_STREAM_TYPE, BudgetCommandHandlers
from budget_ledger.budget.invariants import SETTLEABLE_STATUSES
from budget_ledger.budget.ledger import BudgetLedger
from budget_ledger.budget.models import BudgetCode, BudgetStatus
from budget_ledger.budget.projections import BudgetCodeRegistry
from budget_ledger.kernel.errors import InvalidState
from budget_ledger.kernel.ids import generate_id
from budget_ledger.kernel.logging import LogOperation, get_logger
from budget_ledger.kernel.metrics import ledger_mutations_total, sweep_duration_seconds
from budget_ledger.kernel.retry import run_with_version_retry

logger = get_logger(__name__)


class SweepResult(BaseModel):
    budget_code_id: str
    code: str
    released: int
    skipped: int


class SweepReport(BaseModel):
    """Result of one sweep over the ledger"""

    sweep_id: str
    swept_at: datetime
    max_age_days: int
    results: list[SweepResult] = Field(default_factory=list)
    expired_codes: list[str] = Field(default_factory=list)

    @property
    def total_released(self) -> int:
        return sum(r.released for r in self.results)

    @property
    def total_skipped(self) -> int:
        return sum(r.skipped for r in self.results)

    def summary(self) -> str:
        """Human-readable summary of the sweep"""
        parts = [
            f"Sweep {self.sweep_id} at {self.swept_at}",
            f"Released: {self.total_released}",
            f"Skipped: {self.total_skipped}",
        ]
        if self.expired_codes:
            parts.append(f"Expired codes: {', '.join(self.expired_codes)}")
        return " | ".join(parts)


class StaleReservationSweeper:
    """
    Orchestrates stale reservation release across all codes

    The sweeper:
    1. Rebuilds current code state from the event store
    2. Releases stale reservations code by code
    3. Expires codes past their end date
    4. Returns a report
    """

    def __init__(self, ledger: BudgetLedger, handlers: BudgetCommandHandlers) -> None:
        self.ledger = ledger
        self.handlers = handlers

    def _load_codes(self) -> list[BudgetCode]:
        events = self.ledger.event_store.query_events(stream_type=CODE_STREAM_TYPE)
        registry = BudgetCodeRegistry.from_events(events)
        return [BudgetCode.model_validate(code) for code in registry.list_codes()]

    def sweep(self, max_age_days: int | None = None) -> SweepReport:
        """
        Release stale reservations on every settleable code

        Args:
            max_age_days: Age threshold (defaults to policy.stale_reservation_days)

        Returns:
            SweepReport listing codes where something was released or skipped
        """
        days = (
            max_age_days
            if max_age_days is not None
            else self.ledger.policy.stale_reservation_days
        )
        report = SweepReport(
            sweep_id=generate_id(),
            swept_at=self.ledger.time_provider.now(),
            max_age_days=days,
        )

        start = time.perf_counter()
        with LogOperation(logger, "sweep", sweep_id=report.sweep_id, max_age_days=days):
            for code in self._load_codes():
                if code.status not in SETTLEABLE_STATUSES:
                    continue
                result = self.ledger.release_stale(code.budget_code_id, days)
                if result.released or result.skipped:
                    report.results.append(
                        SweepResult(
                            budget_code_id=code.budget_code_id,
                            code=code.code,
                            released=result.released_count,
                            skipped=result.skipped,
                        )
                    )
            report.expired_codes = self.expire_ended_codes()
        sweep_duration_seconds.observe(time.perf_counter() - start)

        logger.info(
            "Sweep completed",
            sweep_id=report.sweep_id,
            total_released=report.total_released,
            total_skipped=report.total_skipped,
            expired=len(report.expired_codes),
        )
        return report

    def expire_ended_codes(self) -> list[str]:
        """
        Expire active and suspended codes whose end date has passed

        Returns:
            Code strings that were expired
        """
        today = self.ledger.time_provider.today()
        expired = []
        for code in self._load_codes():
            if code.status not in (BudgetStatus.ACTIVE, BudgetStatus.SUSPENDED):
                continue
            if code.end_date is None or code.end_date >= today:
                continue

            def attempt(budget_code_id: str = code.budget_code_id) -> None:
                current = self.ledger.load_code(budget_code_id)
                append = self.handlers.handle_expire(current, generate_id())
                self.ledger.event_store.append_streams([append])

            try:
                run_with_version_retry(
                    attempt, max_attempts=self.ledger.policy.max_commit_attempts
                )
            except InvalidState:
                continue  # expired or status changed concurrently
            ledger_mutations_total.labels(operation="expire").inc()
            expired.append(code.code)
        return expired
