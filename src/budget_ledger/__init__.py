"""
Budget Ledger - Event-sourced budget codes with multi-level approval

Tracks budget codes, reservations and spending as an append-only ledger,
and routes every budget change through an ordered chain of approvers.

Fun fact: Double-entry bookkeeping was first described in print by Luca
Pacioli in 1494 - the ledger here never overwrites an entry either.
"""

from budget_ledger.engine import BudgetEngine

__version__ = "0.1.0"
__all__ = ["BudgetEngine", "__version__"]
