"""
Kernel - Core event sourcing infrastructure

The kernel provides the foundational event sourcing machinery that the
approval and budget modules build upon. It enforces determinism,
idempotency, optimistic locking and append-only semantics.

Fun fact: Event sourcing was inspired by accountants - they never erase ledger
entries, they add correcting entries. A budget ledger is right at home here.
"""

from budget_ledger.kernel.errors import (
    AlreadyDecided,
    CommandIdempotencyViolation,
    ConstraintViolation,
    EventStoreError,
    InsufficientBudget,
    InvalidState,
    LedgerError,
    NotCurrentApprover,
    NotFound,
    NotRequester,
    StreamVersionConflict,
    ValidationError,
)
from budget_ledger.kernel.events import Event, StreamAppend
from budget_ledger.kernel.ids import generate_id
from budget_ledger.kernel.time import RealTimeProvider, TestTimeProvider, TimeProvider

__all__ = [
    # IDs
    "generate_id",
    # Time
    "TimeProvider",
    "RealTimeProvider",
    "TestTimeProvider",
    # Events
    "Event",
    "StreamAppend",
    # Errors
    "LedgerError",
    "EventStoreError",
    "CommandIdempotencyViolation",
    "StreamVersionConflict",
    "ValidationError",
    "InsufficientBudget",
    "InvalidState",
    "ConstraintViolation",
    "NotFound",
    "NotCurrentApprover",
    "NotRequester",
    "AlreadyDecided",
]
