"""
Custom exceptions for the Budget Ledger

Well-defined error hierarchy enables precise error handling and
clear error messages for developers and operators. Every domain error
carries a stable machine ``code`` that the HTTP layer maps to a status.

Fun fact: Double-entry bookkeeping was codified by Luca Pacioli in 1494.
Five centuries later we still raise an error when the books don't balance!
"""


class LedgerError(Exception):
    """Base exception for all Budget Ledger errors"""

    code = "ledger_error"


class EventStoreError(LedgerError):
    """Base class for event store errors"""

    code = "event_store_error"


class CommandIdempotencyViolation(EventStoreError):
    """
    Raised when attempting to execute a command with duplicate command_id

    This is actually SUCCESS - idempotency means the command was already
    processed, so we return the original events without re-executing.
    """

    code = "duplicate_command"

    def __init__(self, command_id: str, message: str = "") -> None:
        self.command_id = command_id
        super().__init__(
            message or f"Command {command_id} already processed (idempotency preserved)"
        )


class StreamVersionConflict(EventStoreError):
    """
    Raised when stream version doesn't match expected (optimistic locking)

    Indicates concurrent modification - caller should reload and retry.
    """

    code = "version_conflict"

    def __init__(
        self, stream_id: str, expected_version: int, actual_version: int
    ) -> None:
        self.stream_id = stream_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Stream {stream_id} version mismatch: "
            f"expected {expected_version}, got {actual_version}"
        )


# Domain Errors


class ValidationError(LedgerError):
    """Raised when input is malformed or violates a field rule"""

    code = "validation_error"

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class InsufficientBudget(LedgerError):
    """Raised when an amount exceeds the remaining budget of a code"""

    code = "insufficient_budget"

    def __init__(self, budget_code: str, requested: str, remaining: str) -> None:
        self.budget_code = budget_code
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Budget code {budget_code} has insufficient funds: "
            f"requested {requested}, remaining {remaining}"
        )


class InvalidState(LedgerError):
    """Raised when an operation is not allowed in the entity's current status"""

    code = "invalid_state"

    def __init__(self, entity: str, current_state: str, message: str = "") -> None:
        self.entity = entity
        self.current_state = current_state
        super().__init__(message or f"{entity} is {current_state}, operation not allowed")


class ConstraintViolation(LedgerError):
    """
    Raised when a change would break a ledger invariant

    Example: revising a budget below what has already been used or reserved.
    """

    code = "constraint_violation"


class NotFound(LedgerError):
    """Raised when a referenced entity does not exist"""

    code = "not_found"

    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


# Approval Errors


class ApprovalError(LedgerError):
    """Base class for approval workflow errors"""

    code = "approval_error"


class NotCurrentApprover(ApprovalError):
    """Raised when the actor is not the approver of the chain's current level"""

    code = "not_current_approver"

    def __init__(self, chain_id: str, actor_email: str, current_level: int | None) -> None:
        self.chain_id = chain_id
        self.actor_email = actor_email
        self.current_level = current_level
        super().__init__(
            f"{actor_email} is not the approver for level {current_level} "
            f"of approval chain {chain_id}"
        )


class AlreadyDecided(ApprovalError):
    """Raised when a decision targets a step or chain that is already decided"""

    code = "already_decided"

    def __init__(self, chain_id: str, message: str = "") -> None:
        self.chain_id = chain_id
        super().__init__(message or f"Approval chain {chain_id} is already decided")


class NotRequester(ApprovalError):
    """Raised when someone other than the requester withdraws a request"""

    code = "not_requester"

    def __init__(self, entity: str, actor_id: str | None) -> None:
        self.entity = entity
        self.actor_id = actor_id
        super().__init__(f"Only the requester can withdraw {entity}")
