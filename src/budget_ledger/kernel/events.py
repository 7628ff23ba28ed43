"""
Base Event model for event sourcing

Events are immutable facts about what happened in the ledger.
They form an append-only log that serves as the source of truth.

Fun fact: In event sourcing, the event log is like a time machine -
you can replay history to any point and see exactly how much of a
budget code was left at that moment!
"""

from datetime import datetime

from pydantic import BaseModel, Field


class Event(BaseModel):
    """
    Base event class - all domain events are stored in this envelope

    Events are the fundamental unit of change in the system. They are:
    - Immutable (never modified after creation)
    - Append-only (never deleted)
    - Timestamped (preserve temporal ordering)
    - Versioned (track stream evolution)
    - Replayable (deterministic state reconstruction)

    The combination of stream_id + version provides optimistic locking,
    while command_id ensures idempotency.
    """

    event_id: str = Field(
        ...,
        description="Unique event identifier (UUIDv7 for time-ordering)",
    )

    stream_id: str = Field(
        ...,
        description="Aggregate root identifier - groups related events",
    )

    stream_type: str = Field(
        ...,
        description="Type of aggregate: 'budget_code', 'approval_chain', etc.",
    )

    event_type: str = Field(
        ...,
        description="Specific event type: 'FundsReserved', 'ApprovalStepApproved', etc.",
    )

    occurred_at: datetime = Field(
        ...,
        description="UTC timestamp when event occurred",
    )

    actor_id: str | None = Field(
        default=None,
        description="ID of actor who triggered this event (None for system events)",
    )

    command_id: str = Field(
        ...,
        description="ID of command that caused this event (idempotency key)",
    )

    payload: dict = Field(
        default_factory=dict,
        description="Event-specific data (must be JSON-serializable)",
    )

    version: int = Field(
        ...,
        description="Stream version after this event (monotonically increasing)",
        ge=1,
    )

    model_config = {
        "frozen": True,  # Events are immutable
        "json_schema_extra": {
            "examples": [
                {
                    "event_id": "01908e9a-3b87-7000-8000-123456789abc",
                    "stream_id": "01908e9a-3b87-7000-8000-00000000c0de",
                    "stream_type": "budget_code",
                    "event_type": "FundsReserved",
                    "occurred_at": "2025-01-15T10:30:00Z",
                    "actor_id": "buyer@example.com",
                    "command_id": "cmd-123",
                    "payload": {"requisition_id": "REQ-001", "amount": "400000"},
                    "version": 3,
                }
            ]
        },
    }


class StreamAppend(BaseModel):
    """
    A planned write to one stream: the events plus the version they expect

    Handlers return these instead of writing directly, so that several
    planned writes (a chain transition and the ledger mutation it unlocks)
    can be committed in one atomic append.
    """

    stream_id: str
    expected_version: int = Field(ge=0)
    events: list[Event] = Field(min_length=1)

    model_config = {"frozen": True}


def create_event(
    *,
    event_id: str,
    stream_id: str,
    stream_type: str,
    event_type: str,
    occurred_at: datetime,
    command_id: str,
    version: int,
    actor_id: str | None = None,
    payload: dict | None = None,
) -> Event:
    """
    Factory function for creating events with all required fields

    This provides a clean way to construct events with named parameters
    and ensures all required fields are provided.
    """
    return Event(
        event_id=event_id,
        stream_id=stream_id,
        stream_type=stream_type,
        event_type=event_type,
        occurred_at=occurred_at,
        actor_id=actor_id,
        command_id=command_id,
        payload=payload or {},
        version=version,
    )
