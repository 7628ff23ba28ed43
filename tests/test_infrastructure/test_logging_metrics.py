"""
Test infrastructure components: logging, metrics, retry.

These tests verify the production hardening infrastructure works correctly.
"""

import sqlite3
from datetime import datetime, timezone

import pytest
import structlog

from budget_ledger.engine import BudgetEngine
from budget_ledger.kernel.errors import StreamVersionConflict
from budget_ledger.kernel.event_store import SQLiteEventStore
from budget_ledger.kernel.events import Event
from budget_ledger.kernel.ids import generate_id
from budget_ledger.kernel.logging import (
    LogOperation,
    configure_logging,
    get_correlation_id,
    get_logger,
    redact_context,
    redact_identities,
    set_correlation_id,
)
from budget_ledger.kernel.metrics import (
    budget_utilization_ratio,
    commands_processed_total,
    events_appended_total,
    ledger_mutations_total,
    stream_version_conflicts_total,
    track_command_duration,
    update_utilization_metrics,
)
from budget_ledger.kernel.retry import retry_on_sqlite_lock, run_with_version_retry

from tests.helpers import append_to_stream, create_active_code


def make_event(stream_id: str, version: int, event_type: str = "TestEvent") -> Event:
    return Event(
        event_id=generate_id(),
        stream_id=stream_id,
        stream_type="test",
        version=version,
        command_id=generate_id(),
        event_type=event_type,
        occurred_at=datetime.now(timezone.utc),
        actor_id="actor@example.com",
        payload={"test": "data"},
    )


class TestLoggingFramework:
    """Test structured logging framework."""

    def test_configure_logging_console(self) -> None:
        configure_logging(json_output=False, log_level="INFO")
        assert get_logger(__name__) is not None

    def test_configure_logging_json(self) -> None:
        configure_logging(json_output=True, log_level="DEBUG")
        assert get_logger(__name__) is not None

    def test_correlation_id(self) -> None:
        """Test correlation ID context management."""
        cid = get_correlation_id()
        assert len(cid) > 0
        assert get_correlation_id() == cid

        set_correlation_id("test-correlation-123")
        assert get_correlation_id() == "test-correlation-123"

    def test_redact_context(self) -> None:
        redacted = redact_context(
            {"actor_email": "alice@example.com", "requested_by": "bob@example.com", "code": "IT-1"}
        )
        assert redacted == {
            "actor_email": "***REDACTED***",
            "requested_by": "***REDACTED***",
            "code": "IT-1",
        }

    def test_log_operation_context_manager(self) -> None:
        configure_logging(json_output=False, log_level="INFO")
        logger = get_logger(__name__)

        with LogOperation(logger, "reserve", budget_code_id="code-1", actor_id="a@example.com"):
            pass

    def test_log_operation_binds_ledger_ids(self) -> None:
        logger = get_logger(__name__)
        structlog.contextvars.bind_contextvars(chain_id="outer-chain")
        try:
            with LogOperation(
                logger, "decide", budget_code_id="code-1", chain_id="chain-9", decision="approved"
            ):
                bound = structlog.contextvars.get_contextvars()
                assert bound["budget_code_id"] == "code-1"
                assert bound["chain_id"] == "chain-9"
                assert "decision" not in bound

            after = structlog.contextvars.get_contextvars()
            assert "budget_code_id" not in after
            assert after["chain_id"] == "outer-chain"
        finally:
            structlog.contextvars.clear_contextvars()

    def test_identities_redacted_on_every_line(self) -> None:
        event = redact_identities(
            None, "info", {"event": "decided", "approver_email": "a@example.com", "level": 2}
        )
        assert event == {"event": "decided", "approver_email": "***REDACTED***", "level": 2}

    def test_log_operation_with_exception(self) -> None:
        """Test LogOperation logs errors and lets them propagate."""
        configure_logging(json_output=False, log_level="INFO")
        logger = get_logger(__name__)

        with pytest.raises(ValueError):
            with LogOperation(logger, "failing_operation"):
                raise ValueError("Test error")


class TestMetrics:
    """Test Prometheus metrics collection."""

    def test_events_appended_metric(self, event_store: SQLiteEventStore) -> None:
        counter = events_appended_total.labels(stream_type="test", event_type="TestEvent")
        before = counter._value.get()

        append_to_stream(event_store, "stream-1", 0, [make_event("stream-1", 1)])

        assert counter._value.get() == before + 1

    def test_idempotent_append_not_counted_twice(self, event_store: SQLiteEventStore) -> None:
        counter = events_appended_total.labels(stream_type="test", event_type="TestEvent")
        event = make_event("stream-1", 1)
        append_to_stream(event_store, "stream-1", 0, [event])
        before = counter._value.get()

        append_to_stream(event_store, "stream-1", 0, [event])

        assert counter._value.get() == before

    def test_version_conflict_metric(self, event_store: SQLiteEventStore) -> None:
        counter = stream_version_conflicts_total.labels(stream_type="test")
        append_to_stream(event_store, "stream-1", 0, [make_event("stream-1", 1)])
        before = counter._value.get()

        with pytest.raises(StreamVersionConflict):
            append_to_stream(event_store, "stream-1", 0, [make_event("stream-1", 1)])

        assert counter._value.get() == before + 1

    def test_track_command_duration_counts_outcomes(self) -> None:
        success = commands_processed_total.labels(command_type="smoke", status="success")
        failure = commands_processed_total.labels(command_type="smoke", status="failure")
        before_success = success._value.get()
        before_failure = failure._value.get()

        @track_command_duration("smoke")
        def smoke(fail: bool) -> str:
            if fail:
                raise RuntimeError("boom")
            return "ok"

        assert smoke(False) == "ok"
        with pytest.raises(RuntimeError):
            smoke(True)

        assert success._value.get() == before_success + 1
        assert failure._value.get() == before_failure + 1

    def test_ledger_mutation_metric(self, engine: BudgetEngine) -> None:
        code_id = create_active_code(engine)["budget_code_id"]
        counter = ledger_mutations_total.labels(operation="reserve")
        before = counter._value.get()

        engine.reserve(code_id, "REQ-001", "100")

        assert counter._value.get() == before + 1

    def test_utilization_gauge(self) -> None:
        update_utilization_metrics([{"code": "GAUGE-TEST", "utilization_percentage": 42.5}])
        assert budget_utilization_ratio.labels(budget_code="GAUGE-TEST")._value.get() == 0.425


class TestRetryLogic:
    """Test retry logic with exponential backoff."""

    def test_retry_on_sqlite_lock(self) -> None:
        call_count = 0

        @retry_on_sqlite_lock(max_attempts=3, min_wait_ms=1, max_wait_ms=5)
        def flaky() -> str:
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise sqlite3.OperationalError("database is locked")
            return "success"

        assert flaky() == "success"
        assert call_count == 2  # Failed once, succeeded on retry

    def test_version_retry_reruns_operation(self) -> None:
        attempts: list[int] = []

        def operation() -> str:
            attempts.append(len(attempts) + 1)
            if len(attempts) < 3:
                raise StreamVersionConflict("code-1", len(attempts) - 1, len(attempts))
            return "committed"

        assert run_with_version_retry(operation, max_attempts=5) == "committed"
        assert attempts == [1, 2, 3]

    def test_version_retry_gives_up(self) -> None:
        attempts: list[int] = []

        def operation() -> None:
            attempts.append(1)
            raise StreamVersionConflict("code-1", 0, 1)

        with pytest.raises(StreamVersionConflict):
            run_with_version_retry(operation, max_attempts=3)
        assert len(attempts) == 3

    def test_version_retry_ignores_other_errors(self) -> None:
        attempts: list[int] = []

        def operation() -> None:
            attempts.append(1)
            raise ValueError("not a conflict")

        with pytest.raises(ValueError):
            run_with_version_retry(operation)
        assert len(attempts) == 1
