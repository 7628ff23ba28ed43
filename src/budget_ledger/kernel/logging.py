"""
Structured logging for the Budget Ledger (structlog over stdlib logging)

Every line carries a correlation id. Inside a LogOperation the ledger ids
it was given (budget code, chain, requisition, transfer, revision) are
bound to the context, so the event store and workflow lines written
during a decision can be joined back to the code they touched.

Approver and requester identities are redacted by a processor before any
renderer sees them.
"""

import logging
import os
import sys
import time
from collections.abc import MutableMapping
from contextvars import ContextVar
from typing import Any

import structlog

from budget_ledger.kernel.ids import generate_id

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

# Keys a LogOperation binds for every line logged inside it
LEDGER_CONTEXT_KEYS = (
    "budget_code_id",
    "chain_id",
    "requisition_id",
    "transfer_id",
    "revision_id",
    "allocation_id",
)

REDACTED = "***REDACTED***"

# Identities of people; everything else in ledger context is an id or amount
REDACTED_FIELDS = frozenset(
    {
        "actor_id",
        "actor_email",
        "approver_email",
        "requested_by",
        "budget_owner",
        "password",
        "token",
        "secret",
        "api_key",
    }
)


def get_correlation_id() -> str:
    """Correlation id of the current context, issued on first use"""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_id()
        correlation_id_var.set(cid)
    return cid


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def add_correlation_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


def redact_context(context: dict[str, Any]) -> dict[str, Any]:
    """
    Copy of ``context`` with personal identities masked

    Example:
        >>> redact_context({"actor_email": "alice@example.com", "code": "IT-1"})
        {'actor_email': '***REDACTED***', 'code': 'IT-1'}
    """
    return {k: REDACTED if k in REDACTED_FIELDS else v for k, v in context.items()}


def redact_identities(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in REDACTED_FIELDS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def is_production() -> bool:
    """ENVIRONMENT=production switches off stack traces in operation failures"""
    return os.getenv("ENVIRONMENT", "development").lower() == "production"


def configure_logging(
    *,
    json_output: bool | None = None,
    log_level: str = "INFO",
    stream: Any = None,
) -> None:
    """
    Configure structlog and the stdlib root logger

    Args:
        json_output: JSON lines when True, coloured console when False;
            None picks JSON in production
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        stream: Output stream (defaults to stderr so CLI output stays clean)
    """
    if json_output is None:
        json_output = is_production()

    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stderr,
        level=getattr(logging, log_level.upper()),
    )
    # Flask's request log duplicates our own request lines
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_correlation_id,
        redact_identities,
    ]

    if json_output:
        renderers: list[structlog.types.Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [
            structlog.processors.ExceptionRenderer(),
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogOperation:
    """
    Log the start, end and duration of one ledger operation

    Ledger ids passed as context are bound to structlog's contextvars for
    the duration of the block, then restored to what they were before.

    Example:
        >>> with LogOperation(logger, "reserve", budget_code_id=code_id):
        ...     ledger.commit(appends)
    """

    def __init__(
        self, logger: structlog.stdlib.BoundLogger, operation: str, **context: Any
    ) -> None:
        self.logger = logger
        self.operation = operation
        self.context = context
        self.start_time = 0.0
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> "LogOperation":
        bound = {k: self.context[k] for k in LEDGER_CONTEXT_KEYS if k in self.context}
        self._tokens = dict(structlog.contextvars.bind_contextvars(**bound))
        self.start_time = time.perf_counter()
        self.logger.info(
            f"{self.operation} started", operation=self.operation, **self._unbound()
        )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        duration_ms = round((time.perf_counter() - self.start_time) * 1000, 2)
        try:
            if exc_type is None:
                self.logger.info(
                    f"{self.operation} completed",
                    operation=self.operation,
                    duration_ms=duration_ms,
                    **self._unbound(),
                )
            else:
                self.logger.error(
                    f"{self.operation} failed",
                    operation=self.operation,
                    duration_ms=duration_ms,
                    error=str(exc_val),
                    exc_info=not is_production(),
                    **self._unbound(),
                )
        finally:
            structlog.contextvars.reset_contextvars(**self._tokens)

    def _unbound(self) -> dict[str, Any]:
        """Context not already carried by contextvars"""
        return redact_context(
            {k: v for k, v in self.context.items() if k not in LEDGER_CONTEXT_KEYS}
        )
