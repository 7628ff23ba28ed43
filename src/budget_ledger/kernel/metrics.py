"""
Prometheus metrics collection for the Budget Ledger.

Provides observability into ledger operations, approval throughput and health.
"""

import time
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# ============================================================================
# Core Event Store Metrics
# ============================================================================

events_appended_total = Counter(
    "budget_ledger_events_appended_total",
    "Total number of events appended to the event store",
    ["stream_type", "event_type"],
)

stream_version_conflicts_total = Counter(
    "budget_ledger_stream_version_conflicts_total",
    "Total number of optimistic locking version conflicts",
    ["stream_type"],
)

# ============================================================================
# Command Processing Metrics
# ============================================================================

command_duration_seconds = Histogram(
    "budget_ledger_command_duration_seconds",
    "Duration of command processing in seconds",
    ["command_type"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

commands_processed_total = Counter(
    "budget_ledger_commands_processed_total",
    "Total number of commands processed",
    ["command_type", "status"],  # status: success, failure
)

# ============================================================================
# Ledger Metrics
# ============================================================================

ledger_mutations_total = Counter(
    "budget_ledger_mutations_total",
    "Total number of committed ledger mutations",
    ["operation"],  # reserve, spend, release, revise, transfer, activate
)

stale_reservations_released_total = Counter(
    "budget_ledger_stale_reservations_released_total",
    "Total number of reservations released by the stale sweeper",
)

budget_utilization_ratio = Gauge(
    "budget_ledger_budget_utilization_ratio",
    "Budget utilization ratio ((budget - remaining) / budget)",
    ["budget_code"],
)

# ============================================================================
# Approval Metrics
# ============================================================================

approval_decisions_total = Counter(
    "budget_ledger_approval_decisions_total",
    "Total number of approval decisions recorded",
    ["entity_type", "decision"],
)

approval_chains_completed_total = Counter(
    "budget_ledger_approval_chains_completed_total",
    "Total number of approval chains reaching a terminal state",
    ["entity_type", "outcome"],  # outcome: approved, rejected, cancelled
)

# ============================================================================
# System Metrics
# ============================================================================

projection_rebuild_duration_seconds = Histogram(
    "budget_ledger_projection_rebuild_duration_seconds",
    "Duration of projection rebuild in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

sweep_duration_seconds = Histogram(
    "budget_ledger_sweep_duration_seconds",
    "Duration of a stale reservation sweep in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ============================================================================
# Helper Functions
# ============================================================================

P = ParamSpec("P")
R = TypeVar("R")


def track_command_duration(command_type: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator to track command processing duration.

    Args:
        command_type: Type of command being processed

    Returns:
        Decorated function that tracks duration
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start = time.perf_counter()
            status = "success"
            try:
                result = func(*args, **kwargs)
                return result
            except Exception:
                status = "failure"
                raise
            finally:
                duration = time.perf_counter() - start
                command_duration_seconds.labels(command_type=command_type).observe(duration)
                commands_processed_total.labels(
                    command_type=command_type, status=status
                ).inc()

        return wrapper

    return decorator


def start_metrics_server(port: int = 9090) -> None:
    """
    Start Prometheus metrics HTTP server.

    Args:
        port: Port to listen on (default: 9090)
    """
    start_http_server(port)


def update_utilization_metrics(codes: list[dict]) -> None:
    """
    Update the utilization gauge for a set of budget code views.

    Args:
        codes: Budget code dicts carrying "code" and "utilization_percentage"
    """
    for code in codes:
        ratio = float(code["utilization_percentage"]) / 100.0
        budget_utilization_ratio.labels(budget_code=code["code"]).set(ratio)
