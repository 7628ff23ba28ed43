"""
Prometheus metrics server for the Budget Ledger.

This script starts an HTTP server that exposes Prometheus metrics at /metrics.
Given a database it also runs the stale reservation sweep on an interval and
refreshes the utilization gauges after every pass.

Usage:
    python -m budget_ledger.metrics_server --port 9090
    python -m budget_ledger.metrics_server --db ledger.db --approvers approvers.json --sweep-interval 3600
"""

import argparse
import time

from budget_ledger.approval.resolver import ApproverDirectory, DirectoryApproverResolver
from budget_ledger.engine import BudgetEngine
from budget_ledger.kernel.logging import configure_logging, get_logger
from budget_ledger.kernel.metrics import start_metrics_server

logger = get_logger(__name__)


def run_sweep(engine: BudgetEngine) -> None:
    """One maintenance pass: sweep, then recompute gauges"""
    report = engine.sweep_stale_reservations()
    engine.dashboard()
    logger.info(
        "Scheduled sweep finished",
        sweep_id=report.sweep_id,
        released=report.total_released,
        skipped=report.total_skipped,
        expired=len(report.expired_codes),
    )


def main() -> None:
    """
    Start the Prometheus metrics server.

    The server exposes all ledger metrics at http://0.0.0.0:<port>/metrics
    in Prometheus text format.
    """
    parser = argparse.ArgumentParser(description="Budget Ledger Metrics Server")
    parser.add_argument(
        "--port",
        type=int,
        default=9090,
        help="Port to listen on (default: 9090)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs in JSON format (default: False)",
    )
    parser.add_argument("--db", type=str, default=None, help="Ledger database to sweep")
    parser.add_argument(
        "--approvers",
        type=str,
        default="approvers.json",
        help="Approver directory (default: approvers.json)",
    )
    parser.add_argument(
        "--sweep-interval",
        type=int,
        default=3600,
        help="Seconds between stale reservation sweeps (default: 3600)",
    )

    args = parser.parse_args()

    # Configure logging
    configure_logging(json_output=args.json_logs, log_level=args.log_level)

    logger.info(
        "Starting Prometheus metrics server",
        port=args.port,
        endpoint=f"http://0.0.0.0:{args.port}/metrics",
    )

    # Start metrics server
    start_metrics_server(port=args.port)

    logger.info("Metrics server started successfully")

    engine = None
    if args.db:
        directory = ApproverDirectory.from_json_file(args.approvers)
        engine = BudgetEngine(args.db, DirectoryApproverResolver(directory))
        logger.info("Scheduled sweeps enabled", db=args.db, interval=args.sweep_interval)

    # Keep the server running
    next_sweep = time.monotonic()
    try:
        while True:
            if engine is not None and time.monotonic() >= next_sweep:
                run_sweep(engine)
                next_sweep = time.monotonic() + args.sweep_interval
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down metrics server")


if __name__ == "__main__":
    main()
