"""
HTTP+JSON server for the Budget Ledger.

Exposes budget codes, approvals, revisions, transfers, requisitions,
reservations and forecasts, plus liveness and readiness probes.

Every response body is {"success": bool, "message": str, "data": ...}.
The acting identity comes from the X-User-Email header; authentication
happens in front of this service.
"""

import sqlite3
from pathlib import Path
from typing import Any

from flask import Flask, jsonify, request
from flask.typing import ResponseReturnValue
from werkzeug.exceptions import HTTPException

from budget_ledger.approval.models import EntityType
from budget_ledger.kernel.errors import (
    AlreadyDecided,
    ConstraintViolation,
    InsufficientBudget,
    InvalidState,
    LedgerError,
    NotCurrentApprover,
    NotFound,
    NotRequester,
    StreamVersionConflict,
    ValidationError,
)
from budget_ledger.kernel.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

app = Flask(__name__)

# Global state - set by initialize_server()
_db_path: Path | None = None
_engine: Any = None  # BudgetEngine

USER_HEADER = "X-User-Email"

ERROR_STATUS: list[tuple[type[LedgerError], int]] = [
    (ValidationError, 400),
    (NotCurrentApprover, 403),
    (NotRequester, 403),
    (NotFound, 404),
    (InvalidState, 409),
    (AlreadyDecided, 409),
    (StreamVersionConflict, 409),
    (InsufficientBudget, 422),
    (ConstraintViolation, 422),
]


def initialize_server(engine: Any, db_path: str | Path | None = None) -> None:
    """
    Initialize the server with a BudgetEngine.

    Args:
        engine: BudgetEngine serving every request
        db_path: Database path for readiness checks (defaults to the engine's)
    """
    global _db_path, _engine
    _engine = engine
    _db_path = Path(db_path) if db_path else Path(engine.sqlite_path)
    logger.info("HTTP server initialized", db_path=str(_db_path))


def status_for(error: LedgerError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def respond(data: Any = None, message: str = "OK", status: int = 200) -> ResponseReturnValue:
    return jsonify({"success": status < 400, "message": message, "data": data}), status


def engine() -> Any:
    if _engine is None:
        raise LedgerError("Server not initialized")
    return _engine


def current_user(required: bool = True) -> str | None:
    email = (request.headers.get(USER_HEADER) or "").strip()
    if not email and required:
        raise ValidationError(f"{USER_HEADER} header is required", field=USER_HEADER)
    return email or None


def body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def query_bool(name: str) -> bool | None:
    value = request.args.get(name)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes")


def max_age_days() -> int | None:
    value = body().get("max_age_days")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError("max_age_days must be a non-negative integer", field="max_age_days")
    return value


def query_int(name: str) -> int | None:
    value = request.args.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", field=name) from None


@app.errorhandler(LedgerError)
def handle_ledger_error(error: LedgerError) -> ResponseReturnValue:
    status = status_for(error)
    if status >= 500:
        logger.error("Request failed", path=request.path, error=str(error), exc_info=True)
    else:
        logger.info("Request rejected", path=request.path, code=error.code, error=str(error))
    return respond({"code": error.code}, str(error), status)


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException) -> ResponseReturnValue:
    code = (error.name or "error").lower().replace(" ", "_")
    return respond({"code": code}, error.description or error.name, error.code or 500)


@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception) -> ResponseReturnValue:
    logger.error("Unhandled error", path=request.path, error=str(error), exc_info=True)
    return respond({"code": "internal_error"}, "Internal server error", 500)


@app.before_request
def bind_correlation_id() -> None:
    correlation_id = request.headers.get("X-Correlation-ID")
    if correlation_id:
        set_correlation_id(correlation_id)


# ========== Budget Codes ==========


@app.route("/budget-codes", methods=["POST"])
def create_budget_code() -> ResponseReturnValue:
    code = engine().create_budget_code(body(), actor_id=current_user())
    return respond(code, "Budget code created and submitted for approval", 201)


@app.route("/budget-codes", methods=["GET"])
def list_budget_codes() -> ResponseReturnValue:
    codes = engine().list_budget_codes(
        status=request.args.get("status"),
        department=request.args.get("department"),
        fiscal_year=query_int("fiscal_year"),
        active=query_bool("active"),
    )
    return respond(codes, f"{len(codes)} budget codes")


@app.route("/budget-codes/pending-approvals", methods=["GET"])
def pending_code_approvals() -> ResponseReturnValue:
    email = None if request.args.get("scope") == "all" else current_user()
    pending = engine().pending_approvals(email=email, entity_type=EntityType.BUDGET_CODE)
    return respond(pending, f"{len(pending)} budget codes awaiting approval")


@app.route("/budget-codes/dashboard", methods=["GET"])
def dashboard() -> ResponseReturnValue:
    return respond(engine().dashboard())


@app.route("/budget-codes/revisions/pending", methods=["GET"])
def pending_revisions() -> ResponseReturnValue:
    revisions = engine().pending_revisions()
    return respond(revisions, f"{len(revisions)} pending revisions")


@app.route("/budget-codes/<budget_code_id>", methods=["GET"])
def get_budget_code(budget_code_id: str) -> ResponseReturnValue:
    return respond(engine().get_budget_code(budget_code_id))


@app.route("/budget-codes/<budget_code_id>", methods=["PUT"])
def update_budget_code(budget_code_id: str) -> ResponseReturnValue:
    code = engine().update_budget_code(budget_code_id, body(), actor_id=current_user())
    return respond(code, "Budget code updated")


@app.route("/budget-codes/<budget_code_id>", methods=["DELETE"])
def delete_budget_code(budget_code_id: str) -> ResponseReturnValue:
    engine().delete_budget_code(budget_code_id, actor_id=current_user())
    return respond(None, "Budget code deleted")


@app.route("/budget-codes/<budget_code_id>/approve", methods=["POST"])
def decide_budget_code(budget_code_id: str) -> ResponseReturnValue:
    data = body()
    result = engine().decide_budget_code(
        budget_code_id,
        current_user(),
        data.get("decision", ""),
        comments=data.get("comments"),
        level=data.get("level"),
    )
    return respond(result, f"Budget code {result['outcome']['decision']}")


@app.route("/budget-codes/<budget_code_id>/approval-history", methods=["GET"])
def code_approval_history(budget_code_id: str) -> ResponseReturnValue:
    history = engine().approval_history(EntityType.BUDGET_CODE, budget_code_id)
    return respond(history)


@app.route("/budget-codes/<budget_code_id>/status", methods=["POST"])
def change_code_status(budget_code_id: str) -> ResponseReturnValue:
    code = engine().change_budget_code_status(
        budget_code_id, body(), actor_id=current_user()
    )
    return respond(code, f"Budget code is now {code['status']}")


@app.route("/budget-codes/<budget_code_id>/forecast", methods=["GET"])
def forecast(budget_code_id: str) -> ResponseReturnValue:
    return respond(engine().forecast(budget_code_id).model_dump(mode="json"))


# ========== Revisions ==========


@app.route("/budget-codes/<budget_code_id>/revisions", methods=["POST"])
def request_revision(budget_code_id: str) -> ResponseReturnValue:
    revision = engine().request_revision(budget_code_id, body(), actor_id=current_user())
    return respond(revision, "Budget revision submitted for approval", 201)


@app.route("/budget-codes/<budget_code_id>/revisions", methods=["GET"])
def list_code_revisions(budget_code_id: str) -> ResponseReturnValue:
    revisions = engine().list_revisions(
        budget_code_id=budget_code_id, status=request.args.get("status")
    )
    return respond(revisions)


@app.route(
    "/budget-codes/<budget_code_id>/revisions/<revision_id>/<action>", methods=["POST"]
)
def decide_revision(budget_code_id: str, revision_id: str, action: str) -> ResponseReturnValue:
    decision = _decision_for(action)
    data = body()
    result = engine().decide_revision(
        revision_id,
        current_user(),
        decision,
        comments=data.get("comments"),
        level=data.get("level"),
        budget_code_id=budget_code_id,
    )
    return respond(result, f"Budget revision {decision}")


# ========== Transfers ==========


@app.route("/budget-transfers", methods=["POST"])
def request_transfer() -> ResponseReturnValue:
    transfer = engine().request_transfer(body(), actor_id=current_user())
    return respond(transfer, "Budget transfer submitted for approval", 201)


@app.route("/budget-transfers", methods=["GET"])
def list_transfers() -> ResponseReturnValue:
    transfers = engine().list_transfers(
        status=request.args.get("status"),
        budget_code_id=request.args.get("budget_code_id"),
    )
    return respond(transfers, f"{len(transfers)} transfers")


@app.route("/budget-transfers/pending", methods=["GET"])
def pending_transfers() -> ResponseReturnValue:
    transfers = engine().pending_transfers()
    return respond(transfers, f"{len(transfers)} pending transfers")


@app.route("/budget-transfers/statistics", methods=["GET"])
def transfer_statistics() -> ResponseReturnValue:
    return respond(engine().transfer_statistics())


@app.route("/budget-transfers/<transfer_id>", methods=["GET"])
def get_transfer(transfer_id: str) -> ResponseReturnValue:
    return respond(engine().get_transfer(transfer_id))


@app.route("/budget-transfers/<transfer_id>/cancel", methods=["POST"])
def cancel_transfer(transfer_id: str) -> ResponseReturnValue:
    reason = body().get("reason") or "Cancelled by requester"
    transfer = engine().cancel_transfer(transfer_id, current_user(), reason)
    return respond(transfer, "Budget transfer cancelled")


@app.route("/budget-transfers/<transfer_id>/<action>", methods=["POST"])
def decide_transfer(transfer_id: str, action: str) -> ResponseReturnValue:
    decision = _decision_for(action)
    data = body()
    result = engine().decide_transfer(
        transfer_id,
        current_user(),
        decision,
        comments=data.get("comments"),
        level=data.get("level"),
    )
    return respond(result, f"Budget transfer {decision}")


# ========== Reservations ==========


@app.route("/budget-codes/<budget_code_id>/reserve", methods=["POST"])
def reserve(budget_code_id: str) -> ResponseReturnValue:
    data = body()
    if "requisition_id" not in data or "amount" not in data:
        raise ValidationError("requisition_id and amount are required")
    allocation = engine().reserve(
        budget_code_id,
        str(data["requisition_id"]),
        data["amount"],
        actor_id=current_user(required=False),
    )
    return respond(allocation, "Funds reserved", 201)


@app.route(
    "/budget-codes/<budget_code_id>/allocations/<allocation_id>/spend", methods=["POST"]
)
def spend(budget_code_id: str, allocation_id: str) -> ResponseReturnValue:
    allocation = engine().spend(
        budget_code_id, allocation_id, actor_id=current_user(required=False)
    )
    return respond(allocation, "Reservation spent")


@app.route("/budget-codes/<budget_code_id>/release/<requisition_id>", methods=["POST"])
def release_requisition(budget_code_id: str, requisition_id: str) -> ResponseReturnValue:
    reason = body().get("reason") or "requisition cancelled"
    allocation = engine().release_requisition(
        budget_code_id, requisition_id, reason, actor_id=current_user(required=False)
    )
    return respond(allocation, "Reservation released")


@app.route("/budget-codes/<budget_code_id>/release-stale", methods=["POST"])
def release_stale(budget_code_id: str) -> ResponseReturnValue:
    result = engine().release_stale(budget_code_id, max_age_days())
    data = result.model_dump(mode="json")
    data["released_count"] = result.released_count
    return respond(data, f"{result.released_count} stale reservations released")


@app.route("/maintenance/sweep", methods=["POST"])
def sweep() -> ResponseReturnValue:
    report = engine().sweep_stale_reservations(max_age_days())
    data = report.model_dump(mode="json")
    data["total_released"] = report.total_released
    data["total_skipped"] = report.total_skipped
    return respond(data, report.summary())


# ========== Requisitions ==========


@app.route("/requisitions", methods=["POST"])
def submit_requisition() -> ResponseReturnValue:
    requisition = engine().submit_requisition(body(), actor_id=current_user())
    return respond(requisition, "Requisition submitted for approval", 201)


@app.route("/requisitions/<requisition_id>", methods=["GET"])
def get_requisition(requisition_id: str) -> ResponseReturnValue:
    return respond(engine().get_requisition(requisition_id))


@app.route("/requisitions/<requisition_id>/<action>", methods=["POST"])
def decide_requisition(requisition_id: str, action: str) -> ResponseReturnValue:
    decision = _decision_for(action)
    data = body()
    result = engine().decide_requisition(
        requisition_id,
        current_user(),
        decision,
        comments=data.get("comments"),
        level=data.get("level"),
    )
    return respond(result, f"Requisition {decision}")


@app.route("/approvals/pending", methods=["GET"])
def my_pending_approvals() -> ResponseReturnValue:
    entity_type = request.args.get("entity_type")
    if entity_type is not None and entity_type not in {e.value for e in EntityType}:
        raise ValidationError(f"Unknown entity_type '{entity_type}'", field="entity_type")
    pending = engine().pending_approvals(email=current_user(), entity_type=entity_type)
    return respond(pending, f"{len(pending)} items awaiting your decision")


def _decision_for(action: str) -> str:
    if action == "approve":
        return "approved"
    if action == "reject":
        return "rejected"
    raise NotFound("Action", action)


# ========== Health ==========


@app.route("/health/live", methods=["GET"])
def liveness() -> ResponseReturnValue:
    """
    Liveness probe - checks if the process is running.

    Returns:
        200 while the process can answer at all
    """
    return respond({"status": "alive", "service": "budget-ledger"}, "alive")


@app.route("/health/ready", methods=["GET"])
def readiness() -> ResponseReturnValue:
    """
    Readiness probe - checks if the service is ready to accept requests.

    Checks:
    - Server was initialized with an engine
    - Database file exists
    - The event store answers a query

    Returns:
        200 if ready, 503 if not ready
    """
    if _engine is None or _db_path is None:
        logger.error("Readiness check failed: server not initialized")
        return respond({"status": "not_ready", "reason": "not_initialized"}, "not ready", 503)

    if not _db_path.exists():
        logger.error("Readiness check failed: DB file does not exist", db_path=str(_db_path))
        return respond(
            {"status": "not_ready", "reason": "database_file_not_found"}, "not ready", 503
        )

    try:
        facts = _engine.check_ready()
    except sqlite3.OperationalError as e:
        logger.error("Readiness check failed: DB operational error", error=str(e))
        return respond(
            {"status": "not_ready", "reason": "database_operational_error", "error": str(e)},
            "not ready",
            503,
        )

    logger.debug("Readiness check passed", **facts)
    return respond({"status": "ready", "database": "accessible", **facts}, "ready")


def run_server(host: str = "0.0.0.0", port: int = 8080, debug: bool = False) -> None:
    """
    Run the HTTP server.

    Args:
        host: Interface to bind (default: all)
        port: Port to listen on (default: 8080)
        debug: Enable Flask debug mode (default: False)
    """
    logger.info("Starting budget ledger HTTP server", host=host, port=port)
    app.run(host=host, port=port, debug=debug)
