"""
Budget Ledger CLI

Command-line interface for the Budget Ledger.
Provides commands for budget codes, approvals, revisions, transfers,
requisitions, reservations and monitoring.

Usage:
    budget-ledger init --db ledger.db --approvers approvers.json
    budget-ledger code create --code IT-OPS-2025 --name "IT Operations" ...
    budget-ledger code approve --id <code> --actor head@example.com
    budget-ledger reserve --code-id <code> --requisition-id REQ-1 --amount 400000
    budget-ledger forecast --id <code>
    budget-ledger sweep
    budget-ledger dashboard
"""

import json
from decimal import Decimal
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from budget_ledger.approval.resolver import ApproverDirectory, DirectoryApproverResolver
from budget_ledger.engine import BudgetEngine
from budget_ledger.kernel.logging import configure_logging

# Configure logging to stderr (avoids polluting stdout for JSON output)
configure_logging(json_output=False, log_level="WARNING")

app = typer.Typer(
    name="budget-ledger",
    help="Budget Ledger - Budget codes with multi-level approval",
    add_completion=False,
)

# Sub-apps
code_app = typer.Typer(help="Budget code commands")
revision_app = typer.Typer(help="Budget revision commands")
transfer_app = typer.Typer(help="Budget transfer commands")
requisition_app = typer.Typer(help="Requisition approval commands")

app.add_typer(code_app, name="code")
app.add_typer(revision_app, name="revision")
app.add_typer(transfer_app, name="transfer")
app.add_typer(requisition_app, name="requisition")

# Global state
DEFAULT_DB = Path(".budget-ledger.db")
DEFAULT_APPROVERS = Path("approvers.json")

DbOption = Annotated[Optional[Path], typer.Option("--db", help="Database path")]
ApproversOption = Annotated[
    Optional[Path], typer.Option("--approvers", help="Approver directory (JSON)")
]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]

EXAMPLE_DIRECTORY = {
    "department_heads": {
        "IT": {
            "name": "IT Department Head",
            "role": "department_head",
            "email": "it.head@example.com",
            "department": "IT",
        },
        "Operations": {
            "name": "Operations Department Head",
            "role": "department_head",
            "email": "ops.head@example.com",
            "department": "Operations",
        },
    },
    "executives": {
        "head_of_business": {
            "name": "Head of Business",
            "role": "head_of_business",
            "email": "business.head@example.com",
            "department": "Executive",
        },
        "president": {
            "name": "President",
            "role": "president",
            "email": "president@example.com",
            "department": "Executive",
        },
        "finance": {
            "name": "Finance Officer",
            "role": "finance",
            "email": "finance@example.com",
            "department": "Finance",
        },
    },
}


def get_engine(db_path: Optional[Path] = None, approvers: Optional[Path] = None) -> BudgetEngine:
    """Get BudgetEngine instance"""
    db = db_path or DEFAULT_DB
    directory_path = approvers or DEFAULT_APPROVERS
    if not db.exists():
        typer.echo(f"Error: Database not found: {db}", err=True)
        typer.echo(f"Run 'budget-ledger init --db {db}' to initialize", err=True)
        raise typer.Exit(1)
    if not directory_path.exists():
        typer.echo(f"Error: Approver directory not found: {directory_path}", err=True)
        raise typer.Exit(1)
    directory = ApproverDirectory.from_json_file(directory_path)
    return BudgetEngine(str(db), DirectoryApproverResolver(directory))


def resolve_code_id(engine: BudgetEngine, value: str) -> str:
    """Accept either a budget code id or a code string"""
    if engine.code_registry.get(value):
        return value
    found = engine.code_registry.get_by_code(value)
    if found is None:
        typer.echo(f"Error: Budget code not found: {value}", err=True)
        raise typer.Exit(1)
    return found["budget_code_id"]


def echo_json(data: object) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


# Initialization command


@app.command()
def init(
    db: Annotated[Path, typer.Option(help="Database path")] = DEFAULT_DB,
    approvers: Annotated[
        Path, typer.Option(help="Approver directory to create if missing")
    ] = DEFAULT_APPROVERS,
) -> None:
    """Initialize a new ledger database"""
    if db.exists():
        typer.echo(f"Error: Database already exists: {db}", err=True)
        raise typer.Exit(1)

    if not approvers.exists():
        approvers.write_text(json.dumps(EXAMPLE_DIRECTORY, indent=2), encoding="utf-8")
        typer.echo(f"✓ Wrote example approver directory: {approvers}")

    directory = ApproverDirectory.from_json_file(approvers)
    BudgetEngine(str(db), DirectoryApproverResolver(directory))
    typer.echo(f"✓ Initialized ledger database: {db}")


# Budget code commands


@code_app.command("create")
def code_create(
    code: Annotated[str, typer.Option("--code", help="Unique code, e.g. IT-OPS-2025")],
    name: Annotated[str, typer.Option("--name", help="Display name")],
    department: Annotated[str, typer.Option("--department", help="Owning department")],
    budget: Annotated[str, typer.Option("--budget", help="Budget amount")],
    fiscal_year: Annotated[int, typer.Option("--fiscal-year", help="Fiscal year")],
    start_date: Annotated[str, typer.Option("--start-date", help="YYYY-MM-DD")],
    budget_type: Annotated[str, typer.Option("--type", help="OPEX, CAPEX, PROJECT, OPERATIONAL")] = "OPEX",
    period: Annotated[str, typer.Option("--period", help="monthly, quarterly, yearly, project")] = "yearly",
    end_date: Annotated[Optional[str], typer.Option("--end-date", help="YYYY-MM-DD")] = None,
    owner: Annotated[Optional[str], typer.Option("--owner", help="Budget owner")] = None,
    description: Annotated[str, typer.Option("--description")] = "",
    actor_id: Annotated[str, typer.Option("--actor", help="Creator's email")] = "system",
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Create a budget code (pending approval)"""
    engine = get_engine(db, approvers)

    created = engine.create_budget_code(
        {
            "code": code,
            "name": name,
            "department": department,
            "budget_type": budget_type,
            "budget_period": period,
            "fiscal_year": fiscal_year,
            "budget": budget,
            "start_date": start_date,
            "end_date": end_date,
            "budget_owner": owner,
            "description": description,
        },
        actor_id=actor_id,
    )

    typer.echo(f"✓ Created budget code: {created['code']} ({created['budget_code_id']})")
    typer.echo(f"  Budget: {created['budget']}")
    typer.echo(f"  Status: {created['status']}")
    chain = created["approval_chain"]
    typer.echo(f"  Approval levels: {len(chain['steps'])}")
    for step in chain["steps"]:
        typer.echo(f"    {step['level']}. {step['approver']['name']} <{step['approver']['email']}>")


@code_app.command("list")
def code_list(
    status: Annotated[Optional[str], typer.Option("--status", help="Filter by status")] = None,
    department: Annotated[Optional[str], typer.Option("--department")] = None,
    fiscal_year: Annotated[Optional[int], typer.Option("--fiscal-year")] = None,
    db: DbOption = None,
    approvers: ApproversOption = None,
    json_output: JsonOption = False,
) -> None:
    """List budget codes"""
    engine = get_engine(db, approvers)
    codes = engine.list_budget_codes(
        status=status, department=department, fiscal_year=fiscal_year
    )

    if json_output:
        echo_json(codes)
        return

    if not codes:
        typer.echo("No budget codes found")
        return

    typer.echo(f"Budget Codes ({len(codes)}):")
    for c in codes:
        typer.echo(
            f"  {c['code']} [{c['status']}] {c['name']}: "
            f"remaining {c['remaining']} of {c['budget']} ({c['utilization_percentage']}%)"
        )


@code_app.command("show")
def code_show(
    budget_code: Annotated[str, typer.Option("--id", help="Budget code id or code")],
    db: DbOption = None,
    approvers: ApproversOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show budget code details"""
    engine = get_engine(db, approvers)
    c = engine.get_budget_code(resolve_code_id(engine, budget_code))

    if json_output:
        echo_json(c)
        return

    typer.echo(f"\nBudget Code: {c['code']} ({c['budget_code_id']})")
    typer.echo(f"  Name: {c['name']}")
    typer.echo(f"  Department: {c['department']}")
    typer.echo(f"  Status: {c['status']}")
    typer.echo(f"  Budget: {c['budget']}")
    typer.echo(f"  Used: {c['used']}")
    typer.echo(f"  Reserved: {c['reserved']}")
    typer.echo(f"  Remaining: {c['remaining']}")
    typer.echo(f"  Utilization: {c['utilization_percentage']}%")

    open_allocations = [a for a in c["allocations"].values() if a["status"] == "allocated"]
    if open_allocations:
        typer.echo(f"\n  Open Reservations ({len(open_allocations)}):")
        for a in open_allocations:
            typer.echo(f"    {a['allocation_id']}: {a['requisition_id']} {a['amount']}")

    if c["budget_history"]:
        typer.echo(f"\n  Budget History ({len(c['budget_history'])}):")
        for h in c["budget_history"]:
            typer.echo(f"    {h['previous_budget']} → {h['new_budget']} ({h['source']}): {h['reason']}")


@code_app.command("approve")
def code_approve(
    budget_code: Annotated[str, typer.Option("--id", help="Budget code id or code")],
    actor_id: Annotated[str, typer.Option("--actor", help="Approver email")],
    decision: Annotated[str, typer.Option("--decision", help="approved or rejected")] = "approved",
    comments: Annotated[Optional[str], typer.Option("--comments")] = None,
    level: Annotated[Optional[int], typer.Option("--level")] = None,
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Decide on a budget code's current approval level"""
    engine = get_engine(db, approvers)
    result = engine.decide_budget_code(
        resolve_code_id(engine, budget_code), actor_id, decision, comments, level
    )

    outcome = result["outcome"]
    typer.echo(f"✓ Level {outcome['level']} {outcome['decision']} by {actor_id}")
    typer.echo(f"  Chain: {outcome['state']['kind']}")
    typer.echo(f"  Budget code status: {result['budget_code']['status']}")


@code_app.command("update")
def code_update(
    budget_code: Annotated[str, typer.Option("--id", help="Budget code id or code")],
    name: Annotated[Optional[str], typer.Option("--name")] = None,
    description: Annotated[Optional[str], typer.Option("--description")] = None,
    owner: Annotated[Optional[str], typer.Option("--owner")] = None,
    end_date: Annotated[Optional[str], typer.Option("--end-date", help="YYYY-MM-DD")] = None,
    actor_id: Annotated[str, typer.Option("--actor")] = "system",
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Update non-monetary fields of a budget code"""
    engine = get_engine(db, approvers)
    changes = {
        key: value
        for key, value in {
            "name": name,
            "description": description,
            "budget_owner": owner,
            "end_date": end_date,
        }.items()
        if value is not None
    }
    c = engine.update_budget_code(resolve_code_id(engine, budget_code), changes, actor_id)
    typer.echo(f"✓ Updated budget code: {c['code']}")


@code_app.command("suspend")
def code_suspend(
    budget_code: Annotated[str, typer.Option("--id", help="Budget code id or code")],
    reason: Annotated[str, typer.Option("--reason")],
    actor_id: Annotated[str, typer.Option("--actor")] = "system",
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Suspend an active budget code"""
    engine = get_engine(db, approvers)
    c = engine.suspend_budget_code(resolve_code_id(engine, budget_code), reason, actor_id)
    typer.echo(f"✓ Suspended budget code: {c['code']}")


@code_app.command("reactivate")
def code_reactivate(
    budget_code: Annotated[str, typer.Option("--id", help="Budget code id or code")],
    actor_id: Annotated[str, typer.Option("--actor")] = "system",
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Reactivate a suspended budget code"""
    engine = get_engine(db, approvers)
    c = engine.reactivate_budget_code(resolve_code_id(engine, budget_code), actor_id)
    typer.echo(f"✓ Reactivated budget code: {c['code']}")


@code_app.command("delete")
def code_delete(
    budget_code: Annotated[str, typer.Option("--id", help="Budget code id or code")],
    actor_id: Annotated[str, typer.Option("--actor")] = "system",
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Delete a budget code nothing was committed against"""
    engine = get_engine(db, approvers)
    engine.delete_budget_code(resolve_code_id(engine, budget_code), actor_id)
    typer.echo(f"✓ Deleted budget code: {budget_code}")


@code_app.command("history")
def code_history(
    budget_code: Annotated[str, typer.Option("--id", help="Budget code id or code")],
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Show the approval history of a budget code"""
    engine = get_engine(db, approvers)
    steps = engine.approval_history("budget_code", resolve_code_id(engine, budget_code))
    for step in steps:
        when = f"{step['action_date']} {step['action_time']}" if step["action_date"] else "-"
        typer.echo(
            f"  Level {step['level']}: {step['approver']['name']} [{step['status']}] {when}"
        )
        if step.get("comments"):
            typer.echo(f"    {step['comments']}")


# Revision commands


@revision_app.command("request")
def revision_request(
    budget_code: Annotated[str, typer.Option("--code-id", help="Budget code id or code")],
    amount: Annotated[str, typer.Option("--amount", help="Requested new budget")],
    reason: Annotated[str, typer.Option("--reason")],
    actor_id: Annotated[str, typer.Option("--actor")] = "system",
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Request a budget revision"""
    engine = get_engine(db, approvers)
    revision = engine.request_revision(
        resolve_code_id(engine, budget_code),
        {"requested_budget": amount, "reason": reason},
        actor_id,
    )
    typer.echo(f"✓ Requested revision: {revision['revision_id']}")
    typer.echo(f"  {revision['previous_budget']} → {revision['requested_budget']}")


@revision_app.command("decide")
def revision_decide(
    revision_id: Annotated[str, typer.Option("--id", help="Revision ID")],
    actor_id: Annotated[str, typer.Option("--actor", help="Approver email")],
    decision: Annotated[str, typer.Option("--decision")] = "approved",
    comments: Annotated[Optional[str], typer.Option("--comments")] = None,
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Decide on a revision's current approval level"""
    engine = get_engine(db, approvers)
    result = engine.decide_revision(revision_id, actor_id, decision, comments)
    typer.echo(f"✓ Revision {result['revision']['status']} (chain: {result['outcome']['state']['kind']})")


@revision_app.command("list")
def revision_list(
    pending: Annotated[bool, typer.Option("--pending", help="Only pending")] = False,
    db: DbOption = None,
    approvers: ApproversOption = None,
    json_output: JsonOption = False,
) -> None:
    """List budget revisions"""
    engine = get_engine(db, approvers)
    revisions = engine.pending_revisions() if pending else engine.list_revisions()
    if json_output:
        echo_json(revisions)
        return
    typer.echo(f"Revisions ({len(revisions)}):")
    for r in revisions:
        typer.echo(
            f"  {r['revision_id']} [{r['status']}] "
            f"{r['previous_budget']} → {r['requested_budget']}"
        )


# Transfer commands


@transfer_app.command("request")
def transfer_request(
    from_code: Annotated[str, typer.Option("--from", help="Source code id or code")],
    to_code: Annotated[str, typer.Option("--to", help="Target code id or code")],
    amount: Annotated[str, typer.Option("--amount")],
    reason: Annotated[str, typer.Option("--reason")],
    actor_id: Annotated[str, typer.Option("--actor")] = "system",
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Request a transfer between two budget codes"""
    engine = get_engine(db, approvers)
    transfer = engine.request_transfer(
        {
            "from_budget_code_id": resolve_code_id(engine, from_code),
            "to_budget_code_id": resolve_code_id(engine, to_code),
            "amount": amount,
            "reason": reason,
        },
        actor_id,
    )
    typer.echo(f"✓ Requested transfer: {transfer['transfer_id']}")
    typer.echo(f"  Amount: {transfer['amount']}")


@transfer_app.command("decide")
def transfer_decide(
    transfer_id: Annotated[str, typer.Option("--id", help="Transfer ID")],
    actor_id: Annotated[str, typer.Option("--actor", help="Approver email")],
    decision: Annotated[str, typer.Option("--decision")] = "approved",
    comments: Annotated[Optional[str], typer.Option("--comments")] = None,
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Decide on a transfer's current approval level"""
    engine = get_engine(db, approvers)
    result = engine.decide_transfer(transfer_id, actor_id, decision, comments)
    typer.echo(f"✓ Transfer {result['transfer']['status']} (chain: {result['outcome']['state']['kind']})")


@transfer_app.command("cancel")
def transfer_cancel(
    transfer_id: Annotated[str, typer.Option("--id", help="Transfer ID")],
    actor_id: Annotated[str, typer.Option("--actor", help="Requester email")],
    reason: Annotated[str, typer.Option("--reason")] = "Cancelled by requester",
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Cancel a pending transfer (requester only)"""
    engine = get_engine(db, approvers)
    engine.cancel_transfer(transfer_id, actor_id, reason)
    typer.echo(f"✓ Cancelled transfer: {transfer_id}")


@transfer_app.command("list")
def transfer_list(
    status: Annotated[Optional[str], typer.Option("--status")] = None,
    db: DbOption = None,
    approvers: ApproversOption = None,
    json_output: JsonOption = False,
) -> None:
    """List budget transfers"""
    engine = get_engine(db, approvers)
    transfers = engine.list_transfers(status=status)
    if json_output:
        echo_json(transfers)
        return
    typer.echo(f"Transfers ({len(transfers)}):")
    for t in transfers:
        typer.echo(f"  {t['transfer_id']} [{t['status']}] {t['amount']}")


@transfer_app.command("stats")
def transfer_stats(
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Show transfer statistics"""
    engine = get_engine(db, approvers)
    echo_json(engine.transfer_statistics())


# Requisition commands


@requisition_app.command("submit")
def requisition_submit(
    budget_code: Annotated[str, typer.Option("--code-id", help="Budget code id or code")],
    requisition_id: Annotated[str, typer.Option("--requisition-id")],
    amount: Annotated[str, typer.Option("--amount")],
    description: Annotated[str, typer.Option("--description")] = "",
    actor_id: Annotated[str, typer.Option("--actor")] = "system",
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Submit a requisition for approval (funds reserved on final approval)"""
    engine = get_engine(db, approvers)
    requisition = engine.submit_requisition(
        {
            "budget_code_id": resolve_code_id(engine, budget_code),
            "requisition_id": requisition_id,
            "amount": amount,
            "description": description,
        },
        actor_id,
    )
    typer.echo(f"✓ Submitted requisition: {requisition['requisition_id']}")


@requisition_app.command("decide")
def requisition_decide(
    requisition_id: Annotated[str, typer.Option("--id", help="Requisition ID")],
    actor_id: Annotated[str, typer.Option("--actor", help="Approver email")],
    decision: Annotated[str, typer.Option("--decision")] = "approved",
    comments: Annotated[Optional[str], typer.Option("--comments")] = None,
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Decide on a requisition's current approval level"""
    engine = get_engine(db, approvers)
    result = engine.decide_requisition(requisition_id, actor_id, decision, comments)
    typer.echo(f"✓ Requisition chain: {result['outcome']['state']['kind']}")


# Ledger commands


@app.command()
def reserve(
    budget_code: Annotated[str, typer.Option("--code-id", help="Budget code id or code")],
    requisition_id: Annotated[str, typer.Option("--requisition-id")],
    amount: Annotated[str, typer.Option("--amount")],
    actor_id: Annotated[str, typer.Option("--actor")] = "system",
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Reserve funds on a budget code"""
    engine = get_engine(db, approvers)
    budget_code_id = resolve_code_id(engine, budget_code)
    allocation = engine.reserve(budget_code_id, requisition_id, Decimal(amount), actor_id)
    code = engine.get_budget_code(budget_code_id)
    typer.echo(f"✓ Reserved {allocation['amount']}: {allocation['allocation_id']}")
    typer.echo(f"  Remaining: {code['remaining']}")


@app.command()
def spend(
    budget_code: Annotated[str, typer.Option("--code-id", help="Budget code id or code")],
    allocation_id: Annotated[str, typer.Option("--allocation-id")],
    actor_id: Annotated[str, typer.Option("--actor")] = "system",
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Convert a reservation into spend"""
    engine = get_engine(db, approvers)
    allocation = engine.spend(resolve_code_id(engine, budget_code), allocation_id, actor_id)
    typer.echo(f"✓ Spent {allocation['amount']}: {allocation['allocation_id']}")


@app.command()
def release(
    budget_code: Annotated[str, typer.Option("--code-id", help="Budget code id or code")],
    allocation_id: Annotated[Optional[str], typer.Option("--allocation-id")] = None,
    requisition_id: Annotated[Optional[str], typer.Option("--requisition-id")] = None,
    reason: Annotated[str, typer.Option("--reason")] = "released",
    actor_id: Annotated[str, typer.Option("--actor")] = "system",
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Release a reservation by allocation or requisition id"""
    if (allocation_id is None) == (requisition_id is None):
        typer.echo("Error: give exactly one of --allocation-id or --requisition-id", err=True)
        raise typer.Exit(1)

    engine = get_engine(db, approvers)
    budget_code_id = resolve_code_id(engine, budget_code)
    if allocation_id:
        allocation = engine.release(budget_code_id, allocation_id, reason, actor_id)
    else:
        allocation = engine.release_requisition(budget_code_id, requisition_id, reason, actor_id)
    typer.echo(f"✓ Released {allocation['amount']}: {allocation['allocation_id']}")


@app.command()
def sweep(
    max_age_days: Annotated[
        Optional[int], typer.Option("--max-age-days", help="Override the stale window")
    ] = None,
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Release stale reservations and expire ended codes"""
    engine = get_engine(db, approvers)
    report = engine.sweep_stale_reservations(max_age_days)

    typer.echo(f"✓ {report.summary()}")
    for result in report.results:
        typer.echo(f"  {result.code}: released {result.released}, skipped {result.skipped}")


@app.command()
def forecast(
    budget_code: Annotated[str, typer.Option("--id", help="Budget code id or code")],
    db: DbOption = None,
    approvers: ApproversOption = None,
    json_output: JsonOption = False,
) -> None:
    """Forecast how long a budget code will last"""
    engine = get_engine(db, approvers)
    f = engine.forecast(resolve_code_id(engine, budget_code))

    if json_output:
        echo_json(f.model_dump(mode="json"))
        return

    typer.echo(f"\nForecast: {f.code}")
    typer.echo(f"  Remaining: {f.current_remaining}")
    typer.echo(f"  Average monthly burn: {f.average_monthly_burn}")
    if f.projected_exhaustion_date is None:
        typer.echo("  Projected duration: sufficient for foreseeable future")
    else:
        typer.echo(f"  Projected duration: {f.projected_months} months")
        typer.echo(f"  Projected exhaustion: {f.projected_exhaustion_date.isoformat()}")
    typer.echo(f"  Status: {f.status.value.upper()}")
    typer.echo(f"  {f.recommendation}")


@app.command()
def dashboard(
    db: DbOption = None,
    approvers: ApproversOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show the portfolio dashboard"""
    engine = get_engine(db, approvers)
    d = engine.dashboard()

    if json_output:
        echo_json(d)
        return

    typer.echo("\n=== Budget Dashboard ===\n")
    typer.echo(f"Active codes: {d['active_codes']}")
    typer.echo(f"Total budget: {d['total_budget']}")
    typer.echo(f"Used: {d['total_used']}  Reserved: {d['total_reserved']}")
    typer.echo(f"Remaining: {d['total_remaining']}")
    typer.echo(f"Overall utilization: {d['overall_utilization']}%")
    typer.echo(f"Critical: {d['critical_count']}  Warning: {d['warning_count']}")

    if d["alerts"]:
        typer.echo("\n⚠️  Alerts:")
        for alert in d["alerts"]:
            typer.echo(f"  - {alert['message']}")


@app.command()
def pending(
    actor_id: Annotated[
        Optional[str], typer.Option("--actor", help="Only items awaiting this approver")
    ] = None,
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """List items awaiting approval"""
    engine = get_engine(db, approvers)
    items = engine.pending_approvals(email=actor_id)

    if not items:
        typer.echo("Nothing awaiting approval")
        return

    typer.echo(f"Awaiting approval ({len(items)}):")
    for item in items:
        typer.echo(
            f"  {item['entity_type']} {item['entity_id']}: level "
            f"{item['current_level']}/{item['total_levels']} "
            f"→ {item['current_approver']['email']}"
        )


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port")] = 8080,
    json_logs: Annotated[bool, typer.Option("--json-logs")] = False,
    db: DbOption = None,
    approvers: ApproversOption = None,
) -> None:
    """Run the HTTP+JSON server"""
    from budget_ledger.http_server import initialize_server, run_server

    configure_logging(json_output=json_logs, log_level="INFO")
    engine = get_engine(db, approvers)
    initialize_server(engine)
    run_server(host=host, port=port)


def main() -> None:
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
