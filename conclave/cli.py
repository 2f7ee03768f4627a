"""Conclave CLI: Typer + Rich terminal interface.

Commands: sessions, ledgers, gates, committee, config, workflows, sweep.
Every command opens the state database for one workflow instance,
loads it, performs the operation and closes it again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from conclave import __version__
from conclave.engine import WorkflowEngine
from conclave.errors import ConclaveError, ConfigurationError
from conclave.gate.phases import display_name
from conclave.registry import load_committee, load_engine_config
from conclave.schemas.gate import WorkflowPhase

console = Console()

T = TypeVar("T")

# ── App and sub-apps ─────────────────────────────────────────────

app = typer.Typer(
    name="conclave",
    help="Committee consensus and compliance gating for phased workflows.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

sessions_app = typer.Typer(
    name="sessions",
    help="Open, vote on and inspect decision sessions.",
    no_args_is_help=True,
)
app.add_typer(sessions_app, name="sessions")

ledgers_app = typer.Typer(
    name="ledgers",
    help="Inspect compliance ledgers.",
    no_args_is_help=True,
)
app.add_typer(ledgers_app, name="ledgers")

gates_app = typer.Typer(
    name="gates",
    help="Drive and inspect phase gates.",
    no_args_is_help=True,
)
app.add_typer(gates_app, name="gates")

committee_app = typer.Typer(
    name="committee",
    help="Show the committee roster.",
    no_args_is_help=True,
)
app.add_typer(committee_app, name="committee")

config_app = typer.Typer(
    name="config",
    help="Show engine configuration.",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")


@dataclass
class CliSettings:
    workflow_id: str
    db_path: str | None
    config_path: Path | None
    committee_path: Path | None


# ── Version callback ───────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"conclave {__version__}")
        raise typer.Exit()


# ── App Callback ────────────────────────────────────────────────


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    workflow: str = typer.Option(
        "default", "--workflow", "-w", help="Workflow instance id.",
    ),
    db: str = typer.Option(
        None, "--db", help="State database path (overrides the configured one).",
    ),
    config_file: Path = typer.Option(
        None, "--config", help="Engine config TOML (defaults.toml).",
    ),
    committee_file: Path = typer.Option(
        None, "--committee", help="Committee roster TOML (committee.toml).",
    ),
) -> None:
    """Conclave: committee consensus and compliance gating for phased workflows."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    ctx.obj = CliSettings(
        workflow_id=workflow,
        db_path=db,
        config_path=config_file,
        committee_path=committee_file,
    )


# ── Helpers ──────────────────────────────────────────────────────


def _settings(ctx: typer.Context) -> CliSettings:
    return ctx.find_object(CliSettings)


def _load_config(settings: CliSettings):
    """Load engine config, exit on error."""
    try:
        return load_engine_config(settings.config_path)
    except (FileNotFoundError, ValueError, ConfigurationError) as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(1) from None


def _load_committee(settings: CliSettings):
    """Load the committee roster, exit on error."""
    try:
        return load_committee(settings.committee_path)
    except (FileNotFoundError, ValueError, ConfigurationError) as e:
        console.print(f"[red]Error loading committee:[/red] {e}")
        raise typer.Exit(1) from None


def _with_engine(
    ctx: typer.Context, action: Callable[[WorkflowEngine], Awaitable[T]],
) -> T:
    """Run an action against a loaded engine, exit on engine errors."""
    settings = _settings(ctx)
    config = _load_config(settings)
    committee = _load_committee(settings)

    async def _run() -> T:
        engine = await WorkflowEngine.connect(
            settings.workflow_id, committee, config, db_path=settings.db_path,
        )
        try:
            return await action(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(_run())
    except ConclaveError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


def _status_style(status: str) -> str:
    """Return a Rich style string for a session or gate status."""
    return {
        "pending": "yellow",
        "approved": "bold green",
        "completed": "bold green",
        "rejected": "bold red",
        "failed": "bold red",
        "expired": "red",
        "cancelled": "dim",
        "blocked": "bold bright_red",
        "awaiting_approval": "yellow",
        "in_progress": "cyan",
        "pass": "bold green",
    }.get(str(status).lower(), "white")


def _styled(value: Any) -> Text:
    return Text(str(value).upper(), style=_status_style(str(value)))


# ── conclave workflows / sweep ───────────────────────────────────


@app.command()
def workflows(ctx: typer.Context) -> None:
    """List workflow instances with persisted state."""
    from conclave.persistence.database import close_db, init_db
    from conclave.persistence.store import list_workflows

    settings = _settings(ctx)
    config = _load_config(settings)

    async def _list() -> list[str]:
        db = await init_db(settings.db_path or config.state_db_path)
        try:
            return await list_workflows(db)
        finally:
            await close_db(db)

    ids = asyncio.run(_list())
    if not ids:
        console.print("[dim]No workflows found.[/dim]")
        return
    for workflow_id in ids:
        console.print(workflow_id)


@app.command()
def sweep(ctx: typer.Context) -> None:
    """Expire overdue decision sessions now."""

    async def _sweep(engine: WorkflowEngine) -> int:
        return len(await engine.sweep_expired())

    expired = _with_engine(ctx, _sweep)
    console.print(f"[green]Sweep complete:[/green] {expired} session(s) expired")


# ── conclave sessions ────────────────────────────────────────────


@sessions_app.command("list")
def sessions_list(
    ctx: typer.Context,
    active: bool = typer.Option(False, "--active", help="Only pending sessions"),
) -> None:
    """Show decision sessions."""

    async def _list(engine: WorkflowEngine):
        return engine.coordinator.list_sessions(include_history=not active)

    records = _with_engine(ctx, _list)
    if not records:
        console.print("[dim]No sessions found.[/dim]")
        return

    table = Table(title=f"Sessions ({len(records)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Target", max_width=40)
    table.add_column("Domain", style="dim")
    table.add_column("Status")
    table.add_column("Tally", justify="right")
    table.add_column("Deadline", style="dim")

    for record in records:
        tally = record.tally
        table.add_row(
            record.session_id,
            record.request.target or "-",
            record.request.domain,
            _styled(record.status),
            f"{tally.approve}/{tally.reject}/{tally.abstain} of {tally.eligible}",
            record.deadline.isoformat(timespec="seconds"),
        )
    console.print(table)


@sessions_app.command("show")
def sessions_show(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session ID"),
) -> None:
    """Show full session details."""

    async def _get(engine: WorkflowEngine):
        return engine.get_session_status(session_id)

    record = _with_engine(ctx, _get)
    _print_session(record)


@sessions_app.command("export")
def sessions_export(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session ID"),
    fmt: str = typer.Option(
        "markdown", "--format", "-f", help="Export format: json or markdown",
    ),
) -> None:
    """Export a session as JSON or Markdown."""
    from conclave.persistence.export import export_json, export_markdown

    if fmt not in ("json", "markdown"):
        console.print(f"[red]Invalid format:[/red] '{fmt}'. Choose json or markdown.")
        raise typer.Exit(1) from None

    async def _get(engine: WorkflowEngine):
        return engine.get_session_status(session_id)

    record = _with_engine(ctx, _get)
    text = export_json(record) if fmt == "json" else export_markdown(record)
    console.print(text, markup=False, highlight=False)


@sessions_app.command("request")
def sessions_request(
    ctx: typer.Context,
    target: str = typer.Option("", "--target", "-t", help="Phase or artifact under review"),
    domain: str = typer.Option(None, "--domain", "-d", help="Approver domain"),
    threshold: float = typer.Option(None, "--threshold", help="Approval fraction (0, 1]"),
    timeout: float = typer.Option(None, "--timeout", help="Seconds until expiry"),
    member: list[str] = typer.Option(None, "--member", "-m", help="Eligible member (repeatable)"),
    created_by: str = typer.Option("system", "--by", help="Requester identity"),
) -> None:
    """Open a new approval request."""

    async def _create(engine: WorkflowEngine):
        return await engine.create_approval_request(
            domain=domain,
            threshold=threshold,
            timeout_seconds=timeout,
            eligible_members=member or None,
            target=target,
            created_by=created_by,
        )

    record = _with_engine(ctx, _create)
    console.print(f"[green]Session opened:[/green] {record.session_id}")
    console.print(
        f"[dim]{len(record.request.eligible_members)} eligible, "
        f"deadline {record.deadline.isoformat(timespec='seconds')}[/dim]"
    )


@sessions_app.command("vote")
def sessions_vote(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session ID"),
    member_id: str = typer.Argument(..., help="Voting member"),
    decision: str = typer.Argument(..., help="approve, reject or abstain"),
    rationale: str = typer.Option(None, "--rationale", "-r", help="Reasoning"),
) -> None:
    """Submit a vote."""
    if decision not in ("approve", "reject", "abstain"):
        console.print(f"[red]Invalid decision:[/red] '{decision}'")
        raise typer.Exit(1) from None

    async def _vote(engine: WorkflowEngine):
        return await engine.submit_vote(session_id, member_id, decision, rationale)

    record = _with_engine(ctx, _vote)
    console.print(Text.assemble("Session status: ", _styled(record.status)))


@sessions_app.command("cancel")
def sessions_cancel(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session ID"),
    requested_by: str = typer.Option("system", "--by", help="Requester identity"),
    reason: str = typer.Option("", "--reason", help="Why the request is withdrawn"),
) -> None:
    """Withdraw a pending approval request."""

    async def _cancel(engine: WorkflowEngine):
        return await engine.cancel_approval_request(session_id, requested_by, reason)

    _with_engine(ctx, _cancel)
    console.print(f"[green]Session cancelled:[/green] {session_id}")


def _print_session(record) -> None:
    meta = Table(title=f"Session: {record.session_id}", show_header=False, show_lines=True)
    meta.add_column("Field", style="bold")
    meta.add_column("Value")
    meta.add_row("Target", record.request.target or "-")
    meta.add_row("Domain", record.request.domain)
    meta.add_row("Threshold", f"{record.request.threshold:.2f}")
    meta.add_row("Status", _styled(record.status))
    meta.add_row("Created", record.created_at.isoformat())
    meta.add_row("Deadline", record.deadline.isoformat())
    if record.resolved_at:
        meta.add_row("Resolved", record.resolved_at.isoformat())
    if record.resolution_reason:
        meta.add_row("Reason", record.resolution_reason)
    meta.add_row("Eligible", ", ".join(record.request.eligible_members))
    console.print(meta)

    if record.votes:
        console.print()
        votes = Table(title="Votes")
        votes.add_column("Member", style="cyan")
        votes.add_column("Decision")
        votes.add_column("At", style="dim")
        votes.add_column("Rationale", max_width=50)
        for vote in record.votes.values():
            votes.add_row(
                vote.member_id,
                _styled(vote.decision),
                vote.timestamp.isoformat(timespec="seconds"),
                vote.rationale or "",
            )
        console.print(votes)

    if record.late_votes:
        console.print(f"\n[dim]{len(record.late_votes)} late vote(s) kept for audit[/dim]")


# ── conclave ledgers ─────────────────────────────────────────────


@ledgers_app.command("list")
def ledgers_list(ctx: typer.Context) -> None:
    """Show compliance ledgers."""

    async def _list(engine: WorkflowEngine):
        return [
            (ledger, engine.get_gate_decision(ledger.ledger_id))
            for ledger in engine.tracker.list_ledgers()
            if not engine.tracker.is_faulted(ledger.ledger_id)
        ]

    rows = _with_engine(ctx, _list)
    if not rows:
        console.print("[dim]No ledgers found.[/dim]")
        return

    table = Table(title=f"Ledgers ({len(rows)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Requirements", justify="right")
    table.add_column("Results", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Verdict")
    for ledger, decision in rows:
        table.add_row(
            ledger.ledger_id,
            str(len(ledger.requirements)),
            str(len(ledger.results)),
            f"{ledger.score:.2f}",
            _styled(decision.verdict),
        )
    console.print(table)


@ledgers_app.command("show")
def ledgers_show(
    ctx: typer.Context,
    ledger_id: str = typer.Argument(..., help="Ledger ID"),
    min_score: float = typer.Option(None, "--min-score", help="Gate threshold override"),
) -> None:
    """Show a ledger's requirements, score and gate decision."""

    async def _get(engine: WorkflowEngine):
        ledger = engine.get_ledger(ledger_id)
        return ledger, engine.get_gate_decision(ledger_id, min_score)

    ledger, decision = _with_engine(ctx, _get)

    table = Table(title=f"Ledger: {ledger_id}", show_lines=True)
    table.add_column("Requirement", style="cyan")
    table.add_column("Severity")
    table.add_column("Check", style="dim")
    table.add_column("Current")
    table.add_column("Score", justify="right")
    for requirement in ledger.requirements:
        result = ledger.current_result(requirement.requirement_id)
        if result is None:
            current, score = Text("PENDING", style="yellow"), "-"
        else:
            current = Text(
                "PASS" if result.passed else "FAIL",
                style="green" if result.passed else "red",
            )
            score = f"{result.score:.2f}"
        table.add_row(
            requirement.requirement_id,
            requirement.severity.value,
            requirement.check_type,
            current,
            score,
        )
    console.print(table)
    console.print(Text.assemble(
        f"Score {decision.score:.2f} (min {decision.min_score:.2f}): ",
        _styled(decision.verdict),
    ))
    for reason in decision.reasons:
        console.print(f"  [red]-[/red] {reason}")


# ── conclave gates ───────────────────────────────────────────────


@gates_app.command("list")
def gates_list(ctx: typer.Context) -> None:
    """Show phase gates."""

    async def _list(engine: WorkflowEngine):
        return engine.list_phase_gates()

    gates = _with_engine(ctx, _list)
    if not gates:
        console.print("[dim]No phase gates found.[/dim]")
        return

    table = Table(title=f"Phase Gates ({len(gates)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Phase")
    table.add_column("State")
    table.add_column("Session", style="dim")
    table.add_column("Ledger", style="dim")
    table.add_column("Min Score", justify="right")
    for gate in gates:
        table.add_row(
            gate.phase_id,
            display_name(gate.phase) if gate.phase else "-",
            _styled(gate.state),
            gate.session_id or "-",
            gate.ledger_id,
            f"{gate.min_score:.2f}",
        )
    console.print(table)


@gates_app.command("show")
def gates_show(
    ctx: typer.Context,
    phase_id: str = typer.Argument(..., help="Phase gate ID"),
) -> None:
    """Show a gate's combined status and history."""

    async def _get(engine: WorkflowEngine):
        status = await engine.get_phase_gate_status(phase_id)
        return status, engine.gates.get_gate(phase_id)

    status, gate = _with_engine(ctx, _get)

    meta = Table(title=f"Phase Gate: {phase_id}", show_header=False, show_lines=True)
    meta.add_column("Field", style="bold")
    meta.add_column("Value")
    meta.add_row("Phase", display_name(status.phase) if status.phase else "-")
    meta.add_row("State", _styled(status.state))
    meta.add_row("Session", status.session_id or "-")
    if status.session_status:
        meta.add_row("Session Status", _styled(status.session_status))
    if status.compliance:
        meta.add_row(
            "Compliance",
            f"{status.compliance.verdict.value} ({status.compliance.score:.2f})",
        )
    console.print(meta)

    for reason in status.reasons:
        console.print(f"  [yellow]-[/yellow] {reason}")

    if gate.history:
        console.print()
        history = Table(title="History")
        history.add_column("From")
        history.add_column("To")
        history.add_column("At", style="dim")
        history.add_column("Reason", max_width=60)
        for t in gate.history:
            history.add_row(
                t.from_state.value, t.to_state.value,
                t.at.isoformat(timespec="seconds"), t.reason,
            )
        console.print(history)


@gates_app.command("open")
def gates_open(
    ctx: typer.Context,
    phase: str = typer.Argument(..., help="Workflow phase, e.g. requirements_clarification"),
) -> None:
    """Open the gate for a workflow phase with its default requirements."""
    try:
        workflow_phase = WorkflowPhase(phase)
    except ValueError:
        console.print(f"[red]Unknown phase:[/red] '{phase}'")
        console.print(f"[dim]Available: {', '.join(p.value for p in WorkflowPhase)}[/dim]")
        raise typer.Exit(1) from None

    async def _open(engine: WorkflowEngine):
        return await engine.open_phase_gate(phase=workflow_phase)

    gate = _with_engine(ctx, _open)
    console.print(f"[green]Phase gate opened:[/green] {gate.phase_id}")


@gates_app.command("start")
def gates_start(
    ctx: typer.Context,
    phase_id: str = typer.Argument(..., help="Phase gate ID"),
) -> None:
    """Mark a phase as in progress."""

    async def _start(engine: WorkflowEngine):
        return await engine.start_phase(phase_id)

    gate = _with_engine(ctx, _start)
    console.print(Text.assemble(f"{phase_id}: ", _styled(gate.state)))


@gates_app.command("request-approval")
def gates_request_approval(
    ctx: typer.Context,
    phase_id: str = typer.Argument(..., help="Phase gate ID"),
    session_id: str = typer.Option(None, "--session", help="Existing decision session"),
    created_by: str = typer.Option("system", "--by", help="Requester identity"),
) -> None:
    """Put a phase up for committee approval."""

    async def _request(engine: WorkflowEngine):
        return await engine.request_phase_approval(
            phase_id, session_id=session_id, created_by=created_by,
        )

    gate = _with_engine(ctx, _request)
    console.print(Text.assemble(f"{phase_id}: ", _styled(gate.state)))
    console.print(f"[dim]Decision session: {gate.session_id}[/dim]")


@gates_app.command("check")
def gates_check(
    ctx: typer.Context,
    phase_id: str = typer.Argument(..., help="Phase gate ID"),
    criterion: list[str] = typer.Option(
        None, "--met", help="Approval criterion that is met (repeatable)",
    ),
) -> None:
    """Record the phase's approval-criteria checklist."""
    from conclave.gate.phases import approval_criteria

    async def _check(engine: WorkflowEngine):
        gate = engine.gates.get_gate(phase_id)
        if gate.phase is None:
            raise ConfigurationError(f"Phase gate {phase_id} is not bound to a workflow phase")
        result = await engine.run_compliance_check(
            gate.ledger_id,
            f"{gate.phase.value}.criteria",
            {"criteria": approval_criteria(gate.phase), "criteria_met": criterion or []},
        )
        return result, engine.gates.get_gate(phase_id)

    result, gate = _with_engine(ctx, _check)
    console.print(
        f"Criteria score {result.score:.2f}: "
        + ("[green]PASS[/green]" if result.passed else "[red]FAIL[/red]")
    )
    console.print(Text.assemble(f"{phase_id}: ", _styled(gate.state)))


@gates_app.command("export")
def gates_export(
    ctx: typer.Context,
    phase_id: str = typer.Argument(..., help="Phase gate ID"),
    fmt: str = typer.Option(
        "approval", "--format", "-f", help="Export format: approval or json",
    ),
) -> None:
    """Export a gate as its approval document or JSON."""
    from conclave.persistence.export import export_json, render_approval_document

    if fmt not in ("approval", "json"):
        console.print(f"[red]Invalid format:[/red] '{fmt}'. Choose approval or json.")
        raise typer.Exit(1) from None

    async def _export(engine: WorkflowEngine) -> str:
        gate = engine.gates.get_gate(phase_id)
        if fmt == "json":
            return export_json(gate)
        session = (
            engine.get_session_status(gate.session_id) if gate.session_id else None
        )
        return render_approval_document(
            gate, engine.get_ledger(gate.ledger_id), session, engine.workflow_id,
        )

    console.print(_with_engine(ctx, _export), markup=False, highlight=False)


# ── conclave committee ───────────────────────────────────────────


@committee_app.command("list")
def committee_list(ctx: typer.Context) -> None:
    """Show all committee members."""
    committee = _load_committee(_settings(ctx))

    table = Table(title="Committee", show_lines=True)
    table.add_column("Member", style="bold cyan")
    table.add_column("Display Name")
    table.add_column("Domains")
    table.add_column("Roles", style="dim")
    for member in committee:
        table.add_row(
            member.member_id,
            member.display_name,
            ", ".join(member.domains),
            ", ".join(member.roles),
        )
    console.print(table)
    console.print(f"\n[dim]{len(committee)} members, domains: {', '.join(committee.domains())}[/dim]")


# ── conclave config ──────────────────────────────────────────────


@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """Show current engine configuration."""
    config = _load_config(_settings(ctx))

    table = Table(title="Engine Configuration", show_header=False, show_lines=True)
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    table.add_row("Default Domain", config.default_domain)
    table.add_row("Default Threshold", f"{config.default_threshold:.2f}")
    table.add_row("Default Timeout", f"{config.default_timeout_seconds:g}s")
    table.add_row("Min Compliance Score", f"{config.min_compliance_score:.2f}")
    table.add_row("Sweep Interval", f"{config.sweep_interval_seconds:g}s")
    table.add_row("State DB Path", config.state_db_path)
    table.add_row("Auto-open Next Phase", str(config.auto_open_next_phase))
    console.print(table)

    if config.phases:
        phase_table = Table(title="Phase Policies")
        phase_table.add_column("Phase", style="cyan")
        phase_table.add_column("Domain")
        phase_table.add_column("Threshold", justify="right")
        phase_table.add_column("Timeout", justify="right")
        phase_table.add_column("Min Score", justify="right")
        for phase in config.phases:
            policy = config.policy_for(phase)
            phase_table.add_row(
                display_name(phase),
                policy.domain,
                f"{policy.threshold:.2f}",
                f"{policy.timeout_seconds:g}s",
                f"{policy.min_score:.2f}",
            )
        console.print()
        console.print(phase_table)


@config_app.command("path")
def config_path() -> None:
    """Show configuration file locations."""
    config_dir = Path(__file__).parent / "config"
    files = [
        ("Defaults", config_dir / "defaults.toml"),
        ("Committee", config_dir / "committee.toml"),
    ]

    table = Table(title="Configuration Paths", show_header=False)
    table.add_column("Config", style="bold")
    table.add_column("Path")
    table.add_column("Status")
    for name, path in files:
        status = "[green]found[/green]" if path.exists() else "[red]missing[/red]"
        table.add_row(name, str(path), status)
    console.print(table)
