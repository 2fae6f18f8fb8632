"""Conductor CLI.

Main entry point for the conductor command.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import ConductorConfig, get_config, get_config_path, load_config, save_config
from .errors import ConductorError
from .observability.ledger import DEFAULT_LEDGER_PATH, ExecutionLedger
from .orchestrator.events import Event, EventType
from .orchestrator.factory import build_orchestrator
from .orchestrator.plan import DEFAULT_PLAN_NAME, Plan, builtin_plan, load_plan, serialize_plan
from .orchestrator.scheduler import PhaseScheduler, ResumeCommand
from .recovery.checkpoints import CheckpointStore
from .state import MilestoneStatus, PhaseStatus
from .utils.errors import error_from_exception, format_conflict, format_error, set_debug_mode

console = Console()

EXIT_FAILED = 1
EXIT_BLOCKED = 2
EXIT_TIMEOUT = 3

STATUS_STYLES = {
    PhaseStatus.NOT_STARTED: "dim",
    PhaseStatus.IN_PROGRESS: "cyan",
    PhaseStatus.COMPLETED: "green",
    PhaseStatus.FAILED: "red",
    PhaseStatus.BLOCKED: "yellow",
}


def setup_logging(level: str) -> None:
    """Route conductor logs through rich at ``level``."""
    root = logging.getLogger("conductor")
    root.handlers.clear()
    root.addHandler(RichHandler(console=Console(stderr=True), show_path=False))
    root.setLevel(level.upper())


def fail(exception: Exception, context: str) -> NoReturn:
    """Print a formatted error and exit non-zero."""
    format_error(error_from_exception(exception, context), console)
    sys.exit(EXIT_FAILED)


def _config(ctx: click.Context) -> ConductorConfig:
    config: ConductorConfig = ctx.obj["config"]
    return config


def _resolve_plan(path: Path | None, builtin: str | None) -> Plan:
    if path is not None:
        return load_plan(path)
    return builtin_plan(builtin or DEFAULT_PLAN_NAME)


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show version and exit")
@click.option("--debug", "-d", is_flag=True, help="Enable debug logging and stack traces")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file (default: ~/.conductor/config.toml or $CONDUCTOR_CONFIG)",
)
@click.pass_context
def main(ctx: click.Context, version: bool, debug: bool, config_path: Path | None) -> None:
    """Conductor - phased multi-agent orchestration.

    Runs a static plan of phases and milestones against a pool of agents,
    recovering from failures and pausing for a human on conflicts.

    Use --debug for verbose logs and stack traces.
    """
    if debug:
        set_debug_mode(True)

    if version:
        console.print(f"conductor version {__version__}")
        return

    try:
        config = load_config(config_path) if config_path else get_config()
    except ConductorError as e:
        fail(e, "loading configuration")
    ctx.obj = {"config": config}
    setup_logging("debug" if debug else config.logging.level)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# =============================================================================
# Plan Commands
# =============================================================================


@main.group()
def plan() -> None:
    """Inspect and validate phase plans."""


@plan.command("validate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def plan_validate(path: Path) -> None:
    """Check a plan file for structural problems.

    \b
    Examples:
        conductor plan validate plan.yaml
    """
    try:
        loaded = load_plan(path)
    except ConductorError as e:
        console.print(f"[red]✗ {path} is invalid[/red]")
        for problem in str(e).split("; "):
            console.print(f"  - {problem}")
        sys.exit(EXIT_FAILED)

    milestones = sum(len(p.milestones) for p in loaded.phases)
    console.print(
        f"[green]✓ {loaded.name}[/green]: {len(loaded.phases)} phase(s), "
        f"{milestones} milestone(s), {len(loaded.agent_types)} agent type(s)"
    )


@plan.command("show")
@click.argument("path", required=False, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--builtin", "-b", help=f"Show a bundled plan (default: {DEFAULT_PLAN_NAME})")
@click.option("--yaml", "as_yaml", is_flag=True, help="Print the normalized plan as YAML")
def plan_show(path: Path | None, builtin: str | None, as_yaml: bool) -> None:
    """Show the phases, milestones and agents of a plan.

    \b
    Examples:
        conductor plan show plan.yaml
        conductor plan show --builtin default --yaml
    """
    try:
        loaded = _resolve_plan(path, builtin)
    except ConductorError as e:
        fail(e, "loading plan")

    if as_yaml:
        click.echo(serialize_plan(loaded))
        return

    console.print(f"[bold]{loaded.name}[/bold] [dim]{loaded.description}[/dim]")
    if loaded.goal:
        console.print(f"Goal: {loaded.goal}")

    table = Table(title="Phases")
    table.add_column("#", justify="right")
    table.add_column("Phase")
    table.add_column("Prerequisites")
    table.add_column("Milestone")
    table.add_column("Agents")
    table.add_column("Critical")
    for phase in sorted(loaded.phases, key=lambda p: p.ordinal):
        prereqs = ", ".join(str(p) for p in phase.prerequisites) or "-"
        for i, milestone in enumerate(phase.milestones):
            table.add_row(
                str(phase.ordinal) if i == 0 else "",
                phase.name if i == 0 else "",
                prereqs if i == 0 else "",
                milestone.id,
                ", ".join(milestone.agents),
                "yes" if milestone.critical else "no",
            )
    console.print(table)

    if loaded.agents:
        agents = Table(title="Agents")
        agents.add_column("Agent")
        agents.add_column("Concurrency", justify="right")
        agents.add_column("Priority", justify="right")
        agents.add_column("Depends on")
        agents.add_column("Fallback")
        for name, settings in loaded.agents.items():
            agents.add_row(
                name,
                str(settings.max_concurrent),
                str(settings.priority),
                ", ".join(settings.depends_on) or "-",
                settings.fallback or "-",
            )
        console.print(agents)


# =============================================================================
# Run
# =============================================================================


def _print_event(event: Event) -> None:
    p = event.payload
    if event.type == EventType.PHASE_STARTED:
        console.print(f"[cyan]▶ Phase {p['phase']} ({p['name']}) started[/cyan]")
    elif event.type == EventType.PHASE_ADVANCED:
        console.print(f"[green]✓ Phase {p['phase']} ({p['name']}) completed[/green]")
    elif event.type == EventType.PHASE_FAILED:
        console.print(f"[red]✗ Phase {p['phase']} ({p['name']}) failed: {p['reason']}[/red]")
    elif event.type == EventType.PHASE_BLOCKED:
        console.print(f"[yellow]⏸ Phase {p['phase']} ({p['name']}) blocked[/yellow]")
    elif event.type == EventType.TASK_FAILED:
        console.print(f"[red]  {p['task_id']} failed: {p['message']}[/red]")
    elif event.type == EventType.CIRCUIT_OPENED:
        console.print(f"[yellow]  Circuit opened for {p['agent_type']}[/yellow]")
    elif event.type == EventType.CHECKPOINT_RESTORED:
        console.print(f"[yellow]↺ Rolled back to {p['checkpoint_id']}[/yellow]")


def _print_summary(scheduler: PhaseScheduler) -> None:
    state = scheduler.state
    table = Table(title=f"Run summary ({state.progress:.0f}% complete)")
    table.add_column("#", justify="right")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Milestones")
    table.add_column("Note")
    for phase in state.phases:
        style = STATUS_STYLES[phase.status]
        done = sum(1 for m in phase.milestones if m.status == MilestoneStatus.COMPLETED)
        table.add_row(
            str(phase.ordinal),
            phase.name,
            f"[{style}]{phase.status.value}[/{style}]",
            f"{done}/{len(phase.milestones)}",
            phase.status_reason or "",
        )
    console.print(table)


def _resolve_blocked(scheduler: PhaseScheduler) -> bool:
    """Prompt the operator for each blocked phase. Returns True if any resumed."""
    resumed = False
    for ordinal in scheduler.blocked_phases():
        pause = scheduler.state.pauses.get(ordinal)
        if pause is not None:
            format_conflict(pause, console)
        console.print()
        note = click.prompt("Resolution note", default="", show_default=False)
        accept = click.confirm("Accept the conflicting results as-is?", default=False)
        result = scheduler.resume(ResumeCommand(ordinal, note, accept_conflicts=accept))
        if result.success:
            console.print(f"[green]{result.message}[/green]")
            resumed = True
        else:
            console.print(f"[red]{result.message}[/red]")
    return resumed


@main.command()
@click.argument("path", required=False, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--builtin", "-b", help=f"Run a bundled plan (default: {DEFAULT_PLAN_NAME})")
@click.option("--goal", "-g", help="Goal recorded for this run")
@click.option("--no-interactive", is_flag=True, help="Exit instead of prompting on a blocked phase")
@click.option("--timeout", "-t", type=float, help="Give up after this many seconds")
@click.option("--json", "as_json", is_flag=True, help="Print the final status as JSON")
@click.pass_context
def run(
    ctx: click.Context,
    path: Path | None,
    builtin: str | None,
    goal: str | None,
    no_interactive: bool,
    timeout: float | None,
    as_json: bool,
) -> None:
    """Run a plan to completion.

    Without PATH the bundled sample plan runs with echo agents. When a phase
    blocks on a conflict you are asked for a resolution note; with
    --no-interactive the command exits with status 2 instead.

    \b
    Examples:
        conductor run
        conductor run plan.yaml --goal "Ship v2"
        conductor run plan.yaml --no-interactive --timeout 600
    """
    config = _config(ctx)
    try:
        loaded = _resolve_plan(path, builtin)
        scheduler = build_orchestrator(loaded, config=config, goal=goal)
    except ConductorError as e:
        fail(e, "preparing run")

    if not as_json:
        scheduler.events.subscribe(_print_event)

    exit_code = 0
    try:
        scheduler.start()
        while True:
            if not scheduler.run(timeout=timeout):
                console.print("[red]Timed out waiting for the run to settle[/red]")
                exit_code = EXIT_TIMEOUT
                break
            if not scheduler.blocked_phases():
                break
            if no_interactive:
                exit_code = EXIT_BLOCKED
                break
            if not _resolve_blocked(scheduler):
                exit_code = EXIT_BLOCKED
                break
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, shutting down[/yellow]")
        exit_code = EXIT_FAILED
    finally:
        scheduler.shutdown()
        if scheduler.dispatcher.ledger is not None:
            scheduler.dispatcher.ledger.close()

    statuses = [p.status for p in scheduler.state.phases]
    if exit_code == 0 and any(s != PhaseStatus.COMPLETED for s in statuses):
        exit_code = EXIT_FAILED

    if as_json:
        click.echo(json.dumps(scheduler.get_status(), indent=2, default=str))
    else:
        _print_summary(scheduler)
        if exit_code == EXIT_BLOCKED:
            for ordinal in scheduler.blocked_phases():
                pause = scheduler.state.pauses.get(ordinal)
                if pause is not None:
                    format_conflict(pause, console)
    sys.exit(exit_code)


# =============================================================================
# Checkpoints
# =============================================================================


@main.group()
def checkpoints() -> None:
    """Inspect persisted checkpoints."""


@checkpoints.command("list")
@click.option("--dir", "directory", type=click.Path(file_okay=False, path_type=Path))
@click.option("--phase", "-p", type=int, help="Only checkpoints for this phase")
@click.pass_context
def checkpoints_list(ctx: click.Context, directory: Path | None, phase: int | None) -> None:
    """List checkpoints written by previous runs, newest first."""
    directory = directory or (
        Path(_config(ctx).checkpoints.directory).expanduser()
        if _config(ctx).checkpoints.directory
        else None
    )
    if directory is None:
        console.print("[yellow]No checkpoint directory configured[/yellow]")
        console.print("[dim]Set [checkpoints] directory or pass --dir[/dim]")
        return

    store = CheckpointStore(directory=directory, max_checkpoints=sys.maxsize)
    store.load_persisted()
    found = store.list_checkpoints(phase)
    if not found:
        console.print(f"[yellow]No checkpoints in {directory}[/yellow]")
        return

    table = Table(title=f"Checkpoints in {directory}")
    table.add_column("Id")
    table.add_column("Phase", justify="right")
    table.add_column("Taken")
    table.add_column("Trigger")
    table.add_column("Description")
    for checkpoint in found:
        table.add_row(
            checkpoint.checkpoint_id,
            str(checkpoint.phase) if checkpoint.phase is not None else "-",
            checkpoint.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            checkpoint.metadata.triggered_by,
            checkpoint.metadata.description,
        )
    console.print(table)


# =============================================================================
# Ledger
# =============================================================================


@main.group()
def ledger() -> None:
    """Query the execution ledger."""


@ledger.command("stats")
@click.option("--db", "db_path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--failures", "-f", type=int, default=5, help="Recent failures to show")
@click.pass_context
def ledger_stats(ctx: click.Context, db_path: Path | None, failures: int) -> None:
    """Show per-agent execution statistics."""
    path = db_path or Path(_config(ctx).ledger.path or DEFAULT_LEDGER_PATH).expanduser()
    if not path.exists():
        console.print(f"[yellow]No ledger at {path}[/yellow]")
        return

    execution_ledger = ExecutionLedger(path)
    try:
        summaries = execution_ledger.agent_summaries()
        recent = execution_ledger.recent_failures(failures)
        total = execution_ledger.count()
    finally:
        execution_ledger.close()

    table = Table(title=f"Execution ledger ({total} records)")
    table.add_column("Agent")
    table.add_column("Total", justify="right")
    table.add_column("Succeeded", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Conflicts", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Success rate", justify="right")
    table.add_column("Avg duration", justify="right")
    for s in summaries:
        table.add_row(
            s.agent_type,
            str(s.total),
            str(s.succeeded),
            str(s.failed),
            str(s.conflicts),
            str(s.total_retries),
            f"{s.success_rate:.0%}",
            f"{s.average_duration:.2f}s",
        )
    console.print(table)

    if recent:
        console.print()
        console.print("[bold]Recent failures:[/bold]")
        for record in recent:
            console.print(
                f"  [red]{record.status.value}[/red] {record.task_id} "
                f"({record.agent_type}): {record.error_message or '-'}"
            )


# =============================================================================
# Config Commands
# =============================================================================


@main.group()
def config() -> None:
    """View and create conductor configuration.

    Configuration priority:
    1. Environment variables (CONDUCTOR_*)
    2. Config file (~/.conductor/config.toml or $CONDUCTOR_CONFIG)
    3. Defaults
    """


@config.command("show")
@click.option("--json", "-j", "as_json", is_flag=True, help="Output as JSON")
@click.option("--section", type=str, help="Show only a specific section")
@click.pass_context
def config_show(ctx: click.Context, as_json: bool, section: str | None) -> None:
    """Show the effective configuration."""
    cfg = _config(ctx)
    data = cfg.to_dict()
    if section:
        if section not in data:
            console.print(f"[red]Unknown section: {section}[/red]")
            console.print(f"[dim]Available: {', '.join(data)}[/dim]")
            sys.exit(EXIT_FAILED)
        data = {section: data[section]}

    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
        return

    if cfg.config_path:
        exists = "" if cfg.config_path.exists() else " [dim](not created)[/dim]"
        console.print(f"Config file: {cfg.config_path}{exists}")
        console.print()
    _print_section(data)


def _print_section(data: dict, prefix: str = "") -> None:
    for name, values in data.items():
        nested = {k: v for k, v in values.items() if isinstance(v, dict)}
        flat = {k: v for k, v in values.items() if not isinstance(v, dict)}
        if flat or not nested:
            console.print(f"[bold]\\[{prefix}{name}][/bold]")
            for key, value in flat.items():
                console.print(f"  {key} = {value!r}")
        if nested:
            _print_section(nested, prefix=f"{prefix}{name}.")


@config.command("init")
@click.option("--path", type=click.Path(dir_okay=False, path_type=Path), help="Where to write")
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing file")
def config_init(path: Path | None, force: bool) -> None:
    """Write a config file populated with the defaults."""
    target = path or get_config_path()
    if target.exists() and not force:
        console.print(f"[yellow]{target} already exists[/yellow] (use --force to overwrite)")
        sys.exit(EXIT_FAILED)
    written = save_config(ConductorConfig(), target)
    console.print(f"[green]✓ Wrote {written}[/green]")


if __name__ == "__main__":
    main()
