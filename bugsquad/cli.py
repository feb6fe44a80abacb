"""CLI entry point for bugsquad.

Commands:
- bugsquad init: Write a default config file
- bugsquad serve: Run the HTTP API
- bugsquad run: Debug an error in the foreground with a live pulse (Ctrl-C cancels)
- bugsquad check: Show the pulse of a session
- bugsquad sessions: List known sessions
- bugsquad observe: Add an observation to a session
- bugsquad investigate: Investigator subprocess entry point (hidden)
"""

import logging
import sys
import time
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console, Group
from rich.live import Live
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from bugsquad import __version__
from bugsquad.config import (
    CONFIG_DIRNAME,
    CONFIG_FILENAME,
    DEFAULT_CONFIG_YAML,
    BugsquadConfig,
    load_config,
)
from bugsquad.core.errors import ConfigError, SessionNotFoundError
from bugsquad.core.models import InvestigatorState, Pulse, SessionStatus
from bugsquad.core.store import COORDINATOR_ACTOR
from bugsquad.service import DebugService

console = Console()

STATUS_STYLES = {
    SessionStatus.IN_PROGRESS: "bold blue",
    SessionStatus.COMPLETED: "bold green",
    SessionStatus.CANCELLED: "bold yellow",
    SessionStatus.FAILED: "bold red",
    SessionStatus.UNKNOWN: "dim",
}

STATE_STYLES = {
    InvestigatorState.REPORTED: "green",
    InvestigatorState.RUNNING: "blue",
    InvestigatorState.TERMINATED_UNREPORTED: "red",
}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)],
        force=True,
    )


def _load(ctx: click.Context) -> BugsquadConfig:
    try:
        return load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(1)


def render_pulse(pulse: Pulse) -> Group:
    """Pulse as a rich renderable (header panel + investigator table)."""
    style = STATUS_STYLES.get(pulse.status, "")
    lines = [f"[{style}]{pulse.status.value}[/]  [dim]{escape(pulse.session_id)}[/dim]"]
    if pulse.stage:
        lines.append(f"[bold]Stage:[/bold] {escape(pulse.stage)}")
    if pulse.elapsed_seconds is not None:
        lines.append(f"[bold]Elapsed:[/bold] {pulse.elapsed_seconds:.0f}s")
    if pulse.reason:
        lines.append(f"[bold]Reason:[/bold] {escape(pulse.reason)}")
    if pulse.solution:
        lines.append(f"\n[bold green]Solution:[/bold green]\n{escape(pulse.solution)}")

    title = f"Investigators ({len(pulse.running)} running, {len(pulse.reported)} reported)"
    table = Table(title=title, show_lines=False)
    table.add_column("Instance", style="cyan")
    table.add_column("State")
    table.add_column("Confirmed")
    table.add_column("Confidence", justify="right")
    table.add_column("Hypothesis")
    for inv in pulse.investigators:
        confirmed = {True: "[green]yes[/]", False: "[red]no[/]", None: "[dim]?[/]"}[inv.confirmed]
        table.add_row(
            inv.instance_id,
            f"[{STATE_STYLES[inv.state]}]{inv.state.value}[/]",
            confirmed if inv.state == InvestigatorState.REPORTED else "",
            f"{inv.confidence:g}%" if inv.confidence is not None else "",
            escape(inv.hypothesis[:80]),
        )

    parts = [Panel("\n".join(lines), title="Pulse")]
    if pulse.investigators:
        parts.append(table)
    return Group(*parts)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """bugsquad - hypothesis-driven debugging swarm.

    A coordinator model forms hypotheses about a bug; each hypothesis is
    tested by an investigator process on its own git branch.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    _setup_logging(verbose)


@main.command()
@click.option("--global", "global_", is_flag=True, help="Write ~/.bugsquad/config.yaml instead")
def init(global_: bool) -> None:
    """Write a default config file."""
    base = Path.home() if global_ else Path.cwd()
    config_path = base / CONFIG_DIRNAME / CONFIG_FILENAME

    if config_path.exists():
        console.print(f"[yellow]Config already exists:[/yellow] {config_path}")
        return

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
    console.print(
        Panel(
            f"[green]Created {config_path}[/green]\n\n"
            "Set ANTHROPIC_API_KEY (or configure another provider), then run:\n"
            "  bugsquad run 'the error message' --repo .",
            title="Initialized",
        )
    )


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", default=8765, show_default=True, type=int, help="Port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the HTTP API."""
    import uvicorn

    from bugsquad.server import create_app

    config = _load(ctx)
    app = create_app(DebugService(config))
    console.print(f"[bold]bugsquad API[/bold] on http://{host}:{port}  [dim]data: {config.resolved_data_dir}[/dim]")
    uvicorn.run(app, host=host, port=port, log_level="info")


@main.command()
@click.argument("error")
@click.option("--repo", "-r", default=".", type=click.Path(exists=True, file_okay=False), help="Repository path")
@click.option("--context", "-c", help="Extra context (reproduction steps, logs)")
@click.option("--language", "-l", help="Language hint")
@click.option("--file", "-f", "file_path", help="File where the error occurs")
@click.option("--interval", default=1.0, show_default=True, help="Pulse refresh interval (seconds)")
@click.pass_context
def run(
    ctx: click.Context,
    error: str,
    repo: str,
    context: str | None,
    language: str | None,
    file_path: str | None,
    interval: float,
) -> None:
    """Debug ERROR in the foreground. Ctrl-C cancels the session."""
    config = _load(ctx)
    service = DebugService(config)
    try:
        session_id = service.start(error, repo, context=context, language=language, file_path=file_path)
    except (ConfigError, ValueError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    console.print(f"[dim]Session {session_id}[/dim]")
    pulse = service.check(session_id)
    try:
        with Live(render_pulse(pulse), console=console, refresh_per_second=4) as live:
            while not service.wait(session_id, timeout=interval):
                pulse = service.check(session_id)
                live.update(render_pulse(pulse))
            pulse = service.check(session_id)
            live.update(render_pulse(pulse))
    except KeyboardInterrupt:
        console.print("[yellow]Cancelling...[/yellow]")
        ack = service.cancel(session_id)
        service.wait(session_id, timeout=config.limits.termination_grace_seconds + 5)
        console.print(f"[yellow]Cancelled[/yellow] ({len(ack.terminated_pids)} investigators terminated)")
        pulse = service.check(session_id)
    finally:
        service.shutdown()

    sys.exit(0 if pulse.status == SessionStatus.COMPLETED else 1)


@main.command()
@click.argument("session_id")
@click.option("--json", "as_json", is_flag=True, help="Print the pulse as JSON")
@click.pass_context
def check(ctx: click.Context, session_id: str, as_json: bool) -> None:
    """Show the pulse of SESSION_ID."""
    pulse = DebugService(_load(ctx)).check(session_id)
    if as_json:
        click.echo(pulse.model_dump_json(indent=2))
    else:
        console.print(render_pulse(pulse))
    if pulse.status == SessionStatus.UNKNOWN:
        sys.exit(1)


@main.command()
@click.option("--limit", default=20, show_default=True, help="Number of sessions to show")
@click.pass_context
def sessions(ctx: click.Context, limit: int) -> None:
    """List sessions in the data directory, newest first."""
    service = DebugService(_load(ctx))
    session_ids = sorted(service.store.list_sessions(), reverse=True)[:limit]
    if not session_ids:
        console.print("[yellow]No sessions found[/yellow]")
        return

    table = Table(title="Sessions")
    table.add_column("Session", style="cyan")
    table.add_column("Status")
    table.add_column("Stage")
    table.add_column("Investigators", justify="right")
    for session_id in session_ids:
        pulse = service.check(session_id)
        style = STATUS_STYLES.get(pulse.status, "")
        table.add_row(session_id, f"[{style}]{pulse.status.value}[/]", pulse.stage or "", str(len(pulse.investigators)))
    console.print(table)


@main.command()
@click.argument("session_id")
@click.argument("text")
@click.option("--agent", "agent_id", default=COORDINATOR_ACTOR, show_default=True, help="Coordinator or instance id")
@click.option("--author", default="cli", show_default=True, help="Who is speaking")
@click.pass_context
def observe(ctx: click.Context, session_id: str, text: str, agent_id: str, author: str) -> None:
    """Add an observation to SESSION_ID."""
    service = DebugService(_load(ctx))
    try:
        ack = service.add_observation(text, session_id, agent_id=agent_id, author=author)
    except (SessionNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    console.print(f"[green]Observation added[/green] for {escape(ack.agent_id)} at {ack.timestamp.isoformat()}")


@main.command(hidden=True)
@click.option("--session-id", required=True)
@click.option("--instance-id", required=True)
@click.option("--repo", "repo_path", required=True, type=click.Path(file_okay=False))
@click.option("--branch", required=True)
@click.option("--worktree", required=True, type=click.Path(exists=True, file_okay=False))
@click.option("--data-dir", required=True, type=click.Path(file_okay=False))
@click.option("--hypothesis", required=True)
@click.pass_context
def investigate(
    ctx: click.Context,
    session_id: str,
    instance_id: str,
    repo_path: str,
    branch: str,
    worktree: str,
    data_dir: str,
    hypothesis: str,
) -> None:
    """Investigator subprocess entry point."""
    from bugsquad.core.investigator import run_investigator
    from bugsquad.core.supervisor import child_config_from_env

    # stderr is redirected to the instance's .stderr file; no rich markup there
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )

    raw = child_config_from_env()
    try:
        config = BugsquadConfig.model_validate_json(raw) if raw else _load(ctx)
    except ValidationError as e:
        click.echo(f"Invalid investigator config: {e}", err=True)
        sys.exit(2)
    config = config.model_copy(update={"data_dir": Path(data_dir)})

    started = time.monotonic()
    code = run_investigator(
        session_id=session_id,
        instance_id=instance_id,
        hypothesis=hypothesis,
        branch=branch,
        worktree=Path(worktree),
        config=config,
        repo_path=Path(repo_path),
    )
    logging.getLogger(__name__).info(f"{instance_id} exited with {code} after {time.monotonic() - started:.1f}s")
    sys.exit(code)


if __name__ == "__main__":
    main()
