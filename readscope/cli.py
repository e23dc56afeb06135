"""
Readscope CLI - Command-line interface for agent read coverage.

Provides commands for inspecting the symbol forest, reporting per-file
coverage for a session, listing sessions and following a session live.
"""

from __future__ import annotations

import json
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from readscope.config import BackendKind, ConfigLoader, EngineConfig
from readscope.coordinator import Coordinator, Snapshot
from readscope.coverage.report import CoverageReport
from readscope.errors import ReadscopeError
from readscope.ingest.claude import list_sessions, log_dir_for_project
from readscope.log import configure_logging
from readscope.symbols.models import Symbol
from readscope.tracking.depth import ReadDepth

app = typer.Typer(
    name="readscope",
    help="Read coverage for autonomous coding agents - what did the agent actually look at?",
    add_completion=False,
)

console = Console()

DEPTH_STYLES: dict[ReadDepth, str] = {
    ReadDepth.UNSEEN: "dim",
    ReadDepth.NAME_ONLY: "blue",
    ReadDepth.OVERVIEW: "cyan",
    ReadDepth.SIGNATURE: "yellow",
    ReadDepth.FULL_BODY: "green",
}


def version_callback(value: bool) -> None:
    """Display version information."""
    if value:
        from readscope import __version__

        console.print(f"[bold blue]Readscope[/bold blue] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Log engine decisions to stderr"),
    log_json: bool = typer.Option(False, "--log-json", help="Log as JSON lines"),
) -> None:
    """Readscope - Read coverage for autonomous coding agents."""
    configure_logging(verbose=verbose, json_output=log_json)


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(1)


def _load_config(
    path: str,
    session: str | None = None,
    backend: str | None = None,
    serena_cache: str | None = None,
    log_dir: str | None = None,
    projects_dir: str | None = None,
    policy: str | None = None,
) -> EngineConfig:
    target = Path(path)
    if not target.is_dir():
        raise _fail(f"Project root not found: {path}")
    try:
        kind = BackendKind(backend) if backend else None
    except ValueError:
        raise _fail(f"Unknown backend: {backend}") from None
    try:
        return ConfigLoader.load(
            target,
            session_id=session,
            backend=kind,
            symbol_cache_dir=Path(serena_cache) if serena_cache else None,
            log_dir=Path(log_dir) if log_dir else None,
            projects_dir=Path(projects_dir) if projects_dir else None,
            policy_file=Path(policy) if policy else None,
        )
    except ReadscopeError as exc:
        raise _fail(str(exc)) from exc


def _open(config: EngineConfig) -> Coordinator:
    """Build the engine and select the session; explicit sessions must exist."""
    try:
        coordinator = Coordinator.build(config)
        coordinator.open_session(config.session_id)
    except ReadscopeError as exc:
        raise _fail(str(exc)) from exc
    return coordinator


@app.command()
def dump(
    path: str = typer.Argument(".", help="Project root"),
    session: str = typer.Option(None, "--session", "-s", help="Session id (latest when omitted)"),
    agent: str = typer.Option(None, "--agent", "-a", help="Show one agent's depths only"),
    backend: str = typer.Option(None, "--backend", "-b", help="Symbol backend: tree-sitter, serena"),
    serena_cache: str = typer.Option(None, "--serena-cache", help="Alternate Serena cache directory"),
    log_dir: str = typer.Option(None, "--log-dir", help="Explicit session log directory"),
    projects_dir: str = typer.Option(None, "--projects-dir", help="Claude projects directory"),
    policy: str = typer.Option(None, "--policy", help="YAML file overriding tool depths"),
    format_: str = typer.Option("console", "--format", "-f", help="Output format: console, json"),
) -> None:
    """
    Print the symbol forest with each symbol's read depth.

    Stale symbols are marked with an asterisk.
    """
    config = _load_config(path, session, backend, serena_cache, log_dir, projects_dir, policy)
    coordinator = _open(config)
    snapshot = coordinator.catch_up()

    if format_ == "json":
        typer.echo(json.dumps(_snapshot_to_dict(snapshot, agent), indent=2))
        return

    root = Tree(f"[bold]{config.project_root}[/bold]")
    for file_path in sorted(snapshot.files):
        tree = snapshot.files[file_path]
        node = root.add(f"[bold]{file_path}[/bold] [dim]({tree.symbol_count} symbols)[/dim]")
        for child in tree.top_level:
            _add_symbol(node, child, snapshot, agent)
    console.print(root)
    _print_diagnostics(snapshot)


@app.command()
def report(
    path: str = typer.Argument(".", help="Project root"),
    session: str = typer.Option(None, "--session", "-s", help="Session id (latest when omitted)"),
    agent: str = typer.Option(None, "--agent", "-a", help="Report one agent only"),
    backend: str = typer.Option(None, "--backend", "-b", help="Symbol backend: tree-sitter, serena"),
    serena_cache: str = typer.Option(None, "--serena-cache", help="Alternate Serena cache directory"),
    log_dir: str = typer.Option(None, "--log-dir", help="Explicit session log directory"),
    projects_dir: str = typer.Option(None, "--projects-dir", help="Claude projects directory"),
    policy: str = typer.Option(None, "--policy", help="YAML file overriding tool depths"),
    format_: str = typer.Option("console", "--format", "-f", help="Output format: console, json"),
) -> None:
    """
    Per-file coverage table for a session.

    Files are sorted by full-read percentage, least-read first.
    """
    config = _load_config(path, session, backend, serena_cache, log_dir, projects_dir, policy)
    coordinator = _open(config)
    snapshot = coordinator.catch_up()
    coverage = CoverageReport.from_snapshot(snapshot, agent)

    if format_ == "json":
        typer.echo(json.dumps(coverage.to_dict(), indent=2))
        return

    console.print(
        Panel(
            f"[bold]Project:[/bold] {config.project_root}\n"
            f"[bold]Session:[/bold] {snapshot.session_id or '[dim]none[/dim]'}"
            + (f"\n[bold]Agent:[/bold] {agent}" if agent else ""),
            title="Readscope Coverage",
            border_style="magenta",
        )
    )
    console.print(_coverage_table(coverage))
    _print_diagnostics(snapshot)


@app.command()
def sessions(
    path: str = typer.Argument(".", help="Project root"),
    projects_dir: str = typer.Option(None, "--projects-dir", help="Claude projects directory"),
    log_dir: str = typer.Option(None, "--log-dir", help="Explicit session log directory"),
) -> None:
    """List recorded sessions for a project, most recent first."""
    config = _load_config(path, log_dir=log_dir, projects_dir=projects_dir)
    directory = config.log_dir or log_dir_for_project(config.project_root, config.projects_dir)
    found = list_sessions(directory)
    if not found:
        console.print(f"[yellow]No sessions found in {directory}[/yellow]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Session", style="cyan")
    table.add_column("Modified")
    table.add_column("Size", justify="right")
    for info in found:
        table.add_row(
            info.session_id,
            info.modified.strftime("%Y-%m-%d %H:%M:%S"),
            f"{info.size:,}",
        )
    console.print(table)


@app.command()
def watch(
    path: str = typer.Argument(".", help="Project root"),
    session: str = typer.Option(None, "--session", "-s", help="Session id (latest when omitted)"),
    agent: str = typer.Option(None, "--agent", "-a", help="Follow one agent only"),
    backend: str = typer.Option(None, "--backend", "-b", help="Symbol backend: tree-sitter, serena"),
    serena_cache: str = typer.Option(None, "--serena-cache", help="Alternate Serena cache directory"),
    log_dir: str = typer.Option(None, "--log-dir", help="Explicit session log directory"),
    projects_dir: str = typer.Option(None, "--projects-dir", help="Claude projects directory"),
    policy: str = typer.Option(None, "--policy", help="YAML file overriding tool depths"),
) -> None:
    """
    Follow a session live, redrawing the coverage table as the agent works.

    Press Ctrl+C to stop.
    """
    config = _load_config(path, session, backend, serena_cache, log_dir, projects_dir, policy)
    coordinator = _open(config)
    coordinator.catch_up()

    initial = _coverage_table(CoverageReport.from_snapshot(coordinator.latest, agent))
    with Live(initial, console=console, refresh_per_second=4) as live:
        coordinator.subscribe(
            lambda snap: live.update(_coverage_table(CoverageReport.from_snapshot(snap, agent)))
        )
        coordinator.start()
        try:
            while True:
                time.sleep(0.5)
        except KeyboardInterrupt:
            pass
        finally:
            coordinator.stop()
    _print_diagnostics(coordinator.latest)


def _coverage_table(coverage: CoverageReport) -> Table:
    table = Table(show_header=True, header_style="bold")
    table.add_column("File", style="cyan")
    table.add_column("Symbols", justify="right")
    table.add_column("Seen", justify="right")
    table.add_column("Full", justify="right")
    table.add_column("Stale", justify="right")
    table.add_column("Seen %", justify="right")
    table.add_column("Full %", justify="right")

    for row in coverage.files:
        table.add_row(
            row.path,
            str(row.total),
            str(row.seen),
            str(row.full),
            f"[yellow]{row.stale}[/yellow]" if row.stale else "0",
            f"{row.seen_percentage:.1f}%",
            f"{row.full_percentage:.1f}%",
        )
    table.add_row(
        "[bold]Total[/bold]",
        str(coverage.total),
        str(coverage.seen),
        str(coverage.full),
        str(coverage.stale),
        f"[bold]{coverage.seen_percentage:.1f}%[/bold]",
        f"[bold]{coverage.full_percentage:.1f}%[/bold]",
    )
    return table


def _add_symbol(parent: Tree, symbol: Symbol, snapshot: Snapshot, agent: str | None) -> None:
    state = snapshot.state_of(symbol.id, agent)
    style = DEPTH_STYLES[state.depth]
    marker = "[yellow]*[/yellow]" if state.stale else ""
    label = (
        f"[{style}]{symbol.name}[/{style}]{marker} [dim]{symbol.kind.value} "
        f"L{symbol.span.start_line}-{symbol.span.end_line} ~{symbol.estimated_tokens} tok "
        f"{state.depth.label}[/dim]"
    )
    node = parent.add(label)
    for child in symbol.children:
        _add_symbol(node, child, snapshot, agent)


def _print_diagnostics(snapshot: Snapshot) -> None:
    counters = {k: v for k, v in snapshot.diagnostics.to_dict().items() if v}
    if counters:
        summary = ", ".join(f"{k.replace('_', ' ')}: {v}" for k, v in counters.items())
        console.print(f"[dim]{summary}[/dim]")


def _snapshot_to_dict(snapshot: Snapshot, agent: str | None) -> dict[str, object]:
    files: dict[str, list[dict[str, object]]] = {}
    for file_path in sorted(snapshot.files):
        rows = []
        for symbol in snapshot.iter_symbols(file_path):
            state = snapshot.state_of(symbol.id, agent)
            rows.append(
                {
                    "id": symbol.id,
                    "name_path": symbol.qualified_name,
                    "kind": symbol.kind.value,
                    "start_line": symbol.span.start_line,
                    "end_line": symbol.span.end_line,
                    "tokens": symbol.estimated_tokens,
                    "depth": state.depth.label,
                    "stale": state.stale,
                }
            )
        files[file_path] = rows
    return {
        "session_id": snapshot.session_id,
        "revision": snapshot.revision,
        "agents": list(snapshot.agents),
        "files": files,
        "diagnostics": snapshot.diagnostics.to_dict(),
    }


if __name__ == "__main__":
    app()
