"""SessionVault CLI - browse, search and maintain session memories."""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Optional

import structlog
import typer
from rich.console import Console
from rich.table import Table

from sessionvault import __version__
from sessionvault.config import (
    RETENTION_OPTIONS,
    SESSIONVAULT_DIR,
    archive_dir,
    config_path,
    db_path,
    ensure_dirs,
    load_config,
)
from sessionvault.memory.models import SearchOptions, SessionMemory, TaskStatus
from sessionvault.memory.store import SessionStore

app = typer.Typer(
    name="sessionvault",
    help="Persistent, searchable memory of your coding agent sessions.",
    no_args_is_help=True,
)
mcp_app = typer.Typer(help="MCP server management.")
app.add_typer(mcp_app, name="mcp")

console = Console()

_state = {"data_dir": SESSIONVAULT_DIR}


def configure_logging(verbose: bool = False) -> None:
    """Send structured logs to stderr, at WARNING unless verbose."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO if verbose else logging.WARNING),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def version_callback(value: bool) -> None:
    if value:
        console.print(f"sessionvault {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    data_dir: Annotated[
        Path,
        typer.Option("--data-dir", envvar="SESSIONVAULT_DIR", help="Storage location"),
    ] = SESSIONVAULT_DIR,
    verbose: Annotated[bool, typer.Option("--verbose", help="Log retention and storage activity")] = False,
    version: Annotated[
        Optional[bool],
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
) -> None:
    """SessionVault - persistent memory for AI coding agent sessions."""
    configure_logging(verbose)
    _state["data_dir"] = data_dir
    ensure_dirs(data_dir)


def _open_store() -> SessionStore:
    return SessionStore(db_path(_state["data_dir"]))


def format_duration(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


def format_relative(when: datetime) -> str:
    seconds = (datetime.now(timezone.utc) - when).total_seconds()
    minutes = int(seconds // 60)
    hours = minutes // 60
    days = hours // 24
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if hours < 24:
        return f"{hours}h ago"
    if days < 7:
        return f"{days}d ago"
    return when.strftime("%Y-%m-%d")


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def truncate(text: str, max_len: int) -> str:
    return text if len(text) <= max_len else text[: max_len - 3] + "..."


def render_markdown(session: SessionMemory) -> str:
    """Render a session as a Markdown document."""
    lines = [
        f"# {session.summary or 'Session'}",
        "",
        f"- **Project:** {session.project_name} (`{session.project_path}`)",
        f"- **Started:** {session.started_at.isoformat()}",
        f"- **Duration:** {format_duration(session.duration)}",
        f"- **Tokens:** {session.tokens_used:,}",
        "",
    ]
    if session.description:
        lines += ["## Description", "", session.description, ""]
    if session.tasks:
        lines += ["## Tasks", ""]
        for task in session.tasks:
            mark = "x" if task.status == TaskStatus.COMPLETED else " "
            lines.append(f"- [{mark}] {task.description} ({task.status.value})")
        lines.append("")
    sections = [
        ("Files Created", session.files_created),
        ("Files Modified", session.files_modified),
        ("Files Deleted", session.files_deleted),
        ("Key Decisions", session.key_decisions),
        ("Blockers", session.blockers),
        ("Next Steps", session.next_steps),
    ]
    for title, items in sections:
        if items:
            lines += [f"## {title}", ""] + [f"- {item}" for item in items] + [""]
    if session.tags:
        lines += [f"Tags: {', '.join(session.tags)}", ""]
    return "\n".join(lines)


def _print_detail(session: SessionMemory) -> None:
    console.print(f"[bold]{session.summary or 'No summary'}[/bold]")
    console.print(
        f"[dim]{session.project_name} - {format_relative(session.started_at)} - "
        f"{format_duration(session.duration)} - {session.tokens_used:,} tokens[/dim]"
    )
    if session.description:
        console.print(f"\n{session.description}")
    pending = [t for t in session.tasks if t.status != TaskStatus.COMPLETED]
    if pending:
        console.print("\n[bold]Open tasks:[/bold]")
        for task in pending:
            console.print(f"  - {task.description} [dim]({task.status.value})[/dim]")
    if session.next_steps:
        console.print("\n[bold]Next steps:[/bold]")
        for step in session.next_steps:
            console.print(f"  - {step}")
    if session.blockers:
        console.print("\n[bold red]Blockers:[/bold red]")
        for blocker in session.blockers:
            console.print(f"  - {blocker}")
    console.print(f"\n[dim]ID: {session.id}[/dim]")


# ── Browse commands ──────────────────────────────────────────────


@app.command("show")
def show(
    project: Annotated[
        Path, typer.Option("--project", "-p", help="Project path")
    ] = Path("."),
) -> None:
    """Show the last session for a project."""
    with _open_store() as store:
        session = store.get_last_for_project(str(project.resolve()))
        if session:
            _print_detail(session)
            return

        recent = store.get_recent(3)
        if not recent:
            console.print("[dim]No session memories found.[/dim]")
            return
        console.print("[yellow]No session memory found for this project.[/yellow]")
        console.print("Recent sessions from other projects:")
        for s in recent:
            console.print(f"  - {s.project_name}: {s.summary or 'No summary'} ({format_relative(s.started_at)})")


@app.command("list")
def list_sessions(
    project: Annotated[
        Optional[str], typer.Option("--project", "-p", help="Filter by project path")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-l", help="Sessions to show")] = 0,
    include_archived: Annotated[
        bool, typer.Option("--all", "-a", help="Include archived sessions")
    ] = False,
) -> None:
    """List saved sessions."""
    limit = limit or load_config(config_path(_state["data_dir"])).ui.recent_count
    with _open_store() as store:
        if include_archived:
            sessions = store.get_all(include_archived=True)[:limit]
        else:
            sessions = store.get_recent(limit, project)
        stats = store.get_stats()

    if not sessions:
        console.print("[dim]No session memories found.[/dim]")
        return

    table = Table(title=f"Sessions ({len(sessions)} of {stats.total_sessions})")
    table.add_column("ID", style="cyan")
    table.add_column("Project", style="green")
    table.add_column("Summary")
    table.add_column("When")
    table.add_column("Duration")
    for s in sessions:
        summary = truncate(s.summary or "No summary", 60)
        if s.archived:
            summary = f"[dim]{summary} (archived)[/dim]"
        table.add_row(s.id, s.project_name, summary, format_relative(s.started_at), format_duration(s.duration))

    console.print(table)
    console.print(f"[dim]Storage: {format_bytes(stats.storage_used_bytes)} used[/dim]")


@app.command("search")
def search(
    query: Annotated[str, typer.Argument(help="Search text")],
    project: Annotated[
        Optional[str], typer.Option("--project", "-p", help="Limit to a project")
    ] = None,
    since: Annotated[
        Optional[str], typer.Option("--since", help="e.g. 'last week', '3 days ago', 2025-01-01")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-l", help="Max results")] = 10,
    include_archived: Annotated[
        bool, typer.Option("--all", "-a", help="Include archived sessions")
    ] = False,
) -> None:
    """Search across all sessions."""
    from sessionvault.memory.search import SearchIndex, parse_date

    from_date = None
    if since:
        from_date = parse_date(since)
        if from_date is None:
            console.print(f"[red]Error:[/red] could not understand date {since!r}")
            raise typer.Exit(1)

    config = load_config(config_path(_state["data_dir"]))
    if not config.search.enabled:
        console.print("[yellow]Search is disabled.[/yellow] Set search.enabled in config.yml to turn it on.")
        raise typer.Exit(1)

    with _open_store() as store:
        index = SearchIndex(store, fetch_multiplier=config.search.fetch_multiplier)
        results = index.search(
            SearchOptions(
                query=query,
                project_path=project,
                from_date=from_date,
                limit=limit,
                include_archived=include_archived,
            )
        )

    if not results:
        console.print(f"[yellow]No sessions found matching[/yellow] {query!r}")
        return

    for i, r in enumerate(results, 1):
        s = r.session
        console.print(f"[bold]{i}. {truncate(s.summary or 'No summary', 60)}[/bold]")
        console.print(f"   [dim]{format_relative(s.started_at)} - {format_duration(s.duration)} - {s.project_name}[/dim]")
        if r.matches:
            highlight = r.matches[0].highlight.replace("<mark>", "[bold yellow]").replace("</mark>", "[/bold yellow]")
            console.print(f"   {truncate(highlight, 120)}")
        console.print(f"   [dim]ID: {s.id}[/dim]")


@app.command("resume")
def resume(
    session_id: Annotated[Optional[str], typer.Argument(help="Session ID")] = None,
    project: Annotated[
        Path, typer.Option("--project", "-p", help="Project path")
    ] = Path("."),
) -> None:
    """Print a session's context as JSON for an agent to pick up."""
    with _open_store() as store:
        if session_id:
            session = store.get_by_id(session_id)
        else:
            session = store.get_last_for_project(str(project.resolve()))

    if not session:
        console.print(f"[red]Session not found:[/red] {session_id or 'last session'}")
        raise typer.Exit(1)

    context = session.model_dump(
        mode="json",
        exclude={"archived", "archived_at", "synced", "synced_at", "log_file", "log_file_archived"},
    )
    context["tasks_completed"] = session.tasks_completed
    context["tasks_pending"] = session.tasks_pending
    typer.echo("---CONTEXT_START---")
    typer.echo(json.dumps(context, indent=2))
    typer.echo("---CONTEXT_END---")


@app.command("export")
def export(
    session_id: Annotated[Optional[str], typer.Argument(help="Session ID")] = None,
    fmt: Annotated[str, typer.Option("--format", "-f", help="md or json")] = "md",
    output: Annotated[
        Optional[Path], typer.Option("--output", "-o", help="Output file")
    ] = None,
    project: Annotated[
        Path, typer.Option("--project", "-p", help="Project path")
    ] = Path("."),
) -> None:
    """Export a session to Markdown or JSON."""
    if fmt not in ("md", "json"):
        console.print(f"[red]Error:[/red] unknown format {fmt!r}")
        raise typer.Exit(1)

    with _open_store() as store:
        if session_id:
            session = store.get_by_id(session_id)
        else:
            session = store.get_last_for_project(str(project.resolve()))

    if not session:
        console.print(f"[red]Session not found:[/red] {session_id or 'last session'}")
        raise typer.Exit(1)

    if fmt == "json":
        content = session.model_dump_json(indent=2)
    else:
        content = render_markdown(session)

    if output:
        output.write_text(content)
        console.print(f"[green]Exported:[/green] {output.resolve()}")
    else:
        typer.echo(content)


@app.command("transcript")
def transcript(
    session_id: Annotated[str, typer.Argument(help="Session ID")],
) -> None:
    """Print a session's raw transcript, from its compressed archive if needed."""
    from sessionvault.memory.retention import decompress_log_file

    with _open_store() as store:
        session = store.get_by_id(session_id)
    if not session:
        console.print(f"[red]Session not found:[/red] {session_id}")
        raise typer.Exit(1)

    content = None
    if session.log_file_archived:
        content = decompress_log_file(session.log_file_archived)
    if content is None and session.log_file and Path(session.log_file).is_file():
        content = Path(session.log_file).read_text()
    if content is None:
        console.print("[yellow]Transcript is no longer available.[/yellow]")
        raise typer.Exit(1)
    typer.echo(content)


# ── Maintenance commands ─────────────────────────────────────────


@app.command("stats")
def stats() -> None:
    """Show storage statistics."""
    with _open_store() as store:
        st = store.get_stats()

    table = Table(title="Storage")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Total sessions", str(st.total_sessions))
    table.add_row("Active", str(st.active_sessions))
    table.add_row("Archived", str(st.archived_sessions))
    table.add_row("Database size", format_bytes(st.storage_used_bytes))
    table.add_row("Oldest", st.oldest_session.isoformat() if st.oldest_session else "-")
    table.add_row("Newest", st.newest_session.isoformat() if st.newest_session else "-")
    console.print(table)


@app.command("settings")
def settings() -> None:
    """Show the current configuration."""
    from sessionvault.host import is_host_retention_overridden

    path = config_path(_state["data_dir"])
    config = load_config(path)
    retention = config.retention

    def label(value: str) -> str:
        option = RETENTION_OPTIONS.get(value)
        return f"{value} ({option['label']})" if option else value

    console.print("[bold]Retention[/bold]")
    console.print(f"  Full sessions:  {label(retention.full_sessions)}")
    console.print(f"  Archives:       {label(retention.archives)}")
    console.print(f"  Max storage:    {retention.max_storage_gb} GB")
    icon = "[green]✓[/green]" if is_host_retention_overridden() else "[red]✗[/red]"
    console.print(f"  {icon} Host transcript retention extended")
    console.print("\n[bold]Search[/bold]")
    console.print(f"  Enabled:        {config.search.enabled}")
    console.print(f"\n[dim]Config file: {path}[/dim]")


@app.command("archive")
def archive(
    days: Annotated[int, typer.Option("--days", "-d", help="Archive sessions older than this")] = 30,
) -> None:
    """Archive sessions older than a number of days."""
    with _open_store() as store:
        count = store.archive_old(days)
    console.print(f"[green]Archived {count} session(s).[/green]")


@app.command("cleanup")
def cleanup() -> None:
    """Apply the retention policy: archive, compress, delete and trim."""
    from sessionvault.memory.retention import RetentionManager

    data_dir = _state["data_dir"]
    config = load_config(config_path(data_dir))
    with _open_store() as store:
        manager = RetentionManager(store, config.retention, archive_dir=archive_dir(data_dir), data_dir=data_dir)
        report = manager.run_cleanup()

    console.print("[bold]Cleanup complete[/bold]")
    console.print(f"  Archived:        {report.sessions_archived}")
    console.print(f"  Logs compressed: {report.log_files_backed_up}")
    console.print(f"  Deleted:         {report.sessions_deleted}")
    console.print(f"  Freed:           {format_bytes(report.bytes_freed)}")


# ── MCP commands ─────────────────────────────────────────────────


@mcp_app.command("serve")
def mcp_serve() -> None:
    """Start the MCP server (stdio transport)."""
    from sessionvault.mcp import server

    server.config = load_config(config_path(_state["data_dir"]))
    server.store = _open_store()
    server.mcp.run()
