"""CLI interface for the epic orchestrator."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .config import load_config
from .errors import OrchestratorError
from .gateways import GhTrackerGateway, GitWorktreeGateway, TmuxSessionGateway
from .models import (
    MergeMethod, OrchestratorSnapshot, PhaseStatus, PipelineStatus, SessionStatus,
)
from .orchestrator import Orchestrator

console = Console()

if sys.platform == "win32":
    SYM_OK = "[OK]"
    SYM_FAIL = "[X]"
else:
    SYM_OK = "✓"
    SYM_FAIL = "✗"

PHASE_COLORS = {
    PhaseStatus.NOT_STARTED: "white",
    PhaseStatus.READY: "cyan",
    PhaseStatus.IN_PROGRESS: "yellow",
    PhaseStatus.COMPLETED: "green",
    PhaseStatus.SKIPPED: "dim",
}

PIPELINE_COLORS = {
    PipelineStatus.QUEUED: "white",
    PipelineStatus.IN_PROGRESS: "yellow",
    PipelineStatus.PR_PENDING: "yellow",
    PipelineStatus.PR_REVIEW: "cyan",
    PipelineStatus.COMPLETED: "green",
    PipelineStatus.SKIPPED: "dim",
    PipelineStatus.FAILED: "red",
}


def build_orchestrator(project_path: str, **overrides) -> Orchestrator:
    """Wire the engine with the GitHub, tmux and git gateways."""
    try:
        config = load_config(Path(project_path), overrides)
    except OrchestratorError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        sys.exit(1)
    return Orchestrator.for_project(
        Path(project_path),
        config,
        tracker=GhTrackerGateway(working_labels=config.working_labels),
        sessions=TmuxSessionGateway(prefix=config.session_prefix),
        worktrees=GitWorktreeGateway(base_path=config.worktree_base) if config.use_worktrees else None,
    )


def run_async(coro):
    """Run a coroutine, turning engine errors into a red line and exit code 1."""
    try:
        return asyncio.run(coro)
    except OrchestratorError as e:
        console.print(f"[red]Error ({e.category.value}): {e.message}[/red]")
        sys.exit(1)


async def _refresh(orchestrator: Orchestrator) -> None:
    """Load sessions and the selected epic so pipeline items exist."""
    await orchestrator.supervisor.refresh()
    await orchestrator.force_sync()


def print_epic(snapshot: OrchestratorSnapshot) -> None:
    if snapshot.epic is None:
        console.print("[yellow]No snapshot yet. Run 'epicorch sync' first.[/yellow]")
        return

    epic = snapshot.epic
    console.print(f"[bold]{epic.title}[/bold] ({epic.ref})")
    console.print(f"Work repository: {epic.work_repo}")
    if epic.local_repo_path:
        console.print(f"Local path: {epic.local_repo_path}")

    table = Table(title="Phases")
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Done", justify="right")
    table.add_column("Approach")
    for phase in snapshot.phases:
        color = PHASE_COLORS.get(phase.status, "white")
        table.add_row(
            str(phase.number),
            phase.name,
            f"[{color}]{phase.status.value}[/{color}]",
            f"{phase.completed_count}/{phase.total_count}",
            phase.approach,
        )
    console.print(table)

    issues = Table(title="Sub-issues")
    issues.add_column("Issue", style="cyan")
    issues.add_column("Title")
    issues.add_column("Phase", justify="right")
    issues.add_column("State")
    issues.add_column("Agent")
    issues.add_column("PR")
    for sub in snapshot.sub_issues:
        state = "[green]closed[/green]" if sub.is_closed else "open"
        issues.add_row(
            f"#{sub.number}",
            sub.title,
            str(sub.phase or "-"),
            state,
            SYM_OK if sub.has_agent_working else "",
            f"#{sub.pr_number}" if sub.pr_number else "",
        )
    console.print(issues)

    counts = snapshot.counts
    console.print(
        f"\n[green]Completed:[/green] {counts.completed}  "
        f"[cyan]Ready:[/cyan] {counts.ready}  "
        f"[yellow]In Progress:[/yellow] {counts.in_progress}  "
        f"[white]Queued:[/white] {counts.queued}  "
        f"[dim]Blocked:[/dim] {counts.blocked}  "
        f"({counts.completed}/{counts.total}, {counts.percentage}%)"
    )
    if snapshot.last_check:
        console.print(f"[dim]Last check: {snapshot.last_check:%Y-%m-%d %H:%M:%S}[/dim]")
    if snapshot.last_error:
        console.print(f"[red]Last error: {snapshot.last_error}[/red]")
    if snapshot.next_phase_ready:
        console.print(f"[cyan]Phase {snapshot.next_phase_ready} is ready to start[/cyan]")


def print_pipeline(snapshot: OrchestratorSnapshot) -> None:
    if not snapshot.pipeline_items:
        return
    table = Table(title="Pipeline")
    table.add_column("Issue", style="cyan")
    table.add_column("Status")
    table.add_column("Session")
    table.add_column("PR")
    table.add_column("Error")
    for item in snapshot.pipeline_items:
        color = PIPELINE_COLORS.get(item.status, "white")
        table.add_row(
            f"#{item.issue_number}",
            f"[{color}]{item.status.value}[/{color}]",
            item.session_name or "",
            f"#{item.pr_number} ({item.pr_status.value})" if item.pr_number else "",
            item.error or "",
        )
    console.print(table)


@click.group()
@click.version_option()
@click.option('--project', '-p', type=click.Path(exists=True, file_okay=False), default='.',
              help='Project directory holding .epicorch/ state')
@click.pass_context
def main(ctx, project: str):
    """Epic Orchestrator - monitor epics and drive agent sessions."""
    ctx.ensure_object(dict)
    ctx.obj["project"] = project


@main.command()
@click.argument('ref')
@click.option('--repo-path', type=click.Path(exists=True, file_okay=False),
              help='Local checkout of the work repository')
@click.pass_context
def link(ctx, ref: str, repo_path: Optional[str]):
    """Link an epic (owner/repo#N) and fetch it once."""
    orchestrator = build_orchestrator(ctx.obj["project"])

    async def _link():
        await orchestrator.link_epic(ref, str(Path(repo_path).resolve()) if repo_path else None)
        return await orchestrator.force_sync()

    outcome = run_async(_link())
    if not outcome.success:
        console.print(f"[yellow]Linked {ref}, but the first sync failed: {outcome.error}[/yellow]")
        return
    console.print(f"[green]{SYM_OK} Linked {ref}[/green]")
    print_epic(orchestrator.snapshot())


@main.command()
@click.argument('ref', required=False)
@click.pass_context
def unlink(ctx, ref: Optional[str]):
    """Forget an epic (the last used one by default)."""
    orchestrator = build_orchestrator(ctx.obj["project"])
    if run_async(orchestrator.unlink_epic(ref)):
        console.print(f"[green]{SYM_OK} Unlinked[/green]")
    else:
        console.print("[yellow]Nothing stored for that epic[/yellow]")


@main.command()
@click.option('--sync', 'do_sync', is_flag=True, help='Fetch from the tracker before printing')
@click.pass_context
def status(ctx, do_sync: bool):
    """Show the last known state of the linked epic."""
    orchestrator = build_orchestrator(ctx.obj["project"])

    async def _status():
        orchestrator.current_ref()
        if do_sync:
            await _refresh(orchestrator)

    run_async(_status())
    snapshot = orchestrator.snapshot()
    print_epic(snapshot)
    print_pipeline(snapshot)


@main.command()
@click.pass_context
def sync(ctx):
    """Sync the linked epic once."""
    orchestrator = build_orchestrator(ctx.obj["project"])
    outcome = run_async(orchestrator.force_sync())

    if not outcome.success:
        console.print(f"[red]{SYM_FAIL} Sync failed: {outcome.error}[/red]")
        sys.exit(1)

    for event in outcome.completions:
        note = "" if event.notified or not event.notify_error else f" [yellow](notify failed: {event.notify_error})[/yellow]"
        console.print(f"[green]{SYM_OK} #{event.issue_number} completed[/green] {event.title}{note}")
    for phase in outcome.completed_phases:
        console.print(f"[green]{SYM_OK} Phase {phase} completed[/green]")
    print_epic(orchestrator.snapshot())


@main.command()
@click.argument('ref', required=False)
@click.option('--interval', type=float, help='Seconds between epic syncs')
@click.option('--max-failures', type=int, help='Stop after this many failed syncs in a row')
@click.pass_context
def monitor(ctx, ref: Optional[str], interval: Optional[float], max_failures: Optional[int]):
    """Monitor the epic until interrupted, printing every notification."""
    orchestrator = build_orchestrator(
        ctx.obj["project"],
        epic_poll_interval_seconds=interval,
        max_consecutive_sync_failures=max_failures,
    )

    def on_event(event: str, snapshot: OrchestratorSnapshot) -> None:
        counts = snapshot.counts
        if event == "epic.synced":
            console.print(
                f"[dim]{snapshot.last_check:%H:%M:%S} synced: "
                f"{counts.completed}/{counts.total} completed, {counts.ready} ready, "
                f"{counts.in_progress} in progress[/dim]"
            )
        elif event == "epic.sync_failed":
            console.print(f"[red]Sync failed: {snapshot.last_error}[/red]")
        elif event in ("issue.completed", "phase.completed"):
            console.print(f"[green]{event}[/green] ({counts.completed}/{counts.total})")
        elif event == "monitoring.stopped":
            console.print("[yellow]Monitoring stopped[/yellow]")

    async def _monitor():
        orchestrator.subscribe(on_event)
        await orchestrator.start()
        await orchestrator.start_monitoring(ref)
        try:
            while orchestrator.monitor.is_monitoring:
                await asyncio.sleep(1)
        finally:
            await orchestrator.shutdown()

    console.print("[bold]Monitoring[/bold] - press Ctrl+C to stop\n")
    try:
        run_async(_monitor())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")


@main.command()
@click.pass_context
def sessions(ctx):
    """List worker sessions."""
    orchestrator = build_orchestrator(ctx.obj["project"])
    live = run_async(orchestrator.list_sessions())

    if not live:
        console.print("[yellow]No worker sessions[/yellow]")
        return

    table = Table(title="Worker sessions")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Issue")
    table.add_column("Agent")
    table.add_column("Attached")
    table.add_column("Recovery")
    for session in live:
        meta = session.metadata
        color = "green" if session.status == SessionStatus.RUNNING else "yellow"
        table.add_row(
            session.name,
            f"[{color}]{session.status.value}[/{color}]",
            (meta.issue_ref or "") if meta else "",
            meta.agent_type if meta else "",
            SYM_OK if session.attached else "",
            "recoverable" if session.is_recoverable else "",
        )
    console.print(table)


@main.command()
@click.argument('name')
@click.pass_context
def kill(ctx, name: str):
    """Kill a worker session."""
    orchestrator = build_orchestrator(ctx.obj["project"])
    result = run_async(orchestrator.kill(name))
    if result.already_gone:
        console.print(f"[yellow]{name} was already gone[/yellow]")
    else:
        console.print(f"[green]{SYM_OK} Killed {name}[/green]")


@main.command()
@click.argument('name')
@click.pass_context
def restart(ctx, name: str):
    """Restart the agent of a stopped session."""
    orchestrator = build_orchestrator(ctx.obj["project"])
    session = run_async(orchestrator.restart(name))
    console.print(f"[green]{SYM_OK} Restarted {session.name}[/green]")


@main.command()
@click.option('--dry-run', is_flag=True, help='Only show what would be done')
@click.option('--cleanup', is_flag=True, help='Also kill stopped sessions with no issue')
@click.pass_context
def recover(ctx, dry_run: bool, cleanup: bool):
    """Restart every stopped session that is still bound to an issue."""
    orchestrator = build_orchestrator(ctx.obj["project"])
    results = run_async(orchestrator.recover_all(dry_run=dry_run, cleanup_orphans=cleanup))

    if not results:
        console.print("[green]Nothing to recover[/green]")
        return

    for result in results:
        if result.dry_run:
            console.print(f"[dim]would {result.action.value}[/dim] {result.session}")
        elif result.success:
            console.print(f"[green]{SYM_OK} {result.action.value}[/green] {result.session}")
        else:
            console.print(f"[red]{SYM_FAIL} {result.action.value} {result.session}: {result.error}[/red]")

    if any(not r.success for r in results):
        sys.exit(1)


@main.command()
@click.argument('issue', type=int)
@click.option('--agent', help='Agent type (default from config)')
@click.option('--repo-path', help='Local repository path (default: the one recorded for the epic)')
@click.pass_context
def assign(ctx, issue: int, agent: Optional[str], repo_path: Optional[str]):
    """Start an agent session for a sub-issue."""
    orchestrator = build_orchestrator(ctx.obj["project"])

    async def _assign():
        await _refresh(orchestrator)
        return await orchestrator.assign(issue, agent, repo_path)

    result = run_async(_assign())
    console.print(f"[green]{SYM_OK} #{result.issue_number} -> {result.session_name} ({result.agent_type})[/green]")
    if result.worktree_path:
        console.print(f"  Worktree: {result.worktree_path} ({result.branch})")
    if result.tracker_error:
        console.print(f"[yellow]  Issue not marked as assigned: {result.tracker_error}[/yellow]")


@main.command('open-pr')
@click.argument('issue', type=int)
@click.option('--title', help='Pull request title (default from the issue)')
@click.pass_context
def open_pr(ctx, issue: int, title: Optional[str]):
    """Push an agent's branch and open its pull request."""
    orchestrator = build_orchestrator(ctx.obj["project"])

    async def _open_pr():
        await _refresh(orchestrator)
        return await orchestrator.open_pr(issue, title)

    item = run_async(_open_pr())
    console.print(f"[green]{SYM_OK} #{issue} -> PR #{item.pr_number} {item.pr_url or ''}[/green]")


@main.command('detect-prs')
@click.pass_context
def detect_prs(ctx):
    """Link pull requests agents opened on their issue branches."""
    orchestrator = build_orchestrator(ctx.obj["project"])

    async def _detect():
        await _refresh(orchestrator)
        return await orchestrator.detect_prs()

    linked = run_async(_detect())
    if not linked:
        console.print("[dim]No new pull requests found[/dim]")
    for item in linked:
        console.print(f"[green]{SYM_OK} #{item.issue_number} -> PR #{item.pr_number}[/green]")


@main.command()
@click.argument('issue', type=int)
@click.pass_context
def skip(ctx, issue: int):
    """Skip a queued sub-issue."""
    orchestrator = build_orchestrator(ctx.obj["project"])

    async def _skip():
        await _refresh(orchestrator)
        return await orchestrator.skip(issue)

    run_async(_skip())
    console.print(f"[green]{SYM_OK} Skipped #{issue}[/green]")


merge_method_option = click.option(
    '--method', type=click.Choice([m.value for m in MergeMethod]), help='Merge method (default from config)'
)
keep_branch_option = click.option('--keep-branch', is_flag=True, help="Don't delete the branch after merging")


@main.command()
@click.argument('issue', type=int)
@merge_method_option
@keep_branch_option
@click.pass_context
def merge(ctx, issue: int, method: Optional[str], keep_branch: bool):
    """Merge the pull request of one sub-issue."""
    orchestrator = build_orchestrator(ctx.obj["project"])

    async def _merge():
        await _refresh(orchestrator)
        return await orchestrator.merge_one(
            issue, MergeMethod(method) if method else None, False if keep_branch else None,
        )

    result = run_async(_merge())
    if not result.success:
        console.print(f"[red]{SYM_FAIL} Merge of #{issue} failed: {result.error}[/red]")
        sys.exit(1)
    console.print(f"[green]{SYM_OK} Merged #{issue}[/green]")
    if result.phase_complete:
        next_note = f"; phase {result.next_phase} is next" if result.next_phase else ""
        console.print(f"[green]Phase {result.phase} complete{next_note}[/green]")


@main.command('merge-ready')
@merge_method_option
@keep_branch_option
@click.pass_context
def merge_ready(ctx, method: Optional[str], keep_branch: bool):
    """Merge every pull request that is ready."""
    orchestrator = build_orchestrator(ctx.obj["project"])

    async def _merge_ready():
        await _refresh(orchestrator)
        return await orchestrator.merge_all_ready(
            MergeMethod(method) if method else None, False if keep_branch else None,
        )

    batch = run_async(_merge_ready())
    for result in batch.merges:
        if result.success:
            console.print(f"[green]{SYM_OK} #{result.issue_number}[/green]")
        else:
            console.print(f"[red]{SYM_FAIL} #{result.issue_number}: {result.error}[/red]")
    for phase in batch.completed_phases:
        console.print(f"[green]Phase {phase} complete[/green]")
    if batch.failed:
        sys.exit(1)


@main.command('mark-phase')
@click.argument('phase', type=int)
@click.option('--status', 'phase_status', type=click.Choice([s.value for s in PhaseStatus]),
              default=PhaseStatus.COMPLETED.value, help='Status to set')
@click.pass_context
def mark_phase(ctx, phase: int, phase_status: str):
    """Override a phase status on the tracker."""
    orchestrator = build_orchestrator(ctx.obj["project"])
    outcome = run_async(orchestrator.mark_phase_status(phase, PhaseStatus(phase_status)))
    console.print(f"[green]{SYM_OK} Phase {phase} marked {phase_status}[/green]")
    if not outcome.success:
        console.print(f"[yellow]Follow-up sync failed: {outcome.error}[/yellow]")


@main.command()
@click.option('--count', default=20, help='Number of entries to show')
@click.pass_context
def events(ctx, count: int):
    """Show the newest event log entries."""
    orchestrator = build_orchestrator(ctx.obj["project"])
    entries = orchestrator.event_log.read_recent(count) if orchestrator.event_log else []
    if not entries:
        console.print("[yellow]No events logged yet.[/yellow]")
        return
    for entry in entries:
        details = ", ".join(f"{k}={v}" for k, v in entry.items() if k not in ("type", "timestamp"))
        console.print(f"[dim]{entry.get('timestamp', '')}[/dim] [cyan]{entry.get('type')}[/cyan] {details}")


@main.command()
@click.option('--host', default='127.0.0.1', help='Host to bind to')
@click.option('--port', default=8000, help='Port to listen on')
@click.option('--monitor', 'start_monitor', is_flag=True, help='Start monitoring the linked epic')
@click.pass_context
def serve(ctx, host: str, port: int, start_monitor: bool):
    """Start the API server.

    Starts a FastAPI server that provides:
    - REST API at http://host:port/api/
    - WebSocket at ws://host:port/ws/events
    - API docs at http://host:port/docs
    """
    from .api import serve as serve_api

    orchestrator = build_orchestrator(ctx.obj["project"])

    async def _serve():
        if start_monitor:
            await orchestrator.start_monitoring()
        await serve_api(orchestrator, host=host, port=port)

    console.print("[bold]Starting Epic Orchestrator API[/bold]")
    console.print(f"API: http://{host}:{port}/api/")
    console.print(f"Docs: http://{host}:{port}/docs")
    console.print(f"WebSocket: ws://{host}:{port}/ws/events")
    console.print("\nPress Ctrl+C to stop\n")

    try:
        run_async(_serve())
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")


if __name__ == '__main__':
    main()
