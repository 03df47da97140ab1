"""CLI interface for the agent swarm."""

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import save_config
from .context import SwarmContext
from .models import AgentStatus, CoordinationState, MessagePriority, MessageType
from .orchestration.shutdown import EXIT_FAILURE, EXIT_INTERRUPTED
from .process_monitor import format_duration

console = Console()

# Windows-compatible symbols (cp1252 doesn't support Unicode checkmarks)
if sys.platform == "win32":
    SYM_OK = "[OK]"
    SYM_FAIL = "[X]"
else:
    SYM_OK = "✓"
    SYM_FAIL = "✗"

STATUS_COLORS = {
    AgentStatus.RUNNING: "yellow",
    AgentStatus.COMPLETED: "green",
    AgentStatus.FAILED: "red",
    AgentStatus.STOPPED: "dim",
}


def _context(project_path: str) -> SwarmContext:
    return SwarmContext.create(Path(project_path), quiet=True)


def _report_failure(ctx: SwarmContext, error: BaseException, context: Optional[dict] = None) -> None:
    """Explain an error and list ranked suggestions."""
    explanation = ctx.recovery.explain_error(error, context)
    analysis = ctx.recovery.analyze(error, context)
    console.print(f"[red]{SYM_FAIL} {error}[/red]")
    console.print(f"[dim]{explanation.explanation}[/dim]")
    console.print(f"Likely cause: {explanation.likely_cause}")
    if analysis.suggestions:
        console.print("\n[bold]Suggestions:[/bold]")
        for suggestion in analysis.suggestions[:3]:
            console.print(f"  - {suggestion.description} [dim]({suggestion.confidence:.0%}, {suggestion.source})[/dim]")


@click.group()
@click.version_option(package_name="agent-swarm")
def main():
    """Agent Swarm - run and coordinate parallel coding agents."""
    pass


@main.command()
@click.argument('project_path', type=click.Path(exists=True))
@click.option('--max-agents', type=int, help='Maximum concurrent agents')
@click.option('--agent-command', help='Agent executable (default: claude)')
def init(project_path: str, max_agents: Optional[int], agent_command: Optional[str]):
    """Create the .swarm/ directory and a default config."""
    ctx = _context(project_path)
    ctx.workspace.ensure_structure()

    updates = {}
    if max_agents is not None:
        updates["max_concurrent_agents"] = max_agents
    if agent_command:
        updates["agent_command"] = agent_command
    config = ctx.config.model_copy(update=updates)
    config_file = save_config(ctx.workspace.project_path, config)

    if ctx.workspace.update_gitignore():
        console.print(f"[green]{SYM_OK}[/green] Added .swarm/ to .gitignore")
    console.print(f"[green]{SYM_OK}[/green] Swarm workspace ready: {ctx.workspace.swarm_dir}")
    console.print(f"  Config: {config_file}")


# =============================================================================
# Agents
# =============================================================================


@main.command()
@click.argument('project_path', type=click.Path(exists=True))
@click.argument('role')
@click.argument('task')
@click.option('--no-worktree', is_flag=True, help='Run in the project directory instead of a worktree')
def spawn(project_path: str, role: str, task: str, no_worktree: bool):
    """Spawn one agent with ROLE working on TASK."""
    ctx = _context(project_path)
    try:
        if not ctx.spawner.agent_available():
            console.print(f"[yellow]Agent command '{ctx.config.agent_command}' not found on PATH[/yellow]")

        result = ctx.spawner.spawn(role, task, use_worktree=False if no_worktree else None)
        if result is None:
            check = ctx.resources.can_spawn_agent()
            console.print(f"[red]{SYM_FAIL} Failed to spawn {role} agent[/red]")
            for reason in check.reasons:
                console.print(f"  - {reason}")
            sys.exit(EXIT_FAILURE)

        console.print(f"[green]{SYM_OK}[/green] Spawned {result.role.value} agent (PID: {result.pid})")
        if result.worktree_path:
            console.print(f"  Worktree: {result.worktree_path}")
    finally:
        ctx.close()


@main.command()
@click.argument('project_path', type=click.Path(exists=True))
def status(project_path: str):
    """Show the session and its agents."""
    ctx = _context(project_path)
    ctx.monitor.reconcile()
    summary = ctx.sessions.session_status()

    if not summary.exists:
        console.print("[yellow]No active swarm session.[/yellow]")
        return

    console.print(f"[bold]Session {summary.session_id}[/bold] ({summary.status.value})")
    if summary.task_description:
        console.print(f"Task: {summary.task_description}")

    stuck = {a.pid for a in ctx.monitor.find_stuck_agents()}
    table = Table(title="Agents")
    table.add_column("PID", style="cyan", justify="right")
    table.add_column("Role")
    table.add_column("Status")
    table.add_column("Elapsed", justify="right")
    table.add_column("Task")

    for agent in summary.agents:
        color = STATUS_COLORS.get(agent.status, "white")
        label = agent.status.value + (" (stuck)" if agent.pid in stuck else "")
        table.add_row(
            str(agent.pid),
            agent.role.value,
            f"[{color}]{label}[/{color}]",
            format_duration(agent.elapsed_seconds()),
            (agent.task or "")[:60],
        )
    console.print(table)

    console.print(f"\n[yellow]Running:[/yellow] {summary.active}  "
                  f"[green]Completed:[/green] {summary.completed}  "
                  f"[red]Failed:[/red] {summary.failed}  "
                  f"[dim]Stopped:[/dim] {summary.stopped}")

    pending = ctx.messages.pending_messages()
    if pending:
        console.print(f"\n[bold yellow]{len(pending)} message(s) awaiting a response[/bold yellow] - see 'swarm messages'")


@main.command()
@click.argument('project_path', type=click.Path(exists=True))
@click.option('--interval', type=float, help='Seconds between polls')
@click.option('--timeout', type=float, help='Stop watching after this many seconds')
def watch(project_path: str, interval: Optional[float], timeout: Optional[float]):
    """Watch agents until they all finish. Ctrl+C stops them."""
    ctx = _context(project_path)
    ctx.shutdown.setup_signal_handlers()

    def on_tick(running):
        console.print(f"[dim]{len(running)} agent(s) running[/dim]")

    try:
        remaining = ctx.monitor.watch(
            interval=interval,
            timeout=timeout,
            on_tick=on_tick,
            should_stop=ctx.shutdown.is_shutdown_requested,
        )
        if ctx.shutdown.is_shutdown_requested():
            sys.exit(ctx.shutdown.graceful_shutdown())
        if remaining:
            console.print(f"[yellow]{len(remaining)} agent(s) still running[/yellow]")
        else:
            console.print(f"[green]{SYM_OK}[/green] All agents finished")
    finally:
        ctx.shutdown.restore_signal_handlers()
        ctx.close()


@main.command()
@click.argument('project_path', type=click.Path(exists=True))
@click.argument('pid', type=int)
def stop(project_path: str, pid: int):
    """Stop one agent."""
    ctx = _context(project_path)
    session = ctx.sessions.read_session()
    if session is None or session.find_agent(pid) is None:
        console.print(f"[red]No agent with PID {pid} in this session[/red]")
        sys.exit(EXIT_FAILURE)

    if ctx.spawner.stop(pid):
        console.print(f"[green]{SYM_OK}[/green] Stopped agent {pid}")
    else:
        console.print(f"[red]{SYM_FAIL} Could not stop agent {pid}[/red]")
        sys.exit(EXIT_FAILURE)


@main.command('stop-all')
@click.argument('project_path', type=click.Path(exists=True))
def stop_all(project_path: str):
    """Stop every running agent."""
    ctx = _context(project_path)
    count = ctx.spawner.stop_all()
    console.print(f"[green]{SYM_OK}[/green] Stopped {count} agent(s)")


@main.command()
@click.argument('project_path', type=click.Path(exists=True))
def resources(project_path: str):
    """Show resource usage against the configured limits."""
    ctx = _context(project_path)
    stats = ctx.resources.get_resource_stats()
    limits = ctx.config.limits

    table = Table(title="Resources", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Agents", f"{stats.active_agents}/{stats.max_agents}")
    table.add_row("Agent memory", f"{stats.memory_usage_mb:.0f}MB / {limits.max_memory_mb}MB")
    table.add_row("Workspace disk", f"{stats.disk_usage_mb:.1f}MB / {limits.max_disk_mb}MB")
    table.add_row("Load", f"{stats.system_load:.2f} / {stats.cpu_count * limits.load_factor:.2f}")
    console.print(table)

    check = ctx.resources.can_spawn_agent()
    if check.allowed:
        console.print(f"[green]{SYM_OK}[/green] New agents can be spawned")
    else:
        for reason in check.reasons:
            console.print(f"[red]{SYM_FAIL}[/red] {reason}")


# =============================================================================
# Coordination
# =============================================================================


@main.command()
@click.argument('project_path', type=click.Path(exists=True))
@click.option('--task', '-t', required=True, help='High-level task to coordinate')
@click.option('--detach', is_flag=True, help='Run the coordinator in the background')
@click.option('--timeout', type=float, help='Give up after this many seconds')
def coordinate(project_path: str, task: str, detach: bool, timeout: Optional[float]):
    """Decompose TASK and drive specialist agents through it."""
    ctx = _context(project_path)

    if detach:
        pid = ctx.coordinator.launch_detached(task)
        console.print(f"[green]{SYM_OK}[/green] Coordinator running in background (PID: {pid})")
        console.print("  Check progress with 'swarm coordination-status'")
        return

    ctx.shutdown.setup_signal_handlers()
    try:
        result = ctx.coordinator.run(task, timeout=timeout, should_stop=ctx.shutdown.is_shutdown_requested)
    except Exception as e:
        _report_failure(ctx, e, {"operation": "coordinate"})
        sys.exit(EXIT_FAILURE)
    finally:
        ctx.shutdown.restore_signal_handlers()
        ctx.close()

    if result.status == CoordinationState.COMPLETED:
        console.print(f"[green]{SYM_OK}[/green] {result.message}")
    elif result.status == CoordinationState.STOPPED:
        ctx.shutdown.clear_stop_request()
        console.print(f"[yellow]{result.message}[/yellow]")
        sys.exit(EXIT_INTERRUPTED)
    else:
        console.print(f"[red]{SYM_FAIL} {result.message}[/red]")
        sys.exit(EXIT_FAILURE)


@main.command('coordination-status')
@click.argument('project_path', type=click.Path(exists=True))
def coordination_status(project_path: str):
    """Show the coordinator's published status."""
    ctx = _context(project_path)
    status = ctx.coordinator.current_status()
    summary = ctx.coordinator.worker_summary()

    console.print(f"[bold]Coordination:[/bold] {status.status.value} ({status.phase.value})")
    console.print(f"Progress: {status.progress_percentage}%")
    console.print(f"Message: {status.message}")
    console.print(f"Agents: {summary['active']} active, {summary['completed']} completed, {summary['failed']} failed")
    if status.estimated_completion:
        console.print(f"Estimated completion: {status.estimated_completion:%H:%M:%S}")
    if status.control_pid:
        console.print(f"[dim]Coordinator PID: {status.control_pid}[/dim]")


@main.command('coordination-stop')
@click.argument('project_path', type=click.Path(exists=True))
def coordination_stop(project_path: str):
    """Stop the coordinator and every agent it started."""
    ctx = _context(project_path)
    if ctx.coordinator.stop():
        console.print(f"[green]{SYM_OK}[/green] Coordination stopped")
    else:
        console.print("[yellow]Nothing was running[/yellow]")


# =============================================================================
# Messages
# =============================================================================


@main.command()
@click.argument('project_path', type=click.Path(exists=True))
@click.option('--all', 'show_all', is_flag=True, help='Show recent messages, not just pending ones')
@click.option('--limit', default=10, help='Number of recent messages to show')
def messages(project_path: str, show_all: bool, limit: int):
    """List messages from agents."""
    ctx = _context(project_path)
    items = ctx.messages.recent_messages(limit) if show_all else ctx.messages.pending_messages()

    if not items:
        console.print("[dim]No messages.[/dim]")
        return

    for message in items:
        answered = ctx.messages.is_answered(message.id)
        marker = f"[green]{SYM_OK}[/green]" if answered else "[yellow]?[/yellow]" if message.requires_response else " "
        console.print(f"{marker} [cyan]{message.id}[/cyan] {escape(f'[{message.role}]')} {message.type.value}: {escape(message.content)}")
        if message.quick_actions and not answered:
            console.print(f"    Options: {', '.join(message.quick_actions)}")


@main.command()
@click.argument('project_path', type=click.Path(exists=True))
@click.argument('message_id')
@click.argument('response')
def respond(project_path: str, message_id: str, response: str):
    """Answer a message from an agent."""
    ctx = _context(project_path)
    if ctx.messages.get_message(message_id) is None:
        console.print(f"[red]No message {message_id}[/red]")
        sys.exit(EXIT_FAILURE)
    if not ctx.messages.respond(message_id, response):
        console.print(f"[yellow]Message {message_id} was already answered[/yellow]")
        sys.exit(EXIT_FAILURE)
    console.print(f"[green]{SYM_OK}[/green] Response sent")


@main.command()
@click.argument('project_path', type=click.Path(exists=True))
@click.argument('content')
@click.option('--agent-id', envvar='SWARM_AGENT_ID', required=True, help='Sender id (default: $SWARM_AGENT_ID)')
@click.option('--type', 'message_type', type=click.Choice([t.value for t in MessageType]), default='status')
@click.option('--priority', type=click.Choice([p.value for p in MessagePriority]), default='medium')
@click.option('--option', 'options', multiple=True, help='Quick-action answer (can specify multiple)')
@click.option('--wait', is_flag=True, help='Wait for a response and print it')
@click.option('--timeout', default=120, help='Seconds to wait for a response')
def send(
    project_path: str,
    content: str,
    agent_id: str,
    message_type: str,
    priority: str,
    options: tuple,
    wait: bool,
    timeout: int,
):
    """Post a message from an agent. Used by agents from inside their worktree."""
    ctx = _context(project_path)
    requires_response = wait or message_type in (MessageType.QUESTION.value, MessageType.DECISION.value)
    message_id = ctx.messages.send(
        agent_id,
        message_type,
        content,
        requires_response=requires_response,
        quick_actions=list(options),
        priority=priority,
        timeout=timeout,
    )

    if not wait:
        click.echo(message_id)
        return

    answer = ctx.messages.await_response(message_id, timeout=timeout)
    if answer is None:
        click.echo(f"No response within {timeout}s", err=True)
        sys.exit(EXIT_FAILURE)
    click.echo(answer)


# =============================================================================
# Maintenance
# =============================================================================


@main.command()
@click.argument('project_path', type=click.Path(exists=True))
@click.option('--all', 'everything', is_flag=True, help='Stop agents and remove every swarm worktree and branch')
@click.option('--messages-days', default=7, help='Delete messages older than this many days')
@click.option('--archive', is_flag=True, help='Archive and remove the session document')
def cleanup(project_path: str, everything: bool, messages_days: int, archive: bool):
    """Clean up finished agents, old messages and recovery data."""
    ctx = _context(project_path)

    if everything:
        results = ctx.cleanup.cleanup_all_swarm_resources()
        for name, count in results.items():
            console.print(f"  {name}: {count}")
    else:
        cleaned = ctx.monitor.cleanup_completed_agents()
        console.print(f"[green]{SYM_OK}[/green] Cleaned up {cleaned} completed agent(s)")

    removed = ctx.messages.cleanup_older_than(messages_days)
    console.print(f"[green]{SYM_OK}[/green] Removed {removed} old message file(s)")
    ctx.recovery.cleanup_old_data()

    if archive:
        archive_path = ctx.sessions.cleanup_session()
        if archive_path:
            console.print(f"[green]{SYM_OK}[/green] Session archived to {archive_path}")


@main.command('recovery-stats')
@click.argument('project_path', type=click.Path(exists=True))
def recovery_stats(project_path: str):
    """Show error recovery statistics."""
    ctx = _context(project_path)
    stats = ctx.recovery.recovery_statistics()

    table = Table(title="Error Recovery", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Errors processed", str(stats.total_errors_processed))
    table.add_row("Automatic recoveries", str(stats.successful_automatic_recoveries))
    table.add_row("Success rate", f"{stats.recovery_success_rate:.1f}%")
    table.add_row("Patterns learned", str(stats.recovery_patterns_learned))
    console.print(table)

    if stats.most_common_errors:
        console.print("\n[bold]Most common errors[/bold]")
        for error_type, count in stats.most_common_errors.items():
            console.print(f"  {error_type}: {count}")


@main.command()
@click.argument('project_path', type=click.Path(exists=True))
@click.option('--host', default='127.0.0.1', help='Host to bind to')
@click.option('--port', default=8000, help='Port to listen on')
@click.option('--reload', is_flag=True, help='Enable auto-reload for development')
def dashboard(project_path: str, host: str, port: int, reload: bool):
    """Start the dashboard API for monitoring the swarm.

    Example:
        swarm dashboard ./my-project --port 8000
    """
    from .api import run_dashboard

    path = Path(project_path)
    console.print("[bold]Starting Swarm Dashboard[/bold]")
    console.print(f"Project: {path}")
    console.print(f"API: http://{host}:{port}/api/")
    console.print(f"Docs: http://{host}:{port}/docs")
    console.print("\nPress Ctrl+C to stop\n")

    try:
        run_dashboard(path, host=host, port=port, reload=reload)
    except KeyboardInterrupt:
        console.print("\n[yellow]Dashboard stopped[/yellow]")


if __name__ == "__main__":
    main()
