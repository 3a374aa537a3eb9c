#!/usr/bin/env uv run
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pydantic",
#     "python-dotenv",
#     "click",
#     "rich",
# ]
# ///

"""Command line access to coordination state, agent messages and metrics.

Usage:
    uv run automation/issueflow/coordination_cli.py status
    uv run automation/issueflow/coordination_cli.py clean 48
    uv run automation/issueflow/coordination_cli.py next --claim
    uv run automation/issueflow/coordination_cli.py comm history issue-42 frontend
    uv run automation/issueflow/coordination_cli.py monitor report
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

# Add automation directory to Python path for local imports
automation_dir = Path(__file__).resolve().parent.parent
if str(automation_dir) not in sys.path:
    sys.path.insert(0, str(automation_dir))

from issueflow.flow_modules.communication import AgentCommunication
from issueflow.flow_modules.coordination import AgentCoordinator
from issueflow.flow_modules.data_types import OrchestrationConfig
from issueflow.flow_modules.exit_codes import (
    EXIT_BLOCKER_INVALID_ARGS,
    EXIT_RESOURCE_FILE_ERROR,
    get_exit_code_description,
)
from issueflow.flow_modules.monitoring import AutomationMonitor
from issueflow.flow_modules.orchestrator import make_coordinator, resolve_log_root
from issueflow.flow_modules.utils import load_flow_env

console = Console()

HEALTH_COLORS = {
    "excellent": "green",
    "good": "cyan",
    "fair": "yellow",
    "poor": "red",
    "unknown": "dim",
}


def _fail(code: int, message: str) -> None:
    console.print(f"[red]ERROR: {escape(message)}[/red]")
    console.print(f"[dim]{get_exit_code_description(code)}[/dim]")
    sys.exit(code)


def _coordinator(ctx: click.Context) -> AgentCoordinator:
    return make_coordinator(ctx.obj["config"])


def _log_root(ctx: click.Context) -> Path:
    return resolve_log_root(ctx.obj["config"])


def _check_store(coordinator: AgentCoordinator) -> None:
    if coordinator.store.last_error:
        _fail(EXIT_RESOURCE_FILE_ERROR, coordinator.store.last_error)


@click.group()
@click.option("--log-root", type=click.Path(file_okay=False), help="Override ISSUEFLOW_LOG_ROOT")
@click.pass_context
def cli(ctx: click.Context, log_root: Optional[str]) -> None:
    """Inspect and maintain issueflow coordination state."""
    load_flow_env()
    config = OrchestrationConfig.from_env()
    if log_root:
        config = config.model_copy(update={"log_root": log_root})
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the raw status document")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show active issues, the agent queue and resource locks."""
    coordinator = _coordinator(ctx)
    snapshot = coordinator.get_coordination_status()
    _check_store(coordinator)

    if as_json:
        click.echo(snapshot.model_dump_json(by_alias=True, indent=2))
        return

    summary = Table(show_header=False, box=None)
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", style="white")
    summary.add_row("Active issues", str(snapshot.active_issues))
    summary.add_row("Queued agents", str(snapshot.queued_agents))
    summary.add_row("Executing agents", str(snapshot.executing_agents))
    summary.add_row("Resource locks", str(snapshot.resource_locks))
    summary.add_row("Last update", snapshot.last_update or "-")
    console.print(Panel(summary, title="Coordination Status", border_style="blue"))

    if snapshot.queue:
        queue = Table(title="Agent Queue")
        queue.add_column("Issue")
        queue.add_column("Agent")
        queue.add_column("Status")
        queue.add_column("Retry")
        for entry in snapshot.queue:
            queue.add_row(entry.issue_id, entry.agent_type.value, entry.status.value, str(entry.retry_attempt))
        console.print(queue)

    if snapshot.locks:
        locks = Table(title="Resource Locks")
        locks.add_column("Resource")
        locks.add_column("Issue")
        for resource, issue_number in snapshot.locks.items():
            locks.add_row(resource, f"#{issue_number}")
        console.print(locks)


@cli.command()
@click.argument("hours", type=float, default=24)
@click.pass_context
def clean(ctx: click.Context, hours: float) -> None:
    """Remove completed issues older than HOURS (default 24)."""
    if hours < 0:
        _fail(EXIT_BLOCKER_INVALID_ARGS, "HOURS must be non-negative")
    coordinator = _coordinator(ctx)
    cleaned = coordinator.clean_completed_issues(hours)
    _check_store(coordinator)
    click.echo(f"Cleaned {cleaned} completed issues older than {hours:g} hours")


@cli.command("next")
@click.option("--claim", is_flag=True, help="Dequeue the agent and lock its resources")
@click.option("--issue", "issue_id", help="Only consider this issue id (e.g. issue-42)")
@click.pass_context
def next_agent(ctx: click.Context, claim: bool, issue_id: Optional[str]) -> None:
    """Report the next agent ready to execute."""
    coordinator = _coordinator(ctx)
    if claim:
        claimed = coordinator.get_next_agent(issue_id)
        role, issue_label = (claimed.agent_type, claimed.issue_id) if claimed else (None, None)
    else:
        entry = coordinator.peek_next_agent(issue_id)
        role, issue_label = (entry.agent_type, entry.issue_id) if entry else (None, None)
    _check_store(coordinator)

    if role is None:
        click.echo("No agents ready to execute")
        return
    click.echo(f"Next agent: {role.value} for issue {issue_label}")


# ---------------------------------------------------------------- messages


@cli.group()
def comm() -> None:
    """Agent message log commands."""


@comm.command("stats")
@click.argument("issue_id")
@click.pass_context
def comm_stats(ctx: click.Context, issue_id: str) -> None:
    """Message counts for ISSUE_ID."""
    communication = AgentCommunication(issue_id, log_root=_log_root(ctx))
    click.echo(communication.get_communication_stats().model_dump_json(indent=2))


@comm.command("history")
@click.argument("issue_id")
@click.argument("agent", required=False)
@click.option("--type", "message_type", help="Only messages of this type")
@click.pass_context
def comm_history(ctx: click.Context, issue_id: str, agent: Optional[str], message_type: Optional[str]) -> None:
    """Messages for ISSUE_ID, optionally to or from AGENT."""
    communication = AgentCommunication(issue_id, log_root=_log_root(ctx))
    history = communication.get_communication_history(agent, message_type)

    table = Table(title=f"Messages for {issue_id} ({history.filtered_messages}/{history.total_messages})")
    table.add_column("Time", style="dim")
    table.add_column("From", style="cyan")
    table.add_column("To", style="cyan")
    table.add_column("Type")
    table.add_column("Priority")
    table.add_column("Status")
    for message in history.messages:
        table.add_row(
            message.timestamp,
            message.from_agent,
            message.to_agent,
            message.type,
            message.priority.value,
            message.status,
        )
    console.print(table)


@comm.command("clean")
@click.argument("hours", type=float, default=72)
@click.pass_context
def comm_clean(ctx: click.Context, hours: float) -> None:
    """Delete message logs and shared state older than HOURS (default 72)."""
    if hours < 0:
        _fail(EXIT_BLOCKER_INVALID_ARGS, "HOURS must be non-negative")
    removed = AgentCommunication(log_root=_log_root(ctx)).clean_old_communications(hours)
    click.echo(f"Cleaned {removed} communication files older than {hours:g} hours")


# -------------------------------------------------------------- monitoring


@cli.group()
def monitor() -> None:
    """Automation metrics commands."""


@monitor.command("report")
@click.pass_context
def monitor_report(ctx: click.Context) -> None:
    """Print a health report with recommendations."""
    automation_monitor = AutomationMonitor(_log_root(ctx))
    health = automation_monitor.get_system_health()
    system = health.system
    color = HEALTH_COLORS[system.status]

    summary = Table(show_header=False, box=None)
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", style="white")
    summary.add_row("Status", f"[{color}]{system.status.upper()}[/{color}]")
    summary.add_row("Uptime", system.uptime)
    summary.add_row("Last activity", system.last_activity or "-")
    summary.add_row("Issues processed", str(system.total_issues_processed))
    summary.add_row("Agent executions", str(system.total_agent_executions))
    summary.add_row("PRs created", str(system.total_prs_created))
    summary.add_row("Success rate", f"{system.overall_success_rate}%")
    summary.add_row("Auto-implementation rate", f"{system.auto_implementation_rate}%")
    summary.add_row("Avg processing time", f"{system.avg_processing_time}s")
    console.print(Panel(summary, title="Issueflow Health Report", border_style="blue"))

    if health.agents:
        agents = Table(title="Agent Performance")
        agents.add_column("Agent", style="cyan")
        agents.add_column("Executions", justify="right")
        agents.add_column("Success", justify="right")
        agents.add_column("Avg Duration", justify="right")
        agents.add_column("Status")
        for agent_type, agent in health.agents.items():
            agent_color = HEALTH_COLORS[agent.status]
            agents.add_row(
                agent_type,
                str(agent.executions),
                f"{agent.success_rate}%",
                f"{round(agent.avg_duration / 1000)}s",
                f"[{agent_color}]{agent.status}[/{agent_color}]",
            )
        console.print(agents)

    recommendations = automation_monitor.generate_recommendations(health)
    if recommendations:
        console.print("[bold]Recommendations:[/bold]")
        for recommendation in recommendations:
            console.print(f"  • {recommendation}")
    else:
        console.print("[green]No recommendations. System is performing well.[/green]")


@monitor.command("export")
@click.option("--output", type=click.Path(dir_okay=False), help="CSV destination")
@click.pass_context
def monitor_export(ctx: click.Context, output: Optional[str]) -> None:
    """Export per-agent metrics to CSV."""
    path = AutomationMonitor(_log_root(ctx)).export_metrics_to_csv(Path(output) if output else None)
    click.echo(f"Metrics exported to {path}")


@monitor.command("clean")
@click.argument("days", type=int, default=30)
@click.pass_context
def monitor_clean(ctx: click.Context, days: int) -> None:
    """Archive the activity log if untouched for DAYS (default 30)."""
    if days < 0:
        _fail(EXIT_BLOCKER_INVALID_ARGS, "DAYS must be non-negative")
    archived = AutomationMonitor(_log_root(ctx)).clean_old_logs(days)
    if archived:
        click.echo(f"Archived activity log to {archived}")
    else:
        click.echo("Nothing to archive")


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Print system health as JSON."""
    snapshot = AutomationMonitor(_log_root(ctx)).get_system_health()
    click.echo(json.dumps(snapshot.model_dump(mode="json"), indent=2))


if __name__ == "__main__":
    cli(obj={})
