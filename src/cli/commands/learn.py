"""Learning pipeline CLI commands."""

import json
import sys
import time

import click
from rich.console import Console
from rich.table import Table

from cli.utils import get_components
from learning.models import InsightType, TaskType

console = Console()


@click.group()
def learn():
    """Learning pipeline: queue, worker, patterns and insights."""
    pass


@learn.command("run")
def learn_run():
    """Start the scheduler and worker in the foreground."""
    c = get_components()
    pipeline = c["pipeline"]
    if not c["config"].scheduler.enabled:
        console.print("[yellow]Scheduler disabled in config[/]")
        return

    pipeline.start()
    console.print("[green]Started[/] learning scheduler")
    console.print("Press Ctrl+C to stop")
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        pipeline.stop()
        console.print("\n[yellow]Stopped[/]")


@learn.command("process")
@click.option("-n", "--limit", default=None, type=int, help="Max tasks to claim")
def learn_process(limit: int | None):
    """Run one worker pass."""
    c = get_components()
    with console.status("Processing queue..."):
        completed = c["pipeline"].process_queue(limit=limit)
    console.print(f"Completed {completed} task(s)")


@learn.command("queue")
@click.argument("task_type", type=click.Choice([t.value for t in TaskType]))
@click.option("--payload", default="{}", help="JSON payload")
@click.option("--priority", default=5, type=click.IntRange(1, 10), help="Lower runs first")
def learn_queue(task_type: str, payload: str, priority: int):
    """Enqueue a learning task."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON payload:[/] {e}")
        sys.exit(1)
    if not isinstance(data, dict):
        console.print("[red]Payload must be a JSON object[/]")
        sys.exit(1)

    c = get_components()
    task_id = c["pipeline"].queue_learning_task(task_type, data, priority=priority)
    if task_id is None:
        console.print("[red]Failed to enqueue task[/]")
        sys.exit(1)
    console.print(f"[green]Queued:[/] {task_type} ({task_id[:8]})")


@learn.command("status")
def learn_status():
    """Show queue, pattern, insight and scheduling status."""
    c = get_components()
    status = c["pipeline"].get_status()
    if not status:
        console.print("[red]Status unavailable[/]")
        sys.exit(1)

    health = status["health"]
    color = {"healthy": "green", "degraded": "yellow"}.get(health["status"], "red")
    console.print(f"Health: [{color}]{health['status']}[/] (error rate {health['error_rate']:.1%})")
    console.print(f"Buffer: {status['buffer_size']} pending event(s)")

    queue_table = Table(title="Queue", show_header=True)
    queue_table.add_column("Status")
    queue_table.add_column("Count", justify="right")
    for name, count in sorted(status["queue"].items()):
        queue_table.add_row(name, str(count))
    console.print(queue_table)

    patterns = status["patterns"]
    console.print(
        f"Patterns: {patterns['total']} "
        f"(avg confidence {patterns['avg_confidence']:.2f}, {patterns['unique_projects']} projects)"
    )
    if status["insights"]:
        console.print(
            "Insights: " + ", ".join(f"{k}={v}" for k, v in sorted(status["insights"].items()))
        )

    sched = Table(title="Recurring Tasks", show_header=True)
    sched.add_column("Type", style="cyan")
    sched.add_column("Every (min)", justify="right")
    sched.add_column("Last completed", style="dim")
    sched.add_column("Overdue", justify="right")
    for task_type, info in status["scheduling"].items():
        sched.add_row(
            task_type,
            str(info["interval_minutes"]),
            (info["last_completed"] or "never")[:19],
            str(info["overdue"]),
        )
    console.print(sched)


@learn.command("patterns")
@click.option("-n", "--limit", default=20, help="Max patterns to show")
@click.option("-c", "--category", default=None, help="Filter by category")
def learn_patterns(limit: int, category: str | None):
    """List detected patterns by confidence."""
    c = get_components()
    patterns = c["pipeline"].patterns.list_patterns(category=category, limit=limit)
    if not patterns:
        console.print("[yellow]No patterns detected yet.[/]")
        return

    table = Table(title="Patterns", show_header=True)
    table.add_column("Name", style="cyan")
    table.add_column("Category")
    table.add_column("Conf", justify="right")
    table.add_column("Seen", justify="right")
    table.add_column("Projects", justify="right")
    table.add_column("Method", style="dim")
    for p in patterns:
        table.add_row(
            p.name,
            p.category,
            f"{p.confidence_score:.2f}",
            str(p.frequency_count),
            str(len(p.projects_seen)),
            str(p.detection_method),
        )
    console.print(table)


@learn.command("insights")
@click.option("--type", "insight_type", type=click.Choice([t.value for t in InsightType]), default=None)
@click.option("--actionable", is_flag=True, help="Only actionable insights")
@click.option("-n", "--limit", default=20, help="Max insights to show")
def learn_insights(insight_type: str | None, actionable: bool, limit: int):
    """List generated insights."""
    c = get_components()
    insights = c["pipeline"].insights.list_insights(
        insight_type=insight_type, actionable_only=actionable, limit=limit
    )
    if not insights:
        console.print("[yellow]No insights yet.[/]")
        return

    for i in insights:
        marker = "[red]![/] " if i.needs_follow_up else ""
        console.print(
            f"{marker}[bold]{i.title}[/] [dim]({i.type}, {i.priority}, conf {i.confidence_level:.2f})[/]"
        )
        console.print(f"  {i.description}")


@learn.command("sweep")
def learn_sweep():
    """Reset stuck tasks and purge old finished ones."""
    c = get_components()
    result = c["pipeline"].run_maintenance()
    console.print(
        f"Reset {result['reset']} stuck, failed {result['failed']}, deleted {result['deleted']} old task(s)"
    )
