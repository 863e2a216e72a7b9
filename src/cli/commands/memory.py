"""Memory CLI commands: add to and list the reference memory store."""

import click
from rich.console import Console
from rich.table import Table

from cli.utils import get_components
from learning.models import MemoryType

console = Console()


@click.group()
def memory():
    """Project memories feeding the learning pipeline."""
    pass


@memory.command("add")
@click.argument("content", required=False)
@click.option("-p", "--project", "project_id", required=True, help="Project id")
@click.option(
    "-t",
    "--type",
    "memory_type",
    type=click.Choice([t.value for t in MemoryType]),
    default=MemoryType.GENERAL.value,
    help="Memory type",
)
@click.option("--importance", default=0.5, type=click.FloatRange(0.0, 1.0))
@click.option("--tags", help="Comma-separated tags")
def memory_add(content: str, project_id: str, memory_type: str, importance: float, tags: str):
    """Add a memory and hand it to the ingestion buffer. Opens editor if no content."""
    if not content:
        content = click.edit("# Write the memory here\n\n")
        if not content:
            console.print("[yellow]No content provided, cancelled.[/]")
            return

    c = get_components()
    tag_list = [t.strip() for t in tags.split(",")] if tags else []
    event = c["memories"].add_memory(
        project_id,
        content,
        memory_type=memory_type,
        importance_score=importance,
        tags=tag_list,
    )
    queued = c["pipeline"].on_memory_added(event.id, project_id, content)
    console.print(f"[green]Added:[/] {event.id[:8]} ({memory_type})")
    if queued:
        console.print(f"[dim]Queued {queued} learning task(s)[/]")


@memory.command("list")
@click.option("-t", "--type", "memory_type", type=click.Choice([t.value for t in MemoryType]), default=None)
@click.option("-n", "--limit", default=20, help="Max memories to show")
def memory_list(memory_type: str | None, limit: int):
    """List recent memories."""
    c = get_components()
    memories = c["memories"].get_recent_memories(
        memory_types=[memory_type] if memory_type else None, limit=limit
    )
    if not memories:
        console.print("No memories stored.")
        return

    table = Table(title="Memories")
    table.add_column("ID", style="dim", width=8)
    table.add_column("Project", width=12)
    table.add_column("Type", width=16)
    table.add_column("Content")
    table.add_column("Created", style="dim")
    for m in memories:
        table.add_row(
            m.id[:8],
            m.project_id,
            str(m.memory_type),
            m.content[:80],
            m.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)
