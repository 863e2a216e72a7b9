"""Shared CLI utilities."""

import sys

from rich.console import Console

console = Console()


def get_components():
    """Load config and build the pipeline and its reference memory store."""
    from cli.config import load_config_model
    from learning import LearningPipeline, SQLiteMemoryStore

    try:
        config = load_config_model()
    except ValueError as e:
        console.print(f"[red]Config error:[/] {e}")
        sys.exit(1)

    memories = SQLiteMemoryStore(config.paths.db)
    pipeline = LearningPipeline(config, memories=memories)
    return {
        "config": config,
        "memories": memories,
        "pipeline": pipeline,
    }
