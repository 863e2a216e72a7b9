"""devmemory command line entry point."""

import click

from cli.commands import learn, memory
from cli.config import load_config_model
from cli.logging_config import setup_logging
from cli.utils import console


@click.group()
@click.version_option(version="0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """devmemory - learns patterns and insights from project memories."""
    try:
        config = load_config_model()
    except ValueError as e:
        console.print(f"[red]Config error:[/] {e}")
        raise click.Abort()
    level = "DEBUG" if verbose else config.logging.level
    setup_logging(json_mode=config.logging.json_output, level=level, log_file=config.paths.log_file)


cli.add_command(learn)
cli.add_command(memory)


if __name__ == "__main__":
    cli()
