"""FieldForge CLI entry point."""

import click

from fieldforge.core.logging_config import configure_logging


@click.group()
@click.option("--log-level", default="WARNING", show_default=True, help="Logging level.")
def cli(log_level: str):
    """FieldForge: metadata-driven field service backend CLI."""
    configure_logging(log_level)


# Register subcommand groups
from fieldforge.cli.db_cmd import db  # noqa: E402
from fieldforge.cli.metadata_cmd import metadata  # noqa: E402
from fieldforge.cli.tokens_cmd import tokens  # noqa: E402

cli.add_command(metadata)
cli.add_command(db)
cli.add_command(tokens)
