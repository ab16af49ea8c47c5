"""
Main CLI entry point for History Bridge.

This module provides the command-line interface for migrating process-engine
history into the target store.
"""

import sys
from pathlib import Path

import click
from dotenv import load_dotenv

from history_migration import __version__
from history_migration.cli.commands import config as config_commands
from history_migration.cli.commands import history as history_commands
from history_migration.cli.context import MigrationContext
from history_migration.utils.logging import configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="history-bridge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
    envvar="HISTORY_BRIDGE_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Console logging level (default: logging.level from the config, else WARNING)",
    envvar="HISTORY_BRIDGE_LOG_LEVEL",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    help="Also log to this file",
    envvar="HISTORY_BRIDGE_LOG_FILE",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    log_level: str | None,
    log_file: Path | None,
) -> None:
    """History Bridge - Migrate process-engine history.

    Moves historic definitions, instances, tasks, variables, incidents,
    decisions and audit entries into the target store, recording every
    entity in a ledger so runs can be resumed and skipped entities retried.

    Examples:

        # Validate configuration
        history-bridge config validate --config config.yaml

        # Migrate everything new since the last run
        history-bridge migrate --config config.yaml

        # Retry entities whose dependencies are now migrated
        history-bridge retry-skipped --config config.yaml

        # Show what is still skipped and why
        history-bridge list-skipped --config config.yaml
    """
    configure_logging(level=log_level or "WARNING", log_file=str(log_file) if log_file else None)

    ctx.obj = MigrationContext(
        config_path=config,
        log_level=log_level,
        log_file=log_file,
    )

    logger.debug(
        "CLI initialized",
        config=str(config) if config else None,
        log_level=log_level,
    )


# Register command groups
cli.add_command(config_commands.config)

# Register run modes
cli.add_command(history_commands.migrate)
cli.add_command(history_commands.retry_skipped)
cli.add_command(history_commands.list_skipped)


def main() -> int:
    """Main entry point for CLI."""
    try:
        result = cli(standalone_mode=False)
        return result if isinstance(result, int) else 0
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except Exception as e:
        logger.error("Unexpected error", error=str(e), exc_info=True)
        click.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
