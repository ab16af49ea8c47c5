"""
Configuration management commands.

This module provides commands for validating and generating
migration configuration.
"""

from pathlib import Path

import click

from history_migration.cli.context import MigrationContext
from history_migration.cli.decorators import handle_errors, pass_context, requires_config
from history_migration.cli.utils import echo_error, echo_info, echo_success, echo_warning, print_table
from history_migration.client.exceptions import ConfigurationError
from history_migration.config import MigrationConfig, save_config_to_yaml
from history_migration.migration.database import validate_database_connection
from history_migration.migration.transformers import build_pipeline
from history_migration.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="config")
def config() -> None:
    """Configuration management commands.

    Validate and generate migration configuration files.
    """
    pass


@config.command(name="validate")
@pass_context
@requires_config
@handle_errors
def validate(ctx: MigrationContext) -> None:
    """Validate migration configuration.

    Checks that the source export exists, the database is reachable and
    every configured interceptor can be loaded.

    Examples:

        history-bridge config validate --config config.yaml
    """
    echo_info(f"Validating configuration: {ctx.config_path}")
    config = ctx.config

    click.echo()
    _display_config_summary(config)

    click.echo()
    echo_info("Validating source export...")
    export_path = config.source.export_path
    if not export_path:
        echo_warning("source.export_path is not set; only list-skipped will work")
    elif not Path(export_path).exists():
        echo_error(f"Source export not found: {export_path}")
        raise ConfigurationError(f"Source export not found: {export_path}")
    else:
        echo_success(f"Source export found: {export_path}")

    echo_info("Validating database...")
    if not validate_database_connection(config.state.database_url):
        raise ConfigurationError(f"Cannot connect to database: {config.state.db_path}")
    echo_success("Database connection OK")

    echo_info("Validating conversion pipeline...")
    pipeline = build_pipeline(config.conversion)
    echo_success(f"{len(pipeline.interceptors)} interceptors loaded")

    click.echo()
    echo_success("Configuration is valid!")


@config.command(name="init")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("config/config.yaml"),
    show_default=True,
    help="Where to write the configuration",
)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@handle_errors
def init(output: Path, force: bool) -> None:
    """Write a configuration file with default values."""
    if output.exists() and not force:
        raise click.ClickException(f"{output} already exists (use --force to overwrite)")

    save_config_to_yaml(MigrationConfig(), output)
    echo_success(f"Configuration written to {output}")


def _display_config_summary(config: MigrationConfig) -> None:
    """Display configuration summary."""
    cleanup = config.history.auto_cancel.cleanup
    rows = [
        ["Source Export", config.source.export_path or "(not set)"],
        ["Page Size", config.source.page_size],
        ["Database", config.state.db_path],
        ["Partition ID", config.history.partition_id],
        ["Definition ID Prefix", config.history.legacy_prefix],
        ["Default Tenant", config.history.default_tenant],
        ["History Cleanup", f"{cleanup.ttl_days} days" if cleanup.enabled else "disabled"],
        ["Custom Interceptors", len(config.conversion.interceptors)],
    ]

    print_table("Configuration Summary", ["Setting", "Value"], rows)
