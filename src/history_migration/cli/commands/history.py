"""
History migration commands.

This module provides the three run modes of the history migrator:
migrate, retry-skipped and list-skipped.
"""

from pathlib import Path

import click

from history_migration.cli.context import MigrationContext
from history_migration.cli.decorators import handle_errors, pass_context, requires_config
from history_migration.cli.utils import (
    ENTITY_TYPE_CHOICES,
    console,
    echo_info,
    echo_success,
    echo_warning,
    format_duration,
    parse_entity_types,
)
from history_migration.migration.entity_types import MigratorMode
from history_migration.reporting.report import (
    generate_skipped_report,
    render_skipped,
    render_summary,
)
from history_migration.utils.logging import get_logger

logger = get_logger(__name__)

entity_type_option = click.option(
    "--entity-type",
    "-t",
    "entity_types",
    multiple=True,
    type=click.Choice(ENTITY_TYPE_CHOICES, case_sensitive=False),
    help="Entity type to include (repeatable; default: all, in dependency order)",
)


def _run(ctx: MigrationContext, mode: MigratorMode, entity_types: tuple[str, ...]) -> None:
    selected = parse_entity_types(entity_types)
    echo_info(
        f"Running {mode.value} for "
        + (", ".join(t.display_name for t in selected) if selected else "all entity types")
    )

    summary = ctx.migrator.run(mode, selected)

    click.echo()
    render_summary(summary, console)
    if summary.duration_seconds is not None:
        echo_info(f"Completed in {format_duration(summary.duration_seconds)}")

    if summary.total_skipped:
        echo_warning(
            f"{summary.total_skipped:,} entities skipped. "
            "Run 'history-bridge list-skipped' to see why."
        )
    else:
        echo_success(f"{summary.total_migrated:,} entities migrated")


@click.command(name="migrate")
@entity_type_option
@pass_context
@requires_config
@handle_errors
def migrate(ctx: MigrationContext, entity_types: tuple[str, ...]) -> None:
    """Migrate history created since the last run.

    Each entity type resumes after the newest entity it already migrated.
    Entities whose ancestors are missing are recorded as skipped.

    Examples:

        history-bridge migrate --config config.yaml

        history-bridge migrate -c config.yaml -t process_definition -t process_instance
    """
    _run(ctx, MigratorMode.MIGRATE, entity_types)


@click.command(name="retry-skipped")
@entity_type_option
@pass_context
@requires_config
@handle_errors
def retry_skipped(ctx: MigrationContext, entity_types: tuple[str, ...]) -> None:
    """Retry previously skipped entities.

    Skipped rows are updated in place once their dependencies exist.

    Examples:

        history-bridge retry-skipped --config config.yaml
    """
    _run(ctx, MigratorMode.RETRY_SKIPPED, entity_types)


@click.command(name="list-skipped")
@entity_type_option
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Also write the report to this directory",
)
@click.option(
    "--format",
    "formats",
    multiple=True,
    type=click.Choice(["json", "markdown"], case_sensitive=False),
    help="Report file format (repeatable; default: json and markdown)",
)
@pass_context
@requires_config
@handle_errors
def list_skipped(
    ctx: MigrationContext,
    entity_types: tuple[str, ...],
    output_dir: Path | None,
    formats: tuple[str, ...],
) -> None:
    """List skipped entities and their skip reasons.

    Read-only: nothing is migrated or written to the database.

    Examples:

        history-bridge list-skipped --config config.yaml

        history-bridge list-skipped -c config.yaml -t flow_node --output-dir reports
    """
    selected = parse_entity_types(entity_types)
    migrator = ctx.read_only_migrator()
    skipped = migrator.run(MigratorMode.LIST_SKIPPED, selected)

    render_skipped(skipped, console)

    if output_dir is not None:
        files = generate_skipped_report(
            migration_id=ctx.migration_state.migration_id,
            skipped=skipped,
            output_dir=str(output_dir),
            formats=[f.lower() for f in formats] or None,
        )
        for report_format, path in files.items():
            echo_success(f"{report_format} report written to {path}")
