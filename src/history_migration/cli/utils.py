"""
Utility functions for CLI commands.

This module provides helper functions for common CLI operations like
formatting output and parsing entity type selections.
"""

from typing import Any

import click
from rich.console import Console
from rich.table import Table

from history_migration.migration.entity_types import HistoryEntityType

console = Console()

ENTITY_TYPE_CHOICES = [entity_type.name.lower() for entity_type in HistoryEntityType]


def echo_success(message: str) -> None:
    """Print success message in green."""
    click.secho(f"✓ {message}", fg="green")


def echo_error(message: str) -> None:
    """Print error message in red."""
    click.secho(f"✗ {message}", fg="red", err=True)


def echo_warning(message: str) -> None:
    """Print warning message in yellow."""
    click.secho(f"⚠ {message}", fg="yellow")


def echo_info(message: str) -> None:
    """Print info message in blue."""
    click.secho(f"ℹ {message}", fg="blue")


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "2h 30m 15s")
    """
    if seconds < 60:
        return f"{seconds:.1f}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60

    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


def print_table(
    title: str,
    columns: list[str],
    rows: list[list[Any]],
    show_header: bool = True,
) -> None:
    """
    Print a formatted table using rich.

    Args:
        title: Table title
        columns: Column headers
        rows: List of row data
        show_header: Whether to show header row
    """
    table = Table(title=title, show_header=show_header)

    for col in columns:
        table.add_column(col)

    for row in rows:
        table.add_row(*[str(cell) for cell in row])

    console.print(table)


def parse_entity_types(names: tuple[str, ...]) -> list[HistoryEntityType] | None:
    """
    Convert repeated --entity-type values into entity types.

    Returns:
        Selected types, or None (all types) when nothing was given

    Raises:
        click.BadParameter: If a name matches no entity type
    """
    if not names:
        return None
    try:
        return [HistoryEntityType.from_name(name) for name in names]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--entity-type") from e
