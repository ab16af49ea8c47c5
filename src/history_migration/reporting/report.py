"""Skipped-entity and migration summary reports.

Renders `HistoryMigrator.list_skipped()` rows and migration summaries as
rich tables, and writes the skip backlog as JSON or Markdown files.
"""

import json
from collections import Counter
from datetime import UTC, datetime
from itertools import groupby
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

from history_migration.migration.coordinator import MigrationSummary, SkippedEntity
from history_migration.utils.logging import get_logger

logger = get_logger(__name__)


def group_by_type(skipped: list[SkippedEntity]) -> list[tuple[str, list[SkippedEntity]]]:
    """Group rows per entity type, keeping dependency order."""
    ordered = sorted(skipped, key=lambda row: row.entity_type.order)
    return [
        (entity_type.display_name, list(rows))
        for entity_type, rows in groupby(ordered, key=lambda row: row.entity_type)
    ]


def render_skipped(skipped: list[SkippedEntity], console: Console | None = None) -> None:
    """Print a count header and a table of skipped rows per entity type."""
    console = console or Console()
    if not skipped:
        console.print("[green]No skipped entities[/green]")
        return

    for display_name, rows in group_by_type(skipped):
        console.print(f"[bold]{display_name}[/bold]: {len(rows)} skipped")
        table = Table(show_header=True, header_style="bold")
        table.add_column("Source ID")
        table.add_column("Skip Reason")
        for row in rows:
            table.add_row(row.source_id, row.skip_reason or "")
        console.print(table)


def render_summary(summary: MigrationSummary, console: Console | None = None) -> None:
    """Print per-type counters of a run."""
    console = console or Console()
    table = Table(title=f"History Migration ({summary.mode.value})", show_header=True)
    table.add_column("Entity Type")
    table.add_column("Migrated", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Already Handled", justify="right")

    for type_summary in sorted(summary.types.values(), key=lambda t: t.entity_type.order):
        table.add_row(
            type_summary.entity_type.display_name,
            f"{type_summary.migrated:,}",
            f"[yellow]{type_summary.skipped:,}[/yellow]"
            if type_summary.skipped
            else "0",
            f"{type_summary.ignored:,}",
        )
    table.add_row(
        "[bold]Total[/bold]",
        f"[bold]{summary.total_migrated:,}[/bold]",
        f"[bold]{summary.total_skipped:,}[/bold]",
        "",
    )
    console.print(table)


class SkippedReport:
    """Report of the skip backlog.

    Counts per type and per reason, plus every skipped row.
    """

    def __init__(self, migration_id: str, skipped: list[SkippedEntity]):
        self.migration_id = migration_id
        self.skipped = skipped
        self.generated_at = datetime.now(UTC)

    def reason_counts(self) -> dict[str, dict[str, int]]:
        """Per display name, how many rows carry each reason."""
        return {
            display_name: dict(Counter(row.skip_reason or "" for row in rows).most_common())
            for display_name, rows in group_by_type(self.skipped)
        }

    def generate_json(self, output_path: str | None = None) -> str:
        report = {
            "report_version": "1.0",
            "generated_at": self.generated_at.isoformat(),
            "migration_id": self.migration_id,
            "total_skipped": len(self.skipped),
            "reasons": self.reason_counts(),
            "skipped": [
                {
                    "entity_type": row.display_name,
                    "source_id": row.source_id,
                    "skip_reason": row.skip_reason,
                }
                for row in self.skipped
            ],
        }

        json_str = json.dumps(report, indent=2, default=str)

        if output_path:
            Path(output_path).write_text(json_str)
            logger.info("json_report_saved", path=output_path)

        return json_str

    def generate_markdown(self, output_path: str | None = None) -> str:
        lines = [
            "# Skipped History Entities",
            "",
            f"**Migration ID:** `{self.migration_id}`  ",
            f"**Generated:** {self.generated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}  ",
            f"**Total Skipped:** {len(self.skipped):,}",
            "",
        ]

        reasons = self.reason_counts()
        for display_name, rows in group_by_type(self.skipped):
            lines.extend(
                [
                    f"## {display_name} ({len(rows):,})",
                    "",
                    "| Reason | Count |",
                    "|--------|------:|",
                ]
            )
            lines.extend(
                f"| {reason} | {count:,} |" for reason, count in reasons[display_name].items()
            )
            lines.extend(["", "| Source ID | Skip Reason |", "|-----------|-------------|"])
            lines.extend(f"| `{row.source_id}` | {row.skip_reason or ''} |" for row in rows)
            lines.append("")

        markdown = "\n".join(lines)

        if output_path:
            Path(output_path).write_text(markdown)
            logger.info("markdown_report_saved", path=output_path)

        return markdown


def generate_skipped_report(
    migration_id: str,
    skipped: list[SkippedEntity],
    output_dir: str = "./reports",
    formats: list[str] | None = None,
) -> dict[str, str]:
    """Write the skip backlog report in the requested formats.

    Args:
        migration_id: Migration identifier
        skipped: Rows from `HistoryMigrator.list_skipped()`
        output_dir: Directory to save reports
        formats: Formats to generate (json, markdown). Default: both

    Returns:
        Dictionary mapping format to file path
    """
    if formats is None:
        formats = ["json", "markdown"]

    unknown = set(formats) - {"json", "markdown"}
    if unknown:
        raise ValueError(f"Unsupported report format(s): {', '.join(sorted(unknown))}")

    report = SkippedReport(migration_id, skipped)
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    base_filename = f"skipped_report_{migration_id}_{timestamp}"

    generated_files: dict[str, Any] = {}
    if "json" in formats:
        json_path = output_path / f"{base_filename}.json"
        report.generate_json(str(json_path))
        generated_files["json"] = str(json_path)

    if "markdown" in formats:
        md_path = output_path / f"{base_filename}.md"
        report.generate_markdown(str(md_path))
        generated_files["markdown"] = str(md_path)

    logger.info(
        "skipped_reports_generated",
        migration_id=migration_id,
        formats=formats,
        files=generated_files,
    )
    return generated_files
