"""Reporting for History Bridge."""

from history_migration.reporting.report import (
    SkippedReport,
    generate_skipped_report,
    render_skipped,
    render_summary,
)

__all__ = [
    "SkippedReport",
    "generate_skipped_report",
    "render_skipped",
    "render_summary",
]
