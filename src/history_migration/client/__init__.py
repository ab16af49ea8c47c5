"""Source and target clients for History Bridge."""

from history_migration.client.exceptions import (
    ConfigurationError,
    ConversionError,
    EntityNotFoundError,
    EntitySkippedError,
    HistoryMigrationError,
    MigrationError,
    SourceError,
    StateError,
)

__all__ = [
    "ConfigurationError",
    "ConversionError",
    "EntityNotFoundError",
    "EntitySkippedError",
    "HistoryMigrationError",
    "MigrationError",
    "SourceError",
    "StateError",
]
