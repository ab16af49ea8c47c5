"""Custom exceptions for History Bridge.

This module defines exception classes for the error conditions that can occur
while reading source history, writing target records and keeping the ledger.
Skips and conversion errors are per-entity and recoverable; everything else is
fatal for the run.
"""

from datetime import datetime
from typing import Any


class HistoryMigrationError(Exception):
    """Base exception for all history migration errors."""

    pass


class ConfigurationError(HistoryMigrationError):
    """Raised when configuration is invalid or missing."""

    pass


class StateError(HistoryMigrationError):
    """Raised when ledger or target persistence fails."""

    pass


class SourceError(HistoryMigrationError):
    """Raised when the source history cannot be read."""

    pass


class EntityNotFoundError(SourceError):
    """Raised when a source entity cannot be found by its identifier."""

    def __init__(self, entity_type: Any, source_id: str):
        """Initialize not found error.

        Args:
            entity_type: Entity type that was looked up
            source_id: Identifier in the source system
        """
        self.entity_type = entity_type
        self.source_id = source_id
        super().__init__(f"{entity_type} with id '{source_id}' not found in source")


class MigrationError(HistoryMigrationError):
    """Raised when a migration run fails for an entity type."""

    def __init__(self, message: str, entity_type: Any | None = None):
        self.entity_type = entity_type
        super().__init__(message)


class ConversionError(MigrationError):
    """Raised when a conversion step cannot produce a valid target value.

    Interceptors raise this to reject an entity. The entity migrator turns it
    into a skip carrying the message.
    """

    pass


class EntitySkippedError(MigrationError):
    """Raised when an entity cannot be migrated yet.

    Attributes:
        source_id: Identifier of the entity in the source system
        created_at: Natural creation time of the entity
        reason: Stable skip reason recorded in the ledger
    """

    def __init__(
        self,
        entity_type: Any,
        source_id: str,
        reason: str,
        created_at: datetime | None = None,
    ):
        """Initialize skip.

        Args:
            entity_type: Entity type of the skipped entity
            source_id: Identifier in the source system
            reason: Skip reason
            created_at: Creation time used for the ledger row
        """
        self.source_id = source_id
        self.reason = reason
        self.created_at = created_at
        super().__init__(f"Skipped {entity_type} '{source_id}': {reason}", entity_type)
