"""
Migration module for History Bridge.

This module provides the id-key ledger, database utilities and the entity
type registry. The migrator itself lives in `migration.coordinator`.
"""

# Database utilities
from history_migration.migration.database import (
    create_database_engine,
    get_engine,
    get_session,
    get_session_factory,
    init_database,
    transaction,
    validate_database_connection,
)

# Entity types
from history_migration.migration.entity_types import HistoryEntityType, KeyFormat, MigratorMode

# Database models
from history_migration.migration.models import Base, IdKeyMapping, TargetRecordRow

# State management
from history_migration.migration.state import IdKeyRecord, MigrationState

__all__ = [
    # Models
    "Base",
    "IdKeyMapping",
    "TargetRecordRow",
    # Database utilities
    "init_database",
    "get_engine",
    "get_session",
    "get_session_factory",
    "create_database_engine",
    "transaction",
    "validate_database_connection",
    # Entity types
    "HistoryEntityType",
    "KeyFormat",
    "MigratorMode",
    # State management
    "IdKeyRecord",
    "MigrationState",
]
