"""
Id-key ledger.

This module provides the MigrationState class, the durable record of which
source entities were migrated (and under which target key) and which were
skipped (and why).
"""

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func

from history_migration.client.exceptions import StateError
from history_migration.config import StateConfig
from history_migration.migration.database import get_session, init_database
from history_migration.migration.entity_types import HistoryEntityType
from history_migration.migration.keys import format_key, parse_key
from history_migration.migration.models import IdKeyMapping
from history_migration.utils.dates import ensure_utc, to_storage
from history_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class IdKeyRecord:
    """Detached view of one ledger row."""

    source_id: str
    entity_type: HistoryEntityType
    target_key: int | str | None
    created_at: datetime
    skip_reason: str | None

    @property
    def is_skipped(self) -> bool:
        return self.target_key is None


def _to_record(row: IdKeyMapping) -> IdKeyRecord:
    entity_type = HistoryEntityType[row.entity_type]
    return IdKeyRecord(
        source_id=row.source_id,
        entity_type=entity_type,
        target_key=parse_key(entity_type, row.target_key),
        created_at=ensure_utc(row.created_at),
        skip_reason=row.skip_reason,
    )


class MigrationState:
    """
    Ledger mapping (source id, entity type) to a target key or a skip reason.

    Each call runs in its own committed session unless a commit unit is open
    (see `database.transaction`), in which case it joins that unit.

    Usage:
        with MigrationState(config) as state:
            if not state.exists("pi-1", HistoryEntityType.PROCESS_INSTANCE):
                state.insert("pi-1", key, created_at, HistoryEntityType.PROCESS_INSTANCE)
    """

    def __init__(
        self,
        config: StateConfig,
        migration_id: str | None = None,
    ):
        """
        Initialize the ledger.

        Args:
            config: State configuration
            migration_id: Identifier for this run, used in logs (generates UUID if None)

        Raises:
            StateError: If initialization fails
        """
        self.config = config
        self.migration_id = migration_id or str(uuid.uuid4())
        self._lock = threading.RLock()
        self.database_url = config.database_url

        try:
            init_database(
                self.database_url,
                echo=config.db_echo,
                pool_size=config.db_pool_size,
                max_overflow=config.db_max_overflow,
                pool_timeout=config.db_pool_timeout,
                pool_recycle=config.db_pool_recycle,
            )
            logger.info(
                "Migration state initialized",
                migration_id=self.migration_id,
                database_path=config.db_path,
            )
        except Exception as e:
            logger.error("Failed to initialize migration state", error=str(e))
            raise StateError(f"Failed to initialize migration state: {e}") from e

    def __enter__(self) -> "MigrationState":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        # Sessions are managed per operation
        pass

    def _find(self, session, source_id: str, entity_type: HistoryEntityType):
        return (
            session.query(IdKeyMapping)
            .filter_by(source_id=source_id, entity_type=entity_type.name)
            .one_or_none()
        )

    def exists(self, source_id: str, entity_type: HistoryEntityType) -> bool:
        """
        Check if the entity has a ledger row, migrated or skipped.

        Args:
            source_id: Source system identifier
            entity_type: History entity type

        Returns:
            True if any row exists
        """
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    return self._find(session, source_id, entity_type) is not None
            except Exception as e:
                logger.error(
                    "Failed to check ledger row",
                    entity_type=entity_type.name,
                    source_id=source_id,
                    error=str(e),
                )
                raise StateError(f"Failed to check ledger row: {e}") from e

    def has_target_key(self, source_id: str, entity_type: HistoryEntityType) -> bool:
        """Check if the entity was migrated (its row carries a target key)."""
        return self.lookup_target_key(source_id, entity_type) is not None

    def lookup_target_key(
        self, source_id: str | None, entity_type: HistoryEntityType
    ) -> int | str | None:
        """
        Get the target key of a migrated entity.

        Args:
            source_id: Source system identifier (None returns None)
            entity_type: History entity type

        Returns:
            Target key, or None if the entity is unknown or skipped
        """
        if source_id is None:
            return None

        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    row = self._find(session, source_id, entity_type)
                    if row is None:
                        return None
                    return parse_key(entity_type, row.target_key)
            except Exception as e:
                logger.error(
                    "Failed to look up target key",
                    entity_type=entity_type.name,
                    source_id=source_id,
                    error=str(e),
                )
                raise StateError(f"Failed to look up target key: {e}") from e

    def get(self, source_id: str, entity_type: HistoryEntityType) -> IdKeyRecord | None:
        """Return the ledger row for an entity, or None."""
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    row = self._find(session, source_id, entity_type)
                    return _to_record(row) if row is not None else None
            except Exception as e:
                raise StateError(f"Failed to read ledger row: {e}") from e

    def insert(
        self,
        source_id: str,
        target_key: int | str | None,
        created_at: datetime,
        entity_type: HistoryEntityType,
        skip_reason: str | None = None,
    ) -> None:
        """
        Insert a ledger row.

        Args:
            source_id: Source system identifier
            target_key: Key in the target, or None for a skipped entity
            created_at: Natural creation time of the source entity
            entity_type: History entity type
            skip_reason: Why the entity was skipped (only with target_key None)

        Raises:
            StateError: If a row for (source_id, entity_type) already exists
        """
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    if self._find(session, source_id, entity_type) is not None:
                        raise StateError(
                            f"Ledger row already exists for {entity_type.name} '{source_id}'"
                        )

                    session.add(
                        IdKeyMapping(
                            source_id=source_id,
                            entity_type=entity_type.name,
                            target_key=(
                                format_key(entity_type, target_key)
                                if target_key is not None
                                else None
                            ),
                            created_at=to_storage(created_at),
                            skip_reason=skip_reason if target_key is None else None,
                        )
                    )
                    session.flush()

                    logger.debug(
                        "Ledger row inserted",
                        entity_type=entity_type.name,
                        source_id=source_id,
                        target_key=target_key,
                        skip_reason=skip_reason,
                    )
            except StateError:
                raise
            except Exception as e:
                logger.error(
                    "Failed to insert ledger row",
                    entity_type=entity_type.name,
                    source_id=source_id,
                    error=str(e),
                )
                raise StateError(f"Failed to insert ledger row: {e}") from e

    def update(
        self,
        source_id: str,
        target_key: int | str | None,
        entity_type: HistoryEntityType,
        skip_reason: str | None = None,
    ) -> None:
        """
        Overwrite the key and skip state of an existing ledger row.

        A non-null key clears the skip reason. A null key keeps the row
        skipped and records skip_reason when one is given.

        Raises:
            StateError: If no row exists for (source_id, entity_type)
        """
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    row = self._find(session, source_id, entity_type)
                    if row is None:
                        raise StateError(
                            f"No ledger row to update for {entity_type.name} '{source_id}'"
                        )

                    if target_key is not None:
                        row.target_key = format_key(entity_type, target_key)
                        row.skip_reason = None
                    else:
                        row.target_key = None
                        if skip_reason is not None:
                            row.skip_reason = skip_reason
                    session.flush()

                    logger.debug(
                        "Ledger row updated",
                        entity_type=entity_type.name,
                        source_id=source_id,
                        target_key=target_key,
                    )
            except StateError:
                raise
            except Exception as e:
                logger.error(
                    "Failed to update ledger row",
                    entity_type=entity_type.name,
                    source_id=source_id,
                    error=str(e),
                )
                raise StateError(f"Failed to update ledger row: {e}") from e

    def latest_created_at(self, entity_type: HistoryEntityType) -> datetime | None:
        """
        Get the fetch watermark for a type.

        Returns:
            Maximum created_at among migrated rows of the type, or None
        """
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    latest = (
                        session.query(func.max(IdKeyMapping.created_at))
                        .filter(
                            IdKeyMapping.entity_type == entity_type.name,
                            IdKeyMapping.target_key.isnot(None),
                        )
                        .scalar()
                    )
                    return ensure_utc(latest)
            except Exception as e:
                logger.error(
                    "Failed to read watermark", entity_type=entity_type.name, error=str(e)
                )
                raise StateError(f"Failed to read watermark: {e}") from e

    def list_skipped(self, entity_type: HistoryEntityType) -> list[IdKeyRecord]:
        """List skipped rows of a type, oldest first."""
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    rows = (
                        session.query(IdKeyMapping)
                        .filter(
                            IdKeyMapping.entity_type == entity_type.name,
                            IdKeyMapping.target_key.is_(None),
                        )
                        .order_by(IdKeyMapping.created_at, IdKeyMapping.source_id)
                        .all()
                    )
                    return [_to_record(row) for row in rows]
            except Exception as e:
                logger.error(
                    "Failed to list skipped entities", entity_type=entity_type.name, error=str(e)
                )
                raise StateError(f"Failed to list skipped entities: {e}") from e

    def count_skipped(self, entity_type: HistoryEntityType) -> int:
        """Count skipped rows of a type."""
        return self._count(entity_type, skipped=True)

    def count_migrated(self, entity_type: HistoryEntityType) -> int:
        """Count migrated rows of a type."""
        return self._count(entity_type, skipped=False)

    def _count(self, entity_type: HistoryEntityType, skipped: bool) -> int:
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    key_filter = (
                        IdKeyMapping.target_key.is_(None)
                        if skipped
                        else IdKeyMapping.target_key.isnot(None)
                    )
                    return (
                        session.query(func.count(IdKeyMapping.id))
                        .filter(IdKeyMapping.entity_type == entity_type.name, key_filter)
                        .scalar()
                        or 0
                    )
            except Exception as e:
                raise StateError(f"Failed to count ledger rows: {e}") from e

    def list_mappings(self, entity_type: HistoryEntityType) -> list[IdKeyRecord]:
        """List migrated rows of a type, oldest first."""
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    rows = (
                        session.query(IdKeyMapping)
                        .filter(
                            IdKeyMapping.entity_type == entity_type.name,
                            IdKeyMapping.target_key.isnot(None),
                        )
                        .order_by(IdKeyMapping.created_at, IdKeyMapping.source_id)
                        .all()
                    )
                    return [_to_record(row) for row in rows]
            except Exception as e:
                raise StateError(f"Failed to list mappings: {e}") from e

    def stats(self) -> dict[str, dict[str, int]]:
        """
        Get migrated/skipped counts per entity type.

        Returns:
            Mapping of entity type name to {"migrated": n, "skipped": n}
        """
        with self._lock:
            try:
                with get_session(self.database_url) as session:
                    rows = (
                        session.query(
                            IdKeyMapping.entity_type,
                            IdKeyMapping.target_key.is_(None),
                            func.count(IdKeyMapping.id),
                        )
                        .group_by(IdKeyMapping.entity_type, IdKeyMapping.target_key.is_(None))
                        .all()
                    )
            except Exception as e:
                raise StateError(f"Failed to read ledger statistics: {e}") from e

        stats: dict[str, dict[str, int]] = {}
        for entity_type, is_skipped, count in rows:
            bucket = stats.setdefault(entity_type, {"migrated": 0, "skipped": 0})
            bucket["skipped" if is_skipped else "migrated"] += count
        return stats
