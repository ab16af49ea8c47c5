"""History migration orchestrator.

This module provides the HistoryMigrator class, which drives the entity
types through their migrators in dependency order for one of the three run
modes.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from structlog.contextvars import bound_contextvars

from history_migration.client.exceptions import (
    EntityNotFoundError,
    HistoryMigrationError,
    MigrationError,
)
from history_migration.client.source_client import SourceClient
from history_migration.client.target_client import TargetClient
from history_migration.config import MigrationConfig
from history_migration.migration.conversion import ConversionPipeline, RetentionPolicy
from history_migration.migration.engine import (
    EntityMigrator,
    MigrationOutcome,
    MigrationServices,
    OutcomeStatus,
)
from history_migration.migration.entity_types import HistoryEntityType, MigratorMode
from history_migration.migration.handlers import create_handler
from history_migration.migration.state import MigrationState
from history_migration.migration.transformers import build_pipeline
from history_migration.utils.logging import get_logger, log_error, log_migration_progress

logger = get_logger(__name__)


@dataclass(frozen=True)
class SkippedEntity:
    """One row of the skipped-entity report."""

    entity_type: HistoryEntityType
    source_id: str
    skip_reason: str | None

    @property
    def display_name(self) -> str:
        return self.entity_type.display_name


@dataclass
class TypeSummary:
    """Counters of one entity type in one run."""

    entity_type: HistoryEntityType
    migrated: int = 0
    skipped: int = 0
    ignored: int = 0
    children: int = 0

    @property
    def processed(self) -> int:
        return self.migrated + self.skipped + self.ignored

    def record(self, outcome: MigrationOutcome) -> None:
        if outcome.status is OutcomeStatus.MIGRATED:
            self.migrated += 1
            self.children += outcome.children
        elif outcome.status is OutcomeStatus.SKIPPED:
            self.skipped += 1
        else:
            self.ignored += 1


@dataclass
class MigrationSummary:
    """Per-type counters of a migrate or retry run."""

    mode: MigratorMode
    types: dict[HistoryEntityType, TypeSummary] = field(default_factory=dict)
    start_time: datetime | None = None
    end_time: datetime | None = None

    def for_type(self, entity_type: HistoryEntityType) -> TypeSummary:
        return self.types.setdefault(entity_type, TypeSummary(entity_type))

    @property
    def total_migrated(self) -> int:
        return sum(t.migrated for t in self.types.values())

    @property
    def total_skipped(self) -> int:
        return sum(t.skipped for t in self.types.values())

    @property
    def duration_seconds(self) -> float | None:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "total_migrated": self.total_migrated,
            "total_skipped": self.total_skipped,
            "types": {
                t.entity_type.name: {
                    "migrated": t.migrated,
                    "skipped": t.skipped,
                    "ignored": t.ignored,
                    "children": t.children,
                }
                for t in self.types.values()
            },
        }


class HistoryMigrator:
    """Orchestrates history migration across all entity types.

    Types always run in dependency order, whatever order the caller passes
    them in. The mode is an argument of every run, never state of the
    migrator.
    """

    # Dependency tiers, parents before children
    MIGRATION_PHASES = [
        {
            "name": "definitions",
            "description": "Process, decision requirements and form definitions",
            "entity_types": [
                HistoryEntityType.PROCESS_DEFINITION,
                HistoryEntityType.DECISION_REQUIREMENTS,
                HistoryEntityType.FORM_DEFINITION,
            ],
        },
        {
            "name": "decision_definitions",
            "description": "Decision definitions",
            "entity_types": [HistoryEntityType.DECISION_DEFINITION],
        },
        {
            "name": "process_instances",
            "description": "Historic process instances",
            "entity_types": [HistoryEntityType.PROCESS_INSTANCE],
        },
        {
            "name": "flow_nodes",
            "description": "Historic flow node instances",
            "entity_types": [HistoryEntityType.FLOW_NODE],
        },
        {
            "name": "instance_details",
            "description": "User tasks, variables, jobs, external tasks and incidents",
            "entity_types": [
                HistoryEntityType.USER_TASK,
                HistoryEntityType.VARIABLE,
                HistoryEntityType.JOB,
                HistoryEntityType.EXTERNAL_TASK,
                HistoryEntityType.INCIDENT,
            ],
        },
        {
            "name": "decision_instances",
            "description": "Historic decision instances",
            "entity_types": [HistoryEntityType.DECISION_INSTANCE],
        },
        {
            "name": "audit_log",
            "description": "User operation log",
            "entity_types": [HistoryEntityType.AUDIT_LOG],
        },
    ]

    def __init__(
        self,
        config: MigrationConfig,
        state: MigrationState,
        source: SourceClient,
        target: TargetClient,
        pipeline: ConversionPipeline | None = None,
        retention: RetentionPolicy | None = None,
    ):
        """Initialize history migrator.

        Args:
            config: Migration configuration
            state: Id-key ledger
            source: Source history client
            target: Target store client
            pipeline: Conversion pipeline (built from config when None)
            retention: Retention policy (built from config when None)
        """
        self.config = config
        self.state = state
        self.source = source
        self.target = target
        self.pipeline = pipeline or build_pipeline(config.conversion)
        self.services = MigrationServices.create(
            state=state,
            source=source,
            target=target,
            pipeline=self.pipeline,
            settings=config.history,
            retention=retention,
        )
        self.migrators = {
            entity_type: EntityMigrator(create_handler(entity_type, self.services), self.services)
            for entity_type in HistoryEntityType
        }

        logger.info(
            "history_migrator_initialized",
            migration_id=state.migration_id,
            partition_id=config.history.partition_id,
            interceptors=len(self.pipeline.interceptors),
        )

    def run(
        self, mode: MigratorMode, entity_types: list[HistoryEntityType] | None = None
    ) -> MigrationSummary | list[SkippedEntity]:
        """Run the migrator in the given mode."""
        if mode is MigratorMode.MIGRATE:
            return self.migrate(entity_types)
        if mode is MigratorMode.RETRY_SKIPPED:
            return self.retry_skipped(entity_types)
        if mode is MigratorMode.LIST_SKIPPED:
            return self.list_skipped(entity_types)
        raise ValueError(f"Unknown migrator mode: {mode}")

    def migrate(self, entity_types: list[HistoryEntityType] | None = None) -> MigrationSummary:
        """Migrate entities created after each type's watermark."""
        return self._execute(MigratorMode.MIGRATE, entity_types)

    def retry_skipped(
        self, entity_types: list[HistoryEntityType] | None = None
    ) -> MigrationSummary:
        """Re-attempt every skipped entity, updating its ledger row in place."""
        return self._execute(MigratorMode.RETRY_SKIPPED, entity_types)

    def list_skipped(
        self, entity_types: list[HistoryEntityType] | None = None
    ) -> list[SkippedEntity]:
        """List skipped entities grouped by type in dependency order. Performs no writes."""
        skipped = []
        for entity_type in HistoryEntityType.ordered(entity_types):
            skipped.extend(
                SkippedEntity(entity_type, row.source_id, row.skip_reason)
                for row in self.state.list_skipped(entity_type)
            )
        return skipped

    def _determine_phases(
        self, entity_types: list[HistoryEntityType] | None
    ) -> list[dict[str, Any]]:
        """Phases restricted to the requested types, empty phases dropped."""
        requested = set(HistoryEntityType.ordered(entity_types))
        phases = []
        for phase in self.MIGRATION_PHASES:
            types = [t for t in phase["entity_types"] if t in requested]
            if types:
                phases.append({**phase, "entity_types": types})
        return phases

    def _execute(
        self, mode: MigratorMode, entity_types: list[HistoryEntityType] | None
    ) -> MigrationSummary:
        # every log entry of the run carries its id and mode
        with bound_contextvars(migration_id=self.state.migration_id, mode=mode.value):
            return self._run_phases(mode, entity_types)

    def _run_phases(
        self, mode: MigratorMode, entity_types: list[HistoryEntityType] | None
    ) -> MigrationSummary:
        summary = MigrationSummary(mode=mode, start_time=datetime.now(UTC))
        phases = self._determine_phases(entity_types)

        logger.info(
            "migration_started",
            mode=mode.value,
            migration_id=self.state.migration_id,
            phases=[p["name"] for p in phases],
        )

        for phase in phases:
            logger.info(
                "phase_starting",
                phase_name=phase["name"],
                description=phase["description"],
                entity_types=[t.name for t in phase["entity_types"]],
            )
            for entity_type in phase["entity_types"]:
                type_summary = summary.for_type(entity_type)
                try:
                    if mode is MigratorMode.MIGRATE:
                        self._migrate_type(entity_type, type_summary)
                    else:
                        self._retry_type(entity_type, type_summary)
                except HistoryMigrationError as e:
                    log_error(
                        logger, e, "entity_type_failed", entity_type=entity_type.name, mode=mode.value
                    )
                    if isinstance(e, MigrationError) and e.entity_type is not None:
                        raise
                    raise MigrationError(
                        f"Migration of {entity_type} failed: {e}", entity_type
                    ) from e

                log_migration_progress(
                    logger,
                    entity_type=entity_type.name,
                    migrated=type_summary.migrated,
                    skipped=type_summary.skipped,
                    processed=type_summary.processed,
                    mode=mode.value,
                )

            logger.info("phase_completed", phase_name=phase["name"])

        summary.end_time = datetime.now(UTC)
        logger.info("migration_completed", **summary.to_dict())
        return summary

    def _migrate_type(self, entity_type: HistoryEntityType, type_summary: TypeSummary) -> None:
        migrator = self.migrators[entity_type]
        watermark = self.state.latest_created_at(entity_type)
        logger.debug(
            "fetching_entities",
            entity_type=entity_type.name,
            after=watermark.isoformat() if watermark else None,
        )

        def migrate(entity) -> None:
            type_summary.record(migrator.migrate_entity(entity, MigratorMode.MIGRATE))

        self.source.fetch_batch(
            entity_type, watermark, migrate, page_size=self.config.source.page_size
        )

    def _retry_type(self, entity_type: HistoryEntityType, type_summary: TypeSummary) -> None:
        migrator = self.migrators[entity_type]
        for row in self.state.list_skipped(entity_type):
            try:
                entity = migrator.handler.load(row.source_id)
            except EntityNotFoundError:
                logger.warning(
                    "skipped_entity_not_in_source",
                    entity_type=entity_type.name,
                    source_id=row.source_id,
                )
                type_summary.ignored += 1
                continue

            type_summary.record(migrator.migrate_entity(entity, MigratorMode.RETRY_SKIPPED))
