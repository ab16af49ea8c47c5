"""Generic entity migrator.

`EntityMigrator` runs the same sequence for every entity type, delegating
the type-specific parts to an `EntityHandler`:

1. idempotency gate
2. key allocation
3. ancestor resolution (unresolved keys stay unset)
4. conversion pipeline
5. validation of the mandatory keys on the built record
6. target insert and ledger write in one commit unit
7. children migrated inside the same unit

Skips and conversion errors are recorded in the ledger. Anything else
propagates after the commit unit has been rolled back.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from history_migration.client.exceptions import ConversionError, EntitySkippedError
from history_migration.client.source_client import SourceClient
from history_migration.client.target_client import TargetClient
from history_migration.config import HistoryConfig
from history_migration.migration import skip_reasons
from history_migration.migration.conversion import (
    ConversionContext,
    ConversionPipeline,
    DefinitionNaming,
    RecordBuilder,
    RetentionPolicy,
)
from history_migration.migration.database import transaction
from history_migration.migration.entity_types import MigratorMode
from history_migration.migration.handlers import ChildEntity, EntityHandler
from history_migration.migration.keys import KeyGenerator
from history_migration.migration.state import MigrationState
from history_migration.schema.source import SourceEntity
from history_migration.utils.logging import get_logger

logger = get_logger(__name__)


class OutcomeStatus(str, Enum):
    MIGRATED = "migrated"
    SKIPPED = "skipped"
    IGNORED = "ignored"  # already handled, no side effects


@dataclass(frozen=True)
class MigrationOutcome:
    """Result of migrating one entity."""

    status: OutcomeStatus
    source_id: str
    target_key: int | str | None = None
    skip_reason: str | None = None
    children: int = 0


@dataclass
class MigrationServices:
    """Collaborators shared by all handlers of a run."""

    state: MigrationState
    source: SourceClient
    target: TargetClient
    pipeline: ConversionPipeline
    keys: KeyGenerator
    settings: HistoryConfig
    retention: RetentionPolicy
    naming: DefinitionNaming

    @classmethod
    def create(
        cls,
        state: MigrationState,
        source: SourceClient,
        target: TargetClient,
        pipeline: ConversionPipeline,
        settings: HistoryConfig,
        retention: RetentionPolicy | None = None,
    ) -> "MigrationServices":
        """Build services, seeding the key generator past every stored key."""
        return cls(
            state=state,
            source=source,
            target=target,
            pipeline=pipeline,
            keys=KeyGenerator(settings.partition_id, target.max_key_sequence()),
            settings=settings,
            retention=retention or RetentionPolicy.from_config(settings),
            naming=DefinitionNaming.from_config(settings),
        )


class EntityMigrator:
    """Migrates single entities of one type.

    Stateless between calls; all per-entity state lives in the builder and
    conversion context created for that entity.
    """

    def __init__(self, handler: EntityHandler, services: MigrationServices):
        self.handler = handler
        self.services = services
        self.entity_type = handler.entity_type

    def should_migrate(self, source_id: str, mode: MigratorMode) -> bool:
        """MIGRATE: no ledger row yet. RETRY_SKIPPED: the row has no key yet."""
        state = self.services.state
        if mode is MigratorMode.RETRY_SKIPPED:
            return not state.has_target_key(source_id, self.entity_type)
        return not state.exists(source_id, self.entity_type)

    def migrate_entity(self, entity: SourceEntity, mode: MigratorMode) -> MigrationOutcome:
        """Migrate one entity, or record why it cannot be migrated yet.

        Args:
            entity: Source entity
            mode: MIGRATE or RETRY_SKIPPED

        Returns:
            Outcome of the attempt

        Raises:
            StateError, SourceError: Fatal adapter failures (nothing was recorded)
        """
        if mode is MigratorMode.LIST_SKIPPED:
            raise ValueError("LIST_SKIPPED runs do not migrate entities")

        source_id = self.handler.source_id(entity)
        if not self.should_migrate(source_id, mode):
            logger.debug(
                "entity_already_handled",
                entity_type=self.entity_type.name,
                source_id=source_id,
                mode=mode.value,
            )
            return MigrationOutcome(OutcomeStatus.IGNORED, source_id)

        created_at = self.handler.creation_time(entity)
        try:
            reason = self.handler.precheck(entity)
            if reason is not None:
                raise EntitySkippedError(self.entity_type, source_id, reason, created_at)

            with transaction():
                target_key, children = self._migrate_in_unit(entity, created_at, mode)

        except EntitySkippedError as e:
            return self._record_skip(source_id, created_at, e.reason, mode)
        except ConversionError as e:
            return self._record_skip(
                source_id, created_at, skip_reasons.conversion_error(str(e)), mode
            )

        logger.debug(
            "entity_migrated",
            entity_type=self.entity_type.name,
            source_id=source_id,
            target_key=target_key,
            children=children,
        )
        return MigrationOutcome(
            OutcomeStatus.MIGRATED, source_id, target_key=target_key, children=children
        )

    def _migrate_in_unit(
        self, entity: SourceEntity, created_at: datetime, mode: MigratorMode
    ) -> tuple[int | str, int]:
        services = self.services
        generated = services.keys.next_key(self.entity_type)

        builder = RecordBuilder(services.target.model_for(self.entity_type))
        self.handler.assign_key(builder, generated.value)
        ancestors: dict = {}
        companions = self.handler.resolve(entity, builder, ancestors)

        record = services.pipeline.convert(self._context(entity, builder, ancestors))
        self.handler.validate(entity, record, created_at)

        target_key = self.handler.ledger_key(record)
        services.target.insert(self.entity_type, record, key_sequence=generated.sequence)
        self._record_migrated(self.handler.source_id(entity), target_key, created_at, mode)

        children = companions + self.handler.expand_children(entity, record, ancestors)
        for child in children:
            self._migrate_child(child, entity, created_at, mode)
        return target_key, len(children)

    def _migrate_child(
        self,
        child: ChildEntity,
        parent: SourceEntity,
        parent_created_at: datetime,
        mode: MigratorMode,
    ) -> None:
        services = self.services
        state = services.state
        if state.has_target_key(child.entity.id, child.entity_type):
            return

        builder = RecordBuilder(services.target.model_for(child.entity_type))
        builder.set(**child.preset)
        record = services.pipeline.convert(
            ConversionContext(
                entity_type=child.entity_type,
                entity=child.entity,
                builder=builder,
                ancestors=child.ancestors,
                retention=services.retention,
                naming=services.naming,
                settings=services.settings,
            )
        )

        # an unmet child requirement skips the whole unit under the parent's identity
        if child.entity_type is self.entity_type:
            try:
                self.handler.validate(child.entity, record, child.created_at)
            except EntitySkippedError as e:
                raise EntitySkippedError(
                    self.entity_type, self.handler.source_id(parent), e.reason, parent_created_at
                ) from e

        services.target.insert(child.entity_type, record, key_sequence=child.key_sequence)
        target_key = (
            self.handler.ledger_key(record)
            if child.entity_type is self.entity_type
            else record.record_key
        )
        if state.exists(child.entity.id, child.entity_type):
            state.update(child.entity.id, target_key, child.entity_type)
        else:
            state.insert(child.entity.id, target_key, child.created_at, child.entity_type)

        logger.debug(
            "child_entity_migrated",
            entity_type=child.entity_type.name,
            source_id=child.entity.id,
            parent_id=parent.id,
            target_key=target_key,
        )

    def _context(self, entity, builder, ancestors) -> ConversionContext:
        services = self.services
        return ConversionContext(
            entity_type=self.entity_type,
            entity=entity,
            builder=builder,
            ancestors=ancestors,
            retention=services.retention,
            naming=services.naming,
            settings=services.settings,
        )

    def _record_migrated(
        self, source_id: str, target_key, created_at: datetime, mode: MigratorMode
    ) -> None:
        state = self.services.state
        if mode is MigratorMode.RETRY_SKIPPED and state.exists(source_id, self.entity_type):
            state.update(source_id, target_key, self.entity_type)
        else:
            state.insert(source_id, target_key, created_at, self.entity_type)

    def _record_skip(
        self, source_id: str, created_at: datetime, reason: str, mode: MigratorMode
    ) -> MigrationOutcome:
        state = self.services.state
        if state.exists(source_id, self.entity_type):
            state.update(source_id, None, self.entity_type, skip_reason=reason)
        else:
            state.insert(source_id, None, created_at, self.entity_type, skip_reason=reason)

        logger.warning(
            "entity_skipped",
            entity_type=self.entity_type.name,
            source_id=source_id,
            reason=reason,
            mode=mode.value,
        )
        return MigrationOutcome(OutcomeStatus.SKIPPED, source_id, skip_reason=reason)
