"""Per-type entity handlers.

A handler tells the generic entity migrator how one entity type is wired
into the target graph: which ancestor keys to resolve, which of them are
mandatory (in check order, with the skip reason of each), and which further
entities must be written in the same commit unit.

Handlers hold no per-entity state; everything they resolve is written into
the record builder or the ancestors mapping passed in.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from history_migration.client.exceptions import EntityNotFoundError, EntitySkippedError
from history_migration.migration import skip_reasons
from history_migration.migration.conversion import RecordBuilder
from history_migration.migration.entity_types import HistoryEntityType
from history_migration.schema.source import DecisionRequirementsDefinition, SourceEntity
from history_migration.schema.target import TargetRecord
from history_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Requirement:
    """A mandatory key on the built record.

    Attributes:
        field: Record field that must be set
        reason: Skip reason when it is not
        when: Predicate on the source entity; the requirement applies only
            when it returns True (always when None)
    """

    field: str
    reason: str
    when: Callable[[Any], bool] | None = None

    def applies(self, entity: SourceEntity) -> bool:
        return self.when is None or bool(self.when(entity))


@dataclass
class ChildEntity:
    """An entity written in the same commit unit as the entity that produced it.

    `preset` fields are set on the child's builder before conversion and
    carry the keys the parent already resolved.
    """

    entity_type: HistoryEntityType
    entity: SourceEntity
    created_at: datetime
    preset: dict[str, Any] = field(default_factory=dict)
    ancestors: dict[str, Any] = field(default_factory=dict)
    key_sequence: int | None = None


def _not_standalone(entity) -> bool:
    return not entity.is_standalone


class EntityHandler:
    """Base handler.

    Subclasses set `entity_type` and `requirements` and override `resolve`
    (and `precheck` / `expand_children` where the type needs them).
    """

    entity_type: ClassVar[HistoryEntityType]
    requirements: ClassVar[tuple[Requirement, ...]] = ()

    def __init__(self, services):
        """Initialize handler.

        Args:
            services: Shared `MigrationServices` (ledger, adapters, keys, settings)
        """
        self.services = services
        self.state = services.state
        self.source = services.source
        self.target = services.target

    @property
    def key_field(self) -> str:
        return self.services.target.model_for(self.entity_type).KEY_FIELD

    def source_id(self, entity: SourceEntity) -> str:
        """Identity of the entity in the ledger."""
        return entity.id

    def load(self, source_id: str) -> SourceEntity:
        """Fetch the entity behind a ledger row.

        Raises:
            EntityNotFoundError: If the source no longer has it
        """
        return self.source.get_by_id(self.entity_type, source_id)

    def creation_time(self, entity: SourceEntity) -> datetime:
        return self.source.creation_time(self.entity_type, entity)

    def precheck(self, entity: SourceEntity) -> str | None:
        """Skip reason known before any resolution, or None."""
        return None

    def assign_key(self, builder: RecordBuilder, key: int | str) -> None:
        builder.set(**{self.key_field: key})

    def ledger_key(self, record: TargetRecord) -> int | str:
        """Key recorded in the ledger for a migrated record."""
        return record.record_key

    def resolve(
        self, entity: SourceEntity, builder: RecordBuilder, ancestors: dict[str, Any]
    ) -> list[ChildEntity]:
        """Resolve ancestor keys into the builder.

        Unresolved keys are left unset; `validate` decides about the skip.

        Returns:
            Entities to create in the same commit unit (e.g. synthesized parents)
        """
        return []

    def validate(self, entity: SourceEntity, record: TargetRecord, created_at: datetime) -> None:
        """Check the mandatory keys on the built record.

        Raises:
            EntitySkippedError: For the first unmet requirement in declared order
        """
        for requirement in self.requirements:
            if requirement.applies(entity) and getattr(record, requirement.field) is None:
                raise EntitySkippedError(
                    self.entity_type, self.source_id(entity), requirement.reason, created_at
                )

    def expand_children(
        self, entity: SourceEntity, record: TargetRecord, ancestors: dict[str, Any]
    ) -> list[ChildEntity]:
        """Entities discovered through this one that migrate in the same unit."""
        return []

    # Resolution helpers shared by the instance-level handlers

    def lookup(self, entity_type: HistoryEntityType, source_id: str | None):
        return self.state.lookup_target_key(source_id, entity_type)

    def resolve_process_instance(
        self, entity, builder: RecordBuilder, ancestors: dict[str, Any]
    ) -> None:
        """Set process instance, root and (by default) process definition keys."""
        key = self.lookup(HistoryEntityType.PROCESS_INSTANCE, entity.process_instance_id)
        process_instance = None
        if key is not None:
            builder.set(process_instance_key=key)
            process_instance = self.target.find_by_key(HistoryEntityType.PROCESS_INSTANCE, key)
            ancestors["process_instance"] = process_instance

        root_id = entity.root_process_instance_id
        if root_id is None:
            root_key = process_instance.root_process_instance_key if process_instance else None
        else:
            root_key = self.lookup(HistoryEntityType.PROCESS_INSTANCE, root_id)
        builder.set(root_process_instance_key=root_key)

        process_definition_id = getattr(entity, "process_definition_id", None)
        if process_definition_id is not None:
            builder.set(
                process_definition_key=self.lookup(
                    HistoryEntityType.PROCESS_DEFINITION, process_definition_id
                )
            )
        elif process_instance is not None:
            builder.set_default(process_definition_key=process_instance.process_definition_key)

    def find_flow_node_key(self, process_instance_key: int | None, activity_id: str | None):
        """Key of the latest migrated flow node with that element id in the instance."""
        if process_instance_key is None or activity_id is None:
            return None
        flow_nodes = self.target.search(
            HistoryEntityType.FLOW_NODE,
            process_instance_key=process_instance_key,
            flow_node_id=activity_id,
        )
        return flow_nodes[-1].flow_node_instance_key if flow_nodes else None


class ProcessDefinitionHandler(EntityHandler):
    entity_type = HistoryEntityType.PROCESS_DEFINITION


class DecisionRequirementsHandler(EntityHandler):
    entity_type = HistoryEntityType.DECISION_REQUIREMENTS


class FormDefinitionHandler(EntityHandler):
    entity_type = HistoryEntityType.FORM_DEFINITION


class DecisionDefinitionHandler(EntityHandler):
    """A definition deployed without requirements gets a synthesized one."""

    entity_type = HistoryEntityType.DECISION_DEFINITION
    requirements = (
        Requirement("decision_requirements_key", skip_reasons.MISSING_DECISION_REQUIREMENTS),
    )

    def resolve(self, entity, builder, ancestors):
        if entity.decision_requirements_definition_id is not None:
            builder.set(
                decision_requirements_key=self.lookup(
                    HistoryEntityType.DECISION_REQUIREMENTS,
                    entity.decision_requirements_definition_id,
                )
            )
            return []

        synthesized = DecisionRequirementsDefinition(
            id=f"drd-{entity.id}",
            key=f"drd-{entity.key}",
            name=entity.name,
            version=entity.version,
            deployment_id=entity.deployment_id,
            resource_name=entity.resource_name,
            dmn_xml=entity.dmn_xml,
            tenant_id=entity.tenant_id,
        )
        generated = self.services.keys.next_key(HistoryEntityType.DECISION_REQUIREMENTS)
        builder.set(
            decision_requirements_key=generated.value,
            decision_requirements_id=self.services.naming.prefix(synthesized.key),
        )
        logger.debug(
            "decision_requirements_synthesized",
            decision_definition_id=entity.id,
            source_id=synthesized.id,
        )
        return [
            ChildEntity(
                entity_type=HistoryEntityType.DECISION_REQUIREMENTS,
                entity=synthesized,
                created_at=self.creation_time(entity),
                preset={"decision_requirements_key": generated.value},
                key_sequence=generated.sequence,
            )
        ]


class ProcessInstanceHandler(EntityHandler):
    entity_type = HistoryEntityType.PROCESS_INSTANCE
    requirements = (
        Requirement("process_definition_key", skip_reasons.MISSING_PROCESS_DEFINITION),
        Requirement(
            "parent_process_instance_key",
            skip_reasons.MISSING_PARENT_PROCESS_INSTANCE,
            when=lambda e: e.super_process_instance_id is not None,
        ),
        Requirement("root_process_instance_key", skip_reasons.MISSING_ROOT_PROCESS_INSTANCE),
    )

    def resolve(self, entity, builder, ancestors):
        definition_key = self.lookup(
            HistoryEntityType.PROCESS_DEFINITION, entity.process_definition_id
        )
        builder.set(process_definition_key=definition_key)
        if definition_key is not None:
            ancestors["process_definition"] = self.target.find_by_key(
                HistoryEntityType.PROCESS_DEFINITION, definition_key
            )

        if entity.super_process_instance_id is not None:
            builder.set(
                parent_process_instance_key=self.lookup(
                    HistoryEntityType.PROCESS_INSTANCE, entity.super_process_instance_id
                )
            )

        # a root instance is its own root
        if entity.root_process_instance_id in (None, entity.id):
            builder.set(root_process_instance_key=builder.get("process_instance_key"))
        else:
            builder.set(
                root_process_instance_key=self.lookup(
                    HistoryEntityType.PROCESS_INSTANCE, entity.root_process_instance_id
                )
            )
        return []


class FlowNodeHandler(EntityHandler):
    entity_type = HistoryEntityType.FLOW_NODE
    requirements = (
        Requirement("process_instance_key", skip_reasons.MISSING_PROCESS_INSTANCE),
        Requirement("process_definition_key", skip_reasons.MISSING_PROCESS_DEFINITION),
        Requirement("flow_node_scope_key", skip_reasons.MISSING_PARENT_FLOW_NODE),
        Requirement("root_process_instance_key", skip_reasons.MISSING_ROOT_PROCESS_INSTANCE),
    )

    def resolve(self, entity, builder, ancestors):
        self.resolve_process_instance(entity, builder, ancestors)
        process_instance_key = builder.get("process_instance_key")
        own_key = builder.get("flow_node_instance_key")

        parent_id = entity.parent_activity_instance_id
        if parent_id is None or parent_id == entity.process_instance_id:
            builder.set(flow_node_scope_key=process_instance_key)
            if process_instance_key is not None:
                builder.set(tree_path=f"{process_instance_key}/{own_key}")
            return []

        scope_key = self.lookup(HistoryEntityType.FLOW_NODE, parent_id)
        builder.set(flow_node_scope_key=scope_key)
        parent = self.target.find_by_key(HistoryEntityType.FLOW_NODE, scope_key)
        if parent is not None:
            ancestors["flow_node"] = parent
            if parent.tree_path:
                builder.set(tree_path=f"{parent.tree_path}/{own_key}")
        return []


class UserTaskHandler(EntityHandler):
    entity_type = HistoryEntityType.USER_TASK
    requirements = (
        Requirement("process_instance_key", skip_reasons.MISSING_PROCESS_INSTANCE),
        Requirement("element_instance_key", skip_reasons.MISSING_FLOW_NODE),
        Requirement("root_process_instance_key", skip_reasons.MISSING_ROOT_PROCESS_INSTANCE),
        Requirement("form_key", skip_reasons.MISSING_FORM, when=lambda e: e.form_id is not None),
    )

    def precheck(self, entity):
        if entity.case_instance_id is not None:
            return skip_reasons.UNSUPPORTED_CMMN_TASK
        if entity.process_instance_id is None:
            return skip_reasons.UNSUPPORTED_STANDALONE_TASK
        return None

    def resolve(self, entity, builder, ancestors):
        self.resolve_process_instance(entity, builder, ancestors)
        builder.set(
            element_instance_key=self.lookup(
                HistoryEntityType.FLOW_NODE, entity.activity_instance_id
            )
        )
        if entity.form_id is not None:
            builder.set(form_key=self.lookup(HistoryEntityType.FORM_DEFINITION, entity.form_id))
        return []


class VariableHandler(EntityHandler):
    entity_type = HistoryEntityType.VARIABLE
    requirements = (
        Requirement("process_instance_key", skip_reasons.MISSING_PROCESS_INSTANCE),
        Requirement(
            "scope_key",
            skip_reasons.BELONGS_TO_SKIPPED_TASK,
            when=lambda e: e.task_id is not None,
        ),
        Requirement("scope_key", skip_reasons.MISSING_SCOPE_KEY),
        Requirement("root_process_instance_key", skip_reasons.MISSING_ROOT_PROCESS_INSTANCE),
    )

    def precheck(self, entity):
        if entity.case_instance_id is not None:
            return skip_reasons.UNSUPPORTED_CMMN_VARIABLE
        return None

    def resolve(self, entity, builder, ancestors):
        self.resolve_process_instance(entity, builder, ancestors)
        process_instance_key = builder.get("process_instance_key")

        if entity.task_id is not None:
            task_key = self.lookup(HistoryEntityType.USER_TASK, entity.task_id)
            task = self.target.find_by_key(HistoryEntityType.USER_TASK, task_key)
            if task is not None:
                ancestors["user_task"] = task
                builder.set(scope_key=task.element_instance_key)
        elif entity.activity_instance_id in (None, entity.process_instance_id):
            builder.set(scope_key=process_instance_key)
        else:
            builder.set(
                scope_key=self.lookup(HistoryEntityType.FLOW_NODE, entity.activity_instance_id)
            )
        return []


class IncidentHandler(EntityHandler):
    entity_type = HistoryEntityType.INCIDENT
    requirements = (
        Requirement("process_definition_key", skip_reasons.MISSING_PROCESS_DEFINITION),
        Requirement("process_instance_key", skip_reasons.MISSING_PROCESS_INSTANCE),
        Requirement("root_process_instance_key", skip_reasons.MISSING_ROOT_PROCESS_INSTANCE),
        Requirement(
            "flow_node_instance_key",
            skip_reasons.MISSING_FLOW_NODE,
            when=lambda e: e.activity_id is not None,
        ),
        Requirement(
            "job_key",
            skip_reasons.MISSING_JOB_REFERENCE,
            when=lambda e: e.incident_type == "failedExternalTask",
        ),
    )

    def resolve(self, entity, builder, ancestors):
        self.resolve_process_instance(entity, builder, ancestors)
        builder.set(
            flow_node_instance_key=self.find_flow_node_key(
                builder.get("process_instance_key"), entity.activity_id
            )
        )

        if entity.incident_type == "failedExternalTask":
            failure = self.source.get_failure_external_task_log(entity.configuration)
            if failure is not None:
                builder.set(job_key=self.lookup(HistoryEntityType.EXTERNAL_TASK, failure.id))
        return []


class JobHandler(EntityHandler):
    """One target job per source job; the job's first log stands for it."""

    entity_type = HistoryEntityType.JOB
    requirements = (
        Requirement("process_instance_key", skip_reasons.MISSING_PROCESS_INSTANCE),
    )

    def source_id(self, entity):
        return entity.job_id

    def load(self, source_id):
        logs = self.source.find_job_logs(source_id)
        if not logs:
            raise EntityNotFoundError(self.entity_type, source_id)
        return logs[0]

    def resolve(self, entity, builder, ancestors):
        self.resolve_process_instance(entity, builder, ancestors)
        builder.set(
            element_instance_key=self.find_flow_node_key(
                builder.get("process_instance_key"), entity.activity_id
            )
        )
        return []


class ExternalTaskHandler(EntityHandler):
    entity_type = HistoryEntityType.EXTERNAL_TASK
    requirements = (
        Requirement("process_instance_key", skip_reasons.MISSING_PROCESS_INSTANCE),
        Requirement("process_definition_key", skip_reasons.MISSING_PROCESS_DEFINITION),
        Requirement("root_process_instance_key", skip_reasons.MISSING_ROOT_PROCESS_INSTANCE),
        Requirement("element_instance_key", skip_reasons.MISSING_FLOW_NODE),
    )

    def resolve(self, entity, builder, ancestors):
        self.resolve_process_instance(entity, builder, ancestors)
        builder.set(
            element_instance_key=self.lookup(
                HistoryEntityType.FLOW_NODE, entity.activity_instance_id
            )
        )
        return []


class DecisionInstanceHandler(EntityHandler):
    """Root decision instances; nested decisions are expanded as children.

    The whole decision tree shares the root's decision instance key. Record
    ids are "{key}-{n}": the root is n=1, children follow in evaluation order.
    """

    entity_type = HistoryEntityType.DECISION_INSTANCE
    requirements = (
        Requirement("decision_definition_key", skip_reasons.MISSING_DECISION_DEFINITION),
        Requirement("decision_requirements_key", skip_reasons.MISSING_DECISION_REQUIREMENTS),
        Requirement(
            "root_decision_definition_key",
            skip_reasons.MISSING_ROOT_DECISION_INSTANCE,
            when=lambda e: not e.is_root,
        ),
        Requirement(
            "process_definition_key",
            skip_reasons.MISSING_PROCESS_DEFINITION,
            when=_not_standalone,
        ),
        Requirement(
            "process_instance_key", skip_reasons.MISSING_PROCESS_INSTANCE, when=_not_standalone
        ),
        Requirement(
            "root_process_instance_key",
            skip_reasons.MISSING_ROOT_PROCESS_INSTANCE,
            when=_not_standalone,
        ),
        Requirement(
            "flow_node_instance_key", skip_reasons.MISSING_FLOW_NODE, when=_not_standalone
        ),
    )

    def assign_key(self, builder, key):
        builder.set(decision_instance_key=key, decision_instance_id=f"{key}-1")

    def ledger_key(self, record):
        return record.decision_instance_key

    def resolve_definition(self, entity, builder) -> None:
        definition_key = self.lookup(
            HistoryEntityType.DECISION_DEFINITION, entity.decision_definition_id
        )
        builder.set(decision_definition_key=definition_key)
        definition = self.target.find_by_key(HistoryEntityType.DECISION_DEFINITION, definition_key)
        if definition is not None:
            builder.set(decision_requirements_key=definition.decision_requirements_key)
        elif entity.decision_requirements_definition_id is not None:
            builder.set(
                decision_requirements_key=self.lookup(
                    HistoryEntityType.DECISION_REQUIREMENTS,
                    entity.decision_requirements_definition_id,
                )
            )

    def resolve(self, entity, builder, ancestors):
        self.resolve_definition(entity, builder)
        builder.set(root_decision_definition_key=builder.get("decision_definition_key"))

        if entity.is_standalone:
            return []

        self.resolve_process_instance(entity, builder, ancestors)
        builder.set(
            flow_node_instance_key=self.lookup(
                HistoryEntityType.FLOW_NODE, entity.activity_instance_id
            )
        )
        return []

    def expand_children(self, entity, record, ancestors):
        children = []
        for index, child in enumerate(self.source.find_child_decision_instances(entity.id)):
            builder = RecordBuilder(self.target.model_for(self.entity_type))
            self.resolve_definition(child, builder)
            preset = {
                "decision_instance_key": record.decision_instance_key,
                "decision_instance_id": f"{record.decision_instance_key}-{index + 2}",
                "decision_definition_key": builder.get("decision_definition_key"),
                "decision_requirements_key": (
                    builder.get("decision_requirements_key") or record.decision_requirements_key
                ),
                "root_decision_definition_key": record.decision_definition_key,
                "process_definition_key": record.process_definition_key,
                "process_instance_key": record.process_instance_key,
                "root_process_instance_key": record.root_process_instance_key,
                "flow_node_instance_key": record.flow_node_instance_key,
            }
            children.append(
                ChildEntity(
                    entity_type=self.entity_type,
                    entity=child,
                    # children share the root's position in the fetch order
                    created_at=self.creation_time(entity),
                    preset=preset,
                    ancestors=dict(ancestors),
                )
            )
        return children


class AuditLogHandler(EntityHandler):
    entity_type = HistoryEntityType.AUDIT_LOG
    requirements = (
        Requirement(
            "process_definition_key",
            skip_reasons.MISSING_PROCESS_DEFINITION,
            when=lambda e: e.process_definition_id is not None,
        ),
        Requirement(
            "process_instance_key",
            skip_reasons.MISSING_PROCESS_INSTANCE,
            when=lambda e: e.process_instance_id is not None,
        ),
        Requirement(
            "root_process_instance_key",
            skip_reasons.MISSING_ROOT_PROCESS_INSTANCE,
            when=lambda e: e.process_instance_id is not None,
        ),
        Requirement(
            "user_task_key",
            skip_reasons.BELONGS_TO_SKIPPED_TASK,
            when=lambda e: e.task_id is not None,
        ),
    )

    def resolve(self, entity, builder, ancestors):
        if entity.process_instance_id is not None:
            self.resolve_process_instance(entity, builder, ancestors)
        elif entity.process_definition_id is not None:
            builder.set(
                process_definition_key=self.lookup(
                    HistoryEntityType.PROCESS_DEFINITION, entity.process_definition_id
                )
            )

        if entity.task_id is not None:
            builder.set(user_task_key=self.lookup(HistoryEntityType.USER_TASK, entity.task_id))
        return []


def create_handler(entity_type: HistoryEntityType, services) -> EntityHandler:
    """Create the handler for an entity type.

    Args:
        entity_type: History entity type
        services: Shared `MigrationServices`

    Returns:
        Handler instance

    Raises:
        ValueError: If the type has no handler
    """
    handlers = {
        # Definitions
        HistoryEntityType.PROCESS_DEFINITION: ProcessDefinitionHandler,
        HistoryEntityType.DECISION_REQUIREMENTS: DecisionRequirementsHandler,
        HistoryEntityType.FORM_DEFINITION: FormDefinitionHandler,
        HistoryEntityType.DECISION_DEFINITION: DecisionDefinitionHandler,
        # Runtime history
        HistoryEntityType.PROCESS_INSTANCE: ProcessInstanceHandler,
        HistoryEntityType.FLOW_NODE: FlowNodeHandler,
        HistoryEntityType.USER_TASK: UserTaskHandler,
        HistoryEntityType.VARIABLE: VariableHandler,
        HistoryEntityType.JOB: JobHandler,
        HistoryEntityType.EXTERNAL_TASK: ExternalTaskHandler,
        HistoryEntityType.INCIDENT: IncidentHandler,
        # Decisions and audit
        HistoryEntityType.DECISION_INSTANCE: DecisionInstanceHandler,
        HistoryEntityType.AUDIT_LOG: AuditLogHandler,
    }

    handler_class = handlers.get(entity_type)
    if handler_class is None:
        raise ValueError(f"No handler for entity type: {entity_type}")
    return handler_class(services)
