"""Target store client.

Writes built history records into the target tables and answers the
lookups child migrators need to copy ancestor properties forward.
"""

from typing import Any

from sqlalchemy import func

from history_migration.client.exceptions import StateError
from history_migration.migration.database import get_session
from history_migration.migration.entity_types import HistoryEntityType
from history_migration.migration.keys import format_key
from history_migration.migration.models import TargetRecordRow
from history_migration.schema.target import (
    AuditLogRecord,
    DecisionDefinitionRecord,
    DecisionInstanceRecord,
    DecisionRequirementsRecord,
    FlowNodeInstanceRecord,
    FormDefinitionRecord,
    IncidentRecord,
    JobRecord,
    ProcessDefinitionRecord,
    ProcessInstanceRecord,
    TargetRecord,
    UserTaskRecord,
    VariableRecord,
)
from history_migration.utils.logging import get_logger

logger = get_logger(__name__)

RECORD_MODELS: dict[HistoryEntityType, type[TargetRecord]] = {
    HistoryEntityType.PROCESS_DEFINITION: ProcessDefinitionRecord,
    HistoryEntityType.DECISION_REQUIREMENTS: DecisionRequirementsRecord,
    HistoryEntityType.FORM_DEFINITION: FormDefinitionRecord,
    HistoryEntityType.DECISION_DEFINITION: DecisionDefinitionRecord,
    HistoryEntityType.PROCESS_INSTANCE: ProcessInstanceRecord,
    HistoryEntityType.FLOW_NODE: FlowNodeInstanceRecord,
    HistoryEntityType.USER_TASK: UserTaskRecord,
    HistoryEntityType.VARIABLE: VariableRecord,
    HistoryEntityType.JOB: JobRecord,
    HistoryEntityType.EXTERNAL_TASK: JobRecord,
    HistoryEntityType.INCIDENT: IncidentRecord,
    HistoryEntityType.DECISION_INSTANCE: DecisionInstanceRecord,
    HistoryEntityType.AUDIT_LOG: AuditLogRecord,
}

# Columns of target_records that search() can filter on in SQL
_INDEXED_COLUMNS = {
    "process_instance_key": TargetRecordRow.process_instance_key,
    "process_definition_key": TargetRecordRow.process_definition_key,
    "root_process_instance_key": TargetRecordRow.root_process_instance_key,
    "element_id": TargetRecordRow.element_id,
}


class TargetClient:
    """Client for the target history store.

    Records are persisted through the shared session machinery, so inserts
    made inside a commit unit are rolled back with it.
    """

    def __init__(self, database_url: str | None = None):
        """Initialize target client.

        Args:
            database_url: Database URL (optional once the database is initialized)
        """
        self.database_url = database_url
        self.stats = {"inserted_count": 0}

    def model_for(self, entity_type: HistoryEntityType) -> type[TargetRecord]:
        return RECORD_MODELS[entity_type]

    def insert(
        self,
        entity_type: HistoryEntityType,
        record: TargetRecord,
        key_sequence: int | None = None,
    ) -> None:
        """Insert a record.

        Args:
            entity_type: History entity type of the record
            record: Built target record
            key_sequence: Generator sequence the record key was encoded from

        Raises:
            StateError: If a record with the same key exists or the write fails
        """
        record_key = format_key(entity_type, record.record_key)
        try:
            with get_session(self.database_url) as session:
                duplicate = (
                    session.query(TargetRecordRow.id)
                    .filter_by(entity_type=entity_type.name, record_key=record_key)
                    .first()
                )
                if duplicate is not None:
                    raise StateError(
                        f"Target record {entity_type.name} '{record_key}' already exists"
                    )

                session.add(
                    TargetRecordRow(
                        entity_type=entity_type.name,
                        record_key=record_key,
                        key_sequence=key_sequence,
                        payload=record.model_dump(mode="json"),
                        **record.indexed_values(),
                    )
                )
                session.flush()
        except StateError:
            raise
        except Exception as e:
            logger.error(
                "Failed to insert target record",
                entity_type=entity_type.name,
                record_key=record_key,
                error=str(e),
            )
            raise StateError(f"Failed to insert target record: {e}") from e

        self.stats["inserted_count"] += 1
        logger.debug("Target record inserted", entity_type=entity_type.name, record_key=record_key)

    def find_by_key(self, entity_type: HistoryEntityType, key: int | str | None) -> TargetRecord | None:
        """Get a record by its key, or None."""
        if key is None:
            return None

        try:
            with get_session(self.database_url) as session:
                row = (
                    session.query(TargetRecordRow)
                    .filter_by(entity_type=entity_type.name, record_key=format_key(entity_type, key))
                    .one_or_none()
                )
                if row is None:
                    return None
                return self.model_for(entity_type).model_validate(row.payload)
        except Exception as e:
            raise StateError(f"Failed to read target record: {e}") from e

    def search(self, entity_type: HistoryEntityType, **filters: Any) -> list[TargetRecord]:
        """Find records of a type matching all filters.

        Filters on indexed ancestor columns run in SQL; any other record
        field is compared after loading.

        Args:
            entity_type: History entity type to search
            **filters: Record field name to expected value

        Returns:
            Matching records in insertion order
        """
        model = self.model_for(entity_type)
        unknown = set(filters) - set(model.model_fields)
        if unknown:
            raise ValueError(f"Unknown fields for {model.__name__}: {', '.join(sorted(unknown))}")

        sql_filters = {}
        payload_filters = {}
        for field, value in filters.items():
            column = model.INDEXED_FIELDS.get(field)
            if column is not None:
                sql_filters[column] = value
            else:
                payload_filters[field] = value

        try:
            with get_session(self.database_url) as session:
                query = session.query(TargetRecordRow).filter(
                    TargetRecordRow.entity_type == entity_type.name
                )
                for column, value in sql_filters.items():
                    query = query.filter(_INDEXED_COLUMNS[column] == value)
                rows = query.order_by(TargetRecordRow.id).all()
                records = [model.model_validate(row.payload) for row in rows]
        except Exception as e:
            raise StateError(f"Failed to search target records: {e}") from e

        return [
            record
            for record in records
            if all(getattr(record, field) == value for field, value in payload_filters.items())
        ]

    def count(self, entity_type: HistoryEntityType) -> int:
        """Count records of a type."""
        try:
            with get_session(self.database_url) as session:
                return (
                    session.query(func.count(TargetRecordRow.id))
                    .filter(TargetRecordRow.entity_type == entity_type.name)
                    .scalar()
                    or 0
                )
        except Exception as e:
            raise StateError(f"Failed to count target records: {e}") from e

    def max_key_sequence(self) -> int:
        """Highest key sequence used by any stored record (0 when empty)."""
        try:
            with get_session(self.database_url) as session:
                return session.query(func.max(TargetRecordRow.key_sequence)).scalar() or 0
        except Exception as e:
            raise StateError(f"Failed to read key sequence: {e}") from e
