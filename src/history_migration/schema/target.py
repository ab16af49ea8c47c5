"""Target history records.

Frozen pydantic models for the records written to the target store. Foreign
keys are optional at the model level; the entity migrator checks the
mandatory ones on the built record so a missing ancestor becomes a skip
rather than a validation failure.
"""

from datetime import datetime
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field


class TargetRecord(BaseModel):
    """Base class for target records."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    KEY_FIELD: ClassVar[str]
    # Record fields mirrored into indexed columns of the target table
    INDEXED_FIELDS: ClassVar[dict[str, str]] = {}

    tenant_id: str | None = None

    @property
    def record_key(self) -> int | str:
        return getattr(self, self.KEY_FIELD)

    def indexed_values(self) -> dict[str, Any]:
        """Column name to value for the indexed ancestor columns."""
        return {column: getattr(self, field) for field, column in self.INDEXED_FIELDS.items()}


class ProcessDefinitionRecord(TargetRecord):
    KEY_FIELD: ClassVar[str] = "process_definition_key"

    process_definition_key: int
    process_definition_id: str
    name: str | None = None
    version: int = 1
    version_tag: str | None = None
    resource_name: str | None = None
    bpmn_xml: str | None = None
    form_id: str | None = None


class DecisionRequirementsRecord(TargetRecord):
    KEY_FIELD: ClassVar[str] = "decision_requirements_key"

    decision_requirements_key: int
    decision_requirements_id: str
    name: str | None = None
    version: int = 1
    resource_name: str | None = None
    xml: str | None = None


class FormDefinitionRecord(TargetRecord):
    KEY_FIELD: ClassVar[str] = "form_key"

    form_key: int
    form_id: str
    version: int = 1
    form_schema: str | None = None


class DecisionDefinitionRecord(TargetRecord):
    KEY_FIELD: ClassVar[str] = "decision_definition_key"

    decision_definition_key: int
    decision_definition_id: str
    name: str | None = None
    version: int = 1
    decision_requirements_key: int | None = None
    decision_requirements_id: str | None = None


class ProcessInstanceRecord(TargetRecord):
    KEY_FIELD: ClassVar[str] = "process_instance_key"
    INDEXED_FIELDS: ClassVar[dict[str, str]] = {
        "process_instance_key": "process_instance_key",
        "process_definition_key": "process_definition_key",
        "root_process_instance_key": "root_process_instance_key",
    }

    process_instance_key: int
    process_definition_key: int | None = None
    process_definition_id: str | None = None
    parent_process_instance_key: int | None = None
    root_process_instance_key: int | None = None
    business_key: str | None = None
    state: str
    version: int | None = None
    start_date: datetime
    end_date: datetime | None = None
    history_cleanup_date: datetime | None = None
    partition_id: int | None = None


class FlowNodeInstanceRecord(TargetRecord):
    KEY_FIELD: ClassVar[str] = "flow_node_instance_key"
    INDEXED_FIELDS: ClassVar[dict[str, str]] = {
        "process_instance_key": "process_instance_key",
        "process_definition_key": "process_definition_key",
        "root_process_instance_key": "root_process_instance_key",
        "flow_node_id": "element_id",
    }

    flow_node_instance_key: int
    flow_node_id: str
    flow_node_name: str | None = None
    process_instance_key: int | None = None
    process_definition_key: int | None = None
    process_definition_id: str | None = None
    root_process_instance_key: int | None = None
    flow_node_scope_key: int | None = None
    tree_path: str | None = None
    type: str
    state: str
    start_date: datetime
    end_date: datetime | None = None
    history_cleanup_date: datetime | None = None
    partition_id: int | None = None


class UserTaskRecord(TargetRecord):
    KEY_FIELD: ClassVar[str] = "user_task_key"
    INDEXED_FIELDS: ClassVar[dict[str, str]] = {
        "process_instance_key": "process_instance_key",
        "process_definition_key": "process_definition_key",
        "root_process_instance_key": "root_process_instance_key",
        "element_id": "element_id",
    }

    user_task_key: int
    element_id: str | None = None
    name: str | None = None
    process_instance_key: int | None = None
    process_definition_key: int | None = None
    process_definition_id: str | None = None
    process_definition_version: int | None = None
    root_process_instance_key: int | None = None
    element_instance_key: int | None = None
    form_key: int | None = None
    assignee: str | None = None
    priority: int | None = None
    state: str
    creation_date: datetime
    completion_date: datetime | None = None
    due_date: datetime | None = None
    follow_up_date: datetime | None = None
    history_cleanup_date: datetime | None = None
    partition_id: int | None = None


class VariableRecord(TargetRecord):
    KEY_FIELD: ClassVar[str] = "variable_key"
    INDEXED_FIELDS: ClassVar[dict[str, str]] = {
        "process_instance_key": "process_instance_key",
        "process_definition_key": "process_definition_key",
        "root_process_instance_key": "root_process_instance_key",
        "name": "element_id",
    }

    variable_key: int
    name: str
    value_type: str | None = None
    value: str | None = None
    full_value: str | None = None
    is_preview: bool = False
    process_instance_key: int | None = None
    process_definition_key: int | None = None
    process_definition_id: str | None = None
    root_process_instance_key: int | None = None
    scope_key: int | None = None
    history_cleanup_date: datetime | None = None
    partition_id: int | None = None


class IncidentRecord(TargetRecord):
    KEY_FIELD: ClassVar[str] = "incident_key"
    INDEXED_FIELDS: ClassVar[dict[str, str]] = {
        "process_instance_key": "process_instance_key",
        "process_definition_key": "process_definition_key",
        "root_process_instance_key": "root_process_instance_key",
        "flow_node_id": "element_id",
    }

    incident_key: int
    process_instance_key: int | None = None
    process_definition_key: int | None = None
    process_definition_id: str | None = None
    root_process_instance_key: int | None = None
    flow_node_instance_key: int | None = None
    flow_node_id: str | None = None
    job_key: int | None = None
    error_type: str | None = None
    error_message: str | None = None
    state: str
    creation_date: datetime
    history_cleanup_date: datetime | None = None
    partition_id: int | None = None


class JobRecord(TargetRecord):
    """Job history; external task logs are stored as jobs as well."""

    KEY_FIELD: ClassVar[str] = "job_key"
    INDEXED_FIELDS: ClassVar[dict[str, str]] = {
        "process_instance_key": "process_instance_key",
        "process_definition_key": "process_definition_key",
        "root_process_instance_key": "root_process_instance_key",
        "element_id": "element_id",
    }

    job_key: int
    type: str | None = None
    kind: str = "BPMN_ELEMENT"
    worker: str | None = None
    state: str
    retries: int | None = None
    has_failed_with_retries_left: bool = False
    error_message: str | None = None
    deadline: datetime | None = None
    process_instance_key: int | None = None
    process_definition_key: int | None = None
    process_definition_id: str | None = None
    root_process_instance_key: int | None = None
    element_id: str | None = None
    element_instance_key: int | None = None
    creation_time: datetime | None = None
    last_update_time: datetime | None = None
    end_time: datetime | None = None
    history_cleanup_date: datetime | None = None
    partition_id: int | None = None


class EvaluatedInput(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    input_id: str
    input_name: str | None = None
    input_value: str | None = None


class EvaluatedOutput(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    output_id: str
    output_name: str | None = None
    output_value: str | None = None
    rule_id: str | None = None
    rule_index: int = 1


class DecisionInstanceRecord(TargetRecord):
    """One evaluated decision. Children share the root's decision_instance_key."""

    KEY_FIELD: ClassVar[str] = "decision_instance_id"
    INDEXED_FIELDS: ClassVar[dict[str, str]] = {
        "process_instance_key": "process_instance_key",
        "process_definition_key": "process_definition_key",
        "root_process_instance_key": "root_process_instance_key",
        "flow_node_id": "element_id",
    }

    decision_instance_id: str
    decision_instance_key: int
    decision_definition_key: int | None = None
    decision_definition_id: str | None = None
    decision_requirements_key: int | None = None
    decision_requirements_id: str | None = None
    root_decision_definition_key: int | None = None
    decision_type: str | None = None
    state: str = "EVALUATED"
    evaluation_date: datetime
    process_definition_key: int | None = None
    process_definition_id: str | None = None
    process_instance_key: int | None = None
    root_process_instance_key: int | None = None
    flow_node_instance_key: int | None = None
    flow_node_id: str | None = None
    result: str | None = None
    evaluated_inputs: list[EvaluatedInput] = Field(default_factory=list)
    evaluated_outputs: list[EvaluatedOutput] = Field(default_factory=list)
    history_cleanup_date: datetime | None = None
    partition_id: int | None = None


class AuditLogRecord(TargetRecord):
    KEY_FIELD: ClassVar[str] = "audit_log_key"
    INDEXED_FIELDS: ClassVar[dict[str, str]] = {
        "process_instance_key": "process_instance_key",
        "process_definition_key": "process_definition_key",
        "root_process_instance_key": "root_process_instance_key",
    }

    audit_log_key: str
    entity_type: str
    operation_type: str
    category: str = "UNKNOWN"
    result: str = "SUCCESS"
    actor_id: str | None = None
    actor_type: str = "USER"
    entity_key: str | None = None
    entity_description: str | None = None
    annotation: str | None = None
    process_definition_key: int | None = None
    process_definition_id: str | None = None
    process_instance_key: int | None = None
    root_process_instance_key: int | None = None
    user_task_key: int | None = None
    timestamp: datetime
    history_cleanup_date: datetime | None = None
    tenant_scope: str = "GLOBAL"
    partition_id: int | None = None
