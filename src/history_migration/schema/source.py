"""Source history entities.

Pydantic models for the records read from the source engine's history. They
are validated when the export is loaded and are immutable afterwards.
"""

from datetime import datetime
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from history_migration.utils.dates import ensure_utc

UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


class SourceEntity(BaseModel):
    """Base class for source history entities."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    tenant_id: str | None = None

    @property
    def created_at(self) -> datetime | None:
        """Natural creation time; None for definitions (see their deployment)."""
        return None


class Deployment(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    deployment_time: UtcDatetime
    name: str | None = None


class DefinitionEntity(SourceEntity):
    """A deployed definition; its creation time is its deployment time."""

    key: str
    name: str | None = None
    version: int = 1
    deployment_id: str
    resource_name: str | None = None


class ProcessDefinition(DefinitionEntity):
    version_tag: str | None = None
    start_form_id: str | None = None
    bpmn_xml: str | None = None


class DecisionRequirementsDefinition(DefinitionEntity):
    dmn_xml: str | None = None


class FormDefinition(DefinitionEntity):
    form_schema: str | None = None


class DecisionDefinition(DefinitionEntity):
    decision_requirements_definition_id: str | None = None
    decision_requirements_definition_key: str | None = None
    dmn_xml: str | None = None


class HistoricProcessInstance(SourceEntity):
    process_definition_id: str
    process_definition_key: str | None = None
    process_definition_version: int | None = None
    business_key: str | None = None
    super_process_instance_id: str | None = None
    root_process_instance_id: str | None = None
    state: str = "COMPLETED"
    start_time: UtcDatetime
    end_time: UtcDatetime | None = None
    removal_time: UtcDatetime | None = None

    @property
    def created_at(self) -> datetime:
        return self.start_time


class HistoricActivityInstance(SourceEntity):
    activity_id: str
    activity_name: str | None = None
    activity_type: str
    parent_activity_instance_id: str | None = None
    process_instance_id: str
    root_process_instance_id: str | None = None
    process_definition_id: str | None = None
    process_definition_key: str | None = None
    canceled: bool = False
    start_time: UtcDatetime
    end_time: UtcDatetime | None = None
    removal_time: UtcDatetime | None = None

    @property
    def created_at(self) -> datetime:
        return self.start_time


class HistoricTaskInstance(SourceEntity):
    name: str | None = None
    task_definition_key: str | None = None
    process_instance_id: str | None = None
    root_process_instance_id: str | None = None
    process_definition_id: str | None = None
    process_definition_key: str | None = None
    activity_instance_id: str | None = None
    case_instance_id: str | None = None
    assignee: str | None = None
    priority: int = 50
    task_state: str = "Created"
    form_id: str | None = None
    start_time: UtcDatetime
    end_time: UtcDatetime | None = None
    due_date: UtcDatetime | None = None
    follow_up_date: UtcDatetime | None = None
    removal_time: UtcDatetime | None = None

    @property
    def created_at(self) -> datetime:
        return self.start_time


class HistoricVariableInstance(SourceEntity):
    name: str
    type_name: str = "string"
    value: Any = None
    serialization_data_format: str | None = None
    process_instance_id: str | None = None
    root_process_instance_id: str | None = None
    activity_instance_id: str | None = None
    task_id: str | None = None
    case_instance_id: str | None = None
    create_time: UtcDatetime
    removal_time: UtcDatetime | None = None

    @property
    def created_at(self) -> datetime:
        return self.create_time


class HistoricIncident(SourceEntity):
    incident_type: str = "failedJob"
    incident_message: str | None = None
    incident_state: str = "open"  # open, resolved, deleted
    activity_id: str | None = None
    configuration: str | None = None
    process_instance_id: str | None = None
    root_process_instance_id: str | None = None
    process_definition_id: str | None = None
    process_definition_key: str | None = None
    create_time: UtcDatetime
    end_time: UtcDatetime | None = None
    removal_time: UtcDatetime | None = None

    @property
    def created_at(self) -> datetime:
        return self.create_time


class HistoricJobLog(SourceEntity):
    job_id: str
    job_definition_type: str | None = None
    hostname: str | None = None
    state: str = "created"  # created, failed, successful, deleted
    job_retries: int = 0
    job_exception_message: str | None = None
    job_due_date: UtcDatetime | None = None
    activity_id: str | None = None
    process_instance_id: str | None = None
    root_process_instance_id: str | None = None
    process_definition_id: str | None = None
    process_definition_key: str | None = None
    timestamp: UtcDatetime
    removal_time: UtcDatetime | None = None

    @property
    def created_at(self) -> datetime:
        return self.timestamp


class HistoricExternalTaskLog(SourceEntity):
    external_task_id: str
    topic_name: str | None = None
    worker_id: str | None = None
    state: str = "created"  # created, failed, successful, deleted
    retries: int | None = None
    error_message: str | None = None
    activity_id: str | None = None
    activity_instance_id: str | None = None
    process_instance_id: str | None = None
    root_process_instance_id: str | None = None
    process_definition_id: str | None = None
    process_definition_key: str | None = None
    timestamp: UtcDatetime
    removal_time: UtcDatetime | None = None

    @property
    def created_at(self) -> datetime:
        return self.timestamp


class DecisionInput(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    clause_id: str | None = None
    clause_name: str | None = None
    type_name: str = "string"
    value: Any = None


class DecisionOutput(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    clause_id: str | None = None
    clause_name: str | None = None
    rule_id: str | None = None
    rule_order: int | None = None
    variable_name: str | None = None
    type_name: str = "string"
    value: Any = None


class HistoricDecisionInstance(SourceEntity):
    decision_definition_id: str
    decision_definition_key: str | None = None
    decision_requirements_definition_id: str | None = None
    decision_requirements_definition_key: str | None = None
    decision_type: str = "DECISION_TABLE"
    root_decision_instance_id: str | None = None
    process_definition_id: str | None = None
    process_definition_key: str | None = None
    process_instance_id: str | None = None
    root_process_instance_id: str | None = None
    activity_instance_id: str | None = None
    activity_id: str | None = None
    collect_result_value: float | None = None
    inputs: list[DecisionInput] = Field(default_factory=list)
    outputs: list[DecisionOutput] = Field(default_factory=list)
    evaluation_time: UtcDatetime
    removal_time: UtcDatetime | None = None

    @property
    def created_at(self) -> datetime:
        return self.evaluation_time

    @property
    def is_standalone(self) -> bool:
        """True when the decision was evaluated outside any process."""
        return self.process_definition_key is None

    @property
    def is_root(self) -> bool:
        return self.root_decision_instance_id in (None, self.id)


class UserOperationLogEntry(SourceEntity):
    operation_id: str | None = None
    entity_type: str
    operation_type: str
    category: str | None = None
    property_name: str | None = None
    org_value: str | None = None
    new_value: str | None = None
    user_id: str | None = None
    annotation: str | None = None
    process_definition_id: str | None = None
    process_definition_key: str | None = None
    process_instance_id: str | None = None
    root_process_instance_id: str | None = None
    task_id: str | None = None
    timestamp: UtcDatetime
    removal_time: UtcDatetime | None = None

    @property
    def created_at(self) -> datetime:
        return self.timestamp
