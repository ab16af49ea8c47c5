"""Built-in transformers.

One interceptor per entity type maps the source fields onto the target
record. Keys and foreign keys are filled in by the entity handlers before
these run; the transformers only read them where a derived value needs them
(e.g. the audit log entity key).
"""

import json
import math
from datetime import datetime
from typing import Any

from history_migration.client.exceptions import ConfigurationError, ConversionError
from history_migration.config import ConversionConfig
from history_migration.migration.conversion import (
    ConversionContext,
    ConversionPipeline,
    EntityInterceptor,
    load_interceptors,
)
from history_migration.migration.entity_types import HistoryEntityType
from history_migration.utils.dates import ensure_utc
from history_migration.utils.logging import get_logger

logger = get_logger(__name__)

PROCESS_INSTANCE_STATES = {
    "ACTIVE": "CANCELED",
    "SUSPENDED": "CANCELED",
    "EXTERNALLY_TERMINATED": "CANCELED",
    "INTERNALLY_TERMINATED": "CANCELED",
    "COMPLETED": "COMPLETED",
}

FLOW_NODE_TYPES = {
    "startEvent": "START_EVENT",
    "startTimerEvent": "START_EVENT",
    "messageStartEvent": "START_EVENT",
    "errorStartEvent": "START_EVENT",
    "noneEndEvent": "END_EVENT",
    "cancelEndEvent": "END_EVENT",
    "errorEndEvent": "END_EVENT",
    "serviceTask": "SERVICE_TASK",
    "userTask": "USER_TASK",
    "exclusiveGateway": "EXCLUSIVE_GATEWAY",
    "parallelGateway": "PARALLEL_GATEWAY",
    "intermediateTimer": "INTERMEDIATE_CATCH_EVENT",
    "intermediateSignalCatch": "INTERMEDIATE_CATCH_EVENT",
    "intermediateCompensationThrowEvent": "INTERMEDIATE_THROW_EVENT",
    "businessRuleTask": "BUSINESS_RULE_TASK",
    "callActivity": "CALL_ACTIVITY",
    "scriptTask": "SCRIPT_TASK",
    "multiInstanceBody": "MULTI_INSTANCE_BODY",
    "subProcess": "SUB_PROCESS",
    "transaction": "SUB_PROCESS",
    "manualTask": "MANUAL_TASK",
    "receiveTask": "RECEIVE_TASK",
    "task": "TASK",
}

USER_TASK_STATES = {
    "Init": "CREATED",
    "Created": "CREATED",
    "Updated": "CREATED",
    "Completed": "COMPLETED",
    "Deleted": "CANCELED",
}

INCIDENT_STATES = {"open": "ACTIVE", "resolved": "RESOLVED", "deleted": "RESOLVED"}

INCIDENT_ERROR_TYPES = {
    "failedJob": "JOB_NO_RETRIES",
    "failedExternalTask": "JOB_NO_RETRIES",
}

DECISION_TYPES = {
    "DECISION_TABLE": "DECISION_TABLE",
    "decisionTable": "DECISION_TABLE",
    "LITERAL_EXPRESSION": "LITERAL_EXPRESSION",
    "literalExpression": "LITERAL_EXPRESSION",
}

AUDIT_ENTITY_TYPES = {
    "ProcessInstance": "PROCESS_INSTANCE",
    "Variable": "VARIABLE",
    "Task": "USER_TASK",
    "DecisionInstance": "DECISION",
    "DecisionDefinition": "DECISION",
    "DecisionRequirementsDefinition": "DECISION",
    "User": "USER",
    "Group": "GROUP",
    "GroupMembership": "GROUP",
    "Tenant": "TENANT",
    "TenantMembership": "TENANT",
    "Authorization": "AUTHORIZATION",
    "Incident": "INCIDENT",
    "ProcessDefinition": "RESOURCE",
    "Deployment": "RESOURCE",
}

AUDIT_OPERATION_TYPES = {
    "Assign": "ASSIGN",
    "Claim": "ASSIGN",
    "Delegate": "ASSIGN",
    "Complete": "COMPLETE",
    "SetPriority": "UPDATE",
    "SetOwner": "UPDATE",
    "Update": "UPDATE",
    "Create": "CREATE",
    "Delete": "DELETE",
    "ModifyProcessInstance": "MODIFY",
    "Migrate": "MIGRATE",
    "DeleteHistory": "DELETE",
    "RemoveVariable": "DELETE",
    "ModifyVariable": "UPDATE",
    "SetVariable": "UPDATE",
    "SetVariables": "UPDATE",
    "Evaluate": "EVALUATE",
    "Resolve": "RESOLVE",
}

AUDIT_CATEGORIES = {
    "Admin": "ADMIN",
    "Operator": "DEPLOYED_RESOURCES",
    "TaskWorker": "USER_TASKS",
}

MEMBERSHIP_ENTITY_TYPES = {"GroupMembership", "TenantMembership"}


def _lookup(mapping: dict[str, str], value: str | None, what: str) -> str:
    try:
        return mapping[value]
    except KeyError:
        raise ConversionError(f"Unknown {what}: {value}") from None


def serialize_value(type_name: str | None, value: Any, serialization_format: str | None = None) -> str:
    """Serialize a typed source value to its JSON text form.

    Raises:
        ConversionError: If the value cannot be represented
    """
    kind = (type_name or "string").lower()
    if value is None or kind == "null":
        return "null"
    try:
        if kind in ("string", "xml"):
            return json.dumps(str(value))
        if kind in ("integer", "long", "short"):
            return json.dumps(int(value))
        if kind == "double":
            number = float(value)
            if not math.isfinite(number):
                raise ValueError(f"non-finite number {value!r}")
            return json.dumps(number)
        if kind == "boolean":
            if isinstance(value, str):
                if value.lower() not in ("true", "false"):
                    raise ValueError(f"not a boolean: {value!r}")
                return json.dumps(value.lower() == "true")
            return json.dumps(bool(value))
        if kind == "date":
            date = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
            return json.dumps(ensure_utc(date).isoformat())
        if kind == "json" or (kind == "object" and serialization_format == "application/json"):
            parsed = json.loads(value) if isinstance(value, str) else value
            return json.dumps(parsed)
    except (TypeError, ValueError) as e:
        raise ConversionError(f"Cannot convert {type_name} value: {e}") from e

    raise ConversionError(f"Unsupported value type: {type_name}")


VALUE_TYPES = {
    "string": "STRING",
    "xml": "STRING",
    "date": "STRING",
    "integer": "NUMBER",
    "long": "NUMBER",
    "short": "NUMBER",
    "double": "NUMBER",
    "boolean": "BOOLEAN",
    "null": "NULL",
    "json": "OBJECT",
    "object": "OBJECT",
}


class ProcessDefinitionTransformer(EntityInterceptor):
    types = frozenset({HistoryEntityType.PROCESS_DEFINITION})

    def execute(self, context: ConversionContext) -> None:
        entity = context.entity
        context.builder.set(
            process_definition_id=context.naming.prefix(entity.key),
            name=entity.name,
            version=entity.version,
            version_tag=entity.version_tag,
            resource_name=entity.resource_name,
            bpmn_xml=entity.bpmn_xml,
            form_id=entity.start_form_id,
            tenant_id=context.naming.tenant(entity.tenant_id),
        )


class DecisionRequirementsTransformer(EntityInterceptor):
    types = frozenset({HistoryEntityType.DECISION_REQUIREMENTS})

    def execute(self, context: ConversionContext) -> None:
        entity = context.entity
        context.builder.set(
            decision_requirements_id=context.naming.prefix(entity.key),
            name=entity.name,
            version=entity.version,
            resource_name=entity.resource_name,
            xml=entity.dmn_xml,
            tenant_id=context.naming.tenant(entity.tenant_id),
        )


class FormDefinitionTransformer(EntityInterceptor):
    types = frozenset({HistoryEntityType.FORM_DEFINITION})

    def execute(self, context: ConversionContext) -> None:
        entity = context.entity
        context.builder.set(
            form_id=context.naming.prefix(entity.key),
            version=entity.version,
            form_schema=entity.form_schema,
            tenant_id=context.naming.tenant(entity.tenant_id),
        )


class DecisionDefinitionTransformer(EntityInterceptor):
    types = frozenset({HistoryEntityType.DECISION_DEFINITION})

    def execute(self, context: ConversionContext) -> None:
        entity = context.entity
        context.builder.set(
            decision_definition_id=context.naming.prefix(entity.key),
            name=entity.name,
            version=entity.version,
            tenant_id=context.naming.tenant(entity.tenant_id),
        )
        context.builder.set_default(
            decision_requirements_id=context.naming.prefix(
                entity.decision_requirements_definition_key
            )
        )


class ProcessInstanceTransformer(EntityInterceptor):
    """Active instances are auto-canceled: state CANCELED, end date now."""

    types = frozenset({HistoryEntityType.PROCESS_INSTANCE})

    def execute(self, context: ConversionContext) -> None:
        entity = context.entity
        end_date = context.retention.end_date(entity.end_time)
        context.builder.set(
            process_definition_id=context.naming.prefix(entity.process_definition_key),
            business_key=entity.business_key,
            state=_lookup(PROCESS_INSTANCE_STATES, entity.state, "process instance state"),
            version=entity.process_definition_version,
            start_date=entity.start_time,
            end_date=end_date,
            history_cleanup_date=context.retention.cleanup_date(end_date, entity.removal_time),
            tenant_id=context.naming.tenant(entity.tenant_id),
            partition_id=context.settings.partition_id,
        )


class FlowNodeTransformer(EntityInterceptor):
    types = frozenset({HistoryEntityType.FLOW_NODE})

    def execute(self, context: ConversionContext) -> None:
        entity = context.entity
        if entity.end_time is None or entity.canceled:
            state = "TERMINATED"
        else:
            state = "COMPLETED"
        context.builder.set(
            flow_node_id=entity.activity_id,
            flow_node_name=entity.activity_name,
            process_definition_id=context.naming.prefix(entity.process_definition_key),
            type=_lookup(FLOW_NODE_TYPES, entity.activity_type, "activity type"),
            state=state,
            start_date=entity.start_time,
            end_date=context.retention.child_end_date(context.parent_end_date, entity.end_time),
            history_cleanup_date=context.retention.child_cleanup_date(
                context.parent_end_date, entity.removal_time
            ),
            tenant_id=context.naming.tenant(entity.tenant_id),
            partition_id=context.settings.partition_id,
        )


class UserTaskTransformer(EntityInterceptor):
    types = frozenset({HistoryEntityType.USER_TASK})

    def execute(self, context: ConversionContext) -> None:
        entity = context.entity
        process_instance = context.ancestor("process_instance")
        context.builder.set(
            element_id=entity.task_definition_key,
            name=entity.name,
            process_definition_id=context.naming.prefix(entity.process_definition_key),
            state=_lookup(USER_TASK_STATES, entity.task_state, "task state"),
            creation_date=entity.start_time,
            completion_date=context.retention.child_end_date(
                context.parent_end_date, entity.end_time
            ),
            assignee=entity.assignee,
            priority=entity.priority,
            due_date=entity.due_date,
            follow_up_date=entity.follow_up_date,
            history_cleanup_date=context.retention.child_cleanup_date(
                context.parent_end_date, entity.removal_time
            ),
            tenant_id=context.naming.tenant(entity.tenant_id),
            partition_id=context.settings.partition_id,
        )
        if process_instance is not None:
            context.builder.set_default(process_definition_version=process_instance.version)


class VariableTransformer(EntityInterceptor):
    """Serializes the value; long values keep a truncated preview."""

    types = frozenset({HistoryEntityType.VARIABLE})

    def execute(self, context: ConversionContext) -> None:
        entity = context.entity
        try:
            serialized = serialize_value(
                entity.type_name, entity.value, entity.serialization_data_format
            )
        except ConversionError as e:
            raise ConversionError(f"Variable '{entity.name}': {e}") from e

        preview_size = context.settings.variable_value_preview_size
        is_preview = len(serialized) > preview_size
        process_instance = context.ancestor("process_instance")

        context.builder.set(
            name=entity.name,
            value_type=VALUE_TYPES.get((entity.type_name or "string").lower(), "STRING"),
            value=serialized[:preview_size] if is_preview else serialized,
            full_value=serialized if is_preview else None,
            is_preview=is_preview,
            history_cleanup_date=context.retention.child_cleanup_date(
                context.parent_end_date, entity.removal_time
            ),
            tenant_id=context.naming.tenant(entity.tenant_id),
            partition_id=context.settings.partition_id,
        )
        if process_instance is not None:
            context.builder.set_default(
                process_definition_key=process_instance.process_definition_key,
                process_definition_id=process_instance.process_definition_id,
            )


class IncidentTransformer(EntityInterceptor):
    types = frozenset({HistoryEntityType.INCIDENT})

    def execute(self, context: ConversionContext) -> None:
        entity = context.entity
        context.builder.set(
            process_definition_id=context.naming.prefix(entity.process_definition_key),
            flow_node_id=entity.activity_id,
            error_type=INCIDENT_ERROR_TYPES.get(entity.incident_type, "UNKNOWN"),
            error_message=entity.incident_message,
            state=_lookup(INCIDENT_STATES, entity.incident_state, "incident state"),
            creation_date=entity.create_time,
            history_cleanup_date=context.retention.child_cleanup_date(
                context.parent_end_date, entity.removal_time
            ),
            tenant_id=context.naming.tenant(entity.tenant_id),
            partition_id=context.settings.partition_id,
        )


class JobTransformer(EntityInterceptor):
    types = frozenset({HistoryEntityType.JOB})

    def execute(self, context: ConversionContext) -> None:
        entity = context.entity
        if entity.state == "created":
            state = "CREATED"
        elif entity.state == "successful":
            state = "COMPLETED"
        elif entity.state == "failed":
            state = "FAILED" if entity.job_retries == 0 else "ERROR_THROWN"
        elif entity.state == "deleted":
            state = "CANCELED"
        else:
            raise ConversionError(f"Unknown job log state: {entity.state}")

        terminal = state in ("COMPLETED", "CANCELED", "FAILED")
        context.builder.set(
            type=entity.job_definition_type,
            kind="BPMN_ELEMENT",
            worker=entity.hostname,
            state=state,
            retries=entity.job_retries,
            has_failed_with_retries_left=entity.state == "failed" and entity.job_retries > 0,
            error_message=entity.job_exception_message,
            deadline=entity.job_due_date,
            process_definition_id=context.naming.prefix(entity.process_definition_key),
            element_id=entity.activity_id,
            creation_time=entity.timestamp,
            last_update_time=entity.timestamp,
            end_time=entity.timestamp if terminal else None,
            history_cleanup_date=context.retention.child_cleanup_date(
                context.parent_end_date, entity.removal_time
            ),
            tenant_id=context.naming.tenant(entity.tenant_id),
            partition_id=context.settings.partition_id,
        )


class ExternalTaskTransformer(EntityInterceptor):
    types = frozenset({HistoryEntityType.EXTERNAL_TASK})

    def execute(self, context: ConversionContext) -> None:
        entity = context.entity
        states = {"created": "CREATED", "failed": "FAILED", "successful": "COMPLETED"}
        is_creation = entity.state == "created"
        retries = entity.retries
        context.builder.set(
            type=entity.topic_name,
            kind="BPMN_ELEMENT",
            worker=entity.worker_id,
            state=states.get(entity.state, "CANCELED"),
            retries=retries,
            has_failed_with_retries_left=(
                entity.state == "failed" and retries is not None and retries > 0
            ),
            error_message=entity.error_message,
            process_definition_id=context.naming.prefix(entity.process_definition_key),
            element_id=entity.activity_id,
            creation_time=entity.timestamp if is_creation else None,
            last_update_time=entity.timestamp,
            end_time=None if is_creation else entity.timestamp,
            history_cleanup_date=context.retention.child_cleanup_date(
                context.parent_end_date, entity.removal_time
            ),
            tenant_id=context.naming.tenant(entity.tenant_id),
            partition_id=context.settings.partition_id,
        )


class DecisionInstanceTransformer(EntityInterceptor):
    """Maps inputs and outputs and builds the JSON decision result."""

    types = frozenset({HistoryEntityType.DECISION_INSTANCE})

    def execute(self, context: ConversionContext) -> None:
        entity = context.entity
        outputs = [
            {
                "output_id": output.id,
                "output_name": output.clause_name,
                "output_value": serialize_value(output.type_name, output.value),
                "rule_id": output.rule_id,
                "rule_index": output.rule_order if output.rule_order is not None else 1,
            }
            for output in entity.outputs
        ]
        inputs = [
            {
                "input_id": input_.id,
                "input_name": input_.clause_name,
                "input_value": serialize_value(input_.type_name, input_.value),
            }
            for input_ in entity.inputs
        ]

        if entity.collect_result_value is not None:
            result = self.result_from_collect_value(entity.collect_result_value)
        else:
            result = self.result_from_outputs([o["output_value"] for o in outputs])

        if entity.is_standalone:
            cleanup = context.retention.cleanup_date(entity.evaluation_time, entity.removal_time)
        else:
            cleanup = context.retention.child_cleanup_date(
                context.parent_end_date, entity.removal_time
            )

        context.builder.set(
            state="EVALUATED",
            evaluation_date=entity.evaluation_time,
            process_definition_id=context.naming.prefix(entity.process_definition_key),
            decision_definition_id=context.naming.prefix(entity.decision_definition_key),
            decision_requirements_id=context.naming.prefix(
                entity.decision_requirements_definition_key
            ),
            decision_type=_lookup(DECISION_TYPES, entity.decision_type, "decision type"),
            flow_node_id=entity.activity_id,
            result=result,
            evaluated_inputs=inputs,
            evaluated_outputs=outputs,
            history_cleanup_date=cleanup,
            tenant_id=context.naming.tenant(entity.tenant_id),
            partition_id=context.settings.partition_id,
        )

    @staticmethod
    def result_from_collect_value(value: float) -> str:
        if not math.isfinite(value):
            raise ConversionError(f"Invalid collect result value: {value}")
        if value % 1 == 0:
            return json.dumps(int(value))
        return json.dumps(value)

    @staticmethod
    def result_from_outputs(values: list[str]) -> str | None:
        if not values:
            return None
        try:
            parsed = [json.loads(value) for value in values]
        except json.JSONDecodeError as e:
            raise ConversionError(f"Failed to construct result JSON from outputs: {e}") from e
        return json.dumps(parsed[0] if len(parsed) == 1 else parsed)


class AuditLogTransformer(EntityInterceptor):
    """Maps user operation log entries onto audit log records."""

    types = frozenset({HistoryEntityType.AUDIT_LOG})

    def execute(self, context: ConversionContext) -> None:
        entity = context.entity
        builder = context.builder
        tenant_id = context.naming.tenant(entity.tenant_id)

        entity_type = _lookup(AUDIT_ENTITY_TYPES, entity.entity_type, "audit log entity type")
        operation_type = self.convert_operation_type(entity)

        # types the two engines classify differently
        if entity.operation_type == "Resolve" and entity.entity_type == "ProcessInstance":
            entity_type = "INCIDENT"
        elif entity.operation_type in ("SetVariable", "SetVariables"):
            entity_type = "VARIABLE"

        if entity.process_instance_id is not None:
            cleanup = context.retention.child_cleanup_date(
                context.parent_end_date, entity.removal_time
            )
        else:
            cleanup = context.retention.cleanup_date(entity.timestamp, entity.removal_time)

        builder.set(
            entity_type=entity_type,
            operation_type=operation_type,
            category=AUDIT_CATEGORIES.get(entity.category, "UNKNOWN"),
            result="SUCCESS",
            actor_id=entity.user_id,
            actor_type="USER",
            annotation=entity.annotation,
            entity_description=self.entity_description(entity),
            process_definition_id=context.naming.prefix(entity.process_definition_key),
            timestamp=entity.timestamp,
            history_cleanup_date=cleanup,
            tenant_id=tenant_id,
            tenant_scope="GLOBAL" if tenant_id == context.naming.default_tenant else "TENANT",
            partition_id=context.settings.partition_id,
        )
        builder.set_default(entity_key=self.entity_key(entity_type, builder))

    @staticmethod
    def convert_operation_type(entity) -> str:
        operation = entity.operation_type
        if operation == "Create" and entity.entity_type in MEMBERSHIP_ENTITY_TYPES:
            return "ASSIGN"
        if operation == "Delete":
            if entity.entity_type == "ProcessInstance":
                return "CANCEL"
            if entity.entity_type in MEMBERSHIP_ENTITY_TYPES:
                return "UNASSIGN"
        if operation == "Resolve" and entity.entity_type != "ProcessInstance":
            return "UPDATE"
        return _lookup(AUDIT_OPERATION_TYPES, operation, "audit log operation type")

    @staticmethod
    def entity_description(entity) -> str | None:
        if entity.entity_type == "Variable":
            return entity.new_value if entity.operation_type == "DeleteHistory" else None
        if entity.entity_type in ("User", "Group", "Tenant"):
            return entity.new_value
        return None

    @staticmethod
    def entity_key(entity_type: str, builder) -> str | None:
        key_field = {
            "PROCESS_INSTANCE": "process_instance_key",
            "INCIDENT": "process_instance_key",
            "VARIABLE": "process_instance_key",
            "USER_TASK": "user_task_key",
            "RESOURCE": "process_definition_key",
        }.get(entity_type)
        if key_field is None:
            return None
        key = builder.get(key_field)
        return str(key) if key is not None else None


def default_transformers() -> list[EntityInterceptor]:
    """Built-in transformers in registration order."""
    return [
        ProcessDefinitionTransformer(),
        DecisionRequirementsTransformer(),
        FormDefinitionTransformer(),
        DecisionDefinitionTransformer(),
        ProcessInstanceTransformer(),
        FlowNodeTransformer(),
        UserTaskTransformer(),
        VariableTransformer(),
        IncidentTransformer(),
        JobTransformer(),
        ExternalTaskTransformer(),
        DecisionInstanceTransformer(),
        AuditLogTransformer(),
    ]


def build_pipeline(config: ConversionConfig) -> ConversionPipeline:
    """Built-in transformers (minus the disabled ones) followed by configured interceptors.

    Raises:
        ConfigurationError: If a disabled name or a configured interceptor is invalid
    """
    builtin = default_transformers()
    known = {transformer.name for transformer in builtin}
    unknown = set(config.disabled_builtin) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown built-in transformer(s): {', '.join(sorted(unknown))}"
        )

    pipeline = ConversionPipeline(
        t for t in builtin if t.name not in set(config.disabled_builtin)
    )
    for interceptor in load_interceptors(config.interceptors):
        pipeline.add(interceptor)

    logger.debug(
        "Conversion pipeline built",
        interceptors=[interceptor.name for interceptor in pipeline.interceptors],
    )
    return pipeline
