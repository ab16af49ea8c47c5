"""Source history client.

Read-only access to an exported history of the source engine. The export is
a YAML or JSON document with one list per collection:

    deployments: [{id, deployment_time}]
    process_definitions: [...]
    process_instances: [...]
    activity_instances: [...]
    ...

Collections are validated into the models in `history_migration.schema.source`.
"""

import json
from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from history_migration.client.exceptions import EntityNotFoundError, SourceError
from history_migration.migration.entity_types import HistoryEntityType
from history_migration.schema.source import (
    DecisionDefinition,
    DecisionRequirementsDefinition,
    DefinitionEntity,
    Deployment,
    FormDefinition,
    HistoricActivityInstance,
    HistoricDecisionInstance,
    HistoricExternalTaskLog,
    HistoricIncident,
    HistoricJobLog,
    HistoricProcessInstance,
    HistoricTaskInstance,
    HistoricVariableInstance,
    ProcessDefinition,
    SourceEntity,
    UserOperationLogEntry,
)
from history_migration.utils.logging import get_logger

logger = get_logger(__name__)

# Entity type -> (export collection name, source model)
COLLECTIONS: dict[HistoryEntityType, tuple[str, type[SourceEntity]]] = {
    HistoryEntityType.PROCESS_DEFINITION: ("process_definitions", ProcessDefinition),
    HistoryEntityType.DECISION_REQUIREMENTS: (
        "decision_requirements_definitions",
        DecisionRequirementsDefinition,
    ),
    HistoryEntityType.FORM_DEFINITION: ("form_definitions", FormDefinition),
    HistoryEntityType.DECISION_DEFINITION: ("decision_definitions", DecisionDefinition),
    HistoryEntityType.PROCESS_INSTANCE: ("process_instances", HistoricProcessInstance),
    HistoryEntityType.FLOW_NODE: ("activity_instances", HistoricActivityInstance),
    HistoryEntityType.USER_TASK: ("task_instances", HistoricTaskInstance),
    HistoryEntityType.VARIABLE: ("variable_instances", HistoricVariableInstance),
    HistoryEntityType.JOB: ("job_logs", HistoricJobLog),
    HistoryEntityType.EXTERNAL_TASK: ("external_task_logs", HistoricExternalTaskLog),
    HistoryEntityType.INCIDENT: ("incidents", HistoricIncident),
    HistoryEntityType.DECISION_INSTANCE: ("decision_instances", HistoricDecisionInstance),
    HistoryEntityType.AUDIT_LOG: ("user_operation_log", UserOperationLogEntry),
}


class SourceClient:
    """Client for an exported source history.

    Entities are held in memory, indexed by id, and served in ascending
    creation-time order (ties broken by id).
    """

    def __init__(self, data: dict[str, Any] | None = None, page_size: int = 500):
        """Initialize source client.

        Args:
            data: Export document (collection name -> list of records)
            page_size: Default number of entities per fetched page

        Raises:
            SourceError: If a record does not match its collection's schema
        """
        self.page_size = page_size
        self._deployments: dict[str, Deployment] = {}
        self._entities: dict[HistoryEntityType, dict[str, SourceEntity]] = {
            entity_type: {} for entity_type in HistoryEntityType
        }
        if data:
            self.load(data)

    @classmethod
    def from_file(cls, path: str | Path, page_size: int = 500) -> "SourceClient":
        """Load a YAML or JSON export.

        Raises:
            SourceError: If the file is missing, unreadable or invalid
        """
        path = Path(path)
        if not path.exists():
            raise SourceError(f"Source export not found: {path}")

        try:
            with open(path) as f:
                if path.suffix.lower() == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            raise SourceError(f"Failed to read source export {path}: {e}") from e

        if not isinstance(data, dict):
            raise SourceError(f"Source export {path} must be a mapping of collections")

        logger.info("Source export loaded", path=str(path))
        return cls(data, page_size=page_size)

    def load(self, data: dict[str, Any]) -> None:
        """Add the collections of an export document."""
        try:
            for raw in data.get("deployments") or []:
                deployment = Deployment.model_validate(raw)
                self._deployments[deployment.id] = deployment

            for entity_type, (collection, model) in COLLECTIONS.items():
                for raw in data.get(collection) or []:
                    self.add(entity_type, model.model_validate(raw))
        except ValidationError as e:
            raise SourceError(f"Invalid source export: {e}") from e

        logger.debug(
            "Source collections loaded",
            counts={t.name: len(entities) for t, entities in self._entities.items() if entities},
        )

    def add(self, entity_type: HistoryEntityType, entity: SourceEntity) -> None:
        """Add or replace one entity."""
        expected = COLLECTIONS[entity_type][1]
        if not isinstance(entity, expected):
            raise TypeError(f"{entity_type.name} expects {expected.__name__}")
        self._entities[entity_type][entity.id] = entity

    def add_deployment(self, deployment_id: str, deployment_time: datetime) -> None:
        self._deployments[deployment_id] = Deployment(
            id=deployment_id, deployment_time=deployment_time
        )

    def get_deployment_time(self, deployment_id: str) -> datetime:
        """Get the deployment time of a deployment.

        Raises:
            EntityNotFoundError: If the deployment is unknown
        """
        deployment = self._deployments.get(deployment_id)
        if deployment is None:
            raise EntityNotFoundError("Deployment", deployment_id)
        return deployment.deployment_time

    def creation_time(self, entity_type: HistoryEntityType, entity: SourceEntity) -> datetime:
        """Natural creation time of an entity (deployment time for definitions)."""
        if isinstance(entity, DefinitionEntity):
            return self.get_deployment_time(entity.deployment_id)
        return entity.created_at

    def get_by_id(self, entity_type: HistoryEntityType, source_id: str) -> SourceEntity:
        """Get an entity by identifier.

        Raises:
            EntityNotFoundError: If no entity of that type has the identifier
        """
        entity = self._entities[entity_type].get(source_id)
        if entity is None:
            raise EntityNotFoundError(entity_type, source_id)
        return entity

    def _ordered(self, entity_type: HistoryEntityType, after: datetime | None) -> list[SourceEntity]:
        entities = self._entities[entity_type].values()
        if entity_type is HistoryEntityType.DECISION_INSTANCE:
            # children are reached through their root
            entities = [e for e in entities if e.is_root]

        timed = [(self.creation_time(entity_type, e), e) for e in entities]
        if after is not None:
            timed = [(created, e) for created, e in timed if created > after]
        timed.sort(key=lambda item: (item[0], item[1].id))
        return [e for _, e in timed]

    def iter_pages(
        self,
        entity_type: HistoryEntityType,
        after: datetime | None = None,
        page_size: int | None = None,
    ) -> Iterator[list[SourceEntity]]:
        """Yield pages of entities created strictly after `after`."""
        size = page_size or self.page_size
        ordered = self._ordered(entity_type, after)
        for start in range(0, len(ordered), size):
            page = ordered[start : start + size]
            logger.debug(
                "Source page fetched",
                entity_type=entity_type.name,
                offset=start,
                count=len(page),
            )
            yield page

    def fetch_batch(
        self,
        entity_type: HistoryEntityType,
        after: datetime | None,
        callback: Callable[[SourceEntity], Any],
        page_size: int | None = None,
    ) -> int:
        """Invoke callback for every entity created strictly after `after`.

        Entities are visited in ascending creation-time order.

        Returns:
            Number of entities visited
        """
        visited = 0
        for page in self.iter_pages(entity_type, after, page_size):
            for entity in page:
                callback(entity)
                visited += 1
        return visited

    def find_child_decision_instances(
        self, root_decision_instance_id: str
    ) -> list[HistoricDecisionInstance]:
        """Decision instances evaluated under a root decision instance."""
        children = [
            e
            for e in self._entities[HistoryEntityType.DECISION_INSTANCE].values()
            if e.root_decision_instance_id == root_decision_instance_id
            and e.id != root_decision_instance_id
        ]
        return sorted(children, key=lambda e: (e.evaluation_time, e.id))

    def get_failure_external_task_log(
        self, external_task_id: str | None
    ) -> HistoricExternalTaskLog | None:
        """Latest failure log of an external task, or None."""
        if external_task_id is None:
            return None
        failures = [
            log
            for log in self._entities[HistoryEntityType.EXTERNAL_TASK].values()
            if log.external_task_id == external_task_id and log.state == "failed"
        ]
        if not failures:
            return None
        return max(failures, key=lambda log: (log.timestamp, log.id))

    def find_job_logs(self, job_id: str) -> list[HistoricJobLog]:
        """Logs of one job in timestamp order."""
        logs = [
            log
            for log in self._entities[HistoryEntityType.JOB].values()
            if log.job_id == job_id
        ]
        return sorted(logs, key=lambda log: (log.timestamp, log.id))

    def count(self, entity_type: HistoryEntityType) -> int:
        return len(self._entities[entity_type])
