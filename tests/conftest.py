"""
Shared pytest fixtures for the history migration tests.

This module provides:
- Database fixtures (state_config, state, target) backed by a fresh SQLite
  file per test
- An in-memory source adapter with one deployment
- Configuration and migrator fixtures wired to the above
- Populated source fixtures (process_history, decision_history)

Entity factories live in `tests.factories`.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from history_migration.client.source_client import SourceClient
from history_migration.client.target_client import TargetClient
from history_migration.config import MigrationConfig, SourceConfig, StateConfig
from history_migration.migration.conversion import RetentionPolicy
from history_migration.migration.coordinator import HistoryMigrator
from history_migration.migration.entity_types import HistoryEntityType
from history_migration.migration.state import MigrationState
from tests import factories
from tests.factories import DEPLOYMENT_ID, NOW, T0, at

# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Path of the per-test SQLite database."""
    return tmp_path / "history.db"


@pytest.fixture
def state_config(db_path: Path) -> StateConfig:
    return StateConfig(db_path=str(db_path))


@pytest.fixture
def state(state_config: StateConfig) -> MigrationState:
    """
    Provide a ledger on a fresh database.

    Creating the ledger initializes the module-level engine, so every
    other fixture and helper of the test uses the same database.
    """
    return MigrationState(config=state_config, migration_id="test-run")


@pytest.fixture
def target(state: MigrationState) -> TargetClient:
    return TargetClient(state.database_url)


# =============================================================================
# Source Fixtures
# =============================================================================


@pytest.fixture
def source() -> SourceClient:
    """
    Provide an empty in-memory source with one deployment at T0.

    The small page size makes every multi-entity fetch span several pages.
    """
    client = SourceClient(page_size=2)
    client.add_deployment(DEPLOYMENT_ID, T0)
    return client


@pytest.fixture
def process_history(source: SourceClient) -> SourceClient:
    """
    Source holding one completed process instance and its details.

    Contents:
        pd-1 (definition), pi-1 (instance), fn-start and fn-task (flow nodes),
        task-1 (user task on fn-task), var-1 (process variable),
        var-2 (task variable), job-log-1 (job on the start event),
        op-1 (audit entry on pi-1)
    """
    source.add(HistoryEntityType.PROCESS_DEFINITION, factories.process_definition())
    source.add(HistoryEntityType.PROCESS_INSTANCE, factories.process_instance())
    source.add(HistoryEntityType.FLOW_NODE, factories.flow_node("fn-start"))
    source.add(
        HistoryEntityType.FLOW_NODE,
        factories.flow_node(
            "fn-task",
            activity_id="task",
            activity_name="Approve",
            activity_type="userTask",
            start_time=at(2),
            end_time=at(10),
        ),
    )
    source.add(HistoryEntityType.USER_TASK, factories.user_task())
    source.add(HistoryEntityType.VARIABLE, factories.variable())
    source.add(
        HistoryEntityType.VARIABLE,
        factories.variable(
            "var-2",
            name="approved",
            type_name="boolean",
            value=True,
            task_id="task-1",
            activity_instance_id="fn-task",
            create_time=at(3),
        ),
    )
    source.add(HistoryEntityType.JOB, factories.job_log())
    source.add(HistoryEntityType.AUDIT_LOG, factories.audit_entry())
    return source


@pytest.fixture
def decision_history(source: SourceClient) -> SourceClient:
    """
    Source holding decision definitions and a standalone decision tree.

    Contents:
        drd-1 (requirements), dd-1 and dd-2 (definitions in drd-1),
        di-1 (standalone root evaluation of dd-1), di-2 (child of di-1, dd-2)
    """
    source.add(HistoryEntityType.DECISION_REQUIREMENTS, factories.decision_requirements())
    source.add(HistoryEntityType.DECISION_DEFINITION, factories.decision_definition())
    source.add(
        HistoryEntityType.DECISION_DEFINITION,
        factories.decision_definition("dd-2", key="score", name="Score"),
    )
    source.add(HistoryEntityType.DECISION_INSTANCE, factories.decision_instance())
    source.add(
        HistoryEntityType.DECISION_INSTANCE,
        factories.decision_instance(
            "di-2",
            decision_definition_id="dd-2",
            decision_definition_key="score",
            root_decision_instance_id="di-1",
            evaluation_time=at(7),
        ),
    )
    return source


# =============================================================================
# Migrator Fixtures
# =============================================================================


@pytest.fixture
def config(state_config: StateConfig) -> MigrationConfig:
    return MigrationConfig(state=state_config, source=SourceConfig(page_size=2))


@pytest.fixture
def retention() -> RetentionPolicy:
    """Retention policy with a fixed clock at NOW."""
    return RetentionPolicy(enabled=True, ttl_days=180, clock=lambda: NOW)


@pytest.fixture
def migrator(
    config: MigrationConfig,
    state: MigrationState,
    source: SourceClient,
    target: TargetClient,
    retention: RetentionPolicy,
) -> HistoryMigrator:
    return HistoryMigrator(config, state, source, target, retention=retention)
