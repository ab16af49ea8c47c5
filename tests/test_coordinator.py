"""
History migrator tests.

Covers:
- Full migration of a process history in dependency order
- Idempotent reruns and the creation-time watermark
- Skips for missing ancestors and retry of skipped entities
- Up-front skips, conversion errors, interceptor rejections and failures
- One target job per source job
- Decision instance trees and synthesized decision requirements
- Partitioned audit log keys
- Listing skipped entities
- Fatal adapter errors abort the run and roll back the unit
"""

from __future__ import annotations

import pytest

from history_migration.client.exceptions import MigrationError, StateError
from history_migration.client.source_client import SourceClient
from history_migration.client.target_client import TargetClient
from history_migration.config import ConversionConfig, InterceptorConfig, MigrationConfig
from history_migration.migration import skip_reasons
from history_migration.migration.coordinator import HistoryMigrator, SkippedEntity
from history_migration.migration.entity_types import HistoryEntityType, MigratorMode
from history_migration.migration.keys import KEY_BITS
from history_migration.migration.state import MigrationState
from tests import factories
from tests.factories import NOW, at

PD = HistoryEntityType.PROCESS_DEFINITION
DRD = HistoryEntityType.DECISION_REQUIREMENTS
DD = HistoryEntityType.DECISION_DEFINITION
PI = HistoryEntityType.PROCESS_INSTANCE
FN = HistoryEntityType.FLOW_NODE
UT = HistoryEntityType.USER_TASK
VAR = HistoryEntityType.VARIABLE
JOB = HistoryEntityType.JOB
EXT = HistoryEntityType.EXTERNAL_TASK
INC = HistoryEntityType.INCIDENT
DI = HistoryEntityType.DECISION_INSTANCE
AUDIT = HistoryEntityType.AUDIT_LOG


def _add_instance(source: SourceClient) -> SourceClient:
    """pd-1, pi-1 and the fn-task flow node."""
    source.add(PD, factories.process_definition())
    source.add(PI, factories.process_instance())
    source.add(
        FN,
        factories.flow_node(
            "fn-task",
            activity_id="task",
            activity_type="serviceTask",
            start_time=at(2),
            end_time=at(10),
        ),
    )
    return source


def _record(target: TargetClient, state: MigrationState, entity_type, source_id):
    return target.find_by_key(entity_type, state.lookup_target_key(source_id, entity_type))


class TestFullMigration:
    def test_migrates_everything(self, migrator: HistoryMigrator, process_history):
        summary = migrator.migrate()

        assert summary.total_migrated == 9
        assert summary.total_skipped == 0
        assert summary.for_type(FN).migrated == 2
        assert summary.for_type(VAR).migrated == 2
        assert migrator.target.count(AUDIT) == 1

    def test_types_reported_in_dependency_order(self, migrator: HistoryMigrator):
        summary = migrator.migrate([AUDIT, PD, FN])

        assert list(summary.types) == [PD, FN, AUDIT]

    def test_all_types_reported(self, migrator: HistoryMigrator):
        summary = migrator.migrate()
        assert list(summary.types) == list(HistoryEntityType)

    def test_graph_is_wired(self, migrator: HistoryMigrator, process_history):
        migrator.migrate()
        state, target = migrator.state, migrator.target

        pd_key = state.lookup_target_key("pd-1", PD)
        pi_key = state.lookup_target_key("pi-1", PI)
        fn_task_key = state.lookup_target_key("fn-task", FN)

        instance = _record(target, state, PI, "pi-1")
        assert instance.process_definition_key == pd_key
        assert instance.root_process_instance_key == pi_key
        assert instance.process_definition_id == "c7-legacy-invoice"

        flow_node = _record(target, state, FN, "fn-task")
        assert flow_node.flow_node_scope_key == pi_key
        assert flow_node.tree_path == f"{pi_key}/{fn_task_key}"

        task = _record(target, state, UT, "task-1")
        assert task.element_instance_key == fn_task_key

        assert _record(target, state, VAR, "var-1").scope_key == pi_key
        assert _record(target, state, VAR, "var-2").scope_key == fn_task_key

        job = _record(target, state, JOB, "job-1")
        assert job.element_instance_key == state.lookup_target_key("fn-start", FN)

    def test_run_dispatches_on_mode(self, migrator: HistoryMigrator, process_history):
        summary = migrator.run(MigratorMode.MIGRATE, [PD])

        assert summary.mode is MigratorMode.MIGRATE
        assert summary.total_migrated == 1
        assert migrator.run(MigratorMode.LIST_SKIPPED) == []

    def test_summary_to_dict(self, migrator: HistoryMigrator, process_history):
        data = migrator.migrate([PD, PI]).to_dict()

        assert data["mode"] == "migrate"
        assert data["total_migrated"] == 2
        assert data["types"]["PROCESS_INSTANCE"]["migrated"] == 1
        assert data["duration_seconds"] is not None


class TestIdempotence:
    def test_second_run_migrates_nothing(self, migrator: HistoryMigrator, process_history):
        migrator.migrate()
        counts = {t: migrator.target.count(t) for t in HistoryEntityType}

        summary = migrator.migrate()

        assert summary.total_migrated == 0
        assert summary.total_skipped == 0
        assert {t: migrator.target.count(t) for t in HistoryEntityType} == counts

    def test_watermark_fetches_strictly_later_entities(
        self, migrator: HistoryMigrator, process_history
    ):
        migrator.migrate()
        process_history.add(PI, factories.process_instance("pi-early", start_time=at(0)))
        process_history.add(PI, factories.process_instance("pi-late", start_time=at(40)))

        summary = migrator.migrate([PI])

        assert summary.for_type(PI).migrated == 1
        assert migrator.state.has_target_key("pi-late", PI)
        assert not migrator.state.exists("pi-early", PI)

    def test_new_migrator_continues_key_sequence(
        self, config, state, target, retention, process_history
    ):
        first = HistoryMigrator(config, state, process_history, target, retention=retention)
        first.migrate([PD])
        pd_key = state.lookup_target_key("pd-1", PD)

        second = HistoryMigrator(config, state, process_history, target, retention=retention)
        second.migrate([PI])

        assert state.lookup_target_key("pi-1", PI) > pd_key


class TestSkipAndRetry:
    def test_instance_before_definition(self, migrator: HistoryMigrator, process_history):
        summary = migrator.migrate([PI])

        assert summary.for_type(PI).skipped == 1
        row = migrator.state.get("pi-1", PI)
        assert row.is_skipped
        assert row.skip_reason == skip_reasons.MISSING_PROCESS_DEFINITION
        assert migrator.target.count(PI) == 0

        migrator.migrate([PD])
        retry = migrator.retry_skipped([PI])

        assert retry.mode is MigratorMode.RETRY_SKIPPED
        assert retry.for_type(PI).migrated == 1
        row = migrator.state.get("pi-1", PI)
        assert not row.is_skipped
        assert row.skip_reason is None
        assert migrator.target.count(PI) == 1

    def test_skipped_entity_is_not_skipped_twice(
        self, migrator: HistoryMigrator, process_history
    ):
        migrator.migrate([PI])
        migrator.migrate([PD])

        summary = migrator.migrate([PI])

        # no migrated rows, so pi-1 is fetched again but gated by its ledger row
        assert summary.for_type(PI).ignored == 1
        assert summary.for_type(PI).migrated == 0
        assert migrator.state.count_skipped(PI) == 1

    def test_flow_node_before_instance(self, migrator: HistoryMigrator, process_history):
        migrator.migrate([PD, FN])

        assert migrator.state.get("fn-start", FN).skip_reason == (
            skip_reasons.MISSING_PROCESS_INSTANCE
        )

        migrator.migrate([PI])
        retry = migrator.retry_skipped([FN])

        assert retry.for_type(FN).migrated == 2
        assert migrator.state.count_skipped(FN) == 0
        pi_key = migrator.state.lookup_target_key("pi-1", PI)
        flow_node = _record(migrator.target, migrator.state, FN, "fn-start")
        assert flow_node.process_instance_key == pi_key
        assert flow_node.flow_node_scope_key == pi_key

    def test_instance_and_flow_nodes_retried_together(
        self, migrator: HistoryMigrator, process_history
    ):
        summary = migrator.migrate([PI, FN])

        assert summary.for_type(PI).skipped == 1
        assert summary.for_type(FN).skipped == 2

        migrator.migrate([PD])
        retry = migrator.retry_skipped([PI, FN])

        assert retry.for_type(PI).migrated == 1
        assert retry.for_type(FN).migrated == 2
        assert migrator.state.count_skipped(PI) == 0
        assert migrator.state.count_skipped(FN) == 0
        pi_key = migrator.state.lookup_target_key("pi-1", PI)
        for source_id in ("fn-start", "fn-task"):
            flow_node = _record(migrator.target, migrator.state, FN, source_id)
            assert flow_node.process_instance_key == pi_key
            assert flow_node.tree_path == f"{pi_key}/{flow_node.flow_node_instance_key}"

    def test_retry_that_still_fails_keeps_row(self, migrator: HistoryMigrator, process_history):
        migrator.migrate([PI])

        retry = migrator.retry_skipped([PI])

        assert retry.for_type(PI).skipped == 1
        assert migrator.state.count_skipped(PI) == 1
        assert migrator.state.get("pi-1", PI).skip_reason == (
            skip_reasons.MISSING_PROCESS_DEFINITION
        )

    def test_retry_of_vanished_entity(self, migrator: HistoryMigrator):
        migrator.state.insert("pi-gone", None, at(1), PI, skip_reason="Missing process definition")

        retry = migrator.retry_skipped([PI])

        assert retry.for_type(PI).ignored == 1
        assert migrator.state.get("pi-gone", PI).is_skipped

    def test_child_instance_with_missing_parent(self, migrator: HistoryMigrator, source):
        source.add(PD, factories.process_definition())
        source.add(
            PI,
            factories.process_instance(
                "pi-2", super_process_instance_id="pi-x", root_process_instance_id="pi-x"
            ),
        )

        migrator.migrate()

        assert migrator.state.get("pi-2", PI).skip_reason == (
            skip_reasons.MISSING_PARENT_PROCESS_INSTANCE
        )

    def test_child_instance_after_parent(self, migrator: HistoryMigrator, process_history):
        process_history.add(
            PI,
            factories.process_instance(
                "pi-2",
                super_process_instance_id="pi-1",
                root_process_instance_id="pi-1",
                start_time=at(5),
            ),
        )

        migrator.migrate([PD, PI])

        pi_key = migrator.state.lookup_target_key("pi-1", PI)
        child = _record(migrator.target, migrator.state, PI, "pi-2")
        assert child.parent_process_instance_key == pi_key
        assert child.root_process_instance_key == pi_key


class TestFlowNodes:
    def test_nested_tree_path(self, migrator: HistoryMigrator, source):
        _add_instance(source)
        source.add(
            FN,
            factories.flow_node(
                "fn-sub", activity_id="sub", activity_type="subProcess", start_time=at(3)
            ),
        )
        source.add(
            FN,
            factories.flow_node(
                "fn-inner",
                activity_id="inner",
                activity_type="startEvent",
                parent_activity_instance_id="fn-sub",
                start_time=at(4),
            ),
        )

        migrator.migrate()
        state = migrator.state

        pi_key = state.lookup_target_key("pi-1", PI)
        sub_key = state.lookup_target_key("fn-sub", FN)
        inner = _record(migrator.target, state, FN, "fn-inner")
        assert inner.flow_node_scope_key == sub_key
        assert inner.tree_path == f"{pi_key}/{sub_key}/{inner.flow_node_instance_key}"

    def test_unknown_activity_type_is_conversion_error(self, migrator: HistoryMigrator, source):
        source.add(PD, factories.process_definition())
        source.add(PI, factories.process_instance())
        source.add(FN, factories.flow_node(activity_type="weirdEvent"))

        migrator.migrate()

        assert migrator.state.get("fn-1", FN).skip_reason == skip_reasons.conversion_error(
            "Unknown activity type: weirdEvent"
        )


def _add_job_logs(source: SourceClient) -> SourceClient:
    """Three logs of job-1: created, failed, then successful."""
    for minute, (log_id, log_state) in enumerate(
        [("log-a", "created"), ("log-b", "failed"), ("log-c", "successful")], start=3
    ):
        source.add(
            JOB,
            factories.job_log(log_id, activity_id="task", state=log_state, timestamp=at(minute)),
        )
    return source


class TestJobs:
    def test_one_record_per_job(self, migrator: HistoryMigrator, source):
        _add_job_logs(_add_instance(source))

        summary = migrator.migrate()

        assert summary.for_type(JOB).migrated == 1
        assert summary.for_type(JOB).ignored == 2
        assert migrator.target.count(JOB) == 1
        assert migrator.state.has_target_key("job-1", JOB)
        assert not migrator.state.exists("log-b", JOB)
        job = _record(migrator.target, migrator.state, JOB, "job-1")
        assert job.element_instance_key == migrator.state.lookup_target_key("fn-task", FN)

    def test_rerun_ignores_later_logs(self, migrator: HistoryMigrator, source):
        _add_job_logs(_add_instance(source))
        migrator.migrate()

        source.add(
            JOB,
            factories.job_log("log-d", activity_id="task", state="deleted", timestamp=at(20)),
        )
        summary = migrator.migrate([JOB])

        assert summary.for_type(JOB).ignored == 3
        assert migrator.target.count(JOB) == 1

    def test_skipped_job_is_retried_from_its_first_log(self, migrator: HistoryMigrator, source):
        source.add(PD, factories.process_definition())
        _add_job_logs(source)

        summary = migrator.migrate()

        assert summary.for_type(JOB).skipped == 1
        assert migrator.state.get("job-1", JOB).is_skipped

        source.add(PI, factories.process_instance())
        migrator.migrate([PI])
        retry = migrator.retry_skipped([JOB])

        assert retry.for_type(JOB).migrated == 1
        assert migrator.target.count(JOB) == 1
        job = _record(migrator.target, migrator.state, JOB, "job-1")
        assert job.process_instance_key == migrator.state.lookup_target_key("pi-1", PI)


class TestAutoCancel:
    def test_active_instance_is_canceled(self, migrator: HistoryMigrator, source):
        source.add(PD, factories.process_definition())
        source.add(PI, factories.process_instance(state="ACTIVE", end_time=None))

        migrator.migrate()

        instance = _record(migrator.target, migrator.state, PI, "pi-1")
        assert instance.state == "CANCELED"
        assert instance.end_date == NOW
        assert instance.history_cleanup_date is not None

    def test_completed_instance_keeps_end_date(self, migrator: HistoryMigrator, process_history):
        migrator.migrate([PD, PI])

        instance = _record(migrator.target, migrator.state, PI, "pi-1")
        assert instance.state == "COMPLETED"
        assert instance.end_date == at(30)


class TestUnsupportedAndRejected:
    def test_cmmn_task_and_its_variable(self, migrator: HistoryMigrator, source):
        _add_instance(source)
        source.add(UT, factories.user_task(case_instance_id="case-1"))
        source.add(
            VAR,
            factories.variable("var-2", task_id="task-1", activity_instance_id="fn-task"),
        )

        summary = migrator.migrate()

        assert migrator.state.get("task-1", UT).skip_reason == skip_reasons.UNSUPPORTED_CMMN_TASK
        assert migrator.state.get("var-2", VAR).skip_reason == (
            skip_reasons.BELONGS_TO_SKIPPED_TASK
        )
        assert summary.total_skipped == 2

    def test_unsupported_variable_type(self, migrator: HistoryMigrator, source):
        source.add(PD, factories.process_definition())
        source.add(PI, factories.process_instance())
        source.add(VAR, factories.variable("var-x", name="x", type_name="weird", value="?"))

        migrator.migrate()

        assert migrator.state.get("var-x", VAR).skip_reason == (
            "Conversion error: Variable 'x': Unsupported value type: weird"
        )
        assert migrator.target.count(VAR) == 0

    def test_interceptor_rejection(self, state_config, state, source, target, retention):
        config = MigrationConfig(
            state=state_config,
            conversion=ConversionConfig(
                interceptors=[InterceptorConfig(class_name="tests.test_conversion:Rejecting")]
            ),
        )
        source.add(PD, factories.process_definition())
        migrator = HistoryMigrator(config, state, source, target, retention=retention)

        summary = migrator.migrate()

        assert summary.for_type(PD).skipped == 1
        assert migrator.state.get("pd-1", PD).skip_reason == (
            "Conversion error: rejected by policy"
        )
        assert target.count(PD) == 0

    def test_failing_interceptor_skips_entity(
        self, state_config, state, source, target, retention
    ):
        config = MigrationConfig(
            state=state_config,
            conversion=ConversionConfig(
                interceptors=[InterceptorConfig(class_name="tests.test_conversion:Broken")]
            ),
        )
        source.add(PD, factories.process_definition())
        migrator = HistoryMigrator(config, state, source, target, retention=retention)

        summary = migrator.migrate()

        assert summary.for_type(PD).skipped == 1
        assert migrator.state.get("pd-1", PD).skip_reason == (
            "Conversion error: Broken failed for PROCESS_DEFINITION: 'missing property'"
        )
        assert target.count(PD) == 0

    def test_configured_interceptor_modifies_records(
        self, state_config, state, source, target, retention
    ):
        config = MigrationConfig(
            state=state_config,
            conversion=ConversionConfig(
                interceptors=[InterceptorConfig(class_name="tests.test_conversion:FlowNodeOnly")]
            ),
        )
        _add_instance(source)
        migrator = HistoryMigrator(config, state, source, target, retention=retention)

        migrator.migrate()

        assert _record(target, state, FN, "fn-task").flow_node_name == "renamed"


class TestIncidents:
    def test_failed_external_task_reference(self, migrator: HistoryMigrator, source):
        _add_instance(source)
        source.add(EXT, factories.external_task_log())
        source.add(
            INC, factories.incident(incident_type="failedExternalTask", configuration="ext-1")
        )

        migrator.migrate()
        state = migrator.state

        incident = _record(migrator.target, state, INC, "inc-1")
        assert incident.job_key == state.lookup_target_key("etl-1", EXT)
        assert incident.flow_node_instance_key == state.lookup_target_key("fn-task", FN)

    def test_missing_flow_node(self, migrator: HistoryMigrator, source):
        _add_instance(source)
        source.add(INC, factories.incident(activity_id="missing"))

        migrator.migrate()

        assert migrator.state.get("inc-1", INC).skip_reason == skip_reasons.MISSING_FLOW_NODE

    def test_incident_without_activity(self, migrator: HistoryMigrator, source):
        _add_instance(source)
        source.add(INC, factories.incident(activity_id=None))

        summary = migrator.migrate()

        assert summary.for_type(INC).migrated == 1


class TestDecisions:
    def test_decision_tree(self, migrator: HistoryMigrator, decision_history):
        summary = migrator.migrate()
        state, target = migrator.state, migrator.target

        assert summary.for_type(DI).migrated == 1
        assert summary.for_type(DI).children == 1

        key = state.lookup_target_key("di-1", DI)
        assert state.lookup_target_key("di-2", DI) == key

        records = target.search(DI, decision_instance_key=key)
        assert sorted(r.decision_instance_id for r in records) == [f"{key}-1", f"{key}-2"]

        child = target.find_by_key(DI, f"{key}-2")
        assert child.decision_definition_key == state.lookup_target_key("dd-2", DD)
        assert child.root_decision_definition_key == state.lookup_target_key("dd-1", DD)

    def test_child_with_missing_definition_skips_tree(self, migrator: HistoryMigrator, source):
        source.add(DRD, factories.decision_requirements())
        source.add(DD, factories.decision_definition())
        source.add(DI, factories.decision_instance())
        source.add(
            DI,
            factories.decision_instance(
                "di-2", decision_definition_id="dd-2", root_decision_instance_id="di-1"
            ),
        )

        summary = migrator.migrate()

        assert summary.for_type(DI).skipped == 1
        assert migrator.state.get("di-1", DI).skip_reason == (
            skip_reasons.MISSING_DECISION_DEFINITION
        )
        assert not migrator.state.exists("di-2", DI)
        assert migrator.target.count(DI) == 0

    def test_process_decision_without_flow_node(self, migrator: HistoryMigrator, source):
        source.add(PD, factories.process_definition())
        source.add(PI, factories.process_instance())
        source.add(DRD, factories.decision_requirements())
        source.add(DD, factories.decision_definition())
        source.add(DI, factories.process_decision_instance())

        migrator.migrate()

        assert migrator.state.get("di-3", DI).skip_reason == skip_reasons.MISSING_FLOW_NODE

    def test_process_decision(self, migrator: HistoryMigrator, source):
        _add_instance(source)
        source.add(DRD, factories.decision_requirements())
        source.add(DD, factories.decision_definition())
        source.add(DI, factories.process_decision_instance())

        migrator.migrate()
        state = migrator.state

        key = state.lookup_target_key("di-3", DI)
        record = migrator.target.find_by_key(DI, f"{key}-1")
        assert record.process_instance_key == state.lookup_target_key("pi-1", PI)
        assert record.flow_node_instance_key == state.lookup_target_key("fn-task", FN)

    def test_definition_without_requirements(self, migrator: HistoryMigrator, source):
        source.add(
            DD,
            factories.decision_definition(
                "dd-x",
                decision_requirements_definition_id=None,
                decision_requirements_definition_key=None,
            ),
        )

        summary = migrator.migrate()
        state = migrator.state

        assert summary.for_type(DD).migrated == 1
        assert summary.for_type(DD).children == 1
        drd_key = state.lookup_target_key("drd-dd-x", DRD)
        assert drd_key is not None
        assert migrator.target.count(DRD) == 1

        definition = _record(migrator.target, state, DD, "dd-x")
        assert definition.decision_requirements_key == drd_key
        assert definition.decision_requirements_id == "c7-legacy-drd-approve"


class TestAuditLog:
    def test_partitioned_key(self, migrator: HistoryMigrator, process_history):
        migrator.migrate()

        audit_key = migrator.state.lookup_target_key("op-1", AUDIT)
        partition, value = audit_key.split("-")

        assert partition == "4095"
        assert int(value) >> KEY_BITS == 4095
        assert migrator.target.find_by_key(AUDIT, audit_key) is not None


class TestListSkipped:
    def test_dependency_order_without_writes(self, migrator: HistoryMigrator, process_history):
        migrator.migrate([FN, PI])
        before = migrator.state.stats()

        skipped = migrator.list_skipped()

        assert [(s.entity_type, s.source_id) for s in skipped] == [
            (PI, "pi-1"),
            (FN, "fn-start"),
            (FN, "fn-task"),
        ]
        assert skipped[0] == SkippedEntity(PI, "pi-1", skip_reasons.MISSING_PROCESS_DEFINITION)
        assert skipped[0].display_name == "Historic Process Instance"
        assert migrator.state.stats() == before

    def test_filtered_by_type(self, migrator: HistoryMigrator, process_history):
        migrator.migrate([FN, PI])
        assert [s.source_id for s in migrator.list_skipped([PI])] == ["pi-1"]


class TestFatalErrors:
    def test_state_failure_aborts_and_rolls_back(
        self, migrator: HistoryMigrator, process_history, monkeypatch
    ):
        def failing_insert(*args, **kwargs):
            raise StateError("disk full")

        monkeypatch.setattr(migrator.state, "insert", failing_insert)

        with pytest.raises(MigrationError, match="Migration of Process Definition failed") as exc:
            migrator.migrate()

        assert exc.value.entity_type is PD
        assert isinstance(exc.value.__cause__, StateError)
        assert migrator.target.count(PD) == 0
        assert migrator.target.count(PI) == 0

    def test_list_skipped_mode_rejects_single_entity(self, migrator: HistoryMigrator):
        with pytest.raises(ValueError, match="LIST_SKIPPED"):
            migrator.migrators[PD].migrate_entity(
                factories.process_definition(), MigratorMode.LIST_SKIPPED
            )
