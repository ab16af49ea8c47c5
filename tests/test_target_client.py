"""
Target adapter tests.

Covers:
- Insert and lookup by key for numeric and partitioned keys
- Duplicate key rejection
- Search on indexed ancestor columns and on payload fields
- Counting and the highest stored key sequence
- Inserts inside a rolled-back commit unit
"""

from __future__ import annotations

import pytest

from history_migration.client.exceptions import StateError
from history_migration.client.target_client import TargetClient
from history_migration.migration.database import transaction
from history_migration.migration.entity_types import HistoryEntityType
from history_migration.schema.target import (
    AuditLogRecord,
    FlowNodeInstanceRecord,
    ProcessInstanceRecord,
)
from tests.factories import at

PI = HistoryEntityType.PROCESS_INSTANCE
FN = HistoryEntityType.FLOW_NODE


def _process_instance(key: int) -> ProcessInstanceRecord:
    return ProcessInstanceRecord(
        process_instance_key=key,
        process_definition_key=1,
        root_process_instance_key=key,
        state="COMPLETED",
        start_date=at(1),
        end_date=at(30),
    )


def _flow_node(key: int, process_instance_key: int, element: str) -> FlowNodeInstanceRecord:
    return FlowNodeInstanceRecord(
        flow_node_instance_key=key,
        flow_node_id=element,
        process_instance_key=process_instance_key,
        type="SERVICE_TASK",
        state="COMPLETED",
        start_date=at(2),
    )


class TestInsert:
    def test_insert_and_find(self, target: TargetClient):
        target.insert(PI, _process_instance(10), key_sequence=10)

        record = target.find_by_key(PI, 10)

        assert isinstance(record, ProcessInstanceRecord)
        assert record == _process_instance(10)
        assert target.stats["inserted_count"] == 1

    def test_find_unknown_or_none(self, target: TargetClient):
        assert target.find_by_key(PI, 404) is None
        assert target.find_by_key(PI, None) is None

    def test_duplicate_key(self, target: TargetClient):
        target.insert(PI, _process_instance(10))

        with pytest.raises(StateError, match="already exists"):
            target.insert(PI, _process_instance(10))

    def test_same_key_different_types(self, target: TargetClient):
        target.insert(PI, _process_instance(10))
        target.insert(FN, _flow_node(10, 10, "start"))

        assert target.count(PI) == 1
        assert target.count(FN) == 1

    def test_partitioned_key(self, target: TargetClient):
        record = AuditLogRecord(
            audit_log_key="4095-7",
            entity_type="USER",
            operation_type="CREATE",
            timestamp=at(1),
        )
        target.insert(HistoryEntityType.AUDIT_LOG, record)

        assert target.find_by_key(HistoryEntityType.AUDIT_LOG, "4095-7") == record

    def test_insert_rolled_back_with_unit(self, target: TargetClient):
        with pytest.raises(RuntimeError):
            with transaction():
                target.insert(PI, _process_instance(10))
                raise RuntimeError("abort")

        assert target.count(PI) == 0


class TestSearch:
    @pytest.fixture
    def flow_nodes(self, target: TargetClient) -> TargetClient:
        target.insert(FN, _flow_node(1, 10, "start"))
        target.insert(FN, _flow_node(2, 10, "task"))
        target.insert(FN, _flow_node(3, 10, "task"))
        target.insert(FN, _flow_node(4, 20, "task"))
        return target

    def test_search_on_indexed_columns(self, flow_nodes: TargetClient):
        found = flow_nodes.search(FN, process_instance_key=10, flow_node_id="task")

        assert [r.flow_node_instance_key for r in found] == [2, 3]

    def test_search_on_payload_field(self, flow_nodes: TargetClient):
        found = flow_nodes.search(FN, process_instance_key=10, type="SERVICE_TASK")
        assert len(found) == 3

        assert flow_nodes.search(FN, state="TERMINATED") == []

    def test_search_without_filters(self, flow_nodes: TargetClient):
        assert len(flow_nodes.search(FN)) == 4

    def test_unknown_filter(self, flow_nodes: TargetClient):
        with pytest.raises(ValueError, match="Unknown fields"):
            flow_nodes.search(FN, color="red")


class TestKeySequence:
    def test_empty_store(self, target: TargetClient):
        assert target.max_key_sequence() == 0

    def test_highest_sequence(self, target: TargetClient):
        target.insert(PI, _process_instance(10), key_sequence=5)
        target.insert(PI, _process_instance(11), key_sequence=9)
        target.insert(PI, _process_instance(12))

        assert target.max_key_sequence() == 9
