"""
Key generation and entity type tests.

Covers:
- Partition id encoding and decoding
- Monotonic, seeded key generation and key space exhaustion
- Numeric and partitioned key formats
- Entity type order, lookup by name and dependency ordering
"""

from __future__ import annotations

import pytest

from history_migration.migration.entity_types import HistoryEntityType, KeyFormat
from history_migration.migration.keys import (
    KEY_BITS,
    MAX_SEQUENCE,
    KeyGenerator,
    decode_partition_id,
    encode_partition_id,
    format_key,
    parse_key,
)


class TestPartitionEncoding:
    def test_encode_decode(self):
        key = encode_partition_id(4095, 17)

        assert key == (4095 << KEY_BITS) + 17
        assert decode_partition_id(key) == 4095

    def test_largest_key_fits_signed_64_bit(self):
        assert encode_partition_id(4095, MAX_SEQUENCE) < 2**63


class TestKeyGenerator:
    def test_keys_are_monotonic(self):
        keys = KeyGenerator(4095)
        first = keys.next_key(HistoryEntityType.PROCESS_INSTANCE)
        second = keys.next_key(HistoryEntityType.PROCESS_INSTANCE)

        assert second.value > first.value
        assert (first.sequence, second.sequence) == (1, 2)

    def test_seeded_generator_continues_after_seed(self):
        keys = KeyGenerator(1, start_sequence=100)

        generated = keys.next_key(HistoryEntityType.FLOW_NODE)

        assert generated.sequence == 101
        assert generated.value == encode_partition_id(1, 101)
        assert keys.last_sequence == 101

    def test_partitioned_format(self):
        keys = KeyGenerator(4095)

        generated = keys.next_key(HistoryEntityType.AUDIT_LOG)

        assert generated.value == f"4095-{encode_partition_id(4095, 1)}"

    def test_sequence_shared_across_types(self):
        keys = KeyGenerator(4095)
        keys.next_key(HistoryEntityType.PROCESS_INSTANCE)
        audit = keys.next_key(HistoryEntityType.AUDIT_LOG)

        assert audit.sequence == 2

    def test_exhausted_key_space(self):
        keys = KeyGenerator(1, start_sequence=MAX_SEQUENCE)

        with pytest.raises(OverflowError):
            keys.next_sequence()


class TestKeyFormats:
    def test_format_and_parse_numeric(self):
        stored = format_key(HistoryEntityType.PROCESS_INSTANCE, 123)

        assert stored == "123"
        assert parse_key(HistoryEntityType.PROCESS_INSTANCE, stored) == 123

    def test_parse_partitioned_keeps_string(self):
        assert parse_key(HistoryEntityType.AUDIT_LOG, "4095-1") == "4095-1"

    def test_parse_none(self):
        assert parse_key(HistoryEntityType.VARIABLE, None) is None


class TestEntityTypes:
    def test_declared_in_dependency_order(self):
        tiers = [entity_type.tier for entity_type in HistoryEntityType]
        assert tiers == sorted(tiers)

    def test_only_audit_log_is_partitioned(self):
        partitioned = [t for t in HistoryEntityType if t.key_format is KeyFormat.PARTITIONED]
        assert partitioned == [HistoryEntityType.AUDIT_LOG]

    @pytest.mark.parametrize(
        "name",
        ["flow_node", "FLOW_NODE", "flow-node", " Flow Node "],
    )
    def test_from_name(self, name):
        assert HistoryEntityType.from_name(name) is HistoryEntityType.FLOW_NODE

    def test_from_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown entity type"):
            HistoryEntityType.from_name("case_instance")

    def test_ordered_sorts_and_deduplicates(self):
        ordered = HistoryEntityType.ordered(
            [
                HistoryEntityType.AUDIT_LOG,
                HistoryEntityType.PROCESS_DEFINITION,
                HistoryEntityType.FLOW_NODE,
                HistoryEntityType.PROCESS_DEFINITION,
            ]
        )

        assert ordered == [
            HistoryEntityType.PROCESS_DEFINITION,
            HistoryEntityType.FLOW_NODE,
            HistoryEntityType.AUDIT_LOG,
        ]

    def test_ordered_none_is_all(self):
        assert HistoryEntityType.ordered() == list(HistoryEntityType)

    def test_display_name(self):
        assert str(HistoryEntityType.PROCESS_INSTANCE) == "Historic Process Instance"
