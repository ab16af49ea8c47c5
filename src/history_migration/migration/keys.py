"""Target key generation.

Keys encode the partition id in their high bits and a monotonic sequence in
the low `KEY_BITS` bits, so keys never collide with keys minted by the target
engine's own partitions.
"""

import threading
from dataclasses import dataclass

from history_migration.migration.entity_types import HistoryEntityType, KeyFormat

KEY_BITS = 51
MAX_SEQUENCE = (1 << KEY_BITS) - 1


@dataclass(frozen=True)
class GeneratedKey:
    """A freshly allocated key and the sequence it was encoded from."""

    value: int | str
    sequence: int


def encode_partition_id(partition_id: int, sequence: int) -> int:
    """Encode a sequence number with a partition id."""
    return (partition_id << KEY_BITS) + sequence


def decode_partition_id(key: int) -> int:
    """Return the partition id a key was encoded with."""
    return key >> KEY_BITS


def format_key(entity_type: HistoryEntityType, key: int | str) -> str:
    """Render a target key as stored in the ledger."""
    return str(key)


def parse_key(entity_type: HistoryEntityType, stored: str | None) -> int | str | None:
    """Parse a ledger key back into the type's key format."""
    if stored is None:
        return None
    if entity_type.key_format is KeyFormat.NUMERIC:
        return int(stored)
    return stored


class KeyGenerator:
    """Monotonic, thread-safe key generator for one partition."""

    def __init__(self, partition_id: int, start_sequence: int = 0):
        """Initialize generator.

        Args:
            partition_id: Partition id encoded into every key
            start_sequence: Highest sequence already used; the next key uses start_sequence + 1
        """
        self.partition_id = partition_id
        self._sequence = start_sequence
        self._lock = threading.Lock()

    @property
    def last_sequence(self) -> int:
        return self._sequence

    def next_sequence(self) -> int:
        with self._lock:
            if self._sequence >= MAX_SEQUENCE:
                raise OverflowError(f"Key space exhausted for partition {self.partition_id}")
            self._sequence += 1
            return self._sequence

    def next_key(self, entity_type: HistoryEntityType) -> GeneratedKey:
        """Allocate the next key rendered in the type's key format."""
        sequence = self.next_sequence()
        key = encode_partition_id(self.partition_id, sequence)
        if entity_type.key_format is KeyFormat.PARTITIONED:
            return GeneratedKey(value=f"{self.partition_id}-{key}", sequence=sequence)
        return GeneratedKey(value=key, sequence=sequence)
