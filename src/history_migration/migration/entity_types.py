"""History entity types, run modes and key formats.

Members of `HistoryEntityType` are declared in dependency order: every type
only references types declared before it.
"""

from enum import Enum


class KeyFormat(str, Enum):
    """How a type's target key is rendered."""

    NUMERIC = "numeric"
    PARTITIONED = "partitioned"  # "{partition_id}-{key}"


class MigratorMode(str, Enum):
    """Run mode of the history migrator."""

    MIGRATE = "migrate"
    RETRY_SKIPPED = "retry_skipped"
    LIST_SKIPPED = "list_skipped"


class HistoryEntityType(Enum):
    """Kinds of history entity, in dependency order."""

    PROCESS_DEFINITION = ("Process Definition", 1, KeyFormat.NUMERIC)
    DECISION_REQUIREMENTS = ("Decision Requirements Definition", 1, KeyFormat.NUMERIC)
    FORM_DEFINITION = ("Form Definition", 1, KeyFormat.NUMERIC)
    DECISION_DEFINITION = ("Decision Definition", 2, KeyFormat.NUMERIC)
    PROCESS_INSTANCE = ("Historic Process Instance", 3, KeyFormat.NUMERIC)
    FLOW_NODE = ("Historic Flow Node", 4, KeyFormat.NUMERIC)
    USER_TASK = ("Historic User Task", 5, KeyFormat.NUMERIC)
    VARIABLE = ("Historic Variable", 5, KeyFormat.NUMERIC)
    JOB = ("Historic Job", 5, KeyFormat.NUMERIC)
    EXTERNAL_TASK = ("Historic External Task", 5, KeyFormat.NUMERIC)
    INCIDENT = ("Historic Incident", 5, KeyFormat.NUMERIC)
    DECISION_INSTANCE = ("Historic Decision Instance", 6, KeyFormat.NUMERIC)
    AUDIT_LOG = ("Historic Audit Log", 7, KeyFormat.PARTITIONED)

    def __init__(self, display_name: str, tier: int, key_format: KeyFormat):
        self.display_name = display_name
        self.tier = tier
        self.key_format = key_format

    def __str__(self) -> str:
        return self.display_name

    @property
    def order(self) -> int:
        """Position of the type in dependency order."""
        return list(HistoryEntityType).index(self)

    @classmethod
    def from_name(cls, name: str) -> "HistoryEntityType":
        """Resolve a type from its member name, case and separator insensitive.

        Raises:
            ValueError: If the name matches no entity type
        """
        normalized = name.strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return cls[normalized]
        except KeyError:
            valid = ", ".join(member.name.lower() for member in cls)
            raise ValueError(f"Unknown entity type '{name}'. Valid types: {valid}") from None

    @classmethod
    def ordered(cls, types=None) -> list["HistoryEntityType"]:
        """Return the requested types (all when None) in dependency order, deduplicated."""
        if types is None:
            return list(cls)
        return sorted(set(types), key=lambda t: t.order)

