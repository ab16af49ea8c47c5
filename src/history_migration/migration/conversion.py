"""Conversion pipeline.

Turns one source entity into one target record. A `ConversionContext` is
created per entity; interceptors read the source entity and the resolved
ancestors and write fields into the context's `RecordBuilder`. The builder
is sealed once the record is built.
"""

import importlib
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from history_migration.client.exceptions import ConfigurationError, ConversionError
from history_migration.config import HistoryConfig, InterceptorConfig
from history_migration.migration.entity_types import HistoryEntityType
from history_migration.schema.source import SourceEntity
from history_migration.schema.target import TargetRecord
from history_migration.utils.dates import ensure_utc, utc_now
from history_migration.utils.logging import get_logger

logger = get_logger(__name__)


class RecordBuilder:
    """Accumulates fields for one target record.

    Writable until `build()`; after that the builder is sealed and any
    further write raises RuntimeError.
    """

    def __init__(self, model: type[TargetRecord]):
        self.model = model
        self._fields: dict[str, Any] = {}
        self._record: TargetRecord | None = None

    @property
    def sealed(self) -> bool:
        return self._record is not None

    def set(self, **fields: Any) -> "RecordBuilder":
        """Set one or more fields; unknown field names raise AttributeError."""
        if self.sealed:
            raise RuntimeError(f"{self.model.__name__} builder is sealed")
        unknown = set(fields) - set(self.model.model_fields)
        if unknown:
            raise AttributeError(
                f"{self.model.__name__} has no field(s): {', '.join(sorted(unknown))}"
            )
        self._fields.update(fields)
        return self

    def set_default(self, **fields: Any) -> "RecordBuilder":
        """Set fields that are not set yet."""
        return self.set(**{k: v for k, v in fields.items() if self._fields.get(k) is None})

    def get(self, field: str, default: Any = None) -> Any:
        return self._fields.get(field, default)

    def clear(self, *fields: str) -> "RecordBuilder":
        if self.sealed:
            raise RuntimeError(f"{self.model.__name__} builder is sealed")
        for field in fields:
            self._fields.pop(field, None)
        return self

    def build(self) -> TargetRecord:
        """Validate the fields into the record and seal the builder.

        Raises:
            ConversionError: If the fields do not form a valid record
        """
        if self._record is not None:
            return self._record
        try:
            self._record = self.model.model_validate(self._fields)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConversionError(f"Invalid {self.model.__name__}: {problems}") from e
        return self._record


class RetentionPolicy:
    """History cleanup and end-date derivation."""

    def __init__(self, enabled: bool = True, ttl_days: int = 180, clock=utc_now):
        self.enabled = enabled
        self.ttl = timedelta(days=ttl_days)
        self._clock = clock

    @classmethod
    def from_config(cls, config: HistoryConfig) -> "RetentionPolicy":
        cleanup = config.auto_cancel.cleanup
        return cls(enabled=cleanup.enabled, ttl_days=cleanup.ttl_days)

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    def end_date(self, end_time: datetime | None) -> datetime:
        """End date of a root entity: its own end time, or now when still active."""
        return ensure_utc(end_time) if end_time is not None else self.now()

    def cleanup_date(
        self, end_date: datetime | None, removal_time: datetime | None
    ) -> datetime | None:
        """History cleanup date from an explicit removal time or end date plus TTL."""
        if removal_time is not None:
            return ensure_utc(removal_time)
        if not self.enabled or not self.ttl or end_date is None:
            return None
        return ensure_utc(end_date) + self.ttl

    def child_end_date(
        self, parent_end_date: datetime | None, end_time: datetime | None
    ) -> datetime | None:
        """End date of a child entity; inherits the parent process instance's end date."""
        if end_time is not None:
            return ensure_utc(end_time)
        return ensure_utc(parent_end_date)

    def child_cleanup_date(
        self, parent_end_date: datetime | None, removal_time: datetime | None
    ) -> datetime | None:
        """Cleanup date of a child entity, derived from the parent process instance."""
        return self.cleanup_date(parent_end_date, removal_time)


class DefinitionNaming:
    """Tenant defaulting and definition id prefixing."""

    def __init__(self, legacy_prefix: str = "c7-legacy", default_tenant: str = "<default>"):
        self.legacy_prefix = legacy_prefix
        self.default_tenant = default_tenant

    @classmethod
    def from_config(cls, config: HistoryConfig) -> "DefinitionNaming":
        return cls(legacy_prefix=config.legacy_prefix, default_tenant=config.default_tenant)

    def prefix(self, definition_id: str | None) -> str | None:
        if definition_id is None:
            return None
        if definition_id.startswith(f"{self.legacy_prefix}-"):
            return definition_id
        return f"{self.legacy_prefix}-{definition_id}"

    def tenant(self, tenant_id: str | None) -> str:
        return tenant_id or self.default_tenant


class ConversionContext:
    """Per-entity conversion state.

    Attributes:
        entity: Source entity being converted
        entity_type: Its history entity type
        builder: Builder of the target record
        ancestors: Read-only mapping of resolved ancestor records
            (e.g. "process_instance", "process_definition")
    """

    def __init__(
        self,
        entity_type: HistoryEntityType,
        entity: SourceEntity,
        builder: RecordBuilder,
        ancestors: Mapping[str, Any] | None = None,
        retention: RetentionPolicy | None = None,
        naming: DefinitionNaming | None = None,
        settings: HistoryConfig | None = None,
    ):
        self.entity_type = entity_type
        self.entity = entity
        self.builder = builder
        self.ancestors = MappingProxyType(dict(ancestors or {}))
        self.retention = retention or RetentionPolicy()
        self.naming = naming or DefinitionNaming()
        self.settings = settings or HistoryConfig()

    def ancestor(self, name: str) -> Any:
        return self.ancestors.get(name)

    @property
    def parent_end_date(self) -> datetime | None:
        """End date of the resolved parent process instance, if any."""
        process_instance = self.ancestors.get("process_instance")
        return process_instance.end_date if process_instance is not None else None


class EntityInterceptor:
    """A conversion step.

    Subclasses set `types` to the entity types they handle (empty means
    all types) and override `execute`. `preset_parent_properties` runs for
    every applicable interceptor before any `execute`.

    Raise `ConversionError` to reject the entity; the entity is then
    skipped with the error's message. Any other exception rejects it too,
    with a message naming the interceptor.
    """

    types: frozenset[HistoryEntityType] = frozenset()

    @property
    def name(self) -> str:
        return type(self).__name__

    def applies_to(self, entity_type: HistoryEntityType) -> bool:
        return not self.types or entity_type in self.types

    def preset_parent_properties(self, context: ConversionContext) -> None:
        pass

    def execute(self, context: ConversionContext) -> None:
        pass


class ConversionPipeline:
    """Ordered chain of interceptors producing target records."""

    def __init__(self, interceptors: Iterable[EntityInterceptor] | None = None):
        self.interceptors: list[EntityInterceptor] = list(interceptors or [])

    def add(self, interceptor: EntityInterceptor) -> "ConversionPipeline":
        self.interceptors.append(interceptor)
        return self

    def remove(self, name: str) -> "ConversionPipeline":
        self.interceptors = [i for i in self.interceptors if i.name != name]
        return self

    def applicable(self, entity_type: HistoryEntityType) -> list[EntityInterceptor]:
        return [i for i in self.interceptors if i.applies_to(entity_type)]

    def convert(self, context: ConversionContext) -> TargetRecord:
        """Run the interceptors and build the record.

        Raises:
            ConversionError: If an interceptor rejects or fails on the entity, or the
                resulting fields do not form a valid record
        """
        interceptors = self.applicable(context.entity_type)

        for interceptor in interceptors:
            self._call(interceptor, interceptor.preset_parent_properties, context)

        for interceptor in interceptors:
            self._call(interceptor, interceptor.execute, context)

        return context.builder.build()

    @staticmethod
    def _call(interceptor: EntityInterceptor, step, context: ConversionContext) -> None:
        # any interceptor failure rejects the entity instead of ending the run
        try:
            step(context)
        except ConversionError:
            logger.debug(
                "Interceptor rejected entity",
                interceptor=interceptor.name,
                entity_type=context.entity_type.name,
                source_id=context.entity.id,
            )
            raise
        except Exception as e:
            logger.debug(
                "Interceptor failed",
                interceptor=interceptor.name,
                entity_type=context.entity_type.name,
                source_id=context.entity.id,
                error=str(e),
            )
            raise ConversionError(
                f"{interceptor.name} failed for {context.entity_type.name}: {e}"
            ) from e


def _import_class(class_name: str) -> type:
    module_name, sep, attr = class_name.partition(":")
    if not sep:
        module_name, _, attr = class_name.rpartition(".")
    if not module_name or not attr:
        raise ConfigurationError(f"Invalid interceptor class name: '{class_name}'")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load interceptor '{class_name}': {e}") from e


def load_interceptors(configs: Iterable[InterceptorConfig]) -> list[EntityInterceptor]:
    """Instantiate configured interceptors.

    Raises:
        ConfigurationError: If a class cannot be imported or is not an EntityInterceptor
    """
    interceptors = []
    for config in configs:
        if not config.enabled:
            continue
        cls = _import_class(config.class_name)
        if not (isinstance(cls, type) and issubclass(cls, EntityInterceptor)):
            raise ConfigurationError(f"{config.class_name} is not an EntityInterceptor")
        interceptor = cls()
        for attr, value in config.properties.items():
            setattr(interceptor, attr, value)
        interceptors.append(interceptor)
        logger.info("Interceptor loaded", interceptor=interceptor.name)
    return interceptors
