"""
Conversion pipeline tests.

Covers:
- RecordBuilder: field validation, defaults, sealing, build errors
- RetentionPolicy: end dates and history cleanup dates
- DefinitionNaming: id prefixing and tenant defaulting
- ConversionPipeline: preset-then-execute ordering, type filtering, rejection, failing interceptors
- load_interceptors: import paths, properties, disabled entries, bad classes
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from history_migration.client.exceptions import ConfigurationError, ConversionError
from history_migration.config import HistoryConfig, InterceptorConfig
from history_migration.migration.conversion import (
    ConversionContext,
    ConversionPipeline,
    DefinitionNaming,
    EntityInterceptor,
    RecordBuilder,
    RetentionPolicy,
    load_interceptors,
)
from history_migration.migration.entity_types import HistoryEntityType
from history_migration.schema.target import FlowNodeInstanceRecord, ProcessDefinitionRecord
from tests import factories
from tests.factories import NOW, at

# =============================================================================
# Test Interceptors
# =============================================================================


class RecordingInterceptor(EntityInterceptor):
    """Appends (name, phase) to a shared call list."""

    label = "recording"

    def __init__(self, calls=None):
        self.calls = calls if calls is not None else []

    def preset_parent_properties(self, context):
        self.calls.append((self.label, "preset"))

    def execute(self, context):
        self.calls.append((self.label, "execute"))


class FlowNodeOnly(EntityInterceptor):
    types = frozenset({HistoryEntityType.FLOW_NODE})

    def execute(self, context):
        context.builder.set(flow_node_name="renamed")


class Rejecting(EntityInterceptor):
    def execute(self, context):
        raise ConversionError("rejected by policy")


class Broken(EntityInterceptor):
    def execute(self, context):
        raise KeyError("missing property")


class BrokenPreset(EntityInterceptor):
    def preset_parent_properties(self, context):
        raise RuntimeError("no parent")


class NotAnInterceptor:
    pass


def _definition_context(builder: RecordBuilder) -> ConversionContext:
    return ConversionContext(
        entity_type=HistoryEntityType.PROCESS_DEFINITION,
        entity=factories.process_definition(),
        builder=builder,
    )


class TestRecordBuilder:
    def test_build_valid_record(self):
        builder = RecordBuilder(ProcessDefinitionRecord)
        builder.set(process_definition_key=1, process_definition_id="c7-legacy-invoice")

        record = builder.build()

        assert record.process_definition_key == 1
        assert record.record_key == 1
        assert builder.sealed

    def test_unknown_field(self):
        builder = RecordBuilder(ProcessDefinitionRecord)
        with pytest.raises(AttributeError, match="no_such_field"):
            builder.set(no_such_field=1)

    def test_set_default_keeps_existing_value(self):
        builder = RecordBuilder(ProcessDefinitionRecord)
        builder.set(name="first")
        builder.set_default(name="second", version=3)

        assert builder.get("name") == "first"
        assert builder.get("version") == 3

    def test_set_default_fills_none(self):
        builder = RecordBuilder(ProcessDefinitionRecord)
        builder.set(name=None)
        builder.set_default(name="filled")
        assert builder.get("name") == "filled"

    def test_clear(self):
        builder = RecordBuilder(ProcessDefinitionRecord)
        builder.set(name="x").clear("name")
        assert builder.get("name") is None

    def test_sealed_after_build(self):
        builder = RecordBuilder(ProcessDefinitionRecord)
        builder.set(process_definition_key=1, process_definition_id="p")
        record = builder.build()

        with pytest.raises(RuntimeError, match="sealed"):
            builder.set(name="late")
        with pytest.raises(RuntimeError, match="sealed"):
            builder.clear("name")
        assert builder.build() is record

    def test_invalid_fields_raise_conversion_error(self):
        builder = RecordBuilder(ProcessDefinitionRecord)
        builder.set(process_definition_id="p")

        with pytest.raises(ConversionError, match="process_definition_key"):
            builder.build()
        assert not builder.sealed

    def test_record_is_frozen(self):
        builder = RecordBuilder(ProcessDefinitionRecord)
        record = builder.set(process_definition_key=1, process_definition_id="p").build()

        with pytest.raises(ValidationError):
            record.name = "changed"


class TestRetentionPolicy:
    def test_end_date_of_finished_entity(self):
        policy = RetentionPolicy(clock=lambda: NOW)
        assert policy.end_date(at(30)) == at(30)

    def test_end_date_of_active_entity_is_now(self):
        policy = RetentionPolicy(clock=lambda: NOW)
        assert policy.end_date(None) == NOW

    def test_cleanup_from_end_date_plus_ttl(self):
        policy = RetentionPolicy(ttl_days=10)
        assert policy.cleanup_date(at(30), None) == at(30) + timedelta(days=10)

    def test_removal_time_wins(self):
        policy = RetentionPolicy(ttl_days=10)
        assert policy.cleanup_date(at(30), at(99)) == at(99)

    def test_disabled_cleanup(self):
        policy = RetentionPolicy(enabled=False)
        assert policy.cleanup_date(at(30), None) is None
        assert policy.cleanup_date(at(30), at(99)) == at(99)

    def test_zero_ttl_means_no_cleanup(self):
        assert RetentionPolicy(ttl_days=0).cleanup_date(at(30), None) is None

    def test_child_dates_follow_parent(self):
        policy = RetentionPolicy(ttl_days=1)

        assert policy.child_end_date(at(30), None) == at(30)
        assert policy.child_end_date(at(30), at(5)) == at(5)
        assert policy.child_end_date(None, None) is None
        assert policy.child_cleanup_date(at(30), None) == at(30) + timedelta(days=1)
        assert policy.child_cleanup_date(None, None) is None

    def test_from_config(self):
        config = HistoryConfig()
        config.auto_cancel.cleanup.ttl_days = 7

        policy = RetentionPolicy.from_config(config)

        assert policy.enabled
        assert policy.ttl == timedelta(days=7)


class TestDefinitionNaming:
    def test_prefix(self):
        naming = DefinitionNaming(legacy_prefix="c7-legacy")

        assert naming.prefix("invoice") == "c7-legacy-invoice"
        assert naming.prefix("c7-legacy-invoice") == "c7-legacy-invoice"
        assert naming.prefix(None) is None

    def test_tenant(self):
        naming = DefinitionNaming(default_tenant="<default>")

        assert naming.tenant(None) == "<default>"
        assert naming.tenant("") == "<default>"
        assert naming.tenant("acme") == "acme"


class TestConversionPipeline:
    def test_all_presets_run_before_any_execute(self):
        calls = []
        first = RecordingInterceptor(calls)
        second = RecordingInterceptor(calls)
        second.label = "second"

        class KeySetter(EntityInterceptor):
            def execute(self, context):
                context.builder.set(process_definition_key=1, process_definition_id="p")

        pipeline = ConversionPipeline([first, second, KeySetter()])
        pipeline.convert(_definition_context(RecordBuilder(ProcessDefinitionRecord)))

        assert calls == [
            ("recording", "preset"),
            ("second", "preset"),
            ("recording", "execute"),
            ("second", "execute"),
        ]

    def test_type_filtering(self):
        pipeline = ConversionPipeline([FlowNodeOnly(), RecordingInterceptor()])

        assert [i.name for i in pipeline.applicable(HistoryEntityType.FLOW_NODE)] == [
            "FlowNodeOnly",
            "RecordingInterceptor",
        ]
        assert [i.name for i in pipeline.applicable(HistoryEntityType.VARIABLE)] == [
            "RecordingInterceptor"
        ]

    def test_applicable_interceptor_writes_field(self):
        builder = RecordBuilder(FlowNodeInstanceRecord)
        builder.set(
            flow_node_instance_key=1,
            flow_node_id="start",
            type="START_EVENT",
            state="COMPLETED",
            start_date=at(1),
        )
        context = ConversionContext(HistoryEntityType.FLOW_NODE, factories.flow_node(), builder)

        record = ConversionPipeline([FlowNodeOnly()]).convert(context)

        assert record.flow_node_name == "renamed"

    def test_rejection_propagates(self):
        pipeline = ConversionPipeline([Rejecting()])

        with pytest.raises(ConversionError, match="rejected by policy"):
            pipeline.convert(_definition_context(RecordBuilder(ProcessDefinitionRecord)))

    def test_failure_becomes_conversion_error(self):
        pipeline = ConversionPipeline([Broken()])

        with pytest.raises(ConversionError, match="Broken failed for PROCESS_DEFINITION") as exc:
            pipeline.convert(_definition_context(RecordBuilder(ProcessDefinitionRecord)))
        assert isinstance(exc.value.__cause__, KeyError)

    def test_preset_failure_becomes_conversion_error(self):
        pipeline = ConversionPipeline([BrokenPreset()])

        with pytest.raises(
            ConversionError, match="BrokenPreset failed for PROCESS_DEFINITION: no parent"
        ):
            pipeline.convert(_definition_context(RecordBuilder(ProcessDefinitionRecord)))

    def test_add_and_remove(self):
        pipeline = ConversionPipeline().add(Rejecting()).add(FlowNodeOnly())
        pipeline.remove("Rejecting")
        assert [i.name for i in pipeline.interceptors] == ["FlowNodeOnly"]

    def test_context_ancestors_are_read_only(self):
        context = ConversionContext(
            HistoryEntityType.PROCESS_DEFINITION,
            factories.process_definition(),
            RecordBuilder(ProcessDefinitionRecord),
            ancestors={"process_instance": None},
        )

        with pytest.raises(TypeError):
            context.ancestors["other"] = 1
        assert context.parent_end_date is None


class TestLoadInterceptors:
    def test_colon_path_with_properties(self):
        interceptors = load_interceptors(
            [
                InterceptorConfig(
                    class_name="tests.test_conversion:RecordingInterceptor",
                    properties={"label": "configured"},
                )
            ]
        )

        assert len(interceptors) == 1
        assert isinstance(interceptors[0], RecordingInterceptor)
        assert interceptors[0].label == "configured"

    def test_dotted_path(self):
        interceptors = load_interceptors(
            [InterceptorConfig(class_name="tests.test_conversion.FlowNodeOnly")]
        )
        assert isinstance(interceptors[0], FlowNodeOnly)

    def test_disabled_entries_are_skipped(self):
        interceptors = load_interceptors(
            [InterceptorConfig(class_name="tests.test_conversion:Rejecting", enabled=False)]
        )
        assert interceptors == []

    def test_missing_class(self):
        with pytest.raises(ConfigurationError, match="Cannot load interceptor"):
            load_interceptors([InterceptorConfig(class_name="tests.test_conversion:Missing")])

    def test_missing_module(self):
        with pytest.raises(ConfigurationError, match="Cannot load interceptor"):
            load_interceptors([InterceptorConfig(class_name="no_such_module:Thing")])

    def test_not_an_interceptor(self):
        with pytest.raises(ConfigurationError, match="not an EntityInterceptor"):
            load_interceptors(
                [InterceptorConfig(class_name="tests.test_conversion:NotAnInterceptor")]
            )

    def test_invalid_name(self):
        with pytest.raises(ConfigurationError, match="Invalid interceptor class name"):
            load_interceptors([InterceptorConfig(class_name="Rejecting")])
