"""Tests for input defaults and input mapping normalization."""

import pytest
from autopilot_triggers.domain.enums import TriggerType
from autopilot_triggers.domain.models import InputDefaults, InputMapping, TriggerConfig
from autopilot_triggers.input_mapping import (
    build_config_overrides,
    effective_defaults,
    ensure_valid_input_mapping,
    extract_defaults,
    extract_input_mapping,
    get_path,
    map_payload_fields,
    matches_trigger_filter,
    merge_input_mapping,
    parse_input_mapping,
    render_template,
    resolve_trigger_input,
    validate_input_mapping,
)
from autopilot_triggers.logging_utils import InvalidInputMapping


class TestExtractDefaults:
    def test_reads_camel_and_snake_case(self):
        assert extract_defaults({"maxSteps": 5}).max_steps == 5
        assert extract_defaults({"max_steps": 7}).max_steps == 7

    def test_reads_json_string(self):
        defaults = extract_defaults('{"input": "Summarize", "context": {"team": "ops"}}')

        assert defaults.input == "Summarize"
        assert defaults.context == {"team": "ops"}

    @pytest.mark.parametrize("raw", [None, "not json", 42, ["input"], '"just a string"'])
    def test_wrong_shapes_yield_empty_defaults(self, raw):
        assert extract_defaults(raw).is_empty()

    def test_malformed_fields_are_dropped_individually(self):
        defaults = extract_defaults(
            {
                "input": 12,
                "context": "nope",
                "maxSteps": -1,
                "environment": "  staging ",
            }
        )

        assert defaults == InputDefaults(environment="staging")

    @pytest.mark.parametrize("value, expected", [(3.0, 3), (True, None), (0, None), (2.5, None)])
    def test_max_steps_must_be_a_positive_integer(self, value, expected):
        assert extract_defaults({"maxSteps": value}).max_steps == expected


class TestMergeInputMapping:
    def test_merge_with_itself_is_identity(self):
        mapping = InputMapping(
            template="New mail: {{ message.subject }}",
            config=TriggerConfig(defaults=InputDefaults(max_steps=4), environment="prod"),
        )

        assert merge_input_mapping(mapping, mapping) == mapping

    def test_merging_empty_overrides_keeps_existing(self):
        mapping = InputMapping(field="message.subject")

        assert merge_input_mapping(mapping, None) == mapping
        assert merge_input_mapping(mapping, InputMapping()) == mapping

    def test_nested_config_is_merged_field_by_field(self):
        existing = InputMapping(
            field="body",
            config=TriggerConfig(defaults=InputDefaults(input="old", max_steps=3)),
        )
        overrides = InputMapping(config=TriggerConfig(defaults=InputDefaults(input="new")))

        merged = merge_input_mapping(existing, overrides)

        assert merged.field == "body"
        assert merged.config.defaults.input == "new"
        assert merged.config.defaults.max_steps == 3

    def test_default_field_is_populated_on_request(self):
        overrides = build_config_overrides(InputDefaults(input="Run the report"))

        merged = merge_input_mapping(None, overrides, set_default_field=True)
        plain = merge_input_mapping(None, overrides)

        assert merged.default_input == "Run the report"
        assert plain.default_input is None

    def test_unknown_keys_survive_a_merge(self):
        existing = extract_input_mapping({"template": "x", "legacyOption": True})

        merged = merge_input_mapping(existing, InputMapping(template="y"))

        assert merged.template == "y"
        assert merged.model_dump()["legacyOption"] is True

    def test_unknown_nested_keys_survive_a_merge(self):
        existing = parse_input_mapping(
            {"config": {"routing": "blue", "defaults": {"input": "old", "priority": "high"}}}
        )
        overrides = parse_input_mapping({"config": {"defaults": {"input": "new"}}})

        merged = merge_input_mapping(existing, overrides).to_json()

        assert merged["config"]["routing"] == "blue"
        assert merged["config"]["defaults"] == {"input": "new", "priority": "high"}

    @pytest.mark.parametrize(
        "existing, overrides, set_default_field",
        [
            pytest.param(
                {
                    "template": "Hi {{ subject }}",
                    "config": {"defaults": {"input": "old", "maxSteps": 3}, "environment": "prod"},
                },
                {"config": {"defaults": {"input": "new", "context": {"team": "ops"}}}},
                False,
                id="nested-defaults",
            ),
            pytest.param(
                {"field": "message.subject", "config": {"defaults": {"maxSteps": 2}}},
                {"config": {"defaults": {"input": "Summarize"}}},
                True,
                id="default-field",
            ),
            pytest.param(
                {
                    "field": "message.body",
                    "legacyOption": True,
                    "config": {"routing": "blue", "defaults": {"priority": "high"}},
                },
                {"extraFlag": 1, "config": {"routing": "green", "defaults": {"input": "Go"}}},
                True,
                id="extra-keys",
            ),
            pytest.param(
                None,
                {"fields": [{"source": "a", "target": "b"}], "config": {"environment": "staging"}},
                False,
                id="no-existing",
            ),
            pytest.param({"template": "x"}, None, True, id="no-overrides"),
        ],
    )
    def test_reapplying_overrides_changes_nothing(self, existing, overrides, set_default_field):
        existing = parse_input_mapping(existing)
        overrides = parse_input_mapping(overrides)

        once = merge_input_mapping(existing, overrides, set_default_field=set_default_field)
        twice = merge_input_mapping(once, overrides, set_default_field=set_default_field)

        assert twice == once
        assert twice.to_json() == once.to_json()


class TestBuildConfigOverrides:
    def test_nothing_supplied_returns_none(self):
        assert build_config_overrides(None) is None
        assert build_config_overrides(InputDefaults()) is None

    def test_environment_is_lifted_into_config(self):
        overrides = build_config_overrides(InputDefaults(environment="staging"))

        assert overrides.config.environment == "staging"


class TestParseInputMapping:
    def test_accepts_camel_case_objects(self):
        mapping = parse_input_mapping({"defaultInput": "hi", "fields": [{"source": "a", "target": "b"}]})

        assert mapping.default_input == "hi"
        assert mapping.fields[0].target == "b"

    def test_none_passes_through(self):
        assert parse_input_mapping(None) is None

    @pytest.mark.parametrize("raw", ["template", 3, ["a"]])
    def test_non_objects_are_rejected(self, raw):
        with pytest.raises(InvalidInputMapping):
            parse_input_mapping(raw)

    def test_extract_is_lenient_where_parse_is_strict(self):
        raw = {"fields": "not-a-list"}

        assert extract_input_mapping(raw) is None
        with pytest.raises(InvalidInputMapping):
            parse_input_mapping(raw)


class TestValidateInputMapping:
    def test_none_is_valid(self):
        assert validate_input_mapping(None).valid

    def test_template_and_field_are_exclusive(self):
        result = validate_input_mapping(InputMapping(template="x", field="y"))

        assert not result.valid
        assert "template" in result.error

    def test_duplicate_targets_are_rejected(self):
        mapping = parse_input_mapping(
            {"fields": [{"source": "a", "target": "t"}, {"source": "b", "target": "t"}]}
        )

        assert not validate_input_mapping(mapping).valid

    @pytest.mark.parametrize("path", ["", "a..b", " "])
    def test_bad_paths_are_rejected(self, path):
        assert not validate_input_mapping(InputMapping(field=path)).valid

    def test_event_triggers_need_an_event_name(self):
        assert not validate_input_mapping(None, TriggerType.EVENT, event_name=" ").valid
        assert validate_input_mapping(None, TriggerType.EVENT, event_name="gmail.message.received").valid
        assert validate_input_mapping(None, TriggerType.WEBHOOK).valid

    def test_blank_environment_is_rejected(self):
        mapping = InputMapping(config=TriggerConfig(environment="  "))

        with pytest.raises(InvalidInputMapping):
            ensure_valid_input_mapping(mapping)


class TestFilters:
    payload = {
        "message": {"subject": "Invoice", "labels": ["INBOX", "IMPORTANT"]},
        "enrichment": {"isInternal": False},
    }

    def test_empty_filter_matches_everything(self):
        assert matches_trigger_filter(self.payload, None)
        assert matches_trigger_filter(self.payload, {})

    def test_equality_and_any_of(self):
        assert matches_trigger_filter(self.payload, {"message.subject": "Invoice"})
        assert matches_trigger_filter(self.payload, {"message.subject": ["Invoice", "Receipt"]})
        assert not matches_trigger_filter(self.payload, {"message.subject": "Receipt"})

    def test_list_values_match_on_intersection(self):
        assert matches_trigger_filter(self.payload, {"message.labels": ["IMPORTANT"]})
        assert not matches_trigger_filter(self.payload, {"message.labels": ["SPAM"]})

    def test_missing_path_does_not_match(self):
        assert not matches_trigger_filter(self.payload, {"message.sender": None})

    def test_false_value_is_compared_not_treated_as_missing(self):
        assert matches_trigger_filter(self.payload, {"enrichment.isInternal": False})


class TestResolveTriggerInput:
    payload = {"message": {"subject": "Quarterly report", "size": 3}, "items": ["a", "b"]}

    def test_template_wins(self):
        mapping = InputMapping(template="Subject: {{ message.subject }} / {{ missing }}")

        assert resolve_trigger_input(self.payload, mapping) == "Subject: Quarterly report / "

    def test_field_then_default_input(self):
        assert resolve_trigger_input(self.payload, InputMapping(field="message.subject")) == (
            "Quarterly report"
        )
        assert resolve_trigger_input(
            self.payload, InputMapping(field="message.absent", default_input="fallback")
        ) == "fallback"

    def test_non_string_field_is_json_encoded(self):
        assert resolve_trigger_input(self.payload, InputMapping(field="items")) == '["a", "b"]'

    def test_defaults_then_fallback_then_payload(self):
        assert resolve_trigger_input(self.payload, None, InputDefaults(input="default")) == "default"
        assert resolve_trigger_input(self.payload, None, fallback="Trigger name") == "Trigger name"
        assert resolve_trigger_input({"a": 1}, None) == '{"a": 1}'

    def test_template_renders_structured_values_as_json(self):
        assert render_template("{{ message }}", {"message": {"b": 1, "a": 2}}) == '{"a": 2, "b": 1}'

    def test_get_path_indexes_lists(self):
        assert get_path(self.payload, "items.1") == "b"
        assert get_path(self.payload, "items.9") is None


class TestMappedContext:
    def test_fields_are_copied_to_targets(self):
        mapping = parse_input_mapping(
            {"fields": [{"source": "message.subject", "target": "subject"}, {"source": "x", "target": "y"}]}
        )

        assert map_payload_fields({"message": {"subject": "Hi"}}, mapping) == {"subject": "Hi"}

    def test_effective_defaults_apply_block_environment(self):
        mapping = InputMapping(
            config=TriggerConfig(defaults=InputDefaults(max_steps=2), environment="prod")
        )

        defaults = effective_defaults(mapping)

        assert defaults.max_steps == 2
        assert defaults.environment == "prod"
        assert effective_defaults(None).is_empty()
