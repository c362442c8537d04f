"""Tests for single-line step syntax and step parsing."""

import pytest

from core.exceptions import DefinitionError
from workflow.shorthand import compile_pattern, match_shorthand, parse_shorthand

LET = "[ ?${trimmed} trimmed ] [ ${type} ] ${variable} [ = ${value...} ]"
SET_SENSOR = "[ ${sensor.type} ] ${sensor.name} = ${value...}"


@pytest.mark.unit
class TestShorthandMatching:
    def test_let_forms(self):
        assert match_shorthand(LET, "x") == {"variable": "x"}
        assert match_shorthand(LET, "x = 1") == {"variable": "x", "value": "1"}
        assert match_shorthand(LET, "integer count = ${count} + 1 ?? 0") == {
            "type": "integer",
            "variable": "count",
            "value": "${count} + 1 ?? 0",
        }

    def test_flag_and_type(self):
        assert match_shorthand(LET, "trimmed map x = ${out}") == {
            "trimmed": True,
            "type": "map",
            "variable": "x",
            "value": "${out}",
        }

    def test_rest_keeps_spacing(self):
        result = match_shorthand(LET, "msg = hello   there ${name}")
        assert result["value"] == "hello   there ${name}"

    def test_placeholder_with_spaces_is_one_word(self):
        result = match_shorthand(LET, "x = ${a ?? 'b c'}")
        assert result["value"] == "${a ?? 'b c'}"

    def test_quoted_word(self):
        assert match_shorthand("${effector}", '"say hello"') == {"effector": "say hello"}

    def test_nested_binding(self):
        assert match_shorthand(SET_SENSOR, "integer count = 5") == {
            "sensor": {"type": "integer", "name": "count"},
            "value": "5",
        }
        assert match_shorthand(SET_SENSOR, "count = 5") == {"sensor": {"name": "count"}, "value": "5"}

    def test_optional_literal_group(self):
        pattern = "[ message ${message...} ]"
        assert match_shorthand(pattern, "") == {}
        assert match_shorthand(pattern, "message it broke") == {"message": "it broke"}

    def test_no_match(self):
        assert match_shorthand(SET_SENSOR, "count") is None


@pytest.mark.unit
class TestParseShorthand:
    def test_mismatch_raises(self):
        with pytest.raises(DefinitionError, match="does not match"):
            parse_shorthand(SET_SENSOR, "count", "set-sensor")

    def test_type_without_pattern(self):
        assert parse_shorthand(None, "", "no-op") == {}
        with pytest.raises(DefinitionError, match="does not accept shorthand"):
            parse_shorthand(None, "extra words", "no-op")

    def test_unbalanced_pattern(self):
        with pytest.raises(DefinitionError):
            compile_pattern("[ ${a}")


@pytest.mark.unit
class TestStepParsing:
    def test_shorthand_string(self, registry):
        step = registry.parse_step("let integer x = 1")
        assert step.type == "let"
        assert step.input == {"type": "integer", "variable": "x", "value": "1"}

    def test_mapping_with_shorthand_key(self, registry):
        step = registry.parse_step({"s": "set-sensor count = 1", "id": "publish", "require": 0})
        assert step.id == "publish"
        assert step.input == {"sensor": {"name": "count"}, "value": "1", "require": 0}

    def test_explicit_input_wins(self, registry):
        step = registry.parse_step({"type": "log", "message": "outer", "input": {"message": "inner"}})
        assert step.input == {"message": "inner"}

    def test_conflicting_type(self, registry):
        with pytest.raises(DefinitionError, match="conflicts"):
            registry.parse_step({"s": "log hi", "type": "sleep"})

    def test_on_error_handlers_are_parsed(self, registry):
        step = registry.parse_step({"s": "fail", "on-error": "retry limit 3"})
        assert [h.type for h in step.on_error] == ["retry"]
        assert step.on_error[0].input == {"limit": "3"}

    def test_invalid_condition_is_rejected(self, registry):
        with pytest.raises(DefinitionError, match="unknown key"):
            registry.parse_step({"s": "log x", "condition": {"target": "${x}", "bigger": 1}})

    def test_target_only_on_workflow(self, registry):
        with pytest.raises(DefinitionError, match="cannot have a target"):
            registry.parse_step({"s": "log x", "target": "children"})

    def test_concurrency_needs_target(self, registry):
        with pytest.raises(DefinitionError, match="no target"):
            registry.parse_step({"type": "workflow", "steps": [], "concurrency": 2})

    def test_invalid_sleep_duration(self, registry):
        with pytest.raises(DefinitionError, match="Invalid sleep duration"):
            registry.parse_step("sleep soon")

    def test_resolve_step_checks_next(self, registry):
        assert registry.resolve_step({"s": "log x", "next": "later"}, known_ids={"later"}).next == "later"
        with pytest.raises(DefinitionError, match="not a step id"):
            registry.resolve_step({"s": "log x", "next": "later"}, known_ids=set())
