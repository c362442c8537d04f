"""Tests for placeholder resolution, value expressions and type coercion."""

import asyncio

import pytest
from pydantic import ValidationError

from core.exceptions import StepExecutionFailure, UnresolvableExpression
from entities.basic import BasicEntity
from workflow.expressions import (
    EntityLayer,
    ExpressionResolver,
    LazyMappingLayer,
    MappingLayer,
    Scope,
    coerce,
    has_placeholders,
    render_text,
    split_template,
)


def make_resolver(values: dict, entity=None, settings=None) -> ExpressionResolver:
    layers = [MappingLayer(values)]
    if entity is not None:
        layers.append(LazyMappingLayer({"entity": lambda: entity}))
        layers.append(EntityLayer(entity))
    return ExpressionResolver(Scope(layers), settings)


# ─── Templates ───

@pytest.mark.unit
class TestTemplates:
    @pytest.mark.asyncio
    async def test_whole_placeholder_keeps_type(self):
        resolver = make_resolver({"items": [1, 2]})
        assert await resolver.resolve("${items}") == [1, 2]

    @pytest.mark.asyncio
    async def test_interpolation_renders_text(self):
        resolver = make_resolver({"n": 3, "ok": True, "m": {"a": 1}})
        assert await resolver.resolve("n=${n} ok=${ok} m=${m}") == 'n=3 ok=true m={"a": 1}'

    @pytest.mark.asyncio
    async def test_plain_text_passthrough(self):
        resolver = make_resolver({})
        assert await resolver.resolve("plain text") == "plain text"

    @pytest.mark.asyncio
    async def test_nested_structures(self):
        resolver = make_resolver({"name": "web", "port": 80})
        result = await resolver.resolve({"${name}": ["${port}", {"host": "${name}.local"}]})
        assert result == {"web": [80, {"host": "web.local"}]}

    @pytest.mark.asyncio
    async def test_paths_and_indexes(self):
        resolver = make_resolver({"data": {"list": [{"v": "a"}, {"v": "b"}], "a key": 7}})
        assert await resolver.resolve("${data.list[1].v}") == "b"
        assert await resolver.resolve("${data.list.0.v}") == "a"
        assert await resolver.resolve('${data["a key"]}') == 7

    @pytest.mark.asyncio
    async def test_dotted_key_is_reachable(self):
        resolver = make_resolver({"m": {"a.b": 1}})
        assert await resolver.resolve("${m.a.b}") == 1

    @pytest.mark.asyncio
    async def test_missing_value_raises(self):
        resolver = make_resolver({})
        with pytest.raises(UnresolvableExpression, match="missing"):
            await resolver.resolve("${missing}")

    @pytest.mark.asyncio
    async def test_null_in_text_raises(self):
        resolver = make_resolver({"x": None})
        assert await resolver.resolve("${x}") is None
        with pytest.raises(UnresolvableExpression):
            await resolver.resolve("value ${x}")

    @pytest.mark.asyncio
    async def test_default_operator(self):
        resolver = make_resolver({"x": None})
        assert await resolver.resolve("${missing ?? 'none'}") == "none"
        assert await resolver.resolve("${x ?? 5}") == 5

    @pytest.mark.asyncio
    async def test_placeholder_arithmetic(self):
        resolver = make_resolver({"a": 6, "b": "2"})
        assert await resolver.resolve("${a * (b + 1)}") == 18
        assert await resolver.resolve("${a / b}") == 3
        assert await resolver.resolve("${-a + 1}") == -5

    @pytest.mark.asyncio
    async def test_division_by_zero(self):
        resolver = make_resolver({"a": 1})
        with pytest.raises(StepExecutionFailure, match="Division by zero"):
            await resolver.resolve("${a / 0}")

    @pytest.mark.asyncio
    async def test_plus_concatenates_text(self):
        resolver = make_resolver({"name": "web"})
        assert await resolver.resolve("${name + '-' + 1}") == "web-1"

    @pytest.mark.asyncio
    async def test_unterminated_placeholder(self):
        resolver = make_resolver({})
        with pytest.raises(UnresolvableExpression, match="unterminated"):
            await resolver.resolve("${oops")

    def test_split_template(self):
        assert split_template("a ${b} c") == ((False, "a "), (True, "b"), (False, " c"))

    def test_has_placeholders(self):
        assert has_placeholders({"k": ["x", "${y}"]})
        assert not has_placeholders({"k": [1, "x"]})


# ─── Value expressions ───

@pytest.mark.unit
class TestValueExpressions:
    @pytest.mark.asyncio
    async def test_operators_outside_placeholders(self):
        resolver = make_resolver({"x": 4})
        assert await resolver.evaluate("${x} + 1 ?? 0") == 5
        assert await resolver.evaluate("(${x} - 1) * 2") == 6

    @pytest.mark.asyncio
    async def test_default_when_missing(self):
        resolver = make_resolver({})
        assert await resolver.evaluate("${x} + 1 ?? 0") == 0

    @pytest.mark.asyncio
    async def test_number_literal(self):
        resolver = make_resolver({})
        assert await resolver.evaluate("42") == 42
        assert await resolver.evaluate("1.5") == 1.5

    @pytest.mark.asyncio
    async def test_text_falls_back_to_template(self):
        resolver = make_resolver({"who": "bob"})
        assert await resolver.evaluate("hi ${who}") == "hi bob"

    @pytest.mark.asyncio
    async def test_unresolvable_without_default(self):
        resolver = make_resolver({})
        with pytest.raises(UnresolvableExpression):
            await resolver.evaluate("${x} + 1")


# ─── Entities ───

@pytest.mark.unit
class TestEntityModel:
    @pytest.mark.asyncio
    async def test_sensor_config_and_hierarchy(self):
        app = BasicEntity("app", entity_id="app", config={"region": "eu"})
        child = app.add_child("child", entity_id="child", attributes={"host": "h1"})
        resolver = make_resolver({}, entity=child)

        assert await resolver.resolve("${entity.sensor.host}") == "h1"
        assert await resolver.resolve("${entity.config.region}") == "eu"
        assert await resolver.resolve("${entity.parent.id}") == "app"
        assert await resolver.resolve("${entity.application.name}") == "app"
        assert await resolver.resolve("${host}") == "h1"

    @pytest.mark.asyncio
    async def test_entity_renders_as_id(self):
        child = BasicEntity("c", entity_id="c1")
        resolver = make_resolver({}, entity=child)
        assert await resolver.resolve("on ${entity}") == "on c1"

    @pytest.mark.asyncio
    async def test_sensor_absent_without_wait(self):
        entity = BasicEntity("e")
        resolver = make_resolver({}, entity=entity)
        with pytest.raises(UnresolvableExpression):
            await resolver.resolve("${entity.sensor.missing}")

    @pytest.mark.asyncio
    async def test_attribute_when_ready_waits(self):
        entity = BasicEntity("e")
        resolver = make_resolver({}, entity=entity, settings={"ready_timeout": 1.0})

        async def publish():
            await asyncio.sleep(0.01)
            entity.set_attribute("late", "value")

        asyncio.ensure_future(publish())
        assert await resolver.resolve("${entity.attributeWhenReady.late}") == "value"

    @pytest.mark.asyncio
    async def test_attribute_when_ready_times_out(self):
        entity = BasicEntity("e")
        resolver = make_resolver({}, entity=entity, settings={"ready_timeout": 0.01})
        with pytest.raises(UnresolvableExpression, match="not ready"):
            await resolver.resolve("${entity.attributeWhenReady.never}")


# ─── Coercion ───

@pytest.mark.unit
class TestCoerce:
    def test_scalars(self):
        assert coerce("5", "integer") == 5
        assert coerce("2.5", "double") == 2.5
        assert coerce("yes", "boolean") is True
        assert coerce(7, "string") == "7"

    def test_yaml_text_to_map(self):
        assert coerce("a: 1\nb: [x, y]", "map") == {"a": 1, "b": ["x", "y"]}

    def test_trim(self):
        assert coerce("  padded  ", "string", trim=True) == "padded"

    def test_none_passes_through(self):
        assert coerce(None, "integer") is None

    def test_unknown_type(self):
        with pytest.raises(StepExecutionFailure, match="Unknown type"):
            coerce("x", "gizmo")

    def test_invalid_value(self):
        with pytest.raises(ValidationError):
            coerce("abc", "integer")

    def test_render_text(self):
        assert render_text(False) == "false"
        assert render_text([1, "a"]) == '[1, "a"]'
