"""Tests for the built-in node executors."""

import asyncio

import pytest
from jinja2.exceptions import SecurityError

from flowrunner.core.context import NodeContext
from flowrunner.core.engine import CancelToken
from flowrunner.core.exceptions import SchemaError, SubflowError
from flowrunner.core.migrations import migrate_node_data
from flowrunner.core.notify import CollectingNotifier
from flowrunner.core.results import Branch, FlowEnd, Iterate, LoopBreak, LoopContinue
from flowrunner.nodes.base import collect_numbered
from flowrunner.nodes.transform import convert_value, get_path


@pytest.fixture
def execute(registry):
    """Run one node's executor directly with the given data and inputs."""

    def _execute(node_type, data=None, inputs=None, variables=None, initial_input=None, notifier=None):
        definition = registry.get(node_type)
        ctx = NodeContext(
            run_id="run",
            node_id="n",
            node_type=node_type,
            data=migrate_node_data(definition, "n", data or {}),
            inputs=inputs or {},
            variables=variables if variables is not None else {},
            notifier=notifier or CollectingNotifier(),
            cancel_token=CancelToken(),
            initial_input=initial_input,
        )
        return asyncio.run(definition.execute(ctx))

    return _execute


class TestTriggers:
    def test_trigger_emits_initial_input(self, execute):
        assert execute("triggerNode", initial_input={"a": 1}) == {"main": {"a": 1}}

    def test_manual_trigger_parses_payload(self, execute):
        assert execute("manualTriggerNode", {"payload": '{"x": [1, 2]}'}) == {"main": {"x": [1, 2]}}

    def test_manual_trigger_rejects_bad_json(self, execute):
        with pytest.raises(SchemaError, match="not valid JSON"):
            execute("manualTriggerNode", {"payload": "{oops"})


class TestValues:
    def test_static_value(self, execute):
        assert execute("stringNode", {"value": "hi"}) == {"value": "hi"}

    def test_connected_value_wins(self, execute):
        assert execute("numberNode", {"value": 1}, inputs={"value": 9}) == {"value": 9}

    def test_boolean_validated(self, execute):
        with pytest.raises(SchemaError):
            execute("booleanNode", {"value": "sometimes"})

    def test_schema_node(self, execute):
        schema = {"type": "object", "required": ["id"]}
        assert execute("schemaNode", {"jsonSchema": schema}) == {"schema": schema}

    def test_invalid_schema_rejected(self, execute):
        with pytest.raises(SchemaError, match="invalid JSON schema"):
            execute("schemaNode", {"jsonSchema": {"type": 5}})


class TestLogic:
    def test_if_returns_branch(self, execute):
        data = {"_version": 2, "conditions": [{"id": "pos", "expression": "input > 0"}]}
        assert execute("ifNode", data, inputs={"main": 3}) == Branch("pos", 3)
        assert execute("ifNode", data, inputs={"main": -3}) == Branch("false", -3)

    def test_if_without_conditions_takes_false(self, execute):
        assert execute("ifNode", {"_version": 2, "conditions": []}, inputs={"main": 1}) == Branch("false", 1)

    def test_for_each_returns_iterate(self, execute):
        assert execute("forEachNode", inputs={"array": (1, 2)}) == Iterate([1, 2])

    def test_for_each_rejects_non_array(self, execute):
        with pytest.raises(TypeError, match="must be an array"):
            execute("forEachNode", inputs={"array": {"a": 1}})

    def test_signals(self, execute):
        assert execute("breakLoopNode") == LoopBreak()
        assert execute("continueLoopNode") == LoopContinue()
        assert execute("endNode") == FlowEnd()


class TestMath:
    @pytest.mark.parametrize(
        "operation, a, b, expected",
        [
            ("add", 2, 3, 5),
            ("subtract", 2, 3, -1),
            ("multiply", 2, 3, 6),
            ("divide", 3, 2, 1.5),
            ("modulo", 7, 3, 1),
            ("power", 2, 3, 8),
        ],
    )
    def test_operations(self, execute, operation, a, b, expected):
        assert execute("mathNode", {"operation": operation, "a": a, "b": b}) == {"result": expected}

    def test_inputs_override_data(self, execute):
        assert execute("mathNode", {"a": 1, "b": 1}, inputs={"a": 10, "operation": "multiply"}) == {"result": 10}

    def test_non_numbers_rejected(self, execute):
        with pytest.raises(TypeError):
            execute("mathNode", inputs={"a": "1", "b": 2})
        with pytest.raises(TypeError):
            execute("mathNode", inputs={"a": True, "b": 2})

    def test_modulo_by_zero(self, execute):
        with pytest.raises(ZeroDivisionError):
            execute("mathNode", {"operation": "modulo", "a": 1, "b": 0})

    def test_unknown_operation_from_input(self, execute):
        with pytest.raises(ValueError, match="Unknown math operation"):
            execute("mathNode", inputs={"operation": "sqrt"})


class TestStringTools:
    def test_merge_numbered_inputs(self, execute):
        result = execute(
            "stringToolsNode",
            {"operation": "merge", "delimiter": "-", "inputCount": 3},
            inputs={"string_1": "b", "string_0": "a", "string_2": None},
        )
        assert result == {"result": "a-b"}

    @pytest.mark.parametrize(
        "data, text, expected",
        [
            ({"operation": "split", "delimiter": ","}, "a,b", ["a", "b"]),
            ({"operation": "split"}, "ab", ["a", "b"]),
            ({"operation": "upper"}, "ab", "AB"),
            ({"operation": "lower"}, "AB", "ab"),
            ({"operation": "trim"}, "  ab ", "ab"),
            ({"operation": "replace", "searchValue": "a", "replaceValue": "x"}, "aaa", "xaa"),
            ({"operation": "replace_all", "searchValue": "a", "replaceValue": "x"}, "aaa", "xxx"),
            ({"operation": "slice", "index": 1, "count": 2}, "abcd", "bc"),
            ({"operation": "slice", "index": 2}, "abcd", "cd"),
            ({"operation": "length"}, "abcd", 4),
            ({"operation": "starts_with", "searchValue": "ab"}, "abcd", True),
            ({"operation": "ends_with", "searchValue": "ab"}, "abcd", False),
        ],
    )
    def test_operations(self, execute, data, text, expected):
        assert execute("stringToolsNode", data, inputs={"string": text}) == {"result": expected}

    def test_join(self, execute):
        result = execute("stringToolsNode", {"operation": "join", "delimiter": "+"}, inputs={"array": [1, 2]})
        assert result == {"result": "1+2"}

    def test_join_requires_array(self, execute):
        with pytest.raises(TypeError):
            execute("stringToolsNode", {"operation": "join"}, inputs={"array": "12"})


class TestArrayTools:
    def test_get(self, execute):
        assert execute("arrayToolsNode", {"operation": "get", "index": -1}, inputs={"array": [1, 2]}) == {"result": 2}

    def test_get_out_of_range(self, execute):
        with pytest.raises(IndexError):
            execute("arrayToolsNode", {"operation": "get", "index": 5}, inputs={"array": [1]})

    def test_push_does_not_mutate_input(self, execute):
        original = [1, 2]
        result = execute("arrayToolsNode", {"operation": "push", "value": 3}, inputs={"array": original})
        assert result["result"] == [1, 2, 3]
        assert original == [1, 2]

    def test_push_requires_value(self, execute):
        with pytest.raises(ValueError):
            execute("arrayToolsNode", {"operation": "push"}, inputs={"array": []})

    def test_pop_and_shift(self, execute):
        popped = execute("arrayToolsNode", {"operation": "pop"}, inputs={"array": [1, 2, 3]})
        assert popped == {"result": 3, "item": 3, "array": [1, 2]}
        shifted = execute("arrayToolsNode", {"operation": "shift"}, inputs={"array": [1, 2, 3]})
        assert shifted["item"] == 1
        assert shifted["array"] == [2, 3]

    def test_pop_empty(self, execute):
        assert execute("arrayToolsNode", {"operation": "pop"}, inputs={"array": []})["item"] is None

    @pytest.mark.parametrize(
        "operation, expected",
        [
            ("length", 4),
            ("reverse", [2, 1, 3, 3]),
            ("sort", [1, 2, 3, 3]),
            ("unique", [3, 1, 2]),
        ],
    )
    def test_operations(self, execute, operation, expected):
        result = execute("arrayToolsNode", {"operation": operation}, inputs={"array": [3, 3, 1, 2]})
        assert result == {"result": expected}

    def test_slice(self, execute):
        result = execute("arrayToolsNode", {"operation": "slice", "index": 1, "endIndex": 3}, inputs={"array": [0, 1, 2, 3]})
        assert result == {"result": [1, 2]}

    def test_includes(self, execute):
        assert execute("arrayToolsNode", {"operation": "includes", "value": 2}, inputs={"array": [1, 2]}) == {"result": True}

    def test_sort_mixed_types(self, execute):
        with pytest.raises(TypeError, match="cannot be compared"):
            execute("arrayToolsNode", {"operation": "sort"}, inputs={"array": [1, "a"]})

    def test_missing_array(self, execute):
        with pytest.raises(TypeError):
            execute("arrayToolsNode", {"operation": "length"})


class TestObjects:
    def test_merge_objects_later_wins(self, execute):
        result = execute(
            "mergeObjectsNode",
            {"inputCount": 3},
            inputs={"object_0": {"a": 1, "b": 1}, "object_1": "ignored", "object_2": {"b": 2}},
        )
        assert result == {"result": {"a": 1, "b": 2}}

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("user.name", "ada"),
            ("user.tags[0]", "x"),
            ("user.tags[-1]", "y"),
            ("user.tags[5]", None),
            ("user.missing.deeper", None),
            ("user.name.first", None),
        ],
    )
    def test_get_path(self, path, expected):
        obj = {"user": {"name": "ada", "tags": ["x", "y"]}}
        assert get_path(obj, path) == expected

    def test_get_property(self, execute):
        result = execute("getPropertyNode", {"path": "a.b"}, inputs={"object": {"a": {"b": 5}}})
        assert result == {"value": 5}

    def test_get_property_requires_path(self, execute):
        with pytest.raises(ValueError, match="path is required"):
            execute("getPropertyNode", inputs={"object": {}})

    def test_get_property_requires_object(self, execute):
        with pytest.raises(TypeError):
            execute("getPropertyNode", {"path": "a"}, inputs={"object": 3})


class TestTypeConverter:
    @pytest.mark.parametrize(
        "value, target, expected",
        [
            (None, "string", ""),
            (None, "array", []),
            (12, "string", "12"),
            ({"a": 1}, "string", '{\n  "a": 1\n}'),
            ("3.0", "number", 3),
            ("2.5", "number", 2.5),
            (True, "number", 1),
            ("false", "boolean", False),
            ("yes", "boolean", True),
            (0, "boolean", False),
            ('{"a": 1}', "object", {"a": 1}),
            ("[1]", "array", [1]),
        ],
    )
    def test_convert_value(self, value, target, expected):
        assert convert_value(value, target) == expected

    def test_invalid_number(self):
        with pytest.raises(ValueError, match="cannot be converted"):
            convert_value("abc", "number")

    def test_wrong_json_shape(self):
        with pytest.raises(ValueError, match="not an object"):
            convert_value("[1]", "object")

    def test_executor(self, execute):
        assert execute("typeConverterNode", {"targetType": "number"}, inputs={"value": "7"}) == {"result": 7}


class TestTemplate:
    def test_render_input_and_variables(self, execute):
        result = execute(
            "templateNode",
            {"template": "{{ variables.greeting }}, {{ input }}!"},
            inputs={"main": "world"},
            variables={"greeting": "Hello"},
        )
        assert result == {"result": "Hello, world!"}

    def test_context_input(self, execute):
        result = execute("templateNode", {"template": "{{ name }}"}, inputs={"context": {"name": "ada"}})
        assert result == {"result": "ada"}

    def test_syntax_error_rejected_at_load(self, execute):
        with pytest.raises(SchemaError, match="template syntax error"):
            execute("templateNode", {"template": "{% if %}"})

    def test_sandbox_blocks_internals(self, execute):
        with pytest.raises(SecurityError):
            execute("templateNode", {"template": "{{ input.__class__ }}"}, inputs={"main": "x"})


class TestVariables:
    def test_set_uses_value_input(self, execute):
        variables = {}
        execute("setFlowVariableNode", {"variableName": "v"}, inputs={"main": 1, "value": 2}, variables=variables)
        assert variables == {"v": 2}

    def test_set_falls_back_to_main(self, execute):
        variables = {}
        execute("setFlowVariableNode", {"variableName": "v"}, inputs={"main": 1}, variables=variables)
        assert variables == {"v": 1}

    def test_set_requires_name(self, execute):
        with pytest.raises(ValueError, match="name is required"):
            execute("setFlowVariableNode", inputs={"main": 1})

    def test_get(self, execute):
        assert execute("getFlowVariableNode", {"variableName": "v"}, variables={"v": 3}) == {"value": 3}

    def test_get_missing(self, execute):
        with pytest.raises(KeyError):
            execute("getFlowVariableNode", {"variableName": "v"})

    def test_get_validates_against_schema(self, execute):
        schema = {"type": "string"}
        assert execute(
            "getFlowVariableNode", {"variableName": "v"}, inputs={"schema": schema}, variables={"v": "ok"}
        ) == {"value": "ok"}
        with pytest.raises(ValueError, match="failed schema validation"):
            execute("getFlowVariableNode", {"variableName": "v"}, inputs={"schema": schema}, variables={"v": 3})


class TestUtility:
    def test_log_passes_through(self, execute, caplog):
        with caplog.at_level("INFO", logger="flowrunner.nodes.utility"):
            result = execute("logNode", {"_version": 2, "prefix": "got: "}, inputs={"main": [1]})
        assert result == {"main": [1]}
        assert "got: [1]" in caplog.text

    def test_notification_message(self, execute):
        notifier = CollectingNotifier()
        execute("notificationNode", {"message": "done", "level": "success"}, notifier=notifier)
        assert notifier.messages == [("success", "done", "user")]

    def test_notification_falls_back_to_main(self, execute):
        notifier = CollectingNotifier()
        execute("notificationNode", inputs={"main": 42}, notifier=notifier)
        assert notifier.messages == [("info", "42", "user")]


class TestRunFlow:
    """Tests for the runFlowNode executor outside an engine."""

    def test_flow_id_required(self, execute):
        with pytest.raises(ValueError, match="flow to run is required"):
            execute("runFlowNode")

    def test_parameters_must_be_json(self, execute):
        with pytest.raises(ValueError, match="invalid JSON in parameters"):
            execute("runFlowNode", {"flowId": "child", "parameters": "{nope"})

    def test_needs_an_engine(self, execute):
        with pytest.raises(SubflowError, match="cannot be run"):
            execute("runFlowNode", {"flowId": "child"})


class TestHelpers:
    def test_collect_numbered_orders_numerically(self):
        inputs = {"string_10": "c", "string_2": "b", "string_0": "a", "other": "x", None: "y"}
        assert collect_numbered(inputs, "string_") == ["a", "b", "c"]
