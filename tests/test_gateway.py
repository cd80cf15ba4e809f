import pytest

from jbpmn.gateway import (
    GatewayError,
    compare_numbers,
    compare_strings,
    evaluate_simple_condition,
    get_nested_value,
    resolve_gateway_conditions,
)
from jbpmn.models import GatewayCondition, SignalConfig, WorkflowInstance, WorkflowNode


def make_instance(conditions, context):
    node = WorkflowNode(id="gw", type="gateway", conditions=conditions)
    return WorkflowInstance(id="i1", workflow_id="w", current_node="gw", context=context, current_node_def=node)


def test_get_nested_value():
    assert get_nested_value({"a": {"b": 5}}, "a.b") == 5
    with pytest.raises(KeyError):
        get_nested_value({"a": 1}, "a.b")


def test_compare_numbers_and_strings():
    assert compare_numbers(5, 3, ">") is True
    assert compare_numbers(5, 5, "!=") is False
    assert compare_strings("abc", "abd", "<") is True
    with pytest.raises(GatewayError):
        compare_numbers(1, 2, "=~")


def test_evaluate_numeric_condition():
    assert evaluate_simple_condition("user.age >= 18", {"user": {"age": 21}}) is True
    assert evaluate_simple_condition("age < 18", {"age": 21}) is False


def test_evaluate_string_condition():
    assert evaluate_simple_condition("status == ok", {"status": "ok"}) is True


def test_evaluate_errors():
    with pytest.raises(GatewayError):
        evaluate_simple_condition("", {})
    with pytest.raises(GatewayError):
        evaluate_simple_condition("age", {"age": 1})
    with pytest.raises(GatewayError):
        evaluate_simple_condition("missing > 1", {})
    with pytest.raises(GatewayError):
        evaluate_simple_condition("age > old", {"age": 3})


def test_resolve_first_match_with_signal():
    conditions = [
        GatewayCondition(when="age >= 18", next="adult", signal=SignalConfig(throw="grown")),
        GatewayCondition(else_=True, next="minor"),
    ]
    assert resolve_gateway_conditions(make_instance(conditions, {"age": 30})) == ("adult", "grown")
    assert resolve_gateway_conditions(make_instance(conditions, {"age": 3})) == ("minor", "")


def test_resolve_skips_failing_condition():
    conditions = [GatewayCondition(when="missing > 1", next="x"), GatewayCondition(else_=True, next="y")]
    assert resolve_gateway_conditions(make_instance(conditions, {})) == ("y", "")


def test_resolve_errors():
    with pytest.raises(GatewayError):
        resolve_gateway_conditions(make_instance([], {}))
    with pytest.raises(GatewayError):
        resolve_gateway_conditions(make_instance([GatewayCondition(when="a > 5", next="x")], {"a": 1}))