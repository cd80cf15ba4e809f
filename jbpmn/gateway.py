"""Gateway condition evaluation."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from jbpmn.models import WorkflowInstance

log = logging.getLogger(__name__)

_OPERATORS = (">=", "<=", "==", "!=", ">", "<")


class GatewayError(Exception):
    """Raised when a gateway condition cannot be evaluated or resolved."""


def get_nested_value(mapping: Mapping[str, Any], path: str) -> Any:
    """Follow a dotted path through nested mappings; raise KeyError if absent."""
    *parents, last = path.split(".")
    current: Any = mapping
    for part in parents:
        current = current.get(part) if isinstance(current, Mapping) else None
        if not isinstance(current, Mapping):
            raise KeyError(path)
    if last not in current:
        raise KeyError(path)
    return current[last]


def _apply(actual: Any, target: Any, op: str, kind: str) -> bool:
    if op == ">=":
        return actual >= target
    if op == "<=":
        return actual <= target
    if op == "==":
        return actual == target
    if op == ">":
        return actual > target
    if op == "<":
        return actual < target
    if op == "!=":
        return actual != target
    raise GatewayError(f"unsupported {kind} operator: {op}")


def compare_numbers(actual: float, target: float, op: str) -> bool:
    return _apply(float(actual), float(target), op, "numeric")


def compare_strings(actual: str, target: str, op: str) -> bool:
    return _apply(actual, target, op, "string")


def _parse_float(text: str) -> float | None:
    if "_" in text or text != text.strip():
        return None
    try:
        return float(text)
    except ValueError:
        return None


def evaluate_simple_condition(condition: str, context: Mapping[str, Any]) -> bool:
    """Evaluate ``path OP value`` against the context."""
    if not condition:
        raise GatewayError("empty condition string provided")
    op = next((o for o in _OPERATORS if o in condition), None)
    if op is None:
        raise GatewayError(f"unsupported condition format or missing operator: {condition}")
    left, right = condition.split(op, 1)
    path, target_text = left.strip(), right.strip()
    try:
        actual = get_nested_value(context, path)
    except KeyError:
        raise GatewayError(f"variable '{path}' not found in context") from None

    if isinstance(actual, (int, float)) and not isinstance(actual, bool):
        target = _parse_float(target_text)
        if target is None:
            raise GatewayError(
                f"type mismatch: cannot compare number with non-numeric string "
                f"'{target_text}' for variable '{path}'"
            )
        return compare_numbers(actual, target, op)
    if isinstance(actual, str):
        return compare_strings(actual, target_text, op)
    raise GatewayError(
        f"unsupported variable type for comparison: {type(actual).__name__} for variable '{path}'"
    )


def resolve_gateway_conditions(instance: WorkflowInstance) -> tuple[str, str]:
    """Return the next node id and the signal to throw (possibly empty)."""
    node = instance.current_node_def
    conditions = node.conditions if node is not None else []
    if not conditions:
        raise GatewayError(
            f"gateway node {instance.current_node} has no conditions defined "
            f"for instance {instance.id}"
        )
    for condition in conditions:
        if condition.when:
            try:
                met = evaluate_simple_condition(condition.when, instance.context)
            except GatewayError as exc:
                log.warning(
                    "Error evaluating gateway condition '%s' for node %s, instance %s: %s",
                    condition.when, instance.current_node, instance.id, exc,
                )
                continue
        else:
            met = condition.else_
        if met:
            if not condition.next:
                break
            signal = condition.signal.throw if condition.signal is not None else ""
            log.info(
                "Gateway %s (instance %s) resolved next node to: %s",
                instance.current_node, instance.id, condition.next,
            )
            return condition.next, signal
    raise GatewayError(
        f"no matching gateway condition found for node {instance.current_node}, "
        f"instance {instance.id}"
    )