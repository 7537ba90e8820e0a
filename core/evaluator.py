"""
core/evaluator.py -- Condition Evaluator: (condition tree, observations) -> bool.

Pure and deterministic. No storage access, no logging, no clock. Everything
that needs a rule judged (assessment processing, rule reconciliation, dry
runs) funnels through evaluate().

Semantics:
  - A group with no conditions is false, at any depth, whatever its join.
  - AND is true iff every child is true; OR iff at least one is.
  - A leaf whose observation type is absent is false.
  - A leaf with observation_value_ids matches on catalog value membership
    and ignores operator/value.
  - Otherwise operator/value apply only when both sides carry a value.
"""

from __future__ import annotations

from typing import Iterable, Optional

from core.models import Condition, ConditionGroup, JoinOperator, LeafCondition, Observation, Operator, Scalar


def evaluate(tree: Condition, observations: Iterable[Observation]) -> bool:
    """Return True if the condition tree triggers for this observation set."""
    obs = list(observations)
    if isinstance(tree, ConditionGroup):
        return _evaluate_group(tree, obs)
    return _evaluate_leaf(tree, obs)


def _evaluate_group(group: ConditionGroup, observations: list[Observation]) -> bool:
    if not group.conditions:
        return False
    results = (
        _evaluate_group(child, observations)
        if isinstance(child, ConditionGroup)
        else _evaluate_leaf(child, observations)
        for child in group.conditions
    )
    if group.join_operator == JoinOperator.AND:
        return all(results)
    if group.join_operator == JoinOperator.OR:
        return any(results)
    return False


def _find_observation(type_id: str, observations: list[Observation]) -> Optional[Observation]:
    # First observation of the type wins.
    for obs in observations:
        if obs.observation_type_id == type_id:
            return obs
    return None


def _evaluate_leaf(leaf: LeafCondition, observations: list[Observation]) -> bool:
    observation = _find_observation(leaf.observation_type_id, observations)
    if observation is None:
        return False

    if leaf.observation_value_ids is not None:
        return (observation.observation_value_id or "") in leaf.observation_value_ids

    if leaf.value is not None and observation.value is not None:
        return compare(leaf.operator, observation.value, leaf.value)

    return False


def compare(operator: Operator, observed: Scalar, expected: Scalar) -> bool:
    """Apply a comparison operator. Unknown operators and uncoercible numbers are false."""
    op = operator.value if isinstance(operator, Operator) else str(operator)

    if op == "EQUALS":
        return _strict_equal(observed, expected)
    if op == "NOT_EQUALS":
        return not _strict_equal(observed, expected)

    if op in _NUMERIC_OPS:
        left, right = _to_number(observed), _to_number(expected)
        if left is None or right is None:
            return False
        return _NUMERIC_OPS[op](left, right)

    if op == "CONTAINS":
        return _to_text(expected) in _to_text(observed)
    if op == "NOT_CONTAINS":
        return _to_text(expected) not in _to_text(observed)
    if op == "IN":
        return _to_text(observed) in _to_text(expected).split(",")
    if op == "NOT_IN":
        return _to_text(observed) not in _to_text(expected).split(",")

    return False


_NUMERIC_OPS = {
    "GREATER_THAN": lambda a, b: a > b,
    "LESS_THAN": lambda a, b: a < b,
    "GREATER_THAN_OR_EQUALS": lambda a, b: a >= b,
    "LESS_THAN_OR_EQUALS": lambda a, b: a <= b,
}


def _strict_equal(a: Scalar, b: Scalar) -> bool:
    """Equality without cross-type coercion: "5" != 5 and True != 1."""
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    return type(a) is type(b) and a == b


def _to_number(value: Scalar) -> Optional[float]:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        return None


def _to_text(value: Scalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
