"""Unit tests for core/evaluator.py -- the Condition Evaluator.

Covers:
- Empty groups are false at any depth, for either join operator
- AND / OR combination and nesting
- observation_value_ids membership (operator/value ignored)
- Missing observations never satisfy a leaf
- Operator table: equality, numeric, text, list membership, unknown operators
"""

import pytest

from core.evaluator import compare, evaluate
from core.models import ConditionGroup, JoinOperator, LeafCondition, Observation, Operator


def leaf(type_id="t1", operator=Operator.EQUALS, value=None, value_ids=None) -> LeafCondition:
    return LeafCondition(
        observation_type_id=type_id,
        operator=operator,
        value=value,
        observation_value_ids=tuple(value_ids) if value_ids is not None else None,
    )


def group(join, *children) -> ConditionGroup:
    return ConditionGroup(join_operator=JoinOperator(join), conditions=tuple(children))


TRUE_LEAF = leaf("t1", Operator.EQUALS, "yes")
FALSE_LEAF = leaf("t1", Operator.EQUALS, "no")
OBS = [Observation(observation_type_id="t1", value="yes")]


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


class TestEmptyGroups:
    @pytest.mark.parametrize("join", ["AND", "OR"])
    def test_empty_root_is_false(self, join):
        assert evaluate(group(join), OBS) is False

    @pytest.mark.parametrize("join", ["AND", "OR"])
    def test_empty_nested_group_is_false(self, join):
        """An empty child is false, so AND fails and OR depends on its siblings."""
        tree = group("AND", TRUE_LEAF, group(join))
        assert evaluate(tree, OBS) is False

    def test_deeply_nested_empty_group_is_false(self):
        tree = group("OR", group("AND", group("OR", group("AND"))))
        assert evaluate(tree, OBS) is False

    def test_empty_group_beside_true_leaf_under_or(self):
        assert evaluate(group("OR", group("AND"), TRUE_LEAF), OBS) is True


class TestJoinOperators:
    def test_and_with_true_and_false_is_false(self):
        assert evaluate(group("AND", TRUE_LEAF, FALSE_LEAF), OBS) is False

    def test_or_with_true_and_false_is_true(self):
        assert evaluate(group("OR", TRUE_LEAF, FALSE_LEAF), OBS) is True

    def test_and_all_true(self):
        assert evaluate(group("AND", TRUE_LEAF, TRUE_LEAF), OBS) is True

    def test_or_all_false(self):
        assert evaluate(group("OR", FALSE_LEAF, FALSE_LEAF), OBS) is False

    def test_nested_groups(self):
        """(false or true) and true"""
        tree = group("AND", group("OR", FALSE_LEAF, TRUE_LEAF), TRUE_LEAF)
        assert evaluate(tree, OBS) is True


# ---------------------------------------------------------------------------
# Leaves
# ---------------------------------------------------------------------------


class TestValueIdLeaves:
    def test_member_value_id_matches(self):
        tree = group("AND", leaf("window", value_ids=["A", "B"]))
        obs = [Observation(observation_type_id="window", observation_value_id="A")]
        assert evaluate(tree, obs) is True

    def test_non_member_value_id_does_not_match(self):
        tree = group("AND", leaf("window", value_ids=["A", "B"]))
        obs = [Observation(observation_type_id="window", observation_value_id="C")]
        assert evaluate(tree, obs) is False

    def test_missing_observation_type_is_false(self):
        tree = group("AND", leaf("window", value_ids=["A", "B"]))
        obs = [Observation(observation_type_id="roof", observation_value_id="A")]
        assert evaluate(tree, obs) is False

    def test_operator_and_value_are_ignored(self):
        tree = group("AND", leaf("window", Operator.NOT_EQUALS, value="A", value_ids=["A"]))
        obs = [Observation(observation_type_id="window", observation_value_id="A", value="A")]
        assert evaluate(tree, obs) is True

    def test_observation_without_value_id_does_not_match(self):
        tree = group("AND", leaf("window", value_ids=["A"]))
        obs = [Observation(observation_type_id="window", value="A")]
        assert evaluate(tree, obs) is False

    def test_first_observation_of_type_wins(self):
        tree = group("AND", leaf("window", value_ids=["A"]))
        obs = [
            Observation(observation_type_id="window", observation_value_id="C"),
            Observation(observation_type_id="window", observation_value_id="A"),
        ]
        assert evaluate(tree, obs) is False


class TestValueLeaves:
    def test_leaf_without_value_is_false(self):
        tree = group("AND", leaf("t1", Operator.EQUALS, value=None))
        assert evaluate(tree, OBS) is False

    def test_observation_without_value_is_false(self):
        tree = group("AND", leaf("t1", Operator.EQUALS, value="yes"))
        assert evaluate(tree, [Observation(observation_type_id="t1", observation_value_id="x")]) is False

    def test_no_observations_is_false(self):
        assert evaluate(group("AND", TRUE_LEAF), []) is False

    def test_evaluate_accepts_generator(self):
        assert evaluate(group("AND", TRUE_LEAF), (o for o in OBS)) is True


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


class TestNumericOperators:
    def test_less_than(self):
        assert compare(Operator.LESS_THAN, 5, 10) is True

    def test_greater_than(self):
        assert compare(Operator.GREATER_THAN, 5, 10) is False

    def test_equals_same_number(self):
        assert compare(Operator.EQUALS, 5, 5) is True

    def test_int_equals_float(self):
        assert compare(Operator.EQUALS, 5, 5.0) is True

    @pytest.mark.parametrize(
        "operator,observed,expected,result",
        [
            (Operator.GREATER_THAN_OR_EQUALS, 10, 10, True),
            (Operator.LESS_THAN_OR_EQUALS, 10, 10, True),
            (Operator.GREATER_THAN_OR_EQUALS, 9.9, 10, False),
            (Operator.LESS_THAN, "5.2", "10", True),
            (Operator.GREATER_THAN, "abc", 1, False),
            (Operator.LESS_THAN, "", 1, True),
            (Operator.GREATER_THAN, True, 0, True),
        ],
    )
    def test_coercion(self, operator, observed, expected, result):
        assert compare(operator, observed, expected) is result


class TestEqualityOperators:
    def test_no_cross_type_equality(self):
        assert compare(Operator.EQUALS, "5", 5) is False

    def test_bool_is_not_number(self):
        assert compare(Operator.EQUALS, True, 1) is False

    def test_bool_equality(self):
        assert compare(Operator.EQUALS, True, True) is True

    def test_not_equals(self):
        assert compare(Operator.NOT_EQUALS, "wood", "brick") is True
        assert compare(Operator.NOT_EQUALS, "wood", "wood") is False


class TestTextOperators:
    def test_contains(self):
        assert compare(Operator.CONTAINS, "asphalt shingle", "shingle") is True

    def test_not_contains(self):
        assert compare(Operator.NOT_CONTAINS, "asphalt shingle", "metal") is True

    def test_contains_number_as_text(self):
        assert compare(Operator.CONTAINS, 1995, "99") is True

    def test_in_comma_list(self):
        assert compare(Operator.IN, "hip", "gable,hip,flat") is True

    def test_in_is_exact_item_match(self):
        assert compare(Operator.IN, "hi", "gable,hip") is False

    def test_not_in(self):
        assert compare(Operator.NOT_IN, "mansard", "gable,hip") is True

    def test_in_with_integer_float(self):
        assert compare(Operator.IN, 3.0, "1,2,3") is True

    def test_in_with_bool(self):
        assert compare(Operator.IN, True, "true,yes") is True


def test_unknown_operator_is_false():
    assert compare("BETWEEN", 5, 10) is False
