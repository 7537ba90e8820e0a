"""Unit tests for core/models.py -- tree parsing, serialization, time windows."""

from datetime import datetime, timedelta, timezone

import pytest

from core.errors import ValidationError
from core.evaluator import evaluate
from core.models import (
    ConditionGroup,
    JoinOperator,
    LeafCondition,
    Observation,
    Operator,
    Rule,
    ValueType,
    parse_condition_tree,
    parse_timestamp,
    tree_to_dict,
)

# ---------------------------------------------------------------------------
# Condition tree parsing
# ---------------------------------------------------------------------------


class TestParseConditionTree:
    def test_group_and_leaf_are_distinguished(self):
        tree = parse_condition_tree(
            {
                "join_operator": "OR",
                "conditions": [
                    {"observation_type_id": "t1", "operator": "EQUALS", "value_type": "STRING", "value": "x"},
                    {"join_operator": "AND", "conditions": []},
                ],
            }
        )
        assert isinstance(tree, ConditionGroup)
        assert tree.join_operator == JoinOperator.OR
        assert isinstance(tree.conditions[0], LeafCondition)
        assert isinstance(tree.conditions[1], ConditionGroup)

    def test_root_wrapper_is_unwrapped(self):
        tree = parse_condition_tree({"root": {"join_operator": "AND", "conditions": []}, "metadata": {}})
        assert tree == ConditionGroup(join_operator=JoinOperator.AND, conditions=())

    def test_lowercase_enums_accepted(self):
        tree = parse_condition_tree(
            {"join_operator": "and", "conditions": [{"observation_type_id": "t", "operator": "less_than", "value": 3}]}
        )
        assert tree.conditions[0].operator == Operator.LESS_THAN

    def test_leaf_defaults(self):
        tree = parse_condition_tree({"join_operator": "AND", "conditions": [{"observation_type_id": "t"}]})
        assert tree.conditions[0].operator == Operator.EQUALS
        assert tree.conditions[0].value_type == ValueType.ENUM

    def test_list_value_becomes_comma_text(self):
        tree = parse_condition_tree(
            {"join_operator": "AND", "conditions": [{"observation_type_id": "t", "operator": "IN", "value": ["a", "b"]}]}
        )
        assert tree.conditions[0].value == "a,b"

    def test_every_problem_reported(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_condition_tree(
                {
                    "join_operator": "XOR",
                    "conditions": [
                        {"operator": "EQUALS"},
                        {"observation_type_id": "t", "operator": "ROUGHLY"},
                        "not-a-node",
                    ],
                }
            )
        problems = exc_info.value.problems
        assert len(problems) == 4
        assert any("join_operator" in p for p in problems)
        assert any("observation_type_id is required" in p for p in problems)
        assert any("ROUGHLY" in p for p in problems)
        assert any("expected an object" in p for p in problems)

    def test_leaf_at_root_rejected(self):
        with pytest.raises(ValidationError):
            parse_condition_tree({"observation_type_id": "t", "value": 1})

    def test_group_instance_passes_through(self):
        group = ConditionGroup(join_operator=JoinOperator.AND)
        assert parse_condition_tree(group) is group


class TestTreeToDict:
    def test_inverse_of_parse(self):
        data = {
            "join_operator": "AND",
            "conditions": [
                {"observation_type_id": "w", "operator": "IN", "value_type": "ENUM", "observation_value_ids": ["a"]},
                {
                    "join_operator": "OR",
                    "conditions": [
                        {"observation_type_id": "d", "operator": "LESS_THAN", "value_type": "NUMBER", "value": 10},
                    ],
                },
            ],
        }
        assert tree_to_dict(parse_condition_tree(data)) == data


class TestObservation:
    def test_from_dict_requires_type(self):
        with pytest.raises(ValidationError):
            Observation.from_dict({"value": 3})

    def test_numeric_value_id_matches_value_set_leaf(self):
        obs = Observation.from_dict({"observation_type_id": 7, "observation_value_id": 12})
        assert obs.observation_value_id == "12"
        tree = parse_condition_tree(
            {"join_operator": "AND", "conditions": [{"observation_type_id": 7, "observation_value_ids": [12]}]}
        )
        assert evaluate(tree, [obs]) is True

    def test_to_dict_omits_unset_fields(self):
        assert Observation(observation_type_id="t", value=0).to_dict() == {"observation_type_id": "t", "value": 0}


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class TestTimestamps:
    def test_z_suffix(self):
        assert parse_timestamp("2026-01-01T00:00:00Z") == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_timestamp("2026-01-01T00:00:00").tzinfo == timezone.utc

    def test_invalid(self):
        with pytest.raises(ValidationError):
            parse_timestamp("next tuesday")


class TestEffectiveWindow:
    def _rule(self, start, end=None) -> Rule:
        return Rule(
            name="r",
            description="d",
            functional_rule=ConditionGroup(join_operator=JoinOperator.AND),
            effective_from=start.isoformat(),
            effective_to=end.isoformat() if end else None,
        )

    def test_open_ended(self):
        now = datetime.now(timezone.utc)
        rule = self._rule(now - timedelta(days=1))
        assert rule.is_effective_at(now)
        assert rule.is_effective_at(now + timedelta(days=3650))

    def test_start_is_inclusive(self):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert self._rule(start).is_effective_at(start)

    def test_before_start(self):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert not self._rule(start).is_effective_at(start - timedelta(seconds=1))

    def test_end_is_exclusive(self):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        end = datetime(2026, 2, 1, tzinfo=timezone.utc)
        rule = self._rule(start, end)
        assert rule.is_effective_at(end - timedelta(seconds=1))
        assert not rule.is_effective_at(end)

    def test_offsets_compare_as_instants(self):
        rule = self._rule(datetime(2026, 1, 1, tzinfo=timezone.utc))
        # 2025-12-31T23:30-01:00 is 2026-01-01T00:30Z
        assert rule.is_effective_at("2025-12-31T23:30:00-01:00")
