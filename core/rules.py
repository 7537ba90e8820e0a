"""
core/rules.py -- Rule Manager.

Owns the rule lifecycle:

  create_rule          -- validate every catalog reference, then a single insert
  update_rule          -- reconcile existing vulnerabilities against the patched
                          tree, then write the rule
  delete_rule          -- remove the rule record (vulnerabilities are left as is)
  test_rule            -- non-persisting dry run over supplied observation sets
  preview_rule_update  -- how many vulnerabilities an edit would remove
  render_human_readable -- the rule's logic as a sentence

The guarantee update_rule provides: after an edit, no vulnerability produced
by the rule survives if its original observations no longer trigger the new
tree. Reconciliation happens before the rule record is written.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Union

from core.errors import NotFoundError, PersistenceError, ValidationError
from core.evaluator import evaluate
from core.gateway import StorageGateway
from core.locks import RuleLocks
from core.models import (
    ConditionGroup,
    ItemFailure,
    LeafCondition,
    Observation,
    Operator,
    Rule,
    RuleTestResult,
    RuleUpdatePreview,
    RuleUpdateResult,
    Scalar,
    iter_leaves,
    now_iso,
    parse_condition_tree,
    parse_timestamp,
)
from core.vulnerabilities import VulnerabilityManager

logger = logging.getLogger("riskrules.rules")

_OPERATOR_PHRASES: dict[Operator, str] = {
    Operator.EQUALS: "equals",
    Operator.NOT_EQUALS: "does not equal",
    Operator.GREATER_THAN: "is greater than",
    Operator.LESS_THAN: "is less than",
    Operator.GREATER_THAN_OR_EQUALS: "is greater than or equal to",
    Operator.LESS_THAN_OR_EQUALS: "is less than or equal to",
    Operator.CONTAINS: "contains",
    Operator.NOT_CONTAINS: "does not contain",
    Operator.IN: "is in",
    Operator.NOT_IN: "is not in",
}

# Fields a caller may change through update_rule. id and version are owned by the store.
_PATCHABLE_FIELDS = {"name", "description", "functional_rule", "effective_from", "effective_to", "is_active"}

TreeInput = Union[ConditionGroup, dict]


class RuleManager:
    def __init__(
        self,
        store: StorageGateway,
        vulnerabilities: VulnerabilityManager,
        locks: Optional[RuleLocks] = None,
    ) -> None:
        self.store = store
        self.vulnerabilities = vulnerabilities
        self.locks = locks or RuleLocks()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_rule(self, rule_id: str) -> Rule:
        rule = self.store.get_rule(rule_id)
        if rule is None:
            raise NotFoundError("rule", rule_id)
        return rule

    def list_rules(self) -> list[Rule]:
        return self.store.list_rules()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_rule_tree(self, tree: TreeInput) -> ConditionGroup:
        """Parse the tree and check every catalog reference in it.

        Every leaf's observation type must exist, and every observation value a
        leaf names must exist and belong to that leaf's type. All problems are
        collected into a single ValidationError.
        """
        group = parse_condition_tree(tree)
        leaves = list(iter_leaves(group))
        problems: list[str] = []

        type_ids = sorted({leaf.observation_type_id for leaf in leaves})
        found_types = {t.id for t in self.store.get_observation_types(type_ids)} if type_ids else set()
        missing_types = [tid for tid in type_ids if tid not in found_types]
        if missing_types:
            problems.append(f"Invalid observation types: {', '.join(missing_types)}")

        value_ids = sorted({vid for leaf in leaves for vid in (leaf.observation_value_ids or ())})
        if value_ids:
            value_to_type = {v.id: v.observation_type_id for v in self.store.get_observation_values(value_ids)}
            missing_values = [vid for vid in value_ids if vid not in value_to_type]
            if missing_values:
                problems.append(f"Invalid observation values: {', '.join(missing_values)}")
            for leaf in leaves:
                for vid in leaf.observation_value_ids or ():
                    owner = value_to_type.get(vid)
                    if owner is not None and owner != leaf.observation_type_id:
                        problems.append(
                            f"Observation value {vid} does not belong to observation type {leaf.observation_type_id}"
                        )

        if problems:
            raise ValidationError("Invalid rule definition", problems)
        return group

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_rule(
        self,
        name: str,
        description: str,
        functional_rule: TreeInput,
        effective_from: Optional[str] = None,
        effective_to: Optional[str] = None,
        is_active: bool = True,
    ) -> Rule:
        """Validate the rule completely, then insert it once."""
        problems: list[str] = []
        if not name or not name.strip():
            problems.append("name is required")
        if not description or not description.strip():
            problems.append("description is required")
        effective_from, effective_to = _check_window(effective_from or now_iso(), effective_to, problems)
        if problems:
            raise ValidationError("Invalid rule definition", problems)

        group = self.validate_rule_tree(functional_rule)
        rule = self.store.create_rule(
            Rule(
                name=name.strip(),
                description=description.strip(),
                functional_rule=group,
                effective_from=effective_from,
                effective_to=effective_to,
                is_active=is_active,
            )
        )
        logger.info("Rule %s created (%s)", rule.id, rule.name)
        return rule

    def update_rule(self, rule_id: str, patch: dict[str, Any]) -> RuleUpdateResult:
        """Apply a patch to a rule after reconciling its vulnerabilities.

        Each vulnerability the rule produced is re-judged against the patched
        tree using its originating assessment's observations; those that no
        longer trigger are deleted. Vulnerabilities without recorded
        observations are skipped. The rule record is written last.
        """
        unknown = sorted(set(patch) - _PATCHABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown rule fields: {', '.join(unknown)}")

        fields = dict(patch)
        problems: list[str] = []
        for key in ("name", "description"):
            if key in fields and (not fields[key] or not str(fields[key]).strip()):
                problems.append(f"{key} must not be empty")
        if "is_active" in fields and not isinstance(fields["is_active"], bool):
            problems.append("is_active must be true or false")
        if "functional_rule" in fields and fields["functional_rule"] is None:
            problems.append("functional_rule must not be null")

        with self.locks.hold(rule_id):
            current = self.get_rule(rule_id)

            if "effective_from" in fields or "effective_to" in fields:
                start = fields.get("effective_from", current.effective_from) or current.effective_from
                end = fields["effective_to"] if "effective_to" in fields else current.effective_to
                fields["effective_from"], fields["effective_to"] = _check_window(start, end, problems)
            if problems:
                raise ValidationError("Invalid rule update", problems)

            tree = current.functional_rule
            if "functional_rule" in fields:
                tree = self.validate_rule_tree(fields["functional_rule"])
                fields["functional_rule"] = tree

            removed = 0
            errors: list[ItemFailure] = []
            for vuln in self.store.list_vulnerabilities_for_rule(rule_id):
                try:
                    observations = self.vulnerabilities.get_observations_for(vuln)
                    if not observations:
                        continue
                    if evaluate(tree, observations):
                        continue
                    if self.store.delete_vulnerability(vuln.id):
                        removed += 1
                except PersistenceError as exc:
                    logger.error("Reconciling vulnerability %s for rule %s failed: %s", vuln.id, rule_id, exc)
                    errors.append(ItemFailure(item_id=vuln.id, message=str(exc)))

            updated = self.store.update_rule(rule_id, fields, expected_version=current.version)
            if updated is None:
                raise ValidationError(f"Rule {rule_id} was modified concurrently; retry the update")

        logger.info("Rule %s updated to version %d, %d vulnerabilities removed", rule_id, updated.version, removed)
        return RuleUpdateResult(rule=updated, vulnerabilities_removed=removed, errors=errors)

    def delete_rule(self, rule_id: str) -> None:
        """Remove the rule record. Its vulnerabilities keep their dangling rule_id."""
        with self.locks.hold(rule_id):
            remaining = self.store.list_vulnerabilities_for_rule(rule_id)
            if not self.store.delete_rule(rule_id):
                raise NotFoundError("rule", rule_id)
        self.locks.discard(rule_id)
        if remaining:
            logger.warning("Rule %s deleted; %d vulnerabilities now reference a missing rule", rule_id, len(remaining))
        else:
            logger.info("Rule %s deleted", rule_id)

    # ------------------------------------------------------------------
    # Dry runs
    # ------------------------------------------------------------------

    def test_rule(self, candidate_tree: TreeInput, test_cases: Iterable[Any]) -> list[RuleTestResult]:
        """Report, per observation set, whether the candidate tree would trigger.

        Structural problems in the tree raise ValidationError; catalog references
        are not checked, so unsaved catalog entries can be previewed.
        """
        group = parse_condition_tree(candidate_tree)
        results = []
        for case in test_cases:
            observations = _coerce_observations(case)
            results.append(RuleTestResult(case=observations, triggered=evaluate(group, observations)))
        return results

    def preview_rule_update(self, rule_id: str, candidate_tree: TreeInput) -> RuleUpdatePreview:
        """Count the vulnerabilities an update to candidate_tree would remove. Mutates nothing."""
        self.get_rule(rule_id)
        group = parse_condition_tree(candidate_tree)
        vulns = self.store.list_vulnerabilities_for_rule(rule_id)
        removed = 0
        for vuln in vulns:
            observations = self.vulnerabilities.get_observations_for(vuln)
            if observations and not evaluate(group, observations):
                removed += 1
        return RuleUpdatePreview(vulnerabilities_affected=len(vulns), vulnerabilities_removed=removed)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render_human_readable(self, rule_id: str) -> str:
        """Render the rule's logic as text.

        Leaves use the observation type's name and, for value-set leaves, the
        value labels joined with "or". Nested groups are parenthesized and
        siblings joined with the lowercase join operator.
        """
        rule = self.get_rule(rule_id)
        leaves = list(iter_leaves(rule.functional_rule))
        type_ids = sorted({leaf.observation_type_id for leaf in leaves})
        value_ids = sorted({vid for leaf in leaves for vid in (leaf.observation_value_ids or ())})
        type_names = {t.id: t.name for t in self.store.get_observation_types(type_ids)} if type_ids else {}
        value_labels = {v.id: v.value for v in self.store.get_observation_values(value_ids)} if value_ids else {}

        conditions = _render_group(rule.functional_rule, type_names, value_labels)
        return f"Rule: {rule.name}\nDescription: {rule.description}\nConditions: {conditions}"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _check_window(start: str, end: Optional[str], problems: list[str]) -> tuple[str, Optional[str]]:
    """Normalize an effective window to ISO strings, recording any problem."""
    try:
        start_dt = parse_timestamp(start)
        end_dt = parse_timestamp(end) if end else None
    except ValidationError as exc:
        problems.append(exc.message)
        return start, end
    if end_dt is not None and end_dt <= start_dt:
        problems.append("effective_to must be later than effective_from")
    return start_dt.isoformat(), end_dt.isoformat() if end_dt else None


def _coerce_observations(case: Any) -> list[Observation]:
    if isinstance(case, dict):
        case = case.get("observations", [])
    return [obs if isinstance(obs, Observation) else Observation.from_dict(obs) for obs in case]


def _render_group(group: ConditionGroup, type_names: dict[str, str], value_labels: dict[str, str]) -> str:
    parts = []
    for child in group.conditions:
        if isinstance(child, ConditionGroup):
            parts.append(f"({_render_group(child, type_names, value_labels)})")
        else:
            parts.append(_render_leaf(child, type_names, value_labels))
    return f" {group.join_operator.value.lower()} ".join(parts)


def _render_leaf(leaf: LeafCondition, type_names: dict[str, str], value_labels: dict[str, str]) -> str:
    type_name = type_names.get(leaf.observation_type_id, leaf.observation_type_id)
    if leaf.observation_value_ids is not None:
        labels = " or ".join(value_labels.get(vid, vid) for vid in leaf.observation_value_ids)
        return f"{type_name} is {labels}"
    if leaf.value is not None:
        return f"{type_name} {_OPERATOR_PHRASES[leaf.operator]} {_format_value(leaf.value)}"
    return ""


def _format_value(value: Scalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
