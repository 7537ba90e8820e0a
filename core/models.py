"""
core/models.py -- Domain dataclasses for the RiskRules engine.

Pure data containers plus the small amount of logic that belongs to the data
itself (rule effective windows, condition-tree parsing and serialization).
Lifecycle rules live in the managers (core/rules.py, core/vulnerabilities.py,
core/processor.py); persistence lives behind core/gateway.py.

The condition tree is a tagged union: every node is either a LeafCondition or
a ConditionGroup. Consumers dispatch with isinstance() and never probe for
fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from core.errors import ValidationError

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Operator(str, Enum):
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    GREATER_THAN_OR_EQUALS = "GREATER_THAN_OR_EQUALS"
    LESS_THAN_OR_EQUALS = "LESS_THAN_OR_EQUALS"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    IN = "IN"
    NOT_IN = "NOT_IN"


class JoinOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ValueType(str, Enum):
    """Documents the intended comparison semantics of a leaf. Never gates evaluation."""

    ENUM = "ENUM"
    BOOLEAN = "BOOLEAN"
    NUMBER = "NUMBER"
    STRING = "STRING"
    DATE = "DATE"


class VulnStatus(str, Enum):
    open = "open"
    in_review = "in_review"
    resolved = "resolved"


class MitigationCategory(str, Enum):
    FULL = "FULL"
    BRIDGE = "BRIDGE"


# Forward order of the vulnerability workflow. Higher index = more progressed.
STATUS_ORDER: dict[str, int] = {
    VulnStatus.open.value: 0,
    VulnStatus.in_review.value: 1,
    VulnStatus.resolved.value: 2,
}

UNRESOLVED_STATUSES = frozenset({VulnStatus.open.value, VulnStatus.in_review.value})

# Scalar observation / condition values.
Scalar = Union[str, int, float, bool]


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO 8601 string (or pass through a datetime) as an aware datetime.

    Naive values are treated as UTC so that stored strings with and without
    an offset compare consistently. A trailing "Z" is accepted.
    Raises ValidationError for unparseable input.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"Invalid timestamp: {value!r}") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Observations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Observation:
    """A single measured fact about a property, recorded during an assessment.

    observation_value_id is used for enumerated facts, value for scalar ones.
    Both may be present when a type carries a catalog value and a raw reading.
    """

    observation_type_id: str
    observation_value_id: Optional[str] = None
    value: Optional[Scalar] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Observation":
        if not isinstance(data, dict) or not data.get("observation_type_id"):
            raise ValidationError("Observation requires an observation_type_id")
        return cls(
            observation_type_id=str(data["observation_type_id"]),
            observation_value_id=None if data.get("observation_value_id") is None else str(data["observation_value_id"]),
            value=data.get("value"),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"observation_type_id": self.observation_type_id}
        if self.observation_value_id is not None:
            out["observation_value_id"] = self.observation_value_id
        if self.value is not None:
            out["value"] = self.value
        return out


@dataclass
class Assessment:
    """An assessment of one property. Owns its observations."""

    property_id: int
    observations: list[Observation] = field(default_factory=list)
    assessed_at: str = ""  # ISO 8601, set by store on insert when empty
    id: Optional[str] = None


# ---------------------------------------------------------------------------
# Condition tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LeafCondition:
    observation_type_id: str
    operator: Operator = Operator.EQUALS
    value_type: ValueType = ValueType.ENUM
    value: Optional[Scalar] = None
    observation_value_ids: Optional[tuple[str, ...]] = None


@dataclass(frozen=True)
class ConditionGroup:
    join_operator: JoinOperator
    conditions: tuple["Condition", ...] = ()


Condition = Union[LeafCondition, ConditionGroup]


def iter_leaves(node: Condition):
    """Yield every LeafCondition in the tree, depth first, in declaration order."""
    if isinstance(node, LeafCondition):
        yield node
        return
    for child in node.conditions:
        yield from iter_leaves(child)


def parse_condition_tree(data: Any) -> ConditionGroup:
    """Build a ConditionGroup from its JSON shape.

    Accepts either a bare group or the {"root": group, "metadata": ...} wrapper
    used by stored rule payloads. Collects every structural problem before
    raising so the caller sees the whole list at once.
    """
    if isinstance(data, ConditionGroup):
        return data
    if isinstance(data, dict) and "root" in data and "conditions" not in data:
        data = data["root"]
    problems: list[str] = []
    node = _parse_node(data, "root", problems)
    if not isinstance(node, ConditionGroup):
        problems.append("root: the top level of a rule must be a condition group")
    if problems:
        raise ValidationError("Malformed condition tree", problems)
    return node


def _parse_node(data: Any, path: str, problems: list[str]) -> Optional[Condition]:
    if not isinstance(data, dict):
        problems.append(f"{path}: expected an object, got {type(data).__name__}")
        return None

    if "conditions" in data:
        try:
            join = JoinOperator(str(data.get("join_operator", "")).upper())
        except ValueError:
            problems.append(f"{path}: join_operator must be AND or OR")
            join = JoinOperator.AND
        raw_children = data["conditions"]
        if not isinstance(raw_children, list):
            problems.append(f"{path}.conditions: expected a list")
            raw_children = []
        children = []
        for i, raw in enumerate(raw_children):
            child = _parse_node(raw, f"{path}.conditions[{i}]", problems)
            if child is not None:
                children.append(child)
        return ConditionGroup(join_operator=join, conditions=tuple(children))

    type_id = data.get("observation_type_id")
    if not type_id:
        problems.append(f"{path}: observation_type_id is required")
        return None
    try:
        operator = Operator(str(data.get("operator", Operator.EQUALS.value)).upper())
    except ValueError:
        problems.append(f"{path}: unknown operator {data.get('operator')!r}")
        return None
    try:
        value_type = ValueType(str(data.get("value_type", ValueType.ENUM.value)).upper())
    except ValueError:
        problems.append(f"{path}: unknown value_type {data.get('value_type')!r}")
        return None

    value_ids = data.get("observation_value_ids")
    if value_ids is not None:
        if not isinstance(value_ids, list):
            problems.append(f"{path}.observation_value_ids: expected a list")
            return None
        value_ids = tuple(str(v) for v in value_ids)

    value = data.get("value")
    if isinstance(value, list):
        # List-valued conditions are stored the way IN/NOT_IN read them.
        value = ",".join(str(v) for v in value)

    return LeafCondition(
        observation_type_id=str(type_id),
        operator=operator,
        value_type=value_type,
        value=value,
        observation_value_ids=value_ids,
    )


def tree_to_dict(node: Condition) -> dict[str, Any]:
    """Serialize a condition tree to its JSON shape (inverse of parse_condition_tree)."""
    if isinstance(node, ConditionGroup):
        return {
            "join_operator": node.join_operator.value,
            "conditions": [tree_to_dict(child) for child in node.conditions],
        }
    out: dict[str, Any] = {
        "observation_type_id": node.observation_type_id,
        "operator": node.operator.value,
        "value_type": node.value_type.value,
    }
    if node.value is not None:
        out["value"] = node.value
    if node.observation_value_ids is not None:
        out["observation_value_ids"] = list(node.observation_value_ids)
    return out


# ---------------------------------------------------------------------------
# Rules and vulnerabilities
# ---------------------------------------------------------------------------


@dataclass
class Rule:
    """A named, time-bounded boolean expression over observations.

    id is None before the record is written to the store. version starts at 1
    and is bumped by the store on every update; it doubles as the optimistic
    concurrency token for rule edits.
    """

    name: str
    description: str
    functional_rule: ConditionGroup
    effective_from: str = ""  # ISO 8601, defaults to creation time
    effective_to: Optional[str] = None
    is_active: bool = True
    version: int = 1
    id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    def is_effective_at(self, at: Union[str, datetime]) -> bool:
        """effective_from <= at < effective_to (open-ended when effective_to is None)."""
        t = parse_timestamp(at)
        if self.effective_from and parse_timestamp(self.effective_from) > t:
            return False
        if self.effective_to is not None and parse_timestamp(self.effective_to) <= t:
            return False
        return True


@dataclass
class Vulnerability:
    """A rule-trigger instance tied to one assessment and one property.

    rule_id is a weak reference: the rule may since have been deleted.
    """

    rule_id: str
    assessment_id: str
    property_id: int
    status: str = VulnStatus.open.value
    detected_at: str = ""  # ISO 8601
    mitigation_type_id: Optional[str] = None
    mitigation_value_id: Optional[str] = None
    mitigation_description: Optional[str] = None
    notes: Optional[str] = None
    id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


# ---------------------------------------------------------------------------
# Catalogs
# ---------------------------------------------------------------------------


@dataclass
class ObservationType:
    name: str
    value_type: str = ValueType.ENUM.value
    description: Optional[str] = None
    multiple: bool = False
    id: Optional[str] = None


@dataclass
class ObservationValue:
    observation_type_id: str
    value: str
    description: Optional[str] = None
    id: Optional[str] = None


@dataclass
class MitigationType:
    name: str
    description: Optional[str] = None
    value_type: str = "enum"
    multiple: bool = False
    id: Optional[str] = None


@dataclass
class MitigationValue:
    mitigation_type_id: str
    value: str
    description: Optional[str] = None
    category: str = MitigationCategory.FULL.value
    id: Optional[str] = None


@dataclass
class MitigationOption:
    """One mitigation type bundled with every value scoped to it."""

    type: MitigationType
    values: list[MitigationValue] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass
class ItemFailure:
    """A single item that failed inside a batch operation."""

    item_id: str
    message: str


@dataclass
class ProcessResult:
    assessment_id: str
    rules_evaluated: int = 0
    triggered_rule_ids: list[str] = field(default_factory=list)
    created: list[Vulnerability] = field(default_factory=list)
    skipped: int = 0  # triggered but an unresolved vulnerability already exists
    errors: list[ItemFailure] = field(default_factory=list)


@dataclass
class RuleUpdateResult:
    rule: Rule
    vulnerabilities_removed: int = 0
    errors: list[ItemFailure] = field(default_factory=list)


@dataclass
class RuleUpdatePreview:
    vulnerabilities_affected: int = 0
    vulnerabilities_removed: int = 0


@dataclass
class RuleTestResult:
    case: list[Observation]
    triggered: bool


@dataclass
class StatusChange:
    vulnerability: Vulnerability
    from_status: str
    is_regression: bool = False


@dataclass
class ReevaluationResult:
    property_id: int
    checked: int = 0
    removed: int = 0
    orphaned: list[str] = field(default_factory=list)  # vulnerability ids whose rule is gone
    errors: list[ItemFailure] = field(default_factory=list)


@dataclass
class VulnerabilityState:
    """Historical snapshot: vulnerabilities detected on or before timestamp."""

    property_id: int
    timestamp: str
    vulnerabilities: list[Vulnerability] = field(default_factory=list)
