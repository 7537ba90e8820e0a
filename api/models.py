"""
API request and response models for the RiskRules REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.

Condition trees travel as plain JSON objects (the shape produced by
core.models.tree_to_dict). Structural and catalog validation of a tree is the
Rule Manager's job; a malformed tree comes back as a 422 from core.
"""

from dataclasses import asdict
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.models import (
    MitigationOption,
    ProcessResult,
    ReevaluationResult,
    Rule,
    RuleUpdateResult,
    StatusChange,
    Vulnerability,
    VulnerabilityState,
    tree_to_dict,
)

# Observation and condition scalars. bool first so JSON true/false is not read as 1/0.
ScalarValue = Union[bool, int, float, str]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class VulnStatusEnum(str, Enum):
    open = "open"
    in_review = "in_review"
    resolved = "resolved"


class ValueTypeEnum(str, Enum):
    ENUM = "ENUM"
    BOOLEAN = "BOOLEAN"
    NUMBER = "NUMBER"
    STRING = "STRING"
    DATE = "DATE"


class MitigationCategoryEnum(str, Enum):
    FULL = "FULL"
    BRIDGE = "BRIDGE"


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ObservationIn(BaseModel):
    """One observation as sent by a client. Either a catalog value, a raw value, or both.

    Ids are trimmed; value is passed to the evaluator exactly as sent.
    """

    observation_type_id: str = Field(min_length=1)
    observation_value_id: Optional[str] = None
    value: Optional[ScalarValue] = None

    @field_validator("observation_type_id", "observation_value_id", mode="before")
    @classmethod
    def strip_ids(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    def to_core(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ObservationOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    observation_type_id: str
    observation_value_id: Optional[str] = None
    value: Optional[ScalarValue] = None


class ItemFailureResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    message: str


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class RuleCreate(BaseModel):
    """Request body for POST /api/v1/rules."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    functional_rule: dict[str, Any] = Field(description="Root condition group: {join_operator, conditions}.")
    effective_from: Optional[str] = Field(default=None, description="ISO 8601. Defaults to now.")
    effective_to: Optional[str] = Field(default=None, description="ISO 8601, exclusive. Open-ended when omitted.")
    is_active: bool = True


class RuleUpdate(BaseModel):
    """Request body for PATCH /api/v1/rules/{rule_id}.

    Only the fields present in the request are applied. Sending
    "effective_to": null clears the end of the window.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, min_length=1)
    functional_rule: Optional[dict[str, Any]] = None
    effective_from: Optional[str] = None
    effective_to: Optional[str] = None
    is_active: Optional[bool] = None


class RuleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    functional_rule: dict[str, Any]
    effective_from: str
    effective_to: Optional[str] = None
    is_active: bool
    version: int
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, rule: Rule) -> "RuleResponse":
        return cls(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            functional_rule=tree_to_dict(rule.functional_rule),
            effective_from=rule.effective_from,
            effective_to=rule.effective_to,
            is_active=rule.is_active,
            version=rule.version,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
        )


class RuleUpdateResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule: RuleResponse
    vulnerabilities_removed: int
    errors: list[ItemFailureResponse] = []

    @classmethod
    def from_domain(cls, result: RuleUpdateResult) -> "RuleUpdateResponse":
        return cls(
            rule=RuleResponse.from_domain(result.rule),
            vulnerabilities_removed=result.vulnerabilities_removed,
            errors=[ItemFailureResponse(**asdict(e)) for e in result.errors],
        )


class RuleTestRequest(BaseModel):
    """Request body for POST /api/v1/rules/test -- nothing is persisted."""

    functional_rule: dict[str, Any]
    test_cases: list[list[ObservationIn]] = Field(min_length=1, max_length=100)


class RuleTestCaseResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    observations: list[ObservationOut]
    triggered: bool


class RuleTestResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    results: list[RuleTestCaseResult]


class RulePreviewRequest(BaseModel):
    functional_rule: dict[str, Any]


class RulePreviewResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    vulnerabilities_affected: int
    vulnerabilities_removed: int


class RuleReadableResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    text: str


# ---------------------------------------------------------------------------
# Vulnerabilities
# ---------------------------------------------------------------------------


class VulnerabilityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    rule_id: str
    assessment_id: str
    property_id: int
    status: VulnStatusEnum
    detected_at: str
    mitigation_type_id: Optional[str] = None
    mitigation_value_id: Optional[str] = None
    mitigation_description: Optional[str] = None
    notes: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, vuln: Vulnerability) -> "VulnerabilityResponse":
        return cls(**asdict(vuln))


class MitigationApply(BaseModel):
    """Request body for POST /api/v1/vulnerabilities/{vulnerability_id}/mitigation."""

    model_config = ConfigDict(str_strip_whitespace=True)

    mitigation_value_id: str = Field(min_length=1)
    description: str = Field(default="", max_length=2000)


class MitigationTypeAssign(BaseModel):
    """Request body for PUT /api/v1/vulnerabilities/{vulnerability_id}/mitigation-type."""

    model_config = ConfigDict(str_strip_whitespace=True)

    mitigation_type_id: str = Field(min_length=1)


class StatusUpdate(BaseModel):
    """Request body for PATCH /api/v1/vulnerabilities/{vulnerability_id}/status."""

    model_config = ConfigDict(str_strip_whitespace=True)

    status: VulnStatusEnum
    notes: Optional[str] = Field(default=None, max_length=2000)


class StatusChangeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    vulnerability: VulnerabilityResponse
    from_status: VulnStatusEnum
    is_regression: bool

    @classmethod
    def from_domain(cls, change: StatusChange) -> "StatusChangeResponse":
        return cls(
            vulnerability=VulnerabilityResponse.from_domain(change.vulnerability),
            from_status=change.from_status,
            is_regression=change.is_regression,
        )


class PropertyVulnerabilitiesResponse(BaseModel):
    """Vulnerabilities of one property. timestamp is set for historical snapshots only."""

    model_config = ConfigDict(frozen=True)

    property_id: int
    timestamp: Optional[str] = None
    vulnerabilities: list[VulnerabilityResponse]

    @classmethod
    def from_state(cls, state: VulnerabilityState) -> "PropertyVulnerabilitiesResponse":
        return cls(
            property_id=state.property_id,
            timestamp=state.timestamp,
            vulnerabilities=[VulnerabilityResponse.from_domain(v) for v in state.vulnerabilities],
        )


class ReevaluationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    property_id: int
    checked: int
    removed: int
    orphaned: list[str]
    errors: list[ItemFailureResponse] = []

    @classmethod
    def from_domain(cls, result: ReevaluationResult) -> "ReevaluationResponse":
        return cls(**asdict(result))


# ---------------------------------------------------------------------------
# Assessments
# ---------------------------------------------------------------------------


class AssessmentCreate(BaseModel):
    """Request body for POST /api/v1/assessments.

    The assessment is recorded and processed in one call. With point_in_time
    set, only rules effective at assessed_at (or now) are evaluated.
    """

    property_id: int = Field(ge=0)
    observations: list[ObservationIn] = Field(max_length=1000)
    assessed_at: Optional[str] = None
    point_in_time: bool = False


class ProcessAtRequest(BaseModel):
    """Request body for POST /api/v1/assessments/{assessment_id}/process-at."""

    at: Optional[str] = Field(default=None, description="ISO 8601. Defaults to the assessment's assessed_at.")


class ProcessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    assessment_id: str
    rules_evaluated: int
    triggered_rule_ids: list[str]
    created: list[VulnerabilityResponse]
    skipped: int
    errors: list[ItemFailureResponse] = []

    @classmethod
    def from_domain(cls, result: ProcessResult) -> "ProcessResponse":
        return cls(
            assessment_id=result.assessment_id,
            rules_evaluated=result.rules_evaluated,
            triggered_rule_ids=list(result.triggered_rule_ids),
            created=[VulnerabilityResponse.from_domain(v) for v in result.created],
            skipped=result.skipped,
            errors=[ItemFailureResponse(**asdict(e)) for e in result.errors],
        )


# ---------------------------------------------------------------------------
# Catalogs
# ---------------------------------------------------------------------------


class ObservationTypeCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    value_type: ValueTypeEnum = ValueTypeEnum.ENUM
    description: Optional[str] = None
    multiple: bool = False


class ObservationTypeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    value_type: str
    description: Optional[str] = None
    multiple: bool


class ObservationValueCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    observation_type_id: str = Field(min_length=1)
    value: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None


class ObservationValueResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    observation_type_id: str
    value: str
    description: Optional[str] = None


class MitigationTypeCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    multiple: bool = False


class MitigationTypeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    value_type: str
    multiple: bool


class MitigationValueCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    mitigation_type_id: str = Field(min_length=1)
    value: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    category: MitigationCategoryEnum = MitigationCategoryEnum.FULL


class MitigationValueResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    mitigation_type_id: str
    value: str
    description: Optional[str] = None
    category: MitigationCategoryEnum


class MitigationOptionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: MitigationTypeResponse
    values: list[MitigationValueResponse]

    @classmethod
    def from_domain(cls, option: MitigationOption) -> "MitigationOptionResponse":
        return cls(
            type=MitigationTypeResponse(**asdict(option.type)),
            values=[MitigationValueResponse(**asdict(v)) for v in option.values],
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
