"""
api/routes/v1/vulnerabilities.py -- Vulnerability lifecycle routes.

Routes:
  GET   /vulnerabilities/{vulnerability_id}                     -- detail
  GET   /vulnerabilities/{vulnerability_id}/mitigation-options  -- catalog options
  PUT   /vulnerabilities/{vulnerability_id}/mitigation-type     -- attach a mitigation type
  POST  /vulnerabilities/{vulnerability_id}/mitigation          -- apply mitigation (-> in_review)
  PATCH /vulnerabilities/{vulnerability_id}/status              -- status / notes update
  GET   /properties/{property_id}/vulnerabilities?at=           -- current list or historical snapshot
  POST  /properties/{property_id}/reevaluate                    -- re-judge against current rules

Status regressions (e.g. resolved -> open) succeed with is_regression=true
unless ENFORCE_STATUS_TRANSITIONS is set, in which case they return 422.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Query, Request

from api.limiter import DEFAULT_LIMIT, limiter
from api.models import (
    MitigationApply,
    MitigationOptionResponse,
    MitigationTypeAssign,
    PropertyVulnerabilitiesResponse,
    ReevaluationResponse,
    StatusChangeResponse,
    StatusUpdate,
    VulnerabilityResponse,
)
from core.engine import Engine

router = APIRouter()


# ---------------------------------------------------------------------------
# /vulnerabilities/{vulnerability_id}
# ---------------------------------------------------------------------------


@limiter.limit(DEFAULT_LIMIT)
@router.get("/vulnerabilities/{vulnerability_id}", response_model=VulnerabilityResponse)
def get_vulnerability(request: Request, vulnerability_id: str) -> VulnerabilityResponse:
    engine: Engine = request.app.state.engine
    return VulnerabilityResponse.from_domain(engine.vulnerabilities.get_vulnerability(vulnerability_id))


@limiter.limit(DEFAULT_LIMIT)
@router.get(
    "/vulnerabilities/{vulnerability_id}/mitigation-options",
    response_model=list[MitigationOptionResponse],
)
def get_mitigation_options(request: Request, vulnerability_id: str) -> list[MitigationOptionResponse]:
    """Return the mitigation type configured on the vulnerability with its values. Empty if none."""
    engine: Engine = request.app.state.engine
    options = engine.vulnerabilities.get_mitigation_options(vulnerability_id)
    return [MitigationOptionResponse.from_domain(o) for o in options]


@limiter.limit(DEFAULT_LIMIT)
@router.put("/vulnerabilities/{vulnerability_id}/mitigation-type", response_model=VulnerabilityResponse)
def assign_mitigation_type(
    request: Request, vulnerability_id: str, body: MitigationTypeAssign
) -> VulnerabilityResponse:
    engine: Engine = request.app.state.engine
    vuln = engine.vulnerabilities.assign_mitigation_type(vulnerability_id, body.mitigation_type_id)
    return VulnerabilityResponse.from_domain(vuln)


@limiter.limit(DEFAULT_LIMIT)
@router.post("/vulnerabilities/{vulnerability_id}/mitigation", response_model=VulnerabilityResponse)
def apply_mitigation(request: Request, vulnerability_id: str, body: MitigationApply) -> VulnerabilityResponse:
    engine: Engine = request.app.state.engine
    vuln = engine.vulnerabilities.apply_mitigation(vulnerability_id, body.mitigation_value_id, body.description)
    return VulnerabilityResponse.from_domain(vuln)


@limiter.limit(DEFAULT_LIMIT)
@router.patch("/vulnerabilities/{vulnerability_id}/status", response_model=StatusChangeResponse)
def update_status(request: Request, vulnerability_id: str, body: StatusUpdate) -> StatusChangeResponse:
    engine: Engine = request.app.state.engine
    change = engine.vulnerabilities.update_status(vulnerability_id, body.status.value, notes=body.notes)
    return StatusChangeResponse.from_domain(change)


# ---------------------------------------------------------------------------
# /properties/{property_id}
# ---------------------------------------------------------------------------


@limiter.limit(DEFAULT_LIMIT)
@router.get("/properties/{property_id}/vulnerabilities", response_model=PropertyVulnerabilitiesResponse)
def list_property_vulnerabilities(
    request: Request,
    property_id: int,
    at: Annotated[Optional[str], Query(max_length=64)] = None,
) -> PropertyVulnerabilitiesResponse:
    """Return the property's vulnerabilities.

    With ?at=<ISO 8601>, return the historical snapshot: every vulnerability
    detected on or before that instant.
    """
    engine: Engine = request.app.state.engine
    if at:
        state = engine.processor.get_vulnerability_state_at_time(property_id, at)
        return PropertyVulnerabilitiesResponse.from_state(state)
    vulns = engine.vulnerabilities.list_for_property(property_id)
    return PropertyVulnerabilitiesResponse(
        property_id=property_id,
        vulnerabilities=[VulnerabilityResponse.from_domain(v) for v in vulns],
    )


@limiter.limit(DEFAULT_LIMIT)
@router.post("/properties/{property_id}/reevaluate", response_model=ReevaluationResponse)
def reevaluate_property(request: Request, property_id: int) -> ReevaluationResponse:
    """Delete the property's vulnerabilities whose rules no longer trigger on their observations."""
    engine: Engine = request.app.state.engine
    return ReevaluationResponse.from_domain(engine.vulnerabilities.reevaluate_property(property_id))
