"""
api/routes/v1/rules.py -- Rule routes for the RiskRules REST API.

Routes (in registration order to avoid FastAPI path capture conflicts):
  POST   /rules                      -- create rule (validated, single insert)
  GET    /rules                      -- list rules
  POST   /rules/test                 -- dry-run a candidate tree, nothing persisted
  GET    /rules/{rule_id}            -- rule detail
  PATCH  /rules/{rule_id}            -- update rule, reconciling its vulnerabilities
  DELETE /rules/{rule_id}            -- delete rule record
  POST   /rules/{rule_id}/preview    -- how many vulnerabilities an edit would remove
  GET    /rules/{rule_id}/readable   -- human-readable rendering

Core errors (ValidationError, NotFoundError, PersistenceError) propagate to the
exception handlers in api/main.py, which map them onto the error envelope.
"""

from dataclasses import asdict

from fastapi import APIRouter, Request, Response

from api.limiter import DEFAULT_LIMIT, limiter
from api.models import (
    ObservationOut,
    RuleCreate,
    RulePreviewRequest,
    RulePreviewResponse,
    RuleReadableResponse,
    RuleResponse,
    RuleTestCaseResult,
    RuleTestRequest,
    RuleTestResponse,
    RuleUpdate,
    RuleUpdateResponse,
)
from core.engine import Engine

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /rules -- create a rule
# ---------------------------------------------------------------------------


@limiter.limit(DEFAULT_LIMIT)
@router.post("/rules", response_model=RuleResponse, status_code=201)
def create_rule(request: Request, body: RuleCreate) -> RuleResponse:
    """Create a rule after checking every observation type and value it references."""
    engine: Engine = request.app.state.engine
    rule = engine.rules.create_rule(
        name=body.name,
        description=body.description,
        functional_rule=body.functional_rule,
        effective_from=body.effective_from,
        effective_to=body.effective_to,
        is_active=body.is_active,
    )
    return RuleResponse.from_domain(rule)


# ---------------------------------------------------------------------------
# GET /rules -- list rules
# ---------------------------------------------------------------------------


@limiter.limit(DEFAULT_LIMIT)
@router.get("/rules", response_model=list[RuleResponse])
def list_rules(request: Request) -> list[RuleResponse]:
    engine: Engine = request.app.state.engine
    return [RuleResponse.from_domain(r) for r in engine.rules.list_rules()]


# ---------------------------------------------------------------------------
# POST /rules/test -- registered before /rules/{rule_id}
# ---------------------------------------------------------------------------


@limiter.limit(DEFAULT_LIMIT)
@router.post("/rules/test", response_model=RuleTestResponse)
def test_rule(request: Request, body: RuleTestRequest) -> RuleTestResponse:
    """Evaluate a candidate tree against each observation set without persisting anything."""
    engine: Engine = request.app.state.engine
    results = engine.rules.test_rule(
        body.functional_rule,
        [[obs.to_core() for obs in case] for case in body.test_cases],
    )
    return RuleTestResponse(
        results=[
            RuleTestCaseResult(
                observations=[ObservationOut(**asdict(o)) for o in r.case],
                triggered=r.triggered,
            )
            for r in results
        ]
    )


# ---------------------------------------------------------------------------
# /rules/{rule_id}
# ---------------------------------------------------------------------------


@limiter.limit(DEFAULT_LIMIT)
@router.get("/rules/{rule_id}", response_model=RuleResponse)
def get_rule(request: Request, rule_id: str) -> RuleResponse:
    engine: Engine = request.app.state.engine
    return RuleResponse.from_domain(engine.rules.get_rule(rule_id))


@limiter.limit(DEFAULT_LIMIT)
@router.patch("/rules/{rule_id}", response_model=RuleUpdateResponse)
def update_rule(request: Request, rule_id: str, body: RuleUpdate) -> RuleUpdateResponse:
    """Apply the fields present in the body.

    Vulnerabilities this rule produced are re-judged against the new tree
    first; those that no longer trigger are deleted and counted in
    vulnerabilities_removed. Per-vulnerability storage failures are listed
    in errors rather than failing the request.
    """
    engine: Engine = request.app.state.engine
    result = engine.rules.update_rule(rule_id, body.model_dump(exclude_unset=True))
    return RuleUpdateResponse.from_domain(result)


@limiter.limit(DEFAULT_LIMIT)
@router.delete("/rules/{rule_id}", status_code=204)
def delete_rule(request: Request, rule_id: str) -> Response:
    """Delete the rule record. Vulnerabilities it produced are kept."""
    engine: Engine = request.app.state.engine
    engine.rules.delete_rule(rule_id)
    return Response(status_code=204)


@limiter.limit(DEFAULT_LIMIT)
@router.post("/rules/{rule_id}/preview", response_model=RulePreviewResponse)
def preview_rule_update(request: Request, rule_id: str, body: RulePreviewRequest) -> RulePreviewResponse:
    engine: Engine = request.app.state.engine
    preview = engine.rules.preview_rule_update(rule_id, body.functional_rule)
    return RulePreviewResponse(
        rule_id=rule_id,
        vulnerabilities_affected=preview.vulnerabilities_affected,
        vulnerabilities_removed=preview.vulnerabilities_removed,
    )


@limiter.limit(DEFAULT_LIMIT)
@router.get("/rules/{rule_id}/readable", response_model=RuleReadableResponse)
def render_rule(request: Request, rule_id: str) -> RuleReadableResponse:
    engine: Engine = request.app.state.engine
    return RuleReadableResponse(rule_id=rule_id, text=engine.rules.render_human_readable(rule_id))
