"""
api/routes/v1/assessments.py -- Assessment processing routes.

Routes:
  POST /assessments                              -- record an assessment and process it
  POST /assessments/{assessment_id}/process      -- re-run against all active rules
  POST /assessments/{assessment_id}/process-at   -- run against rules effective at a time

Processing never fails the request for a single rule: storage failures are
listed per rule in the response's errors.
"""

from fastapi import APIRouter, Request

from api.limiter import DEFAULT_LIMIT, limiter
from api.models import AssessmentCreate, ProcessAtRequest, ProcessResponse
from core.engine import Engine

router = APIRouter()


@limiter.limit(DEFAULT_LIMIT)
@router.post("/assessments", response_model=ProcessResponse, status_code=201)
def create_assessment(request: Request, body: AssessmentCreate) -> ProcessResponse:
    """Record the assessment, then evaluate rules against its observations."""
    engine: Engine = request.app.state.engine
    assessment = engine.processor.record_assessment(
        body.property_id,
        [obs.to_core() for obs in body.observations],
        assessed_at=body.assessed_at,
    )
    if body.point_in_time:
        result = engine.processor.process_assessment_at_time(assessment)
    else:
        result = engine.processor.process_assessment(assessment)
    return ProcessResponse.from_domain(result)


@limiter.limit(DEFAULT_LIMIT)
@router.post("/assessments/{assessment_id}/process", response_model=ProcessResponse)
def process_assessment(request: Request, assessment_id: str) -> ProcessResponse:
    engine: Engine = request.app.state.engine
    return ProcessResponse.from_domain(engine.processor.process_assessment(assessment_id))


@limiter.limit(DEFAULT_LIMIT)
@router.post("/assessments/{assessment_id}/process-at", response_model=ProcessResponse)
def process_assessment_at_time(request: Request, assessment_id: str, body: ProcessAtRequest) -> ProcessResponse:
    """Evaluate only the rules whose effective window contains body.at."""
    engine: Engine = request.app.state.engine
    return ProcessResponse.from_domain(engine.processor.process_assessment_at_time(assessment_id, body.at))
