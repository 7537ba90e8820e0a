"""
api/routes/v1/catalog.py -- Observation and mitigation catalog routes.

Routes:
  POST /catalog/observation-types    GET /catalog/observation-types
  POST /catalog/observation-values
  POST /catalog/mitigation-types     GET /catalog/mitigation-types
  POST /catalog/mitigation-values

Creating a value under an unknown type returns 404.
"""

from dataclasses import asdict

from fastapi import APIRouter, Request

from api.limiter import DEFAULT_LIMIT, limiter
from api.models import (
    MitigationTypeCreate,
    MitigationTypeResponse,
    MitigationValueCreate,
    MitigationValueResponse,
    ObservationTypeCreate,
    ObservationTypeResponse,
    ObservationValueCreate,
    ObservationValueResponse,
)
from core.engine import Engine

router = APIRouter(prefix="/catalog")


# ---------------------------------------------------------------------------
# Observation catalog
# ---------------------------------------------------------------------------


@limiter.limit(DEFAULT_LIMIT)
@router.post("/observation-types", response_model=ObservationTypeResponse, status_code=201)
def create_observation_type(request: Request, body: ObservationTypeCreate) -> ObservationTypeResponse:
    engine: Engine = request.app.state.engine
    created = engine.catalog.create_observation_type(
        name=body.name,
        value_type=body.value_type.value,
        description=body.description,
        multiple=body.multiple,
    )
    return ObservationTypeResponse(**asdict(created))


@limiter.limit(DEFAULT_LIMIT)
@router.get("/observation-types", response_model=list[ObservationTypeResponse])
def list_observation_types(request: Request) -> list[ObservationTypeResponse]:
    engine: Engine = request.app.state.engine
    return [ObservationTypeResponse(**asdict(t)) for t in engine.catalog.list_observation_types()]


@limiter.limit(DEFAULT_LIMIT)
@router.post("/observation-values", response_model=ObservationValueResponse, status_code=201)
def create_observation_value(request: Request, body: ObservationValueCreate) -> ObservationValueResponse:
    engine: Engine = request.app.state.engine
    created = engine.catalog.create_observation_value(
        body.observation_type_id,
        body.value,
        description=body.description,
    )
    return ObservationValueResponse(**asdict(created))


# ---------------------------------------------------------------------------
# Mitigation catalog
# ---------------------------------------------------------------------------


@limiter.limit(DEFAULT_LIMIT)
@router.post("/mitigation-types", response_model=MitigationTypeResponse, status_code=201)
def create_mitigation_type(request: Request, body: MitigationTypeCreate) -> MitigationTypeResponse:
    engine: Engine = request.app.state.engine
    created = engine.catalog.create_mitigation_type(
        body.name,
        description=body.description,
        multiple=body.multiple,
    )
    return MitigationTypeResponse(**asdict(created))


@limiter.limit(DEFAULT_LIMIT)
@router.get("/mitigation-types", response_model=list[MitigationTypeResponse])
def list_mitigation_types(request: Request) -> list[MitigationTypeResponse]:
    engine: Engine = request.app.state.engine
    return [MitigationTypeResponse(**asdict(t)) for t in engine.catalog.list_mitigation_types()]


@limiter.limit(DEFAULT_LIMIT)
@router.post("/mitigation-values", response_model=MitigationValueResponse, status_code=201)
def create_mitigation_value(request: Request, body: MitigationValueCreate) -> MitigationValueResponse:
    engine: Engine = request.app.state.engine
    created = engine.catalog.create_mitigation_value(
        body.mitigation_type_id,
        body.value,
        description=body.description,
        category=body.category.value,
    )
    return MitigationValueResponse(**asdict(created))
