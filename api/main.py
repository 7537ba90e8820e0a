"""
api/main.py -- FastAPI application entry point for RiskRules.

Exposes the rules engine over HTTP so assessment tools and underwriting UIs
can submit observations, manage rules, and work vulnerabilities without
linking against core/ directly.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware        -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the storage gateway and the engine on startup and closes the
gateway on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.assessments import router as assessments_router
from api.routes.v1.catalog import router as catalog_router
from api.routes.v1.rules import router as rules_router
from api.routes.v1.vulnerabilities import router as vulnerabilities_router
from core.config import get_settings
from core.engine import build_engine
from core.errors import NotFoundError, PersistenceError, RulesEngineError, ValidationError
from store.sql import SQLStore

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("riskrules.api")


# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the storage gateway and engine; close the gateway on shutdown.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Route handlers reach the engine through request.app.state.engine.
    """
    settings = get_settings()
    logger.info("RiskRules API starting up")
    store = SQLStore(settings.database_url)
    app.state.engine = build_engine(store, settings)
    logger.info(
        "Engine initialized (dedupe_open_vulnerabilities=%s, enforce_status_transitions=%s)",
        settings.dedupe_open_vulnerabilities,
        settings.enforce_status_transitions,
    )

    yield

    store.close()
    logger.info("RiskRules API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="RiskRules API",
    description="Rule-driven property risk assessment: rules, assessments, vulnerabilities and mitigations.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them: CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Wall-clock time around call_next gives the latency per response.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(rules_router, prefix="/api/v1", tags=["Rules"])
app.include_router(assessments_router, prefix="/api/v1", tags=["Assessments"])
app.include_router(vulnerabilities_router, prefix="/api/v1", tags=["Vulnerabilities"])
app.include_router(catalog_router, prefix="/api/v1", tags=["Catalog"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(ValidationError)
async def engine_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Malformed rule trees, unknown catalog references, bad timestamps, rejected status moves."""
    detail = "; ".join(exc.problems) if exc.problems else None
    return _error_response(422, exc.code, exc.message, detail)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(404, exc.code, exc.message)


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    """The storage gateway failed. The cause is logged, not returned."""
    logger.error("Persistence failure on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(503, exc.code, "The data store is unavailable.", exc.operation)


@app.exception_handler(RulesEngineError)
async def engine_error_handler(request: Request, exc: RulesEngineError) -> JSONResponse:
    logger.error("Engine error on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(400, exc.code, exc.message)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and whether the data store answers."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None or not engine.store.ping():
        return HealthResponse(status="degraded", version=API_VERSION, database="unavailable")
    return HealthResponse(version=API_VERSION)
