"""
tests/conftest.py -- Shared test fixtures for RiskRules tests.

This module provides:
  - store / engine: a MemoryStore-backed Engine for manager unit tests
  - seed_catalog(): the window_type / distance_to_coast observation catalog
  - coastal_tree(): AND(window_type IN [single_pane], distance_to_coast < 10)
  - _patch_lifespan(): wires a test engine into app.state, bypassing real startup
  - api_client: TestClient over an in-memory SQLStore for API integration tests

The API_RATE_LIMIT env var must be set before any api/ import: the limiter
reads it once at import time and every test request comes from the same
client address.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# Set before any api/ or core.config import so get_settings() sees them.
os.environ.setdefault("API_RATE_LIMIT", "10000/minute")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from core.config import Settings
from core.engine import Engine, build_engine
from store.memory import MemoryStore
from store.sql import SQLStore

# ---------------------------------------------------------------------------
# Catalog helpers
# ---------------------------------------------------------------------------


@dataclass
class Catalog:
    window_type: str
    single_pane: str
    double_pane: str
    impact_glass: str
    distance_to_coast: str
    roof_shape: str
    hip_roof: str


def seed_catalog(engine: Engine) -> Catalog:
    """Create the observation catalog used across the suite."""
    window = engine.catalog.create_observation_type("window_type", value_type="ENUM")
    single = engine.catalog.create_observation_value(window.id, "single_pane")
    double = engine.catalog.create_observation_value(window.id, "double_pane")
    impact = engine.catalog.create_observation_value(window.id, "impact_glass")
    distance = engine.catalog.create_observation_type("distance_to_coast", value_type="NUMBER")
    roof = engine.catalog.create_observation_type("roof_shape", value_type="ENUM")
    hip = engine.catalog.create_observation_value(roof.id, "hip")
    return Catalog(
        window_type=window.id,
        single_pane=single.id,
        double_pane=double.id,
        impact_glass=impact.id,
        distance_to_coast=distance.id,
        roof_shape=roof.id,
        hip_roof=hip.id,
    )


def coastal_tree(cat: Catalog, max_distance: float = 10) -> dict:
    return {
        "join_operator": "AND",
        "conditions": [
            {
                "observation_type_id": cat.window_type,
                "operator": "IN",
                "value_type": "ENUM",
                "observation_value_ids": [cat.single_pane],
            },
            {
                "observation_type_id": cat.distance_to_coast,
                "operator": "LESS_THAN",
                "value_type": "NUMBER",
                "value": max_distance,
            },
        ],
    }


def coastal_observations(cat: Catalog, distance: float, window_value_id: str | None = None) -> list[dict]:
    return [
        {"observation_type_id": cat.window_type, "observation_value_id": window_value_id or cat.single_pane},
        {"observation_type_id": cat.distance_to_coast, "value": distance},
    ]


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def engine(store: MemoryStore) -> Engine:
    return build_engine(store, Settings(dedupe_open_vulnerabilities=True, enforce_status_transitions=False))


@pytest.fixture
def cat(engine: Engine) -> Catalog:
    return seed_catalog(engine)


@pytest.fixture
def coastal_rule(engine: Engine, cat: Catalog):
    return engine.rules.create_rule(
        name="Coastal single pane",
        description="Single pane windows close to the coast",
        functional_rule=coastal_tree(cat),
    )


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(engine: Engine):
    """Return an async context manager that replaces the real lifespan.

    Wires a pre-built engine into app.state so TestClient routes use an
    isolated in-memory database rather than the configured one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app with an in-memory SQLStore.

    One client per test module. sqlite:///:memory: is served through a
    StaticPool by SQLStore so every handler thread sees the same schema.
    """
    sql_store = SQLStore("sqlite:///:memory:")
    app.router.lifespan_context = _patch_lifespan(build_engine(sql_store, Settings()))

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    sql_store.close()
