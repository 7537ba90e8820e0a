"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and database fields
  - database reports 'ok' when the store answers, 'unavailable' when it does not
  - No rate-limit or body requirements
"""

from __future__ import annotations

from api.main import API_VERSION, app


def test_health_returns_200(api_client):
    """Health endpoint returns 200 with status, version, and database."""
    resp = api_client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"] == API_VERSION
    assert data["database"] == "ok"


def test_health_reports_unavailable_store(api_client, monkeypatch):
    """A failing ping degrades the status instead of raising."""
    monkeypatch.setattr(app.state.engine.store, "ping", lambda: False)
    data = api_client.get("/api/v1/health").json()
    assert data["status"] == "degraded"
    assert data["database"] == "unavailable"
