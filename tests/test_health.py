"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version and database fields
  - No authentication required
  - Database failure reported as "degraded", still 200
"""

from __future__ import annotations

from sqlalchemy.exc import OperationalError

from api.main import API_VERSION


def test_health_returns_200(api):
    """Health endpoint reports ok for a reachable database."""
    resp = api.client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": API_VERSION, "database": "ok"}


def test_health_no_auth_required(api):
    """Health endpoint is accessible without any authentication headers."""
    resp = api.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_health_degraded_when_database_unreachable(api, monkeypatch):
    """A failing ping downgrades status without turning into a 500."""

    def broken_ping():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(api.store, "ping", broken_ping)
    resp = api.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["database"] == "unavailable"
