from fastapi.testclient import TestClient

import creditgate.api.health as health_api
from creditgate.core.rate_limit import RateLimiterRegistry
from creditgate.main import create_app


def _client(services):
    return TestClient(create_app(services=services, rate_limiters=RateLimiterRegistry({})))


def test_healthz_always_ok(services):
    resp = _client(services).get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_readyz_ok_with_tables(services):
    resp = _client(services).get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_readyz_reports_missing_tables(services, monkeypatch):
    class FakeInspector:
        def has_table(self, name):
            return name != "billing_events"

    monkeypatch.setattr(health_api, "inspect", lambda engine: FakeInspector())

    resp = _client(services).get("/readyz")

    assert resp.status_code == 503
    assert resp.json() == {"status": "error", "detail": "missing tables: billing_events"}


def test_readyz_db_unreachable(services, monkeypatch):
    monkeypatch.setattr(health_api, "check_connection", lambda: False)

    resp = _client(services).get("/readyz")

    assert resp.status_code == 503
    assert resp.json()["detail"] == "database unreachable"


def test_check_connection_reports_failure(db, monkeypatch):
    def boom():
        raise RuntimeError("connection refused")

    assert db.check_connection() is True
    monkeypatch.setattr(db, "get_engine", boom)
    assert db.check_connection() is False
