from conftest import MockCRMClient
from fastapi.testclient import TestClient

from crm_access.main import app
from crm_access.routers import health

client = TestClient(app)


def test_health_reports_reachable_upstream(monkeypatch):
    monkeypatch.setattr(health, "get_crm_client_for", lambda token: MockCRMClient())
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["crm_api"] == "reachable"
    assert body["grant_cache"] == "disabled"


def test_health_is_503_when_upstream_is_down(monkeypatch):
    monkeypatch.setattr(health, "get_crm_client_for", lambda token: MockCRMClient(healthy=False))
    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"


def test_probes():
    assert client.get("/readiness").json() == {"ready": True}
    assert client.get("/liveness").json() == {"alive": True}
    assert client.get("/").status_code == 200
