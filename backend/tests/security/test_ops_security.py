from fastapi import status
from fastapi.testclient import TestClient

from app import settings
from app.main import app


def test_metrics_fail_closed_without_token(monkeypatch):
    monkeypatch.setattr(settings.settings, "obs_admin_token", None)
    monkeypatch.setattr(settings.settings, "obs_metrics_public", False)

    client = TestClient(app)
    response = client.get("/metrics", headers={"X-Admin-Token": "whatever"})

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json()["detail"] == "admin_token_not_configured"


def test_metrics_work_with_correct_token(monkeypatch):
    monkeypatch.setattr(settings.settings, "obs_admin_token", "secret-token")
    monkeypatch.setattr(settings.settings, "obs_metrics_public", False)

    client = TestClient(app)
    response = client.get("/metrics", headers={"Authorization": "Bearer secret-token"})

    assert response.status_code == status.HTTP_200_OK
    assert "modledger_redis_up" in response.text


def test_metrics_reject_wrong_token(monkeypatch):
    monkeypatch.setattr(settings.settings, "obs_admin_token", "secret-token")
    monkeypatch.setattr(settings.settings, "obs_metrics_public", False)

    client = TestClient(app)
    response = client.get("/metrics", headers={"X-Admin-Token": "wrong-token"})

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json()["detail"] == "forbidden"


def test_moderation_routes_ignore_dev_headers_outside_dev(monkeypatch):
    monkeypatch.setattr(settings.settings, "environment", "production")

    client = TestClient(app)
    response = client.get("/api/mod/v1/reports", headers={"X-User-Id": "admin-1", "X-User-Roles": "admin"})

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["detail"] == "invalid_token"
