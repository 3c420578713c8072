from __future__ import annotations

from fleet.app.config import load_settings
from fleet.app.main import create_app


def _paths(app) -> set[str]:
    paths: set[str] = set()
    for r in app.router.routes:
        p = getattr(r, "path", None)
        if isinstance(p, str):
            paths.add(p)
    return paths


def _env(monkeypatch, **extra: str) -> None:
    # Minimal env for settings load.
    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///./test_toggle.db")
    monkeypatch.setenv("ADMIN_API_KEY", "test-admin")
    for key, value in extra.items():
        monkeypatch.setenv(key, value)


def test_default_route_surface(monkeypatch) -> None:
    _env(monkeypatch)
    paths = _paths(create_app(load_settings()))

    # Probes
    assert "/healthz" in paths
    assert "/readyz" in paths
    assert "/api/v1/health" in paths

    # Device protocol
    assert "/api/v1/heartbeat" in paths
    assert "/api/v1/commands/pending" in paths
    assert "/api/v1/commands/confirm" in paths

    # Operator surface
    assert "/api/v1/admin/projects" in paths
    assert "/api/v1/admin/projects/{public_id}/devices" in paths
    assert "/api/v1/admin/devices/{composite_id}/commands" in paths
    assert "/api/v1/admin/devices/{composite_id}/secret/rotate" in paths


def test_disable_device_routes(monkeypatch) -> None:
    _env(monkeypatch, ENABLE_DEVICE_ROUTES="0")
    paths = _paths(create_app(load_settings()))

    assert "/api/v1/heartbeat" not in paths
    assert "/api/v1/commands/pending" not in paths
    assert "/api/v1/admin/projects" in paths


def test_disable_admin_routes(monkeypatch) -> None:
    _env(monkeypatch, ENABLE_ADMIN_ROUTES="0")
    settings = load_settings()
    paths = _paths(create_app(settings))

    assert "/api/v1/admin/projects" not in paths
    assert "/api/v1/heartbeat" in paths
    assert settings.admin_auth_mode == "none"


def test_docs_follow_enable_docs(monkeypatch) -> None:
    _env(monkeypatch, ENABLE_DOCS="0")
    assert "/docs" not in _paths(create_app(load_settings()))

    _env(monkeypatch, ENABLE_DOCS="1")
    assert "/docs" in _paths(create_app(load_settings()))


def test_admin_api_key_is_trimmed(monkeypatch) -> None:
    _env(monkeypatch, ADMIN_API_KEY="  test-admin-key  ")

    settings = load_settings()
    assert settings.admin_api_key == "test-admin-key"


def test_health_reports_runtime_features(monkeypatch) -> None:
    from fastapi.testclient import TestClient

    _env(monkeypatch, OFFLINE_AFTER_S="90", ENABLE_DEVICE_ROUTES="0")
    client = TestClient(create_app(load_settings()))

    body = client.get("/api/v1/health").json()
    assert body["ok"] is True
    assert body["features"]["liveness"]["offline_after_s"] == 90
    assert body["features"]["device_protocol"]["enabled"] is False
