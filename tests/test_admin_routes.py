from __future__ import annotations

from fastapi.testclient import TestClient

from fleet.app.config import settings
from fleet.app.main import create_app


ADMIN = {"X-Admin-Key": settings.admin_api_key}


def _client() -> TestClient:
    return TestClient(create_app())


def _project(client: TestClient, name: str = "Nursery", **extra) -> str:
    r = client.post("/api/v1/admin/projects", json={"name": name, **extra}, headers=ADMIN)
    assert r.status_code == 201, r.text
    return r.json()["project_id"]


def _device(client: TestClient, project_id: str, slot: int, name: str = "Sensor") -> dict:
    r = client.post(
        f"/api/v1/admin/projects/{project_id}/devices",
        json={"slot": slot, "name": name},
        headers=ADMIN,
    )
    assert r.status_code == 201, r.text
    return r.json()


def test_admin_routes_require_key(fleet_db) -> None:
    client = _client()

    missing = client.get("/api/v1/admin/projects")
    wrong = client.get("/api/v1/admin/projects", headers={"X-Admin-Key": "nope"})

    for r in (missing, wrong):
        assert r.status_code == 401
        assert r.json()["success"] is False
        assert r.json()["error"]["message"] == "Invalid admin key"


def test_create_and_list_projects(fleet_db) -> None:
    client = _client()
    r = client.post(
        "/api/v1/admin/projects",
        json={"name": "East Wing", "description": "seedlings"},
        headers={**ADMIN, "X-Operator": " Ops@Example.com "},
    )
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    assert body["project_id"] == "PROJ1"

    _project(client, "West Wing")

    listed = client.get("/api/v1/admin/projects", headers=ADMIN).json()
    assert [p["project_id"] for p in listed] == ["PROJ1", "PROJ2"]
    assert listed[0]["owner"] == "ops@example.com"
    assert listed[1]["owner"] == settings.default_project_owner

    mine = client.get("/api/v1/admin/projects", params={"owner": "ops@example.com"}, headers=ADMIN).json()
    assert [p["name"] for p in mine] == ["East Wing"]


def test_duplicate_project_name_is_409(fleet_db) -> None:
    client = _client()
    _project(client, "Orchard")

    r = client.post("/api/v1/admin/projects", json={"name": "Orchard"}, headers=ADMIN)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "NAME_CONFLICT"


def test_whitespace_project_name_is_422(fleet_db) -> None:
    client = _client()
    r = client.post("/api/v1/admin/projects", json={"name": "   "}, headers=ADMIN)
    assert r.status_code == 422


def test_device_registration_errors(fleet_db) -> None:
    client = _client()
    project_id = _project(client)
    first = _device(client, project_id, 3)
    assert first["composite_device_id"] == f"{project_id}-ESP3"
    assert len(first["secret"]) == 64

    dup = client.post(
        f"/api/v1/admin/projects/{project_id}/devices", json={"slot": 3, "name": "Dup"}, headers=ADMIN
    )
    assert dup.status_code == 409
    assert dup.json()["error"]["code"] == "SLOT_CONFLICT"

    out_of_range = client.post(
        f"/api/v1/admin/projects/{project_id}/devices", json={"slot": 21, "name": "Nope"}, headers=ADMIN
    )
    assert out_of_range.status_code == 422
    assert out_of_range.json()["error"]["code"] == "SLOT_OUT_OF_RANGE"

    unknown = client.post(
        "/api/v1/admin/projects/PROJ77/devices", json={"slot": 1, "name": "Ghost"}, headers=ADMIN
    )
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "UNKNOWN_ENTITY"


def test_archived_project_blocks_registration(fleet_db) -> None:
    client = _client()
    project_id = _project(client)

    r = client.patch(f"/api/v1/admin/projects/{project_id}", json={"status": "archived"}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["status"] == "archived"

    r = client.post(
        f"/api/v1/admin/projects/{project_id}/devices", json={"slot": 1, "name": "Late"}, headers=ADMIN
    )
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "PROJECT_ARCHIVED"


def test_slots_and_device_listing(fleet_db) -> None:
    client = _client()
    project_id = _project(client)
    _device(client, project_id, 2, "Two")
    _device(client, project_id, 1, "One")

    slots = client.get(f"/api/v1/admin/projects/{project_id}/slots", headers=ADMIN).json()
    assert len(slots) == 20
    assert [s["slot"] for s in slots if not s["available"]] == [1, 2]

    devices = client.get(f"/api/v1/admin/projects/{project_id}/devices", headers=ADMIN).json()
    assert [d["slot"] for d in devices] == [1, 2]
    assert all(d["status"] == "waiting" for d in devices)
    assert all(d["has_credential"] for d in devices)
    assert all("secret" not in d for d in devices)

    project = client.get(f"/api/v1/admin/projects/{project_id}", headers=ADMIN).json()
    assert project["device_count"] == 2


def test_delete_project_cascades(fleet_db) -> None:
    client = _client()
    project_id = _project(client)
    composite_id = _device(client, project_id, 4)["composite_device_id"]
    client.post(
        f"/api/v1/admin/devices/{composite_id}/commands",
        json={"actuator_id": "valve", "command_type": "open"},
        headers=ADMIN,
    )

    r = client.delete(f"/api/v1/admin/projects/{project_id}", headers=ADMIN)
    assert r.status_code == 200

    assert client.get(f"/api/v1/admin/projects/{project_id}", headers=ADMIN).status_code == 404
    assert client.get(f"/api/v1/admin/devices/{composite_id}", headers=ADMIN).status_code == 404
    assert _project(client, "Nursery") == "PROJ2"


def test_delete_device_frees_slot(fleet_db) -> None:
    client = _client()
    project_id = _project(client)
    composite_id = _device(client, project_id, 9)["composite_device_id"]

    assert client.delete(f"/api/v1/admin/devices/{composite_id}", headers=ADMIN).status_code == 200
    assert _device(client, project_id, 9)["composite_device_id"] == composite_id


def test_rotate_secret_invalidates_old_key(fleet_db) -> None:
    client = _client()
    project_id = _project(client)
    registered = _device(client, project_id, 6)
    composite_id = registered["composite_device_id"]

    r = client.post(f"/api/v1/admin/devices/{composite_id}/secret/rotate", headers=ADMIN)
    assert r.status_code == 200
    new_secret = r.json()["secret"]

    old = client.post(
        "/api/v1/heartbeat",
        headers={"x-composite-device-id": composite_id, "x-device-key": registered["secret"]},
    )
    new = client.post(
        "/api/v1/heartbeat",
        headers={"x-composite-device-id": composite_id, "x-device-key": new_secret},
    )
    assert old.status_code == 401
    assert new.status_code == 200


def test_command_management(fleet_db) -> None:
    client = _client()
    project_id = _project(client)
    composite_id = _device(client, project_id, 1)["composite_device_id"]

    ids = []
    for actuator in ("fan", "heater", "lamp"):
        r = client.post(
            f"/api/v1/admin/devices/{composite_id}/commands",
            json={"actuator_id": actuator, "command_type": "set_level", "value": 0.5},
            headers=ADMIN,
        )
        assert r.status_code == 201
        ids.append(r.json()["id"])

    bad = client.post(
        f"/api/v1/admin/devices/{composite_id}/commands",
        json={"actuator_id": "fan", "command_type": "Turn On"},
        headers=ADMIN,
    )
    assert bad.status_code == 422

    r = client.delete(f"/api/v1/admin/commands/{ids[0]}", headers=ADMIN)
    assert r.json()["cancelled"] == 1
    r = client.delete(f"/api/v1/admin/commands/{ids[0]}", headers=ADMIN)
    assert r.json()["cancelled"] == 0

    device = client.get(f"/api/v1/admin/devices/{composite_id}", headers=ADMIN).json()
    assert device["pending_commands"] == 2

    pending = client.get(
        f"/api/v1/admin/devices/{composite_id}/commands", params={"state": "pending"}, headers=ADMIN
    ).json()
    assert [c["id"] for c in pending] == ids[1:]

    r = client.delete(f"/api/v1/admin/devices/{composite_id}/commands", headers=ADMIN)
    assert r.json()["cancelled"] == 2
    assert client.get(f"/api/v1/admin/devices/{composite_id}/commands", headers=ADMIN).json() == []
