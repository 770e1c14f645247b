import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from roles.config import Role


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def _headers(user):
    return {"X-User-Id": user.user_id}


def _device(client, user, device_type="TABLET"):
    response = client.post("/devices", json={"deviceType": device_type}, headers=_headers(user))
    assert response.status_code == 201, response.text
    return response.json()


def _item(client, user, mission_id="m1"):
    response = client.post("/items", json={"missionId": mission_id}, headers=_headers(user))
    assert response.status_code == 201, response.text
    return response.json()


def test_role_profile(client):
    response = client.get("/roles/admin")
    assert response.status_code == 200
    body = response.json()
    assert body["syncPriority"] == 7
    assert body["conflictStrategy"] == "MANUAL"
    assert "SYNC" in body["permissions"]

    assert client.get("/roles/guest").status_code == 404


def test_identity_required(client):
    assert client.post("/devices", json={"deviceType": "TABLET"}).status_code == 401
    response = client.post("/devices", json={"deviceType": "TABLET"}, headers={"X-User-Id": "u_nobody"})
    assert response.status_code == 401


def test_admission_rejection(client, plain_user):
    response = client.post("/devices", json={"deviceType": "SERVER"}, headers=_headers(plain_user))
    assert response.status_code == 403
    assert response.json()["detail"] == "type not authorized for this role"


def test_sync_flow(client, admin):
    device = _device(client, admin)
    item = _item(client, admin)

    response = client.post("/sync/queue", headers=_headers(admin), json={
        "itemId": item["itemId"],
        "sourceDeviceId": device["deviceId"],
        "action": "validated",
    })
    assert response.status_code == 201
    entry = response.json()
    assert entry["status"] == "PENDING"

    started = client.post("/sync/dequeue", headers=_headers(admin)).json()
    assert started["entryId"] == entry["entryId"]
    assert started["status"] == "IN_PROGRESS"

    done = client.post(f"/sync/{entry['entryId']}/complete", headers=_headers(admin)).json()
    assert done["outcome"] == "accepted"
    assert done["entry"]["status"] == "COMPLETED"

    stats = client.get("/missions/m1/stats", headers=_headers(admin)).json()
    assert stats["validated"] == 1
    assert stats["completionRate"] == 1.0

    history = client.get("/missions/m1/history", headers=_headers(admin)).json()
    assert len(history) == 30
    assert history[-1]["validated"] == 1
    assert len(client.get("/missions/m1/history?days=3", headers=_headers(admin)).json()) == 3


def test_conflict_answers_409_then_resolves(client, admin):
    device = _device(client, admin)
    item = _item(client, admin)
    body = {"itemId": item["itemId"], "sourceDeviceId": device["deviceId"]}

    first = client.post("/sync/queue", json=body, headers=_headers(admin)).json()
    second = client.post("/sync/queue", json=body, headers=_headers(admin)).json()
    client.post("/sync/dequeue", headers=_headers(admin))
    client.post(f"/sync/{first['entryId']}/complete", headers=_headers(admin))
    client.post("/sync/dequeue", headers=_headers(admin))

    response = client.post(f"/sync/{second['entryId']}/complete?resolve=false", headers=_headers(admin))
    assert response.status_code == 409
    assert response.json()["resolutionRequired"] is True
    assert response.json()["currentVersion"] == 2

    response = client.post(f"/sync/{second['entryId']}/complete", headers=_headers(admin))
    assert response.status_code == 409
    assert response.json()["error"] == "ResolutionPending"

    response = client.post(f"/items/{item['itemId']}/resolve", json={"decision": "keepLocal"},
                           headers=_headers(admin))
    assert response.status_code == 200
    assert response.json()["item"]["status"] == "SYNCED"
    assert response.json()["entry"] is None


def test_permission_errors(client, service, admin, plain_user, make_device):
    assert client.post("/sync/dequeue", headers=_headers(plain_user)).status_code == 403

    other_device = make_device(service.create_user(Role.ADMIN))
    item = _item(client, admin)
    response = client.post("/sync/queue", headers=_headers(admin), json={
        "itemId": item["itemId"], "sourceDeviceId": other_device.device_id})
    assert response.status_code == 403


def test_unknown_references(client, admin):
    device = _device(client, admin)
    response = client.post("/sync/queue", headers=_headers(admin), json={
        "itemId": "i_missing", "sourceDeviceId": device["deviceId"]})
    assert response.status_code == 404
    assert client.post("/sync/q_missing/fail", json={}, headers=_headers(admin)).status_code == 404


def test_fail_entry(client, admin):
    device = _device(client, admin)
    item = _item(client, admin)
    entry = client.post("/sync/queue", headers=_headers(admin), json={
        "itemId": item["itemId"], "sourceDeviceId": device["deviceId"]}).json()

    # Still PENDING.
    response = client.post(f"/sync/{entry['entryId']}/fail", json={}, headers=_headers(admin))
    assert response.status_code == 409

    client.post("/sync/dequeue", headers=_headers(admin))
    response = client.post(f"/sync/{entry['entryId']}/fail",
                           json={"errorKind": "transfer", "error": "timeout"}, headers=_headers(admin))
    assert response.status_code == 200
    assert response.json()["errorKind"] == "transfer"
    assert client.get(f"/items/{item['itemId']}", headers=_headers(admin)).json()["status"] == "ERROR"


def test_sync_all(client, admin):
    device = _device(client, admin)
    items = [_item(client, admin) for _ in range(2)]
    requests = [{"itemId": i["itemId"], "sourceDeviceId": device["deviceId"]} for i in items]
    requests.append({"itemId": "i_missing", "sourceDeviceId": device["deviceId"]})

    response = client.post("/sync/all", json={"requests": requests}, headers=_headers(admin))
    assert response.status_code == 200
    assert response.json()["success"] == 2
    assert response.json()["failed"] == 1
    assert response.json()["errors"][0]["item_id"] == "i_missing"
