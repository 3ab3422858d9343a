"""Tests for the HTTP endpoints."""

import pytest

from app import create_app
from conftest import wait_until
from homerules.config import Settings
from homerules.core import Home


@pytest.fixture
async def client(tmp_path):
    settings = Settings(
        automations_file=str(tmp_path / "automations.json"),
        scenes_file=str(tmp_path / "scenes.json"),
    )
    home = Home(settings)
    app = create_app(home)
    async with app.test_app() as test_app:
        yield test_app.test_client(), home


async def test_state_roundtrip(client):
    test_client, _ = client

    response = await test_client.post("/api/states/sensor.temp", json={"state": "75", "attributes": {"unit": "F"}})
    assert response.status_code == 200

    response = await test_client.get("/api/states/sensor.temp")
    body = await response.get_json()
    assert body["state"] == "75"
    assert body["attributes"] == {"unit": "F"}

    response = await test_client.get("/api/states/sensor.missing")
    assert response.status_code == 404


async def test_invalid_state_body(client):
    test_client, _ = client
    response = await test_client.post("/api/states/sensor.temp", json={"attributes": {}})
    assert response.status_code == 400

    response = await test_client.post("/api/states/nodomain", json={"state": "on"})
    assert response.status_code == 400


async def test_install_and_trigger_automation(client):
    test_client, home = client
    automation = {
        "id": "porch",
        "triggers": [{"kind": "event", "event_type": "arrived"}],
        "actions": [
            {"kind": "call_service", "service": "light.turn_on", "target": {"entity_id": "light.porch"}}
        ],
    }

    response = await test_client.post("/api/automations", json=automation)
    assert response.status_code == 201
    response = await test_client.post("/api/automations", json=automation)
    assert response.status_code == 409

    response = await test_client.post("/api/events/arrived", json={"who": "guest"})
    assert (await response.get_json()) == {"matched": 1}
    await wait_until(lambda: home.store.get("light.porch") is not None)

    response = await test_client.get("/api/automations/porch/traces")
    traces = await response.get_json()
    assert traces[0]["trigger"] == "event arrived"

    response = await test_client.get("/api/automations")
    listed = await response.get_json()
    assert listed[0]["id"] == "porch"
    assert listed[0]["enabled"] is True

    response = await test_client.delete("/api/automations/porch")
    assert response.status_code == 200
    response = await test_client.post("/api/automations/porch/trigger")
    assert response.status_code == 404


async def test_service_call(client):
    test_client, home = client

    response = await test_client.post(
        "/api/services/switch.turn_on", json={"target": {"entity_id": "switch.fan"}}
    )
    assert response.status_code == 200
    assert home.store.get("switch.fan").state == "on"

    response = await test_client.post("/api/services/vacuum.dock", json={})
    assert response.status_code == 400


async def test_unknown_scene(client):
    test_client, _ = client
    response = await test_client.post("/api/scenes/missing")
    assert response.status_code == 404


async def test_listings(client):
    test_client, _ = client

    response = await test_client.get("/api/services")
    assert await response.get_json() == ["notify", "notify.log"]

    response = await test_client.get("/api/scenes")
    assert await response.get_json() == []
