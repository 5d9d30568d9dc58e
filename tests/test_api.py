# tests/test_api.py
"""
HTTP front door against the real engine and a fake controller.

Services are built with an httpx.MockTransport and handed to create_app, so
the lifespan does not own them; each test gets a fresh store on disk.
"""
from __future__ import annotations

import warnings
from pathlib import Path
from typing import AsyncIterator, Tuple

import httpx
import pytest
import pytest_asyncio

from appblock.api import create_app
from appblock.service import AppServices, build_services
from appblock.settings import ApiSettings, AppSettings, ControllerSettings, StoreSettings

from conftest import BASE_URL, FakeController

PROBLEM = "application/problem+json"


@pytest_asyncio.fixture
async def env(tmp_path: Path) -> AsyncIterator[Tuple[httpx.AsyncClient, FakeController, AppServices]]:
    controller = FakeController()
    settings = AppSettings(
        controller=ControllerSettings(base_url=BASE_URL, retries=0),
        store=StoreSettings(path=tmp_path / "rules.json"),
        api=ApiSettings(auto_login=False),
    )
    services = build_services(settings, transport=httpx.MockTransport(controller.handler))
    await services.store.load()
    app = create_app(services=services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, controller, services
    await services.stop()


async def _login(client: httpx.AsyncClient) -> None:
    r = await client.post("/api/login", json={"username": "admin", "password": "secret"})
    assert r.status_code == 200, r.text


def _rule(rule_id: str = "r1", **kw) -> dict:
    body = {"id": rule_id, "apps": ["Fortnite"], "rule_type": "permanent"}
    body.update(kw)
    return body


# ---------- session / health ----------

@pytest.mark.asyncio
async def test_healthz(env):
    client, _, _ = env
    r = await client.get("/healthz")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["rules"] == 0
    assert data["authenticated"] is False
    assert data["controller_breaker"] == "closed"


@pytest.mark.asyncio
async def test_login_and_logout(env):
    client, _, _ = env
    r = await client.post("/api/login", json={"username": "admin", "password": "secret"})
    assert r.json() == {"authenticated": True, "base_url": BASE_URL}

    r = await client.post("/api/logout")
    assert r.json()["authenticated"] is False


@pytest.mark.asyncio
async def test_login_with_wrong_password(env):
    client, _, _ = env
    r = await client.post("/api/login", json={"username": "admin", "password": "nope"})
    assert r.status_code == 401
    assert r.headers["content-type"].startswith(PROBLEM)
    assert r.headers["www-authenticate"] == "Bearer"
    assert r.json()["code"] == "not_authenticated"


# ---------- rules ----------

@pytest.mark.asyncio
async def test_declare_list_and_revoke(env):
    client, controller, _ = env
    await _login(client)

    r = await client.post("/api/rules", json=_rule(apps=["Fortnite", "Roblox"]))
    assert r.status_code == 201, r.text
    created = r.json()
    assert created["id"] == "r1"
    assert created["remote_id"] in controller.rules
    assert controller.rules[created["remote_id"]]["description"] == "AppBlock: Fortnite,Roblox"

    r = await client.get("/api/rules")
    assert [x["id"] for x in r.json()] == ["r1"]

    r = await client.delete("/api/rules/r1")
    assert r.status_code == 200
    assert controller.rules == {}
    assert (await client.get("/api/rules")).json() == []


@pytest.mark.asyncio
async def test_duplicate_id_is_conflict(env):
    client, _, _ = env
    await _login(client)
    assert (await client.post("/api/rules", json=_rule())).status_code == 201
    r = await client.post("/api/rules", json=_rule(apps=["YouTube"]))
    assert r.status_code == 409
    assert r.json()["code"] == "duplicate_id"


@pytest.mark.asyncio
async def test_unknown_apps_are_rejected_without_remote_call(env):
    client, controller, _ = env
    await _login(client)
    r = await client.post("/api/rules", json=_rule(apps=["Minecraft"]))
    assert r.status_code == 400
    assert r.json()["code"] == "validation_error"
    assert controller.rules == {}


@pytest.mark.asyncio
async def test_missing_duration_is_a_validation_error(env):
    client, _, _ = env
    await _login(client)
    r = await client.post("/api/rules", json=_rule(rule_type="duration"))
    assert r.status_code == 400
    assert "duration_hours" in r.json()["detail"]


@pytest.mark.asyncio
async def test_huge_duration_is_a_validation_error(env):
    client, controller, _ = env
    await _login(client)
    r = await client.post("/api/rules", json=_rule(rule_type="duration", duration_hours=1e8))
    assert r.status_code == 400
    assert r.json()["code"] == "validation_error"
    assert controller.rules == {}


@pytest.mark.asyncio
async def test_declare_without_login(env):
    client, controller, _ = env
    r = await client.post("/api/rules", json=_rule())
    assert r.status_code == 401
    assert controller.requests == []


@pytest.mark.asyncio
async def test_schema_error_lists_fields(env):
    client, _, _ = env
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        r = await client.post("/api/rules", json={"id": "r1", "apps": "Fortnite"})
    assert not [w for w in caught if "422" in str(w.message)]
    assert r.status_code == 422
    body = r.json()
    assert body["code"] == "schema_error"
    assert {tuple(f["loc"])[-1] for f in body["fields"]} >= {"apps", "rule_type"}


@pytest.mark.asyncio
async def test_revoke_unknown_rule(env):
    client, _, _ = env
    r = await client.delete("/api/rules/ghost")
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_controller_refusal_maps_to_bad_request(env):
    client, controller, services = env
    await _login(client)
    controller.fail_status["POST"] = 400
    r = await client.post("/api/rules", json=_rule())
    assert r.status_code == 400
    assert r.json()["upstream_status"] == 400
    assert await services.store.count() == 0


@pytest.mark.asyncio
async def test_failed_delete_is_bad_gateway_and_rule_stays(env):
    client, controller, _ = env
    await _login(client)
    await client.post("/api/rules", json=_rule())
    controller.fail_status["DELETE"] = 500

    r = await client.delete("/api/rules/r1")
    assert r.status_code == 502
    assert r.json()["code"] == "remote_rejected"
    assert [x["id"] for x in (await client.get("/api/rules")).json()] == ["r1"]


@pytest.mark.asyncio
async def test_legacy_create_rule_generates_an_id(env):
    client, controller, _ = env
    await _login(client)
    r = await client.post(
        "/api/create_rule",
        json={"apps": ["YouTube"], "block_type": "hourly", "duration_hours": 2},
    )
    assert r.status_code == 201, r.text
    data = r.json()
    assert data["id"].startswith("rule-")
    assert data["policy"]["rule_type"] == "duration"
    assert len(controller.rules) == 1


@pytest.mark.asyncio
async def test_legacy_create_rule_with_bad_type(env):
    client, _, _ = env
    await _login(client)
    r = await client.post("/api/create_rule", json={"apps": ["YouTube"], "block_type": "forever"})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_revoke_all(env):
    client, controller, services = env
    await _login(client)
    for i, app in enumerate(["Fortnite", "Roblox", "YouTube"]):
        await client.post("/api/rules", json=_rule(f"r{i}", apps=[app]))

    r = await client.delete("/api/rules")
    assert r.status_code == 200
    assert r.json() == {"deleted_count": 3, "cleared_count": 3, "failures": []}
    assert controller.rules == {}
    assert await services.store.count() == 0


# ---------- listings ----------

@pytest.mark.asyncio
async def test_apps_networks_clients(env):
    client, _, _ = env
    assert (await client.get("/api/apps")).json() == ["Fortnite", "Roblox", "YouTube"]
    assert (await client.get("/api/networks")).status_code == 401

    await _login(client)
    networks = (await client.get("/api/networks")).json()
    assert [n["name"] for n in networks] == ["Default", "Kids"]
    clients = (await client.get("/api/clients")).json()
    assert clients[0] == {"mac": "aa:bb:cc:dd:ee:01", "hostname": "switch"}


# ---------- reconciliation ----------

@pytest.mark.asyncio
async def test_sync_cleanup_and_maintain(env):
    client, controller, services = env
    await _login(client)
    orphan = controller.add_rule("AppBlock: Roblox")
    manual = controller.add_rule("Parental: bedtime")

    r = await client.post("/api/rules/cleanup")
    assert r.json()["deleted"] == [orphan]
    assert set(controller.rules) == {manual}

    r = await client.post("/api/rules/sync")
    assert r.json()["linked_count"] == 0

    r = await client.post("/api/rules/maintain")
    body = r.json()
    assert body["sync"]["linked_count"] == 0
    assert body["cleanup"]["deleted_count"] == 0
    assert await services.store.count() == 0
