# tests/conftest.py
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Sequence, Set

import httpx
import pytest
import pytest_asyncio

from appblock.catalog import AppCatalog
from appblock.errors import RemoteError, RemoteErrorKind
from appblock.lifecycle import RuleLifecycle
from appblock.reconcile import Reconciler
from appblock.remote.base import RecurringWindow, RemotePolicy
from appblock.scheduler import ExpiryScheduler, RetryPolicy
from appblock.session import SessionContext
from appblock.store import RuleStore

BASE_URL = "https://unifi.test"
CSRF_TOKEN = "csrf-token-123"


# ---------- Fake enforcement client ----------

class FakeEnforcementClient:
    """In-memory controller implementing the EnforcementClient protocol, with call counters."""

    def __init__(self) -> None:
        self.objects: Dict[str, str] = {}     # remote id -> name
        self.created: List[dict] = []
        self.create_calls = 0
        self.delete_calls = 0
        self.list_calls = 0
        self.fail_create: Optional[RemoteError] = None
        self.fail_delete_ids: Set[str] = set()
        self.fail_delete_all: Optional[RemoteError] = None
        self.return_ids = True
        self._seq = 0

    def add_remote(self, name: str, remote_id: Optional[str] = None) -> str:
        self._seq += 1
        rid = remote_id or f"r{self._seq:04d}"
        self.objects[rid] = name
        return rid

    async def create_policy(
        self,
        name: str,
        app_ids: Sequence[str],
        target_devices: Sequence[str],
        enabled: bool,
        *,
        networks: Sequence[str] = (),
        schedule: Optional[RecurringWindow] = None,
    ) -> Optional[str]:
        self.create_calls += 1
        if self.fail_create is not None:
            raise self.fail_create
        rid = self.add_remote(name)
        self.created.append(
            {
                "id": rid,
                "name": name,
                "app_ids": list(app_ids),
                "devices": list(target_devices),
                "enabled": enabled,
                "networks": list(networks),
                "schedule": schedule,
            }
        )
        return rid if self.return_ids else None

    async def delete_policy(self, remote_id: str) -> None:
        self.delete_calls += 1
        if self.fail_delete_all is not None:
            raise self.fail_delete_all
        if remote_id in self.fail_delete_ids:
            raise RemoteError(RemoteErrorKind.SERVER_ERROR, "forced delete failure", 500)
        self.objects.pop(remote_id, None)

    async def list_policies(self) -> List[RemotePolicy]:
        self.list_calls += 1
        return [RemotePolicy(remote_id=rid, name=name) for rid, name in self.objects.items()]


# ---------- Fake UniFi controller (for httpx.MockTransport) ----------

_RULES_RE = re.compile(r"^/proxy/network/v2/api/site/(?P<site>[^/]+)/trafficrules(?:/(?P<id>[^/]+))?$")


class FakeController:
    """Minimal UniFi traffic-rule API; pass ``handler`` to httpx.MockTransport."""

    def __init__(self, username: str = "admin", password: str = "secret", token: str = CSRF_TOKEN) -> None:
        self.username = username
        self.password = password
        self.token = token
        self.rules: Dict[str, dict] = {}
        self.requests: List[httpx.Request] = []
        self.fail_status: Dict[str, int] = {}   # HTTP method -> forced status
        self.login_via_cookie = False
        self.networks = [
            {"_id": "n1", "name": "Default", "vlan": ""},
            {"_id": "n2", "name": "Kids", "vlan": 20},
            {"_id": "n3"},
        ]
        self.clients = [
            {"mac": "AA:BB:CC:DD:EE:01", "hostname": "switch"},
            {"mac": "aa:bb:cc:dd:ee:02", "name": "tablet"},
            {"hostname": "no-mac"},
        ]
        self._seq = 0

    def add_rule(self, description: str, rule_id: Optional[str] = None) -> str:
        self._seq += 1
        rid = rule_id or f"6600{self._seq:04d}"
        self.rules[rid] = {"_id": rid, "description": description, "action": "BLOCK"}
        return rid

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method

        if path == "/api/auth/login":
            body = json.loads(request.content or b"{}")
            if body.get("username") != self.username or body.get("password") != self.password:
                return httpx.Response(401, json={"error": "invalid credentials"})
            if self.login_via_cookie:
                return httpx.Response(200, json={}, headers={"set-cookie": f"TOKEN={self.token}; Path=/"})
            return httpx.Response(200, json={}, headers={"x-csrf-token": self.token})
        if path == "/api/auth/logout":
            return httpx.Response(200, json={})

        if request.headers.get("authorization") != f"Bearer {self.token}":
            return httpx.Response(401, json={"error": "unauthorized"})
        if method in self.fail_status:
            return httpx.Response(self.fail_status[method], text="forced failure")

        m = _RULES_RE.match(path)
        if m:
            rid = m.group("id")
            if method == "GET" and rid is None:
                return httpx.Response(200, json=list(self.rules.values()))
            if method == "POST" and rid is None:
                payload = json.loads(request.content)
                new_id = self.add_rule(payload["description"])
                self.rules[new_id].update(payload)
                return httpx.Response(201, json=self.rules[new_id])
            if method == "DELETE" and rid is not None:
                if self.rules.pop(rid, None) is None:
                    return httpx.Response(404, json={"error": "not found"})
                return httpx.Response(200, json={})
        if path.endswith("/rest/networkconf") and method == "GET":
            return httpx.Response(200, json={"meta": {"rc": "ok"}, "data": self.networks})
        if path.endswith("/stat/sta") and method == "GET":
            return httpx.Response(200, json={"meta": {"rc": "ok"}, "data": self.clients})
        return httpx.Response(404, json={"error": f"no route {method} {path}"})


# ---------- Fixtures ----------

@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "rules.json"


@pytest.fixture
def store(store_path: Path) -> RuleStore:
    return RuleStore(store_path)


@pytest.fixture
def session() -> SessionContext:
    return SessionContext(BASE_URL, credential=CSRF_TOKEN)


@pytest.fixture
def catalog() -> AppCatalog:
    return AppCatalog()


@pytest.fixture
def fake_client() -> FakeEnforcementClient:
    return FakeEnforcementClient()


@pytest_asyncio.fixture
async def scheduler() -> AsyncIterator[ExpiryScheduler]:
    sched = ExpiryScheduler(RetryPolicy(backoff_initial=0.01, backoff_max=0.05, jitter=0.0))
    yield sched
    await sched.cancel_all()


@pytest.fixture
def lifecycle(
    store: RuleStore,
    fake_client: FakeEnforcementClient,
    session: SessionContext,
    catalog: AppCatalog,
    scheduler: ExpiryScheduler,
) -> RuleLifecycle:
    return RuleLifecycle(store, fake_client, session, catalog, scheduler, remote_timeout=2.0)


@pytest.fixture
def reconciler(store: RuleStore, fake_client: FakeEnforcementClient, session: SessionContext) -> Reconciler:
    return Reconciler(store, fake_client, session, remote_timeout=2.0)
