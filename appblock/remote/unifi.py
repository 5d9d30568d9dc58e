# appblock/remote/unifi.py
"""
UniFi Network controller client.

Implements ``EnforcementClient`` on top of the traffic-rule API
(``/proxy/network/v2/api/site/{site}/trafficrules``) plus the login flow and
the two read-only listings the front door exposes (networks, clients).

Every call reads the session once, so address and credential always belong
together. Transport problems and non-2xx answers become ``RemoteError``; a 401
means the controller dropped our session and surfaces as ``NotAuthenticated``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from appblock.errors import NotAuthenticated, RemoteError, RemoteErrorKind
from appblock.models import ALL_DEVICES
from appblock.remote.base import RecurringWindow, RemotePolicy
from appblock.remote.http_client import AsyncHTTPClient
from appblock.session import SessionContext, SessionSnapshot

logger = logging.getLogger("appblock.remote.unifi")

CSRF_HEADER = "x-csrf-token"
TOKEN_COOKIE = "TOKEN"


@dataclass(frozen=True, slots=True)
class Network:
    id: str
    name: str
    vlan_id: Optional[int] = None


@dataclass(frozen=True, slots=True)
class ClientDevice:
    mac: str
    hostname: Optional[str] = None


def _short(text: str, limit: int = 200) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit] + "..."


class UniFiClient:
    def __init__(self, session: SessionContext, http: AsyncHTTPClient, *, site: str = "default") -> None:
        self._session = session
        self._http = http
        self.site = site

    @property
    def _rules_path(self) -> str:
        return f"/proxy/network/v2/api/site/{self.site}/trafficrules"

    # ---------- Session ----------

    async def login(self, username: str, password: str, base_url: Optional[str] = None) -> None:
        snap = await self._session.snapshot()
        base = (base_url or snap.base_url).rstrip("/")
        resp = await self._send("POST", f"{base}/api/auth/login", json_body={"username": username, "password": password})
        if resp.status_code in (400, 401, 403):
            raise NotAuthenticated("controller rejected the login")
        self._raise_for_status(resp)
        token = resp.headers.get(CSRF_HEADER) or resp.cookies.get(TOKEN_COOKIE)
        if not token:
            raise NotAuthenticated("controller login returned no session token")
        await self._session.set(token, base_url=base)

    async def logout(self) -> None:
        snap = await self._session.snapshot()
        if snap.credential is not None:
            try:
                await self._send("POST", f"{snap.base_url}/api/auth/logout", headers=self._auth_headers(snap))
            except RemoteError as exc:
                logger.info("Controller logout call failed, dropping the session anyway: %s", exc)
        await self._session.clear()

    # ---------- EnforcementClient ----------

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
        payload = self.build_rule_payload(name, app_ids, target_devices, enabled, networks=networks, schedule=schedule)
        resp = await self._call("POST", self._rules_path, json_body=payload)
        body = self._json(resp)
        remote_id = body.get("_id") if isinstance(body, dict) else None
        if not isinstance(remote_id, str) or not remote_id:
            # the object may exist; sync links it later by name
            logger.warning("Controller accepted %r but returned no _id", name)
            return None
        logger.info("Created traffic rule %s (%s)", remote_id, name)
        return remote_id

    async def delete_policy(self, remote_id: str) -> None:
        resp = await self._call("DELETE", f"{self._rules_path}/{remote_id}", allow_status=(404,))
        if resp.status_code == 404:
            logger.info("Traffic rule %s already gone", remote_id)
        else:
            logger.info("Deleted traffic rule %s", remote_id)

    async def list_policies(self) -> List[RemotePolicy]:
        resp = await self._call("GET", self._rules_path)
        policies: List[RemotePolicy] = []
        for entry in self._items(self._json(resp)):
            remote_id = entry.get("_id")
            name = entry.get("description")
            if not isinstance(remote_id, str) or not remote_id or not isinstance(name, str):
                logger.debug("Skipping traffic rule entry without _id/description: %r", entry)
                continue
            policies.append(RemotePolicy(remote_id=remote_id, name=name))
        return policies

    # ---------- Listings ----------

    async def list_networks(self) -> List[Network]:
        resp = await self._call("GET", f"/proxy/network/api/s/{self.site}/rest/networkconf")
        out: List[Network] = []
        for entry in self._items(self._json(resp)):
            name = entry.get("name")
            if not isinstance(name, str) or not name:
                continue
            vlan = entry.get("vlan")
            out.append(Network(id=str(entry.get("_id", "")), name=name, vlan_id=int(vlan) if str(vlan).isdigit() else None))
        return out

    async def list_clients(self) -> List[ClientDevice]:
        resp = await self._call("GET", f"/proxy/network/api/s/{self.site}/stat/sta")
        out: List[ClientDevice] = []
        for entry in self._items(self._json(resp)):
            mac = entry.get("mac")
            if not isinstance(mac, str) or not mac:
                continue
            hostname = entry.get("hostname") or entry.get("name")
            out.append(ClientDevice(mac=mac.lower(), hostname=hostname if isinstance(hostname, str) else None))
        return out

    # ---------- Payloads ----------

    @staticmethod
    def build_rule_payload(
        name: str,
        app_ids: Sequence[str],
        target_devices: Sequence[str],
        enabled: bool,
        *,
        networks: Sequence[str] = (),
        schedule: Optional[RecurringWindow] = None,
    ) -> Dict[str, Any]:
        if not target_devices or ALL_DEVICES in target_devices:
            devices: List[Dict[str, Any]] = [{"type": "ALL_CLIENTS"}]
        else:
            devices = [{"type": "CLIENT", "client_mac": mac} for mac in target_devices]

        if schedule is None:
            sched: Dict[str, Any] = {"mode": "ALWAYS"}
        else:
            sched = {
                "mode": "EVERY_WEEK",
                "repeat_on_days": [d.upper() for d in schedule.days],
                "time_all_day": False,
                "time_range_start": schedule.start.strftime("%H:%M"),
                "time_range_end": schedule.end.strftime("%H:%M"),
            }

        return {
            "action": "BLOCK",
            "description": name,
            "enabled": enabled,
            "logging": False,
            "matching_target": "APP",
            "app_ids": [int(a) if a.isdigit() else a for a in app_ids],
            "target_devices": devices,
            "network_ids": list(networks),
            "schedule": sched,
        }

    # ---------- Internals ----------

    @staticmethod
    def _auth_headers(snap: SessionSnapshot) -> Dict[str, str]:
        if snap.credential is None:
            raise NotAuthenticated()
        return {"Authorization": f"Bearer {snap.credential}", CSRF_HEADER: snap.credential}

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Any] = None,
        allow_status: Sequence[int] = (),
    ) -> httpx.Response:
        snap = await self._session.require()
        resp = await self._send(method, snap.base_url + path, json_body=json_body, headers=self._auth_headers(snap))
        if resp.status_code == 401:
            raise NotAuthenticated("controller session expired")
        if resp.status_code not in allow_status:
            self._raise_for_status(resp)
        return resp

    async def _send(
        self,
        method: str,
        url: str,
        *,
        json_body: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            return await self._http.request(method, url, json_body=json_body, headers=headers)
        except httpx.TimeoutException as exc:
            raise RemoteError(RemoteErrorKind.TIMEOUT, f"{method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise RemoteError(RemoteErrorKind.TRANSPORT, f"{method} {url}: {exc}") from exc

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.is_success:
            return
        raise RemoteError.from_status(resp.status_code, _short(resp.text) or resp.reason_phrase)

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteError(RemoteErrorKind.SERVER_ERROR, "controller returned invalid JSON", resp.status_code) from exc

    @staticmethod
    def _items(body: Any) -> List[Dict[str, Any]]:
        # v2 endpoints answer with a bare list, v1 with {"meta": ..., "data": [...]}
        if isinstance(body, dict):
            body = body.get("data", [])
        if not isinstance(body, list):
            return []
        return [e for e in body if isinstance(e, dict)]
