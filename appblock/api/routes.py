# appblock/api/routes.py
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, Request, status
from pydantic import ValidationError

from appblock.api.schemas import (
    CleanupOut,
    ClientOut,
    HealthOut,
    LegacyRuleRequest,
    LoginRequest,
    MaintenanceOut,
    NetworkOut,
    RevokeAllOut,
    SessionOut,
    SyncOut,
)
from appblock.errors import RemoteError, RemoteRejected, RuleValidationError
from appblock.models import DeclaredRule, RuleIntent
from appblock.service import AppServices

logger = logging.getLogger("appblock.api.routes")

router = APIRouter()


def get_services(request: Request) -> AppServices:
    return request.app.state.services


# ---------- Health / session ----------

@router.get("/healthz", response_model=HealthOut, tags=["health"])
async def healthz(services: AppServices = Depends(get_services)) -> HealthOut:
    return HealthOut(
        version=services.settings.version,
        rules=await services.store.count(),
        authenticated=await services.session.is_authenticated(),
        pending_expiries=len(services.scheduler.pending()),
        controller_breaker=services.http.breaker_state,
    )


@router.post("/api/login", response_model=SessionOut, tags=["session"])
async def login(body: LoginRequest, services: AppServices = Depends(get_services)) -> SessionOut:
    await services.client.login(body.username, body.password.get_secret_value(), base_url=body.base_url)
    snap = await services.session.snapshot()
    return SessionOut(authenticated=snap.authenticated, base_url=snap.base_url)


@router.post("/api/logout", response_model=SessionOut, tags=["session"])
async def logout(services: AppServices = Depends(get_services)) -> SessionOut:
    await services.client.logout()
    snap = await services.session.snapshot()
    return SessionOut(authenticated=snap.authenticated, base_url=snap.base_url)


# ---------- Listings ----------

@router.get("/api/apps", response_model=List[str], tags=["catalog"])
async def list_apps(services: AppServices = Depends(get_services)) -> List[str]:
    return services.catalog.names()


@router.get("/api/networks", response_model=List[NetworkOut], tags=["catalog"])
async def list_networks(services: AppServices = Depends(get_services)) -> List[NetworkOut]:
    try:
        networks = await services.client.list_networks()
    except RemoteError as exc:
        raise RemoteRejected(exc, "list networks") from exc
    return [NetworkOut(id=n.id, name=n.name, vlan_id=n.vlan_id) for n in networks]


@router.get("/api/clients", response_model=List[ClientOut], tags=["catalog"])
async def list_clients(services: AppServices = Depends(get_services)) -> List[ClientOut]:
    try:
        clients = await services.client.list_clients()
    except RemoteError as exc:
        raise RemoteRejected(exc, "list clients") from exc
    return [ClientOut(mac=c.mac, hostname=c.hostname) for c in clients]


# ---------- Rules ----------

@router.get("/api/rules", response_model=List[DeclaredRule], tags=["rules"])
async def list_rules(services: AppServices = Depends(get_services)) -> List[DeclaredRule]:
    return await services.lifecycle.list_rules()


@router.post("/api/rules", response_model=DeclaredRule, status_code=status.HTTP_201_CREATED, tags=["rules"])
async def declare_rule(intent: RuleIntent, services: AppServices = Depends(get_services)) -> DeclaredRule:
    return await services.lifecycle.declare(intent)


@router.post(
    "/api/create_rule",
    response_model=DeclaredRule,
    status_code=status.HTTP_201_CREATED,
    tags=["rules"],
    deprecated=True,
)
async def create_rule_legacy(body: LegacyRuleRequest, services: AppServices = Depends(get_services)) -> DeclaredRule:
    try:
        intent = body.to_intent()
    except ValidationError as exc:
        first = exc.errors()[0]
        raise RuleValidationError(f"{'.'.join(str(p) for p in first.get('loc', ()))}: {first.get('msg')}") from exc
    return await services.lifecycle.declare(intent)


@router.delete("/api/rules/{rule_id}", response_model=DeclaredRule, tags=["rules"])
async def revoke_rule(rule_id: str, services: AppServices = Depends(get_services)) -> DeclaredRule:
    return await services.lifecycle.revoke(rule_id)


@router.delete("/api/rules", response_model=RevokeAllOut, tags=["rules"])
async def revoke_all(services: AppServices = Depends(get_services)) -> RevokeAllOut:
    return RevokeAllOut.from_report(await services.lifecycle.revoke_all())


# ---------- Reconciliation ----------

@router.post("/api/rules/sync", response_model=SyncOut, tags=["reconcile"])
async def sync_rules(services: AppServices = Depends(get_services)) -> SyncOut:
    return SyncOut.from_report(await services.reconciler.sync())


@router.post("/api/rules/cleanup", response_model=CleanupOut, tags=["reconcile"])
async def cleanup_rules(services: AppServices = Depends(get_services)) -> CleanupOut:
    return CleanupOut.from_report(await services.reconciler.cleanup())


@router.post("/api/rules/maintain", response_model=MaintenanceOut, tags=["reconcile"])
async def maintain_rules(services: AppServices = Depends(get_services)) -> MaintenanceOut:
    return MaintenanceOut.from_report(await services.reconciler.maintain())
