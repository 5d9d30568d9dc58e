# appblock/api/schemas.py
"""Request and response bodies of the HTTP front door."""

from __future__ import annotations

import uuid
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from appblock.lifecycle import RevokeAllReport
from appblock.models import ALL_DEVICES, RuleIntent
from appblock.reconcile import CleanupReport, MaintenanceReport, SyncReport


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(min_length=1)
    password: SecretStr
    base_url: Optional[str] = None


class SessionOut(BaseModel):
    authenticated: bool
    base_url: str


class HealthOut(BaseModel):
    status: str = "ok"
    version: str
    rules: int
    authenticated: bool
    pending_expiries: int
    controller_breaker: str


class LegacyRuleRequest(BaseModel):
    """Body posted by the first single-page UI; it never sent an id."""

    apps: List[str] = Field(min_length=1)
    block_type: str
    duration_hours: Optional[float] = None
    until_time: Optional[str] = None
    recurring_days: Optional[List[str]] = None
    recurring_start: Optional[str] = None
    recurring_end: Optional[str] = None
    networks: List[str] = Field(default_factory=list)
    devices: List[str] = Field(default_factory=list)

    def to_intent(self) -> RuleIntent:
        return RuleIntent(
            id=f"rule-{uuid.uuid4().hex[:12]}",
            apps=self.apps,
            rule_type=self.block_type,  # type: ignore[arg-type]
            devices=self.devices or [ALL_DEVICES],
            networks=self.networks,
            duration_hours=self.duration_hours,
            until=self.until_time,
            recurring_days=self.recurring_days,
            recurring_start=self.recurring_start,
            recurring_end=self.recurring_end,
        )


class NetworkOut(BaseModel):
    id: str
    name: str
    vlan_id: Optional[int] = None


class ClientOut(BaseModel):
    mac: str
    hostname: Optional[str] = None


class RevokeFailureOut(BaseModel):
    rule_id: str
    remote_id: str
    error: str


class RevokeAllOut(BaseModel):
    deleted_count: int
    cleared_count: int
    failures: List[RevokeFailureOut]

    @classmethod
    def from_report(cls, report: RevokeAllReport) -> "RevokeAllOut":
        return cls(
            deleted_count=report.deleted_count,
            cleared_count=report.cleared_count,
            failures=[RevokeFailureOut(rule_id=f.rule_id, remote_id=f.remote_id, error=f.error) for f in report.failures],
        )


class SyncOut(BaseModel):
    linked_count: int
    linked: Dict[str, str]
    unmatched: List[str]
    errors: Dict[str, str]

    @classmethod
    def from_report(cls, report: SyncReport) -> "SyncOut":
        return cls(
            linked_count=report.linked_count,
            linked=dict(report.linked),
            unmatched=list(report.unmatched),
            errors=dict(report.errors),
        )


class CleanupFailureOut(BaseModel):
    remote_id: str
    name: str
    error: str


class CleanupOut(BaseModel):
    deleted_count: int
    deleted: List[str]
    failures: List[CleanupFailureOut]

    @classmethod
    def from_report(cls, report: CleanupReport) -> "CleanupOut":
        return cls(
            deleted_count=report.deleted_count,
            deleted=list(report.deleted),
            failures=[CleanupFailureOut(remote_id=f.remote_id, name=f.name, error=f.error) for f in report.failures],
        )


class MaintenanceOut(BaseModel):
    sync: SyncOut
    cleanup: CleanupOut

    @classmethod
    def from_report(cls, report: MaintenanceReport) -> "MaintenanceOut":
        return cls(sync=SyncOut.from_report(report.sync), cleanup=CleanupOut.from_report(report.cleanup))
