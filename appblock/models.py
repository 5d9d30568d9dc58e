# appblock/models.py
"""
Declared-rule data model.

A declared rule is the operator's persisted intent: block ``apps`` for
``devices`` under one time policy. The time policy is a tagged union keyed by
``rule_type`` so that every variant carries exactly the fields it needs:

- permanent: nothing
- duration:  hours + the resolved absolute end
- until:     absolute end
- recurring: weekdays + daily start/end wall-clock times

``RuleIntent`` is the flat shape callers post; ``RuleIntent.build_policy``
turns it into one of the policy variants or raises ``MissingField``.
"""

from __future__ import annotations

import re
from datetime import datetime, time, timedelta, timezone
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from appblock.errors import MissingField, RuleValidationError

__all__ = [
    "ALL_DEVICES",
    "REMOTE_NAME_PREFIX",
    "WEEKDAYS",
    "RuleType",
    "RuleStatus",
    "PermanentPolicy",
    "DurationPolicy",
    "UntilPolicy",
    "RecurringPolicy",
    "RulePolicy",
    "DeclaredRule",
    "RuleIntent",
    "RuleStoreDocument",
    "remote_name_for",
    "parse_clock",
    "utcnow",
]

ALL_DEVICES = "all"
REMOTE_NAME_PREFIX = "AppBlock: "
WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

RuleType = Literal["permanent", "duration", "until", "recurring"]
RuleStatus = Literal["active", "disabled"]
Weekday = Literal["mon", "tue", "wed", "thu", "fri", "sat", "sun"]

_MAC_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
_CLOCK_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def remote_name_for(apps: List[str]) -> str:
    """Deterministic remote object name; shared by create, sync and cleanup."""
    return REMOTE_NAME_PREFIX + ",".join(apps)


def parse_clock(value: str) -> time:
    m = _CLOCK_RE.match(value.strip())
    if not m:
        raise RuleValidationError(f"invalid wall-clock time {value!r}, expected HH:MM")
    return time(hour=int(m.group(1)), minute=int(m.group(2)))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        # naive timestamps are taken as local wall-clock time
        value = value.astimezone()
    return value.astimezone(timezone.utc)


def _dedupe(items: List[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for item in items:
        item = item.strip()
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out


# -----------------------------
# Time policies
# -----------------------------

class PermanentPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_type: Literal["permanent"] = "permanent"


class DurationPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_type: Literal["duration"] = "duration"
    hours: float = Field(gt=0)
    end_at: datetime

    @field_validator("end_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class UntilPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_type: Literal["until"] = "until"
    end_at: datetime

    @field_validator("end_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class RecurringPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_type: Literal["recurring"] = "recurring"
    days: List[Weekday] = Field(min_length=1)
    start: time
    end: time

    @model_validator(mode="after")
    def _window(self) -> "RecurringPolicy":
        if self.start == self.end:
            raise ValueError("recurring window start and end must differ")
        return self


RulePolicy = Annotated[
    Union[PermanentPolicy, DurationPolicy, UntilPolicy, RecurringPolicy],
    Field(discriminator="rule_type"),
]


# -----------------------------
# Declared rule
# -----------------------------

class DeclaredRule(BaseModel):
    """One persisted rule. Immutable; changes go through ``model_copy``."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    apps: List[str] = Field(min_length=1)
    devices: List[str] = Field(min_length=1)
    networks: List[str] = Field(default_factory=list)
    status: RuleStatus = "active"
    created_at: datetime
    policy: RulePolicy
    remote_id: Optional[str] = None

    @property
    def rule_type(self) -> str:
        return self.policy.rule_type

    @property
    def end_at(self) -> Optional[datetime]:
        if isinstance(self.policy, (DurationPolicy, UntilPolicy)):
            return self.policy.end_at
        return None

    @property
    def remote_name(self) -> str:
        return remote_name_for(self.apps)

    def with_remote_id(self, remote_id: Optional[str]) -> "DeclaredRule":
        return self.model_copy(update={"remote_id": remote_id})


# -----------------------------
# Inbound intent
# -----------------------------

class RuleIntent(BaseModel):
    """Flat declaration as posted by callers."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1, max_length=128)
    apps: List[str] = Field(min_length=1)
    rule_type: RuleType
    devices: List[str] = Field(default_factory=lambda: [ALL_DEVICES])
    networks: List[str] = Field(default_factory=list)
    status: RuleStatus = "active"
    duration_hours: Optional[float] = Field(default=None, gt=0)
    until: Optional[str] = None
    recurring_days: Optional[List[str]] = None
    recurring_start: Optional[str] = None
    recurring_end: Optional[str] = None

    @field_validator("id")
    @classmethod
    def _strip_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("id must not be blank")
        return v

    @field_validator("rule_type", mode="before")
    @classmethod
    def _legacy_type(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip().lower()
            # "hourly" is what the first UI posted
            if v == "hourly":
                return "duration"
        return v

    @field_validator("apps", "networks")
    @classmethod
    def _clean(cls, v: List[str]) -> List[str]:
        return _dedupe(v)

    @field_validator("devices")
    @classmethod
    def _devices(cls, v: List[str]) -> List[str]:
        devices = [d.lower() for d in _dedupe(v)]
        if not devices or ALL_DEVICES in devices:
            return [ALL_DEVICES]
        for mac in devices:
            if not _MAC_RE.match(mac):
                raise ValueError(f"invalid MAC address {mac!r}")
        return devices

    @field_validator("recurring_days")
    @classmethod
    def _days(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return None
        days: List[str] = []
        for raw in v:
            day = raw.strip().lower()[:3]
            if day not in WEEKDAYS:
                raise ValueError(f"unknown weekday {raw!r}")
            if day not in days:
                days.append(day)
        return days

    def build_policy(self, now: Optional[datetime] = None) -> Union[PermanentPolicy, DurationPolicy, UntilPolicy, RecurringPolicy]:
        now = now or utcnow()
        if self.rule_type == "permanent":
            return PermanentPolicy()
        if self.rule_type == "duration":
            if self.duration_hours is None:
                raise MissingField("duration_hours", self.rule_type)
            try:
                end_at = now + timedelta(hours=self.duration_hours)
            except OverflowError as exc:
                raise RuleValidationError(f"duration_hours {self.duration_hours:g} is out of range") from exc
            return DurationPolicy(hours=self.duration_hours, end_at=end_at)
        if self.rule_type == "until":
            if not self.until:
                raise MissingField("until", self.rule_type)
            return UntilPolicy(end_at=self._resolve_until(self.until, now))
        # recurring
        if not self.recurring_days:
            raise MissingField("recurring_days", self.rule_type)
        if not self.recurring_start:
            raise MissingField("recurring_start", self.rule_type)
        if not self.recurring_end:
            raise MissingField("recurring_end", self.rule_type)
        try:
            return RecurringPolicy(
                days=self.recurring_days,
                start=parse_clock(self.recurring_start),
                end=parse_clock(self.recurring_end),
            )
        except ValueError as exc:
            raise RuleValidationError(str(exc)) from exc

    @staticmethod
    def _resolve_until(value: str, now: datetime) -> datetime:
        if _CLOCK_RE.match(value.strip()):
            # wall-clock time: next occurrence in local time
            local_now = now.astimezone()
            end = datetime.combine(local_now.date(), parse_clock(value), tzinfo=local_now.tzinfo)
            if end <= local_now:
                end += timedelta(days=1)
            return end.astimezone(timezone.utc)
        try:
            end = _as_utc(datetime.fromisoformat(value.strip()))
        except ValueError as exc:
            raise RuleValidationError(f"invalid until value {value!r}") from exc
        if end <= now:
            raise RuleValidationError(f"until {value!r} is in the past")
        return end


# -----------------------------
# Persisted container
# -----------------------------

class RuleStoreDocument(BaseModel):
    rules: List[DeclaredRule] = Field(default_factory=list)
    created_at: datetime
    last_updated: datetime

    @classmethod
    def empty(cls, now: Optional[datetime] = None) -> "RuleStoreDocument":
        now = now or utcnow()
        return cls(rules=[], created_at=now, last_updated=now)
