# appblock/lifecycle.py
"""
Rule lifecycle controller.

Per rule: Pending -> Active -> Removed, with CreateFailed / DeleteFailed as
the failure exits. The controller is the only writer that pairs a remote call
with a store mutation:

- declare: validate, create remotely, then persist (nothing is stored when the
  controller refuses the create).
- revoke: remove locally, delete remotely, and put the record back when the
  remote delete fails so the rule is never lost while still enforced.
- revoke_all: best-effort remote deletes, then one unconditional local clear.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, TypeVar

from appblock.catalog import AppCatalog
from appblock.errors import (
    AppBlockError,
    DuplicateRuleId,
    InvalidApps,
    NotAuthenticated,
    PersistenceError,
    RemoteError,
    RemoteErrorKind,
    RemoteRejected,
    RuleNotFound,
)
from appblock.logging_setup import log_context
from appblock.models import DeclaredRule, RecurringPolicy, RuleIntent, remote_name_for, utcnow
from appblock.remote.base import EnforcementClient, RecurringWindow
from appblock.scheduler import ExpiryScheduler
from appblock.session import SessionContext
from appblock.store import RuleStore

logger = logging.getLogger("appblock.lifecycle")

T = TypeVar("T")


class RuleState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REMOVED = "removed"
    CREATE_FAILED = "create_failed"
    DELETE_FAILED = "delete_failed"


@dataclass
class RevokeFailure:
    rule_id: str
    remote_id: str
    error: str


@dataclass
class RevokeAllReport:
    deleted_count: int = 0
    cleared_count: int = 0
    failures: List[RevokeFailure] = field(default_factory=list)


@dataclass
class RecoveryReport:
    expired: List[str] = field(default_factory=list)
    armed: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)


class RuleLifecycle:
    def __init__(
        self,
        store: RuleStore,
        client: EnforcementClient,
        session: SessionContext,
        catalog: AppCatalog,
        scheduler: ExpiryScheduler,
        *,
        remote_timeout: float = 15.0,
        expiry_grace_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._client = client
        self._session = session
        self._catalog = catalog
        self._scheduler = scheduler
        self._remote_timeout = remote_timeout
        self._grace = expiry_grace_seconds
        self._clock = clock

    # ---------- Helpers ----------

    async def _remote(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._remote_timeout)
        except asyncio.TimeoutError as exc:
            raise RemoteError(RemoteErrorKind.TIMEOUT, f"no answer within {self._remote_timeout}s") from exc

    def _transition(self, rule_id: str, state: RuleState, level: int = logging.INFO, detail: str = "") -> None:
        logger.log(level, "Rule %s -> %s%s", rule_id, state.value, f" ({detail})" if detail else "", extra={"state": state.value})

    def _arm(self, rule: DeclaredRule) -> None:
        end_at = rule.end_at
        if end_at is None:
            return
        self._scheduler.schedule_expiry(rule.id, end_at, functools.partial(self.expire, rule.id, end_at))

    async def _discard_remote(self, remote_id: Optional[str]) -> None:
        if remote_id is None:
            return
        try:
            await self._remote(self._client.delete_policy(remote_id))
        except (RemoteError, NotAuthenticated) as exc:
            logger.warning("Could not discard remote object %s, left for cleanup: %s", remote_id, exc)

    # ---------- Declare ----------

    async def declare(self, intent: RuleIntent) -> DeclaredRule:
        with log_context(operation="declare", rule_id=intent.id):
            apps = [a for a in intent.apps if a in self._catalog]
            app_ids = self._catalog.resolve_app_ids(apps)
            if not app_ids:
                raise InvalidApps(intent.apps)
            now = self._clock()
            policy = intent.build_policy(now)

            if await self._store.contains(intent.id):
                raise DuplicateRuleId(intent.id)
            await self._session.require()

            schedule = None
            if isinstance(policy, RecurringPolicy):
                schedule = RecurringWindow(days=tuple(policy.days), start=policy.start, end=policy.end)

            self._transition(intent.id, RuleState.PENDING, logging.DEBUG)
            try:
                remote_id = await self._remote(
                    self._client.create_policy(
                        remote_name_for(apps),
                        app_ids,
                        intent.devices,
                        intent.status == "active",
                        networks=intent.networks,
                        schedule=schedule,
                    )
                )
            except RemoteError as exc:
                self._transition(intent.id, RuleState.CREATE_FAILED, logging.WARNING, str(exc))
                raise RemoteRejected(exc, "create") from exc

            rule = DeclaredRule(
                id=intent.id,
                apps=apps,
                devices=intent.devices,
                networks=intent.networks,
                status=intent.status,
                created_at=now,
                policy=policy,
                remote_id=remote_id,
            )
            try:
                await self._store.add(rule)
            except DuplicateRuleId:
                # a concurrent declare with the same id got stored first
                await self._discard_remote(remote_id)
                raise
            except PersistenceError:
                self._arm(rule)
                raise
            self._arm(rule)
            self._transition(rule.id, RuleState.ACTIVE, detail=f"remote_id={remote_id}")
            return rule

    # ---------- Revoke ----------

    async def revoke(self, rule_id: str) -> DeclaredRule:
        with log_context(operation="revoke", rule_id=rule_id):
            current = await self._store.get(rule_id)
            if current is None:
                raise RuleNotFound(rule_id)
            if current.remote_id is not None:
                await self._session.require()

            rule = await self._store.remove(rule_id)
            if rule is None:
                raise RuleNotFound(rule_id)
            if rule.remote_id is None:
                self._transition(rule_id, RuleState.REMOVED, detail="local only")
                return rule

            try:
                await self._remote(self._client.delete_policy(rule.remote_id))
            except (RemoteError, NotAuthenticated) as exc:
                self._transition(rule_id, RuleState.DELETE_FAILED, logging.WARNING, str(exc))
                await self._reinsert(rule)
                if isinstance(exc, NotAuthenticated):
                    raise
                raise RemoteRejected(exc, "delete") from exc

            self._transition(rule_id, RuleState.REMOVED, detail=f"remote_id={rule.remote_id}")
            return rule

    async def _reinsert(self, rule: DeclaredRule) -> None:
        try:
            await self._store.add(rule)
        except DuplicateRuleId:
            logger.error(
                "Rule %s was re-declared while its delete failed; remote object %s left for cleanup",
                rule.id, rule.remote_id,
            )
        except PersistenceError:
            logger.error("Rule %s restored in memory but not on disk", rule.id)

    async def expire(self, rule_id: str, end_at: datetime) -> DeclaredRule:
        """Expiry-timer entry point: revoke only the rule generation the timer was armed for."""
        current = await self._store.get(rule_id)
        if current is None or current.end_at != end_at:
            raise RuleNotFound(rule_id)
        return await self.revoke(rule_id)

    async def revoke_all(self) -> RevokeAllReport:
        with log_context(operation="revoke_all"):
            rules = await self._store.snapshot()
            linked = [(r, r.remote_id) for r in rules if r.remote_id is not None]
            if linked:
                await self._session.require()

            report = RevokeAllReport()
            for rule, remote_id in linked:
                try:
                    await self._remote(self._client.delete_policy(remote_id))
                    report.deleted_count += 1
                except (RemoteError, NotAuthenticated) as exc:
                    self._transition(rule.id, RuleState.DELETE_FAILED, logging.WARNING, str(exc))
                    report.failures.append(RevokeFailure(rule.id, remote_id, str(exc)))

            report.cleared_count = await self._store.clear_all()
            logger.info(
                "Revoked all rules: %d remote delete(s), %d failure(s), %d local record(s) cleared",
                report.deleted_count, len(report.failures), report.cleared_count,
            )
            return report

    # ---------- Reads / startup ----------

    async def list_rules(self) -> List[DeclaredRule]:
        return await self._store.snapshot()

    async def recover(self) -> RecoveryReport:
        """
        Re-arm expiry timers after a restart.

        Must run right after ``RuleStore.load`` and before serving requests.
        Rules whose end already passed (or is within the grace window) are
        revoked right here; a failed revoke is handed to the scheduler, which
        retries it with backoff.
        """
        report = RecoveryReport()
        now = self._clock()
        for rule in await self._store.snapshot():
            end_at = rule.end_at
            if end_at is None:
                continue
            if (end_at - now).total_seconds() > self._grace:
                self._arm(rule)
                report.armed.append(rule.id)
                continue
            try:
                await self.revoke(rule.id)
                report.expired.append(rule.id)
            except RuleNotFound:
                continue
            except AppBlockError as exc:
                logger.warning("Expired rule %s could not be revoked at startup: %s", rule.id, exc)
                self._arm(rule)
                report.deferred.append(rule.id)
        logger.info(
            "Recovery done: %d expired, %d armed, %d deferred",
            len(report.expired), len(report.armed), len(report.deferred),
        )
        return report
