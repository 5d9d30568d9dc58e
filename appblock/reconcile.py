# appblock/reconcile.py
"""
Reconciliation between declared rules and the controller's enforcement objects.

sync     links unlinked records to remote objects carrying their derived name.
cleanup  deletes remote objects with the reserved name prefix that no record owns.
maintain runs sync, then cleanup (sync may link objects cleanup would delete).

Both passes work on a snapshot and never block declare/revoke while the remote
enumeration is in flight; rules created after the snapshot are picked up by the
next pass.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Set

from appblock.errors import NotAuthenticated, PersistenceError, RemoteError, RemoteErrorKind, RemoteRejected, RuleNotFound
from appblock.logging_setup import log_context
from appblock.models import REMOTE_NAME_PREFIX
from appblock.remote.base import EnforcementClient, RemotePolicy
from appblock.session import SessionContext
from appblock.store import RuleStore

logger = logging.getLogger("appblock.reconcile")


@dataclass
class SyncReport:
    linked: Dict[str, str] = field(default_factory=dict)   # rule id -> remote id
    unmatched: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def linked_count(self) -> int:
        return len(self.linked)


@dataclass
class CleanupFailure:
    remote_id: str
    name: str
    error: str


@dataclass
class CleanupReport:
    deleted: List[str] = field(default_factory=list)
    failures: List[CleanupFailure] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)


@dataclass
class MaintenanceReport:
    sync: SyncReport
    cleanup: CleanupReport


class Reconciler:
    def __init__(
        self,
        store: RuleStore,
        client: EnforcementClient,
        session: SessionContext,
        *,
        remote_timeout: float = 15.0,
    ) -> None:
        self._store = store
        self._client = client
        self._session = session
        self._remote_timeout = remote_timeout

    async def _enumerate(self) -> List[RemotePolicy]:
        await self._session.require()
        try:
            policies = await asyncio.wait_for(self._client.list_policies(), timeout=self._remote_timeout)
        except asyncio.TimeoutError as exc:
            err = RemoteError(RemoteErrorKind.TIMEOUT, f"no answer within {self._remote_timeout}s")
            raise RemoteRejected(err, "list") from exc
        except RemoteError as exc:
            raise RemoteRejected(exc, "list") from exc
        valid: List[RemotePolicy] = []
        for p in policies:
            if not p.remote_id or not isinstance(p.name, str):
                logger.warning("Skipping malformed remote policy entry: %r", p)
                continue
            valid.append(p)
        return valid

    async def sync(self) -> SyncReport:
        with log_context(operation="sync"):
            rules = await self._store.snapshot()
            report = SyncReport()
            unlinked = [r for r in rules if r.remote_id is None]
            if not unlinked:
                logger.debug("Sync: every rule already linked")
                return report

            remote = await self._enumerate()
            claimed: Set[str] = {r.remote_id for r in rules if r.remote_id is not None}
            candidates: Dict[str, List[str]] = {}
            for p in remote:
                if p.remote_id not in claimed:
                    candidates.setdefault(p.name, []).append(p.remote_id)

            for rule in unlinked:
                # first unclaimed match wins; identical app lists are not told apart
                pool = candidates.get(rule.remote_name)
                if not pool:
                    report.unmatched.append(rule.id)
                    continue
                remote_id = pool.pop(0)
                try:
                    updated = await self._store.attach_remote_id(rule.id, remote_id, only_if_unlinked=True)
                except RuleNotFound:
                    logger.debug("Sync: rule %s removed meanwhile", rule.id)
                    pool.insert(0, remote_id)
                    continue
                except PersistenceError as exc:
                    report.linked[rule.id] = remote_id
                    report.errors[rule.id] = exc.detail
                    continue
                if updated is None:
                    pool.insert(0, remote_id)
                    continue
                report.linked[rule.id] = remote_id
                logger.info("Sync: linked rule %s to remote object %s", rule.id, remote_id)

            logger.info(
                "Sync done: %d linked, %d unmatched, %d error(s)",
                report.linked_count, len(report.unmatched), len(report.errors),
            )
            return report

    async def cleanup(self) -> CleanupReport:
        with log_context(operation="cleanup"):
            # enumerate before the snapshot so every listed object created by a
            # completed declare is already referenced locally
            remote = await self._enumerate()
            referenced = {r.remote_id for r in await self._store.snapshot() if r.remote_id is not None}
            report = CleanupReport()

            for p in remote:
                if not p.name.startswith(REMOTE_NAME_PREFIX) or p.remote_id in referenced:
                    continue
                if await self._store.find_by_remote_id(p.remote_id) is not None:
                    continue
                try:
                    await asyncio.wait_for(self._client.delete_policy(p.remote_id), timeout=self._remote_timeout)
                except (RemoteError, NotAuthenticated, asyncio.TimeoutError) as exc:
                    msg = str(exc) or type(exc).__name__
                    logger.warning("Cleanup: could not delete orphan %s (%s): %s", p.remote_id, p.name, msg)
                    report.failures.append(CleanupFailure(p.remote_id, p.name, msg))
                    continue
                report.deleted.append(p.remote_id)
                logger.info("Cleanup: deleted orphan %s (%s)", p.remote_id, p.name)

            logger.info("Cleanup done: %d deleted, %d failure(s)", report.deleted_count, len(report.failures))
            return report

    async def maintain(self) -> MaintenanceReport:
        sync = await self.sync()
        cleanup = await self.cleanup()
        return MaintenanceReport(sync=sync, cleanup=cleanup)
