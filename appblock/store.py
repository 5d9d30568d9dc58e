# appblock/store.py
"""
Durable rule store.

A single JSON document (``RuleStoreDocument``) rewritten wholesale on every
mutation: temp file in the same directory, fsync, ``os.replace``. A reader of
the file therefore sees either the previous or the next complete document.

Every public coroutine holds one ``asyncio.Lock`` across its whole
read-modify-persist sequence. When the write fails the in-memory change is
kept and ``PersistenceError`` is raised; the next successful save writes the
full in-memory state again.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from appblock.errors import DuplicateRuleId, PersistenceError, RuleNotFound
from appblock.models import DeclaredRule, RuleStoreDocument, utcnow

logger = logging.getLogger("appblock.store")


def _atomic_write(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)


class RuleStore:
    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._rules: Dict[str, DeclaredRule] = {}
        now = utcnow()
        self._created_at = now
        self._last_updated = now

    # ---------- Loading ----------

    async def load(self, *, quarantine: bool = True) -> RuleStoreDocument:
        """
        Read the persisted document; a missing or corrupt file yields an empty store.

        A corrupt file is renamed to ``<name>.corrupt-<ts>`` unless ``quarantine``
        is False (read-only inspection leaves it in place).
        """
        async with self._lock:
            doc = await asyncio.to_thread(self._read, quarantine)
            self._rules = {r.id: r for r in doc.rules}
            self._created_at = doc.created_at
            self._last_updated = doc.last_updated
            logger.info("Loaded %d rule(s) from %s", len(self._rules), self.path)
            return doc

    def _read(self, quarantine: bool = True) -> RuleStoreDocument:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return RuleStoreDocument.empty()
        except OSError:
            logger.exception("Cannot read rule store %s, starting empty", self.path)
            return RuleStoreDocument.empty()

        # UnicodeDecodeError is a ValueError; deep nesting raises RecursionError
        try:
            data = json.loads(raw.decode("utf-8"))
            if not isinstance(data, dict):
                raise ValueError("document root must be an object")
            entries = data.get("rules", [])
            if not isinstance(entries, list):
                raise ValueError("'rules' must be a list")
            now = utcnow()
            header = RuleStoreDocument.model_validate(
                {
                    "rules": [],
                    "created_at": data.get("created_at") or now,
                    "last_updated": data.get("last_updated") or now,
                }
            )
        except (ValueError, RecursionError, ValidationError) as exc:
            if quarantine:
                self._quarantine(exc)
            else:
                logger.warning("Rule store %s is unreadable (%s), left in place", self.path, exc)
            return RuleStoreDocument.empty()

        rules: List[DeclaredRule] = []
        seen = set()
        for idx, entry in enumerate(entries):
            try:
                rule = DeclaredRule.model_validate(entry)
            except ValidationError as exc:
                logger.warning("Skipping malformed rule #%d in %s: %s", idx, self.path, exc.errors()[:1])
                continue
            if rule.id in seen:
                logger.warning("Skipping duplicate rule id %r in %s", rule.id, self.path)
                continue
            seen.add(rule.id)
            rules.append(rule)
        return RuleStoreDocument(rules=rules, created_at=header.created_at, last_updated=header.last_updated)

    def _quarantine(self, exc: BaseException) -> None:
        corrupt = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}")
        try:
            os.replace(self.path, corrupt)
            logger.warning("Rule store %s is unreadable (%s); moved to %s, starting empty", self.path, exc, corrupt)
        except OSError:
            logger.warning("Rule store %s is unreadable (%s), starting empty", self.path, exc)

    # ---------- Persistence ----------

    def _document(self) -> RuleStoreDocument:
        return RuleStoreDocument(
            rules=list(self._rules.values()),
            created_at=self._created_at,
            last_updated=self._last_updated,
        )

    async def _persist(self) -> None:
        # caller holds self._lock
        self._last_updated = utcnow()
        payload = self._document().model_dump_json(indent=2)
        try:
            await asyncio.to_thread(_atomic_write, self.path, payload)
        except OSError as exc:
            logger.error("Failed to persist rule store %s: %s", self.path, exc)
            raise PersistenceError(str(self.path), exc) from exc

    # ---------- Mutations ----------

    async def add(self, rule: DeclaredRule) -> None:
        async with self._lock:
            if rule.id in self._rules:
                raise DuplicateRuleId(rule.id)
            self._rules[rule.id] = rule
            await self._persist()
            logger.debug("Stored rule %s", rule.id)

    async def remove(self, rule_id: str) -> Optional[DeclaredRule]:
        async with self._lock:
            rule = self._rules.pop(rule_id, None)
            if rule is None:
                return None
            await self._persist()
            logger.debug("Removed rule %s", rule_id)
            return rule

    async def update(self, rule_id: str, rule: DeclaredRule) -> None:
        async with self._lock:
            if rule_id not in self._rules:
                raise RuleNotFound(rule_id)
            if rule.id != rule_id:
                raise ValueError(f"rule id is immutable ({rule_id!r} -> {rule.id!r})")
            self._rules[rule_id] = rule
            await self._persist()

    async def attach_remote_id(
        self, rule_id: str, remote_id: Optional[str], *, only_if_unlinked: bool = False
    ) -> Optional[DeclaredRule]:
        """Set or clear the remote link. With ``only_if_unlinked`` an already linked record is left alone (returns None)."""
        async with self._lock:
            current = self._rules.get(rule_id)
            if current is None:
                raise RuleNotFound(rule_id)
            if only_if_unlinked and current.remote_id is not None:
                return None
            updated = current.with_remote_id(remote_id)
            self._rules[rule_id] = updated
            await self._persist()
            return updated

    async def clear_all(self) -> int:
        async with self._lock:
            count = len(self._rules)
            self._rules.clear()
            await self._persist()
            logger.info("Cleared %d rule(s)", count)
            return count

    # ---------- Reads ----------

    async def snapshot(self) -> List[DeclaredRule]:
        async with self._lock:
            return sorted(self._rules.values(), key=lambda r: (r.created_at, r.id))

    async def get(self, rule_id: str) -> Optional[DeclaredRule]:
        async with self._lock:
            return self._rules.get(rule_id)

    async def contains(self, rule_id: str) -> bool:
        async with self._lock:
            return rule_id in self._rules

    async def find_by_remote_id(self, remote_id: str) -> Optional[DeclaredRule]:
        async with self._lock:
            for rule in self._rules.values():
                if rule.remote_id == remote_id:
                    return rule
            return None

    async def count(self) -> int:
        async with self._lock:
            return len(self._rules)
