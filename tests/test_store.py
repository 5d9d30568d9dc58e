# tests/test_store.py
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

import appblock.store as store_mod
from appblock.errors import DuplicateRuleId, PersistenceError, RuleNotFound
from appblock.models import DeclaredRule, PermanentPolicy, UntilPolicy
from appblock.store import RuleStore

T0 = datetime(2026, 1, 10, 8, 0, tzinfo=timezone.utc)


def _rule(rule_id: str, minutes: int = 0, remote_id: str | None = None) -> DeclaredRule:
    return DeclaredRule(
        id=rule_id,
        apps=["YouTube"],
        devices=["all"],
        created_at=T0 + timedelta(minutes=minutes),
        policy=PermanentPolicy(),
        remote_id=remote_id,
    )


@pytest.mark.asyncio
async def test_load_missing_file_gives_empty_store(store: RuleStore):
    doc = await store.load()
    assert doc.rules == []
    assert await store.snapshot() == []


@pytest.mark.asyncio
async def test_add_persists_and_survives_reload(store: RuleStore, store_path: Path):
    rule = _rule("a", remote_id="x1")
    await store.add(rule)

    on_disk = json.loads(store_path.read_text(encoding="utf-8"))
    assert [r["id"] for r in on_disk["rules"]] == ["a"]
    assert "created_at" in on_disk and "last_updated" in on_disk

    reopened = RuleStore(store_path)
    await reopened.load()
    assert await reopened.snapshot() == [rule]


@pytest.mark.asyncio
async def test_duplicate_id_is_rejected_and_store_unchanged(store: RuleStore):
    first = _rule("a")
    await store.add(first)
    with pytest.raises(DuplicateRuleId):
        await store.add(_rule("a", minutes=5, remote_id="other"))
    assert await store.snapshot() == [first]


@pytest.mark.asyncio
async def test_remove_returns_record_or_none(store: RuleStore):
    rule = _rule("a")
    await store.add(rule)
    assert await store.remove("a") == rule
    assert await store.remove("a") is None
    assert await store.count() == 0


@pytest.mark.asyncio
async def test_update_replaces_in_place(store: RuleStore):
    await store.add(_rule("a"))
    replacement = _rule("a", remote_id="x9")
    await store.update("a", replacement)
    assert await store.get("a") == replacement

    with pytest.raises(RuleNotFound):
        await store.update("missing", _rule("missing"))
    with pytest.raises(ValueError):
        await store.update("a", _rule("b"))


@pytest.mark.asyncio
async def test_attach_remote_id_only_if_unlinked(store: RuleStore):
    await store.add(_rule("a"))
    linked = await store.attach_remote_id("a", "x1", only_if_unlinked=True)
    assert linked is not None and linked.remote_id == "x1"
    assert await store.attach_remote_id("a", "x2", only_if_unlinked=True) is None
    assert (await store.get("a")).remote_id == "x1"
    assert (await store.find_by_remote_id("x1")).id == "a"


@pytest.mark.asyncio
async def test_clear_all_empties_and_persists(store: RuleStore, store_path: Path):
    await store.add(_rule("a"))
    await store.add(_rule("b", minutes=1))
    assert await store.clear_all() == 2
    assert json.loads(store_path.read_text(encoding="utf-8"))["rules"] == []


@pytest.mark.asyncio
async def test_snapshot_is_ordered_by_creation(store: RuleStore):
    await store.add(_rule("late", minutes=10))
    await store.add(_rule("early", minutes=1))
    assert [r.id for r in await store.snapshot()] == ["early", "late"]


@pytest.mark.asyncio
async def test_corrupt_file_is_quarantined(store_path: Path):
    store_path.parent.mkdir(parents=True)
    store_path.write_text("{ not json", encoding="utf-8")

    store = RuleStore(store_path)
    doc = await store.load()

    assert doc.rules == []
    assert not store_path.exists()
    assert len(list(store_path.parent.glob("rules.json.corrupt-*"))) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        b'{"rules": [], "created_at": "\xff\xfe"}',
        b"[" * 200_000 + b"]" * 200_000,
    ],
    ids=["invalid-utf8", "deep-nesting"],
)
async def test_undecodable_file_is_quarantined(store_path: Path, payload: bytes):
    store_path.parent.mkdir(parents=True)
    store_path.write_bytes(payload)

    store = RuleStore(store_path)
    doc = await store.load()

    assert doc.rules == []
    assert await store.count() == 0
    assert not store_path.exists()
    assert len(list(store_path.parent.glob("rules.json.corrupt-*"))) == 1


@pytest.mark.asyncio
async def test_load_without_quarantine_leaves_file_in_place(store_path: Path):
    store_path.parent.mkdir(parents=True)
    store_path.write_text("{ not json", encoding="utf-8")

    doc = await RuleStore(store_path).load(quarantine=False)

    assert doc.rules == []
    assert store_path.read_text(encoding="utf-8") == "{ not json"
    assert list(store_path.parent.glob("rules.json.corrupt-*")) == []


@pytest.mark.asyncio
async def test_malformed_entries_are_skipped(store_path: Path):
    good = _rule("good").model_dump(mode="json")
    bad_policy = dict(good, id="bad", policy={"rule_type": "until"})
    store_path.parent.mkdir(parents=True)
    store_path.write_text(
        json.dumps({"rules": [good, bad_policy, {"id": 3}, good], "created_at": T0.isoformat()}),
        encoding="utf-8",
    )

    store = RuleStore(store_path)
    await store.load()
    assert [r.id for r in await store.snapshot()] == ["good"]


@pytest.mark.asyncio
async def test_failed_write_keeps_memory_and_raises(store: RuleStore, monkeypatch: pytest.MonkeyPatch):
    await store.add(_rule("a"))

    def _boom(path, data):
        raise OSError("disk full")

    monkeypatch.setattr(store_mod, "_atomic_write", _boom)
    with pytest.raises(PersistenceError):
        await store.add(_rule("b", minutes=1))
    # not rolled back in memory
    assert [r.id for r in await store.snapshot()] == ["a", "b"]


@pytest.mark.asyncio
async def test_save_leaves_no_temp_files(store: RuleStore, store_path: Path):
    end = T0 + timedelta(days=1)
    await store.add(DeclaredRule(id="u", apps=["Roblox"], devices=["all"], created_at=T0, policy=UntilPolicy(end_at=end)))
    await store.remove("u")
    assert sorted(p.name for p in store_path.parent.iterdir()) == ["rules.json"]
