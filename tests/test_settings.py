# tests/test_settings.py
from __future__ import annotations

import logging
from pathlib import Path

import pytest
from pythonjsonlogger.json import JsonFormatter

from appblock.logging_setup import ContextFilter, RedactionFilter, configure_logging, log_context
from appblock.settings import AppSettings, ControllerSettings, LogFormat


def _record(msg: str, *args, **extra) -> logging.LogRecord:
    record = logging.LogRecord("appblock.test", logging.INFO, __file__, 1, msg, args, None)
    for k, v in extra.items():
        setattr(record, k, v)
    return record


def test_defaults_match_the_stock_controller():
    s = AppSettings(_env_file=None)
    assert s.controller.base_url == "https://192.168.1.1:8443"
    assert s.controller.site == "default"
    assert s.api.port == 3000
    assert s.maintenance_interval_seconds == 0
    assert s.build_catalog().names() == ["Fortnite", "Roblox", "YouTube"]


def test_nested_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("APPBLOCK_CONTROLLER__BASE_URL", "https://10.0.0.1/")
    monkeypatch.setenv("APPBLOCK_CONTROLLER__USERNAME", "admin")
    monkeypatch.setenv("APPBLOCK_CONTROLLER__PASSWORD", "hunter2")
    monkeypatch.setenv("APPBLOCK_STORE__PATH", str(tmp_path / "r.json"))
    monkeypatch.setenv("APPBLOCK_LOGGING__FORMAT", "json")

    s = AppSettings(_env_file=None)

    assert s.controller.base_url == "https://10.0.0.1"
    assert s.controller.username == "admin"
    assert s.controller.password.get_secret_value() == "hunter2"
    assert s.store.path == tmp_path / "r.json"
    assert s.logging.format == LogFormat.json
    assert s.redacted_dict()["controller"]["password"] == "***"
    s.verify()


def test_apps_file_extends_catalog(tmp_path: Path):
    apps = tmp_path / "apps.yaml"
    apps.write_text("Minecraft: 123456\nYouTube: 999\n", encoding="utf-8")
    catalog = AppSettings(_env_file=None, apps_file=apps).build_catalog()
    assert catalog.resolve_app_ids(["Minecraft", "YouTube", "Roblox"]) == ["123456", "999", "851993"]


def test_verify_collects_every_problem():
    s = AppSettings(
        _env_file=None,
        controller=ControllerSettings(base_url="ftp://x", retries=-1, username="admin"),
        maintenance_interval_seconds=-5,
    )
    with pytest.raises(RuntimeError) as ei:
        s.verify()
    msg = str(ei.value)
    assert "base_url" in msg
    assert "retries" in msg
    assert "username and controller.password" in msg
    assert "maintenance_interval_seconds" in msg


def test_json_logging_config_uses_json_formatter():
    s = AppSettings(_env_file=None, logging={"format": "json", "level": "DEBUG"})
    cfg = s.logging_dict_config()
    assert cfg["formatters"]["default"]["()"] == "pythonjsonlogger.json.JsonFormatter"
    assert cfg["handlers"]["default"]["filters"] == ["context", "redact"]

    configure_logging(s)
    assert any(isinstance(h.formatter, JsonFormatter) for h in logging.getLogger().handlers)
    configure_logging(AppSettings(_env_file=None))


def test_context_filter_attaches_scope():
    f = ContextFilter()
    with log_context(operation="revoke", rule_id="r7"):
        inside = _record("x")
        f.filter(inside)
    outside = _record("y")
    f.filter(outside)

    assert (inside.operation, inside.rule_id) == ("revoke", "r7")
    assert (outside.operation, outside.rule_id) == ("-", "-")


def test_redaction_filter_masks_tokens_and_secret_fields():
    record = _record(
        "login for %s with header %s",
        "admin",
        "Bearer abc.def",
        token="csrf-1",
        payload={"username": "admin", "password": "hunter2"},
    )
    RedactionFilter().filter(record)

    text = record.getMessage()
    assert "abc.def" not in text
    assert "Bearer ***" in text
    assert record.token == "***"
    assert record.payload == {"username": "admin", "password": "***"}
