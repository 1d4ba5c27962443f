from __future__ import annotations

from pathlib import Path

import pytest

from config import fleet_config


@pytest.fixture
def fleet_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("FLEET_SESSIONS_DIR", str(tmp_path / "sessions"))
    monkeypatch.setenv("FLEET_SCRATCH_DIR", str(tmp_path / "scratch"))
    for name in (
        "FLEET_MAX_RECONNECT_ATTEMPTS",
        "FLEET_RECONNECT_COOLDOWN",
        "FLEET_INIT_TIMEOUT",
        "FLEET_SEND_ATTEMPTS",
        "FLEET_RETRY_MEDIA_FAILURES",
        "ADMIN_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def test_defaults(fleet_env: Path) -> None:
    cfg = fleet_config()

    assert cfg.sessions_dir == fleet_env / "sessions"
    assert cfg.sessions_dir.is_dir()
    assert cfg.scratch_dir.is_dir()
    assert cfg.max_reconnect_attempts == 3
    assert cfg.reconnect_cooldown == 5.0
    assert cfg.init_timeout == 90.0
    assert cfg.send_attempts == 3
    assert cfg.retry_media_failures is True
    assert cfg.admin_token == ""


def test_overrides_and_fallbacks(fleet_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLEET_MAX_RECONNECT_ATTEMPTS", "5")
    monkeypatch.setenv("FLEET_RECONNECT_COOLDOWN", "2.5s")
    monkeypatch.setenv("FLEET_INIT_TIMEOUT", "soon")
    monkeypatch.setenv("FLEET_SEND_ATTEMPTS", "many")
    monkeypatch.setenv("FLEET_RETRY_MEDIA_FAILURES", "off")
    monkeypatch.setenv("ADMIN_TOKEN", "  secret ")

    cfg = fleet_config()

    assert cfg.max_reconnect_attempts == 5
    assert cfg.reconnect_cooldown == 2.5
    assert cfg.init_timeout == 90.0
    assert cfg.send_attempts == 3
    assert cfg.retry_media_failures is False
    assert cfg.admin_token == "secret"
