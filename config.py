"""Environment driven configuration for the session fleet service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


DEFAULT_SESSIONS_DIR = "/app/fleet-sessions"
DEFAULT_SCRATCH_DIR = "/app/fleet-scratch"


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _coerce_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    cleaned = value.strip().lower()
    if not cleaned:
        return default
    return cleaned in {"1", "true", "yes", "on"}


@lru_cache(maxsize=32)
def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        return default


def _resolve_dir(raw: str | None, default: str) -> Path:
    candidate = Path(raw or default)
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path("/tmp") / candidate.name
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


@dataclass(frozen=True, slots=True)
class FleetConfig:
    database_url: str
    sessions_dir: Path
    scratch_dir: Path
    api_id: int
    api_hash: str
    device_model: str
    system_version: str
    app_version: str
    lang_code: str
    system_lang_code: str
    webhook_url: str
    webhook_token: str
    admin_token: str
    max_reconnect_attempts: int
    reconnect_cooldown: float
    conflict_cooldown: float
    init_timeout: float
    init_stuck_timeout: float
    stuck_retry_delay: float
    ready_wait_timeout: float
    challenge_wait_timeout: float
    send_attempts: int
    send_queue_size: int
    send_workers: int
    media_timeout: float
    retry_media_failures: bool
    verify_recipients: bool
    connectivity_interval: float
    backup_interval: float
    stuck_check_interval: float
    chat_sync_interval: float
    tenant_backup_interval: float
    file_retries: int
    file_retry_delay: float
    orphan_process_pattern: str
    bootstrap_concurrency: int


def fleet_config() -> FleetConfig:
    lang = _env("FLEET_LANG", "en") or "en"
    return FleetConfig(
        database_url=_env("DATABASE_URL"),
        sessions_dir=_resolve_dir(os.getenv("FLEET_SESSIONS_DIR"), DEFAULT_SESSIONS_DIR),
        scratch_dir=_resolve_dir(os.getenv("FLEET_SCRATCH_DIR"), DEFAULT_SCRATCH_DIR),
        api_id=_coerce_int(os.getenv("TELEGRAM_API_ID")),
        api_hash=_env("TELEGRAM_API_HASH"),
        device_model=_env("FLEET_DEVICE_MODEL", "fleetworker") or "fleetworker",
        system_version=_env("FLEET_SYSTEM_VERSION", "1.0") or "1.0",
        app_version=_env("FLEET_APP_VERSION", "1.0") or "1.0",
        lang_code=lang,
        system_lang_code=lang,
        webhook_url=_env("NOTIFY_WEBHOOK_URL"),
        webhook_token=_env("WEBHOOK_SECRET"),
        admin_token=_env("ADMIN_TOKEN"),
        max_reconnect_attempts=_coerce_int(os.getenv("FLEET_MAX_RECONNECT_ATTEMPTS"), 3),
        reconnect_cooldown=_parse_duration(os.getenv("FLEET_RECONNECT_COOLDOWN"), default=5.0),
        conflict_cooldown=_parse_duration(os.getenv("FLEET_CONFLICT_COOLDOWN"), default=5.0),
        init_timeout=_parse_duration(os.getenv("FLEET_INIT_TIMEOUT"), default=90.0),
        init_stuck_timeout=_parse_duration(os.getenv("FLEET_INIT_STUCK_TIMEOUT"), default=300.0),
        stuck_retry_delay=_parse_duration(os.getenv("FLEET_STUCK_RETRY_DELAY"), default=5.0),
        ready_wait_timeout=_parse_duration(os.getenv("FLEET_READY_WAIT_TIMEOUT"), default=30.0),
        challenge_wait_timeout=_parse_duration(os.getenv("FLEET_CHALLENGE_WAIT_TIMEOUT"), default=20.0),
        send_attempts=_coerce_int(os.getenv("FLEET_SEND_ATTEMPTS"), 3),
        send_queue_size=_coerce_int(os.getenv("FLEET_SEND_QUEUE_SIZE"), 1000),
        send_workers=_coerce_int(os.getenv("FLEET_SEND_WORKERS"), 4),
        media_timeout=_parse_duration(os.getenv("FLEET_MEDIA_TIMEOUT"), default=30.0),
        retry_media_failures=_coerce_bool(os.getenv("FLEET_RETRY_MEDIA_FAILURES"), True),
        verify_recipients=_coerce_bool(os.getenv("FLEET_VERIFY_RECIPIENTS"), False),
        connectivity_interval=_parse_duration(os.getenv("FLEET_CONNECTIVITY_INTERVAL"), default=600.0),
        backup_interval=_parse_duration(os.getenv("FLEET_BACKUP_INTERVAL"), default=3600.0),
        stuck_check_interval=_parse_duration(os.getenv("FLEET_STUCK_CHECK_INTERVAL"), default=60.0),
        chat_sync_interval=_parse_duration(os.getenv("FLEET_CHAT_SYNC_INTERVAL"), default=60.0),
        tenant_backup_interval=_parse_duration(os.getenv("FLEET_TENANT_BACKUP_INTERVAL"), default=1200.0),
        file_retries=_coerce_int(os.getenv("FLEET_FILE_RETRIES"), 5),
        file_retry_delay=_parse_duration(os.getenv("FLEET_FILE_RETRY_DELAY"), default=1.0),
        orphan_process_pattern=_env("FLEET_ORPHAN_PROCESS_PATTERN"),
        bootstrap_concurrency=_coerce_int(os.getenv("FLEET_BOOTSTRAP_CONCURRENCY"), 8),
    )


__all__ = ["FleetConfig", "fleet_config"]
