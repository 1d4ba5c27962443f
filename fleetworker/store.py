from __future__ import annotations

import json
import logging
import os
import platform
import socket
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from .errors import DatabaseUnavailableError


LOGGER = logging.getLogger("fleetworker.store")


@dataclass(slots=True)
class SessionBackup:
    tenant_id: str
    blob: bytes
    device_info: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def device_info() -> Dict[str, Any]:
    """Host snapshot stored next to each backup."""
    uname = platform.uname()
    return {
        "device_name": socket.gethostname(),
        "os": f"{uname.system} {uname.release}",
        "platform": uname.system.lower(),
        "architecture": uname.machine,
        "cpu_count": os.cpu_count(),
        "python": platform.python_version(),
    }


def normalize_dsn(dsn: str) -> str:
    return dsn.replace("postgresql+asyncpg://", "postgresql://")


_UPSERT_SQL = """
    INSERT INTO session_backups (tenant_id, blob, device_info, created_at, updated_at)
    VALUES ($1, $2, $3::jsonb, now(), now())
    ON CONFLICT (tenant_id) DO UPDATE
    SET blob = EXCLUDED.blob,
        device_info = EXCLUDED.device_info,
        updated_at = now()
"""

_FIND_SQL = """
    SELECT tenant_id, blob, device_info, created_at, updated_at
    FROM session_backups
    WHERE tenant_id = $1
"""


class SessionStore:
    """Durable session backups keyed by tenant, one row per tenant."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self._dsn = normalize_dsn(dsn)
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        if not self._dsn:
            raise DatabaseUnavailableError("DATABASE_URL is not configured")
        try:
            self._pool = await asyncpg.create_pool(
                self._dsn, min_size=self._min_size, max_size=self._max_size
            )
        except (OSError, asyncpg.PostgresError) as exc:
            LOGGER.error("stage=db_pool_failed error=%s", exc)
            raise DatabaseUnavailableError(str(exc)) from exc
        return self._pool

    async def upsert(self, tenant_id: str, blob: bytes, metadata: Dict[str, Any]) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as con:
            await con.execute(_UPSERT_SQL, tenant_id, blob, json.dumps(metadata))
        LOGGER.info("stage=backup_upserted tenant_id=%s bytes=%s", tenant_id, len(blob))

    async def find(self, tenant_id: str) -> Optional[SessionBackup]:
        pool = await self._ensure_pool()
        async with pool.acquire() as con:
            row = await con.fetchrow(_FIND_SQL, tenant_id)
        if row is None:
            return None
        raw_info = row["device_info"]
        if isinstance(raw_info, str):
            try:
                raw_info = json.loads(raw_info)
            except ValueError:
                raw_info = {}
        return SessionBackup(
            tenant_id=row["tenant_id"],
            blob=bytes(row["blob"]),
            device_info=raw_info or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def delete(self, tenant_id: str) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as con:
            status = await con.execute("DELETE FROM session_backups WHERE tenant_id = $1", tenant_id)
        deleted = status.endswith(" 1")
        LOGGER.info("stage=backup_deleted tenant_id=%s deleted=%s", tenant_id, deleted)
        return deleted

    async def list_tenants(self) -> List[str]:
        pool = await self._ensure_pool()
        async with pool.acquire() as con:
            rows = await con.fetch("SELECT tenant_id FROM session_backups ORDER BY tenant_id")
        return [row["tenant_id"] for row in rows]

    async def close(self) -> None:
        pool = self._pool
        self._pool = None
        if pool is not None:
            await pool.close()


__all__ = ["SessionBackup", "SessionStore", "device_info", "normalize_dsn"]
