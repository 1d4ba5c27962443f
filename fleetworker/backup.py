from __future__ import annotations

import logging
import secrets
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

from .archive import ArchiveCodec
from .errors import InvalidTenantError, TransientIOError
from .metrics import FLEET_BACKUPS_TOTAL
from .registry import Guard, SessionRegistry, validate_tenant_id
from .store import SessionBackup, device_info


LOGGER = logging.getLogger("fleetworker.backup")


class BackupStore(Protocol):
    async def upsert(self, tenant_id: str, blob: bytes, metadata: Dict[str, Any]) -> None: ...

    async def find(self, tenant_id: str) -> Optional[SessionBackup]: ...


def tenant_dir_name(tenant: str) -> str:
    return validate_tenant_id(tenant)


class BackupService:
    """Save and restore tenant working directories through the durable store."""

    def __init__(
        self,
        store: BackupStore,
        codec: ArchiveCodec,
        registry: SessionRegistry,
        *,
        sessions_dir: Path,
        scratch_dir: Path,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._codec = codec
        self._registry = registry
        self._sessions_dir = sessions_dir
        self._scratch_dir = scratch_dir
        self._clock = clock
        self._sessions_dir.mkdir(parents=True, exist_ok=True)
        self._scratch_dir.mkdir(parents=True, exist_ok=True)

    @property
    def sessions_dir(self) -> Path:
        return self._sessions_dir

    def workdir(self, tenant: str) -> Path:
        return self._sessions_dir / tenant_dir_name(tenant)

    def has_workdir(self, tenant: str) -> bool:
        path = self.workdir(tenant)
        return path.is_dir() and any(path.iterdir())

    def local_tenants(self) -> list[str]:
        found = []
        for path in sorted(self._sessions_dir.iterdir()):
            if not path.is_dir():
                continue
            try:
                found.append(validate_tenant_id(path.name))
            except InvalidTenantError:
                LOGGER.warning("stage=workdir_ignored path=%s reason=invalid_tenant_id", path)
        return found

    async def discard_workdir(self, tenant: str) -> None:
        path = self.workdir(tenant)
        if path.exists():
            await self._codec.remove(path)
            LOGGER.info("stage=workdir_discarded tenant_id=%s", tenant)

    def _scratch_path(self, tenant: str, suffix: str) -> Path:
        return self._scratch_dir / f"{tenant_dir_name(tenant)}-{secrets.token_hex(4)}{suffix}"

    async def _cleanup(self, tenant: str, path: Path) -> None:
        try:
            await self._codec.remove(path)
        except (OSError, TransientIOError) as exc:
            LOGGER.error(
                "stage=backup_cleanup_failed tenant_id=%s path=%s error=%s", tenant, path, exc
            )

    async def save(self, tenant: str) -> bool:
        """Archive the working directory and upsert it; a concurrent save is skipped."""
        if not self._registry.try_acquire(tenant, Guard.SAVING):
            LOGGER.warning("stage=backup_skip tenant_id=%s reason=save_in_progress", tenant)
            FLEET_BACKUPS_TOTAL.labels("save", "skipped").inc()
            return False

        scratch = self._scratch_path(tenant, "")
        archive = scratch.with_name(scratch.name + ".zip")
        try:
            await self._codec.copy_tree(self.workdir(tenant), scratch)
            files = await self._codec.pack(scratch, archive)
            blob = await self._codec.read_bytes(archive)
            await self._store.upsert(tenant, blob, device_info())
        except Exception as exc:
            FLEET_BACKUPS_TOTAL.labels("save", "error").inc()
            LOGGER.error("stage=backup_failed tenant_id=%s error=%s", tenant, exc)
            raise
        finally:
            await self._cleanup(tenant, scratch)
            await self._cleanup(tenant, archive)
            self._registry.release(tenant, Guard.SAVING)

        session = self._registry.get(tenant)
        if session is not None:
            session.last_backup_at = self._clock()
        FLEET_BACKUPS_TOTAL.labels("save", "ok").inc()
        LOGGER.info("stage=backup_saved tenant_id=%s files=%s bytes=%s", tenant, files, len(blob))
        return True

    async def restore(self, tenant: str) -> bool:
        """Unpack the stored backup into the working directory.

        Returns ``False`` when the tenant has no backup row, which is the normal
        state for a tenant that never authenticated.
        """
        backup = await self._store.find(tenant)
        if backup is None:
            LOGGER.info("stage=restore_skip tenant_id=%s reason=no_backup", tenant)
            FLEET_BACKUPS_TOTAL.labels("restore", "missing").inc()
            return False

        staging = self._scratch_path(tenant, ".restore")
        archive = staging.with_name(staging.name + ".zip")
        try:
            await self._codec.write_bytes(archive, backup.blob)
            files = await self._codec.unpack(archive, staging)
            await self._codec.replace_tree(staging, self.workdir(tenant))
        except Exception as exc:
            FLEET_BACKUPS_TOTAL.labels("restore", "error").inc()
            LOGGER.error("stage=restore_failed tenant_id=%s error=%s", tenant, exc)
            raise
        finally:
            await self._cleanup(tenant, archive)
            await self._cleanup(tenant, staging)

        FLEET_BACKUPS_TOTAL.labels("restore", "ok").inc()
        LOGGER.info(
            "stage=restore_done tenant_id=%s files=%s saved_on=%s",
            tenant,
            files,
            backup.device_info.get("device_name"),
        )
        return True


__all__ = ["BackupService", "BackupStore", "tenant_dir_name"]
