from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List

from .backup import BackupService
from .registry import Guard, LifecycleState, SessionRegistry
from .supervisor import ConnectionSupervisor


LOGGER = logging.getLogger("fleetworker.health")


@dataclass(frozen=True, slots=True)
class HealthSettings:
    connectivity_interval: float = 600.0
    backup_interval: float = 3600.0
    stuck_check_interval: float = 60.0
    concurrency: int = 8


class HealthMonitor:
    """Periodic sweeps reconciling registry state with the live channels.

    Every sweep skips tenants holding a guard relevant to it, so a tenant that
    keeps failing never accumulates queued recovery work.
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        backups: BackupService,
        *,
        settings: HealthSettings | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._registry: SessionRegistry = supervisor.registry
        self._backups = backups
        self._settings = settings or HealthSettings()
        self._tasks: List[asyncio.Task[Any]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def connectivity_sweep(self) -> List[str]:
        candidates = []
        for session in self._registry.sessions():
            tenant = session.tenant_id
            if self._registry.is_held(tenant, Guard.INITIALIZING):
                continue
            if session.state is LifecycleState.FAILED or self._supervisor.is_recovering(tenant):
                continue
            channel = session.channel
            if channel is not None and channel.is_connected():
                continue
            candidates.append(tenant)

        if not candidates:
            return []
        LOGGER.info("stage=connectivity_sweep tenants=%s", ",".join(candidates))
        semaphore = asyncio.Semaphore(max(1, self._settings.concurrency))

        async def _revive(tenant: str) -> None:
            async with semaphore:
                await self._supervisor.resolve_conflict(tenant, source="health")

        results = await asyncio.gather(*(_revive(tenant) for tenant in candidates), return_exceptions=True)
        for tenant, result in zip(candidates, results):
            if isinstance(result, Exception):
                LOGGER.error("stage=connectivity_revive_failed tenant_id=%s error=%s", tenant, result)
        return candidates

    async def backup_sweep(self) -> List[str]:
        saved = []
        for session in self._registry.sessions():
            tenant = session.tenant_id
            if session.state is not LifecycleState.READY:
                continue
            if self._registry.is_held(tenant, Guard.SAVING):
                LOGGER.info("stage=backup_sweep_skip tenant_id=%s reason=save_in_progress", tenant)
                continue
            try:
                if await self._backups.save(tenant):
                    saved.append(tenant)
            except Exception as exc:
                LOGGER.error("stage=backup_sweep_failed tenant_id=%s error=%s", tenant, exc)
        LOGGER.info("stage=backup_sweep saved=%s", len(saved))
        return saved

    async def stuck_sweep(self) -> List[str]:
        return await self._supervisor.check_stuck()

    async def _run_loop(self, name: str, interval: float, sweep: Callable[[], Awaitable[Any]]) -> None:
        LOGGER.info("event=health_loop_start sweep=%s interval=%s", name, interval)
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await sweep()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    LOGGER.exception("event=health_sweep_failed sweep=%s", name)
        except asyncio.CancelledError:
            LOGGER.info("event=health_loop_stop sweep=%s status=cancelled", name)
            raise

    def start(self) -> None:
        if self.running:
            return
        loops = (
            ("connectivity", self._settings.connectivity_interval, self.connectivity_sweep),
            ("backup", self._settings.backup_interval, self.backup_sweep),
            ("stuck", self._settings.stuck_check_interval, self.stuck_sweep),
        )
        self._tasks = [
            asyncio.create_task(self._run_loop(name, interval, sweep), name=f"health-{name}")
            for name, interval, sweep in loops
            if interval > 0
        ]

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["HealthMonitor", "HealthSettings"]
