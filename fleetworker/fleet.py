"""Facade wiring the session lifecycle components into one service object."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

from config import FleetConfig

from .archive import ArchiveCodec
from .backup import BackupService
from .channel import ChannelFactory, TelethonSettings, telethon_factory
from .dispatcher import DispatcherSettings, MessageDispatcher, OutboundPayload, SendResult
from .errors import DatabaseUnavailableError
from .health import HealthMonitor, HealthSettings
from .notifier import Notifier
from .registry import Guard, LifecycleState, SessionRegistry, SessionSnapshot
from .store import SessionBackup, SessionStore
from .supervisor import ConnectionSupervisor, InitOutcome, SupervisorSettings


LOGGER = logging.getLogger("fleetworker.fleet")


class FleetStore(Protocol):
    async def upsert(self, tenant_id: str, blob: bytes, metadata: Dict[str, Any]) -> None: ...

    async def find(self, tenant_id: str) -> Optional[SessionBackup]: ...

    async def delete(self, tenant_id: str) -> bool: ...

    async def list_tenants(self) -> List[str]: ...

    async def close(self) -> None: ...


class SessionFleet:
    def __init__(
        self,
        *,
        registry: SessionRegistry,
        store: FleetStore,
        backups: BackupService,
        supervisor: ConnectionSupervisor,
        dispatcher: MessageDispatcher,
        monitor: HealthMonitor,
        notifier: Notifier,
        challenge_wait_timeout: float = 20.0,
        bootstrap_concurrency: int = 8,
    ) -> None:
        self.registry = registry
        self.store = store
        self.backups = backups
        self.supervisor = supervisor
        self.dispatcher = dispatcher
        self.monitor = monitor
        self.notifier = notifier
        self._challenge_wait_timeout = challenge_wait_timeout
        self._bootstrap_concurrency = max(1, bootstrap_concurrency)
        self._bootstrap_task: Optional[asyncio.Task[Any]] = None

    async def start(self) -> None:
        self.dispatcher.start()
        self.monitor.start()
        if self._bootstrap_task is None or self._bootstrap_task.done():
            self._bootstrap_task = asyncio.create_task(self.replay(), name="fleet-replay")
        LOGGER.info("stage=fleet_started sessions_dir=%s", self.backups.sessions_dir)

    async def replay(self) -> List[str]:
        """Reinitialize every tenant known to the store or the sessions directory."""
        tenants = set(self.backups.local_tenants())
        try:
            tenants.update(await self.store.list_tenants())
        except DatabaseUnavailableError as exc:
            LOGGER.warning("stage=replay_store_unavailable error=%s", exc)
        ordered = sorted(tenants)
        LOGGER.info("stage=replay_start tenants=%s", len(ordered))
        semaphore = asyncio.Semaphore(self._bootstrap_concurrency)

        async def _replay(tenant: str) -> None:
            async with semaphore:
                try:
                    await self.supervisor.initialize(tenant, manual=False)
                except Exception as exc:
                    LOGGER.error("stage=replay_failed tenant_id=%s error=%s", tenant, exc)

        await asyncio.gather(*(_replay(tenant) for tenant in ordered))
        LOGGER.info("stage=replay_done tenants=%s", len(ordered))
        return ordered

    async def shutdown(self) -> None:
        task = self._bootstrap_task
        self._bootstrap_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.monitor.stop()
        await self.dispatcher.stop()
        for session in self.registry.sessions():
            if session.state is not LifecycleState.READY:
                continue
            try:
                await self.backups.save(session.tenant_id)
            except Exception as exc:
                LOGGER.error("stage=shutdown_backup_failed tenant_id=%s error=%s", session.tenant_id, exc)
        await self.supervisor.shutdown()
        await self.notifier.aclose()
        await self.store.close()
        LOGGER.info("stage=fleet_stopped")

    async def initialize_session(self, tenant: str) -> InitOutcome:
        return await self.supervisor.initialize(tenant, manual=True)

    def is_ready(self, tenant: str) -> bool:
        session = self.registry.get(tenant)
        return session is not None and session.state is LifecycleState.READY

    def is_initializing(self, tenant: str) -> bool:
        return self.registry.is_held(tenant, Guard.INITIALIZING)

    async def request_challenge(self, tenant: str) -> Optional[str]:
        """Return the pending challenge, starting a session when none is running.

        ``None`` means no challenge is needed (the session resumed) or none was
        issued within the wait window.
        """
        session = self.registry.get(tenant)
        if session is None or (
            session.qr_challenge is None
            and session.state is not LifecycleState.READY
            and not self.is_initializing(tenant)
        ):
            await self.supervisor.initialize(tenant, manual=True)
        await self.supervisor.wait_until(
            tenant,
            lambda s: s.qr_challenge is not None
            or s.state in (LifecycleState.READY, LifecycleState.FAILED),
            self._challenge_wait_timeout,
        )
        session = self.registry.ensure(tenant)
        return session.qr_challenge

    async def send(
        self,
        tenant: str,
        recipient: str,
        payload: OutboundPayload,
        *,
        attempts: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> SendResult:
        return await self.dispatcher.send(
            tenant, recipient, payload, attempts=attempts, idempotency_key=idempotency_key
        )

    async def get_fleet_status(self) -> List[Dict[str, str]]:
        statuses = {session.tenant_id: session.state.value for session in self.registry.sessions()}
        try:
            stored = await self.store.list_tenants()
        except DatabaseUnavailableError as exc:
            LOGGER.warning("stage=fleet_status_store_unavailable error=%s", exc)
            stored = []
        for tenant in stored:
            statuses.setdefault(tenant, LifecycleState.UNINITIALIZED.value)
        return [{"tenant_id": tenant, "status": statuses[tenant]} for tenant in sorted(statuses)]

    def snapshot(self, tenant: str) -> SessionSnapshot:
        return self.registry.snapshot(tenant)

    def stats_snapshot(self) -> Dict[str, int]:
        return self.registry.stats_snapshot()


def build_fleet(cfg: FleetConfig, *, channel_factory: ChannelFactory | None = None) -> SessionFleet:
    registry = SessionRegistry()
    store = SessionStore(cfg.database_url)
    codec = ArchiveCodec(retries=cfg.file_retries, retry_delay=cfg.file_retry_delay)
    backups = BackupService(
        store,
        codec,
        registry,
        sessions_dir=cfg.sessions_dir,
        scratch_dir=cfg.scratch_dir,
    )
    notifier = Notifier(cfg.webhook_url, webhook_token=cfg.webhook_token)
    if channel_factory is None:
        channel_factory = telethon_factory(
            TelethonSettings(
                api_id=cfg.api_id,
                api_hash=cfg.api_hash,
                device_model=cfg.device_model,
                system_version=cfg.system_version,
                app_version=cfg.app_version,
                lang_code=cfg.lang_code,
                system_lang_code=cfg.system_lang_code,
                media_timeout=cfg.media_timeout,
            )
        )
    supervisor = ConnectionSupervisor(
        registry,
        channel_factory,
        backups,
        notifier,
        settings=SupervisorSettings(
            max_reconnect_attempts=cfg.max_reconnect_attempts,
            reconnect_cooldown=cfg.reconnect_cooldown,
            conflict_cooldown=cfg.conflict_cooldown,
            init_timeout=cfg.init_timeout,
            init_stuck_timeout=cfg.init_stuck_timeout,
            stuck_retry_delay=cfg.stuck_retry_delay,
            chat_sync_interval=cfg.chat_sync_interval,
            tenant_backup_interval=cfg.tenant_backup_interval,
            orphan_process_pattern=cfg.orphan_process_pattern,
        ),
    )
    dispatcher = MessageDispatcher(
        supervisor,
        notifier,
        settings=DispatcherSettings(
            send_attempts=cfg.send_attempts,
            queue_size=cfg.send_queue_size,
            workers=cfg.send_workers,
            ready_wait_timeout=cfg.ready_wait_timeout,
            media_timeout=cfg.media_timeout,
            retry_media_failures=cfg.retry_media_failures,
            verify_recipients=cfg.verify_recipients,
        ),
    )
    monitor = HealthMonitor(
        supervisor,
        backups,
        settings=HealthSettings(
            connectivity_interval=cfg.connectivity_interval,
            backup_interval=cfg.backup_interval,
            stuck_check_interval=cfg.stuck_check_interval,
            concurrency=cfg.bootstrap_concurrency,
        ),
    )
    return SessionFleet(
        registry=registry,
        store=store,
        backups=backups,
        supervisor=supervisor,
        dispatcher=dispatcher,
        monitor=monitor,
        notifier=notifier,
        challenge_wait_timeout=cfg.challenge_wait_timeout,
        bootstrap_concurrency=cfg.bootstrap_concurrency,
    )


__all__ = ["FleetStore", "SessionFleet", "build_fleet"]
