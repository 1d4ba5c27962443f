"""Per-tenant connection lifecycle: initialization, events, reconnection and conflicts."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set

from .backup import BackupService
from .channel import ChannelClient, ChannelEvent, ChannelFactory, EventHandler, EventKind
from .errors import SessionConflictError, SessionTimeoutError
from .metrics import (
    FLEET_CONFLICTS_TOTAL,
    FLEET_EVENT_ERRORS,
    FLEET_INIT_TIMEOUTS_TOTAL,
    FLEET_RECONNECT_ATTEMPTS_TOTAL,
    FLEET_RECONNECT_EXHAUSTED_TOTAL,
    FLEET_STUCK_RESETS_TOTAL,
)
from .notifier import Notifier
from .registry import Guard, LifecycleState, SessionRegistry, TenantSession


LOGGER = logging.getLogger("fleetworker.supervisor")


@dataclass(frozen=True, slots=True)
class SupervisorSettings:
    max_reconnect_attempts: int = 3
    reconnect_cooldown: float = 5.0
    conflict_cooldown: float = 5.0
    init_timeout: float = 90.0
    init_stuck_timeout: float = 300.0
    stuck_retry_delay: float = 5.0
    chat_sync_interval: float = 60.0
    tenant_backup_interval: float = 1200.0
    orphan_process_pattern: str = ""
    seen_message_limit: int = 1000


class InitOutcome(str, Enum):
    STARTED = "started"
    ALREADY_INITIALIZING = "already_initializing"
    ALREADY_READY = "already_ready"
    REFUSED = "refused"


class ConnectionSupervisor:
    """Drives every tenant through the lifecycle state machine.

    All channel events for a tenant go through :meth:`dispatch`. Events raised
    by a channel that has since been torn down are dropped, so a late
    ``disconnected`` from an old handle cannot disturb its replacement.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        channel_factory: ChannelFactory,
        backups: BackupService,
        notifier: Notifier,
        *,
        settings: SupervisorSettings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._factory = channel_factory
        self._backups = backups
        self._notifier = notifier
        self._settings = settings or SupervisorSettings()
        self._clock = clock
        self._background: Set[asyncio.Task[Any]] = set()
        self._handlers: Dict[EventKind, Callable[[TenantSession, ChannelEvent], Awaitable[None]]] = {
            EventKind.CHALLENGE: self._on_challenge,
            EventKind.AUTHENTICATED: self._on_authenticated,
            EventKind.READY: self._on_ready,
            EventKind.DISCONNECTED: self._on_disconnected,
            EventKind.CONFLICT: self._on_conflict,
            EventKind.INCOMING_MESSAGE: self._on_incoming_message,
            EventKind.AUTH_FAILURE: self._on_auth_failure,
        }

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def settings(self) -> SupervisorSettings:
        return self._settings

    # -------- Background task bookkeeping --------
    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error(
                "stage=background_task_failed task=%s error=%s", task.get_name(), exc, exc_info=exc
            )

    def _start_recovery(
        self,
        session: TenantSession,
        factory: Callable[[], Coroutine[Any, Any, Any]],
        *,
        kind: str,
    ) -> Optional[asyncio.Task[Any]]:
        running = session.recovery_task
        if running is not None and not running.done():
            LOGGER.info(
                "stage=recovery_skip tenant_id=%s kind=%s reason=already_running",
                session.tenant_id,
                kind,
            )
            return None
        task = self._spawn(factory(), name=f"recovery-{kind}-{session.tenant_id}")
        session.recovery_task = task
        return task

    def is_recovering(self, tenant: str) -> bool:
        session = self._registry.get(tenant)
        task = session.recovery_task if session else None
        return task is not None and not task.done()

    def _cancel_tenant_tasks(self, session: TenantSession) -> None:
        current = asyncio.current_task()
        for task in session.tasks:
            if task is not current and not task.done():
                task.cancel()
        session.tasks = []

    def _arm_tenant_tasks(self, session: TenantSession) -> None:
        self._cancel_tenant_tasks(session)
        tenant = session.tenant_id
        if self._settings.chat_sync_interval > 0:
            session.tasks.append(
                self._spawn(
                    self._periodic(tenant, self._settings.chat_sync_interval, self.sync_conversations, "chat_sync"),
                    name=f"chat-sync-{tenant}",
                )
            )
        if self._settings.tenant_backup_interval > 0:
            session.tasks.append(
                self._spawn(
                    self._periodic(tenant, self._settings.tenant_backup_interval, self._backups.save, "backup_refresh"),
                    name=f"backup-refresh-{tenant}",
                )
            )

    async def _periodic(
        self,
        tenant: str,
        interval: float,
        action: Callable[[str], Awaitable[Any]],
        label: str,
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            session = self._registry.get(tenant)
            if session is None or session.state is not LifecycleState.READY:
                continue
            try:
                await action(tenant)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("stage=periodic_failed tenant_id=%s task=%s", tenant, label)

    # -------- Initialization --------
    async def initialize(
        self,
        tenant: str,
        *,
        manual: bool = True,
        fresh: bool = False,
        retry_on_timeout: bool = True,
    ) -> InitOutcome:
        """Start a channel for ``tenant`` unless one is already starting or live.

        ``manual`` marks an operator request; only those may revive a FAILED
        tenant. ``fresh`` drops the local working directory so a new challenge
        is issued instead of resuming the stored identity.
        """
        session = self._registry.ensure(tenant)
        channel = session.channel
        if session.state is LifecycleState.READY and channel is not None and channel.is_connected():
            return InitOutcome.ALREADY_READY
        if session.state is LifecycleState.FAILED and not manual:
            LOGGER.info("stage=init_skip tenant_id=%s reason=reauth_required", tenant)
            return InitOutcome.REFUSED
        if not self._registry.try_acquire(tenant, Guard.INITIALIZING):
            LOGGER.warning("stage=init_skip tenant_id=%s reason=already_initializing", tenant)
            return InitOutcome.ALREADY_INITIALIZING

        if session.state is LifecycleState.FAILED:
            session.reconnect_attempts = 0
            session.auth_failures = 0
        session.generation += 1
        generation = session.generation
        timeout = self._settings.init_timeout
        try:
            self._cancel_tenant_tasks(session)
            await self._release_channel(session, reason="reinitialize")
            session.qr_challenge = None
            session.last_error = None
            self._registry.set_state(
                session, LifecycleState.INITIALIZING, reason="manual" if manual else "automatic"
            )
            await asyncio.wait_for(self._start_channel(session, generation, fresh=fresh), timeout=timeout)
        except asyncio.TimeoutError:
            FLEET_INIT_TIMEOUTS_TOTAL.inc()
            LOGGER.error("stage=init_timeout tenant_id=%s timeout=%ss", tenant, timeout)
            aborted = await self._abort_initialization(session, generation, reason="init_timeout")
            if aborted and retry_on_timeout:
                self._start_recovery(
                    session,
                    lambda: self.reconnect(tenant, reason="init_timeout"),
                    kind="reconnect",
                )
            raise SessionTimeoutError("initialize", timeout) from None
        except asyncio.CancelledError:
            if session.generation == generation:
                session.generation += 1
                self._registry.release(tenant, Guard.INITIALIZING)
                stale = session.channel
                session.channel = None
                if stale is not None:
                    self._spawn(self._destroy(tenant, stale, "init_cancelled"), name=f"destroy-{tenant}")
            raise
        except Exception as exc:
            LOGGER.error("stage=init_failed tenant_id=%s error=%s", tenant, exc)
            await self._abort_initialization(
                session, generation, reason="init_failed", error=str(exc) or exc.__class__.__name__
            )
            raise

        LOGGER.info("stage=init_started tenant_id=%s state=%s", tenant, session.state.value)
        return InitOutcome.STARTED

    async def _start_channel(self, session: TenantSession, generation: int, *, fresh: bool) -> None:
        tenant = session.tenant_id
        if fresh:
            await self._backups.discard_workdir(tenant)
        elif not self._backups.has_workdir(tenant):
            restored = await self._backups.restore(tenant)
            LOGGER.info("stage=init_restore tenant_id=%s restored=%s", tenant, restored)
        if session.generation != generation:
            LOGGER.info("stage=init_abandoned tenant_id=%s reason=superseded_during_restore", tenant)
            return
        channel = self._factory(tenant, self._backups.workdir(tenant), self._event_handler(tenant, generation))
        session.channel = channel
        await channel.initialize()

    def _event_handler(self, tenant: str, generation: int) -> EventHandler:
        async def _handle(event: ChannelEvent) -> None:
            await self.dispatch(tenant, event, generation=generation)

        return _handle

    async def _abort_initialization(
        self,
        session: TenantSession,
        generation: int,
        *,
        reason: str,
        error: Optional[str] = None,
    ) -> bool:
        tenant = session.tenant_id
        if session.generation != generation:
            LOGGER.info("stage=init_abandoned tenant_id=%s reason=%s", tenant, reason)
            return False
        session.generation += 1
        channel = session.channel
        session.channel = None
        if channel is not None:
            await self._destroy(tenant, channel, reason)
        if reason == "init_timeout":
            await self.reap_orphans()
        session.qr_challenge = None
        session.last_error = error or reason
        self._registry.release(tenant, Guard.INITIALIZING)
        self._registry.set_state(session, LifecycleState.DISCONNECTED, reason=reason)
        return True

    async def _destroy(self, tenant: str, channel: ChannelClient, reason: str) -> None:
        try:
            await channel.destroy()
        except Exception as exc:
            LOGGER.warning("stage=destroy_failed tenant_id=%s reason=%s error=%s", tenant, reason, exc)

    async def _release_channel(self, session: TenantSession, *, reason: str) -> None:
        channel = session.channel
        session.channel = None
        if channel is not None:
            LOGGER.info("stage=channel_destroy tenant_id=%s reason=%s", session.tenant_id, reason)
            await self._destroy(session.tenant_id, channel, reason)

    async def teardown(
        self,
        tenant: str,
        state: LifecycleState = LifecycleState.DISCONNECTED,
        *,
        reason: str,
    ) -> None:
        """Destroy the live handle, stop tenant tasks and clear the init guard."""
        session = self._registry.ensure(tenant)
        await self._teardown(session, state, reason=reason)

    async def _teardown(self, session: TenantSession, state: LifecycleState, *, reason: str) -> None:
        session.generation += 1
        self._cancel_tenant_tasks(session)
        await self._release_channel(session, reason=reason)
        session.qr_challenge = None
        self._registry.release(session.tenant_id, Guard.INITIALIZING)
        self._registry.set_state(session, state, reason=reason)

    # -------- Event dispatch --------
    async def dispatch(self, tenant: str, event: ChannelEvent, *, generation: Optional[int] = None) -> None:
        session = self._registry.get(tenant)
        if session is None:
            LOGGER.warning("stage=event_dropped tenant_id=%s kind=%s reason=unknown_tenant", tenant, event.kind.value)
            return
        if generation is not None and generation != session.generation:
            LOGGER.info("stage=event_dropped tenant_id=%s kind=%s reason=stale_channel", tenant, event.kind.value)
            return
        handler = self._handlers[event.kind]
        try:
            await handler(session, event)
        except asyncio.CancelledError:
            raise
        except Exception:
            FLEET_EVENT_ERRORS.labels("event_handler").inc()
            LOGGER.exception("stage=event_failed tenant_id=%s kind=%s", tenant, event.kind.value)

    async def _on_challenge(self, session: TenantSession, event: ChannelEvent) -> None:
        session.qr_challenge = event.payload.get("challenge")
        if session.state is LifecycleState.AWAITING_CHALLENGE:
            session.notify_changed()
            LOGGER.info("stage=challenge_refreshed tenant_id=%s", session.tenant_id)
            return
        self._registry.set_state(session, LifecycleState.AWAITING_CHALLENGE, reason="challenge_issued")

    async def _on_authenticated(self, session: TenantSession, event: ChannelEvent) -> None:
        session.qr_challenge = None
        self._registry.set_state(
            session, LifecycleState.AUTHENTICATED, reason=event.payload.get("source") or "authenticated"
        )

    async def _on_ready(self, session: TenantSession, event: ChannelEvent) -> None:
        tenant = session.tenant_id
        self._registry.release(tenant, Guard.INITIALIZING)
        session.qr_challenge = None
        session.reconnect_attempts = 0
        session.auth_failures = 0
        session.last_error = None
        self._registry.set_state(session, LifecycleState.READY, reason="ready")
        self._arm_tenant_tasks(session)
        self._spawn(self._save_quietly(tenant, "ready"), name=f"backup-ready-{tenant}")

    async def _on_disconnected(self, session: TenantSession, event: ChannelEvent) -> None:
        tenant = session.tenant_id
        reason = event.payload.get("reason") or "disconnected"
        await self._teardown(session, LifecycleState.DISCONNECTED, reason=reason)
        self._start_recovery(session, lambda: self.reconnect(tenant, reason=reason), kind="reconnect")
        await self._notifier.session_reconnecting(tenant, reason)

    async def _on_conflict(self, session: TenantSession, event: ChannelEvent) -> None:
        tenant = session.tenant_id
        self._start_recovery(
            session,
            lambda: self.resolve_conflict(tenant, source="event", force=True),
            kind="conflict",
        )

    async def _on_incoming_message(self, session: TenantSession, event: ChannelEvent) -> None:
        message_id = event.payload.get("message_id")
        if message_id is not None:
            key = f"{event.payload.get('chat_id')}:{message_id}"
            if key in session.seen_messages:
                LOGGER.info("stage=incoming_duplicate tenant_id=%s message_id=%s", session.tenant_id, message_id)
                return
            session.seen_messages[key] = None
            while len(session.seen_messages) > self._settings.seen_message_limit:
                session.seen_messages.popitem(last=False)
        session.last_seen = self._clock()
        await self._notifier.incoming_message(session.tenant_id, dict(event.payload))

    async def _on_auth_failure(self, session: TenantSession, event: ChannelEvent) -> None:
        tenant = session.tenant_id
        reason = event.payload.get("reason") or "auth_failure"
        FLEET_EVENT_ERRORS.labels("auth_failure").inc()
        session.last_error = reason
        if event.payload.get("fatal"):
            await self._fail(session, reason)
            return
        if session.qr_challenge is not None:
            LOGGER.warning(
                "stage=auth_failure tenant_id=%s reason=%s action=keep_pending_challenge", tenant, reason
            )
            return
        session.auth_failures += 1
        if session.auth_failures > self._settings.max_reconnect_attempts:
            await self._fail(session, reason)
            return
        LOGGER.warning(
            "stage=auth_failure tenant_id=%s reason=%s action=new_challenge attempt=%s",
            tenant,
            reason,
            session.auth_failures,
        )
        await self._teardown(session, LifecycleState.DISCONNECTED, reason=reason)
        self._start_recovery(session, lambda: self._regenerate_challenge(tenant), kind="challenge")

    async def _regenerate_challenge(self, tenant: str) -> None:
        await asyncio.sleep(self._settings.reconnect_cooldown)
        try:
            await self.initialize(tenant, manual=False, fresh=True)
        except Exception as exc:
            LOGGER.error("stage=challenge_regenerate_failed tenant_id=%s error=%s", tenant, exc)

    async def _fail(self, session: TenantSession, reason: str) -> None:
        await self._teardown(session, LifecycleState.FAILED, reason=reason)
        session.last_error = reason
        await self._notifier.session_reauth_required(session.tenant_id, reason)

    async def _save_quietly(self, tenant: str, reason: str) -> bool:
        try:
            return await self._backups.save(tenant)
        except Exception as exc:
            LOGGER.error("stage=backup_after_%s_failed tenant_id=%s error=%s", reason, tenant, exc)
            return False

    # -------- Recovery --------
    async def reconnect(self, tenant: str, *, reason: Optional[str] = None) -> bool:
        """Bounded reconnection. Returns ``False`` once the tenant is FAILED."""
        session = self._registry.ensure(tenant)
        limit = self._settings.max_reconnect_attempts
        while session.reconnect_attempts < limit:
            if session.state is LifecycleState.READY or self._registry.is_held(tenant, Guard.INITIALIZING):
                LOGGER.info(
                    "stage=reconnect_skip tenant_id=%s state=%s reason=recovered_elsewhere",
                    tenant,
                    session.state.value,
                )
                return True
            session.reconnect_attempts += 1
            attempt = session.reconnect_attempts
            FLEET_RECONNECT_ATTEMPTS_TOTAL.inc()
            LOGGER.info(
                "stage=reconnect_attempt tenant_id=%s attempt=%s/%s reason=%s",
                tenant,
                attempt,
                limit,
                reason,
            )
            await self._teardown(session, LifecycleState.RECONNECTING, reason=f"reconnect_attempt_{attempt}")
            await asyncio.sleep(self._settings.reconnect_cooldown)
            try:
                outcome = await self.initialize(tenant, manual=False, retry_on_timeout=False)
            except Exception as exc:
                session.last_error = str(exc) or exc.__class__.__name__
                LOGGER.warning(
                    "stage=reconnect_failed tenant_id=%s attempt=%s/%s error=%s", tenant, attempt, limit, exc
                )
                continue
            if outcome is InitOutcome.REFUSED:
                return False
            LOGGER.info("stage=reconnect_ok tenant_id=%s attempt=%s outcome=%s", tenant, attempt, outcome.value)
            return True

        FLEET_RECONNECT_EXHAUSTED_TOTAL.inc()
        LOGGER.error("stage=reconnect_exhausted tenant_id=%s attempts=%s", tenant, session.reconnect_attempts)
        await self._fail(session, "reconnect_exhausted")
        return False

    async def resolve_conflict(self, tenant: str, *, source: str, force: bool = False) -> None:
        """Tear the handle down, wait out the cooldown, then reinitialize.

        Unless ``force`` is set the call is a no-op while another
        initialization holds the guard for this tenant.
        """
        session = self._registry.ensure(tenant)
        if not force and self._registry.is_held(tenant, Guard.INITIALIZING):
            LOGGER.info("stage=conflict_skip tenant_id=%s source=%s reason=initializing", tenant, source)
            return
        FLEET_CONFLICTS_TOTAL.labels(source).inc()
        LOGGER.warning("stage=conflict tenant_id=%s source=%s", tenant, source)
        await self._teardown(session, LifecycleState.DISCONNECTED, reason=f"conflict_{source}")
        await asyncio.sleep(self._settings.conflict_cooldown)
        try:
            outcome = await self.initialize(tenant, manual=False)
        except Exception as exc:
            LOGGER.error("stage=conflict_reinit_failed tenant_id=%s source=%s error=%s", tenant, source, exc)
            return
        LOGGER.info("stage=conflict_resolved tenant_id=%s source=%s outcome=%s", tenant, source, outcome.value)

    async def reap_orphans(self) -> None:
        pattern = self._settings.orphan_process_pattern
        if not pattern:
            return
        try:
            proc = await asyncio.create_subprocess_exec(
                "pkill",
                "-f",
                pattern,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            code = await proc.wait()
        except OSError as exc:
            LOGGER.warning("stage=orphan_reap_failed pattern=%s error=%s", pattern, exc)
            return
        # pkill exits 1 when nothing matched.
        LOGGER.info("stage=orphans_reaped pattern=%s exit_code=%s", pattern, code)

    async def check_stuck(self) -> List[str]:
        """Force-reset tenants whose initialization outlived the stuck threshold."""
        now = self._clock()
        reset: List[str] = []
        for tenant, since in self._registry.holders(Guard.INITIALIZING).items():
            session = self._registry.get(tenant)
            if session is None or session.state is not LifecycleState.INITIALIZING:
                continue
            held_for = now - since
            if held_for < self._settings.init_stuck_timeout:
                continue
            FLEET_STUCK_RESETS_TOTAL.inc()
            LOGGER.warning("stage=init_stuck tenant_id=%s held_for=%.1fs", tenant, held_for)
            session.last_error = "init_stuck"
            await self._teardown(session, LifecycleState.DISCONNECTED, reason="init_stuck")
            await self.reap_orphans()
            self._spawn(self._retry_after(tenant, self._settings.stuck_retry_delay), name=f"stuck-retry-{tenant}")
            reset.append(tenant)
        return reset

    async def _retry_after(self, tenant: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.initialize(tenant, manual=False)
        except Exception as exc:
            LOGGER.error("stage=stuck_retry_failed tenant_id=%s error=%s", tenant, exc)

    # -------- Conversations --------
    async def sync_conversations(self, tenant: str) -> int:
        session = self._registry.get(tenant)
        channel = session.channel if session else None
        if session is None or channel is None or session.state is not LifecycleState.READY:
            LOGGER.info("stage=chat_sync_skip tenant_id=%s reason=not_ready", tenant)
            return 0
        try:
            conversations = await channel.list_conversations()
        except SessionConflictError as exc:
            LOGGER.warning("stage=chat_sync_conflict tenant_id=%s error=%s", tenant, exc)
            self._start_recovery(
                session, lambda: self.resolve_conflict(tenant, source="chat_sync"), kind="conflict"
            )
            return 0
        unread = [item for item in conversations if item.unread_count > 0]
        session.last_sync_at = self._clock()
        session.unread_conversations = len(unread)
        LOGGER.info("stage=chat_sync tenant_id=%s total=%s unread=%s", tenant, len(conversations), len(unread))
        if unread:
            await self._notifier.conversations_unread(
                tenant,
                [
                    {"conversation_id": item.conversation_id, "title": item.title, "unread": item.unread_count}
                    for item in unread
                ],
            )
        return len(unread)

    # -------- Waiting and shutdown --------
    async def wait_until(
        self,
        tenant: str,
        predicate: Callable[[TenantSession], bool],
        timeout: float,
    ) -> bool:
        session = self._registry.ensure(tenant)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate(session):
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            changed = session.changed
            try:
                await asyncio.wait_for(changed.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return predicate(session)
        return True

    async def wait_ready(self, tenant: str, timeout: float) -> bool:
        return await self.wait_until(tenant, lambda s: s.state is LifecycleState.READY, timeout)

    async def shutdown(self) -> None:
        for session in self._registry.sessions():
            self._cancel_tenant_tasks(session)
            if session.recovery_task is not None and not session.recovery_task.done():
                session.recovery_task.cancel()
        pending = [task for task in self._background if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for session in self._registry.sessions():
            session.generation += 1
            await self._release_channel(session, reason="shutdown")
            self._registry.release(session.tenant_id, Guard.INITIALIZING)
        self._registry.update_metrics()
        LOGGER.info("stage=supervisor_stopped tenants=%s", len(self._registry))


__all__ = ["ConnectionSupervisor", "InitOutcome", "SupervisorSettings"]
