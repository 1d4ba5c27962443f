from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from .errors import InvalidTenantError
from .metrics import FLEET_SESSIONS


LOGGER = logging.getLogger("fleetworker.registry")

TENANT_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$"
_TENANT_ID_RE = re.compile(TENANT_ID_PATTERN)


def validate_tenant_id(tenant: str) -> str:
    """Tenant ids double as working directory names."""
    if not isinstance(tenant, str) or not _TENANT_ID_RE.match(tenant) or ".." in tenant:
        raise InvalidTenantError(f"invalid tenant id: {tenant!r}")
    return tenant


class LifecycleState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class Guard(str, Enum):
    INITIALIZING = "initializing"
    SAVING = "saving"


@dataclass(slots=True)
class TenantSession:
    tenant_id: str
    state: LifecycleState = LifecycleState.UNINITIALIZED
    channel: Optional[Any] = None
    qr_challenge: Optional[str] = None
    reconnect_attempts: int = 0
    auth_failures: int = 0
    last_error: Optional[str] = None
    last_seen: Optional[float] = None
    last_backup_at: Optional[float] = None
    last_sync_at: Optional[float] = None
    unread_conversations: int = 0
    tasks: List[asyncio.Task[Any]] = field(default_factory=list)
    recovery_task: Optional[asyncio.Task[Any]] = None
    generation: int = 0
    seen_messages: "OrderedDict[str, None]" = field(default_factory=OrderedDict)
    changed: asyncio.Event = field(default_factory=asyncio.Event)

    def notify_changed(self) -> None:
        previous = self.changed
        self.changed = asyncio.Event()
        previous.set()


@dataclass(slots=True)
class SessionSnapshot:
    """Point-in-time view of a tenant session, safe to hand to the API layer."""

    tenant_id: str
    status: str
    ready: bool
    initializing: bool
    saving: bool
    challenge_pending: bool
    reconnect_attempts: int
    last_error: Optional[str]
    last_seen: Optional[float]
    last_backup_at: Optional[float]

    def to_payload(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "status": self.status,
            "ready": self.ready,
            "initializing": self.initializing,
            "saving": self.saving,
            "challenge_pending": self.challenge_pending,
            "reconnect_attempts": self.reconnect_attempts,
            "last_error": self.last_error,
            "last_seen": _seconds_to_ms(self.last_seen),
            "last_backup_at": _seconds_to_ms(self.last_backup_at),
        }


def _seconds_to_ms(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    return int(value * 1000)


class SessionRegistry:
    """In-memory tenant sessions plus the per-tenant operation guards.

    Guard acquisition never awaits, so a check-and-set is a single step for the
    event loop and two coroutines cannot both hold the same guard for a tenant.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._sessions: Dict[str, TenantSession] = {}
        self._guards: Dict[Guard, Dict[str, float]] = {guard: {} for guard in Guard}

    def __contains__(self, tenant: str) -> bool:
        return tenant in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, tenant: str) -> Optional[TenantSession]:
        return self._sessions.get(tenant)

    def ensure(self, tenant: str) -> TenantSession:
        session = self._sessions.get(tenant)
        if session is None:
            validate_tenant_id(tenant)
            session = TenantSession(tenant_id=tenant)
            self._sessions[tenant] = session
            self.update_metrics()
        return session

    def tenants(self) -> List[str]:
        return list(self._sessions)

    def sessions(self) -> Iterator[TenantSession]:
        return iter(list(self._sessions.values()))

    def try_acquire(self, tenant: str, guard: Guard) -> bool:
        holders = self._guards[guard]
        if tenant in holders:
            return False
        holders[tenant] = self._clock()
        return True

    def release(self, tenant: str, guard: Guard) -> None:
        self._guards[guard].pop(tenant, None)

    def is_held(self, tenant: str, guard: Guard) -> bool:
        return tenant in self._guards[guard]

    def held_since(self, tenant: str, guard: Guard) -> Optional[float]:
        return self._guards[guard].get(tenant)

    def holders(self, guard: Guard) -> Dict[str, float]:
        return dict(self._guards[guard])

    def set_state(
        self,
        session: TenantSession,
        state: LifecycleState,
        *,
        reason: str | None = None,
    ) -> None:
        previous = session.state
        if previous != state:
            if reason:
                LOGGER.info(
                    "stage=state_transition tenant_id=%s from=%s to=%s reason=%s",
                    session.tenant_id,
                    previous.value,
                    state.value,
                    reason,
                )
            else:
                LOGGER.info(
                    "stage=state_transition tenant_id=%s from=%s to=%s",
                    session.tenant_id,
                    previous.value,
                    state.value,
                )
        session.state = state
        session.last_seen = self._clock()
        session.notify_changed()
        self.update_metrics()

    def snapshot(self, tenant: str) -> SessionSnapshot:
        session = self._sessions.get(tenant) or TenantSession(tenant_id=tenant)
        return SessionSnapshot(
            tenant_id=tenant,
            status=session.state.value,
            ready=session.state is LifecycleState.READY,
            initializing=self.is_held(tenant, Guard.INITIALIZING),
            saving=self.is_held(tenant, Guard.SAVING),
            challenge_pending=session.qr_challenge is not None,
            reconnect_attempts=session.reconnect_attempts,
            last_error=session.last_error,
            last_seen=session.last_seen,
            last_backup_at=session.last_backup_at,
        )

    def stats_snapshot(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in LifecycleState}
        for session in self._sessions.values():
            counts[session.state.value] += 1
        return counts

    def update_metrics(self) -> None:
        for state, count in self.stats_snapshot().items():
            FLEET_SESSIONS.labels(state).set(count)


__all__ = [
    "Guard",
    "LifecycleState",
    "SessionRegistry",
    "SessionSnapshot",
    "TENANT_ID_PATTERN",
    "TenantSession",
    "validate_tenant_id",
]
