from __future__ import annotations

import prometheus_client

prometheus_client.REGISTRY._names_to_collectors.clear()
prometheus_client.REGISTRY._collector_to_names.clear()

import asyncio
import dataclasses
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from fleetworker.archive import ArchiveCodec
from fleetworker.backup import BackupService
from fleetworker.channel import ChannelEvent, Conversation, EventHandler, EventKind
from fleetworker.dispatcher import DispatcherSettings, MessageDispatcher
from fleetworker.errors import ChannelClosedError
from fleetworker.notifier import Notifier
from fleetworker.registry import SessionRegistry
from fleetworker.store import SessionBackup
from fleetworker.supervisor import ConnectionSupervisor, SupervisorSettings


AUTH_MARKER = "auth.json"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChannel:
    """Scripted channel: resumes when the auth marker exists, otherwise challenges."""

    def __init__(self, factory: "FakeChannelFactory", tenant: str, workdir: Path, on_event: EventHandler) -> None:
        self.factory = factory
        self.tenant = tenant
        self.workdir = workdir
        self.on_event = on_event
        self.connected = False
        self.destroyed = False
        self.emitted: List[EventKind] = []

    async def emit(self, kind: EventKind, **payload: Any) -> None:
        self.emitted.append(kind)
        await self.on_event(ChannelEvent(kind, payload))

    async def initialize(self) -> None:
        self.factory.init_calls += 1
        if self.factory.init_error is not None:
            raise self.factory.init_error
        if self.factory.init_hang:
            await asyncio.Event().wait()
        self.connected = True
        self.workdir.mkdir(parents=True, exist_ok=True)
        if self.factory.init_silent:
            return
        if (self.workdir / AUTH_MARKER).exists():
            await self.emit(EventKind.AUTHENTICATED, source="session_resume")
            await self.emit(EventKind.READY)
            return
        if self.factory.auto_ready:
            await self.scan()
            return
        await self.emit(EventKind.CHALLENGE, challenge=f"tg://login?token={self.tenant}-{self.factory.init_calls}")

    async def scan(self) -> None:
        (self.workdir / AUTH_MARKER).write_text(json.dumps({"tenant": self.tenant}))
        await self.emit(EventKind.AUTHENTICATED, source="qr_scanned")
        await self.emit(EventKind.READY)

    async def send_payload(self, address: Any, content: Any) -> str:
        if self.destroyed:
            raise ChannelClosedError("destroyed")
        if self.factory.send_gate is not None:
            await self.factory.send_gate.wait()
        self.factory.sends.append((self.tenant, address, content))
        if self.factory.send_error is not None:
            raise self.factory.send_error
        return str(len(self.factory.sends))

    async def destroy(self) -> None:
        self.destroyed = True
        self.connected = False

    async def list_conversations(self) -> List[Conversation]:
        return list(self.factory.conversations)

    def is_connected(self) -> bool:
        return self.connected and not self.destroyed

    async def is_registered(self, address: Any) -> bool:
        return address not in self.factory.unregistered


class FakeChannelFactory:
    def __init__(self) -> None:
        self.channels: List[FakeChannel] = []
        self.init_calls = 0
        self.init_error: Optional[BaseException] = None
        self.init_hang = False
        self.init_silent = False
        self.auto_ready = True
        self.sends: List[tuple[str, Any, Any]] = []
        self.send_error: Optional[BaseException] = None
        self.send_gate: Optional[asyncio.Event] = None
        self.conversations: List[Conversation] = []
        self.unregistered: set[Any] = set()

    def __call__(self, tenant: str, workdir: Path, on_event: EventHandler) -> FakeChannel:
        channel = FakeChannel(self, tenant, workdir, on_event)
        self.channels.append(channel)
        return channel

    def live(self) -> List[FakeChannel]:
        return [channel for channel in self.channels if not channel.destroyed]


class FakeStore:
    def __init__(self) -> None:
        self.rows: Dict[str, SessionBackup] = {}
        self.upserts = 0
        self.upsert_gate: Optional[asyncio.Event] = None
        self.upsert_error: Optional[BaseException] = None
        self.finds = 0
        self.find_gate: Optional[asyncio.Event] = None
        self.closed = False

    async def upsert(self, tenant_id: str, blob: bytes, metadata: Dict[str, Any]) -> None:
        self.upserts += 1
        if self.upsert_gate is not None:
            await self.upsert_gate.wait()
        if self.upsert_error is not None:
            raise self.upsert_error
        self.rows[tenant_id] = SessionBackup(tenant_id=tenant_id, blob=blob, device_info=dict(metadata))

    async def find(self, tenant_id: str) -> Optional[SessionBackup]:
        self.finds += 1
        if self.find_gate is not None:
            await self.find_gate.wait()
        return self.rows.get(tenant_id)

    async def delete(self, tenant_id: str) -> bool:
        return self.rows.pop(tenant_id, None) is not None

    async def list_tenants(self) -> List[str]:
        return sorted(self.rows)

    async def close(self) -> None:
        self.closed = True


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        super().__init__(None)
        self.events: List[tuple[str, str, Dict[str, Any]]] = []
        self.gates: Dict[str, asyncio.Event] = {}

    async def _post(self, event: str, tenant: str, body: Dict[str, Any]) -> bool:
        self.events.append((event, tenant, body))
        gate = self.gates.get(event)
        if gate is not None:
            await gate.wait()
        return True

    def kinds(self, tenant: Optional[str] = None) -> List[str]:
        return [event for event, who, _ in self.events if tenant is None or who == tenant]


@dataclass
class Harness:
    root: Path
    clock: FakeClock
    registry: SessionRegistry
    store: FakeStore
    backups: BackupService
    factory: FakeChannelFactory
    notifier: RecordingNotifier
    supervisor: ConnectionSupervisor

    def dispatcher(self, **overrides: Any) -> MessageDispatcher:
        settings = dataclasses.replace(
            DispatcherSettings(workers=1, ready_wait_timeout=1.0, media_timeout=1.0), **overrides
        )
        return MessageDispatcher(self.supervisor, self.notifier, settings=settings)

    async def close(self) -> None:
        await self.supervisor.shutdown()
        await self.notifier.aclose()


def build_harness(
    root: Path,
    *,
    store: Optional[FakeStore] = None,
    sessions: str = "sessions",
    **overrides: Any,
) -> Harness:
    clock = FakeClock()
    registry = SessionRegistry(clock=clock)
    store = store or FakeStore()
    backups = BackupService(
        store,
        ArchiveCodec(retries=3, retry_delay=0.0),
        registry,
        sessions_dir=root / sessions,
        scratch_dir=root / "scratch",
        clock=clock,
    )
    factory = FakeChannelFactory()
    notifier = RecordingNotifier()
    settings = dataclasses.replace(
        SupervisorSettings(
            reconnect_cooldown=0.0,
            conflict_cooldown=0.0,
            init_timeout=2.0,
            stuck_retry_delay=0.0,
            chat_sync_interval=0.0,
            tenant_backup_interval=0.0,
        ),
        **overrides,
    )
    supervisor = ConnectionSupervisor(registry, factory, backups, notifier, settings=settings, clock=clock)
    return Harness(root, clock, registry, store, backups, factory, notifier, supervisor)


@pytest.fixture
async def harness(tmp_path: Path, anyio_backend: str):
    built = build_harness(tmp_path)
    try:
        yield built
    finally:
        await built.close()


@pytest.fixture
def make_harness(tmp_path: Path) -> Callable[..., Harness]:
    def _make(**kwargs: Any) -> Harness:
        return build_harness(tmp_path, **kwargs)

    return _make


async def _settle(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def settle() -> Callable[..., Any]:
    return _settle
