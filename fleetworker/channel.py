"""Channel client contract and the Telethon-backed implementation."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import io
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from telethon import TelegramClient, events
from telethon.errors import RPCError, SessionPasswordNeededError
from telethon.errors.rpcerrorlist import (
    AuthKeyDuplicatedError,
    AuthKeyUnregisteredError,
    PhoneNumberInvalidError,
    UsernameInvalidError,
    UsernameNotOccupiedError,
)

from .errors import (
    AuthFailureError,
    ChannelClosedError,
    SendRejectedError,
    SessionConflictError,
    SessionTimeoutError,
)


LOGGER = logging.getLogger("fleetworker.channel")


class EventKind(str, Enum):
    CHALLENGE = "challenge"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    CONFLICT = "conflict"
    INCOMING_MESSAGE = "incoming_message"
    AUTH_FAILURE = "auth_failure"


@dataclass(slots=True)
class ChannelEvent:
    kind: EventKind
    payload: Dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[ChannelEvent], Awaitable[None]]


@dataclass(slots=True)
class MediaContent:
    data: bytes
    filename: str = "file"
    caption: str = ""


Content = Union[str, MediaContent]


@dataclass(slots=True)
class Conversation:
    conversation_id: str
    title: str
    unread_count: int = 0


class ChannelClient(Protocol):
    async def initialize(self) -> None: ...

    async def send_payload(self, address: Any, content: Content) -> str: ...

    async def destroy(self) -> None: ...

    async def list_conversations(self) -> List[Conversation]: ...

    def is_connected(self) -> bool: ...

    async def is_registered(self, address: Any) -> bool: ...


ChannelFactory = Callable[[str, Path, EventHandler], ChannelClient]


@dataclass(frozen=True, slots=True)
class TelethonSettings:
    api_id: int
    api_hash: str
    device_model: str = "fleetworker"
    system_version: str = "1.0"
    app_version: str = "1.0"
    lang_code: str = "en"
    system_lang_code: str = "en"
    qr_refresh_timeout: float = 30.0
    media_timeout: float = 30.0


class TelethonChannel:
    """One Telegram identity driven through QR login.

    The session file lives inside the tenant working directory, so archiving
    that directory is enough to resume without a new challenge.
    """

    SESSION_NAME = "channel.session"

    def __init__(
        self,
        tenant: str,
        workdir: Path,
        on_event: EventHandler,
        settings: TelethonSettings,
    ) -> None:
        self._tenant = tenant
        self._workdir = workdir
        self._on_event = on_event
        self._settings = settings
        self._client: Optional[TelegramClient] = None
        self._login_task: Optional[asyncio.Task[Any]] = None
        self._watch_task: Optional[asyncio.Task[Any]] = None
        self._closing = False

    def _build_client(self) -> TelegramClient:
        self._workdir.mkdir(parents=True, exist_ok=True)
        return TelegramClient(
            str(self._workdir / self.SESSION_NAME),
            self._settings.api_id,
            self._settings.api_hash,
            device_model=self._settings.device_model,
            system_version=self._settings.system_version,
            app_version=self._settings.app_version,
            lang_code=self._settings.lang_code,
            system_lang_code=self._settings.system_lang_code,
        )

    async def _emit(self, kind: EventKind, **payload: Any) -> None:
        if self._closing:
            return
        await self._on_event(ChannelEvent(kind, payload))

    def _require_client(self) -> TelegramClient:
        if self._client is None or self._closing:
            raise ChannelClosedError(f"channel closed tenant_id={self._tenant}")
        return self._client

    async def initialize(self) -> None:
        client = self._build_client()
        self._client = client
        try:
            await client.connect()
            authorized = await client.is_user_authorized()
        except AuthKeyDuplicatedError as exc:
            raise SessionConflictError(str(exc) or "auth_key_duplicated") from exc
        except AuthKeyUnregisteredError:
            authorized = False

        self._register_handlers(client)
        self._watch_task = asyncio.create_task(
            self._watch_disconnect(client), name=f"channel-watch-{self._tenant}"
        )
        if authorized:
            await self._emit(EventKind.AUTHENTICATED, source="session_resume")
            await self._emit_ready(client)
            return

        qr_login = await client.qr_login()
        await self._emit(EventKind.CHALLENGE, challenge=qr_login.url, expires=_expires_ts(qr_login))
        self._login_task = asyncio.create_task(
            self._wait_for_scan(client, qr_login), name=f"channel-qr-{self._tenant}"
        )

    async def _emit_ready(self, client: TelegramClient) -> None:
        me = await client.get_me()
        await self._emit(
            EventKind.READY,
            account_id=getattr(me, "id", None),
            username=getattr(me, "username", None),
        )

    async def _wait_for_scan(self, client: TelegramClient, qr_login: Any) -> None:
        try:
            while True:
                try:
                    await qr_login.wait(timeout=self._settings.qr_refresh_timeout)
                    break
                except asyncio.TimeoutError:
                    await qr_login.recreate()
                    LOGGER.info("stage=qr_recreated tenant_id=%s", self._tenant)
                    await self._emit(
                        EventKind.CHALLENGE, challenge=qr_login.url, expires=_expires_ts(qr_login)
                    )
            await self._emit(EventKind.AUTHENTICATED, source="qr_scanned")
            await self._emit_ready(client)
        except SessionPasswordNeededError:
            await self._emit(EventKind.AUTH_FAILURE, reason="password_required", fatal=True)
        except AuthKeyDuplicatedError:
            await self._emit(EventKind.CONFLICT, reason="auth_key_duplicated")
        except AuthKeyUnregisteredError:
            await self._emit(EventKind.AUTH_FAILURE, reason="authkey_unregistered", fatal=False)
        except asyncio.CancelledError:
            raise
        except RPCError as exc:
            LOGGER.error("stage=qr_fail tenant_id=%s error=%s", self._tenant, exc)
            await self._emit(EventKind.AUTH_FAILURE, reason=str(exc) or "rpc_error", fatal=False)

    async def _watch_disconnect(self, client: TelegramClient) -> None:
        try:
            await client.disconnected
        except AuthKeyDuplicatedError:
            await self._emit(EventKind.CONFLICT, reason="auth_key_duplicated")
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._emit(EventKind.DISCONNECTED, reason=str(exc) or exc.__class__.__name__)
            return
        await self._emit(EventKind.DISCONNECTED, reason="connection_lost")

    def _register_handlers(self, client: TelegramClient) -> None:
        @client.on(events.NewMessage(incoming=True))
        async def _on_message(event):
            payload = await incoming_payload(
                client,
                event.message,
                chat_id=getattr(event, "chat_id", None),
                media_timeout=self._settings.media_timeout,
            )
            await self._emit(EventKind.INCOMING_MESSAGE, **payload)

    async def send_payload(self, address: Any, content: Content) -> str:
        client = self._require_client()
        try:
            if isinstance(content, MediaContent):
                buffer = io.BytesIO(content.data)
                buffer.name = content.filename
                message = await client.send_file(address, file=buffer, caption=content.caption)
            else:
                message = await client.send_message(address, content)
        except AuthKeyDuplicatedError as exc:
            raise SessionConflictError(str(exc) or "auth_key_duplicated") from exc
        except AuthKeyUnregisteredError as exc:
            raise AuthFailureError("authkey_unregistered") from exc
        except RPCError as exc:
            raise SendRejectedError(str(exc) or exc.__class__.__name__) from exc
        return str(message.id)

    async def is_registered(self, address: Any) -> bool:
        client = self._require_client()
        try:
            await client.get_input_entity(address)
        except (ValueError, PhoneNumberInvalidError, UsernameInvalidError, UsernameNotOccupiedError):
            return False
        return True

    async def list_conversations(self) -> List[Conversation]:
        client = self._require_client()
        try:
            dialogs = await client.get_dialogs(limit=100)
        except AuthKeyDuplicatedError as exc:
            raise SessionConflictError(str(exc) or "auth_key_duplicated") from exc
        return [
            Conversation(
                conversation_id=str(dialog.id),
                title=dialog.name or "",
                unread_count=int(dialog.unread_count or 0),
            )
            for dialog in dialogs
        ]

    def is_connected(self) -> bool:
        return bool(self._client is not None and not self._closing and self._client.is_connected())

    async def destroy(self) -> None:
        self._closing = True
        current = asyncio.current_task()
        for task in (self._login_task, self._watch_task):
            if task and not task.done() and task is not current:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._login_task = None
        self._watch_task = None
        client = self._client
        self._client = None
        if client is not None:
            await client.disconnect()


async def download_incoming_media(client: Any, message: Any, *, timeout: float) -> Dict[str, Any]:
    try:
        data = await asyncio.wait_for(client.download_media(message, file=bytes), timeout=timeout)
    except asyncio.TimeoutError:
        raise SessionTimeoutError("incoming_media", timeout) from None
    if not data:
        raise ValueError("media download returned no data")
    file = getattr(message, "file", None)
    return {
        "mime_type": getattr(file, "mime_type", None) or "application/octet-stream",
        "filename": getattr(file, "name", None) or f"file-{getattr(message, 'id', 'unknown')}",
        "size": len(data),
        "data_base64": base64.b64encode(data).decode("ascii"),
    }


async def incoming_payload(
    client: Any,
    message: Any,
    *,
    chat_id: Any = None,
    media_timeout: float = 30.0,
) -> Dict[str, Any]:
    """Event payload for an incoming message; a failed media download keeps the text."""
    message_id = getattr(message, "id", None)
    payload: Dict[str, Any] = {
        "sender_id": getattr(message, "sender_id", None),
        "chat_id": chat_id,
        "message_id": message_id,
        "text": getattr(message, "message", None) or "",
        "media": None,
    }
    date = getattr(message, "date", None)
    if date is not None:
        payload["timestamp"] = int(date.timestamp() * 1000)
    if not getattr(message, "media", None):
        return payload
    try:
        payload["media"] = await download_incoming_media(client, message, timeout=media_timeout)
    except SessionTimeoutError as exc:
        LOGGER.error("stage=incoming_media_timeout message_id=%s error=%s", message_id, exc)
        payload["media_error"] = str(exc)
    except (RPCError, ValueError, OSError) as exc:
        LOGGER.error("stage=incoming_media_failed message_id=%s error=%s", message_id, exc)
        payload["media_error"] = str(exc) or exc.__class__.__name__
    return payload


def _expires_ts(qr_login: Any) -> Optional[float]:
    expires = getattr(qr_login, "expires", None)
    if expires is None:
        return None
    try:
        return float(expires.timestamp())
    except AttributeError:
        return None


def telethon_factory(settings: TelethonSettings) -> ChannelFactory:
    def _factory(tenant: str, workdir: Path, on_event: EventHandler) -> ChannelClient:
        return TelethonChannel(tenant, workdir, on_event, settings)

    return _factory


__all__ = [
    "ChannelClient",
    "ChannelEvent",
    "ChannelFactory",
    "Content",
    "Conversation",
    "EventHandler",
    "EventKind",
    "MediaContent",
    "TelethonChannel",
    "TelethonSettings",
    "download_incoming_media",
    "incoming_payload",
    "telethon_factory",
]
