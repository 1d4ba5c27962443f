"""Outbound sends: readiness gate, address normalization and bounded retry queue."""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx

from .channel import ChannelEvent, Content, EventKind, MediaContent
from .errors import (
    AuthFailureError,
    ChannelClosedError,
    InvalidRecipientError,
    QueueOverflowError,
    ReconnectExhaustedError,
    SessionNotReadyError,
    SessionTimeoutError,
    is_conflict,
)
from .metrics import FLEET_SEND_RETRIES_TOTAL, FLEET_SENDS_TOTAL
from .notifier import Notifier
from .registry import LifecycleState, validate_tenant_id
from .supervisor import ConnectionSupervisor


LOGGER = logging.getLogger("fleetworker.dispatcher")

_USERNAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{3,31}$")
_PHONE_STRIP_RE = re.compile(r"[\s\-().]")
_PEER_ID_RE = re.compile(r"^-?\d+$")

Address = Union[str, int]


def normalize_address(recipient: str) -> Address:
    """Map a user supplied recipient onto the channel's addressing format.

    ``@name`` and bare usernames become usernames, ``+``/``00`` prefixed
    numbers become E.164 phone numbers and bare integers are peer ids.
    """
    value = (recipient or "").strip()
    if not value:
        raise InvalidRecipientError("empty recipient")
    if value.lower() == "me":
        return "me"
    if value.startswith("@"):
        username = value[1:]
        if not _USERNAME_RE.match(username):
            raise InvalidRecipientError(f"invalid username: {value}")
        return username

    if _PEER_ID_RE.match(value):
        return int(value)

    compact = _PHONE_STRIP_RE.sub("", value)
    if compact.startswith("00") and len(compact) > 2:
        compact = f"+{compact[2:]}"
    if compact.startswith("+"):
        digits = compact[1:]
        if not digits.isdigit() or not 7 <= len(digits) <= 15:
            raise InvalidRecipientError(f"invalid phone number: {value}")
        return f"+{digits}"
    if compact.isdigit():
        return int(compact)
    if _USERNAME_RE.match(value):
        return value
    raise InvalidRecipientError(f"unsupported recipient: {value}")


@dataclass(slots=True)
class OutboundPayload:
    text: Optional[str] = None
    media_url: Optional[str] = None
    media: Optional[MediaContent] = None
    caption: str = ""

    @property
    def kind(self) -> str:
        return "media" if (self.media is not None or self.media_url) else "text"

    def validate(self) -> None:
        if self.kind == "text" and not (self.text or "").strip():
            raise ValueError("payload requires text or media")


@dataclass(slots=True)
class OutboundSendTask:
    tenant_id: str
    recipient: str
    payload: OutboundPayload
    attempts_remaining: int
    idempotency_key: str
    future: asyncio.Future[Any]
    enqueued_at: float = field(default_factory=time.time)
    attempts_made: int = 0

    def resolve(self, result: Any) -> bool:
        if self.future.done():
            return False
        self.future.set_result(result)
        return True

    def reject(self, exc: BaseException) -> bool:
        if self.future.done():
            return False
        self.future.set_exception(exc)
        return True


@dataclass(slots=True)
class DeliveryReceipt:
    tenant_id: str
    recipient: str
    message_id: str
    idempotency_key: str
    kind: str
    attempts: int
    sent_at: float
    ok: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "tenant_id": self.tenant_id,
            "recipient": self.recipient,
            "message_id": self.message_id,
            "idempotency_key": self.idempotency_key,
            "kind": self.kind,
            "attempts": self.attempts,
            "sent_at": int(self.sent_at * 1000),
        }


@dataclass(slots=True)
class SendFailure:
    tenant_id: str
    recipient: str
    idempotency_key: str
    code: str
    attempts: int
    detail: str
    ok: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "error": self.code,
            "tenant_id": self.tenant_id,
            "recipient": self.recipient,
            "idempotency_key": self.idempotency_key,
            "attempts": self.attempts,
            "detail": self.detail,
        }


SendResult = Union[DeliveryReceipt, SendFailure]


@dataclass(frozen=True, slots=True)
class DispatcherSettings:
    send_attempts: int = 3
    queue_size: int = 1000
    workers: int = 4
    ready_wait_timeout: float = 30.0
    media_timeout: float = 30.0
    retry_media_failures: bool = True
    verify_recipients: bool = False


class MessageDispatcher:
    """Queue backed sender.

    A retryable failure resolves the conflict and puts the task back on the
    queue with one attempt fewer, so ``attempts=3`` means at most four sends.
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        notifier: Notifier,
        *,
        settings: DispatcherSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._registry = supervisor.registry
        self._notifier = notifier
        self._settings = settings or DispatcherSettings()
        self._queue: asyncio.Queue[OutboundSendTask] = asyncio.Queue(maxsize=max(1, self._settings.queue_size))
        self._workers: List[asyncio.Task[Any]] = []
        self._http = http_client
        self._owns_http = http_client is None

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"send-worker-{index}")
            for index in range(max(1, self._settings.workers))
        ]
        LOGGER.info("stage=dispatcher_started workers=%s queue_size=%s", len(self._workers), self._settings.queue_size)

    async def stop(self) -> None:
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        while not self._queue.empty():
            task = self._queue.get_nowait()
            task.reject(SessionNotReadyError(task.tenant_id, "shutdown"))
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
        LOGGER.info("stage=dispatcher_stopped")

    def _enqueue(self, task: OutboundSendTask) -> None:
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            FLEET_SENDS_TOTAL.labels("overflow").inc()
            LOGGER.error(
                "stage=send_queue_overflow tenant_id=%s recipient=%s size=%s",
                task.tenant_id,
                task.recipient,
                self._queue.qsize(),
            )
            raise QueueOverflowError(f"send queue full size={self._queue.qsize()}") from None

    async def send(
        self,
        tenant: str,
        recipient: str,
        payload: OutboundPayload,
        *,
        attempts: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> SendResult:
        """Queue a send and wait for its outcome.

        Returns a :class:`DeliveryReceipt` or, once retries are exhausted, a
        :class:`SendFailure`. Non-retryable errors are raised.
        """
        validate_tenant_id(tenant)
        payload.validate()
        normalize_address(recipient)
        loop = asyncio.get_running_loop()
        task = OutboundSendTask(
            tenant_id=tenant,
            recipient=recipient,
            payload=payload,
            attempts_remaining=self._settings.send_attempts if attempts is None else max(0, attempts),
            idempotency_key=idempotency_key or secrets.token_urlsafe(16),
            future=loop.create_future(),
        )
        self._enqueue(task)
        LOGGER.info(
            "stage=send_queued tenant_id=%s recipient=%s kind=%s key=%s",
            tenant,
            recipient,
            payload.kind,
            task.idempotency_key,
        )
        return await task.future

    async def _worker(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self._process(task)
            except asyncio.CancelledError:
                if not task.future.done():
                    task.future.cancel()
                raise
            except Exception as exc:
                LOGGER.exception("stage=send_worker_error worker=%s tenant_id=%s", index, task.tenant_id)
                task.reject(exc)
            finally:
                self._queue.task_done()

    async def _process(self, task: OutboundSendTask) -> None:
        if task.future.done():
            return
        task.attempts_made += 1
        tenant = task.tenant_id
        try:
            message_id = await self._deliver(task)
        except Exception as exc:
            if not self._is_retryable(exc):
                FLEET_SENDS_TOTAL.labels("error").inc()
                LOGGER.error(
                    "stage=send_failed tenant_id=%s recipient=%s retryable=false error=%s",
                    tenant,
                    task.recipient,
                    exc,
                )
                if isinstance(exc, AuthFailureError):
                    await self._supervisor.dispatch(
                        tenant, ChannelEvent(EventKind.AUTH_FAILURE, {"reason": exc.reason, "fatal": exc.fatal})
                    )
                task.reject(exc)
                return
            await self._handle_retryable(task, exc)
            return

        receipt = DeliveryReceipt(
            tenant_id=tenant,
            recipient=task.recipient,
            message_id=message_id,
            idempotency_key=task.idempotency_key,
            kind=task.payload.kind,
            attempts=task.attempts_made,
            sent_at=time.time(),
        )
        FLEET_SENDS_TOTAL.labels("ok").inc()
        LOGGER.info(
            "stage=send_ok tenant_id=%s recipient=%s message_id=%s attempts=%s",
            tenant,
            task.recipient,
            message_id,
            task.attempts_made,
        )
        if not task.resolve(receipt):
            LOGGER.info(
                "stage=send_caller_gone tenant_id=%s message_id=%s key=%s",
                tenant,
                message_id,
                task.idempotency_key,
            )
        await self._notifier.message_delivered(tenant, receipt.to_payload())

    async def _handle_retryable(self, task: OutboundSendTask, exc: Exception) -> None:
        tenant = task.tenant_id
        if task.attempts_remaining <= 0:
            FLEET_SENDS_TOTAL.labels("exhausted").inc()
            LOGGER.error(
                "stage=send_exhausted tenant_id=%s recipient=%s attempts=%s error=%s",
                tenant,
                task.recipient,
                task.attempts_made,
                exc,
            )
            task.resolve(
                SendFailure(
                    tenant_id=tenant,
                    recipient=task.recipient,
                    idempotency_key=task.idempotency_key,
                    code="send_retries_exhausted",
                    attempts=task.attempts_made,
                    detail=str(exc) or exc.__class__.__name__,
                )
            )
            return

        FLEET_SEND_RETRIES_TOTAL.inc()
        LOGGER.warning(
            "stage=send_retry tenant_id=%s recipient=%s attempts_remaining=%s error=%s",
            tenant,
            task.recipient,
            task.attempts_remaining,
            exc,
        )
        if not isinstance(exc, SessionTimeoutError):
            await self._supervisor.resolve_conflict(tenant, source="send")
        task.attempts_remaining -= 1
        try:
            self._enqueue(task)
        except QueueOverflowError as overflow:
            task.reject(overflow)

    def _is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, (InvalidRecipientError, AuthFailureError, SessionNotReadyError)):
            return False
        if isinstance(exc, ReconnectExhaustedError):
            return False
        if isinstance(exc, SessionTimeoutError):
            return self._settings.retry_media_failures
        return isinstance(exc, (ChannelClosedError, ConnectionError)) or is_conflict(exc)

    async def _deliver(self, task: OutboundSendTask) -> str:
        tenant = task.tenant_id
        channel = await self._await_ready(tenant)
        address = normalize_address(task.recipient)
        if self._settings.verify_recipients:
            registered = await channel.is_registered(address)
            if not registered:
                raise InvalidRecipientError(f"recipient not registered: {task.recipient}")
        content = await self._build_content(task.payload)
        return await channel.send_payload(address, content)

    async def _await_ready(self, tenant: str) -> Any:
        session = self._registry.ensure(tenant)
        if session.state is LifecycleState.FAILED:
            raise ReconnectExhaustedError(f"reauth_required tenant_id={tenant}")
        if session.state is not LifecycleState.READY or session.channel is None:
            LOGGER.info("stage=send_wait_ready tenant_id=%s state=%s", tenant, session.state.value)
            try:
                await self._supervisor.initialize(tenant, manual=False)
            except Exception as exc:
                raise SessionNotReadyError(tenant, session.state.value) from exc
            ready = await self._supervisor.wait_ready(tenant, self._settings.ready_wait_timeout)
            if not ready:
                raise SessionNotReadyError(tenant, session.state.value)
        channel = session.channel
        if channel is None:
            raise ChannelClosedError(f"channel missing tenant_id={tenant}")
        return channel

    async def _build_content(self, payload: OutboundPayload) -> Content:
        if payload.media is not None:
            return payload.media
        if payload.media_url:
            data, filename = await self._download(payload.media_url)
            return MediaContent(data=data, filename=filename, caption=payload.caption or payload.text or "")
        return payload.text or ""

    async def _download(self, url: str) -> tuple[bytes, str]:
        timeout = self._settings.media_timeout
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=5.0), follow_redirects=True)
        try:
            response = await asyncio.wait_for(self._http.get(url), timeout=timeout)
            response.raise_for_status()
        except asyncio.TimeoutError:
            LOGGER.error("stage=media_download_timeout url=%s timeout=%ss", url, timeout)
            raise SessionTimeoutError("media_download", timeout) from None
        except httpx.TimeoutException as exc:
            LOGGER.error("stage=media_download_timeout url=%s error=%s", url, exc)
            raise SessionTimeoutError("media_download", timeout) from exc
        except httpx.HTTPError as exc:
            LOGGER.error("stage=media_download_failed url=%s error=%s", url, exc)
            raise ValueError(f"media download failed: {exc}") from exc
        filename = url.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0] or "file"
        return response.content, filename


__all__ = [
    "DeliveryReceipt",
    "DispatcherSettings",
    "MessageDispatcher",
    "OutboundPayload",
    "OutboundSendTask",
    "SendFailure",
    "SendResult",
    "normalize_address",
]
