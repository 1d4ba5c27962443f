from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx

from .metrics import FLEET_EVENT_ERRORS


LOGGER = logging.getLogger("fleetworker.notifier")

RECONNECTING_MESSAGE = "Your messaging session has been disconnected. Attempting to reconnect..."
REAUTH_REQUIRED_MESSAGE = (
    "All attempts to reconnect your messaging session have failed. Please reauthenticate."
)


class Notifier:
    """Out-of-band tenant notifications and delivery records over a webhook."""

    def __init__(
        self,
        webhook_url: str | None,
        *,
        webhook_token: str | None = None,
        http_timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._webhook_url = (webhook_url or "").strip().rstrip("/") or None
        self._webhook_token = (webhook_token or "").strip() or None
        self._http = http_client or httpx.AsyncClient(timeout=http_timeout)

    async def _post(self, event: str, tenant: str, body: Dict[str, Any]) -> bool:
        payload = {"event": event, "tenant_id": tenant, "ts": int(time.time() * 1000)}
        payload.update(body)
        if self._webhook_url is None:
            LOGGER.info("event=%s tenant_id=%s delivered=false reason=no_webhook", event, tenant)
            return False
        headers = {"Content-Type": "application/json"}
        if self._webhook_token:
            headers["X-Webhook-Token"] = self._webhook_token
        try:
            response = await self._http.post(self._webhook_url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            FLEET_EVENT_ERRORS.labels("webhook").inc()
            LOGGER.error("stage=webhook_fail event=%s tenant_id=%s error=%s", event, tenant, exc)
            return False
        return True

    async def session_reconnecting(self, tenant: str, reason: Optional[str] = None) -> bool:
        LOGGER.info("stage=notify tenant_id=%s kind=reconnecting reason=%s", tenant, reason)
        return await self._post(
            "session_reconnecting", tenant, {"message": RECONNECTING_MESSAGE, "reason": reason}
        )

    async def session_reauth_required(self, tenant: str, reason: Optional[str] = None) -> bool:
        LOGGER.warning("stage=notify tenant_id=%s kind=reauth_required reason=%s", tenant, reason)
        return await self._post(
            "session_reauth_required",
            tenant,
            {"message": REAUTH_REQUIRED_MESSAGE, "reason": reason},
        )

    async def incoming_message(self, tenant: str, message: Dict[str, Any]) -> bool:
        return await self._post("incoming_message", tenant, {"message": message})

    async def conversations_unread(self, tenant: str, conversations: list[Dict[str, Any]]) -> bool:
        return await self._post("conversations_unread", tenant, {"conversations": conversations})

    async def message_delivered(self, tenant: str, receipt: Dict[str, Any]) -> bool:
        return await self._post("message_delivered", tenant, {"receipt": receipt})

    async def aclose(self) -> None:
        await self._http.aclose()


__all__ = ["Notifier", "REAUTH_REQUIRED_MESSAGE", "RECONNECTING_MESSAGE"]
