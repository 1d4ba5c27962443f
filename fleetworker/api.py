from __future__ import annotations

import base64
import io
import logging
from typing import Any, Optional

import qrcode
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from config import fleet_config

from .dispatcher import OutboundPayload
from .errors import (
    FleetError,
    InvalidRecipientError,
    InvalidTenantError,
    QueueOverflowError,
    SessionNotReadyError,
    SessionTimeoutError,
    TerminalError,
)
from .fleet import build_fleet
from .registry import TENANT_ID_PATTERN
from .supervisor import InitOutcome


logger = logging.getLogger("fleetworker.api")

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class TenantBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant: str = Field(..., min_length=1, max_length=128, pattern=TENANT_ID_PATTERN)

    @model_validator(mode="before")
    @classmethod
    def _alias_tenant(cls, values: Any) -> Any:
        if isinstance(values, dict) and "tenant" not in values and "tenant_id" in values:
            data = dict(values)
            data["tenant"] = data.pop("tenant_id")
            return data
        return values


class TenantQuery(TenantBody):
    pass


def _tenant_query(
    tenant: Optional[str] = Query(None, max_length=128, pattern=TENANT_ID_PATTERN),
    tenant_id: Optional[str] = Query(None, max_length=128, pattern=TENANT_ID_PATTERN),
) -> TenantQuery:
    value = tenant or tenant_id
    if not value:
        raise HTTPException(status_code=422, detail="tenant_required")
    return TenantQuery(tenant=value)


class StartRequest(TenantBody):
    pass


class SendRequest(TenantBody):
    to: str | int
    text: str | None = None
    media_url: str | None = None
    caption: str = ""
    idempotency_key: str | None = Field(default=None, max_length=128)
    attempts: int | None = Field(default=None, ge=0, le=10)

    @model_validator(mode="after")
    def _require_content(self) -> "SendRequest":
        if not (self.text or "").strip() and not self.media_url:
            raise ValueError("text_or_media_url_required")
        return self

    def to_payload(self) -> OutboundPayload:
        return OutboundPayload(text=self.text, media_url=self.media_url, caption=self.caption)


def _build_qr_png(url: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=14,
        border=4,
    )
    qr.add_data(url)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def create_app() -> FastAPI:
    cfg = fleet_config()
    fleet = build_fleet(cfg)
    admin_token = cfg.admin_token
    logger.info(
        "stage=app_configured sessions_dir=%s webhook=%s admin_token_present=%s",
        cfg.sessions_dir,
        "true" if cfg.webhook_url else "false",
        "true" if admin_token else "false",
    )

    app = FastAPI(title="fleetworker")
    app.state.fleet = fleet

    def _json(body: Any, status_code: int = 200) -> JSONResponse:
        return JSONResponse(body, status_code=status_code, headers=dict(NO_STORE_HEADERS))

    def _enforce_admin(request: Request, route: str, *, tenant: Optional[str] = None) -> JSONResponse | None:
        if not admin_token:
            return None
        header = request.headers.get("X-Admin-Token", "").strip()
        if not header or header != admin_token:
            logger.warning("event=admin_token_invalid route=%s tenant=%s", route, tenant)
            return _json({"error": "not_authorized"}, status_code=401)
        return None

    def _snapshot_payload(tenant: str) -> dict[str, Any]:
        return fleet.snapshot(tenant).to_payload()

    def _safe_stats_snapshot() -> dict[str, int]:
        try:
            return fleet.stats_snapshot()
        except Exception:
            logger.warning("event=stats_snapshot_failed", exc_info=True)
            return {}

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        if cfg.api_id <= 0 or not cfg.api_hash:
            logger.warning("telegram api credentials are not configured")
        await fleet.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await fleet.shutdown()

    @app.post("/session/start")
    async def start_session(request: Request, payload: StartRequest):
        tenant = payload.tenant
        unauthorized = _enforce_admin(request, "/session/start", tenant=tenant)
        if unauthorized is not None:
            return unauthorized
        try:
            outcome = await fleet.initialize_session(tenant)
        except InvalidTenantError as exc:
            return _json({"error": "invalid_tenant", "detail": str(exc)}, status_code=400)
        except SessionTimeoutError as exc:
            body = _snapshot_payload(tenant)
            body.update({"error": "init_timeout", "detail": str(exc)})
            return _json(body, status_code=504)
        except FleetError as exc:
            body = _snapshot_payload(tenant)
            body.update({"error": "init_failed", "detail": str(exc)})
            return _json(body, status_code=502)
        body = _snapshot_payload(tenant)
        body["outcome"] = outcome.value
        if outcome is InitOutcome.ALREADY_INITIALIZING:
            body["error"] = "already_initializing"
            return _json(body, status_code=409)
        return _json(body)

    @app.get("/session/status")
    async def session_status(request: Request, tenant_params: TenantQuery = Depends(_tenant_query)):
        tenant = tenant_params.tenant
        unauthorized = _enforce_admin(request, "/session/status", tenant=tenant)
        if unauthorized is not None:
            return unauthorized
        body = _snapshot_payload(tenant)
        body["stats"] = _safe_stats_snapshot()
        return _json(body)

    async def _challenge(tenant: str) -> tuple[Optional[str], JSONResponse | None]:
        try:
            challenge = await fleet.request_challenge(tenant)
        except InvalidTenantError as exc:
            return None, _json({"error": "invalid_tenant", "detail": str(exc)}, status_code=400)
        except FleetError as exc:
            body = _snapshot_payload(tenant)
            body.update({"error": "init_failed", "detail": str(exc)})
            return None, _json(body, status_code=502)
        if challenge is None:
            body = _snapshot_payload(tenant)
            if body["ready"]:
                body["challenge"] = None
                return None, _json(body)
            body["error"] = "qr_not_available"
            return None, _json(body, status_code=404)
        return challenge, None

    @app.get("/session/qr")
    async def session_qr(request: Request, tenant_params: TenantQuery = Depends(_tenant_query)):
        tenant = tenant_params.tenant
        unauthorized = _enforce_admin(request, "/session/qr", tenant=tenant)
        if unauthorized is not None:
            return unauthorized
        challenge, response = await _challenge(tenant)
        if response is not None:
            return response
        body = _snapshot_payload(tenant)
        body["challenge"] = challenge
        body["qr_png_base64"] = base64.b64encode(_build_qr_png(challenge)).decode("ascii")
        return _json(body)

    @app.get("/session/qr.png")
    async def session_qr_png(request: Request, tenant_params: TenantQuery = Depends(_tenant_query)):
        tenant = tenant_params.tenant
        unauthorized = _enforce_admin(request, "/session/qr.png", tenant=tenant)
        if unauthorized is not None:
            return unauthorized
        challenge, response = await _challenge(tenant)
        if response is not None:
            return response
        return Response(content=_build_qr_png(challenge), media_type="image/png", headers=dict(NO_STORE_HEADERS))

    @app.post("/send")
    async def send(request: Request, payload: SendRequest):
        tenant = payload.tenant
        unauthorized = _enforce_admin(request, "/send", tenant=tenant)
        if unauthorized is not None:
            return unauthorized
        try:
            result = await fleet.send(
                tenant,
                str(payload.to),
                payload.to_payload(),
                attempts=payload.attempts,
                idempotency_key=payload.idempotency_key,
            )
        except InvalidTenantError as exc:
            return _json({"ok": False, "error": "invalid_tenant", "detail": str(exc)}, status_code=400)
        except InvalidRecipientError as exc:
            return _json({"ok": False, "error": "invalid_recipient", "detail": str(exc)}, status_code=400)
        except QueueOverflowError as exc:
            return _json({"ok": False, "error": exc.code, "detail": str(exc)}, status_code=429)
        except SessionNotReadyError as exc:
            return _json({"ok": False, "error": exc.code, "status": exc.state}, status_code=503)
        except TerminalError as exc:
            return _json({"ok": False, "error": exc.code, "detail": str(exc)}, status_code=502)
        except FleetError as exc:
            logger.warning("event=send_failed tenant=%s error=%s", tenant, exc)
            return _json({"ok": False, "error": "send_failed", "detail": str(exc)}, status_code=502)
        except ValueError as exc:
            return _json({"ok": False, "error": "invalid_payload", "detail": str(exc)}, status_code=400)
        body = result.to_payload()
        return _json(body, status_code=200 if result.ok else 502)

    @app.get("/fleet")
    async def fleet_status(request: Request):
        unauthorized = _enforce_admin(request, "/fleet")
        if unauthorized is not None:
            return unauthorized
        return _json({"tenants": await fleet.get_fleet_status(), "stats": _safe_stats_snapshot()})

    @app.get("/health")
    async def health():
        stats = _safe_stats_snapshot()
        return {
            "ok": True,
            "ready_count": int(stats.get("ready", 0) or 0),
            "awaiting_challenge_count": int(stats.get("awaiting_challenge", 0) or 0),
            "failed_count": int(stats.get("failed", 0) or 0),
            "send_queue": fleet.dispatcher.queue_size,
        }

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]
