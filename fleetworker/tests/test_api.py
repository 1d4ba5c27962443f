from __future__ import annotations

import tempfile
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient

from fleetworker.api import create_app
from fleetworker.dispatcher import DeliveryReceipt, OutboundPayload, SendFailure
from fleetworker.errors import (
    InvalidRecipientError,
    InvalidTenantError,
    QueueOverflowError,
    ReconnectExhaustedError,
    SessionNotReadyError,
    SessionTimeoutError,
)
from fleetworker.registry import Guard, LifecycleState, SessionRegistry
from fleetworker.supervisor import InitOutcome


class DummyFleet:
    def __init__(self) -> None:
        self.registry = SessionRegistry(clock=lambda: 1.0)
        self.dispatcher = SimpleNamespace(queue_size=0)
        self.started = False
        self.stopped = False
        self.init_outcome = InitOutcome.STARTED
        self.init_error: Optional[BaseException] = None
        self.challenge: Optional[str] = "tg://login?token=abc"
        self.send_result: Any = None
        self.send_error: Optional[BaseException] = None
        self.sent: list[dict[str, Any]] = []

    async def start(self) -> None:
        self.started = True

    async def shutdown(self) -> None:
        self.stopped = True

    async def initialize_session(self, tenant: str) -> InitOutcome:
        if self.init_error is not None:
            raise self.init_error
        session = self.registry.ensure(tenant)
        self.registry.set_state(session, LifecycleState.INITIALIZING)
        return self.init_outcome

    async def request_challenge(self, tenant: str) -> Optional[str]:
        return self.challenge

    async def send(
        self,
        tenant: str,
        recipient: str,
        payload: OutboundPayload,
        *,
        attempts: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ):
        self.sent.append(
            {
                "tenant": tenant,
                "recipient": recipient,
                "payload": payload,
                "attempts": attempts,
                "idempotency_key": idempotency_key,
            }
        )
        if self.send_error is not None:
            raise self.send_error
        return self.send_result

    async def get_fleet_status(self) -> list[dict[str, str]]:
        return [{"tenant_id": "t1", "status": "ready"}, {"tenant_id": "t2", "status": "uninitialized"}]

    def snapshot(self, tenant: str):
        return self.registry.snapshot(tenant)

    def stats_snapshot(self) -> dict[str, int]:
        return self.registry.stats_snapshot()


def _config(admin_token: str = "") -> SimpleNamespace:
    return SimpleNamespace(
        api_id=1,
        api_hash="hash",
        admin_token=admin_token,
        sessions_dir=Path(tempfile.mkdtemp()),
        webhook_url=None,
    )


@pytest.fixture
def dummy_fleet() -> DummyFleet:
    return DummyFleet()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, dummy_fleet: DummyFleet):
    monkeypatch.setattr("fleetworker.api.fleet_config", lambda: _config())
    monkeypatch.setattr("fleetworker.api.build_fleet", lambda cfg: dummy_fleet)
    with TestClient(create_app()) as test_client:
        yield test_client


def test_startup_and_shutdown_drive_the_fleet(monkeypatch: pytest.MonkeyPatch, dummy_fleet: DummyFleet) -> None:
    monkeypatch.setattr("fleetworker.api.fleet_config", lambda: _config())
    monkeypatch.setattr("fleetworker.api.build_fleet", lambda cfg: dummy_fleet)
    with TestClient(create_app()):
        assert dummy_fleet.started
    assert dummy_fleet.stopped


def test_start_session_accepts_tenant_id_alias(client: TestClient, dummy_fleet: DummyFleet) -> None:
    response = client.post("/session/start", json={"tenant_id": "t1"})

    assert response.status_code == 200
    body = response.json()
    assert body["tenant_id"] == "t1"
    assert body["status"] == "initializing"
    assert body["outcome"] == "started"
    assert response.headers["Cache-Control"].startswith("no-store")


def test_start_session_conflict_while_initializing(client: TestClient, dummy_fleet: DummyFleet) -> None:
    dummy_fleet.init_outcome = InitOutcome.ALREADY_INITIALIZING
    dummy_fleet.registry.try_acquire("t1", Guard.INITIALIZING)

    response = client.post("/session/start", json={"tenant": "t1"})

    assert response.status_code == 409
    assert response.json()["error"] == "already_initializing"
    assert response.json()["initializing"] is True


@pytest.mark.parametrize(
    "error, status, code",
    [
        (SessionTimeoutError("initialize", 30.0), 504, "init_timeout"),
        (ReconnectExhaustedError("gone"), 502, "init_failed"),
    ],
)
def test_start_session_errors(client: TestClient, dummy_fleet: DummyFleet, error, status, code) -> None:
    dummy_fleet.init_error = error

    response = client.post("/session/start", json={"tenant": "t1"})

    assert response.status_code == status
    assert response.json()["error"] == code


def test_session_status_reports_snapshot_and_stats(client: TestClient, dummy_fleet: DummyFleet) -> None:
    session = dummy_fleet.registry.ensure("t1")
    dummy_fleet.registry.set_state(session, LifecycleState.READY)

    response = client.get("/session/status", params={"tenant": "t1"})

    assert response.status_code == 200
    body = response.json()
    assert body["ready"] is True
    assert body["last_seen"] == 1000
    assert body["stats"]["ready"] == 1


def test_session_qr_returns_png(client: TestClient) -> None:
    response = client.get("/session/qr", params={"tenant": "t1"})

    assert response.status_code == 200
    assert response.json()["challenge"] == "tg://login?token=abc"
    assert response.json()["qr_png_base64"]

    png = client.get("/session/qr.png", params={"tenant": "t1"})
    assert png.status_code == 200
    assert png.headers["content-type"] == "image/png"
    assert png.content.startswith(b"\x89PNG")


def test_session_qr_not_available(client: TestClient, dummy_fleet: DummyFleet) -> None:
    dummy_fleet.challenge = None

    response = client.get("/session/qr", params={"tenant": "t1"})

    assert response.status_code == 404
    assert response.json()["error"] == "qr_not_available"


def test_send_returns_receipt(client: TestClient, dummy_fleet: DummyFleet) -> None:
    dummy_fleet.send_result = DeliveryReceipt(
        tenant_id="t1",
        recipient="79991234567",
        message_id="42",
        idempotency_key="k1",
        kind="text",
        attempts=1,
        sent_at=2.0,
    )

    response = client.post(
        "/send",
        json={"tenant": "t1", "to": "+7 999 123-45-67", "text": "hi", "idempotency_key": "k1", "attempts": 2},
    )

    assert response.status_code == 200
    assert response.json()["message_id"] == "42"
    sent = dummy_fleet.sent[0]
    assert sent["recipient"] == "+7 999 123-45-67"
    assert sent["attempts"] == 2
    assert sent["payload"].text == "hi"


def test_send_failure_maps_to_bad_gateway(client: TestClient, dummy_fleet: DummyFleet) -> None:
    dummy_fleet.send_result = SendFailure(
        tenant_id="t1",
        recipient="1",
        idempotency_key="k",
        code="send_retries_exhausted",
        attempts=4,
        detail="conflict",
    )

    response = client.post("/send", json={"tenant": "t1", "to": 1, "text": "hi"})

    assert response.status_code == 502
    assert response.json()["error"] == "send_retries_exhausted"
    assert dummy_fleet.sent[0]["recipient"] == "1"


@pytest.mark.parametrize(
    "error, status, code",
    [
        (InvalidRecipientError("bad"), 400, "invalid_recipient"),
        (QueueOverflowError("full"), 429, "queue_overflow"),
        (SessionNotReadyError("t1", "awaiting_challenge"), 503, "session_not_ready"),
        (ReconnectExhaustedError("gone"), 502, "reauth_required"),
    ],
)
def test_send_error_mapping(client: TestClient, dummy_fleet: DummyFleet, error, status, code) -> None:
    dummy_fleet.send_error = error

    response = client.post("/send", json={"tenant": "t1", "to": "123", "text": "hi"})

    assert response.status_code == status
    assert response.json()["error"] == code


def test_send_requires_text_or_media(client: TestClient, dummy_fleet: DummyFleet) -> None:
    response = client.post("/send", json={"tenant": "t1", "to": "123", "text": "   "})

    assert response.status_code == 422
    assert dummy_fleet.sent == []


def test_fleet_and_health(client: TestClient, dummy_fleet: DummyFleet) -> None:
    dummy_fleet.registry.set_state(dummy_fleet.registry.ensure("t1"), LifecycleState.READY)

    fleet = client.get("/fleet")
    assert fleet.status_code == 200
    assert [item["status"] for item in fleet.json()["tenants"]] == ["ready", "uninitialized"]

    health = client.get("/health")
    assert health.json() == {
        "ok": True,
        "ready_count": 1,
        "awaiting_challenge_count": 0,
        "failed_count": 0,
        "send_queue": 0,
    }


def test_metrics_endpoint(client: TestClient) -> None:
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "fleet_sessions" in response.text


def test_admin_token_required(monkeypatch: pytest.MonkeyPatch, dummy_fleet: DummyFleet) -> None:
    monkeypatch.setattr("fleetworker.api.fleet_config", lambda: _config("secret"))
    monkeypatch.setattr("fleetworker.api.build_fleet", lambda cfg: dummy_fleet)
    with TestClient(create_app()) as test_client:
        denied = test_client.get("/fleet")
        allowed = test_client.get("/fleet", headers={"X-Admin-Token": "secret"})
        health = test_client.get("/health")

    assert denied.status_code == 401
    assert denied.json() == {"error": "not_authorized"}
    assert allowed.status_code == 200
    assert health.status_code == 200


def test_start_session_rejects_path_like_tenant(client: TestClient, dummy_fleet: DummyFleet) -> None:
    slash = client.post("/session/start", json={"tenant": "a/b"})
    assert slash.status_code == 422

    dotted = client.post("/session/start", json={"tenant": "a..b"})
    assert dotted.status_code == 400
    assert dotted.json()["error"] == "invalid_tenant"
    assert dummy_fleet.registry.get("a..b") is None


def test_query_routes_reject_path_like_tenant(client: TestClient) -> None:
    for path in ("/session/status", "/session/qr", "/session/qr.png"):
        response = client.get(path, params={"tenant": "../etc"})
        assert response.status_code == 422


def test_send_rejects_invalid_tenant(client: TestClient, dummy_fleet: DummyFleet) -> None:
    dummy_fleet.send_error = InvalidTenantError("invalid tenant id: 'a..b'")

    response = client.post("/send", json={"tenant": "a..b", "to": "12345", "text": "hi"})

    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "invalid_tenant", "detail": "invalid tenant id: 'a..b'"}
