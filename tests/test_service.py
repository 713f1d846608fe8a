from __future__ import annotations

import asyncio
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from assistpay.channel import InMemorySyncChannel
from assistpay.commander import RemoteCommandError, SessionStatus, StartCaptureRequest
from assistpay.fields import CaptureFieldKind
from assistpay.service import create_app


class StubCommander:
    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.fail_start = False

    async def start(self, request: StartCaptureRequest) -> str:
        self.calls.append(("start", request.call_sid))
        await asyncio.sleep(0)
        if self.fail_start:
            raise RemoteCommandError("connector offline")
        return "PA123"

    async def set_active_field(
        self,
        call_sid: str | None,
        session_id: str,
        kind: CaptureFieldKind,
    ) -> None:
        self.calls.append(("set_active_field", session_id, kind.value))
        await asyncio.sleep(0)

    async def change_status(
        self,
        call_sid: str | None,
        session_id: str,
        status: SessionStatus,
    ) -> None:
        self.calls.append(("change_status", session_id, status.value))
        await asyncio.sleep(0)


class RecordingTelemetry:
    def __init__(self) -> None:
        self.names: list[str] = []

    async def track(self, event: str, properties: dict[str, Any]) -> None:
        self.names.append(event)


def _write_config(tmp_path: Path) -> Path:
    yaml_text = """
    settings:
      request_timeout_seconds: 3
      functions_url: https://pay-functions.example.com
      identity: agent-7
      payment_connector: Default_Pay_Connector
      capture_order: payment-card-number,security-code,expiration-date
    """
    path = tmp_path / "config.yaml"
    path.write_text(yaml_text, encoding="utf-8")
    return path


@pytest.fixture
def app(tmp_path: Path) -> Iterator[tuple[TestClient, StubCommander]]:
    config_path = _write_config(tmp_path)
    commander = StubCommander()
    application = create_app(
        config_path=str(config_path),
        commander=commander,
        channel=InMemorySyncChannel(),
        telemetry=RecordingTelemetry(),
    )
    with TestClient(application) as client:
        yield client, commander


def _event_names(client: TestClient, after: int = 0) -> list[str]:
    response = client.get("/events", params={"after": after})
    return [entry["event"] for entry in response.json()["events"]]


def test_root_reports_service_metadata(app: tuple[TestClient, StubCommander]) -> None:
    client, _ = app
    response = client.get("/")
    data = response.json()

    assert response.status_code == 200
    assert data["service"] == "assistpay"
    assert data["timeout"] == 3
    assert data["capture_order"] == ["payment-card-number", "security-code", "expiration-date"]
    assert data["auth_enabled"] is False


def test_full_capture_flow_over_http(app: tuple[TestClient, StubCommander]) -> None:
    client, commander = app

    attach = client.post("/attach", json={"callSid": "CA100"})
    assert attach.status_code == 200
    assert attach.json()["phase"] == "attached"

    start = client.post("/capture/start")
    assert start.status_code == 200
    assert start.json()["active_field"] == "payment-card-number"
    assert start.json()["session_id"] == "PA123"

    callback = client.post(
        "/paySyncUpdate",
        json={
            "Sid": "PA123",
            "Capture": "payment-card-number",
            "PartialResult": "false",
            "Required": "security-code,expiration-date",
        },
    )
    assert callback.status_code == 200
    assert callback.json()["delivered"] is True

    status = client.get("/status").json()
    assert status["active_field"] == "security-code"
    assert status["working_order"] == ["security-code", "expiration-date"]
    assert status["required"] == ["security-code", "expiration-date"]

    client.post("/paySyncUpdate", json={"Sid": "PA123", "Capture": "security-code", "Required": ""})
    assert client.get("/status").json()["phase"] == "terminated"

    submit = client.post("/capture/submit")
    assert submit.status_code == 200

    assert _event_names(client) == [
        "call-connected",
        "capturing",
        "capturing-card",
        "card-update",
        "capturing-security-code",
        "card-update",
        "capture-complete",
        "submit-complete",
    ]
    assert commander.calls[-1] == ("change_status", "PA123", "complete")


def test_events_can_be_polled_incrementally(app: tuple[TestClient, StubCommander]) -> None:
    client, _ = app
    client.post("/attach", json={"callSid": "CA100"})
    last_seq = client.get("/events").json()["last_seq"]

    client.post("/call", json={"callSid": "CA200"})

    assert _event_names(client, after=last_seq) == ["call-connected"]
    assert client.get("/status").json()["call_sid"] == "CA200"


def test_attach_without_call_discovers_new_call(app: tuple[TestClient, StubCommander]) -> None:
    client, _ = app

    attach = client.post("/attach")
    assert attach.json()["phase"] == "idle"

    client.post("/calls", json={"pstnSid": "CA777"})

    status = client.get("/status").json()
    assert status["phase"] == "attached"
    assert status["call_sid"] == "CA777"
    assert _event_names(client) == ["call-id-discovered"]


def test_start_before_attach_returns_409(app: tuple[TestClient, StubCommander]) -> None:
    client, _ = app

    response = client.post("/capture/start")

    assert response.status_code == 409


def test_start_returns_502_when_remote_rejects(app: tuple[TestClient, StubCommander]) -> None:
    client, commander = app
    commander.fail_start = True
    client.post("/attach", json={"callSid": "CA100"})

    response = client.post("/capture/start")

    assert response.status_code == 502
    assert client.get("/status").json()["phase"] == "attached"


def test_reset_and_cancel_routes(app: tuple[TestClient, StubCommander]) -> None:
    client, commander = app
    client.post("/attach", json={"callSid": "CA100"})
    client.post("/capture/start")

    reset = client.post("/capture/reset/date")
    assert reset.status_code == 200
    assert reset.json()["active_field"] == "expiration-date"

    unknown = client.post("/capture/reset/pin")
    assert unknown.status_code == 404

    cancel = client.post("/capture/cancel")
    assert cancel.status_code == 200
    assert cancel.json()["phase"] == "attached"
    assert cancel.json()["session_id"] is None
    assert ("change_status", "PA123", "cancel") in commander.calls
    assert _event_names(client)[-3:] == ["date-reset", "capturing-date", "cancelled-capture"]


def test_detach_stops_progress_delivery(app: tuple[TestClient, StubCommander]) -> None:
    client, _ = app
    client.post("/attach", json={"callSid": "CA100"})

    detach = client.post("/detach")
    assert detach.status_code == 200
    assert detach.json()["phase"] == "idle"

    callback = client.post("/paySyncUpdate", json={"Sid": "PA123", "Required": ""})
    assert callback.json()["delivered"] is False
    assert _event_names(client)[-1] == "stop-capturing"


def test_status_callback_requires_sid(app: tuple[TestClient, StubCommander]) -> None:
    client, _ = app

    response = client.post("/paySyncUpdate", json={"Capture": "payment-card-number"})

    assert response.status_code == 422


def test_commands_require_token_when_enabled(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)
    token = "secret-token"  # noqa: S105 - test-only token literal
    application = create_app(
        config_path=str(config_path),
        commander=StubCommander(),
        api_token=token,
    )

    with TestClient(application) as client:
        unauthorized = client.post("/attach", json={"callSid": "CA100"})
        assert unauthorized.status_code == 401

        response = client.post(
            "/attach",
            json={"callSid": "CA100"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 200

        start = client.post("/capture/start", headers={"Authorization": f"Bearer {token}"})
        assert start.status_code == 200

