"""Async client for the remote capture-control API."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import httpx

from .fields import CaptureFieldKind

STATUS_CALLBACK_PATH = "/paySyncUpdate"


class RemoteCommandError(RuntimeError):
    """Raised when the capture-control API rejects or fails a command."""


class SessionStatus(str, Enum):
    CANCEL = "cancel"
    COMPLETE = "complete"


@dataclass(slots=True, frozen=True)
class StartCaptureRequest:
    call_sid: str
    payment_connector: str
    currency: str
    token_type: str
    security_code: bool
    postal_code: bool
    charge_amount: int = 0


def _millis() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class RemoteCaptureCommander:
    """Issues start, set-active-field and change-status commands.

    The commander never polls. Progress is learned later through the sync channel;
    a command that returns without raising has been acknowledged.
    """

    functions_url: str
    identity: str
    token: str | None = None
    timeout: float = 10.0
    client: httpx.AsyncClient | None = None
    clock: Callable[[], int] = field(default=_millis)

    @property
    def status_callback(self) -> str:
        return self.functions_url.rstrip("/") + STATUS_CALLBACK_PATH

    def idempotency_key(self) -> str:
        return f"{self.identity}{self.clock()}"

    async def start(self, request: StartCaptureRequest) -> str:
        payload = {
            "callSid": request.call_sid,
            "IdempotencyKey": self.idempotency_key(),
            "StatusCallback": self.status_callback,
            "ChargeAmount": request.charge_amount,
            "TokenType": request.token_type,
            "Currency": request.currency,
            "PaymentConnector": request.payment_connector,
            "SecurityCode": request.security_code,
            "PostalCode": request.postal_code,
        }
        response = await self._post("/startCapture", payload)
        session_id = _parse_session_id(response)
        if not session_id:
            raise RemoteCommandError("startCapture returned an empty session id")
        return session_id

    async def set_active_field(
        self,
        call_sid: str | None,
        session_id: str,
        kind: CaptureFieldKind,
    ) -> None:
        payload = {
            "callSid": call_sid,
            "paySid": session_id,
            "captureType": kind.value,
            "IdempotencyKey": self.idempotency_key(),
            "StatusCallback": self.status_callback,
        }
        await self._post("/updateCaptureType", payload)

    async def change_status(
        self,
        call_sid: str | None,
        session_id: str,
        status: SessionStatus,
    ) -> None:
        payload = {
            "callSid": call_sid,
            "paySid": session_id,
            "Status": status.value,
            "IdempotencyKey": self.idempotency_key(),
            "StatusCallback": self.status_callback,
        }
        await self._post("/changeSession", payload)

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self.client is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self.client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self.client

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        url = self.functions_url.rstrip("/") + path
        try:
            response = await self._get_client().post(url, json=payload)
        except httpx.TimeoutException as exc:
            raise RemoteCommandError(f"POST {path} timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise RemoteCommandError(f"POST {path} failed: {exc}") from exc
        if not response.is_success:
            details = (response.text or "").strip()[:200] or "no response body"
            raise RemoteCommandError(f"POST {path} returned {response.status_code}: {details}")
        return response


def _parse_session_id(response: httpx.Response) -> str:
    text = (response.text or "").strip()
    if not text:
        return ""
    try:
        body = json.loads(text)
    except ValueError:
        return text
    if isinstance(body, str):
        return body.strip()
    if isinstance(body, dict):
        value = body.get("sid") or body.get("paySid")
        return str(value).strip() if value else ""
    return ""
