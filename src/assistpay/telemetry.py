"""Fire-and-forget usage telemetry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .logs import log_event

SEGMENT_TRACK_URL = "https://api.segment.io/v1/track"
TELEMETRY_APP = "agent-assisted-pay"


class TelemetrySink(Protocol):
    async def track(self, event: str, properties: dict[str, Any]) -> None:
        ...


class NullTelemetrySink:
    async def track(self, event: str, properties: dict[str, Any]) -> None:
        return None


class LoggingTelemetrySink:
    async def track(self, event: str, properties: dict[str, Any]) -> None:
        log_event("telemetry.track", name=event, properties=properties)


@dataclass(slots=True)
class SegmentTelemetrySink:
    """Posts track calls to Segment. Failures are logged and dropped."""

    write_key: str
    timeout: float = 5.0
    url: str = SEGMENT_TRACK_URL
    client: httpx.AsyncClient | None = None

    async def track(self, event: str, properties: dict[str, Any]) -> None:
        payload = {
            "event": event,
            "userId": str(properties.get("identity") or "anonymous"),
            "properties": properties,
            "context": {"app": {"name": TELEMETRY_APP}},
        }
        try:
            if self.client is None:
                self.client = httpx.AsyncClient(timeout=self.timeout)
            response = await self.client.post(self.url, json=payload, auth=(self.write_key, ""))
            if not response.is_success:
                log_event(
                    "telemetry.rejected",
                    level=logging.WARNING,
                    name=event,
                    status=response.status_code,
                )
        except Exception as exc:  # noqa: BLE001
            log_event("telemetry.failed", level=logging.WARNING, name=event, reason=str(exc))

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None


def build_telemetry_sink(write_key: str | None) -> TelemetrySink:
    if write_key:
        return SegmentTelemetrySink(write_key=write_key)
    return NullTelemetrySink()
