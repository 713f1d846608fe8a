"""Adapters turning sync-channel items into controller inputs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .channel import CALL_COLLECTION, PAY_COLLECTION, SyncChannel, SyncItem
from .logs import log_event


class StaleSessionNotification(Exception):
    """A progress update that belongs to a session other than the current one."""


@dataclass(slots=True, frozen=True)
class ProgressSnapshot:
    session_key: str
    capture: Any = None
    partial_result: bool = True
    required: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def capture_in_progress(self) -> bool:
        return bool(self.capture)


def snapshot_from_item(item: SyncItem) -> ProgressSnapshot:
    data = item.data
    return ProgressSnapshot(
        session_key=item.key,
        capture=data.get("Capture"),
        partial_result=_to_bool(data.get("PartialResult"), default=True),
        required=_to_names(data.get("Required")),
        raw=dict(data),
    )


def _to_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
        return default
    return bool(value)


def _to_names(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        parts = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        parts = [str(part) for part in value]
    else:
        return ()
    return tuple(name for name in (part.strip() for part in parts) if name)


SnapshotConsumer = Callable[[ProgressSnapshot], Awaitable[None]]
CallConsumer = Callable[[str], Awaitable[None]]


class ProgressListener:
    """Forwards every payMap update as a full ProgressSnapshot replacement."""

    def __init__(self, channel: SyncChannel, deliver: SnapshotConsumer) -> None:
        self._channel = channel
        self._deliver = deliver
        self.active = False

    async def start(self) -> None:
        await self._channel.subscribe(PAY_COLLECTION, self._on_item)
        self.active = True

    async def stop(self) -> None:
        if not self.active:
            return
        await self._channel.unsubscribe(PAY_COLLECTION)
        self.active = False

    async def _on_item(self, item: SyncItem) -> None:
        await self._deliver(snapshot_from_item(item))


class CallListener:
    """Reports the call id of each new inbound call written to uuiMap."""

    def __init__(self, channel: SyncChannel, deliver: CallConsumer) -> None:
        self._channel = channel
        self._deliver = deliver
        self.active = False

    async def start(self) -> None:
        await self._channel.subscribe(CALL_COLLECTION, self._on_item)
        self.active = True

    async def stop(self) -> None:
        if not self.active:
            return
        await self._channel.unsubscribe(CALL_COLLECTION)
        self.active = False

    async def _on_item(self, item: SyncItem) -> None:
        call_sid = item.data.get("pstnSid") or item.data.get("pstnCallId")
        if not isinstance(call_sid, str) or not call_sid.strip():
            log_event("call.discovery_ignored", item=item.key)
            return
        await self._deliver(call_sid.strip())
