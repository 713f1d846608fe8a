"""Event-subscription collaborator for real-time sync documents."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from .logs import log_event

PAY_COLLECTION = "payMap"
CALL_COLLECTION = "uuiMap"


class ChannelSubscriptionError(RuntimeError):
    """Raised when a collection cannot be subscribed, unsubscribed or edited."""


@dataclass(slots=True, frozen=True)
class SyncItem:
    key: str
    data: dict[str, Any] = field(default_factory=dict)


ItemHandler = Callable[[SyncItem], Awaitable[None]]


class SyncChannel(Protocol):
    async def subscribe(self, key: str, handler: ItemHandler) -> None:
        ...

    async def unsubscribe(self, key: str) -> None:
        ...

    async def remove(self, key: str, item_key: str) -> None:
        ...


class InMemorySyncChannel:
    """Process-local keyed document collections with item-update callbacks.

    One handler per collection key. ``publish`` upserts an item and awaits the
    handler before returning, so updates reach subscribers in publish order.
    """

    def __init__(self) -> None:
        self._items: dict[str, dict[str, SyncItem]] = {}
        self._handlers: dict[str, ItemHandler] = {}

    def subscribed(self, key: str) -> bool:
        return key in self._handlers

    def items(self, key: str) -> dict[str, SyncItem]:
        return dict(self._items.get(key, {}))

    async def subscribe(self, key: str, handler: ItemHandler) -> None:
        if key in self._handlers:
            raise ChannelSubscriptionError(f"Collection '{key}' already has a subscriber")
        self._handlers[key] = handler
        self._items.setdefault(key, {})

    async def unsubscribe(self, key: str) -> None:
        if self._handlers.pop(key, None) is None:
            raise ChannelSubscriptionError(f"Collection '{key}' has no subscriber")

    async def remove(self, key: str, item_key: str) -> None:
        collection = self._items.get(key, {})
        if collection.pop(item_key, None) is None:
            raise ChannelSubscriptionError(f"Item '{item_key}' not found in '{key}'")

    async def publish(self, key: str, item_key: str, data: dict[str, Any]) -> bool:
        """Store ``data`` under ``item_key`` and notify the subscriber, if any."""

        item = SyncItem(key=item_key, data=dict(data))
        self._items.setdefault(key, {})[item_key] = item
        handler = self._handlers.get(key)
        if handler is None:
            log_event("channel.undelivered", collection=key, item=item_key)
            return False
        try:
            await handler(item)
        except Exception as exc:  # noqa: BLE001
            log_event(
                "channel.handler_failed",
                level=logging.ERROR,
                collection=key,
                item=item_key,
                reason=str(exc),
            )
        return True
