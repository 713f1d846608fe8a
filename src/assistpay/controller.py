"""State machine sequencing an agent-assisted card capture."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from enum import Enum, auto
from functools import partial
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Protocol

from .channel import PAY_COLLECTION, SyncChannel
from .commander import RemoteCommandError, SessionStatus, StartCaptureRequest
from .fields import DEFAULT_CAPTURE_ORDER, CaptureFieldKind
from .listener import CallListener, ProgressListener, ProgressSnapshot, StaleSessionNotification
from .logs import log_event
from .order import CaptureOrder, ProgressDecision, decide_progress
from .telemetry import NullTelemetrySink, TelemetrySink


class ControllerPhase(Enum):
    IDLE = auto()
    ATTACHED = auto()
    CAPTURING = auto()
    TERMINATED = auto()


class CaptureEvent(str, Enum):
    CALL_CONNECTED = "call-connected"
    CALL_ID_DISCOVERED = "call-id-discovered"
    CARD_UPDATE = "card-update"
    CAPTURING = "capturing"
    CAPTURING_CARD = "capturing-card"
    CAPTURING_SECURITY_CODE = "capturing-security-code"
    CAPTURING_DATE = "capturing-date"
    CAPTURING_POSTAL_CODE = "capturing-postal-code"
    CAPTURE_COMPLETE = "capture-complete"
    CARD_RESET = "card-reset"
    SECURITY_CODE_RESET = "security-code-reset"
    DATE_RESET = "date-reset"
    CANCELLED_CAPTURE = "cancelled-capture"
    SUBMIT_COMPLETE = "submit-complete"
    STOP_CAPTURING = "stop-capturing"


CAPTURING_EVENTS: dict[CaptureFieldKind, CaptureEvent] = {
    CaptureFieldKind.CARD_NUMBER: CaptureEvent.CAPTURING_CARD,
    CaptureFieldKind.SECURITY_CODE: CaptureEvent.CAPTURING_SECURITY_CODE,
    CaptureFieldKind.EXPIRATION_DATE: CaptureEvent.CAPTURING_DATE,
    CaptureFieldKind.POSTAL_CODE: CaptureEvent.CAPTURING_POSTAL_CODE,
}


class CaptureStateError(RuntimeError):
    """Raised when a command is not valid in the controller's current phase."""


class CommanderProtocol(Protocol):
    async def start(self, request: StartCaptureRequest) -> str:
        ...

    async def set_active_field(
        self,
        call_sid: str | None,
        session_id: str,
        kind: CaptureFieldKind,
    ) -> None:
        ...

    async def change_status(
        self,
        call_sid: str | None,
        session_id: str,
        status: SessionStatus,
    ) -> None:
        ...


EventHandler = Callable[..., Any]


def _millis() -> int:
    return int(time.time() * 1000)


class CaptureSessionController:
    """Owns the capture order and session for one agent view.

    Commands and channel notifications are serialized by a single lock. Public
    events are queued while a transition runs and delivered, in order, once the
    lock is released, so handlers may issue further commands. Telemetry calls
    run as background tasks and never hold up a command.
    """

    def __init__(
        self,
        *,
        commander: CommanderProtocol,
        channel: SyncChannel,
        identity: str,
        payment_connector: str,
        capture_order: Iterable[str | CaptureFieldKind] = DEFAULT_CAPTURE_ORDER,
        currency: str = "USD",
        token_type: str = "reusable",
        telemetry: TelemetrySink | None = None,
        clock: Callable[[], int] = _millis,
    ) -> None:
        self._commander = commander
        self._channel = channel
        self._telemetry = telemetry or NullTelemetrySink()
        self._clock = clock
        self.identity = identity
        self.payment_connector = payment_connector
        self.currency = currency
        self.token_type = token_type

        self._order = CaptureOrder(capture_order)
        self._progress = ProgressListener(channel, self._on_progress)
        self._calls = CallListener(channel, self._on_call_discovered)

        self.phase = ControllerPhase.IDLE
        self._call_sid: str | None = None
        self._session_id: str | None = None
        self._snapshot: ProgressSnapshot | None = None

        self._lock = asyncio.Lock()
        self._handlers: dict[CaptureEvent, list[EventHandler]] = {}
        self._armed: CaptureFieldKind | None = None
        self._pending: deque[Callable[[], Awaitable[None]]] = deque()
        self._dispatching = False
        self._telemetry_tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # read-only views

    @property
    def call_sid(self) -> str | None:
        return self._call_sid

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def snapshot(self) -> ProgressSnapshot | None:
        return self._snapshot

    @property
    def active_field(self) -> CaptureFieldKind | None:
        return self._order.peek_active()

    @property
    def working_order(self) -> tuple[CaptureFieldKind, ...]:
        return self._order.snapshot()

    @property
    def template(self) -> tuple[CaptureFieldKind, ...]:
        return self._order.template

    # ------------------------------------------------------------------
    # event subscription

    def on(self, event: CaptureEvent | str, handler: EventHandler) -> None:
        self._handlers.setdefault(CaptureEvent(event), []).append(handler)

    def off(self, event: CaptureEvent | str, handler: EventHandler) -> None:
        handlers = self._handlers.get(CaptureEvent(event), [])
        if handler in handlers:
            handlers.remove(handler)

    async def drain_telemetry(self) -> None:
        """Wait for telemetry calls that are still in flight."""

        if self._telemetry_tasks:
            await asyncio.gather(*list(self._telemetry_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # commands

    async def attach(self, call_sid: str | None = None) -> None:
        """Subscribe to capture progress for a call.

        Without a call id the controller also listens for new-call notifications
        and becomes attached when the first one arrives. Subscription failures
        propagate as ChannelSubscriptionError.
        """

        async with self._transition():
            self._track("attachPay", call_sid=call_sid)
            if self.phase is ControllerPhase.CAPTURING:
                raise CaptureStateError("Cannot attach while a capture is in progress")

            await self._progress.stop()
            await self._calls.stop()
            try:
                await self._progress.start()
                if not call_sid:
                    await self._calls.start()
            except Exception as exc:
                self.phase = ControllerPhase.IDLE
                self._log_failure("attachPay", exc)
                if self._progress.active:
                    await self._progress.stop()
                raise

            self._call_sid = call_sid or None
            if call_sid:
                self.phase = ControllerPhase.ATTACHED
                log_event("controller.attached", call_sid=call_sid)
                self._queue_event(CaptureEvent.CALL_CONNECTED, call_sid)
            else:
                self.phase = ControllerPhase.IDLE
                log_event("controller.awaiting_call")

    async def start_capture(self) -> bool:
        """Open a capture session and arm the first field.

        Returns False when the remote side rejects either step. A session whose
        first field was never armed may be started again to retry arming it.
        """

        async with self._transition():
            self._track("startCapture")
            if self.phase is ControllerPhase.CAPTURING and self._armed is None:
                return await self._arm_active_field()
            if self.phase not in (ControllerPhase.ATTACHED, ControllerPhase.TERMINATED):
                raise CaptureStateError(f"Cannot start capture while {self.phase.name.lower()}")

            template = self._order.template
            request = StartCaptureRequest(
                call_sid=self._call_sid or "",
                payment_connector=self.payment_connector,
                currency=self.currency,
                token_type=self.token_type,
                security_code=CaptureFieldKind.SECURITY_CODE in template,
                postal_code=CaptureFieldKind.POSTAL_CODE in template,
            )
            try:
                session_id = await self._commander.start(request)
            except RemoteCommandError as exc:
                self._log_failure("startCapture", exc)
                return False

            self._order.reset()
            self._session_id = session_id
            self._snapshot = None
            self._armed = None
            self.phase = ControllerPhase.CAPTURING
            log_event("capture.started", session_id=session_id, call_sid=self._call_sid)
            self._queue_event(CaptureEvent.CAPTURING)

            return await self._arm_active_field()

    async def cancel_capture(self) -> bool:
        async with self._transition():
            self._track("cancelCapture")
            session_id = self._require_session("cancel")
            try:
                await self._commander.change_status(
                    self._call_sid, session_id, SessionStatus.CANCEL
                )
            except RemoteCommandError as exc:
                self._log_failure("cancelCapture", exc)
                return False

            self.phase = ControllerPhase.TERMINATED
            self._session_id = None
            self._snapshot = None
            self._armed = None
            self._order.reset()
            try:
                await self._channel.remove(PAY_COLLECTION, session_id)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    "capture.cleanup_failed",
                    level=logging.WARNING,
                    session_id=session_id,
                    call_sid=self._call_sid,
                    reason=str(exc),
                )
            self.phase = ControllerPhase.ATTACHED
            log_event("capture.cancelled", session_id=session_id, call_sid=self._call_sid)
            self._queue_event(CaptureEvent.CANCELLED_CAPTURE)
            return True

    async def submit_capture(self) -> bool:
        async with self._transition():
            self._track("submitCapture")
            session_id = self._require_session("submit")
            try:
                await self._commander.change_status(
                    self._call_sid, session_id, SessionStatus.COMPLETE
                )
            except RemoteCommandError as exc:
                self._log_failure("submitCapture", exc)
                return False

            self.phase = ControllerPhase.ATTACHED
            log_event("capture.submitted", session_id=session_id, call_sid=self._call_sid)
            self._queue_event(CaptureEvent.SUBMIT_COMPLETE)
            return True

    async def reset_card(self) -> bool:
        return await self._reset_field(
            CaptureFieldKind.CARD_NUMBER, CaptureEvent.CARD_RESET, "resetCard"
        )

    async def reset_security_code(self) -> bool:
        return await self._reset_field(
            CaptureFieldKind.SECURITY_CODE, CaptureEvent.SECURITY_CODE_RESET, "resetSecurityCode"
        )

    async def reset_date(self) -> bool:
        return await self._reset_field(
            CaptureFieldKind.EXPIRATION_DATE, CaptureEvent.DATE_RESET, "resetDate"
        )

    async def update_call_sid(self, call_sid: str) -> None:
        async with self._transition():
            self._track("updateCallSid", call_sid=call_sid)
            self._call_sid = call_sid
            if self.phase is ControllerPhase.IDLE and self._progress.active:
                self.phase = ControllerPhase.ATTACHED
            self._queue_event(CaptureEvent.CALL_CONNECTED, call_sid)

    async def detach(self) -> bool:
        async with self._transition():
            self._track("detachPay")
            try:
                await self._progress.stop()
                await self._calls.stop()
            except Exception as exc:  # noqa: BLE001
                self._log_failure("detachPay", exc)
                return False

            self.phase = ControllerPhase.IDLE
            self._session_id = None
            self._snapshot = None
            self._armed = None
            self._order.reset()
            log_event("controller.detached", call_sid=self._call_sid)
            self._queue_event(CaptureEvent.STOP_CAPTURING)
            return True

    # ------------------------------------------------------------------
    # channel callbacks

    async def _on_progress(self, snapshot: ProgressSnapshot) -> None:
        async with self._transition():
            try:
                self._check_session(snapshot)
            except StaleSessionNotification as exc:
                log_event("progress.stale", level=logging.DEBUG, reason=str(exc))
                return

            self._snapshot = snapshot
            self._queue_event(CaptureEvent.CARD_UPDATE, snapshot.raw)
            if self.phase is ControllerPhase.CAPTURING:
                await self._check_progress(snapshot)

    async def _on_call_discovered(self, call_sid: str) -> None:
        async with self._transition():
            self._call_sid = call_sid
            if self.phase is ControllerPhase.IDLE:
                self.phase = ControllerPhase.ATTACHED
            log_event("controller.call_discovered", call_sid=call_sid)
            self._queue_event(CaptureEvent.CALL_ID_DISCOVERED, call_sid)

    # ------------------------------------------------------------------
    # internals

    def _check_session(self, snapshot: ProgressSnapshot) -> None:
        if self._session_id is None:
            raise StaleSessionNotification(f"No live session for update '{snapshot.session_key}'")
        if snapshot.session_key != self._session_id:
            raise StaleSessionNotification(
                f"Update for '{snapshot.session_key}' does not match session '{self._session_id}'"
            )

    async def _check_progress(self, snapshot: ProgressSnapshot) -> None:
        active = self._order.peek_active()
        decision = decide_progress(active, snapshot)

        if decision is ProgressDecision.IDLE:
            log_event("progress.not_capturing", level=logging.DEBUG, session_id=self._session_id)
        elif decision is ProgressDecision.HOLD:
            log_event("progress.holding", level=logging.DEBUG, field=active and active.value)
        elif decision is ProgressDecision.ADVANCE:
            saved = self._order.snapshot()
            self._order.advance()
            following = self._order.peek_active()
            if following is None:
                log_event(
                    "progress.order_exhausted",
                    level=logging.WARNING,
                    session_id=self._session_id,
                    required=list(snapshot.required),
                )
                return
            if await self._send_active_field(following):
                self._announce_active_field(following)
            else:
                self._order.restore(saved)
        else:
            self.phase = ControllerPhase.TERMINATED
            log_event("capture.complete", session_id=self._session_id, call_sid=self._call_sid)
            self._queue_event(CaptureEvent.CAPTURE_COMPLETE)

    async def _reset_field(
        self,
        kind: CaptureFieldKind,
        reset_event: CaptureEvent,
        telemetry_name: str,
    ) -> bool:
        async with self._transition():
            self._track(telemetry_name)
            self._require_session("reset")

            saved = self._order.snapshot()
            changed = self._order.prepend(kind)
            if not await self._send_active_field(kind):
                self._order.restore(saved)
                return False

            self.phase = ControllerPhase.CAPTURING
            if changed:
                self._queue_event(reset_event)
            self._announce_active_field(kind)
            return True

    async def _arm_active_field(self) -> bool:
        active = self._order.peek_active()
        if active is None:
            return True
        if not await self._send_active_field(active):
            return False
        self._announce_active_field(active)
        return True

    async def _send_active_field(self, kind: CaptureFieldKind) -> bool:
        if self._session_id is None:
            raise CaptureStateError("No capture session to update")
        try:
            await self._commander.set_active_field(self._call_sid, self._session_id, kind)
        except RemoteCommandError as exc:
            self._log_failure("updateCaptureType", exc, field=kind.value)
            return False
        return True

    def _announce_active_field(self, kind: CaptureFieldKind) -> None:
        self._armed = kind
        log_event("capture.field_active", field=kind.value, session_id=self._session_id)
        self._queue_event(CAPTURING_EVENTS[kind])
        self._track("updateCaptureType", captureType=kind.value)

    def _require_session(self, action: str) -> str:
        if self._session_id is None or self.phase not in (
            ControllerPhase.CAPTURING,
            ControllerPhase.TERMINATED,
        ):
            raise CaptureStateError(f"Cannot {action} without an active capture session")
        return self._session_id

    def _log_failure(self, operation: str, exc: Exception, **fields: Any) -> None:
        log_event(
            "capture.command_failed",
            level=logging.ERROR,
            operation=operation,
            session_id=self._session_id,
            call_sid=self._call_sid,
            reason=str(exc),
            **fields,
        )

    def _track(self, name: str, **extra: Any) -> None:
        properties = {
            "identity": self.identity,
            "callSID": extra.pop("call_sid", self._call_sid),
            "timeStamp": self._clock(),
            **extra,
        }
        task = asyncio.create_task(self._telemetry.track(name, properties))
        self._telemetry_tasks.add(task)
        task.add_done_callback(partial(self._telemetry_done, name))

    def _telemetry_done(self, name: str, task: asyncio.Task[None]) -> None:
        self._telemetry_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_event(
                "telemetry.track_failed",
                level=logging.WARNING,
                telemetry_event=name,
                reason=str(exc),
            )

    def _queue_event(self, event: CaptureEvent, *args: Any) -> None:
        self._pending.append(partial(self._dispatch, event, args))

    async def _dispatch(self, event: CaptureEvent, args: tuple[Any, ...]) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                log_event(
                    "controller.listener_failed",
                    level=logging.ERROR,
                    capture_event=event.value,
                    reason=str(exc),
                )

    @asynccontextmanager
    async def _transition(self) -> AsyncIterator[None]:
        try:
            async with self._lock:
                yield
        finally:
            await self._flush()

    async def _flush(self) -> None:
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._pending:
                job = self._pending.popleft()
                try:
                    await job()
                except Exception as exc:  # noqa: BLE001
                    log_event("controller.dispatch_failed", level=logging.ERROR, reason=str(exc))
        finally:
            self._dispatching = False
