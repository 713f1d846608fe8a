"""FastAPI integration entrypoint."""

from __future__ import annotations

import os
from collections import deque
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable, Iterable

from fastapi import Body, Depends, FastAPI, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from .channel import CALL_COLLECTION, PAY_COLLECTION, ChannelSubscriptionError, InMemorySyncChannel
from .commander import RemoteCaptureCommander
from .config import Settings, load_settings
from .controller import CaptureEvent, CaptureSessionController, CaptureStateError, CommanderProtocol
from .logs import SERVICE_NAME, configure_logging, log_event
from .telemetry import TelemetrySink, build_telemetry_sink

CONFIG_ENV_VAR = "ASSISTPAY_CONFIG_PATH"
CONFIG_SEARCH_PATHS_ENV_VAR = "ASSISTPAY_CONFIG_SEARCH_PATHS"
DEFAULT_CONFIG_FILENAME = "config.yaml"
API_TOKEN_ENV_VAR = "ASSISTPAY_API_TOKEN"  # noqa: S105 - env var name, not a secret
SYNC_TOKEN_ENV_VAR = "ASSISTPAY_SYNC_TOKEN"  # noqa: S105 - env var name, not a secret
EVENT_LOG_SIZE = 500
DEFAULT_CONFIG_SEARCH_PATHS: tuple[Path, ...] = (
    Path("config.yaml"),
    Path("config/config.yaml"),
    Path(__file__).resolve().parent / DEFAULT_CONFIG_FILENAME,
)

auth_scheme = HTTPBearer(auto_error=False)
AuthCredentials = Annotated[HTTPAuthorizationCredentials | None, Security(auth_scheme)]

RESET_COMMANDS: dict[str, str] = {
    "card": "reset_card",
    "security-code": "reset_security_code",
    "date": "reset_date",
}


class AttachRequest(BaseModel):
    callSid: str | None = None


class CallSidRequest(BaseModel):
    callSid: str


class NewCallNotification(BaseModel):
    pstnSid: str


def create_app(
    *,
    config_path: str | None = None,
    commander: CommanderProtocol | None = None,
    channel: InMemorySyncChannel | None = None,
    telemetry: TelemetrySink | None = None,
    api_token: str | None = None,
    sync_token: str | None = None,
    config_search_paths: Iterable[str | os.PathLike[str]] | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application."""

    configure_logging()

    state: dict[str, Any] = {
        "settings": None,
        "controller": None,
        "channel": channel,
        "commander": commander,
        "telemetry": telemetry,
        "config_path": config_path,
        "api_token": api_token or os.getenv(API_TOKEN_ENV_VAR),
        "sync_token": sync_token or os.getenv(SYNC_TOKEN_ENV_VAR),
        "config_search_paths": tuple(config_search_paths or ()),
        "events": deque(maxlen=EVENT_LOG_SIZE),
        "event_seq": 0,
    }

    def _record_event(event: CaptureEvent, *args: Any) -> None:
        state["event_seq"] += 1
        state["events"].append(
            {"seq": state["event_seq"], "event": event.value, "data": args[0] if args else None}
        )

    def _build_controller(settings: Settings) -> CaptureSessionController:
        owned: list[Any] = []
        if state["channel"] is None:
            state["channel"] = InMemorySyncChannel()
        if state["commander"] is None:
            remote = RemoteCaptureCommander(
                functions_url=settings.pay.functions_url,
                identity=settings.pay.identity,
                token=state["sync_token"],
                timeout=settings.timeout,
            )
            state["commander"] = remote
            owned.append(remote)
        if state["telemetry"] is None:
            sink = build_telemetry_sink(settings.telemetry.segment_write_key)
            state["telemetry"] = sink
            owned.append(sink)
        state["owned"] = owned

        controller = CaptureSessionController(
            commander=state["commander"],
            channel=state["channel"],
            identity=settings.pay.identity,
            payment_connector=settings.pay.payment_connector,
            capture_order=settings.pay.capture_order,
            currency=settings.pay.currency,
            token_type=settings.pay.token_type,
            telemetry=state["telemetry"],
        )
        for event in CaptureEvent:
            controller.on(event, partial(_record_event, event))
        return controller

    @asynccontextmanager
    async def _lifespan(app: FastAPI):  # pragma: no cover - exercised via tests
        resolved_path = _resolve_config_path(state["config_path"], state["config_search_paths"])
        try:
            settings = load_settings(resolved_path)
        except Exception:
            log_event("config.load_failed", path=str(resolved_path))
            raise

        state["settings"] = settings
        state["config_path"] = str(resolved_path)
        state["controller"] = _build_controller(settings)
        log_event("config.loaded", path=str(resolved_path))
        try:
            yield
        finally:
            controller = state.get("controller")
            if controller is not None:
                await controller.drain_telemetry()
            for resource in state.pop("owned", []):
                closer = getattr(resource, "aclose", None)
                if closer is not None:
                    await closer()
            state["settings"] = None
            state["controller"] = None
            log_event("config.unloaded")

    app = FastAPI(
        title="AssistPay — agent-assisted card capture",
        description="Sequence PCI card capture on a live call without exposing card data.",
        version="1.0.0",
        lifespan=_lifespan,
    )

    def _require_controller() -> CaptureSessionController:
        controller = state.get("controller")
        if controller is None:
            raise HTTPException(status_code=503, detail={"message": "Service not initialized"})
        return controller

    def _require_channel() -> InMemorySyncChannel:
        _require_controller()
        return state["channel"]

    async def _authorize(credentials: AuthCredentials) -> None:
        token = state.get("api_token")
        if token is None:
            return
        if credentials is None or credentials.credentials != token:
            raise HTTPException(status_code=401, detail={"message": "Invalid or missing API token"})

    async def _run_command(
        name: str,
        command: Callable[[], Awaitable[bool | None]],
    ) -> dict[str, Any]:
        try:
            result = await command()
        except CaptureStateError as exc:
            log_event("command.rejected", command=name, reason=str(exc))
            raise HTTPException(status_code=409, detail={"message": str(exc)}) from exc
        except ChannelSubscriptionError as exc:
            log_event("command.failed", command=name, reason=str(exc))
            raise HTTPException(status_code=503, detail={"message": str(exc)}) from exc
        if result is False:
            raise HTTPException(
                status_code=502,
                detail={"message": f"Capture-control API did not accept {name}"},
            )
        return _status_payload(_require_controller())

    @app.get("/")
    async def root() -> dict[str, Any]:
        settings = state.get("settings")
        return {
            "service": SERVICE_NAME,
            "version": app.version,
            "config_path": state.get("config_path"),
            "timeout": settings.timeout if settings else None,
            "capture_order": [kind.value for kind in settings.pay.capture_order]
            if settings
            else None,
            "auth_enabled": bool(state.get("api_token")),
        }

    @app.get("/status")
    async def status() -> dict[str, Any]:
        return _status_payload(_require_controller())

    @app.get("/events")
    async def events(after: int = 0) -> dict[str, Any]:
        _require_controller()
        selected = [entry for entry in state["events"] if entry["seq"] > after]
        return {"service": SERVICE_NAME, "last_seq": state["event_seq"], "events": selected}

    @app.post("/attach")
    async def attach(
        request: AttachRequest | None = None,
        _: None = Depends(_authorize),
    ) -> dict[str, Any]:
        controller = _require_controller()
        call_sid = request.callSid if request else None
        return await _run_command("attachPay", partial(controller.attach, call_sid))

    @app.post("/call")
    async def update_call(request: CallSidRequest, _: None = Depends(_authorize)) -> dict[str, Any]:
        controller = _require_controller()
        return await _run_command(
            "updateCallSid", partial(controller.update_call_sid, request.callSid)
        )

    @app.post("/capture/start")
    async def start_capture(_: None = Depends(_authorize)) -> dict[str, Any]:
        return await _run_command("startCapture", _require_controller().start_capture)

    @app.post("/capture/cancel")
    async def cancel_capture(_: None = Depends(_authorize)) -> dict[str, Any]:
        return await _run_command("cancelCapture", _require_controller().cancel_capture)

    @app.post("/capture/submit")
    async def submit_capture(_: None = Depends(_authorize)) -> dict[str, Any]:
        return await _run_command("submitCapture", _require_controller().submit_capture)

    @app.post("/capture/reset/{field}")
    async def reset_field(field: str, _: None = Depends(_authorize)) -> dict[str, Any]:
        controller = _require_controller()
        method_name = RESET_COMMANDS.get(field)
        if method_name is None:
            raise HTTPException(status_code=404, detail={"message": f"Unknown field '{field}'"})
        return await _run_command(method_name, getattr(controller, method_name))

    @app.post("/detach")
    async def detach(_: None = Depends(_authorize)) -> dict[str, Any]:
        return await _run_command("detachPay", _require_controller().detach)

    @app.post("/paySyncUpdate")
    async def pay_sync_update(payload: Annotated[dict[str, Any], Body()]) -> dict[str, Any]:
        channel = _require_channel()
        session_key = payload.get("Sid") or payload.get("paySid")
        if not isinstance(session_key, str) or not session_key.strip():
            raise HTTPException(status_code=422, detail={"message": "Status callback missing Sid"})
        delivered = await channel.publish(PAY_COLLECTION, session_key.strip(), payload)
        log_event("progress.received", session_id=session_key, delivered=delivered)
        return {"service": SERVICE_NAME, "delivered": delivered}

    @app.post("/calls")
    async def new_call(notification: NewCallNotification) -> dict[str, Any]:
        channel = _require_channel()
        delivered = await channel.publish(
            CALL_COLLECTION, notification.pstnSid, {"pstnSid": notification.pstnSid}
        )
        log_event("call.received", call_sid=notification.pstnSid, delivered=delivered)
        return {"service": SERVICE_NAME, "delivered": delivered}

    return app


def _status_payload(controller: CaptureSessionController) -> dict[str, Any]:
    snapshot = controller.snapshot
    active = controller.active_field
    return {
        "service": SERVICE_NAME,
        "phase": controller.phase.name.lower(),
        "call_sid": controller.call_sid,
        "session_id": controller.session_id,
        "active_field": active.value if active else None,
        "working_order": [kind.value for kind in controller.working_order],
        "partial_result": snapshot.partial_result if snapshot else None,
        "required": list(snapshot.required) if snapshot else None,
    }


def _resolve_config_path(
    override: str | None = None,
    extra_search_paths: Iterable[str | os.PathLike[str]] | None = None,
) -> Path:
    candidate = override or os.getenv(CONFIG_ENV_VAR)
    if candidate:
        path = _normalize_path(candidate)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found at {path}")
        return path

    search_candidates: list[Path] = []
    env_search = os.getenv(CONFIG_SEARCH_PATHS_ENV_VAR)
    if env_search:
        for raw in env_search.split(os.pathsep):
            cleaned = raw.strip()
            if cleaned:
                search_candidates.append(Path(cleaned))

    if extra_search_paths:
        for configured in extra_search_paths:
            search_candidates.append(Path(str(configured)))

    search_candidates.extend(DEFAULT_CONFIG_SEARCH_PATHS)

    evaluated_paths: list[Path] = []
    for candidate_path in search_candidates:
        path = _normalize_path(candidate_path)
        evaluated_paths.append(path)
        if path.exists():
            return path

    searched = ", ".join(str(p) for p in evaluated_paths)
    raise FileNotFoundError(
        (
            "Unable to locate configuration file. Set "
            f"{CONFIG_ENV_VAR} or place config.yaml in one of: {searched}"
        )
    )


def _normalize_path(candidate: str | os.PathLike[str]) -> Path:
    path = Path(candidate).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path
