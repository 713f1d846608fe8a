"""Configuration loading helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .fields import DEFAULT_CAPTURE_ORDER, CaptureFieldKind, parse_capture_order

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
FUNCTIONS_URL_PATTERN = re.compile(r"^https?://[^\s/]+(/[^\s]*)?$")
TOKEN_TYPES = ("one-time", "reusable")


@dataclass(slots=True, frozen=True)
class TelemetrySettings:
    segment_write_key: str | None = None


@dataclass(slots=True, frozen=True)
class PaySettings:
    functions_url: str
    identity: str
    payment_connector: str
    capture_order: tuple[CaptureFieldKind, ...]
    currency: str
    token_type: str


@dataclass(slots=True, frozen=True)
class Settings:
    pay: PaySettings
    telemetry: TelemetrySettings
    timeout: float


def load_settings(path: Path) -> Settings:
    """Load configuration from a YAML document."""

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    settings_raw = raw.get("settings") or {}
    telemetry_raw = settings_raw.get("telemetry") or {}

    raw_order = settings_raw.get("capture_order")
    try:
        capture_order = (
            DEFAULT_CAPTURE_ORDER if raw_order is None else parse_capture_order(raw_order)
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Field 'capture_order' is invalid: {exc}") from exc

    pay = PaySettings(
        functions_url=_require_url(settings_raw, "functions_url"),
        identity=_require_str(settings_raw, "identity"),
        payment_connector=_require_str(settings_raw, "payment_connector"),
        capture_order=capture_order,
        currency=_require_currency(settings_raw, "currency"),
        token_type=_require_choice(settings_raw, "token_type", TOKEN_TYPES, default="reusable"),
    )

    write_key = str(telemetry_raw.get("segment_write_key") or "").strip()
    telemetry = TelemetrySettings(segment_write_key=write_key or None)

    timeout = float(settings_raw.get("request_timeout_seconds", 10))
    if timeout <= 0:
        raise ValueError("settings.request_timeout_seconds must be > 0")

    return Settings(pay=pay, telemetry=telemetry, timeout=timeout)


def _require_str(source: dict[str, Any], key: str) -> str:
    value = source.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Field '{key}' must be a non-empty string")
    return value.strip()


def _require_url(source: dict[str, Any], key: str) -> str:
    value = _require_str(source, key).rstrip("/")
    if not FUNCTIONS_URL_PATTERN.fullmatch(value):
        raise ValueError(f"Field '{key}' must be an http(s) URL")
    return value


def _require_currency(source: dict[str, Any], key: str) -> str:
    value = source.get(key, "USD")
    if not isinstance(value, str):
        raise ValueError(f"Field '{key}' must be a three-letter currency code")
    normalized = value.strip().upper()
    if not CURRENCY_PATTERN.fullmatch(normalized):
        raise ValueError(f"Field '{key}' must be a three-letter currency code")
    return normalized


def _require_choice(
    source: dict[str, Any],
    key: str,
    choices: tuple[str, ...],
    *,
    default: str,
) -> str:
    value = source.get(key, default)
    if value not in choices:
        raise ValueError(f"Field '{key}' must be one of: {', '.join(choices)}")
    return value
