"""Capture field identifiers and capture-order parsing."""

from __future__ import annotations

from enum import Enum
from typing import Iterable


class CaptureFieldKind(str, Enum):
    CARD_NUMBER = "payment-card-number"
    SECURITY_CODE = "security-code"
    EXPIRATION_DATE = "expiration-date"
    POSTAL_CODE = "postal-code"


DEFAULT_CAPTURE_ORDER: tuple[CaptureFieldKind, ...] = (
    CaptureFieldKind.CARD_NUMBER,
    CaptureFieldKind.SECURITY_CODE,
    CaptureFieldKind.EXPIRATION_DATE,
)


def parse_capture_order(
    raw: str | Iterable[str | CaptureFieldKind],
) -> tuple[CaptureFieldKind, ...]:
    """Parse a configured capture order.

    Accepts either a comma separated string ("payment-card-number, security-code")
    or an iterable of names or kinds. The result is non-empty and free of duplicates.
    """

    items = raw.split(",") if isinstance(raw, str) else list(raw)

    kinds: list[CaptureFieldKind] = []
    for item in items:
        name = item.value if isinstance(item, CaptureFieldKind) else str(item).strip()
        if not name:
            continue
        try:
            kind = CaptureFieldKind(name)
        except ValueError as exc:
            allowed = ", ".join(member.value for member in CaptureFieldKind)
            raise ValueError(f"Unknown capture field '{name}'; expected one of: {allowed}") from exc
        if kind in kinds:
            raise ValueError(f"Capture field '{name}' appears more than once")
        kinds.append(kind)

    if not kinds:
        raise ValueError("Capture order must contain at least one field")
    return tuple(kinds)
