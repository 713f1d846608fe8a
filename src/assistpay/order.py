"""Working capture order and the progress-check decision."""

from __future__ import annotations

from collections import deque
from enum import Enum, auto
from typing import TYPE_CHECKING, Iterable, Iterator

from .fields import CaptureFieldKind, parse_capture_order

if TYPE_CHECKING:
    from .listener import ProgressSnapshot


class ProgressDecision(Enum):
    IDLE = auto()
    HOLD = auto()
    ADVANCE = auto()
    COMPLETE = auto()


class CaptureOrder:
    """Ordered queue of fields left to capture, consumed front to back.

    The template is fixed at construction. The working order starts as a copy of
    the template and is only ever reset, shortened from the front, or has a field
    pushed back onto the front.
    """

    def __init__(self, template: Iterable[str | CaptureFieldKind]) -> None:
        self._template = parse_capture_order(template)
        self._working: deque[CaptureFieldKind] = deque(self._template)

    @property
    def template(self) -> tuple[CaptureFieldKind, ...]:
        return self._template

    def reset(self) -> None:
        self._working = deque(self._template)

    def peek_active(self) -> CaptureFieldKind | None:
        return self._working[0] if self._working else None

    def advance(self) -> None:
        if self._working:
            self._working.popleft()

    def prepend(self, kind: CaptureFieldKind) -> bool:
        """Make ``kind`` the active field; return whether the order changed.

        A later occurrence of ``kind`` is dropped so the working order never holds
        the same field twice.
        """
        if self.peek_active() is kind:
            return False
        if kind in self._working:
            self._working.remove(kind)
        self._working.appendleft(kind)
        return True

    def snapshot(self) -> tuple[CaptureFieldKind, ...]:
        return tuple(self._working)

    def restore(self, fields: Iterable[CaptureFieldKind]) -> None:
        self._working = deque(fields)

    def __contains__(self, kind: object) -> bool:
        return kind in self._working

    def __iter__(self) -> Iterator[CaptureFieldKind]:
        return iter(tuple(self._working))

    def __len__(self) -> int:
        return len(self._working)

    def __repr__(self) -> str:
        names = ", ".join(kind.value for kind in self._working)
        return f"CaptureOrder([{names}])"


def decide_progress(
    active: CaptureFieldKind | None,
    snapshot: ProgressSnapshot,
) -> ProgressDecision:
    """Decide how a progress update moves the capture forward.

    Advance iff the active field is no longer required and something else still
    is; complete iff nothing is required; otherwise hold on the active field.
    """

    if not snapshot.capture_in_progress:
        return ProgressDecision.IDLE
    required = snapshot.required
    if active is not None and active.value in required:
        return ProgressDecision.HOLD
    if required:
        return ProgressDecision.ADVANCE
    return ProgressDecision.COMPLETE
