from __future__ import annotations

import pytest

from assistpay.fields import DEFAULT_CAPTURE_ORDER, CaptureFieldKind, parse_capture_order
from assistpay.listener import ProgressSnapshot
from assistpay.order import CaptureOrder, ProgressDecision, decide_progress

CARD = CaptureFieldKind.CARD_NUMBER
CVC = CaptureFieldKind.SECURITY_CODE
DATE = CaptureFieldKind.EXPIRATION_DATE
ZIP = CaptureFieldKind.POSTAL_CODE


def test_parse_capture_order_accepts_comma_separated_string() -> None:
    order = parse_capture_order(" payment-card-number, security-code ,expiration-date ")

    assert order == DEFAULT_CAPTURE_ORDER


def test_parse_capture_order_accepts_kinds_and_names() -> None:
    assert parse_capture_order([CVC, "postal-code"]) == (CVC, ZIP)


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("", "at least one field"),
        ("card-number", "Unknown capture field"),
        ("security-code,security-code", "more than once"),
    ],
)
def test_parse_capture_order_rejects_invalid_orders(raw: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        parse_capture_order(raw)


def test_order_starts_as_copy_of_template() -> None:
    order = CaptureOrder([CARD, CVC, DATE])

    assert order.template == (CARD, CVC, DATE)
    assert order.snapshot() == (CARD, CVC, DATE)
    assert order.peek_active() is CARD


def test_advance_consumes_front_and_is_noop_when_empty() -> None:
    order = CaptureOrder([CARD, CVC])

    order.advance()
    assert order.peek_active() is CVC
    order.advance()
    assert order.peek_active() is None
    order.advance()
    assert len(order) == 0


def test_reset_restores_template_after_consumption() -> None:
    order = CaptureOrder([CARD, CVC, DATE])
    order.advance()
    order.advance()

    order.reset()

    assert order.snapshot() == (CARD, CVC, DATE)
    assert order.template == (CARD, CVC, DATE)


def test_prepend_is_noop_for_active_field() -> None:
    order = CaptureOrder([CARD, CVC, DATE])

    assert order.prepend(CARD) is False
    assert order.snapshot() == (CARD, CVC, DATE)


def test_prepend_pushes_consumed_field_back_to_front() -> None:
    order = CaptureOrder([CARD, CVC, DATE])
    order.advance()
    order.advance()

    assert order.prepend(CVC) is True
    assert order.snapshot() == (CVC, DATE)


def test_prepend_moves_pending_field_without_duplicating_it() -> None:
    order = CaptureOrder([CARD, CVC, DATE])

    assert order.prepend(DATE) is True
    assert order.snapshot() == (DATE, CARD, CVC)


def test_prepend_on_empty_order_makes_field_active() -> None:
    order = CaptureOrder([CARD])
    order.advance()

    assert order.prepend(CARD) is True
    assert order.peek_active() is CARD


def test_template_is_unaffected_by_working_mutations() -> None:
    order = CaptureOrder([CARD, CVC])
    order.advance()
    order.prepend(DATE)

    assert order.template == (CARD, CVC)


def _snapshot(
    required: tuple[str, ...],
    capture: str | None = "payment-card-number",
) -> ProgressSnapshot:
    return ProgressSnapshot(session_key="PA1", capture=capture, required=required)


@pytest.mark.parametrize(
    ("active", "required", "expected"),
    [
        (CARD, ("payment-card-number", "security-code"), ProgressDecision.HOLD),
        (CARD, ("security-code", "expiration-date"), ProgressDecision.ADVANCE),
        (CVC, ("expiration-date",), ProgressDecision.ADVANCE),
        (DATE, (), ProgressDecision.COMPLETE),
        (None, ("security-code",), ProgressDecision.ADVANCE),
        (None, (), ProgressDecision.COMPLETE),
    ],
)
def test_decide_progress(
    active: CaptureFieldKind | None,
    required: tuple[str, ...],
    expected: ProgressDecision,
) -> None:
    assert decide_progress(active, _snapshot(required)) is expected


def test_decide_progress_is_idle_when_not_capturing() -> None:
    snapshot = _snapshot((), capture="")

    assert decide_progress(CARD, snapshot) is ProgressDecision.IDLE
