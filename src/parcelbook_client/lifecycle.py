"""Booking status machine rules.

The backend is the authority on every transition. These helpers only decide
what the client offers and what it refuses to send.

Forward order::

    PendingPayment -> Created -> Picked -> Shipped -> Delivered

Side branches: ``Cancelled`` from any state before ``Delivered``;
``Returned`` once the parcel has been dispatched, with a mandatory reason.
"""

from __future__ import annotations

from typing import Optional

from .exceptions import ValidationError
from .schemas import Booking, BookingStatus, PaymentMethod, PaymentStatus

FORWARD_ORDER: tuple[BookingStatus, ...] = (
    BookingStatus.PENDING_PAYMENT,
    BookingStatus.CREATED,
    BookingStatus.PICKED,
    BookingStatus.SHIPPED,
    BookingStatus.DELIVERED,
)

TERMINAL_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.RETURNED})

CUSTOMER_CANCELLABLE = frozenset({BookingStatus.PENDING_PAYMENT, BookingStatus.CREATED})
OPERATOR_CANCELLABLE = frozenset(
    {
        BookingStatus.PENDING_PAYMENT,
        BookingStatus.CREATED,
        BookingStatus.PICKED,
        BookingStatus.SHIPPED,
    }
)
RETURNABLE = frozenset(
    {BookingStatus.PICKED, BookingStatus.SHIPPED, BookingStatus.DELIVERED}
)

PAYMENT_GATED = frozenset({BookingStatus.PENDING_PAYMENT, BookingStatus.CREATED})


def is_terminal(status: BookingStatus) -> bool:
    return status in TERMINAL_STATUSES


def next_status(current: BookingStatus) -> Optional[BookingStatus]:
    """Return the single forward step from ``current``, if any."""
    if current not in FORWARD_ORDER:
        return None
    index = FORWARD_ORDER.index(current)
    if index + 1 >= len(FORWARD_ORDER):
        return None
    return FORWARD_ORDER[index + 1]


def allowed_transitions(
    current: BookingStatus, *, operator: bool = True
) -> set[BookingStatus]:
    allowed: set[BookingStatus] = set()
    step = next_status(current)
    if step is not None:
        allowed.add(step)
    if is_cancellable(current, operator=operator):
        allowed.add(BookingStatus.CANCELLED)
    if current in RETURNABLE:
        allowed.add(BookingStatus.RETURNED)
    return allowed


def can_transition(
    current: BookingStatus, target: BookingStatus, *, operator: bool = True
) -> bool:
    return target in allowed_transitions(current, operator=operator)


def is_cancellable(status: BookingStatus, *, operator: bool = False) -> bool:
    if operator:
        return status in OPERATOR_CANCELLABLE
    return status in CUSTOMER_CANCELLABLE


def normalize_reason(reason: Optional[str]) -> Optional[str]:
    if reason is None:
        return None
    stripped = reason.strip()
    return stripped or None


def assert_transition(
    booking: Booking,
    target: BookingStatus,
    reason: Optional[str] = None,
    *,
    operator: bool = True,
) -> None:
    """Raise ``ValidationError`` when the client should not request ``target``."""
    if target == BookingStatus.RETURNED and normalize_reason(reason) is None:
        raise ValidationError(
            "A reason is required to mark a booking as returned",
            details={"booking_id": booking.id},
        )

    current = booking.status
    if not can_transition(current, target, operator=operator):
        raise ValidationError(
            f"Invalid booking transition: {current.value} -> {target.value}",
            details={
                "booking_id": booking.id,
                "current": current.value,
                "target": target.value,
            },
        )

    if (
        current in PAYMENT_GATED
        and target in FORWARD_ORDER
        and booking.payment_method == PaymentMethod.ONLINE
        and (booking.fare is None or booking.fare < 0)
    ):
        raise ValidationError(
            "Booking fare must be set before it can move past payment",
            details={"booking_id": booking.id},
        )


def has_payment_status_mismatch(booking: Booking) -> bool:
    """True when the booking is paid but the status has not caught up yet."""
    return (
        booking.status == BookingStatus.PENDING_PAYMENT
        and booking.payment_status == PaymentStatus.PAID
    )
