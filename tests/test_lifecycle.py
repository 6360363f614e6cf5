import pytest
from conftest import make_booking
from parcelbook_client.exceptions import ValidationError
from parcelbook_client.lifecycle import (
    allowed_transitions,
    assert_transition,
    can_transition,
    has_payment_status_mismatch,
    is_cancellable,
    next_status,
)
from parcelbook_client.schemas import BookingStatus as S


def test_forward_order_is_linear():
    assert next_status(S.PENDING_PAYMENT) == S.CREATED
    assert next_status(S.CREATED) == S.PICKED
    assert next_status(S.PICKED) == S.SHIPPED
    assert next_status(S.SHIPPED) == S.DELIVERED
    assert next_status(S.DELIVERED) is None
    assert next_status(S.CANCELLED) is None


def test_no_skipping_forward_steps():
    assert not can_transition(S.CREATED, S.SHIPPED)
    assert not can_transition(S.PENDING_PAYMENT, S.DELIVERED)


def test_terminal_statuses_allow_nothing():
    assert allowed_transitions(S.CANCELLED) == set()
    assert allowed_transitions(S.RETURNED) == set()


def test_returned_only_after_dispatch():
    assert can_transition(S.SHIPPED, S.RETURNED)
    assert can_transition(S.DELIVERED, S.RETURNED)
    assert not can_transition(S.CREATED, S.RETURNED)


def test_cancellation_by_role():
    assert is_cancellable(S.CREATED)
    assert not is_cancellable(S.PICKED)
    assert is_cancellable(S.SHIPPED, operator=True)
    assert not is_cancellable(S.DELIVERED, operator=True)
    assert S.CANCELLED not in allowed_transitions(S.PICKED, operator=False)


def test_returned_requires_reason():
    booking = make_booking(status="Shipped")
    with pytest.raises(ValidationError):
        assert_transition(booking, S.RETURNED, "   ")
    assert_transition(booking, S.RETURNED, "Recipient refused")


def test_online_booking_without_fare_cannot_leave_payment_gate():
    booking = make_booking(status="Created", fare=None)
    with pytest.raises(ValidationError):
        assert_transition(booking, S.PICKED)
    assert_transition(make_booking(status="Created", paymentMethod="cod", fare=None), S.PICKED)


def test_invalid_transition_details():
    with pytest.raises(ValidationError) as exc:
        assert_transition(make_booking(status="Created"), S.DELIVERED)
    assert exc.value.details["current"] == "Created"
    assert exc.value.details["target"] == "Delivered"


def test_payment_status_mismatch():
    assert has_payment_status_mismatch(make_booking(status="PendingPayment", paymentStatus="paid"))
    assert not has_payment_status_mismatch(make_booking(status="Created", paymentStatus="paid"))
    assert not has_payment_status_mismatch(make_booking(status="PendingPayment"))
