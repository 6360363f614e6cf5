import asyncio

import pytest
from conftest import make_booking, make_draft, make_settings
from parcelbook_client.auth import AuthSession
from parcelbook_client.bookings import BookingLifecycleController
from parcelbook_client.client import BackendConnectionError, BackendNotFoundError
from parcelbook_client.exceptions import InvalidFareError, NotFoundError, ValidationError
from parcelbook_client.schemas import (
    Address,
    Booking,
    BookingFilters,
    BookingPage,
    BookingStatus,
    User,
    UserRole,
)
from parcelbook_client.store import BookingStore


class FakeClient:
    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple, dict]] = []
        self.pages: list[BookingPage] = []
        self.bookings: dict[str, list[Booking]] = {}
        self.list_error: Exception | None = None
        self.append_gate: asyncio.Event | None = None

    async def list_bookings(self, *, limit=20, last_doc_id=None):
        self.calls.append(("list_bookings", (), {"limit": limit, "last_doc_id": last_doc_id}))
        if self.list_error is not None:
            raise self.list_error
        if last_doc_id and self.append_gate is not None:
            await self.append_gate.wait()
        return self.pages.pop(0)

    async def list_all_bookings(self, filters=None, *, limit=20, last_doc_id=None):
        self.calls.append((
            "list_all_bookings",
            (filters,),
            {"limit": limit, "last_doc_id": last_doc_id},
        ))
        return self.pages.pop(0)

    def _next_booking(self, booking_id: str) -> Booking:
        queue = self.bookings.get(booking_id)
        if not queue:
            raise BackendNotFoundError("Booking not found")
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def get_booking(self, booking_id):
        self.calls.append(("get_booking", (booking_id,), {}))
        return self._next_booking(booking_id)

    async def track_booking(self, tracking_number):
        self.calls.append(("track_booking", (tracking_number,), {}))
        raise BackendNotFoundError("Booking not found")

    async def create_booking(self, draft):
        self.calls.append(("create_booking", (draft,), {}))
        return make_booking("new", status="PendingPayment", fare=draft.fare)

    async def update_booking_status(self, booking_id, status, return_reason=None):
        self.calls.append(("update_booking_status", (booking_id, status, return_reason), {}))
        return make_booking(booking_id, status=status.value, returnReason=return_reason)

    async def update_fare(self, booking_id, fare):
        self.calls.append(("update_fare", (booking_id, fare), {}))
        return make_booking(booking_id, fare=fare)

    async def update_pod_signature(self, booking_id, signature, signed_by):
        self.calls.append(("update_pod_signature", (booking_id, signature, signed_by), {}))
        return make_booking(booking_id, status="Delivered", podSignedBy=signed_by)

    def names(self) -> list[str]:
        return [name for name, _, _ in self.calls]


def _controller(client, *, role=UserRole.CUSTOMER, **overrides):
    session = AuthSession(User(id="u1", phone_number="+919876543210", role=role), "token")
    settings = make_settings(auto_status_refresh=False, **overrides)
    return BookingLifecycleController(client, BookingStore(), session, settings)


@pytest.mark.asyncio
async def test_fetch_then_load_more_merges_pages():
    client = FakeClient()
    client.pages = [
        BookingPage(items=[make_booking("b1"), make_booking("b2")], has_more=True, last_doc_id="b2"),
        BookingPage(items=[make_booking("b2"), make_booking("b3")], has_more=False, last_doc_id="b3"),
    ]
    controller = _controller(client, page_size=2)

    await controller.fetch_bookings()
    await controller.load_more_bookings()

    assert [b.id for b in controller.store.bookings] == ["b1", "b2", "b3"]
    assert client.calls[1][2] == {"limit": 2, "last_doc_id": "b2"}
    assert controller.store.has_more is False
    assert await controller.load_more_bookings() is None
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_admin_fetch_uses_operator_listing_with_filters():
    client = FakeClient()
    client.pages = [BookingPage(items=[make_booking("b1")])]
    controller = _controller(client, role=UserRole.ADMIN)
    filters = BookingFilters(status=BookingStatus.SHIPPED)

    await controller.fetch_bookings(filters=filters)

    assert client.names() == ["list_all_bookings"]
    assert client.calls[0][1] == (filters,)


@pytest.mark.asyncio
async def test_fetch_failure_records_error_and_clears_loading():
    client = FakeClient()
    client.list_error = BackendConnectionError("backend_timeout")
    controller = _controller(client)

    with pytest.raises(BackendConnectionError):
        await controller.fetch_bookings()

    assert controller.store.error == "backend_timeout"
    assert controller.store.loading is False


@pytest.mark.asyncio
async def test_missing_booking_raises_not_found():
    controller = _controller(FakeClient())

    with pytest.raises(NotFoundError):
        await controller.fetch_booking("missing")
    with pytest.raises(NotFoundError) as exc:
        await controller.track_booking("PB404")
    assert exc.value.details == {"tracking_number": "PB404"}


@pytest.mark.asyncio
async def test_returned_without_reason_never_reaches_backend():
    client = FakeClient()
    controller = _controller(client, role=UserRole.ADMIN)

    with pytest.raises(ValidationError):
        await controller.update_status("b1", BookingStatus.RETURNED, "  ")
    assert client.calls == []


@pytest.mark.asyncio
async def test_returned_with_reason_is_sent():
    client = FakeClient()
    controller = _controller(client, role=UserRole.ADMIN)
    controller.store.add(make_booking("b1", status="Shipped"))

    booking = await controller.update_status("b1", BookingStatus.RETURNED, " Address not found ")

    assert client.calls == [
        ("update_booking_status", ("b1", BookingStatus.RETURNED, "Address not found"), {})
    ]
    assert booking.status == BookingStatus.RETURNED
    assert controller.store.get("b1").status == BookingStatus.RETURNED


@pytest.mark.asyncio
async def test_cached_booking_blocks_invalid_transition():
    client = FakeClient()
    controller = _controller(client, role=UserRole.ADMIN)
    controller.store.add(make_booking("b1", status="Created"))

    with pytest.raises(ValidationError):
        await controller.update_status("b1", BookingStatus.DELIVERED)
    assert client.calls == []


@pytest.mark.asyncio
async def test_customer_cannot_cancel_picked_booking_but_operator_can():
    client = FakeClient()
    customer = _controller(client)
    customer.store.add(make_booking("b1", status="Picked"))

    with pytest.raises(ValidationError):
        await customer.cancel_booking("b1")

    operator = _controller(client, role=UserRole.ADMIN)
    operator.store.add(make_booking("b1", status="Picked"))
    booking = await operator.cancel_booking("b1", "Customer request")
    assert booking.status == BookingStatus.CANCELLED


@pytest.mark.asyncio
async def test_fare_must_be_non_negative():
    client = FakeClient()
    controller = _controller(client, role=UserRole.ADMIN)

    with pytest.raises(InvalidFareError):
        await controller.update_fare("b1", -10)
    with pytest.raises(InvalidFareError):
        await controller.update_fare("b1", None)
    assert client.calls == []

    booking = await controller.update_fare("b1", 0)
    assert booking.fare == 0


@pytest.mark.asyncio
async def test_create_booking_validates_before_sending():
    client = FakeClient()
    controller = _controller(client)
    bad = make_draft(
        pickup=Address(
            name="A",
            phone="123",
            address="x",
            city="B",
            state="K",
            pincode="1",
        )
    )

    with pytest.raises(ValidationError):
        await controller.create_booking(bad)
    with pytest.raises(InvalidFareError):
        await controller.create_booking(make_draft(fare=-1))
    assert client.calls == []

    booking = await controller.create_booking(make_draft())
    assert controller.store.bookings[0].id == booking.id


@pytest.mark.asyncio
async def test_pod_signature_requires_signer():
    client = FakeClient()
    controller = _controller(client, role=UserRole.ADMIN)

    with pytest.raises(ValidationError):
        await controller.update_pod_signature("b1", "data:image/png;base64,AAA", " ")

    booking = await controller.update_pod_signature("b1", "data:image/png;base64,AAA", " Ravi ")
    assert booking.pod_signed_by == "Ravi"


@pytest.mark.asyncio
async def test_paid_pending_refresh_stops_at_ceiling():
    client = FakeClient()
    stuck = make_booking("b1", status="PendingPayment", paymentStatus="paid")
    client.bookings["b1"] = [stuck]
    controller = _controller(client)

    result = await controller.reconcile_pending_payment(stuck)

    assert result.status == BookingStatus.PENDING_PAYMENT
    assert client.names() == ["get_booking"] * 5


@pytest.mark.asyncio
async def test_paid_pending_refresh_stops_once_consistent():
    client = FakeClient()
    stuck = make_booking("b1", status="PendingPayment", paymentStatus="paid")
    client.bookings["b1"] = [stuck, make_booking("b1", status="Created", paymentStatus="paid")]
    controller = _controller(client)

    result = await controller.reconcile_pending_payment(stuck)

    assert result.status == BookingStatus.CREATED
    assert client.names() == ["get_booking", "get_booking"]


@pytest.mark.asyncio
async def test_fetching_paid_pending_booking_schedules_one_refresh():
    client = FakeClient()
    stuck = make_booking("b1", status="PendingPayment", paymentStatus="paid")
    client.bookings["b1"] = [stuck, stuck, make_booking("b1", status="Created", paymentStatus="paid")]
    controller = _controller(client)
    controller.settings.auto_status_refresh = True

    await controller.fetch_booking("b1")
    task = controller.pending_refresh("b1")
    assert task is not None
    assert controller._schedule_status_refresh(stuck) is task

    await asyncio.wait_for(task, timeout=1)
    assert controller.store.selected_booking.status == BookingStatus.CREATED
    await controller.close()


@pytest.mark.asyncio
async def test_payment_success_for_draft_refreshes_list():
    client = FakeClient()
    client.pages = [BookingPage(items=[make_booking("new", paymentStatus="paid")])]
    controller = _controller(client)

    assert await controller.on_payment_succeeded(None, "tx-1") is None
    assert client.names() == ["list_bookings"]
    assert controller.store.bookings[0].id == "new"


@pytest.mark.asyncio
async def test_payment_success_refresh_failure_is_swallowed():
    client = FakeClient()
    controller = _controller(client)

    assert await controller.on_payment_succeeded("missing", "tx-1") is None


@pytest.mark.asyncio
async def test_refresh_does_not_clear_running_load_more_flag():
    client = FakeClient()
    client.append_gate = asyncio.Event()
    client.pages = [
        BookingPage(items=[make_booking("b1")], has_more=True, last_doc_id="b1"),
        BookingPage(items=[make_booking("b2")], has_more=False, last_doc_id="b2"),
    ]
    controller = _controller(client)
    controller.store.set_pagination(True, "b0")

    load_more = asyncio.create_task(controller.load_more_bookings())
    await asyncio.sleep(0)
    assert controller.store.loading_more is True

    await controller.fetch_bookings()
    assert controller.store.loading is False
    assert controller.store.loading_more is True
    assert await controller.load_more_bookings() is None
    assert client.names() == ["list_bookings", "list_bookings"]

    client.append_gate.set()
    await asyncio.wait_for(load_more, timeout=1)
    assert controller.store.loading_more is False
    assert [b.id for b in controller.store.bookings] == ["b1", "b2"]
