import asyncio

import pytest
from parcelbook_client.config import Settings
from parcelbook_client.schemas import Address, Booking, BookingDraft, ParcelDetails

API = "https://api.parcelbook.test"


def make_settings(**overrides) -> Settings:
    values = {
        "api_base_url": API,
        "poll_initial_delay": 0,
        "poll_interval": 0,
        "foreground_recheck_delay": 0,
        "status_refresh_interval": 0,
        "sentry_dsn": None,
    }
    values.update(overrides)
    return Settings(**values)


def address_payload(name: str = "Asha Rao", **overrides) -> dict:
    payload = {
        "name": name,
        "phone": "+919876543210",
        "address": "12 Residency Road, Shanthala Nagar",
        "city": "Bengaluru",
        "state": "Karnataka",
        "pincode": "560025",
    }
    payload.update(overrides)
    return payload


def booking_payload(booking_id: str = "b1", **overrides) -> dict:
    payload = {
        "id": booking_id,
        "userId": "u1",
        "pickup": address_payload(),
        "drop": address_payload("Vikram Shah", pincode="400001", city="Mumbai"),
        "parcelDetails": {"type": "box", "weight": 2.5},
        "status": "Created",
        "paymentStatus": "pending",
        "paymentMethod": "online",
        "fare": 120.0,
        "trackingNumber": f"PB{booking_id.upper()}",
    }
    payload.update(overrides)
    return payload


def make_booking(booking_id: str = "b1", **overrides) -> Booking:
    return Booking.model_validate(booking_payload(booking_id, **overrides))


def make_draft(**overrides) -> BookingDraft:
    values = {
        "pickup": Address.model_validate(address_payload()),
        "drop": Address.model_validate(address_payload("Vikram Shah")),
        "parcel_details": ParcelDetails(type="box", weight=2.5),
        "fare": 150.0,
    }
    values.update(overrides)
    return BookingDraft(**values)


async def settle(predicate, rounds: int = 100) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def settings() -> Settings:
    return make_settings()
