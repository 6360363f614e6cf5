"""
Pydantic models for the ParcelBook backend payloads.

The backend speaks camelCase JSON; models accept either the wire names or
the Python field names, and dump back to camelCase with ``to_wire()``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class BookingStatus(str, Enum):
    """Booking lifecycle statuses, in forward order, then the side branches."""

    PENDING_PAYMENT = "PendingPayment"
    CREATED = "Created"
    PICKED = "Picked"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    RETURNED = "Returned"
    CANCELLED = "Cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    COD = "cod"
    ONLINE = "online"


class DeliveryType(str, Enum):
    SAME_DAY = "sameDay"
    LATER = "later"


class UserRole(str, Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"


class PaymentOutcome(str, Enum):
    """Gateway transaction status as reported by the backend."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"


class WireModel(BaseModel):
    """Base for backend payloads: camelCase aliases, unknown fields ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class User(WireModel):
    id: str
    phone_number: str
    name: Optional[str] = None
    role: UserRole = UserRole.CUSTOMER


class Address(WireModel):
    name: str
    phone: str
    address: str
    city: str
    state: str
    pincode: str
    house_number: Optional[str] = None
    street: Optional[str] = None
    landmark: Optional[str] = None


class Dimensions(WireModel):
    length: float
    width: float
    height: float


class ParcelDetails(WireModel):
    type: str
    weight: float
    dimensions: Optional[Dimensions] = None
    description: Optional[str] = None
    value: Optional[float] = None


class Booking(WireModel):
    """Client-side cached copy of a backend booking. May be stale."""

    id: str
    user_id: Optional[str] = None
    pickup: Optional[Address] = None
    drop: Optional[Address] = None
    parcel_details: Optional[ParcelDetails] = None
    status: BookingStatus
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: Optional[PaymentMethod] = None
    fare: Optional[float] = None
    delivery_type: Optional[DeliveryType] = None
    delivery_date: Optional[str] = None
    tracking_number: Optional[str] = None
    return_reason: Optional[str] = None
    returned_at: Optional[datetime] = None
    pod_signature: Optional[str] = None
    pod_signed_at: Optional[datetime] = None
    pod_signed_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator(
        "returned_at", "pod_signed_at", "created_at", "updated_at", mode="before"
    )
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Any:
        # Firestore timestamps serialize as {"_seconds": ..., "_nanoseconds": ...}
        if isinstance(value, dict):
            seconds = value.get("_seconds", value.get("seconds"))
            if seconds is None:
                return None
            nanos = value.get("_nanoseconds", value.get("nanoseconds")) or 0
            return datetime.fromtimestamp(seconds + nanos / 1e9, tz=timezone.utc)
        return value


class BookingDraft(WireModel):
    """A booking that has not been created on the backend yet."""

    pickup: Address
    drop: Address
    parcel_details: ParcelDetails
    fare: Optional[float] = None
    payment_method: Optional[PaymentMethod] = None
    coupon_code: Optional[str] = None
    delivery_type: Optional[DeliveryType] = None
    delivery_date: Optional[str] = None


class BookingFilters(WireModel):
    status: Optional[BookingStatus] = None
    payment_status: Optional[PaymentStatus] = None
    search_query: Optional[str] = None


class BookingPage(WireModel):
    items: List[Booking] = Field(
        default_factory=list, validation_alias=AliasChoices("items", "bookings")
    )
    has_more: bool = False
    last_doc_id: Optional[str] = None


class BookingStatistics(WireModel):
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_payment_status: Dict[str, int] = Field(default_factory=dict)
    recent_bookings: List[Booking] = Field(default_factory=list)


class PaymentSession(WireModel):
    """Reply to a payment page creation request."""

    payment_url: str
    merchant_reference_id: str
    paygic_reference_id: Optional[str] = None
    expiry: Optional[str] = None
    amount: Optional[str] = None


class PaymentStatusResult(WireModel):
    status: PaymentOutcome
    merchant_reference_id: Optional[str] = None
    message: Optional[str] = None
    amount: Optional[float] = None


class FareQuote(WireModel):
    distance_in_km: float
    base_fare: float
    gst: float
    total_fare: float


class BaseRate(WireModel):
    min_km: float
    max_km: float
    max_weight: float
    fare: float
    apply_gst: Optional[bool] = None


class PricingSettings(WireModel):
    base_rates: List[BaseRate] = Field(default_factory=list)
    gst_percent: float = 0.0


class Coupon(WireModel):
    code: str
    discount_type: str
    discount_value: float


class CouponValidation(WireModel):
    is_valid: bool
    discount_amount: float = 0.0
    coupon: Optional[Coupon] = None
    message: Optional[str] = None
