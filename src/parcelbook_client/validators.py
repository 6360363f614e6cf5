"""Input validation helpers for addresses and payer details."""

from __future__ import annotations

import re
from typing import List

from .exceptions import ValidationError
from .schemas import Address, BookingDraft

_PHONE_RE = re.compile(r"^\+91[6-9]\d{9}$")
_PINCODE_RE = re.compile(r"^\d{6}$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def validate_phone_number(phone: str | None) -> bool:
    """Indian mobile numbers: +91 followed by ten digits starting with 6-9."""
    if not phone or not isinstance(phone, str):
        return False
    cleaned = re.sub(r"[\s-]", "", phone)
    return bool(_PHONE_RE.match(cleaned))


def validate_pincode(pincode: str | None) -> bool:
    return bool(pincode) and bool(_PINCODE_RE.match(pincode))


def validate_email(email: str | None) -> bool:
    return bool(email) and bool(_EMAIL_RE.match(email))


def address_errors(address: Address) -> List[str]:
    errors: List[str] = []
    if len(address.name.strip()) < 2:
        errors.append("Name must be at least 2 characters")
    if not validate_phone_number(address.phone):
        errors.append("Invalid phone number format")
    if len(address.address.strip()) < 10:
        errors.append("Address must be at least 10 characters")
    if len(address.city.strip()) < 2:
        errors.append("City is required")
    if len(address.state.strip()) < 2:
        errors.append("State is required")
    if not validate_pincode(address.pincode):
        errors.append("Invalid PIN code format")
    return errors


def validate_draft(draft: BookingDraft) -> None:
    errors: dict[str, List[str]] = {}
    for label, address in (("pickup", draft.pickup), ("drop", draft.drop)):
        problems = address_errors(address)
        if problems:
            errors[label] = problems
    if draft.parcel_details.weight <= 0:
        errors["parcel_details"] = ["Weight must be greater than zero"]
    if errors:
        raise ValidationError("Booking details are invalid", details={"errors": errors})


def require_phone_number(phone: str | None) -> str:
    if not validate_phone_number(phone):
        raise ValidationError("Invalid phone number format", details={"phone": phone})
    return re.sub(r"[\s-]", "", phone or "")
