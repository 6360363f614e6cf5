"""Client-held state: the booking list and user-facing notices."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .schemas import Booking, BookingFilters, BookingPage


class BookingStore:
    """Cached booking list, selection and pagination cursor."""

    def __init__(self) -> None:
        self.bookings: List[Booking] = []
        self.selected_booking: Optional[Booking] = None
        self.loading = False
        self.loading_more = False
        self.has_more = False
        self.last_doc_id: Optional[str] = None
        self.filters = BookingFilters()
        self.error: Optional[str] = None

    def get(self, booking_id: str) -> Optional[Booking]:
        if self.selected_booking is not None and self.selected_booking.id == booking_id:
            return self.selected_booking
        return next((b for b in self.bookings if b.id == booking_id), None)

    def replace(self, page: BookingPage) -> None:
        self.bookings = list(page.items)
        self.set_pagination(page.has_more, page.last_doc_id)

    def append(self, page: BookingPage) -> None:
        """Merge a follow-up page; bookings already held are updated in place."""
        positions = {booking.id: index for index, booking in enumerate(self.bookings)}
        for booking in page.items:
            index = positions.get(booking.id)
            if index is None:
                positions[booking.id] = len(self.bookings)
                self.bookings.append(booking)
            else:
                self.bookings[index] = booking
        self.set_pagination(page.has_more, page.last_doc_id)

    def set_pagination(self, has_more: bool, last_doc_id: Optional[str]) -> None:
        self.has_more = has_more
        self.last_doc_id = last_doc_id

    def add(self, booking: Booking) -> None:
        self.bookings = [booking] + [b for b in self.bookings if b.id != booking.id]

    def update(self, booking: Booking) -> None:
        """Refresh a cached booking wherever it is held; unknown ids are ignored."""
        self.bookings = [booking if b.id == booking.id else b for b in self.bookings]
        if self.selected_booking is not None and self.selected_booking.id == booking.id:
            self.selected_booking = booking

    def select(self, booking: Optional[Booking]) -> None:
        self.selected_booking = booking

    def set_filters(self, filters: BookingFilters) -> None:
        self.filters = filters

    def clear(self) -> None:
        self.bookings = []
        self.selected_booking = None
        self.has_more = False
        self.last_doc_id = None
        self.error = None


class NoticeKind(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Notice:
    kind: NoticeKind
    title: str
    message: str
    actions: List[str] = field(default_factory=list)


class UIState:
    """Pending notices for the presentation layer to show."""

    def __init__(self) -> None:
        self.notices: List[Notice] = []

    def notify(
        self,
        kind: NoticeKind,
        title: str,
        message: str,
        actions: Optional[List[str]] = None,
    ) -> Notice:
        notice = Notice(kind=kind, title=title, message=message, actions=list(actions or []))
        self.notices.append(notice)
        return notice

    def latest(self) -> Optional[Notice]:
        return self.notices[-1] if self.notices else None

    def drain(self) -> List[Notice]:
        notices, self.notices = self.notices, []
        return notices
