"""
Booking lifecycle controller.

Thin orchestration over the backend booking endpoints. The controller keeps
the client-side ``BookingStore`` in step with what the backend returns and
applies the advisory status rules from ``lifecycle`` before sending a
transition. The backend re-validates every request.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from .auth import AuthSession
from .client import BackendError, BackendNotFoundError, ParcelBookClient
from .config import Settings
from .exceptions import InvalidFareError, NotFoundError, ValidationError
from .lifecycle import (
    assert_transition,
    has_payment_status_mismatch,
    is_cancellable,
    normalize_reason,
)
from .schemas import Booking, BookingDraft, BookingFilters, BookingPage, BookingStatus
from .store import BookingStore
from .validators import validate_draft

logger = logging.getLogger(__name__)


class BookingLifecycleController:
    """Mediates every booking state change through the backend API."""

    def __init__(
        self,
        client: ParcelBookClient,
        store: BookingStore,
        session: AuthSession,
        settings: Settings,
    ) -> None:
        self.client = client
        self.store = store
        self.session = session
        self.settings = settings
        self._refresh_tasks: Dict[str, asyncio.Task] = {}

    # --------------------------------------------------------------- listing

    async def fetch_bookings(
        self,
        *,
        limit: Optional[int] = None,
        last_doc_id: Optional[str] = None,
        filters: Optional[BookingFilters] = None,
        append: bool = False,
    ) -> BookingPage:
        """Fetch a page of bookings and merge it into the store.

        ``append=False`` replaces the held list (fresh fetch); ``append=True``
        adds the page after it for infinite scroll.
        """
        if filters is not None:
            self.store.set_filters(filters)
        self.store.error = None
        if append:
            self.store.loading_more = True
        else:
            self.store.loading = True
        try:
            page = await self._fetch_page(limit or self.settings.page_size, last_doc_id)
        except BackendError as exc:
            self.store.error = str(exc) or "Failed to fetch bookings"
            logger.warning("bookings_fetch_failed", extra={"error": str(exc), "append": append})
            raise
        finally:
            if append:
                self.store.loading_more = False
            else:
                self.store.loading = False

        if append:
            self.store.append(page)
        else:
            self.store.replace(page)
        logger.debug(
            "bookings_fetched",
            extra={"count": len(page.items), "has_more": page.has_more, "append": append},
        )
        return page

    async def load_more_bookings(self) -> Optional[BookingPage]:
        if not self.store.has_more or self.store.loading_more:
            return None
        return await self.fetch_bookings(last_doc_id=self.store.last_doc_id, append=True)

    async def _fetch_page(self, limit: int, last_doc_id: Optional[str]) -> BookingPage:
        if self.session.is_admin:
            return await self.client.list_all_bookings(
                self.store.filters, limit=limit, last_doc_id=last_doc_id
            )
        return await self.client.list_bookings(limit=limit, last_doc_id=last_doc_id)

    # ---------------------------------------------------------------- lookup

    async def fetch_booking(self, booking_id: str) -> Booking:
        try:
            booking = await self.client.get_booking(booking_id)
        except BackendNotFoundError as exc:
            raise NotFoundError(
                "Booking not found", details={"booking_id": booking_id}
            ) from exc
        self._remember(booking)
        return booking

    async def track_booking(self, tracking_number: str) -> Booking:
        try:
            booking = await self.client.track_booking(tracking_number)
        except BackendNotFoundError as exc:
            raise NotFoundError(
                "No booking matches this tracking number",
                details={"tracking_number": tracking_number},
            ) from exc
        self._remember(booking)
        return booking

    def _remember(self, booking: Booking) -> None:
        self.store.select(booking)
        self.store.update(booking)
        if self.settings.auto_status_refresh:
            self._schedule_status_refresh(booking)

    # ------------------------------------------------------------- mutations

    async def create_booking(self, draft: BookingDraft) -> Booking:
        validate_draft(draft)
        if draft.fare is not None and draft.fare < 0:
            raise InvalidFareError("Fare cannot be negative", details={"fare": draft.fare})
        booking = await self.client.create_booking(draft)
        self.store.add(booking)
        logger.info("booking_created", extra={"booking_id": booking.id})
        return booking

    async def update_status(
        self,
        booking_id: str,
        new_status: BookingStatus,
        reason: Optional[str] = None,
    ) -> Booking:
        reason = normalize_reason(reason)
        if new_status == BookingStatus.RETURNED and reason is None:
            raise ValidationError(
                "A reason is required to mark a booking as returned",
                details={"booking_id": booking_id},
            )
        cached = self.store.get(booking_id)
        if cached is not None:
            assert_transition(cached, new_status, reason, operator=self.session.is_admin)

        booking = await self.client.update_booking_status(booking_id, new_status, reason)
        self.store.update(booking)
        logger.info(
            "booking_status_updated",
            extra={"booking_id": booking_id, "status": new_status.value},
        )
        return booking

    async def cancel_booking(self, booking_id: str, reason: Optional[str] = None) -> Booking:
        cached = self.store.get(booking_id)
        if cached is not None and not is_cancellable(
            cached.status, operator=self.session.is_admin
        ):
            raise ValidationError(
                f"Booking cannot be cancelled while {cached.status.value}",
                details={"booking_id": booking_id, "status": cached.status.value},
            )
        booking = await self.client.update_booking_status(
            booking_id, BookingStatus.CANCELLED, normalize_reason(reason)
        )
        self.store.update(booking)
        logger.info("booking_cancelled", extra={"booking_id": booking_id})
        return booking

    async def update_fare(self, booking_id: str, fare: Optional[float]) -> Booking:
        if fare is None or fare < 0:
            raise InvalidFareError(
                "Fare must be a non-negative amount",
                details={"booking_id": booking_id, "fare": fare},
            )
        booking = await self.client.update_fare(booking_id, fare)
        self.store.update(booking)
        return booking

    async def update_pod_signature(
        self, booking_id: str, signature: str, signed_by: str
    ) -> Booking:
        if not signature or not signed_by.strip():
            raise ValidationError(
                "Signature and signer name are required",
                details={"booking_id": booking_id},
            )
        booking = await self.client.update_pod_signature(booking_id, signature, signed_by.strip())
        self.store.update(booking)
        return booking

    # -------------------------------------------------- payment hand-back

    async def on_payment_succeeded(
        self,
        booking_id: Optional[str],
        merchant_reference_id: Optional[str] = None,
    ) -> Optional[Booking]:
        """Refresh local state once a payment is confirmed.

        Without a booking id the booking was a draft that the backend creates
        on payment, so the list is refreshed instead.
        """
        logger.info(
            "payment_confirmed_refreshing",
            extra={"booking_id": booking_id, "transaction_id": merchant_reference_id},
        )
        try:
            if booking_id:
                return await self.fetch_booking(booking_id)
            await self.fetch_bookings()
        except (BackendError, NotFoundError) as exc:
            logger.warning(
                "payment_refresh_failed",
                extra={"booking_id": booking_id, "error": str(exc)},
            )
        return None

    # ------------------------------------------ paid-but-pending refresh

    async def reconcile_pending_payment(self, booking: Booking) -> Booking:
        """Re-fetch a paid booking still shown as PendingPayment a few times.

        The payment webhook can land before the status update propagates.
        Stops on the first fetch that shows a consistent booking, or after
        ``status_refresh_max_attempts`` fetches regardless of the outcome.
        """
        current = booking
        attempts = 0
        while (
            has_payment_status_mismatch(current)
            and attempts < self.settings.status_refresh_max_attempts
        ):
            attempts += 1
            await asyncio.sleep(self.settings.status_refresh_interval)
            try:
                current = await self.client.get_booking(current.id)
            except BackendError as exc:
                logger.warning(
                    "status_refresh_fetch_failed",
                    extra={"booking_id": booking.id, "attempt": attempts, "error": str(exc)},
                )
                continue
            self.store.update(current)

        if has_payment_status_mismatch(current):
            logger.warning(
                "status_refresh_exhausted",
                extra={"booking_id": booking.id, "attempts": attempts},
            )
        elif attempts:
            logger.info(
                "status_refresh_resolved",
                extra={"booking_id": booking.id, "status": current.status.value},
            )
        return current

    def _schedule_status_refresh(self, booking: Booking) -> Optional[asyncio.Task]:
        if not has_payment_status_mismatch(booking):
            return None
        existing = self._refresh_tasks.get(booking.id)
        if existing is not None and not existing.done():
            return existing
        logger.info("status_mismatch_detected", extra={"booking_id": booking.id})
        task = asyncio.create_task(self.reconcile_pending_payment(booking))
        self._refresh_tasks[booking.id] = task
        task.add_done_callback(lambda t, key=booking.id: self._forget_refresh(key, t))
        return task

    def _forget_refresh(self, booking_id: str, task: asyncio.Task) -> None:
        if self._refresh_tasks.get(booking_id) is task:
            del self._refresh_tasks[booking_id]

    def pending_refresh(self, booking_id: str) -> Optional[asyncio.Task]:
        return self._refresh_tasks.get(booking_id)

    async def close(self) -> None:
        tasks = list(self._refresh_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refresh_tasks.clear()
