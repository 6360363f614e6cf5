"""
Payment reconciliation engine.

Drives one externally hosted payment at a time and works out whether it
succeeded, failed, or is still pending once the user comes back. There is
no guaranteed callback, so three independent signals feed the same guarded
reconciliation step:

- deep link back into the app (primary; carries the outcome directly)
- status polling started when the payment page opens (fallback)
- app returning to the foreground (nudge; one delayed status check)

Per attempt::

    Idle -> Initiating -> AwaitingExternalCompletion -> Reconciling
         -> Succeeded | Failed | PendingExhausted

The first terminal observation wins. It cancels every outstanding timer for
the attempt before anything else is awaited, so later signals become no-ops.
An exhausted poll budget is reported as unknown, never as success.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Optional, Set, Union

from .auth import AuthSession
from .bookings import BookingLifecycleController
from .client import BackendError, ParcelBookClient
from .config import Settings
from .deeplinks import parse_payment_deep_link
from .exceptions import (
    AmbiguousOutcomeError,
    InvalidFareError,
    PaymentLaunchError,
    ValidationError,
)
from .monitoring import capture_ambiguous_payment, record_payment_event
from .schemas import (
    Booking,
    BookingDraft,
    PaymentOutcome,
    PaymentStatus,
    PaymentStatusResult,
)
from .store import NoticeKind, UIState
from .validators import require_phone_number, validate_email

logger = logging.getLogger(__name__)

OpenUrl = Callable[[str], Union[Optional[bool], Awaitable[Optional[bool]]]]

RETRY_ACTION = "Try Again"
ABANDON_ACTION = "Cancel"
CHECK_BOOKINGS_ACTION = "Check Bookings"
DISMISS_ACTION = "OK"


class ReconciliationState(str, Enum):
    IDLE = "idle"
    INITIATING = "initiating"
    AWAITING_EXTERNAL_COMPLETION = "awaiting_external_completion"
    RECONCILING = "reconciling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING_EXHAUSTED = "pending_exhausted"


TERMINAL_STATES = frozenset(
    {
        ReconciliationState.SUCCEEDED,
        ReconciliationState.FAILED,
        ReconciliationState.PENDING_EXHAUSTED,
    }
)


class ReconciliationTrigger(str, Enum):
    POLL = "poll"
    FOREGROUND = "foreground"
    DEEP_LINK = "deep_link"


@dataclass
class PaymentAttempt:
    """In-memory state of a single payment; never persisted."""

    transaction_id: str
    payment_url: str
    booking_id: Optional[str] = None
    state: ReconciliationState = ReconciliationState.AWAITING_EXTERNAL_COMPLETION
    checking: bool = False
    polls: int = 0
    idle: asyncio.Event = field(default_factory=asyncio.Event)
    outcome: Optional[asyncio.Future] = None
    poll_task: Optional[asyncio.Task] = None
    foreground_task: Optional[asyncio.Task] = None

    def __post_init__(self) -> None:
        self.idle.set()

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass
class PaymentResult:
    transaction_id: str
    state: ReconciliationState
    trigger: ReconciliationTrigger
    booking_id: Optional[str] = None
    merchant_reference_id: Optional[str] = None
    booking: Optional[Booking] = None
    attempts: int = 0


@dataclass
class _PaymentRequest:
    target: Union[Booking, BookingDraft]
    payer_phone: str
    payer_name: Optional[str]
    payer_email: Optional[str]


class PaymentReconciliationEngine:
    """Initiates payments and reconciles their asynchronous outcome."""

    def __init__(
        self,
        client: ParcelBookClient,
        controller: BookingLifecycleController,
        session: AuthSession,
        settings: Settings,
        *,
        ui: Optional[UIState] = None,
        open_url: Optional[OpenUrl] = None,
    ) -> None:
        self.client = client
        self.controller = controller
        self.session = session
        self.settings = settings
        self.ui = ui or UIState()
        self._open_url = open_url
        self._state = ReconciliationState.IDLE
        self._attempt: Optional[PaymentAttempt] = None
        self._outcome: Optional[asyncio.Future] = None
        self._last_request: Optional[_PaymentRequest] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> ReconciliationState:
        return self._state

    @property
    def attempt(self) -> Optional[PaymentAttempt]:
        return self._attempt

    @property
    def transaction_id(self) -> Optional[str]:
        return self._attempt.transaction_id if self._attempt else None

    # ------------------------------------------------------------ initiation

    async def initiate_payment(
        self,
        target: Union[Booking, BookingDraft],
        payer_phone: str,
        payer_name: Optional[str] = None,
        payer_email: Optional[str] = None,
    ) -> PaymentAttempt:
        """Create a payment session for ``target`` and open its payment page.

        ``target`` is either an existing booking or a draft that the backend
        creates once the payment succeeds. Any previous attempt is discarded.
        """
        fare = target.fare
        if fare is None or fare <= 0:
            raise InvalidFareError("Booking fare not calculated", details={"fare": fare})
        if isinstance(target, Booking) and target.payment_status == PaymentStatus.PAID:
            raise ValidationError("Booking is already paid", details={"booking_id": target.id})
        phone = require_phone_number(payer_phone)
        if payer_email is not None and not validate_email(payer_email):
            raise ValidationError("Invalid email address", details={"email": payer_email})

        name = self._payer_name(target, payer_name)
        email = payer_email or f"{re.sub(r'[^0-9]', '', phone)}@{self.settings.payer_email_domain}"
        booking_id = target.id if isinstance(target, Booking) else None

        await self._discard_attempt("superseded")
        self._last_request = _PaymentRequest(target, payer_phone, payer_name, payer_email)
        self._transition(None, ReconciliationState.INITIATING)
        try:
            session = await self.client.create_payment(
                customer_name=name,
                customer_email=email,
                customer_mobile=phone,
                booking_id=booking_id,
                booking_data=target if isinstance(target, BookingDraft) else None,
            )
        except BaseException:
            self._transition(None, ReconciliationState.IDLE)
            raise

        attempt = PaymentAttempt(
            transaction_id=session.merchant_reference_id,
            payment_url=session.payment_url,
            booking_id=booking_id,
        )
        attempt.outcome = asyncio.get_running_loop().create_future()
        self._attempt = attempt
        self._outcome = attempt.outcome
        self._transition(attempt, ReconciliationState.AWAITING_EXTERNAL_COMPLETION)
        logger.info(
            "payment_initiated",
            extra={"transaction_id": attempt.transaction_id, "booking_id": booking_id},
        )
        record_payment_event(
            "payment_initiated",
            data={"transaction_id": attempt.transaction_id, "booking_id": booking_id},
        )

        await self._launch(attempt)
        if self.settings.auto_poll:
            self.start_polling()
        return attempt

    async def retry(self) -> PaymentAttempt:
        """Start a fresh attempt with the details of the last one."""
        if self._last_request is None:
            raise ValidationError("There is no payment to retry")
        request = self._last_request
        return await self.initiate_payment(
            request.target, request.payer_phone, request.payer_name, request.payer_email
        )

    def _payer_name(self, target: Union[Booking, BookingDraft], payer_name: Optional[str]) -> str:
        if payer_name and payer_name.strip():
            return payer_name.strip()
        if target.pickup is not None and target.pickup.name.strip():
            return target.pickup.name.strip()
        if self.session.user is not None and self.session.user.name:
            return self.session.user.name
        return "Customer"

    async def _launch(self, attempt: PaymentAttempt) -> None:
        if self._open_url is None:
            return
        try:
            opened: Any = self._open_url(attempt.payment_url)
            if inspect.isawaitable(opened):
                opened = await opened
        except Exception as exc:
            await self._abandon_launch(attempt)
            raise PaymentLaunchError(
                f"Cannot open payment page: {exc}",
                details={"transaction_id": attempt.transaction_id},
            ) from exc
        if opened is False:
            await self._abandon_launch(attempt)
            raise PaymentLaunchError(
                "Cannot open payment URL. Please check your browser settings.",
                details={"transaction_id": attempt.transaction_id},
            )
        self.ui.notify(
            NoticeKind.INFO,
            "Redirecting to Payment",
            "After completing payment you'll be redirected back to the app.",
        )

    async def _abandon_launch(self, attempt: PaymentAttempt) -> None:
        logger.warning("payment_page_open_failed", extra={"transaction_id": attempt.transaction_id})
        await self._discard_attempt("launch_failed")
        self._transition(None, ReconciliationState.IDLE)

    # --------------------------------------------------------- status query

    async def check_payment_status(self, transaction_id: str) -> PaymentStatusResult:
        """Single idempotent status query; does not change engine state."""
        return await self.client.check_payment_status(transaction_id)

    # -------------------------------------------------------------- signals

    def start_polling(self) -> Optional[asyncio.Task]:
        attempt = self._attempt
        if attempt is None or attempt.is_terminal:
            return None
        if attempt.poll_task is not None and not attempt.poll_task.done():
            return attempt.poll_task
        attempt.poll_task = self._spawn(self._poll(attempt))
        return attempt.poll_task

    def on_app_foreground(self) -> Optional[asyncio.Task]:
        """Schedule one delayed status check after the app regains focus."""
        attempt = self._attempt
        if attempt is None or attempt.is_terminal:
            return None
        if attempt.foreground_task is not None and not attempt.foreground_task.done():
            return attempt.foreground_task
        attempt.foreground_task = self._spawn(self._foreground_recheck(attempt))
        return attempt.foreground_task

    async def handle_deep_link(self, url: str) -> Optional[PaymentResult]:
        link = parse_payment_deep_link(url, scheme=self.settings.deep_link_scheme)
        if link is None:
            return None

        attempt = self._attempt
        if attempt is None or attempt.is_terminal:
            logger.info(
                "deep_link_without_live_attempt",
                extra={"outcome": link.outcome.value, "transaction_id": link.merchant_reference_id},
            )
            # Cold start from the payment page: nothing to reconcile, refresh only.
            if link.outcome == PaymentOutcome.SUCCESS:
                await self.controller.on_payment_succeeded(
                    link.booking_id, link.merchant_reference_id
                )
            return None

        if link.merchant_reference_id and link.merchant_reference_id != attempt.transaction_id:
            logger.warning(
                "deep_link_reference_mismatch",
                extra={
                    "transaction_id": attempt.transaction_id,
                    "link_reference": link.merchant_reference_id,
                },
            )
            return None

        state = (
            ReconciliationState.SUCCEEDED
            if link.outcome == PaymentOutcome.SUCCESS
            else ReconciliationState.FAILED
        )
        return await self._finish(
            attempt,
            state,
            ReconciliationTrigger.DEEP_LINK,
            merchant_reference_id=link.merchant_reference_id,
            booking_id=link.booking_id,
        )

    async def wait_for_outcome(self, timeout: Optional[float] = None) -> PaymentResult:
        """Wait for the current attempt's terminal result.

        Raises ``AmbiguousOutcomeError`` when polling ran out without a
        terminal status, and ``asyncio.CancelledError`` if the attempt was
        discarded first.
        """
        if self._outcome is None:
            raise ValidationError("No payment has been started")
        result: PaymentResult = await asyncio.wait_for(asyncio.shield(self._outcome), timeout)
        if result.state == ReconciliationState.PENDING_EXHAUSTED:
            raise AmbiguousOutcomeError(result.transaction_id, result.attempts)
        return result

    # ------------------------------------------------------- reconciliation

    async def _poll(self, attempt: PaymentAttempt) -> None:
        await asyncio.sleep(self.settings.poll_initial_delay)
        max_attempts = self.settings.poll_max_attempts
        for number in range(1, max_attempts + 1):
            if attempt is not self._attempt or attempt.is_terminal:
                return
            attempt.polls = number
            await self._reconcile(attempt, ReconciliationTrigger.POLL)
            if attempt.is_terminal:
                return
            if number < max_attempts:
                await asyncio.sleep(self.settings.poll_interval)

        # A foreground check may still be in flight; let it land first.
        await attempt.idle.wait()
        if attempt is self._attempt and not attempt.is_terminal:
            await self._finish(attempt, ReconciliationState.PENDING_EXHAUSTED, ReconciliationTrigger.POLL)

    async def _foreground_recheck(self, attempt: PaymentAttempt) -> Optional[PaymentResult]:
        await asyncio.sleep(self.settings.foreground_recheck_delay)
        if attempt is not self._attempt or attempt.is_terminal:
            return None
        result = await self._reconcile(attempt, ReconciliationTrigger.FOREGROUND)
        if result is None and attempt is self._attempt and not attempt.is_terminal:
            # Still pending: make sure the poll budget eventually reports it.
            self.start_polling()
        return result

    async def _reconcile(
        self, attempt: PaymentAttempt, trigger: ReconciliationTrigger
    ) -> Optional[PaymentResult]:
        """Query the status once if no other query is running for ``attempt``."""
        if attempt is not self._attempt or attempt.is_terminal:
            return None
        if attempt.checking:
            logger.debug(
                "payment_status_check_skipped",
                extra={"transaction_id": attempt.transaction_id, "trigger": trigger.value},
            )
            return None

        attempt.checking = True
        attempt.idle.clear()
        self._transition(attempt, ReconciliationState.RECONCILING)
        try:
            status = await self.client.check_payment_status(attempt.transaction_id)
        except BackendError as exc:
            logger.warning(
                "payment_status_check_failed",
                extra={
                    "transaction_id": attempt.transaction_id,
                    "trigger": trigger.value,
                    "attempt": attempt.polls,
                    "error": str(exc),
                },
            )
            return None
        finally:
            attempt.checking = False
            attempt.idle.set()
            if attempt is self._attempt and not attempt.is_terminal:
                self._transition(attempt, ReconciliationState.AWAITING_EXTERNAL_COMPLETION)

        if status.status == PaymentOutcome.SUCCESS:
            return await self._finish(
                attempt,
                ReconciliationState.SUCCEEDED,
                trigger,
                merchant_reference_id=status.merchant_reference_id,
            )
        if status.status == PaymentOutcome.FAILED:
            return await self._finish(
                attempt,
                ReconciliationState.FAILED,
                trigger,
                merchant_reference_id=status.merchant_reference_id,
            )
        logger.info(
            "payment_still_pending",
            extra={
                "transaction_id": attempt.transaction_id,
                "trigger": trigger.value,
                "attempt": attempt.polls,
            },
        )
        return None

    async def _finish(
        self,
        attempt: PaymentAttempt,
        state: ReconciliationState,
        trigger: ReconciliationTrigger,
        *,
        merchant_reference_id: Optional[str] = None,
        booking_id: Optional[str] = None,
    ) -> Optional[PaymentResult]:
        if attempt.is_terminal or attempt is not self._attempt:
            return None

        # Everything up to the first await runs without interleaving.
        self._transition(attempt, state)
        self._attempt = None
        self._cancel_tasks()

        result = PaymentResult(
            transaction_id=attempt.transaction_id,
            state=state,
            trigger=trigger,
            booking_id=booking_id or attempt.booking_id,
            merchant_reference_id=merchant_reference_id or attempt.transaction_id,
            attempts=attempt.polls,
        )
        log_extra = {
            "transaction_id": attempt.transaction_id,
            "trigger": trigger.value,
            "state": state.value,
            "booking_id": result.booking_id,
        }
        record_payment_event(
            f"payment_{state.value}",
            level="warning" if state == ReconciliationState.PENDING_EXHAUSTED else "info",
            data=log_extra,
        )

        if state == ReconciliationState.SUCCEEDED:
            logger.info("payment_succeeded", extra=log_extra)
            try:
                result.booking = await self.controller.on_payment_succeeded(
                    result.booking_id, result.merchant_reference_id
                )
            finally:
                # Teardown during the refresh still reports the success.
                self.ui.notify(
                    NoticeKind.SUCCESS,
                    "Payment Successful!",
                    "Your payment has been processed successfully.",
                )
                if attempt.outcome is not None and not attempt.outcome.done():
                    attempt.outcome.set_result(result)
        elif state == ReconciliationState.FAILED:
            logger.info("payment_failed", extra=log_extra)
            self.ui.notify(
                NoticeKind.ERROR,
                "Payment Failed",
                "The payment could not be processed. Please try again.",
                [RETRY_ACTION, ABANDON_ACTION],
            )
        else:
            logger.warning("payment_outcome_ambiguous", extra={**log_extra, "attempts": attempt.polls})
            capture_ambiguous_payment(attempt.transaction_id, attempt.polls)
            self.ui.notify(
                NoticeKind.WARNING,
                "Payment Status Unknown",
                "We couldn't verify your payment status. Please check your bookings later.",
                [CHECK_BOOKINGS_ACTION, DISMISS_ACTION],
            )

        if attempt.outcome is not None and not attempt.outcome.done():
            attempt.outcome.set_result(result)
        return result

    # ------------------------------------------------------------- plumbing

    def _transition(self, attempt: Optional[PaymentAttempt], state: ReconciliationState) -> None:
        if attempt is not None:
            attempt.state = state
        previous = self._state
        self._state = state
        if previous != state:
            logger.debug(
                "payment_state_changed",
                extra={
                    "from": previous.value,
                    "to": state.value,
                    "transaction_id": attempt.transaction_id if attempt else None,
                },
            )

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("payment_reconciliation_task_failed", exc_info=exc)

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

    async def _discard_attempt(self, reason: str) -> None:
        attempt = self._attempt
        self._attempt = None
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if attempt is not None:
            logger.info(
                "payment_attempt_discarded",
                extra={"transaction_id": attempt.transaction_id, "reason": reason},
            )
            if attempt.outcome is not None and not attempt.outcome.done():
                attempt.outcome.cancel()
        if self._outcome is not None and not self._outcome.done():
            self._outcome.cancel()

    async def close(self) -> None:
        """Tear down: cancel timers and drop the live attempt."""
        await self._discard_attempt("closed")
        if self._state not in TERMINAL_STATES:
            self._transition(None, ReconciliationState.IDLE)
