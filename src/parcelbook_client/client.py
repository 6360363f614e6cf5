"""HTTP client for the ParcelBook backend API."""

from __future__ import annotations

import logging
from typing import Any, Optional, TypeVar
from urllib.parse import quote
from uuid import uuid4

import httpx
import pydantic

from .auth import AuthSession, ClientAuth
from .config import Settings
from .schemas import (
    Booking,
    BookingDraft,
    BookingFilters,
    BookingPage,
    BookingStatistics,
    BookingStatus,
    CouponValidation,
    FareQuote,
    PaymentOutcome,
    PaymentSession,
    PaymentStatus,
    PaymentStatusResult,
    PricingSettings,
    User,
)


class BackendError(Exception):
    """Base error for backend request failures."""


class BackendAuthError(BackendError):
    """Raised when backend rejects authentication."""


class BackendNotFoundError(BackendError):
    """Raised when backend resource is not found."""


class BackendConnectionError(BackendError):
    """Raised when backend connection fails."""


class BackendRequestError(BackendError):
    """Raised for non-auth backend errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BackendResponseError(BackendError):
    """Raised when a successful reply lacks the fields the client needs."""


logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=pydantic.BaseModel)

_OUTCOME_ALIASES = {
    "SUCCESS": PaymentOutcome.SUCCESS,
    "SUCCESSFUL": PaymentOutcome.SUCCESS,
    "PAID": PaymentOutcome.SUCCESS,
    "FAILED": PaymentOutcome.FAILED,
    "FAILURE": PaymentOutcome.FAILED,
    "REJECTED": PaymentOutcome.FAILED,
    "CANCELLED": PaymentOutcome.FAILED,
    "EXPIRED": PaymentOutcome.FAILED,
    "PENDING": PaymentOutcome.PENDING,
    "CREATED": PaymentOutcome.PENDING,
    "PROCESSING": PaymentOutcome.PENDING,
}


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if body.get("message"):
            return str(body["message"])
    return fallback


def _data(body: dict) -> dict:
    data = body.get("data")
    return data if isinstance(data, dict) else {}


def _require(data: dict, key: str, path: str) -> Any:
    value = data.get(key)
    if value is None:
        raise BackendResponseError(f"backend_response_missing_{key}: {path}")
    return value


def _validate(model: type[_ModelT], payload: Any, path: str = "") -> _ModelT:
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise BackendResponseError(
            f"backend_malformed_response: {path or model.__name__}"
        ) from exc


def parse_payment_status(body: dict) -> PaymentStatusResult:
    """Normalize the payment status reply.

    ``status`` is top-level for pending replies and may only be present as
    ``data.txnStatus`` otherwise; the gateway's own ``data.status`` can be a
    boolean and is ignored unless it is a string.
    """
    data = _data(body)
    nested = data.get("data") if isinstance(data.get("data"), dict) else {}
    candidates = (body.get("status"), data.get("txnStatus"), data.get("status"))
    raw = next((c for c in candidates if isinstance(c, str) and c.strip()), None)
    if raw is None:
        raise BackendResponseError("backend_response_missing_status: /api/payments/status")
    outcome = _OUTCOME_ALIASES.get(raw.strip().upper())
    if outcome is None:
        raise BackendResponseError(f"backend_unknown_payment_status: {raw}")
    merchant_reference_id = (
        data.get("merchantReferenceId")
        or nested.get("merchantReferenceId")
        or body.get("merchantReferenceId")
    )
    amount = nested.get("amount", data.get("amount"))
    return _validate(
        PaymentStatusResult,
        {
            "status": outcome,
            "merchant_reference_id": merchant_reference_id,
            "message": body.get("message") or data.get("msg"),
            "amount": amount,
        },
        "/api/payments/status",
    )


class ParcelBookClient:
    """HTTP client for ParcelBook backend API."""

    def __init__(
        self,
        settings: Settings,
        session: AuthSession,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.session = session
        self.auth = ClientAuth(settings, session)
        self.http = http or httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=httpx.Timeout(
                connect=10.0,
                read=settings.request_timeout,
                write=10.0,
                pool=10.0,
            ),
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def call(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | httpx.Timeout | None = None,
        allow_refresh: bool = True,
    ) -> dict:
        request_id = str(uuid4())
        request_headers = self.auth.get_headers(request_id)
        if headers:
            request_headers.update(headers)
        sent_token = "Authorization" in request_headers
        try:
            response = await self.http.request(
                method,
                path,
                params=params,
                json=json,
                headers=request_headers,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as exc:
            raise BackendConnectionError(
                f"backend_timeout: Request to {path} timed out"
            ) from exc
        except httpx.HTTPError as exc:
            raise BackendConnectionError(f"backend_connection_failed: {exc}") from exc

        if response.status_code == 401 and sent_token and allow_refresh:
            if await self._refresh_access_token():
                return await self.call(
                    method,
                    path,
                    params=params,
                    json=json,
                    headers=headers,
                    timeout=timeout,
                    allow_refresh=False,
                )
            self.session.clear()
            raise BackendAuthError("session_expired")

        body: Any
        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code in {401, 403}:
            raise BackendAuthError(_error_message(body, "backend_auth_failed"))
        if response.status_code == 404:
            raise BackendNotFoundError(_error_message(body, "backend_not_found"))
        if response.status_code >= 400:
            raise BackendRequestError(
                _error_message(body, f"backend_error_{response.status_code}"),
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            raise BackendResponseError(f"backend_malformed_response: {path}")
        if body.get("success") is False:
            raise BackendRequestError(
                _error_message(body, "backend_request_failed"),
                status_code=response.status_code,
            )
        logger.debug(
            "backend_call_ok",
            extra={"method": method, "path": path, "request_id": request_id},
        )
        return body

    async def _refresh_access_token(self) -> bool:
        refresh_token = self.session.refresh_token
        if not refresh_token:
            return False
        headers = self.auth.get_headers(str(uuid4()))
        headers.pop("Authorization", None)
        try:
            response = await self.http.post(
                "/auth/refresh",
                json={"refreshToken": refresh_token},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            logger.warning("token_refresh_failed", extra={"error": str(exc)})
            return False
        if response.status_code >= 400:
            logger.warning(
                "token_refresh_rejected", extra={"status_code": response.status_code}
            )
            return False
        try:
            body = response.json()
        except ValueError:
            return False
        token = _data(body).get("accessToken") if isinstance(body, dict) else None
        if not token:
            return False
        self.session.update_access_token(token)
        logger.info("token_refreshed")
        return True

    # ------------------------------------------------------------------ auth

    async def health(self) -> dict:
        return await self.call("GET", "/health", allow_refresh=False)

    async def send_otp(self, phone_number: str) -> None:
        await self.call("POST", "/auth/send-otp", json={"phoneNumber": phone_number})

    async def verify_otp(self, phone_number: str, otp: str) -> User:
        body = await self.call(
            "POST",
            "/auth/verify-otp",
            json={"phoneNumber": phone_number, "otp": otp},
        )
        data = _data(body)
        user = _validate(User, _require(data, "user", "/auth/verify-otp"))
        self.session.sign_in(
            user,
            _require(data, "accessToken", "/auth/verify-otp"),
            data.get("refreshToken"),
        )
        return user

    async def logout(self) -> None:
        refresh_token = self.session.refresh_token
        try:
            if refresh_token:
                await self.call(
                    "POST",
                    "/auth/logout",
                    json={"refreshToken": refresh_token},
                    allow_refresh=False,
                )
        finally:
            self.session.clear()

    async def get_profile(self) -> User:
        body = await self.call("GET", "/user/profile")
        return _validate(User, _data(body))

    # -------------------------------------------------------------- bookings

    async def list_bookings(
        self, *, limit: int = 20, last_doc_id: str | None = None
    ) -> BookingPage:
        params: dict[str, Any] = {"limit": limit}
        if last_doc_id:
            params["lastDocId"] = last_doc_id
        body = await self.call("GET", "/bookings", params=params)
        return _validate(BookingPage, _data(body))

    async def list_all_bookings(
        self,
        filters: BookingFilters | None = None,
        *,
        limit: int = 20,
        last_doc_id: str | None = None,
    ) -> BookingPage:
        params: dict[str, Any] = {"limit": limit}
        if filters is not None:
            if filters.status:
                params["status"] = filters.status.value
            if filters.payment_status:
                params["paymentStatus"] = filters.payment_status.value
        if last_doc_id:
            params["lastDocId"] = last_doc_id
        body = await self.call("GET", "/bookings/admin/all", params=params)
        return _validate(BookingPage, _data(body))

    async def get_booking(self, booking_id: str) -> Booking:
        path = f"/bookings/{quote(booking_id, safe='')}"
        body = await self.call("GET", path)
        return _validate(Booking, _require(_data(body), "booking", path), path)

    async def track_booking(self, tracking_number: str) -> Booking:
        path = f"/bookings/track/{quote(tracking_number, safe='')}"
        body = await self.call("GET", path)
        return _validate(Booking, _require(_data(body), "booking", path), path)

    async def create_booking(self, draft: BookingDraft) -> Booking:
        body = await self.call("POST", "/bookings", json=draft.to_wire())
        return _validate(Booking, _require(_data(body), "booking", "/bookings"), "/bookings")

    async def update_booking_status(
        self,
        booking_id: str,
        status: BookingStatus,
        return_reason: str | None = None,
    ) -> Booking:
        path = f"/bookings/{quote(booking_id, safe='')}/status"
        payload: dict[str, Any] = {"status": status.value}
        if return_reason:
            payload["returnReason"] = return_reason
        body = await self.call("PATCH", path, json=payload)
        return _validate(Booking, _require(_data(body), "booking", path), path)

    async def update_payment_status(
        self, booking_id: str, payment_status: PaymentStatus
    ) -> None:
        await self.call(
            "PATCH",
            f"/bookings/{quote(booking_id, safe='')}/payment-status",
            json={"paymentStatus": payment_status.value},
        )

    async def update_pod_signature(
        self, booking_id: str, pod_signature: str, pod_signed_by: str
    ) -> Booking:
        path = f"/bookings/{quote(booking_id, safe='')}/pod"
        body = await self.call(
            "PATCH",
            path,
            json={"podSignature": pod_signature, "podSignedBy": pod_signed_by},
        )
        return _validate(Booking, _require(_data(body), "booking", path), path)

    async def update_fare(self, booking_id: str, fare: float) -> Booking:
        path = f"/bookings/{quote(booking_id, safe='')}/fare"
        body = await self.call("PATCH", path, json={"fare": fare})
        return _validate(Booking, _require(_data(body), "booking", path), path)

    async def search_bookings(
        self, query: str, filters: BookingFilters | None = None
    ) -> list[Booking]:
        params: dict[str, Any] = {"q": query}
        if filters is not None:
            if filters.status:
                params["status"] = filters.status.value
            if filters.payment_status:
                params["paymentStatus"] = filters.payment_status.value
        body = await self.call("GET", "/bookings/admin/search", params=params)
        return [_validate(Booking, item) for item in _data(body).get("bookings") or []]

    async def get_booking_statistics(self) -> BookingStatistics:
        body = await self.call("GET", "/bookings/admin/statistics")
        return _validate(
            BookingStatistics,
            _require(_data(body), "statistics", "/bookings/admin/statistics")
        )

    # -------------------------------------------------------------- payments

    async def create_payment(
        self,
        *,
        customer_name: str,
        customer_email: str,
        customer_mobile: str,
        booking_id: str | None = None,
        booking_data: BookingDraft | None = None,
    ) -> PaymentSession:
        payload: dict[str, Any] = {
            "customerName": customer_name,
            "customerEmail": customer_email,
            "customerMobile": customer_mobile,
        }
        if booking_id:
            payload["bookingId"] = booking_id
        elif booking_data is not None:
            payload["bookingData"] = booking_data.to_wire()
        else:
            raise ValueError("Either booking_id or booking_data is required")

        body = await self.call("POST", "/api/payments/create", json=payload)
        data = _data(body)
        return _validate(
            PaymentSession,
            {
                **data,
                "paymentUrl": _require(data, "paymentUrl", "/api/payments/create"),
                "merchantReferenceId": _require(
                    data, "merchantReferenceId", "/api/payments/create"
                ),
            }
        )

    async def check_payment_status(self, merchant_reference_id: str) -> PaymentStatusResult:
        body = await self.call(
            "POST",
            "/api/payments/status",
            json={"merchantReferenceId": merchant_reference_id},
        )
        result = parse_payment_status(body)
        if result.merchant_reference_id is None:
            result.merchant_reference_id = merchant_reference_id
        return result

    # ------------------------------------------------------- pricing/coupons

    async def calculate_fare(
        self,
        pickup: dict[str, float],
        drop: dict[str, float],
        weight: float,
    ) -> FareQuote:
        body = await self.call(
            "POST",
            "/map/fare",
            json={"pickup": pickup, "drop": drop, "weight": weight},
        )
        return _validate(FareQuote, _data(body))

    async def get_pricing(self) -> PricingSettings:
        body = await self.call("GET", "/map/admin/pricing")
        return _validate(
            PricingSettings,
            _require(_data(body), "pricing", "/map/admin/pricing")
        )

    async def update_pricing(self, pricing: PricingSettings) -> PricingSettings:
        body = await self.call("PUT", "/map/admin/pricing", json=pricing.to_wire())
        return _validate(
            PricingSettings,
            _require(_data(body), "pricing", "/map/admin/pricing")
        )

    async def validate_coupon(self, code: str, order_amount: float) -> CouponValidation:
        try:
            body = await self.call(
                "POST",
                "/coupons/validate",
                json={"code": code.strip().upper(), "orderAmount": order_amount},
            )
        except (BackendRequestError, BackendNotFoundError) as exc:
            return CouponValidation(
                is_valid=False,
                discount_amount=0.0,
                message=str(exc) or "Invalid coupon code",
            )
        return _validate(CouponValidation, _data(body))
