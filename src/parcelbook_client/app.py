"""Wiring for the ParcelBook client: one context object per running app."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .auth import AuthSession
from .bookings import BookingLifecycleController
from .client import ParcelBookClient
from .config import Settings
from .monitoring import configure_logging, init_sentry
from .payments import OpenUrl, PaymentReconciliationEngine
from .store import BookingStore, UIState

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    session: AuthSession
    client: ParcelBookClient
    store: BookingStore
    ui: UIState
    bookings: BookingLifecycleController
    payments: PaymentReconciliationEngine

    async def sign_out(self) -> None:
        await self.payments.close()
        await self.bookings.close()
        await self.client.logout()
        self.store.clear()

    async def aclose(self) -> None:
        await self.payments.close()
        await self.bookings.close()
        await self.client.aclose()


def _load_settings() -> Settings:
    return Settings()


def create_app(
    settings: Settings | None = None,
    *,
    session: AuthSession | None = None,
    open_url: Optional[OpenUrl] = None,
    http: httpx.AsyncClient | None = None,
    setup_logging: bool = True,
) -> AppContext:
    settings = settings or _load_settings()
    if setup_logging:
        configure_logging(settings)
    init_sentry(settings)

    session = session or AuthSession()
    client = ParcelBookClient(settings, session, http=http)
    store = BookingStore()
    ui = UIState()
    bookings = BookingLifecycleController(client, store, session, settings)
    payments = PaymentReconciliationEngine(
        client, bookings, session, settings, ui=ui, open_url=open_url
    )
    logger.info(
        "parcelbook_client_ready",
        extra={"api_base_url": settings.api_base_url, "environment": settings.environment},
    )
    return AppContext(
        settings=settings,
        session=session,
        client=client,
        store=store,
        ui=ui,
        bookings=bookings,
        payments=payments,
    )
