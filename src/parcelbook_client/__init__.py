"""Client-side booking lifecycle and payment reconciliation for ParcelBook."""

from .app import AppContext, create_app
from .bookings import BookingLifecycleController
from .client import ParcelBookClient
from .config import Settings
from .payments import PaymentReconciliationEngine, ReconciliationState

__all__ = [
    "AppContext",
    "BookingLifecycleController",
    "ParcelBookClient",
    "PaymentReconciliationEngine",
    "ReconciliationState",
    "Settings",
    "create_app",
]
