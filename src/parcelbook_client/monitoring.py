"""Logging setup and optional Sentry reporting for the ParcelBook client."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from .config import Settings

logger = logging.getLogger(__name__)

DEFAULT_TRACES_SAMPLE_RATE = 0.1
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_sentry_enabled = False


def configure_logging(settings: Settings) -> None:
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)


def init_sentry(settings: Settings) -> bool:
    global _sentry_enabled

    dsn = (settings.sentry_dsn or "").strip()
    if not dsn:
        logger.debug("Sentry disabled: sentry_dsn not set")
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=settings.environment,
        integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
        send_default_pii=False,
        traces_sample_rate=DEFAULT_TRACES_SAMPLE_RATE,
    )
    _sentry_enabled = True
    logger.info("Sentry initialized for environment: %s", settings.environment)
    return True


def is_sentry_enabled() -> bool:
    return _sentry_enabled


def record_payment_event(
    message: str,
    *,
    level: str = "info",
    data: Optional[Mapping[str, Any]] = None,
) -> None:
    """Leave a payment breadcrumb; a no-op until Sentry is initialised."""
    if not _sentry_enabled:
        return
    sentry_sdk.add_breadcrumb(
        category="payment",
        message=message,
        level=level,
        data=dict(data or {}),
    )


def capture_ambiguous_payment(transaction_id: str, attempts: int) -> None:
    if not _sentry_enabled:
        return
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("transaction_id", transaction_id)
        scope.set_extra("attempts", attempts)
        sentry_sdk.capture_message("payment_outcome_ambiguous", level="warning")
