"""Parsing of payment deep links handed back by the external payment page.

Two shapes arrive on devices::

    parcelbooking://payment/success?merchantRefId=...&bookingId=...
    intent://payment/failed?merchantRefId=...#Intent;scheme=parcelbooking;package=...;end

Some browsers also put ``scheme``/``package`` in the query string of the
intent form instead of the fragment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import parse_qsl, urlsplit

from .schemas import PaymentOutcome

logger = logging.getLogger(__name__)

_INTENT_ONLY_PARAMS = {"scheme", "package"}
_REFERENCE_KEYS = ("merchantRefId", "merchantReferenceId", "transactionId")


@dataclass(frozen=True)
class PaymentDeepLink:
    outcome: PaymentOutcome
    merchant_reference_id: Optional[str] = None
    booking_id: Optional[str] = None
    params: Dict[str, str] = field(default_factory=dict)


def _intent_fragment_params(fragment: str) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for part in fragment.split(";"):
        if "=" in part:
            key, value = part.split("=", 1)
            params[key.strip()] = value.strip()
    return params


def _target_scheme(parts, query: Dict[str, str]) -> str:
    scheme = parts.scheme.lower()
    if scheme != "intent":
        return scheme
    fragment = _intent_fragment_params(parts.fragment)
    return (fragment.get("scheme") or query.get("scheme") or "").lower()


def parse_payment_deep_link(url: str, scheme: str = "parcelbooking") -> Optional[PaymentDeepLink]:
    """Return the payment outcome carried by ``url``, or None if it is not one."""
    if not url:
        return None
    parts = urlsplit(url.strip())
    query = dict(parse_qsl(parts.query, keep_blank_values=False))

    if _target_scheme(parts, query) != scheme.lower():
        return None

    segments = [parts.netloc, *parts.path.split("/")]
    segments = [s.lower() for s in segments if s]
    if "payment" not in segments:
        return None

    tail = segments[segments.index("payment") + 1 :]
    if any("success" in s for s in tail):
        outcome = PaymentOutcome.SUCCESS
    elif any("fail" in s for s in tail):
        outcome = PaymentOutcome.FAILED
    else:
        logger.warning("deep_link_unknown_payment_path", extra={"url": url})
        return None

    params = {k: v for k, v in query.items() if k not in _INTENT_ONLY_PARAMS}
    reference = next((params[k] for k in _REFERENCE_KEYS if params.get(k)), None)
    return PaymentDeepLink(
        outcome=outcome,
        merchant_reference_id=reference,
        booking_id=params.get("bookingId") or None,
        params=params,
    )
