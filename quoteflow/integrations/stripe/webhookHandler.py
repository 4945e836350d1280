"""
Stripe Webhook Verification
===========================

Verifies inbound Stripe webhook signatures and de-duplicates redelivered
events.  Business handling of the events lives in
``depositPaymentCoordinator.handle_payment_event``.

The processed-event store is an in-memory LRU of event ids; the database
uniqueness constraints guarantee a payment is applied once.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from threading import Lock

import stripe

from quoteflow.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Processed-event store
# ---------------------------------------------------------------------------

_MAX_PROCESSED_EVENTS = 10_000
_processed_events: OrderedDict[str, float] = OrderedDict()
_processed_lock = Lock()


def mark_event_processed(event_id: str) -> None:
    with _processed_lock:
        _processed_events[event_id] = time.time()
        while len(_processed_events) > _MAX_PROCESSED_EVENTS:
            _processed_events.popitem(last=False)


def is_event_processed(event_id: str) -> bool:
    with _processed_lock:
        return event_id in _processed_events


def clear_processed_events() -> None:
    """Clear the processed events store. Useful for testing."""
    with _processed_lock:
        _processed_events.clear()


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------

def construct_event(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify the signature and parse a webhook payload.

    Raises:
        ValueError: If the signature or the payload is invalid.
    """
    try:
        return stripe.Webhook.construct_event(
            payload=payload,
            sig_header=sig_header,
            secret=settings.stripe_webhook_secret,
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", str(exc))
        raise ValueError(f"Invalid webhook signature: {str(exc)}") from exc
    except ValueError as exc:
        logger.warning("Webhook payload parsing failed: %s", str(exc))
        raise ValueError(f"Invalid webhook payload: {str(exc)}") from exc
