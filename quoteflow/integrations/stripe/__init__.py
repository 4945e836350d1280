"""
Stripe Integration Module
=========================

Central export point for the Stripe integration.

Usage::

    from quoteflow.integrations.stripe import (
        PaymentError,
        create_payment_intent,
        retrieve_payment_intent,
        construct_event,
    )
"""

from .paymentService import (
    STRIPE_PUBLISHABLE_KEY,
    PaymentError,
    PaymentIntentResult,
    PaymentIntentSnapshot,
    create_payment_intent,
    retrieve_payment_intent,
)
from .webhookHandler import (
    clear_processed_events,
    construct_event,
    is_event_processed,
    mark_event_processed,
)

__all__ = [
    "STRIPE_PUBLISHABLE_KEY",
    "PaymentError",
    "PaymentIntentResult",
    "PaymentIntentSnapshot",
    "clear_processed_events",
    "construct_event",
    "create_payment_intent",
    "is_event_processed",
    "mark_event_processed",
    "retrieve_payment_intent",
]
