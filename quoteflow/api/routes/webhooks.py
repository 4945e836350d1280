"""
Stripe Webhook Route
====================

  POST /webhooks/stripe  -- Receive Stripe payment events

The raw body is verified against ``Stripe-Signature`` before anything else.
``payment_intent.succeeded`` runs the same idempotent deposit verification
as the customer-facing endpoint, so a webhook and a browser confirmation
racing each other record the deposit once.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from quoteflow.api.deps import DBSession, QueryCache
from quoteflow.api.schemas.portal import ApiResponse, WebhookResultOut, ok
from quoteflow.integrations.stripe import construct_event, is_event_processed, mark_event_processed
from quoteflow.services import depositPaymentCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post(
    "/stripe",
    response_model=ApiResponse,
    summary="Stripe webhook endpoint",
    description=(
        "Receives Stripe events. Returns 400 for a bad signature; internal "
        "failures return 500 so Stripe redelivers the event."
    ),
)
async def stripe_webhook(
    request: Request,
    db: DBSession,
    cache: QueryCache,
    stripe_signature: str = Header(default="", alias="Stripe-Signature"),
):
    payload = await request.body()
    try:
        event = construct_event(payload, stripe_signature)
    except ValueError as exc:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "message": str(exc),
                "error": {"code": "INVALID_SIGNATURE"},
            },
        )

    if is_event_processed(event.id):
        logger.info("Duplicate webhook event %s ignored", event.id)
        return ok(
            "Event already processed",
            WebhookResultOut(event_type=event.type, processed=False, message="duplicate"),
        )

    result = await depositPaymentCoordinator.handle_payment_event(db, event, cache=cache)
    mark_event_processed(event.id)
    logger.info("Webhook %s (%s): %s", event.id, result.event_type, result.message)
    return ok("Event received", WebhookResultOut.model_validate(result))
