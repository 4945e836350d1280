"""
Transactional Email Gateway
===========================

Thin HTTP client for the outbound email (and SMS) provider.  Messages are
POSTed as JSON to ``EMAIL_API_URL`` / ``SMS_API_URL`` with bearer auth.

When no gateway URL is configured the message is logged instead of sent,
which is the default for local development and tests.

All HTTP calls use httpx with retry logic (3 attempts, exponential backoff).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from quoteflow.core.config import settings

logger = logging.getLogger(__name__)

_MAX_RETRIES = 3
_INITIAL_BACKOFF_SECONDS = 0.5  # doubles each retry: 0.5, 1.0, 2.0
_REQUEST_TIMEOUT_SECONDS = 10.0


class EmailDeliveryError(Exception):
    """Raised when the gateway rejects a message or stays unreachable."""

    def __init__(self, message: str, status: int | None = None, raw: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.raw = raw


async def _post_with_retry(url: str, payload: dict[str, Any]) -> None:
    """POST ``payload`` to the gateway, retrying on 5xx and network errors.

    4xx responses are not retried; they mean the message itself is bad.
    """
    headers = {"Authorization": f"Bearer {settings.email_api_key}"}
    last_exception: Exception | None = None
    backoff = _INITIAL_BACKOFF_SECONDS

    async with httpx.AsyncClient(timeout=_REQUEST_TIMEOUT_SECONDS) as client:
        for attempt in range(1, _MAX_RETRIES + 1):
            try:
                response = await client.post(url, json=payload, headers=headers)
            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_exception = exc
                logger.warning(
                    "Email gateway unreachable on attempt %d/%d: %s",
                    attempt,
                    _MAX_RETRIES,
                    exc,
                )
            else:
                if 400 <= response.status_code < 500:
                    raise EmailDeliveryError(
                        f"Email gateway rejected message: HTTP {response.status_code}",
                        status=response.status_code,
                        raw=response.text,
                    )
                if response.status_code < 400:
                    return
                last_exception = EmailDeliveryError(
                    f"Email gateway server error: HTTP {response.status_code}",
                    status=response.status_code,
                    raw=response.text,
                )
                logger.warning(
                    "Email gateway server error on attempt %d/%d: HTTP %d",
                    attempt,
                    _MAX_RETRIES,
                    response.status_code,
                )

            if attempt < _MAX_RETRIES:
                await asyncio.sleep(backoff)
                backoff *= 2

    raise EmailDeliveryError(
        f"Email gateway request failed after {_MAX_RETRIES} attempts",
        raw=str(last_exception),
    )


async def send_email(to: str, subject: str, body: str, *, tags: list[str] | None = None) -> None:
    """Send a plain-text transactional email."""
    if not settings.email_api_url:
        logger.info("EMAIL STUB: to=%s subject=%r", to, subject)
        return

    await _post_with_retry(
        settings.email_api_url,
        {
            "from": settings.email_from_address,
            "to": to,
            "subject": subject,
            "text": body,
            "tags": tags or [],
        },
    )
    logger.info("Email sent: to=%s subject=%r", to, subject)


async def send_sms(to: str, body: str) -> None:
    """Send an SMS through the same provider account."""
    if not settings.sms_api_url:
        logger.info("SMS STUB: to=%s body=%r", to, body)
        return

    await _post_with_retry(settings.sms_api_url, {"to": to, "text": body})
    logger.info("SMS sent: to=%s", to)
