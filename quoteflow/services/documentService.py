"""
Document Generation
===================

Proposal PDFs, invoices, work orders and material lists are rendered by an
external document service.  The pipeline only hands it a snapshot of the
proposal with the customer's resolved selections; rendering happens there.

Requests are queued on the post-commit ``EffectOutbox`` of the operation
that makes a document relevant:

  - deposit verified      -> invoice, work_order
  - selections submitted  -> material_list

A rendering failure is logged by the outbox and never reaches the customer
or undoes the state change.  When ``DOCUMENT_SERVICE_URL`` is unset the
request is logged instead of sent.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Protocol

import httpx

from quoteflow.core.clock import as_utc
from quoteflow.core.config import settings
from quoteflow.models.job import Job
from quoteflow.models.proposal import Proposal
from quoteflow.services.effects import EffectOutbox

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = ("proposal", "invoice", "work_order", "material_list")
DEPOSIT_DOCUMENTS = ("invoice", "work_order")
SELECTION_DOCUMENTS = ("material_list",)


class DocumentGenerator(Protocol):
    async def generate(self, document_type: str, snapshot: dict[str, Any]) -> None: ...


class HttpDocumentGenerator:
    """POSTs ``{document_type, snapshot}`` as JSON to the rendering service."""

    def __init__(self, url: str = "", timeout: float = 30.0) -> None:
        self._url = url
        self._timeout = timeout

    async def generate(self, document_type: str, snapshot: dict[str, Any]) -> None:
        if not self._url:
            logger.info(
                "DOCUMENT STUB: %s for proposal %s",
                document_type,
                snapshot.get("quote_number"),
            )
            return

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                self._url,
                json={"document_type": document_type, "snapshot": snapshot},
            )
            response.raise_for_status()
        logger.info("Document %s requested for proposal %s", document_type, snapshot.get("id"))


# ---------------------------------------------------------------------------
# Shared instance
# ---------------------------------------------------------------------------

_generator: DocumentGenerator | None = None


def get_document_generator() -> DocumentGenerator:
    global _generator
    if _generator is None:
        _generator = HttpDocumentGenerator(
            settings.document_service_url,
            timeout=settings.document_service_timeout_seconds,
        )
    return _generator


def set_document_generator(generator: DocumentGenerator | None) -> None:
    """Swap the process-wide generator; ``None`` restores the default."""
    global _generator
    _generator = generator


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def _money(value: Any) -> str | None:
    return str(value) if value is not None else None


def build_snapshot(proposal: Proposal, job: Job | None = None) -> dict[str, Any]:
    """JSON-safe proposal snapshot with each area's final selection inlined."""
    areas = []
    for area in proposal.areas or []:
        selection = area.get("selections") or {}
        areas.append(
            {
                "id": area.get("id"),
                "name": area.get("name"),
                "surfaces": area.get("surfaces", []),
                "product_id": selection.get("product_id"),
                "brand_id": selection.get("brand_id"),
                "color": selection.get("color_name") or selection.get("custom_color"),
                "color_id": selection.get("color_id"),
                "sheen": selection.get("sheen"),
                "is_custom": bool(selection.get("is_custom") or selection.get("custom_color")),
                "is_other_brand": bool(selection.get("is_other_brand")),
            }
        )

    snapshot: dict[str, Any] = {
        "id": str(proposal.id),
        "tenant_id": str(proposal.tenant_id),
        "quote_number": proposal.quote_number,
        "customer_name": proposal.customer_name,
        "customer_email": proposal.customer_email,
        "customer_address": proposal.customer_address,
        "job_type": proposal.job_type,
        "selected_tier": proposal.selected_tier.value if proposal.selected_tier else None,
        "total": _money(proposal.total),
        "deposit_amount": _money(proposal.deposit_amount),
        "deposit_payment_method": proposal.deposit_payment_method,
        "deposit_verified_at": (
            as_utc(proposal.deposit_verified_at).isoformat()
            if proposal.deposit_verified_at
            else None
        ),
        "areas": areas,
    }
    if job is not None:
        snapshot["job"] = {
            "id": str(job.id),
            "job_number": job.job_number,
            "job_name": job.job_name,
            "balance_remaining": _money(job.balance_remaining),
        }
    return snapshot


def queue_documents(
    outbox: EffectOutbox,
    proposal: Proposal,
    document_types: Iterable[str],
    *,
    job: Job | None = None,
) -> None:
    """Queue one generation effect per document type.

    The snapshot is taken now, while the committed values are in hand.
    """
    snapshot = build_snapshot(proposal, job)
    for document_type in document_types:
        if document_type not in DOCUMENT_TYPES:
            raise ValueError(f"Unknown document type {document_type!r}")
        outbox.add(
            f"document:{document_type}",
            lambda kind=document_type: get_document_generator().generate(kind, snapshot),
        )
