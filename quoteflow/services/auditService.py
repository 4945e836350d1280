"""
Audit Service
=============

Writes ``AuditLog`` rows for customer-portal actions.  Audit records are
queued as post-commit effects.  Each record is written in a short-lived
session of its own on the caller's engine, so a failed write is rolled back
there and re-raised for the outbox to log while the caller's session and
its loaded objects stay untouched.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from quoteflow.models.audit import AuditLog

logger = logging.getLogger(__name__)


async def record_event(
    db: AsyncSession,
    *,
    tenant_id: uuid.UUID,
    action: str,
    entity_type: str,
    entity_id: Optional[uuid.UUID] = None,
    client_id: Optional[uuid.UUID] = None,
    details: Optional[dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AuditLog:
    """Insert and commit an immutable audit record."""
    entry = AuditLog(
        tenant_id=tenant_id,
        client_id=client_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details or {},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    async with AsyncSession(bind=db.bind, expire_on_commit=False) as audit_db:
        audit_db.add(entry)
        try:
            await audit_db.commit()
        except Exception:
            await audit_db.rollback()
            raise

    logger.debug("Audit: %s %s:%s", action, entity_type, entity_id)
    return entry


def deferred(db: AsyncSession, **kwargs: Any):
    """Return a zero-arg coroutine factory for ``EffectOutbox.add``."""

    async def _effect() -> AuditLog:
        return await record_event(db, **kwargs)

    return _effect
