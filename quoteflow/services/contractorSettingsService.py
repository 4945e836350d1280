"""
Per-tenant contractor settings lookup with application defaults.
"""

from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quoteflow.core.config import settings
from quoteflow.models.tenant import ContractorSettings


async def get_contractor_settings(
    db: AsyncSession,
    tenant_id: uuid.UUID,
) -> ContractorSettings:
    """Return the tenant's settings row, or an unsaved row of defaults."""
    result = await db.execute(
        select(ContractorSettings).where(ContractorSettings.tenant_id == tenant_id)
    )
    row = result.scalar_one_or_none()
    if row is not None:
        return row
    return ContractorSettings(
        tenant_id=tenant_id,
        deposit_percent=settings.default_deposit_percent,
        portal_duration_days=settings.default_portal_duration_days,
        magic_link_expiry_days=settings.magic_link_expiry_days,
    )
