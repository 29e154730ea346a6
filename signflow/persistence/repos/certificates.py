from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.domain.models import Certificate


async def get_by_document(session: AsyncSession, document_id: str) -> Certificate | None:
    result = await session.execute(select(Certificate).where(Certificate.document_id == document_id))
    return result.scalar_one_or_none()


async def get_by_id(session: AsyncSession, certificate_id: str) -> Certificate | None:
    result = await session.execute(
        select(Certificate)
        .where(Certificate.id == certificate_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def revoke(session: AsyncSession, certificate_id: str, *, revoked_at: datetime, reason: str) -> bool:
    # Revocation is one-way; later calls leave the first reason intact.
    result = await session.execute(
        update(Certificate)
        .where(Certificate.id == certificate_id, Certificate.revoked.is_(False))
        .values(revoked=True, revoked_at=revoked_at, revoked_reason=reason)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
