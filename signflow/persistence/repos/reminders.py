from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.domain.models import ReminderRecord


async def get_record(session: AsyncSession, signature_id: str, kind: str) -> ReminderRecord | None:
    result = await session.execute(
        select(ReminderRecord)
        .where(ReminderRecord.signature_id == signature_id, ReminderRecord.kind == kind)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_for_signatures(session: AsyncSession, signature_ids: list[str]) -> list[ReminderRecord]:
    if not signature_ids:
        return []
    result = await session.execute(
        select(ReminderRecord)
        .where(ReminderRecord.signature_id.in_(signature_ids))
        .order_by(ReminderRecord.sent_at, ReminderRecord.id)
    )
    return list(result.scalars().all())


def build_record(
    *,
    signature_id: str,
    kind: str,
    status: str,
    is_manual: bool,
    sent_at: datetime,
    error_message: str | None,
) -> ReminderRecord:
    # Insert through a flush so the unique (signature_id, kind) constraint arbitrates races.
    return ReminderRecord(
        id=uuid4().hex,
        signature_id=signature_id,
        kind=kind,
        status=status,
        is_manual=is_manual,
        attempts=1,
        sent_at=sent_at,
        delivered_at=sent_at if error_message is None else None,
        error_message=error_message,
    )


async def record_attempt(
    session: AsyncSession,
    record_id: str,
    *,
    expected_status: str | None,
    status: str,
    sent_at: datetime,
    error_message: str | None,
) -> bool:
    # Guarding on the previous status keeps two ticks from both retrying the same failed record.
    stmt = update(ReminderRecord).where(ReminderRecord.id == record_id)
    if expected_status is not None:
        stmt = stmt.where(ReminderRecord.status == expected_status)
    result = await session.execute(
        stmt.values(
            status=status,
            attempts=ReminderRecord.attempts + 1,
            sent_at=sent_at,
            delivered_at=sent_at if error_message is None else None,
            error_message=error_message,
        ).execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
