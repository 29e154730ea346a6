from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.domain.models import Document, ReminderRecord, SignatureRequest
from signflow.domain.state import DeliveryStatus, DocumentStatus, SignatureStatus


async def create_signature_requests(
    session: AsyncSession,
    *,
    document_id: str,
    signing_cycle: int,
    signer_ids: list[str],
    due_date: datetime | None,
) -> list[SignatureRequest]:
    # Order follows list position, starting at 1.
    requests = [
        SignatureRequest(
            id=uuid4().hex,
            document_id=document_id,
            signing_cycle=signing_cycle,
            signer_id=signer_id,
            signer_order=index,
            status=SignatureStatus.PENDING,
            due_date=due_date,
        )
        for index, signer_id in enumerate(signer_ids, start=1)
    ]
    session.add_all(requests)
    await session.flush()
    return requests


async def list_for_cycle(session: AsyncSession, document_id: str, signing_cycle: int) -> list[SignatureRequest]:
    result = await session.execute(
        select(SignatureRequest)
        .where(
            SignatureRequest.document_id == document_id,
            SignatureRequest.signing_cycle == signing_cycle,
        )
        .order_by(SignatureRequest.signer_order)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_signature(session: AsyncSession, signature_id: str) -> SignatureRequest | None:
    result = await session.execute(
        select(SignatureRequest)
        .where(SignatureRequest.id == signature_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_for_signer(
    session: AsyncSession, document_id: str, signing_cycle: int, signer_id: str
) -> SignatureRequest | None:
    result = await session.execute(
        select(SignatureRequest).where(
            SignatureRequest.document_id == document_id,
            SignatureRequest.signing_cycle == signing_cycle,
            SignatureRequest.signer_id == signer_id,
        )
    )
    return result.scalar_one_or_none()


async def count_by_status(session: AsyncSession, document_id: str, signing_cycle: int) -> dict[str, int]:
    result = await session.execute(
        select(SignatureRequest.status, func.count())
        .where(
            SignatureRequest.document_id == document_id,
            SignatureRequest.signing_cycle == signing_cycle,
        )
        .group_by(SignatureRequest.status)
    )
    return {status: int(count) for status, count in result.all()}


async def first_unsigned_before(
    session: AsyncSession, document_id: str, signing_cycle: int, signer_order: int
) -> SignatureRequest | None:
    # Lowest-order request that still blocks a sequential signer.
    result = await session.execute(
        select(SignatureRequest)
        .where(
            SignatureRequest.document_id == document_id,
            SignatureRequest.signing_cycle == signing_cycle,
            SignatureRequest.signer_order < signer_order,
            SignatureRequest.status != SignatureStatus.SIGNED,
        )
        .order_by(SignatureRequest.signer_order)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def mark_signed(
    session: AsyncSession,
    signature_id: str,
    *,
    signed_at: datetime,
    artifact_ref: str,
    artifact_sha256: str,
    ip_address: str | None,
    device_info: str | None,
    gps_coordinates: str | None,
) -> bool:
    # Only a pending request may be signed; the loser of a race sees rowcount 0.
    result = await session.execute(
        update(SignatureRequest)
        .where(SignatureRequest.id == signature_id, SignatureRequest.status == SignatureStatus.PENDING)
        .values(
            status=SignatureStatus.SIGNED,
            signed_at=signed_at,
            captured_at=signed_at,
            artifact_ref=artifact_ref,
            artifact_sha256=artifact_sha256,
            ip_address=ip_address,
            device_info=device_info,
            gps_coordinates=gps_coordinates,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_declined(
    session: AsyncSession,
    signature_id: str,
    *,
    declined_at: datetime,
    reason: str | None,
) -> bool:
    result = await session.execute(
        update(SignatureRequest)
        .where(SignatureRequest.id == signature_id, SignatureRequest.status == SignatureStatus.PENDING)
        .values(status=SignatureStatus.DECLINED, declined_at=declined_at, decline_reason=reason)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_expired(session: AsyncSession, signature_id: str, *, expired_at: datetime) -> bool:
    # One-way transition; signed or declined requests are never touched.
    result = await session.execute(
        update(SignatureRequest)
        .where(SignatureRequest.id == signature_id, SignatureRequest.status == SignatureStatus.PENDING)
        .values(status=SignatureStatus.EXPIRED, expired_at=expired_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def store_outcome(session: AsyncSession, signature_id: str, outcome: dict[str, Any]) -> None:
    await session.execute(
        update(SignatureRequest)
        .where(SignatureRequest.id == signature_id)
        .values(outcome_json=outcome)
        .execution_options(synchronize_session=False)
    )


async def list_pending_due_between(
    session: AsyncSession,
    *,
    due_after: datetime | None,
    due_until: datetime,
    include_lower: bool = False,
    include_upper: bool = True,
    limit: int,
    without_sent_kind: str | None = None,
) -> list[SignatureRequest]:
    """Pending requests of active cycles whose due date lies in the window.

    ``due_after=None`` leaves the window open below. Bounds default to
    (due_after, due_until]; the flags switch either end. ``without_sent_kind``
    drops requests that already hold a sent reminder of that kind, so a full
    batch never starves later requests.
    """
    upper = SignatureRequest.due_date <= due_until if include_upper else SignatureRequest.due_date < due_until
    clauses = [SignatureRequest.status == SignatureStatus.PENDING, SignatureRequest.due_date.is_not(None), upper]
    if due_after is not None:
        lower = SignatureRequest.due_date >= due_after if include_lower else SignatureRequest.due_date > due_after
        clauses.append(lower)
    if without_sent_kind is not None:
        clauses.append(
            ~exists().where(
                ReminderRecord.signature_id == SignatureRequest.id,
                ReminderRecord.kind == without_sent_kind,
                ReminderRecord.status == DeliveryStatus.SENT,
            )
        )
    result = await session.execute(
        select(SignatureRequest)
        .join(
            Document,
            and_(
                Document.id == SignatureRequest.document_id,
                Document.signing_cycle == SignatureRequest.signing_cycle,
            ),
        )
        .where(Document.status == DocumentStatus.SENT_FOR_SIGNING, *clauses)
        .order_by(SignatureRequest.due_date, SignatureRequest.id)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def list_documents_with_expired_signatures(session: AsyncSession, *, limit: int) -> list[Document]:
    # Active documents whose current cycle already holds at least one expired request.
    result = await session.execute(
        select(Document)
        .join(
            SignatureRequest,
            and_(
                SignatureRequest.document_id == Document.id,
                SignatureRequest.signing_cycle == Document.signing_cycle,
            ),
        )
        .where(
            Document.status == DocumentStatus.SENT_FOR_SIGNING,
            SignatureRequest.status == SignatureStatus.EXPIRED,
        )
        .distinct()
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
