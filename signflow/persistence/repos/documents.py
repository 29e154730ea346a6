from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.domain.models import Document
from signflow.domain.state import CertificateStatus, DocumentStatus


async def create_document(
    session: AsyncSession,
    *,
    document_id: str,
    group_id: str,
    title: str,
    storage_key: str,
    content_hash: str | None,
    owner_id: str | None,
) -> Document:
    # Registration normally happens in the upload service; kept here for seeding and tests.
    doc = Document(
        id=document_id,
        group_id=group_id,
        title=title,
        storage_key=storage_key,
        content_hash=content_hash,
        owner_id=owner_id,
        status=DocumentStatus.NOT_SENT,
        signing_cycle=0,
        certificate_status=CertificateStatus.NONE,
    )
    session.add(doc)
    return doc


async def get_document(session: AsyncSession, document_id: str) -> Document | None:
    # Tenant checks are enforced by the API layer before calling into services.
    result = await session.execute(select(Document).where(Document.id == document_id))
    return result.scalar_one_or_none()


async def get_document_for_group(session: AsyncSession, group_id: str, document_id: str) -> Document | None:
    # Return None for group mismatch to keep 404 semantics.
    result = await session.execute(
        select(Document).where(Document.id == document_id, Document.group_id == group_id)
    )
    return result.scalar_one_or_none()


async def refresh_document(session: AsyncSession, document_id: str) -> Document | None:
    # Re-read after a conditional update so callers see the committed row, not a stale identity.
    result = await session.execute(
        select(Document).where(Document.id == document_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def lock_document(session: AsyncSession, document_id: str) -> Document | None:
    # Row lock held until commit; serializes completion checks across concurrent signers.
    result = await session.execute(
        select(Document)
        .where(Document.id == document_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def start_signing_cycle(
    session: AsyncSession,
    document_id: str,
    *,
    expected_status: str,
    expected_cycle: int,
    signing_mode: str,
    due_date: datetime | None,
    message: str | None,
    sent_at: datetime,
) -> bool:
    # Compare-and-write on (status, cycle); a concurrent initiation loses with rowcount 0.
    result = await session.execute(
        update(Document)
        .where(
            Document.id == document_id,
            Document.status == expected_status,
            Document.signing_cycle == expected_cycle,
        )
        .values(
            status=DocumentStatus.SENT_FOR_SIGNING,
            signing_cycle=expected_cycle + 1,
            signing_mode=signing_mode,
            due_date=due_date,
            signing_message=message,
            sent_at=sent_at,
            completed_at=None,
            certificate_status=CertificateStatus.NONE,
            certificate_error=None,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def transition_status(
    session: AsyncSession,
    document_id: str,
    *,
    signing_cycle: int,
    from_status: str,
    to_status: str,
    completed_at: datetime | None = None,
) -> bool:
    # Terminal document transitions only fire once per cycle.
    values: dict[str, object] = {"status": to_status}
    if completed_at is not None:
        values["completed_at"] = completed_at
    result = await session.execute(
        update(Document)
        .where(
            Document.id == document_id,
            Document.signing_cycle == signing_cycle,
            Document.status == from_status,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def set_certificate_status(
    session: AsyncSession,
    document_id: str,
    *,
    status: str,
    error: str | None = None,
) -> None:
    await session.execute(
        update(Document)
        .where(Document.id == document_id)
        .values(certificate_status=status, certificate_error=error)
        .execution_options(synchronize_session=False)
    )


async def get_documents_by_ids(session: AsyncSession, document_ids: set[str]) -> dict[str, Document]:
    if not document_ids:
        return {}
    result = await session.execute(select(Document).where(Document.id.in_(sorted(document_ids))))
    return {doc.id: doc for doc in result.scalars().all()}
