"""Periodic reminder and expiration pass over pending signature requests.

A tick is safe to run from several instances at once: reminder rows are
unique per (signature, kind), expiration is a one-way conditional update, and
document aggregation only fires from ``sent_for_signing``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.core.config import get_settings
from signflow.core.errors import ProviderConfigError, TransientCollaboratorError
from signflow.domain.models import as_utc
from signflow.domain.state import (
    DeliveryStatus,
    DocumentStatus,
    ReminderKind,
    ReminderTickSummary,
    SignatureStatus,
)
from signflow.persistence.repos import documents as documents_repo
from signflow.persistence.repos import reminders as reminders_repo
from signflow.persistence.repos import signatures as signatures_repo
from signflow.providers.notify.base import NotificationMessage
from signflow.services.audit import record_event
from signflow.services.collaborators import SigningCollaborators, get_collaborators


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReminderCandidate:
    # Plain snapshot so rollbacks inside a tick never touch expired ORM state.
    signature_id: str
    document_id: str
    signer_id: str
    due_date: datetime | None
    title: str
    group_id: str
    owner_id: str | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _empty_summary() -> ReminderTickSummary:
    return ReminderTickSummary(
        status="ok",
        three_days_before=0,
        one_day_before=0,
        overdue=0,
        failed=0,
        signatures_expired=0,
        documents_expired=0,
    )


async def _load_candidates(
    session: AsyncSession,
    *,
    due_after: datetime | None,
    due_until: datetime,
    include_lower: bool = False,
    include_upper: bool = True,
    without_sent_kind: str | None = None,
) -> list[ReminderCandidate]:
    requests = await signatures_repo.list_pending_due_between(
        session,
        due_after=due_after,
        due_until=due_until,
        include_lower=include_lower,
        include_upper=include_upper,
        limit=max(1, get_settings().reminder_batch_size),
        without_sent_kind=without_sent_kind,
    )
    documents = await documents_repo.get_documents_by_ids(session, {request.document_id for request in requests})
    candidates: list[ReminderCandidate] = []
    for request in requests:
        document = documents.get(request.document_id)
        if document is None:
            continue
        candidates.append(
            ReminderCandidate(
                signature_id=request.id,
                document_id=request.document_id,
                signer_id=request.signer_id,
                due_date=as_utc(request.due_date),
                title=document.title,
                group_id=document.group_id,
                owner_id=document.owner_id,
            )
        )
    return candidates


def reminder_message(candidate: ReminderCandidate, kind: str, *, note: str | None = None) -> NotificationMessage:
    due_text = candidate.due_date.strftime("%Y-%m-%d %H:%M UTC") if candidate.due_date else "soon"
    if kind == ReminderKind.OVERDUE:
        subject = f"Signature overdue: {candidate.title}"
        body = f"Your signature on '{candidate.title}' was due {due_text}."
    else:
        subject = f"Signature reminder: {candidate.title}"
        body = f"Your signature on '{candidate.title}' is due {due_text}."
    if note:
        body = f"{body}\n\n{note}"
    return NotificationMessage(
        event_type=f"reminder.{kind}",
        recipient_id=candidate.signer_id,
        document_id=candidate.document_id,
        subject=subject,
        body=body,
        metadata={"signature_id": candidate.signature_id, "kind": kind},
    )


async def deliver_reminder(
    session: AsyncSession,
    candidate: ReminderCandidate,
    kind: str,
    *,
    collaborators: SigningCollaborators,
    now: datetime,
    force: bool = False,
    note: str | None = None,
) -> str:
    """Send one reminder and persist its record.

    Returns ``sent``, ``failed`` or ``skipped``. A sent record is never
    re-sent unless ``force`` is set; a failed record is retried in place.
    """
    is_manual = kind == ReminderKind.MANUAL
    record = await reminders_repo.get_record(session, candidate.signature_id, kind)
    if record is not None and record.status == DeliveryStatus.SENT and not force:
        return "skipped"
    record_id = record.id if record is not None else None
    previous_status = record.status if record is not None else None

    error_message: str | None = None
    try:
        await collaborators.notify(reminder_message(candidate, kind, note=note))
    except (TransientCollaboratorError, ProviderConfigError) as exc:
        error_message = exc.message
    status = DeliveryStatus.SENT if error_message is None else DeliveryStatus.FAILED

    if record_id is None:
        session.add(
            reminders_repo.build_record(
                signature_id=candidate.signature_id,
                kind=kind,
                status=status,
                is_manual=is_manual,
                sent_at=now,
                error_message=error_message,
            )
        )
        try:
            await session.flush()
        except IntegrityError:
            # Another instance recorded this (signature, kind) first.
            await session.rollback()
            logger.info(
                "reminder_duplicate_skipped signature_id=%s kind=%s",
                candidate.signature_id,
                kind,
            )
            return "skipped"
    else:
        expected = None if force else previous_status
        updated = await reminders_repo.record_attempt(
            session,
            record_id,
            expected_status=expected,
            status=status,
            sent_at=now,
            error_message=error_message,
        )
        if not updated:
            await session.rollback()
            return "skipped"
    await session.commit()

    if error_message is None:
        logger.info(
            "reminder_sent document_id=%s signer_id=%s kind=%s",
            candidate.document_id,
            candidate.signer_id,
            kind,
        )
        return "sent"
    logger.warning(
        "reminder_failed document_id=%s signer_id=%s kind=%s error=%s",
        candidate.document_id,
        candidate.signer_id,
        kind,
        error_message,
    )
    return "failed"


async def _send_window(
    session: AsyncSession,
    kind: str,
    candidates: list[ReminderCandidate],
    summary: ReminderTickSummary,
    *,
    collaborators: SigningCollaborators,
    now: datetime,
) -> None:
    for candidate in candidates:
        outcome = await deliver_reminder(session, candidate, kind, collaborators=collaborators, now=now)
        if outcome == "sent":
            summary[kind] += 1
        elif outcome == "failed":
            summary["failed"] += 1


async def _expire_signatures(
    session: AsyncSession,
    candidates: list[ReminderCandidate],
    *,
    collaborators: SigningCollaborators,
    now: datetime,
) -> int:
    expired_count = 0
    for candidate in candidates:
        expired = await signatures_repo.mark_expired(session, candidate.signature_id, expired_at=now)
        if not expired:
            # Signed, declined or already expired by a concurrent tick.
            await session.rollback()
            continue
        await record_event(
            session=session,
            tenant_id=candidate.group_id,
            actor_type="system",
            actor_id=None,
            event_type="signature.expired",
            outcome="success",
            resource_type="document",
            resource_id=candidate.document_id,
            metadata={"signature_id": candidate.signature_id, "signer_id": candidate.signer_id},
        )
        await session.commit()
        expired_count += 1
        logger.info(
            "signature_expired document_id=%s signer_id=%s due_date=%s",
            candidate.document_id,
            candidate.signer_id,
            candidate.due_date.isoformat(),
        )
        await collaborators.notify_best_effort(
            NotificationMessage(
                event_type="signature.expired",
                recipient_id=candidate.signer_id,
                document_id=candidate.document_id,
                subject=f"Signature request expired: {candidate.title}",
                body=f"Your signature request for '{candidate.title}' has expired.",
            )
        )
        if candidate.owner_id:
            await collaborators.notify_best_effort(
                NotificationMessage(
                    event_type="signature.expired",
                    recipient_id=candidate.owner_id,
                    document_id=candidate.document_id,
                    subject=f"Signature request expired: {candidate.title}",
                    body=f"Signer {candidate.signer_id} did not sign '{candidate.title}' in time.",
                    metadata={"signer_id": candidate.signer_id},
                )
            )
    return expired_count


async def _expire_documents(
    session: AsyncSession,
    *,
    collaborators: SigningCollaborators,
) -> int:
    # A document expires once nothing is pending and at least one request expired.
    documents = await signatures_repo.list_documents_with_expired_signatures(
        session, limit=max(1, get_settings().reminder_batch_size)
    )
    snapshots = [(doc.id, doc.signing_cycle, doc.group_id, doc.owner_id, doc.title) for doc in documents]
    expired_count = 0
    for document_id, signing_cycle, group_id, owner_id, title in snapshots:
        counts = await signatures_repo.count_by_status(session, document_id, signing_cycle)
        if counts.get(SignatureStatus.PENDING, 0) > 0 or counts.get(SignatureStatus.EXPIRED, 0) == 0:
            continue
        transitioned = await documents_repo.transition_status(
            session,
            document_id,
            signing_cycle=signing_cycle,
            from_status=DocumentStatus.SENT_FOR_SIGNING,
            to_status=DocumentStatus.EXPIRED,
        )
        if not transitioned:
            await session.rollback()
            continue
        await record_event(
            session=session,
            tenant_id=group_id,
            actor_type="system",
            actor_id=None,
            event_type="document.expired",
            outcome="success",
            resource_type="document",
            resource_id=document_id,
            metadata={"signing_cycle": signing_cycle, "status_counts": counts},
        )
        await session.commit()
        expired_count += 1
        logger.info("document_expired document_id=%s cycle=%s", document_id, signing_cycle)
        if owner_id:
            await collaborators.notify_best_effort(
                NotificationMessage(
                    event_type="document.expired",
                    recipient_id=owner_id,
                    document_id=document_id,
                    subject=f"Signing expired: {title}",
                    body=f"The signing cycle for '{title}' expired before every signer signed.",
                )
            )
    return expired_count


async def run_reminder_cycle(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    collaborators: SigningCollaborators | None = None,
) -> ReminderTickSummary:
    settings = get_settings()
    collaborators = collaborators or get_collaborators()
    current = now or _utc_now()
    three_day = timedelta(hours=settings.reminder_three_day_window_hours)
    one_day = timedelta(hours=settings.reminder_one_day_window_hours)
    overdue = timedelta(hours=settings.reminder_overdue_window_hours)
    grace = timedelta(hours=settings.expiration_grace_hours)
    summary = _empty_summary()

    # Windows: (now+1d, now+3d], (now, now+1d], [now-overdue, now).
    windows = [
        (ReminderKind.THREE_DAYS_BEFORE, dict(due_after=current + one_day, due_until=current + three_day)),
        (ReminderKind.ONE_DAY_BEFORE, dict(due_after=current, due_until=current + one_day)),
        (
            ReminderKind.OVERDUE,
            dict(due_after=current - overdue, due_until=current, include_lower=True, include_upper=False),
        ),
    ]
    for kind, bounds in windows:
        candidates = await _load_candidates(session, without_sent_kind=kind, **bounds)
        await _send_window(session, kind, candidates, summary, collaborators=collaborators, now=current)

    expiring = await _load_candidates(session, due_after=None, due_until=current - grace, include_upper=False)
    summary["signatures_expired"] = await _expire_signatures(
        session, expiring, collaborators=collaborators, now=current
    )
    summary["documents_expired"] = await _expire_documents(session, collaborators=collaborators)

    logger.info(
        "reminder_tick_complete three_days_before=%s one_day_before=%s overdue=%s failed=%s "
        "signatures_expired=%s documents_expired=%s",
        summary["three_days_before"],
        summary["one_day_before"],
        summary["overdue"],
        summary["failed"],
        summary["signatures_expired"],
        summary["documents_expired"],
    )
    return summary
