"""Signature lifecycle for a document's signing cycle.

Document: not_sent -> sent_for_signing -> {fully_signed, declined, expired}.
Signature: pending -> {signed, declined, expired}.

Every transition is a conditional UPDATE checked by rowcount, so concurrent
requests across processes resolve without in-process locks. The first
successful redeem or decline stores its result on the signature row and later
calls with the same token replay it.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from signflow.core.config import SIGNING_MODE_PARALLEL, SIGNING_MODE_SEQUENTIAL, SIGNING_MODES
from signflow.core.errors import (
    CertificateGenerationFailed,
    ConflictError,
    NotFoundError,
    OrderViolationError,
    SigningCycleClosedError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from signflow.domain.models import Document, SignatureRequest, as_utc
from signflow.domain.state import (
    DocumentStatus,
    SignatureStatus,
    SignerEntry,
    SigningOutcome,
)
from signflow.persistence.repos import certificates as certificates_repo
from signflow.persistence.repos import documents as documents_repo
from signflow.persistence.repos import signatures as signatures_repo
from signflow.providers.notify.base import NotificationMessage
from signflow.services import certificates
from signflow.services.audit import record_event
from signflow.services.collaborators import SigningCollaborators, get_collaborators
from signflow.services.integrity import sha256_hex
from signflow.services.signing import tokens


logger = logging.getLogger(__name__)

MAX_SIGNERS = 50
MAX_REASON_LENGTH = 2000
MAX_MESSAGE_LENGTH = 2000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    normalized = as_utc(value)
    return normalized.isoformat() if normalized else None


def _normalize_signer_ids(signer_ids: list[str]) -> list[str]:
    cleaned = [str(signer_id).strip() for signer_id in signer_ids or []]
    if not cleaned:
        raise ValidationError("At least one signer is required")
    if any(not signer_id for signer_id in cleaned):
        raise ValidationError("Signer ids must be non-empty")
    if len(cleaned) > MAX_SIGNERS:
        raise ValidationError(f"At most {MAX_SIGNERS} signers are allowed", signer_count=len(cleaned))
    seen: set[str] = set()
    duplicates: set[str] = set()
    for signer_id in cleaned:
        if signer_id in seen:
            duplicates.add(signer_id)
        seen.add(signer_id)
    if duplicates:
        raise ValidationError("Signer list contains duplicates", duplicates=",".join(sorted(duplicates)))
    return cleaned


def _progress(signed_count: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(signed_count * 100.0 / total, 2)


def _signer_entry(signature: SignatureRequest, issued: tokens.IssuedToken) -> SignerEntry:
    return SignerEntry(
        signer_id=signature.signer_id,
        signature_id=signature.id,
        order=signature.signer_order,
        token=issued.raw_token,
        signing_url=tokens.build_signing_url(issued.raw_token),
        token_expires_at=issued.expires_at.isoformat(),
    )


async def _load_binding(
    session: AsyncSession, document_id: str, raw_token: str
) -> tuple[tokens.TokenBinding, SignatureRequest, Document]:
    # Tokens from earlier cycles stay bound to their old signature rows and never redeem.
    binding = await tokens.lookup(session, raw_token, document_id=document_id)
    signature = await signatures_repo.get_signature(session, binding.signature_id)
    document = await documents_repo.refresh_document(session, document_id)
    if signature is None or document is None or signature.signing_cycle != document.signing_cycle:
        raise TokenInvalidError("Signing token is invalid", document_id=document_id)
    return binding, signature, document


def _replay(signature: SignatureRequest) -> SigningOutcome:
    logger.info(
        "signing_outcome_replayed document_id=%s signature_id=%s status=%s",
        signature.document_id,
        signature.id,
        signature.status,
    )
    return SigningOutcome(**(signature.outcome_json or {}))


async def _build_outcome(
    session: AsyncSession,
    *,
    document_id: str,
    signing_cycle: int,
    signing_mode: str | None,
    signature: SignatureRequest,
    signature_status: str,
    document_status: str,
    signed_at: datetime | None = None,
    declined_at: datetime | None = None,
) -> SigningOutcome:
    requests = await signatures_repo.list_for_cycle(session, document_id, signing_cycle)
    total = len(requests)
    signed_count = sum(1 for request in requests if request.status == SignatureStatus.SIGNED)
    next_signer_id = None
    if signing_mode == SIGNING_MODE_SEQUENTIAL and document_status == DocumentStatus.SENT_FOR_SIGNING:
        pending = [request for request in requests if request.status == SignatureStatus.PENDING]
        next_signer_id = pending[0].signer_id if pending else None
    return SigningOutcome(
        signature_id=signature.id,
        document_id=document_id,
        signer_id=signature.signer_id,
        signature_status=signature_status,
        document_status=document_status,
        signed_count=signed_count,
        total_signers=total,
        progress_percentage=_progress(signed_count, total),
        next_signer_id=next_signer_id,
        is_fully_signed=document_status == DocumentStatus.FULLY_SIGNED,
        signed_at=_isoformat(signed_at),
        declined_at=_isoformat(declined_at),
        certificate_id=None,
    )


async def initiate_signing(
    session: AsyncSession,
    document_id: str,
    signer_ids: list[str],
    *,
    mode: str = SIGNING_MODE_PARALLEL,
    due_date: datetime | None = None,
    message: str | None = None,
    token_ttl_days: int | None = None,
    actor_id: str | None = None,
    collaborators: SigningCollaborators | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Start a signing cycle and issue one token per signer.

    Raises ``ValidationError`` for bad input, ``NotFoundError`` for unknown
    documents and ``ConflictError`` when a cycle is active or the document is
    already fully signed. Notifications are dispatched after commit and never
    roll the cycle back.
    """
    collaborators = collaborators or get_collaborators()
    current = now or _utc_now()
    signers = _normalize_signer_ids(signer_ids)
    resolved_mode = (mode or "").strip().lower()
    if resolved_mode not in SIGNING_MODES:
        raise ValidationError(f"Signing mode must be one of {', '.join(SIGNING_MODES)}", mode=mode)
    resolved_due = as_utc(due_date)
    if resolved_due is not None and resolved_due <= current:
        raise ValidationError("Due date must be in the future", document_id=document_id)
    ttl_days = tokens.resolve_ttl_days(token_ttl_days)
    if message is not None and len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationError("Signing message is too long", document_id=document_id)

    document = await documents_repo.refresh_document(session, document_id)
    if document is None:
        raise NotFoundError("Document not found", document_id=document_id)
    if document.status not in DocumentStatus.INITIABLE:
        raise ConflictError(
            "Document already has an active or completed signing cycle",
            document_id=document_id,
            status=document.status,
        )
    group_id = document.group_id
    title = document.title
    previous_status = document.status
    cycle = document.signing_cycle + 1

    started = await documents_repo.start_signing_cycle(
        session,
        document_id,
        expected_status=previous_status,
        expected_cycle=document.signing_cycle,
        signing_mode=resolved_mode,
        due_date=resolved_due,
        message=message,
        sent_at=current,
    )
    if not started:
        await session.rollback()
        raise ConflictError("Document signing state changed concurrently", document_id=document_id)

    requests = await signatures_repo.create_signature_requests(
        session,
        document_id=document_id,
        signing_cycle=cycle,
        signer_ids=signers,
        due_date=resolved_due,
    )
    entries: list[SignerEntry] = []
    for request in requests:
        issued = await tokens.issue(session, request, ttl_days=ttl_days, now=current)
        entries.append(_signer_entry(request, issued))

    await record_event(
        session=session,
        tenant_id=group_id,
        actor_type="user" if actor_id else "system",
        actor_id=actor_id,
        event_type="signing.initiated",
        outcome="success",
        resource_type="document",
        resource_id=document_id,
        metadata={
            "signing_cycle": cycle,
            "signing_mode": resolved_mode,
            "signer_ids": signers,
            "due_date": _isoformat(resolved_due),
        },
    )
    await session.commit()
    logger.info(
        "signing_initiated document_id=%s cycle=%s mode=%s signers=%s",
        document_id,
        cycle,
        resolved_mode,
        len(signers),
    )

    for entry in entries:
        await collaborators.notify_best_effort(
            NotificationMessage(
                event_type="signature.requested",
                recipient_id=entry["signer_id"],
                document_id=document_id,
                subject=f"Signature requested: {title}",
                body=message or f"You have been asked to sign '{title}'.",
                signing_url=entry["signing_url"],
                metadata={"order": entry["order"], "signing_mode": resolved_mode},
            )
        )

    return {
        "document_id": document_id,
        "status": DocumentStatus.SENT_FOR_SIGNING,
        "signing_mode": resolved_mode,
        "signing_cycle": cycle,
        "signers": entries,
        "sent_at": current.isoformat(),
        "due_date": _isoformat(resolved_due),
    }


async def redeem(
    session: AsyncSession,
    document_id: str,
    raw_token: str,
    *,
    signature_data: bytes,
    ip_address: str | None = None,
    device_info: str | None = None,
    gps_coordinates: str | None = None,
    collaborators: SigningCollaborators | None = None,
    now: datetime | None = None,
) -> SigningOutcome:
    """Record a signer's signature.

    Redeeming a token whose request is already signed returns the stored
    result of the first call. The caller that completes the cycle generates
    the certificate after its commit; a generation failure is recorded on the
    document and does not fail the redemption.
    """
    collaborators = collaborators or get_collaborators()
    current = now or _utc_now()
    if not signature_data:
        raise ValidationError("Signature data is required", document_id=document_id)

    binding, signature, document = await _load_binding(session, document_id, raw_token)
    if signature.status == SignatureStatus.SIGNED:
        return _replay(signature)
    if signature.status == SignatureStatus.EXPIRED:
        raise TokenExpiredError("Signature request has expired", document_id=document_id, signer_id=signature.signer_id)
    if document.status != DocumentStatus.SENT_FOR_SIGNING or signature.status != SignatureStatus.PENDING:
        raise SigningCycleClosedError(
            "Signing cycle is closed",
            document_id=document_id,
            status=document.status,
        )
    tokens.check_usable(binding, now=current)

    signing_cycle = document.signing_cycle
    signing_mode = document.signing_mode
    group_id = document.group_id
    owner_id = document.owner_id
    title = document.title
    signature_id = signature.id
    signer_id = signature.signer_id

    if signing_mode == SIGNING_MODE_SEQUENTIAL:
        blocker = await signatures_repo.first_unsigned_before(
            session, document_id, signing_cycle, signature.signer_order
        )
        if blocker is not None:
            raise OrderViolationError(
                "An earlier signer must sign first",
                document_id=document_id,
                signer_id=signer_id,
                waiting_for=blocker.signer_id,
            )

    artifact_sha256 = sha256_hex(signature_data)
    artifact_ref = f"signatures/{document_id}/{signing_cycle}/{signature_id}-{artifact_sha256[:16]}"
    await collaborators.store_artifact(artifact_ref, signature_data)

    signed = await signatures_repo.mark_signed(
        session,
        signature_id,
        signed_at=current,
        artifact_ref=artifact_ref,
        artifact_sha256=artifact_sha256,
        ip_address=ip_address,
        device_info=device_info,
        gps_coordinates=gps_coordinates,
    )
    if not signed:
        # Lost the race to a concurrent redeem or decline; report what actually happened.
        await session.rollback()
        latest = await signatures_repo.get_signature(session, signature_id)
        if latest is not None and latest.status == SignatureStatus.SIGNED:
            return _replay(latest)
        if latest is not None and latest.status == SignatureStatus.EXPIRED:
            raise TokenExpiredError("Signature request has expired", document_id=document_id, signer_id=signer_id)
        raise SigningCycleClosedError("Signing cycle is closed", document_id=document_id)

    await tokens.invalidate(session, binding.token_id, now=current)

    # Without the lock two last signers can each count the other as pending under read committed.
    await documents_repo.lock_document(session, document_id)
    counts = await signatures_repo.count_by_status(session, document_id, signing_cycle)
    total = sum(counts.values())
    completed = False
    document_status = DocumentStatus.SENT_FOR_SIGNING
    if total and counts.get(SignatureStatus.SIGNED, 0) == total:
        completed = await documents_repo.transition_status(
            session,
            document_id,
            signing_cycle=signing_cycle,
            from_status=DocumentStatus.SENT_FOR_SIGNING,
            to_status=DocumentStatus.FULLY_SIGNED,
            completed_at=current,
        )
        document_status = DocumentStatus.FULLY_SIGNED if completed else document_status
    if not completed:
        refreshed = await documents_repo.refresh_document(session, document_id)
        document_status = refreshed.status if refreshed is not None else document_status

    outcome = await _build_outcome(
        session,
        document_id=document_id,
        signing_cycle=signing_cycle,
        signing_mode=signing_mode,
        signature=signature,
        signature_status=SignatureStatus.SIGNED,
        document_status=document_status,
        signed_at=current,
    )
    await signatures_repo.store_outcome(session, signature_id, dict(outcome))
    await record_event(
        session=session,
        tenant_id=group_id,
        actor_type="signer",
        actor_id=signer_id,
        event_type="signature.signed",
        outcome="success",
        resource_type="document",
        resource_id=document_id,
        ip_address=ip_address,
        user_agent=device_info,
        metadata={
            "signature_id": signature_id,
            "signing_cycle": signing_cycle,
            "artifact_sha256": artifact_sha256,
            "document_status": document_status,
        },
    )
    await session.commit()
    logger.info(
        "signature_signed document_id=%s signer_id=%s signed=%s/%s document_status=%s",
        document_id,
        signer_id,
        outcome["signed_count"],
        outcome["total_signers"],
        document_status,
    )

    if completed:
        completed_document = await documents_repo.refresh_document(session, document_id)
        try:
            certificate = await certificates.generate_certificate(
                session, completed_document, collaborators=collaborators
            )
        except CertificateGenerationFailed as exc:
            await certificates.record_generation_failure(session, completed_document, exc)
        else:
            outcome["certificate_id"] = certificate.id
            await signatures_repo.store_outcome(session, signature_id, dict(outcome))
            await session.commit()
        if owner_id:
            await collaborators.notify_best_effort(
                NotificationMessage(
                    event_type="signing.completed",
                    recipient_id=owner_id,
                    document_id=document_id,
                    subject=f"Fully signed: {title}",
                    body=f"All {total} signers have signed '{title}'.",
                    metadata={"certificate_id": outcome.get("certificate_id")},
                )
            )
    elif outcome.get("next_signer_id"):
        await collaborators.notify_best_effort(
            NotificationMessage(
                event_type="signature.turn",
                recipient_id=outcome["next_signer_id"],
                document_id=document_id,
                subject=f"Your signature is next: {title}",
                body=f"The previous signer has signed '{title}'. It is now your turn.",
            )
        )
    return outcome


async def decline(
    session: AsyncSession,
    document_id: str,
    raw_token: str,
    *,
    reason: str | None = None,
    collaborators: SigningCollaborators | None = None,
    now: datetime | None = None,
) -> SigningOutcome:
    """Decline a signature request, terminating the whole cycle.

    Order is not enforced for declines. Re-declining replays the stored
    result; declining an already signed request raises ``ConflictError``.
    """
    collaborators = collaborators or get_collaborators()
    current = now or _utc_now()
    cleaned_reason = (reason or "").strip() or None
    if cleaned_reason is not None and len(cleaned_reason) > MAX_REASON_LENGTH:
        raise ValidationError("Decline reason is too long", document_id=document_id)

    binding, signature, document = await _load_binding(session, document_id, raw_token)
    if signature.status == SignatureStatus.DECLINED:
        return _replay(signature)
    if signature.status == SignatureStatus.SIGNED:
        raise ConflictError("Signature request is already signed", document_id=document_id, signer_id=signature.signer_id)
    if signature.status == SignatureStatus.EXPIRED:
        raise TokenExpiredError("Signature request has expired", document_id=document_id, signer_id=signature.signer_id)
    if document.status != DocumentStatus.SENT_FOR_SIGNING:
        raise SigningCycleClosedError("Signing cycle is closed", document_id=document_id, status=document.status)
    tokens.check_usable(binding, now=current)

    signing_cycle = document.signing_cycle
    signing_mode = document.signing_mode
    group_id = document.group_id
    owner_id = document.owner_id
    title = document.title
    signature_id = signature.id
    signer_id = signature.signer_id

    declined = await signatures_repo.mark_declined(session, signature_id, declined_at=current, reason=cleaned_reason)
    if not declined:
        await session.rollback()
        latest = await signatures_repo.get_signature(session, signature_id)
        if latest is not None and latest.status == SignatureStatus.DECLINED:
            return _replay(latest)
        if latest is not None and latest.status == SignatureStatus.SIGNED:
            raise ConflictError("Signature request is already signed", document_id=document_id, signer_id=signer_id)
        raise SigningCycleClosedError("Signing cycle is closed", document_id=document_id)

    await tokens.invalidate(session, binding.token_id, now=current)
    terminated = await documents_repo.transition_status(
        session,
        document_id,
        signing_cycle=signing_cycle,
        from_status=DocumentStatus.SENT_FOR_SIGNING,
        to_status=DocumentStatus.DECLINED,
    )
    if not terminated:
        logger.info("decline_document_already_terminal document_id=%s signer_id=%s", document_id, signer_id)

    outcome = await _build_outcome(
        session,
        document_id=document_id,
        signing_cycle=signing_cycle,
        signing_mode=signing_mode,
        signature=signature,
        signature_status=SignatureStatus.DECLINED,
        document_status=DocumentStatus.DECLINED,
        declined_at=current,
    )
    await signatures_repo.store_outcome(session, signature_id, dict(outcome))
    await record_event(
        session=session,
        tenant_id=group_id,
        actor_type="signer",
        actor_id=signer_id,
        event_type="signature.declined",
        outcome="success",
        resource_type="document",
        resource_id=document_id,
        metadata={"signature_id": signature_id, "signing_cycle": signing_cycle, "reason": cleaned_reason},
    )
    await session.commit()
    logger.info("signature_declined document_id=%s signer_id=%s cycle=%s", document_id, signer_id, signing_cycle)

    if owner_id:
        await collaborators.notify_best_effort(
            NotificationMessage(
                event_type="signature.declined",
                recipient_id=owner_id,
                document_id=document_id,
                subject=f"Signature declined: {title}",
                body=f"Signer {signer_id} declined to sign '{title}'." + (f" Reason: {cleaned_reason}" if cleaned_reason else ""),
                metadata={"signer_id": signer_id},
            )
        )
    return outcome


async def get_status(session: AsyncSession, document_id: str, *, now: datetime | None = None) -> dict[str, Any]:
    document = await documents_repo.refresh_document(session, document_id)
    if document is None:
        raise NotFoundError("Document not found", document_id=document_id)
    current = now or _utc_now()
    requests = await signatures_repo.list_for_cycle(session, document_id, document.signing_cycle)
    total = len(requests)
    signed_count = sum(1 for request in requests if request.status == SignatureStatus.SIGNED)
    due_date = as_utc(document.due_date)
    time_remaining = None
    if due_date is not None and document.status == DocumentStatus.SENT_FOR_SIGNING:
        time_remaining = max(0, int((due_date - current).total_seconds()))
    certificate = None
    if document.status == DocumentStatus.FULLY_SIGNED:
        certificate = await certificates_repo.get_by_document(session, document_id)
    return {
        "document_id": document.id,
        "title": document.title,
        "status": document.status,
        "signing_mode": document.signing_mode,
        "signing_cycle": document.signing_cycle,
        "total_signers": total,
        "signed_count": signed_count,
        "progress_percentage": _progress(signed_count, total),
        "due_date": _isoformat(due_date),
        "time_remaining_seconds": time_remaining,
        "sent_at": _isoformat(document.sent_at),
        "completed_at": _isoformat(document.completed_at),
        "certificate_status": document.certificate_status,
        "certificate_id": certificate.id if certificate else None,
        "signatures": [
            {
                "signature_id": request.id,
                "signer_id": request.signer_id,
                "order": request.signer_order,
                "status": request.status,
                "signed_at": _isoformat(request.signed_at),
                "declined_at": _isoformat(request.declined_at),
                "expired_at": _isoformat(request.expired_at),
                "decline_reason": request.decline_reason,
            }
            for request in requests
        ],
    }


async def reissue_token(
    session: AsyncSession,
    document_id: str,
    signer_id: str,
    *,
    token_ttl_days: int | None = None,
    actor_id: str | None = None,
    collaborators: SigningCollaborators | None = None,
    now: datetime | None = None,
) -> SignerEntry:
    # Replace a lost or expired token; the previous token stops redeeming immediately.
    collaborators = collaborators or get_collaborators()
    current = now or _utc_now()
    ttl_days = tokens.resolve_ttl_days(token_ttl_days)
    document = await documents_repo.refresh_document(session, document_id)
    if document is None:
        raise NotFoundError("Document not found", document_id=document_id)
    if document.status != DocumentStatus.SENT_FOR_SIGNING:
        raise ConflictError("Document has no active signing cycle", document_id=document_id, status=document.status)
    signature = await signatures_repo.get_for_signer(session, document_id, document.signing_cycle, signer_id)
    if signature is None:
        raise NotFoundError("Signer not found on the active cycle", document_id=document_id, signer_id=signer_id)
    if signature.status != SignatureStatus.PENDING:
        raise ConflictError(
            "Signature request is no longer pending",
            document_id=document_id,
            signer_id=signer_id,
            status=signature.status,
        )
    group_id = document.group_id
    title = document.title

    await tokens.revoke_for_signature(session, signature.id, now=current)
    issued = await tokens.issue(session, signature, ttl_days=ttl_days, now=current)
    entry = _signer_entry(signature, issued)
    await record_event(
        session=session,
        tenant_id=group_id,
        actor_type="user" if actor_id else "system",
        actor_id=actor_id,
        event_type="signing.token_reissued",
        outcome="success",
        resource_type="document",
        resource_id=document_id,
        metadata={"signer_id": signer_id, "signature_id": signature.id},
    )
    await session.commit()
    logger.info("signing_token_reissued document_id=%s signer_id=%s", document_id, signer_id)
    await collaborators.notify_best_effort(
        NotificationMessage(
            event_type="signature.requested",
            recipient_id=signer_id,
            document_id=document_id,
            subject=f"New signing link: {title}",
            body=f"A new signing link was issued for '{title}'.",
            signing_url=entry["signing_url"],
        )
    )
    return entry
