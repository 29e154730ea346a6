from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from signflow.core.errors import ConflictError, NotFoundError, ValidationError
from signflow.domain.models import as_utc
from signflow.domain.state import DocumentStatus, ReminderKind, SignatureStatus
from signflow.persistence.repos import documents as documents_repo
from signflow.persistence.repos import signatures as signatures_repo
from signflow.services.audit import record_event
from signflow.services.collaborators import SigningCollaborators, get_collaborators
from signflow.services.reminders.scheduler import ReminderCandidate, deliver_reminder


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def send_reminders(
    session: AsyncSession,
    document_id: str,
    *,
    signer_ids: list[str] | None = None,
    force: bool = False,
    message: str | None = None,
    actor_id: str | None = None,
    collaborators: SigningCollaborators | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Send a manual reminder to pending signers of the active cycle.

    Each signer gets at most one manual reminder unless ``force`` is set,
    in which case the existing record is updated in place.
    """
    collaborators = collaborators or get_collaborators()
    current = now or _utc_now()
    document = await documents_repo.refresh_document(session, document_id)
    if document is None:
        raise NotFoundError("Document not found", document_id=document_id)
    if document.status != DocumentStatus.SENT_FOR_SIGNING:
        raise ConflictError("Document has no active signing cycle", document_id=document_id, status=document.status)

    requests = await signatures_repo.list_for_cycle(session, document_id, document.signing_cycle)
    if signer_ids:
        wanted = {signer_id.strip() for signer_id in signer_ids}
        unknown = wanted - {request.signer_id for request in requests}
        if unknown:
            raise ValidationError(
                "Unknown signer ids for this document",
                document_id=document_id,
                signer_ids=",".join(sorted(unknown)),
            )
        requests = [request for request in requests if request.signer_id in wanted]

    snapshots = [
        (
            request.status,
            ReminderCandidate(
                signature_id=request.id,
                document_id=document_id,
                signer_id=request.signer_id,
                due_date=as_utc(request.due_date),
                title=document.title,
                group_id=document.group_id,
                owner_id=document.owner_id,
            ),
        )
        for request in requests
    ]
    group_id = document.group_id

    results: list[dict[str, Any]] = []
    for status, candidate in snapshots:
        if status != SignatureStatus.PENDING:
            results.append({"signer_id": candidate.signer_id, "status": "skipped", "reason": status})
            continue
        outcome = await deliver_reminder(
            session,
            candidate,
            ReminderKind.MANUAL,
            collaborators=collaborators,
            now=current,
            force=force,
            note=message,
        )
        entry: dict[str, Any] = {"signer_id": candidate.signer_id, "status": outcome}
        if outcome == "skipped":
            entry["reason"] = "already_sent"
        results.append(entry)

    counts = {key: sum(1 for item in results if item["status"] == key) for key in ("sent", "failed", "skipped")}
    await record_event(
        session=session,
        tenant_id=group_id,
        actor_type="user" if actor_id else "system",
        actor_id=actor_id,
        event_type="signing.reminders_sent",
        outcome="success" if counts["failed"] == 0 else "partial",
        resource_type="document",
        resource_id=document_id,
        metadata={"force": force, **counts},
        commit=True,
    )
    logger.info(
        "manual_reminders document_id=%s sent=%s failed=%s skipped=%s",
        document_id,
        counts["sent"],
        counts["failed"],
        counts["skipped"],
    )
    return {"document_id": document_id, "results": results, **counts}
