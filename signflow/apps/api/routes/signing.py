from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.apps.api.deps import (
    Principal,
    get_db,
    get_group_document,
    get_signing_collaborators,
    require_role,
)
from signflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signflow.apps.api.response import SuccessEnvelope, success_response
from signflow.core.config import SIGNING_MODE_PARALLEL
from signflow.services.collaborators import SigningCollaborators
from signflow.services.reminders import send_reminders
from signflow.services.signing import get_status, initiate_signing, reissue_token

router = APIRouter(prefix="/documents", tags=["signing"], responses=DEFAULT_ERROR_RESPONSES)


class SendForSigningRequest(BaseModel):
    signer_ids: list[str] = Field(min_length=1)
    signing_mode: str = SIGNING_MODE_PARALLEL
    due_date: datetime | None = None
    message: str | None = None
    token_ttl_days: int | None = None


class SignerEntryResponse(BaseModel):
    signer_id: str
    signature_id: str
    order: int
    token: str
    signing_url: str
    token_expires_at: str


class SendForSigningResponse(BaseModel):
    document_id: str
    status: str
    signing_mode: str
    signing_cycle: int
    signers: list[SignerEntryResponse]
    sent_at: str
    due_date: str | None = None


class SignatureStatusResponse(BaseModel):
    signature_id: str
    signer_id: str
    order: int
    status: str
    signed_at: str | None = None
    declined_at: str | None = None
    expired_at: str | None = None
    decline_reason: str | None = None


class SigningStatusResponse(BaseModel):
    document_id: str
    title: str
    status: str
    signing_mode: str | None = None
    signing_cycle: int
    total_signers: int
    signed_count: int
    progress_percentage: float
    due_date: str | None = None
    time_remaining_seconds: int | None = None
    sent_at: str | None = None
    completed_at: str | None = None
    certificate_status: str
    certificate_id: str | None = None
    signatures: list[SignatureStatusResponse]


class SendReminderRequest(BaseModel):
    signer_ids: list[str] | None = None
    force: bool = False
    message: str | None = Field(default=None, max_length=2000)


class ReminderResultResponse(BaseModel):
    signer_id: str
    status: str
    reason: str | None = None


class SendReminderResponse(BaseModel):
    document_id: str
    results: list[ReminderResultResponse]
    sent: int
    failed: int
    skipped: int


class ReissueTokenRequest(BaseModel):
    token_ttl_days: int | None = None


@router.post(
    "/{document_id}/send-for-signing",
    response_model=SuccessEnvelope[SendForSigningResponse] | SendForSigningResponse,
)
async def send_for_signing(
    document_id: str,
    payload: SendForSigningRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
    collaborators: SigningCollaborators = Depends(get_signing_collaborators),
) -> dict[str, Any]:
    await get_group_document(db, principal, document_id)
    result = await initiate_signing(
        db,
        document_id,
        payload.signer_ids,
        mode=payload.signing_mode,
        due_date=payload.due_date,
        message=payload.message,
        token_ttl_days=payload.token_ttl_days,
        actor_id=principal.subject_id,
        collaborators=collaborators,
    )
    return success_response(request=request, data=result)


@router.get(
    "/{document_id}/signing-status",
    response_model=SuccessEnvelope[SigningStatusResponse] | SigningStatusResponse,
)
async def signing_status(
    document_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await get_group_document(db, principal, document_id)
    return success_response(request=request, data=await get_status(db, document_id))


@router.post(
    "/{document_id}/reminders",
    response_model=SuccessEnvelope[SendReminderResponse] | SendReminderResponse,
)
async def send_document_reminders(
    document_id: str,
    payload: SendReminderRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
    collaborators: SigningCollaborators = Depends(get_signing_collaborators),
) -> dict[str, Any]:
    await get_group_document(db, principal, document_id)
    result = await send_reminders(
        db,
        document_id,
        signer_ids=payload.signer_ids,
        force=payload.force,
        message=payload.message,
        actor_id=principal.subject_id,
        collaborators=collaborators,
    )
    return success_response(request=request, data=result)


@router.post(
    "/{document_id}/signers/{signer_id}/reissue-token",
    response_model=SuccessEnvelope[SignerEntryResponse] | SignerEntryResponse,
)
async def reissue_signer_token(
    document_id: str,
    signer_id: str,
    request: Request,
    payload: ReissueTokenRequest | None = None,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
    collaborators: SigningCollaborators = Depends(get_signing_collaborators),
) -> dict[str, Any]:
    await get_group_document(db, principal, document_id)
    entry = await reissue_token(
        db,
        document_id,
        signer_id,
        token_ttl_days=payload.token_ttl_days if payload else None,
        actor_id=principal.subject_id,
        collaborators=collaborators,
    )
    return success_response(request=request, data=entry)
