from __future__ import annotations

import base64
import binascii
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.apps.api.deps import client_ip, get_db, get_signing_collaborators
from signflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signflow.apps.api.response import SuccessEnvelope, success_response
from signflow.core.errors import ValidationError
from signflow.services.collaborators import SigningCollaborators
from signflow.services.signing import decline, redeem

# Signer routes authenticate with the signing token, not an API key.
router = APIRouter(prefix="/documents", tags=["signer"], responses=DEFAULT_ERROR_RESPONSES)


class SignRequest(BaseModel):
    token: str = Field(min_length=1)
    # Base64-encoded signature artifact (drawn image, typed name rendering, ...).
    signature_data: str = Field(min_length=1)
    device_info: str | None = Field(default=None, max_length=512)
    gps_coordinates: str | None = Field(default=None, max_length=64)


class DeclineRequest(BaseModel):
    token: str = Field(min_length=1)
    reason: str | None = Field(default=None, max_length=2000)


class SigningOutcomeResponse(BaseModel):
    signature_id: str
    document_id: str
    signer_id: str
    signature_status: str
    document_status: str
    signed_count: int
    total_signers: int
    progress_percentage: float
    next_signer_id: str | None = None
    is_fully_signed: bool
    signed_at: str | None = None
    declined_at: str | None = None
    certificate_id: str | None = None


def _decode_signature(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("signature_data must be base64 encoded") from exc


@router.post(
    "/{document_id}/sign",
    response_model=SuccessEnvelope[SigningOutcomeResponse] | SigningOutcomeResponse,
)
async def sign_document(
    document_id: str,
    payload: SignRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    collaborators: SigningCollaborators = Depends(get_signing_collaborators),
) -> dict[str, Any]:
    outcome = await redeem(
        db,
        document_id,
        payload.token,
        signature_data=_decode_signature(payload.signature_data),
        ip_address=client_ip(request),
        device_info=payload.device_info or request.headers.get("user-agent"),
        gps_coordinates=payload.gps_coordinates,
        collaborators=collaborators,
    )
    return success_response(request=request, data=outcome)


@router.post(
    "/{document_id}/decline",
    response_model=SuccessEnvelope[SigningOutcomeResponse] | SigningOutcomeResponse,
)
async def decline_document(
    document_id: str,
    payload: DeclineRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    collaborators: SigningCollaborators = Depends(get_signing_collaborators),
) -> dict[str, Any]:
    outcome = await decline(
        db,
        document_id,
        payload.token,
        reason=payload.reason,
        collaborators=collaborators,
    )
    return success_response(request=request, data=outcome)
