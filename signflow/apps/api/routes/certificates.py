from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import Response
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
from signflow.core.errors import NotFoundError, ValidationError
from signflow.domain.models import Certificate, as_utc
from signflow.persistence.repos import certificates as certificates_repo
from signflow.persistence.repos import documents as documents_repo
from signflow.services import certificates
from signflow.services.collaborators import SigningCollaborators

router = APIRouter(tags=["certificates"], responses=DEFAULT_ERROR_RESPONSES)

# Uploaded documents are hashed in memory.
MAX_VERIFY_BYTES = 50 * 1024 * 1024


class CertificateSummaryResponse(BaseModel):
    certificate_id: str
    document_id: str
    generated_at: str | None = None
    expires_at: str | None = None
    document_hash: str
    payload_sha256: str
    total_signers: int
    revoked: bool
    revoked_reason: str | None = None


class VerifyCertificateResponse(BaseModel):
    certificate_id: str
    document_id: str
    hash_matches: bool
    expired: bool
    revoked: bool
    revoked_reason: str | None = None
    is_valid: bool
    stored_hash: str
    computed_hash: str
    generated_at: str | None = None
    expires_at: str | None = None
    verified_at: str
    total_signers: int


class RevokeCertificateRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


def _summary(certificate: Certificate) -> dict[str, Any]:
    generated_at = as_utc(certificate.generated_at)
    expires_at = as_utc(certificate.expires_at)
    return {
        "certificate_id": certificate.id,
        "document_id": certificate.document_id,
        "generated_at": generated_at.isoformat() if generated_at else None,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "document_hash": certificate.document_hash,
        "payload_sha256": certificate.payload_sha256,
        "total_signers": len(certificate.signers_json or []),
        "revoked": bool(certificate.revoked),
        "revoked_reason": certificate.revoked_reason,
    }


@router.get("/documents/{document_id}/certificate", response_class=Response)
async def download_certificate(
    document_id: str,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
    collaborators: SigningCollaborators = Depends(get_signing_collaborators),
) -> Response:
    await get_group_document(db, principal, document_id)
    certificate, body = await certificates.get_certificate(db, document_id, collaborators=collaborators)
    return Response(
        content=body,
        media_type=certificates.CERTIFICATE_MEDIA_TYPE,
        headers={
            "X-Certificate-Id": certificate.id,
            "X-Certificate-Hash": certificate.payload_sha256,
            "Content-Disposition": f'attachment; filename="{certificate.id}.json"',
        },
    )


@router.post(
    "/documents/{document_id}/certificate/regenerate",
    response_model=SuccessEnvelope[CertificateSummaryResponse] | CertificateSummaryResponse,
)
async def regenerate_document_certificate(
    document_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
    collaborators: SigningCollaborators = Depends(get_signing_collaborators),
) -> dict[str, Any]:
    await get_group_document(db, principal, document_id)
    certificate = await certificates.regenerate_certificate(db, document_id, collaborators=collaborators)
    return success_response(request=request, data=_summary(certificate))


@router.post(
    "/certificates/{certificate_id}/verify",
    response_model=SuccessEnvelope[VerifyCertificateResponse] | VerifyCertificateResponse,
)
async def verify_document_certificate(
    certificate_id: str,
    request: Request,
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Public: anyone holding the certificate id and the document may check integrity.
    current_bytes = await file.read(MAX_VERIFY_BYTES + 1)
    if len(current_bytes) > MAX_VERIFY_BYTES:
        raise ValidationError("Uploaded document is too large", certificate_id=certificate_id)
    result = await certificates.verify_certificate(db, certificate_id, current_bytes)
    return success_response(request=request, data=result)


@router.post(
    "/certificates/{certificate_id}/revoke",
    response_model=SuccessEnvelope[CertificateSummaryResponse] | CertificateSummaryResponse,
)
async def revoke_document_certificate(
    certificate_id: str,
    payload: RevokeCertificateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    certificate = await certificates_repo.get_by_id(db, certificate_id)
    document = (
        await documents_repo.get_document_for_group(db, principal.tenant_id, certificate.document_id)
        if certificate is not None
        else None
    )
    if document is None:
        raise NotFoundError("Certificate not found", certificate_id=certificate_id)
    revoked = await certificates.revoke_certificate(
        db,
        certificate_id,
        reason=payload.reason,
        actor_id=principal.subject_id,
    )
    return success_response(request=request, data=_summary(revoked))
