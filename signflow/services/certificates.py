"""Completion certificates for fully signed documents.

A certificate captures the ordered signer attestations and a SHA-256 of the
signed document bytes at generation time. Certificates are rendered as
canonical JSON so the same stored fields always hash to the same
``payload_sha256``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.core.config import get_settings
from signflow.core.errors import (
    CertificateGenerationFailed,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from signflow.domain.models import Certificate, Document, as_utc
from signflow.domain.state import CertificateStatus, DocumentStatus, SignatureStatus, SignerAttestation
from signflow.persistence.repos import certificates as certificates_repo
from signflow.persistence.repos import documents as documents_repo
from signflow.persistence.repos import signatures as signatures_repo
from signflow.services.audit import record_event
from signflow.services.collaborators import SigningCollaborators, get_collaborators
from signflow.services.integrity import canonical_json_bytes, digests_match, sha256_hex
from signflow.services.resilience import single_attempt_policy


logger = logging.getLogger(__name__)

CERTIFICATE_FORMAT = "signflow.certificate.v1"
CERTIFICATE_MEDIA_TYPE = "application/vnd.signflow.certificate+json"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    normalized = as_utc(value)
    return normalized.isoformat() if normalized else None


def new_certificate_id(now: datetime) -> str:
    return f"CERT-{now.strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4).upper()}"


def certificate_payload(certificate: Certificate) -> dict[str, Any]:
    # Only persisted certificate fields participate, so re-rendering is stable.
    return {
        "format": CERTIFICATE_FORMAT,
        "certificate_id": certificate.id,
        "document_id": certificate.document_id,
        "signing_cycle": certificate.signing_cycle,
        "generated_at": _isoformat(certificate.generated_at),
        "expires_at": _isoformat(certificate.expires_at),
        "hash_algorithm": "sha256",
        "document_hash": certificate.document_hash,
        "total_signers": len(certificate.signers_json or []),
        "signers": list(certificate.signers_json or []),
    }


def render_certificate(certificate: Certificate) -> bytes:
    return canonical_json_bytes(certificate_payload(certificate))


async def _fetch_document_bytes(document: Document, collaborators: SigningCollaborators) -> bytes:
    # One bounded attempt; a slow store fails generation instead of stalling the redemption.
    policy = single_attempt_policy(get_settings().artifact_fetch_timeout_ms)
    try:
        return await collaborators.fetch_document(document.storage_key, policy=policy)
    except StorageError as exc:
        raise CertificateGenerationFailed(
            "Signed document could not be fetched",
            document_id=document.id,
            reason=exc.message,
        ) from exc


async def _build_attestations(
    session: AsyncSession, document: Document, collaborators: SigningCollaborators
) -> list[SignerAttestation]:
    requests = await signatures_repo.list_for_cycle(session, document.id, document.signing_cycle)
    if not requests or any(request.status != SignatureStatus.SIGNED for request in requests):
        raise CertificateGenerationFailed(
            "Every signer must have signed before a certificate is generated",
            document_id=document.id,
        )
    attestations: list[SignerAttestation] = []
    for request in requests:
        identity = await collaborators.resolve_signer(request.signer_id)
        attestations.append(
            SignerAttestation(
                signer_id=request.signer_id,
                order=request.signer_order,
                name=identity.display_name,
                contact=identity.contact,
                signed_at=_isoformat(request.signed_at) or "",
                ip_address=request.ip_address,
                device_info=request.device_info,
                gps_coordinates=request.gps_coordinates,
                artifact_ref=request.artifact_ref,
                artifact_sha256=request.artifact_sha256,
            )
        )
    return attestations


async def generate_certificate(
    session: AsyncSession,
    document: Document,
    *,
    collaborators: SigningCollaborators | None = None,
    now: datetime | None = None,
) -> Certificate:
    """Generate and persist the certificate for a fully signed document.

    Raises ``CertificateGenerationFailed`` when the document bytes cannot be
    fetched, do not match the upload hash, or the cycle is not complete. A
    concurrent generator that loses the unique insert gets the stored row.
    """
    collaborators = collaborators or get_collaborators()
    if document.status != DocumentStatus.FULLY_SIGNED:
        raise CertificateGenerationFailed("Document is not fully signed", document_id=document.id)

    attestations = await _build_attestations(session, document, collaborators)
    document_bytes = await _fetch_document_bytes(document, collaborators)
    document_hash = sha256_hex(document_bytes)
    if document.content_hash and not digests_match(document.content_hash, document_hash):
        raise CertificateGenerationFailed(
            "Stored document does not match its upload hash",
            document_id=document.id,
        )

    generated_at = (now or _utc_now()).replace(microsecond=0)
    validity_days = get_settings().certificate_validity_days
    certificate = Certificate(
        id=new_certificate_id(generated_at),
        document_id=document.id,
        signing_cycle=document.signing_cycle,
        generated_at=generated_at,
        expires_at=generated_at + timedelta(days=validity_days) if validity_days > 0 else None,
        document_hash=document_hash,
        signers_json=[dict(item) for item in attestations],
        revoked=False,
    )
    certificate.payload_sha256 = sha256_hex(render_certificate(certificate))

    document_id = document.id
    session.add(certificate)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        existing = await certificates_repo.get_by_document(session, document_id)
        if existing is None:
            raise
        logger.info("certificate_generation_raced document_id=%s certificate_id=%s", document_id, existing.id)
        return existing

    await documents_repo.set_certificate_status(session, document.id, status=CertificateStatus.GENERATED)
    await record_event(
        session=session,
        tenant_id=document.group_id,
        actor_type="system",
        actor_id=None,
        event_type="certificate.generated",
        outcome="success",
        resource_type="document",
        resource_id=document.id,
        metadata={"certificate_id": certificate.id, "total_signers": len(attestations)},
    )
    await session.commit()
    logger.info(
        "certificate_generated document_id=%s certificate_id=%s signers=%s",
        document.id,
        certificate.id,
        len(attestations),
    )
    return certificate


async def record_generation_failure(
    session: AsyncSession, document: Document, exc: CertificateGenerationFailed
) -> None:
    # The document stays fully signed; only the certificate status reflects the failure.
    await documents_repo.set_certificate_status(
        session, document.id, status=CertificateStatus.FAILED, error=exc.message
    )
    await record_event(
        session=session,
        tenant_id=document.group_id,
        actor_type="system",
        actor_id=None,
        event_type="certificate.generated",
        outcome="failure",
        resource_type="document",
        resource_id=document.id,
        error_code=exc.code,
        metadata={"reason": exc.message},
    )
    await session.commit()
    logger.error("certificate_generation_failed document_id=%s error=%s", document.id, exc)


async def get_certificate(
    session: AsyncSession,
    document_id: str,
    *,
    collaborators: SigningCollaborators | None = None,
) -> tuple[Certificate, bytes]:
    document = await documents_repo.get_document(session, document_id)
    if document is None or document.status != DocumentStatus.FULLY_SIGNED:
        raise NotFoundError("Certificate not available", document_id=document_id)
    certificate = await certificates_repo.get_by_document(session, document_id)
    if certificate is None:
        # An earlier generation failed; try again on demand.
        try:
            certificate = await generate_certificate(session, document, collaborators=collaborators)
        except CertificateGenerationFailed as exc:
            await record_generation_failure(session, document, exc)
            raise
    return certificate, render_certificate(certificate)


async def regenerate_certificate(
    session: AsyncSession,
    document_id: str,
    *,
    collaborators: SigningCollaborators | None = None,
) -> Certificate:
    document = await documents_repo.get_document(session, document_id)
    if document is None:
        raise NotFoundError("Document not found", document_id=document_id)
    if document.status != DocumentStatus.FULLY_SIGNED:
        raise ConflictError("Document is not fully signed", document_id=document_id, status=document.status)
    existing = await certificates_repo.get_by_document(session, document_id)
    if existing is not None:
        raise ConflictError("Certificate already exists", document_id=document_id, certificate_id=existing.id)
    try:
        return await generate_certificate(session, document, collaborators=collaborators)
    except CertificateGenerationFailed as exc:
        await record_generation_failure(session, document, exc)
        raise


async def verify_certificate(
    session: AsyncSession,
    certificate_id: str,
    current_bytes: bytes,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    certificate = await certificates_repo.get_by_id(session, certificate_id)
    if certificate is None:
        raise NotFoundError("Certificate not found", certificate_id=certificate_id)
    verified_at = now or _utc_now()
    computed_hash = sha256_hex(current_bytes)
    hash_matches = digests_match(certificate.document_hash, computed_hash)
    expires_at = as_utc(certificate.expires_at)
    expired = expires_at is not None and expires_at <= verified_at
    revoked = bool(certificate.revoked)
    result = {
        "certificate_id": certificate.id,
        "document_id": certificate.document_id,
        "hash_matches": hash_matches,
        "expired": expired,
        "revoked": revoked,
        "revoked_reason": certificate.revoked_reason,
        "is_valid": hash_matches and not expired and not revoked,
        "stored_hash": certificate.document_hash,
        "computed_hash": computed_hash,
        "generated_at": _isoformat(certificate.generated_at),
        "expires_at": _isoformat(certificate.expires_at),
        "verified_at": verified_at.isoformat(),
        "total_signers": len(certificate.signers_json or []),
    }
    logger.info(
        "certificate_verified certificate_id=%s hash_matches=%s expired=%s revoked=%s",
        certificate.id,
        hash_matches,
        expired,
        revoked,
    )
    return result


async def revoke_certificate(
    session: AsyncSession,
    certificate_id: str,
    *,
    reason: str,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> Certificate:
    cleaned = (reason or "").strip()
    if not cleaned:
        raise ValidationError("Revocation reason is required", certificate_id=certificate_id)
    certificate = await certificates_repo.get_by_id(session, certificate_id)
    if certificate is None:
        raise NotFoundError("Certificate not found", certificate_id=certificate_id)
    if certificate.revoked:
        raise ConflictError("Certificate is already revoked", certificate_id=certificate_id)
    revoked = await certificates_repo.revoke(session, certificate_id, revoked_at=now or _utc_now(), reason=cleaned)
    if not revoked:
        await session.rollback()
        raise ConflictError("Certificate is already revoked", certificate_id=certificate_id)
    document = await documents_repo.get_document(session, certificate.document_id)
    await record_event(
        session=session,
        tenant_id=document.group_id if document else None,
        actor_type="user" if actor_id else "system",
        actor_id=actor_id,
        event_type="certificate.revoked",
        outcome="success",
        resource_type="certificate",
        resource_id=certificate_id,
        metadata={"reason": cleaned, "document_id": certificate.document_id},
    )
    await session.commit()
    logger.info("certificate_revoked certificate_id=%s document_id=%s", certificate_id, certificate.document_id)
    refreshed = await certificates_repo.get_by_id(session, certificate_id)
    return refreshed or certificate
