from __future__ import annotations

from uuid import uuid4

from signflow.persistence.db import SessionLocal
from signflow.persistence.repos import documents as documents_repo
from signflow.services.collaborators import SigningCollaborators
from signflow.services.integrity import sha256_hex


DOCUMENT_BODY = b"%PDF-1.7\nVehicle co-ownership agreement\nShares: 50/50\n%%EOF\n"
SIGNATURE_PNG = b"\x89PNG\r\n\x1a\nsignature-strokes"


async def register_document(
    collaborators: SigningCollaborators,
    *,
    group_id: str = "group-1",
    owner_id: str | None = "owner-1",
    body: bytes = DOCUMENT_BODY,
    store_body: bool = True,
) -> str:
    # Stand-in for the upload service: bytes go to storage, the row records their hash.
    document_id = f"doc-{uuid4().hex[:12]}"
    storage_key = f"documents/{document_id}.pdf"
    if store_body:
        await collaborators.store.put(storage_key, body)
    async with SessionLocal() as session:
        await documents_repo.create_document(
            session,
            document_id=document_id,
            group_id=group_id,
            title="Co-ownership agreement",
            storage_key=storage_key,
            content_hash=sha256_hex(body),
            owner_id=owner_id,
        )
        await session.commit()
    return document_id


def tokens_by_signer(initiation: dict) -> dict[str, str]:
    return {entry["signer_id"]: entry["token"] for entry in initiation["signers"]}
