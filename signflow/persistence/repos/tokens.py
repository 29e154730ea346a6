from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.domain.models import SigningToken


async def create_token(
    session: AsyncSession,
    *,
    token_id: str,
    signature_id: str,
    document_id: str,
    signer_id: str,
    token_hash: str,
    token_prefix: str,
    expires_at: datetime,
) -> SigningToken:
    token = SigningToken(
        id=token_id,
        signature_id=signature_id,
        document_id=document_id,
        signer_id=signer_id,
        token_hash=token_hash,
        token_prefix=token_prefix,
        expires_at=expires_at,
    )
    session.add(token)
    return token


async def get_by_hash(session: AsyncSession, token_hash: str) -> SigningToken | None:
    result = await session.execute(
        select(SigningToken)
        .where(SigningToken.token_hash == token_hash)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def mark_used(session: AsyncSession, token_id: str, *, used_at: datetime) -> bool:
    # Single use: only the first writer flips used_at.
    result = await session.execute(
        update(SigningToken)
        .where(SigningToken.id == token_id, SigningToken.used_at.is_(None))
        .values(used_at=used_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def revoke_for_signature(session: AsyncSession, signature_id: str, *, revoked_at: datetime) -> int:
    result = await session.execute(
        update(SigningToken)
        .where(
            SigningToken.signature_id == signature_id,
            SigningToken.used_at.is_(None),
            SigningToken.revoked_at.is_(None),
        )
        .values(revoked_at=revoked_at)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
