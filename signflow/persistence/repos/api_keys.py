from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.domain.models import ApiKey, User


async def get_key_with_user(session: AsyncSession, key_hash: str) -> tuple[ApiKey, User] | None:
    result = await session.execute(
        select(ApiKey, User).join(User, ApiKey.user_id == User.id).where(ApiKey.key_hash == key_hash)
    )
    row = result.first()
    if row is None:
        return None
    api_key, user = row
    return api_key, user


async def create_user_with_key(
    session: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
    role: str,
    key_id: str,
    key_prefix: str,
    key_hash: str,
    name: str | None = None,
    email: str | None = None,
) -> ApiKey:
    # Create the principal and its API key together for scripts and tests.
    existing = await session.get(User, user_id)
    if existing is None:
        session.add(User(id=user_id, tenant_id=tenant_id, email=email, role=role, is_active=True))
        await session.flush()
    api_key = ApiKey(
        id=key_id,
        user_id=user_id,
        tenant_id=tenant_id,
        key_prefix=key_prefix,
        key_hash=key_hash,
        name=name,
    )
    session.add(api_key)
    return api_key
