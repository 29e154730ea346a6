from __future__ import annotations

from uuid import uuid4

from signflow.persistence.db import SessionLocal
from signflow.persistence.repos import api_keys as api_keys_repo
from signflow.services.auth.api_keys import generate_api_key, normalize_role


async def create_test_api_key(*, tenant_id: str, role: str, name: str = "test-key") -> tuple[str, dict[str, str]]:
    # Provision a user + API key pair and return (raw_key, auth headers).
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    async with SessionLocal() as session:
        await api_keys_repo.create_user_with_key(
            session,
            user_id=uuid4().hex,
            tenant_id=tenant_id,
            role=normalize_role(role),
            key_id=key_id,
            key_prefix=key_prefix,
            key_hash=key_hash,
            name=name,
        )
        await session.commit()
    return raw_key, {"Authorization": f"Bearer {raw_key}"}
