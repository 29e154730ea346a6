from __future__ import annotations

import argparse

import pytest
from sqlalchemy import select

from scripts.create_api_key import _create_key
from signflow.domain.models import ApiKey, AuditEvent, User
from signflow.persistence.db import SessionLocal


@pytest.mark.asyncio
async def test_create_api_key_script_provisions_user_and_audits() -> None:
    args = argparse.Namespace(group="group-script", role="Editor", name="ops-key", user_id=None, email=None)
    status = await _create_key(args)
    assert status == 0

    async with SessionLocal() as session:
        key = (await session.execute(select(ApiKey).where(ApiKey.tenant_id == "group-script"))).scalar_one()
        user = await session.get(User, key.user_id)
        events = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "auth.api_key.created"))
        ).scalars().all()
    assert key.name == "ops-key"
    assert key.key_prefix.startswith("sfk_")
    assert user is not None
    assert user.role == "editor"
    assert len(events) == 1
    assert events[0].resource_id == key.id
