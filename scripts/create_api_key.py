from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from signflow.domain.models import User
from signflow.persistence.db import SessionLocal
from signflow.persistence.repos import api_keys as api_keys_repo
from signflow.services.audit import record_event
from signflow.services.auth.api_keys import generate_api_key, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an operator API key for a co-ownership group")
    parser.add_argument("--group", required=True, help="Group (tenant) identifier")
    parser.add_argument("--role", required=True, help="Role: reader|editor|admin")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--user-id", default=None, help="Existing user id to attach")
    parser.add_argument("--email", default=None, help="Optional user email")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    user_id = args.user_id or uuid4().hex
    key_id, raw_key, key_prefix, key_hash = generate_api_key()

    async with SessionLocal() as session:
        user = await session.get(User, user_id)
        if user is not None and user.tenant_id != args.group:
            raise ValueError("User tenant_id does not match requested group")
        await api_keys_repo.create_user_with_key(
            session,
            user_id=user_id,
            tenant_id=args.group,
            role=role,
            key_id=key_id,
            key_prefix=key_prefix,
            key_hash=key_hash,
            name=args.name,
            email=args.email,
        )
        await record_event(
            session=session,
            tenant_id=args.group,
            actor_type="system",
            actor_id="create_api_key",
            actor_role=role,
            event_type="auth.api_key.created",
            outcome="success",
            resource_type="api_key",
            resource_id=key_id,
            metadata={"user_id": user_id, "key_prefix": key_prefix, "key_name": args.name},
        )
        await session.commit()

    print("API key created:")
    print(f"  key_id: {key_id}")
    print(f"  key_prefix: {key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
