from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from signflow.core.logging import configure_logging
from signflow.domain.models import Document
from signflow.persistence.db import SessionLocal
from signflow.persistence.repos import api_keys as api_keys_repo
from signflow.persistence.repos import documents as documents_repo
from signflow.services.auth.api_keys import generate_api_key
from signflow.services.collaborators import get_collaborators
from signflow.services.integrity import sha256_hex


DEMO_GROUP_ID = "group-demo"
DEMO_OWNER_ID = "owner-demo"
DEMO_DOCUMENT_ID = "doc-demo-coownership"
DEMO_STORAGE_KEY = "documents/doc-demo-coownership.txt"
DEMO_BODY = (
    b"Co-ownership agreement\n\n"
    b"The undersigned co-owners agree to share costs and usage of the vehicle "
    b"in proportion to their ownership shares.\n"
)


async def _seed(args: argparse.Namespace) -> int:
    # Registers one document plus an admin key so the signing flow can be exercised locally.
    configure_logging()
    collaborators = get_collaborators()
    await collaborators.store_artifact(DEMO_STORAGE_KEY, DEMO_BODY)

    async with SessionLocal() as session:
        existing = await session.get(Document, args.document_id)
        if existing is None:
            await documents_repo.create_document(
                session,
                document_id=args.document_id,
                group_id=args.group,
                title="Vehicle co-ownership agreement",
                storage_key=DEMO_STORAGE_KEY,
                content_hash=sha256_hex(DEMO_BODY),
                owner_id=DEMO_OWNER_ID,
            )
        key_id, raw_key, key_prefix, key_hash = generate_api_key()
        await api_keys_repo.create_user_with_key(
            session,
            user_id=f"seed-admin-{uuid4().hex[:8]}",
            tenant_id=args.group,
            role="admin",
            key_id=key_id,
            key_prefix=key_prefix,
            key_hash=key_hash,
            name="seed_demo",
        )
        await session.commit()

    print(f"document_id: {args.document_id}")
    print(f"group_id: {args.group}")
    print(f"api_key: {raw_key}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed a demo document and admin API key")
    parser.add_argument("--group", default=DEMO_GROUP_ID)
    parser.add_argument("--document-id", default=DEMO_DOCUMENT_ID)
    args = parser.parse_args()
    try:
        return asyncio.run(_seed(args))
    except Exception as exc:  # noqa: BLE001 - surface seed failures clearly
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
