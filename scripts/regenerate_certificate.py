from __future__ import annotations

import argparse
import asyncio
import sys

from signflow.core.errors import SignflowError
from signflow.core.logging import configure_logging
from signflow.persistence.db import SessionLocal
from signflow.services.certificates import regenerate_certificate


async def _regenerate(document_id: str) -> int:
    # Operator path for documents whose certificate failed during the final redemption.
    configure_logging()
    async with SessionLocal() as session:
        certificate = await regenerate_certificate(session, document_id)
    print(f"certificate_id: {certificate.id}")
    print(f"payload_sha256: {certificate.payload_sha256}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Regenerate a missing completion certificate")
    parser.add_argument("document_id")
    args = parser.parse_args()
    try:
        return asyncio.run(_regenerate(args.document_id))
    except SignflowError as exc:
        print(f"regenerate_certificate failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
