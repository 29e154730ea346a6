from __future__ import annotations

import pytest
from sqlalchemy.dialects import postgresql

from signflow.persistence.repos import documents as documents_repo


class _Result:
    def scalar_one_or_none(self):
        return None


class _RecordingSession:
    def __init__(self) -> None:
        self.statements = []

    async def execute(self, statement):
        self.statements.append(statement)
        return _Result()


@pytest.mark.asyncio
async def test_lock_document_selects_row_for_update() -> None:
    session = _RecordingSession()

    assert await documents_repo.lock_document(session, "doc-1") is None

    assert len(session.statements) == 1
    compiled = str(session.statements[0].compile(dialect=postgresql.dialect()))
    assert "FROM documents" in compiled
    assert compiled.rstrip().endswith("FOR UPDATE")
