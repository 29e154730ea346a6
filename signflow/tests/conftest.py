from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway sqlite database before any signflow module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="signflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/signflow.db"
os.environ.setdefault("STORAGE_PROVIDER", "memory")
os.environ.setdefault("NOTIFY_PROVIDER", "memory")
os.environ.setdefault("IDENTITY_PROVIDER", "static")

import pytest  # noqa: E402

from signflow.core.config import get_settings  # noqa: E402
from signflow.domain.models import Base  # noqa: E402
from signflow.persistence.db import dispose_engine, engine  # noqa: E402
from signflow.providers.identity.base import SignerIdentity  # noqa: E402
from signflow.providers.identity.static import StaticIdentityDirectory  # noqa: E402
from signflow.providers.notify.memory import InMemoryNotifier  # noqa: E402
from signflow.providers.storage.memory import InMemoryDocumentStore  # noqa: E402
from signflow.services.collaborators import SigningCollaborators, get_collaborators  # noqa: E402


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh schema per test; dispose afterwards so pooled connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await dispose_engine()


@pytest.fixture(autouse=True)
def reset_cached_settings() -> None:
    yield
    get_settings.cache_clear()
    get_collaborators.cache_clear()


@pytest.fixture
def collaborators() -> SigningCollaborators:
    identity = StaticIdentityDirectory(
        {
            "alice": SignerIdentity(signer_id="alice", display_name="Alice Martin", contact="alice@example.com"),
            "bob": SignerIdentity(signer_id="bob", display_name="Bob Nguyen", contact="bob@example.com"),
        }
    )
    return SigningCollaborators(
        store=InMemoryDocumentStore(),
        notifier=InMemoryNotifier(),
        identity=identity,
    )
