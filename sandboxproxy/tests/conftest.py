from __future__ import annotations

import os
import tempfile

# Point settings at a throw-away SQLite file before any sandboxproxy module reads them.
_DB_DIR = tempfile.mkdtemp(prefix="sandboxproxy-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ.setdefault("ADMIN_API_KEY", "sk_admin_test_secret")
os.environ["ORCHESTRATOR_PROVIDER"] = "fake"
os.environ["STORAGE_PROVIDER"] = "fake"

import pytest  # noqa: E402

from sandboxproxy.domain.models import Base  # noqa: E402
from sandboxproxy.persistence.db import engine  # noqa: E402
from sandboxproxy.services import telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_database() -> None:
    # Fresh schema per test so uniqueness and cascade tests start from nothing.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    telemetry.reset()
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
