from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite file before any agentforge module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="agentforge-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'agentforge.db')}")
os.environ.setdefault("VECTOR_INDEX_BACKEND", "memory")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("MAINTENANCE_ANALYZE_TABLES", "true")

import pytest  # noqa: E402

from agentforge.domain.models import Base  # noqa: E402
from agentforge.persistence.db import engine  # noqa: E402
from agentforge.providers.vector.factory import get_vector_index  # noqa: E402
from agentforge.services import maintenance as maintenance_module  # noqa: E402
from agentforge.services import similarity as similarity_module  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_database_between_tests() -> None:
    # Rebuild the schema per test so rollup versions and counters start from zero.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    await get_vector_index().clear()
    maintenance_module._scheduler = None
    similarity_module._synchronizer = None
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
