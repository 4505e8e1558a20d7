from __future__ import annotations

from functools import lru_cache

from agentforge.core.config import get_settings
from agentforge.core.errors import VectorIndexError
from agentforge.providers.vector.base import VectorIndex
from agentforge.providers.vector.memory import InMemoryVectorIndex


@lru_cache
def get_vector_index() -> VectorIndex:
    # One index per process; the build pass and searches must share it.
    settings = get_settings()
    backend = (settings.vector_index_backend or "memory").lower()

    if backend == "memory":
        return InMemoryVectorIndex()
    if backend == "pgvector":
        from agentforge.persistence.db import SessionLocal
        from agentforge.providers.vector.pgvector import PgVectorIndex

        return PgVectorIndex(SessionLocal)

    raise VectorIndexError(f"Unsupported vector index backend: {backend}")
