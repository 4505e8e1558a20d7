from __future__ import annotations

from typing import Collection, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentforge.core.errors import VectorIndexError
from agentforge.domain.models import Embedding
from agentforge.persistence.guards import as_system
from agentforge.providers.vector.base import IndexEntry, IndexMatch


class PgVectorIndex:
    """Searches the embeddings table directly with pgvector's cosine operator.

    The table is the index: ``insert`` only validates, and rows become
    searchable when the build pass flips ``index_status`` to ``indexed``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def insert(self, entry: IndexEntry) -> None:
        if not any(float(value) for value in entry.vector):
            raise VectorIndexError("cannot index a zero vector")

    async def remove(self, embedding_ids: Collection[str]) -> None:
        # Deleted rows leave the table with their embedding; nothing to evict.
        return None

    async def search(
        self,
        *,
        model_id: str,
        query_vector: Sequence[float],
        threshold: float,
        limit: int,
        project_ids: Collection[str] | None = None,
    ) -> list[IndexMatch]:
        if limit <= 0:
            return []
        # Use cosine distance from pgvector; lower is more similar.
        distance_expr = Embedding.vector.cosine_distance([float(value) for value in query_vector])
        stmt = select(Embedding.id, Embedding.project_id, distance_expr.label("distance")).where(
            Embedding.model_id == model_id,
            Embedding.index_status == "indexed",
            distance_expr <= threshold,
        )
        if project_ids is not None:
            if not project_ids:
                return []
            stmt = stmt.where(Embedding.project_id.in_(list(project_ids)))
        # Secondary ordering keeps tie-breaking deterministic.
        stmt = stmt.order_by(distance_expr.asc(), Embedding.id.asc()).limit(limit)
        try:
            async with self._session_factory() as session:
                result = await session.execute(as_system(stmt))
                rows = result.all()
        except SQLAlchemyError as exc:
            raise VectorIndexError("pgvector query failed") from exc
        return [
            IndexMatch(
                embedding_id=row_id,
                project_id=project_id,
                distance=max(0.0, min(2.0, float(distance))),
            )
            for row_id, project_id, distance in rows
        ]

    async def clear(self) -> None:
        return None

    async def size(self, model_id: str | None = None) -> int:
        stmt = select(func.count(Embedding.id)).where(Embedding.index_status == "indexed")
        if model_id is not None:
            stmt = stmt.where(Embedding.model_id == model_id)
        async with self._session_factory() as session:
            result = await session.execute(as_system(stmt))
            return int(result.scalar() or 0)

    async def embedding_ids(self) -> list[str]:
        # Nothing is held outside the table, so there is never anything to evict.
        return []
