from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import math
from typing import Any, Sequence
from uuid import uuid4

import numpy as np
from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agentforge.core.errors import ConstraintViolationError, DimensionMismatchError, NotFoundError
from agentforge.domain.enums import DISTANCE_METRICS, INDEX_STATUSES, UNIT_TYPES, require_member
from agentforge.domain.models import Embedding, EmbeddingModel, FileAnalysis
from agentforge.persistence.guards import ActorScope, as_system
from agentforge.persistence.integrity import classify_integrity_error


# Stored vectors compare equal when they match within float32 precision.
_VECTOR_TOLERANCE = 1e-6


def content_hash_for(text: str) -> str:
    # SHA-256 hex digest of the embedded input; the canonical content hash.
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def to_vector(values: Sequence[float] | Any) -> list[float]:
    # Normalize pgvector arrays, numpy arrays and JSON lists to plain float lists.
    return [float(value) for value in np.asarray(values, dtype=np.float64).reshape(-1)]


def validate_vector(vector: Sequence[float], *, model: EmbeddingModel) -> list[float]:
    values = to_vector(vector)
    if len(values) != model.dimension:
        raise DimensionMismatchError(model_id=model.id, expected=model.dimension, actual=len(values))
    if not all(math.isfinite(value) for value in values):
        raise ConstraintViolationError("vector contains non-finite values", field="vector")
    if not any(values):
        # Cosine distance is undefined for the zero vector.
        raise ConstraintViolationError("vector must not be all zeros", field="vector")
    return values


def vectors_match(left: Sequence[float], right: Sequence[float]) -> bool:
    a = np.asarray(to_vector(left))
    b = np.asarray(to_vector(right))
    return a.shape == b.shape and bool(np.allclose(a, b, rtol=0.0, atol=_VECTOR_TOLERANCE))


async def register_model(
    session: AsyncSession,
    *,
    model_id: str,
    dimension: int,
    distance_metric: str = "cosine",
) -> EmbeddingModel:
    # Registering an identical model twice is a no-op; a different dimension is a conflict.
    require_member(distance_metric, DISTANCE_METRICS, field="distance_metric")
    if dimension <= 0:
        raise ConstraintViolationError("dimension must be positive", field="dimension")
    existing = await get_model(session, model_id)
    if existing is not None:
        if existing.dimension != dimension or existing.distance_metric != distance_metric:
            raise ConstraintViolationError(
                f"embedding model {model_id} is already registered with dimension {existing.dimension}",
                kind="uniqueness",
                field="model_id",
            )
        return existing
    model = EmbeddingModel(id=model_id, dimension=dimension, distance_metric=distance_metric)
    session.add(model)
    try:
        await session.flush()
    except IntegrityError as exc:
        raise classify_integrity_error(exc, resource_type="embedding_model") from exc
    return model


async def get_model(session: AsyncSession, model_id: str) -> EmbeddingModel | None:
    result = await session.execute(select(EmbeddingModel).where(EmbeddingModel.id == model_id))
    return result.scalar_one_or_none()


async def require_model(session: AsyncSession, model_id: str) -> EmbeddingModel:
    model = await get_model(session, model_id)
    if model is None:
        raise NotFoundError("embedding_model", model_id)
    return model


def _insert_ignoring_duplicates(session: AsyncSession, values: dict[str, Any]):  # noqa: ANN202
    # ON CONFLICT DO NOTHING keeps concurrent re-inserts of the same content hash idempotent.
    dialect = session.get_bind().dialect.name
    insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
    return (
        insert_fn(Embedding)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["project_id", "model_id", "content_hash"])
    )


async def insert_embedding(
    scope: ActorScope,
    *,
    project_id: str,
    model_id: str,
    content_hash: str,
    vector: Sequence[float],
    unit_type: str = "file",
    unit_name: str | None = None,
    file_analysis_id: str | None = None,
    snippet: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> tuple[Embedding, bool]:
    """Store an embedding, returning ``(row, created)``.

    Re-inserting the same (project, model, content hash) with the same vector
    returns the stored row with ``created=False``. The same hash carrying a
    different vector is a uniqueness violation. New rows start ``pending`` and
    become searchable once the index build pass picks them up.
    """
    require_member(unit_type, UNIT_TYPES, field="unit_type")
    if not content_hash or len(content_hash) > 64:
        raise ConstraintViolationError("content_hash must be 1-64 characters", field="content_hash")
    model = await require_model(scope.session, model_id)
    values = validate_vector(vector, model=model)
    await scope.require_project(project_id, write=True)
    if file_analysis_id is not None:
        file_analysis = await scope.get(FileAnalysis, file_analysis_id)
        if file_analysis is None or file_analysis.project_id != project_id:
            raise NotFoundError("file_analysis", file_analysis_id)

    row_id = uuid4().hex
    stmt = _insert_ignoring_duplicates(
        scope.session,
        {
            "id": row_id,
            "project_id": project_id,
            "model_id": model_id,
            "unit_type": unit_type,
            "unit_name": unit_name,
            "file_analysis_id": file_analysis_id,
            "content_hash": content_hash,
            "dimension": model.dimension,
            "vector": values,
            "snippet": snippet,
            "metadata_json": metadata,
            "index_status": "pending",
            "index_attempts": 0,
            "created_at": datetime.now(timezone.utc),
        },
    )
    try:
        await scope.session.execute(stmt)
    except IntegrityError as exc:
        raise classify_integrity_error(exc, resource_type="embedding") from exc

    stored = await scope.scalars(
        scope.select(Embedding).where(
            Embedding.project_id == project_id,
            Embedding.model_id == model_id,
            Embedding.content_hash == content_hash,
        )
    )
    if not stored:
        raise NotFoundError("embedding")
    embedding = stored[0]
    if embedding.id == row_id:
        return embedding, True
    if not vectors_match(embedding.vector, values):
        raise ConstraintViolationError(
            f"content hash {content_hash} already stored with a different vector",
            kind="uniqueness",
            field="content_hash",
        )
    return embedding, False


async def get_embedding(scope: ActorScope, embedding_id: str) -> Embedding:
    return await scope.require(Embedding, embedding_id)


async def list_embeddings(
    scope: ActorScope,
    *,
    project_id: str,
    model_id: str | None = None,
    index_status: str | None = None,
) -> list[Embedding]:
    stmt = scope.select(Embedding).where(Embedding.project_id == project_id)
    if model_id is not None:
        stmt = stmt.where(Embedding.model_id == model_id)
    if index_status is not None:
        require_member(index_status, INDEX_STATUSES, field="index_status")
        stmt = stmt.where(Embedding.index_status == index_status)
    return await scope.scalars(stmt.order_by(Embedding.created_at, Embedding.id))


async def delete_embedding(scope: ActorScope, embedding_id: str) -> None:
    await scope.require(Embedding, embedding_id, write=True)
    await scope.execute(scope.delete(Embedding).where(Embedding.id == embedding_id))


async def fetch_by_ids(scope: ActorScope, embedding_ids: Sequence[str]) -> dict[str, Embedding]:
    # Re-read candidate rows through the actor predicate; invisible rows simply drop out.
    if not embedding_ids:
        return {}
    rows = await scope.scalars(scope.select(Embedding).where(Embedding.id.in_(list(embedding_ids))))
    return {row.id: row for row in rows}


async def claim_pending(session: AsyncSession, *, limit: int, max_attempts: int) -> list[Embedding]:
    # Oldest pending rows first; failed rows are retried until they run out of attempts.
    stmt = as_system(
        select(Embedding)
        .where(
            Embedding.index_status.in_(("pending", "failed")),
            Embedding.index_attempts < max_attempts,
        )
        .order_by(Embedding.created_at, Embedding.id)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def mark_indexed(session: AsyncSession, embedding_ids: Sequence[str]) -> None:
    if not embedding_ids:
        return
    await session.execute(
        as_system(
            update(Embedding)
            .where(Embedding.id.in_(list(embedding_ids)))
            .values(index_status="indexed", index_error=None, indexed_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
    )


async def mark_index_failed(session: AsyncSession, embedding_id: str, *, error: str) -> None:
    await session.execute(
        as_system(
            update(Embedding)
            .where(Embedding.id == embedding_id)
            .values(
                index_status="failed",
                index_error=error[:1000],
                index_attempts=Embedding.index_attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
    )


async def iter_indexed(session: AsyncSession, *, batch_size: int, after_id: str | None = None) -> list[Embedding]:
    # Keyset pagination over indexed rows for full index rebuilds.
    stmt = select(Embedding).where(Embedding.index_status == "indexed")
    if after_id is not None:
        stmt = stmt.where(Embedding.id > after_id)
    result = await session.execute(as_system(stmt.order_by(Embedding.id).limit(batch_size)))
    return list(result.scalars().all())


async def iter_indexed_since(
    session: AsyncSession,
    *,
    since: datetime | None,
    after: tuple[datetime, str] | None = None,
    batch_size: int,
) -> list[Embedding]:
    # Keyset pagination by (indexed_at, id) for incremental index sync.
    stmt = select(Embedding).where(Embedding.index_status == "indexed", Embedding.indexed_at.is_not(None))
    if since is not None:
        stmt = stmt.where(Embedding.indexed_at >= since)
    if after is not None:
        after_at, after_id = after
        stmt = stmt.where(
            or_(
                Embedding.indexed_at > after_at,
                and_(Embedding.indexed_at == after_at, Embedding.id > after_id),
            )
        )
    stmt = stmt.order_by(Embedding.indexed_at, Embedding.id).limit(batch_size)
    result = await session.execute(as_system(stmt))
    return list(result.scalars().all())


async def existing_indexed_ids(session: AsyncSession, embedding_ids: Sequence[str]) -> set[str]:
    # Subset of ids that still exist as indexed rows; the rest are stale index entries.
    if not embedding_ids:
        return set()
    stmt = select(Embedding.id).where(
        Embedding.id.in_(list(embedding_ids)),
        Embedding.index_status == "indexed",
    )
    result = await session.execute(as_system(stmt))
    return {str(row_id) for row_id in result.scalars().all()}


async def requeue_all(session: AsyncSession) -> int:
    # Send every embedding back through the build pass (used after a backend switch).
    result = await session.execute(
        as_system(
            update(Embedding)
            .values(index_status="pending", index_attempts=0, index_error=None, indexed_at=None)
            .execution_options(synchronize_session=False)
        )
    )
    return int(result.rowcount or 0)
