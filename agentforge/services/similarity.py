from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import math
import time
from typing import Collection, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentforge.core.config import get_settings
from agentforge.core.errors import ConstraintViolationError, VectorIndexError
from agentforge.domain.models import Embedding, Project
from agentforge.persistence.db import SessionLocal
from agentforge.persistence.guards import Actor, ActorScope
from agentforge.persistence.repos import embeddings as embeddings_repo
from agentforge.providers.vector.base import IndexEntry, IndexMatch, VectorIndex
from agentforge.providers.vector.factory import get_vector_index


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimilarEmbedding:
    embedding_id: str
    project_id: str
    model_id: str
    unit_type: str
    unit_name: str | None
    file_analysis_id: str | None
    content_hash: str
    snippet: str | None
    distance: float

    @property
    def similarity(self) -> float:
        return 1.0 - self.distance


@dataclass
class IndexBuildReport:
    indexed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def processed(self) -> int:
        return len(self.indexed) + len(self.failed)


def _check_threshold(threshold: float) -> float:
    value = float(threshold)
    if not math.isfinite(value) or value < 0.0 or value > 2.0:
        raise ConstraintViolationError("threshold must be a cosine distance in [0, 2]", field="threshold")
    return value


def _check_limit(limit: int) -> int:
    if int(limit) < 1:
        raise ConstraintViolationError("limit must be at least 1", field="limit")
    # Clamp search limits to keep similarity lookups bounded.
    return min(int(limit), get_settings().vector_search_max_limit)


async def find_similar_embeddings(
    session: AsyncSession,
    *,
    query_vector: Sequence[float],
    model_id: str,
    actor: Actor,
    threshold: float | None = None,
    limit: int = 10,
    project_id: str | None = None,
    index: VectorIndex | None = None,
) -> list[SimilarEmbedding]:
    """Return embeddings within ``threshold`` cosine distance of the query, nearest first.

    Candidates are restricted to projects the actor can see (or to ``project_id``,
    which must itself be visible) and every hit is re-read through the actor
    scope, so the index never decides visibility. Ties are ordered by embedding
    id. An empty corpus yields an empty list.
    """
    scope = ActorScope(session, actor)
    model = await embeddings_repo.require_model(session, model_id)
    values = embeddings_repo.validate_vector(query_vector, model=model)
    resolved_threshold = _check_threshold(
        get_settings().vector_search_default_threshold if threshold is None else threshold
    )
    resolved_limit = _check_limit(limit)

    if project_id is not None:
        await scope.require_project(project_id)
        project_ids: list[str] = [project_id]
    else:
        project_ids = [str(row_id) for row_id in await scope.scalars(scope.select(Project, Project.id))]
    if not project_ids:
        return []

    vector_index = index or get_vector_index()
    started = time.monotonic()
    # Over-fetch so rows dropped by the re-read do not shrink the page; widen while drops still leave it short.
    fetch = resolved_limit * 2
    evicted = 0
    while True:
        matches = await vector_index.search(
            model_id=model_id,
            query_vector=values,
            threshold=resolved_threshold,
            limit=fetch,
            project_ids=project_ids,
        )
        rows = await embeddings_repo.fetch_by_ids(scope, [match.embedding_id for match in matches])
        missing = [match.embedding_id for match in matches if match.embedding_id not in rows]
        if missing:
            # A miss is either invisible to the actor or gone from the table; only the latter leaves the index.
            present = await embeddings_repo.existing_indexed_ids(session, missing)
            stale = [embedding_id for embedding_id in missing if embedding_id not in present]
            if stale:
                await forget_embeddings(stale, index=vector_index)
                evicted += len(stale)
        results = _collect_results(matches, rows, model_id=model_id, limit=resolved_limit)
        if len(results) >= resolved_limit or len(matches) < fetch:
            break
        fetch *= 2
    logger.debug(
        "similarity_search model_id=%s candidates=%s returned=%s evicted=%s latency_ms=%s",
        model_id,
        len(matches),
        len(results),
        evicted,
        int((time.monotonic() - started) * 1000),
    )
    return results


def _collect_results(
    matches: Sequence[IndexMatch],
    rows: dict[str, Embedding],
    *,
    model_id: str,
    limit: int,
) -> list[SimilarEmbedding]:
    results: list[SimilarEmbedding] = []
    for match in matches:
        row = rows.get(match.embedding_id)
        if row is None or row.model_id != model_id:
            continue
        results.append(
            SimilarEmbedding(
                embedding_id=row.id,
                project_id=row.project_id,
                model_id=row.model_id,
                unit_type=row.unit_type,
                unit_name=row.unit_name,
                file_analysis_id=row.file_analysis_id,
                content_hash=row.content_hash,
                snippet=row.snippet,
                distance=match.distance,
            )
        )
        if len(results) >= limit:
            break
    return results


def _index_entry(row: Embedding) -> IndexEntry:
    return IndexEntry(
        embedding_id=row.id,
        project_id=row.project_id,
        model_id=row.model_id,
        vector=embeddings_repo.to_vector(row.vector),
    )


async def build_pending_embeddings(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    index: VectorIndex | None = None,
    batch_size: int | None = None,
) -> IndexBuildReport:
    # Move one batch of pending (or retryable failed) embeddings into the index.
    settings = get_settings()
    factory = session_factory or SessionLocal
    vector_index = index or get_vector_index()
    report = IndexBuildReport()
    started = time.monotonic()
    async with factory() as session:
        rows = await embeddings_repo.claim_pending(
            session,
            limit=batch_size or settings.index_build_batch_size,
            max_attempts=settings.index_build_max_attempts,
        )
        for row in rows:
            try:
                await vector_index.insert(_index_entry(row))
            except (VectorIndexError, ValueError) as exc:
                logger.warning("embedding_index_failed embedding_id=%s error=%s", row.id, exc)
                await embeddings_repo.mark_index_failed(session, row.id, error=str(exc))
                report.failed.append(row.id)
            else:
                report.indexed.append(row.id)
        await embeddings_repo.mark_indexed(session, report.indexed)
        await session.commit()
    report.duration_ms = int((time.monotonic() - started) * 1000)
    if report.processed:
        logger.info(
            "embedding_index_batch indexed=%s failed=%s duration_ms=%s",
            len(report.indexed),
            len(report.failed),
            report.duration_ms,
        )
    return report


async def drain_pending_embeddings(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    index: VectorIndex | None = None,
    batch_size: int | None = None,
    max_batches: int = 1000,
) -> IndexBuildReport:
    # Run build batches until nothing new is indexed.
    total = IndexBuildReport()
    started = time.monotonic()
    for _ in range(max_batches):
        batch = await build_pending_embeddings(
            session_factory=session_factory,
            index=index,
            batch_size=batch_size,
        )
        total.indexed.extend(batch.indexed)
        total.failed.extend(batch.failed)
        if not batch.indexed:
            break
    total.duration_ms = int((time.monotonic() - started) * 1000)
    return total


async def rebuild_vector_index(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    index: VectorIndex | None = None,
    batch_size: int | None = None,
) -> int:
    """Reload every ``indexed`` embedding into the index from the table.

    The in-memory backend starts empty in each process; this restores it from
    the rows the build pass already accepted.
    """
    settings = get_settings()
    factory = session_factory or SessionLocal
    vector_index = index or get_vector_index()
    size = batch_size or settings.index_build_batch_size
    await vector_index.clear()
    loaded = 0
    after_id: str | None = None
    async with factory() as session:
        while True:
            rows = await embeddings_repo.iter_indexed(session, batch_size=size, after_id=after_id)
            if not rows:
                break
            for row in rows:
                await vector_index.insert(_index_entry(row))
            loaded += len(rows)
            after_id = rows[-1].id
    logger.info("vector_index_rebuilt embeddings=%s", loaded)
    return loaded


@dataclass
class IndexSyncReport:
    loaded: int = 0
    evicted: int = 0


class IndexSynchronizer:
    """Keeps a process-local index in step with rows indexed by other processes.

    With the memory backend each process holds its own index, while the build
    pass usually runs in the worker. ``pull`` loads ``indexed`` rows whose
    ``indexed_at`` is at or after the watermark minus a lookback window; build
    clocks can skew and a batch can commit after a later one, and inserts are
    upserts, so re-reading the window is harmless. ``evict_deleted`` drops
    entries whose rows were deleted or sent back to pending.
    """

    def __init__(
        self,
        index: VectorIndex | None = None,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        lookback_s: int | None = None,
        batch_size: int | None = None,
        evict_interval_s: int | None = None,
    ) -> None:
        settings = get_settings()
        self._index = index
        self._session_factory = session_factory or SessionLocal
        self.lookback = timedelta(seconds=settings.index_sync_lookback_s if lookback_s is None else lookback_s)
        self.batch_size = batch_size or settings.index_build_batch_size
        self.evict_interval_s = settings.index_sync_evict_interval_s if evict_interval_s is None else evict_interval_s
        self.watermark: datetime | None = None
        self._last_evicted_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def index(self) -> VectorIndex:
        return self._index or get_vector_index()

    async def pull(self) -> int:
        vector_index = self.index
        since = self.watermark - self.lookback if self.watermark is not None else None
        after: tuple[datetime, str] | None = None
        newest = self.watermark
        loaded = 0
        async with self._session_factory() as session:
            while True:
                rows = await embeddings_repo.iter_indexed_since(
                    session, since=since, after=after, batch_size=self.batch_size
                )
                if not rows:
                    break
                for row in rows:
                    try:
                        await vector_index.insert(_index_entry(row))
                    except (VectorIndexError, ValueError) as exc:
                        logger.warning("vector_index_sync_skipped embedding_id=%s error=%s", row.id, exc)
                        continue
                    loaded += 1
                last = rows[-1]
                after = (last.indexed_at, last.id)
                if newest is None or last.indexed_at > newest:
                    newest = last.indexed_at
        self.watermark = newest
        return loaded

    async def evict_deleted(self) -> int:
        vector_index = self.index
        embedding_ids = await vector_index.embedding_ids()
        stale: list[str] = []
        async with self._session_factory() as session:
            for start in range(0, len(embedding_ids), self.batch_size):
                chunk = embedding_ids[start : start + self.batch_size]
                present = await embeddings_repo.existing_indexed_ids(session, chunk)
                stale.extend(embedding_id for embedding_id in chunk if embedding_id not in present)
        if stale:
            await vector_index.remove(stale)
        self._last_evicted_at = time.monotonic()
        return len(stale)

    def _eviction_due(self) -> bool:
        if self._last_evicted_at is None:
            return True
        return time.monotonic() - self._last_evicted_at >= self.evict_interval_s

    async def sync(self, *, evict: bool | None = None) -> IndexSyncReport:
        # One pull, plus an eviction sweep when forced or when the sweep interval has passed.
        async with self._lock:
            report = IndexSyncReport(loaded=await self.pull())
            if evict is None:
                evict = self._eviction_due()
            if evict:
                report.evicted = await self.evict_deleted()
        if report.evicted:
            logger.info("vector_index_synced loaded=%s evicted=%s", report.loaded, report.evicted)
        else:
            logger.debug("vector_index_synced loaded=%s evicted=0", report.loaded)
        return report


_synchronizer: IndexSynchronizer | None = None


def get_index_synchronizer() -> IndexSynchronizer:
    global _synchronizer
    if _synchronizer is None:
        _synchronizer = IndexSynchronizer()
    return _synchronizer


async def forget_embeddings(embedding_ids: Collection[str], *, index: VectorIndex | None = None) -> None:
    # Evict deleted rows; searches already drop them at re-read, this keeps the index small.
    if embedding_ids:
        await (index or get_vector_index()).remove(embedding_ids)


async def delete_embedding(
    session: AsyncSession,
    *,
    actor: Actor,
    embedding_id: str,
    index: VectorIndex | None = None,
) -> None:
    scope = ActorScope(session, actor)
    await embeddings_repo.delete_embedding(scope, embedding_id)
    await session.commit()
    await forget_embeddings([embedding_id], index=index)
