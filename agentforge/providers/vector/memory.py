from __future__ import annotations

from dataclasses import dataclass, field
import threading
from typing import Collection, Sequence

import numpy as np

from agentforge.core.errors import VectorIndexError
from agentforge.providers.vector.base import IndexEntry, IndexMatch


@dataclass
class _ModelPartition:
    dimension: int
    ids: list[str] = field(default_factory=list)
    projects: list[str] = field(default_factory=list)
    rows: list[np.ndarray] = field(default_factory=list)
    positions: dict[str, int] = field(default_factory=dict)
    # Stacked unit vectors, rebuilt lazily after writes.
    matrix: np.ndarray | None = None


def _unit(vector: Sequence[float]) -> np.ndarray:
    array = np.asarray(vector, dtype=np.float64).reshape(-1)
    norm = float(np.linalg.norm(array))
    if not np.isfinite(norm) or norm == 0.0:
        raise VectorIndexError("cannot index a zero or non-finite vector")
    return array / norm


class InMemoryVectorIndex:
    """Exact cosine search over unit-normalized numpy vectors, partitioned by model.

    Brute force is exact, so results only depend on the stored set: distances
    are clamped to [0, 2] and ties are ordered by embedding id.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._partitions: dict[str, _ModelPartition] = {}
        self._model_of: dict[str, str] = {}

    async def insert(self, entry: IndexEntry) -> None:
        unit = _unit(entry.vector)
        with self._lock:
            partition = self._partitions.get(entry.model_id)
            if partition is None:
                partition = _ModelPartition(dimension=unit.shape[0])
                self._partitions[entry.model_id] = partition
            if unit.shape[0] != partition.dimension:
                raise VectorIndexError(
                    f"vector length {unit.shape[0]} does not match index dimension {partition.dimension}"
                )
            position = partition.positions.get(entry.embedding_id)
            if position is None:
                partition.positions[entry.embedding_id] = len(partition.ids)
                partition.ids.append(entry.embedding_id)
                partition.projects.append(entry.project_id)
                partition.rows.append(unit)
            else:
                partition.projects[position] = entry.project_id
                partition.rows[position] = unit
            partition.matrix = None
            self._model_of[entry.embedding_id] = entry.model_id

    async def remove(self, embedding_ids: Collection[str]) -> None:
        with self._lock:
            touched: set[str] = set()
            for embedding_id in embedding_ids:
                model_id = self._model_of.pop(embedding_id, None)
                if model_id is None:
                    continue
                partition = self._partitions[model_id]
                position = partition.positions.pop(embedding_id)
                # Swap-remove keeps removal O(1); search order never depends on position.
                last = len(partition.ids) - 1
                if position != last:
                    partition.ids[position] = partition.ids[last]
                    partition.projects[position] = partition.projects[last]
                    partition.rows[position] = partition.rows[last]
                    partition.positions[partition.ids[position]] = position
                partition.ids.pop()
                partition.projects.pop()
                partition.rows.pop()
                partition.matrix = None
                touched.add(model_id)
            for model_id in touched:
                if not self._partitions[model_id].ids:
                    del self._partitions[model_id]

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
        with self._lock:
            partition = self._partitions.get(model_id)
            if partition is None or not partition.ids:
                return []
            query = _unit(query_vector)
            if query.shape[0] != partition.dimension:
                raise VectorIndexError(
                    f"query length {query.shape[0]} does not match index dimension {partition.dimension}"
                )
            if partition.matrix is None:
                partition.matrix = np.vstack(partition.rows)
            distances = np.clip(1.0 - partition.matrix @ query, 0.0, 2.0)
            ids = partition.ids
            projects = partition.projects
            allowed = set(project_ids) if project_ids is not None else None
            candidates = [
                (float(distances[position]), ids[position], projects[position])
                for position in np.flatnonzero(distances <= threshold)
                if allowed is None or projects[position] in allowed
            ]
        candidates.sort(key=lambda item: (item[0], item[1]))
        return [
            IndexMatch(embedding_id=embedding_id, project_id=project_id, distance=distance)
            for distance, embedding_id, project_id in candidates[:limit]
        ]

    async def clear(self) -> None:
        with self._lock:
            self._partitions.clear()
            self._model_of.clear()

    async def size(self, model_id: str | None = None) -> int:
        with self._lock:
            if model_id is not None:
                partition = self._partitions.get(model_id)
                return len(partition.ids) if partition else 0
            return len(self._model_of)

    async def embedding_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._model_of)
