from __future__ import annotations

from dataclasses import dataclass
from typing import Collection, Protocol, Sequence


@dataclass(frozen=True)
class IndexEntry:
    embedding_id: str
    project_id: str
    model_id: str
    vector: Sequence[float]


@dataclass(frozen=True)
class IndexMatch:
    embedding_id: str
    project_id: str
    # Cosine distance in [0, 2]; lower is more similar.
    distance: float


class VectorIndex(Protocol):
    async def insert(self, entry: IndexEntry) -> None:
        ...

    async def remove(self, embedding_ids: Collection[str]) -> None:
        ...

    async def search(
        self,
        *,
        model_id: str,
        query_vector: Sequence[float],
        threshold: float,
        limit: int,
        project_ids: Collection[str] | None = None,
    ) -> list[IndexMatch]:
        ...

    async def clear(self) -> None:
        ...

    async def size(self, model_id: str | None = None) -> int:
        ...

    async def embedding_ids(self) -> list[str]:
        ...
