from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from agentforge.apps.api.deps import get_actor, get_db, get_index
from agentforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from agentforge.apps.api.response import SuccessEnvelope
from agentforge.persistence.guards import Actor
from agentforge.providers.vector.base import VectorIndex
from agentforge.services.similarity import find_similar_embeddings


router = APIRouter(prefix="/embeddings", tags=["embeddings"], responses=DEFAULT_ERROR_RESPONSES)


class SimilaritySearchRequest(BaseModel):
    model_id: str = Field(min_length=1, max_length=100)
    query_vector: list[float] = Field(min_length=1)
    # Omitted threshold falls back to vector_search_default_threshold.
    threshold: float | None = Field(default=None, ge=0.0, le=2.0)
    limit: int = Field(default=10, ge=1)
    project_id: str | None = None


class SimilarEmbeddingResponse(BaseModel):
    embedding_id: str
    project_id: str
    model_id: str
    unit_type: str
    unit_name: str | None
    file_analysis_id: str | None
    content_hash: str
    snippet: str | None
    distance: float
    similarity: float


@router.post(
    "/search",
    response_model=SuccessEnvelope[list[SimilarEmbeddingResponse]] | list[SimilarEmbeddingResponse],
)
async def search_embeddings(
    payload: SimilaritySearchRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    index: VectorIndex = Depends(get_index),
) -> list[SimilarEmbeddingResponse]:
    # Dimension mismatches surface as 422 DIMENSION_MISMATCH, never as an empty result.
    matches = await find_similar_embeddings(
        db,
        query_vector=payload.query_vector,
        model_id=payload.model_id,
        actor=actor,
        threshold=payload.threshold,
        limit=payload.limit,
        project_id=payload.project_id,
        index=index,
    )
    return [
        SimilarEmbeddingResponse(
            embedding_id=match.embedding_id,
            project_id=match.project_id,
            model_id=match.model_id,
            unit_type=match.unit_type,
            unit_name=match.unit_name,
            file_analysis_id=match.file_analysis_id,
            content_hash=match.content_hash,
            snippet=match.snippet,
            distance=match.distance,
            similarity=match.similarity,
        )
        for match in matches
    ]
