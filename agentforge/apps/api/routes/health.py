from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from agentforge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from agentforge.apps.api.response import SuccessEnvelope, success_response
from agentforge.persistence.db import is_postgres, pool_stats
from agentforge.services.maintenance import get_scheduler


router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    maintenance_state: str
    database_backend: str
    db_pool: dict[str, int | None]


# Allow unwrapped responses at /health while /v1/health is wrapped into the envelope.
@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    payload = HealthResponse(
        status="ok",
        maintenance_state=get_scheduler().state,
        database_backend="postgresql" if is_postgres() else "sqlite",
        db_pool=pool_stats(),
    )
    return success_response(request=request, data=payload)
