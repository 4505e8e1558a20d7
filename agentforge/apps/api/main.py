from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
import json
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from agentforge.apps.api.errors import install_exception_handlers
from agentforge.apps.api.response import API_VERSION, is_versioned_request
from agentforge.apps.api.routes.embeddings import router as embeddings_router
from agentforge.apps.api.routes.health import router as health_router
from agentforge.apps.api.routes.maintenance import router as maintenance_router
from agentforge.apps.api.routes.projects import router as projects_router
from agentforge.apps.api.routes.rollups import router as rollups_router
from agentforge.core.config import get_settings
from agentforge.core.logging import configure_logging
from agentforge.services.maintenance import run_index_sync_loop
from agentforge.services.similarity import get_index_synchronizer


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # The memory backend starts empty in every process and the worker builds the index elsewhere;
    # load the indexed rows before serving, then keep pulling new ones.
    if get_settings().vector_index_backend != "memory":
        yield
        return
    try:
        await get_index_synchronizer().sync()
    except SQLAlchemyError as exc:
        logger.warning("vector_index_warmup_failed", exc_info=exc)
    sync_task = asyncio.create_task(run_index_sync_loop())
    try:
        yield
    finally:
        sync_task.cancel()
        with suppress(asyncio.CancelledError):
            await sync_task


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="AgentForge Analysis Store API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "api_request path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            latency_ms,
        )
        # Wrap versioned JSON responses in the standardized success envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.headers.get("content-type", "").startswith("application/json")
        ):
            raw_body = getattr(response, "body", None)
            if raw_body is None:
                chunks = [chunk async for chunk in response.body_iterator]
                raw_body = b"".join(chunks)
            try:
                payload = json.loads(raw_body) if raw_body else None
            except (TypeError, ValueError):
                payload = None
            is_enveloped = (
                isinstance(payload, dict)
                and "data" in payload
                and isinstance(payload.get("meta"), dict)
                and payload["meta"].get("api_version") == API_VERSION
            )
            wrapped = payload if is_enveloped else {
                "data": payload,
                "meta": {"request_id": request_id, "api_version": API_VERSION},
            }
            wrapped_response = JSONResponse(content=wrapped, status_code=response.status_code)
            for key, value in response.headers.items():
                if key.lower() in {"content-length", "content-type"}:
                    continue
                wrapped_response.headers[key] = value
            response = wrapped_response

        response.headers.setdefault("X-Request-Id", request_id)
        return response

    install_exception_handlers(app)

    # Mount versioned v1 API routes.
    app.include_router(projects_router, prefix=f"/{API_VERSION}")
    app.include_router(rollups_router, prefix=f"/{API_VERSION}")
    app.include_router(embeddings_router, prefix=f"/{API_VERSION}")
    app.include_router(maintenance_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Unversioned health for load balancer probes.
    app.include_router(health_router, include_in_schema=False)
    return app


app = create_app()
