from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from agentforge.apps.api.main import create_app
from agentforge.persistence.db import SessionLocal
from agentforge.services.rollups import refresh_rollup
from agentforge.services.similarity import drain_pending_embeddings
from agentforge.tests.utils.factories import (
    TEST_MODEL_ID,
    create_test_project,
    create_test_user,
    insert_test_embedding,
    register_test_model,
    run_completed_analysis,
)


def _headers(user_id: str) -> dict[str, str]:
    return {"X-Actor-Id": user_id}


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_statistics_endpoint_wraps_data_and_hides_foreign_projects() -> None:
    owner = await create_test_user()
    stranger = await create_test_user()
    project_id = await create_test_project(owner, name="P1")
    await run_completed_analysis(owner, project_id=project_id, severities=("critical", "low"), compliance_score=75.0)

    async with _client() as client:
        ok = await client.get(f"/v1/projects/{project_id}/statistics", headers=_headers(owner.user_id))
        denied = await client.get(f"/v1/projects/{project_id}/statistics", headers=_headers(stranger.user_id))
        missing = await client.get("/v1/projects/nope/statistics", headers=_headers(stranger.user_id))
        anonymous = await client.get(f"/v1/projects/{project_id}/statistics")

    assert ok.status_code == 200
    body = ok.json()
    assert body["meta"]["api_version"] == "v1"
    assert body["data"]["total_violations"] == 2
    assert body["data"]["critical_violations"] == 1
    assert body["data"]["compliance_score"] == 75.0
    assert ok.headers["X-Request-Id"]

    assert denied.status_code == missing.status_code == 404
    assert denied.json()["error"]["code"] == missing.json()["error"]["code"] == "NOT_FOUND"
    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_compliance_trend_endpoint_validates_window() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await run_completed_analysis(owner, project_id=project_id, compliance_score=90.0)
    async with SessionLocal() as session:
        await refresh_rollup(session, "daily_compliance")

    async with _client() as client:
        ok = await client.get(
            f"/v1/projects/{project_id}/compliance-trend", params={"days_back": 7}, headers=_headers(owner.user_id)
        )
        bad = await client.get(
            f"/v1/projects/{project_id}/compliance-trend", params={"days_back": 0}, headers=_headers(owner.user_id)
        )

    assert ok.status_code == 200
    points = ok.json()["data"]
    assert len(points) == 1
    assert points[0]["compliant_checks"] == 1
    assert bad.status_code == 422


@pytest.mark.asyncio
async def test_search_endpoint_reports_dimension_mismatch() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await register_test_model()
    embedding_id, _ = await insert_test_embedding(owner, project_id=project_id, vector=[1, 0, 0, 0])
    await drain_pending_embeddings()

    async with _client() as client:
        ok = await client.post(
            "/v1/embeddings/search",
            json={"model_id": TEST_MODEL_ID, "query_vector": [1, 0, 0, 0], "threshold": 0.2},
            headers=_headers(owner.user_id),
        )
        mismatch = await client.post(
            "/v1/embeddings/search",
            json={"model_id": TEST_MODEL_ID, "query_vector": [1, 0, 0]},
            headers=_headers(owner.user_id),
        )

    assert ok.status_code == 200
    assert [row["embedding_id"] for row in ok.json()["data"]] == [embedding_id]
    assert mismatch.status_code == 422
    error = mismatch.json()["error"]
    assert error["code"] == "DIMENSION_MISMATCH"
    assert error["details"] == {"model_id": TEST_MODEL_ID, "expected": 4, "actual": 3}


@pytest.mark.asyncio
async def test_maintenance_endpoint_is_admin_only() -> None:
    admin = await create_test_user(role="admin")
    contributor = await create_test_user()

    async with _client() as client:
        denied = await client.post("/v1/maintenance/run", headers=_headers(contributor.user_id))
        ran = await client.post("/v1/maintenance/run", headers=_headers(admin.user_id))
        health = await client.get("/health")
        versioned_health = await client.get("/v1/health")

    assert denied.status_code == 404
    assert ran.status_code == 200
    assert ran.json()["data"]["status"] == "succeeded"
    body = health.json()
    assert body["status"] == "ok"
    assert body["maintenance_state"] == "succeeded"
    assert body["database_backend"] == "sqlite"
    assert set(body["db_pool"]) == {"size", "checked_out", "checked_in", "overflow"}
    assert versioned_health.json()["data"]["maintenance_state"] == "succeeded"


@pytest.mark.asyncio
async def test_rollup_endpoints_only_list_visible_projects() -> None:
    owner = await create_test_user()
    other = await create_test_user()
    mine = await create_test_project(owner, name="mine")
    await create_test_project(other, name="theirs")
    async with SessionLocal() as session:
        await refresh_rollup(session, "project_quality")
        await refresh_rollup(session, "weekly_performance")

    async with _client() as client:
        quality = await client.get("/v1/rollups/quality", headers=_headers(owner.user_id))
        performance = await client.get("/v1/rollups/performance", headers=_headers(owner.user_id))

    assert [row["project_id"] for row in quality.json()["data"]] == [mine]
    assert performance.json()["data"] == []
