from __future__ import annotations

import pytest
from sqlalchemy import delete, select

from agentforge.core.errors import ConstraintViolationError, DimensionMismatchError, NotFoundError
from agentforge.domain.models import Embedding
from agentforge.persistence.db import SessionLocal
from agentforge.persistence.guards import ActorScope, as_system
from agentforge.persistence.repos import embeddings as embeddings_repo
from agentforge.providers.vector.factory import get_vector_index
from agentforge.services.similarity import (
    build_pending_embeddings,
    delete_embedding,
    drain_pending_embeddings,
    find_similar_embeddings,
    rebuild_vector_index,
)
from agentforge.tests.utils.factories import (
    TEST_MODEL_ID,
    create_test_project,
    create_test_user,
    insert_test_embedding,
    register_test_model,
)


@pytest.mark.asyncio
async def test_reinserting_same_content_is_idempotent() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await register_test_model()

    first_id, created = await insert_test_embedding(owner, project_id=project_id, vector=[1, 0, 0, 0], content="x")
    second_id, created_again = await insert_test_embedding(
        owner, project_id=project_id, vector=[1, 0, 0, 0], content="x"
    )

    assert created is True
    assert created_again is False
    assert first_id == second_id
    async with SessionLocal() as session:
        rows = (await session.execute(as_system(select(Embedding)))).scalars().all()
    assert len(rows) == 1
    assert rows[0].index_status == "pending"


@pytest.mark.asyncio
async def test_same_hash_with_different_vector_is_rejected() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await register_test_model()
    await insert_test_embedding(owner, project_id=project_id, vector=[1, 0, 0, 0], content="x")

    with pytest.raises(ConstraintViolationError) as excinfo:
        await insert_test_embedding(owner, project_id=project_id, vector=[0, 1, 0, 0], content="x")
    assert excinfo.value.kind == "uniqueness"


@pytest.mark.asyncio
async def test_wrong_dimension_is_rejected_on_insert_and_search() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await register_test_model()

    with pytest.raises(DimensionMismatchError) as excinfo:
        await insert_test_embedding(owner, project_id=project_id, vector=[1, 0, 0])
    assert (excinfo.value.expected, excinfo.value.actual) == (4, 3)

    async with SessionLocal() as session:
        with pytest.raises(DimensionMismatchError):
            await find_similar_embeddings(
                session, query_vector=[1, 0, 0, 0, 0], model_id=TEST_MODEL_ID, actor=owner.actor
            )


@pytest.mark.asyncio
async def test_zero_vector_and_unknown_model_are_rejected() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await register_test_model()

    with pytest.raises(ConstraintViolationError):
        await insert_test_embedding(owner, project_id=project_id, vector=[0, 0, 0, 0])
    with pytest.raises(NotFoundError):
        await insert_test_embedding(owner, project_id=project_id, vector=[1, 0, 0, 0], model_id="unknown")


@pytest.mark.asyncio
async def test_pending_rows_become_searchable_after_build() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await register_test_model()
    embedding_id, _ = await insert_test_embedding(owner, project_id=project_id, vector=[0.5, 0.5, 0, 0])

    async with SessionLocal() as session:
        before = await find_similar_embeddings(
            session, query_vector=[0.5, 0.5, 0, 0], model_id=TEST_MODEL_ID, actor=owner.actor, threshold=0.1
        )
    assert before == []

    report = await build_pending_embeddings()
    assert report.indexed == [embedding_id]

    async with SessionLocal() as session:
        after = await find_similar_embeddings(
            session, query_vector=[0.5, 0.5, 0, 0], model_id=TEST_MODEL_ID, actor=owner.actor, threshold=0.1
        )
        stored = await embeddings_repo.get_embedding(ActorScope(session, owner.actor), embedding_id)
    assert [match.embedding_id for match in after] == [embedding_id]
    assert after[0].distance == pytest.approx(0.0, abs=1e-9)
    assert after[0].similarity == pytest.approx(1.0)
    assert stored.index_status == "indexed"


@pytest.mark.asyncio
async def test_search_orders_results_and_respects_threshold_and_limit() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await register_test_model()
    near_id, _ = await insert_test_embedding(owner, project_id=project_id, vector=[1, 0.1, 0, 0])
    exact_id, _ = await insert_test_embedding(owner, project_id=project_id, vector=[1, 0, 0, 0])
    await insert_test_embedding(owner, project_id=project_id, vector=[0, 0, 1, 0])
    await drain_pending_embeddings()

    async with SessionLocal() as session:
        matches = await find_similar_embeddings(
            session, query_vector=[1, 0, 0, 0], model_id=TEST_MODEL_ID, actor=owner.actor, threshold=0.3
        )
        limited = await find_similar_embeddings(
            session, query_vector=[1, 0, 0, 0], model_id=TEST_MODEL_ID, actor=owner.actor, threshold=2.0, limit=1
        )
        with pytest.raises(ConstraintViolationError):
            await find_similar_embeddings(
                session, query_vector=[1, 0, 0, 0], model_id=TEST_MODEL_ID, actor=owner.actor, threshold=2.5
            )
        with pytest.raises(ConstraintViolationError):
            await find_similar_embeddings(
                session, query_vector=[1, 0, 0, 0], model_id=TEST_MODEL_ID, actor=owner.actor, limit=0
            )

    assert [match.embedding_id for match in matches] == [exact_id, near_id]
    assert matches[0].distance <= matches[1].distance
    assert [match.embedding_id for match in limited] == [exact_id]


@pytest.mark.asyncio
async def test_search_never_returns_other_users_embeddings() -> None:
    owner = await create_test_user()
    stranger = await create_test_user()
    project_id = await create_test_project(owner)
    stranger_project = await create_test_project(stranger)
    await register_test_model()
    await insert_test_embedding(owner, project_id=project_id, vector=[1, 0, 0, 0])
    theirs, _ = await insert_test_embedding(stranger, project_id=stranger_project, vector=[1, 0, 0, 0])
    await drain_pending_embeddings()

    async with SessionLocal() as session:
        matches = await find_similar_embeddings(
            session, query_vector=[1, 0, 0, 0], model_id=TEST_MODEL_ID, actor=stranger.actor, threshold=0.5
        )
        with pytest.raises(NotFoundError):
            await find_similar_embeddings(
                session,
                query_vector=[1, 0, 0, 0],
                model_id=TEST_MODEL_ID,
                actor=stranger.actor,
                project_id=project_id,
            )
    assert [match.embedding_id for match in matches] == [theirs]


@pytest.mark.asyncio
async def test_empty_corpus_returns_empty_list() -> None:
    owner = await create_test_user()
    await create_test_project(owner)
    await register_test_model()

    async with SessionLocal() as session:
        matches = await find_similar_embeddings(
            session, query_vector=[1, 0, 0, 0], model_id=TEST_MODEL_ID, actor=owner.actor
        )
    assert matches == []


@pytest.mark.asyncio
async def test_rebuild_restores_index_and_delete_evicts() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await register_test_model()
    embedding_id, _ = await insert_test_embedding(owner, project_id=project_id, vector=[0, 1, 0, 0])
    await drain_pending_embeddings()

    index = get_vector_index()
    await index.clear()
    assert await rebuild_vector_index() == 1
    assert await index.size(TEST_MODEL_ID) == 1

    async with SessionLocal() as session:
        await delete_embedding(session, actor=owner.actor, embedding_id=embedding_id)
    assert await index.size(TEST_MODEL_ID) == 0
    async with SessionLocal() as session:
        matches = await find_similar_embeddings(
            session, query_vector=[0, 1, 0, 0], model_id=TEST_MODEL_ID, actor=owner.actor, threshold=2.0
        )
    assert matches == []


@pytest.mark.asyncio
async def test_requeue_sends_every_row_back_through_build() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await register_test_model()
    await insert_test_embedding(owner, project_id=project_id, vector=[1, 0, 0, 0], content="a")
    await insert_test_embedding(owner, project_id=project_id, vector=[0, 1, 0, 0], content="b")
    await drain_pending_embeddings()

    async with SessionLocal() as session:
        assert await embeddings_repo.requeue_all(session) == 2
        await session.commit()
        statuses = (await session.execute(as_system(select(Embedding.index_status)))).scalars().all()
    assert sorted(statuses) == ["pending", "pending"]

    report = await drain_pending_embeddings()
    assert len(report.indexed) == 2


@pytest.mark.asyncio
async def test_stale_index_entries_do_not_starve_the_page() -> None:
    owner = await create_test_user()
    project_id = await create_test_project(owner)
    await register_test_model()
    nearest, _ = await insert_test_embedding(owner, project_id=project_id, vector=[1, 0, 0, 0])
    second, _ = await insert_test_embedding(owner, project_id=project_id, vector=[1, 0.01, 0, 0])
    survivor, _ = await insert_test_embedding(owner, project_id=project_id, vector=[1, 0.2, 0, 0])
    await drain_pending_embeddings()

    # Another process removed the two nearest rows; this index still holds them.
    async with SessionLocal() as session:
        await session.execute(
            as_system(delete(Embedding).where(Embedding.id.in_([nearest, second]))).execution_options(
                synchronize_session=False
            )
        )
        await session.commit()
    index = get_vector_index()
    assert await index.size(TEST_MODEL_ID) == 3

    async with SessionLocal() as session:
        matches = await find_similar_embeddings(
            session, query_vector=[1, 0, 0, 0], model_id=TEST_MODEL_ID, actor=owner.actor, limit=1
        )
    assert [match.embedding_id for match in matches] == [survivor]
    assert await index.embedding_ids() == [survivor]
