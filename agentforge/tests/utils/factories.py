from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from agentforge.persistence.db import SessionLocal
from agentforge.persistence.guards import Actor, ActorScope
from agentforge.persistence.repos import analyses as analyses_repo
from agentforge.persistence.repos import embeddings as embeddings_repo
from agentforge.persistence.repos import projects as projects_repo
from agentforge.persistence.repos import violations as violations_repo
from agentforge.persistence.repos.users import create_user


TEST_MODEL_ID = "test-embed-4"
TEST_MODEL_DIM = 4


@dataclass(frozen=True)
class SeededUser:
    user_id: str
    actor: Actor


async def create_test_user(*, role: str = "contributor", username: str | None = None) -> SeededUser:
    # Provision a user outside any actor scope, as identity sync would.
    user_id = uuid4().hex
    async with SessionLocal() as session:
        await create_user(session, username=username or f"user-{user_id[:12]}", role=role, user_id=user_id)
        await session.commit()
    return SeededUser(user_id=user_id, actor=Actor(user_id=user_id))


async def create_test_project(owner: SeededUser, *, name: str = "project") -> str:
    async with SessionLocal() as session:
        project = await projects_repo.create_project(ActorScope(session, owner.actor), name=name)
        await session.commit()
        return project.id


async def run_completed_analysis(
    owner: SeededUser,
    *,
    project_id: str,
    severities: tuple[str, ...] = (),
    compliance_score: float | None = None,
    files: tuple[dict[str, Any], ...] = (),
) -> str:
    # Create, start, populate and complete one analysis; violations attach to it.
    async with SessionLocal() as session:
        scope = ActorScope(session, owner.actor)
        analysis = await analyses_repo.create_analysis(scope, project_id=project_id, analysis_type="full")
        await analyses_repo.start_analysis(scope, analysis.id)
        for spec in files:
            await analyses_repo.add_file_analysis(scope, analysis_id=analysis.id, **spec)
        for position, severity in enumerate(severities):
            await violations_repo.create_violation(
                scope,
                project_id=project_id,
                analysis_id=analysis.id,
                rule_id=f"R{position:03d}",
                rule_name=f"rule-{severity}",
                severity=severity,
                message=f"{severity} finding",
            )
        await analyses_repo.complete_analysis(scope, analysis.id, compliance_score=compliance_score)
        await session.commit()
        return analysis.id


async def register_test_model(*, model_id: str = TEST_MODEL_ID, dimension: int = TEST_MODEL_DIM) -> str:
    async with SessionLocal() as session:
        await embeddings_repo.register_model(session, model_id=model_id, dimension=dimension)
        await session.commit()
    return model_id


async def insert_test_embedding(
    owner: SeededUser,
    *,
    project_id: str,
    vector: list[float],
    content: str | None = None,
    model_id: str = TEST_MODEL_ID,
) -> tuple[str, bool]:
    async with SessionLocal() as session:
        row, created = await embeddings_repo.insert_embedding(
            ActorScope(session, owner.actor),
            project_id=project_id,
            model_id=model_id,
            content_hash=embeddings_repo.content_hash_for(content or repr(vector)),
            vector=vector,
        )
        await session.commit()
        return row.id, created
