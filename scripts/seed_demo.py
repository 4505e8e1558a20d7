from __future__ import annotations

import asyncio
from dataclasses import dataclass
import sys

from sqlalchemy import select

from agentforge.core.config import DEFAULT_EMBED_DIM, DEFAULT_EMBED_MODEL
from agentforge.domain.models import Project, User
from agentforge.persistence.db import SessionLocal
from agentforge.persistence.guards import Actor, ActorScope, as_system
from agentforge.persistence.repos import analyses as analyses_repo
from agentforge.persistence.repos import embeddings as embeddings_repo
from agentforge.persistence.repos import projects as projects_repo
from agentforge.persistence.repos import violations as violations_repo
from agentforge.persistence.repos.users import create_user
from agentforge.providers.embeddings import embed_code


DEMO_OWNER_ID = "u1"
DEMO_OWNER_NAME = "demo-owner"
DEMO_PROJECT_NAME = "Demo Service"


@dataclass(frozen=True)
class DemoFile:
    # Keep seed content deterministic so embeddings and rollups are repeatable.
    path: str
    lines_of_code: int
    quality_score: float
    source: str


@dataclass(frozen=True)
class DemoViolation:
    path: str
    rule_id: str
    rule_name: str
    severity: str
    message: str


def build_demo_files() -> tuple[DemoFile, ...]:
    return (
        DemoFile(
            path="app/handlers.py",
            lines_of_code=120,
            quality_score=78.5,
            source="def handle_request(request): return router.dispatch(request.path, request.body)",
        ),
        DemoFile(
            path="app/router.py",
            lines_of_code=64,
            quality_score=91.0,
            source="class Router: def dispatch(self, path, body): return self.routes[path](body)",
        ),
        DemoFile(
            path="app/db.py",
            lines_of_code=88,
            quality_score=66.0,
            source="def run_query(sql): cursor.execute(sql); return cursor.fetchall()",
        ),
    )


def build_demo_violations() -> tuple[DemoViolation, ...]:
    return (
        DemoViolation(
            path="app/db.py",
            rule_id="SEC001",
            rule_name="sql-injection",
            severity="critical",
            message="Query built from untrusted input.",
        ),
        DemoViolation(
            path="app/handlers.py",
            rule_id="STY010",
            rule_name="long-line",
            severity="low",
            message="Line exceeds 120 characters.",
        ),
    )


async def seed_demo() -> int:
    # Use the shared async session factory so env config matches the API container.
    async with SessionLocal() as session:
        owner = (await session.execute(select(User).where(User.id == DEMO_OWNER_ID))).scalar_one_or_none()
        if owner is None:
            await create_user(session, username=DEMO_OWNER_NAME, role="contributor", user_id=DEMO_OWNER_ID)
        await embeddings_repo.register_model(session, model_id=DEFAULT_EMBED_MODEL, dimension=DEFAULT_EMBED_DIM)

        existing = await session.execute(
            as_system(select(Project.id).where(Project.owner_id == DEMO_OWNER_ID, Project.name == DEMO_PROJECT_NAME))
        )
        if existing.scalar_one_or_none() is not None:
            await session.commit()
            print("Demo project already seeded; skipping.")
            return 0

        scope = ActorScope(session, Actor(user_id=DEMO_OWNER_ID))
        project = await projects_repo.create_project(
            scope,
            name=DEMO_PROJECT_NAME,
            repository_url="https://example.invalid/demo-service.git",
            technology_stack={"languages": ["python"]},
        )
        analysis = await analyses_repo.create_analysis(scope, project_id=project.id, analysis_type="full")
        await analyses_repo.start_analysis(scope, analysis.id)

        file_ids: dict[str, str] = {}
        for demo_file in build_demo_files():
            file_analysis = await analyses_repo.add_file_analysis(
                scope,
                analysis_id=analysis.id,
                file_path=demo_file.path,
                file_type="py",
                lines_of_code=demo_file.lines_of_code,
                quality_score=demo_file.quality_score,
            )
            file_ids[demo_file.path] = file_analysis.id
            await embeddings_repo.insert_embedding(
                scope,
                project_id=project.id,
                model_id=DEFAULT_EMBED_MODEL,
                content_hash=embeddings_repo.content_hash_for(demo_file.source),
                vector=embed_code(demo_file.source),
                unit_type="file",
                unit_name=demo_file.path,
                file_analysis_id=file_analysis.id,
                snippet=demo_file.source,
            )

        for demo_violation in build_demo_violations():
            await violations_repo.create_violation(
                scope,
                project_id=project.id,
                analysis_id=analysis.id,
                file_analysis_id=file_ids[demo_violation.path],
                rule_id=demo_violation.rule_id,
                rule_name=demo_violation.rule_name,
                severity=demo_violation.severity,
                message=demo_violation.message,
            )

        await analyses_repo.complete_analysis(
            scope,
            analysis.id,
            compliance_score=82.0,
            quality_score=78.5,
            security_score=60.0,
            performance_score=88.0,
        )
        await session.commit()
        print(f"Seeded demo project {project.id} with {len(file_ids)} files.")
        return 0


def main() -> int:
    # Surface clear failures and exit non-zero so CI/dev scripts can detect issues.
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
