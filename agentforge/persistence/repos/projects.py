from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from agentforge.core.errors import AccessDeniedError, ConstraintViolationError
from agentforge.domain.enums import PROJECT_STATUSES, require_member
from agentforge.domain.models import Analysis, Embedding, FileAnalysis, Project, Violation
from agentforge.persistence.guards import ActorScope
from agentforge.persistence.integrity import classify_integrity_error
from agentforge.persistence.repos.audit import stage_scope_event
from agentforge.persistence.repos.grants import delete_grants_for


# Fields an owner may edit after creation; status has its own transition call.
_UPDATABLE_FIELDS = ("name", "description", "repository_url", "technology_stack", "metadata_json")


@dataclass
class ProjectDeletion:
    project_id: str
    analyses: int = 0
    file_analyses: int = 0
    violations: int = 0
    embeddings: int = 0
    # Removed embedding ids so callers can evict them from the vector index.
    embedding_ids: list[str] = field(default_factory=list)


def _require_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ConstraintViolationError("project name must not be empty", field="name")
    if len(cleaned) > 255:
        raise ConstraintViolationError("project name exceeds 255 characters", field="name")
    return cleaned


async def create_project(
    scope: ActorScope,
    *,
    name: str,
    description: str | None = None,
    repository_url: str | None = None,
    technology_stack: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> Project:
    # The creating actor becomes the owner; viewers and inactive users cannot create projects.
    if not await scope.can_write():
        raise AccessDeniedError("project")
    project = Project(
        owner_id=scope.user_id,
        name=_require_name(name),
        description=description,
        repository_url=repository_url,
        technology_stack=technology_stack,
        metadata_json=metadata,
        status="active",
    )
    scope.session.add(project)
    try:
        await scope.session.flush()
    except IntegrityError as exc:
        raise classify_integrity_error(exc, resource_type="project") from exc
    return project


async def get_project(scope: ActorScope, project_id: str) -> Project:
    return await scope.require_project(project_id)


async def list_projects(scope: ActorScope, *, status: str | None = None) -> list[Project]:
    stmt = scope.select(Project)
    if status is not None:
        require_member(status, PROJECT_STATUSES, field="status")
        stmt = stmt.where(Project.status == status)
    return await scope.scalars(stmt.order_by(Project.created_at, Project.id))


async def update_project(scope: ActorScope, project_id: str, **changes: Any) -> Project:
    project = await scope.require_project(project_id, manage=True)
    unknown = sorted(set(changes) - set(_UPDATABLE_FIELDS))
    if unknown:
        raise ConstraintViolationError(f"unknown project fields: {', '.join(unknown)}", field=unknown[0])
    if "name" in changes:
        changes["name"] = _require_name(changes["name"])
    for key, value in changes.items():
        setattr(project, key, value)
    await scope.session.flush()
    return project


async def set_project_status(scope: ActorScope, project_id: str, *, status: str) -> Project:
    require_member(status, PROJECT_STATUSES, field="status")
    project = await scope.require_project(project_id, manage=True)
    previous = project.status
    project.status = status
    await scope.session.flush()
    if previous != status:
        stage_scope_event(
            scope,
            "project.status_changed",
            resource_type="project",
            resource_id=project_id,
            project_id=project_id,
            metadata={"from": previous, "to": status},
        )
    return project


async def _count_children(scope: ActorScope, project_id: str) -> dict[str, int]:
    counts: dict[str, int] = {}
    for model in (Analysis, FileAnalysis, Violation, Embedding):
        stmt = scope.select(model, func.count(model.id)).where(model.project_id == project_id)
        counts[model.__resource_type__] = int(await scope.scalar(stmt) or 0)
    return counts


async def _child_ids(scope: ActorScope, model: type, project_id: str) -> list[str]:
    return [
        str(row_id)
        for row_id in await scope.scalars(scope.select(model, model.id).where(model.project_id == project_id))
    ]


async def delete_project(scope: ActorScope, project_id: str, *, cascade: bool = False) -> ProjectDeletion:
    """Delete a project, refusing while dependents exist unless ``cascade`` is set.

    Cascading removes embeddings, violations, file analyses and analyses in
    dependency order inside the caller's transaction, together with grants that
    point at any of the removed rows.
    """
    await scope.require_project(project_id, manage=True)
    counts = await _count_children(scope, project_id)
    if not cascade and any(counts.values()):
        present = ", ".join(f"{name}={count}" for name, count in counts.items() if count)
        raise ConstraintViolationError(
            f"project {project_id} still has dependent rows ({present})",
            kind="restrict",
        )

    deletion = ProjectDeletion(project_id=project_id)
    # Children first: embeddings and violations reference file analyses, which reference analyses.
    for model, attr in (
        (Embedding, "embeddings"),
        (Violation, "violations"),
        (FileAnalysis, "file_analyses"),
        (Analysis, "analyses"),
    ):
        ids = await _child_ids(scope, model, project_id)
        if model is Embedding:
            deletion.embedding_ids = ids
        if ids:
            await scope.execute(scope.delete(model, manage=True).where(model.project_id == project_id))
            await delete_grants_for(scope, resource_type=model.__resource_type__, resource_ids=ids)
        setattr(deletion, attr, len(ids))

    await scope.execute(scope.delete(Project, manage=True).where(Project.id == project_id))
    await delete_grants_for(scope, resource_type="project", resource_ids=[project_id])
    try:
        await scope.session.flush()
    except IntegrityError as exc:
        raise classify_integrity_error(exc, resource_type="project") from exc
    stage_scope_event(
        scope,
        "project.deleted",
        resource_type="project",
        resource_id=project_id,
        project_id=project_id,
        metadata={
            "cascade": cascade,
            "analyses": deletion.analyses,
            "file_analyses": deletion.file_analyses,
            "violations": deletion.violations,
            "embeddings": deletion.embeddings,
        },
    )
    return deletion
