from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy import Delete, Select, Update, and_, delete, event, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import ORMExecuteState, Session
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.sql.util import find_tables

from agentforge.core.errors import NotFoundError
from agentforge.domain.enums import ROLE_ADMIN, ROLE_VIEWER
from agentforge.domain.models import (
    AccessGrant,
    AuditEvent,
    Base,
    PROJECT_CHILD_MODELS,
    PROJECT_ROLLUP_MODELS,
    Project,
    TENANT_SCOPED_MODELS,
    User,
)


# Execution options that mark a statement as built by an actor scope or by maintenance internals.
SCOPE_OPTION = "agentforge_actor"
SYSTEM_OPTION = "agentforge_system"
SYSTEM_EXECUTION_OPTIONS: dict[str, Any] = {SYSTEM_OPTION: True}

# Every ORM statement on these tables must carry an actor or a system tag.
_SCOPED_CLASSES = frozenset(TENANT_SCOPED_MODELS + PROJECT_ROLLUP_MODELS + (AuditEvent,))
_SCOPED_TABLES = frozenset(model.__table__.name for model in _SCOPED_CLASSES)

ModelT = TypeVar("ModelT", bound=Base)
StatementT = TypeVar("StatementT", Select, Update, Delete)


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Surface statements that reach tenant-scoped tables without an actor predicate.
    message: str


@dataclass(frozen=True)
class Actor:
    # Explicit request identity; never inferred from connection or task state.
    user_id: str
    request_id: str | None = None


def require_actor(actor: Actor | None) -> Actor:
    # Every tenant-scoped operation needs an explicit actor identity.
    if actor is None or not getattr(actor, "user_id", None):
        raise TenantPredicateError("Actor predicate required but actor is missing")
    return actor


def as_system(statement: StatementT) -> StatementT:
    # Tag maintenance/rollup statements that legitimately read across all tenants.
    return statement.execution_options(**SYSTEM_EXECUTION_OPTIONS)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ActorScope:
    """Builds every tenant-scoped statement with the actor predicate already applied.

    Repositories receive a scope instead of a bare session. Statements produced by
    ``select``/``update``/``delete`` carry the actor tag, and ``execute`` refuses
    anything that was not built here, so the access predicate cannot be skipped.

    Visibility rule: the actor is active and is the owner, holds an explicit grant,
    or is an administrator. Child rows (analyses, file analyses, violations,
    embeddings) are visible when their project is visible, or through a grant on
    the child row itself. Writes additionally require a non-viewer role and a
    ``write`` grant; ``manage`` writes (project settings, deletes) are reserved to
    the owner and administrators.
    """

    def __init__(self, session: AsyncSession, actor: Actor) -> None:
        self.session = session
        self.actor = require_actor(actor)
        self._options: dict[str, Any] = {SCOPE_OPTION: self.actor.user_id}

    @property
    def user_id(self) -> str:
        return self.actor.user_id

    # -- predicates -----------------------------------------------------------------

    def _active(self, *, write: bool) -> ColumnElement[bool]:
        conditions = [User.id == self.user_id, User.is_active.is_(True)]
        if write:
            conditions.append(User.role != ROLE_VIEWER)
        return exists().where(*conditions)

    def _is_admin(self) -> ColumnElement[bool]:
        return exists().where(
            User.id == self.user_id,
            User.role == ROLE_ADMIN,
            User.is_active.is_(True),
        )

    def _granted(self, resource_type: str, id_column: Any, *, write: bool) -> ColumnElement[bool]:
        conditions = [
            AccessGrant.user_id == self.user_id,
            AccessGrant.resource_type == resource_type,
            AccessGrant.resource_id == id_column,
            or_(AccessGrant.expires_at.is_(None), AccessGrant.expires_at > _utc_now()),
        ]
        if write:
            conditions.append(AccessGrant.permission == "write")
        return exists().where(*conditions)

    def _project_access(self, *, write: bool, manage: bool) -> ColumnElement[bool]:
        owner = Project.owner_id == self.user_id
        if manage:
            return or_(owner, self._is_admin())
        return or_(owner, self._granted("project", Project.id, write=write), self._is_admin())

    def visible_project_ids(self, *, write: bool = False) -> Select:
        # Subquery of project ids the actor may read (or write); used to filter rollup tables.
        return select(Project.id).where(self.predicate_for(Project, write=write))

    def tag(self, statement: StatementT) -> StatementT:
        # Mark a hand-built statement whose tenant filtering goes through visible_project_ids.
        return statement.execution_options(**self._options)

    def predicate_for(self, model: type[Base], *, write: bool = False, manage: bool = False) -> ColumnElement[bool]:
        active = self._active(write=write or manage)
        if model is Project:
            return and_(active, self._project_access(write=write, manage=manage))
        if model in PROJECT_CHILD_MODELS:
            # Child visibility is re-derived from the parent project, plus grants on the child row itself.
            parent_ids = select(Project.id).where(self._project_access(write=write, manage=manage))
            access = model.project_id.in_(parent_ids)
            if not manage:
                access = or_(access, self._granted(model.__resource_type__, model.id, write=write))
            return and_(active, access)
        if model is AuditEvent:
            return and_(active, or_(AuditEvent.actor_id == self.user_id, self._is_admin()))
        raise TenantPredicateError(f"No actor predicate defined for {model.__name__}")

    # -- statement builders ------------------------------------------------------------

    def select(self, model: type[Base], *columns: Any, write: bool = False) -> Select:
        if columns:
            stmt = select(*columns).select_from(model)
        else:
            stmt = select(model)
            if write:
                # Lock the guarded rows for the rest of the transaction (no-op on SQLite).
                stmt = stmt.with_for_update()
        return stmt.where(self.predicate_for(model, write=write)).execution_options(**self._options)

    def update(self, model: type[Base], *, manage: bool = False) -> Update:
        return (
            update(model)
            .where(self.predicate_for(model, write=True, manage=manage))
            .execution_options(synchronize_session="fetch", **self._options)
        )

    def delete(self, model: type[Base], *, manage: bool = False) -> Delete:
        return (
            delete(model)
            .where(self.predicate_for(model, write=True, manage=manage))
            .execution_options(synchronize_session="fetch", **self._options)
        )

    # -- execution ---------------------------------------------------------------------

    def _check(self, statement: Any) -> None:
        options = statement.get_execution_options()
        if options.get(SCOPE_OPTION) != self.user_id:
            raise TenantPredicateError("Statement was not built by this actor scope")

    async def execute(self, statement: Any):  # noqa: ANN201
        self._check(statement)
        return await self.session.execute(statement)

    async def scalars(self, statement: Select) -> list[Any]:
        self._check(statement)
        result = await self.session.execute(statement)
        return list(result.scalars().all())

    async def scalar(self, statement: Select) -> Any:
        self._check(statement)
        result = await self.session.execute(statement)
        return result.scalar()

    async def get(self, model: type[ModelT], row_id: str, *, write: bool = False) -> ModelT | None:
        # Return None for absent and forbidden rows alike.
        result = await self.execute(self.select(model, write=write).where(model.id == row_id))
        return result.scalar_one_or_none()

    async def require(self, model: type[ModelT], row_id: str, *, write: bool = False) -> ModelT:
        row = await self.get(model, row_id, write=write)
        if row is None:
            raise NotFoundError(model.__resource_type__, row_id)
        return row

    async def require_project(self, project_id: str, *, write: bool = False, manage: bool = False) -> Project:
        # Resolve a project under the requested access level inside the caller's transaction.
        stmt = (
            select(Project)
            .where(Project.id == project_id, self.predicate_for(Project, write=write, manage=manage))
            .execution_options(**self._options)
        )
        if write or manage:
            stmt = stmt.with_for_update()
        result = await self.execute(stmt)
        project = result.scalar_one_or_none()
        if project is None:
            raise NotFoundError("project", project_id)
        return project

    async def is_admin(self) -> bool:
        result = await self.session.execute(select(self._is_admin()))
        return bool(result.scalar())

    async def is_active(self) -> bool:
        result = await self.session.execute(select(self._active(write=False)))
        return bool(result.scalar())

    async def can_write(self) -> bool:
        # Active non-viewer actors may create new top-level rows.
        result = await self.session.execute(select(self._active(write=True)))
        return bool(result.scalar())


def _touches_scoped_tables(state: ORMExecuteState) -> bool:
    for mapper in state.all_mappers:
        if mapper.class_ in _SCOPED_CLASSES:
            return True
    tables = find_tables(state.statement, include_crud=True)
    return any(getattr(table, "name", None) in _SCOPED_TABLES for table in tables)


def _guard_orm_execute(state: ORMExecuteState) -> None:
    # Reject ORM statements on tenant tables that bypassed ActorScope and are not marked as system work.
    if not (state.is_select or state.is_update or state.is_delete):
        return
    if state.is_column_load or state.is_relationship_load:
        return
    options = state.execution_options
    if options.get(SCOPE_OPTION) or options.get(SYSTEM_OPTION):
        return
    if _touches_scoped_tables(state):
        raise TenantPredicateError("Tenant-scoped statement issued without an actor scope")


def install_statement_guard(session_class: type[Session]) -> None:
    if not event.contains(session_class, "do_orm_execute", _guard_orm_execute):
        event.listen(session_class, "do_orm_execute", _guard_orm_execute)
