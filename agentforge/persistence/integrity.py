from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from agentforge.core.errors import AgentForgeError, ConstraintViolationError, NotFoundError


def classify_integrity_error(exc: IntegrityError, *, resource_type: str) -> AgentForgeError:
    # Map driver-level constraint messages (asyncpg and sqlite) onto the domain error taxonomy.
    message = str(getattr(exc, "orig", exc)).lower()
    if "foreign key" in message or "foreignkeyviolation" in message:
        return NotFoundError(resource_type)
    if "unique" in message or "duplicate key" in message:
        return ConstraintViolationError(f"duplicate {resource_type}", kind="uniqueness")
    if "check constraint" in message or "checkviolation" in message:
        return ConstraintViolationError(f"{resource_type} violates a domain constraint", kind="domain")
    if "not null" in message or "notnullviolation" in message:
        return ConstraintViolationError(f"{resource_type} is missing a required field", kind="domain")
    return ConstraintViolationError(f"{resource_type} violates a database constraint", kind="domain")
