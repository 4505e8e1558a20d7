from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentforge.services.maintenance import MaintenanceReport


class AgentForgeError(Exception):
    """Base error for AgentForge."""


class NotFoundError(AgentForgeError):
    """Referenced entity is absent or not visible to the actor."""

    def __init__(self, resource_type: str, resource_id: str | None = None) -> None:
        # Keep the message identical for absent and forbidden rows to avoid existence leakage.
        self.resource_type = resource_type
        self.resource_id = resource_id
        if resource_id is None:
            super().__init__(f"{resource_type} not found")
        else:
            super().__init__(f"{resource_type} {resource_id} not found")


class AccessDeniedError(NotFoundError):
    """Actor lacks the role or grant for an operation; reported to callers as not found."""


class ConstraintViolationError(AgentForgeError):
    """Enumeration, domain, uniqueness or transition constraint breached."""

    def __init__(self, message: str, *, kind: str = "domain", field: str | None = None) -> None:
        self.kind = kind
        self.field = field
        super().__init__(message)


class DimensionMismatchError(ConstraintViolationError):
    """Vector length differs from the declared dimension of its embedding model."""

    def __init__(self, *, model_id: str, expected: int, actual: int) -> None:
        self.model_id = model_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"vector length {actual} does not match dimension {expected} of model {model_id}",
            kind="dimension",
            field="vector",
        )


class VectorIndexError(AgentForgeError):
    """Vector index backend failure."""


class MaintenanceInProgressError(AgentForgeError):
    """A maintenance cycle already holds the lock for this rollup set."""


class PartialMaintenanceFailure(AgentForgeError):
    """One or more maintenance steps failed while the others completed."""

    def __init__(self, report: MaintenanceReport) -> None:
        self.report = report
        failed = ", ".join(step.name for step in report.failed_steps)
        super().__init__(f"maintenance cycle {report.status}: {failed}")
