from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any
from uuid import uuid4

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from agentforge.domain.enums import (
    ANALYSIS_STATUSES,
    ANALYSIS_TERMINAL_STATUSES,
    DISTANCE_METRICS,
    GRANT_PERMISSIONS,
    INDEX_STATUSES,
    MAINTENANCE_RUN_STATUSES,
    PROJECT_STATUSES,
    RESOURCE_TYPES,
    SEVERITIES,
    UNIT_TYPES,
    USER_ROLES,
    VIOLATION_RESOLUTION_STATUSES,
    VIOLATION_STATUSES,
    check_in,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class UtcDateTime(TypeDecorator):
    # Normalize timestamps to aware UTC so SQLite and Postgres round-trip identically.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# JSONB on Postgres, plain JSON elsewhere (SQLite for local runs and tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")
# Dimension lives on the embedding model; pgvector stores it per row, SQLite keeps the list as JSON.
VectorType = Vector().with_variant(JSON(), "sqlite")
# Scores are 0-100 with two decimals; return floats to keep rollups dialect-independent.
ScoreType = Numeric(5, 2, asdecimal=False)


def _score_check(column: str) -> str:
    return f"{column} IS NULL OR ({column} >= 0 AND {column} <= 100)"


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    __table_args__ = (CheckConstraint(check_in("role", USER_ROLES), name="ck_users_role"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String(50), unique=True)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    # Role is checked inside every access predicate, never cached on the request.
    role: Mapped[str] = mapped_column(String(20), default="contributor")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)


class AccessGrant(Base):
    __tablename__ = "access_grants"
    __table_args__ = (
        CheckConstraint(check_in("resource_type", RESOURCE_TYPES), name="ck_access_grants_resource_type"),
        CheckConstraint(check_in("permission", GRANT_PERMISSIONS), name="ck_access_grants_permission"),
        UniqueConstraint("user_id", "resource_type", "resource_id", "permission", name="uq_access_grants_scope"),
        Index("ix_access_grants_resource", "resource_type", "resource_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), index=True)
    resource_type: Mapped[str] = mapped_column(String(32))
    # Grants reference a single row; they never cascade to child resources.
    resource_id: Mapped[str] = mapped_column(String)
    permission: Mapped[str] = mapped_column(String(16), default="read")
    granted_by: Mapped[str | None] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class Project(Base):
    __tablename__ = "projects"
    __resource_type__ = "project"
    __table_args__ = (
        CheckConstraint(check_in("status", PROJECT_STATUSES), name="ck_projects_status"),
        CheckConstraint("total_lines >= 0", name="ck_projects_total_lines"),
        Index("ix_projects_owner_status", "owner_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    repository_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="active")
    technology_stack: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    total_lines: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)
    last_analyzed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class Analysis(Base):
    __tablename__ = "project_analyses"
    __resource_type__ = "analysis"
    __table_args__ = (
        CheckConstraint(check_in("status", ANALYSIS_STATUSES), name="ck_project_analyses_status"),
        CheckConstraint(_score_check("compliance_score"), name="ck_project_analyses_compliance_score"),
        CheckConstraint(_score_check("quality_score"), name="ck_project_analyses_quality_score"),
        CheckConstraint(_score_check("security_score"), name="ck_project_analyses_security_score"),
        CheckConstraint(_score_check("performance_score"), name="ck_project_analyses_performance_score"),
        CheckConstraint(
            f"completed_at IS NULL OR {check_in('status', ANALYSIS_TERMINAL_STATUSES)}",
            name="ck_project_analyses_completed_terminal",
        ),
        CheckConstraint(
            "total_violations >= 0 AND critical_violations >= 0 AND high_violations >= 0 "
            "AND medium_violations >= 0 AND low_violations >= 0 AND info_violations >= 0",
            name="ck_project_analyses_counts",
        ),
        Index("ix_project_analyses_project_status", "project_id", "status"),
        Index("ix_project_analyses_completed_at", "completed_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # RESTRICT keeps projects alive while analyses reference them; cascade is explicit in the repo.
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id", ondelete="RESTRICT"), index=True)
    analysis_type: Mapped[str] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20), default="pending")
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    started_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    compliance_score: Mapped[float | None] = mapped_column(ScoreType, nullable=True)
    quality_score: Mapped[float | None] = mapped_column(ScoreType, nullable=True)
    security_score: Mapped[float | None] = mapped_column(ScoreType, nullable=True)
    performance_score: Mapped[float | None] = mapped_column(ScoreType, nullable=True)
    total_violations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    critical_violations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    high_violations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    medium_violations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    low_violations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    info_violations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    results_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)


class FileAnalysis(Base):
    __tablename__ = "file_analyses"
    __resource_type__ = "file_analysis"
    __table_args__ = (
        CheckConstraint("lines_of_code IS NULL OR lines_of_code >= 0", name="ck_file_analyses_lines"),
        CheckConstraint(_score_check("complexity_score"), name="ck_file_analyses_complexity_score"),
        CheckConstraint(_score_check("quality_score"), name="ck_file_analyses_quality_score"),
        CheckConstraint(_score_check("security_score"), name="ck_file_analyses_security_score"),
        Index("ix_file_analyses_project_quality", "project_id", "quality_score"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id", ondelete="RESTRICT"), index=True)
    analysis_id: Mapped[str] = mapped_column(
        String, ForeignKey("project_analyses.id", ondelete="RESTRICT"), index=True
    )
    file_path: Mapped[str] = mapped_column(Text)
    file_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lines_of_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    complexity_score: Mapped[float | None] = mapped_column(ScoreType, nullable=True)
    quality_score: Mapped[float | None] = mapped_column(ScoreType, nullable=True)
    security_score: Mapped[float | None] = mapped_column(ScoreType, nullable=True)
    results_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class Violation(Base):
    __tablename__ = "code_violations"
    __resource_type__ = "violation"
    __table_args__ = (
        CheckConstraint(check_in("severity", SEVERITIES), name="ck_code_violations_severity"),
        CheckConstraint(check_in("status", VIOLATION_STATUSES), name="ck_code_violations_status"),
        # Resolution fields only exist once a violation is closed.
        CheckConstraint(
            f"{check_in('status', VIOLATION_RESOLUTION_STATUSES)} "
            "OR (resolved_at IS NULL AND resolved_by IS NULL AND resolution_note IS NULL)",
            name="ck_code_violations_resolution_fields",
        ),
        Index("ix_code_violations_project_severity", "project_id", "severity", "created_at"),
        Index("ix_code_violations_project_status", "project_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id", ondelete="RESTRICT"), index=True)
    analysis_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("project_analyses.id", ondelete="SET NULL"), nullable=True, index=True
    )
    file_analysis_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("file_analyses.id", ondelete="SET NULL"), nullable=True
    )
    rule_id: Mapped[str] = mapped_column(String(100))
    rule_name: Mapped[str] = mapped_column(String(255))
    severity: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20), default="open")
    file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    line_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    column_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    message: Mapped[str] = mapped_column(Text)
    suggestion: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)
    resolved_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)


class EmbeddingModel(Base):
    __tablename__ = "embedding_models"
    __table_args__ = (
        CheckConstraint("dimension > 0", name="ck_embedding_models_dimension"),
        CheckConstraint(check_in("distance_metric", DISTANCE_METRICS), name="ck_embedding_models_metric"),
    )

    # Model identifiers are stable external names, e.g. "text-embedding-3-small".
    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    dimension: Mapped[int] = mapped_column(Integer)
    distance_metric: Mapped[str] = mapped_column(String(20), default="cosine")
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class Embedding(Base):
    __tablename__ = "embeddings"
    __resource_type__ = "embedding"
    __table_args__ = (
        CheckConstraint(check_in("unit_type", UNIT_TYPES), name="ck_embeddings_unit_type"),
        CheckConstraint(check_in("index_status", INDEX_STATUSES), name="ck_embeddings_index_status"),
        CheckConstraint("dimension > 0", name="ck_embeddings_dimension"),
        UniqueConstraint("project_id", "model_id", "content_hash", name="uq_embeddings_content_hash"),
        Index("ix_embeddings_index_status", "index_status", "created_at"),
        Index("ix_embeddings_model_project", "model_id", "project_id"),
        Index("ix_embeddings_indexed_at", "index_status", "indexed_at", "id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id", ondelete="RESTRICT"), index=True)
    model_id: Mapped[str] = mapped_column(String(100), ForeignKey("embedding_models.id"))
    unit_type: Mapped[str] = mapped_column(String(20), default="file")
    unit_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_analysis_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("file_analyses.id", ondelete="SET NULL"), nullable=True
    )
    content_hash: Mapped[str] = mapped_column(String(64))
    # Copy of the model dimension so the invariant is checkable per row.
    dimension: Mapped[int] = mapped_column(Integer)
    vector: Mapped[Any] = mapped_column(VectorType)
    snippet: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    # Index build is deferred; pending rows are not yet searchable.
    index_status: Mapped[str] = mapped_column(String(20), default="pending")
    index_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    index_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    indexed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class PerformanceMetric(Base):
    __tablename__ = "performance_metrics"
    __table_args__ = (Index("ix_performance_metrics_name_time", "metric_name", "recorded_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    metric_name: Mapped[str] = mapped_column(String(100))
    metric_value: Mapped[float] = mapped_column(Float)
    metric_unit: Mapped[str | None] = mapped_column(String(20), nullable=True)
    tags_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_actor_time", "actor_id", "occurred_at"),
        Index("ix_audit_events_resource", "resource_type", "resource_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    occurred_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, index=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String(100))
    outcome: Mapped[str] = mapped_column(String(20), default="success")
    resource_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Plain column, no FK: audit rows outlive the projects they describe.
    project_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)


class RollupVersion(Base):
    __tablename__ = "rollup_versions"

    # One row per rollup; readers join on active_version so a refresh publishes atomically.
    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    active_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    refreshed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    refresh_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)


class DailyComplianceRollup(Base):
    __tablename__ = "rollup_daily_compliance"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    project_id: Mapped[str] = mapped_column(String, primary_key=True)
    project_name: Mapped[str] = mapped_column(String(255))
    avg_score: Mapped[float] = mapped_column(Float)
    total_checks: Mapped[int] = mapped_column(Integer)
    compliant_checks: Mapped[int] = mapped_column(Integer)
    non_compliant_checks: Mapped[int] = mapped_column(Integer)


class WeeklyPerformanceRollup(Base):
    __tablename__ = "rollup_weekly_performance"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    week_start: Mapped[date] = mapped_column(Date, primary_key=True)
    metric_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    avg_value: Mapped[float] = mapped_column(Float)
    min_value: Mapped[float] = mapped_column(Float)
    max_value: Mapped[float] = mapped_column(Float)
    sample_count: Mapped[int] = mapped_column(Integer)
    std_dev: Mapped[float] = mapped_column(Float)


class ProjectQualityRollup(Base):
    __tablename__ = "rollup_project_quality"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[str] = mapped_column(String, primary_key=True)
    project_name: Mapped[str] = mapped_column(String(255))
    project_status: Mapped[str] = mapped_column(String(20))
    total_files: Mapped[int] = mapped_column(Integer)
    avg_quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_complexity_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_security_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_violations: Mapped[int] = mapped_column(Integer)
    critical_violations: Mapped[int] = mapped_column(Integer)
    high_violations: Mapped[int] = mapped_column(Integer)
    medium_violations: Mapped[int] = mapped_column(Integer)
    low_violations: Mapped[int] = mapped_column(Integer)
    info_violations: Mapped[int] = mapped_column(Integer)
    open_violations: Mapped[int] = mapped_column(Integer)
    last_analyzed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class CodeSimilarityRollup(Base):
    __tablename__ = "rollup_code_similarity"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    project1_id: Mapped[str] = mapped_column(String, primary_key=True)
    project2_id: Mapped[str] = mapped_column(String, primary_key=True)
    model_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    project1_name: Mapped[str] = mapped_column(String(255))
    project2_name: Mapped[str] = mapped_column(String(255))
    avg_distance: Mapped[float] = mapped_column(Float)
    comparison_count: Mapped[int] = mapped_column(Integer)


class MaintenanceRun(Base):
    __tablename__ = "maintenance_runs"
    __table_args__ = (
        CheckConstraint(check_in("status", MAINTENANCE_RUN_STATUSES), name="ck_maintenance_runs_status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    status: Mapped[str] = mapped_column(String(20), default="running")
    trigger: Mapped[str] = mapped_column(String(20), default="schedule")
    started_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, index=True)
    finished_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)


# Tables whose rows belong to a project owner; every ORM statement against them must be scoped.
TENANT_SCOPED_MODELS: tuple[type[Base], ...] = (Project, Analysis, FileAnalysis, Violation, Embedding)
# Project-owned child tables derive visibility from their parent project.
PROJECT_CHILD_MODELS: tuple[type[Base], ...] = (Analysis, FileAnalysis, Violation, Embedding)
# Rollups keyed by project id (or a pair of them); reads must filter through the actor's visible projects.
PROJECT_ROLLUP_MODELS: tuple[type[Base], ...] = (DailyComplianceRollup, ProjectQualityRollup, CodeSimilarityRollup)
