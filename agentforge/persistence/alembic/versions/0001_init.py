"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-01 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

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

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _score(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(5, 2), nullable=True)


def _score_check(column: str) -> str:
    return f"{column} IS NULL OR ({column} >= 0 AND {column} <= 100)"


def upgrade() -> None:
    # Ensure pgvector is enabled for every environment, not just manual setup.
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("username", sa.String(length=50), nullable=False, unique=True),
        sa.Column("email", sa.String(length=255), nullable=True, unique=True),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="contributor"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(check_in("role", USER_ROLES), name="ck_users_role"),
    )

    op.create_table(
        "access_grants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("resource_type", sa.String(length=32), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("permission", sa.String(length=16), nullable=False, server_default="read"),
        sa.Column("granted_by", sa.String(), sa.ForeignKey("users.id"), nullable=True),
        _ts("expires_at"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(check_in("resource_type", RESOURCE_TYPES), name="ck_access_grants_resource_type"),
        sa.CheckConstraint(check_in("permission", GRANT_PERMISSIONS), name="ck_access_grants_permission"),
        sa.UniqueConstraint("user_id", "resource_type", "resource_id", "permission", name="uq_access_grants_scope"),
    )
    op.create_index("ix_access_grants_user_id", "access_grants", ["user_id"])
    op.create_index("ix_access_grants_resource", "access_grants", ["resource_type", "resource_id"])

    op.create_table(
        "projects",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("owner_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("repository_url", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("technology_stack", postgresql.JSONB(), nullable=True),
        sa.Column("total_lines", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        _ts("last_analyzed_at"),
        sa.CheckConstraint(check_in("status", PROJECT_STATUSES), name="ck_projects_status"),
        sa.CheckConstraint("total_lines >= 0", name="ck_projects_total_lines"),
    )
    op.create_index("ix_projects_owner_id", "projects", ["owner_id"])
    op.create_index("ix_projects_owner_status", "projects", ["owner_id", "status"])

    op.create_table(
        "project_analyses",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "project_id", sa.String(), sa.ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("analysis_type", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        _ts("started_at"),
        _ts("completed_at"),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        _score("compliance_score"),
        _score("quality_score"),
        _score("security_score"),
        _score("performance_score"),
        sa.Column("total_violations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("critical_violations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("high_violations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("medium_violations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("low_violations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("info_violations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("results_json", postgresql.JSONB(), nullable=True),
        sa.CheckConstraint(check_in("status", ANALYSIS_STATUSES), name="ck_project_analyses_status"),
        sa.CheckConstraint(_score_check("compliance_score"), name="ck_project_analyses_compliance_score"),
        sa.CheckConstraint(_score_check("quality_score"), name="ck_project_analyses_quality_score"),
        sa.CheckConstraint(_score_check("security_score"), name="ck_project_analyses_security_score"),
        sa.CheckConstraint(_score_check("performance_score"), name="ck_project_analyses_performance_score"),
        sa.CheckConstraint(
            f"completed_at IS NULL OR {check_in('status', ANALYSIS_TERMINAL_STATUSES)}",
            name="ck_project_analyses_completed_terminal",
        ),
        sa.CheckConstraint(
            "total_violations >= 0 AND critical_violations >= 0 AND high_violations >= 0 "
            "AND medium_violations >= 0 AND low_violations >= 0 AND info_violations >= 0",
            name="ck_project_analyses_counts",
        ),
    )
    op.create_index("ix_project_analyses_project_id", "project_analyses", ["project_id"])
    op.create_index("ix_project_analyses_project_status", "project_analyses", ["project_id", "status"])
    op.create_index("ix_project_analyses_completed_at", "project_analyses", ["completed_at"])

    op.create_table(
        "file_analyses",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "project_id", sa.String(), sa.ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column(
            "analysis_id",
            sa.String(),
            sa.ForeignKey("project_analyses.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("file_path", sa.Text(), nullable=False),
        sa.Column("file_type", sa.String(length=20), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("lines_of_code", sa.Integer(), nullable=True),
        _score("complexity_score"),
        _score("quality_score"),
        _score("security_score"),
        sa.Column("results_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("lines_of_code IS NULL OR lines_of_code >= 0", name="ck_file_analyses_lines"),
        sa.CheckConstraint(_score_check("complexity_score"), name="ck_file_analyses_complexity_score"),
        sa.CheckConstraint(_score_check("quality_score"), name="ck_file_analyses_quality_score"),
        sa.CheckConstraint(_score_check("security_score"), name="ck_file_analyses_security_score"),
    )
    op.create_index("ix_file_analyses_project_id", "file_analyses", ["project_id"])
    op.create_index("ix_file_analyses_analysis_id", "file_analyses", ["analysis_id"])
    op.create_index("ix_file_analyses_project_quality", "file_analyses", ["project_id", "quality_score"])

    op.create_table(
        "code_violations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "project_id", sa.String(), sa.ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column(
            "analysis_id",
            sa.String(),
            sa.ForeignKey("project_analyses.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "file_analysis_id",
            sa.String(),
            sa.ForeignKey("file_analyses.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("rule_id", sa.String(length=100), nullable=False),
        sa.Column("rule_name", sa.String(length=255), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="open"),
        sa.Column("file_path", sa.Text(), nullable=True),
        sa.Column("line_number", sa.Integer(), nullable=True),
        sa.Column("column_number", sa.Integer(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("suggestion", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        _ts("resolved_at"),
        sa.Column("resolved_by", sa.String(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.CheckConstraint(check_in("severity", SEVERITIES), name="ck_code_violations_severity"),
        sa.CheckConstraint(check_in("status", VIOLATION_STATUSES), name="ck_code_violations_status"),
        sa.CheckConstraint(
            f"{check_in('status', VIOLATION_RESOLUTION_STATUSES)} "
            "OR (resolved_at IS NULL AND resolved_by IS NULL AND resolution_note IS NULL)",
            name="ck_code_violations_resolution_fields",
        ),
    )
    op.create_index("ix_code_violations_project_id", "code_violations", ["project_id"])
    op.create_index("ix_code_violations_analysis_id", "code_violations", ["analysis_id"])
    op.create_index(
        "ix_code_violations_project_severity", "code_violations", ["project_id", "severity", "created_at"]
    )
    op.create_index("ix_code_violations_project_status", "code_violations", ["project_id", "status"])

    op.create_table(
        "embedding_models",
        sa.Column("id", sa.String(length=100), primary_key=True),
        sa.Column("dimension", sa.Integer(), nullable=False),
        sa.Column("distance_metric", sa.String(length=20), nullable=False, server_default="cosine"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("dimension > 0", name="ck_embedding_models_dimension"),
        sa.CheckConstraint(check_in("distance_metric", DISTANCE_METRICS), name="ck_embedding_models_metric"),
    )

    op.create_table(
        "embeddings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "project_id", sa.String(), sa.ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("model_id", sa.String(length=100), sa.ForeignKey("embedding_models.id"), nullable=False),
        sa.Column("unit_type", sa.String(length=20), nullable=False, server_default="file"),
        sa.Column("unit_name", sa.String(length=255), nullable=True),
        sa.Column(
            "file_analysis_id",
            sa.String(),
            sa.ForeignKey("file_analyses.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("dimension", sa.Integer(), nullable=False),
        # Untyped vector column: each model fixes its own dimension, enforced per row.
        sa.Column("vector", Vector(), nullable=False),
        sa.Column("snippet", sa.Text(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("index_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("index_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("index_error", sa.Text(), nullable=True),
        _ts("indexed_at"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(check_in("unit_type", UNIT_TYPES), name="ck_embeddings_unit_type"),
        sa.CheckConstraint(check_in("index_status", INDEX_STATUSES), name="ck_embeddings_index_status"),
        sa.CheckConstraint("dimension > 0", name="ck_embeddings_dimension"),
        sa.CheckConstraint("vector_dims(vector) = dimension", name="ck_embeddings_vector_dims"),
        sa.UniqueConstraint("project_id", "model_id", "content_hash", name="uq_embeddings_content_hash"),
    )
    op.create_index("ix_embeddings_project_id", "embeddings", ["project_id"])
    op.create_index("ix_embeddings_index_status", "embeddings", ["index_status", "created_at"])
    op.create_index("ix_embeddings_model_project", "embeddings", ["model_id", "project_id"])

    op.create_table(
        "performance_metrics",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("metric_name", sa.String(length=100), nullable=False),
        sa.Column("metric_value", sa.Float(), nullable=False),
        sa.Column("metric_unit", sa.String(length=20), nullable=True),
        sa.Column("tags_json", postgresql.JSONB(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_performance_metrics_name_time", "performance_metrics", ["metric_name", "recorded_at"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("outcome", sa.String(length=20), nullable=False, server_default="success"),
        sa.Column("resource_type", sa.String(length=50), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("project_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_actor_time", "audit_events", ["actor_id", "occurred_at"])
    op.create_index("ix_audit_events_resource", "audit_events", ["resource_type", "resource_id"])

    op.create_table(
        "rollup_versions",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("active_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("row_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("refreshed_at"),
        sa.Column("refresh_ms", sa.Integer(), nullable=True),
    )

    op.create_table(
        "rollup_daily_compliance",
        sa.Column("version", sa.Integer(), primary_key=True),
        sa.Column("day", sa.Date(), primary_key=True),
        sa.Column("project_id", sa.String(), primary_key=True),
        sa.Column("project_name", sa.String(length=255), nullable=False),
        sa.Column("avg_score", sa.Float(), nullable=False),
        sa.Column("total_checks", sa.Integer(), nullable=False),
        sa.Column("compliant_checks", sa.Integer(), nullable=False),
        sa.Column("non_compliant_checks", sa.Integer(), nullable=False),
    )

    op.create_table(
        "rollup_weekly_performance",
        sa.Column("version", sa.Integer(), primary_key=True),
        sa.Column("week_start", sa.Date(), primary_key=True),
        sa.Column("metric_name", sa.String(length=100), primary_key=True),
        sa.Column("avg_value", sa.Float(), nullable=False),
        sa.Column("min_value", sa.Float(), nullable=False),
        sa.Column("max_value", sa.Float(), nullable=False),
        sa.Column("sample_count", sa.Integer(), nullable=False),
        sa.Column("std_dev", sa.Float(), nullable=False),
    )

    op.create_table(
        "rollup_project_quality",
        sa.Column("version", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.String(), primary_key=True),
        sa.Column("project_name", sa.String(length=255), nullable=False),
        sa.Column("project_status", sa.String(length=20), nullable=False),
        sa.Column("total_files", sa.Integer(), nullable=False),
        sa.Column("avg_quality_score", sa.Float(), nullable=True),
        sa.Column("avg_complexity_score", sa.Float(), nullable=True),
        sa.Column("avg_security_score", sa.Float(), nullable=True),
        sa.Column("total_violations", sa.Integer(), nullable=False),
        sa.Column("critical_violations", sa.Integer(), nullable=False),
        sa.Column("high_violations", sa.Integer(), nullable=False),
        sa.Column("medium_violations", sa.Integer(), nullable=False),
        sa.Column("low_violations", sa.Integer(), nullable=False),
        sa.Column("info_violations", sa.Integer(), nullable=False),
        sa.Column("open_violations", sa.Integer(), nullable=False),
        _ts("last_analyzed_at"),
    )

    op.create_table(
        "rollup_code_similarity",
        sa.Column("version", sa.Integer(), primary_key=True),
        sa.Column("project1_id", sa.String(), primary_key=True),
        sa.Column("project2_id", sa.String(), primary_key=True),
        sa.Column("model_id", sa.String(length=100), primary_key=True),
        sa.Column("project1_name", sa.String(length=255), nullable=False),
        sa.Column("project2_name", sa.String(length=255), nullable=False),
        sa.Column("avg_distance", sa.Float(), nullable=False),
        sa.Column("comparison_count", sa.Integer(), nullable=False),
    )

    op.create_table(
        "maintenance_runs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="running"),
        sa.Column("trigger", sa.String(length=20), nullable=False, server_default="schedule"),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        _ts("finished_at"),
        sa.Column("details_json", postgresql.JSONB(), nullable=True),
        sa.CheckConstraint(check_in("status", MAINTENANCE_RUN_STATUSES), name="ck_maintenance_runs_status"),
    )
    op.create_index("ix_maintenance_runs_started_at", "maintenance_runs", ["started_at"])


def downgrade() -> None:
    op.drop_index("ix_maintenance_runs_started_at", table_name="maintenance_runs")
    op.drop_table("maintenance_runs")
    op.drop_table("rollup_code_similarity")
    op.drop_table("rollup_project_quality")
    op.drop_table("rollup_weekly_performance")
    op.drop_table("rollup_daily_compliance")
    op.drop_table("rollup_versions")
    op.drop_index("ix_audit_events_resource", table_name="audit_events")
    op.drop_index("ix_audit_events_actor_time", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_performance_metrics_name_time", table_name="performance_metrics")
    op.drop_table("performance_metrics")
    op.drop_index("ix_embeddings_model_project", table_name="embeddings")
    op.drop_index("ix_embeddings_index_status", table_name="embeddings")
    op.drop_index("ix_embeddings_project_id", table_name="embeddings")
    op.drop_table("embeddings")
    op.drop_table("embedding_models")
    op.drop_index("ix_code_violations_project_status", table_name="code_violations")
    op.drop_index("ix_code_violations_project_severity", table_name="code_violations")
    op.drop_index("ix_code_violations_analysis_id", table_name="code_violations")
    op.drop_index("ix_code_violations_project_id", table_name="code_violations")
    op.drop_table("code_violations")
    op.drop_index("ix_file_analyses_project_quality", table_name="file_analyses")
    op.drop_index("ix_file_analyses_analysis_id", table_name="file_analyses")
    op.drop_index("ix_file_analyses_project_id", table_name="file_analyses")
    op.drop_table("file_analyses")
    op.drop_index("ix_project_analyses_completed_at", table_name="project_analyses")
    op.drop_index("ix_project_analyses_project_status", table_name="project_analyses")
    op.drop_index("ix_project_analyses_project_id", table_name="project_analyses")
    op.drop_table("project_analyses")
    op.drop_index("ix_projects_owner_status", table_name="projects")
    op.drop_index("ix_projects_owner_id", table_name="projects")
    op.drop_table("projects")
    op.drop_index("ix_access_grants_resource", table_name="access_grants")
    op.drop_index("ix_access_grants_user_id", table_name="access_grants")
    op.drop_table("access_grants")
    op.drop_table("users")
