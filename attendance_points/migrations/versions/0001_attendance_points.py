"""Attendance point schema

Revision ID: 0001_attendance_points
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_attendance_points"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

attendance_point_type = postgresql.ENUM(
    "WHOLE_DAY_ABSENCE",
    "HALF_DAY_ABSENCE",
    "UNDERTIME",
    "UNDERTIME_MORE_THAN_HOUR",
    "TARDY",
    name="attendance_point_type",
    create_type=False,
)
attendance_point_expiration_type = postgresql.ENUM(
    "SRO",
    "GBRO",
    "NONE",
    name="attendance_point_expiration_type",
    create_type=False,
)
consistency_operation_kind = postgresql.ENUM(
    "REGENERATE",
    "REMOVE_DUPLICATES",
    "EXPIRE_PENDING",
    "RESET_EXPIRED",
    "INITIALIZE_GBRO_DATES",
    "FIX_GBRO_DATES",
    "RECALCULATE_GBRO",
    "CLEANUP",
    "PROCESS_EXPIRATIONS",
    name="consistency_operation_kind",
    create_type=False,
)
consistency_job_status = postgresql.ENUM(
    "RUNNING",
    "COMPLETED",
    "FAILED",
    name="consistency_job_status",
    create_type=False,
)
audit_actor_type = postgresql.ENUM(
    "ADMIN",
    "SYSTEM",
    name="audit_actor_type",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in (
        attendance_point_type,
        attendance_point_expiration_type,
        consistency_operation_kind,
        consistency_job_status,
        audit_actor_type,
    ):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )

    op.create_table(
        "attendance_violations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("shift_date", sa.Date(), nullable=False),
        sa.Column("point_type", attendance_point_type, nullable=False),
        sa.Column("minutes", sa.Integer(), nullable=True),
        sa.Column("is_advised", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("details", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_attendance_violations_employee_id", "attendance_violations", ["employee_id"])
    op.create_index("ix_attendance_violations_shift_date", "attendance_violations", ["shift_date"])

    op.create_table(
        "attendance_points",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("violation_id", sa.Integer(), nullable=True),
        sa.Column("shift_date", sa.Date(), nullable=False),
        sa.Column("point_type", attendance_point_type, nullable=False),
        sa.Column("point_value", sa.Numeric(4, 2), nullable=False),
        sa.Column("is_advised", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_manual", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        sa.Column("is_excused", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("excuse_reason", sa.String(length=500), nullable=True),
        sa.Column("excused_by", sa.String(length=255), nullable=True),
        sa.Column("excused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sro_expires_at", sa.Date(), nullable=False),
        sa.Column("eligible_for_gbro", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("gbro_expires_at", sa.Date(), nullable=True),
        sa.Column("gbro_applied_at", sa.Date(), nullable=True),
        sa.Column("gbro_batch_id", sa.String(length=64), nullable=True),
        sa.Column("is_expired", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("expired_at", sa.Date(), nullable=True),
        sa.Column(
            "expiration_type",
            attendance_point_expiration_type,
            nullable=False,
            server_default=sa.text("'NONE'"),
        ),
        sa.Column("violation_details", sa.String(length=1000), nullable=True),
        sa.Column("tardy_minutes", sa.Integer(), nullable=True),
        sa.Column("undertime_minutes", sa.Integer(), nullable=True),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["violation_id"], ["attendance_violations.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_attendance_points_employee_id", "attendance_points", ["employee_id"])
    op.create_index("ix_attendance_points_violation_id", "attendance_points", ["violation_id"])
    op.create_index("ix_attendance_points_sro_expires_at", "attendance_points", ["sro_expires_at"])
    op.create_index("ix_attendance_points_gbro_expires_at", "attendance_points", ["gbro_expires_at"])
    op.create_index("ix_attendance_points_gbro_batch_id", "attendance_points", ["gbro_batch_id"])
    op.create_index(
        "ix_attendance_points_slot",
        "attendance_points",
        ["employee_id", "shift_date", "point_type"],
    )
    op.create_index(
        "ix_attendance_points_employee_state",
        "attendance_points",
        ["employee_id", "is_expired", "is_excused"],
    )

    op.create_table(
        "consistency_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("job_id", sa.String(length=64), nullable=False),
        sa.Column("kind", consistency_operation_kind, nullable=False),
        sa.Column("status", consistency_job_status, nullable=False),
        sa.Column("scope", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("as_of", sa.Date(), nullable=False),
        sa.Column("total", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("processed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("affected_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("result", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("requested_by", sa.String(length=255), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_consistency_jobs_job_id", "consistency_jobs", ["job_id"], unique=True)
    op.create_index("ix_consistency_jobs_status", "consistency_jobs", ["status"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("employee_id", sa.Integer(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])
    op.create_index("ix_audit_logs_employee_id", "audit_logs", ["employee_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_employee_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_consistency_jobs_status", table_name="consistency_jobs")
    op.drop_index("ix_consistency_jobs_job_id", table_name="consistency_jobs")
    op.drop_table("consistency_jobs")
    op.drop_table("attendance_points")
    op.drop_table("attendance_violations")
    op.drop_table("employees")

    bind = op.get_bind()
    for enum_type in (
        audit_actor_type,
        consistency_job_status,
        consistency_operation_kind,
        attendance_point_expiration_type,
        attendance_point_type,
    ):
        enum_type.drop(bind, checkfirst=True)
