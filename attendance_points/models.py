from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from attendance_points.db import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class PointType(str, enum.Enum):
    WHOLE_DAY_ABSENCE = "WHOLE_DAY_ABSENCE"
    HALF_DAY_ABSENCE = "HALF_DAY_ABSENCE"
    UNDERTIME = "UNDERTIME"
    UNDERTIME_MORE_THAN_HOUR = "UNDERTIME_MORE_THAN_HOUR"
    TARDY = "TARDY"


class ExpirationType(str, enum.Enum):
    SRO = "SRO"
    GBRO = "GBRO"
    NONE = "NONE"


class ExpirationScope(str, enum.Enum):
    SRO = "SRO"
    GBRO = "GBRO"
    BOTH = "BOTH"


class ConsistencyOperationKind(str, enum.Enum):
    REGENERATE = "REGENERATE"
    REMOVE_DUPLICATES = "REMOVE_DUPLICATES"
    EXPIRE_PENDING = "EXPIRE_PENDING"
    RESET_EXPIRED = "RESET_EXPIRED"
    INITIALIZE_GBRO_DATES = "INITIALIZE_GBRO_DATES"
    FIX_GBRO_DATES = "FIX_GBRO_DATES"
    RECALCULATE_GBRO = "RECALCULATE_GBRO"
    CLEANUP = "CLEANUP"
    PROCESS_EXPIRATIONS = "PROCESS_EXPIRATIONS"


class JobStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    violations: Mapped[list[AttendanceViolation]] = relationship(back_populates="employee")
    attendance_points: Mapped[list[AttendancePoint]] = relationship(back_populates="employee")


class AttendanceViolation(Base):
    """Verified violation occurrences produced by the attendance source system."""

    __tablename__ = "attendance_violations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    shift_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    point_type: Mapped[PointType] = mapped_column(
        Enum(PointType, name="attendance_point_type"),
        nullable=False,
    )
    minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_advised: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    employee: Mapped[Employee] = relationship(back_populates="violations")
    attendance_points: Mapped[list[AttendancePoint]] = relationship(back_populates="violation")


class AttendancePoint(Base):
    __tablename__ = "attendance_points"
    __table_args__ = (
        Index("ix_attendance_points_slot", "employee_id", "shift_date", "point_type"),
        Index("ix_attendance_points_employee_state", "employee_id", "is_expired", "is_excused"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    violation_id: Mapped[int | None] = mapped_column(
        ForeignKey("attendance_violations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    shift_date: Mapped[date] = mapped_column(Date, nullable=False)
    point_type: Mapped[PointType] = mapped_column(
        Enum(PointType, name="attendance_point_type"),
        nullable=False,
    )
    point_value: Mapped[Decimal] = mapped_column(Numeric(4, 2), nullable=False)
    is_advised: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    is_manual: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_excused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    excuse_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    excused_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    excused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    sro_expires_at: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    eligible_for_gbro: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    gbro_expires_at: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    gbro_applied_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    gbro_batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    is_expired: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    expired_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    expiration_type: Mapped[ExpirationType] = mapped_column(
        Enum(ExpirationType, name="attendance_point_expiration_type"),
        nullable=False,
        default=ExpirationType.NONE,
        server_default=text("'NONE'"),
    )

    violation_details: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    tardy_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    undertime_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    employee: Mapped[Employee] = relationship(back_populates="attendance_points")
    violation: Mapped[AttendanceViolation | None] = relationship(back_populates="attendance_points")

    @property
    def is_ncns(self) -> bool:
        return self.point_type == PointType.WHOLE_DAY_ABSENCE and not self.is_advised

    @property
    def is_active(self) -> bool:
        return not self.is_expired and not self.is_excused


class ConsistencyJob(Base):
    __tablename__ = "consistency_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    kind: Mapped[ConsistencyOperationKind] = mapped_column(
        Enum(ConsistencyOperationKind, name="consistency_operation_kind"),
        nullable=False,
    )
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="consistency_job_status"),
        nullable=False,
        default=JobStatus.RUNNING,
        index=True,
    )
    scope: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    as_of: Mapped[date] = mapped_column(Date, nullable=False)
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    affected_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    result: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    employee_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
