from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from attendance_points.db import Base
from attendance_points.models import AttendancePoint, AttendanceViolation, Employee, PointType
from attendance_points.services.classifier import ViolationInput, classify
from attendance_points.services.point_store import build_point


def make_session_factory() -> sessionmaker:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def add_employee(db: Session, employee_id: int, full_name: str | None = None) -> Employee:
    employee = Employee(id=employee_id, full_name=full_name or f"Employee {employee_id}", is_active=True)
    db.add(employee)
    db.commit()
    return employee


def add_point(
    db: Session,
    employee_id: int,
    shift_date: date,
    point_type: PointType = PointType.TARDY,
    *,
    minutes: int | None = None,
    is_advised: bool = False,
    is_manual: bool = False,
    created_at: datetime | None = None,
    **overrides: object,
) -> AttendancePoint:
    template = classify(ViolationInput(point_type=point_type, minutes=minutes, is_advised=is_advised))
    point = build_point(template, employee_id=employee_id, shift_date=shift_date, is_manual=is_manual)
    point.created_at = created_at or datetime(2026, 1, 1, tzinfo=timezone.utc)
    for key, value in overrides.items():
        setattr(point, key, value)
    db.add(point)
    db.commit()
    return point


def add_violation(
    db: Session,
    employee_id: int,
    shift_date: date,
    point_type: PointType = PointType.TARDY,
    *,
    minutes: int | None = None,
    is_advised: bool = False,
    is_verified: bool = True,
    details: str | None = None,
) -> AttendanceViolation:
    violation = AttendanceViolation(
        employee_id=employee_id,
        shift_date=shift_date,
        point_type=point_type,
        minutes=minutes,
        is_advised=is_advised,
        is_verified=is_verified,
        details=details,
    )
    db.add(violation)
    db.commit()
    return violation
