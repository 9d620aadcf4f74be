from __future__ import annotations

from collections.abc import Sequence
from datetime import date

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from attendance_points.models import AttendancePoint, AttendanceViolation
from attendance_points.services.classifier import ViolationInput


def list_unprocessed_violations(
    db: Session,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
    employee_ids: Sequence[int] | None = None,
) -> list[AttendanceViolation]:
    """Verified violations that no attendance point has been derived from yet."""
    stmt = (
        select(AttendanceViolation)
        .where(
            AttendanceViolation.is_verified.is_(True),
            ~exists().where(AttendancePoint.violation_id == AttendanceViolation.id),
        )
        .order_by(
            AttendanceViolation.employee_id.asc(),
            AttendanceViolation.shift_date.asc(),
            AttendanceViolation.id.asc(),
        )
    )
    if date_from is not None:
        stmt = stmt.where(AttendanceViolation.shift_date >= date_from)
    if date_to is not None:
        stmt = stmt.where(AttendanceViolation.shift_date <= date_to)
    if employee_ids:
        stmt = stmt.where(AttendanceViolation.employee_id.in_(list(employee_ids)))
    return list(db.scalars(stmt).all())


def to_violation_input(violation: AttendanceViolation) -> ViolationInput:
    return ViolationInput(
        point_type=violation.point_type,
        minutes=violation.minutes,
        is_advised=violation.is_advised,
        shift_date=violation.shift_date,
        employee_id=violation.employee_id,
    )
