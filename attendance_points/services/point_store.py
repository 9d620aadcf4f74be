from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import date

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_points.errors import CascadeTransactionFailure, PolicyAmbiguity
from attendance_points.models import AttendancePoint, ExpirationType, PointType
from attendance_points.services.classifier import PointTemplate
from attendance_points.services.expiration_policy import add_months

logger = logging.getLogger("attendance_points.point_store")


def _timeline_order():  # type: ignore[no-untyped-def]
    return (AttendancePoint.shift_date.asc(), AttendancePoint.id.asc())


def list_active_points(db: Session, employee_id: int) -> list[AttendancePoint]:
    return list(
        db.scalars(
            select(AttendancePoint)
            .where(
                AttendancePoint.employee_id == employee_id,
                AttendancePoint.is_expired.is_(False),
                AttendancePoint.is_excused.is_(False),
            )
            .order_by(*_timeline_order())
        ).all()
    )


def list_employee_points(db: Session, employee_id: int) -> list[AttendancePoint]:
    return list(
        db.scalars(
            select(AttendancePoint)
            .where(AttendancePoint.employee_id == employee_id)
            .order_by(*_timeline_order())
        ).all()
    )


def list_cascade_points(db: Session, employee_id: int) -> list[AttendancePoint]:
    """Points the GBRO replay owns: eligible, not excused, active or rolled off by GBRO."""
    return list(
        db.scalars(
            select(AttendancePoint)
            .where(
                AttendancePoint.employee_id == employee_id,
                AttendancePoint.eligible_for_gbro.is_(True),
                AttendancePoint.is_excused.is_(False),
                or_(
                    AttendancePoint.is_expired.is_(False),
                    AttendancePoint.expiration_type == ExpirationType.GBRO,
                ),
            )
            .order_by(*_timeline_order())
        ).all()
    )


def list_unapplied_gbro_points(db: Session, employee_id: int) -> list[AttendancePoint]:
    return list(
        db.scalars(
            select(AttendancePoint)
            .where(
                AttendancePoint.employee_id == employee_id,
                AttendancePoint.eligible_for_gbro.is_(True),
                AttendancePoint.is_excused.is_(False),
                AttendancePoint.is_expired.is_(False),
                AttendancePoint.gbro_applied_at.is_(None),
            )
            .order_by(*_timeline_order())
        ).all()
    )


def find_slot_points(
    db: Session,
    *,
    employee_id: int,
    shift_date: date,
    point_type: PointType,
) -> list[AttendancePoint]:
    return list(
        db.scalars(
            select(AttendancePoint)
            .where(
                AttendancePoint.employee_id == employee_id,
                AttendancePoint.shift_date == shift_date,
                AttendancePoint.point_type == point_type,
            )
            .order_by(AttendancePoint.id.asc())
        ).all()
    )


def list_taken_slots(
    db: Session,
    *,
    employee_ids: Iterable[int],
) -> set[tuple[int, date, PointType]]:
    ids = sorted(set(employee_ids))
    if not ids:
        return set()
    rows = db.execute(
        select(AttendancePoint.employee_id, AttendancePoint.shift_date, AttendancePoint.point_type).where(
            AttendancePoint.employee_id.in_(ids)
        )
    ).all()
    return {(row[0], row[1], row[2]) for row in rows}


def build_point(
    template: PointTemplate,
    *,
    employee_id: int,
    shift_date: date,
    violation_id: int | None = None,
    is_manual: bool = False,
    created_by: str | None = None,
    violation_details: str | None = None,
    notes: str | None = None,
) -> AttendancePoint:
    return AttendancePoint(
        employee_id=employee_id,
        violation_id=violation_id,
        shift_date=shift_date,
        point_type=template.point_type,
        point_value=template.point_value,
        is_advised=template.is_advised,
        is_manual=is_manual,
        created_by=created_by,
        is_excused=False,
        sro_expires_at=add_months(shift_date, template.sro_window_months),
        eligible_for_gbro=template.eligible_for_gbro,
        gbro_expires_at=None,
        gbro_applied_at=None,
        gbro_batch_id=None,
        is_expired=False,
        expired_at=None,
        expiration_type=ExpirationType.NONE,
        violation_details=(violation_details or "").strip() or template.violation_details,
        tardy_minutes=template.tardy_minutes,
        undertime_minutes=template.undertime_minutes,
        notes=notes,
    )


def _foreign_guard(db: Session, employee_id: int, points: Sequence[AttendancePoint]) -> None:
    foreign = sorted({point.employee_id for point in points if point.employee_id != employee_id})
    if foreign:
        db.rollback()
        raise PolicyAmbiguity(
            f"Refusing to write points of employees {foreign} in the transaction of employee {employee_id}",
            details={"employee_id": employee_id, "foreign_employee_ids": foreign},
        )


def stage_points(db: Session, employee_id: int, points: Sequence[AttendancePoint]) -> None:
    """Flush one employee's point changes into the open transaction without committing."""
    _foreign_guard(db, employee_id, points)
    try:
        db.add_all(points)
        db.flush()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(
            "point_stage_failed",
            extra={"employee_id": employee_id, "point_count": len(points)},
        )
        raise CascadeTransactionFailure(
            f"Could not write points for employee {employee_id}",
            details={"employee_id": employee_id, "error": exc.__class__.__name__},
        ) from exc


def stage_point_deletes(db: Session, ids: Iterable[int]) -> int:
    point_ids = sorted(set(ids))
    if not point_ids:
        return 0
    try:
        result = db.execute(delete(AttendancePoint).where(AttendancePoint.id.in_(point_ids)))
    except SQLAlchemyError as exc:
        db.rollback()
        raise CascadeTransactionFailure(
            "Could not delete attendance points",
            details={"point_ids": point_ids, "error": exc.__class__.__name__},
        ) from exc
    return int(result.rowcount or 0)


def commit_timeline(db: Session, employee_id: int) -> None:
    """Commit everything staged for one employee; this also releases the employee lock."""
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("point_commit_failed", extra={"employee_id": employee_id})
        raise CascadeTransactionFailure(
            f"Could not persist points for employee {employee_id}",
            details={"employee_id": employee_id, "error": exc.__class__.__name__},
        ) from exc


def upsert_points(db: Session, employee_id: int, points: Sequence[AttendancePoint]) -> None:
    """Write one employee's points in a single transaction, all or nothing."""
    stage_points(db, employee_id, points)
    commit_timeline(db, employee_id)


def delete_points(db: Session, ids: Iterable[int]) -> int:
    point_ids = sorted(set(ids))
    removed = stage_point_deletes(db, point_ids)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise CascadeTransactionFailure(
            "Could not delete attendance points",
            details={"point_ids": point_ids, "error": exc.__class__.__name__},
        ) from exc
    return removed


def date_range_clause(date_from: date | None, date_to: date | None):  # type: ignore[no-untyped-def]
    clauses = []
    if date_from is not None:
        clauses.append(AttendancePoint.shift_date >= date_from)
    if date_to is not None:
        clauses.append(AttendancePoint.shift_date <= date_to)
    return and_(*clauses) if clauses else None
