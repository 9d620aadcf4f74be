"""Administrator edits of single points.

Each edit is staged under the employee lock and committed together with a
full GBRO cascade for that employee, so backdated changes flow into every
later prediction before the call returns. A failed cascade discards the edit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy.orm import Session

from attendance_points.audit import log_audit
from attendance_points.errors import ConsistencyConflict, PointNotEditable, PointNotFound, PointsEngineError
from attendance_points.models import AttendancePoint, AuditActorType, ExpirationType, PointType
from attendance_points.services.classifier import ViolationInput, classify
from attendance_points.services.employee_lock import lock_employee_timeline
from attendance_points.services.expiration_policy import compute_sro_for_point
from attendance_points.services.gbro_cascade import CascadeResult, replay_gbro_cascade
from attendance_points.services.point_store import (
    build_point,
    commit_timeline,
    find_slot_points,
    stage_point_deletes,
    stage_points,
)

logger = logging.getLogger("attendance_points.manual_points")

_UNSET = object()


@dataclass(slots=True)
class PointChange:
    point: AttendancePoint | None
    point_id: int
    employee_id: int
    cascade: CascadeResult


def _load_point(db: Session, point_id: int) -> AttendancePoint:
    point = db.get(AttendancePoint, point_id)
    if point is None:
        raise PointNotFound(f"Attendance point {point_id} not found", details={"point_id": point_id})
    return point


def _load_manual_point(db: Session, point_id: int) -> AttendancePoint:
    point = _load_point(db, point_id)
    if not point.is_manual:
        db.rollback()
        raise PointNotEditable(
            "Only manually created points can be edited or deleted",
            details={"point_id": point_id},
        )
    return point


def _ensure_slot_free(
    db: Session,
    *,
    employee_id: int,
    shift_date: date,
    point_type: PointType,
    ignore_id: int | None = None,
) -> None:
    holders = [
        point.id
        for point in find_slot_points(db, employee_id=employee_id, shift_date=shift_date, point_type=point_type)
        if point.id != ignore_id
    ]
    if holders:
        db.rollback()
        raise ConsistencyConflict(
            f"Employee {employee_id} already has a {point_type.value} point on {shift_date.isoformat()}",
            details={
                "employee_id": employee_id,
                "shift_date": shift_date.isoformat(),
                "point_type": point_type.value,
                "existing_point_ids": holders,
            },
        )


def _clear_gbro_state(point: AttendancePoint) -> None:
    point.gbro_expires_at = None
    point.gbro_applied_at = None
    point.gbro_batch_id = None
    if point.expiration_type == ExpirationType.GBRO:
        point.is_expired = False
        point.expired_at = None
        point.expiration_type = ExpirationType.NONE


def _replay_and_commit(db: Session, employee_id: int, as_of: date) -> CascadeResult:
    """Replay the cascade over the staged edit and commit both, or neither."""
    try:
        cascade = replay_gbro_cascade(db, employee_id, as_of)
    except PointsEngineError:
        db.rollback()
        raise
    commit_timeline(db, employee_id)
    return cascade


def _audit(db: Session, *, actor_id: str, action: str, point_id: int, details: dict) -> None:
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action=action,
        success=True,
        entity_type="attendance_point",
        entity_id=str(point_id),
        details=details,
    )


def create_manual_point(
    db: Session,
    *,
    employee_id: int,
    shift_date: date,
    point_type: PointType | str,
    as_of: date,
    created_by: str,
    minutes: int | None = None,
    is_advised: bool = False,
    violation_details: str | None = None,
    notes: str | None = None,
) -> PointChange:
    template = classify(
        ViolationInput(point_type=point_type, minutes=minutes, is_advised=is_advised),
        is_manual=True,
    )
    lock_employee_timeline(db, employee_id)
    _ensure_slot_free(db, employee_id=employee_id, shift_date=shift_date, point_type=template.point_type)

    point = build_point(
        template,
        employee_id=employee_id,
        shift_date=shift_date,
        is_manual=True,
        created_by=created_by,
        violation_details=violation_details,
        notes=notes,
    )
    stage_points(db, employee_id, [point])
    cascade = _replay_and_commit(db, employee_id, as_of)
    db.refresh(point)

    _audit(
        db,
        actor_id=created_by,
        action="MANUAL_POINT_CREATED",
        point_id=point.id,
        details={
            "employee_id": employee_id,
            "shift_date": shift_date.isoformat(),
            "point_type": template.point_type.value,
            "point_value": str(template.point_value),
        },
    )
    return PointChange(point=point, point_id=point.id, employee_id=employee_id, cascade=cascade)


def update_manual_point(
    db: Session,
    point_id: int,
    *,
    as_of: date,
    updated_by: str,
    shift_date: date | None = None,
    point_type: PointType | str | None = None,
    minutes: int | None | object = _UNSET,
    is_advised: bool | None = None,
    violation_details: str | None = None,
    notes: str | None | object = _UNSET,
) -> PointChange:
    """Edit a manual point; the point is re-classified and its GBRO state replayed."""
    point = _load_manual_point(db, point_id)
    employee_id = point.employee_id
    lock_employee_timeline(db, employee_id)
    if point.is_expired and point.expiration_type == ExpirationType.SRO:
        db.rollback()
        raise PointNotEditable(
            "Points already expired by standard roll-off cannot be edited",
            details={"point_id": point_id},
        )

    current_minutes = point.tardy_minutes if point.tardy_minutes is not None else point.undertime_minutes
    template = classify(
        ViolationInput(
            point_type=point_type if point_type is not None else point.point_type,
            minutes=current_minutes if minutes is _UNSET else minutes,
            is_advised=point.is_advised if is_advised is None else is_advised,
        ),
        is_manual=True,
    )
    new_shift_date = shift_date or point.shift_date
    if (new_shift_date, template.point_type) != (point.shift_date, point.point_type):
        _ensure_slot_free(
            db,
            employee_id=employee_id,
            shift_date=new_shift_date,
            point_type=template.point_type,
            ignore_id=point.id,
        )

    reclassified = (
        template.point_type != point.point_type
        or template.tardy_minutes != point.tardy_minutes
        or template.undertime_minutes != point.undertime_minutes
        or template.is_advised != point.is_advised
    )
    point.shift_date = new_shift_date
    point.point_type = template.point_type
    point.point_value = template.point_value
    point.is_advised = template.is_advised
    point.eligible_for_gbro = template.eligible_for_gbro
    point.tardy_minutes = template.tardy_minutes
    point.undertime_minutes = template.undertime_minutes
    point.sro_expires_at = compute_sro_for_point(point)
    if violation_details is not None and violation_details.strip():
        point.violation_details = violation_details.strip()
    elif reclassified:
        point.violation_details = template.violation_details
    if notes is not _UNSET:
        point.notes = notes
    _clear_gbro_state(point)

    stage_points(db, employee_id, [point])
    cascade = _replay_and_commit(db, employee_id, as_of)
    db.refresh(point)

    _audit(
        db,
        actor_id=updated_by,
        action="MANUAL_POINT_UPDATED",
        point_id=point.id,
        details={
            "employee_id": employee_id,
            "shift_date": point.shift_date.isoformat(),
            "point_type": point.point_type.value,
        },
    )
    return PointChange(point=point, point_id=point.id, employee_id=employee_id, cascade=cascade)


def delete_manual_point(db: Session, point_id: int, *, as_of: date, deleted_by: str) -> PointChange:
    point = _load_manual_point(db, point_id)
    employee_id = point.employee_id
    details = {
        "employee_id": employee_id,
        "shift_date": point.shift_date.isoformat(),
        "point_type": point.point_type.value,
    }
    lock_employee_timeline(db, employee_id)
    stage_point_deletes(db, [point_id])
    cascade = _replay_and_commit(db, employee_id, as_of)

    _audit(db, actor_id=deleted_by, action="MANUAL_POINT_DELETED", point_id=point_id, details=details)
    return PointChange(point=None, point_id=point_id, employee_id=employee_id, cascade=cascade)


def excuse_point(db: Session, point_id: int, *, reason: str, excused_by: str, as_of: date) -> PointChange:
    point = _load_point(db, point_id)
    employee_id = point.employee_id
    lock_employee_timeline(db, employee_id)
    if point.is_excused:
        db.rollback()
        raise PointNotEditable("Point is already excused", details={"point_id": point_id})
    if point.is_expired:
        db.rollback()
        raise PointNotEditable("Expired points cannot be excused", details={"point_id": point_id})

    point.is_excused = True
    point.excuse_reason = reason.strip() or None
    point.excused_by = excused_by
    point.excused_at = datetime.now(timezone.utc)
    _clear_gbro_state(point)
    stage_points(db, employee_id, [point])
    cascade = _replay_and_commit(db, employee_id, as_of)
    db.refresh(point)

    logger.info("point_excused", extra={"point_id": point_id, "employee_id": employee_id})
    _audit(
        db,
        actor_id=excused_by,
        action="POINT_EXCUSED",
        point_id=point_id,
        details={"employee_id": employee_id, "reason": point.excuse_reason},
    )
    return PointChange(point=point, point_id=point_id, employee_id=employee_id, cascade=cascade)


def unexcuse_point(db: Session, point_id: int, *, unexcused_by: str, as_of: date) -> PointChange:
    point = _load_point(db, point_id)
    employee_id = point.employee_id
    lock_employee_timeline(db, employee_id)
    if not point.is_excused:
        db.rollback()
        raise PointNotEditable("Point is not excused", details={"point_id": point_id})

    point.is_excused = False
    point.excuse_reason = None
    point.excused_by = None
    point.excused_at = None
    point.sro_expires_at = compute_sro_for_point(point)
    stage_points(db, employee_id, [point])
    cascade = _replay_and_commit(db, employee_id, as_of)
    db.refresh(point)

    logger.info("point_unexcused", extra={"point_id": point_id, "employee_id": employee_id})
    _audit(
        db,
        actor_id=unexcused_by,
        action="POINT_UNEXCUSED",
        point_id=point_id,
        details={"employee_id": employee_id},
    )
    return PointChange(point=point, point_id=point_id, employee_id=employee_id, cascade=cascade)
