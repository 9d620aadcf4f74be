from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_points.audit import log_audit
from attendance_points.errors import (
    CascadeTransactionFailure,
    ConsistencyConflict,
    PointsEngineError,
    ValidationError,
)
from attendance_points.models import (
    AttendancePoint,
    AuditActorType,
    ConsistencyJob,
    ConsistencyOperationKind,
    ExpirationScope,
    ExpirationType,
    JobStatus,
)
from attendance_points.services.classifier import classify
from attendance_points.services.employee_lock import lock_employee_timeline
from attendance_points.services.expiration_policy import (
    compute_sro_for_point,
    is_gbro_due,
    is_sro_due,
)
from attendance_points.services.gbro_cascade import (
    make_batch_id,
    replay_gbro_cascade,
    simulate_cascade,
    snapshot_point,
)
from attendance_points.services.point_store import (
    build_point,
    commit_timeline,
    date_range_clause,
    list_active_points,
    list_cascade_points,
    list_employee_points,
    list_taken_slots,
    list_unapplied_gbro_points,
    stage_point_deletes,
    stage_points,
    upsert_points,
)
from attendance_points.services.violation_source import list_unprocessed_violations, to_violation_input
from attendance_points.settings import get_settings

logger = logging.getLogger("attendance_points.consistency")

INTERNAL_FAILURE_CODE = "POINTS_INTERNAL_ERROR"


@dataclass(frozen=True, slots=True)
class ScopeFilter:
    employee_ids: tuple[int, ...] | None = None
    date_from: date | None = None
    date_to: date | None = None
    expiration_scope: ExpirationScope = ExpirationScope.BOTH

    def covers(self, shift_date: date) -> bool:
        if self.date_from is not None and shift_date < self.date_from:
            return False
        if self.date_to is not None and shift_date > self.date_to:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "employee_ids": list(self.employee_ids) if self.employee_ids is not None else None,
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
            "expiration_scope": self.expiration_scope.value,
        }


@dataclass(slots=True)
class BatchResult:
    kind: ConsistencyOperationKind
    as_of: date
    affected_count: int = 0
    succeeded: list[int] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "as_of": self.as_of.isoformat(),
            "job_id": self.job_id,
            "affected_count": self.affected_count,
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "conflicts": list(self.conflicts),
            "skipped": list(self.skipped),
            "details": dict(self.details),
        }


EmployeeOperation = Callable[[Session, int, ScopeFilter, date, BatchResult], int]


def _bump(result: BatchResult, key: str, amount: int = 1) -> None:
    result.details[key] = int(result.details.get(key, 0)) + amount


def regenerate_missing_points(
    db: Session,
    employee_id: int,
    scope: ScopeFilter,
    as_of: date,
    result: BatchResult,
) -> int:
    """Insert points for verified violations that have none; taken slots are reported, not overwritten."""
    lock_employee_timeline(db, employee_id)
    violations = list_unprocessed_violations(
        db,
        date_from=scope.date_from,
        date_to=scope.date_to,
        employee_ids=[employee_id],
    )
    taken = list_taken_slots(db, employee_ids=[employee_id])
    created: list[AttendancePoint] = []
    for violation in violations:
        try:
            template = classify(to_violation_input(violation))
        except ValidationError as exc:
            result.skipped.append(
                {
                    "employee_id": employee_id,
                    "violation_id": violation.id,
                    "code": exc.code,
                    "reason": exc.message,
                }
            )
            continue

        slot = (employee_id, violation.shift_date, template.point_type)
        if slot in taken:
            conflict = ConsistencyConflict(
                f"Slot {violation.shift_date.isoformat()}/{template.point_type.value} already has a point",
                details={"violation_id": violation.id},
            )
            result.conflicts.append(
                {
                    "employee_id": employee_id,
                    "violation_id": violation.id,
                    "shift_date": violation.shift_date.isoformat(),
                    "point_type": template.point_type.value,
                    "code": conflict.code,
                    "reason": conflict.message,
                }
            )
            logger.info(
                "consistency_conflict",
                extra={
                    "employee_id": employee_id,
                    "violation_id": violation.id,
                    "shift_date": violation.shift_date,
                    "point_type": template.point_type.value,
                },
            )
            continue

        taken.add(slot)
        created.append(
            build_point(
                template,
                employee_id=employee_id,
                shift_date=violation.shift_date,
                violation_id=violation.id,
                violation_details=violation.details,
            )
        )

    upsert_points(db, employee_id, created)
    _bump(result, "points_created", len(created))
    return len(created)


def _survivor_key(point: AttendancePoint) -> tuple[bool, datetime, int]:
    created_at = point.created_at or datetime.max.replace(tzinfo=timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return (not point.is_excused, created_at, point.id)


def _in_cascade_set(point: AttendancePoint) -> bool:
    if not point.eligible_for_gbro or point.is_excused:
        return False
    return not point.is_expired or point.expiration_type == ExpirationType.GBRO


def _replay_cascade(db: Session, employee_id: int, as_of: date, result: BatchResult) -> int:
    cascade = replay_gbro_cascade(db, employee_id, as_of)
    _bump(result, "rolled_off", len(cascade.rolled_off))
    _bump(result, "predicted", len(cascade.predicted))
    if cascade.deferred_to_sro:
        _bump(result, "sro_expired", len(cascade.deferred_to_sro))
    return cascade.changed_count


def _stage_duplicate_removal(
    db: Session,
    employee_id: int,
    scope: ScopeFilter,
    as_of: date,
    result: BatchResult,
) -> int:
    lock_employee_timeline(db, employee_id)
    slots: dict[tuple[date, Any], list[AttendancePoint]] = defaultdict(list)
    for point in list_employee_points(db, employee_id):
        if scope.covers(point.shift_date):
            slots[(point.shift_date, point.point_type)].append(point)

    doomed: list[AttendancePoint] = []
    for group in slots.values():
        if len(group) < 2:
            continue
        survivor = min(group, key=_survivor_key)
        doomed.extend(point for point in group if point.id != survivor.id)
    if not doomed:
        return 0

    touches_cascade = any(_in_cascade_set(point) for point in doomed)
    removed = stage_point_deletes(db, [point.id for point in doomed])
    _bump(result, "duplicates_removed", removed)
    logger.info(
        "duplicate_points_removed",
        extra={"employee_id": employee_id, "point_ids": sorted(point.id for point in doomed)},
    )
    if touches_cascade:
        _replay_cascade(db, employee_id, as_of, result)
    return removed


def remove_duplicate_points(
    db: Session,
    employee_id: int,
    scope: ScopeFilter,
    as_of: date,
    result: BatchResult,
) -> int:
    removed = _stage_duplicate_removal(db, employee_id, scope, as_of, result)
    commit_timeline(db, employee_id)
    return removed


def _finalize_gbro_batches(employee_id: int, points: Sequence[AttendancePoint]) -> None:
    batches: dict[date, list[AttendancePoint]] = defaultdict(list)
    for point in points:
        batches[point.gbro_expires_at].append(point)
    for rolloff_date, members in batches.items():
        batch_id = make_batch_id(employee_id, [point.id for point in members], rolloff_date)
        for point in members:
            point.is_expired = True
            point.expired_at = rolloff_date
            point.expiration_type = ExpirationType.GBRO
            point.gbro_applied_at = rolloff_date
            point.gbro_batch_id = point.gbro_batch_id or batch_id


def _stage_pending_expirations(
    db: Session,
    employee_id: int,
    scope: ScopeFilter,
    as_of: date,
    result: BatchResult,
) -> int:
    lock_employee_timeline(db, employee_id)
    check_sro = scope.expiration_scope in {ExpirationScope.SRO, ExpirationScope.BOTH}
    check_gbro = scope.expiration_scope in {ExpirationScope.GBRO, ExpirationScope.BOTH}

    sro_expired: list[AttendancePoint] = []
    gbro_expired: list[AttendancePoint] = []
    for point in list_active_points(db, employee_id):
        if not scope.covers(point.shift_date):
            continue
        sro_due = check_sro and is_sro_due(point, as_of)
        gbro_due = check_gbro and is_gbro_due(point, as_of)
        if sro_due and gbro_due:
            if point.sro_expires_at <= point.gbro_expires_at:
                gbro_due = False
            else:
                sro_due = False
        if sro_due:
            point.is_expired = True
            point.expired_at = point.sro_expires_at
            point.expiration_type = ExpirationType.SRO
            sro_expired.append(point)
        elif gbro_due:
            gbro_expired.append(point)

    _finalize_gbro_batches(employee_id, gbro_expired)
    changed = sro_expired + gbro_expired
    stage_points(db, employee_id, changed)
    _bump(result, "sro_expired", len(sro_expired))
    _bump(result, "gbro_expired", len(gbro_expired))
    return len(changed)


def expire_pending_points(
    db: Session,
    employee_id: int,
    scope: ScopeFilter,
    as_of: date,
    result: BatchResult,
) -> int:
    """Expire active points whose SRO and/or predicted GBRO date has passed.

    When both dates are due the earlier one wins and SRO takes a tie. GBRO
    predictions are finalized as they stand; nothing is re-simulated here.
    """
    expired = _stage_pending_expirations(db, employee_id, scope, as_of, result)
    commit_timeline(db, employee_id)
    return expired


def reset_expired_points(
    db: Session,
    employee_id: int,
    scope: ScopeFilter,
    as_of: date,
    result: BatchResult,
) -> int:
    lock_employee_timeline(db, employee_id)
    wanted: set[ExpirationType] = set()
    if scope.expiration_scope in {ExpirationScope.SRO, ExpirationScope.BOTH}:
        wanted.add(ExpirationType.SRO)
    if scope.expiration_scope in {ExpirationScope.GBRO, ExpirationScope.BOTH}:
        wanted.add(ExpirationType.GBRO)

    changed: list[AttendancePoint] = []
    for point in list_employee_points(db, employee_id):
        if not point.is_expired or point.is_excused or not scope.covers(point.shift_date):
            continue
        if point.expiration_type not in wanted:
            continue
        point.is_expired = False
        point.expired_at = None
        point.expiration_type = ExpirationType.NONE
        point.sro_expires_at = compute_sro_for_point(point)
        point.gbro_expires_at = None
        point.gbro_applied_at = None
        point.gbro_batch_id = None
        changed.append(point)

    upsert_points(db, employee_id, changed)
    _bump(result, "points_reset", len(changed))
    return len(changed)


def _refresh_gbro_predictions(db: Session, employee_id: int, as_of: date, *, overwrite: bool) -> int:
    lock_employee_timeline(db, employee_id)
    applied = [point.gbro_applied_at for point in list_cascade_points(db, employee_id) if point.gbro_applied_at]
    anchor = max(applied) if applied else None
    pending = list_unapplied_gbro_points(db, employee_id)
    if not pending:
        db.commit()
        return 0

    plan = simulate_cascade(
        [snapshot_point(point) for point in pending],
        as_of,
        employee_id=employee_id,
        previous_rolloff=anchor,
    )
    predictions = {
        point_id: pair.rolloff_date
        for pair in plan.pairs
        for point_id in pair.point_ids
    }

    changed: list[AttendancePoint] = []
    for point in pending:
        if not overwrite and point.gbro_expires_at is not None:
            continue
        predicted = predictions.get(point.id)
        if point.gbro_expires_at != predicted:
            point.gbro_expires_at = predicted
            changed.append(point)

    upsert_points(db, employee_id, changed)
    return len(changed)


def initialize_gbro_dates(
    db: Session,
    employee_id: int,
    scope: ScopeFilter,
    as_of: date,
    result: BatchResult,
) -> int:
    """Fill missing GBRO predictions without touching existing ones or applying roll-offs."""
    count = _refresh_gbro_predictions(db, employee_id, as_of, overwrite=False)
    _bump(result, "predictions_written", count)
    return count


def fix_gbro_dates(
    db: Session,
    employee_id: int,
    scope: ScopeFilter,
    as_of: date,
    result: BatchResult,
) -> int:
    """Overwrite every unapplied GBRO prediction, anchored on the roll-offs already applied."""
    count = _refresh_gbro_predictions(db, employee_id, as_of, overwrite=True)
    _bump(result, "predictions_written", count)
    return count


def recalculate_gbro(
    db: Session,
    employee_id: int,
    scope: ScopeFilter,
    as_of: date,
    result: BatchResult,
) -> int:
    changed = _replay_cascade(db, employee_id, as_of, result)
    commit_timeline(db, employee_id)
    return changed


def cleanup_points(
    db: Session,
    employee_id: int,
    scope: ScopeFilter,
    as_of: date,
    result: BatchResult,
) -> int:
    """Remove duplicates, then expire whatever is due, committed together."""
    removed = _stage_duplicate_removal(db, employee_id, scope, as_of, result)
    expire_scope = ScopeFilter(
        employee_ids=scope.employee_ids,
        date_from=scope.date_from,
        date_to=scope.date_to,
        expiration_scope=ExpirationScope.BOTH,
    )
    expired = _stage_pending_expirations(db, employee_id, expire_scope, as_of, result)
    commit_timeline(db, employee_id)
    return removed + expired


def process_expirations(
    db: Session,
    employee_id: int,
    scope: ScopeFilter,
    as_of: date,
    result: BatchResult,
) -> int:
    """Daily run: SRO expiry, then a full cascade that applies matured GBRO pairs, in one transaction."""
    sro_scope = ScopeFilter(employee_ids=scope.employee_ids, expiration_scope=ExpirationScope.SRO)
    expired = _stage_pending_expirations(db, employee_id, sro_scope, as_of, result)
    changed = _replay_cascade(db, employee_id, as_of, result)
    commit_timeline(db, employee_id)
    return expired + changed


OPERATIONS: dict[ConsistencyOperationKind, EmployeeOperation] = {
    ConsistencyOperationKind.REGENERATE: regenerate_missing_points,
    ConsistencyOperationKind.REMOVE_DUPLICATES: remove_duplicate_points,
    ConsistencyOperationKind.EXPIRE_PENDING: expire_pending_points,
    ConsistencyOperationKind.RESET_EXPIRED: reset_expired_points,
    ConsistencyOperationKind.INITIALIZE_GBRO_DATES: initialize_gbro_dates,
    ConsistencyOperationKind.FIX_GBRO_DATES: fix_gbro_dates,
    ConsistencyOperationKind.RECALCULATE_GBRO: recalculate_gbro,
    ConsistencyOperationKind.CLEANUP: cleanup_points,
    ConsistencyOperationKind.PROCESS_EXPIRATIONS: process_expirations,
}


def coerce_operation_kind(raw: ConsistencyOperationKind | str) -> ConsistencyOperationKind:
    if isinstance(raw, ConsistencyOperationKind):
        return raw
    normalized = str(raw or "").strip().upper().replace("-", "_")
    try:
        return ConsistencyOperationKind(normalized)
    except ValueError:
        raise ValidationError(
            f"Unknown consistency operation: {raw!r}",
            details={"kind": str(raw)},
        ) from None


def resolve_employee_ids(db: Session, kind: ConsistencyOperationKind, scope: ScopeFilter) -> list[int]:
    if scope.employee_ids is not None:
        return sorted(set(scope.employee_ids))
    if kind == ConsistencyOperationKind.REGENERATE:
        violations = list_unprocessed_violations(db, date_from=scope.date_from, date_to=scope.date_to)
        return sorted({violation.employee_id for violation in violations})
    stmt = select(AttendancePoint.employee_id).distinct()
    if kind == ConsistencyOperationKind.PROCESS_EXPIRATIONS:
        stmt = stmt.where(
            AttendancePoint.is_expired.is_(False),
            AttendancePoint.is_excused.is_(False),
        )
    return sorted(int(item) for item in db.scalars(stmt).all())


def get_consistency_job(db: Session, job_id: str) -> ConsistencyJob | None:
    return db.scalar(select(ConsistencyJob).where(ConsistencyJob.job_id == job_id))


def _record_failure(db: Session, result: BatchResult, employee_id: int, code: str, reason: str) -> None:
    db.rollback()
    result.failed.append({"employee_id": employee_id, "code": code, "reason": reason})
    logger.warning(
        "consistency_employee_failed",
        extra={
            "kind": result.kind.value,
            "employee_id": employee_id,
            "code": code,
            "reason": reason,
        },
    )


def run_consistency_operation(
    db: Session,
    kind: ConsistencyOperationKind | str,
    scope: ScopeFilter | None,
    as_of: date,
    *,
    requested_by: str = "system",
) -> BatchResult:
    """Run one batch operation employee by employee.

    Every employee is its own transaction: a failure is rolled back, recorded
    in ``BatchResult.failed`` and the run moves on. Progress is committed to
    the ``ConsistencyJob`` row after each employee.
    """
    operation_kind = coerce_operation_kind(kind)
    scope = scope or ScopeFilter()
    operation = OPERATIONS[operation_kind]
    result = BatchResult(kind=operation_kind, as_of=as_of)

    employee_ids = resolve_employee_ids(db, operation_kind, scope)
    job = ConsistencyJob(
        job_id=uuid.uuid4().hex,
        kind=operation_kind,
        status=JobStatus.RUNNING,
        scope=scope.to_dict(),
        as_of=as_of,
        total=len(employee_ids),
        processed=0,
        affected_count=0,
        failed_count=0,
        result={},
        requested_by=requested_by,
        started_at=datetime.now(timezone.utc),
    )
    db.add(job)
    db.commit()
    result.job_id = job.job_id
    logger.info(
        "consistency_run_started",
        extra={"job_id": job.job_id, "kind": operation_kind.value, "employee_count": len(employee_ids)},
    )

    try:
        for employee_id in employee_ids:
            counters = dict(result.details)
            try:
                result.affected_count += operation(db, employee_id, scope, as_of, result)
                result.succeeded.append(employee_id)
            except PointsEngineError as exc:
                result.details = counters
                _record_failure(db, result, employee_id, exc.code, exc.message)
            except SQLAlchemyError as exc:
                result.details = counters
                _record_failure(db, result, employee_id, CascadeTransactionFailure.code, str(exc)[:500])
            except Exception as exc:
                result.details = counters
                logger.exception(
                    "consistency_employee_crashed",
                    extra={"kind": operation_kind.value, "employee_id": employee_id},
                )
                _record_failure(
                    db,
                    result,
                    employee_id,
                    INTERNAL_FAILURE_CODE,
                    f"{exc.__class__.__name__}: {exc}"[:500],
                )

            job.processed += 1
            job.affected_count = result.affected_count
            job.failed_count = len(result.failed)
            db.commit()
    except Exception as exc:
        db.rollback()
        job.status = JobStatus.FAILED
        job.last_error = str(exc)[:4000]
        job.result = result.to_dict()
        job.finished_at = datetime.now(timezone.utc)
        db.commit()
        logger.exception(
            "consistency_run_failed",
            extra={"job_id": job.job_id, "kind": operation_kind.value},
        )
        raise

    job.status = JobStatus.COMPLETED
    job.result = result.to_dict()
    job.finished_at = datetime.now(timezone.utc)
    db.commit()
    logger.info(
        "consistency_run_complete",
        extra={
            "job_id": job.job_id,
            "kind": operation_kind.value,
            "as_of": as_of,
            "affected_count": result.affected_count,
            "succeeded": len(result.succeeded),
            "failed": len(result.failed),
            "conflicts": len(result.conflicts),
        },
    )

    if get_settings().batch_commit_audit:
        log_audit(
            db,
            actor_type=AuditActorType.SYSTEM if requested_by == "system" else AuditActorType.ADMIN,
            actor_id=requested_by,
            action=f"POINTS_{operation_kind.value}",
            success=not result.failed,
            entity_type="consistency_job",
            entity_id=job.job_id,
            details={
                "scope": scope.to_dict(),
                "as_of": as_of.isoformat(),
                "affected_count": result.affected_count,
                "failed_count": len(result.failed),
                "conflict_count": len(result.conflicts),
            },
        )
    return result


def management_stats(db: Session, scope: ScopeFilter | None, as_of: date) -> dict[str, Any]:
    """Read-only health counters for the administration dashboard."""
    scope = scope or ScopeFilter()
    filters = []
    range_clause = date_range_clause(scope.date_from, scope.date_to)
    if range_clause is not None:
        filters.append(range_clause)
    if scope.employee_ids is not None:
        filters.append(AttendancePoint.employee_id.in_(list(scope.employee_ids)))

    def _count(*conditions) -> int:  # type: ignore[no-untyped-def]
        stmt = select(func.count(AttendancePoint.id)).where(*filters, *conditions)
        return int(db.scalar(stmt) or 0)

    active = (AttendancePoint.is_expired.is_(False), AttendancePoint.is_excused.is_(False))
    slot_counts = (
        select(func.count(AttendancePoint.id).label("point_count"))
        .where(*filters)
        .group_by(AttendancePoint.employee_id, AttendancePoint.shift_date, AttendancePoint.point_type)
        .having(func.count(AttendancePoint.id) > 1)
        .subquery()
    )
    duplicates = db.scalar(select(func.coalesce(func.sum(slot_counts.c.point_count - 1), 0)))
    missing = list_unprocessed_violations(
        db,
        date_from=scope.date_from,
        date_to=scope.date_to,
        employee_ids=scope.employee_ids,
    )
    return {
        "as_of": as_of.isoformat(),
        "total_points": _count(),
        "active_points": _count(*active),
        "excused_points": _count(AttendancePoint.is_excused.is_(True)),
        "expired_points": _count(AttendancePoint.is_expired.is_(True)),
        "duplicate_points": int(duplicates or 0),
        "pending_sro": _count(*active, AttendancePoint.sro_expires_at <= as_of),
        "pending_gbro": _count(
            *active,
            AttendancePoint.eligible_for_gbro.is_(True),
            AttendancePoint.gbro_expires_at.is_not(None),
            AttendancePoint.gbro_expires_at <= as_of,
        ),
        "missing_points": len(missing),
    }
