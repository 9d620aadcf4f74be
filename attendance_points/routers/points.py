from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from attendance_points.audit import log_audit
from attendance_points.db import get_db
from attendance_points.errors import ApiError
from attendance_points.models import AuditActorType
from attendance_points.schemas import (
    AttendancePointRead,
    BatchResultRead,
    CascadeResultRead,
    ClassifyRequest,
    ClassifyResponse,
    ConsistencyJobRead,
    ConsistencyRunRequest,
    EmployeeSummaryRead,
    ExcuseRequest,
    ManagementStatsRead,
    ManualPointCreateRequest,
    ManualPointUpdateRequest,
    PointChangeResponse,
)
from attendance_points.services.classifier import ViolationInput, classify
from attendance_points.services.consistency import (
    ScopeFilter,
    coerce_operation_kind,
    get_consistency_job,
    management_stats,
    run_consistency_operation,
)
from attendance_points.services.expiration_policy import add_months
from attendance_points.services.gbro_cascade import recalculate_gbro_cascade
from attendance_points.services.manual_points import (
    PointChange,
    create_manual_point,
    delete_manual_point,
    excuse_point,
    unexcuse_point,
    update_manual_point,
)
from attendance_points.services.point_stats import employee_summary
from attendance_points.settings import local_today

router = APIRouter(prefix="/api/points", tags=["points"])


def _actor_id(request: Request) -> str:
    return str(getattr(request.state, "actor_id", None) or "system")


def _resolve_as_of(as_of: date | None) -> date:
    return as_of or local_today()


def _change_payload(change: PointChange) -> dict[str, Any]:
    return {
        "point_id": change.point_id,
        "employee_id": change.employee_id,
        "point": AttendancePointRead.model_validate(change.point) if change.point is not None else None,
        "cascade": change.cascade.to_dict(),
    }


@router.post("/classify", response_model=ClassifyResponse)
def classify_violation(payload: ClassifyRequest, shift_date: date | None = Query(default=None)) -> ClassifyResponse:
    template = classify(
        ViolationInput(point_type=payload.point_type, minutes=payload.minutes, is_advised=payload.is_advised)
    )
    return ClassifyResponse(
        point_type=template.point_type,
        point_value=template.point_value,
        is_advised=template.is_advised,
        is_ncns=template.is_ncns,
        eligible_for_gbro=template.eligible_for_gbro,
        sro_window_months=template.sro_window_months,
        violation_details=template.violation_details,
        sro_expires_at=add_months(shift_date, template.sro_window_months) if shift_date else None,
    )


@router.post("/employees/{employee_id}/recalculate-gbro", response_model=CascadeResultRead)
def recalculate_employee_gbro(
    employee_id: int,
    request: Request,
    as_of: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    resolved = _resolve_as_of(as_of)
    result = recalculate_gbro_cascade(db, employee_id, resolved)
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=_actor_id(request),
        action="GBRO_RECALCULATED",
        success=True,
        entity_type="employee",
        entity_id=str(employee_id),
        employee_id=employee_id,
        details={
            "as_of": resolved.isoformat(),
            "rolled_off": len(result.rolled_off),
            "predicted": len(result.predicted),
            "changed_count": result.changed_count,
        },
        request_id=getattr(request.state, "request_id", None),
    )
    return result.to_dict()


@router.get("/employees/{employee_id}/summary", response_model=EmployeeSummaryRead)
def get_employee_summary(
    employee_id: int,
    as_of: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return employee_summary(db, employee_id, _resolve_as_of(as_of)).to_dict()


@router.post("/manual", response_model=PointChangeResponse, status_code=status.HTTP_201_CREATED)
def create_manual(
    payload: ManualPointCreateRequest,
    request: Request,
    as_of: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    change = create_manual_point(
        db,
        employee_id=payload.employee_id,
        shift_date=payload.shift_date,
        point_type=payload.point_type,
        minutes=payload.minutes,
        is_advised=payload.is_advised,
        violation_details=payload.violation_details,
        notes=payload.notes,
        created_by=_actor_id(request),
        as_of=_resolve_as_of(as_of),
    )
    return _change_payload(change)


@router.put("/manual/{point_id}", response_model=PointChangeResponse)
def update_manual(
    point_id: int,
    payload: ManualPointUpdateRequest,
    request: Request,
    as_of: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    optional: dict[str, Any] = {}
    if "minutes" in payload.model_fields_set:
        optional["minutes"] = payload.minutes
    if "notes" in payload.model_fields_set:
        optional["notes"] = payload.notes
    change = update_manual_point(
        db,
        point_id,
        as_of=_resolve_as_of(as_of),
        updated_by=_actor_id(request),
        shift_date=payload.shift_date,
        point_type=payload.point_type,
        is_advised=payload.is_advised,
        violation_details=payload.violation_details,
        **optional,
    )
    return _change_payload(change)


@router.delete("/manual/{point_id}", response_model=PointChangeResponse)
def delete_manual(
    point_id: int,
    request: Request,
    as_of: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    change = delete_manual_point(db, point_id, as_of=_resolve_as_of(as_of), deleted_by=_actor_id(request))
    return _change_payload(change)


@router.post("/{point_id}/excuse", response_model=PointChangeResponse)
def excuse(
    point_id: int,
    payload: ExcuseRequest,
    request: Request,
    as_of: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    change = excuse_point(
        db,
        point_id,
        reason=payload.reason,
        excused_by=_actor_id(request),
        as_of=_resolve_as_of(as_of),
    )
    return _change_payload(change)


@router.post("/{point_id}/unexcuse", response_model=PointChangeResponse)
def unexcuse(
    point_id: int,
    request: Request,
    as_of: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    change = unexcuse_point(db, point_id, unexcused_by=_actor_id(request), as_of=_resolve_as_of(as_of))
    return _change_payload(change)


@router.get("/management/stats", response_model=ManagementStatsRead)
def get_management_stats(
    employee_id: list[int] | None = Query(default=None),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    as_of: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    scope = ScopeFilter(
        employee_ids=tuple(employee_id) if employee_id else None,
        date_from=date_from,
        date_to=date_to,
    )
    return management_stats(db, scope, _resolve_as_of(as_of))


@router.post("/operations/{kind}", response_model=BatchResultRead)
def run_operation(
    kind: str,
    payload: ConsistencyRunRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    operation_kind = coerce_operation_kind(kind)
    scope = ScopeFilter(
        employee_ids=tuple(payload.employee_ids) if payload.employee_ids is not None else None,
        date_from=payload.date_from,
        date_to=payload.date_to,
        expiration_scope=payload.expiration_scope,
    )
    result = run_consistency_operation(
        db,
        operation_kind,
        scope,
        _resolve_as_of(payload.as_of),
        requested_by=_actor_id(request),
    )
    return result.to_dict()


@router.get("/jobs/{job_id}", response_model=ConsistencyJobRead)
def get_job(job_id: str, db: Session = Depends(get_db)) -> ConsistencyJobRead:
    job = get_consistency_job(db, job_id)
    if job is None:
        raise ApiError(status_code=404, code="JOB_NOT_FOUND", message="Consistency job not found.")
    return job
