from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from attendance_points.errors import EmployeeNotFound
from attendance_points.models import Employee, ExpirationType
from attendance_points.services.expiration_policy import GbroPolicy, get_gbro_policy
from attendance_points.services.point_store import list_employee_points


@dataclass(slots=True)
class EmployeeSummary:
    employee_id: int
    as_of: date
    active_total: Decimal
    active_count: int
    excused_count: int
    sro_expired_count: int
    gbro_expired_count: int
    last_violation_date: date | None
    last_gbro_date: date | None
    reference_date: date | None
    reference_type: str | None
    days_clean: int | None
    days_until_gbro: int | None
    next_gbro_date: date | None
    eligible_pair_sum: Decimal
    is_gbro_ready: bool

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key, value in payload.items():
            if isinstance(value, date):
                payload[key] = value.isoformat()
            elif isinstance(value, Decimal):
                payload[key] = str(value)
        return payload


def employee_summary(
    db: Session,
    employee_id: int,
    as_of: date,
    *,
    policy: GbroPolicy | None = None,
) -> EmployeeSummary:
    """Point totals and the employee's position in the current clean window.

    The clean clock runs from the later of the last non-excused violation
    and the last applied GBRO roll-off; a tie counts as the violation.
    """
    if db.get(Employee, employee_id) is None:
        raise EmployeeNotFound(f"Employee {employee_id} not found", details={"employee_id": employee_id})
    policy = policy or get_gbro_policy()
    points = list_employee_points(db, employee_id)

    active = [point for point in points if point.is_active]
    eligible = [point for point in active if point.eligible_for_gbro]
    counted = [point for point in points if not point.is_excused and point.shift_date <= as_of]

    last_violation = max((point.shift_date for point in counted), default=None)
    last_gbro = max((point.gbro_applied_at for point in points if point.gbro_applied_at), default=None)
    if last_gbro is not None and (last_violation is None or last_gbro > last_violation):
        reference_date, reference_type = last_gbro, "gbro"
    elif last_violation is not None:
        reference_date, reference_type = last_violation, "violation"
    else:
        reference_date, reference_type = None, None

    days_clean = (as_of - reference_date).days if reference_date is not None else None
    days_until_gbro = None
    if eligible and days_clean is not None:
        days_until_gbro = max(0, policy.clean_days - days_clean)

    predictions = [point.gbro_expires_at for point in eligible if point.gbro_expires_at and not point.gbro_applied_at]
    oldest_pair = eligible[: policy.pair_size]

    return EmployeeSummary(
        employee_id=employee_id,
        as_of=as_of,
        active_total=sum((Decimal(point.point_value) for point in active), Decimal("0.00")),
        active_count=len(active),
        excused_count=sum(1 for point in points if point.is_excused),
        sro_expired_count=sum(
            1 for point in points if point.is_expired and point.expiration_type == ExpirationType.SRO
        ),
        gbro_expired_count=sum(
            1 for point in points if point.is_expired and point.expiration_type == ExpirationType.GBRO
        ),
        last_violation_date=last_violation,
        last_gbro_date=last_gbro,
        reference_date=reference_date,
        reference_type=reference_type,
        days_clean=days_clean,
        days_until_gbro=days_until_gbro,
        next_gbro_date=min(predictions, default=None),
        eligible_pair_sum=sum((Decimal(point.point_value) for point in oldest_pair), Decimal("0.00")),
        is_gbro_ready=bool(eligible) and days_until_gbro == 0,
    )
