from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from attendance_points.errors import EmployeeNotFound
from attendance_points.models import Employee


def lock_employee_timeline(db: Session, employee_id: int) -> int:
    """Take the row lock that serializes writers of one employee's point set.

    The lock lives until the surrounding transaction commits or rolls back, so
    it spans processes; dialects without FOR UPDATE (SQLite) ignore it.
    """
    locked_id = db.scalar(
        select(Employee.id).where(Employee.id == employee_id).with_for_update()
    )
    if locked_id is None:
        raise EmployeeNotFound(f"Employee {employee_id} not found", details={"employee_id": employee_id})
    return locked_id
