from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from attendance_points.models import AuditActorType, AuditLog

logger = logging.getLogger("attendance_points.audit")


def _owning_employee(employee_id: int | None, details: dict[str, Any]) -> int | None:
    if employee_id is not None:
        return employee_id
    raw = details.get("employee_id")
    return raw if isinstance(raw, int) else None


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    employee_id: int | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    """Record who changed which employee's points; a failed write is logged, never raised.

    ``employee_id`` falls back to ``details["employee_id"]`` so point-level
    entries stay searchable by employee. Batch runs leave it empty.
    """
    details = details or {}
    owner = _owning_employee(employee_id, details)
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        employee_id=owner,
        success=success,
        details=details,
    )
    db.add(audit)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action,
                "employee_id": owner,
                "entity_id": entity_id,
                "actor_id": actor_id,
            },
        )
        return

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action,
            "employee_id": owner,
            "actor_type": actor_type.value,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "success": success,
            "details": details,
        },
    )
