"""Good-Behavior Roll-Off cascade.

The cascade is a reset-then-replay over one employee's GBRO-eligible points:
every run throws away the previous GBRO state and walks the timeline from the
oldest point, so a backdated insert, edit, excuse or delete anywhere in the
history is reflected in every later prediction. Running it twice with the same
data and the same ``as_of`` yields the same rows.

Pairs are formed from the oldest surviving points. A pair's clean window
starts at the later of its newest violation and the previous roll-off, and
the pair rolls off ``clean_days`` later. The first pair that has not matured
by ``as_of`` receives a prediction and the replay stops there: a later pair
cannot roll off before an earlier one.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_points.errors import CascadeTransactionFailure, PointsEngineError, PolicyAmbiguity
from attendance_points.models import AttendancePoint, ExpirationType
from attendance_points.services.employee_lock import lock_employee_timeline
from attendance_points.services.expiration_policy import (
    GbroPolicy,
    compute_sro_for_point,
    get_gbro_policy,
    pairing_reference_date,
)
from attendance_points.services.point_store import commit_timeline, list_cascade_points, stage_points

logger = logging.getLogger("attendance_points.gbro_cascade")

_BATCH_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "attendance-points/gbro-batch")


@dataclass(frozen=True, slots=True)
class PointSnapshot:
    id: int
    employee_id: int
    shift_date: date
    sro_expires_at: date
    point_value: Decimal = Decimal("0")


@dataclass(frozen=True, slots=True)
class CascadePair:
    index: int
    point_ids: tuple[int, ...]
    reference_date: date
    rolloff_date: date
    matured: bool
    batch_id: str | None


@dataclass(slots=True)
class CascadePlan:
    employee_id: int
    as_of: date
    pairs: list[CascadePair] = field(default_factory=list)
    deferred_to_sro: list[int] = field(default_factory=list)
    unscheduled: list[int] = field(default_factory=list)

    @property
    def matured_pairs(self) -> list[CascadePair]:
        return [pair for pair in self.pairs if pair.matured]

    @property
    def pending_pair(self) -> CascadePair | None:
        for pair in self.pairs:
            if not pair.matured:
                return pair
        return None

    @property
    def last_rolloff_date(self) -> date | None:
        matured = self.matured_pairs
        return matured[-1].rolloff_date if matured else None


@dataclass(frozen=True, slots=True)
class RolledOffPoint:
    point_id: int
    shift_date: date
    gbro_applied_at: date
    gbro_batch_id: str


@dataclass(frozen=True, slots=True)
class PredictedPoint:
    point_id: int
    shift_date: date
    gbro_expires_at: date


@dataclass(slots=True)
class CascadeResult:
    employee_id: int
    as_of: date
    rolled_off: list[RolledOffPoint] = field(default_factory=list)
    predicted: list[PredictedPoint] = field(default_factory=list)
    deferred_to_sro: list[int] = field(default_factory=list)
    changed_count: int = 0

    def to_dict(self) -> dict:
        return {
            "employee_id": self.employee_id,
            "as_of": self.as_of.isoformat(),
            "rolled_off": [
                {
                    "point_id": item.point_id,
                    "shift_date": item.shift_date.isoformat(),
                    "gbro_applied_at": item.gbro_applied_at.isoformat(),
                    "gbro_batch_id": item.gbro_batch_id,
                }
                for item in self.rolled_off
            ],
            "predicted": [
                {
                    "point_id": item.point_id,
                    "shift_date": item.shift_date.isoformat(),
                    "gbro_expires_at": item.gbro_expires_at.isoformat(),
                }
                for item in self.predicted
            ],
            "deferred_to_sro": list(self.deferred_to_sro),
            "changed_count": self.changed_count,
        }


def make_batch_id(employee_id: int, point_ids: Sequence[int], rolloff_date: date) -> str:
    key = f"{employee_id}:{rolloff_date.isoformat()}:{'-'.join(str(item) for item in point_ids)}"
    return f"gbro-{uuid.uuid5(_BATCH_NAMESPACE, key).hex}"


def snapshot_point(point: AttendancePoint) -> PointSnapshot:
    return PointSnapshot(
        id=point.id,
        employee_id=point.employee_id,
        shift_date=point.shift_date,
        sro_expires_at=point.sro_expires_at or compute_sro_for_point(point),
        point_value=Decimal(point.point_value or 0),
    )


def _resolve_employee_id(points: Sequence[PointSnapshot], employee_id: int | None) -> int:
    owners = {point.employee_id for point in points}
    if employee_id is not None:
        owners.add(employee_id)
    if len(owners) > 1:
        raise PolicyAmbiguity(
            "Cascade input mixes points of several employees",
            details={"employee_ids": sorted(owners)},
        )
    if not owners:
        raise PolicyAmbiguity("Cascade input has no owning employee")
    return owners.pop()


def _check_pair(pair: Sequence[PointSnapshot], reference: date, previous_rolloff: date | None) -> None:
    newest = pair[-1].shift_date
    if reference < newest or (previous_rolloff is not None and reference < previous_rolloff):
        raise PolicyAmbiguity(
            "Pairing reference date precedes the window it must cover",
            details={
                "point_ids": [point.id for point in pair],
                "reference_date": reference.isoformat(),
                "newest_shift_date": newest.isoformat(),
                "previous_rolloff": previous_rolloff.isoformat() if previous_rolloff else None,
            },
        )


def simulate_cascade(
    points: Sequence[PointSnapshot],
    as_of: date,
    *,
    employee_id: int | None = None,
    policy: GbroPolicy | None = None,
    previous_rolloff: date | None = None,
) -> CascadePlan:
    """Replay the GBRO pairing over ``points`` without touching storage.

    ``previous_rolloff`` seeds the clock for predict-only refreshes that
    start after roll-offs which are already applied.
    """
    owner = _resolve_employee_id(points, employee_id)
    policy = policy or get_gbro_policy()
    plan = CascadePlan(employee_id=owner, as_of=as_of)

    seen: set[int] = set()
    for point in points:
        if point.id in seen:
            raise PolicyAmbiguity("Point appears twice in cascade input", details={"point_id": point.id})
        seen.add(point.id)

    queue = sorted(points, key=lambda item: (item.shift_date, item.id))
    last_rolloff = previous_rolloff
    while queue:
        pair = queue[: policy.pair_size]
        reference = pairing_reference_date(pair[-1].shift_date, last_rolloff)
        rolloff = policy.rolloff_date(reference)

        # SRO fired first (ties go to SRO).
        cutoff = min(rolloff, as_of)
        claimed = {point.id for point in pair if point.sro_expires_at <= cutoff}
        if claimed:
            plan.deferred_to_sro.extend(point.id for point in pair if point.id in claimed)
            queue = [point for point in queue if point.id not in claimed]
            continue

        _check_pair(pair, reference, last_rolloff)
        point_ids = tuple(point.id for point in pair)
        matured = rolloff <= as_of
        plan.pairs.append(
            CascadePair(
                index=len(plan.pairs),
                point_ids=point_ids,
                reference_date=reference,
                rolloff_date=rolloff,
                matured=matured,
                batch_id=make_batch_id(owner, point_ids, rolloff) if matured else None,
            )
        )
        queue = queue[len(pair) :]
        if not matured:
            break
        last_rolloff = rolloff

    plan.unscheduled = [point.id for point in queue]
    return plan


def _assign(point: AttendancePoint, field_name: str, value: object) -> bool:
    if getattr(point, field_name) == value:
        return False
    setattr(point, field_name, value)
    return True


def _target_state(plan: CascadePlan) -> dict[int, dict[str, object]]:
    state: dict[int, dict[str, object]] = {}
    for pair in plan.pairs:
        for point_id in pair.point_ids:
            if pair.matured:
                state[point_id] = {
                    "gbro_expires_at": pair.rolloff_date,
                    "gbro_applied_at": pair.rolloff_date,
                    "gbro_batch_id": pair.batch_id,
                    "is_expired": True,
                    "expired_at": pair.rolloff_date,
                    "expiration_type": ExpirationType.GBRO,
                }
            else:
                state[point_id] = {"gbro_expires_at": pair.rolloff_date}
    return state


_RESET_STATE: dict[str, object] = {
    "gbro_expires_at": None,
    "gbro_applied_at": None,
    "gbro_batch_id": None,
    "is_expired": False,
    "expired_at": None,
    "expiration_type": ExpirationType.NONE,
}


def apply_cascade_plan(points: Sequence[AttendancePoint], plan: CascadePlan) -> list[AttendancePoint]:
    """Move every replayed point to the state the plan assigns; return the ones that changed.

    Points the replay left to SRO have an SRO date on or before ``as_of`` and
    are finalized as SRO-expired here.
    """
    targets = _target_state(plan)
    deferred = set(plan.deferred_to_sro)
    changed: list[AttendancePoint] = []
    for point in points:
        desired = dict(_RESET_STATE)
        if point.id in deferred:
            sro_date = point.sro_expires_at or compute_sro_for_point(point)
            desired.update(
                sro_expires_at=sro_date,
                is_expired=True,
                expired_at=sro_date,
                expiration_type=ExpirationType.SRO,
            )
        desired.update(targets.get(point.id, {}))
        dirty = False
        for field_name, value in desired.items():
            dirty = _assign(point, field_name, value) or dirty
        if dirty:
            changed.append(point)
    return changed


def build_cascade_result(points: Sequence[AttendancePoint], plan: CascadePlan, changed_count: int) -> CascadeResult:
    by_id = {point.id: point for point in points}
    result = CascadeResult(
        employee_id=plan.employee_id,
        as_of=plan.as_of,
        deferred_to_sro=list(plan.deferred_to_sro),
        changed_count=changed_count,
    )
    for pair in plan.pairs:
        for point_id in pair.point_ids:
            shift_date = by_id[point_id].shift_date
            if pair.matured:
                result.rolled_off.append(
                    RolledOffPoint(
                        point_id=point_id,
                        shift_date=shift_date,
                        gbro_applied_at=pair.rolloff_date,
                        gbro_batch_id=pair.batch_id or "",
                    )
                )
            else:
                result.predicted.append(
                    PredictedPoint(point_id=point_id, shift_date=shift_date, gbro_expires_at=pair.rolloff_date)
                )
    return result


def replay_gbro_cascade(db: Session, employee_id: int, as_of: date) -> CascadeResult:
    """Replay one employee's GBRO state inside the caller's transaction.

    Takes the employee lock and flushes the changed rows but never commits, so
    composite operations can fold the replay into their own unit of work. On
    failure the caller rolls back.
    """
    try:
        lock_employee_timeline(db, employee_id)
        points = list_cascade_points(db, employee_id)
    except SQLAlchemyError as exc:
        raise CascadeTransactionFailure(
            f"Could not load the point timeline of employee {employee_id}",
            details={"employee_id": employee_id, "error": exc.__class__.__name__},
        ) from exc
    plan = simulate_cascade(
        [snapshot_point(point) for point in points],
        as_of,
        employee_id=employee_id,
    )
    changed = apply_cascade_plan(points, plan)
    stage_points(db, employee_id, changed)

    result = build_cascade_result(points, plan, len(changed))
    logger.info(
        "gbro_cascade_complete",
        extra={
            "employee_id": employee_id,
            "as_of": as_of,
            "eligible_points": len(points),
            "rolled_off": len(result.rolled_off),
            "predicted": len(result.predicted),
            "deferred_to_sro": len(result.deferred_to_sro),
            "changed": len(changed),
        },
    )
    return result


def recalculate_gbro_cascade(db: Session, employee_id: int, as_of: date) -> CascadeResult:
    """Fully recompute one employee's GBRO state and persist it atomically."""
    try:
        result = replay_gbro_cascade(db, employee_id, as_of)
    except PointsEngineError:
        db.rollback()
        raise
    # Commit even when nothing changed so the employee row lock is released.
    commit_timeline(db, employee_id)
    return result
