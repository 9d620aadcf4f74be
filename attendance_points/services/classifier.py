from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from attendance_points.errors import ValidationError
from attendance_points.models import PointType
from attendance_points.services.expiration_policy import sro_window_months

UNDERTIME_MAX_MINUTES = 60
UNDERTIME_MORE_THAN_HOUR_MIN_MINUTES = UNDERTIME_MAX_MINUTES + 1

POINT_VALUES: dict[PointType, Decimal] = {
    PointType.WHOLE_DAY_ABSENCE: Decimal("1.00"),
    PointType.HALF_DAY_ABSENCE: Decimal("0.50"),
    PointType.UNDERTIME: Decimal("0.25"),
    PointType.UNDERTIME_MORE_THAN_HOUR: Decimal("0.50"),
    PointType.TARDY: Decimal("0.25"),
}

POINT_TYPE_LABELS: dict[PointType, str] = {
    PointType.WHOLE_DAY_ABSENCE: "Whole Day Absence",
    PointType.HALF_DAY_ABSENCE: "Half-Day Absence",
    PointType.UNDERTIME: "Undertime",
    PointType.UNDERTIME_MORE_THAN_HOUR: "Undertime (>1 Hour)",
    PointType.TARDY: "Tardy",
}


@dataclass(frozen=True, slots=True)
class ViolationInput:
    point_type: PointType | str
    minutes: int | None = None
    is_advised: bool = False
    shift_date: date | None = None
    employee_id: int | None = None


@dataclass(frozen=True, slots=True)
class PointTemplate:
    point_type: PointType
    point_value: Decimal
    is_advised: bool
    eligible_for_gbro: bool
    sro_window_months: int
    tardy_minutes: int | None
    undertime_minutes: int | None
    violation_details: str

    @property
    def is_ncns(self) -> bool:
        return self.point_type == PointType.WHOLE_DAY_ABSENCE and not self.is_advised


def _coerce_point_type(raw: PointType | str) -> PointType:
    if isinstance(raw, PointType):
        return raw
    normalized = str(raw or "").strip().upper()
    try:
        return PointType(normalized)
    except ValueError:
        raise ValidationError(
            f"Unknown point type: {raw!r}",
            details={"point_type": str(raw)},
        ) from None


def _validate_minutes(point_type: PointType, minutes: int | None) -> None:
    if minutes is None:
        return
    if minutes < 0:
        raise ValidationError(
            "Violation minutes must not be negative",
            details={"point_type": point_type.value, "minutes": minutes},
        )
    if point_type == PointType.UNDERTIME and not 1 <= minutes <= UNDERTIME_MAX_MINUTES:
        raise ValidationError(
            f"Undertime must be between 1 and {UNDERTIME_MAX_MINUTES} minutes; "
            f"use {PointType.UNDERTIME_MORE_THAN_HOUR.value} for longer departures",
            details={"point_type": point_type.value, "minutes": minutes},
        )
    if point_type == PointType.UNDERTIME_MORE_THAN_HOUR and minutes < UNDERTIME_MORE_THAN_HOUR_MIN_MINUTES:
        raise ValidationError(
            f"Undertime more than an hour requires at least {UNDERTIME_MORE_THAN_HOUR_MIN_MINUTES} minutes; "
            f"use {PointType.UNDERTIME.value} for shorter departures",
            details={"point_type": point_type.value, "minutes": minutes},
        )


def default_violation_details(
    point_type: PointType,
    *,
    is_advised: bool,
    minutes: int | None,
    is_manual: bool = False,
) -> str:
    prefix = "Manual Entry: " if is_manual else ""
    if point_type == PointType.WHOLE_DAY_ABSENCE:
        if is_advised:
            return f"{prefix}Advised absence (Failed to Notify)"
        return f"{prefix}No Call, No Show (NCNS) - did not report for work without prior notice"
    if point_type == PointType.HALF_DAY_ABSENCE:
        return f"{prefix}Half-day absence"
    if point_type == PointType.TARDY:
        return f"{prefix}Late arrival by {minutes or 0} minutes"
    if point_type == PointType.UNDERTIME:
        return f"{prefix}Early departure by {minutes or 0} minutes (up to 1 hour)"
    return f"{prefix}Early departure by {minutes or 0} minutes (more than 1 hour)"


def classify(violation: ViolationInput, *, is_manual: bool = False) -> PointTemplate:
    """Map one violation occurrence to the point it accrues.

    Raises ValidationError when the minutes do not fit the requested type; the
    caller must resubmit under the correct type.
    """
    point_type = _coerce_point_type(violation.point_type)
    minutes = violation.minutes
    _validate_minutes(point_type, minutes)

    is_advised = bool(violation.is_advised) if point_type == PointType.WHOLE_DAY_ABSENCE else False
    is_ncns = point_type == PointType.WHOLE_DAY_ABSENCE and not is_advised

    return PointTemplate(
        point_type=point_type,
        point_value=POINT_VALUES[point_type],
        is_advised=is_advised,
        eligible_for_gbro=not is_ncns,
        sro_window_months=sro_window_months(point_type, is_advised),
        tardy_minutes=minutes if point_type == PointType.TARDY else None,
        undertime_minutes=(
            minutes if point_type in {PointType.UNDERTIME, PointType.UNDERTIME_MORE_THAN_HOUR} else None
        ),
        violation_details=default_violation_details(
            point_type,
            is_advised=is_advised,
            minutes=minutes,
            is_manual=is_manual,
        ),
    )
