from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Protocol

from attendance_points.models import PointType
from attendance_points.settings import get_settings


class PointDates(Protocol):
    shift_date: date
    point_type: PointType
    is_advised: bool


@dataclass(frozen=True, slots=True)
class GbroPolicy:
    clean_days: int = 60
    pair_size: int = 2

    def rolloff_date(self, reference_date: date) -> date:
        return reference_date + timedelta(days=self.clean_days)


def get_gbro_policy() -> GbroPolicy:
    settings = get_settings()
    return GbroPolicy(
        clean_days=max(1, settings.gbro_clean_days),
        pair_size=max(1, settings.gbro_pair_size),
    )


def add_months(value: date, months: int) -> date:
    # Clamp to the last day of the target month (Aug 31 + 6 months -> Feb 28/29).
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return date(year, month, day)


def is_ncns(point_type: PointType, is_advised: bool) -> bool:
    return point_type == PointType.WHOLE_DAY_ABSENCE and not is_advised


def sro_window_months(point_type: PointType, is_advised: bool) -> int:
    settings = get_settings()
    if is_ncns(point_type, is_advised):
        return settings.ncns_rolloff_months
    return settings.standard_rolloff_months


def compute_sro(shift_date: date, point_type: PointType, is_advised: bool) -> date:
    return add_months(shift_date, sro_window_months(point_type, is_advised))


def compute_sro_for_point(point: PointDates) -> date:
    return compute_sro(point.shift_date, point.point_type, point.is_advised)


def pairing_reference_date(last_shift_date: date, previous_rolloff: date | None) -> date:
    """Start of the clean window for one pairing.

    A recent roll-off restarts the clock, so the later of the pair's newest
    violation and the previous roll-off wins.
    """
    if previous_rolloff is not None and previous_rolloff > last_shift_date:
        return previous_rolloff
    return last_shift_date


def is_sro_due(point, as_of: date) -> bool:
    if point.is_expired or point.is_excused:
        return False
    return point.sro_expires_at is not None and point.sro_expires_at <= as_of


def is_gbro_due(point, as_of: date) -> bool:
    if point.is_expired or point.is_excused or not point.eligible_for_gbro:
        return False
    return point.gbro_expires_at is not None and point.gbro_expires_at <= as_of
