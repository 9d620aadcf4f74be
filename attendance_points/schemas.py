from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from attendance_points.models import (
    ConsistencyOperationKind,
    ExpirationScope,
    ExpirationType,
    JobStatus,
    PointType,
)


class ClassifyRequest(BaseModel):
    point_type: PointType
    minutes: int | None = None
    is_advised: bool = False


class ClassifyResponse(BaseModel):
    point_type: PointType
    point_value: Decimal
    is_advised: bool
    is_ncns: bool
    eligible_for_gbro: bool
    sro_window_months: int
    violation_details: str
    sro_expires_at: date | None = None


class AttendancePointRead(BaseModel):
    id: int
    employee_id: int
    violation_id: int | None
    shift_date: date
    point_type: PointType
    point_value: Decimal
    is_advised: bool
    is_manual: bool
    created_by: str | None
    is_excused: bool
    excuse_reason: str | None
    excused_by: str | None
    excused_at: datetime | None
    sro_expires_at: date
    eligible_for_gbro: bool
    gbro_expires_at: date | None
    gbro_applied_at: date | None
    gbro_batch_id: str | None
    is_expired: bool
    expired_at: date | None
    expiration_type: ExpirationType
    violation_details: str | None
    tardy_minutes: int | None
    undertime_minutes: int | None
    notes: str | None

    model_config = ConfigDict(from_attributes=True)


class ManualPointCreateRequest(BaseModel):
    employee_id: int = Field(ge=1)
    shift_date: date
    point_type: PointType
    minutes: int | None = None
    is_advised: bool = False
    violation_details: str | None = Field(default=None, max_length=1000)
    notes: str | None = Field(default=None, max_length=1000)


class ManualPointUpdateRequest(BaseModel):
    shift_date: date | None = None
    point_type: PointType | None = None
    minutes: int | None = None
    is_advised: bool | None = None
    violation_details: str | None = Field(default=None, max_length=1000)
    notes: str | None = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def _validate_not_empty(self) -> "ManualPointUpdateRequest":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided.")
        return self


class ExcuseRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class RolledOffPointRead(BaseModel):
    point_id: int
    shift_date: date
    gbro_applied_at: date
    gbro_batch_id: str


class PredictedPointRead(BaseModel):
    point_id: int
    shift_date: date
    gbro_expires_at: date


class CascadeResultRead(BaseModel):
    employee_id: int
    as_of: date
    rolled_off: list[RolledOffPointRead]
    predicted: list[PredictedPointRead]
    deferred_to_sro: list[int]
    changed_count: int


class PointChangeResponse(BaseModel):
    point_id: int
    employee_id: int
    point: AttendancePointRead | None = None
    cascade: CascadeResultRead


class EmployeeSummaryRead(BaseModel):
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


class ConsistencyRunRequest(BaseModel):
    employee_ids: list[int] | None = None
    date_from: date | None = None
    date_to: date | None = None
    expiration_scope: ExpirationScope = ExpirationScope.BOTH
    as_of: date | None = None

    @model_validator(mode="after")
    def _validate_range(self) -> "ConsistencyRunRequest":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must be on or before date_to.")
        if self.employee_ids is not None:
            self.employee_ids = sorted({int(item) for item in self.employee_ids})
        return self


class BatchResultRead(BaseModel):
    kind: ConsistencyOperationKind
    as_of: date
    job_id: str | None
    affected_count: int
    succeeded: list[int]
    failed: list[dict[str, Any]]
    conflicts: list[dict[str, Any]]
    skipped: list[dict[str, Any]]
    details: dict[str, Any]


class ConsistencyJobRead(BaseModel):
    job_id: str
    kind: ConsistencyOperationKind
    status: JobStatus
    scope: dict[str, Any]
    as_of: date
    total: int
    processed: int
    affected_count: int
    failed_count: int
    result: dict[str, Any]
    last_error: str | None
    requested_by: str
    started_at: datetime
    finished_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class ManagementStatsRead(BaseModel):
    as_of: date
    total_points: int
    active_points: int
    excused_points: int
    expired_points: int
    duplicate_points: int
    pending_sro: int
    pending_gbro: int
    missing_points: int
