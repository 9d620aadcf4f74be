from __future__ import annotations

import unittest
import warnings
from datetime import date, datetime, timezone
from unittest.mock import patch

from sqlalchemy import select
from sqlalchemy.exc import SAWarning

from attendance_points.errors import CascadeTransactionFailure, ValidationError
from attendance_points.models import (
    AttendancePoint,
    AuditLog,
    ConsistencyOperationKind,
    ExpirationScope,
    ExpirationType,
    JobStatus,
    PointType,
)
from attendance_points.services import consistency
from attendance_points.services.consistency import (
    ScopeFilter,
    get_consistency_job,
    management_stats,
    resolve_employee_ids,
    run_consistency_operation,
)

from db_support import add_employee, add_point, add_violation, make_session_factory


class ConsistencyOperationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        add_employee(self.db, 1)
        add_employee(self.db, 2)

    def tearDown(self) -> None:
        self.db.close()

    def _points(self, employee_id: int = 1) -> list[AttendancePoint]:
        self.db.expire_all()
        return list(
            self.db.scalars(
                select(AttendancePoint)
                .where(AttendancePoint.employee_id == employee_id)
                .order_by(AttendancePoint.shift_date, AttendancePoint.id)
            ).all()
        )

    def test_remove_duplicates_keeps_the_excused_point(self) -> None:
        add_point(self.db, 1, date(2026, 1, 5), created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
        excused = add_point(
            self.db,
            1,
            date(2026, 1, 5),
            created_at=datetime(2026, 1, 2, tzinfo=timezone.utc),
            is_excused=True,
        )

        result = run_consistency_operation(
            self.db,
            ConsistencyOperationKind.REMOVE_DUPLICATES,
            ScopeFilter(employee_ids=(1,)),
            date(2026, 2, 1),
        )

        self.assertEqual(result.affected_count, 1)
        self.assertEqual([point.id for point in self._points()], [excused.id])

    def test_remove_duplicates_prefers_earliest_created(self) -> None:
        later = add_point(self.db, 1, date(2026, 1, 5), created_at=datetime(2026, 1, 3, tzinfo=timezone.utc))
        earlier = add_point(self.db, 1, date(2026, 1, 5), created_at=datetime(2026, 1, 2, tzinfo=timezone.utc))
        add_point(self.db, 1, date(2026, 1, 5), PointType.HALF_DAY_ABSENCE)

        run_consistency_operation(self.db, "remove_duplicates", ScopeFilter(employee_ids=(1,)), date(2026, 2, 1))

        remaining = self._points()
        self.assertEqual(len(remaining), 2)
        self.assertIn(earlier.id, [point.id for point in remaining])
        self.assertNotIn(later.id, [point.id for point in remaining])

    def test_regenerate_inserts_missing_points_and_reports_taken_slots(self) -> None:
        first = add_violation(self.db, 1, date(2026, 1, 5), PointType.TARDY, minutes=10, details="Badge scan 08:40")
        taken = add_violation(self.db, 1, date(2026, 1, 7), PointType.HALF_DAY_ABSENCE)
        add_point(self.db, 1, date(2026, 1, 7), PointType.HALF_DAY_ABSENCE, is_manual=True)
        add_violation(self.db, 1, date(2026, 1, 8), PointType.TARDY, is_verified=False)
        invalid = add_violation(self.db, 1, date(2026, 1, 9), PointType.UNDERTIME, minutes=90)
        twin_a = add_violation(self.db, 1, date(2026, 1, 12), PointType.TARDY)
        twin_b = add_violation(self.db, 1, date(2026, 1, 12), PointType.TARDY)

        result = run_consistency_operation(
            self.db, ConsistencyOperationKind.REGENERATE, ScopeFilter(), date(2026, 2, 1)
        )

        self.assertEqual(result.affected_count, 2)
        self.assertEqual(
            sorted(item["violation_id"] for item in result.conflicts),
            sorted([taken.id, twin_b.id]),
        )
        self.assertTrue(all(item["code"] == "POINT_SLOT_CONFLICT" for item in result.conflicts))
        self.assertEqual([item["violation_id"] for item in result.skipped], [invalid.id])
        created = {point.violation_id: point for point in self._points() if point.violation_id}
        self.assertEqual(set(created), {first.id, twin_a.id})
        self.assertEqual(created[first.id].violation_details, "Badge scan 08:40")
        self.assertEqual(created[first.id].tardy_minutes, 10)
        self.assertEqual(created[first.id].sro_expires_at, date(2026, 7, 5))

        again = run_consistency_operation(
            self.db, ConsistencyOperationKind.REGENERATE, ScopeFilter(), date(2026, 2, 1)
        )
        self.assertEqual(again.affected_count, 0)

    def test_expire_pending_respects_scope(self) -> None:
        sro_due = add_point(self.db, 1, date(2025, 6, 1))
        gbro_due = add_point(self.db, 1, date(2026, 1, 1), gbro_expires_at=date(2026, 3, 2))
        as_of = date(2026, 3, 10)

        run_consistency_operation(
            self.db,
            ConsistencyOperationKind.EXPIRE_PENDING,
            ScopeFilter(expiration_scope=ExpirationScope.SRO),
            as_of,
        )
        points = {point.id: point for point in self._points()}
        self.assertEqual(points[sro_due.id].expiration_type, ExpirationType.SRO)
        self.assertEqual(points[sro_due.id].expired_at, date(2025, 12, 1))
        self.assertFalse(points[gbro_due.id].is_expired)

        run_consistency_operation(
            self.db,
            ConsistencyOperationKind.EXPIRE_PENDING,
            ScopeFilter(expiration_scope=ExpirationScope.GBRO),
            as_of,
        )
        points = {point.id: point for point in self._points()}
        rolled = points[gbro_due.id]
        self.assertTrue(rolled.is_expired)
        self.assertEqual(rolled.expiration_type, ExpirationType.GBRO)
        self.assertEqual(rolled.gbro_applied_at, date(2026, 3, 2))
        self.assertTrue(rolled.gbro_batch_id.startswith("gbro-"))

    def test_expire_pending_prefers_the_earlier_date_and_sro_on_ties(self) -> None:
        sro_first = add_point(self.db, 1, date(2025, 9, 1), gbro_expires_at=date(2026, 3, 5))
        tie = add_point(self.db, 1, date(2025, 9, 2), gbro_expires_at=date(2026, 3, 2))
        gbro_first = add_point(self.db, 1, date(2025, 10, 1), gbro_expires_at=date(2026, 3, 3))

        run_consistency_operation(
            self.db, ConsistencyOperationKind.EXPIRE_PENDING, ScopeFilter(), date(2026, 4, 15)
        )

        points = {point.id: point for point in self._points()}
        self.assertEqual(points[sro_first.id].expiration_type, ExpirationType.SRO)
        self.assertEqual(points[tie.id].expiration_type, ExpirationType.SRO)
        self.assertEqual(points[gbro_first.id].expiration_type, ExpirationType.GBRO)
        self.assertIsNone(points[tie.id].gbro_applied_at)

    def test_reset_expired_skips_excused_points(self) -> None:
        expired = add_point(
            self.db,
            1,
            date(2025, 1, 1),
            is_expired=True,
            expired_at=date(2025, 7, 1),
            expiration_type=ExpirationType.SRO,
            sro_expires_at=date(2025, 2, 1),
        )
        excused = add_point(
            self.db,
            1,
            date(2025, 1, 2),
            is_excused=True,
            is_expired=True,
            expired_at=date(2025, 7, 2),
            expiration_type=ExpirationType.SRO,
        )

        result = run_consistency_operation(
            self.db, ConsistencyOperationKind.RESET_EXPIRED, ScopeFilter(), date(2026, 1, 1)
        )

        self.assertEqual(result.affected_count, 1)
        points = {point.id: point for point in self._points()}
        reset = points[expired.id]
        self.assertFalse(reset.is_expired)
        self.assertIsNone(reset.expired_at)
        self.assertEqual(reset.expiration_type, ExpirationType.NONE)
        self.assertEqual(reset.sro_expires_at, date(2025, 7, 1))
        self.assertTrue(points[excused.id].is_expired)

    def test_initialize_fills_only_missing_predictions_and_fix_overwrites(self) -> None:
        p1 = add_point(self.db, 1, date(2026, 1, 1), gbro_expires_at=date(2026, 12, 31))
        p2 = add_point(self.db, 1, date(2026, 1, 10))
        p3 = add_point(self.db, 1, date(2026, 1, 20))
        scope = ScopeFilter(employee_ids=(1,))

        run_consistency_operation(self.db, ConsistencyOperationKind.INITIALIZE_GBRO_DATES, scope, date(2026, 2, 1))
        points = {point.id: point for point in self._points()}
        self.assertEqual(points[p1.id].gbro_expires_at, date(2026, 12, 31))
        self.assertEqual(points[p2.id].gbro_expires_at, date(2026, 3, 11))
        self.assertIsNone(points[p3.id].gbro_expires_at)

        run_consistency_operation(self.db, ConsistencyOperationKind.FIX_GBRO_DATES, scope, date(2026, 2, 1))
        points = {point.id: point for point in self._points()}
        self.assertEqual(points[p1.id].gbro_expires_at, date(2026, 3, 11))
        self.assertFalse(any(point.is_expired for point in points.values()))

    def test_fix_is_anchored_on_applied_rolloffs(self) -> None:
        applied = add_point(
            self.db,
            1,
            date(2025, 12, 1),
            is_expired=True,
            expired_at=date(2026, 3, 1),
            expiration_type=ExpirationType.GBRO,
            gbro_expires_at=date(2026, 3, 1),
            gbro_applied_at=date(2026, 3, 1),
            gbro_batch_id="gbro-existing",
        )
        h = add_point(self.db, 1, date(2026, 2, 1), gbro_expires_at=date(2026, 4, 3))
        i = add_point(self.db, 1, date(2026, 2, 2))

        run_consistency_operation(
            self.db, ConsistencyOperationKind.FIX_GBRO_DATES, ScopeFilter(employee_ids=(1,)), date(2026, 3, 5)
        )

        points = {point.id: point for point in self._points()}
        self.assertEqual(points[h.id].gbro_expires_at, date(2026, 4, 30))
        self.assertEqual(points[i.id].gbro_expires_at, date(2026, 4, 30))
        self.assertEqual(points[applied.id].gbro_batch_id, "gbro-existing")

    def test_one_employee_failure_does_not_stop_the_batch(self) -> None:
        add_point(self.db, 1, date(2026, 1, 1))
        add_point(self.db, 2, date(2026, 1, 1))
        real_cascade = consistency.replay_gbro_cascade

        def _flaky(db, employee_id, as_of):  # type: ignore[no-untyped-def]
            if employee_id == 1:
                raise CascadeTransactionFailure("lock timeout", details={"employee_id": 1})
            return real_cascade(db, employee_id, as_of)

        with patch("attendance_points.services.consistency.replay_gbro_cascade", side_effect=_flaky):
            result = run_consistency_operation(
                self.db,
                ConsistencyOperationKind.RECALCULATE_GBRO,
                None,
                date(2026, 4, 10),
                requested_by="ops-admin",
            )

        self.assertEqual(result.succeeded, [2])
        self.assertEqual(
            result.failed,
            [{"employee_id": 1, "code": "CASCADE_TRANSACTION_FAILED", "reason": "lock timeout"}],
        )
        self.assertTrue(self._points(2)[0].is_expired)
        self.assertFalse(self._points(1)[0].is_expired)

        job = get_consistency_job(self.db, result.job_id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.total, 2)
        self.assertEqual(job.processed, 2)
        self.assertEqual(job.failed_count, 1)
        self.assertEqual(job.requested_by, "ops-admin")

        audit = self.db.scalar(select(AuditLog).where(AuditLog.entity_id == result.job_id))
        self.assertIsNotNone(audit)
        self.assertEqual(audit.action, "POINTS_RECALCULATE_GBRO")
        self.assertFalse(audit.success)

    def test_process_expirations_runs_sro_then_the_cascade(self) -> None:
        old = add_point(self.db, 1, date(2025, 6, 1))
        p1 = add_point(self.db, 1, date(2026, 1, 1))
        p2 = add_point(self.db, 1, date(2026, 1, 10))
        p3 = add_point(self.db, 1, date(2026, 1, 20))

        result = run_consistency_operation(
            self.db, ConsistencyOperationKind.PROCESS_EXPIRATIONS, ScopeFilter(), date(2026, 4, 10)
        )

        self.assertEqual(result.succeeded, [1])
        points = {point.id: point for point in self._points()}
        self.assertEqual(points[old.id].expiration_type, ExpirationType.SRO)
        self.assertEqual(points[p1.id].expiration_type, ExpirationType.GBRO)
        self.assertEqual(points[p2.id].expiration_type, ExpirationType.GBRO)
        self.assertEqual(points[p3.id].gbro_expires_at, date(2026, 5, 10))

    def test_cleanup_removes_duplicates_then_expires(self) -> None:
        keeper = add_point(self.db, 1, date(2025, 6, 1), created_at=datetime(2025, 6, 1, tzinfo=timezone.utc))
        add_point(self.db, 1, date(2025, 6, 1), created_at=datetime(2025, 6, 2, tzinfo=timezone.utc))
        recent = add_point(self.db, 1, date(2025, 11, 20))

        result = run_consistency_operation(
            self.db, ConsistencyOperationKind.CLEANUP, ScopeFilter(employee_ids=(1,)), date(2026, 1, 1)
        )

        remaining = {point.id: point for point in self._points()}
        self.assertEqual(set(remaining), {keeper.id, recent.id})
        self.assertEqual(remaining[keeper.id].expiration_type, ExpirationType.SRO)
        self.assertEqual(remaining[recent.id].gbro_expires_at, date(2026, 1, 19))
        self.assertFalse(remaining[recent.id].is_expired)
        self.assertEqual(result.details["duplicates_removed"], 1)
        self.assertEqual(result.details["sro_expired"], 1)

    def test_failed_cascade_discards_the_sro_pass_of_that_employee(self) -> None:
        old = add_point(self.db, 1, date(2025, 6, 1))
        add_point(self.db, 1, date(2026, 1, 1))

        with patch(
            "attendance_points.services.consistency.replay_gbro_cascade",
            side_effect=CascadeTransactionFailure("lock timeout", details={"employee_id": 1}),
        ):
            result = run_consistency_operation(
                self.db, ConsistencyOperationKind.PROCESS_EXPIRATIONS, ScopeFilter(), date(2026, 4, 10)
            )

        self.assertEqual(result.succeeded, [])
        self.assertEqual(result.failed[0]["code"], "CASCADE_TRANSACTION_FAILED")
        self.assertNotIn("sro_expired", result.details)
        old = {point.id: point for point in self._points()}[old.id]
        self.assertFalse(old.is_expired)
        self.assertEqual(old.expiration_type, ExpirationType.NONE)

    def test_failed_cascade_keeps_duplicates_in_place(self) -> None:
        add_point(self.db, 1, date(2026, 1, 5), created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
        add_point(self.db, 1, date(2026, 1, 5), created_at=datetime(2026, 1, 2, tzinfo=timezone.utc))

        with patch(
            "attendance_points.services.consistency.replay_gbro_cascade",
            side_effect=CascadeTransactionFailure("lock timeout", details={"employee_id": 1}),
        ):
            result = run_consistency_operation(
                self.db,
                ConsistencyOperationKind.REMOVE_DUPLICATES,
                ScopeFilter(employee_ids=(1,)),
                date(2026, 2, 1),
            )

        self.assertEqual([item["employee_id"] for item in result.failed], [1])
        self.assertEqual(result.affected_count, 0)
        self.assertEqual(len(self._points()), 2)

    def test_unexpected_error_is_isolated_to_one_employee(self) -> None:
        add_point(self.db, 1, date(2026, 1, 1))
        add_point(self.db, 2, date(2026, 1, 1))

        def _malformed(db, employee_id, scope, as_of, result):  # type: ignore[no-untyped-def]
            if employee_id == 1:
                raise TypeError("unsupported operand for shift_date")
            return consistency.recalculate_gbro(db, employee_id, scope, as_of, result)

        with patch.dict(consistency.OPERATIONS, {ConsistencyOperationKind.RECALCULATE_GBRO: _malformed}):
            result = run_consistency_operation(
                self.db, ConsistencyOperationKind.RECALCULATE_GBRO, None, date(2026, 4, 10)
            )

        self.assertEqual(result.succeeded, [2])
        self.assertEqual(result.failed[0]["employee_id"], 1)
        self.assertEqual(result.failed[0]["code"], "POINTS_INTERNAL_ERROR")
        self.assertIn("TypeError", result.failed[0]["reason"])
        self.assertTrue(self._points(2)[0].is_expired)
        job = get_consistency_job(self.db, result.job_id)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.processed, 2)

    def test_employee_resolution_uses_a_plain_distinct_select(self) -> None:
        add_point(self.db, 2, date(2026, 1, 1))
        add_point(self.db, 1, date(2026, 1, 1))
        add_point(self.db, 1, date(2026, 1, 2))

        with warnings.catch_warnings():
            warnings.simplefilter("error", SAWarning)
            employee_ids = resolve_employee_ids(self.db, ConsistencyOperationKind.RECALCULATE_GBRO, ScopeFilter())

        self.assertEqual(employee_ids, [1, 2])

    def test_unknown_operation_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            run_consistency_operation(self.db, "compact", None, date(2026, 1, 1))

    def test_management_stats_counts_health_issues(self) -> None:
        add_point(self.db, 1, date(2026, 1, 5))
        add_point(self.db, 1, date(2026, 1, 5))
        add_point(self.db, 1, date(2025, 6, 1))
        add_point(self.db, 2, date(2026, 1, 1), is_excused=True)
        add_point(self.db, 2, date(2026, 1, 2), gbro_expires_at=date(2026, 3, 3))
        add_violation(self.db, 2, date(2026, 2, 1))

        stats = management_stats(self.db, None, date(2026, 3, 10))

        self.assertEqual(stats["total_points"], 5)
        self.assertEqual(stats["active_points"], 4)
        self.assertEqual(stats["excused_points"], 1)
        self.assertEqual(stats["duplicate_points"], 1)
        self.assertEqual(stats["pending_sro"], 1)
        self.assertEqual(stats["pending_gbro"], 1)
        self.assertEqual(stats["missing_points"], 1)


if __name__ == "__main__":
    unittest.main()
